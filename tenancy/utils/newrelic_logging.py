"""New Relic logging integration helpers."""

from collections.abc import MutableMapping
from typing import Any

import newrelic.agent


def newrelic_error_processor(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Processor that sends error-level logs to New Relic.

    Error and critical events are reported with notice_error so provisioning
    failures show up next to the background task that produced them. Every
    event is passed through unchanged.
    """
    if method_name in ("error", "critical"):
        newrelic.agent.notice_error()

    return event_dict
