"""Configuration utility for tenant database routing.

This module provides centralized configuration management with:
- Environment variables as the only source
- Shared, control and per-tenant database settings
- Type-safe access to configuration values
"""

import os
from typing import Any


def parse_config_value(value: str) -> str | bool | int | float:
    if value.lower() == "true":
        return True
    elif value.lower() == "false":
        return False
    else:
        # Try to parse as a number
        try:
            return int(value)
        except ValueError:
            try:
                return float(value)
            except ValueError:
                # Return as string
                return value


def get_config_value(key: str, default: Any = None) -> Any:
    """Get a configuration value from environment variables.

    Args:
        key: Configuration key name (e.g., "DATABASE_URL")
        default: Default value if key not found

    Returns:
        Configuration value or default
    """
    env_value = os.environ.get(key)
    if env_value is not None:
        return parse_config_value(env_value)

    return default


def get_config_value_str(key: str) -> str | None:
    """
    Get a configuration value from environment variables. But sometimes you just want a string.
    """
    return os.environ.get(key)


def get_environment() -> str:
    """Get the deployment environment from env var."""
    return get_config_value("APP_ENVIRONMENT", "local")


def get_database_url() -> str:
    """Get the shared application database URL.

    Returns:
        PostgreSQL connection string from DATABASE_URL config

    Raises:
        ValueError: If DATABASE_URL is not configured
    """
    # Read as a plain string, URLs never need type coercion
    url = get_config_value_str("DATABASE_URL")
    if url:
        return url

    raise ValueError("Database URL not found. Please provide DATABASE_URL environment variable")


def get_control_database_url() -> str:
    """Get control database connection URL.

    The control plane lives in the shared database unless CONTROL_DATABASE_URL
    points somewhere else.

    Returns:
        PostgreSQL connection string from CONTROL_DATABASE_URL, falling back to DATABASE_URL
    """
    url = get_config_value_str("CONTROL_DATABASE_URL")
    if url:
        return url
    return get_database_url()


def get_railway_api_token() -> str | None:
    """Bearer token for the Railway GraphQL API."""
    return get_config_value_str("RAILWAY_API_TOKEN")


def get_railway_api_url() -> str:
    return get_config_value_str("RAILWAY_API_URL") or "https://backboard.railway.app/graphql/v2"


def get_railway_request_timeout() -> float:
    """Get the per-request timeout (seconds) for Railway API calls."""
    return float(get_config_value("RAILWAY_REQUEST_TIMEOUT", 30))


def get_tenant_project_prefix() -> str:
    """Prefix for Railway project names created for dedicated databases."""
    return get_config_value_str("TENANT_PROJECT_PREFIX") or "wp-tenant"


def get_tenant_database_ready_timeout() -> float:
    """Get how long (seconds) to wait for a new database to expose its URL."""
    return float(get_config_value("TENANT_DATABASE_READY_TIMEOUT", 120))


def get_tenant_database_poll_initial_delay() -> float:
    return float(get_config_value("TENANT_DATABASE_POLL_INITIAL_DELAY", 2))


def get_tenant_database_poll_max_delay() -> float:
    return float(get_config_value("TENANT_DATABASE_POLL_MAX_DELAY", 15))


def get_tenant_pool_max_size() -> int:
    """Get max connections per tenant pool from config or env."""
    return int(get_config_value("TENANT_POOL_MAX_SIZE", 5))


def get_strict_organization_lookup() -> bool:
    """Whether resolving an unknown organization id raises instead of using the shared database."""
    return bool(get_config_value("TENANT_ROUTING_STRICT_ORG_LOOKUP", True))


def get_schema_sync_command() -> str | None:
    """External command that syncs the schema onto a new tenant database, if any.

    When unset, the tenant SQL migrations are applied directly.
    """
    return get_config_value_str("TENANT_SCHEMA_SYNC_COMMAND")


def get_schema_sync_timeout() -> int:
    """Get schema sync timeout in seconds from config or env."""
    return int(get_config_value("TENANT_SCHEMA_SYNC_TIMEOUT", 300))
