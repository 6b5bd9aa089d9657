"""Rich console helpers shared by the command line tools."""

from rich.console import Console

console = Console()


def log_info(message: str) -> None:
    console.print(f"ℹ️  {message}", style="blue")


def log_success(message: str) -> None:
    console.print(f"✅ {message}", style="green")


def log_warning(message: str) -> None:
    console.print(f"⚠️  {message}", style="yellow")


def log_error(message: str) -> None:
    console.print(f"❌ {message}", style="red")
