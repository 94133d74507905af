"""
fleetdeploy CLI - UI Components
Standardized command headers
"""

from typing import Optional

from rich.console import Console

PREFIX = "[bold color(214)]fleetdeploy[/bold color(214)] [dim]›[/dim]"

BRAND_COLOR = "cyan"


def show_header(
    title: str,
    subtitle: Optional[str] = None,
    details: Optional[dict] = None,
    console: Optional[Console] = None,
) -> None:
    """
    Display a standardized fleetdeploy command header.

    Args:
        title: Main title (e.g., "Deploy App", "Verify Status")
        subtitle: Optional subtitle line
        details: Additional key-value pairs to display
        console: Rich Console instance (creates new if None)

    Example:
        show_header(
            title="Deploy App",
            details={"Workspace": "/srv/todo", "Key": "project-mark-67.pem"}
        )
    """
    if console is None:
        console = Console()

    console.print(f" {PREFIX} [bold white]{title}[/bold white]")

    if subtitle:
        console.print(f" {PREFIX} [dim]{subtitle}[/dim]")

    if details:
        for key, value in details.items():
            console.print(f" {PREFIX} {key}: [{BRAND_COLOR}]{value}[/{BRAND_COLOR}]")

    # Single blank line after header
    console.print()
