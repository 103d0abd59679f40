#!/usr/bin/env python3
"""
Personal OS AI gateway CLI.

Usage:
    personal-os-ai serve --port 8000
    personal-os-ai usage --user <user-id> --period week
"""

import argparse
import sys

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import get_settings
from .exceptions import PersonalOSError
from .utils.log_sanitizer import configure_logging

console = Console()


def format_money(value: float) -> str:
    return f"${value:,.4f}"


def percentage_color(percentage: float) -> str:
    if percentage >= 100:
        return "red"
    if percentage >= get_settings().cost_warning_threshold * 100:
        return "yellow"
    return "green"


def cmd_serve(args) -> None:
    """Run the HTTP gateway with uvicorn."""
    import uvicorn

    settings = get_settings()
    host = args.host or settings.api_host
    port = args.port or settings.api_port
    console.print(Panel(f"[bold]Personal OS AI gateway[/bold] on http://{host}:{port}"))
    uvicorn.run(
        "personal_os_ai.main:app",
        host=host,
        port=port,
        reload=args.reload,
        log_level=settings.log_level.lower(),
    )


def cmd_usage(args) -> None:
    """Show a user's spend against the cost ceilings."""
    from .services.cost_governor import get_cost_governor

    settings = get_settings()
    if settings.usage_store_backend != "sqlite":
        console.print(
            "[yellow]Usage ledger is in memory; totals only reflect this process.[/yellow]"
        )

    usage = get_cost_governor().get_usage(args.user, args.period)

    console.print()
    console.print(Panel(f"[bold]AI usage for {args.user}[/bold]"))

    table = Table(box=box.ROUNDED)
    table.add_column("Period", style="cyan")
    table.add_column("Used", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("Remaining", justify="right")
    table.add_column("%", justify="right")

    for name in ("daily", "monthly"):
        row = usage["current"][name]
        color = percentage_color(row["percentage"])
        table.add_row(
            name.capitalize(),
            format_money(row["usage"]),
            format_money(row["limit"]),
            format_money(row["remaining"]),
            f"[{color}]{row['percentage']}%[/{color}]",
        )
    console.print(table)

    for series_name, series in usage["historical"].items():
        history = Table(title=f"{series_name.capitalize()} history", box=box.SIMPLE)
        history.add_column("Key", style="cyan")
        history.add_column("Cost", justify="right")
        for key, amount in series.items():
            history.add_row(key, format_money(amount))
        console.print(history)


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Personal OS AI gateway",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  personal-os-ai serve --port 8000
  personal-os-ai usage --user user-123
  personal-os-ai usage --user user-123 --period month
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_p = subparsers.add_parser("serve", help="Run the HTTP gateway")
    serve_p.add_argument("--host", help="Bind address")
    serve_p.add_argument("--port", "-p", type=int, help="Port to listen on")
    serve_p.add_argument("--reload", action="store_true", help="Reload on code changes")

    usage_p = subparsers.add_parser("usage", help="Show a user's AI spend")
    usage_p.add_argument("--user", "-u", required=True, help="User id")
    usage_p.add_argument(
        "--period",
        choices=["current", "week", "month", "year"],
        default="current",
        help="Include a historical series",
    )

    args = parser.parse_args()
    configure_logging(get_settings().log_level)

    try:
        if args.command == "serve":
            cmd_serve(args)
        elif args.command == "usage":
            cmd_usage(args)
        else:
            parser.print_help()
    except PersonalOSError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        sys.exit(1)


if __name__ == "__main__":
    main()
