"""
Console output helpers built on rich.

Environment handling:
- Respects NO_COLOR and FORCE_COLOR environment variables
- Falls back to plain text when stdout is not a terminal
"""

from __future__ import annotations

import json
import os
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.theme import Theme

STRATA_THEME = Theme(
    {
        "info": "#88C0D0",
        "success": "#A3BE8C",
        "warning": "#EBCB8B",
        "error": "#BF616A bold",
        "highlight": "#B48EAD",
        "muted": "#D8DEE9",
    }
)

console = Console(
    theme=STRATA_THEME,
    force_terminal=os.environ.get("FORCE_COLOR") is not None,
    no_color=os.environ.get("NO_COLOR") is not None,
)

# Style per node status / planned action
STATUS_STYLES = {
    "created": "success",
    "updated": "success",
    "deleted": "success",
    "unchanged": "muted",
    "failed": "error",
    "skipped": "warning",
    "pending": "muted",
    "in_progress": "info",
}

ACTION_SYMBOLS = {
    "create": ("+", "success"),
    "update": ("~", "warning"),
    "replace": ("-/+", "error"),
    "delete": ("-", "error"),
    "noop": (" ", "muted"),
}


def success(message: str) -> None:
    console.print(f"[success]✓ {message}[/success]")


def error(message: str) -> None:
    console.print(f"[error]✗ {message}[/error]")


def warning(message: str) -> None:
    console.print(f"[warning]⚠ {message}[/warning]")


def info(message: str) -> None:
    console.print(f"[info]ℹ {message}[/info]")


def header(title: str) -> None:
    """Print a section header."""
    console.print()
    console.print(Panel(f"[bold]{title}[/bold]", border_style="cyan"))


def print_table(title: str, columns: list[str], rows: list[list[str]]) -> None:
    table = Table(title=title)
    for col in columns:
        table.add_column(col)
    for row in rows:
        table.add_row(*row)
    console.print(table)


def print_json(data: Any) -> None:
    """Machine-readable output goes to plain stdout, never through rich."""
    print(json.dumps(data, indent=2, sort_keys=True, default=str))
