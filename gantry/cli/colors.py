"""
Styled output primitives built on Click.

All output degrades gracefully on non-colour terminals (click.style
handles NO_COLOR / TERM=dumb).
"""

from __future__ import annotations

from typing import Sequence

import click

_CHECK = "✓"
_CROSS = "✗"


def success(message: str) -> None:
    click.echo(click.style(message, fg="green"))


def error(message: str) -> None:
    click.echo(click.style(message, fg="red"), err=True)


def info(message: str) -> None:
    click.echo(click.style(message, fg="cyan"))


def kv(key: str, value: str, width: int = 12) -> None:
    """Aligned key-value pair."""
    click.echo(f"  {click.style(key.ljust(width), dim=True)} {value}")


def table(headers: Sequence[str], rows: Sequence[Sequence[str]]) -> None:
    """Minimal aligned table."""
    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(str(cell)))
    click.echo("  " + "  ".join(click.style(h.ljust(widths[i]), bold=True) for i, h in enumerate(headers)))
    click.echo("  " + "  ".join("-" * w for w in widths))
    for row in rows:
        click.echo("  " + "  ".join(str(cell).ljust(widths[i]) for i, cell in enumerate(row)))
