"""
CLI utility helpers: consoles and flag parsing.
"""

from __future__ import annotations

import json
from typing import Any

import typer
from rich.console import Console
from rich.markup import escape

from refork.core.errors import ReforkError

console = Console()
err_console = Console(stderr=True)


def parse_thresholds(text: str | None) -> list[Any] | None:
    """Parse ``--refork-after``.

    Accepts a JSON list (``[50, [10, 20], null]``) or a comma-separated
    list of counts where ``none`` stops reforking (``50,100,none``).
    """
    if text is None:
        return None
    text = text.strip()
    if text.startswith("["):
        try:
            value = json.loads(text)
        except json.JSONDecodeError as e:
            raise typer.BadParameter(f"invalid JSON: {e}") from e
        if not isinstance(value, list):
            raise typer.BadParameter("expected a list")
        return value

    thresholds: list[Any] = []
    for part in filter(None, (piece.strip() for piece in text.split(","))):
        if part.lower() in ("none", "null", "-"):
            thresholds.append(None)
            continue
        try:
            thresholds.append(int(part))
        except ValueError as e:
            raise typer.BadParameter(f"not a request count: {part!r}") from e
    return thresholds


def fail(error: ReforkError, code: int = 2) -> typer.Exit:
    """Print *error* to stderr and return the Exit to raise."""
    err_console.print(f"[bold red]Error[/bold red] ({error.category.value}): {escape(error.message)}", soft_wrap=True)
    return typer.Exit(code=code)
