"""
CLI layer for refork.

Provides a Typer application that parses flags, loads configuration and
hands over to the control loop.  All supervision logic lives in
``refork.supervision``; this package handles only terminal transport.

Entry point::

    refork --help
"""

from refork.cli.app import app

__all__ = ["app"]
