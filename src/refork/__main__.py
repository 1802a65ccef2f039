"""Allow ``python -m refork``."""

from refork.cli.app import app

app()
