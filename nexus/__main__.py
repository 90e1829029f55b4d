"""Allow ``python -m nexus``."""

from nexus.cli.commands import app

app()
