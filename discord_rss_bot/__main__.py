"""Allow running the bot with ``python -m discord_rss_bot``."""

from .bot import cli

cli()
