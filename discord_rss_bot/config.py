"""Configuration management for Discord RSS Bot."""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .models import IMAGE_KINDS, TEXT_RULE_NAMES, FeedDefinition

DEFAULT_HOME = "~/.local/share/discord-rss-bot"
DEFAULT_CACHE = "~/.cache/discord-rss"

EXAMPLE_FEED = {
    "name": "Phoronix-News",
    "source_url": "https://www.phoronix.com/rss.php",
    "destination_urls": [],
    "display_color": 6523985,
    "avatar_url": "https://raw.githubusercontent.com/simoniz0r/discord-rss-bot/master/avatars/phoronix.png",
}


class ConfigError(ValueError):
    """Raised for unusable configuration values or feed definition files."""


@dataclass
class FetchConfig:
    """Configuration for the feed fetcher."""

    char_limit: int = 1800
    max_retries: int = 3
    backoff_base: float = 3.0
    timeout: float = 30.0
    reader: str = "feedparser"
    reversed_feeds: list[str] = field(default_factory=list)


@dataclass
class DeliveryConfig:
    """Configuration for webhook delivery."""

    retry_attempts: int = 3
    retry_delay: float = 2.0
    rate_limit_default: float = 5.0
    destination_delay: float = 1.0
    timeout: float = 30.0
    default_destinations: list[str] = field(default_factory=list)


@dataclass
class ScheduleConfig:
    """Configuration for the poll loop."""

    interval: int = 45
    heartbeat_interval: int = 10
    max_workers: int = 1


def split_urls(value: Any) -> list[str]:
    """Normalize a comma-joined string or a list into a clean URL list."""
    if not value:
        return []
    if isinstance(value, str):
        value = value.split(",")
    return [url.strip() for url in value if url and url.strip()]


def parse_color(value: Any) -> int:
    """Parse a decimal or '#rrggbb' color into an integer."""
    if value in (None, ""):
        return 0
    if isinstance(value, bool):
        raise ConfigError(f"Invalid color value: {value!r}")
    if isinstance(value, int):
        return value
    text = str(value).strip()
    try:
        if text.startswith("#"):
            return int(text[1:], 16)
        if text.lower().startswith("0x"):
            return int(text, 16)
        return int(text)
    except ValueError as e:
        raise ConfigError(f"Invalid color value: {value!r}") from e


def parse_flag(value: Any, key: str) -> bool:
    """Parse a JSON boolean, also accepting "true"/"false" style strings."""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("true", "yes", "1"):
        return True
    if text in ("false", "no", "0", ""):
        return False
    raise ConfigError(f"Invalid {key} value: {value!r}")


def parse_choice(value: Any, key: str, choices: tuple[str, ...]) -> str | None:
    """Return value if it is one of choices, None when unset."""
    if value in (None, ""):
        return None
    if value not in choices:
        raise ConfigError(
            f"Invalid {key} value: {value!r} (expected one of {', '.join(choices)})"
        )
    return value


def load_feed_definition(path: Path) -> FeedDefinition:
    """Load one feed definition file.

    Required fields are not checked here; see FeedDefinition.validate().

    Raises:
        ConfigError: If the file is not a JSON object or a field has a bad type
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in feed file {path.name}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read feed file {path.name}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Feed file {path.name} must contain a JSON object")

    try:
        return FeedDefinition(
            name=str(data.get("name") or "").strip(),
            source_url=str(data.get("source_url") or "").strip(),
            destination_urls=split_urls(data.get("destination_urls")),
            display_color=parse_color(data.get("display_color")),
            avatar_url=str(data.get("avatar_url") or ""),
            reverse=parse_flag(data.get("reverse"), "reverse"),
            text_rule=parse_choice(data.get("text_rule"), "text_rule", TEXT_RULE_NAMES),
            image_kind=parse_choice(data.get("image_kind"), "image_kind", IMAGE_KINDS),
            definition_file=str(path),
        )
    except ConfigError as e:
        raise ConfigError(f"Feed file {path.name}: {e}") from e


class Config:
    """Main configuration manager.

    Values come from environment variables, then from an optional
    config.json in the home directory, then from the defaults above.
    """

    FEEDS_DIR = "feeds"
    CONFIG_FILE = "config.json"
    STATUS_FILE = "status.json"
    EXAMPLE_FEED_FILE = "Example-Feed.json"

    def __init__(self, home: str | None = None, cache_dir: str | None = None):
        """Initialize configuration from the environment and config.json."""
        self.home = Path(
            home or os.getenv("DISCORD_RSS_HOME", DEFAULT_HOME)
        ).expanduser()
        self.cache_dir = Path(
            cache_dir or os.getenv("DISCORD_RSS_CACHE", DEFAULT_CACHE)
        ).expanduser()
        self.feeds_dir = self.home / self.FEEDS_DIR
        self.status_file = self.home / self.STATUS_FILE
        self.file_settings = self._load_config_file()

        self.log_level = self._get("LOG_LEVEL", "INFO")
        self.log_file = self._get("LOG_FILE", None)

    def _load_config_file(self) -> dict[str, Any]:
        config_file = self.home / self.CONFIG_FILE
        if not config_file.exists():
            return {}
        try:
            with open(config_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in {config_file}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{config_file} must contain a JSON object")
        # Keys are matched case-insensitively against the env variable names
        return {str(key).upper(): value for key, value in data.items()}

    def _get(self, key: str, default: Any) -> Any:
        value = os.getenv(key)
        if value is not None and value != "":
            return value
        return self.file_settings.get(key, default)

    def _get_number(self, key: str, default: float, cast=int):
        value = self._get(key, default)
        try:
            number = cast(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"{key} must be a number, got {value!r}") from e
        if number < 0:
            raise ConfigError(f"{key} must not be negative, got {value!r}")
        return number

    def get_fetch_config(self) -> FetchConfig:
        """Get feed fetcher configuration."""
        reader = str(self._get("FEED_READER", "feedparser")).lower()
        if reader not in ("feedparser", "rsstail"):
            raise ConfigError(f"Unknown FEED_READER: {reader}")
        return FetchConfig(
            char_limit=self._get_number("CHARACTER_LIMIT", 1800),
            max_retries=max(1, self._get_number("MAX_FETCH_RETRIES", 3)),
            timeout=self._get_number("FETCH_TIMEOUT", 30.0, float),
            reader=reader,
            reversed_feeds=split_urls(self._get("REVERSED_FEEDS", "")),
        )

    def get_delivery_config(self) -> DeliveryConfig:
        """Get webhook delivery configuration."""
        return DeliveryConfig(
            retry_attempts=max(1, self._get_number("MAX_DELIVERY_RETRIES", 3)),
            timeout=self._get_number("DELIVERY_TIMEOUT", 30.0, float),
            default_destinations=split_urls(self._get("WEBHOOK_URL", "")),
        )

    def get_schedule_config(self) -> ScheduleConfig:
        """Get poll loop configuration."""
        return ScheduleConfig(
            interval=self._get_number("RSS_CHECK_TIME", 45),
            heartbeat_interval=max(1, self._get_number("HEARTBEAT_INTERVAL", 10)),
            max_workers=max(1, self._get_number("MAX_WORKERS", 1)),
        )

    def get_description_limit(self) -> int:
        return self._get_number("DESCRIPTION_LIMIT", 1100)

    def feed_files(self) -> list[Path]:
        """List feed definition files in a stable order."""
        if not self.feeds_dir.is_dir():
            return []
        return sorted(
            path
            for path in self.feeds_dir.iterdir()
            if path.is_file() and path.suffix == ".json"
        )

    def get_feed_definitions(self) -> tuple[list[FeedDefinition], list[str]]:
        """Load every feed definition for this cycle.

        Returns:
            Tuple of (definitions, errors) where errors describes the files
            that could not be loaded at all
        """
        feeds = []
        errors = []
        for path in self.feed_files():
            try:
                feeds.append(load_feed_definition(path))
            except ConfigError as e:
                errors.append(str(e))
        return feeds, errors

    def ensure_directories(self) -> None:
        """Create the home, feeds and cache directories if missing."""
        self.feeds_dir.mkdir(parents=True, exist_ok=True)
        self.cache_dir.mkdir(parents=True, exist_ok=True)

    def write_example_feed(self) -> Path:
        """Write a template feed definition next to the feeds directory."""
        example = self.home / self.EXAMPLE_FEED_FILE
        with open(example, "w", encoding="utf-8") as f:
            json.dump(EXAMPLE_FEED, f, indent=2)
            f.write("\n")
        return example
