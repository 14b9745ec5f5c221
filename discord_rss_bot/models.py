"""Data models for Discord RSS Bot."""

import json
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

PLACEHOLDER_IMAGE_URL = "https://dummyimage.com/1x1/000/fff"
DEFAULT_USERNAME = "Rss Feed"

IMAGE_KINDS = ("image", "thumbnail")
TEXT_RULE_NAMES = ("default", "loose", "image_only")


@dataclass
class FeedDefinition:
    """A single configured feed, loaded once per poll cycle."""

    name: str
    source_url: str
    destination_urls: list[str] = field(default_factory=list)
    display_color: int = 0
    avatar_url: str = ""
    reverse: bool = False
    text_rule: str | None = None
    image_kind: str | None = None
    definition_file: str | None = None

    @property
    def display_name(self) -> str:
        """Name shown as the embed author ('-' become spaces)."""
        return self.name.replace("-", " ")

    def validate(self) -> list[str]:
        """Return the list of problems that make this definition unusable."""
        problems = []
        if not self.name or not self.name.strip():
            problems.append("missing name")
        if not self.source_url or not self.source_url.strip():
            problems.append("missing source_url")
        return problems


@dataclass
class FetchedItem:
    """Represents the single newest entry extracted from a feed."""

    title: str
    link: str
    published_at: str | None
    raw_body: str
    raw_text: str


@dataclass
class FetchSuccess:
    item: FetchedItem
    attempts: int = 1
    ok = True


@dataclass
class FetchTimeout:
    reason: str
    attempts: int = 1
    ok = False


@dataclass
class FetchTransient:
    reason: str
    attempts: int = 1
    ok = False


@dataclass
class FetchInvalid:
    reason: str
    attempts: int = 1
    ok = False


FetchResult = FetchSuccess | FetchTimeout | FetchTransient | FetchInvalid


@dataclass
class NormalizedEntry:
    """Represents a cached item after cleanup, ready to become a payload."""

    title: str
    link: str
    timestamp: datetime
    description: str
    image_url: str
    image_kind: str  # "image" or "thumbnail"
    avatar_url: str | None = None


@dataclass
class NotificationPayload:
    """One embed notification for one destination."""

    title: str
    url: str
    description: str
    color: int
    timestamp_utc: str
    image_kind: str
    image_url: str
    author_name: str
    author_url: str
    author_icon_url: str
    username: str = DEFAULT_USERNAME
    avatar_url: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Build the webhook document."""
        embed = {
            "title": self.title,
            "url": self.url,
            "description": self.description,
            "color": self.color,
            "timestamp": self.timestamp_utc,
            self.image_kind: {"url": self.image_url},
            "author": {
                "name": self.author_name,
                "url": self.author_url,
                "icon_url": self.author_icon_url,
            },
        }
        return {
            "username": self.username,
            "avatar_url": self.avatar_url,
            "embeds": [embed],
        }

    def to_json(self) -> str:
        """Serialize the webhook document as a single-line JSON string."""
        return json.dumps(self.to_dict(), ensure_ascii=False)


@dataclass
class Delivered:
    status_code: int
    attempts: int = 1
    ok = True


@dataclass
class DeliveryFailure:
    reason: str
    status_code: int | None = None
    attempts: int = 1
    permanent: bool = False
    ok = False


DeliveryResult = Delivered | DeliveryFailure


@dataclass
class CycleStatistics:
    """Per-cycle counters, used only for reporting."""

    total: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    skipped: int = 0
    delivered: int = 0
    delivery_failures: int = 0
    _lock: threading.Lock = field(
        default_factory=threading.Lock, repr=False, compare=False
    )

    def increment(self, counter: str, amount: int = 1) -> None:
        with self._lock:
            setattr(self, counter, getattr(self, counter) + amount)

    def as_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "failed": self.failed,
            "skipped": self.skipped,
            "delivered": self.delivered,
            "delivery_failures": self.delivery_failures,
        }
