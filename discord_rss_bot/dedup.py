"""Change detection module for Discord RSS Bot.

Each feed has one cache file holding the last detected-new entry, in the
same text shape the reader produced. The cached Link line is the only key
used to decide whether a freshly fetched entry is new.
"""

import os
import tempfile
from pathlib import Path
from urllib.parse import quote

from .logging_config import create_execution_logger
from .models import FetchedItem
from .rss import parse_entry_text

# Diagnostic lines this program may add to reader output
ANNOTATION_PREFIX = "#discord-rss-bot:"


class ChangeDetector:
    """Owns the per-feed cache files and the new/unchanged decision."""

    def __init__(self, cache_dir: str | Path, execution_id: str | None = None):
        """Initialize the ChangeDetector.

        Args:
            cache_dir: Directory holding one cache file per feed name
            execution_id: Execution ID for logging context
        """
        self.cache_dir = Path(cache_dir)
        self.logger = create_execution_logger("change_detector", execution_id)

    def cache_path(self, feed_name: str) -> Path:
        """Return the cache file path for a feed name.

        The name is percent-encoded, so distinct feed names always map to
        distinct files. A leading '.' is encoded as well, keeping cache
        files apart from '.', '..' and the '.tmp.' write files.

        Raises:
            ValueError: If the feed name is empty
        """
        if not feed_name:
            raise ValueError("Feed name must not be empty")
        safe_name = quote(feed_name, safe="")
        if safe_name.startswith("."):
            safe_name = "%2E" + safe_name[1:]
        return self.cache_dir / safe_name

    def load(self, feed_name: str) -> str | None:
        """Return the cached entry text for a feed, or None if absent."""
        path = self.cache_path(feed_name)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def cached_link(self, feed_name: str) -> str | None:
        """Return the Link of the cached entry, or None."""
        text = self.load(feed_name)
        if text is None:
            return None
        entry = parse_entry_text(text)
        if entry is None:
            self.logger.warning(
                f"Cache for {feed_name} has no Title line, treating as empty",
                feed_name=feed_name,
            )
            return None
        return entry.link

    def is_new(self, feed_name: str, fetched: FetchedItem) -> bool:
        """Decide whether a fetched entry differs from the cached one.

        Only the link is compared. An empty link is never new; a missing
        cache makes any non-empty link new.
        """
        if not fetched.link:
            self.logger.debug("Fetched entry has no link", feed_name=feed_name)
            return False
        cached = self.cached_link(feed_name)
        is_new = fetched.link != cached
        self.logger.debug(
            "Checked for new entry",
            feed_name=feed_name,
            cached_link=cached,
            fetched_link=fetched.link,
            is_new=is_new,
        )
        return is_new

    def record_delivered(self, feed_name: str, fetched: FetchedItem) -> Path:
        """Atomically replace the cache file for a feed.

        The entry is written to a temporary file in the cache directory and
        renamed over the old file, so readers only ever see a complete cache.

        Raises:
            OSError: If the cache could not be written
        """
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        path = self.cache_path(feed_name)
        content = strip_annotations(fetched.raw_text)

        fd, tmp_name = tempfile.mkstemp(
            prefix=f".tmp.{path.name}.", dir=self.cache_dir
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except OSError as e:
            self.logger.error(
                f"Error writing cache for {feed_name}: {e}",
                feed_name=feed_name,
                error=str(e),
            )
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

        self.logger.info(
            "Stored entry in cache",
            feed_name=feed_name,
            item_title=fetched.title,
            link=fetched.link,
        )
        return path


def strip_annotations(text: str) -> str:
    """Drop tooling annotation lines, keep the reader output untouched."""
    lines = [
        line for line in text.splitlines() if not line.startswith(ANNOTATION_PREFIX)
    ]
    return "\n".join(lines).rstrip("\n") + "\n"
