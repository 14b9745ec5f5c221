"""Feed fetching module for Discord RSS Bot.

The fetcher never parses feed formats itself. A reader backend turns a feed
URL into a small text block, one entry per block:

    Title: <title>
    Link: <link>
    Pub date: <date>
    Description: <html body, possibly over several lines>

and the fetcher validates that block, retrying with a progressive backoff.
"""

import re
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from typing import Callable

import feedparser
import requests

from .config import FetchConfig
from .logging_config import create_execution_logger
from .models import (
    FetchedItem,
    FetchInvalid,
    FetchResult,
    FetchSuccess,
    FetchTimeout,
    FetchTransient,
)

TITLE_RE = re.compile(r"^Title:\s?(.*)$")
LINK_RE = re.compile(r"^Link:\s?(.*)$")
DATE_RE = re.compile(r"^Pub.date:\s?(.*)$")
DESCRIPTION_LABEL = "Description:"

USER_AGENT = "Discord-RSS-Bot/1.0 (RSS to Discord webhook bot)"


class FeedReaderError(Exception):
    """The reader backend failed to produce output for a feed."""


class FeedReaderTimeout(FeedReaderError):
    """The reader backend did not finish within its timeout."""


@dataclass
class RawEntry:
    """Structured view of one extracted entry."""

    title: str
    link: str = ""
    date: str | None = None
    body_lines: list[str] = field(default_factory=list)

    @property
    def body(self) -> str:
        return "\n".join(self.body_lines)


def parse_entry_text(text: str) -> RawEntry | None:
    """Split an extracted entry into its metadata lines and body.

    Only the first Title/Link/Pub date line counts. Returns None when the
    first non-blank line is not a non-empty Title line.
    """
    lines = text.splitlines()
    first = next((line for line in lines if line.strip()), None)
    if first is None:
        return None
    title_match = TITLE_RE.match(first.strip())
    if not title_match or not title_match.group(1).strip():
        return None

    entry = RawEntry(title=title_match.group(1).strip())
    seen_title = seen_link = seen_date = False
    for line in lines:
        if TITLE_RE.match(line):
            if not seen_title:
                seen_title = True
                continue
        elif LINK_RE.match(line):
            if not seen_link:
                entry.link = LINK_RE.match(line).group(1).strip()
                seen_link = True
                continue
        elif DATE_RE.match(line):
            if not seen_date:
                entry.date = DATE_RE.match(line).group(1).strip() or None
                seen_date = True
                continue
        if line.startswith(DESCRIPTION_LABEL):
            line = line[len(DESCRIPTION_LABEL):].lstrip()
        entry.body_lines.append(line)

    return entry


def _single_line(value: str) -> str:
    return " ".join(str(value or "").split())


def render_entry(entry, char_limit: int | None = None) -> str:
    """Render a feedparser entry in the extraction text format."""
    title = _single_line(entry.get("title", ""))
    link = _single_line(entry.get("link", ""))
    published = _single_line(entry.get("published") or entry.get("updated") or "")

    description = entry.get("summary") or entry.get("description") or ""
    if not description and entry.get("content"):
        description = entry["content"][0].get("value", "")
    if char_limit:
        description = description[:char_limit]

    lines = [f"Title: {title}"]
    if link:
        lines.append(f"Link: {link}")
    if published:
        lines.append(f"Pub date: {published}")
    lines.append(f"{DESCRIPTION_LABEL} {description}")
    return "\n".join(lines)


class FeedparserReader:
    """Reader backend built on requests and feedparser."""

    name = "feedparser"

    def __init__(self, session: requests.Session | None = None):
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": USER_AGENT})

    def available(self) -> bool:
        return True

    def read(
        self,
        url: str,
        limit: int = 1,
        reverse: bool = False,
        char_limit: int | None = None,
        timeout: float = 30.0,
    ) -> str:
        """Download a feed and render its newest (or oldest) entries.

        Raises:
            FeedReaderTimeout: If the download times out
            FeedReaderError: If the download fails
        """
        try:
            response = self.session.get(url, timeout=timeout)
            response.raise_for_status()
        except requests.Timeout as e:
            raise FeedReaderTimeout(f"Timed out after {timeout}s: {e}") from e
        except requests.RequestException as e:
            raise FeedReaderError(f"Download failed: {e}") from e

        feed = feedparser.parse(response.content)
        entries = list(feed.entries)
        if reverse:
            entries.reverse()
        return "\n".join(
            render_entry(entry, char_limit) for entry in entries[:limit]
        )


class RsstailReader:
    """Reader backend running the rsstail executable."""

    name = "rsstail"

    def __init__(self, executable: str = "rsstail"):
        self.executable = executable

    def available(self) -> bool:
        return shutil.which(self.executable) is not None

    def read(
        self,
        url: str,
        limit: int = 1,
        reverse: bool = False,
        char_limit: int | None = None,
        timeout: float = 30.0,
    ) -> str:
        """Run rsstail once for a feed.

        Raises:
            FeedReaderTimeout: If rsstail runs longer than timeout
            FeedReaderError: If rsstail is missing or exits non-zero
        """
        command = [self.executable, "-1pdlu", url, "-n", str(limit)]
        if char_limit:
            command += ["-b", str(char_limit)]
        if reverse:
            command.append("-r")

        try:
            completed = subprocess.run(
                command, capture_output=True, text=True, timeout=timeout
            )
        except subprocess.TimeoutExpired as e:
            raise FeedReaderTimeout(f"rsstail timed out after {timeout}s") from e
        except OSError as e:
            raise FeedReaderError(f"Cannot run {self.executable}: {e}") from e

        if completed.returncode != 0:
            raise FeedReaderError(
                f"rsstail exited with {completed.returncode}: "
                f"{completed.stderr.strip()[:200]}"
            )
        return completed.stdout


def create_reader(name: str):
    """Build the reader backend selected in configuration."""
    if name == "rsstail":
        return RsstailReader()
    return FeedparserReader()


class FeedFetcher:
    """Fetches the single newest entry of a feed with retry and validation."""

    def __init__(
        self,
        reader,
        config: FetchConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
        execution_id: str | None = None,
    ):
        """Initialize FeedFetcher.

        Args:
            reader: Reader backend (FeedparserReader or RsstailReader)
            config: Fetch configuration
            sleep: Function used for backoff waits
            execution_id: Execution ID for logging context
        """
        self.reader = reader
        self.config = config or FetchConfig()
        self.sleep = sleep
        self.logger = create_execution_logger("feed_fetcher", execution_id)

    def is_reversed(self, feed_name: str, reverse: bool = False) -> bool:
        return reverse or feed_name in self.config.reversed_feeds

    def fetch(
        self,
        source_url: str,
        feed_name: str,
        char_limit: int | None = None,
        timeout: float | None = None,
        reverse: bool = False,
    ) -> FetchResult:
        """Fetch and validate the newest entry of a feed.

        Never raises; failures are returned as FetchTimeout, FetchTransient
        or FetchInvalid once every attempt has been used.
        """
        char_limit = char_limit or self.config.char_limit
        timeout = timeout or self.config.timeout
        reverse = self.is_reversed(feed_name, reverse)
        max_attempts = self.config.max_retries

        result: FetchResult = FetchTransient("not attempted", attempts=0)
        for attempt in range(1, max_attempts + 1):
            result = self._attempt(source_url, feed_name, char_limit, timeout, reverse)
            result.attempts = attempt
            if result.ok:
                self.logger.debug(
                    "Fetched feed entry",
                    feed_name=feed_name,
                    item_title=result.item.title,
                    attempt=attempt,
                )
                return result

            if attempt < max_attempts:
                delay = self.config.backoff_base * attempt
                self.logger.warning(
                    f"Fetch attempt {attempt} for {feed_name} failed "
                    f"({result.reason}), retrying in {delay}s",
                    feed_name=feed_name,
                    attempt=attempt,
                    backoff_time=delay,
                )
                self.sleep(delay)

        self.logger.error(
            f"Fetch failed for {feed_name} after {max_attempts} attempts: "
            f"{result.reason}",
            feed_name=feed_name,
            failure=type(result).__name__,
        )
        return result

    def _attempt(
        self,
        source_url: str,
        feed_name: str,
        char_limit: int,
        timeout: float,
        reverse: bool,
    ) -> FetchResult:
        try:
            text = self.reader.read(
                source_url,
                limit=1,
                reverse=reverse,
                char_limit=char_limit,
                timeout=timeout,
            )
        except FeedReaderTimeout as e:
            return FetchTimeout(str(e))
        except FeedReaderError as e:
            return FetchTransient(str(e))
        except Exception as e:
            self.logger.error(
                f"Unexpected reader error for {feed_name}: {e}",
                feed_name=feed_name,
                error=str(e),
            )
            return FetchTransient(f"{type(e).__name__}: {e}")

        entry = parse_entry_text(text)
        if entry is None:
            return FetchInvalid("output does not start with a Title line")

        return FetchSuccess(
            FetchedItem(
                title=entry.title,
                link=entry.link,
                published_at=entry.date,
                raw_body=entry.body,
                raw_text=text.strip() + "\n",
            )
        )

    def fetch_raw(self, source_url: str, reverse: bool = False) -> str:
        """Secondary single-entry fetch, without length limit.

        Returns an empty string when the reader fails.
        """
        try:
            return self.reader.read(
                source_url,
                limit=1,
                reverse=reverse,
                char_limit=None,
                timeout=self.config.timeout,
            )
        except FeedReaderError as e:
            self.logger.warning(
                f"Secondary fetch failed for {source_url}: {e}", error=str(e)
            )
            return ""
