"""Content normalization module for Discord RSS Bot.

Turns a cached entry into the fields of an embed: a clean title, a UTC
timestamp, a length-bounded description and an image. Cleanup of the
description is an ordered list of small line transforms; which transforms
run is selected per feed name.
"""

import re
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Callable

from bs4 import BeautifulSoup, Comment, NavigableString, Tag
from dateutil import parser as date_parser

from .logging_config import create_execution_logger
from .models import PLACEHOLDER_IMAGE_URL, FeedDefinition, NormalizedEntry
from .rss import parse_entry_text

TITLE_LIMIT = 255
DESCRIPTION_LIMIT = 1100
TRUNCATION_MARKER = " [...]"

PAID_MARKER = "[$]"
REPLY_MARKER = "Re:"
NEW_BUG_MARKER = "New:"

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b-\x1f\x7f-\x9f]")
_ATTRIBUTE_BLOCK = re.compile(r"\{[^{}]*\}")
_MARKDOWN_IMAGE = re.compile(r"!\[[^\]]*\]\([^)]*\)")
_SEPARATOR_LINE = re.compile(r"^\s*(?:[-*_=]\s*){3,}$")
_IMAGE_CANDIDATE = re.compile(r"http.*\.(?:png|jpg)")
_ANCHOR_IN_PARENS = re.compile(r"\(\s*<a\s[^>]*?href=[\"']([^\"']+)[\"']", re.I)

_BLOCK_TAGS = {
    "p", "div", "section", "article", "header", "footer", "figure",
    "figcaption", "blockquote", "pre", "table", "tr", "ul", "ol", "dl",
    "dt", "dd", "li",
}
_HEADING_TAGS = {"h1": 1, "h2": 2, "h3": 3, "h4": 4, "h5": 5, "h6": 6}


@dataclass(frozen=True)
class ReleaseOverride:
    """Fixed announcement used when a title matches a release pattern."""

    pattern: str
    description: str
    avatar_url: str | None = None

    def apply(self, title: str) -> str | None:
        """Return the announcement for a matching title, else None."""
        match = re.search(self.pattern, title)
        if not match:
            return None
        return self.description.format(*match.groups())


@dataclass(frozen=True)
class FeedRule:
    """Per-feed cleanup and filtering behaviour."""

    text_rule: str = "default"
    image_kind: str = "thumbnail"
    skip_replies: bool = False
    require_new_marker: bool = False
    release_override: ReleaseOverride | None = None


FEED_RULES: dict[str, FeedRule] = {
    "xkcd": FeedRule(image_kind="image"),
    "LWN-net": FeedRule(text_rule="loose"),
    "Phoronix-News": FeedRule(text_rule="loose"),
    "LKML": FeedRule(skip_replies=True),
    "KDE-Bugs": FeedRule(require_new_marker=True),
    "Reddit-Unixporn": FeedRule(text_rule="image_only", image_kind="image"),
    "openSUSE-Tumbleweed": FeedRule(
        release_override=ReleaseOverride(
            pattern=r"^New Tumbleweed snapshot (\d{8}) released!?",
            description=(
                "Tumbleweed snapshot {0} is now available. "
                "Run 'zypper dup' to update."
            ),
            avatar_url="https://raw.githubusercontent.com/simoniz0r/discord-rss-bot/master/avatars/opensuse.png",
        )
    ),
}


def rule_for(feed: FeedDefinition) -> FeedRule:
    """Look up the rule for a feed, applying overrides from its definition."""
    rule = FEED_RULES.get(feed.name, FeedRule())
    if feed.text_rule:
        rule = replace(rule, text_rule=feed.text_rule)
    if feed.image_kind:
        rule = replace(rule, image_kind=feed.image_kind)
    return rule


# ----------------------------------------------------------------------
# Markup conversion
# ----------------------------------------------------------------------


def html_to_markdown(html: str) -> str:
    """Convert an HTML fragment into lightly formatted markdown text.

    Images become ![alt](src), links [text](href), block elements and <br>
    become line breaks and <hr> a '---' line. Comments are kept on their
    own lines so later steps can drop them.
    """
    if not html or not html.strip():
        return ""
    if "<" not in html and "&" not in html:
        return html.strip()

    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()

    text = _render_children(soup)
    lines = [" ".join(line.split()) for line in text.split("\n")]
    return "\n".join(lines).strip("\n")


def _render_children(node) -> str:
    return "".join(_render(child) for child in node.children)


def _render(node) -> str:
    if isinstance(node, Comment):
        return f"\n<!--{node.strip()}-->\n"
    if isinstance(node, NavigableString):
        return str(node).replace("\n", " ")
    if not isinstance(node, Tag):
        return ""

    name = node.name
    if name == "br":
        return "\n"
    if name == "hr":
        return "\n---\n"
    if name == "img":
        src = node.get("src", "")
        return f"![{node.get('alt', '')}]({src})" if src else ""

    inner = _render_children(node)
    if name == "a":
        href = node.get("href")
        if href and inner.strip():
            return f"[{inner.strip()}]({href})"
        return inner
    if name in ("strong", "b"):
        return f"**{inner.strip()}**" if inner.strip() else ""
    if name in ("em", "i"):
        return f"*{inner.strip()}*" if inner.strip() else ""
    if name in _HEADING_TAGS:
        return f"\n{'#' * _HEADING_TAGS[name]} {inner.strip()}\n"
    if name == "li":
        return f"\n- {inner.strip()}\n"
    if name in _BLOCK_TAGS:
        return f"\n{inner}\n"
    return inner


# ----------------------------------------------------------------------
# Line transforms. Each takes and returns a list of lines.
# ----------------------------------------------------------------------


def drop_comment_lines(lines: list[str]) -> list[str]:
    """Remove HTML comment lines and ':::' fence lines."""
    return [
        line
        for line in lines
        if not line.lstrip().startswith("<!-") and not line.lstrip().startswith(":::")
    ]


def strip_backslashes(lines: list[str]) -> list[str]:
    """Remove markdown escape backslashes."""
    return [line.replace("\\", "") for line in lines]


def strip_attribute_blocks(lines: list[str]) -> list[str]:
    """Remove '{...}' attribute blocks."""
    return [_ATTRIBUTE_BLOCK.sub("", line) for line in lines]


def collapse_images(lines: list[str]) -> list[str]:
    """Remove embedded markdown images; the embed carries its own image."""
    return [_MARKDOWN_IMAGE.sub("", line) for line in lines]


def strip_separators(lines: list[str]) -> list[str]:
    """Remove horizontal rules and dangling '[' lines left by image links."""
    return [
        line
        for line in lines
        if not _SEPARATOR_LINE.match(line) and line.strip() != "["
    ]


def fix_watch_video_links(lines: list[str]) -> list[str]:
    """Restore the '[' of 'Watch video' links split by image removal."""
    return [
        "[" + line if line.startswith("Watch video](") else line for line in lines
    ]


def drop_blank_lines(lines: list[str]) -> list[str]:
    return [line for line in lines if line.strip()]


def squeeze_blank_lines(lines: list[str]) -> list[str]:
    """Keep paragraph breaks but never two blank lines in a row."""
    result: list[str] = []
    for line in lines:
        if not line.strip() and (not result or not result[-1].strip()):
            continue
        result.append(line.rstrip() if line.strip() else "")
    while result and not result[-1]:
        result.pop()
    return result


def sanitize_text(text: str) -> str:
    """Make text safe to embed in one JSON string value.

    Tabs become spaces, carriage returns and other control characters are
    removed and double quotes become single quotes. Newlines are kept.
    """
    text = text.replace("\t", " ").replace("\r", "").replace('"', "'")
    return _CONTROL_CHARS.sub("", text)


TEXT_RULES: dict[str, list[Callable[[list[str]], list[str]]]] = {
    "default": [
        drop_comment_lines,
        strip_backslashes,
        strip_attribute_blocks,
        collapse_images,
        strip_separators,
        fix_watch_video_links,
        drop_blank_lines,
    ],
    "loose": [
        drop_comment_lines,
        strip_backslashes,
        strip_attribute_blocks,
        collapse_images,
        fix_watch_video_links,
        squeeze_blank_lines,
    ],
}


def clean_description(markdown: str, text_rule: str = "default") -> str:
    """Run the line transforms of a text rule over converted markdown."""
    steps = TEXT_RULES.get(text_rule, TEXT_RULES["default"])
    lines = markdown.split("\n")
    for step in steps:
        lines = step(lines)
    return sanitize_text("\n".join(line.strip() for line in lines)).strip()


def truncate_description(
    text: str, limit: int = DESCRIPTION_LIMIT, marker: str = TRUNCATION_MARKER
) -> str:
    """Cut text at the last whitespace before limit and append marker.

    Text within the limit is returned unchanged.
    """
    if len(text) <= limit:
        return text
    if text[limit].isspace():
        cut = text[:limit]
    else:
        cut = text[:limit]
        boundary = max(cut.rfind(" "), cut.rfind("\n"))
        if boundary > 0:
            cut = cut[:boundary]
    return cut.rstrip() + marker


def clean_title(title: str) -> str:
    """Trim a title to 255 characters with double quotes made single."""
    title = " ".join(sanitize_text(title).split())
    return title[:TITLE_LIMIT]


def parse_timestamp(value: str | None, now: Callable[[], datetime]) -> datetime:
    """Parse a feed date into an aware UTC datetime, falling back to now."""
    if value:
        try:
            parsed = date_parser.parse(value)
        except (ValueError, OverflowError, TypeError):
            parsed = None
        if parsed is not None:
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=UTC)
            return parsed.astimezone(UTC)
    return now().astimezone(UTC)


# ----------------------------------------------------------------------
# Images
# ----------------------------------------------------------------------


def find_image_candidate(text: str) -> str:
    """Pick an image URL out of a secondary fetch of the feed."""
    for line in text.splitlines():
        match = _IMAGE_CANDIDATE.search(line)
        if not match:
            continue
        candidate = match.group(0)
        if "youtube" in candidate:
            fields = candidate.split('"')
            return fields[2] if len(fields) > 2 else ""
        tokens = candidate.split()
        return tokens[0].replace('"', "") if tokens else ""
    return ""


def resolve_image(candidate: str, image_kind: str = "thumbnail") -> tuple[str, str]:
    """Return (url, kind), substituting the placeholder for bad candidates."""
    if not candidate or "@" in candidate:
        return PLACEHOLDER_IMAGE_URL, "thumbnail"
    return candidate, image_kind


def extract_anchor_image(body: str) -> str:
    """Pull the quoted URL out of a '(<a href="...">' anchor."""
    match = _ANCHOR_IN_PARENS.search(body)
    return match.group(1) if match else ""


class Normalizer:
    """Builds NormalizedEntry values from cached entries."""

    def __init__(
        self,
        description_limit: int = DESCRIPTION_LIMIT,
        image_lookup: Callable[[FeedDefinition], str] | None = None,
        now: Callable[[], datetime] | None = None,
        execution_id: str | None = None,
    ):
        """Initialize the Normalizer.

        Args:
            description_limit: Maximum description length before truncation
            image_lookup: Returns the text of a secondary fetch of a feed
            now: Clock used when an entry has no usable date
            execution_id: Execution ID for logging context
        """
        self.description_limit = description_limit
        self.image_lookup = image_lookup
        self.now = now or (lambda: datetime.now(UTC))
        self.logger = create_execution_logger("normalizer", execution_id)

    def normalize(self, feed: FeedDefinition, cached_text: str) -> NormalizedEntry:
        """Normalize the cached entry of a feed.

        Raises:
            ValueError: If the cached text has no Title line
        """
        entry = parse_entry_text(cached_text)
        if entry is None:
            raise ValueError(f"Cached entry for {feed.name} has no Title line")

        rule = rule_for(feed)
        title = clean_title(entry.title)
        timestamp = parse_timestamp(entry.date, self.now)

        image_url = ""
        image_kind = rule.image_kind
        if rule.text_rule == "image_only":
            image_url = extract_anchor_image(entry.body)

        if image_url:
            description = ""
        else:
            text_rule = "default" if rule.text_rule == "image_only" else rule.text_rule
            description = clean_description(html_to_markdown(entry.body), text_rule)
            description = truncate_description(description, self.description_limit)

        if not image_url:
            candidate = find_image_candidate(self._lookup(feed))
            image_url, image_kind = resolve_image(candidate, rule.image_kind)

        avatar_url = None
        if rule.release_override:
            announcement = rule.release_override.apply(title)
            if announcement is not None:
                self.logger.info(
                    "Using release announcement", feed_name=feed.name, item_title=title
                )
                description = announcement
                avatar_url = rule.release_override.avatar_url

        return NormalizedEntry(
            title=title,
            link=entry.link,
            timestamp=timestamp,
            description=description,
            image_url=image_url,
            image_kind=image_kind,
            avatar_url=avatar_url,
        )

    def _lookup(self, feed: FeedDefinition) -> str:
        if self.image_lookup is None:
            return ""
        try:
            return self.image_lookup(feed) or ""
        except Exception as e:
            self.logger.warning(
                f"Image lookup failed for {feed.name}: {e}",
                feed_name=feed.name,
                error=str(e),
            )
            return ""

    def skip_reason(self, feed: FeedDefinition, entry: NormalizedEntry) -> str | None:
        """Return why an entry must not be delivered, or None to deliver it."""
        rule = rule_for(feed)
        if entry.title.startswith(PAID_MARKER):
            return "paid article"
        if rule.skip_replies and REPLY_MARKER in entry.title:
            return "reply post"
        if rule.require_new_marker and NEW_BUG_MARKER not in entry.title:
            return "not a new bug"
        return None
