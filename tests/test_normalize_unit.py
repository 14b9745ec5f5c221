"""Unit tests for content normalization."""

from datetime import UTC, datetime

import pytest

from discord_rss_bot.models import PLACEHOLDER_IMAGE_URL, FeedDefinition, NormalizedEntry
from discord_rss_bot.normalize import (
    Normalizer,
    clean_description,
    clean_title,
    collapse_images,
    drop_comment_lines,
    extract_anchor_image,
    find_image_candidate,
    fix_watch_video_links,
    html_to_markdown,
    parse_timestamp,
    resolve_image,
    rule_for,
    sanitize_text,
    squeeze_blank_lines,
    strip_attribute_blocks,
    strip_separators,
    truncate_description,
)

FIXED_NOW = datetime(2025, 6, 1, 12, 0, 0, tzinfo=UTC)


def feed(name="Example-Feed", **kwargs):
    return FeedDefinition(name=name, source_url="https://example.com/feed", **kwargs)


def cached(title="Hello", link="https://x/1", date="Mon, 01 Jan 2024 00:00:00 GMT", body=""):
    lines = [f"Title: {title}", f"Link: {link}"]
    if date:
        lines.append(f"Pub date: {date}")
    lines.append(f"Description: {body}")
    return "\n".join(lines) + "\n"


def entry(title):
    return NormalizedEntry(
        title=title,
        link="https://x/1",
        timestamp=FIXED_NOW,
        description="",
        image_url=PLACEHOLDER_IMAGE_URL,
        image_kind="thumbnail",
    )


class TestHtmlToMarkdown:
    """Unit tests for the markup conversion step."""

    def test_blocks_images_links_and_rules(self):
        html = (
            '<p>Hello <b>world</b> and <a href="https://a.example">a link</a></p>'
            '<p><img src="https://img.example/a.png" alt="pic"></p><hr><p>Bye</p>'
        )

        assert html_to_markdown(html) == (
            "Hello **world** and [a link](https://a.example)\n\n"
            "![pic](https://img.example/a.png)\n\n---\n\nBye"
        )

    def test_entities_breaks_and_scripts(self):
        html = "Tom &amp; Jerry<br>next line<script>alert(1)</script>"

        assert html_to_markdown(html) == "Tom & Jerry\nnext line"

    def test_comments_kept_on_own_line(self):
        assert html_to_markdown("<p>Text</p><!-- hidden -->").split("\n")[-1] == "<!--hidden-->"

    def test_plain_text_passes_through(self):
        assert html_to_markdown("  just text  ") == "just text"
        assert html_to_markdown("") == ""


class TestLineTransforms:
    """Unit tests for each cleanup step in isolation."""

    def test_drop_comment_lines(self):
        assert drop_comment_lines(["a", "<!-- x -->", "::: note", "b"]) == ["a", "b"]

    def test_strip_attribute_blocks(self):
        assert strip_attribute_blocks(["[x](y){.class}", "plain"]) == ["[x](y)", "plain"]

    def test_collapse_images(self):
        assert collapse_images(["before ![a](b.png) after"]) == ["before  after"]

    def test_strip_separators(self):
        lines = ["text", "---", "* * *", "[", "___", "a - b"]

        assert strip_separators(lines) == ["text", "a - b"]

    def test_fix_watch_video_links(self):
        assert fix_watch_video_links(["Watch video](https://v)"]) == ["[Watch video](https://v)"]

    def test_squeeze_blank_lines(self):
        assert squeeze_blank_lines(["", "a", "", "", "b", ""]) == ["a", "", "b"]

    def test_sanitize_text(self):
        assert sanitize_text('say "hi"\tnow\r\n\x00\x1b[0m') == "say 'hi' now\n[0m"


class TestDescriptionRules:
    """Unit tests for the per-feed text rules."""

    HTML = (
        "<p>First paragraph</p><!-- ad --><hr>"
        '<p><img src="https://img/x.png"></p><p>Second "quoted" paragraph</p>'
    )

    def test_default_rule_reflows_to_lines(self):
        result = clean_description(html_to_markdown(self.HTML), "default")

        assert result == "First paragraph\nSecond 'quoted' paragraph"

    def test_loose_rule_keeps_breaks_and_separators(self):
        result = clean_description(html_to_markdown(self.HTML), "loose")

        assert result == "First paragraph\n\n---\n\nSecond 'quoted' paragraph"

    def test_unknown_rule_falls_back_to_default(self):
        assert clean_description("a\n\n---\nb", "nonexistent") == "a\nb"

    def test_rule_table_and_overrides(self):
        assert rule_for(feed("xkcd")).image_kind == "image"
        assert rule_for(feed("LKML")).skip_replies is True
        assert rule_for(feed("Unknown")).text_rule == "default"
        assert rule_for(feed("Unknown", text_rule="loose")).text_rule == "loose"


class TestTruncation:
    """Unit tests for description length governance."""

    def test_long_text_cut_at_whitespace_with_marker(self):
        text = ("word " * 300).strip()

        result = truncate_description(text, limit=1100)

        assert result.endswith(" [...]")
        assert len(result) <= 1100 + len(" [...]")
        assert result[: -len(" [...]")].endswith("word")

    def test_short_text_unchanged(self):
        text = "short description"

        assert truncate_description(text, limit=1100) == text

    def test_text_exactly_at_limit_unchanged(self):
        text = "a" * 1100

        assert truncate_description(text, limit=1100) == text

    def test_text_without_whitespace_hard_cut(self):
        result = truncate_description("a" * 2000, limit=1100)

        assert result == "a" * 1100 + " [...]"


class TestTitleAndDate:
    """Unit tests for title and timestamp extraction."""

    def test_title_quotes_and_length(self):
        assert clean_title('The "best" title') == "The 'best' title"
        assert len(clean_title("x" * 400)) == 255

    def test_parse_rfc822_date(self):
        result = parse_timestamp("Mon, 01 Jan 2024 00:00:00 GMT", lambda: FIXED_NOW)

        assert result == datetime(2024, 1, 1, tzinfo=UTC)

    def test_offset_date_converted_to_utc(self):
        result = parse_timestamp("2024-01-01T02:00:00+02:00", lambda: FIXED_NOW)

        assert result == datetime(2024, 1, 1, tzinfo=UTC)

    @pytest.mark.parametrize("value", [None, "", "not a date at all"])
    def test_missing_or_bad_date_uses_now(self, value):
        assert parse_timestamp(value, lambda: FIXED_NOW) == FIXED_NOW


class TestImages:
    """Unit tests for image resolution."""

    def test_plain_image_url(self):
        text = 'Description: <img src="https://img.example/photo.jpg" alt="">'

        assert find_image_candidate(text) == "https://img.example/photo.jpg"

    def test_youtube_thumbnail(self):
        text = (
            '<a href="https://www.youtube.com/watch?v=abc">'
            '<img src="https://i.ytimg.com/vi/abc/hqdefault.jpg"></a>'
        )

        assert find_image_candidate(text) == "https://i.ytimg.com/vi/abc/hqdefault.jpg"

    def test_no_image(self):
        assert find_image_candidate("Title: A\nLink: https://x/1") == ""

    def test_placeholder_for_missing_or_malformed(self):
        assert resolve_image("") == (PLACEHOLDER_IMAGE_URL, "thumbnail")
        assert resolve_image("https://user@host/x.png", "image") == (
            PLACEHOLDER_IMAGE_URL,
            "thumbnail",
        )
        assert resolve_image("https://host/x.png", "image") == ("https://host/x.png", "image")

    def test_extract_anchor_image(self):
        body = 'submitted by <a href="https://u">/u/x</a> <span>(<a href="https://i.redd.it/abc.png">[link]</a>)</span>'

        assert extract_anchor_image(body) == "https://i.redd.it/abc.png"
        assert extract_anchor_image("<a href='https://no.parens'>x</a>") == ""


class TestNormalizerUnit:
    """Unit tests for Normalizer.normalize and skip_reason."""

    def make_normalizer(self, image_text="", limit=1100):
        return Normalizer(
            description_limit=limit,
            image_lookup=lambda definition: image_text,
            now=lambda: FIXED_NOW,
        )

    def test_normalize_example_entry(self):
        normalizer = self.make_normalizer()

        result = normalizer.normalize(feed(), cached(body="<p>Body</p>"))

        assert result.title == "Hello"
        assert result.link == "https://x/1"
        assert result.timestamp == datetime(2024, 1, 1, tzinfo=UTC)
        assert result.description == "Body"
        assert result.image_url == PLACEHOLDER_IMAGE_URL
        assert result.image_kind == "thumbnail"
        assert result.avatar_url is None

    def test_missing_date_uses_now(self):
        result = self.make_normalizer().normalize(feed(), cached(date=None))

        assert result.timestamp == FIXED_NOW

    def test_long_description_truncated(self):
        body = "<p>" + ("lorem ipsum " * 200) + "</p>"

        result = self.make_normalizer(limit=100).normalize(feed(), cached(body=body))

        assert result.description.endswith(" [...]")
        assert len(result.description) <= 106

    def test_xkcd_gets_full_image(self):
        normalizer = self.make_normalizer('<img src="https://imgs.xkcd.com/comics/a.png" />')

        result = normalizer.normalize(feed("xkcd"), cached())

        assert result.image_url == "https://imgs.xkcd.com/comics/a.png"
        assert result.image_kind == "image"

    def test_other_feed_gets_thumbnail(self):
        normalizer = self.make_normalizer('<img src="https://img.example/a.png" />')

        result = normalizer.normalize(feed(), cached())

        assert result.image_kind == "thumbnail"

    def test_image_only_rule(self):
        body = '<span>(<a href="https://i.redd.it/abc.png">[link]</a>)</span>'

        result = self.make_normalizer().normalize(feed("Reddit-Unixporn"), cached(body=body))

        assert result.description == ""
        assert result.image_url == "https://i.redd.it/abc.png"
        assert result.image_kind == "image"

    def test_image_lookup_failure_is_contained(self):
        def broken(definition):
            raise RuntimeError("network down")

        normalizer = Normalizer(image_lookup=broken, now=lambda: FIXED_NOW)

        result = normalizer.normalize(feed(), cached())

        assert result.image_url == PLACEHOLDER_IMAGE_URL

    def test_release_override(self):
        text = cached(title="New Tumbleweed snapshot 20240101 released!", body="<p>long changelog</p>")

        result = self.make_normalizer().normalize(feed("openSUSE-Tumbleweed"), text)

        assert "20240101" in result.description
        assert "changelog" not in result.description
        assert result.avatar_url.endswith("opensuse.png")

    def test_cache_without_title_rejected(self):
        with pytest.raises(ValueError):
            self.make_normalizer().normalize(feed(), "garbage")

    def test_paid_article_skipped_on_any_feed(self):
        normalizer = self.make_normalizer()

        assert normalizer.skip_reason(feed(), entry("[$] Paid Article")) == "paid article"
        assert normalizer.skip_reason(feed("LWN-net"), entry("[$] Paid Article")) == "paid article"

    def test_reply_skipped_only_on_mailing_list(self):
        normalizer = self.make_normalizer()

        assert normalizer.skip_reason(feed("LKML"), entry("Re: kernel patch")) == "reply post"
        assert normalizer.skip_reason(feed("Other-Feed"), entry("Re: kernel patch")) is None

    def test_bug_tracker_requires_new_marker(self):
        normalizer = self.make_normalizer()

        assert normalizer.skip_reason(feed("KDE-Bugs"), entry("[Bug 1] Changed: x")) == "not a new bug"
        assert normalizer.skip_reason(feed("KDE-Bugs"), entry("[Bug 2] New: crash")) is None
