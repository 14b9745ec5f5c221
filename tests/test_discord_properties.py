"""Property-based tests for Discord payloads and delivery."""

import json
import re
from datetime import UTC, datetime
from unittest.mock import Mock

from hypothesis import given
from hypothesis import strategies as st

from discord_rss_bot.config import DeliveryConfig
from discord_rss_bot.discord import DiscordPublisher
from discord_rss_bot.models import FeedDefinition, NormalizedEntry

CONTROL_CHARS = re.compile(r"[\x00-\x09\x0b-\x1f\x7f-\x9f]")


def walk_strings(value):
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from walk_strings(item)
    elif isinstance(value, list):
        for item in value:
            yield from walk_strings(item)


class TestDiscordPublisherProperties:
    """Property-based tests for DiscordPublisher."""

    @given(
        title=st.text(max_size=400),
        description=st.text(max_size=400),
        link=st.text(max_size=100),
        name=st.text(min_size=1, max_size=40),
    )
    def test_payload_is_valid_single_json_document(self, title, description, link, name):
        """
        For any entry text, the payload is one JSON document on one line whose
        string values carry no control characters, with a title of at most
        255 characters.
        """
        publisher = DiscordPublisher(DeliveryConfig(), session=Mock(), sleep=lambda s: None)
        feed = FeedDefinition(name=name, source_url="https://example.com/feed")
        entry = NormalizedEntry(
            title=title,
            link=link,
            timestamp=datetime(2024, 1, 1, tzinfo=UTC),
            description=description,
            image_url="https://img/x.png",
            image_kind="thumbnail",
        )

        text = publisher.build_payload(feed, entry).to_json()

        assert "\n" not in text
        document = json.loads(text)
        assert len(document["embeds"][0]["title"]) <= 255
        for value in walk_strings(document):
            assert not CONTROL_CHARS.search(value)
            assert '"' not in value

    @given(
        statuses=st.lists(st.sampled_from([429, 500, 502, 503]), min_size=10, max_size=10),
        attempts=st.integers(min_value=1, max_value=6),
    )
    def test_posts_never_exceed_attempt_budget(self, statuses, attempts):
        """For any sequence of retryable failures, POSTs never exceed the budget."""
        session = Mock()
        responses = []
        for status in statuses:
            response = Mock(status_code=status, headers={}, text='{"retry_after": 0.1}')
            response.json.return_value = {"retry_after": 0.1}
            responses.append(response)
        session.post.side_effect = responses
        publisher = DiscordPublisher(
            DeliveryConfig(retry_attempts=attempts), session=session, sleep=lambda s: None
        )
        feed = FeedDefinition(name="Feed", source_url="https://example.com/feed")
        entry = NormalizedEntry(
            title="T",
            link="https://x/1",
            timestamp=datetime(2024, 1, 1, tzinfo=UTC),
            description="",
            image_url="https://img/x.png",
            image_kind="thumbnail",
        )

        result = publisher.deliver(publisher.build_payload(feed, entry), "https://hook/1/t")

        assert not result.ok
        assert session.post.call_count == attempts
