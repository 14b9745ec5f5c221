"""Property-based tests for the change detector."""

import string
import tempfile

from hypothesis import given
from hypothesis import strategies as st

from discord_rss_bot.dedup import ChangeDetector
from discord_rss_bot.models import FetchedItem

links = st.text(
    alphabet=string.ascii_letters + string.digits + ":/._-?=&#",
    min_size=1,
    max_size=60,
)


def make_item(link):
    return FetchedItem(
        title="Title",
        link=link,
        published_at=None,
        raw_body="",
        raw_text=f"Title: Title\nLink: {link}\n",
    )


class TestChangeDetectorProperties:
    """Property-based tests for ChangeDetector."""

    @given(first=links, second=links)
    def test_new_iff_link_differs(self, first, second):
        """
        For any delivered link and any later link, the later entry is new
        exactly when the links differ.
        """
        with tempfile.TemporaryDirectory() as cache_dir:
            detector = ChangeDetector(cache_dir)
            detector.record_delivered("Feed", make_item(first))

            assert detector.is_new("Feed", make_item(second)) is (first != second)

    @given(st.lists(links, min_size=1, max_size=8))
    def test_cache_reflects_most_recent_new_item(self, sequence):
        """
        For any sequence of fetched links, recording every new one leaves the
        cache on the last link of the sequence.
        """
        with tempfile.TemporaryDirectory() as cache_dir:
            detector = ChangeDetector(cache_dir)
            writes = 0
            for link in sequence:
                if detector.is_new("Feed", make_item(link)):
                    detector.record_delivered("Feed", make_item(link))
                    writes += 1

            assert detector.cached_link("Feed") == sequence[-1]
            distinct_runs = 1 + sum(
                1 for a, b in zip(sequence, sequence[1:]) if a != b
            )
            assert writes == distinct_runs

    @given(st.lists(st.text(min_size=1, max_size=20), min_size=2, max_size=5, unique=True))
    def test_distinct_feed_names_never_share_a_cache_file(self, names):
        """
        For any set of distinct feed names, each name gets its own cache file
        inside the cache directory.
        """
        with tempfile.TemporaryDirectory() as cache_dir:
            detector = ChangeDetector(cache_dir)
            paths = [detector.cache_path(name) for name in names]

            assert len(set(paths)) == len(names)
            for path in paths:
                assert str(path.parent) == cache_dir
                assert not path.name.startswith(".")
