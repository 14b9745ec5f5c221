"""Main poll loop for Discord RSS Bot."""

import os
import signal
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime

import click

from .config import Config, ConfigError
from .dedup import ChangeDetector
from .discord import DiscordPublisher
from .logging_config import create_execution_logger, setup_structured_logging
from .models import CycleStatistics, FeedDefinition
from .normalize import Normalizer
from .rss import FeedFetcher, create_reader
from .status import StatusWriter

EXIT_NO_FEEDS = 1
EXIT_ENVIRONMENT = 2


class FeedBot:
    """Runs poll cycles over the configured feeds.

    Per cycle: load feed definitions, then for each feed fetch the newest
    entry, compare it with the cache, and on a new entry write the cache,
    normalize it and deliver it to every destination.
    """

    def __init__(
        self,
        config: Config,
        reader=None,
        fetcher: FeedFetcher | None = None,
        detector: ChangeDetector | None = None,
        normalizer: Normalizer | None = None,
        publisher: DiscordPublisher | None = None,
        status: StatusWriter | None = None,
        execution_id: str | None = None,
    ):
        self.config = config
        self.execution_id = (
            execution_id or f"run_{datetime.now(UTC).strftime('%Y%m%d_%H%M%S_%f')}"
        )
        self.logger = create_execution_logger("main", self.execution_id)
        self.schedule = config.get_schedule_config()

        fetch_config = config.get_fetch_config()
        self.fetcher = fetcher or FeedFetcher(
            reader or create_reader(fetch_config.reader),
            fetch_config,
            execution_id=self.execution_id,
        )
        self.detector = detector or ChangeDetector(
            config.cache_dir, execution_id=self.execution_id
        )
        self.normalizer = normalizer or Normalizer(
            description_limit=config.get_description_limit(),
            image_lookup=self.secondary_fetch,
            execution_id=self.execution_id,
        )
        self.publisher = publisher or DiscordPublisher(
            config.get_delivery_config(), execution_id=self.execution_id
        )
        self.status = status or StatusWriter(
            config.status_file, execution_id=self.execution_id
        )

        self.stop_event = threading.Event()
        self._feed_locks: dict[str, threading.Lock] = {}
        self._feed_locks_guard = threading.Lock()

    def secondary_fetch(self, feed: FeedDefinition) -> str:
        """Fetch the feed again without length limit, for image lookup."""
        reverse = self.fetcher.is_reversed(feed.name, feed.reverse)
        return self.fetcher.fetch_raw(feed.source_url, reverse=reverse)

    def feed_lock(self, feed_name: str) -> threading.Lock:
        """One lock per feed name; a feed is never processed twice at once."""
        with self._feed_locks_guard:
            if feed_name not in self._feed_locks:
                self._feed_locks[feed_name] = threading.Lock()
            return self._feed_locks[feed_name]

    def stop(self) -> None:
        """Ask the loop to stop after the feed in progress."""
        self.stop_event.set()

    @property
    def stopping(self) -> bool:
        return self.stop_event.is_set()

    def run_cycle(self) -> CycleStatistics:
        """Process every configured feed once."""
        stats = CycleStatistics()
        self.logger.log_cycle_start()

        try:
            feeds, errors = self.config.get_feed_definitions()
        except OSError as e:
            feeds, errors = [], [f"Cannot list feed definitions: {e}"]

        for error in errors:
            stats.increment("total")
            stats.increment("failed")
            self.logger.error(error, state="LOADING_FEEDS")

        if self.schedule.max_workers > 1 and len(feeds) > 1:
            with ThreadPoolExecutor(max_workers=self.schedule.max_workers) as pool:
                list(pool.map(lambda feed: self.process_feed(feed, stats), feeds))
        else:
            for feed in feeds:
                if self.stopping:
                    break
                self.process_feed(feed, stats)

        self.status.record_cycle(stats, len(feeds))
        self.logger.log_cycle_end(stats.as_dict())
        self.status.write("running")
        return stats

    def process_feed(self, feed: FeedDefinition, stats: CycleStatistics) -> None:
        """Process one feed; errors are logged and counted, never raised."""
        if self.stopping:
            return
        stats.increment("total")

        problems = feed.validate()
        if problems:
            stats.increment("failed")
            self.logger.error(
                f"Skipping invalid feed definition {feed.definition_file}: "
                f"{', '.join(problems)}",
                feed_name=feed.name,
            )
            return

        with self.feed_lock(feed.name):
            try:
                self._process_feed(feed, stats)
            except Exception as e:
                stats.increment("failed")
                self.logger.error(
                    f"Failed to process feed {feed.name}: {e}",
                    feed_name=feed.name,
                    error=str(e),
                )

    def _process_feed(self, feed: FeedDefinition, stats: CycleStatistics) -> None:
        self.logger.log_state(
            "FETCHING", f"Checking {feed.display_name}...", feed_name=feed.name
        )
        result = self.fetcher.fetch(feed.source_url, feed.name, reverse=feed.reverse)
        if not result.ok:
            stats.increment("failed")
            self.logger.error(
                f"Feed: {feed.display_name} is down ({result.reason})",
                feed_name=feed.name,
                attempts=result.attempts,
            )
            return

        item = result.item
        self.logger.log_state("DETECTING", "Comparing with cache", feed_name=feed.name)
        if not self.detector.is_new(feed.name, item):
            stats.increment("unchanged")
            self.logger.debug("No new post", feed_name=feed.name)
            return

        self.logger.warning(
            f"New post in {feed.display_name}",
            feed_name=feed.name,
            item_title=item.title,
        )
        self.detector.record_delivered(feed.name, item)
        stats.increment("updated")

        self.logger.log_state("NORMALIZING", "Normalizing entry", feed_name=feed.name)
        entry = self.normalizer.normalize(feed, self.detector.load(feed.name) or "")

        reason = self.normalizer.skip_reason(feed, entry)
        if reason:
            stats.increment("skipped")
            self.logger.warning(
                f"Skipping feed {feed.display_name} title {entry.title} ({reason})",
                feed_name=feed.name,
                item_title=entry.title,
            )
            return

        destinations = self.publisher.destinations_for(feed)
        if not destinations:
            stats.increment("failed")
            self.logger.error(
                f"No destinations configured for {feed.display_name}",
                feed_name=feed.name,
            )
            return

        payload = self.publisher.build_payload(feed, entry)
        self.logger.log_state(
            "DELIVERING",
            f"Delivering to {len(destinations)} destination(s)",
            feed_name=feed.name,
        )
        results = self.publisher.deliver_all(payload, destinations)

        delivered = sum(1 for r in results if r.ok)
        stats.increment("delivered", delivered)
        stats.increment("delivery_failures", len(results) - delivered)
        if not delivered:
            stats.increment("failed")
        self.logger.log_item_processing(
            feed.name, entry.title, "delivered", success=bool(delivered)
        )

    def sleep_until_next_cycle(self) -> None:
        """Sleep for the poll interval, refreshing the status file meanwhile."""
        interval = self.schedule.interval
        self.logger.log_state("SLEEPING", f"Sleeping for {interval} seconds...")
        remaining = float(interval)
        while remaining > 0 and not self.stopping:
            step = min(self.schedule.heartbeat_interval, remaining)
            if self.stop_event.wait(step):
                break
            remaining -= step
            self.status.write("running")

    def run_forever(self) -> None:
        """Loop until stop() is called, then write a final stopped status."""
        self.logger.info(
            "Starting poll loop",
            interval=self.schedule.interval,
            pid=os.getpid(),
        )
        try:
            while not self.stopping:
                self.run_cycle()
                if self.stopping:
                    break
                self.sleep_until_next_cycle()
        finally:
            self.status.write("stopped")
            self.logger.info("Poll loop stopped")


def main(
    home: str | None = None,
    cache_dir: str | None = None,
    log_level: str | None = None,
    once: bool = False,
) -> int:
    """Start the bot. Returns the process exit code."""
    logger = create_execution_logger("startup")

    try:
        config = Config(home=home, cache_dir=cache_dir)
        setup_structured_logging(log_level or config.log_level, config.log_file)
        fetch_config = config.get_fetch_config()
        config.get_delivery_config()
        config.get_schedule_config()
        config.get_description_limit()
        config.ensure_directories()
    except (ConfigError, OSError) as e:
        setup_structured_logging(log_level or "INFO")
        logger.error(f"Cannot start: {e}", error=str(e))
        return EXIT_ENVIRONMENT

    reader = create_reader(fetch_config.reader)
    if not reader.available():
        logger.error(
            f"Missing required dependency: {reader.name} not found in PATH",
            reader=reader.name,
        )
        return EXIT_ENVIRONMENT

    if not config.feed_files():
        example = config.write_example_feed()
        logger.error(
            f"No feeds found in {config.feeds_dir}; see example in {example}",
            example=str(example),
        )
        return EXIT_NO_FEEDS

    bot = FeedBot(config, reader=reader, execution_id=logger.execution_id)

    def handle_signal(signum, frame):
        logger.warning(f"Received signal {signum}, stopping", signal=signum)
        bot.stop()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    if once:
        bot.run_cycle()
        bot.status.write("stopped")
        return 0

    bot.run_forever()
    return 0


@click.command()
@click.option("--home", help="Directory holding config.json and feeds/")
@click.option("--cache-dir", help="Directory holding the feed cache")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Overrides LOG_LEVEL",
)
@click.option("--once", is_flag=True, help="Run a single cycle and exit")
def cli(home, cache_dir, log_level, once):
    """Discord RSS Bot - post new RSS entries to Discord webhooks."""
    sys.exit(main(home=home, cache_dir=cache_dir, log_level=log_level, once=once))


if __name__ == "__main__":
    cli()
