"""Discord webhook publisher for Discord RSS Bot."""

import math
import re
import time
from typing import Callable
from urllib.parse import urlparse

import requests

from .config import DeliveryConfig
from .logging_config import create_execution_logger
from .models import (
    DEFAULT_USERNAME,
    Delivered,
    DeliveryFailure,
    DeliveryResult,
    FeedDefinition,
    NormalizedEntry,
    NotificationPayload,
)
from .normalize import TITLE_LIMIT, sanitize_text

SUCCESS_CODES = (200, 204)
_RETRY_AFTER_RE = re.compile(r'"retry_after"\s*:\s*([0-9]+(?:\.[0-9]+)?)')
# Longest rate-limit wait honoured for a single retry
MAX_RETRY_AFTER = 300.0


def redact_url(url: str) -> str:
    """Hide the token part of a webhook URL for logging."""
    parsed = urlparse(url)
    path = parsed.path.rstrip("/")
    if "/" in path.strip("/"):
        path = path.rsplit("/", 1)[0] + "/***"
    return f"{parsed.scheme}://{parsed.netloc}{path}"


def format_timestamp(entry: NormalizedEntry) -> str:
    return entry.timestamp.strftime("%Y-%m-%dT%H:%M:%SZ")


class DiscordPublisher:
    """Handles building and delivering embed notifications."""

    def __init__(
        self,
        config: DeliveryConfig | None = None,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
        execution_id: str | None = None,
    ):
        """Initialize Discord publisher with configuration."""
        self.config = config or DeliveryConfig()
        self.session = session or requests.Session()
        self.sleep = sleep
        self.logger = create_execution_logger("discord_publisher", execution_id)

        self.logger.info(
            "DiscordPublisher initialized",
            retry_attempts=self.config.retry_attempts,
            default_destinations=len(self.config.default_destinations),
        )

    def destinations_for(self, feed: FeedDefinition) -> list[str]:
        """Feed destinations, or the global default list when it has none."""
        return feed.destination_urls or list(self.config.default_destinations)

    def build_payload(
        self, feed: FeedDefinition, entry: NormalizedEntry
    ) -> NotificationPayload:
        """Build the notification for one normalized entry."""
        avatar_url = sanitize_text(entry.avatar_url or feed.avatar_url)
        link = sanitize_text(entry.link)
        return NotificationPayload(
            title=sanitize_text(entry.title)[:TITLE_LIMIT],
            url=link,
            description=sanitize_text(entry.description),
            color=feed.display_color,
            timestamp_utc=format_timestamp(entry),
            image_kind=entry.image_kind,
            image_url=sanitize_text(entry.image_url),
            author_name=sanitize_text(feed.display_name),
            author_url=link,
            author_icon_url=avatar_url,
            username=DEFAULT_USERNAME,
            avatar_url=avatar_url,
        )

    def deliver_all(
        self, payload: NotificationPayload, destination_urls: list[str]
    ) -> list[DeliveryResult]:
        """Deliver one payload to every destination, one after the other.

        A failed destination does not stop delivery to the next one.
        """
        results = []
        for index, destination in enumerate(destination_urls):
            if index:
                self.sleep(self.config.destination_delay)
            results.append(self.deliver(payload, destination))
        return results

    def deliver(
        self, payload: NotificationPayload, destination_url: str
    ) -> DeliveryResult:
        """
        POST a payload to one webhook with retry logic.

        Args:
            payload: The notification to send
            destination_url: Webhook URL

        Returns:
            Delivered, or DeliveryFailure once the attempt budget is used
            or the destination is gone (404)
        """
        destination = redact_url(destination_url)
        body = payload.to_json().encode("utf-8")
        max_attempts = self.config.retry_attempts
        result: DeliveryResult = DeliveryFailure("not attempted", attempts=0)

        for attempt in range(1, max_attempts + 1):
            self.logger.debug(
                f"Posting to webhook (attempt {attempt})",
                destination=destination,
                attempt=attempt,
                payload_length=len(body),
            )
            try:
                response = self.session.post(
                    destination_url,
                    data=body,
                    headers={"Content-Type": "application/json"},
                    timeout=self.config.timeout,
                )
            except requests.RequestException as e:
                self.logger.error(
                    f"Request error posting to webhook: {e}",
                    destination=destination,
                    attempt=attempt,
                    error=str(e),
                )
                result = DeliveryFailure(str(e), attempts=attempt)
                if attempt < max_attempts:
                    self.sleep(self.config.retry_delay)
                continue

            status = response.status_code
            if status in SUCCESS_CODES:
                self.logger.info(
                    "Message delivered to webhook",
                    destination=destination,
                    status_code=status,
                    item_title=payload.title,
                )
                return Delivered(status_code=status, attempts=attempt)

            if status == 404:
                self.logger.error(
                    "Webhook not found, giving up on this destination",
                    destination=destination,
                    status_code=status,
                )
                return DeliveryFailure(
                    "webhook not found", status_code=404, attempts=attempt, permanent=True
                )

            if status == 429:
                result = DeliveryFailure(
                    "rate limited", status_code=429, attempts=attempt
                )
                if attempt < max_attempts:
                    self.handle_rate_limit(response, attempt)
                continue

            self.logger.error(
                f"Webhook returned status {status}",
                destination=destination,
                status_code=status,
                attempt=attempt,
            )
            result = DeliveryFailure(
                f"unexpected status {status}", status_code=status, attempts=attempt
            )
            if attempt < max_attempts:
                self.sleep(self.config.retry_delay)

        self.logger.error(
            f"Max retry attempts reached: {result.reason}",
            destination=destination,
            attempts=result.attempts,
        )
        return result

    def handle_rate_limit(self, response: requests.Response, attempt: int) -> float:
        """
        Wait for the delay requested by a 429 response.

        Args:
            response: The rate-limited response
            attempt: Current attempt number

        Returns:
            The number of seconds waited
        """
        delay = self.parse_retry_after(response)
        self.logger.warning(
            f"Rate limited, waiting {delay} seconds before retry {attempt + 1}",
            attempt=attempt,
            backoff_time=delay,
        )
        self.sleep(delay)
        return delay

    def parse_retry_after(self, response: requests.Response) -> float:
        """Read retry_after (seconds) from a 429 body, default 5 seconds."""
        try:
            data = response.json()
            if isinstance(data, dict) and "retry_after" in data:
                return self._clamp_delay(float(data["retry_after"]))
        except (ValueError, TypeError):
            pass

        match = _RETRY_AFTER_RE.search(response.text or "")
        if match:
            return self._clamp_delay(float(match.group(1)))

        header = response.headers.get("Retry-After")
        if header:
            try:
                return self._clamp_delay(float(header))
            except ValueError:
                pass

        return self.config.rate_limit_default

    def _clamp_delay(self, delay: float) -> float:
        """Bound a server-given delay to 0..MAX_RETRY_AFTER; NaN uses the default."""
        if math.isnan(delay):
            return self.config.rate_limit_default
        return min(max(0.0, delay), MAX_RETRY_AFTER)
