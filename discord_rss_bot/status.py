"""Status file for external monitoring of Discord RSS Bot."""

import json
import os
import tempfile
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .logging_config import create_execution_logger
from .models import CycleStatistics


class StatusWriter:
    """Keeps running counters and writes them to a JSON status file.

    The program never reads the file back; it exists for watchdogs.
    """

    def __init__(self, status_file: str | Path, execution_id: str | None = None):
        self.status_file = Path(status_file)
        self.logger = create_execution_logger("status", execution_id)
        self.pid = os.getpid()
        self.started_at = datetime.now(UTC)
        self._started_monotonic = time.monotonic()
        self.feed_count = 0
        self.cycles = 0
        self.items_delivered = 0
        self.delivery_failures = 0
        self.fetch_failures = 0
        self.last_cycle: dict[str, int] | None = None

    def record_cycle(self, stats: CycleStatistics, feed_count: int) -> None:
        """Fold one cycle's statistics into the running counters."""
        self.cycles += 1
        self.feed_count = feed_count
        self.items_delivered += stats.delivered
        self.delivery_failures += stats.delivery_failures
        self.fetch_failures += stats.failed
        self.last_cycle = stats.as_dict()

    def snapshot(self, state: str) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "state": state,
            "feed_count": self.feed_count,
            "uptime_seconds": int(time.monotonic() - self._started_monotonic),
            "started_at": self.started_at.isoformat(),
            "updated_at": datetime.now(UTC).isoformat(),
            "cycles": self.cycles,
            "items_delivered": self.items_delivered,
            "delivery_failures": self.delivery_failures,
            "fetch_failures": self.fetch_failures,
            "last_cycle": self.last_cycle,
        }

    def write(self, state: str = "running") -> None:
        """Atomically replace the status file.

        Write errors are logged and ignored; monitoring must not stop the bot.
        """
        data = self.snapshot(state)
        tmp_name = None
        try:
            self.status_file.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=".tmp.status.", dir=self.status_file.parent
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.write("\n")
            os.replace(tmp_name, self.status_file)
        except OSError as e:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            self.logger.error(f"Failed to write status file: {e}", error=str(e))
