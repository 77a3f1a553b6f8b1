"""Hybrid logical clock for entry versions"""

import logging
import time
from typing import Callable

from .. import config
from ..storage.local_db import LocalDatabase
from ..storage.models import LogicalTimestamp

logger = logging.getLogger(__name__)


def now_ms() -> int:
    """Wall clock in milliseconds since the epoch."""
    return int(time.time() * 1000)


class HybridLogicalClock:
    """
    Wall-clock milliseconds paired with a per-device counter.

    tick() never goes backwards even if the device clock does, and observe()
    pulls the clock past any remote version we have seen, so a local edit made
    after reading a remote entry always orders after it.
    """

    def __init__(
        self,
        db: LocalDatabase,
        device_id: str = config.DEVICE_ID,
        wall_clock: Callable[[], int] = now_ms,
    ):
        self.db = db
        self.device_id = device_id
        self._wall_clock = wall_clock
        self._last_wall, self._counter = db.get_clock_state()

    def tick(self) -> LogicalTimestamp:
        """Issue a timestamp for a new local event."""
        wall = self._wall_clock()
        if wall > self._last_wall:
            self._last_wall = wall
            self._counter = 0
        else:
            self._counter += 1
        self.db.save_clock_state(self._last_wall, self._counter)
        return LogicalTimestamp(wallMs=self._last_wall, counter=self._counter, deviceId=self.device_id)

    def observe(self, remote: LogicalTimestamp) -> None:
        """Advance past a timestamp received from another device."""
        if remote.order_key() > (self._last_wall, self._counter):
            logger.debug(f"Clock advanced to remote version {remote.order_key()}")
            self._last_wall = remote.wall_ms
            self._counter = remote.counter
            self.db.save_clock_state(self._last_wall, self._counter)

    def wall_ms(self) -> int:
        return self._wall_clock()
