from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from ..clock import SYSTEM_CLOCK, Clock

logger = logging.getLogger(__name__)


class MessageStatus(str, Enum):
    PROCESSING = "processing"
    PROCESSED = "processed"
    NOT_STARTED = "not_started"


@dataclass(slots=True, frozen=True)
class TrackerStats:
    processing: int
    processed: int
    capacity: int


class ProcessingTracker:
    """Remembers which inbound messages are being, or have been, handled.

    ``claim`` is a single synchronous check-and-insert, so two deliveries of
    the same message on one event loop cannot both win. The processed set is
    bounded: when it outgrows ``capacity`` the older half is forgotten.
    Claims older than ``stale_after`` seconds are assumed to belong to a
    crashed attempt and are dropped.
    """

    def __init__(
        self,
        capacity: int = 1000,
        stale_after: float = 600.0,
        clock: Clock = SYSTEM_CLOCK,
    ) -> None:
        if capacity < 2:
            raise ValueError("capacity must be at least 2")
        self.capacity = capacity
        self.stale_after = stale_after
        self.clock = clock
        self._processing: dict[str, float] = {}
        self._processed: dict[str, None] = {}

    def claim(self, message_id: str) -> bool:
        self.sweep_stale()
        if message_id in self._processed or message_id in self._processing:
            logger.info("Message %s already claimed, skipping", message_id)
            return False
        self._processing[message_id] = self.clock.now()
        return True

    def complete(self, message_id: str) -> None:
        self._processing.pop(message_id, None)
        self._processed[message_id] = None
        if len(self._processed) > self.capacity:
            evicted = list(self._processed)[: len(self._processed) // 2]
            for key in evicted:
                del self._processed[key]
            logger.debug("Evicted %d processed message ids", len(evicted))

    def fail(self, message_id: str) -> None:
        """Release a claim so a redelivery of the message can try again."""
        self._processing.pop(message_id, None)

    def sweep_stale(self) -> int:
        cutoff = self.clock.now() - self.stale_after
        stale = [key for key, started in self._processing.items() if started < cutoff]
        for key in stale:
            del self._processing[key]
        if stale:
            logger.warning("Dropped %d stale processing claims", len(stale))
        return len(stale)

    def status(self, message_id: str) -> MessageStatus:
        if message_id in self._processed:
            return MessageStatus.PROCESSED
        if message_id in self._processing:
            return MessageStatus.PROCESSING
        return MessageStatus.NOT_STARTED

    def stats(self) -> TrackerStats:
        return TrackerStats(
            processing=len(self._processing),
            processed=len(self._processed),
            capacity=self.capacity,
        )
