"""Buffering and batch commit of captured events.

EventFlusher is the only consumer of the capture channel. Each arrival is
filtered, then masked, then buffered. A flush happens on whichever comes
first:

- the buffer reaches buffer_size
- flush_interval_secs has passed since the previous flush (checked on every
  arrival, filtered or not, and every receive timeout, so a lone event still
  gets written)

A flush is one transaction. If it fails the batch is dropped and counted,
never retried. Whatever is buffered at shutdown is flushed once more.
"""

from __future__ import annotations

import logging
import queue
import threading
import time

from keyai.config import SharedConfig
from keyai.errors import StoreError
from keyai.filters import should_drop
from keyai.masker import Masker
from keyai.metrics import (
    EVENTS_DROPPED,
    EVENTS_FILTERED,
    EVENTS_PROCESSED,
    EVENTS_STORED,
    FLUSH_COUNT,
    FLUSH_FAILURES,
    AgentMetrics,
)
from keyai.models import CapturedEvent
from keyai.store import EventStore

logger = logging.getLogger(__name__)

THREAD_NAME = "keyai-flusher"


class EventFlusher:
    """Filter, mask, buffer and commit events from the capture channel.

    Args:
        channel: Queue filled by the capture bridge.
        store: Destination of committed batches.
        masker: Redaction applied to every surviving event.
        config: Shared agent settings, re-read for every event.
        metrics: Counter collector.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        channel: queue.SimpleQueue,
        store: EventStore,
        masker: Masker,
        config: SharedConfig,
        metrics: AgentMetrics,
        clock=time.monotonic,
    ):
        self._channel = channel
        self._store = store
        self._masker = masker
        self._config = config
        self._metrics = metrics
        self._clock = clock
        self._buffer: list[CapturedEvent] = []
        self._last_flush = clock()
        self._thread: threading.Thread | None = None

    @property
    def pending(self) -> int:
        """Number of buffered events not yet committed."""
        return len(self._buffer)

    def handle(self, event: CapturedEvent) -> None:
        """Process one arrival: filter, mask, buffer, maybe flush."""
        self._metrics.increment(EVENTS_PROCESSED)
        config = self._config.get()

        if should_drop(event, config):
            self._metrics.increment(EVENTS_FILTERED)
            self.tick()
            return

        self._buffer.append(self._masker.mask_event(event))

        if len(self._buffer) >= config.buffer_size:
            self.flush()
        else:
            self.tick()

    def tick(self) -> None:
        """Flush if the interval since the last flush has elapsed."""
        if not self._buffer:
            return
        interval = self._config.get().flush_interval_secs
        if self._clock() - self._last_flush >= interval:
            self.flush()

    def flush(self) -> int:
        """Commit the buffer in one transaction.

        Returns:
            Number of rows inserted (0 if the buffer was empty or the
            transaction failed).
        """
        if not self._buffer:
            return 0

        batch = self._buffer
        self._buffer = []
        self._last_flush = self._clock()

        try:
            inserted = self._store.store_events(batch)
        except StoreError as e:
            self._drop(batch)
            logger.error(f"Dropped batch of {len(batch)} events: {e}")
            return 0
        except Exception:
            self._drop(batch)
            logger.exception(f"Unexpected failure storing batch of {len(batch)} events")
            return 0

        self._metrics.increment(FLUSH_COUNT)
        self._metrics.increment(EVENTS_STORED, inserted)
        logger.debug(f"Flushed {len(batch)} events ({inserted} new)")
        return inserted

    def _drop(self, batch: list[CapturedEvent]) -> None:
        self._metrics.increment(FLUSH_FAILURES)
        self._metrics.increment(EVENTS_DROPPED, len(batch))

    def drain(self) -> None:
        """Handle everything already queued without waiting."""
        while True:
            try:
                event = self._channel.get_nowait()
            except queue.Empty:
                return
            self.handle(event)

    def run(self, stop_event: threading.Event) -> None:
        """Consume the channel until ``stop_event`` is set, then force a flush."""
        logger.debug("Flusher started")
        while not stop_event.is_set():
            timeout = self._config.get().receive_timeout
            try:
                event = self._channel.get(timeout=timeout)
            except queue.Empty:
                self.tick()
                continue
            try:
                self.handle(event)
            except Exception:
                # Sole consumer of the channel: log and keep going.
                self._metrics.increment(EVENTS_DROPPED)
                logger.exception("Failed to process captured event")

        self.drain()
        self.flush()
        logger.debug("Flusher stopped")

    def start(self, stop_event: threading.Event) -> threading.Thread:
        self._thread = threading.Thread(target=self.run, args=(stop_event,), name=THREAD_NAME, daemon=True)
        self._thread.start()
        return self._thread

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
