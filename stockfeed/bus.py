from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Callable, Optional

from stockfeed.errors import ChannelClosed, ChannelConnectionError, PublishError
from stockfeed.events import ChannelMessage


class QuoteChannel:
    """Bounded in-process message channel between the publisher and the consumer.

    One FIFO queue with a single consumer, so delivery order per symbol (and
    overall) is the send order. Backpressure blocks the producer for up to
    ``publish_timeout`` seconds; after that the message is dropped with a
    PublishError (at-most-once from the producer side).

    ``close()`` stops accepting new messages but keeps the ones already
    queued; receivers drain them before getting ChannelClosed.
    """

    def __init__(self, maxsize: int = 1000, publish_timeout: float = 1.0) -> None:
        self._q: "queue.Queue[ChannelMessage]" = queue.Queue(maxsize=maxsize)
        self._publish_timeout = publish_timeout
        self._connected = False
        self._closed = False
        self._lock = threading.Lock()
        self._log = logging.getLogger("bus")

    @property
    def connected(self) -> bool:
        return self._connected and not self._closed

    def connect(self) -> None:
        with self._lock:
            # A closed channel can still be attached to for draining what it holds.
            if self._closed and self._q.empty():
                raise ChannelConnectionError("channel is closed")
            self._connected = True

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._connected = False
        self._log.info("channel_closed", extra={"pending": self._q.qsize()})

    def pending(self) -> int:
        return self._q.qsize()

    def send(self, key: str, value: bytes) -> None:
        if not self.connected:
            raise ChannelConnectionError("channel not connected")
        try:
            self._q.put(ChannelMessage(key=key, value=value), timeout=self._publish_timeout)
        except queue.Full as exc:
            raise PublishError(f"channel full ({self._q.maxsize}); dropped message for {key}") from exc

    def receive(self, timeout: float) -> Optional[ChannelMessage]:
        """Next message, or None on timeout. Raises ChannelClosed once closed and drained."""
        if self._closed and self._q.empty():
            raise ChannelClosed("channel closed and drained")
        try:
            return self._q.get(timeout=timeout)
        except queue.Empty:
            if self._closed:
                raise ChannelClosed("channel closed and drained")
            return None


def connect_with_backoff(
    connect: Callable[[], None],
    *,
    attempts: int,
    base_delay: float,
    max_delay: float,
    stop: Optional[threading.Event] = None,
    sleep: Callable[[float], None] = time.sleep,
    name: str = "channel",
) -> None:
    """Call ``connect`` until it succeeds, doubling the delay between attempts.

    Raises the last ChannelConnectionError when attempts run out or ``stop`` is set.
    """
    log = logging.getLogger("bus")
    delay = base_delay
    last_exc: Optional[ChannelConnectionError] = None
    for attempt in range(1, attempts + 1):
        try:
            connect()
            if attempt > 1:
                log.info("connect_recovered", extra={"component": name, "attempt": attempt})
            return
        except ChannelConnectionError as exc:
            last_exc = exc
            log.warning(
                "connect_failed",
                extra={"component": name, "attempt": attempt, "attempts": attempts, "retry_in": delay, "error": str(exc)},
            )
        if attempt == attempts or (stop is not None and stop.is_set()):
            break
        if stop is not None:
            if stop.wait(delay):
                break
        else:
            sleep(delay)
        delay = min(max_delay, delay * 2 if delay > 0 else 0)
    assert last_exc is not None
    raise last_exc
