"""@-mention queue and broadcast scheduler.

Mentions reach the agent in the order they were made, but only once an
agent is actually ready to take them:

- connected: each enqueue (re)arms a short debounce timer so a burst of
  mentions goes out in one paced flush
- disconnected: a single connection-wait timer is armed on the first
  enqueue; if no agent finishes its handshake before it fires, the whole
  queue is dropped and reported
- just connected: the flush waits ``connection_wait_delay`` first so the
  agent can settle before it is sent anything

Every mention carries its enqueue time. At send time anything older than
``queue_timeout`` is dropped instead of sent.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from config import TRACE

log = logging.getLogger(__name__)

MENTION_METHOD = "at_mentioned"

DEFAULT_DEBOUNCE = 0.050
DEFAULT_PACING = 0.025
DEFAULT_RETRY_DELAY = 0.100


@dataclass(frozen=True)
class Mention:
    file_path: str
    start_line: int | None = None  # zero-indexed
    end_line: int | None = None    # zero-indexed
    enqueued_at: float = field(default=0.0, compare=False)

    def to_params(self) -> dict:
        return {
            "filePath": self.file_path,
            "lineStart": self.start_line,
            "lineEnd": self.end_line,
        }


class MentionQueue:
    """FIFO mention buffer with debounce, connection-wait and expiry timers.

    All methods must be called from the event loop thread. Times passed in
    are seconds.
    """

    def __init__(
        self,
        broadcast: Callable[[str, dict], Awaitable[bool]],
        is_connected: Callable[[], bool],
        *,
        connection_wait_delay: float = 0.6,
        connection_timeout: float = 10.0,
        queue_timeout: float = 5.0,
        debounce: float = DEFAULT_DEBOUNCE,
        pacing: float = DEFAULT_PACING,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        clock: Callable[[], float] = time.monotonic,
        on_error: Callable[[str], None] | None = None,
    ):
        self._broadcast = broadcast
        self._is_connected = is_connected
        self.connection_wait_delay = connection_wait_delay
        self.connection_timeout = connection_timeout
        self.queue_timeout = queue_timeout
        self.debounce = debounce
        self.pacing = pacing
        self.retry_delay = retry_delay
        self._clock = clock
        self._on_error = on_error
        self._items: list[Mention] = []
        self._debounce_timer: asyncio.TimerHandle | None = None
        self._wait_timer: asyncio.TimerHandle | None = None
        self._flush_task: asyncio.Task | None = None
        self._flush_again = False

    def __len__(self) -> int:
        return len(self._items)

    @property
    def pending(self) -> tuple[Mention, ...]:
        return tuple(self._items)

    @property
    def debounce_armed(self) -> bool:
        return self._debounce_timer is not None

    @property
    def connection_wait_armed(self) -> bool:
        return self._wait_timer is not None

    @property
    def flushing(self) -> bool:
        return self._flush_task is not None and not self._flush_task.done()

    # ─── Enqueue ─────────────────────────────────────────────────

    def enqueue(self, mention: Mention) -> Mention:
        """Append ``mention`` stamped with the current time and arm the right timer."""
        stamped = Mention(mention.file_path, mention.start_line, mention.end_line,
                          enqueued_at=self._clock())
        self._items.append(stamped)
        log.debug("Queued mention %s (%d pending)", stamped.file_path, len(self._items))

        if self._is_connected():
            self._arm_debounce()
        elif self._wait_timer is None:
            self._arm_connection_wait()
        return stamped

    # ─── Timers ──────────────────────────────────────────────────

    def _arm_debounce(self) -> None:
        self._cancel_debounce()
        loop = asyncio.get_running_loop()
        self._debounce_timer = loop.call_later(self.debounce, self.on_debounce_fire)
        log.log(TRACE, "Debounce armed (%.3fs)", self.debounce)

    def _arm_connection_wait(self) -> None:
        self._cancel_connection_wait()
        loop = asyncio.get_running_loop()
        self._wait_timer = loop.call_later(self.connection_timeout, self.on_connection_wait_timeout)
        log.debug("Waiting up to %.1fs for an agent to connect", self.connection_timeout)

    def _cancel_debounce(self) -> None:
        if self._debounce_timer is not None:
            self._debounce_timer.cancel()
            self._debounce_timer = None

    def _cancel_connection_wait(self) -> None:
        if self._wait_timer is not None:
            self._wait_timer.cancel()
            self._wait_timer = None

    def cancel_timers(self) -> None:
        self._cancel_debounce()
        self._cancel_connection_wait()

    # ─── Timer Callbacks ─────────────────────────────────────────

    def on_debounce_fire(self) -> None:
        self._debounce_timer = None
        self._start_flush(post_connect=False)

    def on_connection_wait_timeout(self) -> None:
        self._wait_timer = None
        if not self._items:
            return
        if self._is_connected():
            # Agent finished its handshake but on_connected() never reached us
            self._start_flush(post_connect=True)
            return
        self._drop_all("agent did not connect within %.1fs" % self.connection_timeout)

    def on_connected(self) -> None:
        """Called once a connection completes its handshake."""
        self._cancel_connection_wait()
        if self._items:
            self._start_flush(post_connect=True)

    # ─── Flush ───────────────────────────────────────────────────

    def _start_flush(self, post_connect: bool) -> None:
        if self.flushing:
            self._flush_again = True
            return
        self._flush_task = asyncio.get_running_loop().create_task(
            self.flush(post_connect=post_connect)
        )

    async def flush(self, post_connect: bool = False) -> int:
        """Send everything queued, oldest first. Returns the number delivered."""
        if not self._is_connected():
            if not post_connect:
                log.debug("Flush skipped: no agent connected")
                # Agent dropped inside the debounce window
                if self._items and self._wait_timer is None:
                    self._arm_connection_wait()
                return 0
            if not await self._wait_for_connection():
                return 0

        if post_connect and self.connection_wait_delay > 0:
            await asyncio.sleep(self.connection_wait_delay)

        batch = self._items
        self._items = []
        self.cancel_timers()

        delivered = 0
        for i, mention in enumerate(batch):
            if i and self.pacing > 0:
                await asyncio.sleep(self.pacing)
            age = self._clock() - mention.enqueued_at
            if age > self.queue_timeout:
                log.info("Dropping expired mention %s (%.2fs old)", mention.file_path, age)
                continue
            if await self._broadcast(MENTION_METHOD, mention.to_params()):
                delivered += 1
            else:
                log.warning("Mention %s was not delivered", mention.file_path)

        if batch:
            log.debug("Flushed %d/%d mentions", delivered, len(batch))
        if self._flush_again:
            self._flush_again = False
            if self._items:
                loop = asyncio.get_running_loop()
                loop.call_soon(self._start_flush, False)
        return delivered

    async def _wait_for_connection(self) -> bool:
        deadline = self._clock() + self.connection_timeout
        while not self._is_connected():
            if self._clock() >= deadline:
                self._drop_all("agent did not finish connecting within %.1fs" % self.connection_timeout)
                return False
            await asyncio.sleep(self.retry_delay)
        return True

    # ─── Reset ───────────────────────────────────────────────────

    def _drop_all(self, reason: str) -> None:
        count = len(self._items)
        self._items = []
        self.cancel_timers()
        message = f"Dropped {count} queued mention(s): {reason}"
        log.error(message)
        if self._on_error is not None:
            self._on_error(message)

    def clear(self) -> None:
        """Cancel both timers and any in-flight flush, and discard the queue."""
        self.cancel_timers()
        if self._flush_task is not None and not self._flush_task.done():
            self._flush_task.cancel()
        self._flush_task = None
        self._flush_again = False
        self._items = []
