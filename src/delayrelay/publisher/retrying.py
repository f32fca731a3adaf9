# SPDX-FileCopyrightText: 2025 Lucas S
#
# SPDX-License-Identifier: GPL-3.0-or-later

import asyncio
import heapq
import itertools
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from delayrelay.publisher import MessageDispatcher
from delayrelay.scheduler.types import PersistedMessage
from delayrelay.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

GiveUpCallback = Callable[[PersistedMessage], Awaitable[None]]

DEFAULT_MAX_PENDING_RETRIES = 10_000


def default_republish_policy() -> RetryPolicy:
    return RetryPolicy(
        max_retries=None,
        initial_delay=1.0,
        max_delay=1.0,
        backoff_factor=1.0,
        jitter=False,
    )


@dataclass(order=True)
class _RetryEntry:
    due: float
    sequence: int
    retry_count: int = field(compare=False)
    message: PersistedMessage = field(compare=False)
    superseded: bool = field(default=False, compare=False)


class RetryingPublisher:
    """
    Publishes due messages, keeping the ones the broker refused in a
    timer-ordered retry heap served by a single background worker.

    The heap holds at most `max_pending_retries` distinct message ids and a
    newer copy of an id replaces the older pending one. When `retry_policy`
    runs out of retries the message is handed to `on_give_up`.
    """

    def __init__(
        self,
        dispatcher: MessageDispatcher,
        retry_policy: RetryPolicy | None = None,
        max_pending_retries: int = DEFAULT_MAX_PENDING_RETRIES,
        on_give_up: GiveUpCallback | None = None,
    ) -> None:
        if max_pending_retries < 1:
            raise ValueError("max_pending_retries must be at least 1")

        self.dispatcher = dispatcher
        self.retry_policy = retry_policy or default_republish_policy()
        self.max_pending_retries = max_pending_retries
        self.on_give_up = on_give_up

        self._heap: list[_RetryEntry] = []
        self._pending: dict[str, _RetryEntry] = {}
        self._sequence = itertools.count()
        self._wakeup = asyncio.Event()
        self._worker: asyncio.Task[None] | None = None
        self._in_flight: _RetryEntry | None = None

    @property
    def pending_retries(self) -> int:
        return len(self._pending)

    def is_pending(self, message_id: str) -> bool:
        return message_id in self._pending

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run_retries())

    async def stop(self) -> list[PersistedMessage]:
        """
        Stop the retry worker and return every message that was not delivered.
        """
        if self._worker is not None:
            self._worker.cancel()
            with suppress(asyncio.CancelledError):
                await self._worker
            self._worker = None

        leftovers = [entry.message for entry in self._pending.values()]
        if (
            self._in_flight is not None
            and not self._in_flight.superseded
            and self._in_flight.message.id not in self._pending
        ):
            leftovers.append(self._in_flight.message)

        self._heap.clear()
        self._pending.clear()
        self._in_flight = None

        if leftovers:
            logger.warning("%s message(s) still waiting for a retry", len(leftovers))

        return leftovers

    async def deliver(self, message: PersistedMessage) -> bool:
        """
        Try to publish once. On failure the message is queued for a retry.

        Returns False only when the attempt failed and the retry heap is full,
        in which case the caller still owns the message.
        """
        if await self._attempt(message):
            self._discard(message.id)
            return True
        return self._schedule(message)

    def _discard(self, message_id: str) -> None:
        existing = self._pending.pop(message_id, None)
        if existing is not None:
            existing.superseded = True
            logger.debug(
                "Dropped pending retry of message '%s', a newer copy was published",
                message_id,
            )
        if self._in_flight is not None and self._in_flight.message.id == message_id:
            self._in_flight.superseded = True

    async def _attempt(self, message: PersistedMessage) -> bool:
        try:
            await self.dispatcher.publish(
                message.topic, message.body, message_id=message.id
            )
        except Exception as e:
            logger.error(
                "Failed to publish message '%s' to topic '%s': %s",
                message.id,
                message.topic,
                e,
            )
            return False

        logger.info("published message '%s' to topic '%s'", message.id, message.topic)
        return True

    def _schedule(self, message: PersistedMessage) -> bool:
        existing = self._pending.get(message.id)

        if existing is not None:
            existing.superseded = True
        elif len(self._pending) >= self.max_pending_retries:
            logger.warning(
                "Retry queue full (%s pending), cannot retry message '%s'",
                len(self._pending),
                message.id,
            )
            return False

        delay = self._push(message, retry_count=0)
        self._wakeup.set()

        logger.warning(
            "Retrying message '%s' to topic '%s' in %.2fs",
            message.id,
            message.topic,
            delay,
        )
        return True

    def _peek(self) -> _RetryEntry | None:
        while self._heap and self._heap[0].superseded:
            heapq.heappop(self._heap)
        return self._heap[0] if self._heap else None

    async def _run_retries(self) -> None:
        loop = asyncio.get_running_loop()

        while True:
            entry = self._peek()
            self._wakeup.clear()

            if entry is None:
                await self._wakeup.wait()
                continue

            delay = entry.due - loop.time()
            if delay > 0:
                with suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self._wakeup.wait(), delay)
                continue

            heapq.heappop(self._heap)
            if self._pending.get(entry.message.id) is entry:
                del self._pending[entry.message.id]

            # Left set when cancelled mid-retry so stop() can hand the message back.
            self._in_flight = entry
            await self._retry(entry)
            self._in_flight = None

    async def _retry(self, entry: _RetryEntry) -> None:
        message = entry.message
        if await self._attempt(message):
            return

        if entry.superseded:
            logger.debug(
                "Not retrying message '%s' again, a newer copy was published",
                message.id,
            )
            return

        next_retry = entry.retry_count + 1
        if self.retry_policy.can_retry(next_retry):
            self._reschedule(message, next_retry)
            return

        if self.on_give_up is None:
            logger.error(
                "Giving up on message '%s' to topic '%s' after %s retries",
                message.id,
                message.topic,
                next_retry,
            )
            return

        logger.warning(
            "Giving up retrying message '%s' after %s retries, returning it to the store",
            message.id,
            next_retry,
        )
        try:
            await self.on_give_up(message)
        except Exception as e:
            logger.error(
                "Could not return message '%s' to the store, keeping it in memory: %s",
                message.id,
                e,
            )
            self._reschedule(message, next_retry)

    def _reschedule(self, message: PersistedMessage, retry_count: int) -> None:
        if message.id in self._pending:
            logger.debug(
                "Dropping retry of message '%s', a newer copy is pending", message.id
            )
            return
        # Not bounded by max_pending_retries, the id was admitted on its first failure.
        self._push(message, retry_count)

    def _push(self, message: PersistedMessage, retry_count: int) -> float:
        delay = self.retry_policy.delay_for(retry_count)
        entry = _RetryEntry(
            due=asyncio.get_running_loop().time() + delay,
            sequence=next(self._sequence),
            retry_count=retry_count,
            message=message,
        )
        heapq.heappush(self._heap, entry)
        self._pending[message.id] = entry
        return delay
