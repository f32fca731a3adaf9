# SPDX-FileCopyrightText: 2025 Lucas S
#
# SPDX-License-Identifier: GPL-3.0-or-later

import asyncio
import logging
import time
from typing import Callable

from delayrelay.exceptions import PersistenceError
from delayrelay.publisher import MessageDispatcher
from delayrelay.publisher.retrying import (
    DEFAULT_MAX_PENDING_RETRIES,
    RetryingPublisher,
)
from delayrelay.scheduler.handoff import HandoffChannel, HandoffRequest
from delayrelay.scheduler.types import PersistedMessage
from delayrelay.store import MessageStore
from delayrelay.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)


class DelayScheduler:
    """
    Sole owner of the message store.

    Ingestion hands messages over through `submit`, which only returns once
    the message has been written. While no handoff is pending the loop runs
    a poll cycle every `interval` seconds, publishing the due messages and
    removing them from the store.
    """

    def __init__(
        self,
        store: MessageStore,
        dispatcher: MessageDispatcher,
        interval: float = 1.0,
        retry_policy: RetryPolicy | None = None,
        max_pending_retries: int = DEFAULT_MAX_PENDING_RETRIES,
        clock: Callable[[], float] = time.time,
        shutdown_event: asyncio.Event | None = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")

        self.store = store
        self.interval = interval
        self.clock = clock
        self.shutdown_event = shutdown_event or asyncio.Event()

        self.handoff = HandoffChannel()
        self.publisher = RetryingPublisher(
            dispatcher,
            retry_policy=retry_policy,
            max_pending_retries=max_pending_retries,
            on_give_up=self._return_to_store,
        )

    async def submit(self, message: PersistedMessage) -> None:
        """
        Hand a message over to the scheduler and wait until it is persisted.

        Raises:
            PersistenceError: the store rejected the write
        """
        await self.handoff.put(message)

    async def _return_to_store(self, message: PersistedMessage) -> None:
        await self.handoff.put(message, replace=False)

    def shutdown(self) -> None:
        self.shutdown_event.set()

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        self.publisher.start()

        logger.info("Scheduler started, polling every %.2fs", self.interval)

        next_poll = loop.time()
        while not self.shutdown_event.is_set():
            request = await self.handoff.get(
                timeout=min(max(next_poll - loop.time(), 0.0), self.interval)
            )
            if request is not None:
                await self._drain(request)
                continue

            if loop.time() < next_poll:
                continue

            await self.poll_cycle()
            next_poll = loop.time() + self.interval

        await self._stop()

    async def _drain(self, request: HandoffRequest) -> None:
        message = request.message
        try:
            await self._persist(message, replace=request.replace)
        except Exception as e:
            logger.error("Failed to store message '%s': %s", message.id, e)
            request.fail(PersistenceError(message.id, e))
            return

        request.resolve()

    async def _persist(self, message: PersistedMessage, replace: bool) -> None:
        if not replace and await self.store.get(message.id) is not None:
            logger.debug(
                "Message '%s' already stored again, keeping the stored copy",
                message.id,
            )
            return

        await self.store.upsert(message)
        logger.debug(
            "Stored message '%s' for topic '%s' due at %s",
            message.id,
            message.topic,
            message.send_at,
        )

    async def poll_cycle(self) -> int:
        """
        Publish every message due at the current time.
        Returns how many messages were handed to the publisher.
        """
        now = int(self.clock())

        try:
            due_messages = await self.store.query_due(now)
        except Exception as e:
            logger.error("Failed to query due messages: %s", e)
            return 0

        handed = 0
        for message in due_messages:
            if not await self.publisher.deliver(message):
                logger.warning(
                    "Retry capacity exhausted, leaving %s due message(s) in the store",
                    len(due_messages) - handed,
                )
                break

            handed += 1

            try:
                await self.store.delete(message.id)
            except Exception as e:
                logger.error("Failed to delete message '%s': %s", message.id, e)

        if handed:
            logger.debug("Poll cycle at %s handed %s message(s) over", now, handed)

        return handed

    async def _stop(self) -> None:
        leftovers = await self.publisher.stop()

        while (request := self.handoff.get_nowait()) is not None:
            await self._drain(request)

        returned = 0
        for message in leftovers:
            try:
                await self._persist(message, replace=False)
            except Exception as e:
                logger.error(
                    "Could not return message '%s' to the store, it is lost: %s",
                    message.id,
                    e,
                )
                continue
            returned += 1

        logger.info("Scheduler stopped, %s message(s) returned to the store", returned)
