# SPDX-FileCopyrightText: 2025 Lucas S
#
# SPDX-License-Identifier: GPL-3.0-or-later

import asyncio
import logging
import signal
import sys
from typing import Any

import uvloop

from delayrelay.config import RelayConfig
from delayrelay.exceptions import RelayStartupError
from delayrelay.messagebus.consumer import IngestionConsumer
from delayrelay.messagebus.ingestion import DelayedMessageHandler
from delayrelay.publisher import MessageDispatcher
from delayrelay.publisher.aio_pika_dispatcher import AioPikaMessageDispatcher
from delayrelay.scheduler.scheduler import DelayScheduler
from delayrelay.store import MessageStore
from delayrelay.store.mapper import get_message_store_from_url

logger = logging.getLogger(__name__)


class DelayRelay:
    """
    Wires the store, the scheduler, the publisher and the ingestion consumer
    of one relay process together and runs them until a shutdown signal.
    """

    def __init__(
        self,
        config: RelayConfig,
        shutdown_event: asyncio.Event | None = None,
    ) -> None:
        config.validate()

        self.config = config
        self.shutdown_event = shutdown_event or asyncio.Event()

        self.store: MessageStore = get_message_store_from_url(config.db)
        self.dispatcher: MessageDispatcher = AioPikaMessageDispatcher(
            config.effective_publisher_url,
            connection_retry_policy=config.connection_retry_policy,
        )
        self.scheduler = DelayScheduler(
            store=self.store,
            dispatcher=self.dispatcher,
            interval=config.interval,
            retry_policy=config.retry_policy,
            max_pending_retries=config.max_pending_retries,
        )
        self.handler = DelayedMessageHandler(self.scheduler)
        self.consumer = IngestionConsumer(
            url=config.broker_url,
            topic=config.topic,
            handler=self.handler,
            queue_name=config.queue_name,
        )

        self._scheduler_error: BaseException | None = None

    def run(self) -> None:

        def on_shutdown(loop: asyncio.AbstractEventLoop) -> None:
            logger.info("Shutting down - signal received")
            self.shutdown_event.set()

        with asyncio.Runner(loop_factory=uvloop.new_event_loop) as runner:
            loop = runner.get_loop()
            loop.add_signal_handler(signal.SIGINT, on_shutdown, loop)
            loop.add_signal_handler(signal.SIGTERM, on_shutdown, loop)
            try:
                runner.run(self.start())
            except RelayStartupError as e:
                logger.critical("Relay failed to start: %s", e)
                sys.exit(1)
            except Exception as e:
                logger.critical("Relay stopped unexpectedly: %s", e)
                sys.exit(1)

    async def start(self) -> None:
        """
        Open the store and the broker connections, then relay messages until
        the shutdown event is set.

        Raises:
            RelayStartupError: the store or the broker could not be reached
        """
        try:
            await self.store.initialize()
        except Exception as e:
            await self.store.dispose()
            raise RelayStartupError(
                f"Cannot open message store {self.config.db}: {e}"
            ) from e

        try:
            await self.dispatcher.initialize()
        except Exception as e:
            await self._dispose()
            raise RelayStartupError(f"Cannot connect the publisher: {e}") from e

        scheduler_task = asyncio.create_task(self.scheduler.run())
        scheduler_task.add_done_callback(self._on_scheduler_done)

        consumer_started = False
        try:
            try:
                await self.consumer.start()
            except Exception as e:
                raise RelayStartupError(
                    f"Cannot consume delayed messages from '{self.config.topic}': {e}"
                ) from e
            consumer_started = True

            logger.info(
                "Relay running, delayed messages on '%s' stored in %s",
                self.config.topic,
                self.config.db,
            )
            await self.shutdown_event.wait()
        finally:
            if consumer_started:
                await self.consumer.stop(timeout=self.config.shutdown_timeout)

            self.scheduler.shutdown()
            await asyncio.gather(scheduler_task, return_exceptions=True)
            await self._dispose()

        if self._scheduler_error is not None:
            raise self._scheduler_error

        logger.info("Relay stopped")

    def _on_scheduler_done(self, task: "asyncio.Task[Any]") -> None:
        if task.cancelled():
            return

        if (error := task.exception()) is not None:
            logger.critical("Scheduler loop crashed", exc_info=error)
            self._scheduler_error = error
            self.shutdown_event.set()

    async def _dispose(self) -> None:
        try:
            await self.dispatcher.dispose()
        except Exception as e:
            logger.error("Error disposing publisher: %s", e)

        try:
            await self.store.dispose()
        except Exception as e:
            logger.error("Error disposing message store: %s", e)
