# SPDX-FileCopyrightText: 2025 Lucas S
#
# SPDX-License-Identifier: GPL-3.0-or-later

import asyncio
import logging
from contextlib import suppress
from typing import Any

import aio_pika
import aio_pika.abc
import tenacity
from aio_pika.exceptions import AMQPConnectionError

from delayrelay.exceptions import InvalidDelayedMessageError, PersistenceError
from delayrelay.messagebus.ingestion import DelayedMessageHandler
from delayrelay.utils.rabbitmq_utils import RabbitmqUtils

logger = logging.getLogger(__name__)

connect_retry = tenacity.retry(
    retry=tenacity.retry_if_exception_type(
        (AMQPConnectionError, ConnectionError, OSError)
    ),
    wait=tenacity.wait_exponential_jitter(initial=1, max=30),
    stop=tenacity.stop_after_attempt(10),
    before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


class IngestionConsumer:
    """
    Consumes the ingestion queue and acknowledges each delivery only once
    the delayed message behind it has been persisted.

    Outcome per delivery:
        stored            -> ack
        invalid           -> reject without requeue (dead-lettered if configured)
        store failure     -> reject with requeue
    """

    def __init__(
        self,
        url: str,
        topic: str,
        handler: DelayedMessageHandler,
        queue_name: str | None = None,
    ) -> None:
        self.settings = RabbitmqUtils.parse_broker_url(url)
        self.topic = topic
        self.queue_name = queue_name or topic
        self.handler = handler

        self.shutdown_event = asyncio.Event()
        self.tasks: set[asyncio.Task[Any]] = set()

        self._connection: aio_pika.abc.AbstractRobustConnection | None = None
        self._channel: aio_pika.abc.AbstractChannel | None = None
        self._queue: aio_pika.abc.AbstractQueue | None = None
        self._consumer_tag: str | None = None

    @connect_retry
    async def _connect(self) -> aio_pika.abc.AbstractRobustConnection:
        return await aio_pika.connect_robust(self.settings.url)

    async def start(self) -> None:
        """
        Connect, declare the ingestion queue and start consuming from it.
        """
        self._connection = await self._connect()
        self._channel = await self._connection.channel()

        await self._channel.set_qos(prefetch_count=self.settings.prefetch_count)

        exchange = await RabbitmqUtils.declare_main_exchange(
            self._channel, self.settings.exchange
        )
        self._queue = await RabbitmqUtils.declare_ingestion_queue(
            channel=self._channel,
            exchange=exchange,
            queue_name=self.queue_name,
            topic=self.topic,
        )

        self._consumer_tag = await self._queue.consume(
            callback=self.on_message,
            no_ack=False,
        )

        logger.info(
            "Consuming delayed messages from queue '%s' (topic '%s', prefetch %s)",
            self.queue_name,
            self.topic,
            self.settings.prefetch_count,
        )

    async def stop(self, timeout: float | None = None) -> None:
        """
        Stop taking deliveries, let in-flight ones finish and close the connection.
        Deliveries still unfinished after `timeout` seconds are requeued.
        """
        self.shutdown_event.set()

        if self._queue is not None and self._consumer_tag is not None:
            try:
                await self._queue.cancel(self._consumer_tag)
            except Exception as e:
                logger.warning("Error cancelling ingestion consumer: %s", e)
            self._consumer_tag = None

        await self.wait_all_tasks_done(timeout)

        if self._channel is not None:
            try:
                await self._channel.close()
            except Exception as e:
                logger.warning("Error closing ingestion channel: %s", e)
        if self._connection is not None:
            await self._connection.close()

        logger.info("Ingestion consumer stopped")

    async def wait_all_tasks_done(self, timeout: float | None = None) -> None:
        if not self.tasks:
            return

        _, pending = await asyncio.wait(set(self.tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(
                "Cancelled %s delivery(ies) still waiting for the scheduler",
                len(pending),
            )
            await asyncio.gather(*pending, return_exceptions=True)

    async def on_message(
        self, aio_pika_message: aio_pika.abc.AbstractIncomingMessage
    ) -> None:
        if self.shutdown_event.is_set():
            await aio_pika_message.reject(requeue=True)
            return

        task = asyncio.create_task(self.handle_message(aio_pika_message))
        self.tasks.add(task)
        task.add_done_callback(self.handle_message_consume_done)

    def handle_message_consume_done(self, task: asyncio.Task[Any]) -> None:
        self.tasks.discard(task)
        if task.cancelled():
            return

        if (error := task.exception()) is not None:
            logger.exception("Error processing delayed message", exc_info=error)

    async def handle_message(
        self, aio_pika_message: aio_pika.abc.AbstractIncomingMessage
    ) -> None:
        try:
            stored = await self.handler.handle(
                aio_pika_message.body, aio_pika_message.message_id
            )
        except InvalidDelayedMessageError:
            await aio_pika_message.reject(requeue=False)
            return
        except PersistenceError as e:
            logger.error(
                "Requeuing message %s after store failure: %s",
                aio_pika_message.message_id,
                e,
            )
            await aio_pika_message.reject(requeue=True)
            return
        except asyncio.CancelledError:
            with suppress(aio_pika.MessageProcessError):
                await aio_pika_message.reject(requeue=True)
            raise

        with suppress(aio_pika.MessageProcessError):
            await aio_pika_message.ack()

        logger.info(
            "Scheduled message '%s' for topic '%s' at %s",
            stored.id,
            stored.topic,
            stored.send_at,
        )
