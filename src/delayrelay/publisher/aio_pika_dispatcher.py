# SPDX-FileCopyrightText: 2025 Lucas S
#
# SPDX-License-Identifier: GPL-3.0-or-later

import logging

import aio_pika
from aio_pika import connect_robust
from aio_pika.abc import AbstractChannel, AbstractRobustConnection
from aio_pika.exceptions import AMQPConnectionError
from aio_pika.pool import Pool

from delayrelay.publisher import MessageDispatcher
from delayrelay.utils.rabbitmq_utils import RabbitmqUtils
from delayrelay.utils.retry import RetryPolicy, retry_with_backoff

logger = logging.getLogger(__name__)


def default_connection_policy() -> RetryPolicy:
    return RetryPolicy(
        max_retries=10,
        initial_delay=2.0,
        max_delay=60.0,
        backoff_factor=2.0,
        jitter=True,
    )


class AioPikaMessageDispatcher(MessageDispatcher):
    """
    Republishes message bodies on the topic exchange named in the URL.
    """

    def __init__(
        self,
        url: str,
        connection_retry_policy: RetryPolicy | None = None,
        publish_timeout: float = 10.0,
        max_pool_size: int = 10,
    ) -> None:
        self.settings = RabbitmqUtils.parse_broker_url(url)
        self.connection_retry_policy = (
            connection_retry_policy or default_connection_policy()
        )
        self.publish_timeout = publish_timeout

        self.conn_pool: "Pool[AbstractRobustConnection]" = Pool(
            self._create_connection,
            max_size=max_pool_size,
        )

        self.channel_pool: "Pool[AbstractChannel]" = Pool(
            self._create_channel,
            max_size=max_pool_size,
        )

    async def _create_connection(self) -> AbstractRobustConnection:
        """
        Create a connection to the RabbitMQ server with retry logic.
        """

        async def _establish_connection() -> AbstractRobustConnection:
            logger.debug("Establishing publisher connection to RabbitMQ")
            connection = await connect_robust(self.settings.url)
            logger.debug("Publisher connected to RabbitMQ")
            return connection

        return await retry_with_backoff(
            _establish_connection,
            retry_policy=self.connection_retry_policy,
            retry_exceptions=(
                AMQPConnectionError,
                ConnectionError,
                OSError,
                TimeoutError,
            ),
        )

    async def _create_channel(self) -> AbstractChannel:
        async with self.conn_pool.acquire() as connection:
            return await connection.channel(publisher_confirms=True)

    async def initialize(self) -> None:
        async with self.channel_pool.acquire() as channel:
            await RabbitmqUtils.declare_main_exchange(channel, self.settings.exchange)
        logger.info("Publisher ready on exchange '%s'", self.settings.exchange)

    async def publish(
        self, topic: str, body: bytes, message_id: str | None = None
    ) -> None:
        async with self.channel_pool.acquire() as channel:
            exchange = await channel.get_exchange(self.settings.exchange, ensure=False)
            await exchange.publish(
                aio_pika.Message(
                    body=body,
                    message_id=message_id,
                    delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
                ),
                routing_key=topic,
                timeout=self.publish_timeout,
            )

    async def dispose(self) -> None:
        try:
            await self.channel_pool.close()
        except Exception as e:
            logger.warning("Error closing channel pool: %s", e)

        try:
            await self.conn_pool.close()
        except Exception as e:
            logger.warning("Error closing connection pool: %s", e)
