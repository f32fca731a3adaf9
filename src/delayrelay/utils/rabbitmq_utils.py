# SPDX-FileCopyrightText: 2025 Lucas S
#
# SPDX-License-Identifier: GPL-3.0-or-later

import logging
from dataclasses import dataclass
from urllib.parse import parse_qs

import aio_pika
import urllib3.util
from aio_pika.abc import AbstractChannel, AbstractExchange, AbstractQueue

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BrokerSettings:
    url: str
    exchange: str
    prefetch_count: int


class RabbitmqUtils:

    DEFAULT_PREFETCH_COUNT = 10

    @classmethod
    def parse_broker_url(cls, url: str) -> BrokerSettings:
        """
        Read the exchange and prefetch count carried in the query string of
        an `amqp://` or `amqps://` URL.
        """
        splitted = urllib3.util.parse_url(url)

        if splitted.scheme not in ("amqp", "amqps"):
            raise ValueError(f"Unsupported message broker URL: {url}")

        if not splitted.host:
            raise ValueError(f"Invalid URL host: {url}")

        query_params: dict[str, list[str]] = parse_qs(splitted.query or "")

        exchange = query_params.get("exchange", [""])[0]
        if not exchange:
            raise ValueError("Exchange must be set in the query string")

        prefetch_count = cls.DEFAULT_PREFETCH_COUNT
        if "prefetch_count" in query_params:
            raw_prefetch_count = query_params["prefetch_count"][0]
            if not raw_prefetch_count.isdigit() or int(raw_prefetch_count) < 1:
                raise ValueError(
                    "Prefetch count must be a positive integer in the query string"
                )
            prefetch_count = int(raw_prefetch_count)

        return BrokerSettings(
            url=url,
            exchange=exchange,
            prefetch_count=prefetch_count,
        )

    @classmethod
    async def declare_main_exchange(
        cls, channel: AbstractChannel, exchange_name: str
    ) -> AbstractExchange:
        """
        Declare the topic exchange every topic is routed through.
        """
        return await channel.declare_exchange(
            name=exchange_name,
            type=aio_pika.ExchangeType.TOPIC,
            durable=True,
            auto_delete=False,
        )

    @classmethod
    async def declare_ingestion_queue(
        cls,
        channel: AbstractChannel,
        exchange: AbstractExchange,
        queue_name: str,
        topic: str,
    ) -> AbstractQueue:
        """
        Declare the durable queue delayed messages are consumed from and bind
        it to the ingestion topic.
        """
        queue = await channel.declare_queue(
            name=queue_name,
            durable=True,
        )
        await queue.bind(exchange=exchange, routing_key=topic)
        logger.debug(
            "Queue '%s' bound to '%s' on exchange '%s'",
            queue_name,
            topic,
            exchange.name,
        )
        return queue
