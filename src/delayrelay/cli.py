# SPDX-FileCopyrightText: 2025 Lucas S
#
# SPDX-License-Identifier: GPL-3.0-or-later

import asyncio
import json
import logging
from datetime import UTC, datetime
from typing import Any

import click

from delayrelay.config import (
    DEFAULT_BROKER_URL,
    DEFAULT_DB_PATH,
    DEFAULT_TOPIC,
    RelayConfig,
)
from delayrelay.publisher.retrying import DEFAULT_MAX_PENDING_RETRIES
from delayrelay.relay import DelayRelay
from delayrelay.store.mapper import get_message_store_from_url
from delayrelay.utils.retry import RetryPolicy

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def format_timestamp(timestamp: int) -> str:
    return datetime.fromtimestamp(timestamp, tz=UTC).isoformat()


@click.group()
def cli() -> None:
    """Relay that republishes delayed messages once they are due."""


@cli.command()
@click.option(
    "--broker-url",
    type=str,
    default=DEFAULT_BROKER_URL,
    show_default=True,
    envvar="BROKER_URL",
    help="AMQP URL delayed messages are consumed from (?exchange=...&prefetch_count=...)",
)
@click.option(
    "--publisher-url",
    type=str,
    envvar="PUBLISHER_URL",
    help="AMQP URL due messages are published to. Defaults to --broker-url",
)
@click.option(
    "--topic",
    type=str,
    default=DEFAULT_TOPIC,
    show_default=True,
    envvar="TOPIC",
    help="Topic delayed messages are published on",
)
@click.option(
    "--queue",
    type=str,
    envvar="QUEUE",
    help="Name of the ingestion queue. Defaults to --topic",
)
@click.option(
    "--db",
    type=str,
    default=DEFAULT_DB_PATH,
    show_default=True,
    envvar="DB_PATH",
    help="Database file path or SQLAlchemy URL",
)
@click.option(
    "--interval",
    type=float,
    default=1.0,
    show_default=True,
    envvar="INTERVAL",
    help="Seconds between two polls for due messages",
)
@click.option(
    "--max-pending-retries",
    type=int,
    default=DEFAULT_MAX_PENDING_RETRIES,
    show_default=True,
    envvar="MAX_PENDING_RETRIES",
    help="Maximum number of messages waiting in memory for a publish retry",
)
@click.option(
    "--retry-delay",
    type=float,
    default=1.0,
    show_default=True,
    envvar="RETRY_DELAY",
    help="Seconds before the first publish retry",
)
@click.option(
    "--retry-backoff-factor",
    type=float,
    default=1.0,
    show_default=True,
    envvar="RETRY_BACKOFF_FACTOR",
    help="Multiplier applied to the retry delay after each failed retry",
)
@click.option(
    "--retry-max-delay",
    type=float,
    default=60.0,
    show_default=True,
    envvar="RETRY_MAX_DELAY",
    help="Upper bound for the retry delay",
)
@click.option(
    "--max-retries",
    type=int,
    envvar="MAX_RETRIES",
    help="Publish retries before a message is returned to the store. Unlimited if unset",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    envvar="LOG_LEVEL",
)
def run(
    broker_url: str,
    publisher_url: str | None,
    topic: str,
    queue: str | None,
    db: str,
    interval: float,
    max_pending_retries: int,
    retry_delay: float,
    retry_backoff_factor: float,
    retry_max_delay: float,
    max_retries: int | None,
    log_level: str,
) -> None:
    """Consume delayed messages and republish them when they are due."""

    configure_logging(log_level)

    try:
        config = RelayConfig(
            broker_url=broker_url,
            publisher_url=publisher_url,
            topic=topic,
            queue=queue,
            db=db,
            interval=interval,
            max_pending_retries=max_pending_retries,
            retry_policy=RetryPolicy(
                max_retries=max_retries,
                initial_delay=retry_delay,
                max_delay=max(retry_delay, retry_max_delay),
                backoff_factor=retry_backoff_factor,
                jitter=False,
            ),
        )
        relay = DelayRelay(config)
    except ValueError as e:
        raise click.UsageError(str(e)) from e

    relay.run()


@cli.command()
@click.option(
    "--db",
    type=str,
    default=DEFAULT_DB_PATH,
    show_default=True,
    envvar="DB_PATH",
    help="Database file path or SQLAlchemy URL",
)
@click.option(
    "--limit",
    type=int,
    default=20,
    show_default=True,
    help="Maximum number of messages to list",
)
@click.option(
    "--json",
    "output_json",
    is_flag=True,
    default=False,
    help="Output in JSON format",
)
def pending(db: str, limit: int, output_json: bool) -> None:
    """Show the messages waiting in the store.

    Examples:

    \b
    # Show the next messages to be relayed
    delayrelay pending --db /data/db.dat

    \b
    # Output as JSON
    delayrelay pending --db /data/db.dat --json
    """

    async def run_pending() -> dict[str, Any]:
        store = get_message_store_from_url(db)
        try:
            await store.initialize()
            total = await store.count()
            next_due = await store.next_due()
            messages = await store.list_pending(limit=limit)
        finally:
            await store.dispose()

        return {
            "total_messages": total,
            "next_due": next_due,
            "messages": [
                {
                    "id": message.id,
                    "topic": message.topic,
                    "send_at": message.send_at,
                    "size": len(message.body),
                }
                for message in messages
            ],
        }

    result = asyncio.run(run_pending())

    if output_json:
        click.echo(json.dumps(result, indent=2))
        return

    if result["total_messages"] == 0:
        click.echo("No delayed messages pending.")
        return

    click.echo(f"Pending messages: {result['total_messages']}")
    click.echo(f"Next due: {format_timestamp(result['next_due'])}")
    click.echo(f"{'-'*60}")
    for message in result["messages"]:
        click.echo(
            f"{message['id']}  {format_timestamp(message['send_at'])}  "
            f"{message['topic']} ({message['size']} bytes)"
        )
