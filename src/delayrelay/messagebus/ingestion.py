# SPDX-FileCopyrightText: 2025 Lucas S
#
# SPDX-License-Identifier: GPL-3.0-or-later

import logging
from typing import TYPE_CHECKING

from pydantic import ValidationError

from delayrelay.exceptions import InvalidDelayedMessageError
from delayrelay.scheduler.types import (
    DelayedMessage,
    PersistedMessage,
    derive_message_id,
)

if TYPE_CHECKING:
    from delayrelay.scheduler.scheduler import DelayScheduler

logger = logging.getLogger(__name__)


def parse_delayed_message(
    body: bytes, bus_message_id: str | None = None
) -> PersistedMessage:
    """
    Validate the JSON body of an ingestion message and build the record to store.

    The record id comes from the bus message id, or from the raw body when the
    producer did not set one.

    Raises:
        InvalidDelayedMessageError: malformed JSON, missing field, empty topic or body
    """
    try:
        delayed_message = DelayedMessage.model_validate_json(body)
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'body'}: {error['msg']}"
            for error in e.errors()
        )
        raise InvalidDelayedMessageError(
            f"invalid delayed message data: {details}"
        ) from e

    return PersistedMessage(
        id=derive_message_id(bus_message_id or body),
        topic=delayed_message.topic,
        body=delayed_message.body.encode(),
        send_at=delayed_message.send_at,
    )


class DelayedMessageHandler:
    """
    Turns ingestion bus messages into stored records through the scheduler handoff.
    """

    def __init__(self, scheduler: "DelayScheduler") -> None:
        self.scheduler = scheduler

    async def handle(
        self, body: bytes, bus_message_id: str | None = None
    ) -> PersistedMessage:
        """
        Validate and hand the message over, waiting until it is persisted.

        Raises:
            InvalidDelayedMessageError: the message can never be stored
            PersistenceError: the store failed, the message may be redelivered
        """
        try:
            message = parse_delayed_message(body, bus_message_id)
        except InvalidDelayedMessageError as e:
            logger.warning("Invalid delayed message %s: %s", bus_message_id, e)
            raise

        await self.scheduler.submit(message)

        logger.debug(
            "Accepted message '%s' for topic '%s' at %s",
            message.id,
            message.topic,
            message.send_at,
        )
        return message
