# SPDX-FileCopyrightText: 2025 Lucas S
#
# SPDX-License-Identifier: GPL-3.0-or-later

import hashlib
import math
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

MESSAGE_ID_LENGTH = 32


# Bounds of a signed 64-bit SQLite INTEGER
SEND_AT_MIN = -(2**63)
SEND_AT_MAX = 2**63 - 1


class DelayedMessage(BaseModel):
    """
    JSON body of a message published on the ingestion topic.
    The relay republishes `body` to `topic` once `send_at` has passed.
    """

    model_config = ConfigDict(extra="ignore")

    topic: str = Field(min_length=1)
    body: str = Field(min_length=1)
    send_at: int = Field(ge=SEND_AT_MIN, le=SEND_AT_MAX)

    @field_validator("send_at", mode="before")
    @classmethod
    def parse_send_at(cls, value: Any) -> Any:
        if isinstance(value, bool):
            raise ValueError("send_at must be a timestamp")
        if isinstance(value, (int, float)):
            return _to_seconds(value)
        if isinstance(value, datetime):
            return _to_epoch(value)
        if isinstance(value, str):
            stripped = value.strip()
            try:
                number: float | None = float(stripped)
            except ValueError:
                number = None
            if number is not None:
                return _to_seconds(number)
            try:
                return _to_epoch(datetime.fromisoformat(stripped))
            except (ValueError, OverflowError) as e:
                raise ValueError(f"send_at is not a valid timestamp: {value!r}") from e
        return value


class PersistedMessage(BaseModel):
    """A delayed message as it lives in the store, keyed by `id`."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=MESSAGE_ID_LENGTH, max_length=MESSAGE_ID_LENGTH)
    topic: str
    body: bytes
    send_at: int = Field(ge=SEND_AT_MIN, le=SEND_AT_MAX)

    def is_due(self, now: int) -> bool:
        return self.send_at < now


def derive_message_id(source: str | bytes) -> str:
    """
    Reduce a bus message identifier (or, when the producer did not set one,
    the raw message body) to the fixed width used as the store key.
    """
    if isinstance(source, str):
        source = source.encode()
    return hashlib.blake2b(source, digest_size=MESSAGE_ID_LENGTH // 2).hexdigest()


def _to_epoch(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return int(value.timestamp())


def _to_seconds(value: int | float) -> int:
    if isinstance(value, float) and not math.isfinite(value):
        raise ValueError("send_at must be a finite timestamp")
    return int(value)
