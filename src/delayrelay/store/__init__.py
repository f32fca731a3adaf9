# SPDX-FileCopyrightText: 2025 Lucas S
#
# SPDX-License-Identifier: GPL-3.0-or-later

from abc import ABC, abstractmethod
from typing import Sequence

from delayrelay.scheduler.types import PersistedMessage


class MessageStore(ABC):
    """
    Durable table of pending delayed messages.

    Every method is an independent statement: nothing groups a query and the
    deletes that follow it, so a crash in between leaves the rows in place.
    Only the scheduler loop is expected to call these methods.
    """

    async def initialize(self) -> None:
        """
        Create the storage structures if they do not exist yet.
        """

    @abstractmethod
    async def upsert(self, message: PersistedMessage) -> None:
        """
        Insert the message or fully replace the row with the same id.
        """
        raise NotImplementedError(f"upsert() is not implemented by {self.__class__}.")

    @abstractmethod
    async def query_due(self, now: int) -> Sequence[PersistedMessage]:
        """
        Return every message whose send_at is strictly lower than `now`.
        """
        raise NotImplementedError(
            f"query_due() is not implemented by {self.__class__}."
        )

    @abstractmethod
    async def delete(self, message_id: str) -> None:
        """
        Remove a message. Deleting an unknown id is a no-op.
        """
        raise NotImplementedError(f"delete() is not implemented by {self.__class__}.")

    async def get(self, message_id: str) -> PersistedMessage | None:
        raise NotImplementedError(f"get() is not implemented by {self.__class__}.")

    async def count(self) -> int:
        raise NotImplementedError(f"count() is not implemented by {self.__class__}.")

    async def next_due(self) -> int | None:
        """
        The earliest send_at still pending, or None when the store is empty.
        """
        raise NotImplementedError(
            f"next_due() is not implemented by {self.__class__}."
        )

    async def list_pending(self, limit: int | None = None) -> Sequence[PersistedMessage]:
        raise NotImplementedError(
            f"list_pending() is not implemented by {self.__class__}."
        )

    async def dispose(self) -> None:
        """
        Release the resources held by the store.
        """
