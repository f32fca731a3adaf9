# SPDX-FileCopyrightText: 2025 Lucas S
#
# SPDX-License-Identifier: GPL-3.0-or-later

from abc import ABC, abstractmethod


class MessageDispatcher(ABC):

    async def initialize(self) -> None:
        """
        Open the connections needed to publish.
        Failing here is fatal for the relay.
        """

    @abstractmethod
    async def publish(
        self, topic: str, body: bytes, message_id: str | None = None
    ) -> None:
        """
        Publish `body` unmodified to `topic` for immediate delivery.
        Raises when the broker did not take the message.
        """
        raise NotImplementedError("publish() is not implemented yet.")

    async def dispose(self) -> None:
        pass
