# SPDX-FileCopyrightText: 2025 Lucas S
#
# SPDX-License-Identifier: GPL-3.0-or-later

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass, field

from delayrelay.scheduler.types import PersistedMessage

logger = logging.getLogger(__name__)


@dataclass
class HandoffRequest:
    message: PersistedMessage
    replace: bool = True
    accepted: "asyncio.Future[None]" = field(
        default_factory=lambda: asyncio.get_running_loop().create_future()
    )

    def resolve(self) -> None:
        if not self.accepted.done():
            self.accepted.set_result(None)

    def fail(self, error: BaseException) -> None:
        if not self.accepted.done():
            self.accepted.set_exception(error)


class HandoffChannel:
    """
    Rendezvous point between the ingestion side and the scheduler loop.

    `put` does not return until the receiving side resolved the request, so
    each producer has at most one message in flight and a busy scheduler
    throttles how fast new deliveries are taken from the bus.
    """

    def __init__(self) -> None:
        self._requests: asyncio.Queue[HandoffRequest] = asyncio.Queue()

    async def put(self, message: PersistedMessage, replace: bool = True) -> None:
        """
        With `replace` False an already stored row with the same id wins.
        """
        request = HandoffRequest(message, replace)
        self._requests.put_nowait(request)
        await request.accepted

    def get_nowait(self) -> HandoffRequest | None:
        try:
            return self._requests.get_nowait()
        except asyncio.QueueEmpty:
            return None

    async def get(self, timeout: float | None) -> HandoffRequest | None:
        """
        Wait up to `timeout` seconds for the next request.
        Returns None when the timer fires first.
        """
        request = self.get_nowait()
        if request is not None or (timeout is not None and timeout <= 0):
            return request

        with suppress(asyncio.TimeoutError):
            return await asyncio.wait_for(self._requests.get(), timeout)
        return None

    def pending(self) -> int:
        return self._requests.qsize()
