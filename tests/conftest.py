"""
Pytest configuration and fixtures for delayrelay tests.
"""

import asyncio
from pathlib import Path
from typing import AsyncGenerator, Callable

import pytest

from delayrelay.publisher import MessageDispatcher
from delayrelay.scheduler.types import PersistedMessage, derive_message_id
from delayrelay.store.sqlalchemy_store import SQLAlchemyMessageStore
from delayrelay.utils.retry import RetryPolicy

NOW = 1_700_000_000


class FakeClock:
    """Wall clock whose time only moves when a test says so."""

    def __init__(self, now: float = NOW) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingDispatcher(MessageDispatcher):
    """
    Dispatcher that records publishes and fails the first `failures` attempts.
    A negative count fails every attempt.
    """

    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.attempts: list[tuple[str, bytes]] = []
        self.published: list[tuple[str, bytes, str | None]] = []

    async def publish(
        self, topic: str, body: bytes, message_id: str | None = None
    ) -> None:
        self.attempts.append((topic, body))
        if self.failures != 0:
            self.failures -= 1
            raise ConnectionError("broker unavailable")
        self.published.append((topic, body, message_id))


async def wait_until(condition: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll `condition` until it holds, failing the test after `timeout` seconds."""

    async def _wait() -> None:
        while not condition():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_wait(), timeout)


def make_message(
    source: str = "bus-id-1",
    topic: str = "orders",
    body: bytes = b"{id:1}",
    send_at: int = NOW,
) -> PersistedMessage:
    return PersistedMessage(
        id=derive_message_id(source),
        topic=topic,
        body=body,
        send_at=send_at,
    )


def fast_retry_policy(max_retries: int | None = None) -> RetryPolicy:
    return RetryPolicy(
        max_retries=max_retries,
        initial_delay=0.01,
        max_delay=0.01,
        backoff_factor=1.0,
        jitter=False,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
async def store(tmp_path: Path) -> AsyncGenerator[SQLAlchemyMessageStore, None]:
    message_store = SQLAlchemyMessageStore(
        f"sqlite+aiosqlite:///{tmp_path / 'db.dat'}"
    )
    await message_store.initialize()
    yield message_store
    await message_store.dispose()
