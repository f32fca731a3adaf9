"""
Tests for the scheduler loop: handoff, poll cycles and shutdown.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Sequence

import pytest
from conftest import (
    NOW,
    FakeClock,
    RecordingDispatcher,
    fast_retry_policy,
    make_message,
    wait_until,
)

from delayrelay.exceptions import PersistenceError
from delayrelay.messagebus.ingestion import DelayedMessageHandler
from delayrelay.scheduler.scheduler import DelayScheduler
from delayrelay.scheduler.types import PersistedMessage
from delayrelay.store.sqlalchemy_store import SQLAlchemyMessageStore


class RecordingStore(SQLAlchemyMessageStore):
    """SQLite store that records calls and can be told to fail."""

    def __init__(self, url: str) -> None:
        super().__init__(url)
        self.calls: list[str] = []
        self.fail_upsert = False
        self.fail_query = False
        self.fail_delete = False

    async def upsert(self, message: PersistedMessage) -> None:
        self.calls.append("upsert")
        if self.fail_upsert:
            raise OSError("disk full")
        await super().upsert(message)

    async def query_due(self, now: int) -> Sequence[PersistedMessage]:
        self.calls.append("query_due")
        if self.fail_query:
            raise OSError("disk I/O error")
        return await super().query_due(now)

    async def delete(self, message_id: str) -> None:
        self.calls.append("delete")
        if self.fail_delete:
            raise OSError("database is locked")
        await super().delete(message_id)


@pytest.fixture
async def recording_store(tmp_path: Any) -> AsyncGenerator[RecordingStore, None]:
    message_store = RecordingStore(f"sqlite+aiosqlite:///{tmp_path / 'db.dat'}")
    await message_store.initialize()
    yield message_store
    await message_store.dispose()


@pytest.fixture
def scheduler(
    recording_store: RecordingStore,
    dispatcher: RecordingDispatcher,
    clock: FakeClock,
) -> DelayScheduler:
    return DelayScheduler(
        store=recording_store,
        dispatcher=dispatcher,
        interval=0.02,
        retry_policy=fast_retry_policy(),
        clock=clock,
    )


@asynccontextmanager
async def running(scheduler: DelayScheduler) -> AsyncGenerator[None, None]:
    task = asyncio.create_task(scheduler.run())
    try:
        yield
    finally:
        scheduler.shutdown()
        await asyncio.wait_for(task, 2)


def delayed(topic: str, body: str, send_at: int) -> bytes:
    return json.dumps({"topic": topic, "body": body, "send_at": send_at}).encode()


class TestHandoff:
    """Test suite for handing messages over to the scheduler."""

    async def test_submit_returns_after_persisting(
        self, scheduler: DelayScheduler, recording_store: RecordingStore
    ) -> None:
        message = make_message(send_at=NOW + 60)

        async with running(scheduler):
            await asyncio.wait_for(scheduler.submit(message), 1)
            assert await recording_store.get(message.id) == message

    async def test_submit_blocks_while_scheduler_is_not_running(
        self, scheduler: DelayScheduler, recording_store: RecordingStore
    ) -> None:
        """Test that a handoff waits for the loop instead of being dropped."""
        message = make_message(send_at=NOW + 60)
        submit = asyncio.create_task(scheduler.submit(message))

        await asyncio.sleep(0.05)
        assert not submit.done()
        assert await recording_store.count() == 0

        async with running(scheduler):
            await asyncio.wait_for(submit, 1)

        assert await recording_store.get(message.id) == message

    async def test_pending_handoffs_are_drained_before_polling(
        self, scheduler: DelayScheduler, recording_store: RecordingStore
    ) -> None:
        submits = [
            asyncio.create_task(
                scheduler.submit(make_message(f"m{index}", send_at=NOW + 60))
            )
            for index in range(3)
        ]
        await asyncio.sleep(0)

        async with running(scheduler):
            await asyncio.wait_for(asyncio.gather(*submits), 1)

        assert recording_store.calls[:4] == ["upsert", "upsert", "upsert", "query_due"]

    async def test_store_failure_is_reported_to_the_caller(
        self, scheduler: DelayScheduler, recording_store: RecordingStore
    ) -> None:
        message = make_message(send_at=NOW + 60)

        async with running(scheduler):
            recording_store.fail_upsert = True
            with pytest.raises(PersistenceError) as exc_info:
                await asyncio.wait_for(scheduler.submit(message), 1)
            assert exc_info.value.message_id == message.id

            recording_store.fail_upsert = False
            await asyncio.wait_for(scheduler.submit(message), 1)

        assert await recording_store.count() == 1


class TestPollCycle:
    """Test suite for a single poll cycle."""

    async def test_no_early_delivery(
        self,
        scheduler: DelayScheduler,
        recording_store: RecordingStore,
        dispatcher: RecordingDispatcher,
    ) -> None:
        """Test that rows with send_at >= now are neither published nor deleted."""
        await recording_store.upsert(make_message("exact", send_at=NOW))
        await recording_store.upsert(make_message("later", send_at=NOW + 5))

        handed = await scheduler.poll_cycle()

        assert handed == 0
        assert dispatcher.attempts == []
        assert await recording_store.count() == 2
        assert "delete" not in recording_store.calls

    async def test_due_rows_are_published_and_deleted(
        self,
        scheduler: DelayScheduler,
        recording_store: RecordingStore,
        dispatcher: RecordingDispatcher,
    ) -> None:
        body = b"\x00\xffraw payload"
        message = make_message(body=body, send_at=NOW - 1)
        await recording_store.upsert(message)

        handed = await scheduler.poll_cycle()

        assert handed == 1
        assert dispatcher.published == [("orders", body, message.id)]
        assert await recording_store.count() == 0

    async def test_query_failure_defers_to_next_cycle(
        self,
        scheduler: DelayScheduler,
        recording_store: RecordingStore,
        dispatcher: RecordingDispatcher,
    ) -> None:
        await recording_store.upsert(make_message(send_at=NOW - 1))
        recording_store.fail_query = True

        assert await scheduler.poll_cycle() == 0
        assert dispatcher.attempts == []

        recording_store.fail_query = False
        assert await scheduler.poll_cycle() == 1
        assert len(dispatcher.published) == 1

    async def test_delete_failure_keeps_row_for_redelivery(
        self,
        scheduler: DelayScheduler,
        recording_store: RecordingStore,
        dispatcher: RecordingDispatcher,
    ) -> None:
        """Test that a failed delete leads to a duplicate publish, never a loss."""
        await recording_store.upsert(make_message(send_at=NOW - 1))
        recording_store.fail_delete = True

        await scheduler.poll_cycle()
        assert await recording_store.count() == 1

        recording_store.fail_delete = False
        await scheduler.poll_cycle()

        assert len(dispatcher.published) == 2
        assert await recording_store.count() == 0

    async def test_failed_publish_is_deleted_and_retried(
        self,
        scheduler: DelayScheduler,
        recording_store: RecordingStore,
        dispatcher: RecordingDispatcher,
    ) -> None:
        message = make_message(send_at=NOW - 1)
        await recording_store.upsert(message)
        dispatcher.failures = 1

        async with running(scheduler):
            await wait_until(lambda: len(dispatcher.published) == 1)

        assert len(dispatcher.attempts) == 2
        assert dispatcher.published == [("orders", message.body, message.id)]
        assert await recording_store.count() == 0

    async def test_full_retry_queue_leaves_rows_in_store(
        self,
        recording_store: RecordingStore,
        clock: FakeClock,
    ) -> None:
        failing = RecordingDispatcher(failures=-1)
        scheduler = DelayScheduler(
            store=recording_store,
            dispatcher=failing,
            interval=0.02,
            retry_policy=fast_retry_policy(),
            max_pending_retries=1,
            clock=clock,
        )
        first = make_message("first", send_at=NOW - 2)
        second = make_message("second", send_at=NOW - 1)
        await recording_store.upsert(first)
        await recording_store.upsert(second)

        handed = await scheduler.poll_cycle()

        assert handed == 1
        assert scheduler.publisher.is_pending(first.id)
        assert await recording_store.get(first.id) is None
        assert await recording_store.get(second.id) == second
        await scheduler.publisher.stop()


class TestScenarios:
    """End-to-end scenarios through the ingestion handler."""

    async def test_message_is_relayed_once_due(
        self,
        scheduler: DelayScheduler,
        recording_store: RecordingStore,
        dispatcher: RecordingDispatcher,
        clock: FakeClock,
    ) -> None:
        handler = DelayedMessageHandler(scheduler)

        async with running(scheduler):
            record = await handler.handle(delayed("orders", "{id:1}", NOW + 5), "a")
            await asyncio.sleep(0.1)

            assert dispatcher.attempts == []
            assert await recording_store.count() == 1

            clock.advance(6)
            await wait_until(lambda: len(dispatcher.published) == 1)

        assert dispatcher.published == [("orders", b"{id:1}", record.id)]
        assert await recording_store.get(record.id) is None

    async def test_latest_write_wins_before_due(
        self,
        scheduler: DelayScheduler,
        recording_store: RecordingStore,
        dispatcher: RecordingDispatcher,
        clock: FakeClock,
    ) -> None:
        handler = DelayedMessageHandler(scheduler)

        async with running(scheduler):
            await handler.handle(delayed("orders", "A", NOW + 5), "X")
            await handler.handle(delayed("orders", "B", NOW + 5), "X")
            assert await recording_store.count() == 1

            clock.advance(6)
            await wait_until(lambda: len(dispatcher.published) == 1)
            await asyncio.sleep(0.1)

        assert [body for _, body, _ in dispatcher.published] == [b"B"]

    async def test_transient_publish_failure_is_retried(
        self,
        scheduler: DelayScheduler,
        recording_store: RecordingStore,
        dispatcher: RecordingDispatcher,
        clock: FakeClock,
    ) -> None:
        handler = DelayedMessageHandler(scheduler)
        dispatcher.failures = 1

        async with running(scheduler):
            record = await handler.handle(delayed("orders", "{id:1}", NOW - 1), "c")
            await wait_until(lambda: len(dispatcher.published) == 1)

        assert len(dispatcher.attempts) == 2
        assert dispatcher.published == [("orders", b"{id:1}", record.id)]


class TestShutdown:
    """Test suite for stopping the scheduler without losing messages."""

    async def test_pending_retries_return_to_the_store(
        self,
        recording_store: RecordingStore,
        clock: FakeClock,
    ) -> None:
        failing = RecordingDispatcher(failures=-1)
        scheduler = DelayScheduler(
            store=recording_store,
            dispatcher=failing,
            interval=0.02,
            retry_policy=fast_retry_policy(),
            clock=clock,
        )
        message = make_message(send_at=NOW - 1)
        await recording_store.upsert(message)

        async with running(scheduler):
            await wait_until(lambda: scheduler.publisher.pending_retries == 1)

        assert await recording_store.get(message.id) == message

    async def test_exhausted_retries_return_to_the_store(
        self,
        recording_store: RecordingStore,
        clock: FakeClock,
    ) -> None:
        failing = RecordingDispatcher(failures=-1)
        scheduler = DelayScheduler(
            store=recording_store,
            dispatcher=failing,
            interval=0.02,
            retry_policy=fast_retry_policy(max_retries=1),
            clock=clock,
        )
        message = make_message(send_at=NOW - 1)
        await recording_store.upsert(message)

        async with running(scheduler):
            # first attempt, one retry, then picked up again from the store
            await wait_until(lambda: len(failing.attempts) >= 3)

        assert await recording_store.get(message.id) == message

    async def test_newer_row_is_not_overwritten_by_returned_retry(
        self,
        recording_store: RecordingStore,
        clock: FakeClock,
    ) -> None:
        failing = RecordingDispatcher(failures=-1)
        scheduler = DelayScheduler(
            store=recording_store,
            dispatcher=failing,
            interval=0.02,
            retry_policy=fast_retry_policy(),
            clock=clock,
        )
        stale = make_message(body=b"old", send_at=NOW - 1)
        fresh = make_message(body=b"new", send_at=NOW + 60)
        await recording_store.upsert(stale)

        async with running(scheduler):
            await wait_until(lambda: scheduler.publisher.pending_retries == 1)
            await scheduler.submit(fresh)

        assert await recording_store.get(fresh.id) == fresh

    async def test_lost_retries_are_not_counted_as_returned(
        self,
        recording_store: RecordingStore,
        clock: FakeClock,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        failing = RecordingDispatcher(failures=-1)
        scheduler = DelayScheduler(
            store=recording_store,
            dispatcher=failing,
            interval=0.02,
            retry_policy=fast_retry_policy(),
            clock=clock,
        )
        first = make_message("first", send_at=NOW - 1)
        second = make_message("second", send_at=NOW - 1)
        await recording_store.upsert(first)
        await recording_store.upsert(second)

        with caplog.at_level("INFO", logger="delayrelay.scheduler.scheduler"):
            async with running(scheduler):
                await wait_until(lambda: scheduler.publisher.pending_retries == 2)
                recording_store.fail_upsert = True

        assert "Scheduler stopped, 0 message(s) returned to the store" in caplog.text
        assert caplog.text.count("it is lost") == 2
        assert await recording_store.count() == 0
