# SPDX-FileCopyrightText: 2025 Lucas S
#
# SPDX-License-Identifier: GPL-3.0-or-later

import logging
from typing import Any, Sequence

from sqlalchemy import (
    Column,
    Index,
    Integer,
    LargeBinary,
    MetaData,
    Row,
    Table,
    Text,
    delete,
    func,
    select,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from delayrelay.scheduler.types import PersistedMessage
from delayrelay.store import MessageStore

logger = logging.getLogger(__name__)

metadata = MetaData()

# Same layout as the files written by earlier deployments, so an existing
# database can be reused as is.
messages_table = Table(
    "messages",
    metadata,
    Column("id", Text),
    Column("send_at", Integer),
    Column("topic", Text),
    Column("body", LargeBinary),
    Index("idx_messages", "id", unique=True),
)


class SQLAlchemyMessageStore(MessageStore):

    def __init__(self, url: str, **engine_kwargs: Any) -> None:
        self.url = url
        self.engine: AsyncEngine = create_async_engine(url, **engine_kwargs)

    async def initialize(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)
        logger.debug("Message store ready at %s", self.url)

    async def upsert(self, message: PersistedMessage) -> None:
        stmt = sqlite_insert(messages_table).values(
            id=message.id,
            send_at=message.send_at,
            topic=message.topic,
            body=message.body,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[messages_table.c.id],
            set_={
                "send_at": stmt.excluded.send_at,
                "topic": stmt.excluded.topic,
                "body": stmt.excluded.body,
            },
        )
        async with self.engine.begin() as conn:
            await conn.execute(stmt)

    async def query_due(self, now: int) -> Sequence[PersistedMessage]:
        stmt = (
            select(messages_table)
            .where(messages_table.c.send_at < now)
            .order_by(messages_table.c.send_at)
        )
        async with self.engine.connect() as conn:
            result = await conn.execute(stmt)
            return [self._to_message(row) for row in result]

    async def delete(self, message_id: str) -> None:
        async with self.engine.begin() as conn:
            await conn.execute(
                delete(messages_table).where(messages_table.c.id == message_id)
            )

    async def get(self, message_id: str) -> PersistedMessage | None:
        async with self.engine.connect() as conn:
            result = await conn.execute(
                select(messages_table).where(messages_table.c.id == message_id)
            )
            row = result.first()
        return None if row is None else self._to_message(row)

    async def count(self) -> int:
        async with self.engine.connect() as conn:
            result = await conn.execute(
                select(func.count()).select_from(messages_table)
            )
            return int(result.scalar_one())

    async def next_due(self) -> int | None:
        async with self.engine.connect() as conn:
            result = await conn.execute(select(func.min(messages_table.c.send_at)))
            value = result.scalar_one_or_none()
        return None if value is None else int(value)

    async def list_pending(self, limit: int | None = None) -> Sequence[PersistedMessage]:
        stmt = select(messages_table).order_by(
            messages_table.c.send_at, messages_table.c.id
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self.engine.connect() as conn:
            result = await conn.execute(stmt)
            return [self._to_message(row) for row in result]

    async def dispose(self) -> None:
        await self.engine.dispose()

    @staticmethod
    def _to_message(row: Row[Any]) -> PersistedMessage:
        return PersistedMessage(
            id=row.id,
            topic=row.topic,
            body=bytes(row.body),
            send_at=int(row.send_at),
        )
