# SPDX-FileCopyrightText: 2025 Lucas S
#
# SPDX-License-Identifier: GPL-3.0-or-later

from delayrelay.config import RelayConfig
from delayrelay.exceptions import (
    DelayRelayError,
    InvalidDelayedMessageError,
    PersistenceError,
    RelayStartupError,
)
from delayrelay.messagebus.ingestion import DelayedMessageHandler
from delayrelay.publisher import MessageDispatcher
from delayrelay.publisher.retrying import RetryingPublisher
from delayrelay.relay import DelayRelay
from delayrelay.scheduler.scheduler import DelayScheduler
from delayrelay.scheduler.types import DelayedMessage, PersistedMessage
from delayrelay.store import MessageStore
from delayrelay.store.sqlalchemy_store import SQLAlchemyMessageStore
from delayrelay.utils.retry import RetryPolicy

__all__ = [
    "DelayRelay",
    "DelayRelayError",
    "DelayScheduler",
    "DelayedMessage",
    "DelayedMessageHandler",
    "InvalidDelayedMessageError",
    "MessageDispatcher",
    "MessageStore",
    "PersistedMessage",
    "PersistenceError",
    "RelayConfig",
    "RelayStartupError",
    "RetryPolicy",
    "RetryingPublisher",
    "SQLAlchemyMessageStore",
]
