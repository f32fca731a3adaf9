# SPDX-FileCopyrightText: 2025 Lucas S
#
# SPDX-License-Identifier: GPL-3.0-or-later


class DelayRelayError(Exception):
    """Base class for every error raised by the relay."""


class InvalidDelayedMessageError(DelayRelayError, ValueError):
    """
    The incoming bus message could not be turned into a delayed message.
    Raised for malformed JSON, missing fields or an empty topic/body.
    """


class PersistenceError(DelayRelayError):
    """
    The scheduler accepted a handoff but could not write it to the store.
    The caller must not acknowledge the originating bus message.
    """

    def __init__(self, message_id: str, cause: BaseException) -> None:
        super().__init__(f"Could not persist message '{message_id}': {cause}")
        self.message_id = message_id
        self.cause = cause


class RelayStartupError(DelayRelayError):
    """Fatal error while bringing the relay up (store or broker unavailable)."""
