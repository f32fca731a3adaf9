# SPDX-FileCopyrightText: 2025 Lucas S
#
# SPDX-License-Identifier: GPL-3.0-or-later

from pathlib import Path

from delayrelay.store import MessageStore


def store_url_from_path(path_or_url: str) -> str:
    """
    Turn a plain database file path into an aiosqlite URL.
    Values that already look like URLs are returned unchanged.
    """
    if "://" in path_or_url:
        return path_or_url
    return f"sqlite+aiosqlite:///{Path(path_or_url).expanduser()}"


def get_message_store_from_url(path_or_url: str) -> MessageStore:
    """
    Factory function to create a message store instance from a path or URL.
    Currently, only SQLite through aiosqlite is supported.
    """
    url = store_url_from_path(path_or_url)
    if url.startswith("sqlite+aiosqlite://"):
        from delayrelay.store.sqlalchemy_store import SQLAlchemyMessageStore

        return SQLAlchemyMessageStore(url)
    else:
        raise ValueError(f"Unsupported message store URL: {url}")
