"""Durable message store backed by SQLite.

The store keeps two tables:

* ``seen``: every message id ever accepted. Rows are never deleted, so
  deduplication is permanent rather than a sliding window.
* ``pending``: messages accepted but not yet confirmed by the sink, in
  insertion order.

Every mutating call commits before returning, so a write survives a crash
of the process as soon as the call has returned.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from lora_endpoint.exceptions import EndpointStoreError
from lora_endpoint.models.message import Message

_logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS seen (
        id TEXT PRIMARY KEY
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pending (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL,
        body TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_pending_id ON pending(id)",
)


class MessageStore(Protocol):
    """Structural store interface consumed by the delivery queue.

    Tests may pass any object with these methods; production uses
    :class:`SqliteMessageStore`.
    """

    def is_seen(self, message_id: str) -> bool: ...

    def set_seen(self, message_id: str) -> None: ...

    def enqueue(self, message: Message) -> None: ...

    def dequeue(self, message: Message) -> None: ...

    def get_messages(self) -> list[Message]: ...

    def add(self, message: Message) -> bool: ...


class SqliteMessageStore:
    """SQLite implementation of :class:`MessageStore`.

    Parameters
    ----------
    path : str or Path
        Database file. Parent directories are created when missing. The
        special value ``":memory:"`` gives a non-durable store for tests.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = str(path)
        if self._path != ":memory:":
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = sqlite3.connect(self._path)
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=FULL")
            with self._conn:
                for statement in _SCHEMA:
                    self._conn.execute(statement)
        except sqlite3.Error as exc:
            raise EndpointStoreError(f"Cannot open message store '{self._path}': {exc}") from exc
        _logger.debug("Message store opened at %s", self._path)

    @property
    def path(self) -> str:
        return self._path

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Seen set
    # ------------------------------------------------------------------

    def is_seen(self, message_id: str) -> bool:
        try:
            row = self._conn.execute("SELECT 1 FROM seen WHERE id = ?", (message_id,)).fetchone()
        except sqlite3.Error as exc:
            raise EndpointStoreError(f"Seen lookup failed: {exc}") from exc
        return row is not None

    def set_seen(self, message_id: str) -> None:
        try:
            with self._conn:
                self._conn.execute("INSERT OR IGNORE INTO seen (id) VALUES (?)", (message_id,))
        except sqlite3.Error as exc:
            raise EndpointStoreError(f"Marking '{message_id}' as seen failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Pending queue
    # ------------------------------------------------------------------

    def enqueue(self, message: Message) -> None:
        try:
            with self._conn:
                self._insert_pending(message)
        except sqlite3.Error as exc:
            raise EndpointStoreError(f"Enqueue of '{message.id}' failed: {exc}") from exc

    def dequeue(self, message: Message) -> None:
        try:
            with self._conn:
                self._conn.execute(
                    "DELETE FROM pending WHERE seq = (SELECT seq FROM pending WHERE id = ? ORDER BY seq LIMIT 1)",
                    (message.id,),
                )
        except sqlite3.Error as exc:
            raise EndpointStoreError(f"Dequeue of '{message.id}' failed: {exc}") from exc

    def get_messages(self) -> list[Message]:
        try:
            rows = self._conn.execute("SELECT seq, body FROM pending ORDER BY seq").fetchall()
        except sqlite3.Error as exc:
            raise EndpointStoreError(f"Reading pending messages failed: {exc}") from exc

        messages: list[Message] = []
        unreadable: list[int] = []
        for seq, body in rows:
            try:
                messages.append(Message.model_validate_json(body))
            except ValidationError:
                _logger.error("Discarding unreadable pending row seq=%s", seq, exc_info=True)
                unreadable.append(seq)

        # A row we cannot parse would otherwise fail every drain forever.
        if unreadable:
            try:
                with self._conn:
                    self._conn.executemany("DELETE FROM pending WHERE seq = ?", [(seq,) for seq in unreadable])
            except sqlite3.Error as exc:
                raise EndpointStoreError(f"Discarding unreadable rows failed: {exc}") from exc
        return messages

    def add(self, message: Message) -> bool:
        """Mark ``message.id`` as seen and enqueue the message in one transaction.

        Returns ``False`` without enqueuing when the id was already seen.
        """
        try:
            with self._conn:
                cursor = self._conn.execute("INSERT OR IGNORE INTO seen (id) VALUES (?)", (message.id,))
                if cursor.rowcount == 0:
                    return False
                self._insert_pending(message)
        except sqlite3.Error as exc:
            raise EndpointStoreError(f"Accepting '{message.id}' failed: {exc}") from exc
        return True

    def pending_count(self) -> int:
        try:
            (count,) = self._conn.execute("SELECT COUNT(*) FROM pending").fetchone()
        except sqlite3.Error as exc:
            raise EndpointStoreError(f"Counting pending messages failed: {exc}") from exc
        return int(count)

    def _insert_pending(self, message: Message) -> None:
        self._conn.execute(
            "INSERT INTO pending (id, body) VALUES (?, ?)",
            (message.id, message.model_dump_json()),
        )
