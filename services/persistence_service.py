from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from models.credentials import CredentialSet
from models.gmail import (
    Attachment,
    Header,
    Label,
    Message,
    MessagePart,
    MessagePartBody,
)
from services.errors import StoreVersionError

LOGGER = logging.getLogger(__name__)

SCHEMA_VERSION = 1

SCHEMA = """
CREATE TABLE tokens (
    access_token TEXT NOT NULL,
    refresh_token TEXT PRIMARY KEY,
    expires_at TEXT NOT NULL,
    refresh_expires_at TEXT
);

CREATE TABLE labels (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    message_list_visibility TEXT,
    label_list_visibility TEXT,
    type TEXT NOT NULL,
    text_color TEXT,
    background_color TEXT
);

CREATE TABLE messages (
    id TEXT PRIMARY KEY,
    thread_id TEXT NOT NULL,
    snippet TEXT NOT NULL,
    history_id TEXT NOT NULL,
    internal_date TEXT NOT NULL,
    size_estimate INTEGER NOT NULL
);

CREATE TABLE message_labels (
    message_id TEXT NOT NULL REFERENCES messages(id),
    label_id TEXT NOT NULL REFERENCES labels(id),
    PRIMARY KEY (message_id, label_id)
);

CREATE TABLE message_parts (
    message_id TEXT NOT NULL REFERENCES messages(id),
    part_id TEXT NOT NULL,
    mime_type TEXT NOT NULL,
    filename TEXT NOT NULL,
    headers TEXT NOT NULL,
    children TEXT NOT NULL,
    PRIMARY KEY (message_id, part_id)
);

CREATE TABLE message_part_body (
    message_id TEXT NOT NULL,
    part_id TEXT NOT NULL,
    attachment_id TEXT,
    size INTEGER NOT NULL,
    data BLOB,
    PRIMARY KEY (message_id, part_id),
    FOREIGN KEY (message_id, part_id) REFERENCES message_parts(message_id, part_id)
);

CREATE TABLE message_attachments (
    message_id TEXT NOT NULL,
    attachment_id TEXT NOT NULL,
    size INTEGER NOT NULL,
    data BLOB NOT NULL,
    PRIMARY KEY (message_id, attachment_id)
);

CREATE TABLE raw_messages (
    message_id TEXT PRIMARY KEY,
    data BLOB NOT NULL
);

CREATE TABLE version (
    version INTEGER NOT NULL
);
"""

COUNTED_TABLES = (
    "labels",
    "messages",
    "message_parts",
    "message_attachments",
    "raw_messages",
)


def _to_text(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


def _from_text(value: str) -> datetime:
    return datetime.fromisoformat(value)


class MirrorStore:
    """SQLite-backed mirror of a Gmail mailbox.

    One connection is shared by every caller and serialized by a single lock.
    Rows are only ever inserted, each insert guarded by a ``contains_*`` check
    on the caller's side.
    """

    def __init__(self, db_path: Path | str):
        self._db_path = db_path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.execute("PRAGMA foreign_keys = ON")
        try:
            self._ensure_schema()
        except Exception:
            self._conn.close()
            raise

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "MirrorStore":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _ensure_schema(self) -> None:
        with self._lock:
            exists = self._conn.execute(
                "SELECT 1 FROM sqlite_master WHERE type='table' AND name='version'"
            ).fetchone()
            if exists is None:
                LOGGER.info("Creating schema version %s in %s", SCHEMA_VERSION, self._db_path)
                with self._conn:
                    self._conn.execute("BEGIN")
                    for statement in SCHEMA.split(";"):
                        if statement.strip():
                            self._conn.execute(statement)
                    self._conn.execute("INSERT INTO version(version) VALUES (?)", (SCHEMA_VERSION,))
                return

            row = self._conn.execute("SELECT version FROM version").fetchone()
        if row is None:
            raise StoreVersionError(f"{self._db_path} has a version table but no version row")
        if row[0] != SCHEMA_VERSION:
            raise StoreVersionError(
                f"{self._db_path} uses schema version {row[0]}, expected {SCHEMA_VERSION}"
            )
        LOGGER.debug("Opened %s at schema version %s", self._db_path, row[0])

    def _exists(self, query: str, params: tuple) -> bool:
        with self._lock:
            row = self._conn.execute(query, params).fetchone()
        return row is not None

    # Credentials

    def load_tokens(self) -> Optional[CredentialSet]:
        with self._lock:
            row = self._conn.execute(
                "SELECT access_token, refresh_token, expires_at, refresh_expires_at FROM tokens"
            ).fetchone()
        if row is None:
            return None
        return CredentialSet(
            access_token=row[0],
            refresh_token=row[1],
            access_expiry=_from_text(row[2]),
            refresh_expiry=_from_text(row[3]) if row[3] else None,
        )

    def save_tokens(self, credentials: CredentialSet) -> None:
        refresh_expiry = credentials.refresh_expiry
        with self._lock, self._conn:
            self._conn.execute("DELETE FROM tokens")
            self._conn.execute(
                "INSERT INTO tokens(access_token, refresh_token, expires_at, refresh_expires_at) VALUES (?, ?, ?, ?)",
                (
                    credentials.access_token,
                    credentials.refresh_token,
                    _to_text(credentials.access_expiry),
                    _to_text(refresh_expiry) if refresh_expiry else None,
                ),
            )
        LOGGER.debug("Saved tokens to database")

    def update_access_token(self, access_token: str, expires_at: datetime) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "UPDATE tokens SET access_token=?, expires_at=?",
                (access_token, _to_text(expires_at)),
            )

    # Existence checks

    def contains_label(self, label_id: str) -> bool:
        return self._exists("SELECT 1 FROM labels WHERE id=?", (label_id,))

    def contains_message(self, message_id: str) -> bool:
        return self._exists("SELECT 1 FROM messages WHERE id=?", (message_id,))

    def contains_message_attachment(self, message_id: str, attachment_id: str) -> bool:
        return self._exists(
            "SELECT 1 FROM message_attachments WHERE message_id=? AND attachment_id=?",
            (message_id, attachment_id),
        )

    def contains_raw_message(self, message_id: str) -> bool:
        return self._exists("SELECT 1 FROM raw_messages WHERE message_id=?", (message_id,))

    # Inserts

    def insert_label(self, label: Label) -> None:
        color = label.color
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO labels(id, name, message_list_visibility, label_list_visibility,
                                   type, text_color, background_color)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    label.id,
                    label.name,
                    label.message_list_visibility.name if label.message_list_visibility else None,
                    label.label_list_visibility.name if label.label_list_visibility else None,
                    label.type.name,
                    color.text_color if color else None,
                    color.background_color if color else None,
                ),
            )

    def insert_message(self, message: Message) -> None:
        """Insert a message with its labels and its whole part tree, atomically."""

        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO messages(id, thread_id, snippet, history_id, internal_date, size_estimate)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    message.id,
                    message.thread_id,
                    message.snippet,
                    message.history_id,
                    _to_text(message.internal_date),
                    message.size_estimate,
                ),
            )
            self._conn.executemany(
                "INSERT INTO message_labels(message_id, label_id) VALUES (?, ?)",
                [(message.id, label_id) for label_id in message.label_ids],
            )
            for part in message.payload.walk():
                self._conn.execute(
                    """
                    INSERT INTO message_parts(message_id, part_id, mime_type, filename, headers, children)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        message.id,
                        part.part_id,
                        part.mime_type,
                        part.filename,
                        json.dumps([[h.name, h.value] for h in part.headers]),
                        json.dumps([child.part_id for child in part.parts]),
                    ),
                )
                self._conn.execute(
                    """
                    INSERT INTO message_part_body(message_id, part_id, attachment_id, size, data)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (message.id, part.part_id, part.body.attachment_id, part.body.size, part.body.data),
                )

    def insert_attachment(self, message_id: str, attachment_id: str, attachment: Attachment) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO message_attachments(message_id, attachment_id, size, data) VALUES (?, ?, ?, ?)",
                (message_id, attachment_id, attachment.size, attachment.data),
            )

    def insert_raw_message(self, message_id: str, data: bytes) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO raw_messages(message_id, data) VALUES (?, ?)",
                (message_id, data),
            )

    # Queries

    def attachment_ids(self, message_id: str) -> List[str]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT attachment_id FROM message_part_body
                WHERE message_id=? AND attachment_id IS NOT NULL AND data IS NULL
                ORDER BY rowid
                """,
                (message_id,),
            ).fetchall()
        return [row[0] for row in rows]

    def message_count(self) -> int:
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM messages").fetchone()[0]

    def counts(self) -> Dict[str, int]:
        with self._lock:
            return {
                table: self._conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                for table in COUNTED_TABLES
            }

    def load_message(self, message_id: str) -> Optional[Message]:
        """Rebuild a stored message and its part tree from rows."""

        with self._lock:
            row = self._conn.execute(
                "SELECT id, thread_id, snippet, history_id, internal_date, size_estimate FROM messages WHERE id=?",
                (message_id,),
            ).fetchone()
            if row is None:
                return None
            label_ids = [
                r[0]
                for r in self._conn.execute(
                    "SELECT label_id FROM message_labels WHERE message_id=? ORDER BY rowid",
                    (message_id,),
                )
            ]
            part_rows = self._conn.execute(
                """
                SELECT p.part_id, p.mime_type, p.filename, p.headers, p.children,
                       b.attachment_id, b.size, b.data
                FROM message_parts p
                JOIN message_part_body b ON b.message_id = p.message_id AND b.part_id = p.part_id
                WHERE p.message_id=?
                ORDER BY p.rowid
                """,
                (message_id,),
            ).fetchall()

        parts: Dict[str, MessagePart] = {}
        children: Dict[str, List[str]] = {}
        for part_id, mime_type, filename, headers, child_ids, attachment_id, size, data in part_rows:
            parts[part_id] = MessagePart(
                part_id=part_id,
                mime_type=mime_type,
                filename=filename,
                body=MessagePartBody(size=size, attachment_id=attachment_id, data=data),
                headers=[Header(name, value) for name, value in json.loads(headers)],
            )
            children[part_id] = json.loads(child_ids)

        # walk() inserts parents before children, so the first row is the root.
        root = parts[part_rows[0][0]]
        for part_id, child_ids in children.items():
            parts[part_id].parts = [parts[child_id] for child_id in child_ids]

        return Message(
            id=row[0],
            thread_id=row[1],
            snippet=row[2],
            history_id=row[3],
            internal_date=_from_text(row[4]),
            size_estimate=row[5],
            payload=root,
            label_ids=label_ids,
        )
