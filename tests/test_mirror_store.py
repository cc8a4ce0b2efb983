from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from conftest import label_payload, message_payload, nested_payload, part_payload
from models.credentials import CredentialSet
from models.gmail import Attachment, Label, Message
from services.errors import DecodeError, StoreVersionError
from services.persistence_service import SCHEMA_VERSION, MirrorStore


def _children_by_part(message: Message) -> dict:
    return {part.part_id: [child.part_id for child in part.parts] for part in message.payload.walk()}


def _attachments_by_part(message: Message) -> dict:
    return {part.part_id: part.body.attachment_id for part in message.payload.walk()}


def test_schema_created_once_and_reopened(tmp_path):
    db_path = tmp_path / "archive.db"
    MirrorStore(db_path).close()

    with MirrorStore(db_path) as store:
        assert store.counts() == {
            "labels": 0,
            "messages": 0,
            "message_parts": 0,
            "message_attachments": 0,
            "raw_messages": 0,
        }

    conn = sqlite3.connect(db_path)
    assert conn.execute("SELECT version FROM version").fetchall() == [(SCHEMA_VERSION,)]
    conn.close()


def test_unknown_schema_version_is_fatal(tmp_path):
    db_path = tmp_path / "archive.db"
    MirrorStore(db_path).close()
    conn = sqlite3.connect(db_path)
    with conn:
        conn.execute("UPDATE version SET version = 99")
    conn.close()

    with pytest.raises(StoreVersionError, match="99"):
        MirrorStore(db_path)


def test_label_insert_and_duplicate(store):
    label = Label.from_api(label_payload("Label_1", "Receipts"))
    assert store.contains_label("Label_1") is False

    store.insert_label(label)
    assert store.contains_label("Label_1") is True

    with pytest.raises(sqlite3.IntegrityError):
        store.insert_label(label)


def test_nested_message_round_trip(store):
    store.insert_label(Label.from_api(label_payload("INBOX", "INBOX", "system", color=False)))
    store.insert_label(Label.from_api(label_payload("Label_1", "Reports")))
    message = Message.from_api(message_payload("m1", label_ids=["INBOX", "Label_1"], payload=nested_payload()))

    store.insert_message(message)

    assert store.contains_message("m1") is True
    loaded = store.load_message("m1")
    assert loaded is not None
    assert _children_by_part(loaded) == _children_by_part(message)
    assert _children_by_part(loaded)[""] == ["0", "1"]
    assert _children_by_part(loaded)["0.1"] == ["0.1.0", "0.1.1"]
    assert _attachments_by_part(loaded) == _attachments_by_part(message)
    assert loaded.label_ids == ["INBOX", "Label_1"]
    assert loaded.internal_date == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)
    assert loaded.payload.headers[0].name == "Subject"
    assert loaded.payload.parts[0].parts[0].body.data == b"hello"
    assert store.attachment_ids("m1") == ["att-img", "att-pdf"]


def test_insert_message_rolls_back_on_failure(store):
    store.insert_label(Label.from_api(label_payload("INBOX", "INBOX", "system")))
    store.insert_message(Message.from_api(message_payload("m1")))

    # Label_404 was never archived, so the join row violates its foreign key
    # after the message row and before the parts were written.
    broken = Message.from_api(message_payload("m2", label_ids=["INBOX", "Label_404"], payload=nested_payload()))
    with pytest.raises(sqlite3.IntegrityError):
        store.insert_message(broken)

    assert store.contains_message("m2") is False
    assert store.attachment_ids("m2") == []
    assert store.contains_message("m1") is True
    assert store.counts()["messages"] == 1


def test_malformed_payload_never_reaches_the_store(store):
    store.insert_label(Label.from_api(label_payload("INBOX", "INBOX", "system")))
    store.insert_message(Message.from_api(message_payload("m1")))

    bad_part = part_payload("", "text/plain")
    bad_part["body"]["data"] = "not*base64"
    with pytest.raises(DecodeError):
        Message.from_api(message_payload("m2", payload=bad_part))
    with pytest.raises(DecodeError):
        Message.from_api(message_payload("m3", internal_date="yesterday"))

    assert store.counts()["messages"] == 1


def test_attachment_and_raw_message(store):
    assert store.contains_message_attachment("m1", "a1") is False
    store.insert_attachment("m1", "a1", Attachment(size=3, data=b"abc"))
    assert store.contains_message_attachment("m1", "a1") is True
    assert store.contains_message_attachment("m1", "a2") is False

    assert store.contains_raw_message("m1") is False
    store.insert_raw_message("m1", b"Subject: hi\r\n\r\nbody")
    assert store.contains_raw_message("m1") is True

    with pytest.raises(sqlite3.IntegrityError):
        store.insert_raw_message("m1", b"again")


def test_inline_parts_are_not_attachment_references(store):
    store.insert_label(Label.from_api(label_payload("INBOX", "INBOX", "system")))
    payload = part_payload(
        "",
        "multipart/mixed",
        parts=[
            part_payload("0", "text/plain", data=b"inline", attachment_id="inline-1"),
            part_payload("1", "image/gif", attachment_id="remote-1", size=10),
        ],
    )
    message = Message.from_api(message_payload("m1", payload=payload))
    store.insert_message(message)

    assert message.attachment_ids() == ["remote-1"]
    assert store.attachment_ids("m1") == ["remote-1"]


def test_tokens_round_trip(store):
    assert store.load_tokens() is None
    expiry = datetime(2030, 1, 1, tzinfo=timezone.utc)
    store.save_tokens(CredentialSet("access-1", "refresh-1", expiry, expiry + timedelta(days=7)))

    store.update_access_token("access-2", expiry + timedelta(hours=1))

    tokens = store.load_tokens()
    assert tokens.access_token == "access-2"
    assert tokens.refresh_token == "refresh-1"
    assert tokens.access_expiry == expiry + timedelta(hours=1)
    assert tokens.refresh_expiry == expiry + timedelta(days=7)
