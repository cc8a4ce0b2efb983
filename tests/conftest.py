from __future__ import annotations

import base64
import json
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple
from urllib.parse import unquote

import httpx
import pytest

from models.credentials import CredentialSet
from services.gmail_service import BASE_URL, GmailService
from services.http_client import ApiClient, RetryPolicy
from services.persistence_service import MirrorStore
from services.token_manager import TokenManager

FAST_RETRY = RetryPolicy(initial_delay=0.001, max_delay=0.004, max_elapsed=0.05)


def b64(data: bytes) -> str:
    """Gmail-style base64url without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def part_payload(
    part_id: str,
    mime_type: str,
    *,
    filename: str = "",
    data: Optional[bytes] = None,
    attachment_id: Optional[str] = None,
    size: Optional[int] = None,
    parts: Iterable[dict] = (),
    headers: Optional[List[Tuple[str, str]]] = None,
) -> dict:
    body: Dict[str, object] = {"size": size if size is not None else len(data or b"")}
    if data is not None:
        body["data"] = b64(data)
    if attachment_id is not None:
        body["attachmentId"] = attachment_id
    payload = {
        "partId": part_id,
        "mimeType": mime_type,
        "filename": filename,
        "headers": [{"name": name, "value": value} for name, value in (headers or [])],
        "body": body,
    }
    parts = list(parts)
    if parts:
        payload["parts"] = parts
    return payload


def nested_payload(prefix: str = "att") -> dict:
    """multipart/mixed > multipart/alternative > multipart/related > image."""
    return part_payload(
        "",
        "multipart/mixed",
        headers=[("Subject", "Quarterly report"), ("From", "alice@example.com")],
        parts=[
            part_payload(
                "0",
                "multipart/alternative",
                parts=[
                    part_payload("0.0", "text/plain", data=b"hello"),
                    part_payload(
                        "0.1",
                        "multipart/related",
                        parts=[
                            part_payload("0.1.0", "text/html", data=b"<p>hello</p>"),
                            part_payload(
                                "0.1.1",
                                "image/png",
                                filename="logo.png",
                                attachment_id=f"{prefix}-img",
                                size=4,
                            ),
                        ],
                    ),
                ],
            ),
            part_payload(
                "1",
                "application/pdf",
                filename="report.pdf",
                attachment_id=f"{prefix}-pdf",
                size=7,
                headers=[("Content-Disposition", 'attachment; filename="report.pdf"')],
            ),
        ],
    )


def message_payload(
    message_id: str,
    *,
    label_ids: Iterable[str] = ("INBOX",),
    payload: Optional[dict] = None,
    internal_date: str = "1700000000000",
) -> dict:
    return {
        "id": message_id,
        "threadId": f"thread-{message_id}",
        "labelIds": list(label_ids),
        "snippet": f"snippet of {message_id}",
        "historyId": "4242",
        "internalDate": internal_date,
        "sizeEstimate": 1024,
        "payload": payload if payload is not None else part_payload("", "text/plain", data=b"body"),
    }


def label_payload(label_id: str, name: str, label_type: str = "user", color: bool = True) -> dict:
    payload = {
        "id": label_id,
        "name": name,
        "type": label_type,
        "messageListVisibility": "show",
        "labelListVisibility": "labelShow",
    }
    if color:
        payload["color"] = {"textColor": "#000000", "backgroundColor": "#ffffff"}
    return payload


def json_response(payload: object, status: int = 200) -> httpx.Response:
    return httpx.Response(status, content=json.dumps(payload).encode(), headers={"Content-Type": "application/json"})


class FakeGmail:
    """In-memory Gmail REST API served through ``httpx.MockTransport``."""

    def __init__(
        self,
        messages: List[dict],
        labels: Optional[List[dict]] = None,
        attachments: Optional[Dict[Tuple[str, str], bytes]] = None,
        page_size: int = 2,
    ):
        self.messages = {m["id"]: m for m in messages}
        self.order = [m["id"] for m in messages]
        self.labels = {label["id"]: label for label in (labels or [label_payload("INBOX", "INBOX", "system")])}
        self.attachments = attachments or {}
        self.page_size = page_size
        self.requests: List[httpx.Request] = []
        self.fail_attachments: set = set()

    def count(self, kind: str) -> int:
        return sum(1 for request in self.requests if self._kind(request) == kind)

    def _segments(self, request: httpx.Request) -> List[str]:
        path = request.url.path[len("/gmail/v1/users/me"):]
        return [unquote(segment) for segment in path.split("/") if segment]

    def _kind(self, request: httpx.Request) -> str:
        segments = self._segments(request)
        if segments == ["profile"]:
            return "profile"
        if segments == ["labels"]:
            return "labels"
        if segments[0] == "labels":
            return "label"
        if segments == ["messages"]:
            return "page"
        if len(segments) == 2:
            return request.url.params["format"]
        return "attachment"

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        assert request.headers["Authorization"].startswith("Bearer ")
        segments = self._segments(request)
        kind = self._kind(request)

        if kind == "profile":
            return json_response(
                {
                    "emailAddress": "me@example.com",
                    "messagesTotal": len(self.messages),
                    "threadsTotal": len(self.messages),
                    "historyId": "4242",
                }
            )
        if kind == "labels":
            stubs = [{k: v for k, v in label.items() if k != "color"} for label in self.labels.values()]
            return json_response({"labels": stubs})
        if kind == "label":
            return json_response(self.labels[segments[1]])
        if kind == "page":
            start = int(request.url.params.get("pageToken", "0"))
            ids = self.order[start : start + self.page_size]
            page: Dict[str, object] = {
                "messages": [{"id": mid, "threadId": self.messages[mid]["threadId"]} for mid in ids],
                "resultSizeEstimate": len(ids),
            }
            if start + self.page_size < len(self.order):
                page["nextPageToken"] = str(start + self.page_size)
            return json_response(page)
        if kind == "full":
            return json_response(self.messages[segments[1]])
        if kind == "raw":
            message = self.messages[segments[1]]
            return json_response(
                {
                    "id": message["id"],
                    "threadId": message["threadId"],
                    "historyId": message["historyId"],
                    "internalDate": message["internalDate"],
                    "sizeEstimate": message["sizeEstimate"],
                    "raw": b64(f"Subject: {message['id']}\r\n\r\nbody".encode()),
                }
            )
        message_id, attachment_id = segments[1], segments[3]
        if attachment_id in self.fail_attachments:
            return json_response({"error": {"code": 500, "message": "backend error", "status": "INTERNAL"}}, 500)
        data = self.attachments.get((message_id, attachment_id), b"content")
        return json_response({"size": len(data), "data": b64(data)})


def valid_credentials() -> CredentialSet:
    return CredentialSet(
        access_token="access-1",
        refresh_token="refresh-1",
        access_expiry=datetime.now(timezone.utc) + timedelta(hours=1),
    )


class NoRefresh:
    async def refresh(self, refresh_token: str):
        raise AssertionError("token should still be valid")


def gmail_service(http: httpx.AsyncClient, store: MirrorStore, capacity: int = 32) -> GmailService:
    api = ApiClient(BASE_URL, http, FAST_RETRY)
    tokens = TokenManager(NoRefresh(), store, valid_credentials())
    return GmailService(api, tokens, stream_capacity=capacity)


@pytest.fixture
def store(tmp_path):
    mirror = MirrorStore(tmp_path / "archive.db")
    yield mirror
    mirror.close()
