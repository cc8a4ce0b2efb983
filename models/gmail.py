from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Generic, Iterator, List, Optional, TypeVar

from services.errors import DecodeError

T = TypeVar("T")

_BASE64URL = re.compile(r"^[A-Za-z0-9_-]*={0,2}$")


def decode_base64url(value: str) -> bytes:
    """Decode Gmail's base64url encoding. Padding is optional."""

    if not isinstance(value, str) or not _BASE64URL.match(value):
        raise DecodeError(f"invalid base64url data: {str(value)[:40]!r}")
    padded = value + "=" * (-len(value) % 4)
    try:
        return base64.urlsafe_b64decode(padded)
    except (binascii.Error, ValueError) as exc:
        raise DecodeError(f"invalid base64url data: {exc}") from exc


def parse_epoch_millis(value: str) -> datetime:
    """Parse a string of epoch milliseconds into an aware UTC datetime."""

    if not isinstance(value, str) or not value.lstrip("-").isdigit():
        raise DecodeError(f"invalid millisecond timestamp: {value!r}")
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as exc:
        raise DecodeError(f"timestamp out of range: {value!r}") from exc


class MessageListVisibility(Enum):
    SHOW = "show"
    HIDE = "hide"


class LabelListVisibility(Enum):
    SHOW = "labelShow"
    SHOW_IF_UNREAD = "labelShowIfUnread"
    HIDE = "labelHide"


class LabelType(Enum):
    SYSTEM = "system"
    USER = "user"


def _enum(enum_cls, value):
    if value is None:
        return None
    try:
        return enum_cls(value)
    except ValueError as exc:
        raise DecodeError(f"unknown {enum_cls.__name__} value {value!r}") from exc


@dataclass(slots=True)
class Page(Generic[T]):
    items: List[T]
    next_page_token: Optional[str] = None


@dataclass(slots=True)
class UserProfile:
    email_address: str
    messages_total: int
    threads_total: int
    history_id: str

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "UserProfile":
        return cls(
            email_address=payload["emailAddress"],
            messages_total=int(payload["messagesTotal"]),
            threads_total=int(payload["threadsTotal"]),
            history_id=str(payload["historyId"]),
        )


@dataclass(slots=True)
class LabelColor:
    text_color: str
    background_color: str


@dataclass(slots=True)
class Label:
    """A Gmail label. Listing responses omit the color, detail responses carry it."""

    id: str
    name: str
    type: LabelType
    message_list_visibility: Optional[MessageListVisibility] = None
    label_list_visibility: Optional[LabelListVisibility] = None
    color: Optional[LabelColor] = None

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "Label":
        color = payload.get("color")
        return cls(
            id=payload["id"],
            name=payload["name"],
            type=_enum(LabelType, payload["type"]),
            message_list_visibility=_enum(MessageListVisibility, payload.get("messageListVisibility")),
            label_list_visibility=_enum(LabelListVisibility, payload.get("labelListVisibility")),
            color=LabelColor(color["textColor"], color["backgroundColor"]) if color else None,
        )


def label_list_from_api(payload: Dict[str, Any]) -> List[Label]:
    return [Label.from_api(item) for item in payload.get("labels", [])]


@dataclass(slots=True)
class MinimalMessage:
    id: str
    thread_id: str

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "MinimalMessage":
        return cls(id=payload["id"], thread_id=payload["threadId"])


def message_page_from_api(payload: Dict[str, Any]) -> Page[MinimalMessage]:
    # An empty mailbox returns no "messages" key at all.
    return Page(
        items=[MinimalMessage.from_api(item) for item in payload.get("messages", [])],
        next_page_token=payload.get("nextPageToken"),
    )


@dataclass(slots=True)
class Header:
    name: str
    value: str


@dataclass(slots=True)
class MessagePartBody:
    size: int
    attachment_id: Optional[str] = None
    data: Optional[bytes] = None

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "MessagePartBody":
        data = payload.get("data")
        return cls(
            size=int(payload["size"]),
            attachment_id=payload.get("attachmentId"),
            data=decode_base64url(data) if data is not None else None,
        )


@dataclass(slots=True)
class MessagePart:
    """One node of a MIME tree. ``parts`` holds the child nodes in order."""

    part_id: str
    mime_type: str
    filename: str
    body: MessagePartBody
    headers: List[Header] = field(default_factory=list)
    parts: List["MessagePart"] = field(default_factory=list)

    @classmethod
    def _node_from_api(cls, payload: Dict[str, Any]) -> "MessagePart":
        return cls(
            part_id=payload.get("partId", ""),
            mime_type=payload["mimeType"],
            filename=payload.get("filename", ""),
            body=MessagePartBody.from_api(payload["body"]),
            headers=[Header(h["name"], h["value"]) for h in payload.get("headers", [])],
        )

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "MessagePart":
        # Nesting depth is chosen by the sender, so the tree is built with an
        # explicit stack instead of recursion.
        root = cls._node_from_api(payload)
        stack = [(payload, root)]
        while stack:
            raw, node = stack.pop()
            for raw_child in raw.get("parts") or []:
                child = cls._node_from_api(raw_child)
                node.parts.append(child)
                stack.append((raw_child, child))
        return root

    def walk(self) -> Iterator["MessagePart"]:
        """Yield this part and every descendant, depth first, parents before children."""

        stack = [self]
        while stack:
            part = stack.pop()
            yield part
            stack.extend(reversed(part.parts))


@dataclass(slots=True)
class Message:
    id: str
    thread_id: str
    snippet: str
    history_id: str
    internal_date: datetime
    size_estimate: int
    payload: MessagePart
    label_ids: List[str] = field(default_factory=list)

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "Message":
        return cls(
            id=payload["id"],
            thread_id=payload["threadId"],
            label_ids=list(payload.get("labelIds", [])),
            snippet=payload.get("snippet", ""),
            history_id=str(payload["historyId"]),
            internal_date=parse_epoch_millis(payload["internalDate"]),
            size_estimate=int(payload["sizeEstimate"]),
            payload=MessagePart.from_api(payload["payload"]),
        )

    def attachment_ids(self) -> List[str]:
        """Attachment ids of parts whose content must be fetched separately."""

        return [
            part.body.attachment_id
            for part in self.payload.walk()
            if part.body.attachment_id and part.body.data is None
        ]


@dataclass(slots=True)
class RawMessage:
    id: str
    thread_id: str
    raw: bytes
    history_id: str = ""
    internal_date: Optional[datetime] = None
    size_estimate: int = 0

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "RawMessage":
        internal_date = payload.get("internalDate")
        return cls(
            id=payload["id"],
            thread_id=payload["threadId"],
            raw=decode_base64url(payload["raw"]),
            history_id=str(payload.get("historyId", "")),
            internal_date=parse_epoch_millis(internal_date) if internal_date is not None else None,
            size_estimate=int(payload.get("sizeEstimate", 0)),
        )


@dataclass(slots=True)
class Attachment:
    size: int
    data: bytes

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "Attachment":
        return cls(size=int(payload["size"]), data=decode_base64url(payload["data"]))
