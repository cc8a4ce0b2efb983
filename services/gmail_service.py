from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional, TypeVar

from models.gmail import (
    Attachment,
    Label,
    Message,
    MinimalMessage,
    Page,
    RawMessage,
    UserProfile,
    label_list_from_api,
    message_page_from_api,
)
from services.http_client import ApiClient
from services.streaming import DEFAULT_CAPACITY, ItemStream, paginate
from services.token_manager import TokenManager

LOGGER = logging.getLogger(__name__)

BASE_URL = "https://gmail.googleapis.com/gmail/v1"

T = TypeVar("T")


class GmailService:
    """Async wrapper around the Gmail REST endpoints the archiver needs."""

    def __init__(
        self,
        api: ApiClient,
        token_manager: TokenManager,
        user_id: str = "me",
        stream_capacity: int = DEFAULT_CAPACITY,
    ):
        self._api = api
        self._tokens = token_manager
        self._user_id = user_id
        self._stream_capacity = stream_capacity

    async def _get(self, path: List[str], decode: Callable[[Any], T], query: Optional[dict] = None) -> T:
        token = await self._tokens.current_token()
        return await self._api.request(
            ["users", self._user_id, *path],
            decode=decode,
            query=query,
            bearer=token,
        )

    async def profile(self) -> UserProfile:
        return await self._get(["profile"], UserProfile.from_api)

    async def list_labels(self) -> List[Label]:
        return await self._get(["labels"], label_list_from_api)

    async def label(self, label_id: str) -> Label:
        return await self._get(["labels", label_id], Label.from_api)

    async def full_message(self, message_id: str) -> Message:
        return await self._get(["messages", message_id], Message.from_api, {"format": "full"})

    async def raw_message(self, message_id: str) -> RawMessage:
        return await self._get(["messages", message_id], RawMessage.from_api, {"format": "raw"})

    async def attachment(self, message_id: str, attachment_id: str) -> Attachment:
        return await self._get(
            ["messages", message_id, "attachments", attachment_id],
            Attachment.from_api,
        )

    async def message_page(self, page_token: Optional[str] = None) -> Page[MinimalMessage]:
        query = {"pageToken": page_token} if page_token else None
        page = await self._get(["messages"], message_page_from_api, query)
        LOGGER.debug("Listed %s message stub(s), more pages: %s", len(page.items), bool(page.next_page_token))
        return page

    def list_messages(self) -> ItemStream[MinimalMessage]:
        """Stream every message stub in the mailbox. Must be called inside a running event loop."""

        return paginate(self.message_page, capacity=self._stream_capacity)
