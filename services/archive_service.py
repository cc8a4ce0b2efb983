from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

from models.gmail import Message, MinimalMessage
from services.gmail_service import GmailService
from services.persistence_service import MirrorStore
from services.streaming import DEFAULT_HYDRATE_WIDTH, hydrate

LOGGER = logging.getLogger(__name__)

PROGRESS_INTERVAL = 1000


@dataclass(slots=True)
class ArchiveSummary:
    labels_stored: int = 0
    messages_stored: int = 0
    messages_skipped: int = 0
    attachments_stored: int = 0
    raw_messages_stored: int = 0


class ArchiveService:
    """Mirror labels, messages, attachments and raw messages into the store.

    Every insert is preceded by an existence check, so a run that stopped
    halfway resumes where it left off and an unchanged mailbox costs only the
    listing calls. The first error aborts the run.
    """

    def __init__(
        self,
        gmail: GmailService,
        store: MirrorStore,
        concurrency: int = DEFAULT_HYDRATE_WIDTH,
    ):
        self._gmail = gmail
        self._store = store
        self._concurrency = concurrency

    async def run(self) -> ArchiveSummary:
        summary = ArchiveSummary()
        await self.archive_labels(summary)
        await self.archive_messages(summary)
        LOGGER.info(
            "Archive complete: %s label(s), %s message(s), %s attachment(s), %s raw message(s) stored; %s skipped",
            summary.labels_stored,
            summary.messages_stored,
            summary.attachments_stored,
            summary.raw_messages_stored,
            summary.messages_skipped,
        )
        return summary

    async def archive_labels(self, summary: ArchiveSummary) -> None:
        labels = await self._gmail.list_labels()
        LOGGER.info("Processing %s labels", len(labels))
        for stub in labels:
            if self._store.contains_label(stub.id):
                LOGGER.debug("Label %s already stored", stub.id)
                continue
            label = await self._gmail.label(stub.id)
            self._store.insert_label(label)
            summary.labels_stored += 1
            LOGGER.debug("Label %s stored", label.id)

    async def _fetch_unless_stored(self, stub: MinimalMessage) -> Tuple[MinimalMessage, Optional[Message]]:
        if self._store.contains_message(stub.id):
            return stub, None
        return stub, await self._gmail.full_message(stub.id)

    async def archive_messages(self, summary: ArchiveSummary) -> None:
        profile = await self._gmail.profile()
        total = profile.messages_total
        LOGGER.info("Total messages: %s, stored: %s", total, self._store.message_count())

        processed = 0
        stubs = self._gmail.list_messages()
        async with hydrate(stubs, self._fetch_unless_stored, width=self._concurrency) as messages:
            async for stub, message in messages:
                if message is None:
                    LOGGER.debug("Message %s already stored", stub.id)
                    summary.messages_skipped += 1
                    attachment_ids: Iterable[str] = self._store.attachment_ids(stub.id)
                else:
                    self._store.insert_message(message)
                    summary.messages_stored += 1
                    LOGGER.debug("Message %s stored", message.id)
                    attachment_ids = message.attachment_ids()

                for attachment_id in attachment_ids:
                    await self.archive_attachment(stub.id, attachment_id, summary)
                await self.archive_raw_message(stub.id, summary)

                processed += 1
                if processed % PROGRESS_INTERVAL == 0:
                    LOGGER.info("Processed %sK of %s messages", processed // PROGRESS_INTERVAL, total)

    async def archive_attachment(self, message_id: str, attachment_id: str, summary: ArchiveSummary) -> None:
        if self._store.contains_message_attachment(message_id, attachment_id):
            LOGGER.debug("Attachment %s of message %s already stored", attachment_id, message_id)
            return
        attachment = await self._gmail.attachment(message_id, attachment_id)
        self._store.insert_attachment(message_id, attachment_id, attachment)
        summary.attachments_stored += 1
        LOGGER.debug("Attachment %s of message %s stored", attachment_id, message_id)

    async def archive_raw_message(self, message_id: str, summary: ArchiveSummary) -> None:
        if self._store.contains_raw_message(message_id):
            LOGGER.debug("Raw message %s already stored", message_id)
            return
        raw = await self._gmail.raw_message(message_id)
        self._store.insert_raw_message(message_id, raw.raw)
        summary.raw_messages_stored += 1
        LOGGER.debug("Raw message %s stored", message_id)
