"""
Vault session: the attachment gallery behind a record.

Activity and teaching records keep a "vault" blob listing their files and
links. A session loads that list, applies edits optimistically (upload
placeholders show up before the bytes land), and commits the list back
through the content locator so a migrated ref always reaches the record.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from .attachments import (
    AttachmentManager,
    add_placeholder,
    discard,
    local_preview,
    parse_vault,
    resolve,
    serialize_vault,
)
from .errors import ErrorKind
from .locator import ContentLocator
from .optimistic import RecordStore
from .types import AttachmentRef, Record, Result

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LocalFile:
    """A file picked by the user, not yet uploaded."""
    name: str
    mime_type: str
    data: bytes


class VaultSession:
    """Edits the vault of one record."""

    def __init__(
        self,
        record: Record,
        locator: ContentLocator,
        attachments: AttachmentManager,
        *,
        store: Optional[RecordStore] = None,
        on_change: Optional[Callable[[list[AttachmentRef]], None]] = None,
    ):
        self._record = record
        self._locator = locator
        self._attachments = attachments
        self._store = store
        self._on_change = on_change
        self._items: list[AttachmentRef] = []

    @property
    def record(self) -> Record:
        return self._record

    @property
    def items(self) -> list[AttachmentRef]:
        return list(self._items)

    def _set_items(self, items: list[AttachmentRef]) -> None:
        self._items = items
        if self._on_change is not None:
            self._on_change(list(items))

    async def load(self) -> Result[list[AttachmentRef]]:
        result = await self._locator.read_content(self._record.ref)
        if not result.ok:
            return Result.failure(result.error, result.message)
        try:
            items = parse_vault(result.value)
        except ValueError as e:
            return Result.failure(ErrorKind.MALFORMED_RESPONSE, str(e))
        self._set_items(items)
        return Result.success(self.items)

    async def add_files(self, files: Iterable[LocalFile]) -> Result[Record]:
        """Show placeholders now, upload each file, then commit once."""
        files = list(files)
        if not files:
            return Result.success(self._record)
        before = self.items

        pending: list[tuple[LocalFile, str]] = []
        items = self.items
        for f in files:
            items, placeholder = add_placeholder(
                items, f.name, f.mime_type, local_preview(f.mime_type, f.data)
            )
            pending.append((f, placeholder.temp_id))
        self._set_items(items)

        uploaded = 0
        for f, temp_id in pending:
            result = await self._attachments.upload(f.name, f.mime_type, f.data)
            if result.ok:
                self._set_items(resolve(self._items, temp_id, result.value))
                uploaded += 1
            else:
                logger.warning("Dropping placeholder for %s: %s", f.name, result.message)
                self._set_items(discard(self._items, temp_id))

        if not uploaded:
            return Result.failure(ErrorKind.NETWORK_FAILURE, "No files were uploaded")
        return await self.sync(rollback_to=before)

    async def add_link(self, url: str, label: str) -> Result[Record]:
        before = self.items
        self._set_items([*self._items, AttachmentRef(label=label, type="LINK", url=url)])
        return await self.sync(rollback_to=before)

    async def remove(self, index: int) -> Result[Record]:
        """Drop an entry and reclaim its bytes on the node that stores them.

        The local reference goes regardless of whether the node delete
        worked; a failed delete only leaves unreferenced bytes behind. A
        failed sync is reported but the entry is not restored, since its
        bytes may already be gone.
        """
        entry = self._items[index]
        self._set_items([a for i, a in enumerate(self._items) if i != index])
        await self._attachments.remove(entry)
        return await self.sync()

    async def sync(self, rollback_to: Optional[list[AttachmentRef]] = None) -> Result[Record]:
        """Commit the current entries and adopt the authoritative ref.

        When the content write itself fails, the entries revert to
        ``rollback_to`` (if given). A partial failure keeps them: the blob
        was written and its pointer is journaled.
        """
        result = await self._locator.commit(self._record, serialize_vault(self._items))
        if result.value is not None:
            self._adopt(result.value)
        if not result.ok and result.error is not ErrorKind.PARTIAL_FAILURE:
            if rollback_to is not None:
                self._set_items(list(rollback_to))
            logger.warning("Vault sync for %s failed: %s", self._record.id, result.message)
        return result

    def _adopt(self, record: Record) -> None:
        self._record = record
        if self._store is not None:
            self._store.upsert(record)
