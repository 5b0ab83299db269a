"""
Content locator and migration resolver.

Reads and writes opaque JSON blobs addressed by a ContentRef. Any content
write may come back with a different (contentId, nodeUrl) pair when the
backend moves the owner's data to another shard, so the returned ref is
always authoritative and must be persisted onto the owning record.

``commit()`` closes the loop: content write, then an unconditional
record save with the authoritative ref (retried with backoff), and if that
still fails the pointer goes to the ref journal instead of being dropped.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional

from .errors import ErrorKind
from .protocol import GetFileContent, RecordPersister, RefJournalProtocol, SaveEntity, get_schema
from .transport import NodeClient
from .types import ContentRef, Record, Result, WriteOutcome

logger = logging.getLogger(__name__)

# Retry config for the record save that follows a content write
REF_SAVE_RETRIES = 3
RETRY_BACKOFF_BASE = 1.0  # seconds


def needs_ref_update(old: ContentRef, new: ContentRef) -> bool:
    """True unless the two refs are structurally equal."""
    return old != new


class ContentLocator:
    """Blob reads and writes against whichever node holds the blob."""

    def __init__(
        self,
        client: NodeClient,
        records: RecordPersister,
        *,
        journal: Optional[RefJournalProtocol] = None,
        ref_save_retries: int = REF_SAVE_RETRIES,
        retry_backoff: float = RETRY_BACKOFF_BASE,
    ):
        self._client = client
        self._records = records
        self._journal = journal
        self._ref_save_retries = max(1, ref_save_retries)
        self._retry_backoff = retry_backoff

    async def read_content(self, ref: ContentRef) -> Result[Any]:
        """Fetch and decode the blob at ``ref``.

        An empty ref succeeds with None (nothing written yet). Every
        failure, including a blob that is not valid JSON, is a failed
        Result; this never raises.
        """
        if ref.is_empty:
            return Result.success(None)

        result = await self._client.send(GetFileContent(ref.content_id), node_url=ref.node_url)
        if not result.ok:
            return Result.failure(result.error, result.message)

        raw = result.value.get("content")
        if raw is None:
            return Result.failure(ErrorKind.MALFORMED_RESPONSE, "Response has no content")
        if not isinstance(raw, str):
            # Some nodes return the blob already decoded
            return Result.success(raw)
        try:
            return Result.success(json.loads(raw))
        except json.JSONDecodeError as e:
            logger.warning("Blob %s is not valid JSON: %s", ref.content_id, e)
            return Result.failure(ErrorKind.MALFORMED_RESPONSE, "Blob is not valid JSON")

    async def write_content(self, owner: Record, ref: ContentRef, blob: Any) -> WriteOutcome:
        """POST ``save<Entity>`` with the blob, keyed by the owner record.

        The returned ref is authoritative. Response fields the backend
        leaves out keep their submitted values.
        """
        schema = get_schema(owner.entity)
        if not schema.has_content:
            raise ValueError(f"Entity {owner.entity!r} has no content blob")

        request = SaveEntity(
            action=schema.save_action,
            item=schema.record_to_wire(owner.with_ref(ref)),
            content=blob,
        )
        result = await self._client.send(request)
        if not result.ok:
            return WriteOutcome(ref=ref, ok=False, message=result.message, error=result.error)

        body = result.value
        new_ref = ContentRef(
            content_id=body.get("newVaultId") or ref.content_id,
            node_url=body.get("newNodeUrl") or ref.node_url,
        )
        if new_ref.is_empty:
            logger.warning("Write for %s/%s returned no content id", owner.entity, owner.id)
            return WriteOutcome(
                ref=ref, ok=False, message="Backend returned no content id",
                error=ErrorKind.MALFORMED_RESPONSE,
            )

        migrated = needs_ref_update(ref, new_ref)
        if migrated:
            logger.info(
                "Content for %s/%s moved: %s@%s -> %s@%s",
                owner.entity, owner.id,
                ref.content_id or "(new)", ref.node_url or "default",
                new_ref.content_id, new_ref.node_url or "default",
            )
        return WriteOutcome(ref=new_ref, ok=True, migrated=migrated)

    async def commit(self, owner: Record, blob: Any) -> Result[Record]:
        """Write content and persist the authoritative ref onto the record.

        The record save is re-issued even when the ref did not change: it
        is idempotent and the previous save may never have landed. Returns
        the updated record on success; PARTIAL_FAILURE (with the record,
        now journaled) when the content is written but the pointer is not.
        """
        outcome = await self.write_content(owner, owner.ref, blob)
        if not outcome.ok:
            return Result.failure(outcome.error, outcome.message)

        updated = owner.with_ref(outcome.ref)
        saved = await self._save_with_retry(updated)
        if saved.ok:
            if self._journal is not None:
                self._journal.resolve(updated)
            return Result.success(updated)

        if self._journal is not None:
            self._journal.record(updated)
        logger.error(
            "Content for %s/%s written to %s but record save failed: %s",
            updated.entity, updated.id, updated.ref.content_id, saved.message,
        )
        return Result(
            value=updated,
            error=ErrorKind.PARTIAL_FAILURE,
            message=f"Record pointer not saved: {saved.message}",
        )

    async def _save_with_retry(self, record: Record) -> Result[Record]:
        last: Result[Record] = Result.failure(ErrorKind.NETWORK_FAILURE)
        for attempt in range(self._ref_save_retries):
            last = await self._records.save(record)
            if last.ok:
                return last
            if attempt < self._ref_save_retries - 1:
                delay = self._retry_backoff * (2 ** attempt)
                logger.info(
                    "Record save attempt %d for %s/%s failed, retrying in %.1fs: %s",
                    attempt + 1, record.entity, record.id, delay, last.message,
                )
                await asyncio.sleep(delay)
        return last
