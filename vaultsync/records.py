"""
Record metadata operations: paginated listing, save and delete.

Saving a record without content is the idempotent "persist the pointer"
step that must follow every successful content write.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Optional

from .errors import ErrorKind
from .protocol import (
    DeleteEntity,
    GetProfile,
    ListEntities,
    SaveEntity,
    get_schema,
)
from .transport import NodeClient
from .types import Page, Record, Result

if TYPE_CHECKING:
    from .ref_journal import RefJournal

logger = logging.getLogger(__name__)

# Page size used to look a record up by id (there is no get-by-id action)
LOOKUP_LIMIT = 1000


class RecordService:
    """Record CRUD against the default node."""

    def __init__(self, client: NodeClient):
        self._client = client

    async def list(
        self,
        entity: str,
        *,
        page: int = 1,
        limit: int = 25,
        search: str = "",
        sort_key: str = "createdAt",
        sort_dir: str = "desc",
        filters: Optional[dict[str, str]] = None,
    ) -> Result[Page]:
        """GET ``get<Entities>`` -> one page of records."""
        schema = get_schema(entity)
        request = ListEntities(
            action=schema.list_action,
            page=page,
            limit=limit,
            search=search,
            sort_key=sort_key,
            sort_dir=sort_dir,
            filters=tuple(sorted((filters or {}).items())),
        )
        result = await self._client.send(request)
        if not result.ok:
            return Result.failure(result.error, result.message)

        body = result.value
        data = body.get("data") or []
        if not isinstance(data, list):
            return Result.failure(ErrorKind.MALFORMED_RESPONSE, "data is not a list")
        try:
            total = int(body.get("totalCount") or len(data))
        except (TypeError, ValueError):
            return Result.failure(ErrorKind.MALFORMED_RESPONSE, "totalCount is not a number")

        items = [schema.record_from_wire(item) for item in data if isinstance(item, dict)]
        return Result.success(Page(items=items, total_count=total))

    async def find(self, entity: str, record_id: str, *, limit: int = LOOKUP_LIMIT) -> Result[Record]:
        """Locate one record by id by scanning a large page.

        The backend has no get-by-id action; detail views look records up
        from the listing. Success with None means the id is not there.
        """
        result = await self.list(entity, limit=limit)
        if not result.ok:
            return Result.failure(result.error, result.message)
        for record in result.value.items:
            if record.id == record_id:
                return Result.success(record)
        return Result.success(None)

    async def save(self, record: Record, content: Any = None) -> Result[Record]:
        """POST ``save<Entity>``. Idempotent; safe to repeat."""
        schema = get_schema(record.entity)
        request = SaveEntity(
            action=schema.save_action,
            item=schema.record_to_wire(record),
            content=content,
        )
        result = await self._client.send(request)
        if not result.ok:
            return Result.failure(result.error, result.message)
        return Result.success(record)

    async def delete(self, entity: str, record_id: str) -> Result[bool]:
        """POST ``delete<Entity>``."""
        schema = get_schema(entity)
        result = await self._client.send(DeleteEntity(action=schema.delete_action, id=record_id))
        if not result.ok:
            return Result.failure(result.error, result.message)
        return Result.success(True)

    async def fetch_profile(self) -> Result[dict]:
        result = await self._client.send(GetProfile())
        if not result.ok:
            return Result.failure(result.error, result.message)
        data = result.value.get("data")
        if not isinstance(data, dict):
            return Result.failure(ErrorKind.MALFORMED_RESPONSE, "profile data missing")
        return Result.success(data)

    async def replay_journal(self, journal: "RefJournal", *, limit: int = 50) -> dict[str, int]:
        """Re-issue record saves for journaled pointers that are due.

        Only the pointer is replayed: it is patched onto the record as it is
        listed now, so metadata edits saved after the row was journaled
        survive. A record that is no longer listed has been deleted and its
        row is dropped. Returns counts of saved and failed rows.
        """
        saved = failed = 0
        listings: dict[str, dict[str, Record]] = {}
        for pending in journal.due(limit=limit):
            if pending.entity not in listings:
                listed = await self.list(pending.entity, limit=LOOKUP_LIMIT)
                if not listed.ok:
                    journal.fail(
                        pending.entity, pending.record_id, error=listed.message, ref=pending.ref,
                    )
                    failed += 1
                    continue
                listings[pending.entity] = {r.id: r for r in listed.value.items}

            current = listings[pending.entity].get(pending.record_id)
            if current is None:
                logger.warning(
                    "Dropping journaled pointer for %s/%s: record no longer listed",
                    pending.entity, pending.record_id,
                )
                journal.complete(pending.entity, pending.record_id, ref=pending.ref)
                continue

            record = current.with_ref(pending.ref)
            result = await self.save(record)
            if result.ok:
                journal.complete(record.entity, record.id, ref=record.ref)
                listings[record.entity][record.id] = record
                saved += 1
            else:
                journal.fail(record.entity, record.id, error=result.message, ref=record.ref)
                failed += 1
        if saved or failed:
            logger.info("Replayed ref journal: %d saved, %d failed", saved, failed)
        return {"saved": saved, "failed": failed}
