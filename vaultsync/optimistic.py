"""
Optimistic mutation engine.

Applies a change to the visible record list immediately, then persists it.
If any persist in the batch fails, the exact pre-mutation list is restored:
batches are all-or-nothing at the visible-state layer.

Overlapping calls on the same record id are not serialized; whichever
persist resolves last wins.
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import logging
from typing import Any, Awaitable, Callable, Iterable, Optional, Sequence

from .errors import ErrorKind, SyncError
from .types import Record, Result

logger = logging.getLogger(__name__)

StateSetter = Callable[[Sequence[Record]], None]
ErrorHandler = Callable[[Exception], Any]


def _as_error(outcome: Any) -> Optional[Exception]:
    """Map one persist outcome to an error, or None if it succeeded."""
    if isinstance(outcome, BaseException):
        if isinstance(outcome, Exception):
            return outcome
        return SyncError(ErrorKind.NETWORK_FAILURE, f"persist aborted: {outcome!r}")
    if isinstance(outcome, Result):
        if outcome.ok:
            return None
        return SyncError(outcome.error, outcome.message)
    if outcome is False:
        return SyncError(ErrorKind.NETWORK_FAILURE, "persist returned False")
    return None


async def _notify(on_error: Optional[ErrorHandler], error: Exception) -> None:
    if on_error is None:
        return
    ret = on_error(error)
    if inspect.isawaitable(ret):
        await ret


async def _run_one(fn: Callable[[Any], Any], arg: Any) -> Any:
    """Call ``fn`` so that a synchronous raise surfaces as this task's error."""
    ret = fn(arg)
    if inspect.isawaitable(ret):
        return await ret
    return ret


async def _persist_all(
    records: Sequence[Record],
    set_state: StateSetter,
    fn: Callable[[Any], Any],
    args: list[Any],
    on_error: Optional[ErrorHandler],
) -> bool:
    try:
        outcomes = await asyncio.gather(
            *(_run_one(fn, arg) for arg in args), return_exceptions=True,
        )
    except asyncio.CancelledError:
        set_state(records)
        raise

    for outcome in outcomes:
        error = _as_error(outcome)
        if error is not None:
            logger.info("Optimistic batch failed, restoring %d records: %s", len(records), error)
            set_state(records)
            await _notify(on_error, error)
            return False
    return True


async def apply_update(
    records: Sequence[Record],
    set_state: StateSetter,
    target_ids: Iterable[str],
    mutate: Callable[[Record], Record],
    persist: Callable[[Record], Awaitable[Any]],
    on_error: Optional[ErrorHandler] = None,
) -> bool:
    """Mutate the target records now, persist them, roll back on any failure.

    ``set_state`` is called synchronously with the new list before any
    network call, and with the original ``records`` object on rollback.
    ``persist`` fails by returning False or a failed Result, or raising.
    """
    targets = set(target_ids)
    next_state = [mutate(copy.deepcopy(r)) if r.id in targets else r for r in records]
    set_state(next_state)

    changed = [r for r in next_state if r.id in targets]
    return await _persist_all(records, set_state, persist, changed, on_error)


async def apply_delete(
    records: Sequence[Record],
    set_state: StateSetter,
    target_ids: Iterable[str],
    delete_fn: Callable[[str], Awaitable[Any]],
    on_error: Optional[ErrorHandler] = None,
) -> bool:
    """Remove the target records now, delete them remotely, roll back on failure."""
    targets = set(target_ids)
    set_state([r for r in records if r.id not in targets])

    doomed = [r.id for r in records if r.id in targets]
    return await _persist_all(records, set_state, delete_fn, doomed, on_error)


class RecordStore:
    """
    Single owner of an in-memory record list.

    Every change goes through the private setter, so a rollback always
    restores a snapshot this store handed out. Listeners are called with
    the new tuple after each change.
    """

    def __init__(self, records: Iterable[Record] = ()):
        self._records: tuple[Record, ...] = tuple(records)
        self._listeners: list[Callable[[tuple[Record, ...]], Any]] = []

    @property
    def records(self) -> tuple[Record, ...]:
        return self._records

    def get(self, record_id: str) -> Optional[Record]:
        for r in self._records:
            if r.id == record_id:
                return r
        return None

    def subscribe(self, listener: Callable[[tuple[Record, ...]], Any]) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _set_state(self, records: Sequence[Record]) -> None:
        self._records = tuple(records)
        for listener in list(self._listeners):
            listener(self._records)

    def replace_all(self, records: Iterable[Record]) -> None:
        """Adopt a freshly loaded page."""
        self._set_state(list(records))

    def upsert(self, record: Record) -> None:
        """Adopt a confirmed record (e.g. with a migrated ContentRef)."""
        if self.get(record.id) is None:
            self._set_state([*self._records, record])
        else:
            self._set_state([record if r.id == record.id else r for r in self._records])

    async def update(
        self,
        target_ids: Iterable[str],
        mutate: Callable[[Record], Record],
        persist: Callable[[Record], Awaitable[Any]],
        on_error: Optional[ErrorHandler] = None,
    ) -> bool:
        return await apply_update(
            self._records, self._set_state, target_ids, mutate, persist, on_error
        )

    async def delete(
        self,
        target_ids: Iterable[str],
        delete_fn: Callable[[str], Awaitable[Any]],
        on_error: Optional[ErrorHandler] = None,
    ) -> bool:
        return await apply_delete(self._records, self._set_state, target_ids, delete_fn, on_error)
