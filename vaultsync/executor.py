"""
Cancellable, timeboxed execution with "last call wins" supersession.

A UI surface (a gallery page, a search box) runs its loads through one
TimeboxedExecutor. Each execute() call:

- gets a fresh CancelToken and a deadline timer;
- aborts the previous call's token, so only the newest call can ever
  deliver a result; the older call's eventual settlement is dropped;
- settles at most once: success, error, or Timeout when the deadline
  passes first.

Cancellation stops the client from acting on a response. It cannot undo a
write the server already committed.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from .errors import ErrorKind, SyncError
from .types import Result

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 30000


class CancelToken:
    """Abort signal handed to an executor task."""

    def __init__(self):
        self._reason: Optional[ErrorKind] = None
        self._callbacks: list[Callable[[ErrorKind], Any]] = []

    @property
    def cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> Optional[ErrorKind]:
        return self._reason

    def cancel(self, reason: ErrorKind = ErrorKind.SUPERSEDED) -> None:
        if self._reason is not None:
            return
        self._reason = reason
        callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            cb(reason)

    def add_callback(self, cb: Callable[[ErrorKind], Any]) -> None:
        if self._reason is not None:
            cb(self._reason)
        else:
            self._callbacks.append(cb)

    def raise_if_cancelled(self) -> None:
        if self._reason is not None:
            raise SyncError(self._reason)


Task = Callable[[CancelToken], Awaitable[Any]]
Callback = Callable[[Any], Any]
Scheduler = Callable[[float, Callable[[], None]], Any]


@dataclass(eq=False)
class _Call:
    generation: int
    token: CancelToken = field(default_factory=CancelToken)
    work: Optional[asyncio.Future] = None
    timer: Any = None
    settled: bool = False

    def close(self) -> None:
        self.settled = True
        if self.timer is not None:
            self.timer.cancel()


class TimeboxedExecutor:
    """Runs one stream of calls where only the latest call may settle."""

    def __init__(
        self,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        *,
        call_later: Optional[Scheduler] = None,
    ):
        """
        Args:
            timeout_ms: Default deadline for each call
            call_later: Timer factory ``(seconds, callback) -> handle``;
                defaults to the running loop's ``call_later``
        """
        self._timeout_ms = timeout_ms
        self._call_later = call_later
        self._generation = 0
        self._current: Optional[_Call] = None
        self._background: set[asyncio.Future] = set()

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def busy(self) -> bool:
        return self._current is not None and not self._current.settled

    def execute(
        self,
        task: Task,
        on_success: Optional[Callback] = None,
        on_error: Optional[Callback] = None,
        timeout_ms: Optional[int] = None,
    ) -> asyncio.Task:
        """Start ``task(token)``, superseding any call still in flight.

        Returns the driver task; awaiting it waits until this call has
        settled or been dropped. It never raises for task failures.
        """
        loop = asyncio.get_running_loop()
        self._abort_current(ErrorKind.SUPERSEDED)

        self._generation += 1
        call = _Call(self._generation)
        self._current = call

        call.work = asyncio.ensure_future(task(call.token))
        call.token.add_callback(lambda _reason: call.work.cancel())

        deadline = (self._timeout_ms if timeout_ms is None else timeout_ms) / 1000.0
        schedule = self._call_later or loop.call_later
        call.timer = schedule(deadline, lambda: self._on_timeout(call, on_error))

        return loop.create_task(self._drive(call, on_success, on_error))

    def cancel(self) -> None:
        """Abort the current call without delivering any callback."""
        self._abort_current(ErrorKind.SUPERSEDED)

    def _abort_current(self, reason: ErrorKind) -> None:
        call = self._current
        if call is None or call.settled:
            return
        logger.debug("Aborting call %d: %s", call.generation, reason.value)
        call.close()
        call.token.cancel(reason)

    def _is_live(self, call: _Call) -> bool:
        return not call.settled and call.generation == self._generation

    def _on_timeout(self, call: _Call, on_error: Optional[Callback]) -> None:
        if not self._is_live(call):
            return
        logger.info("Call %d timed out", call.generation)
        call.close()
        call.token.cancel(ErrorKind.TIMEOUT)
        pending = self._invoke(on_error, SyncError(ErrorKind.TIMEOUT, "Operation timed out"))
        if pending is not None:
            fut = asyncio.ensure_future(pending)
            self._background.add(fut)
            fut.add_done_callback(self._background.discard)

    async def _drive(
        self, call: _Call, on_success: Optional[Callback], on_error: Optional[Callback]
    ) -> None:
        try:
            value = await call.work
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            return
        except Exception as e:
            await self._settle(call, on_error, e)
            return

        if isinstance(value, Result) and not value.ok:
            await self._settle(call, on_error, SyncError(value.error, value.message))
            return
        await self._settle(call, on_success, value)

    async def _settle(self, call: _Call, callback: Optional[Callback], arg: Any) -> None:
        if not self._is_live(call):
            logger.debug("Dropping settlement of superseded call %d", call.generation)
            return
        call.close()
        pending = self._invoke(callback, arg)
        if pending is not None:
            await pending

    @staticmethod
    def _invoke(callback: Optional[Callback], arg: Any) -> Optional[Awaitable[Any]]:
        if callback is None:
            return None
        ret = callback(arg)
        if inspect.isawaitable(ret):
            return ret
        return None
