"""
Cancellation signal shared by a run, its stream, its tools and its subagents.
"""

import asyncio
import threading
from typing import Any, Awaitable, List, Optional, Tuple


class RunCancelled(Exception):
    """Raised internally when a suspension point observes cancellation."""


class CancelSignal:
    """Thread-safe one-shot cancellation flag that asyncio code can await.

    set() may be called from any thread (signal handlers, the CLI, a
    background task's owner). Waiters on any event loop are woken through
    call_soon_threadsafe.
    """

    def __init__(self, parent: Optional["CancelSignal"] = None):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._waiters: List[Tuple[asyncio.AbstractEventLoop, asyncio.Future]] = []
        self._children: List["CancelSignal"] = []
        self.reason = ""
        if parent is not None:
            parent._add_child(self)

    def _add_child(self, child: "CancelSignal") -> None:
        with self._lock:
            if not self._event.is_set():
                self._children.append(child)
                return
        child.set(self.reason)

    def child(self) -> "CancelSignal":
        """Return a signal that is set whenever this one is."""
        return CancelSignal(parent=self)

    def is_set(self) -> bool:
        return self._event.is_set()

    def set(self, reason: str = "") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            waiters, self._waiters = self._waiters, []
            children, self._children = self._children, []
        for loop, fut in waiters:
            if not loop.is_closed():
                loop.call_soon_threadsafe(_resolve, fut)
        for child in children:
            child.set(reason)

    async def wait(self) -> None:
        if self._event.is_set():
            return
        loop = asyncio.get_running_loop()
        fut = loop.create_future()
        with self._lock:
            if self._event.is_set():
                return
            self._waiters.append((loop, fut))
        try:
            await fut
        finally:
            with self._lock:
                self._waiters = [w for w in self._waiters if w[1] is not fut]


def _resolve(fut: asyncio.Future) -> None:
    if not fut.done():
        fut.set_result(None)


async def race_cancel(awaitable: Awaitable[Any], cancel: Optional[CancelSignal]) -> Any:
    """Await `awaitable` unless `cancel` fires first, then raise RunCancelled.

    The losing awaitable is cancelled. Use only where abandoning the
    operation is safe (stream reads, confirmation prompts), never for
    tool executions, which must be drained.
    """
    task = asyncio.ensure_future(awaitable)
    if cancel is None:
        return await task
    if cancel.is_set():
        task.cancel()
        raise RunCancelled()
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        waiter.cancel()
        raise
    if task in done:
        waiter.cancel()
        return task.result()
    task.cancel()
    raise RunCancelled()
