"""Minimal event emitter used by the client, the delegates and the adapters."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from somactl.core.errors import BleError

LOGGER = logging.getLogger(__name__)

Listener = Callable[..., Any]


class EventEmitter:
    """Register listeners by event name and call them on `emit`.

    An exception raised by a listener is re-emitted as an `error` event, so
    one faulty listener never breaks the emitter's own state handling.
    Background tasks started with `spawn` report their failures the same way.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[tuple[Listener, bool]]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    def on(self, event: str, listener: Listener) -> EventEmitter:
        self._listeners.setdefault(event, []).append((listener, False))
        return self

    def once(self, event: str, listener: Listener) -> EventEmitter:
        self._listeners.setdefault(event, []).append((listener, True))
        return self

    def off(self, event: str, listener: Listener) -> EventEmitter:
        entries = self._listeners.get(event, [])
        for index, (registered, _) in enumerate(entries):
            if registered == listener:
                del entries[index]
                break
        return self

    def remove_all_listeners(self, event: str | None = None) -> EventEmitter:
        if event is None:
            self._listeners.clear()
        else:
            self._listeners.pop(event, None)
        return self

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    def emit(self, event: str, *args: Any) -> bool:
        entries = self._listeners.get(event)
        if not entries:
            if event == "error" and args:
                LOGGER.error("unhandled error event: %s", args[0])
            return False
        for entry in list(entries):
            listener, once = entry
            if once:
                try:
                    entries.remove(entry)
                except ValueError:
                    continue
            try:
                result = listener(*args)
                if asyncio.iscoroutine(result):
                    self.spawn(result)
            except Exception as exc:
                if event == "error":
                    LOGGER.exception("error listener failed")
                else:
                    self.emit("error", exc)
        return True

    def wait_for(self, event: str) -> asyncio.Future[Any]:
        """Return a future resolved by the next `event`.

        The listener is registered immediately, so the event cannot be missed
        between this call and awaiting the future. Cancelling the future
        removes the listener.
        """
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()

        def listener(*args: Any) -> None:
            if not future.done():
                future.set_result(args[0] if len(args) == 1 else args)

        self.once(event, listener)
        future.add_done_callback(lambda _: self.off(event, listener))
        return future

    def spawn(self, coro: Awaitable[Any]) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def cancel_tasks(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        if isinstance(exc, BleError):
            # Already reported by the delegate that issued the request.
            LOGGER.debug("background task failed: %s", exc)
            return
        self.emit("error", exc)
