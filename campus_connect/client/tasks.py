"""Task runners that keep platform calls off the thread that owns client state.

A runner executes ``fn`` and later calls exactly one of ``on_success`` or
``on_error`` on the owner's thread. State is only ever touched from those
callbacks, so no locking is needed.
"""
from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Optional, Protocol

logger = logging.getLogger("campus_connect.tasks")

Callback = Callable[[Any], None]
ErrorCallback = Callable[[Exception], None]
Post = Callable[[Callable[[], None]], None]


class TaskRunner(Protocol):
    def submit(self, fn: Callable[[], Any], on_success: Callback, on_error: ErrorCallback) -> None:
        ...


class InlineRunner:
    """Runs the call synchronously on the calling thread (console client)."""

    def submit(self, fn: Callable[[], Any], on_success: Callback, on_error: ErrorCallback) -> None:
        try:
            result = fn()
        except Exception as exc:  # noqa: BLE001
            on_error(exc)
            return
        on_success(result)


class ThreadPoolRunner:
    """Runs calls on a worker pool and hands results back through ``post``.

    ``post`` must schedule a callable on the owner's thread; the GUI passes a
    Qt signal emitter.
    """

    def __init__(self, post: Post, max_workers: int = 4):
        self._post = post
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="campus-io")

    def submit(self, fn: Callable[[], Any], on_success: Callback, on_error: ErrorCallback) -> None:
        future = self._pool.submit(fn)
        future.add_done_callback(lambda f: self._post(lambda: self._deliver(f, on_success, on_error)))

    @staticmethod
    def _deliver(future: Future, on_success: Callback, on_error: ErrorCallback) -> None:
        exc: Optional[BaseException] = future.exception()
        if exc is None:
            on_success(future.result())
        elif isinstance(exc, Exception):
            on_error(exc)
        else:
            raise exc

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)
