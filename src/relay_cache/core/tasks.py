"""
Detached (fire-and-forget) task execution.

Deployment hooks and similar best-effort callbacks run detached from the
call that triggered them: the caller never awaits them, and a failure is
logged instead of propagated.

When an event loop is running in the calling thread, work is scheduled on
it (sync callables through ``asyncio.to_thread``). Otherwise it runs on a
daemon thread, with coroutine functions driven by ``asyncio.run``.
"""

from __future__ import annotations

import asyncio
import inspect
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .logging import get_logger

logger = get_logger(__name__)


@dataclass
class DetachedTasks:
    """
    Tracks in-flight detached work.

    Strong references are held until each unit finishes so the event loop
    does not garbage-collect pending tasks.
    """

    name: str = "detached"

    _tasks: set[asyncio.Task] = field(default_factory=set, repr=False)
    _threads: set[threading.Thread] = field(default_factory=set, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _failures: int = field(default=0, repr=False)

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._tasks) + len(self._threads)

    @property
    def failures(self) -> int:
        return self._failures

    def spawn(self, label: str, func: Callable[..., Any], *args: Any) -> None:
        """
        Run ``func(*args)`` detached.

        Args:
            label: Name used in failure logs
            func: Sync or async callable
            *args: Positional arguments for ``func``
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is not None:
            task = loop.create_task(self._run_async(label, func, args))
            with self._lock:
                self._tasks.add(task)
            task.add_done_callback(self._discard_task)
            return

        thread = threading.Thread(
            target=self._run_in_thread,
            args=(label, func, args),
            name=f"{self.name}-{label}",
            daemon=True,
        )
        with self._lock:
            self._threads.add(thread)
        thread.start()

    async def wait(self, timeout: float | None = None) -> None:
        """Wait for all in-flight detached work (tasks and threads)."""
        with self._lock:
            tasks = list(self._tasks)
            threads = list(self._threads)

        if tasks:
            await asyncio.wait(tasks, timeout=timeout)
        for thread in threads:
            await asyncio.to_thread(thread.join, timeout)

    def join(self, timeout: float | None = None) -> None:
        """Block until detached threads finish (no-loop callers)."""
        with self._lock:
            threads = list(self._threads)
        for thread in threads:
            thread.join(timeout)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _run_async(self, label: str, func: Callable[..., Any], args: tuple) -> None:
        try:
            if inspect.iscoroutinefunction(func):
                await func(*args)
            else:
                result = await asyncio.to_thread(func, *args)
                if inspect.isawaitable(result):
                    await result
        except asyncio.CancelledError:
            raise
        except Exception:
            self._failures += 1
            logger.error("Detached task %s failed", label, exc_info=True)

    def _run_in_thread(self, label: str, func: Callable[..., Any], args: tuple) -> None:
        try:
            if inspect.iscoroutinefunction(func):
                asyncio.run(func(*args))
            else:
                result = func(*args)
                if inspect.isawaitable(result):
                    asyncio.run(_await(result))
        except Exception:
            self._failures += 1
            logger.error("Detached task %s failed", label, exc_info=True)
        finally:
            with self._lock:
                self._threads.discard(threading.current_thread())

    def _discard_task(self, task: asyncio.Task) -> None:
        with self._lock:
            self._tasks.discard(task)


async def _await(awaitable: Any) -> Any:
    return await awaitable
