"""
Cache Warmer

Proactively populates cache entries before they are requested.

Jobs ("ensure entity X is cached") sit in a bounded FIFO queue. The
dispatcher, running on the event loop, starts up to ``max_concurrent_jobs``
jobs at a time; each runs in its own asyncio Task under a hard timeout.
Task completion callbacks are the only place that moves jobs between the
running set and the history, and they re-dispatch the queue.

Job lifecycle: pending -> running -> completed | failed

Job execution:
1. Facade hit -> completed ("already_cached"), no external call
2. Miss -> enrichment fetch -> write through the facade -> completed ("cached")
3. Fetch error -> failed with the upstream reason; timeout -> failed ("timeout")
"""

from __future__ import annotations

import asyncio
import itertools
import time
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import asdict, dataclass, field, fields, replace
from enum import Enum
from functools import partial
from typing import TYPE_CHECKING, Any, Optional

from ..core.logging import get_logger
from . import keys
from .errors import CacheResult, ErrorCode

if TYPE_CHECKING:
    from ..core.config import RelaySettings
    from .enrichment import EnrichmentService
    from .facade import CacheFacade
    from .strategies import WarmingStrategies

logger = get_logger(__name__)

SUPPORTED_JOB_TYPES = frozenset(keys.ENTITY_BUILDERS)


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class JobPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class WarmingJob:
    """One "ensure this entity is cached" task."""

    id: str
    type: str
    payload: Any
    priority: JobPriority
    created_at: float
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    status: JobStatus = JobStatus.PENDING
    error: Optional[str] = None
    result: Optional[str] = None
    attempts: int = 0

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.completed_at is None:
            return None
        return self.completed_at - self.started_at

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["priority"] = self.priority.value
        data["status"] = self.status.value
        return data


@dataclass
class WarmerConfig:
    """Warmer tuning (seconds for all durations)."""

    warming_interval: float = 300.0
    startup_warming: bool = False
    max_concurrent_jobs: int = 10
    warming_timeout: float = 30.0
    retry_failed_jobs: bool = False
    retry_delay: float = 60.0
    max_retries: int = 3
    queue_size_limit: int = 1000
    history_limit: int = 100

    @classmethod
    def from_settings(
        cls, settings: RelaySettings, overrides: Optional[dict[str, Any]] = None
    ) -> WarmerConfig:
        """Build from settings, then apply a YAML ``warmer:`` section."""
        config = cls(
            warming_interval=settings.warmer_interval,
            startup_warming=settings.warmer_startup,
            max_concurrent_jobs=settings.warmer_max_concurrent_jobs,
            warming_timeout=settings.warmer_timeout,
            retry_failed_jobs=settings.warmer_retry_failed_jobs,
            retry_delay=settings.warmer_retry_delay,
            max_retries=settings.warmer_max_retries,
            queue_size_limit=settings.warmer_queue_size_limit,
            history_limit=settings.warmer_history_limit,
        )
        if overrides:
            known = {f.name for f in fields(cls)}
            unknown = set(overrides) - known
            if unknown:
                logger.warning("Ignoring unknown warmer options: %s", ", ".join(sorted(unknown)))
            config = replace(config, **{k: v for k, v in overrides.items() if k in known})
        return config


@dataclass
class CacheWarmer:
    """
    Background cache warmer.

    Usage:
        warmer = CacheWarmer(facade, enrichment, strategies)
        await warmer.start()
        warmer.warm_character(95465499)
        ...
        await warmer.stop()

    Jobs enqueued before ``start()`` wait in the queue until ``start()``
    or an explicit ``process_jobs()`` call from the event loop.
    """

    facade: CacheFacade
    enrichment: Optional[EnrichmentService] = None
    strategies: Optional[WarmingStrategies] = None
    config: WarmerConfig = field(default_factory=WarmerConfig)
    clock: Callable[[], float] = time.time

    # Runtime state
    _queue: deque[WarmingJob] = field(default_factory=deque, repr=False)
    _running: dict[str, WarmingJob] = field(default_factory=dict, repr=False)
    _tasks: dict[str, asyncio.Task] = field(default_factory=dict, repr=False)
    _completed: deque[WarmingJob] = field(default_factory=deque, repr=False)
    _failed: deque[WarmingJob] = field(default_factory=deque, repr=False)
    _retry_handles: dict[str, asyncio.TimerHandle] = field(default_factory=dict, repr=False)
    _counter: itertools.count = field(default_factory=lambda: itertools.count(1), repr=False)
    _loop: Optional[asyncio.AbstractEventLoop] = field(default=None, repr=False)
    _cycle_task: Optional[asyncio.Task] = field(default=None, repr=False)
    _warming_active: bool = field(default=False, repr=False)
    _startup_done: bool = field(default=False, repr=False)

    def __post_init__(self) -> None:
        self._completed = deque(maxlen=self.config.history_limit)
        self._failed = deque(maxlen=self.config.history_limit)

    @property
    def is_running(self) -> bool:
        return self._warming_active

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    # =========================================================================
    # Enqueueing
    # =========================================================================

    def enqueue(
        self,
        job_type: str,
        payload: Any,
        priority: JobPriority = JobPriority.MEDIUM,
    ) -> CacheResult:
        """
        Queue a warming job.

        Returns:
            success(job_id), the existing job's id when the entity is already
            pending or running, failure(queue_full) when the queue is at
            its limit, or failure(unknown_job_type) for an unsupported type
        """
        result = self._enqueue(job_type, payload, priority)
        if result.ok:
            self._schedule_dispatch()
        return result

    def warm_character(
        self, character_id: Any, priority: JobPriority = JobPriority.MEDIUM
    ) -> CacheResult:
        return self.enqueue(keys.ENTITY_CHARACTER, character_id, priority)

    def warm_corporation(
        self, corporation_id: Any, priority: JobPriority = JobPriority.MEDIUM
    ) -> CacheResult:
        return self.enqueue(keys.ENTITY_CORPORATION, corporation_id, priority)

    def warm_alliance(
        self, alliance_id: Any, priority: JobPriority = JobPriority.MEDIUM
    ) -> CacheResult:
        return self.enqueue(keys.ENTITY_ALLIANCE, alliance_id, priority)

    def warm_system(
        self, system_id: Any, priority: JobPriority = JobPriority.MEDIUM
    ) -> CacheResult:
        return self.enqueue(keys.ENTITY_SYSTEM, system_id, priority)

    def warm_type(
        self, type_id: Any, priority: JobPriority = JobPriority.MEDIUM
    ) -> CacheResult:
        return self.enqueue(keys.ENTITY_TYPE, type_id, priority)

    def warm_strategy(
        self, strategy_name: str, priority: JobPriority = JobPriority.MEDIUM
    ) -> CacheResult:
        """
        Expand a strategy and queue its items.

        Returns:
            success(job_ids) or the strategy's failure
        """
        if self.strategies is None:
            return CacheResult.failure(ErrorCode.UNKNOWN_STRATEGY, "No strategies configured")

        expanded = self.strategies.execute(strategy_name)
        if not expanded.ok:
            return expanded

        job_ids = self._enqueue_items(strategy_name, expanded.value, priority)
        self._schedule_dispatch()
        return CacheResult.success(job_ids)

    def force_startup_warming(self) -> CacheResult:
        """Re-run the startup strategy set at high priority."""
        job_ids = self._run_strategies(self._startup_strategy_names(), JobPriority.HIGH)
        self._startup_done = True
        logger.info("Startup warming queued %d jobs", len(job_ids))
        return CacheResult.success(job_ids)

    def run_periodic_warming(self) -> CacheResult:
        """Run the periodic strategy set at medium priority."""
        names = self.strategies.periodic_strategies() if self.strategies else []
        job_ids = self._run_strategies(names, JobPriority.MEDIUM)
        logger.debug("Periodic warming queued %d jobs", len(job_ids))
        return CacheResult.success(job_ids)

    def clear_queue(self) -> int:
        """Drop all pending jobs; returns how many were dropped."""
        count = len(self._queue)
        self._queue.clear()
        if count:
            logger.info("Cleared %d pending warming jobs", count)
        return count

    def _startup_strategy_names(self) -> list[str]:
        return self.strategies.startup_strategies() if self.strategies else []

    def _run_strategies(self, names: list[str], priority: JobPriority) -> list[str]:
        job_ids: list[str] = []
        for name in names:
            expanded = self.strategies.execute(name) if self.strategies else None
            if expanded is None or not expanded.ok:
                # One failing strategy never aborts the others
                logger.warning(
                    "Skipping warming strategy %s: %s",
                    name,
                    expanded.detail if expanded else "no strategies",
                )
                continue
            job_ids.extend(self._enqueue_items(name, expanded.value, priority))
        self._schedule_dispatch()
        return job_ids

    def _enqueue_items(self, source: str, items: list, priority: JobPriority) -> list[str]:
        job_ids: list[str] = []
        for job_type, payload in items:
            result = self._enqueue(job_type, payload, priority)
            if result.ok:
                job_ids.append(result.value)
            elif result.error is ErrorCode.QUEUE_FULL:
                logger.warning("Warming queue full while expanding %s", source)
                break
        return job_ids

    def _enqueue(self, job_type: str, payload: Any, priority: JobPriority) -> CacheResult:
        if job_type not in SUPPORTED_JOB_TYPES:
            return CacheResult.failure(
                ErrorCode.UNKNOWN_JOB_TYPE, f"Unsupported warming job type: {job_type}"
            )
        if self.enrichment is not None and job_type not in self.enrichment.supported_types():
            return CacheResult.failure(
                ErrorCode.UNKNOWN_JOB_TYPE, f"No enrichment fetcher for {job_type}"
            )
        existing = self._find_active(job_type, payload)
        if existing is not None:
            logger.debug(
                "Warming job for %s:%s already %s as %s",
                job_type,
                payload,
                existing.status.value,
                existing.id,
            )
            return CacheResult.success(existing.id)
        if len(self._queue) >= self.config.queue_size_limit:
            logger.warning("Warming queue full, dropping %s:%s", job_type, payload)
            return CacheResult.failure(
                ErrorCode.QUEUE_FULL, f"Queue limit {self.config.queue_size_limit} reached"
            )

        job = WarmingJob(
            id=f"job_{next(self._counter)}_{uuid.uuid4().hex[:8]}",
            type=job_type,
            payload=payload,
            priority=JobPriority(priority),
            created_at=self.clock(),
        )
        self._queue.append(job)
        return CacheResult.success(job.id)

    def _find_active(self, job_type: str, payload: Any) -> Optional[WarmingJob]:
        """Pending or running job for the same entity, if any."""
        for job in itertools.chain(self._queue, self._running.values()):
            if job.type == job_type and job.payload == payload:
                return job
        return None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Bind to the running loop, run startup warming if configured, start cycling."""
        if self._warming_active:
            logger.warning("Cache warmer already running")
            return

        self._loop = asyncio.get_running_loop()
        self._warming_active = True

        if self.config.startup_warming:
            self.force_startup_warming()

        self._cycle_task = asyncio.create_task(self._warming_loop())
        self.process_jobs()
        logger.info(
            "Cache warmer started (interval %.0fs, %d concurrent jobs)",
            self.config.warming_interval,
            self.config.max_concurrent_jobs,
        )

    async def stop(self) -> None:
        """Stop cycling and cancel in-flight jobs (they are recorded as failed)."""
        if not self._warming_active:
            return

        self._warming_active = False

        if self._cycle_task is not None:
            self._cycle_task.cancel()
            try:
                await self._cycle_task
            except asyncio.CancelledError:
                pass
            self._cycle_task = None

        for handle in self._retry_handles.values():
            handle.cancel()
        self._retry_handles.clear()

        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            # Let done callbacks record the cancelled jobs
            await asyncio.sleep(0)

        self._loop = None
        logger.info("Cache warmer stopped")

    async def _warming_loop(self) -> None:
        while self._warming_active:
            await asyncio.sleep(self.config.warming_interval)
            try:
                self.run_periodic_warming()
            except Exception as e:
                logger.error("Warming cycle failed: %s", e, exc_info=True)

    # =========================================================================
    # Dispatch
    # =========================================================================

    def process_jobs(self) -> int:
        """
        Start queued jobs up to the concurrency limit.

        Must be called from the event loop. Returns the number started.
        """
        started = 0
        while self._queue and len(self._running) < self.config.max_concurrent_jobs:
            self._start_job(self._queue.popleft())
            started += 1
        return started

    def _schedule_dispatch(self) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self.process_jobs)

    def _start_job(self, job: WarmingJob) -> None:
        job.status = JobStatus.RUNNING
        job.started_at = self.clock()
        job.attempts += 1

        task = asyncio.create_task(self._run_job(job), name=f"warm-{job.id}")
        self._running[job.id] = job
        self._tasks[job.id] = task
        task.add_done_callback(partial(self._on_job_done, job))

    async def _run_job(self, job: WarmingJob) -> tuple[bool, str]:
        try:
            return await asyncio.wait_for(self._execute(job), timeout=self.config.warming_timeout)
        except asyncio.TimeoutError:
            return False, ErrorCode.TIMEOUT.value
        except Exception as e:
            logger.warning("Warming job %s raised: %s", job.id, e)
            return False, str(e) or type(e).__name__

    async def _execute(self, job: WarmingJob) -> tuple[bool, str]:
        # Facade calls block on backend I/O and retry waits
        loop = asyncio.get_running_loop()
        cached = await loop.run_in_executor(
            None, partial(self.facade.get_entity, job.type, job.payload, track=False)
        )
        if cached.ok:
            return True, "already_cached"
        if not cached.is_not_found:
            return False, cached.detail or ErrorCode.BACKEND_ERROR.value

        if self.enrichment is None:
            return False, "no enrichment service"

        outcome = await self.enrichment.fetch(job.type, job.payload)
        if not outcome.ok:
            return False, outcome.error or ErrorCode.FETCH_FAILED.value

        written = await loop.run_in_executor(
            None, self.facade.put_entity, job.type, job.payload, outcome.data
        )
        if not written.ok:
            return False, written.detail
        return True, "cached"

    def _on_job_done(self, job: WarmingJob, task: asyncio.Task) -> None:
        self._running.pop(job.id, None)
        self._tasks.pop(job.id, None)
        job.completed_at = self.clock()

        if task.cancelled():
            ok, detail = False, "cancelled"
        else:
            ok, detail = task.result()

        if ok:
            job.status = JobStatus.COMPLETED
            job.result = detail
            self._completed.appendleft(job)
            logger.debug("Warming job %s completed (%s)", job.id, detail)
        else:
            job.status = JobStatus.FAILED
            job.error = detail
            logger.warning("Cache warming job %s failed: %s", job.id, detail)
            if not self._schedule_retry(job):
                self._failed.appendleft(job)

        if not task.cancelled():
            self.process_jobs()

    def _schedule_retry(self, job: WarmingJob) -> bool:
        if (
            not self.config.retry_failed_jobs
            or job.error == "cancelled"
            or job.attempts > self.config.max_retries
            or self._loop is None
        ):
            return False
        handle = self._loop.call_later(self.config.retry_delay, self._retry_job, job)
        self._retry_handles[job.id] = handle
        logger.debug("Retrying warming job %s in %.0fs", job.id, self.config.retry_delay)
        return True

    def _retry_job(self, job: WarmingJob) -> None:
        self._retry_handles.pop(job.id, None)
        if len(self._queue) >= self.config.queue_size_limit:
            job.error = ErrorCode.QUEUE_FULL.value
            self._failed.appendleft(job)
            return
        job.status = JobStatus.PENDING
        job.error = None
        job.started_at = None
        job.completed_at = None
        self._queue.append(job)
        self.process_jobs()

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until the queue is empty and no job is running.

        Drives dispatch itself, so it also drains a warmer that was never
        started. Returns False if ``timeout`` elapsed first.
        """
        try:
            await asyncio.wait_for(self._drain(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def _drain(self) -> None:
        while self._queue or self._tasks:
            if not self._tasks:
                self.process_jobs()
            await asyncio.wait(list(self._tasks.values()))
            await asyncio.sleep(0)

    # =========================================================================
    # Introspection
    # =========================================================================

    def get_job(self, job_id: str) -> Optional[WarmingJob]:
        if job_id in self._running:
            return self._running[job_id]
        for job in itertools.chain(self._queue, self._completed, self._failed):
            if job.id == job_id:
                return job
        return None

    def get_job_history(self) -> list[WarmingJob]:
        """Completed then failed jobs, most recent first within each."""
        return [replace(job) for job in itertools.chain(self._completed, self._failed)]

    def get_status(self) -> dict[str, Any]:
        return {
            "warming_active": self._warming_active,
            "startup_warming_done": self._startup_done,
            "queue_size": len(self._queue),
            "running_jobs": len(self._running),
            "completed_jobs": len(self._completed),
            "failed_jobs": len(self._failed),
            "pending_retries": len(self._retry_handles),
            "max_concurrent_jobs": self.config.max_concurrent_jobs,
            "configuration": asdict(self.config),
        }
