"""
Persisted, retryable job queue with bounded concurrency.

Queue items live in the storage collaborator; the queue itself only keeps
the in-flight sets and the handles of running tasks. Dispatch is event
driven: the drain loop runs when an item is enqueued, when an item finishes
and when a delayed retry becomes due, and stops as soon as nothing is
dispatchable. There is no polling.
"""

import asyncio
from dataclasses import asdict, dataclass, replace
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from app.exceptions import PipelineError, ProcessorNotRegistered, QueueExhausted, describe_error
from app.logging_config import get_logger, log_with_context
from app.models import JobQueueItem, JobStatus, JobType
from app.retry import backoff_delay_ms
from app.scheduling import Clock, DelayedTaskScheduler, LoopScheduler, SystemClock
from app.storage import Storage


Processor = Callable[[JobQueueItem], Awaitable[Optional[Dict[str, Any]]]]

RETRY_KEY_PREFIX = "job-retry:"


@dataclass
class QueueOptions:
    """
    Tuning knobs of the job queue.

    Attributes:
        max_concurrent: Maximum number of items processed at once
        max_retries: Retries after the first attempt (total attempts = 1 + max_retries)
        retry_base_delay_ms: Delay before the first retry
        retry_max_delay_ms: Upper bound for any retry delay
        processing_timeout_seconds: Time limit of a single processing attempt
    """
    max_concurrent: int = 2
    max_retries: int = 3
    retry_base_delay_ms: int = 1000
    retry_max_delay_ms: int = 30000
    processing_timeout_seconds: float = 120.0

    def __post_init__(self):
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.retry_max_delay_ms < self.retry_base_delay_ms:
            raise ValueError("retry_max_delay_ms must be >= retry_base_delay_ms")
        if self.processing_timeout_seconds <= 0:
            raise ValueError("processing_timeout_seconds must be > 0")


def is_retryable_job_error(error: BaseException) -> bool:
    """Pipeline errors decide for themselves; any other failure is retried."""
    if isinstance(error, PipelineError):
        return error.retryable
    return True


class JobQueue:
    """
    Runs registered processors over persisted queue items.

    At most ``max_concurrent`` items run at once and at most one item per
    subject id is in flight. Failed attempts are retried with exponential
    backoff through the scheduler; an item waiting for its retry keeps the
    ``processing`` status in storage.

    Attributes:
        storage: Storage collaborator holding the queue items
        options: QueueOptions in effect
        scheduler: Delayed-task scheduler used for retries
        clock: Source of timestamps
    """

    def __init__(
        self,
        storage: Storage,
        options: Optional[QueueOptions] = None,
        scheduler: Optional[DelayedTaskScheduler] = None,
        clock: Optional[Clock] = None
    ):
        self.storage = storage
        self.options = options or QueueOptions()
        self.clock = clock or SystemClock()
        self.scheduler = scheduler or LoopScheduler(self.clock)
        self.logger = get_logger(__name__)

        self._processors: Dict[JobType, Processor] = {}
        self._in_flight_ids: Set[str] = set()
        self._in_flight_subjects: Set[str] = set()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()
        self._retry_waiting: Set[str] = set()
        self._drain_task: Optional[asyncio.Task] = None
        self._draining = False
        self._rerun = False
        self._paused = False
        self._closed = False

    def register_processor(self, job_type: JobType, processor: Processor) -> None:
        """
        Register the coroutine function that processes items of ``job_type``.

        The processor receives the queue item and may return a JSON-serializable
        dict, stored as the item's result on completion.
        """
        self._processors[JobType(job_type)] = processor
        log_with_context(
            self.logger,
            "debug",
            "Processor registered",
            job_type=JobType(job_type).value
        )

    async def enqueue(
        self,
        job_type: JobType,
        subject_id: str,
        payload: Optional[Dict[str, Any]] = None
    ) -> JobQueueItem:
        """
        Persist a new pending item and start dispatching.

        Args:
            job_type: Selects the processor
            subject_id: Item subject; at most one item per subject runs at a time
            payload: Processor input

        Returns:
            The stored JobQueueItem
        """
        if self._closed:
            raise RuntimeError("Job queue is closed")

        now = self.clock.now()
        item = JobQueueItem(
            type=JobType(job_type),
            subject_id=subject_id,
            payload=dict(payload or {}),
            created_at=now,
            updated_at=now,
        )
        await self.storage.add_job(item)

        log_with_context(
            self.logger,
            "info",
            "Job enqueued",
            job_id=item.id,
            subject_id=subject_id,
            job_type=item.type.value
        )

        self._kick()
        return item

    async def get_job(self, job_id: str) -> Optional[JobQueueItem]:
        return await self.storage.get_job(job_id)

    # Dispatch

    def _kick(self) -> None:
        """Start the drain loop, or ask the running one to look again."""
        if self._closed or self._paused:
            return
        if self._draining:
            self._rerun = True
            return
        self._draining = True
        self._drain_task = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        try:
            while True:
                self._rerun = False
                if self._closed or self._paused:
                    return

                capacity = self.options.max_concurrent - len(self._in_flight_ids)
                if capacity > 0:
                    pending = await self.storage.list_pending_jobs()
                    # No await between here and the end of the loop: claims are atomic
                    for item in pending:
                        if capacity <= 0:
                            break
                        if item.id in self._in_flight_ids or item.subject_id in self._in_flight_subjects:
                            continue
                        self._claim(item)
                        capacity -= 1

                if not self._rerun:
                    return
        except Exception as e:
            log_with_context(self.logger, "error", "Queue drain failed", error=e)
        finally:
            self._draining = False

    def _claim(self, item: JobQueueItem) -> None:
        self._in_flight_ids.add(item.id)
        self._in_flight_subjects.add(item.subject_id)
        task = asyncio.get_running_loop().create_task(self._run(item))
        self._tasks[item.id] = task

    def _release(self, item: JobQueueItem) -> None:
        self._in_flight_ids.discard(item.id)
        self._in_flight_subjects.discard(item.subject_id)
        self._tasks.pop(item.id, None)

    async def _run(self, claimed: JobQueueItem) -> None:
        try:
            # Re-read under the claim; the drain may have worked from a stale listing
            item = await self.storage.get_job(claimed.id)
            if item is None or item.status != JobStatus.PENDING:
                return
            await self._process(item)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log_with_context(
                self.logger,
                "error",
                "Unexpected queue failure",
                job_id=claimed.id,
                subject_id=claimed.subject_id,
                error=e
            )
            await self._mark_failed(claimed.id, e)
        finally:
            self._release(claimed)
            self._kick()

    async def _process(self, item: JobQueueItem) -> None:
        processor = self._processors.get(item.type)
        if processor is None:
            error = ProcessorNotRegistered(f"No processor registered for job type: {item.type.value}")
            await self.storage.update_job_status(item.id, JobStatus.FAILED, error=describe_error(error))
            log_with_context(
                self.logger,
                "error",
                "Job failed",
                job_id=item.id,
                subject_id=item.subject_id,
                job_type=item.type.value,
                error_message=describe_error(error)
            )
            return

        await self.storage.update_job_status(item.id, JobStatus.PROCESSING)
        log_with_context(
            self.logger,
            "info",
            "Job status updated",
            job_id=item.id,
            subject_id=item.subject_id,
            old_status=JobStatus.PENDING.value,
            new_status=JobStatus.PROCESSING.value,
            attempt=item.retry_count + 1
        )

        try:
            result = await asyncio.wait_for(
                processor(item),
                timeout=self.options.processing_timeout_seconds
            )
        except asyncio.CancelledError as e:
            if asyncio.current_task().cancelling():
                raise
            # Cancellation raised inside the processor, not aimed at this task
            await self._handle_failure(item, e)
            return
        except Exception as e:
            await self._handle_failure(item, e)
            return

        await self.storage.update_job_status(item.id, JobStatus.COMPLETED, result=result)
        log_with_context(
            self.logger,
            "info",
            "Job status updated",
            job_id=item.id,
            subject_id=item.subject_id,
            old_status=JobStatus.PROCESSING.value,
            new_status=JobStatus.COMPLETED.value
        )

    async def _handle_failure(self, item: JobQueueItem, error: BaseException) -> None:
        error_message = describe_error(error)

        if not is_retryable_job_error(error):
            await self.storage.update_job_status(item.id, JobStatus.FAILED, error=error_message)
            log_with_context(
                self.logger,
                "error",
                "Job failed with a non-retryable error",
                job_id=item.id,
                subject_id=item.subject_id,
                error=error
            )
            return

        if item.retry_count >= self.options.max_retries:
            await self.storage.update_job_status(item.id, JobStatus.FAILED, error=error_message)
            exhausted = QueueExhausted(item.id, item.retry_count + 1, error_message)
            log_with_context(
                self.logger,
                "error",
                str(exhausted),
                job_id=item.id,
                subject_id=item.subject_id,
                attempts=exhausted.attempts
            )
            return

        delay_ms = backoff_delay_ms(
            item.retry_count + 1,
            self.options.retry_base_delay_ms,
            self.options.retry_max_delay_ms
        )
        await self.storage.update_job_status(item.id, JobStatus.PROCESSING, error=error_message)
        self._schedule_retry(item.id, delay_ms)
        log_with_context(
            self.logger,
            "warning",
            "Job attempt failed, retry scheduled",
            job_id=item.id,
            subject_id=item.subject_id,
            retry_count=item.retry_count,
            delay_ms=delay_ms,
            error_message=error_message
        )

    def _schedule_retry(self, job_id: str, delay_ms: int) -> None:
        self._retry_waiting.add(job_id)

        def due() -> None:
            self._spawn(self._requeue(job_id))

        self.scheduler.schedule(RETRY_KEY_PREFIX + job_id, delay_ms / 1000, due)

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _requeue(self, job_id: str) -> None:
        self._retry_waiting.discard(job_id)
        if self._closed:
            return

        try:
            item = await self.storage.get_job(job_id)
            if item is None or item.status != JobStatus.PROCESSING:
                return

            await self.storage.update_job_retry_count(job_id, item.retry_count + 1)
            await self.storage.update_job_status(job_id, JobStatus.PENDING)
        except Exception as e:
            log_with_context(
                self.logger,
                "error",
                "Failed to requeue job for retry",
                job_id=job_id,
                error=e
            )
            await self._mark_failed(job_id, e)
            return

        log_with_context(
            self.logger,
            "info",
            "Job requeued for retry",
            job_id=job_id,
            subject_id=item.subject_id,
            retry_count=item.retry_count + 1
        )
        self._kick()

    async def _mark_failed(self, job_id: str, error: BaseException) -> None:
        """Best-effort terminal write after the queue's own bookkeeping failed."""
        try:
            await self.storage.update_job_status(job_id, JobStatus.FAILED, error=describe_error(error))
        except Exception as e:
            log_with_context(
                self.logger,
                "error",
                "Failed to mark job as failed",
                job_id=job_id,
                error=e
            )

    # Lifecycle

    async def start(self) -> int:
        """
        Recover from a previous run and start dispatching.

        Items persisted as ``processing`` cannot be running (the in-flight
        set starts empty), so they are reset to ``pending``.

        Returns:
            Number of items that were reset
        """
        self._closed = False
        reset = await self.storage.reset_processing_jobs()
        if reset:
            log_with_context(
                self.logger,
                "warning",
                "Reset interrupted jobs to pending",
                reset_count=reset
            )
        self._kick()
        return reset

    async def pause(self) -> None:
        """Stop dispatching new items; running items finish normally."""
        self._paused = True
        self.logger.info("Job queue paused")

    async def resume(self) -> None:
        self._paused = False
        self.logger.info("Job queue resumed")
        self._kick()

    async def update_options(self, **changes: Any) -> QueueOptions:
        """
        Replace queue options (validated as a whole) and re-run dispatch.

        Raises:
            ValueError: If the resulting options are invalid
            TypeError: If an unknown option is given
        """
        self.options = replace(self.options, **changes)
        log_with_context(self.logger, "info", "Queue options updated", **changes)
        self._kick()
        return self.options

    async def clear_completed(self, max_age_hours: int = 24) -> int:
        """
        Remove completed or failed items older than the specified age.

        Items in ``pending`` or ``processing`` are never removed.

        Returns:
            The number of items that were removed
        """
        cutoff = self.clock.now() - timedelta(hours=max_age_hours)
        removed = await self.storage.delete_jobs([JobStatus.COMPLETED, JobStatus.FAILED], cutoff)
        if removed > 0:
            log_with_context(
                self.logger,
                "info",
                "Cleaned up old jobs",
                removed_count=removed,
                max_age_hours=max_age_hours
            )
        return removed

    async def wait_until_idle(self, timeout: Optional[float] = None) -> None:
        """
        Wait until no drain loop, item or due retry is running.

        Retries still waiting on the scheduler do not count as activity.
        """
        async def settle() -> None:
            while True:
                active = [t for t in self._tasks.values() if not t.done()]
                active.extend(t for t in self._background if not t.done())
                if self._drain_task is not None and not self._drain_task.done():
                    active.append(self._drain_task)
                if not active:
                    return
                await asyncio.wait(active)

        await asyncio.wait_for(settle(), timeout)

    async def close(self) -> None:
        """Cancel scheduled retries and running items, then stop dispatching."""
        self._closed = True
        for job_id in list(self._retry_waiting):
            self.scheduler.cancel(RETRY_KEY_PREFIX + job_id)
        self._retry_waiting.clear()

        tasks = list(self._tasks.values()) + list(self._background)
        if self._drain_task is not None:
            tasks.append(self._drain_task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.logger.info("Job queue closed")

    # Introspection

    async def get_stats(self) -> Dict[str, int]:
        """
        Count items by status.

        Returns:
            Dictionary with per-status counts, ``total``, ``in_flight`` and ``scheduled_retries``
        """
        counts = {status.value: 0 for status in JobStatus}
        items = await self.storage.list_jobs()
        for item in items:
            counts[item.status.value] += 1
        counts["total"] = len(items)
        counts["in_flight"] = len(self._in_flight_ids)
        counts["scheduled_retries"] = len(self._retry_waiting)
        return counts

    def in_flight_ids(self) -> List[str]:
        return sorted(self._in_flight_ids)

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": not self._closed,
            "paused": self._paused,
            "in_flight": sorted(self._in_flight_ids),
            "in_flight_subjects": sorted(self._in_flight_subjects),
            "scheduled_retries": sorted(self._retry_waiting),
            "processors": sorted(job_type.value for job_type in self._processors),
            "options": asdict(self.options),
        }
