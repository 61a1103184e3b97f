"""
Storage collaborator for messages, queue items and diagram cache entries.

Components only ever hold transient copies of stored records; every change
goes through the storage API. ``InMemoryStorage`` is used by tests and
single-process deployments, ``SqliteStorage`` (app.sqlite_storage) persists
across restarts.
"""

import copy
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol

from app.logging_config import get_logger, log_with_context
from app.models import (
    DiagramCacheEntry,
    JobQueueItem,
    JobStatus,
    Message,
    MessageKind,
)
from app.scheduling import Clock, SystemClock


class Storage(Protocol):
    """Asynchronous storage API used by the pipeline components."""

    async def initialize(self) -> None: ...

    async def close(self) -> None: ...

    async def add_message(self, message: Message) -> Message: ...

    async def get_message(self, message_id: str) -> Optional[Message]: ...

    async def get_messages(self, message_ids: Iterable[str]) -> List[Message]: ...

    async def list_messages(self, kind: Optional[MessageKind] = None) -> List[Message]: ...

    async def update_message(self, message_id: str, **fields: Any) -> Message: ...

    async def add_job(self, item: JobQueueItem) -> JobQueueItem: ...

    async def get_job(self, job_id: str) -> Optional[JobQueueItem]: ...

    async def list_pending_jobs(self) -> List[JobQueueItem]: ...

    async def list_jobs(self, status: Optional[JobStatus] = None) -> List[JobQueueItem]: ...

    async def update_job_status(
        self,
        job_id: str,
        status: JobStatus,
        error: Optional[str] = None,
        result: Optional[Dict[str, Any]] = None
    ) -> JobQueueItem: ...

    async def update_job_retry_count(self, job_id: str, retry_count: int) -> JobQueueItem: ...

    async def reset_processing_jobs(self) -> int: ...

    async def delete_jobs(self, statuses: Iterable[JobStatus], older_than: datetime) -> int: ...

    async def add_cache_entry(self, entry: DiagramCacheEntry) -> DiagramCacheEntry: ...

    async def find_cache_entries(self, input_hash: str) -> List[DiagramCacheEntry]: ...

    async def list_cache_entries(self) -> List[DiagramCacheEntry]: ...


class InMemoryStorage:
    """
    Storage kept in process memory.

    Records are deep-copied on the way in and out, so mutating a returned
    object never changes the stored state.

    Attributes:
        _messages: Dictionary mapping message id to Message
        _jobs: Dictionary mapping job id to JobQueueItem
        _cache: Diagram cache entries in insertion order
    """

    name = "memory"

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()
        self._messages: Dict[str, Message] = {}
        self._jobs: Dict[str, JobQueueItem] = {}
        self._cache: List[DiagramCacheEntry] = []
        self._last_sequence = 0
        self.logger = get_logger(__name__)

    async def initialize(self) -> None:
        """Nothing to prepare; present for parity with SqliteStorage."""

    # Messages

    async def add_message(self, message: Message) -> Message:
        stored = copy.deepcopy(message)
        if not stored.sequence:
            stored.sequence = self._last_sequence + 1
        self._last_sequence = max(self._last_sequence, stored.sequence)
        self._messages[stored.id] = stored
        return copy.deepcopy(stored)

    async def get_message(self, message_id: str) -> Optional[Message]:
        message = self._messages.get(message_id)
        return copy.deepcopy(message) if message else None

    async def get_messages(self, message_ids: Iterable[str]) -> List[Message]:
        return [
            copy.deepcopy(self._messages[message_id])
            for message_id in message_ids
            if message_id in self._messages
        ]

    async def list_messages(self, kind: Optional[MessageKind] = None) -> List[Message]:
        return [
            copy.deepcopy(message) for message in self._messages.values()
            if kind is None or message.kind == kind
        ]

    async def update_message(self, message_id: str, **fields: Any) -> Message:
        """
        Update fields of a stored message.

        Raises:
            KeyError: If the message does not exist
            AttributeError: If a field does not exist on the message type
        """
        if message_id not in self._messages:
            raise KeyError(f"Message with id {message_id} not found")

        message = self._messages[message_id]
        for name, value in fields.items():
            if not hasattr(message, name):
                raise AttributeError(f"{type(message).__name__} has no field {name!r}")
            setattr(message, name, value)
        return copy.deepcopy(message)

    # Queue items

    async def add_job(self, item: JobQueueItem) -> JobQueueItem:
        self._jobs[item.id] = copy.deepcopy(item)
        return copy.deepcopy(item)

    async def get_job(self, job_id: str) -> Optional[JobQueueItem]:
        item = self._jobs.get(job_id)
        return copy.deepcopy(item) if item else None

    async def list_pending_jobs(self) -> List[JobQueueItem]:
        return await self.list_jobs(JobStatus.PENDING)

    async def list_jobs(self, status: Optional[JobStatus] = None) -> List[JobQueueItem]:
        items = [
            item for item in self._jobs.values()
            if status is None or item.status == status
        ]
        items.sort(key=lambda item: item.created_at)
        return [copy.deepcopy(item) for item in items]

    async def update_job_status(
        self,
        job_id: str,
        status: JobStatus,
        error: Optional[str] = None,
        result: Optional[Dict[str, Any]] = None
    ) -> JobQueueItem:
        """
        Update the status of a queue item.

        Raises:
            KeyError: If the job_id does not exist
        """
        if job_id not in self._jobs:
            log_with_context(
                self.logger,
                "error",
                "Job not found for status update",
                job_id=job_id
            )
            raise KeyError(f"Job with id {job_id} not found")

        item = self._jobs[job_id]
        item.status = status
        item.updated_at = self.clock.now()
        if error is not None:
            item.last_error = error
        if result is not None:
            item.result = copy.deepcopy(result)
        return copy.deepcopy(item)

    async def update_job_retry_count(self, job_id: str, retry_count: int) -> JobQueueItem:
        if job_id not in self._jobs:
            raise KeyError(f"Job with id {job_id} not found")

        item = self._jobs[job_id]
        item.retry_count = retry_count
        item.updated_at = self.clock.now()
        return copy.deepcopy(item)

    async def reset_processing_jobs(self) -> int:
        reset = 0
        for item in self._jobs.values():
            if item.status == JobStatus.PROCESSING:
                item.status = JobStatus.PENDING
                item.updated_at = self.clock.now()
                reset += 1
        return reset

    async def delete_jobs(self, statuses: Iterable[JobStatus], older_than: datetime) -> int:
        statuses = set(statuses)
        stale = [
            job_id for job_id, item in self._jobs.items()
            if item.status in statuses and item.updated_at < older_than
        ]
        for job_id in stale:
            del self._jobs[job_id]
        return len(stale)

    # Diagram cache

    async def add_cache_entry(self, entry: DiagramCacheEntry) -> DiagramCacheEntry:
        self._cache.append(copy.deepcopy(entry))
        return copy.deepcopy(entry)

    async def find_cache_entries(self, input_hash: str) -> List[DiagramCacheEntry]:
        return [copy.deepcopy(e) for e in self._cache if e.input_hash == input_hash]

    async def list_cache_entries(self) -> List[DiagramCacheEntry]:
        return [copy.deepcopy(e) for e in self._cache]

    async def close(self) -> None:
        """Nothing to release; present for parity with SqliteStorage."""
