"""
SQLite implementation of the storage collaborator.

Every call opens its own connection in a worker thread, so the event loop
never blocks on disk I/O and no connection is shared between threads.
"""

import asyncio
import json
import sqlite3
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from app.logging_config import get_logger, log_with_context
from app.models import (
    AudioMessage,
    DiagramCacheEntry,
    ImageMessage,
    JobQueueItem,
    JobStatus,
    JobType,
    Message,
    MessageKind,
    TextMessage,
    TranscriptionStatus,
)
from app.scheduling import Clock, SystemClock


SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY,
        kind TEXT NOT NULL,
        timestamp INTEGER NOT NULL,
        sequence INTEGER NOT NULL,
        processed INTEGER NOT NULL DEFAULT 0,
        content TEXT,
        media BLOB,
        mime_type TEXT,
        duration_ms INTEGER,
        file_name TEXT,
        file_size INTEGER,
        description TEXT,
        transcription TEXT,
        transcription_status TEXT,
        transcription_error TEXT,
        transcription_confidence REAL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS job_queue (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL,
        subject_id TEXT NOT NULL,
        payload TEXT NOT NULL,
        retry_count INTEGER NOT NULL DEFAULT 0,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        last_error TEXT,
        result TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_job_queue_status ON job_queue (status, created_at)",
    """
    CREATE TABLE IF NOT EXISTS diagram_cache (
        id TEXT PRIMARY KEY,
        input_hash TEXT NOT NULL,
        message_ids TEXT NOT NULL,
        generated_code TEXT NOT NULL,
        title TEXT NOT NULL,
        diagram_kind TEXT NOT NULL,
        generated_at TEXT NOT NULL,
        options TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_diagram_cache_hash ON diagram_cache (input_hash)",
)

# Message attribute -> column, where they differ
MESSAGE_FIELD_COLUMNS = {
    "audio_data": "media",
    "image_data": "media",
}

MESSAGE_COLUMNS = (
    "id", "kind", "timestamp", "sequence", "processed", "content", "media",
    "mime_type", "duration_ms", "file_name", "file_size", "description",
    "transcription", "transcription_status", "transcription_error",
    "transcription_confidence",
)


def _encode_value(value: Any) -> Any:
    if isinstance(value, TranscriptionStatus):
        return value.value
    if isinstance(value, bool):
        return int(value)
    return value


def message_to_row(message: Message) -> Dict[str, Any]:
    row = {column: None for column in MESSAGE_COLUMNS}
    row.update({
        "id": message.id,
        "kind": message.kind.value,
        "timestamp": message.timestamp,
        "sequence": message.sequence,
        "processed": int(message.processed),
    })

    if isinstance(message, TextMessage):
        row["content"] = message.content
    elif isinstance(message, AudioMessage):
        row.update({
            "media": message.audio_data,
            "mime_type": message.mime_type,
            "duration_ms": message.duration_ms,
            "transcription": message.transcription,
            "transcription_status": message.transcription_status.value,
            "transcription_error": message.transcription_error,
            "transcription_confidence": message.transcription_confidence,
        })
    elif isinstance(message, ImageMessage):
        row.update({
            "media": message.image_data,
            "mime_type": message.mime_type,
            "file_name": message.file_name,
            "file_size": message.file_size,
            "description": message.description,
        })
    return row


def row_to_message(row: sqlite3.Row) -> Message:
    common = {
        "id": row["id"],
        "timestamp": row["timestamp"],
        "sequence": row["sequence"],
        "processed": bool(row["processed"]),
    }
    kind = MessageKind(row["kind"])

    if kind == MessageKind.TEXT:
        return TextMessage(content=row["content"] or "", **common)
    if kind == MessageKind.AUDIO:
        return AudioMessage(
            audio_data=bytes(row["media"] or b""),
            mime_type=row["mime_type"],
            duration_ms=row["duration_ms"] or 0,
            transcription=row["transcription"],
            transcription_status=TranscriptionStatus(row["transcription_status"]),
            transcription_error=row["transcription_error"],
            transcription_confidence=row["transcription_confidence"],
            **common
        )
    return ImageMessage(
        image_data=bytes(row["media"] or b""),
        file_name=row["file_name"] or "",
        file_size=row["file_size"] or 0,
        mime_type=row["mime_type"],
        description=row["description"],
        **common
    )


def row_to_job(row: sqlite3.Row) -> JobQueueItem:
    return JobQueueItem(
        id=row["id"],
        type=JobType(row["type"]),
        subject_id=row["subject_id"],
        payload=json.loads(row["payload"]),
        retry_count=row["retry_count"],
        status=JobStatus(row["status"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
        last_error=row["last_error"],
        result=json.loads(row["result"]) if row["result"] else None,
    )


def row_to_cache_entry(row: sqlite3.Row) -> DiagramCacheEntry:
    return DiagramCacheEntry(
        id=row["id"],
        input_hash=row["input_hash"],
        message_ids=tuple(json.loads(row["message_ids"])),
        generated_code=row["generated_code"],
        title=row["title"],
        diagram_kind=row["diagram_kind"],
        generated_at=datetime.fromisoformat(row["generated_at"]),
        options=json.loads(row["options"]),
    )


class SqliteStorage:
    """
    SQLite-backed storage for messages, queue items and cache entries.

    Attributes:
        db_path: Path of the database file
    """

    name = "sqlite"

    def __init__(self, db_path: str, clock: Optional[Clock] = None):
        if db_path == ":memory:":
            # Each call opens its own connection, so an in-memory database would not persist
            raise ValueError("SqliteStorage needs a database file; use InMemoryStorage instead")
        self.db_path = Path(db_path)
        self.clock = clock or SystemClock()
        self.logger = get_logger(__name__)

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        connection = sqlite3.connect(self.db_path)
        connection.row_factory = sqlite3.Row
        try:
            yield connection
            connection.commit()
        finally:
            connection.close()

    async def _run(self, fn, *args):
        return await asyncio.to_thread(fn, *args)

    async def initialize(self) -> None:
        """Create tables and indexes if they do not exist."""
        await self._run(self._initialize)
        log_with_context(self.logger, "info", "SQLite storage initialized", db_path=str(self.db_path))

    def _initialize(self) -> None:
        if self.db_path.parent and not self.db_path.parent.exists():
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connection() as connection:
            for statement in SCHEMA:
                connection.execute(statement)

    async def close(self) -> None:
        """Connections are per call; nothing is held open."""

    # Messages

    async def add_message(self, message: Message) -> Message:
        """
        Insert a message.

        A message without a sequence gets the next one after the highest
        stored, so ordering survives restarts.
        """
        sequence = await self._run(self._add_message, message)
        return replace(message, sequence=sequence)

    def _add_message(self, message: Message) -> int:
        row = message_to_row(message)
        placeholders = {column: "?" for column in MESSAGE_COLUMNS}
        if not message.sequence:
            # Assigned inside the INSERT so concurrent writers never share a value
            placeholders["sequence"] = "(SELECT COALESCE(MAX(sequence), 0) + 1 FROM messages)"
        values = tuple(row[column] for column in MESSAGE_COLUMNS if placeholders[column] == "?")
        with self._connection() as connection:
            connection.execute(
                f"INSERT INTO messages ({', '.join(MESSAGE_COLUMNS)}) "
                f"VALUES ({', '.join(placeholders.values())})",
                values,
            )
            return connection.execute(
                "SELECT sequence FROM messages WHERE id = ?", (message.id,)
            ).fetchone()["sequence"]

    async def get_message(self, message_id: str) -> Optional[Message]:
        return await self._run(self._get_message, message_id)

    def _get_message(self, message_id: str) -> Optional[Message]:
        with self._connection() as connection:
            row = connection.execute(
                "SELECT * FROM messages WHERE id = ?", (message_id,)
            ).fetchone()
        return row_to_message(row) if row else None

    async def get_messages(self, message_ids: Iterable[str]) -> List[Message]:
        return await self._run(self._get_messages, list(message_ids))

    def _get_messages(self, message_ids: List[str]) -> List[Message]:
        if not message_ids:
            return []
        placeholders = ", ".join("?" for _ in message_ids)
        with self._connection() as connection:
            rows = connection.execute(
                f"SELECT * FROM messages WHERE id IN ({placeholders})", tuple(message_ids)
            ).fetchall()
        found = {row["id"]: row_to_message(row) for row in rows}
        return [found[message_id] for message_id in message_ids if message_id in found]

    async def list_messages(self, kind: Optional[MessageKind] = None) -> List[Message]:
        return await self._run(self._list_messages, kind)

    def _list_messages(self, kind: Optional[MessageKind]) -> List[Message]:
        with self._connection() as connection:
            if kind is None:
                rows = connection.execute(
                    "SELECT * FROM messages ORDER BY timestamp, sequence"
                ).fetchall()
            else:
                rows = connection.execute(
                    "SELECT * FROM messages WHERE kind = ? ORDER BY timestamp, sequence",
                    (MessageKind(kind).value,),
                ).fetchall()
        return [row_to_message(row) for row in rows]

    async def update_message(self, message_id: str, **fields: Any) -> Message:
        """
        Update fields of a stored message.

        Raises:
            KeyError: If the message does not exist
            AttributeError: If a field has no column
        """
        return await self._run(self._update_message, message_id, fields)

    def _update_message(self, message_id: str, fields: Dict[str, Any]) -> Message:
        assignments = []
        values = []
        for name, value in fields.items():
            column = MESSAGE_FIELD_COLUMNS.get(name, name)
            if column not in MESSAGE_COLUMNS or column in ("id", "kind"):
                raise AttributeError(f"Message has no updatable field {name!r}")
            assignments.append(f"{column} = ?")
            values.append(_encode_value(value))

        with self._connection() as connection:
            if assignments:
                cursor = connection.execute(
                    f"UPDATE messages SET {', '.join(assignments)} WHERE id = ?",
                    (*values, message_id),
                )
                if cursor.rowcount == 0:
                    raise KeyError(f"Message with id {message_id} not found")
            row = connection.execute(
                "SELECT * FROM messages WHERE id = ?", (message_id,)
            ).fetchone()

        if row is None:
            raise KeyError(f"Message with id {message_id} not found")
        return row_to_message(row)

    # Queue items

    async def add_job(self, item: JobQueueItem) -> JobQueueItem:
        await self._run(self._add_job, item)
        return item

    def _add_job(self, item: JobQueueItem) -> None:
        with self._connection() as connection:
            connection.execute(
                """
                INSERT INTO job_queue (
                    id, type, subject_id, payload, retry_count, status,
                    created_at, updated_at, last_error, result
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    item.id,
                    item.type.value,
                    item.subject_id,
                    json.dumps(item.payload),
                    item.retry_count,
                    item.status.value,
                    item.created_at.isoformat(),
                    item.updated_at.isoformat(),
                    item.last_error,
                    json.dumps(item.result) if item.result is not None else None,
                ),
            )

    async def get_job(self, job_id: str) -> Optional[JobQueueItem]:
        return await self._run(self._get_job, job_id)

    def _get_job(self, job_id: str) -> Optional[JobQueueItem]:
        with self._connection() as connection:
            row = connection.execute(
                "SELECT * FROM job_queue WHERE id = ?", (job_id,)
            ).fetchone()
        return row_to_job(row) if row else None

    async def list_pending_jobs(self) -> List[JobQueueItem]:
        return await self.list_jobs(JobStatus.PENDING)

    async def list_jobs(self, status: Optional[JobStatus] = None) -> List[JobQueueItem]:
        return await self._run(self._list_jobs, status)

    def _list_jobs(self, status: Optional[JobStatus]) -> List[JobQueueItem]:
        with self._connection() as connection:
            if status is None:
                rows = connection.execute(
                    "SELECT * FROM job_queue ORDER BY created_at, rowid"
                ).fetchall()
            else:
                rows = connection.execute(
                    "SELECT * FROM job_queue WHERE status = ? ORDER BY created_at, rowid",
                    (JobStatus(status).value,),
                ).fetchall()
        return [row_to_job(row) for row in rows]

    async def update_job_status(
        self,
        job_id: str,
        status: JobStatus,
        error: Optional[str] = None,
        result: Optional[Dict[str, Any]] = None
    ) -> JobQueueItem:
        """
        Update the status of a queue item.

        ``error`` and ``result`` leave the stored values untouched when None.

        Raises:
            KeyError: If the job_id does not exist
        """
        return await self._run(self._update_job_status, job_id, status, error, result)

    def _update_job_status(
        self,
        job_id: str,
        status: JobStatus,
        error: Optional[str],
        result: Optional[Dict[str, Any]]
    ) -> JobQueueItem:
        with self._connection() as connection:
            cursor = connection.execute(
                """
                UPDATE job_queue
                SET status = ?, updated_at = ?,
                    last_error = COALESCE(?, last_error),
                    result = COALESCE(?, result)
                WHERE id = ?
                """,
                (
                    status.value,
                    self.clock.now().isoformat(),
                    error,
                    json.dumps(result) if result is not None else None,
                    job_id,
                ),
            )
            if cursor.rowcount == 0:
                raise KeyError(f"Job with id {job_id} not found")
            row = connection.execute(
                "SELECT * FROM job_queue WHERE id = ?", (job_id,)
            ).fetchone()
        return row_to_job(row)

    async def update_job_retry_count(self, job_id: str, retry_count: int) -> JobQueueItem:
        return await self._run(self._update_job_retry_count, job_id, retry_count)

    def _update_job_retry_count(self, job_id: str, retry_count: int) -> JobQueueItem:
        with self._connection() as connection:
            cursor = connection.execute(
                "UPDATE job_queue SET retry_count = ?, updated_at = ? WHERE id = ?",
                (retry_count, self.clock.now().isoformat(), job_id),
            )
            if cursor.rowcount == 0:
                raise KeyError(f"Job with id {job_id} not found")
            row = connection.execute(
                "SELECT * FROM job_queue WHERE id = ?", (job_id,)
            ).fetchone()
        return row_to_job(row)

    async def reset_processing_jobs(self) -> int:
        return await self._run(self._reset_processing_jobs)

    def _reset_processing_jobs(self) -> int:
        with self._connection() as connection:
            cursor = connection.execute(
                "UPDATE job_queue SET status = ?, updated_at = ? WHERE status = ?",
                (
                    JobStatus.PENDING.value,
                    self.clock.now().isoformat(),
                    JobStatus.PROCESSING.value,
                ),
            )
            return cursor.rowcount

    async def delete_jobs(self, statuses: Iterable[JobStatus], older_than: datetime) -> int:
        return await self._run(self._delete_jobs, [JobStatus(s).value for s in statuses], older_than)

    def _delete_jobs(self, statuses: List[str], older_than: datetime) -> int:
        if not statuses:
            return 0
        placeholders = ", ".join("?" for _ in statuses)
        with self._connection() as connection:
            cursor = connection.execute(
                f"DELETE FROM job_queue WHERE status IN ({placeholders}) AND updated_at < ?",
                (*statuses, older_than.isoformat()),
            )
            return cursor.rowcount

    # Diagram cache

    async def add_cache_entry(self, entry: DiagramCacheEntry) -> DiagramCacheEntry:
        await self._run(self._add_cache_entry, entry)
        return entry

    def _add_cache_entry(self, entry: DiagramCacheEntry) -> None:
        with self._connection() as connection:
            connection.execute(
                """
                INSERT INTO diagram_cache (
                    id, input_hash, message_ids, generated_code, title,
                    diagram_kind, generated_at, options
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.id,
                    entry.input_hash,
                    json.dumps(list(entry.message_ids)),
                    entry.generated_code,
                    entry.title,
                    entry.diagram_kind,
                    entry.generated_at.isoformat(),
                    json.dumps(entry.options, sort_keys=True),
                ),
            )

    async def find_cache_entries(self, input_hash: str) -> List[DiagramCacheEntry]:
        return await self._run(self._find_cache_entries, input_hash)

    def _find_cache_entries(self, input_hash: str) -> List[DiagramCacheEntry]:
        with self._connection() as connection:
            rows = connection.execute(
                "SELECT * FROM diagram_cache WHERE input_hash = ? ORDER BY rowid",
                (input_hash,),
            ).fetchall()
        return [row_to_cache_entry(row) for row in rows]

    async def list_cache_entries(self) -> List[DiagramCacheEntry]:
        return await self._run(self._list_cache_entries)

    def _list_cache_entries(self) -> List[DiagramCacheEntry]:
        with self._connection() as connection:
            rows = connection.execute(
                "SELECT * FROM diagram_cache ORDER BY rowid"
            ).fetchall()
        return [row_to_cache_entry(row) for row in rows]
