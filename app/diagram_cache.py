"""
Content-hashed, single-flight cache of generated diagrams.

A diagram is identified by the SHA-256 of the aggregated conversation text
plus the canonical JSON of the generation options, and by the exact set of
message ids it was built from. Concurrent requests for the same key share a
single generation call.
"""

import asyncio
import hashlib
import json
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from app.exceptions import TransientBackendError, describe_error
from app.logging_config import get_logger, log_with_context
from app.models import CachedResult, DiagramCacheEntry, DiagramResult, new_id
from app.scheduling import Clock, SystemClock
from app.storage import Storage


GenerateFn = Callable[[str, Dict[str, Any]], Awaitable[DiagramResult]]
CacheKey = Tuple[str, frozenset]


def canonical_options(options: Optional[Dict[str, Any]]) -> str:
    """Serialize options with sorted keys and no whitespace."""
    return json.dumps(options or {}, sort_keys=True, separators=(",", ":"))


def compute_input_hash(aggregated_text: str, options: Optional[Dict[str, Any]]) -> str:
    """
    Hash the diagram input.

    Args:
        aggregated_text: Output of the content aggregator
        options: Generation options

    Returns:
        Hex SHA-256 digest of ``aggregated_text + canonical_options(options)``
    """
    payload = aggregated_text + canonical_options(options)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def same_message_set(left: Iterable[str], right: Iterable[str]) -> bool:
    """Order-independent comparison: same cardinality and same members."""
    left, right = list(left), list(right)
    return len(left) == len(right) and set(left) == set(right)


class DiagramCache:
    """
    Looks up diagrams by content hash and message-id set, generating on miss.

    Attributes:
        storage: Storage collaborator holding the cache entries
        clock: Source of ``generated_at`` timestamps
        _in_flight: Futures of generations currently running, by cache key
    """

    def __init__(self, storage: Storage, clock: Optional[Clock] = None):
        self.storage = storage
        self.clock = clock or SystemClock()
        self._in_flight: Dict[CacheKey, asyncio.Future] = {}
        self.logger = get_logger(__name__)

    async def lookup_or_generate(
        self,
        message_ids: Iterable[str],
        aggregated_text: str,
        options: Optional[Dict[str, Any]],
        generate_fn: GenerateFn
    ) -> CachedResult:
        """
        Return the cached diagram for this input, generating it at most once.

        The in-flight check and claim happen without an ``await`` in
        between, so two concurrent callers can never both start a
        generation for the same key. Callers that find a generation in
        flight wait for it and receive the same entry with
        ``cache_hit=True``; if it fails they receive the same exception.

        Args:
            message_ids: Ids of the aggregated messages
            aggregated_text: Aggregated conversation text
            options: Generation options (part of the hash)
            generate_fn: Coroutine function ``(text, options) -> DiagramResult``

        Returns:
            CachedResult with the entry and whether it came from the cache
        """
        ids = list(message_ids)
        options = dict(options or {})
        input_hash = compute_input_hash(aggregated_text, options)
        key: CacheKey = (input_hash, frozenset(ids))

        pending = self._in_flight.get(key)
        if pending is not None:
            log_with_context(
                self.logger,
                "debug",
                "Joining in-flight diagram generation",
                input_hash=input_hash,
                message_count=len(ids),
            )
            entry = await asyncio.shield(pending)
            return CachedResult(entry=entry, cache_hit=True)

        future = asyncio.get_running_loop().create_future()
        self._in_flight[key] = future
        try:
            cached = await self._find(input_hash, ids)
            if cached is not None:
                log_with_context(
                    self.logger,
                    "info",
                    "Diagram cache hit",
                    input_hash=input_hash,
                    diagram_id=cached.id,
                )
                future.set_result(cached)
                return CachedResult(entry=cached, cache_hit=True)

            log_with_context(
                self.logger,
                "info",
                "Diagram cache miss, generating",
                input_hash=input_hash,
                message_count=len(ids),
            )
            result = await generate_fn(aggregated_text, options)
            entry = DiagramCacheEntry(
                id=new_id(),
                input_hash=input_hash,
                message_ids=tuple(ids),
                generated_code=result.code,
                title=result.title,
                diagram_kind=result.kind,
                generated_at=self.clock.now(),
                options=options,
            )
            await self.storage.add_cache_entry(entry)
            future.set_result(entry)
            return CachedResult(entry=entry, cache_hit=False)
        except asyncio.CancelledError:
            # Waiters fail with a retryable error instead of inheriting the cancellation
            if not future.done():
                future.set_exception(TransientBackendError("In-flight diagram generation was cancelled"))
                future.exception()
            raise
        except Exception as e:
            log_with_context(
                self.logger,
                "warning",
                "Diagram generation failed",
                input_hash=input_hash,
                error_message=describe_error(e),
            )
            future.set_exception(e)
            # Mark retrieved; waiters (if any) re-raise it themselves
            future.exception()
            raise
        finally:
            self._in_flight.pop(key, None)

    async def _find(self, input_hash: str, message_ids: List[str]) -> Optional[DiagramCacheEntry]:
        for entry in await self.storage.find_cache_entries(input_hash):
            if same_message_set(entry.message_ids, message_ids):
                return entry
        return None

    async def get_latest_for_messages(self, message_ids: Iterable[str]) -> Optional[DiagramCacheEntry]:
        """
        Most recently generated entry for exactly this message-id set, under any hash.

        Returns:
            The entry, or None when no diagram exists for the set
        """
        ids = list(message_ids)
        matches = [
            entry for entry in await self.storage.list_cache_entries()
            if same_message_set(entry.message_ids, ids)
        ]
        if not matches:
            return None
        return max(enumerate(matches), key=lambda pair: (pair[1].generated_at, pair[0]))[1]

    def in_flight_keys(self) -> List[Tuple[str, List[str]]]:
        """Generations currently running, as ``(input_hash, sorted message ids)``."""
        return [(input_hash, sorted(ids)) for input_hash, ids in self._in_flight]
