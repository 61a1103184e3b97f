"""
Unit tests for the DiagramCache.

Tests cover content hashing, message-set matching, persistence and the
single-flight guarantee for concurrent requests.
"""

import asyncio
import hashlib

import pytest

from app.diagram_cache import DiagramCache, canonical_options, compute_input_hash, same_message_set
from app.exceptions import TransientBackendError

from tests.conftest import FakeDiagramGenerator


class TestHashing:
    """Test input hashing helpers."""

    def test_hash_is_sha256_of_text_and_canonical_options(self):
        options = {"direction": "LR", "diagram_type": "flowchart"}
        expected = hashlib.sha256(
            ('User logs in{"diagram_type":"flowchart","direction":"LR"}').encode("utf-8")
        ).hexdigest()

        assert compute_input_hash("User logs in", options) == expected

    def test_option_key_order_does_not_matter(self):
        assert canonical_options({"b": 1, "a": 2}) == canonical_options({"a": 2, "b": 1})
        assert compute_input_hash("x", {"b": 1, "a": 2}) == compute_input_hash("x", {"a": 2, "b": 1})

    def test_options_change_the_hash(self):
        assert compute_input_hash("x", {"direction": "LR"}) != compute_input_hash("x", {"direction": "TD"})

    def test_missing_options_hash_like_empty(self):
        assert compute_input_hash("x", None) == compute_input_hash("x", {})

    def test_same_message_set(self):
        assert same_message_set(["a", "b"], ["b", "a"])
        assert not same_message_set(["a", "b"], ["a"])
        assert not same_message_set(["a", "b"], ["a", "c"])


class TestDiagramCache:
    """Test lookup, generation and single-flight behaviour."""

    @pytest.fixture
    def cache(self, storage, clock):
        return DiagramCache(storage, clock=clock)

    @pytest.mark.asyncio
    async def test_miss_generates_and_persists(self, cache, storage, clock):
        generator = FakeDiagramGenerator()

        result = await cache.lookup_or_generate(["m1", "m2"], "User logs in", {"direction": "LR"}, generator.generate)

        assert result.cache_hit is False
        assert result.entry.generated_code == generator.code
        assert result.entry.title == "Login flow"
        assert result.entry.diagram_kind == "flowchart"
        assert result.entry.message_ids == ("m1", "m2")
        assert result.entry.generated_at == clock.now()
        assert result.entry.input_hash == compute_input_hash("User logs in", {"direction": "LR"})
        assert await storage.find_cache_entries(result.entry.input_hash) == [result.entry]
        assert generator.calls == [("User logs in", {"direction": "LR"})]

    @pytest.mark.asyncio
    async def test_hit_returns_stored_entry_without_generating(self, cache):
        generator = FakeDiagramGenerator()
        first = await cache.lookup_or_generate(["m1", "m2"], "text", {}, generator.generate)

        second = await cache.lookup_or_generate(["m2", "m1"], "text", {}, generator.generate)

        assert second.cache_hit is True
        assert second.entry == first.entry
        assert len(generator.calls) == 1

    @pytest.mark.asyncio
    async def test_same_text_different_message_set_is_a_miss(self, cache):
        """Test that equal hashes only match when the message-id set is identical."""
        generator = FakeDiagramGenerator()
        await cache.lookup_or_generate(["m1", "m2"], "text", {}, generator.generate)

        other = await cache.lookup_or_generate(["m1", "m2", "m3"], "text", {}, generator.generate)

        assert other.cache_hit is False
        assert len(generator.calls) == 2

    @pytest.mark.asyncio
    async def test_different_options_are_a_miss(self, cache):
        generator = FakeDiagramGenerator()
        await cache.lookup_or_generate(["m1"], "text", {"direction": "TD"}, generator.generate)

        other = await cache.lookup_or_generate(["m1"], "text", {"direction": "LR"}, generator.generate)

        assert other.cache_hit is False

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_generation(self, cache, storage):
        """Test that N concurrent identical requests call the generator exactly once."""
        generator = FakeDiagramGenerator()
        generator.gate = asyncio.Event()

        tasks = [
            asyncio.create_task(cache.lookup_or_generate(["m1", "m2"], "text", {}, generator.generate))
            for _ in range(5)
        ]
        while not generator.calls:
            await asyncio.sleep(0)
        for _ in range(5):
            await asyncio.sleep(0)
        assert len(cache.in_flight_keys()) == 1

        generator.gate.set()
        results = await asyncio.gather(*tasks)

        assert len(generator.calls) == 1
        assert len({result.entry.id for result in results}) == 1
        assert sorted(result.cache_hit for result in results) == [False, True, True, True, True]
        assert len(await storage.list_cache_entries()) == 1
        assert cache.in_flight_keys() == []

    @pytest.mark.asyncio
    async def test_failure_propagates_to_waiters_and_clears_claim(self, cache, storage):
        generator = FakeDiagramGenerator(fail_with=TransientBackendError("connection reset"))
        generator.gate = asyncio.Event()

        tasks = [
            asyncio.create_task(cache.lookup_or_generate(["m1"], "text", {}, generator.generate))
            for _ in range(3)
        ]
        while not generator.calls:
            await asyncio.sleep(0)
        generator.gate.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert all(isinstance(result, TransientBackendError) for result in results)
        assert len(generator.calls) == 1
        assert cache.in_flight_keys() == []
        assert await storage.list_cache_entries() == []

    @pytest.mark.asyncio
    async def test_cancelled_leader_fails_waiters_with_retryable_error(self, cache):
        """Test that waiters of a cancelled generation get an error, not the cancellation."""
        generator = FakeDiagramGenerator()
        generator.gate = asyncio.Event()

        leader = asyncio.create_task(cache.lookup_or_generate(["m1", "m2"], "text", {}, generator.generate))
        while not generator.calls:
            await asyncio.sleep(0)
        waiter = asyncio.create_task(cache.lookup_or_generate(["m2", "m1"], "text", {}, generator.generate))
        for _ in range(5):
            await asyncio.sleep(0)

        leader.cancel()
        results = await asyncio.gather(leader, waiter, return_exceptions=True)

        assert isinstance(results[0], asyncio.CancelledError)
        assert isinstance(results[1], TransientBackendError)
        assert results[1].retryable is True
        assert cache.in_flight_keys() == []
        assert len(generator.calls) == 1

    @pytest.mark.asyncio
    async def test_failed_generation_can_be_retried(self, cache):
        failing = FakeDiagramGenerator(fail_with=TransientBackendError("timeout"))
        with pytest.raises(TransientBackendError):
            await cache.lookup_or_generate(["m1"], "text", {}, failing.generate)

        result = await cache.lookup_or_generate(["m1"], "text", {}, FakeDiagramGenerator().generate)

        assert result.cache_hit is False

    @pytest.mark.asyncio
    async def test_get_latest_for_messages(self, cache, clock):
        generator = FakeDiagramGenerator()
        await cache.lookup_or_generate(["m1", "m2"], "first", {}, generator.generate)
        clock.advance(60)
        latest = await cache.lookup_or_generate(["m1", "m2"], "second", {}, generator.generate)
        await cache.lookup_or_generate(["m1"], "third", {}, generator.generate)

        found = await cache.get_latest_for_messages(["m2", "m1"])

        assert found == latest.entry
        assert await cache.get_latest_for_messages(["m9"]) is None
