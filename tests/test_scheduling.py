"""
Unit tests for the event-loop scheduler.
"""

import asyncio

import pytest

from app.job_queue import JobQueue, QueueOptions
from app.models import JobStatus, JobType
from app.scheduling import LoopScheduler, SystemClock
from app.storage import InMemoryStorage


class TestLoopScheduler:
    """Test scheduling on the running loop."""

    @pytest.mark.asyncio
    async def test_callback_fires_after_delay(self):
        scheduler = LoopScheduler()
        fired = asyncio.Event()

        scheduler.schedule("a", 0.01, fired.set)
        assert "a" in scheduler.scheduled()

        await asyncio.wait_for(fired.wait(), 1)
        assert scheduler.scheduled() == {}

    @pytest.mark.asyncio
    async def test_rescheduling_replaces_previous_callback(self):
        scheduler = LoopScheduler()
        calls = []

        scheduler.schedule("a", 0.01, lambda: calls.append("first"))
        scheduler.schedule("a", 0.01, lambda: calls.append("second"))
        await asyncio.sleep(0.05)

        assert calls == ["second"]

    @pytest.mark.asyncio
    async def test_cancel(self):
        scheduler = LoopScheduler()
        calls = []
        scheduler.schedule("a", 0.01, lambda: calls.append("a"))
        scheduler.schedule("b", 0.01, lambda: calls.append("b"))

        assert scheduler.cancel("a") is True
        assert scheduler.cancel("missing") is False
        scheduler.cancel_all()
        await asyncio.sleep(0.05)

        assert calls == []

    def test_system_clock_is_utc(self):
        assert SystemClock().now().utcoffset().total_seconds() == 0

    @pytest.mark.asyncio
    async def test_queue_retries_on_real_timers(self):
        """Test a retry end to end with the default scheduler and short delays."""
        queue = JobQueue(
            InMemoryStorage(),
            QueueOptions(max_retries=1, retry_base_delay_ms=10, retry_max_delay_ms=10),
        )
        attempts = []

        async def processor(item):
            attempts.append(item.retry_count)
            if len(attempts) == 1:
                raise RuntimeError("connection reset")
            return {"ok": True}

        queue.register_processor(JobType.AUDIO_TRANSCRIPTION, processor)
        item = await queue.enqueue(JobType.AUDIO_TRANSCRIPTION, "m1")

        async def completed():
            while (await queue.get_job(item.id)).status != JobStatus.COMPLETED:
                await asyncio.sleep(0.005)
        await asyncio.wait_for(completed(), 2)

        assert attempts == [0, 1]
        await queue.close()
