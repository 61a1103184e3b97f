"""
Shared fixtures and fakes for the pipeline tests.

The fakes replace the external collaborators (recognition backend,
diagram generator, timers and clock) so queue, cache and pipeline
behaviour can be tested deterministically without models or network.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np
import pytest

from app.audio_normalizer import AudioNormalizer, encode_wav
from app.content_aggregator import ContentAggregator
from app.diagram_cache import DiagramCache
from app.job_queue import JobQueue, QueueOptions
from app.models import DiagramResult
from app.pipeline import PipelineService
from app.recognition_client import BackendResponse, RecognitionClient, RecognitionOutcome
from app.storage import InMemoryStorage


HANG = object()


def make_wav(duration_s: float = 1.0, amplitude: float = 0.5, sample_rate: int = 16000) -> bytes:
    """Canonical mono 16-bit WAV containing a 440 Hz tone."""
    t = np.arange(int(duration_s * sample_rate)) / sample_rate
    samples = amplitude * np.sin(2 * np.pi * 440 * t)
    return encode_wav((samples * 32767).astype("<i2"), sample_rate)


def recognized(text: str, confidence: Optional[float] = 0.9) -> BackendResponse:
    return BackendResponse(outcome=RecognitionOutcome.RECOGNIZED, text=text, confidence=confidence)


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2024, 6, 10, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


class ManualScheduler:
    """Delayed-task scheduler driven by ``advance``; records every delay it was given."""

    def __init__(self, clock: Optional[FakeClock] = None):
        self.clock = clock or FakeClock()
        self.elapsed = 0.0
        self.history: List[Tuple[str, float]] = []
        self._tasks: Dict[str, Tuple[float, Callable[[], None]]] = {}

    def schedule(self, key: str, delay_seconds: float, callback: Callable[[], None]) -> None:
        self.history.append((key, delay_seconds))
        self._tasks[key] = (self.elapsed + delay_seconds, callback)

    def cancel(self, key: str) -> bool:
        return self._tasks.pop(key, None) is not None

    def cancel_all(self) -> None:
        self._tasks.clear()

    def scheduled(self) -> Dict[str, datetime]:
        return {
            key: self.clock.now() + timedelta(seconds=due - self.elapsed)
            for key, (due, _) in self._tasks.items()
        }

    def delays(self) -> List[float]:
        return [delay for _, delay in self.history]

    def advance(self, seconds: float) -> int:
        """Move time forward and fire every callback that became due, in due order."""
        self.elapsed += seconds
        if isinstance(self.clock, FakeClock):
            self.clock.advance(seconds)
        due = sorted(
            (entry for entry in self._tasks.items() if entry[1][0] <= self.elapsed),
            key=lambda entry: entry[1][0]
        )
        for key, (_, callback) in due:
            del self._tasks[key]
            callback()
        return len(due)


class ScriptedSession:
    def __init__(self, backend: "ScriptedBackend"):
        self.backend = backend
        self.closed = False

    async def recognize(self, audio, language):
        self.backend.calls += 1
        self.backend.languages.append(language)
        step = self.backend.next_step()
        if step is HANG:
            await asyncio.sleep(3600)
        if isinstance(step, BaseException):
            raise step
        return step

    async def close(self) -> None:
        self.closed = True


class ScriptedBackend:
    """
    Recognition backend replaying a script of responses.

    Each step is a BackendResponse, an exception to raise, or HANG. The
    last step repeats once the script runs out.
    """

    name = "scripted"

    def __init__(self, *steps):
        self.steps = list(steps) or [recognized("hello")]
        self.calls = 0
        self.languages: List[str] = []
        self.sessions: List[ScriptedSession] = []

    def next_step(self):
        if len(self.steps) > 1:
            return self.steps.pop(0)
        return self.steps[0]

    async def open_session(self) -> ScriptedSession:
        session = ScriptedSession(self)
        self.sessions.append(session)
        return session

    @property
    def all_closed(self) -> bool:
        return all(session.closed for session in self.sessions)


class RecordingSleep:
    """Injectable sleep that returns immediately and records the requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class FakeDiagramGenerator:
    """Diagram generator returning a fixed diagram; optionally gated or failing."""

    model = "fake-model"

    def __init__(self, code: str = "flowchart TD\n    A --> B", fail_with: Optional[Exception] = None):
        self.code = code
        self.fail_with = fail_with
        self.calls: List[Tuple[str, dict]] = []
        self.gate: Optional[asyncio.Event] = None

    def is_configured(self) -> bool:
        return True

    async def generate(self, text: str, options: Optional[dict] = None) -> DiagramResult:
        self.calls.append((text, dict(options or {})))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        return DiagramResult(code=self.code, title="Login flow", kind="flowchart")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler(clock):
    return ManualScheduler(clock)


@pytest.fixture
def storage(clock):
    return InMemoryStorage(clock=clock)


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def backend():
    return ScriptedBackend(recognized("the user logs in"))


@pytest.fixture
def generator():
    return FakeDiagramGenerator()


@pytest.fixture
def queue_options():
    return QueueOptions(
        max_concurrent=2,
        max_retries=3,
        retry_base_delay_ms=1000,
        retry_max_delay_ms=30000,
        processing_timeout_seconds=5.0,
    )


@pytest.fixture
def pipeline(storage, backend, generator, scheduler, clock, queue_options, recording_sleep):
    """PipelineService over in-memory storage, scripted recognition and a fake generator."""
    recognition = RecognitionClient(
        backend=backend,
        normalizer=AudioNormalizer(),
        max_attempts=2,
        base_delay_ms=10,
        max_delay_ms=20,
        attempt_timeout_seconds=0.05,
        sleep=recording_sleep,
    )
    return PipelineService(
        storage=storage,
        recognition_client=recognition,
        aggregator=ContentAggregator(),
        cache=DiagramCache(storage, clock=clock),
        generator=generator,
        queue=JobQueue(storage, queue_options, scheduler=scheduler, clock=clock),
    )
