"""
Deterministic aggregation of conversation messages into diagram input text.

The same message set always yields byte-identical text regardless of the
order the messages are passed in, which is what makes the diagram cache
hash stable.
"""

import math
from dataclasses import dataclass
from typing import Iterable, List, Optional

from app.models import AudioMessage, ImageMessage, Message, TextMessage, TranscriptionStatus


SEPARATOR = "\n\n"
TRUNCATION_MARKER = "\n[TRUNCATED]"


def audio_placeholder(duration_ms: int) -> str:
    """Placeholder for audio without a usable transcription, e.g. ``[Audio message 3s - ...]``."""
    seconds = math.floor(max(duration_ms, 0) / 1000 + 0.5)
    return f"[Audio message {seconds}s - transcription unavailable]"


def chronological(messages: Iterable[Message]) -> List[Message]:
    """Sort by timestamp, breaking ties by creation sequence."""
    return sorted(messages, key=lambda m: (m.timestamp, m.sequence))


@dataclass
class AggregationSummary:
    """Counts of the fragments an aggregation produced, by source."""
    text_fragments: int = 0
    transcribed_audio: int = 0
    audio_placeholders: int = 0
    described_images: int = 0
    omitted: int = 0
    characters: int = 0
    truncated: bool = False

    def to_dict(self) -> dict:
        return {
            "text_fragments": self.text_fragments,
            "transcribed_audio": self.transcribed_audio,
            "audio_placeholders": self.audio_placeholders,
            "described_images": self.described_images,
            "omitted": self.omitted,
            "characters": self.characters,
            "truncated": self.truncated,
        }


class ContentAggregator:
    """
    Builds one text document out of mixed text, audio and image messages.

    Attributes:
        max_chars: Optional limit; longer output is cut and marked ``[TRUNCATED]``
    """

    def __init__(self, max_chars: Optional[int] = None):
        self.max_chars = max_chars or None

    def fragment(self, message: Message) -> Optional[str]:
        """Text contributed by a single message, or None when it contributes nothing."""
        if isinstance(message, TextMessage):
            return message.content if message.content.strip() else None

        if isinstance(message, AudioMessage):
            transcription = (message.transcription or "").strip()
            if message.transcription_status == TranscriptionStatus.RECOGNIZED and transcription:
                return transcription
            return audio_placeholder(message.duration_ms)

        if isinstance(message, ImageMessage):
            description = (message.description or "").strip()
            return description or None

        return None

    def aggregate(self, messages: Iterable[Message]) -> str:
        """
        Aggregate messages into chronologically ordered text.

        Args:
            messages: Messages in any order

        Returns:
            Fragments joined by blank lines and stripped; ``""`` when nothing contributes
        """
        fragments = [
            fragment for fragment in (self.fragment(m) for m in chronological(messages))
            if fragment is not None
        ]
        text = SEPARATOR.join(fragments).strip()
        return self._truncate(text)

    def summarize(self, messages: Iterable[Message]) -> AggregationSummary:
        """Describe what ``aggregate`` would produce for ``messages``."""
        messages = list(messages)
        summary = AggregationSummary()

        for message in messages:
            fragment = self.fragment(message)
            if fragment is None:
                summary.omitted += 1
            elif isinstance(message, TextMessage):
                summary.text_fragments += 1
            elif isinstance(message, AudioMessage):
                if fragment == (message.transcription or "").strip():
                    summary.transcribed_audio += 1
                else:
                    summary.audio_placeholders += 1
            elif isinstance(message, ImageMessage):
                summary.described_images += 1

        text = self.aggregate(messages)
        summary.characters = len(text)
        summary.truncated = text.endswith(TRUNCATION_MARKER) and self.max_chars is not None
        return summary

    def _truncate(self, text: str) -> str:
        if self.max_chars is None or len(text) <= self.max_chars:
            return text
        return text[:self.max_chars] + TRUNCATION_MARKER
