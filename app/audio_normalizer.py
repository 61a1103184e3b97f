"""
Audio normalization for the conversation diagram pipeline.

Recorded clips arrive in whatever container the client produced (WebM/Opus
from browsers, MP3, OGG, M4A, FLAC or WAV). Recognition wants mono 16-bit
PCM WAV at 16 kHz. This module detects the input format, decodes and
resamples with ffmpeg, applies a loudness-dependent gain with numpy and
serializes a canonical WAV file.
"""

import os
import struct
import tempfile
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import ffmpeg
import numpy as np

from app.exceptions import ConversionError
from app.logging_config import get_logger, log_with_context
from app.models import NormalizedAudio


class AudioFormat(str, Enum):
    """Audio container formats recognized by the normalizer."""
    WAV = "wav"
    MP3 = "mp3"
    OGG = "ogg"
    M4A = "m4a"
    WEBM = "webm"
    FLAC = "flac"
    UNKNOWN = "unknown"


# Declared MIME types (parameters stripped) mapped to formats
MIME_TO_FORMAT = {
    "audio/wav": AudioFormat.WAV,
    "audio/wave": AudioFormat.WAV,
    "audio/x-wav": AudioFormat.WAV,
    "audio/vnd.wave": AudioFormat.WAV,
    "audio/mpeg": AudioFormat.MP3,
    "audio/mp3": AudioFormat.MP3,
    "audio/ogg": AudioFormat.OGG,
    "audio/opus": AudioFormat.OGG,
    "audio/mp4": AudioFormat.M4A,
    "audio/m4a": AudioFormat.M4A,
    "audio/x-m4a": AudioFormat.M4A,
    "audio/aac": AudioFormat.M4A,
    "audio/webm": AudioFormat.WEBM,
    "video/webm": AudioFormat.WEBM,
    "audio/flac": AudioFormat.FLAC,
    "audio/x-flac": AudioFormat.FLAC,
}

GENERIC_MIMES = {"", "application/octet-stream", "binary/octet-stream"}

WAV_MIME = "audio/wav"
WAV_HEADER_SIZE = 44
PCM_FORMAT_TAG = 1
PCM_BITS_PER_SAMPLE = 16
INT16_SCALE = 32767

# Peak below which quiet speech gets the most headroom, and the peak each tier aims for
QUIET_PEAK = 0.05
MODERATE_PEAK = 0.25
QUIET_TARGET_PEAK = 0.95
MODERATE_TARGET_PEAK = 0.9
LOUD_TARGET_PEAK = 0.85
MIN_USEFUL_GAIN = 1.1


@dataclass
class WavHeader:
    """
    Parsed layout of a RIFF/WAVE file.

    Attributes:
        format_tag: WAVE format tag (1 = integer PCM)
        channels: Number of interleaved channels
        sample_rate: Samples per second per channel
        byte_rate: Bytes per second
        block_align: Bytes per sample frame
        bits_per_sample: Sample width in bits
        data_offset: Offset of the first sample byte
        data_size: Size of the sample data in bytes
    """
    format_tag: int
    channels: int
    sample_rate: int
    byte_rate: int
    block_align: int
    bits_per_sample: int
    data_offset: int
    data_size: int

    @property
    def frame_count(self) -> int:
        if self.block_align <= 0:
            return 0
        return self.data_size // self.block_align

    @property
    def duration_ms(self) -> int:
        if self.sample_rate <= 0:
            return 0
        return int(round(self.frame_count * 1000 / self.sample_rate))


def encode_wav(samples: np.ndarray, sample_rate: int, channels: int = 1) -> bytes:
    """
    Serialize 16-bit samples as a WAV file with the fixed 44-byte header.

    Args:
        samples: int16 samples, interleaved when ``channels > 1``
        sample_rate: Samples per second per channel
        channels: Number of channels

    Returns:
        Complete WAV file bytes
    """
    pcm = np.asarray(samples, dtype="<i2").tobytes()
    block_align = channels * PCM_BITS_PER_SAMPLE // 8
    header = struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        36 + len(pcm),
        b"WAVE",
        b"fmt ",
        16,
        PCM_FORMAT_TAG,
        channels,
        sample_rate,
        sample_rate * block_align,
        block_align,
        PCM_BITS_PER_SAMPLE,
        b"data",
        len(pcm),
    )
    return header + pcm


def parse_wav_header(data: bytes) -> WavHeader:
    """
    Parse the header of a RIFF/WAVE file.

    Chunks other than ``fmt `` and ``data`` (e.g. ``LIST``) are skipped.

    Raises:
        ValueError: If the data is not a well-formed WAV file
    """
    if len(data) < 12 or data[0:4] != b"RIFF" or data[8:12] != b"WAVE":
        raise ValueError("Not a RIFF/WAVE file")

    fmt = None
    offset = 12
    while offset + 8 <= len(data):
        chunk_id = data[offset:offset + 4]
        chunk_size = struct.unpack("<I", data[offset + 4:offset + 8])[0]
        body = offset + 8

        if chunk_id == b"fmt ":
            if chunk_size < 16 or body + 16 > len(data):
                raise ValueError("Truncated fmt chunk")
            fmt = struct.unpack("<HHIIHH", data[body:body + 16])
        elif chunk_id == b"data":
            if fmt is None:
                raise ValueError("data chunk precedes fmt chunk")
            available = max(len(data) - body, 0)
            format_tag, channels, sample_rate, byte_rate, block_align, bits = fmt
            return WavHeader(
                format_tag=format_tag,
                channels=channels,
                sample_rate=sample_rate,
                byte_rate=byte_rate,
                block_align=block_align,
                bits_per_sample=bits,
                data_offset=body,
                data_size=min(chunk_size, available),
            )

        # Chunks are word aligned
        offset = body + chunk_size + (chunk_size & 1)

    raise ValueError("WAV file has no data chunk")


def detect_format(data: bytes) -> AudioFormat:
    """
    Detect the audio container from its file signature (magic bytes).

    Args:
        data: Leading bytes of the file (at least 12 for best results)

    Returns:
        The detected format, or ``AudioFormat.UNKNOWN``
    """
    header = data[:12]
    if not header:
        return AudioFormat.UNKNOWN

    if header.startswith(b"RIFF") and header[8:12] == b"WAVE":
        return AudioFormat.WAV
    if header.startswith(b"ID3") or header[0:2] in (b"\xff\xfb", b"\xff\xf3", b"\xff\xf2"):
        return AudioFormat.MP3
    if header.startswith(b"OggS"):
        return AudioFormat.OGG
    if header.startswith(b"\x1a\x45\xdf\xa3"):
        return AudioFormat.WEBM
    if header.startswith(b"fLaC"):
        return AudioFormat.FLAC
    # MP4 family files have an 'ftyp' box at offset 4
    if len(header) >= 8 and header[4:8] == b"ftyp":
        return AudioFormat.M4A

    return AudioFormat.UNKNOWN


def format_from_mime(mime: Optional[str]) -> Optional[AudioFormat]:
    """Map a declared MIME type to a format, ignoring parameters such as ``codecs``."""
    if not mime:
        return None
    base = mime.split(";", 1)[0].strip().lower()
    return MIME_TO_FORMAT.get(base)


def target_peak_for(peak: float) -> float:
    """Peak level to normalize towards, tiered by how loud the input is."""
    if peak < QUIET_PEAK:
        return QUIET_TARGET_PEAK
    if peak < MODERATE_PEAK:
        return MODERATE_TARGET_PEAK
    return LOUD_TARGET_PEAK


def compute_gain(peak: float, noise_floor: float) -> float:
    """
    Gain to apply to samples with the given peak.

    Silence (peak at or below the noise floor) is never amplified, and
    gains of 1.1 or less are not worth the requantization.
    """
    if peak <= noise_floor:
        return 1.0
    gain = target_peak_for(peak) / peak
    if gain > MIN_USEFUL_GAIN:
        return gain
    return 1.0


class AudioNormalizer:
    """
    Converts arbitrary recorded audio to canonical recognition input.

    Attributes:
        target_sample_rate: Output sample rate (default 16 kHz)
        noise_floor: Peak level treated as silence when computing gain
        min_duration_seconds: Clips shorter than this are flagged ``short_clip``
    """

    CANONICAL_CHANNELS = 1

    def __init__(
        self,
        target_sample_rate: int = 16000,
        noise_floor: float = 0.001,
        min_duration_seconds: float = 1.0
    ):
        self.target_sample_rate = target_sample_rate
        self.noise_floor = noise_floor
        self.min_duration_seconds = min_duration_seconds
        self.logger = get_logger(__name__)

    def resolve_format(self, raw_audio: bytes, declared_mime: Optional[str]) -> AudioFormat:
        """
        Decide the input format label.

        The declared MIME type wins unless it is missing, generic or
        unrecognized, in which case the magic bytes decide.
        """
        declared = format_from_mime(declared_mime)
        if declared is not None:
            return declared
        return detect_format(raw_audio)

    def normalize(self, raw_audio: bytes, declared_mime: Optional[str]) -> NormalizedAudio:
        """
        Normalize recorded audio to mono 16-bit PCM WAV at the target rate.

        Input that is already canonical gets a validation pass only and is
        returned byte-for-byte.

        Args:
            raw_audio: Audio file bytes as recorded
            declared_mime: MIME type reported by the client

        Returns:
            NormalizedAudio describing the canonical WAV bytes

        Raises:
            ConversionError: If the input is empty, cannot be decoded, or decodes to no samples
        """
        if not raw_audio:
            raise ConversionError("Audio data is empty")

        original_format = self.resolve_format(raw_audio, declared_mime)

        if original_format == AudioFormat.WAV:
            header = self._canonical_header(raw_audio)
            if header is not None:
                return self._validate_canonical(raw_audio, header)

        samples = self._decode(raw_audio, original_format)
        return self._render(samples, original_format)

    def _canonical_header(self, raw_audio: bytes) -> Optional[WavHeader]:
        try:
            header = parse_wav_header(raw_audio)
        except (ValueError, struct.error):
            return None

        if (
            header.format_tag == PCM_FORMAT_TAG
            and header.channels == self.CANONICAL_CHANNELS
            and header.sample_rate == self.target_sample_rate
            and header.bits_per_sample == PCM_BITS_PER_SAMPLE
        ):
            return header
        return None

    def _validate_canonical(self, raw_audio: bytes, header: WavHeader) -> NormalizedAudio:
        """Measure already-canonical audio without touching its bytes."""
        frames = header.frame_count
        if frames == 0:
            raise ConversionError(
                "Audio contains no samples",
                original_format=AudioFormat.WAV.value
            )

        end = header.data_offset + frames * header.block_align
        samples = np.frombuffer(raw_audio[header.data_offset:end], dtype="<i2")
        levels = samples.astype(np.float32) / INT16_SCALE
        peak = float(np.max(np.abs(levels)))
        rms = float(np.sqrt(np.mean(np.square(levels))))

        result = NormalizedAudio(
            data=raw_audio,
            sample_rate=header.sample_rate,
            channels=header.channels,
            mime=WAV_MIME,
            duration_ms=header.duration_ms,
            original_format=AudioFormat.WAV.value,
            converted_format=None,
            peak=peak,
            rms=rms,
            gain=1.0,
            short_clip=self._is_short(header.duration_ms),
        )
        self._log_result(result)
        return result

    def _probe(self, path: str, original_format: AudioFormat) -> dict:
        """Read source sample rate, channel count and codec with ffprobe."""
        try:
            info = ffmpeg.probe(path)
        except ffmpeg.Error as e:
            raise ConversionError(
                f"Failed to probe audio: {self._stderr(e)}",
                original_format=original_format.value
            ) from e

        audio_streams = [
            stream for stream in info.get("streams", [])
            if stream.get("codec_type") == "audio"
        ]
        if not audio_streams:
            raise ConversionError(
                "Input contains no audio stream",
                original_format=original_format.value
            )

        stream = audio_streams[0]
        return {
            "codec": stream.get("codec_name"),
            "sample_rate": int(stream.get("sample_rate") or 0),
            "channels": int(stream.get("channels") or 0),
            "duration": float(info.get("format", {}).get("duration") or 0.0),
        }

    def _decode(self, raw_audio: bytes, original_format: AudioFormat) -> np.ndarray:
        """
        Decode to mono float32 samples at the target rate.

        Resampling and downmixing happen in the same ffmpeg render pass.
        The input goes through a temporary file because MP4-family
        containers are not streamable from a pipe.
        """
        suffix = "" if original_format == AudioFormat.UNKNOWN else f".{original_format.value}"
        with tempfile.NamedTemporaryFile(suffix=suffix, prefix="normalize_", delete=False) as temp_input:
            temp_input.write(raw_audio)
            temp_path = temp_input.name

        try:
            source = self._probe(temp_path, original_format)
            log_with_context(
                self.logger,
                "debug",
                "Decoding audio",
                original_format=original_format.value,
                source_codec=source["codec"],
                source_sample_rate=source["sample_rate"],
                source_channels=source["channels"],
            )

            stdout, _ = (
                ffmpeg
                .input(temp_path)
                .output(
                    "pipe:",
                    format="f32le",
                    acodec="pcm_f32le",
                    ac=self.CANONICAL_CHANNELS,
                    ar=self.target_sample_rate
                )
                .run(capture_stdout=True, capture_stderr=True)
            )
        except ffmpeg.Error as e:
            error_message = self._stderr(e)
            self.logger.error(f"FFmpeg conversion error: {error_message}")
            raise ConversionError(
                f"Failed to decode audio: {error_message}",
                original_format=original_format.value
            ) from e
        except OSError as e:
            raise ConversionError(
                f"Failed to run ffmpeg: {e}",
                original_format=original_format.value
            ) from e
        finally:
            if os.path.exists(temp_path):
                os.unlink(temp_path)

        samples = np.frombuffer(stdout, dtype="<f4")
        if samples.size == 0:
            raise ConversionError(
                "Decoded audio contains no samples",
                original_format=original_format.value
            )
        return samples

    def _render(self, samples: np.ndarray, original_format: AudioFormat) -> NormalizedAudio:
        """Apply gain, quantize to int16 and serialize a WAV file."""
        samples = np.nan_to_num(samples.astype(np.float32))
        peak = float(np.max(np.abs(samples)))
        gain = compute_gain(peak, self.noise_floor)

        if gain != 1.0:
            samples = samples * gain
        samples = np.clip(samples, -1.0, 1.0)
        rms = float(np.sqrt(np.mean(np.square(samples))))
        pcm = (samples * INT16_SCALE).astype("<i2")

        duration_ms = int(round(pcm.size * 1000 / self.target_sample_rate))
        result = NormalizedAudio(
            data=encode_wav(pcm, self.target_sample_rate, self.CANONICAL_CHANNELS),
            sample_rate=self.target_sample_rate,
            channels=self.CANONICAL_CHANNELS,
            mime=WAV_MIME,
            duration_ms=duration_ms,
            original_format=original_format.value,
            converted_format=AudioFormat.WAV.value,
            peak=peak,
            rms=rms,
            gain=gain,
            short_clip=self._is_short(duration_ms),
        )
        self._log_result(result)
        return result

    def _is_short(self, duration_ms: int) -> bool:
        return duration_ms < self.min_duration_seconds * 1000

    def _log_result(self, result: NormalizedAudio) -> None:
        if result.short_clip:
            log_with_context(
                self.logger,
                "warning",
                "Audio clip is shorter than the minimum duration",
                duration_ms=result.duration_ms,
                min_duration_seconds=self.min_duration_seconds,
            )
        log_with_context(
            self.logger,
            "info",
            "Audio normalized",
            original_format=result.original_format,
            converted_format=result.converted_format,
            duration_ms=result.duration_ms,
            peak=round(result.peak, 4),
            gain=round(result.gain, 3),
        )

    @staticmethod
    def _stderr(error: ffmpeg.Error) -> str:
        if error.stderr:
            return error.stderr.decode("utf-8", errors="replace").strip()
        return str(error)
