"""
Unit tests for the AudioNormalizer and its WAV helpers.

ffmpeg-dependent tests are skipped when the ffmpeg binary is not installed.
"""

import shutil
import struct
from unittest.mock import patch

import ffmpeg
import numpy as np
import pytest

from app.audio_normalizer import (
    AudioFormat,
    AudioNormalizer,
    compute_gain,
    detect_format,
    encode_wav,
    format_from_mime,
    parse_wav_header,
)
from app.exceptions import ConversionError

from tests.conftest import make_wav


requires_ffmpeg = pytest.mark.skipif(shutil.which("ffmpeg") is None, reason="ffmpeg not installed")


class TestDetectFormat:
    """Test magic-byte format detection."""

    @pytest.mark.parametrize("header,expected", [
        (b"RIFF\x24\x00\x00\x00WAVEfmt ", AudioFormat.WAV),
        (b"ID3\x04\x00\x00\x00\x00\x00\x00\x00\x00", AudioFormat.MP3),
        (b"\xff\xfb\x90\x64" + b"\x00" * 8, AudioFormat.MP3),
        (b"OggS\x00\x02" + b"\x00" * 6, AudioFormat.OGG),
        (b"\x1a\x45\xdf\xa3\x9f\x42\x86\x81\x01\x42\xf7\x81", AudioFormat.WEBM),
        (b"fLaC\x00\x00\x00\x22" + b"\x00" * 4, AudioFormat.FLAC),
        (b"\x00\x00\x00\x20ftypM4A ", AudioFormat.M4A),
        (b"hello world!", AudioFormat.UNKNOWN),
        (b"", AudioFormat.UNKNOWN),
    ])
    def test_detects_container(self, header, expected):
        assert detect_format(header) == expected


class TestFormatFromMime:
    """Test MIME type mapping."""

    def test_strips_codec_parameters(self):
        """Test that browser MIME types with codec parameters are recognized."""
        assert format_from_mime("audio/webm;codecs=opus") == AudioFormat.WEBM
        assert format_from_mime("Audio/OGG; codecs=opus") == AudioFormat.OGG

    def test_unknown_and_missing(self):
        assert format_from_mime("application/octet-stream") is None
        assert format_from_mime(None) is None


class TestWavHelpers:
    """Test WAV encoding and header parsing."""

    def test_encode_wav_writes_44_byte_header(self):
        data = encode_wav(np.zeros(100, dtype="<i2"), 16000)

        assert len(data) == 44 + 200
        assert data[:4] == b"RIFF"
        assert struct.unpack("<I", data[4:8])[0] == 36 + 200
        header = parse_wav_header(data)
        assert header.channels == 1
        assert header.sample_rate == 16000
        assert header.bits_per_sample == 16
        assert header.data_offset == 44
        assert header.frame_count == 100

    def test_parse_skips_extra_chunks(self):
        """Test that LIST and other chunks before the data chunk are skipped."""
        plain = encode_wav(np.ones(16000, dtype="<i2"), 16000)
        list_chunk = b"LIST" + struct.pack("<I", 5) + b"INFOx" + b"\x00"
        with_list = plain[:36] + list_chunk + plain[36:]

        header = parse_wav_header(with_list)

        assert header.frame_count == 16000
        assert header.duration_ms == 1000
        assert header.data_offset == 44 + len(list_chunk)

    def test_parse_rejects_non_wav(self):
        with pytest.raises(ValueError, match="Not a RIFF/WAVE file"):
            parse_wav_header(b"OggS" + b"\x00" * 40)

    def test_parse_rejects_missing_data_chunk(self):
        with pytest.raises(ValueError, match="no data chunk"):
            parse_wav_header(encode_wav(np.zeros(10, dtype="<i2"), 16000)[:36])


class TestComputeGain:
    """Test loudness-dependent gain tiers."""

    def test_silence_is_not_amplified(self):
        assert compute_gain(0.0, 0.001) == 1.0
        assert compute_gain(0.0005, 0.001) == 1.0

    def test_quiet_audio_targets_095(self):
        assert compute_gain(0.01, 0.001) == pytest.approx(95.0)

    def test_moderate_audio_targets_09(self):
        assert compute_gain(0.1, 0.001) == pytest.approx(9.0)

    def test_loud_audio_targets_085(self):
        assert compute_gain(0.5, 0.001) == pytest.approx(1.7)

    def test_small_gains_are_skipped(self):
        """Test that gains of 1.1 or less are not applied."""
        assert compute_gain(0.8, 0.001) == 1.0
        assert compute_gain(1.0, 0.001) == 1.0


class TestAudioNormalizer:
    """Test AudioNormalizer normalization paths."""

    @pytest.fixture
    def normalizer(self):
        return AudioNormalizer(target_sample_rate=16000, noise_floor=0.001, min_duration_seconds=1.0)

    def test_canonical_wav_passes_through_unchanged(self, normalizer):
        """Test that already-canonical audio is returned byte-for-byte."""
        data = make_wav(duration_s=2.0, amplitude=0.5)

        result = normalizer.normalize(data, "audio/wav")

        assert result.data == data
        assert result.converted_format is None
        assert result.original_format == "wav"
        assert result.sample_rate == 16000
        assert result.channels == 1
        assert result.duration_ms == 2000
        assert result.peak == pytest.approx(0.5, abs=0.01)
        assert result.rms == pytest.approx(0.5 / np.sqrt(2), abs=0.01)
        assert result.gain == 1.0
        assert result.short_clip is False

    def test_generic_mime_falls_back_to_magic_bytes(self, normalizer):
        data = make_wav(duration_s=1.0)

        result = normalizer.normalize(data, "application/octet-stream")

        assert result.original_format == "wav"
        assert result.data == data

    def test_short_clip_is_flagged(self, normalizer):
        result = normalizer.normalize(make_wav(duration_s=0.4), "audio/wav")

        assert result.short_clip is True
        assert result.duration_ms == 400

    def test_empty_input_raises(self, normalizer):
        with pytest.raises(ConversionError, match="empty"):
            normalizer.normalize(b"", "audio/webm")

    def test_wav_without_samples_raises(self, normalizer):
        empty_wav = encode_wav(np.zeros(0, dtype="<i2"), 16000)

        with pytest.raises(ConversionError) as exc_info:
            normalizer.normalize(empty_wav, "audio/wav")
        assert exc_info.value.original_format == "wav"

    def test_decoded_audio_is_gained_and_reencoded(self, normalizer):
        """Test that decoded samples get the tiered gain and become canonical WAV."""
        samples = (0.1 * np.sin(np.linspace(0, 200 * np.pi, 32000))).astype(np.float32)

        with patch.object(AudioNormalizer, "_decode", return_value=samples) as decode:
            result = normalizer.normalize(b"\x1a\x45\xdf\xa3" + b"\x00" * 100, "audio/webm;codecs=opus")

        decode.assert_called_once()
        assert decode.call_args[0][1] == AudioFormat.WEBM
        assert result.original_format == "webm"
        assert result.converted_format == "wav"
        assert result.gain == pytest.approx(9.0, rel=0.01)
        assert result.duration_ms == 2000

        header = parse_wav_header(result.data)
        assert header.channels == 1
        assert header.sample_rate == 16000
        assert header.bits_per_sample == 16
        pcm = np.frombuffer(result.data[44:], dtype="<i2")
        assert np.max(np.abs(pcm)) / 32767 == pytest.approx(0.9, abs=0.01)

    def test_loud_samples_are_clipped_not_wrapped(self, normalizer):
        samples = np.array([1.5, -1.5, 0.2] * 8000, dtype=np.float32)

        with patch.object(AudioNormalizer, "_decode", return_value=samples):
            result = normalizer.normalize(b"ID3" + b"\x00" * 50, "audio/mpeg")

        pcm = np.frombuffer(result.data[44:], dtype="<i2")
        assert pcm.max() == 32767
        assert pcm.min() == -32767

    def test_probe_failure_raises_conversion_error(self, normalizer):
        """Test that ffmpeg errors are mapped to ConversionError with the input format."""
        error = ffmpeg.Error("ffprobe", b"", b"Invalid data found when processing input")

        with patch("app.audio_normalizer.ffmpeg.probe", side_effect=error):
            with pytest.raises(ConversionError, match="Invalid data found") as exc_info:
                normalizer.normalize(b"OggS" + b"\x00" * 100, "audio/ogg")

        assert exc_info.value.original_format == "ogg"

    @requires_ffmpeg
    def test_resamples_and_downmixes_with_ffmpeg(self, normalizer):
        """Test that a 44.1 kHz stereo WAV becomes 16 kHz mono."""
        t = np.arange(44100) / 44100
        tone = (0.5 * np.sin(2 * np.pi * 440 * t) * 32767).astype("<i2")
        stereo = np.column_stack([tone, tone]).reshape(-1)
        data = encode_wav(stereo, 44100, channels=2)

        result = normalizer.normalize(data, "audio/wav")

        assert result.converted_format == "wav"
        assert result.sample_rate == 16000
        assert result.channels == 1
        assert result.duration_ms == pytest.approx(1000, abs=20)
        header = parse_wav_header(result.data)
        assert header.channels == 1
        assert header.sample_rate == 16000

    @requires_ffmpeg
    def test_garbage_input_raises_conversion_error(self, normalizer):
        with pytest.raises(ConversionError):
            normalizer.normalize(b"\x1a\x45\xdf\xa3 definitely not webm", "audio/webm")
