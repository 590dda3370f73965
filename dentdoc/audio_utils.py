"""Audio helper utilities."""
from __future__ import annotations

import math
import os
import wave
from dataclasses import dataclass
from pathlib import Path

import numpy as np

from .errors import AudioFormatError

EXPECTED_SAMPLE_RATE = 16000
EXPECTED_SAMPLE_WIDTH = 2
WAV_HEADER_BYTES = 44


@dataclass(frozen=True)
class WavInfo:
    sample_rate: int
    channels: int
    sample_width: int
    frames: int

    @property
    def duration_ms(self) -> int:
        if self.sample_rate <= 0:
            return 0
        return int(self.frames * 1000 // self.sample_rate)


def read_wav_info(path: str | Path) -> WavInfo:
    try:
        with wave.open(str(path), "rb") as handle:
            return WavInfo(
                sample_rate=handle.getframerate(),
                channels=handle.getnchannels(),
                sample_width=handle.getsampwidth(),
                frames=handle.getnframes(),
            )
    except (wave.Error, EOFError) as exc:
        raise AudioFormatError(f"{path} is not a readable PCM WAV file: {exc}") from exc


def wav_duration_ms(path: str | Path, *, sample_rate: int = EXPECTED_SAMPLE_RATE) -> int:
    """Duration from the WAV header, or from the file size if the header was never finalized."""
    try:
        info = read_wav_info(path)
    except AudioFormatError:
        info = None
    if info is not None and info.frames > 0:
        return info.duration_ms
    size = os.path.getsize(path)
    payload = max(0, size - WAV_HEADER_BYTES)
    return int(payload // EXPECTED_SAMPLE_WIDTH * 1000 // sample_rate)


def validate_pcm16_mono(info: WavInfo, path: str | Path) -> None:
    if info.sample_rate != EXPECTED_SAMPLE_RATE:
        raise AudioFormatError(
            f"{path}: expected {EXPECTED_SAMPLE_RATE} Hz, got {info.sample_rate} Hz"
        )
    if info.sample_width != EXPECTED_SAMPLE_WIDTH:
        raise AudioFormatError(
            f"{path}: expected 16-bit samples, got {info.sample_width * 8}-bit"
        )
    if info.channels != 1:
        raise AudioFormatError(f"{path}: expected mono, got {info.channels} channels")


def read_pcm_window(path: str | Path, start_ms: float, duration_ms: float) -> np.ndarray:
    """Return float32 samples for ``[start_ms, start_ms + duration_ms)``.

    Only the frames in the window are read; the frame offset is derived from
    the header so the rest of the file is never loaded.
    """

    with wave.open(str(path), "rb") as handle:
        info = WavInfo(
            sample_rate=handle.getframerate(),
            channels=handle.getnchannels(),
            sample_width=handle.getsampwidth(),
            frames=handle.getnframes(),
        )
        validate_pcm16_mono(info, path)
        start_frame = max(0, int(start_ms * info.sample_rate // 1000))
        if start_frame >= info.frames:
            return np.zeros(0, dtype=np.float32)
        frame_count = max(0, int(duration_ms * info.sample_rate // 1000))
        frame_count = min(frame_count, info.frames - start_frame)
        handle.setpos(start_frame)
        raw = handle.readframes(frame_count)
    return np.frombuffer(raw, dtype="<i2").astype(np.float32) / 32768.0


def pcm_level_dbfs(pcm: bytes) -> float:
    """RMS level of little-endian 16-bit PCM in dBFS (-inf for silence)."""
    usable = len(pcm) - (len(pcm) % 2)
    if usable <= 0:
        return float("-inf")
    samples = np.frombuffer(pcm[:usable], dtype="<i2").astype(np.float64)
    rms = math.sqrt(float(np.mean(samples * samples)))
    if rms <= 0.0:
        return float("-inf")
    return 20.0 * math.log10(rms / 32768.0)


def write_pcm16_wav(path: str | Path, samples: np.ndarray, sample_rate: int = EXPECTED_SAMPLE_RATE) -> Path:
    """Write float samples in [-1, 1] as a 16-bit mono WAV."""
    dest = Path(path)
    dest.parent.mkdir(parents=True, exist_ok=True)
    clipped = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    pcm = (clipped * 32767.0).astype("<i2").tobytes()
    with wave.open(str(dest), "wb") as handle:
        handle.setnchannels(1)
        handle.setsampwidth(EXPECTED_SAMPLE_WIDTH)
        handle.setframerate(sample_rate)
        handle.writeframes(pcm)
    return dest
