from __future__ import annotations

import math
import struct
import wave
from pathlib import Path

import numpy as np
import pytest

from dentdoc.audio_utils import (
    pcm_level_dbfs,
    read_pcm_window,
    read_wav_info,
    wav_duration_ms,
    write_pcm16_wav,
)
from dentdoc.embedding import EcapaEmbeddingModel, EmbeddingEngine, log_mel_features
from dentdoc.errors import AudioFormatError, ModelUnavailableError


class _DummyTensor:
    def __init__(self, name: str):
        self.name = name


class _DummySession:
    def __init__(self, dim: int = 192):
        self.dim = dim
        self.feeds = []

    def get_inputs(self):
        return [_DummyTensor("feats")]

    def get_outputs(self):
        return [_DummyTensor("embedding")]

    def run(self, output_names, feeds):
        assert output_names == ["embedding"]
        self.feeds.append(feeds["feats"])
        return [np.linspace(-1.0, 1.0, self.dim, dtype=np.float64).reshape(1, 1, self.dim)]


def _noise(seconds: float, seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return (0.1 * rng.standard_normal(int(seconds * 16000))).astype(np.float32)


def test_log_mel_features_shape_and_normalisation():
    features = log_mel_features(_noise(1.0))
    assert features.shape == (101, 80)
    assert features.dtype == np.float32
    assert np.allclose(features.mean(axis=0), 0.0, atol=1e-3)


def test_ecapa_model_feeds_frames_by_mels():
    session = _DummySession()
    model = EcapaEmbeddingModel(session=session)
    vector = model.embed(_noise(2.0))
    assert session.feeds[0].shape == (1, 201, 80)
    assert vector.shape == (192,)
    assert vector.dtype == np.float32
    # Returned as produced; no extra normalisation.
    assert vector[0] == pytest.approx(-1.0)


def test_engine_embeds_a_file_window(tmp_path: Path):
    path = write_pcm16_wav(tmp_path / "a.wav", _noise(3.0))
    session = _DummySession()
    engine = EmbeddingEngine(EcapaEmbeddingModel(session=session))
    engine.embed(path, 1000, 1000)
    assert session.feeds[0].shape == (1, 101, 80)


def test_engine_rejects_too_little_audio():
    engine = EmbeddingEngine(EcapaEmbeddingModel(session=_DummySession()))
    with pytest.raises(AudioFormatError):
        engine.embed_samples(np.zeros(399, dtype=np.float32))


def test_engine_reports_missing_model(tmp_path: Path):
    engine = EmbeddingEngine(model_path=tmp_path / "missing.onnx")
    with pytest.raises(ModelUnavailableError):
        engine.embed_samples(_noise(1.0))


def test_read_pcm_window_reads_only_requested_span(tmp_path: Path):
    ramp = (np.arange(32000) % 1000 / 1000.0).astype(np.float32)
    path = write_pcm16_wav(tmp_path / "ramp.wav", ramp)

    window = read_pcm_window(path, 510, 250)
    assert window.shape == (4000,)
    assert window[0] == pytest.approx(ramp[8160], abs=1e-3)

    tail = read_pcm_window(path, 1900, 500)
    assert tail.shape == (1600,)
    assert read_pcm_window(path, 5000, 100).size == 0


def test_wrong_format_is_rejected(tmp_path: Path):
    path = tmp_path / "stereo.wav"
    with wave.open(str(path), "wb") as handle:
        handle.setnchannels(2)
        handle.setsampwidth(2)
        handle.setframerate(44100)
        handle.writeframes(b"\x00\x00" * 2 * 100)
    with pytest.raises(AudioFormatError):
        read_pcm_window(path, 0, 10)
    junk = tmp_path / "junk.wav"
    junk.write_bytes(b"junk")
    with pytest.raises(AudioFormatError):
        read_wav_info(junk)


def test_duration_falls_back_to_file_size(tmp_path: Path):
    path = tmp_path / "unfinished.wav"
    # Header as written before the encoder finalised it: zero data length.
    header = b"RIFF" + struct.pack("<I", 0) + b"WAVE"
    header += b"fmt " + struct.pack("<IHHIIHH", 16, 1, 1, 16000, 32000, 2, 16)
    header += b"data" + struct.pack("<I", 0)
    path.write_bytes(header + b"\x00\x00" * 16000)
    assert wav_duration_ms(path) == 1000

    finished = write_pcm16_wav(tmp_path / "done.wav", np.zeros(8000, dtype=np.float32))
    assert wav_duration_ms(finished) == 500


def test_level_dbfs():
    assert pcm_level_dbfs(b"") == float("-inf")
    assert pcm_level_dbfs(b"\x00\x00" * 100) == float("-inf")
    full = struct.pack("<hh", 32767, -32767) * 50
    assert pcm_level_dbfs(full) == pytest.approx(0.0, abs=0.01)
    half = struct.pack("<h", 16384) * 100
    assert pcm_level_dbfs(half) == pytest.approx(20 * math.log10(0.5), abs=0.01)
