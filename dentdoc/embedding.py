"""Speaker embeddings from windows of a 16 kHz mono recording (ECAPA-TDNN via ONNX Runtime)."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any

import librosa
import numpy as np

from .audio_utils import EXPECTED_SAMPLE_RATE, read_pcm_window
from .errors import AudioFormatError, ModelUnavailableError
from .onnx_models import create_session, resolve_model_path

logger = logging.getLogger("dentdoc.embedding")

ECAPA_MODEL_FILENAMES = ("ecapa_tdnn.onnx", "ecapa_onnx/ecapa_tdnn.onnx")
N_FFT = 400
HOP_LENGTH = 160
N_MELS = 80


def log_mel_features(samples: np.ndarray, sample_rate: int = EXPECTED_SAMPLE_RATE) -> np.ndarray:
    """Return CMVN-normalised log-mel frames shaped ``(frames, 80)``."""
    mel = librosa.feature.melspectrogram(
        y=np.asarray(samples, dtype=np.float32),
        sr=sample_rate,
        n_fft=N_FFT,
        hop_length=HOP_LENGTH,
        n_mels=N_MELS,
        fmin=20,
        fmax=sample_rate / 2,
    )
    mel = librosa.power_to_db(mel, ref=1.0).T
    mean = mel.mean(axis=0, keepdims=True)
    std = mel.std(axis=0, keepdims=True) + 1e-8
    return ((mel - mean) / std).astype(np.float32)


class EcapaEmbeddingModel:
    def __init__(self, model_path: str | Path | None = None, *, session: Any = None) -> None:
        if session is None:
            session = create_session(resolve_model_path(model_path, ECAPA_MODEL_FILENAMES))
        self.session = session
        self.input_name = session.get_inputs()[0].name
        self.output_name = session.get_outputs()[0].name

    def embed(self, samples: np.ndarray, sample_rate: int = EXPECTED_SAMPLE_RATE) -> np.ndarray:
        features = log_mel_features(samples, sample_rate)
        batch = np.ascontiguousarray(features[None, :, :])
        out = self.session.run([self.output_name], {self.input_name: batch})[0]
        return np.asarray(out, dtype=np.float32).reshape(-1)


class EmbeddingEngine:
    """Reads audio windows and runs them through the embedding model.

    The model is loaded on first use so constructing an engine is cheap.
    Vectors are returned exactly as the model produced them.
    """

    def __init__(
        self,
        model: EcapaEmbeddingModel | None = None,
        *,
        model_path: str | Path | None = None,
        sample_rate: int = EXPECTED_SAMPLE_RATE,
    ) -> None:
        self._model = model
        self._model_path = model_path
        self.sample_rate = sample_rate
        self._lock = threading.Lock()

    @property
    def model(self) -> EcapaEmbeddingModel:
        with self._lock:
            if self._model is None:
                try:
                    self._model = EcapaEmbeddingModel(self._model_path)
                except ModelUnavailableError:
                    logger.error("speaker embedding model unavailable")
                    raise
            return self._model

    def embed_samples(self, samples: np.ndarray) -> np.ndarray:
        audio = np.asarray(samples, dtype=np.float32).reshape(-1)
        if audio.size < N_FFT:
            raise AudioFormatError(
                f"need at least {N_FFT} samples to compute an embedding, got {audio.size}"
            )
        vector = self.model.embed(audio, self.sample_rate)
        logger.debug("embedded %.2fs of audio -> dim %d", audio.size / self.sample_rate, vector.size)
        return vector

    def embed(self, audio_path: str | Path, start_ms: float, duration_ms: float) -> np.ndarray:
        samples = read_pcm_window(audio_path, start_ms, duration_ms)
        return self.embed_samples(samples)


__all__ = ["EcapaEmbeddingModel", "EmbeddingEngine", "log_mel_features"]
