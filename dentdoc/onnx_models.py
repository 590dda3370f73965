"""Locate ONNX model files and open CPU inference sessions."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Sequence

import onnxruntime as ort

from .errors import ModelUnavailableError

_log = logging.getLogger("dentdoc.onnx")


def model_roots() -> list[Path]:
    project_root = Path(__file__).resolve().parent.parent
    return [
        project_root / "models",
        Path.cwd() / "models",
        Path.home() / ".cache" / "dentdoc" / "models",
    ]


def resolve_model_path(configured: str | Path | None, filenames: Sequence[str]) -> Path:
    if configured:
        path = Path(configured).expanduser()
        if not path.exists():
            raise ModelUnavailableError(f"ONNX model not found at {path}")
        return path.resolve()

    for root in model_roots():
        for name in filenames:
            candidate = root / name
            if candidate.exists():
                return candidate.resolve()

    raise ModelUnavailableError(
        f"unable to locate {' or '.join(filenames)}; place it under a models/ directory "
        "or set the model path in config"
    )


def create_session(model_path: Path, *, threads: int = 1) -> ort.InferenceSession:
    sess_options = ort.SessionOptions()
    if threads:
        sess_options.intra_op_num_threads = int(threads)
    try:
        session = ort.InferenceSession(
            str(model_path), sess_options=sess_options, providers=["CPUExecutionProvider"]
        )
    except Exception as exc:  # onnxruntime raises its own Fail/InvalidGraph types
        raise ModelUnavailableError(f"failed to load {model_path}: {exc}") from exc
    _log.info("loaded ONNX model %s", model_path)
    return session


__all__ = ["create_session", "model_roots", "resolve_model_path"]
