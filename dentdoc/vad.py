"""Streaming voice activity detection in an isolated worker.

The capture loop hands 100 ms PCM batches to :class:`VadWorker`, which copies
them onto a bounded queue and returns immediately. A worker process (or
thread) owns the Silero ONNX model and a :class:`SpeechDetector`; it sends
back ``speech-start``/``speech-end`` events stamped with sample-clock offsets
relative to the session start. A dispatcher thread hands those events to the
caller's callback.
"""

from __future__ import annotations

import logging
import multiprocessing as mp
import queue
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Protocol

import numpy as np

from .onnx_models import create_session, resolve_model_path

_log = logging.getLogger("dentdoc.vad")

SILERO_MODEL_FILENAMES = ("silero_vad.onnx",)


def _resolve_state_shape(shape: tuple[Any, ...] | None) -> tuple[int, ...]:
    default = (2, 1, 128)
    if not shape:
        return default
    resolved: list[int] = []
    for idx, dim in enumerate(shape):
        if isinstance(dim, int) and dim > 0:
            resolved.append(int(dim))
        else:
            resolved.append(default[idx] if idx < len(default) else 1)
    if len(resolved) < len(default):
        resolved.extend(default[len(resolved):])
    return tuple(resolved[: len(default)])


class VadModel(Protocol):
    def process(self, samples: np.ndarray) -> list[float]: ...

    def reset(self) -> None: ...


class SileroVadModel:
    """Silero VAD run chunk by chunk with carried context and recurrent state."""

    CHUNK_SAMPLES = 512
    CONTEXT_SAMPLES = 64

    def __init__(
        self,
        model_path: str | Path | None = None,
        *,
        session: Any = None,
        sample_rate: int = 16000,
    ) -> None:
        if sample_rate != 16000:
            raise ValueError("Silero VAD is run at 16 kHz only")
        self.sample_rate = sample_rate
        if session is None:
            session = create_session(resolve_model_path(model_path, SILERO_MODEL_FILENAMES))
        self.session = session
        self._input_name: str | None = None
        self._state_name: str | None = None
        self._sr_name: str | None = None
        self._state_shape: tuple[int, ...] = (2, 1, 128)
        self._state_output_index: int | None = None
        self._bind_io()
        self.reset()

    def _bind_io(self) -> None:
        inputs = self.session.get_inputs()
        outputs = self.session.get_outputs()
        for inp in inputs:
            lower = inp.name.lower()
            if self._input_name is None and "input" in lower:
                self._input_name = inp.name
            elif self._state_name is None and "state" in lower:
                self._state_name = inp.name
                self._state_shape = _resolve_state_shape(tuple(getattr(inp, "shape", ()) or ()))
            elif self._sr_name is None and (lower == "sr" or "sample_rate" in lower):
                self._sr_name = inp.name
        if self._input_name is None and inputs:
            self._input_name = inputs[0].name
        for idx, out in enumerate(outputs):
            if idx > 0 and "state" in out.name.lower():
                self._state_output_index = idx
                break
        if self._state_output_index is None and len(outputs) > 1:
            self._state_output_index = 1

    def reset(self) -> None:
        self._state = np.zeros(self._state_shape, dtype=np.float32)
        self._context = np.zeros((1, self.CONTEXT_SAMPLES), dtype=np.float32)
        self._pending = np.zeros(0, dtype=np.float32)

    @staticmethod
    def _to_probability(raw: Any) -> float:
        values = np.squeeze(np.asarray(raw, dtype=np.float32))
        if values.ndim >= 1 and values.shape[-1] == 2:
            pair = values.reshape(-1, 2)[-1]
            exps = np.exp(pair - np.max(pair))
            return float(exps[1] / (np.sum(exps) + 1e-9))
        # Silero exports already emit a sigmoid probability.
        return float(np.clip(values.reshape(-1)[-1], 0.0, 1.0))

    def process(self, samples: np.ndarray) -> list[float]:
        """Feed float32 samples; return one probability per complete chunk.

        Samples that do not fill a chunk are held until the next call.
        """

        audio = np.asarray(samples, dtype=np.float32).reshape(-1)
        if self._pending.size:
            audio = np.concatenate([self._pending, audio])
        usable = (audio.size // self.CHUNK_SAMPLES) * self.CHUNK_SAMPLES
        self._pending = audio[usable:].copy()
        probabilities: list[float] = []
        sr_array = np.array(self.sample_rate, dtype=np.int64)
        for offset in range(0, usable, self.CHUNK_SAMPLES):
            chunk = audio[offset: offset + self.CHUNK_SAMPLES].reshape(1, -1)
            window = np.concatenate([self._context, chunk], axis=1).astype(np.float32, copy=False)
            feeds: dict[str, np.ndarray] = {self._input_name: window}
            if self._state_name:
                feeds[self._state_name] = self._state
            if self._sr_name:
                feeds[self._sr_name] = sr_array
            outputs = self.session.run(None, feeds)
            probabilities.append(self._to_probability(outputs[0]))
            if self._state_output_index is not None and self._state_output_index < len(outputs):
                self._state = np.asarray(
                    outputs[self._state_output_index], dtype=np.float32
                ).reshape(self._state_shape)
            self._context = window[:, -self.CONTEXT_SAMPLES:]
        return probabilities


@dataclass(frozen=True)
class VadSettings:
    sample_rate: int = 16000
    frame_ms: int = 20
    batch_frames: int = 5
    threshold: float = 0.4
    speech_start_ms: int = 100
    speech_stop_ms: int = 1500
    max_pending_batches: int = 64

    @classmethod
    def from_config(
        cls,
        audio: Mapping[str, Any] | None,
        vad: Mapping[str, Any] | None,
    ) -> "VadSettings":
        audio = audio or {}
        vad = vad or {}
        defaults = cls()
        return cls(
            sample_rate=int(audio.get("sample_rate", defaults.sample_rate)),
            frame_ms=int(audio.get("frame_ms", defaults.frame_ms)),
            batch_frames=int(audio.get("batch_frames", defaults.batch_frames)),
            threshold=float(vad.get("threshold", defaults.threshold)),
            speech_start_ms=int(vad.get("speech_start_ms", defaults.speech_start_ms)),
            speech_stop_ms=int(vad.get("speech_stop_ms", defaults.speech_stop_ms)),
            max_pending_batches=int(vad.get("max_pending_batches", defaults.max_pending_batches)),
        )

    @property
    def batch_samples(self) -> int:
        return self.sample_rate * self.frame_ms * self.batch_frames // 1000

    @property
    def batch_bytes(self) -> int:
        return self.batch_samples * 2


@dataclass(frozen=True)
class VadEvent:
    type: str
    offset_ms: int = 0
    message: str = ""
    probability: float | None = None


def pcm16_to_float(pcm: bytes) -> np.ndarray:
    return np.frombuffer(pcm, dtype="<i2").astype(np.float32) / 32768.0


class SpeechDetector:
    """Per-batch speech/silence state machine on top of a VAD model."""

    def __init__(self, model: VadModel, settings: VadSettings | None = None) -> None:
        self.model = model
        self.settings = settings or VadSettings()
        self.in_speech = False
        self._speech_run_ms = 0.0
        self._silence_run_ms = 0.0
        self._last_is_speech = False

    def reset(self) -> None:
        self.model.reset()
        self.in_speech = False
        self._speech_run_ms = 0.0
        self._silence_run_ms = 0.0
        self._last_is_speech = False

    def process(self, samples: np.ndarray, offset_ms: float) -> list[VadEvent]:
        """Classify one batch starting at ``offset_ms`` and return any transitions."""

        samples = np.asarray(samples, dtype=np.float32).reshape(-1)
        if samples.size == 0:
            return []
        duration_ms = samples.size * 1000.0 / self.settings.sample_rate
        end_ms = int(round(offset_ms + duration_ms))
        probabilities = self.model.process(samples)
        if probabilities:
            peak = max(probabilities)
            is_speech = peak >= self.settings.threshold
        else:
            peak = None
            is_speech = self._last_is_speech
        self._last_is_speech = is_speech

        if is_speech:
            self._speech_run_ms += duration_ms
            self._silence_run_ms = 0.0
        else:
            self._silence_run_ms += duration_ms
            self._speech_run_ms = 0.0

        events: list[VadEvent] = []
        if not self.in_speech and self._speech_run_ms >= self.settings.speech_start_ms:
            self.in_speech = True
            events.append(VadEvent("speech-start", end_ms, probability=peak))
        elif self.in_speech and self._silence_run_ms >= self.settings.speech_stop_ms:
            self.in_speech = False
            events.append(VadEvent("speech-end", end_ms, probability=peak))
        return events

    def process_pcm(self, pcm: bytes, offset_ms: float) -> list[VadEvent]:
        return self.process(pcm16_to_float(pcm), offset_ms)

    def finish(self, offset_ms: float) -> list[VadEvent]:
        """Close an open speech region at ``offset_ms``."""
        if not self.in_speech:
            return []
        self.in_speech = False
        self._speech_run_ms = 0.0
        return [VadEvent("speech-end", int(round(offset_ms)))]


def _default_model_factory(model_path: str | None, sample_rate: int) -> VadModel:
    return SileroVadModel(model_path or None, sample_rate=sample_rate)


def _vad_worker_main(
    settings: VadSettings,
    model_path: str | None,
    model_factory: Optional[Callable[[str | None, int], VadModel]],
    input_queue: Any,
    output_queue: Any,
) -> None:
    """Run the detector until a ``None`` sentinel arrives."""
    factory = model_factory or _default_model_factory
    detector: SpeechDetector | None = None
    while True:
        item = input_queue.get()
        if item is None:
            break
        kind = item[0]
        if kind == "init":
            if detector is not None:
                continue
            try:
                detector = SpeechDetector(factory(model_path, settings.sample_rate), settings)
            except Exception as exc:
                output_queue.put(VadEvent("error", message=f"VAD init failed: {exc!r}"))
                continue
            output_queue.put(VadEvent("initialized"))
            continue
        if detector is None:
            continue
        try:
            if kind == "audio":
                for event in detector.process_pcm(item[2], item[1]):
                    output_queue.put(event)
            elif kind == "reset":
                detector.reset()
                output_queue.put(VadEvent("status", message="reset"))
            elif kind == "stop":
                for event in detector.finish(item[1]):
                    output_queue.put(event)
                output_queue.put(VadEvent("status", offset_ms=int(item[1]), message="stopped"))
        except Exception as exc:  # keep the worker alive for the next batch
            output_queue.put(VadEvent("error", message=repr(exc)))
    output_queue.put(None)


class VadWorker:
    """Owns the VAD execution context and the event dispatcher.

    ``isolation`` selects ``"process"`` (a ``multiprocessing.Process``) or
    ``"thread"``. A custom ``model_factory`` must be picklable when running
    in a process.
    """

    def __init__(
        self,
        settings: VadSettings | None = None,
        *,
        on_event: Callable[[VadEvent], None] | None = None,
        isolation: str = "process",
        model_path: str | None = None,
        model_factory: Optional[Callable[[str | None, int], VadModel]] = None,
        stop_timeout: float = 5.0,
    ) -> None:
        if isolation not in {"process", "thread"}:
            raise ValueError(f"unknown VAD isolation {isolation!r}")
        self.settings = settings or VadSettings()
        self.isolation = isolation
        self.stop_timeout = float(stop_timeout)
        self._on_event = on_event
        self._model_path = model_path
        self._model_factory = model_factory
        self._input: Any = None
        self._output: Any = None
        self._worker: Any = None
        self._dispatcher: threading.Thread | None = None
        self._detached: threading.Event | None = None
        self._lock = threading.Lock()
        self._init_requested = False
        self.initialized = threading.Event()
        self.dropped_batches = 0
        self.last_error: str | None = None

    @property
    def running(self) -> bool:
        return self._worker is not None

    def start(self) -> None:
        with self._lock:
            if self._worker is not None:
                return
            maxsize = max(1, self.settings.max_pending_batches)
            if self.isolation == "process":
                self._input = mp.Queue(maxsize=maxsize)
                self._output = mp.Queue()
                worker_cls: Any = mp.Process
            else:
                self._input = queue.Queue(maxsize=maxsize)
                self._output = queue.Queue()
                worker_cls = threading.Thread
            self._worker = worker_cls(
                target=_vad_worker_main,
                args=(
                    self.settings,
                    self._model_path,
                    self._model_factory,
                    self._input,
                    self._output,
                ),
                daemon=True,
                name="dentdoc-vad",
            )
            self._worker.start()
            self._detached = threading.Event()
            self._dispatcher = threading.Thread(
                target=self._dispatch,
                args=(self._output, self._detached),
                daemon=True,
                name="dentdoc-vad-events",
            )
            self._dispatcher.start()
            self._init_requested = False
            self.initialized.clear()

    def init(self) -> None:
        """Ask the worker to load its model. Repeated calls are no-ops."""
        self.start()
        with self._lock:
            if self._init_requested:
                return
            self._init_requested = True
        self._input.put(("init",))

    def submit(self, pcm: bytes, offset_ms: float) -> bool:
        """Queue a copy of ``pcm``; drop it if the worker is behind."""
        if self._input is None or not pcm:
            return False
        try:
            self._input.put_nowait(("audio", float(offset_ms), bytes(pcm)))
            return True
        except queue.Full:
            self.dropped_batches += 1
            if self.dropped_batches == 1 or self.dropped_batches % 50 == 0:
                _log.warning("VAD worker behind; dropped %d batch(es)", self.dropped_batches)
            return False

    def reset(self) -> None:
        if self._input is not None:
            self._put_control(("reset",), self.stop_timeout)

    def stop(self, final_offset_ms: float, *, timeout: float | None = None) -> bool:
        """Close any open region at ``final_offset_ms`` and shut the worker down.

        Events produced by the shutdown are delivered before this returns.
        Returns False when the worker could not be shut down in time; it is
        then detached and no further events are delivered, so the caller has
        to close any open region itself.
        """

        timeout = self.stop_timeout if timeout is None else timeout
        with self._lock:
            worker = self._worker
            dispatcher = self._dispatcher
            detached = self._detached
            self._worker = None
            self._dispatcher = None
            self._detached = None
        if worker is None:
            return True
        clean = self._put_control(("stop", float(final_offset_ms)), timeout)
        clean = self._put_control(None, timeout) and clean
        worker.join(timeout)
        if dispatcher is not None:
            dispatcher.join(timeout)
        if worker.is_alive() or (dispatcher is not None and dispatcher.is_alive()):
            clean = False
            _log.error("VAD worker did not exit within %.1fs; detaching it", timeout)
            if detached is not None:
                detached.set()
            if isinstance(worker, mp.Process):
                worker.terminate()
                worker.join(1.0)
        self._input = None
        self._output = None
        return clean

    def _put_control(self, message: Any, timeout: float) -> bool:
        """Queue a control message, discarding queued audio if the worker is behind."""
        try:
            self._input.put(message, timeout=timeout)
            return True
        except queue.Full:
            pass
        kept: list[Any] = []
        discarded = 0
        while True:
            try:
                item = self._input.get_nowait()
            except queue.Empty:
                break
            if item is not None and item[0] == "audio":
                discarded += 1
            else:
                kept.append(item)
        self.dropped_batches += discarded
        _log.warning("VAD worker backlogged at shutdown; discarded %d batch(es)", discarded)
        try:
            for item in kept + [message]:
                self._input.put_nowait(item)
        except queue.Full:
            return False
        return True

    def _dispatch(self, output: Any, detached: threading.Event) -> None:
        while True:
            event = output.get()
            if event is None:
                break
            if detached.is_set():
                continue
            if event.type == "initialized":
                self.initialized.set()
                _log.info("VAD worker initialized (%s)", self.isolation)
            elif event.type == "error":
                self.last_error = event.message
                _log.error("VAD worker error: %s", event.message)
            else:
                _log.debug("VAD event %s at %dms", event.type, event.offset_ms)
            if self._on_event is None:
                continue
            try:
                self._on_event(event)
            except Exception:
                _log.exception("VAD event callback failed for %s", event.type)


__all__ = [
    "SileroVadModel",
    "SpeechDetector",
    "VadEvent",
    "VadModel",
    "VadSettings",
    "VadWorker",
    "pcm16_to_float",
]
