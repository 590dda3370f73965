#!/usr/bin/env python3
"""
RecordingProcess: owns the ffmpeg capture process for one session at a time.

- start() spawns ffmpeg writing 16 kHz mono PCM WAV and tees raw PCM to stdout
- the session counts as started on ffmpeg's first progress line, or after a
  short timeout when ffmpeg stays quiet (some backends never report progress)
- stop() asks ffmpeg to quit via stdin, then escalates to SIGTERM and SIGKILL
- raw PCM read from stdout is batched and handed to an optional consumer
  (VAD, level meter) without ever waiting on it

State machine: IDLE -> STARTING -> RECORDING -> STOPPING -> IDLE
"""

from __future__ import annotations

import enum
import logging
import os
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Deque, List, Optional, Sequence

from .audio_devices import CaptureDevice, resolve_device
from .config import get_cfg
from .errors import (
    EmptyRecordingError,
    EncoderStartFailedError,
    NoActiveRecordingError,
    RecordingAlreadyActiveError,
)
from .ffmpeg_io import capture_args

RECORDING_PREFIX = "recording-"
RECORDING_SUFFIXES = (".wav", ".webm")
_PROGRESS_MARKERS = (b"size=", b"time=")


class RecordingState(enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    RECORDING = "recording"
    STOPPING = "stopping"


@dataclass(frozen=True)
class CaptureSession:
    path: Path
    start_timestamp: float
    backend: str
    device_identifier: str


PcmConsumer = Callable[[bytes, float], None]


class RecordingProcess:
    def __init__(
        self,
        recordings_dir: str | Path | None = None,
        *,
        sample_rate: int | None = None,
        batch_bytes: int | None = None,
        start_timeout: float | None = None,
        quit_timeout: float | None = None,
        terminate_timeout: float | None = None,
        pcm_consumer: PcmConsumer | None = None,
        state_listener: Callable[[RecordingState], None] | None = None,
        device_resolver: Callable[[Optional[str]], CaptureDevice] = resolve_device,
    ) -> None:
        cfg = get_cfg()
        audio_cfg = cfg.get("audio", {})
        rec_cfg = cfg.get("recorder", {})
        self.recordings_dir = Path(recordings_dir or cfg["paths"]["recordings_dir"])
        self.sample_rate = int(sample_rate or audio_cfg.get("sample_rate", 16000))
        if batch_bytes is None:
            frame_ms = int(audio_cfg.get("frame_ms", 20))
            batch_frames = int(audio_cfg.get("batch_frames", 5))
            batch_bytes = self.sample_rate * frame_ms * batch_frames // 1000 * 2
        self.batch_bytes = max(2, int(batch_bytes) - int(batch_bytes) % 2)
        self.start_timeout = float(
            start_timeout if start_timeout is not None else rec_cfg.get("start_timeout_sec", 2.0)
        )
        self.quit_timeout = float(
            quit_timeout if quit_timeout is not None else rec_cfg.get("quit_timeout_sec", 3.0)
        )
        self.terminate_timeout = float(
            terminate_timeout
            if terminate_timeout is not None
            else rec_cfg.get("terminate_timeout_sec", 2.0)
        )
        self.pcm_consumer = pcm_consumer
        self._state_listener = state_listener
        self._device_resolver = device_resolver

        self._log = logging.getLogger("dentdoc.recorder")
        self._cond = threading.Condition()
        self._state = RecordingState.IDLE
        self._proc: subprocess.Popen | None = None
        self._session: CaptureSession | None = None
        self._last_output: Path | None = None
        self._progress = threading.Event()
        self._stderr_tail: Deque[str] = deque(maxlen=40)
        self._threads: List[threading.Thread] = []
        self._samples_read = 0
        self._consumer_errors = 0

    # ----- state ---------------------------------------------------------

    def _set_state(self, state: RecordingState) -> None:
        # Caller holds self._cond.
        if state is self._state:
            return
        self._log.debug("state %s -> %s", self._state.value, state.value)
        self._state = state
        self._cond.notify_all()
        if self._state_listener is not None:
            try:
                self._state_listener(state)
            except Exception:
                self._log.exception("state listener failed")

    def get_state(self) -> RecordingState:
        with self._cond:
            return self._state

    def is_recording(self) -> bool:
        return self.get_state() is RecordingState.RECORDING

    @property
    def session(self) -> CaptureSession | None:
        return self._session

    @property
    def captured_ms(self) -> int:
        """Milliseconds of PCM read from the stdout tee so far."""
        return int(self._samples_read * 1000 // self.sample_rate)

    @property
    def stderr_tail(self) -> str:
        return "".join(self._stderr_tail)

    # ----- start ---------------------------------------------------------

    def start(
        self,
        delete_old_recordings: bool = False,
        device_hint: str | None = None,
        *,
        command: Sequence[str] | None = None,
    ) -> Path:
        """Spawn the encoder and return the destination path once recording."""

        with self._cond:
            if self._state is not RecordingState.IDLE:
                raise RecordingAlreadyActiveError(
                    f"cannot start: recorder is {self._state.value}"
                )
            self._set_state(RecordingState.STARTING)

        try:
            return self._spawn_and_wait(delete_old_recordings, device_hint, command)
        except BaseException:
            with self._cond:
                proc = self._proc
                self._proc = None
            if proc is not None and proc.poll() is None:
                proc.kill()
                proc.wait()
            self._join_threads(1.0)
            with self._cond:
                self._set_state(RecordingState.IDLE)
            raise

    def _spawn_and_wait(
        self,
        delete_old_recordings: bool,
        device_hint: str | None,
        command: Sequence[str] | None,
    ) -> Path:
        self.recordings_dir.mkdir(parents=True, exist_ok=True)
        if delete_old_recordings:
            self._purge_recordings(keep=0)

        device = self._device_resolver(device_hint)
        path = self.recordings_dir / f"{RECORDING_PREFIX}{int(time.time() * 1000)}.wav"
        if command is not None:
            # "{output}" in an override command stands for the destination path.
            argv = [str(arg).replace("{output}", str(path)) for arg in command]
        else:
            argv = capture_args(device.backend, device.id, path, sample_rate=self.sample_rate)

        self._progress.clear()
        self._stderr_tail.clear()
        self._samples_read = 0
        self._consumer_errors = 0
        self._log.info("starting capture on %r via %s -> %s", device.name, device.backend, path)
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            raise EncoderStartFailedError(f"failed to launch encoder: {exc}") from exc

        session = CaptureSession(
            path=path,
            start_timestamp=time.time(),
            backend=device.backend,
            device_identifier=device.id,
        )
        with self._cond:
            self._proc = proc
            self._session = session
        self._threads = [
            threading.Thread(target=self._read_stderr, args=(proc,), daemon=True),
            threading.Thread(target=self._pump_stdout, args=(proc,), daemon=True),
        ]
        for thread in self._threads:
            thread.start()

        deadline = time.monotonic() + self.start_timeout
        while True:
            if self._progress.wait(timeout=0.05):
                self._log.info("recording started: %s", path)
                break
            if proc.poll() is not None:
                self._join_threads(1.0)
                raise EncoderStartFailedError(
                    f"encoder exited with code {proc.returncode} before recording started",
                    stderr=self.stderr_tail,
                )
            if time.monotonic() >= deadline:
                self._log.info("recording assumed started (timeout fallback): %s", path)
                break

        with self._cond:
            self._last_output = path
            self._set_state(RecordingState.RECORDING)
        return path

    # ----- reader threads ------------------------------------------------

    def _read_stderr(self, proc: subprocess.Popen) -> None:
        stream = proc.stderr
        if stream is None:
            return
        try:
            for chunk in iter(lambda: stream.read1(4096), b""):
                if not self._progress.is_set() and any(m in chunk for m in _PROGRESS_MARKERS):
                    self._progress.set()
                text = chunk.decode("utf-8", errors="ignore")
                self._stderr_tail.append(text)
                if "error" in text.lower():
                    self._log.warning("ffmpeg: %s", text.strip())
        except (OSError, ValueError) as exc:
            self._log.debug("stderr reader stopped: %r", exc)

    def _pump_stdout(self, proc: subprocess.Popen) -> None:
        stream = proc.stdout
        if stream is None:
            return
        try:
            while True:
                chunk = stream.read(self.batch_bytes)
                if not chunk:
                    break
                usable = len(chunk) - (len(chunk) % 2)
                if usable <= 0:
                    continue
                offset_ms = self._samples_read * 1000.0 / self.sample_rate
                self._samples_read += usable // 2
                consumer = self.pcm_consumer
                if consumer is None:
                    continue
                try:
                    consumer(chunk[:usable], offset_ms)
                except Exception:
                    self._consumer_errors += 1
                    if self._consumer_errors == 1:
                        self._log.exception("PCM consumer failed; continuing capture")
        except (OSError, ValueError) as exc:
            self._log.debug("stdout pump stopped: %r", exc)

    def _join_threads(self, timeout: float) -> None:
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []

    # ----- stop ----------------------------------------------------------

    def stop(self) -> Path:
        """Stop the encoder and return the finished recording.

        A repeated stop after a completed session returns that session's file
        while it is still present and non-empty.
        """

        with self._cond:
            if self._state is RecordingState.STOPPING:
                while self._state is RecordingState.STOPPING:
                    self._cond.wait()
            if self._state is not RecordingState.RECORDING:
                prior = self._last_output
                if (
                    self._state is RecordingState.IDLE
                    and prior is not None
                    and prior.exists()
                    and prior.stat().st_size > 0
                ):
                    self._log.info("stop() with no active recording; returning %s", prior)
                    return prior
                raise NoActiveRecordingError(
                    f"no active recording (recorder is {self._state.value})"
                )
            self._set_state(RecordingState.STOPPING)
            proc = self._proc
            session = self._session

        try:
            if proc is not None:
                self._shutdown_encoder(proc)
        finally:
            self._join_threads(2.0)
            with self._cond:
                self._proc = None
                self._set_state(RecordingState.IDLE)

        if session is None:
            raise NoActiveRecordingError("recorder stopped without a session")
        path = session.path
        if not path.exists() or path.stat().st_size == 0:
            raise EmptyRecordingError(str(path))
        self._log.info("recording stopped: %s (%d bytes)", path, path.stat().st_size)
        return path

    def _shutdown_encoder(self, proc: subprocess.Popen) -> None:
        """Quit via stdin, then SIGTERM, then SIGKILL."""
        rc = proc.poll()
        if rc is not None:
            self._log.info("encoder already exited rc=%s", rc)
            return

        try:
            if proc.stdin:
                proc.stdin.write(b"q")
                proc.stdin.flush()
        except (BrokenPipeError, OSError, ValueError) as e:
            self._log.debug("encoder stdin quit error: %r", e)

        try:
            rc = proc.wait(timeout=self.quit_timeout)
            self._log.info("encoder quit with rc=%s", rc)
            return
        except subprocess.TimeoutExpired:
            self._log.warning(
                "encoder did not quit within %.1fs; sending SIGTERM", self.quit_timeout
            )

        proc.terminate()
        try:
            rc = proc.wait(timeout=self.terminate_timeout)
            self._log.info("encoder terminated with rc=%s", rc)
            return
        except subprocess.TimeoutExpired:
            self._log.warning(
                "encoder did not exit %.1fs after SIGTERM; sending SIGKILL",
                self.terminate_timeout,
            )

        try:
            proc.kill()
        except OSError as e:
            self._log.exception("encoder kill() raised; process may remain: %r", e)
            return
        try:
            rc = proc.wait(timeout=1.0)
            self._log.info("encoder killed; rc=%s", rc)
        except subprocess.TimeoutExpired:
            self._log.error("encoder still not reaped after SIGKILL; zombie risk")

    def force_stop(self) -> None:
        """Kill the encoder and return to IDLE regardless of state."""
        with self._cond:
            proc = self._proc
            self._proc = None
        if proc is not None and proc.poll() is None:
            self._log.warning("force-stopping encoder pid=%s", proc.pid)
            try:
                proc.kill()
                proc.wait(timeout=2.0)
            except (OSError, subprocess.TimeoutExpired) as e:
                self._log.error("force stop could not reap encoder: %r", e)
        self._join_threads(1.0)
        with self._cond:
            self._set_state(RecordingState.IDLE)

    def cancel(self) -> None:
        """Abort the session and discard its recording.

        A cancel that arrives during STARTING waits for the start to resolve
        and then runs the normal stop path.
        """

        with self._cond:
            while self._state is RecordingState.STARTING:
                self._cond.wait()
            state = self._state
            session = self._session
        if state is RecordingState.RECORDING:
            try:
                self.stop()
            except EmptyRecordingError:
                pass
        elif state is RecordingState.STOPPING:
            with self._cond:
                while self._state is RecordingState.STOPPING:
                    self._cond.wait()
        else:
            return
        if session is not None:
            try:
                session.path.unlink()
                self._log.info("discarded cancelled recording %s", session.path)
            except FileNotFoundError:
                pass
        with self._cond:
            if self._last_output == (session.path if session else None):
                self._last_output = None

    # ----- housekeeping --------------------------------------------------

    def cleanup_old_recordings(self, keep: int = 0) -> list[Path]:
        with self._cond:
            if self._state is not RecordingState.IDLE:
                raise RecordingAlreadyActiveError(
                    f"refusing to clean up recordings while recorder is {self._state.value}"
                )
            return self._purge_recordings(keep=keep)

    def _purge_recordings(self, keep: int) -> list[Path]:
        if not self.recordings_dir.exists():
            return []
        candidates = [
            p
            for p in self.recordings_dir.iterdir()
            if p.is_file() and p.name.startswith(RECORDING_PREFIX) and p.suffix in RECORDING_SUFFIXES
        ]
        candidates.sort(key=lambda p: p.stat().st_mtime, reverse=True)
        removed: list[Path] = []
        for path in candidates[max(0, keep):]:
            try:
                os.unlink(path)
            except OSError as exc:
                self._log.warning("could not remove old recording %s: %r", path, exc)
                continue
            removed.append(path)
            self._log.info("cleaned up old recording: %s", path)
        return removed


__all__ = ["CaptureSession", "RecordingProcess", "RecordingState"]
