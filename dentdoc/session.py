"""
SessionController: the one object a host application talks to.

It wires the capture process, the VAD worker and the marker collector for
live sessions, and fronts the speaker matcher and profile store:

    ffmpeg stdout --> pcm consumer --> level event
                                   \-> VadWorker --> speech events --> MarkerCollector
    stop() --> process_markers --> segments

Live levels, speech transitions and recorder state changes go to the event
bus in ``dentdoc.events``.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Sequence

import numpy as np

from . import events
from .audio_devices import CaptureDevice, list_devices
from .audio_utils import pcm_level_dbfs, wav_duration_ms
from .config import get_cfg
from .embedding import EmbeddingEngine
from .errors import EmptyRecordingError, RecordingAlreadyActiveError
from .markers import (
    MarkerCollector,
    MarkerSettings,
    Segment,
    SpeechMarker,
    markers_to_segments,
    process_markers,
)
from .offline_vad import process_file_with_vad as _process_file_with_vad
from .recorder import RecordingProcess, RecordingState
from .speaker_matcher import SpeakerMatcher, Utterance
from .speech_renderer import RenderResult, render_speech_only as _render_speech_only
from .vad import VadEvent, VadModel, VadSettings, VadWorker
from .voice_profiles import PromotionSettings, VoiceProfile, VoiceProfileStore

_log = logging.getLogger("dentdoc.session")

VadWorkerFactory = Callable[[Callable[[VadEvent], None]], VadWorker]


def build_matcher(cfg: Mapping[str, Any] | None = None) -> SpeakerMatcher:
    cfg = cfg or get_cfg()
    speaker_cfg = cfg.get("speaker", {})
    store = VoiceProfileStore(
        cfg["paths"]["voice_profiles"],
        promotion=PromotionSettings(
            min_duration_ms=int(speaker_cfg.get("promotion_min_duration_ms", 30000)),
            min_mean_similarity=float(speaker_cfg.get("promotion_min_similarity", 0.65)),
        ),
    )
    engine = EmbeddingEngine(
        model_path=speaker_cfg.get("model_path") or None,
        sample_rate=int(cfg.get("audio", {}).get("sample_rate", 16000)),
    )
    return SpeakerMatcher(
        store,
        engine,
        threshold=float(speaker_cfg.get("match_threshold", 0.70)),
        max_sample_ms=int(speaker_cfg.get("max_sample_ms", 30000)),
        enrollment_ms=int(speaker_cfg.get("enrollment_ms", 30000)),
    )


class SessionController:
    def __init__(
        self,
        *,
        matcher: SpeakerMatcher | None = None,
        vad_factory: VadWorkerFactory | None = None,
        event_bus: events.CaptureEventBus | None = None,
        offline_model: VadModel | None = None,
        **recorder_options: Any,
    ) -> None:
        cfg = get_cfg()
        self._cfg = cfg
        self.vad_settings = VadSettings.from_config(cfg.get("audio", {}), cfg.get("vad", {}))
        self.marker_settings = MarkerSettings.from_config(cfg.get("markers", {}))
        self.vad_enabled = bool(cfg.get("vad", {}).get("enabled", True))
        self.default_role = str(cfg.get("speaker", {}).get("default_role") or "Arzt")
        self._vad_factory = vad_factory or self._default_vad_worker
        self._event_bus = event_bus
        self._offline_model = offline_model
        self._matcher = matcher

        recorder_options.setdefault("batch_bytes", self.vad_settings.batch_bytes)
        recorder_options.setdefault("sample_rate", self.vad_settings.sample_rate)
        self.recorder = RecordingProcess(
            pcm_consumer=self._on_pcm,
            state_listener=self._on_state,
            **recorder_options,
        )

        self._lock = threading.Lock()
        self._markers_lock = threading.Lock()
        self._collector = MarkerCollector()
        self._vad: VadWorker | None = None
        self._last_result: tuple[Path, List[Segment]] | None = None

    # ----- wiring --------------------------------------------------------

    @property
    def matcher(self) -> SpeakerMatcher:
        # Built lazily so a capture-only host never touches the profile store.
        if self._matcher is None:
            self._matcher = build_matcher(self._cfg)
        return self._matcher

    def _default_vad_worker(self, on_event: Callable[[VadEvent], None]) -> VadWorker:
        vad_cfg = self._cfg.get("vad", {})
        return VadWorker(
            self.vad_settings,
            on_event=on_event,
            isolation=str(vad_cfg.get("isolation", "process")),
            model_path=vad_cfg.get("model_path") or None,
            stop_timeout=float(vad_cfg.get("stop_timeout_sec", 5.0)),
        )

    def _publish(self, event_type: str, payload: Any) -> None:
        if self._event_bus is not None:
            self._event_bus.publish(event_type, payload)
        else:
            events.publish(event_type, payload)

    def _on_pcm(self, pcm: bytes, offset_ms: float) -> None:
        level = pcm_level_dbfs(pcm)
        self._publish(
            events.AUDIO_LEVEL,
            {"offsetMs": int(offset_ms), "dbfs": level if np.isfinite(level) else None},
        )
        vad = self._vad
        if vad is not None:
            vad.submit(pcm, offset_ms)

    def _on_vad_event(self, event: VadEvent) -> None:
        if event.type == "speech-start":
            with self._markers_lock:
                opened = self._collector.speech_start(event.offset_ms)
            if opened:
                self._publish(events.SPEECH_DETECTED, {"speaking": True, "offsetMs": event.offset_ms})
        elif event.type == "speech-end":
            with self._markers_lock:
                closed = self._collector.speech_end(event.offset_ms)
            if closed is not None:
                self._publish(
                    events.SPEECH_DETECTED,
                    {
                        "speaking": False,
                        "offsetMs": event.offset_ms,
                        "marker": {"start": closed.start_ms, "end": closed.end_ms},
                    },
                )

    def _on_state(self, state: RecordingState) -> None:
        self._publish(events.RECORDING_STATE, {"state": state.value})

    def _shutdown_vad(self, final_offset_ms: float) -> VadWorker | None:
        with self._lock:
            vad = self._vad
            self._vad = None
        if vad is not None and not vad.stop(final_offset_ms):
            # Open regions are closed by the collector at session end.
            _log.warning("VAD worker shut down uncleanly at %dms", int(final_offset_ms))
        return vad

    # ----- capture -------------------------------------------------------

    def start(
        self,
        delete_old_recordings: bool = False,
        device_hint: str | None = None,
        *,
        command: Sequence[str] | None = None,
    ) -> Path:
        """Start a live session; returns the path the recording is written to."""

        with self._lock:
            if self.recorder.get_state() is not RecordingState.IDLE or self._vad is not None:
                raise RecordingAlreadyActiveError("a recording is already running")
            with self._markers_lock:
                self._collector.reset()
            if self.vad_enabled:
                vad = self._vad_factory(self._on_vad_event)
                vad.init()
                self._vad = vad
        hint = device_hint or self._cfg.get("audio", {}).get("device") or None
        try:
            path = self.recorder.start(delete_old_recordings, hint, command=command)
        except BaseException:
            self._shutdown_vad(0)
            raise
        self._last_result = None
        return path

    def stop(self) -> List[Segment]:
        """Stop capture and return the speech segments of the recording.

        With no speech the recording is deleted and ``[]`` is returned.
        """

        try:
            path = self.recorder.stop()
        except EmptyRecordingError as exc:
            self._shutdown_vad(self.recorder.captured_ms)
            with self._markers_lock:
                self._collector.reset()
            try:
                Path(exc.path).unlink()
            except FileNotFoundError:
                pass
            raise
        except BaseException:
            self._shutdown_vad(self.recorder.captured_ms)
            raise

        with self._lock:
            vad = self._vad
        if vad is None and self._last_result is not None and self._last_result[0] == path:
            return list(self._last_result[1])

        duration_ms = wav_duration_ms(path)
        vad = self._shutdown_vad(duration_ms)
        with self._markers_lock:
            raw = self._collector.close(duration_ms)
            self._collector.reset()

        if vad is None or not vad.initialized.is_set():
            # Without a working detector every part of the recording is kept.
            reason = "disabled" if vad is None else (vad.last_error or "not initialized")
            _log.warning("VAD %s; keeping the whole recording as one segment", reason)
            raw = [SpeechMarker(0, duration_ms)] if duration_ms > 0 else []
        elif vad.dropped_batches:
            _log.warning("VAD dropped %d batch(es) this session", vad.dropped_batches)

        markers = process_markers(raw, duration_ms, self.marker_settings)
        if not markers:
            _log.info("no speech in %s; deleting recording", path)
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            self._last_result = None
            return []
        segments = markers_to_segments(markers, path)
        self._last_result = (path, segments)
        return list(segments)

    def force_stop(self) -> None:
        self.recorder.force_stop()
        self._shutdown_vad(self.recorder.captured_ms)
        with self._markers_lock:
            self._collector.reset()

    def cancel(self) -> None:
        """Abort the session and discard the recording."""
        self.recorder.cancel()
        self._shutdown_vad(self.recorder.captured_ms)
        with self._markers_lock:
            self._collector.reset()
        self._last_result = None

    def is_recording(self) -> bool:
        return self.recorder.is_recording()

    def get_state(self) -> RecordingState:
        return self.recorder.get_state()

    def list_devices(self) -> List[CaptureDevice]:
        return list_devices()

    def cleanup_old_recordings(self, keep: int | None = None) -> list[Path]:
        if keep is None:
            keep = int(self._cfg.get("recorder", {}).get("keep_recordings", 0))
        return self.recorder.cleanup_old_recordings(keep)

    # ----- rendering -----------------------------------------------------

    def render_speech_only(self, segments: Sequence[Segment], output_path: str | Path) -> RenderResult:
        return _render_speech_only(segments, output_path)

    def process_file_with_vad(self, input_path: str | Path, output_path: str | Path) -> RenderResult | None:
        return _process_file_with_vad(
            input_path,
            output_path,
            model=self._offline_model,
            section=self._cfg.get("offline_vad", {}),
        )

    # ----- speakers ------------------------------------------------------

    def enroll(self, name: str, audio_path: str | Path, role: str | None = None) -> VoiceProfile:
        return self.matcher.enroll(name, audio_path, role or self.default_role)

    def identify(
        self,
        audio_path: str | Path,
        utterances: Iterable[Utterance | Mapping[str, Any]],
    ) -> Dict[str, str]:
        return self.matcher.identify(audio_path, utterances)

    def add_optimization_sample(
        self,
        name: str,
        audio_path: str | Path,
        utterances: Iterable[Utterance | Mapping[str, Any]],
        speaker: str,
        *,
        role: str | None = None,
        transcription_id: str | None = None,
    ) -> VoiceProfile:
        """Embed one speaker of a finished session and feed it to ``name``'s profile."""
        embedding, duration_ms = self.matcher.embed_speaker(audio_path, utterances, speaker)
        return self.matcher.add_optimization_sample(
            name,
            embedding,
            role=role or self.default_role,
            duration_ms=duration_ms,
            transcription_id=transcription_id,
        )

    def delete_profile(self, profile_id: str) -> None:
        self.matcher.store.delete_profile(profile_id)

    def list_profiles(self) -> List[VoiceProfile]:
        return self.matcher.store.list_profiles()


__all__ = ["SessionController", "build_matcher"]
