"""Speech-only rendering for finished files (uploads, imported recordings).

Runs the same detector as live capture over the whole file, with tighter
thresholds because there is no real-time latency to absorb.
"""

from __future__ import annotations

import logging
import wave
from pathlib import Path
from typing import Any, Mapping

from .audio_utils import validate_pcm16_mono, read_wav_info
from .config import get_cfg
from .ffmpeg_io import ensure_wav16k
from .markers import MarkerCollector, MarkerSettings, markers_to_segments, process_markers
from .speech_renderer import RenderResult, render_speech_only
from .vad import SileroVadModel, SpeechDetector, VadModel, VadSettings, pcm16_to_float

logger = logging.getLogger("dentdoc.offline_vad")


def offline_settings(section: Mapping[str, Any] | None = None) -> tuple[VadSettings, MarkerSettings]:
    cfg = get_cfg()
    section = section if section is not None else cfg.get("offline_vad", {})
    vad_settings = VadSettings.from_config(cfg.get("audio", {}), section)
    return vad_settings, MarkerSettings.from_config(section)


def detect_speech_markers(
    wav_path: str | Path,
    model: VadModel,
    settings: VadSettings,
):
    """Run the detector over a whole 16 kHz WAV; returns (markers, duration_ms)."""
    info = read_wav_info(wav_path)
    validate_pcm16_mono(info, wav_path)
    detector = SpeechDetector(model, settings)
    collector = MarkerCollector()
    batch_samples = settings.batch_samples
    consumed = 0
    with wave.open(str(wav_path), "rb") as handle:
        while True:
            raw = handle.readframes(batch_samples)
            if not raw:
                break
            offset_ms = consumed * 1000.0 / settings.sample_rate
            consumed += len(raw) // 2
            for event in detector.process(pcm16_to_float(raw), offset_ms):
                if event.type == "speech-start":
                    collector.speech_start(event.offset_ms)
                elif event.type == "speech-end":
                    collector.speech_end(event.offset_ms)
    duration_ms = int(consumed * 1000 // settings.sample_rate)
    for event in detector.finish(duration_ms):
        collector.speech_end(event.offset_ms)
    return collector.close(duration_ms), duration_ms


def process_file_with_vad(
    input_path: str | Path,
    output_path: str | Path,
    *,
    model: VadModel | None = None,
    section: Mapping[str, Any] | None = None,
) -> RenderResult | None:
    """Render the speech-only version of ``input_path``; None when no speech is found."""

    vad_settings, marker_settings = offline_settings(section)
    wav_path = ensure_wav16k(input_path)
    if model is None:
        model = SileroVadModel(get_cfg().get("vad", {}).get("model_path") or None)

    raw_markers, duration_ms = detect_speech_markers(wav_path, model, vad_settings)
    markers = process_markers(raw_markers, duration_ms, marker_settings)
    if not markers:
        logger.info("no speech detected in %s", input_path)
        return None
    segments = markers_to_segments(markers, wav_path)
    return render_speech_only(segments, output_path)


__all__ = ["detect_speech_markers", "offline_settings", "process_file_with_vad"]
