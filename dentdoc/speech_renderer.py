"""Render speech-only audio from a continuous recording.

Each segment is cut out with a stream copy (no re-encode) and the pieces are
joined with ffmpeg's concat demuxer. The returned speech map ties every span
of the speech-only file back to the original recording:

    speech timeline   [0 ------ 1200)[1200 ------ 3000)
    original timeline [400 ---- 1600)     [5000 ---- 6800)

Lookups use half-open intervals, so a boundary belongs to the following entry.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Sequence

from .errors import StitchFailedError
from .ffmpeg_io import concat_args, extract_args, run_ffmpeg
from .markers import Segment

_log = logging.getLogger("dentdoc.speech_renderer")


@dataclass(frozen=True)
class SpeechMapEntry:
    speech_start_ms: int
    speech_end_ms: int
    original_start_ms: int
    original_end_ms: int
    segment_index: int

    def to_dict(self) -> dict:
        return {
            "speechStartMs": self.speech_start_ms,
            "speechEndMs": self.speech_end_ms,
            "originalStartMs": self.original_start_ms,
            "originalEndMs": self.original_end_ms,
            "segmentIndex": self.segment_index,
        }


@dataclass
class RenderResult:
    path: Path
    speech_map: List[SpeechMapEntry] = field(default_factory=list)

    @property
    def total_duration_ms(self) -> int:
        return total_speech_duration(self.speech_map)


def build_speech_map(segments: Iterable[Segment]) -> List[SpeechMapEntry]:
    entries: List[SpeechMapEntry] = []
    cursor = 0
    for segment in segments:
        duration = max(0, segment.duration_ms)
        entries.append(
            SpeechMapEntry(
                speech_start_ms=cursor,
                speech_end_ms=cursor + duration,
                original_start_ms=segment.start_ms,
                original_end_ms=segment.end_ms,
                segment_index=segment.index,
            )
        )
        cursor += duration
    return entries


def map_to_original_time(speech_map: Sequence[SpeechMapEntry], speech_ms: float) -> float | None:
    for entry in speech_map:
        if entry.speech_start_ms <= speech_ms < entry.speech_end_ms:
            return entry.original_start_ms + (speech_ms - entry.speech_start_ms)
    return None


def map_to_speech_time(speech_map: Sequence[SpeechMapEntry], original_ms: float) -> float | None:
    """Return the speech-timeline position, or None inside a silence gap."""
    for entry in speech_map:
        if entry.original_start_ms <= original_ms < entry.original_end_ms:
            return entry.speech_start_ms + (original_ms - entry.original_start_ms)
    return None


def total_speech_duration(speech_map: Sequence[SpeechMapEntry]) -> int:
    if not speech_map:
        return 0
    return speech_map[-1].speech_end_ms


def _concat_line(path: Path) -> str:
    escaped = str(path).replace("\\", "/").replace("'", "'\\''")
    return f"file '{escaped}'\n"


def _partial_path(output: Path) -> Path:
    # Keep the real suffix last so ffmpeg still picks the right muxer.
    return output.with_name(f".{output.stem}.partial{output.suffix or '.wav'}")


def render_speech_only(
    segments: Sequence[Segment],
    output_path: str | Path,
    *,
    binary: str | None = None,
) -> RenderResult:
    """Write the speech-only file and return its speech map.

    Either a complete file ends up at ``output_path`` or nothing does.
    """

    if not segments:
        raise ValueError("no segments to render")
    output = Path(output_path)
    output.parent.mkdir(parents=True, exist_ok=True)
    partial = _partial_path(output)
    work_dir = Path(tempfile.mkdtemp(prefix=".render-", dir=str(output.parent)))
    ordered = list(segments)

    try:
        if len(ordered) == 1:
            seg = ordered[0]
            run_ffmpeg(
                extract_args(seg.source_path, seg.start_ms, seg.duration_ms, partial, binary=binary)
            )
        else:
            pieces: list[Path] = []
            for seg in ordered:
                suffix = seg.source_path.suffix or ".wav"
                piece = work_dir / f"segment_{seg.index:04d}{suffix}"
                run_ffmpeg(
                    extract_args(seg.source_path, seg.start_ms, seg.duration_ms, piece, binary=binary)
                )
                pieces.append(piece)
            list_path = work_dir / "concat.txt"
            with list_path.open("w", encoding="utf-8") as handle:
                for piece in pieces:
                    handle.write(_concat_line(piece))
            run_ffmpeg(concat_args(list_path, partial, binary=binary))

        if not partial.exists() or partial.stat().st_size == 0:
            raise StitchFailedError(f"ffmpeg produced no output for {output}")
        os.replace(partial, output)
    except BaseException:
        try:
            partial.unlink()
        except FileNotFoundError:
            pass
        raise
    finally:
        shutil.rmtree(work_dir, ignore_errors=True)

    speech_map = build_speech_map(ordered)
    _log.info(
        "rendered %d segment(s) into %s (%d ms of speech)",
        len(ordered),
        output,
        total_speech_duration(speech_map),
    )
    return RenderResult(path=output, speech_map=speech_map)


__all__ = [
    "RenderResult",
    "SpeechMapEntry",
    "build_speech_map",
    "map_to_original_time",
    "map_to_speech_time",
    "render_speech_only",
    "total_speech_duration",
]
