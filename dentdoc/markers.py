"""Speech marker bookkeeping and the filter -> merge -> pad pipeline."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Mapping

_log = logging.getLogger("dentdoc.markers")


@dataclass(frozen=True)
class SpeechMarker:
    start_ms: int
    end_ms: int

    @property
    def duration_ms(self) -> int:
        return self.end_ms - self.start_ms


@dataclass(frozen=True)
class MarkerSettings:
    min_speech_ms: int = 300
    merge_gap_ms: int = 500
    padding_before_ms: int = 800
    padding_after_ms: int = 500

    @classmethod
    def from_config(cls, section: Mapping[str, object] | None) -> "MarkerSettings":
        section = section or {}
        defaults = cls()
        return cls(
            min_speech_ms=int(section.get("min_speech_ms", defaults.min_speech_ms)),
            merge_gap_ms=int(section.get("merge_gap_ms", defaults.merge_gap_ms)),
            padding_before_ms=int(section.get("padding_before_ms", defaults.padding_before_ms)),
            padding_after_ms=int(section.get("padding_after_ms", defaults.padding_after_ms)),
        )


class MarkerCollector:
    """Turns a stream of speech-start/speech-end offsets into closed markers.

    A start inside an open region and an end without one are ignored.
    """

    def __init__(self) -> None:
        self._markers: list[SpeechMarker] = []
        self._open_start: int | None = None

    @property
    def in_speech(self) -> bool:
        return self._open_start is not None

    def speech_start(self, offset_ms: int) -> bool:
        if self._open_start is not None:
            _log.debug("ignoring speech-start at %dms; region already open", offset_ms)
            return False
        self._open_start = max(0, int(offset_ms))
        return True

    def speech_end(self, offset_ms: int) -> SpeechMarker | None:
        if self._open_start is None:
            _log.debug("ignoring speech-end at %dms; no open region", offset_ms)
            return None
        start = self._open_start
        marker = SpeechMarker(start, max(start, int(offset_ms)))
        self._markers.append(marker)
        self._open_start = None
        return marker

    def close(self, session_ms: int) -> list[SpeechMarker]:
        """Close any open region at ``session_ms`` and return all markers."""
        if self._open_start is not None:
            self.speech_end(session_ms)
        return list(self._markers)

    def reset(self) -> None:
        self._markers.clear()
        self._open_start = None

    @property
    def markers(self) -> list[SpeechMarker]:
        return list(self._markers)


def filter_short_markers(markers: Iterable[SpeechMarker], min_speech_ms: int) -> List[SpeechMarker]:
    return [m for m in markers if m.duration_ms >= min_speech_ms]


def merge_markers(markers: Iterable[SpeechMarker], merge_gap_ms: int) -> List[SpeechMarker]:
    ordered = sorted(markers, key=lambda m: (m.start_ms, m.end_ms))
    merged: List[SpeechMarker] = []
    for marker in ordered:
        if merged and marker.start_ms <= merged[-1].end_ms + merge_gap_ms:
            last = merged[-1]
            merged[-1] = SpeechMarker(last.start_ms, max(last.end_ms, marker.end_ms))
        else:
            merged.append(marker)
    return merged


def apply_padding(
    markers: Iterable[SpeechMarker],
    before_ms: int,
    after_ms: int,
    session_ms: int,
) -> List[SpeechMarker]:
    upper = max(0, int(session_ms))
    padded: List[SpeechMarker] = []
    for marker in markers:
        start = max(0, marker.start_ms - before_ms)
        end = min(upper, marker.end_ms + after_ms)
        padded.append(SpeechMarker(start, max(start, end)))
    return padded


def process_markers(
    markers: Iterable[SpeechMarker],
    session_ms: int,
    settings: MarkerSettings | None = None,
) -> List[SpeechMarker]:
    """Filter, merge, then pad.

    Filtering first keeps noise blips from bridging real speech; padding last
    keeps the merge decision based on detected speech only. Overlaps created
    by padding are folded together so the result never overlaps.
    """

    settings = settings or MarkerSettings()
    raw = list(markers)
    kept = filter_short_markers(raw, settings.min_speech_ms)
    merged = merge_markers(kept, settings.merge_gap_ms)
    padded = apply_padding(
        merged,
        settings.padding_before_ms,
        settings.padding_after_ms,
        session_ms,
    )
    result = merge_markers(padded, 0)
    _log.info(
        "markers: %d raw -> %d kept -> %d merged -> %d final",
        len(raw),
        len(kept),
        len(merged),
        len(result),
    )
    return result


@dataclass(frozen=True)
class Segment:
    index: int
    source_path: Path
    start_ms: int
    end_ms: int

    @property
    def duration_ms(self) -> int:
        return self.end_ms - self.start_ms

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "path": str(self.source_path),
            "startMs": self.start_ms,
            "endMs": self.end_ms,
            "duration": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> "Segment":
        return cls(
            index=int(data.get("index", 0)),
            source_path=Path(str(data["path"])),
            start_ms=int(data["startMs"]),
            end_ms=int(data["endMs"]),
        )


def markers_to_segments(markers: Iterable[SpeechMarker], source_path: str | Path) -> List[Segment]:
    source = Path(source_path)
    return [
        Segment(index=i, source_path=source, start_ms=m.start_ms, end_ms=m.end_ms)
        for i, m in enumerate(markers)
    ]


__all__ = [
    "MarkerCollector",
    "MarkerSettings",
    "Segment",
    "SpeechMarker",
    "apply_padding",
    "filter_short_markers",
    "markers_to_segments",
    "merge_markers",
    "process_markers",
]
