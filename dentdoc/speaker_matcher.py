"""Match talk-turns against enrolled voice profiles."""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Sequence

import numpy as np

from .audio_utils import read_pcm_window, wav_duration_ms
from .embedding import EmbeddingEngine
from .errors import AudioFormatError
from .ffmpeg_io import ensure_wav16k
from .vectors import cosine_similarity
from .voice_profiles import DEFAULT_ROLE, VoiceProfile, VoiceProfileStore

logger = logging.getLogger("dentdoc.speaker_matcher")

MATCH_THRESHOLD = 0.70
MAX_SAMPLE_MS = 30000


@dataclass(frozen=True)
class Utterance:
    speaker: str
    start_ms: int
    end_ms: int
    text: str = ""

    @property
    def duration_ms(self) -> int:
        return max(0, self.end_ms - self.start_ms)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Utterance":
        return cls(
            speaker=str(data["speaker"]),
            start_ms=int(data["start"]),
            end_ms=int(data["end"]),
            text=str(data.get("text") or ""),
        )


@dataclass(frozen=True)
class SpeakerMatch:
    profile: VoiceProfile
    similarity: float


def anonymous_label(speaker: str) -> str:
    return f"Sprecher {speaker}"


class SpeakerMatcher:
    def __init__(
        self,
        store: VoiceProfileStore,
        engine: EmbeddingEngine,
        *,
        threshold: float = MATCH_THRESHOLD,
        max_sample_ms: int = MAX_SAMPLE_MS,
        enrollment_ms: int = MAX_SAMPLE_MS,
    ) -> None:
        self.store = store
        self.engine = engine
        self.threshold = float(threshold)
        self.max_sample_ms = int(max_sample_ms)
        self.enrollment_ms = int(enrollment_ms)

    def score(self, embedding: Sequence[float] | np.ndarray) -> List[SpeakerMatch]:
        """Similarity against every profile that has a centroid, best first."""
        scored = [
            SpeakerMatch(profile, cosine_similarity(embedding, profile.centroid))
            for profile in self.store.list_profiles()
            if profile.centroid is not None
        ]
        scored.sort(key=lambda m: m.similarity, reverse=True)
        return scored

    def match(self, embedding: Sequence[float] | np.ndarray) -> SpeakerMatch | None:
        scored = self.score(embedding)
        for candidate in scored:
            logger.debug(
                'compared with "%s" (%s): %.2f%%',
                candidate.profile.name,
                candidate.profile.role,
                candidate.similarity * 100,
            )
        if not scored:
            return None
        best = scored[0]
        if best.similarity >= self.threshold:
            logger.info('matched "%s" at %.2f%%', best.profile.name, best.similarity * 100)
            return best
        logger.info(
            "no match above %.0f%% (best %.2f%%)", self.threshold * 100, best.similarity * 100
        )
        return None

    def collect_speaker_audio(self, wav_path: Path, utterances: Iterable[Utterance]) -> np.ndarray:
        """Concatenate up to ``max_sample_ms`` of the given utterances, in order."""
        pieces: list[np.ndarray] = []
        total_ms = 0
        for utterance in utterances:
            if total_ms >= self.max_sample_ms:
                break
            take = min(utterance.duration_ms, self.max_sample_ms - total_ms)
            if take <= 0:
                continue
            pieces.append(read_pcm_window(wav_path, utterance.start_ms, take))
            total_ms += take
        if not pieces:
            return np.zeros(0, dtype=np.float32)
        return np.concatenate(pieces)

    def identify(
        self,
        audio_path: str | Path,
        utterances: Iterable[Utterance | Mapping[str, Any]],
    ) -> Dict[str, str]:
        """Map each raw speaker label to ``"Role - Name"`` or ``"Sprecher <label>"``."""

        wav_path = ensure_wav16k(audio_path)
        by_speaker: "OrderedDict[str, list[Utterance]]" = OrderedDict()
        for item in utterances:
            utterance = item if isinstance(item, Utterance) else Utterance.from_mapping(item)
            by_speaker.setdefault(utterance.speaker, []).append(utterance)

        mapping: Dict[str, str] = {}
        for speaker, turns in by_speaker.items():
            try:
                samples = self.collect_speaker_audio(wav_path, turns)
                embedding = self.engine.embed_samples(samples)
            except AudioFormatError as exc:
                logger.warning("speaker %s: no usable audio (%s)", speaker, exc)
                mapping[speaker] = anonymous_label(speaker)
                continue
            found = self.match(embedding)
            mapping[speaker] = found.profile.label if found else anonymous_label(speaker)
        return mapping

    def enroll(self, name: str, audio_path: str | Path, role: str = DEFAULT_ROLE) -> VoiceProfile:
        """Create a confirmed profile from the first 30 s of an enrollment recording."""
        wav_path = ensure_wav16k(audio_path)
        available = wav_duration_ms(wav_path)
        if available < self.enrollment_ms:
            raise AudioFormatError(
                f"enrollment needs at least {self.enrollment_ms / 1000:.0f}s of audio, "
                f"got {available / 1000:.1f}s"
            )
        embedding = self.engine.embed(wav_path, 0, self.enrollment_ms)
        return self.store.save_profile(name, embedding, role or DEFAULT_ROLE)

    def embed_speaker(
        self,
        audio_path: str | Path,
        utterances: Iterable[Utterance | Mapping[str, Any]],
        speaker: str,
    ) -> tuple[np.ndarray, int]:
        """Embedding and covered duration for one speaker label of a session."""
        wav_path = ensure_wav16k(audio_path)
        turns = [
            u if isinstance(u, Utterance) else Utterance.from_mapping(u) for u in utterances
        ]
        own = [u for u in turns if u.speaker == speaker]
        samples = self.collect_speaker_audio(wav_path, own)
        duration_ms = int(samples.size * 1000 // self.engine.sample_rate)
        return self.engine.embed_samples(samples), duration_ms

    def add_optimization_sample(
        self,
        name: str,
        embedding: Sequence[float] | np.ndarray,
        *,
        role: str = DEFAULT_ROLE,
        duration_ms: int,
        transcription_id: str | None = None,
    ) -> VoiceProfile:
        """Feed a session sample to an existing profile, or start a pending one."""
        existing = self.store.get_profile_by_name(name)
        if existing is None:
            return self.store.save_profile_with_pending(
                name,
                embedding,
                role,
                duration_ms=duration_ms,
                transcription_id=transcription_id,
            )
        return self.store.add_pending_embedding(
            existing.id,
            embedding,
            duration_ms=duration_ms,
            transcription_id=transcription_id,
        )


__all__ = [
    "SpeakerMatch",
    "SpeakerMatcher",
    "Utterance",
    "anonymous_label",
    "cosine_similarity",
]
