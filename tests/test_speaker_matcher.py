from __future__ import annotations

import math
from pathlib import Path

import numpy as np
import pytest

from dentdoc.audio_utils import write_pcm16_wav
from dentdoc.embedding import EmbeddingEngine
from dentdoc.errors import AudioFormatError, DimensionMismatchError
from dentdoc.speaker_matcher import SpeakerMatcher, Utterance, anonymous_label
from dentdoc.voice_profiles import VoiceProfileStore

SR = 16000


class _SignModel:
    """Positive audio embeds as [1, 0], negative as [0, 1]."""

    def __init__(self):
        self.lengths: list[int] = []

    def embed(self, samples, sample_rate):
        self.lengths.append(int(samples.size))
        if float(np.mean(samples)) > 0:
            return np.array([1.0, 0.0], dtype=np.float32)
        return np.array([0.0, 1.0], dtype=np.float32)


def _session_wav(tmp_path: Path) -> Path:
    """45 s file: positive audio in [0, 40) s, negative in [40, 45) s."""
    audio = np.full(45 * SR, 0.2, dtype=np.float32)
    audio[40 * SR:] = -0.2
    return write_pcm16_wav(tmp_path / "session.wav", audio)


@pytest.fixture
def model() -> _SignModel:
    return _SignModel()


@pytest.fixture
def matcher(tmp_path: Path, model: _SignModel) -> SpeakerMatcher:
    store = VoiceProfileStore(tmp_path / "profiles.json")
    return SpeakerMatcher(store, EmbeddingEngine(model))


def test_identify_labels_known_and_unknown_speakers(matcher, model, tmp_path):
    matcher.store.save_profile("Dr. Weber", [1.0, 0.0], "Arzt")
    # Pending-only profiles have no centroid and are never matched.
    matcher.store.save_profile_with_pending("ZFA Kim", [0.0, 1.0], "ZFA", duration_ms=5000)

    utterances = [
        {"speaker": "A", "start": 0, "end": 20000, "text": "Guten Morgen"},
        {"speaker": "B", "start": 40000, "end": 44000, "text": "Hallo"},
        {"speaker": "A", "start": 21000, "end": 39000, "text": "Wie geht es?"},
    ]
    mapping = matcher.identify(_session_wav(tmp_path), utterances)

    assert mapping == {"A": "Arzt - Dr. Weber", "B": "Sprecher B"}
    # Speaker A is capped at 30 s: 20 s from the first turn, 10 s from the second.
    assert model.lengths[0] == 30 * SR
    assert model.lengths[1] == 4 * SR


def test_identify_without_usable_audio_is_anonymous(matcher, tmp_path):
    matcher.store.save_profile("Dr. Weber", [1.0, 0.0])
    mapping = matcher.identify(
        _session_wav(tmp_path),
        [Utterance("C", 1000, 1010), Utterance("D", 50000, 52000)],
    )
    assert mapping == {"C": "Sprecher C", "D": "Sprecher D"}


def test_identify_with_no_profiles(matcher, tmp_path):
    mapping = matcher.identify(_session_wav(tmp_path), [Utterance("A", 0, 5000)])
    assert mapping == {"A": anonymous_label("A")}


def test_best_match_must_reach_threshold(matcher):
    matcher.store.save_profile("Dr. Weber", [1.0, 0.0, 0.0])
    matcher.store.save_profile("Dr. Kim", [0.0, 1.0, 0.0], "ZFA")

    above = [0.71, 0.0, math.sqrt(1 - 0.71**2)]
    found = matcher.match(above)
    assert found is not None and found.profile.name == "Dr. Weber"
    assert found.similarity == pytest.approx(0.71)

    below = [0.69, 0.0, math.sqrt(1 - 0.69**2)]
    scored = matcher.score(below)
    assert [m.profile.name for m in scored] == ["Dr. Weber", "Dr. Kim"]
    assert scored[0].similarity == pytest.approx(0.69)
    assert matcher.match(below) is None


def test_dimension_mismatch_is_fatal(matcher, tmp_path):
    matcher.store.save_profile("Dr. Weber", [1.0, 0.0, 0.0])
    with pytest.raises(DimensionMismatchError):
        matcher.identify(_session_wav(tmp_path), [Utterance("A", 0, 5000)])


def test_enroll_needs_thirty_seconds(matcher, model, tmp_path):
    short = write_pcm16_wav(tmp_path / "short.wav", np.full(29 * SR, 0.2, dtype=np.float32))
    with pytest.raises(AudioFormatError):
        matcher.enroll("Dr. Weber", short)
    assert matcher.store.list_profiles() == []

    profile = matcher.enroll("Dr. Weber", _session_wav(tmp_path), "Arzt")
    assert model.lengths == [30 * SR]
    assert profile.centroid == [1.0, 0.0]
    assert profile.label == "Arzt - Dr. Weber"


def test_optimization_sample_creates_then_feeds_profile(matcher, tmp_path):
    wav = _session_wav(tmp_path)
    utterances = [Utterance("A", 0, 16000), Utterance("B", 40000, 45000)]

    embedding, duration_ms = matcher.embed_speaker(wav, utterances, "A")
    assert duration_ms == 16000
    profile = matcher.add_optimization_sample(
        "Dr. Weber", embedding, duration_ms=duration_ms, transcription_id="t-1"
    )
    assert profile.centroid is None
    assert profile.pending_embeddings[0].transcription_id == "t-1"

    embedding, duration_ms = matcher.embed_speaker(wav, [Utterance("A", 16000, 30000)], "A")
    profile = matcher.add_optimization_sample("dr. weber", embedding, duration_ms=duration_ms)
    assert profile.centroid == [1.0, 0.0]
    assert len(profile.confirmed_embeddings) == 2


def test_utterance_from_mapping():
    u = Utterance.from_mapping({"speaker": 1, "start": "100", "end": 900})
    assert u == Utterance("1", 100, 900, "")
    assert u.duration_ms == 800
