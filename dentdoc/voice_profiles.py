"""Persistent voice profiles with confirmed and pending embedding pools.

Each profile keeps two pools:

* ``confirmed_embeddings`` feed the centroid used for matching.
* ``pending_embeddings`` are provisional samples gathered from later sessions.

Pending samples are promoted in one batch once they cover enough audio and
agree with the reference well enough (see :meth:`VoiceProfileStore.add_pending_embedding`).
Profiles are stored in a single JSON document written atomically.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from .errors import ProfileError
from .vectors import cosine_similarity, unit_mean

logger = logging.getLogger("dentdoc.voice_profiles")

SOURCE_ENROLLMENT = "enrollment"
SOURCE_OPTIMIZATION = "optimization"
FORBIDDEN_ROLE = "Patient"
DEFAULT_ROLE = "Arzt"
ENROLLMENT_DURATION_MS = 30000
DEFAULT_PENDING_DURATION_MS = 15000


def _now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _as_vector(value: Any) -> List[float]:
    if isinstance(value, str):
        value = json.loads(value)
    return [float(x) for x in np.asarray(value, dtype=np.float64).reshape(-1)]


@dataclass
class VoiceEmbedding:
    vector: List[float]
    source_type: str
    source_duration_ms: int
    created_at: str = field(default_factory=_now_iso)
    similarity_to_reference: float | None = None
    transcription_id: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "embedding": list(self.vector),
            "sourceType": self.source_type,
            "sourceDuration": self.source_duration_ms,
            "createdAt": self.created_at,
        }
        if self.similarity_to_reference is not None:
            data["similarity_to_reference"] = self.similarity_to_reference
        if self.transcription_id is not None:
            data["transcriptionId"] = self.transcription_id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VoiceEmbedding":
        similarity = data.get("similarity_to_reference")
        return cls(
            vector=_as_vector(data.get("embedding") or []),
            source_type=str(data.get("sourceType") or SOURCE_ENROLLMENT),
            source_duration_ms=int(data.get("sourceDuration") or 0),
            created_at=str(data.get("createdAt") or _now_iso()),
            similarity_to_reference=float(similarity) if similarity is not None else None,
            transcription_id=data.get("transcriptionId"),
        )


@dataclass
class VoiceProfile:
    id: str
    name: str
    role: str
    created_at: str
    updated_at: str
    confirmed_embeddings: List[VoiceEmbedding] = field(default_factory=list)
    pending_embeddings: List[VoiceEmbedding] = field(default_factory=list)
    centroid: List[float] | None = None
    centroid_updated_at: str | None = None

    @property
    def pending_duration_ms(self) -> int:
        return sum(e.source_duration_ms for e in self.pending_embeddings)

    @property
    def label(self) -> str:
        return f"{self.role or DEFAULT_ROLE} - {self.name}"

    def recompute_centroid(self) -> None:
        mean = unit_mean(e.vector for e in self.confirmed_embeddings)
        self.centroid = None if mean is None else [float(x) for x in mean]
        self.centroid_updated_at = _now_iso() if mean is not None else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "role": self.role,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "confirmed_embeddings": [e.to_dict() for e in self.confirmed_embeddings],
            "pending_embeddings": [e.to_dict() for e in self.pending_embeddings],
            "centroid": self.centroid,
            "centroid_updated_at": self.centroid_updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VoiceProfile":
        created = str(data.get("createdAt") or _now_iso())
        profile = cls(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            role=str(data.get("role") or DEFAULT_ROLE),
            created_at=created,
            updated_at=str(data.get("updatedAt") or created),
        )
        if "confirmed_embeddings" not in data:
            # Older stores kept one enrollment vector under "embedding".
            legacy = data.get("embedding")
            if legacy:
                vector = _as_vector(legacy)
                profile.confirmed_embeddings = [
                    VoiceEmbedding(
                        vector=vector,
                        source_type=SOURCE_ENROLLMENT,
                        source_duration_ms=ENROLLMENT_DURATION_MS,
                        created_at=created,
                    )
                ]
                profile.centroid = vector
                profile.centroid_updated_at = created
            return profile

        profile.confirmed_embeddings = [
            VoiceEmbedding.from_dict(e) for e in data.get("confirmed_embeddings") or []
        ]
        profile.pending_embeddings = [
            VoiceEmbedding.from_dict(e) for e in data.get("pending_embeddings") or []
        ]
        centroid = data.get("centroid")
        profile.centroid = _as_vector(centroid) if centroid else None
        profile.centroid_updated_at = data.get("centroid_updated_at")
        return profile


@dataclass(frozen=True)
class PromotionSettings:
    min_duration_ms: int = 30000
    min_mean_similarity: float = 0.65


class VoiceProfileStore:
    def __init__(
        self,
        path: str | Path,
        *,
        promotion: PromotionSettings | None = None,
    ) -> None:
        self._lock = threading.RLock()
        self.path = Path(path)
        self.promotion = promotion or PromotionSettings()

    def set_store_path(self, path: str | Path) -> None:
        """Point the store at another file, e.g. a shared network folder."""
        with self._lock:
            self.path = Path(path)
            self.path.parent.mkdir(parents=True, exist_ok=True)
            logger.info("voice profile store moved to %s", self.path)

    # ----- persistence ---------------------------------------------------

    def _read(self) -> List[VoiceProfile]:
        if not self.path.exists():
            return []
        with self.path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
        raw = payload.get("profiles", []) if isinstance(payload, dict) else payload
        return [VoiceProfile.from_dict(item) for item in raw or []]

    def _write(self, profiles: Sequence[VoiceProfile]) -> None:
        for profile in profiles:
            if profile.role == FORBIDDEN_ROLE:
                raise ProfileError("patients cannot be stored as voice profiles")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump({"profiles": [p.to_dict() for p in profiles]}, handle, ensure_ascii=False)
        os.replace(tmp_path, self.path)

    # ----- queries -------------------------------------------------------

    def list_profiles(self) -> List[VoiceProfile]:
        with self._lock:
            return self._read()

    def get_profile(self, profile_id: str) -> Optional[VoiceProfile]:
        with self._lock:
            return next((p for p in self._read() if p.id == profile_id), None)

    def get_profile_by_name(self, name: str) -> Optional[VoiceProfile]:
        wanted = name.lower()
        with self._lock:
            return next((p for p in self._read() if p.name.lower() == wanted), None)

    # ----- mutations -----------------------------------------------------

    def _check_new(self, profiles: Sequence[VoiceProfile], name: str, role: str) -> None:
        if not name or not name.strip():
            raise ProfileError("profile name must not be empty")
        if role == FORBIDDEN_ROLE:
            raise ProfileError("patients cannot be stored as voice profiles")
        if any(p.name.lower() == name.lower() for p in profiles):
            raise ProfileError(f'a voice profile for "{name}" already exists')

    def save_profile(
        self,
        name: str,
        embedding: Sequence[float] | np.ndarray,
        role: str = DEFAULT_ROLE,
    ) -> VoiceProfile:
        """Create a profile from an enrollment sample (goes straight to confirmed)."""
        with self._lock:
            profiles = self._read()
            self._check_new(profiles, name, role)
            now = _now_iso()
            vector = _as_vector(embedding)
            profile = VoiceProfile(
                id=uuid.uuid4().hex,
                name=name,
                role=role,
                created_at=now,
                updated_at=now,
                confirmed_embeddings=[
                    VoiceEmbedding(
                        vector=vector,
                        source_type=SOURCE_ENROLLMENT,
                        source_duration_ms=ENROLLMENT_DURATION_MS,
                        created_at=now,
                    )
                ],
            )
            profile.recompute_centroid()
            profiles.append(profile)
            self._write(profiles)
        logger.info('enrolled voice profile "%s" (%s)', name, role)
        return profile

    def save_profile_with_pending(
        self,
        name: str,
        embedding: Sequence[float] | np.ndarray,
        role: str = DEFAULT_ROLE,
        *,
        duration_ms: int | None = None,
        transcription_id: str | None = None,
    ) -> VoiceProfile:
        """Create a pending-only profile; it cannot be matched until promoted."""
        with self._lock:
            profiles = self._read()
            self._check_new(profiles, name, role)
            now = _now_iso()
            profile = VoiceProfile(
                id=uuid.uuid4().hex,
                name=name,
                role=role,
                created_at=now,
                updated_at=now,
                pending_embeddings=[
                    VoiceEmbedding(
                        vector=_as_vector(embedding),
                        source_type=SOURCE_OPTIMIZATION,
                        source_duration_ms=int(duration_ms or DEFAULT_PENDING_DURATION_MS),
                        created_at=now,
                        # The first sample is its own reference.
                        similarity_to_reference=1.0,
                        transcription_id=transcription_id,
                    )
                ],
            )
            # Promotion is only evaluated once a second sighting arrives.
            profiles.append(profile)
            self._write(profiles)
        logger.info('pending profile "%s" created (%d ms)', name, profile.pending_duration_ms)
        return profile

    def add_pending_embedding(
        self,
        profile_id: str,
        embedding: Sequence[float] | np.ndarray,
        *,
        duration_ms: int | None = None,
        transcription_id: str | None = None,
    ) -> VoiceProfile:
        with self._lock:
            profiles = self._read()
            profile = next((p for p in profiles if p.id == profile_id), None)
            if profile is None:
                raise ProfileError(f"voice profile {profile_id} not found")

            vector = _as_vector(embedding)
            if profile.centroid is not None:
                similarity = cosine_similarity(vector, profile.centroid)
            elif profile.pending_embeddings:
                reference = unit_mean(e.vector for e in profile.pending_embeddings)
                similarity = cosine_similarity(vector, reference)
            else:
                similarity = 1.0

            sample = VoiceEmbedding(
                vector=vector,
                source_type=SOURCE_OPTIMIZATION,
                source_duration_ms=int(duration_ms or DEFAULT_PENDING_DURATION_MS),
                similarity_to_reference=similarity,
                transcription_id=transcription_id,
            )
            profile.pending_embeddings.append(sample)
            profile.updated_at = _now_iso()
            logger.info(
                'pending sample added to "%s" (%.1fs, similarity %.3f)',
                profile.name,
                sample.source_duration_ms / 1000.0,
                similarity,
            )
            self._check_promotion(profile)
            self._write(profiles)
            return profile

    def _check_promotion(self, profile: VoiceProfile) -> bool:
        """Apply the duration and stability gates; returns True on promotion.

        A failed stability gate discards the pending pool only when the
        profile already has confirmed embeddings. Profiles built purely from
        pending samples keep accumulating instead.
        """

        pending = profile.pending_embeddings
        if not pending:
            return False
        total_ms = profile.pending_duration_ms
        if total_ms < self.promotion.min_duration_ms:
            return False

        scores = [e.similarity_to_reference or 0.0 for e in pending]
        mean_similarity = sum(scores) / len(scores)
        # Small tolerance so a mean that is exactly the threshold in decimal passes.
        if mean_similarity + 1e-9 < self.promotion.min_mean_similarity:
            if profile.confirmed_embeddings:
                logger.info(
                    'promotion rejected for "%s" (mean similarity %.3f); discarding %d pending',
                    profile.name,
                    mean_similarity,
                    len(pending),
                )
                profile.pending_embeddings = []
            else:
                logger.info(
                    'promotion deferred for "%s" (mean similarity %.3f, no confirmed reference)',
                    profile.name,
                    mean_similarity,
                )
            return False

        for sample in pending:
            profile.confirmed_embeddings.append(
                VoiceEmbedding(
                    vector=sample.vector,
                    source_type=sample.source_type,
                    source_duration_ms=sample.source_duration_ms,
                    created_at=sample.created_at,
                )
            )
        profile.pending_embeddings = []
        profile.recompute_centroid()
        profile.updated_at = _now_iso()
        logger.info('promoted pending samples for "%s" (%.1fs total)', profile.name, total_ms / 1000.0)
        return True

    def update_profile(
        self,
        profile_id: str,
        *,
        name: str | None = None,
        role: str | None = None,
    ) -> VoiceProfile:
        with self._lock:
            profiles = self._read()
            profile = next((p for p in profiles if p.id == profile_id), None)
            if profile is None:
                raise ProfileError(f"voice profile {profile_id} not found")
            if name is not None and name.lower() != profile.name.lower():
                if any(p.name.lower() == name.lower() for p in profiles if p.id != profile_id):
                    raise ProfileError(f'a voice profile for "{name}" already exists')
            if role == FORBIDDEN_ROLE:
                raise ProfileError("patients cannot be stored as voice profiles")
            if name is not None:
                profile.name = name
            if role is not None:
                profile.role = role
            profile.updated_at = _now_iso()
            self._write(profiles)
            return profile

    def delete_profile(self, profile_id: str) -> None:
        with self._lock:
            profiles = self._read()
            remaining = [p for p in profiles if p.id != profile_id]
            if len(remaining) == len(profiles):
                raise ProfileError(f"voice profile {profile_id} not found")
            self._write(remaining)
        logger.info("deleted voice profile %s", profile_id)

    def clear_all_profiles(self) -> None:
        with self._lock:
            self._write([])


__all__ = [
    "PromotionSettings",
    "VoiceEmbedding",
    "VoiceProfile",
    "VoiceProfileStore",
]
