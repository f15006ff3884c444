"""
EQVault - Data Model
Records passed between the local engine, the store and the sync layer.

PRIVACY: EmotionalSignal is an ephemeral input and is never persisted.
EQMetrics is the only record that is ever encrypted for storage.
"""

import base64
import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from .errors import InsufficientParticipants, InvalidInput


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string (or pass through a datetime) as aware UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise InvalidInput(f"Invalid timestamp: {value!r}") from e
    else:
        raise InvalidInput(f"Invalid timestamp: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ============================================================
# ENUMERATIONS
# ============================================================

class Outcome(Enum):
    """Outcome of a social signal."""
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"


class PatternType(Enum):
    """Closed set of behavioral patterns the detector can emit."""
    STRESS_RESILIENCE = "stress-resilience"
    EMPATHY_SPIKE = "empathy-spike"
    SOCIAL_HARMONY = "social-harmony"
    EMOTIONAL_BREAKTHROUGH = "emotional-breakthrough"
    REGULATION_SUCCESS = "regulation-success"
    AWARENESS_EXPANSION = "awareness-expansion"


class PrivacyLevel(Enum):
    """How far a pattern may travel."""
    DEVICE_ONLY = "device-only"                      # Never leaves device
    ANONYMOUS_AGGREGATE = "anonymous-aggregate"      # Anonymous pools only
    SELECTIVE_SHARE = "selective-share"              # User picks what to share
    RESEARCH_CONTRIBUTION = "research-contribution"  # Opt-in research

    @property
    def leaves_device(self) -> bool:
        return self is not PrivacyLevel.DEVICE_ONLY


class EncryptionStandard(Enum):
    AES256_GCM = "AES256_GCM"
    CHACHA20_POLY1305 = "CHACHA20_POLY1305"
    XCHACHA20_POLY1305 = "XCHACHA20_POLY1305"


class ClaimType(Enum):
    HIGH_EMPATHY = "high-empathy"
    EMOTIONAL_STABILITY = "emotional-stability"
    GROWTH_ACHIEVEMENT = "growth-achievement"
    PATTERN_MASTERY = "pattern-mastery"


class CoachingStyle(Enum):
    GENTLE_GUIDE = "gentle-guide"
    DIRECT_MENTOR = "direct-mentor"
    SOCRATIC_QUESTIONER = "socratic-questioner"
    SUPPORTIVE_COMPANION = "supportive-companion"


# ============================================================
# SIGNALS
# ============================================================

_UNIT_FIELDS = ("intensity", "quality", "smoothness")


@dataclass(frozen=True)
class EmotionalSignal:
    """
    A single emotional observation from the capture collaborator.
    Immutable and never written to disk.
    """
    type: str
    timestamp: datetime
    category: Optional[str] = None
    intensity: Optional[float] = None   # 0..1
    authentic: Optional[bool] = None
    outcome: Optional[Outcome] = None
    quality: Optional[float] = None     # 0..1
    smoothness: Optional[float] = None  # 0..1, transitions only

    def __post_init__(self):
        if not self.type:
            raise InvalidInput("Signal type is required")
        for name in _UNIT_FIELDS:
            value = getattr(self, name)
            if value is not None and not 0.0 <= value <= 1.0:
                raise InvalidInput(f"Signal {name} must be within 0..1, got {value}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EmotionalSignal":
        """Parse one record of the capture format (camelCase or snake_case)."""
        if not isinstance(data, dict):
            raise InvalidInput(f"Signal must be an object, got {type(data).__name__}")
        if "type" not in data or "timestamp" not in data:
            raise InvalidInput("Signal requires 'type' and 'timestamp'")

        outcome = data.get("outcome")
        if outcome is not None:
            try:
                outcome = Outcome(outcome)
            except ValueError as e:
                raise InvalidInput(f"Unknown outcome: {outcome!r}") from e

        def _unit(key: str) -> Optional[float]:
            value = data.get(key)
            if value is None:
                return None
            try:
                return float(value)
            except (TypeError, ValueError) as e:
                raise InvalidInput(f"Signal {key} must be numeric, got {value!r}") from e

        return cls(
            type=str(data["type"]),
            timestamp=parse_timestamp(data["timestamp"]),
            category=data.get("category"),
            intensity=_unit("intensity"),
            authentic=data.get("authentic"),
            outcome=outcome,
            quality=_unit("quality"),
            smoothness=_unit("smoothness"),
        )


# ============================================================
# METRICS
# ============================================================

SUBSCALES = (
    "self_awareness",
    "self_regulation",
    "motivation",
    "empathy",
    "social_skills",
    "emotional_resilience",
    "emotional_flexibility",
    "emotional_depth",
    "emotional_authenticity",
)


@dataclass(frozen=True)
class EQMetrics:
    """Nine bounded [0,100] subscales for one processing batch."""
    # Core emotional dimensions
    self_awareness: float
    self_regulation: float
    motivation: float
    empathy: float
    social_skills: float

    # Advanced metrics
    emotional_resilience: float
    emotional_flexibility: float
    emotional_depth: float
    emotional_authenticity: float

    # Metadata (never leaves device)
    last_updated: datetime
    confidence_score: float
    data_points: int

    def __post_init__(self):
        for name in SUBSCALES + ("confidence_score",):
            value = getattr(self, name)
            if not 0.0 <= value <= 100.0:
                raise InvalidInput(f"{name} must be within 0..100, got {value}")

    def subscales(self) -> Dict[str, float]:
        return {name: getattr(self, name) for name in SUBSCALES}

    def overall(self) -> float:
        """Mean of the nine subscales."""
        return sum(self.subscales().values()) / len(SUBSCALES)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = self.subscales()
        data["last_updated"] = self.last_updated.isoformat()
        data["confidence_score"] = self.confidence_score
        data["data_points"] = self.data_points
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EQMetrics":
        try:
            return cls(
                last_updated=parse_timestamp(data["last_updated"]),
                confidence_score=float(data["confidence_score"]),
                data_points=int(data["data_points"]),
                **{name: float(data[name]) for name in SUBSCALES},
            )
        except KeyError as e:
            raise InvalidInput(f"Metrics record missing field: {e}") from e

    def to_json_bytes(self) -> bytes:
        """Canonical serialization (sorted keys, compact) used for encryption."""
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_json_bytes(cls, payload: bytes) -> "EQMetrics":
        return cls.from_dict(json.loads(payload.decode("utf-8")))


# ============================================================
# PATTERNS
# ============================================================

def new_pattern_id() -> str:
    return f"pattern_{uuid4().hex[:16]}"


@dataclass(frozen=True)
class EQPattern:
    """A detected behavioral trend. Never carries raw emotional data."""
    id: str
    type: PatternType
    confidence: float  # 0..1
    detected_at: datetime
    anonymized_insight: str
    growth_suggestion: str
    privacy_level: PrivacyLevel = PrivacyLevel.DEVICE_ONLY

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise InvalidInput(f"Pattern confidence must be within 0..1, got {self.confidence}")

    def with_privacy_level(self, level: PrivacyLevel) -> "EQPattern":
        """Re-classify a pattern, e.g. after the user opts to share it."""
        return replace(self, privacy_level=level)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "confidence": self.confidence,
            "detected_at": self.detected_at.isoformat(),
            "anonymized_insight": self.anonymized_insight,
            "growth_suggestion": self.growth_suggestion,
            "privacy_level": self.privacy_level.value,
        }


# ============================================================
# STORAGE
# ============================================================

NONCE_BYTES = 12


@dataclass(frozen=True)
class SealedBox:
    """AEAD output. Stored format is base64(nonce + ciphertext + tag)."""
    nonce: bytes
    ciphertext: bytes

    def to_base64(self) -> str:
        return base64.b64encode(self.nonce + self.ciphertext).decode("ascii")

    @classmethod
    def from_base64(cls, value: str) -> "SealedBox":
        blob = base64.b64decode(value.encode("ascii"))
        if len(blob) <= NONCE_BYTES:
            raise InvalidInput("Sealed payload is too short")
        return cls(nonce=blob[:NONCE_BYTES], ciphertext=blob[NONCE_BYTES:])


@dataclass(frozen=True)
class PrivateEQData:
    """The only on-disk representation of EQ data."""
    encrypted_metrics: SealedBox
    encryption_standard: EncryptionStandard
    device_id: str
    storage_version: int = 1
    sync_enabled: bool = False
    last_sync_hash: Optional[str] = None
    selective_sync_patterns: Optional[List[str]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "encrypted_metrics": self.encrypted_metrics.to_base64(),
            "encryption_standard": self.encryption_standard.value,
            "device_id": self.device_id,
            "storage_version": self.storage_version,
            "sync_enabled": self.sync_enabled,
            "last_sync_hash": self.last_sync_hash,
            "selective_sync_patterns": self.selective_sync_patterns,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PrivateEQData":
        return cls(
            encrypted_metrics=SealedBox.from_base64(data["encrypted_metrics"]),
            encryption_standard=EncryptionStandard(data["encryption_standard"]),
            device_id=data["device_id"],
            storage_version=data.get("storage_version", 1),
            sync_enabled=data.get("sync_enabled", False),
            last_sync_hash=data.get("last_sync_hash"),
            selective_sync_patterns=data.get("selective_sync_patterns"),
        )


# ============================================================
# SYNC CONFIGURATION
# ============================================================

def validate_anonymization_level(level: int) -> int:
    if isinstance(level, bool) or not isinstance(level, int) or not 0 <= level <= 10:
        raise InvalidInput(f"Anonymization level must be an integer 0-10, got {level!r}")
    return level


@dataclass(frozen=True)
class PatternSyncPreference:
    pattern_type: PatternType
    sync_enabled: bool = False
    anonymization_level: int = 10

    def __post_init__(self):
        validate_anonymization_level(self.anonymization_level)


@dataclass
class SelectiveSyncConfig:
    """User-controlled boundaries for what syncs, and when."""
    sync_patterns: List[PatternSyncPreference]
    device_key_fingerprint: str
    require_explicit_consent: bool = False
    max_sync_frequency: int = 3600  # seconds between syncs
    sync_only_on_wifi: bool = True
    allow_anonymous_aggregation: bool = False
    config_id: str = field(default_factory=lambda: f"cfg_{uuid4().hex[:12]}")

    def preference_for(self, pattern_type: PatternType) -> Optional[PatternSyncPreference]:
        for pref in self.sync_patterns:
            if pref.pattern_type is pattern_type:
                return pref
        return None


# ============================================================
# AGGREGATION & PROOFS
# ============================================================

@dataclass(frozen=True)
class CollectivePattern:
    pattern: str  # commitment, never the pattern itself
    prevalence: float
    anonymity_preserved: bool
    insight_value: str


@dataclass(frozen=True)
class AnonymousAggregation:
    """Collective statistics. Refuses to exist below the participant floor."""
    id: str
    participant_count: int
    minimum_participants: int
    collective_patterns: List[CollectivePattern]
    community_insights: List[str]
    k_anonymity_score: int
    dp_noise: float

    def __post_init__(self):
        if self.participant_count < self.minimum_participants:
            raise InsufficientParticipants(self.participant_count, self.minimum_participants)


@dataclass(frozen=True)
class ZKProof:
    """
    Hash commitment binding a claim to evidence and time.

    Despite the name this is NOT a zero-knowledge proof: see proof.py.
    """
    proof_hash: str
    timestamp: datetime
    claim_type: ClaimType
    public_verification_key: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proof_hash": self.proof_hash,
            "timestamp": self.timestamp.isoformat(),
            "claim_type": self.claim_type.value,
            "public_verification_key": self.public_verification_key,
        }


# ============================================================
# COACHING
# ============================================================

@dataclass(frozen=True)
class GrowthMilestone:
    milestone_id: str
    achieved_at: datetime
    insight_gained: str
    next_steps: List[str]
    shareable: bool = False
    anonymized_version: Optional[str] = None


@dataclass(frozen=True)
class CoachingReport:
    style: CoachingStyle
    insights: List[str]
    milestones: List[GrowthMilestone]
    model_version: str
