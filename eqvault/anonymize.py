"""
EQVault - Anonymization & Differential Privacy
Turns an EQPattern into a payload that is safe to leave the device.

Anonymization level 0-10 (higher = more anonymous):

    timestamp     exact (<3), date (<6), month (<9), year
    confidence    exact (<5), 20-point band
    insight text  kept below 8
    suggestion    kept below 6
    jitter        added above 8

Known gap: noise uses a fixed epsilon per call. Nothing tracks the
cumulative privacy budget across repeated contributions.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from .errors import ConsentRequired
from .models import EQPattern, PrivacyLevel, validate_anonymization_level

DEFAULT_EPSILON = 1.0
CONFIDENCE_BANDS = ((0, 20), (20, 40), (40, 60), (60, 80), (80, 100))


def anonymize_timestamp(moment: datetime, level: int) -> str:
    if level < 3:
        return moment.isoformat()
    if level < 6:
        return moment.date().isoformat()
    if level < 9:
        return f"{moment.year}-{moment.month:02d}"
    return str(moment.year)


def anonymize_confidence(confidence: float, level: int) -> str:
    """Confidence (0..1) as a percentage, exact or banded."""
    percent = confidence * 100
    if level < 5:
        return f"{percent:.1f}"

    for low, high in CONFIDENCE_BANDS:
        if low <= percent <= high:
            return f"{low}-{high}"
    return "unknown"


def laplace_noise(epsilon: float, rng: Optional[np.random.Generator] = None) -> float:
    """One draw from Laplace(0, 1/epsilon)."""
    if epsilon <= 0:
        raise ValueError("epsilon must be positive")
    rng = rng or np.random.default_rng()
    return float(rng.laplace(0.0, 1.0 / epsilon))


def assert_may_leave_device(pattern: EQPattern) -> None:
    """Egress gate. Device-only patterns never pass, for any configuration."""
    if not pattern.privacy_level.leaves_device:
        raise ConsentRequired(f"Pattern {pattern.id} is device-only and cannot leave this device")


def shareable(patterns: Sequence[EQPattern]) -> List[EQPattern]:
    return [p for p in patterns if p.privacy_level is not PrivacyLevel.DEVICE_ONLY]


@dataclass(frozen=True)
class AnonymizedPattern:
    """Sync payload for one pattern. Built only from permitted fields."""
    type: str
    confidence_range: str
    time_range: str
    privacy_level: str
    noise: float
    insight: Optional[str] = None
    growth_suggestion: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "type": self.type,
            "confidence_range": self.confidence_range,
            "time_range": self.time_range,
            "privacy_level": self.privacy_level,
            "noise": self.noise,
        }
        # Stripped fields are absent, not null
        if self.insight is not None:
            data["insight"] = self.insight
        if self.growth_suggestion is not None:
            data["growth_suggestion"] = self.growth_suggestion
        return data


def anonymize_pattern(
    pattern: EQPattern,
    level: int,
    rng: Optional[np.random.Generator] = None,
) -> AnonymizedPattern:
    assert_may_leave_device(pattern)
    validate_anonymization_level(level)
    rng = rng or np.random.default_rng()

    return AnonymizedPattern(
        type=pattern.type.value,
        confidence_range=anonymize_confidence(pattern.confidence, level),
        time_range=anonymize_timestamp(pattern.detected_at, level),
        privacy_level=pattern.privacy_level.value,
        noise=float(rng.random()) * 0.1 if level > 8 else 0.0,
        insight=pattern.anonymized_insight if level < 8 else None,
        growth_suggestion=pattern.growth_suggestion if level < 6 else None,
    )


def add_differential_privacy_noise(
    patterns: Sequence[EQPattern],
    epsilon: float = DEFAULT_EPSILON,
    rng: Optional[np.random.Generator] = None,
) -> List[EQPattern]:
    """
    Laplace noise on confidence and detection time (categorical type untouched).
    Confidence is clipped back into 0..1 after noising.
    """
    rng = rng or np.random.default_rng()
    noisy = []
    for pattern in patterns:
        assert_may_leave_device(pattern)
        confidence = pattern.confidence + laplace_noise(epsilon, rng) * 0.1
        shift_ms = laplace_noise(epsilon / 3_600_000, rng)  # scale of about an hour
        noisy.append(replace(
            pattern,
            confidence=min(1.0, max(0.0, confidence)),
            detected_at=pattern.detected_at + timedelta(milliseconds=shift_ms),
        ))
    return noisy
