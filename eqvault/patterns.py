"""
EQVault - Pattern Detector
Compares the current metrics snapshot with a trailing history window
and flags named behavioral patterns.

Stateless: history is passed in by the caller (oldest -> newest).
Rules fire independently; output follows rule declaration order.
"""

from dataclasses import dataclass
from typing import Callable, List, Sequence

import structlog

from .models import EQMetrics, EQPattern, PatternType, PrivacyLevel, new_pattern_id

logger = structlog.get_logger(__name__)


def trailing_average(history: Sequence[EQMetrics], window: int, value: Callable[[EQMetrics], float]) -> float:
    recent = history[-window:]
    return sum(value(m) for m in recent) / window


@dataclass(frozen=True)
class PatternRule:
    """One threshold rule over a trailing window."""
    pattern_type: PatternType
    min_history: int
    confidence: float
    insight: str
    suggestion: str
    check: Callable[[EQMetrics, Sequence[EQMetrics]], bool]

    def matches(self, current: EQMetrics, history: Sequence[EQMetrics]) -> bool:
        if len(history) < self.min_history:
            return False  # Not enough history yet
        return self.check(current, history)


def _stress_resilience(current: EQMetrics, history: Sequence[EQMetrics]) -> bool:
    avg = trailing_average(history, 3, lambda m: m.emotional_resilience)
    return current.emotional_resilience > avg * 1.2


def _empathy_spike(current: EQMetrics, history: Sequence[EQMetrics]) -> bool:
    avg = trailing_average(history, 2, lambda m: m.empathy)
    return current.empathy > avg * 1.3 and current.empathy > 75


def _regulation_success(current: EQMetrics, history: Sequence[EQMetrics]) -> bool:
    avg = trailing_average(history, 3, lambda m: m.self_regulation)
    return current.self_regulation > avg * 1.2 and current.self_regulation >= 60


def _awareness_expansion(current: EQMetrics, history: Sequence[EQMetrics]) -> bool:
    avg = trailing_average(history, 3, lambda m: m.self_awareness)
    return current.self_awareness > avg * 1.15 and current.self_awareness > 70


def _social_harmony(current: EQMetrics, history: Sequence[EQMetrics]) -> bool:
    # Sustained, not a spike
    return current.social_skills >= 80 and all(m.social_skills >= 70 for m in history[-3:])


def _emotional_breakthrough(current: EQMetrics, history: Sequence[EQMetrics]) -> bool:
    avg = trailing_average(history, 3, lambda m: m.overall())
    return current.overall() > avg * 1.25


DEFAULT_RULES = (
    PatternRule(
        pattern_type=PatternType.STRESS_RESILIENCE,
        min_history=3,
        confidence=0.85,
        insight="Strong recovery from emotional challenges detected",
        suggestion="Your resilience is growing. Consider sharing this strength with others who might benefit.",
        check=_stress_resilience,
    ),
    PatternRule(
        pattern_type=PatternType.EMPATHY_SPIKE,
        min_history=2,
        confidence=0.92,
        insight="Heightened empathetic response patterns observed",
        suggestion="Your empathy is exceptionally strong right now. This is a powerful time for deep connections.",
        check=_empathy_spike,
    ),
    PatternRule(
        pattern_type=PatternType.REGULATION_SUCCESS,
        min_history=3,
        confidence=0.80,
        insight="Emotional challenges are being met with steadier regulation",
        suggestion="Notice what helped you stay steady this time, and name it so you can reach for it again.",
        check=_regulation_success,
    ),
    PatternRule(
        pattern_type=PatternType.AWARENESS_EXPANSION,
        min_history=3,
        confidence=0.78,
        insight="Self-reflection has become more frequent",
        suggestion="Your reflective practice is paying off. A short daily check-in will keep this momentum.",
        check=_awareness_expansion,
    ),
    PatternRule(
        pattern_type=PatternType.SOCIAL_HARMONY,
        min_history=3,
        confidence=0.75,
        insight="Consistently positive social interactions",
        suggestion="Your relationships are in a good rhythm. Reach out to someone you have not connected with lately.",
        check=_social_harmony,
    ),
    PatternRule(
        pattern_type=PatternType.EMOTIONAL_BREAKTHROUGH,
        min_history=3,
        confidence=0.88,
        insight="Broad improvement across emotional dimensions",
        suggestion="Something shifted for you recently. Take a moment to write down what changed.",
        check=_emotional_breakthrough,
    ),
)


class PatternDetector:
    """
    Flags patterns without exposing raw data.

    New patterns are tagged with `privacy_level` (device-only by
    default); the user re-classifies them before anything can sync.
    """

    def __init__(
        self,
        rules: Sequence[PatternRule] = DEFAULT_RULES,
        privacy_level: PrivacyLevel = PrivacyLevel.DEVICE_ONLY,
    ):
        self.rules = tuple(rules)
        self.privacy_level = privacy_level

    def detect(self, current: EQMetrics, history: Sequence[EQMetrics]) -> List[EQPattern]:
        patterns = [
            EQPattern(
                id=new_pattern_id(),
                type=rule.pattern_type,
                confidence=rule.confidence,
                detected_at=current.last_updated,
                anonymized_insight=rule.insight,
                growth_suggestion=rule.suggestion,
                privacy_level=self.privacy_level,
            )
            for rule in self.rules
            if rule.matches(current, history)
        ]

        if patterns:
            logger.info("patterns_detected", types=[p.type.value for p in patterns])
        return patterns
