"""
EQVault - Metrics Calculator
Reduces a batch of emotional signals into nine bounded EQ scores.

🔒 100% Local. Nothing on this path holds a network client: the
processor below is built from a calculator and a local store only,
so zero egress is a property of the object graph, not a runtime check.
"""

from typing import Callable, List, Optional, Sequence

import structlog

from .errors import InvalidInput
from .local_db import SecureLocalStore
from .models import EmotionalSignal, EQMetrics, Outcome, utcnow

logger = structlog.get_logger(__name__)


def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


class MetricsCalculator:
    """
    Pure function from signals to EQMetrics.

    Each subscale is computed independently from a filtered subset
    of the batch, then clamped to [0, 100]. A ratio whose denominator
    set is empty yields NEUTRAL_SCORE instead of dividing by zero.
    """

    NEUTRAL_SCORE = 50.0

    # Scaling factors
    WEIGHTS = {
        "self_awareness": 1.2,     # Reflection is rare, reward it
        "empathy": 20.0,           # Summed intensity per signal
        "resilience_bonus": 1.1,   # Demonstrated recovery
        "smooth_transition": 0.7,  # Smoothness threshold
        "complexity_step": 5.0,    # Per distinct type/category
    }

    # Signal vocabulary
    SELF_REFLECTION = "self_reflection"
    REGULATION_SUCCESS = "regulation_success"
    EMOTIONAL_CHALLENGE = "emotional_challenge"
    MOTIVATION_TYPES = ("goal_pursuit", "persistence")
    EMPATHY_TYPES = ("emotional_resonance", "perspective_taking")
    RECOVERY = "recovery"
    TRANSITION = "emotional_transition"
    SOCIAL_CATEGORY = "social"

    def __init__(self, clock: Callable = utcnow):
        self.clock = clock

    def calculate(self, signals: Sequence[EmotionalSignal]) -> EQMetrics:
        """
        Analyze a batch of signals.

        Raises:
            InvalidInput: if the batch is empty
        """
        if not signals:
            raise InvalidInput("Cannot calculate metrics from an empty signal batch")

        signals = list(signals)
        return EQMetrics(
            self_awareness=self.calculate_self_awareness(signals),
            self_regulation=self.calculate_self_regulation(signals),
            motivation=self.calculate_motivation(signals),
            empathy=self.calculate_empathy(signals),
            social_skills=self.calculate_social_skills(signals),
            emotional_resilience=self.calculate_resilience(signals),
            emotional_flexibility=self.calculate_flexibility(signals),
            emotional_depth=self.calculate_depth(signals),
            emotional_authenticity=self.calculate_authenticity(signals),
            last_updated=self.clock(),
            confidence_score=self.calculate_confidence(signals),
            data_points=len(signals),
        )

    # === CORE DIMENSIONS ===

    def calculate_self_awareness(self, signals: List[EmotionalSignal]) -> float:
        reflections = [s for s in signals if s.type == self.SELF_REFLECTION]
        score = len(reflections) / len(signals) * 100
        return clamp(score * self.WEIGHTS["self_awareness"])

    def calculate_self_regulation(self, signals: List[EmotionalSignal]) -> float:
        """Regulation successes per emotional challenge."""
        successes = [s for s in signals if s.type == self.REGULATION_SUCCESS]
        challenges = [s for s in signals if s.type == self.EMOTIONAL_CHALLENGE]

        if not challenges:
            return self.NEUTRAL_SCORE  # No challenges, nothing to regulate

        return clamp(len(successes) / len(challenges) * 100)

    def calculate_motivation(self, signals: List[EmotionalSignal]) -> float:
        motivated = [s for s in signals if s.type in self.MOTIVATION_TYPES]
        return clamp(len(motivated) / len(signals) * 100)

    def calculate_empathy(self, signals: List[EmotionalSignal]) -> float:
        """Weights summed intensity, not just count."""
        depth = sum(s.intensity or 0.0 for s in signals if s.type in self.EMPATHY_TYPES)
        return clamp(depth / len(signals) * self.WEIGHTS["empathy"])

    def calculate_social_skills(self, signals: List[EmotionalSignal]) -> float:
        social = [s for s in signals if s.category == self.SOCIAL_CATEGORY]
        if not social:
            return self.NEUTRAL_SCORE

        positive = [s for s in social if s.outcome is Outcome.POSITIVE]
        return clamp(len(positive) / len(social) * 100)

    # === ADVANCED METRICS ===

    def calculate_resilience(self, signals: List[EmotionalSignal]) -> float:
        challenges = [s for s in signals if s.type == self.EMOTIONAL_CHALLENGE]
        recoveries = [s for s in signals if s.type == self.RECOVERY]

        if not challenges:
            return self.NEUTRAL_SCORE

        resilience = len(recoveries) / len(challenges) * 100
        return clamp(resilience * self.WEIGHTS["resilience_bonus"])

    def calculate_flexibility(self, signals: List[EmotionalSignal]) -> float:
        transitions = [s for s in signals if s.type == self.TRANSITION]
        if not transitions:
            return self.NEUTRAL_SCORE

        threshold = self.WEIGHTS["smooth_transition"]
        smooth = [s for s in transitions if s.smoothness is not None and s.smoothness > threshold]
        return clamp(len(smooth) / len(transitions) * 100)

    def calculate_depth(self, signals: List[EmotionalSignal]) -> float:
        """Half average intensity, half emotional complexity."""
        avg_intensity = sum(s.intensity or 0.0 for s in signals) / len(signals)
        complexity = self.calculate_complexity(signals)
        # intensity is 0..1; lift it to the 0..100 scale of complexity
        return clamp((avg_intensity * 100 * 50 + complexity * 50) / 100)

    def calculate_authenticity(self, signals: List[EmotionalSignal]) -> float:
        authentic = [s for s in signals if s.authentic is True]
        return clamp(len(authentic) / len(signals) * 100)

    # === CONFIDENCE ===

    def calculate_confidence(self, signals: List[EmotionalSignal]) -> float:
        """60% signal quality, 40% pairwise consistency."""
        # quality is 0..1; lifted to percent to match consistency
        quality = sum(s.quality or 0.0 for s in signals) / len(signals) * 100
        consistency = self.calculate_consistency(signals)
        return clamp((quality * 60 + consistency * 40) / 100)

    def calculate_complexity(self, signals: List[EmotionalSignal]) -> float:
        unique_types = len({s.type for s in signals})
        unique_categories = len({s.category for s in signals})
        return clamp((unique_types + unique_categories) * self.WEIGHTS["complexity_step"])

    def calculate_consistency(self, signals: List[EmotionalSignal]) -> float:
        if len(signals) < 2:
            return 100.0

        total = sum(
            self.signal_similarity(previous, current)
            for previous, current in zip(signals, signals[1:])
        )
        return total / (len(signals) - 1) * 100

    @staticmethod
    def signal_similarity(first: EmotionalSignal, second: EmotionalSignal) -> float:
        similarity = 0.0
        if first.type == second.type:
            similarity += 0.3
        if first.category == second.category:
            similarity += 0.3
        if abs((first.intensity or 0.0) - (second.intensity or 0.0)) < 0.2:
            similarity += 0.4
        return similarity


class LocalEQProcessor:
    """
    The local processing path: signals -> metrics -> encrypted store.

    Holds no transport. Encryption of a snapshot completes before
    its persistence write (see SecureLocalStore).
    """

    def __init__(self, store: SecureLocalStore, calculator: Optional[MetricsCalculator] = None):
        self.store = store
        self.calculator = calculator or MetricsCalculator()

    async def process_signals(self, signals: Sequence[EmotionalSignal]) -> EQMetrics:
        metrics = self.calculator.calculate(signals)
        await self.store.save_metrics(metrics)
        logger.info(
            "signals_processed",
            data_points=metrics.data_points,
            confidence=round(metrics.confidence_score, 1),
        )
        return metrics

