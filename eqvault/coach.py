"""
EQVault - Local Coach
Style-specific coaching text from metrics and detected patterns.

Fully local and deterministic: identical inputs give identical output.
"""

from typing import AbstractSet, Callable, Dict, List, Sequence

from .models import (
    CoachingReport,
    CoachingStyle,
    EQMetrics,
    EQPattern,
    GrowthMilestone,
)

MODEL_VERSION = "1.0.0"


def _gentle(metrics: EQMetrics) -> str:
    if metrics.self_awareness > 80:
        return ("Your self-awareness is beautifully developed. "
                "Notice how this clarity ripples into all areas of your life.")
    return "Each moment of reflection strengthens your self-awareness. You're on a wonderful journey."


def _direct(metrics: EQMetrics) -> str:
    if metrics.self_regulation < 50:
        return ("Your emotional regulation needs attention. "
                "Practice pause-and-breathe techniques before reacting.")
    return "Strong emotional regulation detected. Use this skill to mentor others."


def _socratic(metrics: EQMetrics) -> str:
    return ("What patterns do you notice in your emotional responses? "
            "How might greater awareness serve you?")


def _supportive(metrics: EQMetrics) -> str:
    return ("You're doing important inner work. "
            "Every step forward, no matter how small, is valuable progress.")


BASE_INSIGHTS: Dict[CoachingStyle, Callable[[EQMetrics], str]] = {
    CoachingStyle.GENTLE_GUIDE: _gentle,
    CoachingStyle.DIRECT_MENTOR: _direct,
    CoachingStyle.SOCRATIC_QUESTIONER: _socratic,
    CoachingStyle.SUPPORTIVE_COMPANION: _supportive,
}


# (milestone id, subscale, threshold, insight, next steps, anonymized version)
MILESTONES = (
    ("empathy_master", "empathy", 90,
     "You've reached exceptional empathy levels",
     ["Share your gift wisely", "Protect your energy boundaries"],
     "User achieved Empathy Master level"),
    ("steady_core", "emotional_resilience", 90,
     "You recover from setbacks with remarkable steadiness",
     ["Notice what restores you", "Offer that steadiness to others"],
     "User achieved Steady Core level"),
    ("clear_mirror", "self_awareness", 90,
     "Your self-reflection has become a dependable habit",
     ["Keep a short daily check-in", "Reflect on patterns, not single moments"],
     "User achieved Clear Mirror level"),
)


class CoachingGenerator:
    """Renders insights: one base line for the style, then one line per pattern."""

    def generate(
        self,
        metrics: EQMetrics,
        patterns: Sequence[EQPattern],
        style: CoachingStyle = CoachingStyle.SUPPORTIVE_COMPANION,
        achieved: AbstractSet[str] = frozenset(),
    ) -> CoachingReport:
        return CoachingReport(
            style=style,
            insights=self.personalized_insights(metrics, patterns, style),
            milestones=self.check_growth_milestones(metrics, achieved),
            model_version=MODEL_VERSION,
        )

    def personalized_insights(
        self,
        metrics: EQMetrics,
        patterns: Sequence[EQPattern],
        style: CoachingStyle,
    ) -> List[str]:
        insights = [BASE_INSIGHTS[style](metrics)]
        insights.extend(pattern.growth_suggestion for pattern in patterns)
        return insights

    def check_growth_milestones(
        self,
        metrics: EQMetrics,
        achieved: AbstractSet[str] = frozenset(),
    ) -> List[GrowthMilestone]:
        """Milestones crossed by this snapshot and not already in `achieved`."""
        milestones = []
        for milestone_id, subscale, threshold, insight, next_steps, anonymized in MILESTONES:
            if milestone_id in achieved:
                continue
            if getattr(metrics, subscale) > threshold:
                milestones.append(GrowthMilestone(
                    milestone_id=milestone_id,
                    achieved_at=metrics.last_updated,
                    insight_gained=insight,
                    next_steps=list(next_steps),
                    shareable=True,
                    anonymized_version=anonymized,
                ))
        return milestones
