"""
EQVault - Anonymous Aggregator
Merges many participants' pattern commitments into collective statistics.

k-anonymity floor: no AnonymousAggregation is produced for fewer than
`minimum_participants` contributions. Below the floor the request is
refused outright, never approximated.
"""

import base64
import hashlib
import json
import math
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import uuid4

import structlog

from .anonymize import anonymize_pattern
from .audit import AGGREGATION_REFUSED, PrivacyAuditLog
from .errors import InsufficientParticipants, InvalidInput
from .models import AnonymousAggregation, CollectivePattern, EQPattern, parse_timestamp

logger = structlog.get_logger(__name__)

DEFAULT_MINIMUM_PARTICIPANTS = 10
PREVALENCE_FLOOR = 0.1  # keep patterns seen in more than 10% of participants
COMMITMENT_LEVEL = 9    # type + confidence band + year


def pattern_commitment(pattern: EQPattern) -> str:
    """
    Hash of a pattern's coarse, anonymized features.

    Two participants with the same kind of pattern in the same band
    and year produce the same commitment, which is what makes
    prevalence countable without seeing the pattern.
    """
    coarse = anonymize_pattern(pattern, COMMITMENT_LEVEL)
    features = {
        "type": coarse.type,
        "confidence_range": coarse.confidence_range,
        "time_range": coarse.time_range,
    }
    digest = hashlib.sha256(json.dumps(features, sort_keys=True).encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")


@dataclass(frozen=True)
class AggregationContribution:
    """One participant's anonymous submission: commitments only."""
    aggregation_id: str
    timestamp: datetime
    pattern_hashes: Tuple[str, ...]
    participant_proof: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "aggregation_id": self.aggregation_id,
            "timestamp": self.timestamp.isoformat(),
            "pattern_hashes": list(self.pattern_hashes),
            "participant_proof": self.participant_proof,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AggregationContribution":
        try:
            return cls(
                aggregation_id=data["aggregation_id"],
                timestamp=parse_timestamp(data["timestamp"]),
                pattern_hashes=tuple(data["pattern_hashes"]),
                participant_proof=data["participant_proof"],
            )
        except (KeyError, TypeError) as e:
            raise InvalidInput(f"Malformed aggregation contribution: {e}") from e


class AnonymousAggregator:
    """Builds AnonymousAggregation records from contributions."""

    def __init__(
        self,
        minimum_participants: int = DEFAULT_MINIMUM_PARTICIPANTS,
        audit: Optional[PrivacyAuditLog] = None,
    ):
        if minimum_participants < 1:
            raise ValueError("minimum_participants must be at least 1")
        self.minimum_participants = minimum_participants
        self.audit = audit

    def create(self, contributions: Sequence[AggregationContribution]) -> AnonymousAggregation:
        """
        Aggregate contributions.

        Raises:
            InsufficientParticipants: below the k-anonymity floor
        """
        # One participant, one vote (resubmissions collapse)
        participants: Dict[str, set] = {}
        for contribution in contributions:
            participants.setdefault(contribution.participant_proof, set()).update(
                contribution.pattern_hashes
            )

        participant_count = len(participants)
        if participant_count < self.minimum_participants:
            logger.warning(
                "aggregation_refused",
                participants=participant_count,
                minimum=self.minimum_participants,
            )
            if self.audit:
                self.audit.log_event(
                    AGGREGATION_REFUSED, "aggregator", "refused",
                    detail=f"minimum {self.minimum_participants} participants",
                    count=participant_count,
                )
            raise InsufficientParticipants(participant_count, self.minimum_participants)

        counts: Counter = Counter()
        for hashes in participants.values():
            counts.update(hashes)

        collective = [
            CollectivePattern(
                pattern=commitment,
                prevalence=count / participant_count,
                anonymity_preserved=True,
                insight_value=self.collective_insight(count, participant_count),
            )
            for commitment, count in sorted(counts.items())
            if count / participant_count > PREVALENCE_FLOOR
        ]
        collective.sort(key=lambda cp: cp.prevalence, reverse=True)

        return AnonymousAggregation(
            id=f"agg_{uuid4().hex[:16]}",
            participant_count=participant_count,
            minimum_participants=self.minimum_participants,
            collective_patterns=collective,
            community_insights=self.community_insights(collective),
            k_anonymity_score=min(participant_count, len(counts)),
            dp_noise=1 / math.sqrt(participant_count),
        )

    @staticmethod
    def collective_insight(count: int, total: int) -> str:
        return f"Observed in {count / total * 100:.1f}% of participants"

    @staticmethod
    def community_insights(patterns: Sequence[CollectivePattern]) -> List[str]:
        insights = []
        if patterns:
            most_common = max(patterns, key=lambda p: p.prevalence)
            insights.append(f"Most common pattern: {most_common.insight_value}")

        majority = [p for p in patterns if p.prevalence > 0.5]
        if majority:
            insights.append(f"{len(majority)} patterns shared by majority of community")
        return insights
