"""
EQVault - Value Creator
Monetization with full privacy control.

💰 What can earn value:
- Patterns explicitly re-classified as shareable (never device-only)
- Anonymized coaching content
- Research participation with explicit, informed consent

🔒 What never leaves the device:
- Raw emotional signals, personal identifiers, device information

Every entry point that can move value off the device takes an explicit
`consent` argument. Pricing itself is pure and never refuses by raising.
"""

import re
import secrets
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

import structlog

from .audit import RESEARCH_JOINED, RESEARCH_WITHDRAWN, VALUE_REFUSED, PrivacyAuditLog
from .errors import ConsentRequired, InvalidInput
from .models import EQPattern, PatternType, PrivacyLevel, utcnow

logger = structlog.get_logger(__name__)


# ============================================================
# PRICING TABLES
# ============================================================

PATTERN_BASE_VALUES = {
    PatternType.EMOTIONAL_BREAKTHROUGH: 100,
    PatternType.AWARENESS_EXPANSION: 90,
    PatternType.STRESS_RESILIENCE: 80,
    PatternType.EMPATHY_SPIKE: 70,
    PatternType.SOCIAL_HARMONY: 60,
    PatternType.REGULATION_SUCCESS: 50,
}

LISTABLE_LEVELS = (PrivacyLevel.ANONYMOUS_AGGREGATE, PrivacyLevel.SELECTIVE_SHARE)

PRICE_PER_PATTERN = 10.0
PRICE_PER_TYPE = 5.0
VOLUME_DISCOUNTS = ((10, 10), (50, 20), (100, 30))  # (quantity, percent off)
LISTING_LIFETIME = timedelta(days=30)

PROCESSING_FEE_RATE = 0.029
PROCESSING_FEE_FIXED = 0.30


class CompensationType(Enum):
    MONETARY = "MONETARY"
    INSIGHTS = "INSIGHTS"
    FEATURES = "FEATURES"
    RECOGNITION = "RECOGNITION"


COMPENSATION_RATES = {
    CompensationType.MONETARY: 50,     # $50 base
    CompensationType.INSIGHTS: 100,    # insight credits
    CompensationType.FEATURES: 1,      # premium features
    CompensationType.RECOGNITION: 10,  # recognition points
}

COMPENSATION_SCHEDULES = {
    CompensationType.MONETARY: "Monthly direct deposit",
    CompensationType.INSIGHTS: "Immediate credit to account",
    CompensationType.FEATURES: "Instant activation",
    CompensationType.RECOGNITION: "Weekly leaderboard update",
}

GUARANTEED_MINIMUM_SHARE = 0.5

RESEARCH_PRIVACY_GUARANTEES = [
    "Your identity is never revealed to researchers",
    "Data is aggregated with minimum 10 other participants",
    "You can withdraw at any time with full data deletion",
    "Differential privacy applied to all contributions",
    "Regular third-party privacy audits",
    "Compensation continues even after withdrawal",
]

WITHDRAWAL_PROCESS = {
    "steps": [
        "Open the research dashboard and choose withdraw",
        "Confirm withdrawal intent",
        "Choose data handling: delete all or keep anonymous aggregate",
        "Receive confirmation and final compensation",
    ],
    "timeframe": "Immediate effect",
    "data_handling": "Complete deletion within 24 hours",
    "compensation_impact": "Receive all earned compensation to date",
}

CONTENT_TITLES = {
    "beginner": "Introduction to Emotional Growth",
    "intermediate": "Advancing Your EQ Journey",
    "advanced": "Mastering Emotional Intelligence",
    "expert": "EQ Excellence and Beyond",
}


# ============================================================
# VALUE CONFIGURATION
# ============================================================

@dataclass(frozen=True)
class RevenueSplit:
    """Percentages of a value. Each share >= 0, total <= 100."""
    user_percentage: float = 70.0
    platform_percentage: float = 30.0
    research_contribution: float = 0.0

    def __post_init__(self):
        shares = (self.user_percentage, self.platform_percentage, self.research_contribution)
        if any(share < 0 for share in shares):
            raise InvalidInput("Revenue shares must be non-negative")
        if sum(shares) > 100:
            raise InvalidInput(f"Revenue shares sum to {sum(shares)}%, more than 100%")

    def apply(self, amount: float) -> Dict[str, float]:
        return {
            "user": amount * self.user_percentage / 100,
            "platform": amount * self.platform_percentage / 100,
            "research": amount * self.research_contribution / 100,
        }


@dataclass(frozen=True)
class ValueConfig:
    rarity_score: float = 1.0      # 0..1
    impact_potential: float = 1.0  # 0..1
    insight_value: float = 1.0     # 0..1
    revenue_share: RevenueSplit = field(default_factory=RevenueSplit)
    marketplace_listing_enabled: bool = False

    def __post_init__(self):
        for name in ("rarity_score", "impact_potential", "insight_value"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise InvalidInput(f"{name} must be within 0..1, got {value}")


@dataclass(frozen=True)
class ValueResult:
    success: bool
    privacy_guaranteed: bool = True
    reason: Optional[str] = None
    base_value: float = 0.0
    estimated_value: float = 0.0
    user_share: float = 0.0
    platform_share: float = 0.0
    research_share: float = 0.0
    listing_id: Optional[str] = None


# ============================================================
# RESEARCH
# ============================================================

@dataclass(frozen=True)
class CompensationModel:
    type: CompensationType
    description: str = ""
    amount: Optional[float] = None


@dataclass(frozen=True)
class DataShareScope:
    """What a participant agreed to share. Raw data is never in scope."""
    anonymized_patterns: bool = False
    aggregated_metrics: bool = False
    selective_insights: bool = False

    # Explicitly excluded, not settable
    raw_emotional_data: bool = field(default=False, init=False)
    personal_identifiers: bool = field(default=False, init=False)
    device_information: bool = field(default=False, init=False)


@dataclass(frozen=True)
class ResearchConsent:
    explicit_consent: bool
    understood_terms: bool
    data_share_scope: DataShareScope
    compensation_model: CompensationModel
    estimated_contribution: float = 1.0


@dataclass(frozen=True)
class ResearchParticipation:
    """
    Participation record. The three user rights are invariants of the
    record itself; no caller can construct one without them.
    """
    study_id: str
    participation_id: str
    consent_timestamp: datetime
    data_share_scope: DataShareScope
    compensation_model: CompensationModel

    consent_given: bool = field(default=True, init=False)
    withdrawal_right: bool = field(default=True, init=False)
    data_export_right: bool = field(default=True, init=False)
    deletion_right: bool = field(default=True, init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "study_id": self.study_id,
            "participation_id": self.participation_id,
            "consent_given": self.consent_given,
            "consent_timestamp": self.consent_timestamp.isoformat(),
            "data_share_scope": asdict(self.data_share_scope),
            "compensation_model": {
                "type": self.compensation_model.type.value,
                "description": self.compensation_model.description,
                "amount": self.compensation_model.amount,
            },
            "withdrawal_right": self.withdrawal_right,
            "data_export_right": self.data_export_right,
            "deletion_right": self.deletion_right,
        }


@dataclass(frozen=True)
class Compensation:
    amount: float
    type: CompensationType
    schedule: str
    guaranteed_minimum: float


@dataclass(frozen=True)
class ResearchResult:
    participation: ResearchParticipation
    compensation: Compensation
    privacy_guarantees: List[str]
    withdrawal_process: Dict[str, Any]

    @property
    def participation_id(self) -> str:
        return self.participation.participation_id


class ResearchRegistry:
    """Active research participations, keyed by study id. Caller-owned."""

    def __init__(self):
        self._participations: Dict[str, ResearchParticipation] = {}

    def __len__(self) -> int:
        return len(self._participations)

    def __contains__(self, study_id: str) -> bool:
        return study_id in self._participations

    def __iter__(self) -> Iterator[ResearchParticipation]:
        return iter(list(self._participations.values()))

    def add(self, participation: ResearchParticipation) -> None:
        self._participations[participation.study_id] = participation

    def get(self, study_id: str) -> Optional[ResearchParticipation]:
        return self._participations.get(study_id)

    def remove(self, study_id: str) -> ResearchParticipation:
        try:
            return self._participations.pop(study_id)
        except KeyError:
            raise InvalidInput(f"Not participating in study {study_id!r}") from None


# ============================================================
# MARKETPLACE & CONTENT
# ============================================================

@dataclass(frozen=True)
class ListingConfig:
    creator_percentage: float = 70.0
    platform_percentage: float = 20.0
    research_contribution: float = 10.0
    pricing_model: str = "FIXED"


@dataclass(frozen=True)
class PatternBundle:
    pattern_count: int
    pattern_types: List[str]
    average_confidence: float
    bundled_insights: List[str]
    created_at: datetime
    anonymity_level: str = "MAXIMUM"


@dataclass(frozen=True)
class BundlePricing:
    suggested_price: float
    minimum_price: float
    maximum_price: float
    pricing_model: str
    volume_discounts: List[Dict[str, int]]

    def price_for(self, quantity: int) -> float:
        """Unit price after the best applicable volume discount."""
        discount = 0
        for tier in self.volume_discounts:
            if quantity >= tier["quantity"]:
                discount = tier["discount"]
        return self.suggested_price * (100 - discount) / 100


@dataclass(frozen=True)
class MarketplaceListing:
    id: str
    anonymous_id: str
    bundle: PatternBundle
    pricing: BundlePricing
    revenue_share: RevenueSplit
    created_at: datetime
    expires_at: datetime
    privacy_level: str = "FULLY_ANONYMOUS"
    data_processing: str = "EDGE_ONLY"
    buyer_access: str = "INSIGHTS_ONLY"  # never raw data


@dataclass(frozen=True)
class TargetAudience:
    type: str
    level: str
    goal: str
    content_type: str = "guide"
    monetization_model: str = "one-time"
    suggested_price: float = 0.0


@dataclass(frozen=True)
class CoachingContent:
    id: str
    type: str
    title: str
    description: str
    insights: List[str]
    audience_type: str
    difficulty_level: str
    pricing: Dict[str, Any]
    privacy_guarantees: List[str]


# Order matters: e-mails before names, names before pronouns
_SCRUB_RULES = (
    (re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "[email]"),
    (re.compile(r"\b\d{4,}\b"), "[number]"),
    (re.compile(r"\b[A-Z][a-z]+\s[A-Z][a-z]+\b"), "[person]"),
    (re.compile(r"\b(?:i|me|my|mine|myself)\b", re.IGNORECASE), "one"),
    (re.compile(r"\b(?:you|your|yours|yourself)\b", re.IGNORECASE), "someone"),
)


def scrub_insight(text: str) -> str:
    """Remove personal references from free text."""
    for pattern, replacement in _SCRUB_RULES:
        text = pattern.sub(replacement, text)
    return text


# ============================================================
# REVENUE
# ============================================================

@dataclass(frozen=True)
class RevenueSource:
    type: str  # 'marketplace', 'research', 'coaching', 'aggregation'
    revenue_share: RevenueSplit = field(default_factory=RevenueSplit)


@dataclass(frozen=True)
class RevenueRecord:
    transaction_id: str
    timestamp: datetime
    gross_amount: float
    source: str
    user: float
    platform: float
    research: float
    processing_fee: float
    privacy_preserved: bool = True


class RevenueLedger:
    """Locally held revenue history. Caller-owned."""

    def __init__(self):
        self.records: List[RevenueRecord] = []

    def __len__(self) -> int:
        return len(self.records)

    def add(self, record: RevenueRecord) -> None:
        self.records.append(record)

    @property
    def user_total(self) -> float:
        return sum(r.user for r in self.records)

    def by_source(self) -> Dict[str, float]:
        totals: Dict[str, float] = defaultdict(float)
        for record in self.records:
            totals[record.source] += record.user
        return dict(totals)


# ============================================================
# VALUE CREATOR
# ============================================================

class ValueCreator:
    """
    Prices patterns, manages research participation and builds
    anonymous marketplace artifacts.

    All state lives in caller-owned registries and ledgers.
    """

    def __init__(
        self,
        audit: Optional[PrivacyAuditLog] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.audit = audit
        self.clock = clock

    def _refuse(self, reason: str) -> ConsentRequired:
        logger.warning("value_refused", reason=reason)
        if self.audit:
            self.audit.log_event(VALUE_REFUSED, "value", "refused", detail=reason)
        return ConsentRequired(reason)

    # === PRICING ===

    @staticmethod
    def base_value(pattern: EQPattern) -> float:
        return PATTERN_BASE_VALUES.get(pattern.type, 50) * pattern.confidence

    def price(self, pattern: EQPattern, config: Optional[ValueConfig] = None) -> ValueResult:
        """
        Value a pattern.

        Device-only patterns are not valued: the result carries
        success=False with privacy_guaranteed=True.
        """
        if pattern.privacy_level is PrivacyLevel.DEVICE_ONLY:
            return ValueResult(
                success=False,
                privacy_guaranteed=True,
                reason="This pattern is marked as device-only and cannot be monetized",
            )

        config = config or ValueConfig()
        base = self.base_value(pattern)
        total = base * config.rarity_score * config.impact_potential * config.insight_value
        shares = config.revenue_share.apply(total)

        listing_id = None
        if config.marketplace_listing_enabled:
            listing_id = f"listing_{secrets.token_hex(8)}"

        return ValueResult(
            success=True,
            privacy_guaranteed=True,
            base_value=base,
            estimated_value=total,
            user_share=shares["user"],
            platform_share=shares["platform"],
            research_share=shares["research"],
            listing_id=listing_id,
        )

    # === RESEARCH ===

    @staticmethod
    def research_compensation(model: CompensationModel, contribution: float) -> Compensation:
        base = COMPENSATION_RATES.get(model.type, 0)
        return Compensation(
            amount=base * contribution,
            type=model.type,
            schedule=COMPENSATION_SCHEDULES.get(model.type, "Custom schedule"),
            guaranteed_minimum=base * GUARANTEED_MINIMUM_SHARE,
        )

    def participate_in_research(
        self,
        study_id: str,
        consent: ResearchConsent,
        registry: ResearchRegistry,
    ) -> ResearchResult:
        """
        Join a study.

        Raises:
            ConsentRequired: consent not both explicit and informed
        """
        if consent.explicit_consent is not True or consent.understood_terms is not True:
            raise self._refuse("Explicit and informed consent required")
        if consent.estimated_contribution < 0:
            raise InvalidInput("estimated_contribution must be non-negative")

        now = self.clock()
        participation = ResearchParticipation(
            study_id=study_id,
            participation_id=f"{study_id}_{int(now.timestamp() * 1000)}",
            consent_timestamp=now,
            data_share_scope=consent.data_share_scope,
            compensation_model=consent.compensation_model,
        )
        registry.add(participation)

        logger.info("research_joined", study_id=study_id)
        if self.audit:
            self.audit.log_event(RESEARCH_JOINED, "value", "joined", detail=study_id)

        return ResearchResult(
            participation=participation,
            compensation=self.research_compensation(
                consent.compensation_model, consent.estimated_contribution
            ),
            privacy_guarantees=list(RESEARCH_PRIVACY_GUARANTEES),
            withdrawal_process=dict(WITHDRAWAL_PROCESS),
        )

    def withdraw_from_research(self, study_id: str, registry: ResearchRegistry) -> ResearchParticipation:
        """Withdrawal is always honoured. Returns the removed record."""
        participation = registry.remove(study_id)
        logger.info("research_withdrawn", study_id=study_id)
        if self.audit:
            self.audit.log_event(RESEARCH_WITHDRAWN, "value", "withdrawn", detail=study_id)
        return participation

    @staticmethod
    def export_research_data(study_id: str, registry: ResearchRegistry) -> Dict[str, Any]:
        participation = registry.get(study_id)
        if participation is None:
            raise InvalidInput(f"Not participating in study {study_id!r}")
        return participation.to_dict()

    # === MARKETPLACE ===

    def create_marketplace_listing(
        self,
        patterns: Sequence[EQPattern],
        config: Optional[ListingConfig] = None,
        consent: bool = False,
    ) -> MarketplaceListing:
        """
        Bundle shareable patterns into an anonymous listing.

        Raises:
            ConsentRequired: consent is not explicitly True
            InvalidInput: no anonymous-aggregate or selective-share patterns
        """
        if consent is not True:
            raise self._refuse("Explicit consent is required for marketplace listings")

        config = config or ListingConfig()
        listable = [p for p in patterns if p.privacy_level in LISTABLE_LEVELS]
        if not listable:
            raise InvalidInput("No shareable patterns available")

        now = self.clock()
        bundle = PatternBundle(
            pattern_count=len(listable),
            pattern_types=sorted({p.type.value for p in listable}),
            average_confidence=sum(p.confidence for p in listable) / len(listable),
            bundled_insights=[scrub_insight(p.anonymized_insight) for p in listable],
            created_at=now,
        )

        listing = MarketplaceListing(
            id=f"listing_{secrets.token_hex(8)}",
            anonymous_id=secrets.token_hex(16),
            bundle=bundle,
            pricing=self.bundle_pricing(bundle, config),
            revenue_share=RevenueSplit(
                user_percentage=config.creator_percentage,
                platform_percentage=config.platform_percentage,
                research_contribution=config.research_contribution,
            ),
            created_at=now,
            expires_at=now + LISTING_LIFETIME,
        )
        logger.info("marketplace_listing_created", listing_id=listing.id, patterns=bundle.pattern_count)
        return listing

    @staticmethod
    def bundle_pricing(bundle: PatternBundle, config: ListingConfig) -> BundlePricing:
        suggested = (bundle.pattern_count * PRICE_PER_PATTERN * bundle.average_confidence
                     + len(bundle.pattern_types) * PRICE_PER_TYPE)
        return BundlePricing(
            suggested_price=suggested,
            minimum_price=suggested * 0.5,
            maximum_price=suggested * 2,
            pricing_model=config.pricing_model,
            volume_discounts=[{"quantity": q, "discount": d} for q, d in VOLUME_DISCOUNTS],
        )

    # === COACHING CONTENT ===

    def create_coaching_content(
        self,
        insights: Sequence[str],
        audience: TargetAudience,
        consent: bool = False,
    ) -> CoachingContent:
        if consent is not True:
            raise self._refuse("Explicit consent is required for coaching content")

        return CoachingContent(
            id=f"content_{secrets.token_hex(8)}",
            type=audience.content_type,
            title=CONTENT_TITLES.get(audience.level, "EQ Insights Collection"),
            description=(f"Curated insights for {audience.type} seeking {audience.goal}. "
                         "All content is anonymized and privacy-preserved."),
            insights=[scrub_insight(text) for text in insights],
            audience_type=audience.type,
            difficulty_level=audience.level,
            pricing={
                "model": audience.monetization_model,
                "price": audience.suggested_price,
                "revenue_share": {"creator": 70, "platform": 30},
            },
            privacy_guarantees=[
                "No personal data included",
                "All insights anonymized",
                "Creator identity protected",
                "Buyer privacy preserved",
            ],
        )

    # === REVENUE ===

    def track_revenue(
        self,
        transaction_id: str,
        amount: float,
        source: RevenueSource,
        ledger: RevenueLedger,
    ) -> RevenueRecord:
        """Deduct the processing fee, split the net, record it in the ledger."""
        if amount < 0:
            raise InvalidInput("Revenue amount must be non-negative")

        fee = amount * PROCESSING_FEE_RATE + PROCESSING_FEE_FIXED
        if amount - fee <= 0:
            raise InvalidInput(f"Revenue amount {amount:.2f} does not cover the processing fee")
        shares = source.revenue_share.apply(amount - fee)
        record = RevenueRecord(
            transaction_id=transaction_id,
            timestamp=self.clock(),
            gross_amount=amount,
            source=source.type,
            user=shares["user"],
            platform=shares["platform"],
            research=shares["research"],
            processing_fee=fee,
        )
        ledger.add(record)
        return record

    @staticmethod
    def creator_analytics(ledger: RevenueLedger) -> Dict[str, Any]:
        """Local-only revenue summary. Derived from the ledger, nothing else."""
        return {
            "transactions": len(ledger),
            "gross_total": sum(r.gross_amount for r in ledger.records),
            "user_total": ledger.user_total,
            "fees_total": sum(r.processing_fee for r in ledger.records),
            "by_source": ledger.by_source(),
        }
