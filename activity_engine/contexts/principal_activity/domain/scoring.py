from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Mapping

from activity_engine.contexts.principal_activity.domain.models import (
    ACTIVITY_ACTIVE,
    ACTIVITY_MODERATE,
    ACTIVITY_NO_ACTIVITY,
    ACTIVITY_STALE,
    CONTRACT_ACTIVE,
    CONTRACT_EXPIRED,
    CONTRACT_EXPIRING_SOON,
    CONTRACT_INACTIVE,
    CONTRACT_PENDING,
    ProductAssociationRecord,
)


STALE_AFTER = timedelta(days=30)
MODERATE_AFTER = timedelta(days=7)
EXPIRING_SOON_WINDOW = timedelta(days=30)
ACTIVE_OPPORTUNITY_SATURATION = 3

HIGH_ENGAGEMENT_SCORE = 80.0
MEDIUM_ENGAGEMENT_SCORE = 40.0
FOLLOW_UP_ENGAGEMENT_SCORE = 75.0

ENGAGEMENT_HIGH = "high_engagement"
ENGAGEMENT_MEDIUM = "medium_engagement"
ENGAGEMENT_LOW = "low_engagement"
ENGAGEMENT_INACTIVE = "inactive"
ENGAGEMENT_TIERS = (ENGAGEMENT_HIGH, ENGAGEMENT_MEDIUM, ENGAGEMENT_LOW, ENGAGEMENT_INACTIVE)


def _clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


@dataclass(frozen=True)
class EngagementPolicy:
    """Tunable weights of the engagement score.

    Each factor is normalized to [0, 1] and non-decreasing in its input; the score
    is the weighted mean of the factors scaled to [0, 100].
    """

    recency_weight: float = 35.0
    volume_weight: float = 25.0
    win_rate_weight: float = 25.0
    product_weight: float = 15.0
    recency_half_life_days: float = 30.0
    volume_saturation: int = 50
    product_saturation: int = 10

    def __post_init__(self) -> None:
        weights = (self.recency_weight, self.volume_weight, self.win_rate_weight, self.product_weight)
        if any(weight < 0 for weight in weights):
            raise ValueError("engagement weights must be non-negative")
        if self.recency_half_life_days <= 0:
            raise ValueError("recency half-life must be positive")
        if self.volume_saturation < 1 or self.product_saturation < 1:
            raise ValueError("saturation thresholds must be at least 1")

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "EngagementPolicy":
        return cls(
            recency_weight=float(config.get("ENGAGEMENT_WEIGHT_RECENCY", 35.0)),
            volume_weight=float(config.get("ENGAGEMENT_WEIGHT_VOLUME", 25.0)),
            win_rate_weight=float(config.get("ENGAGEMENT_WEIGHT_WIN_RATE", 25.0)),
            product_weight=float(config.get("ENGAGEMENT_WEIGHT_PRODUCTS", 15.0)),
            recency_half_life_days=float(config.get("ENGAGEMENT_RECENCY_HALF_LIFE_DAYS", 30.0)),
            volume_saturation=int(config.get("ENGAGEMENT_VOLUME_SATURATION", 50)),
            product_saturation=int(config.get("ENGAGEMENT_PRODUCT_SATURATION", 10)),
        )

    @property
    def total_weight(self) -> float:
        return self.recency_weight + self.volume_weight + self.win_rate_weight + self.product_weight

    def recency_factor(self, last_interaction_at: datetime | None, now: datetime) -> float:
        if last_interaction_at is None:
            return 0.0
        # Future timestamps count as "just now".
        age_days = max(0.0, (now - last_interaction_at).total_seconds() / 86_400.0)
        return 0.5 ** (age_days / self.recency_half_life_days)

    def volume_factor(self, interaction_count: int) -> float:
        count = max(0, int(interaction_count))
        return min(1.0, math.log1p(count) / math.log1p(self.volume_saturation))

    @staticmethod
    def win_rate_factor(won_opportunities: int, total_opportunities: int) -> float:
        if total_opportunities <= 0:
            return 0.0
        return _clamp(won_opportunities / total_opportunities, 0.0, 1.0)

    def product_factor(self, active_product_count: int) -> float:
        return min(1.0, max(0, int(active_product_count)) / self.product_saturation)

    def score(
        self,
        *,
        last_interaction_at: datetime | None,
        interaction_count: int,
        won_opportunities: int,
        total_opportunities: int,
        active_product_count: int,
        now: datetime,
    ) -> float:
        total_weight = self.total_weight
        if total_weight <= 0:
            return 0.0
        weighted = (
            self.recency_weight * self.recency_factor(last_interaction_at, now)
            + self.volume_weight * self.volume_factor(interaction_count)
            + self.win_rate_weight * self.win_rate_factor(won_opportunities, total_opportunities)
            + self.product_weight * self.product_factor(active_product_count)
        )
        return round(_clamp(100.0 * weighted / total_weight, 0.0, 100.0), 2)


def activity_status(last_interaction_at: datetime | None, now: datetime) -> str:
    if last_interaction_at is None:
        return ACTIVITY_NO_ACTIVITY
    if last_interaction_at < now - STALE_AFTER:
        return ACTIVITY_STALE
    if last_interaction_at < now - MODERATE_AFTER:
        return ACTIVITY_MODERATE
    return ACTIVITY_ACTIVE


def contract_status(association: ProductAssociationRecord, now: datetime) -> str:
    if not association.product_is_active:
        return CONTRACT_INACTIVE
    end = association.contract_end_date
    if end is not None and end < now:
        return CONTRACT_EXPIRED
    if end is not None and end < now + EXPIRING_SOON_WINDOW:
        return CONTRACT_EXPIRING_SOON
    start = association.contract_start_date
    if start is not None and start > now:
        return CONTRACT_PENDING
    return CONTRACT_ACTIVE


def product_performance_score(
    *,
    won_opportunities: int,
    total_opportunities: int,
    active_opportunities: int,
    exclusive_rights: bool,
) -> float:
    win_rate = won_opportunities / total_opportunities if total_opportunities > 0 else 0.0
    activity = min(1.0, max(0, active_opportunities) / ACTIVE_OPPORTUNITY_SATURATION)
    exclusivity = 1.0 if exclusive_rights else 0.5
    score = 50.0 * win_rate + 30.0 * activity + 20.0 * exclusivity
    return round(_clamp(score, 0.0, 100.0), 2)


def engagement_tier(engagement_score: float, status: str) -> str:
    # Principals without any activity are counted apart regardless of score.
    if status == ACTIVITY_NO_ACTIVITY:
        return ENGAGEMENT_INACTIVE
    if engagement_score >= HIGH_ENGAGEMENT_SCORE:
        return ENGAGEMENT_HIGH
    if engagement_score >= MEDIUM_ENGAGEMENT_SCORE:
        return ENGAGEMENT_MEDIUM
    return ENGAGEMENT_LOW
