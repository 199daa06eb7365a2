"""Plan tiers, feature costs and plan-gated access.

One immutable table is the source of truth for daily grants, monthly bonuses,
prices and feature costs. Callers read it through the helpers below so the
scheduler, the ledger and access checks always agree.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from services.errors import InvalidPlan, PlanUpgradeRequired, UnknownFeature


class PlanTier(str, Enum):
    FREE = "free"
    TIER1 = "tier1"
    TIER2 = "tier2"
    TIER3 = "tier3"


PLAN_ORDER = (PlanTier.FREE, PlanTier.TIER1, PlanTier.TIER2, PlanTier.TIER3)
PAID_PLANS = frozenset({PlanTier.TIER1, PlanTier.TIER2, PlanTier.TIER3})


@dataclass(frozen=True)
class PlanSpec:
    tier: PlanTier
    label: str
    price: int
    daily_lunas: int
    monthly_bonus_lunas: int
    unlimited: bool = False


@dataclass(frozen=True)
class FeatureSpec:
    key: str
    cost: Decimal
    minimum_plan: PlanTier
    description: str


@dataclass(frozen=True)
class EntitlementTable:
    version: str
    plans: Mapping[PlanTier, PlanSpec]
    features: Mapping[str, FeatureSpec] = field(default_factory=dict)


def _feature(key: str, cost: str, minimum_plan: PlanTier, description: str) -> FeatureSpec:
    return FeatureSpec(key=key, cost=Decimal(cost), minimum_plan=minimum_plan, description=description)


ENTITLEMENTS = EntitlementTable(
    version="2025-lunar-4tier",
    plans=MappingProxyType(
        {
            PlanTier.FREE: PlanSpec(PlanTier.FREE, "Free", 0, 20, 0),
            PlanTier.TIER1: PlanSpec(PlanTier.TIER1, "Crescent", 13900, 50, 1500),
            PlanTier.TIER2: PlanSpec(PlanTier.TIER2, "Half Moon", 33000, 200, 3000),
            PlanTier.TIER3: PlanSpec(PlanTier.TIER3, "Full Moon", 79000, 0, 0, unlimited=True),
        }
    ),
    features=MappingProxyType(
        {
            spec.key: spec
            for spec in (
                _feature("song_generate", "1", PlanTier.FREE, "Song generation"),
                _feature("auto_input", "1", PlanTier.FREE, "Auto input"),
                _feature("metadata_gemini", "1.5", PlanTier.TIER1, "Metadata generation (Gemini)"),
                _feature("metadata_gpt", "2", PlanTier.TIER1, "Metadata generation (GPT)"),
                _feature("metadata_regen", "1", PlanTier.TIER1, "Metadata regeneration"),
                _feature("youtube_trend", "0.5", PlanTier.FREE, "YouTube trend analysis"),
                _feature("cutout_standard", "0.5", PlanTier.TIER1, "Cutout (standard)"),
                _feature("cutout_high", "1", PlanTier.TIER1, "Cutout (high quality)"),
                _feature("cutout_ultra", "2", PlanTier.TIER1, "Cutout (ultra)"),
                _feature("render_1img", "1", PlanTier.FREE, "Single-image render"),
                _feature("render_2img", "5", PlanTier.TIER1, "Two-image render"),
                _feature("subtitle_sync", "2", PlanTier.TIER1, "Subtitle sync"),
                _feature("halo_remove", "0.3", PlanTier.TIER1, "Halo removal"),
                _feature("edge_blend", "0.2", PlanTier.TIER1, "Edge blend"),
                _feature("color_temperature", "0.3", PlanTier.TIER1, "Color temperature"),
                _feature("oneclick_auto", "10", PlanTier.FREE, "One-click auto generation"),
                _feature("youtube_upload", "10", PlanTier.TIER1, "YouTube upload"),
                _feature("batch_5", "8", PlanTier.TIER1, "Batch processing (5 songs)"),
                _feature("song_download", "0.5", PlanTier.FREE, "Song download"),
            )
        }
    ),
)


def parse_plan(value: Any) -> PlanTier:
    """Coerce a stored or requested plan value; empty means free."""
    if isinstance(value, PlanTier):
        return value
    text = str(value or "").strip().lower()
    if not text:
        return PlanTier.FREE
    try:
        return PlanTier(text)
    except ValueError as exc:
        raise InvalidPlan(value) from exc


def parse_paid_plan(value: Any) -> PlanTier:
    plan = parse_plan(value)
    if plan not in PAID_PLANS:
        raise InvalidPlan(value)
    return plan


def plan_rank(plan: Any) -> int:
    return PLAN_ORDER.index(parse_plan(plan))


def plan_spec(plan: Any) -> PlanSpec:
    return ENTITLEMENTS.plans[parse_plan(plan)]


def is_unlimited(plan: Any) -> bool:
    return plan_spec(plan).unlimited


def daily_grant_amount(plan: Any) -> int:
    return plan_spec(plan).daily_lunas


def monthly_bonus_amount(plan: Any) -> int:
    return plan_spec(plan).monthly_bonus_lunas


def plan_price(plan: Any) -> int:
    return plan_spec(plan).price


def _feature_spec(feature: str) -> FeatureSpec:
    spec = ENTITLEMENTS.features.get(str(feature or "").strip())
    if spec is None:
        raise UnknownFeature(str(feature))
    return spec


def feature_cost(feature: str) -> Decimal:
    return _feature_spec(feature).cost


def minimum_plan_for(feature: str) -> PlanTier:
    return _feature_spec(feature).minimum_plan


def check_access(plan: Any, feature: str) -> bool:
    """Return True when ``plan`` may use ``feature``; raise PlanUpgradeRequired otherwise."""
    current = parse_plan(plan)
    required = minimum_plan_for(feature)
    if plan_rank(current) < plan_rank(required):
        raise PlanUpgradeRequired(feature=feature, required_plan=required.value, current_plan=current.value)
    return True


def entitlement_summary(plan: Optional[Any] = None) -> Dict[str, Any]:
    """Serializable view of the table for clients (costs + plan grants)."""
    return {
        "version": ENTITLEMENTS.version,
        "plans": {
            tier.value: {
                "label": spec.label,
                "price": spec.price,
                "daily_lunas": spec.daily_lunas,
                "monthly_bonus_lunas": spec.monthly_bonus_lunas,
                "unlimited": spec.unlimited,
            }
            for tier, spec in ENTITLEMENTS.plans.items()
        },
        "features": {
            key: {
                "cost": float(spec.cost),
                "minimum_plan": spec.minimum_plan.value,
                "description": spec.description,
                "available": plan is None or plan_rank(plan) >= plan_rank(spec.minimum_plan),
            }
            for key, spec in ENTITLEMENTS.features.items()
        },
    }
