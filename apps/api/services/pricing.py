"""Pricing catalog: plans, credit packages, feature costs and referral rewards."""

from __future__ import annotations

from dataclasses import dataclass, field
import math
from typing import Any, Dict, Optional, Union

from services.credit_errors import UnknownFeatureError, UnknownPackageError, UnknownPlanError


FeatureLimit = Union[int, str, None]


@dataclass(frozen=True)
class FeatureAccess:
    allowed: bool
    limit: FeatureLimit = None
    upgrade: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"allowed": self.allowed, "limit": self.limit, "upgrade": self.upgrade}


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    price: int
    yearly_price: int
    credits: int
    description: str
    limits: Dict[str, int] = field(default_factory=dict)
    features: Dict[str, FeatureAccess] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "price": self.price,
            "yearly_price": self.yearly_price,
            "credits": self.credits,
            "description": self.description,
            "limits": dict(self.limits),
            "features": {key: value.to_dict() for key, value in self.features.items()},
        }


@dataclass(frozen=True)
class CreditPackage:
    id: str
    name: str
    credits: int
    bonus_credits: int
    price: int
    description: str
    popular: bool = False

    @property
    def total_credits(self) -> int:
        return self.credits + self.bonus_credits

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "credits": self.credits,
            "bonus_credits": self.bonus_credits,
            "total_credits": self.total_credits,
            "price": self.price,
            "description": self.description,
            "popular": self.popular,
        }


def _allow(limit: FeatureLimit = None) -> FeatureAccess:
    return FeatureAccess(allowed=True, limit=limit)


def _lock(upgrade: str) -> FeatureAccess:
    return FeatureAccess(allowed=False, upgrade=upgrade)


SUBSCRIPTION_PLANS: Dict[str, Plan] = {
    "free": Plan(
        id="free",
        name="Free",
        price=0,
        yearly_price=0,
        credits=20,
        description="Perfect for getting started",
        limits={"workspaces": 1, "social_accounts": 1, "scheduled_posts": 5, "team_members": 0, "automation_rules": 0},
        features={
            "dashboard": _allow(),
            "content-scheduler": _allow(5),
            "analytics": _allow("basic"),
            "creative-brief": _lock("starter"),
            "content-repurpose": _lock("starter"),
            "trend-calendar": _lock("starter"),
            "user-persona": _lock("starter"),
            "dm-automation": _lock("starter"),
            "competitor-analysis": _lock("pro"),
            "ab-testing": _lock("pro"),
            "roi-calculator": _lock("pro"),
            "social-listening": _lock("pro"),
            "emotion-analysis": _lock("pro"),
            "thumbnails-pro": _lock("pro"),
            "advanced-analytics": _lock("pro"),
            "affiliate-program": _lock("business"),
            "content-protection": _lock("business"),
            "legal-assistant": _lock("business"),
        },
    ),
    "starter": Plan(
        id="starter",
        name="Starter",
        price=699,
        yearly_price=4800,
        credits=300,
        description="Ideal for solo creators",
        limits={"workspaces": 1, "social_accounts": 2, "scheduled_posts": 50, "team_members": 0, "automation_rules": 3},
        features={
            "dashboard": _allow(),
            "content-scheduler": _allow(50),
            "analytics": _allow("advanced"),
            "creative-brief": _allow(10),
            "content-repurpose": _allow(15),
            "trend-calendar": _allow(20),
            "user-persona": _allow(5),
            "dm-automation": _allow(3),
            "competitor-analysis": _lock("pro"),
            "ab-testing": _lock("pro"),
            "roi-calculator": _lock("pro"),
            "social-listening": _lock("pro"),
            "emotion-analysis": _lock("pro"),
            "thumbnails-pro": _lock("pro"),
            "advanced-analytics": _lock("pro"),
            "affiliate-program": _lock("business"),
            "content-protection": _lock("business"),
            "legal-assistant": _lock("business"),
        },
    ),
    "pro": Plan(
        id="pro",
        name="Pro",
        price=1499,
        yearly_price=9999,
        credits=1100,
        description="Perfect for growing brands",
        limits={"workspaces": 2, "social_accounts": 1, "scheduled_posts": 200, "team_members": 2, "automation_rules": 10},
        features={
            "dashboard": _allow(),
            "content-scheduler": _allow(200),
            "analytics": _allow("pro"),
            "creative-brief": _allow(50),
            "content-repurpose": _allow(100),
            "trend-calendar": _allow(100),
            "user-persona": _allow(25),
            "dm-automation": _allow(10),
            "competitor-analysis": _allow(20),
            "ab-testing": _allow(15),
            "roi-calculator": _allow(30),
            "social-listening": _allow(25),
            "emotion-analysis": _allow(40),
            "thumbnails-pro": _allow(50),
            "advanced-analytics": _allow(),
            "affiliate-program": _lock("business"),
            "content-protection": _lock("business"),
            "legal-assistant": _lock("business"),
        },
    ),
    "business": Plan(
        id="business",
        name="Business",
        price=2199,
        yearly_price=16800,
        credits=2000,
        description="Built for teams and agencies",
        limits={"workspaces": 8, "social_accounts": 4, "scheduled_posts": 500, "team_members": 3, "automation_rules": 25},
        features={
            "dashboard": _allow(),
            "content-scheduler": _allow(500),
            "analytics": _allow("business"),
            "creative-brief": _allow(200),
            "content-repurpose": _allow(300),
            "trend-calendar": _allow(300),
            "user-persona": _allow(100),
            "dm-automation": _allow(25),
            "competitor-analysis": _allow(100),
            "ab-testing": _allow(50),
            "roi-calculator": _allow(150),
            "social-listening": _allow(100),
            "emotion-analysis": _allow(200),
            "thumbnails-pro": _allow(200),
            "advanced-analytics": _allow(),
            "affiliate-program": _allow(20),
            "content-protection": _allow(50),
            "legal-assistant": _allow(30),
        },
    ),
}

DEFAULT_PLAN_ID = "free"

CREDIT_PACKAGES: Dict[str, CreditPackage] = {
    package.id: package
    for package in (
        CreditPackage("credits-50", "50 Credits", 50, 0, 9, "Perfect for light usage"),
        CreditPackage("credits-100", "100 Credits", 100, 10, 19, "Great for regular users", popular=True),
        CreditPackage("credits-250", "250 Credits", 250, 50, 39, "Best value for power users"),
        CreditPackage("credits-500", "500 Credits", 500, 150, 79, "Maximum value pack"),
    )
}

# Unit cost per feature invocation. Fractional costs are rounded up per request.
CREDIT_COSTS: Dict[str, float] = {
    "creative-brief": 3,
    "content-repurpose": 4,
    "competitor-analysis": 6,
    "trend-calendar": 2,
    "ab-testing": 4,
    "roi-calculator": 3,
    "user-persona": 5,
    "affiliate-program": 2,
    "social-listening": 4,
    "content-protection": 7,
    "legal-assistant": 6,
    "emotion-analysis": 5,
    "thumbnails-pro": 8,
    "dm-automation": 1,
    "advanced-analytics": 3,
    "captionGeneration": 0.5,
    "imageGeneration": 5,
    "video": 50,
}

REFERRAL_REWARDS: Dict[str, int] = {
    "inviteFriend": 100,
    "submitFeedback": 10,
}


def get_plan(plan_id: str) -> Plan:
    plan = SUBSCRIPTION_PLANS.get(plan_id)
    if plan is None:
        raise UnknownPlanError(plan_id)
    return plan


def get_plan_or_default(plan_id: Optional[str]) -> Plan:
    """Resolve a stored plan id, treating legacy/unknown values as the free tier."""
    return SUBSCRIPTION_PLANS.get(plan_id or DEFAULT_PLAN_ID) or SUBSCRIPTION_PLANS[DEFAULT_PLAN_ID]


def get_credit_package(package_id: str) -> CreditPackage:
    package = CREDIT_PACKAGES.get(package_id)
    if package is None:
        raise UnknownPackageError(package_id)
    return package


def get_unit_cost(feature_type: str) -> float:
    unit_cost = CREDIT_COSTS.get(feature_type)
    if not unit_cost:
        raise UnknownFeatureError(feature_type)
    return unit_cost


def calculate_credit_cost(feature_type: str, quantity: float = 1) -> int:
    """Total credits for ``quantity`` uses of a feature, rounded up."""
    if quantity <= 0:
        raise ValueError("quantity must be greater than 0")
    return int(math.ceil(get_unit_cost(feature_type) * quantity))


def calculate_yearly_savings(plan_id: str) -> int:
    plan = get_plan(plan_id)
    return plan.price * 12 - plan.yearly_price


def validate_feature_access(plan_id: str, feature_id: str) -> FeatureAccess:
    """Plan gate for a feature. Unknown plans and features point at the first paid tier."""
    plan = SUBSCRIPTION_PLANS.get(plan_id)
    if plan is None:
        return _lock("starter")
    access = plan.features.get(feature_id)
    if access is None:
        return _lock("starter")
    return access
