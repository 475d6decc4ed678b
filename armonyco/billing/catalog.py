"""
Static price/plan catalog.

Plans live in `subscription_plans` (seeded from DEFAULT_PLANS); credit packs
are fixed here. External Stripe Price IDs always come from config so each
environment can point at its own Stripe account.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from flask import current_app

from armonyco.extensions import db
from armonyco.models import SubscriptionPlan
from armonyco.billing.errors import NotFoundError, ProviderRequestError, ValidationError

PRICE_ID_PREFIX = "price_"

KIND_PLAN = "plan"
KIND_PACK = "pack"

ACTION_INITIAL = "initial"
ACTION_UPGRADE = "upgrade"
ACTION_DOWNGRADE = "downgrade"
ACTION_RENEW = "renew"


@dataclass(frozen=True)
class Plan:
    id: int
    code: str
    name: str
    rank: int
    monthly_credits: int
    price_major_units: Optional[int] = None

    @property
    def price_config_key(self) -> str:
        return f"STRIPE_PRICE_{self.code.upper()}"


@dataclass(frozen=True)
class CreditPack:
    id: int
    name: str
    base_credits: int
    price_major_units: int
    price_config_key: str
    bonus_credits: int = 0
    popular: bool = False

    @property
    def total_credits(self) -> int:
        return self.base_credits + self.bonus_credits


DEFAULT_PLANS: List[Plan] = [
    Plan(1, "starter", "Starter", rank=1, monthly_credits=25_000, price_major_units=249),
    Plan(2, "pro", "Pro", rank=2, monthly_credits=100_000, price_major_units=999),
    Plan(3, "elite", "Elite", rank=3, monthly_credits=250_000, price_major_units=2_499),
    Plan(4, "vip", "VIP", rank=4, monthly_credits=500_000, price_major_units=None),
]

CREDIT_PACKS: List[CreditPack] = [
    CreditPack(1, "Starter Pack", 5_000, 49, "STRIPE_PRICE_PACK_5K"),
    CreditPack(2, "Popular Pack", 10_000, 89, "STRIPE_PRICE_PACK_10K", bonus_credits=1_000, popular=True),
    CreditPack(3, "Professional Pack", 25_000, 199, "STRIPE_PRICE_PACK_25K", bonus_credits=3_000),
    CreditPack(4, "Enterprise Pack", 50_000, 349, "STRIPE_PRICE_PACK_50K", bonus_credits=10_000),
]


def get_credit_pack(pack_id: Any) -> Optional[CreditPack]:
    try:
        pid = int(pack_id)
    except (TypeError, ValueError):
        return None
    return next((p for p in CREDIT_PACKS if p.id == pid), None)


def get_credit_pack_by_price(price_id: str, config: Optional[Mapping[str, Any]] = None) -> Optional[CreditPack]:
    cfg = config if config is not None else current_app.config
    return next((p for p in CREDIT_PACKS if price_id and cfg.get(p.price_config_key) == price_id), None)


def price_per_credit(pack: CreditPack) -> float:
    """Price in minor units (cents) per credit, bonus included."""
    return (pack.price_major_units * 100) / pack.total_credits


def plan_from_row(row) -> Plan:
    return Plan(
        id=row.id,
        code=row.code,
        name=row.name,
        rank=row.rank,
        monthly_credits=row.monthly_credits,
        price_major_units=row.price_major_units,
    )


def get_plan(plan_id: Any) -> Optional[Plan]:
    """Load a plan from the store."""
    try:
        pid = int(plan_id)
    except (TypeError, ValueError):
        return None
    row = db.session.get(SubscriptionPlan, pid)
    return plan_from_row(row) if row else None


def resolve_price(kind: str, ident: Any, config: Optional[Mapping[str, Any]] = None) -> str:
    """
    Map an internal plan/pack id to its Stripe Price ID.
    Raises NotFoundError if nothing is configured, ProviderRequestError
    if the configured value is not a Stripe price id and ValidationError
    for an unknown kind.
    """
    cfg = config if config is not None else current_app.config

    if kind == KIND_PACK:
        pack = get_credit_pack(ident)
        if not pack:
            raise NotFoundError("Credit pack not found", details={"creditPackId": ident})
        key, label = pack.price_config_key, pack.name
    elif kind == KIND_PLAN:
        plan = ident if isinstance(ident, Plan) else get_plan(ident)
        if not plan:
            raise NotFoundError("Plan not found", details={"planId": ident})
        key, label = plan.price_config_key, plan.name
    else:
        raise ValidationError(f"Unknown catalog kind {kind!r}")

    price_id = (cfg.get(key) or "").strip()
    if not price_id:
        raise NotFoundError(
            "Price ID not configured",
            details=f"No Stripe Price ID configured for {label}; set {key}",
        )
    if not price_id.startswith(PRICE_ID_PREFIX):
        raise ProviderRequestError(
            "Invalid Price ID",
            details=f"Price ID {price_id!r} for {label} must start with {PRICE_ID_PREFIX!r}",
        )
    return price_id


def classify_plan_change(current_rank: Optional[int], target_rank: int) -> str:
    if current_rank is None:
        return ACTION_INITIAL
    if target_rank > current_rank:
        return ACTION_UPGRADE
    if target_rank == current_rank:
        return ACTION_RENEW
    return ACTION_DOWNGRADE


def catalog_snapshot(config: Optional[Mapping[str, Any]] = None) -> Dict[str, List[Dict[str, Any]]]:
    """Plans and packs with their price configuration status (ops/CLI view)."""
    cfg = config if config is not None else current_app.config
    plans = [plan_from_row(r) for r in SubscriptionPlan.query.order_by(SubscriptionPlan.rank).all()]
    return {
        "plans": [
            {
                "id": p.id,
                "code": p.code,
                "name": p.name,
                "rank": p.rank,
                "monthlyCredits": p.monthly_credits,
                "price": p.price_major_units,
                "priceConfigured": bool(cfg.get(p.price_config_key)),
            }
            for p in plans
        ],
        "creditPacks": [
            {
                "id": p.id,
                "name": p.name,
                "credits": p.base_credits,
                "bonus": p.bonus_credits,
                "totalCredits": p.total_credits,
                "price": p.price_major_units,
                "popular": p.popular,
                "priceConfigured": bool(cfg.get(p.price_config_key)),
            }
            for p in CREDIT_PACKS
        ],
    }
