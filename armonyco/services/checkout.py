"""
Checkout session construction.

Each entry point validates its input, resolves the Stripe price from the
catalog, attaches the metadata the reconciler keys off and asks the payment
provider for a hosted session. Nothing local is written here: state only
changes once Stripe reports the purchase through the webhook.
"""
import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlencode, urljoin

from flask import current_app

from armonyco.extensions import db
from armonyco.models import Organization
from armonyco.billing import catalog
from armonyco.billing.errors import NotFoundError, ValidationError, parse_int
from armonyco.billing.provider import make_idempotency_key, params_hash, get_provider
from armonyco.services import customers, subscriptions

logger = logging.getLogger(__name__)

TYPE_CREDIT_PURCHASE = "credit_purchase"
TYPE_SUBSCRIPTION = "subscription"

MODE_PAYMENT = "payment"
MODE_SUBSCRIPTION = "subscription"


@dataclass(frozen=True)
class CheckoutResult:
    checkout_url: Optional[str]
    session_id: str
    mode: str
    customer_id: Optional[str] = None
    action: Optional[str] = None
    mock: bool = False
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class VerifyResult:
    session_id: str
    status: str
    amount: Optional[int]
    payment_intent_id: Optional[str]
    metadata: Dict[str, str]
    mock: bool = False


def _absolute_url(path: str, **query: Any) -> str:
    base = (current_app.config.get("APP_BASE_URL") or "").rstrip("/") + "/"
    url = urljoin(base, path.lstrip("/"))
    if query:
        url += "?" + urlencode({k: v for k, v in query.items() if v is not None})
    return url


def _load_org(organization_id: Any) -> Organization:
    oid = parse_int(organization_id, "organizationId")
    org = db.session.get(Organization, oid)
    if org is None:
        raise NotFoundError("Organization not found", details={"organizationId": oid})
    return org


def _create_session(params: Dict[str, Any], *key_parts: Any):
    provider = get_provider()
    idem = make_idempotency_key("checkout", "v1", *key_parts, params_hash(params))
    try:
        return provider.create_checkout_session(params, idempotency_key=idem)
    except Exception:
        current_app.logger.exception(
            "billing.checkout.session_create_failed",
            extra={"mode": params.get("mode"), "metadata": params.get("metadata")},
        )
        raise


def _customer_fields(customer_id: Optional[str], email: Optional[str]) -> Dict[str, Any]:
    # Stripe rejects customer and customer_email together
    if customer_id:
        return {"customer": customer_id}
    if email:
        return {"customer_email": email}
    return {}


def create_credit_checkout(organization_id: Any, credit_pack_id: Any) -> CheckoutResult:
    """One-time payment for a credit pack; credits land when the webhook confirms it."""
    if organization_id in (None, "") or credit_pack_id in (None, ""):
        raise ValidationError("Missing required fields", details="organizationId and creditPackId are required")

    pack = catalog.get_credit_pack(credit_pack_id)
    if pack is None:
        raise NotFoundError("Credit pack not found", details={"creditPackId": credit_pack_id})
    org = _load_org(organization_id)
    price_id = catalog.resolve_price(catalog.KIND_PACK, pack.id)

    customer_id = customers.known_customer_for_org(org.id)
    params: Dict[str, Any] = {
        "mode": MODE_PAYMENT,
        "payment_method_types": ["card"],
        "line_items": [{"price": price_id, "quantity": 1}],
        "success_url": _absolute_url(
            "app/settings", tab="subscription", credits="success", amount=pack.total_credits
        ),
        "cancel_url": _absolute_url("app/settings", tab="subscription", credits="canceled"),
        "metadata": {
            "organizationId": str(org.id),
            "credits": str(pack.total_credits),
            "creditPackId": str(pack.id),
            "packName": pack.name,
            "type": TYPE_CREDIT_PURCHASE,
        },
        "allow_promotion_codes": True,
        **_customer_fields(customer_id, org.billing_email),
    }

    session = _create_session(params, TYPE_CREDIT_PURCHASE, org.id, pack.id)
    logger.info(
        "billing.checkout.credit_session_created",
        extra={"organization_id": org.id, "credit_pack_id": pack.id, "session_id": session.id, "mock": session.mock},
    )
    return CheckoutResult(
        checkout_url=session.url,
        session_id=session.id,
        mode=MODE_PAYMENT,
        customer_id=session.customer_id,
        action=TYPE_CREDIT_PURCHASE,
        mock=session.mock,
        message="MOCK: Stripe not configured" if session.mock else "Credit purchase initiated successfully",
    )


def create_subscription_checkout(
    plan_id: Any,
    email: Optional[str],
    *,
    amount: Any = None,
    plan_name: Optional[str] = None,
    credits: Any = None,
    user_id: Any = None,
    organization_id: Any = None,
    metadata: Optional[Dict[str, Any]] = None,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
) -> CheckoutResult:
    """
    Recurring subscription checkout for a plan, resolving (or creating) the
    Stripe customer by email first. `amount` is informational only; Stripe
    charges the configured price.
    """
    missing = [n for n, v in (("planId", plan_id), ("amount", amount), ("email", email)) if v in (None, "")]
    if missing:
        raise ValidationError("Missing required fields", details=f"{', '.join(missing)} required")

    plan = catalog.get_plan(plan_id)
    if plan is None:
        raise NotFoundError("Plan not found", details={"planId": plan_id})

    org = _load_org(organization_id) if organization_id not in (None, "") else None
    current = subscriptions.get_current(org.id) if org is not None else None
    action = catalog.classify_plan_change(current.plan.rank if current is not None else None, plan.rank)

    price_id = catalog.resolve_price(catalog.KIND_PLAN, plan)

    provider = get_provider()
    extra = {k: str(v) for k, v in (metadata or {}).items() if v is not None}
    customer = customers.resolve_customer(
        provider,
        email,
        known_customer_id=customers.known_customer_for_org(org.id) if org is not None else None,
        metadata={"user_id": str(user_id or ""), **extra},
    )

    session_meta = {
        "planId": str(plan.id),
        "planName": plan_name or plan.name,
        "credits": str(credits if credits not in (None, "") else plan.monthly_credits),
        "userId": str(user_id or ""),
        "action": action,
        "type": TYPE_SUBSCRIPTION,
    }
    if org is not None:
        session_meta["organizationId"] = str(org.id)
    sub_meta = dict(session_meta)
    if current is not None and current.stripe_subscription_id and action != catalog.ACTION_INITIAL:
        sub_meta["replace_subscription"] = current.stripe_subscription_id

    params: Dict[str, Any] = {
        "mode": MODE_SUBSCRIPTION,
        "customer": customer.id,
        "payment_method_types": ["card"],
        "line_items": [{"price": price_id, "quantity": 1}],
        "success_url": success_url or _absolute_url("app/settings", tab="billing", checkout="success", plan=plan.name),
        "cancel_url": cancel_url or _absolute_url("app/settings", tab="billing", checkout="canceled"),
        "metadata": session_meta,
        "subscription_data": {"metadata": sub_meta},
        "allow_promotion_codes": True,
        "billing_address_collection": "required",
        "tax_id_collection": {"enabled": True},
    }

    session = _create_session(params, TYPE_SUBSCRIPTION, org.id if org else "", user_id, plan.id)
    logger.info(
        "billing.checkout.subscription_session_created",
        extra={"plan_id": plan.id, "action": action, "session_id": session.id, "mock": session.mock},
    )
    return CheckoutResult(
        checkout_url=session.url,
        session_id=session.id,
        mode=MODE_SUBSCRIPTION,
        customer_id=customer.id,
        action=action,
        mock=session.mock,
    )


def create_plan_change_checkout(
    organization_id: Any,
    new_plan_id: Any,
    current_subscription_id: Optional[str] = None,
) -> CheckoutResult:
    """Checkout for moving an organization onto another plan (upgrade, downgrade or renew)."""
    if organization_id in (None, "") or new_plan_id in (None, ""):
        raise ValidationError("Missing required fields", details="organizationId and newPlanId are required")

    plan = catalog.get_plan(new_plan_id)
    if plan is None:
        raise NotFoundError("Plan not found", details={"planId": new_plan_id})
    org = _load_org(organization_id)
    price_id = catalog.resolve_price(catalog.KIND_PLAN, plan)

    current = subscriptions.get_current(org.id)
    previous_sub = current.stripe_subscription_id if current is not None else None
    if current_subscription_id and current_subscription_id != previous_sub:
        raise ValidationError(
            "Subscription is not the organization's current subscription",
            details={"currentSubscriptionId": current_subscription_id},
        )
    action = catalog.classify_plan_change(current.plan.rank if current is not None else None, plan.rank)

    customer_id = current.stripe_customer_id if current is not None else None
    customer_id = customer_id or customers.known_customer_for_org(org.id)

    sub_meta = {"organizationId": str(org.id), "planId": str(plan.id), "action": action}
    if current is not None and current.stripe_subscription_id:
        sub_meta["replace_subscription"] = current.stripe_subscription_id

    params: Dict[str, Any] = {
        "mode": MODE_SUBSCRIPTION,
        "payment_method_types": ["card"],
        "line_items": [{"price": price_id, "quantity": 1}],
        "success_url": _absolute_url("app/settings", tab="billing", upgrade="success", plan=plan.name),
        "cancel_url": _absolute_url("app/settings", tab="billing", upgrade="canceled"),
        "metadata": {
            "organizationId": str(org.id),
            "planId": str(plan.id),
            "action": action,
            "previousSubscriptionId": previous_sub or "",
            "previousPlanId": str(current.plan_id) if current is not None else "",
            "type": TYPE_SUBSCRIPTION,
        },
        "subscription_data": {"metadata": sub_meta},
        "allow_promotion_codes": True,
        **_customer_fields(customer_id, org.billing_email),
    }

    session = _create_session(params, "plan_change", org.id, plan.id, previous_sub or "")
    logger.info(
        "billing.checkout.plan_change_session_created",
        extra={"organization_id": org.id, "plan_id": plan.id, "action": action, "session_id": session.id},
    )
    return CheckoutResult(
        checkout_url=session.url,
        session_id=session.id,
        mode=MODE_SUBSCRIPTION,
        customer_id=session.customer_id,
        action=action,
        mock=session.mock,
        message="MOCK: Stripe not configured" if session.mock else f"{action} initiated successfully",
    )


def verify_checkout(session_id: Optional[str]) -> VerifyResult:
    if not session_id:
        raise ValidationError("Missing session_id parameter")
    status = get_provider().retrieve_checkout_session(session_id)
    if status.status == "not_found":
        raise NotFoundError("Session not found", details={"sessionId": session_id})
    return VerifyResult(
        session_id=status.id,
        status=status.status,
        amount=status.amount_total,
        payment_intent_id=status.payment_intent_id,
        metadata=status.metadata,
        mock=status.mock,
    )
