"""
Stripe event reconciliation.

`reconcile(event)` is the only place that turns provider events into local
state. Every event is recorded in `billing_event_logs` first; an event whose
row is already marked processed is a duplicate and changes nothing. Each
handler is built from idempotent steps (supersede keyed by the Stripe
subscription id, ledger grants keyed by the session or invoice id), so a
redelivered event that failed half-way can simply be run again.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from flask import current_app
from sqlalchemy.exc import IntegrityError

from armonyco.extensions import db
from armonyco.models import BillingEventLog, SubscriptionPlan, User
from armonyco.models.ledger import (
    TX_CREDIT_PURCHASE,
    TX_SUBSCRIPTION_DOWNGRADE,
    TX_SUBSCRIPTION_INITIAL,
    TX_SUBSCRIPTION_RENEWAL,
    TX_SUBSCRIPTION_UPGRADE,
)
from armonyco.models.subscription import SUB_CANCELLED, SUB_EXPIRED
from armonyco.billing import catalog
from armonyco.billing.errors import BillingError, NotFoundError, ValidationError
from armonyco.billing.provider import field_of, get_provider, ref_id
from armonyco.services import customers, ledger, subscriptions

logger = logging.getLogger(__name__)

OUTCOME_PROCESSED = "processed"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_IGNORED = "ignored"
OUTCOME_FAILED = "failed"

ACTION_TX_TYPES = {
    catalog.ACTION_INITIAL: TX_SUBSCRIPTION_INITIAL,
    catalog.ACTION_UPGRADE: TX_SUBSCRIPTION_UPGRADE,
    catalog.ACTION_DOWNGRADE: TX_SUBSCRIPTION_DOWNGRADE,
    catalog.ACTION_RENEW: TX_SUBSCRIPTION_RENEWAL,
}


@dataclass(frozen=True)
class ReconcileResult:
    event_id: str
    event_type: str
    outcome: str
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = {"eventId": self.event_id, "type": self.event_type, "outcome": self.outcome}
        if self.detail:
            payload["detail"] = self.detail
        return payload


def _meta(obj: Any) -> Dict[str, Any]:
    return dict(field_of(obj, "metadata") or {})


def _first(meta: Dict[str, Any], *keys: str) -> Optional[str]:
    # Older sessions carried snake_case metadata
    for k in keys:
        v = meta.get(k)
        if v not in (None, ""):
            return str(v)
    return None


def _int_or_none(value: Optional[str]) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _period_end(obj: Any) -> Optional[datetime]:
    ts = field_of(obj, "current_period_end") or field_of(obj, "period_end")
    if not ts:
        items = field_of(field_of(obj, "items"), "data") or field_of(field_of(obj, "lines"), "data") or []
        if items:
            first = items[0]
            ts = field_of(first, "current_period_end") or field_of(field_of(first, "period"), "end")
    return subscriptions.from_timestamp(ts)


def _invoice_subscription_id(invoice: Any) -> Optional[str]:
    sub = ref_id(field_of(invoice, "subscription"))
    if sub:
        return sub
    # Newer API versions nest it under parent.subscription_details
    details = field_of(field_of(invoice, "parent"), "subscription_details")
    return ref_id(field_of(details, "subscription"))


def _resolve_org(meta: Dict[str, Any]) -> Optional[int]:
    org_id = _int_or_none(_first(meta, "organizationId", "organization_id", "org_id"))
    if org_id is not None:
        return org_id
    user_id = _int_or_none(_first(meta, "userId", "user_id"))
    if user_id is not None:
        user = db.session.get(User, user_id)
        if user is not None and user.org_id:
            return user.org_id
    return None


# ---- handlers: return (outcome, detail) ----

def _on_checkout_completed(session: Any) -> Tuple[str, Optional[str]]:
    meta = _meta(session)
    session_id = field_of(session, "id")

    if meta.get("type") == TX_CREDIT_PURCHASE:
        return _grant_credit_purchase(session_id, meta)
    if field_of(session, "mode") == "subscription":
        return _apply_subscription_checkout(session, meta)
    return OUTCOME_IGNORED, f"mode={field_of(session, 'mode')}"


def _grant_credit_purchase(session_id: str, meta: Dict[str, Any]) -> Tuple[str, Optional[str]]:
    org_id = _resolve_org(meta)
    credits = _int_or_none(_first(meta, "credits"))
    if org_id is None or not credits:
        raise ValidationError("credit purchase without organization or credits", details=meta)

    result = ledger.grant(
        ledger.org_principal(org_id),
        credits,
        TX_CREDIT_PURCHASE,
        session_id,
        description=f"Credit purchase: {meta.get('packName') or 'credit pack'}",
        meta={"creditPackId": meta.get("creditPackId"), "packName": meta.get("packName"), "sessionId": session_id},
    )
    return OUTCOME_PROCESSED, "credited" if result.created else "already_credited"


def _apply_subscription_checkout(session: Any, meta: Dict[str, Any]) -> Tuple[str, Optional[str]]:
    session_id = field_of(session, "id")
    plan_id = _int_or_none(_first(meta, "planId", "plan_id"))
    plan = db.session.get(SubscriptionPlan, plan_id) if plan_id is not None else None
    if plan is None:
        raise NotFoundError("Plan not found", details={"planId": plan_id})

    org_id = _resolve_org(meta)
    if org_id is None:
        # User-scoped legacy checkout: credits only, no organization subscription
        user_id = _int_or_none(_first(meta, "userId", "user_id"))
        if user_id is None:
            raise ValidationError("subscription checkout without organization or user", details=meta)
        ledger.grant(
            ledger.user_principal(user_id),
            plan.monthly_credits,
            TX_SUBSCRIPTION_INITIAL,
            session_id,
            description=f"Subscription: {plan.name}",
            meta={"planId": plan.id, "sessionId": session_id},
        )
        return OUTCOME_PROCESSED, "user_credits_only"

    customer_id = ref_id(field_of(session, "customer"))
    stripe_sub_id = ref_id(field_of(session, "subscription"))
    if customer_id:
        email = field_of(field_of(session, "customer_details"), "email")
        customers.upsert_billing_customer(org_id, customer_id, email)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()

    action = meta.get("action")
    if action not in ACTION_TX_TYPES:
        current = subscriptions.get_current(org_id)
        action = catalog.classify_plan_change(current.plan.rank if current is not None else None, plan.rank)

    # Only Stripe subscriptions this organization is billed for may be cancelled below
    replaceable = {
        s.stripe_subscription_id for s in subscriptions.list_live(org_id) if s.stripe_subscription_id
    }
    sub, created = subscriptions.supersede(
        org_id,
        plan.id,
        stripe_subscription_id=stripe_sub_id,
        stripe_customer_id=customer_id,
    )

    ledger.grant(
        ledger.org_principal(org_id),
        plan.monthly_credits,
        ACTION_TX_TYPES[action],
        session_id,
        description=f"Subscription {action}: {plan.name}",
        meta={"planId": plan.id, "action": action, "subscriptionId": sub.id, "sessionId": session_id},
    )

    replaced = _first(meta, "replace_subscription", "previousSubscriptionId")
    if replaced and replaced not in replaceable:
        logger.warning(
            "reconciler.replace_target_rejected",
            extra={"organization_id": org_id, "stripe_subscription_id": replaced},
        )
        replaced = None
    if created and replaced and replaced != stripe_sub_id:
        try:
            get_provider().cancel_subscription(replaced)
        except BillingError as exc:
            # Local state is already correct; the old Stripe subscription needs manual cleanup
            logger.warning(
                "reconciler.cancel_replaced_failed",
                extra={"organization_id": org_id, "stripe_subscription_id": replaced, "error": exc.error},
            )
    return OUTCOME_PROCESSED, action


def _on_invoice_succeeded(invoice: Any) -> Tuple[str, Optional[str]]:
    if field_of(invoice, "billing_reason") == "subscription_create":
        return OUTCOME_IGNORED, "initial invoice handled by checkout"
    sub = subscriptions.find_by_stripe_id(_invoice_subscription_id(invoice))
    if sub is None:
        return OUTCOME_IGNORED, "unknown_subscription"
    if sub.status in (SUB_CANCELLED, SUB_EXPIRED):
        return OUTCOME_IGNORED, f"subscription_{sub.status}"

    invoice_id = field_of(invoice, "id")
    ledger.grant(
        ledger.org_principal(sub.organization_id),
        sub.plan.monthly_credits,
        TX_SUBSCRIPTION_RENEWAL,
        invoice_id,
        description=f"Subscription renewal: {sub.plan.name}",
        meta={"planId": sub.plan_id, "subscriptionId": sub.id, "invoiceId": invoice_id},
    )
    subscriptions.record_payment_success(sub, expires_at=_period_end(invoice))
    return OUTCOME_PROCESSED, "renewed"


def _on_invoice_failed(invoice: Any) -> Tuple[str, Optional[str]]:
    sub = subscriptions.find_by_stripe_id(_invoice_subscription_id(invoice))
    if sub is None:
        return OUTCOME_IGNORED, "unknown_subscription"
    threshold = int(current_app.config.get("PAYMENT_FAILURE_SUSPEND_THRESHOLD", 3))
    sub = subscriptions.record_payment_failure(sub, threshold=threshold)
    return OUTCOME_PROCESSED, sub.status


def _on_subscription_updated(obj: Any) -> Tuple[str, Optional[str]]:
    sub = subscriptions.find_by_stripe_id(field_of(obj, "id"))
    if sub is None:
        return OUTCOME_IGNORED, "unknown_subscription"
    sub = subscriptions.apply_provider_status(sub, field_of(obj, "status"), expires_at=_period_end(obj))
    return OUTCOME_PROCESSED, sub.status


def _on_subscription_deleted(obj: Any) -> Tuple[str, Optional[str]]:
    sub = subscriptions.find_by_stripe_id(field_of(obj, "id"))
    if sub is None:
        return OUTCOME_IGNORED, "unknown_subscription"
    if sub.status in (SUB_CANCELLED, SUB_EXPIRED):
        return OUTCOME_PROCESSED, sub.status
    # Credits already granted stay with the organization
    subscriptions.mark_status(sub.id, SUB_CANCELLED, expires_at=_period_end(obj))
    return OUTCOME_PROCESSED, SUB_CANCELLED


HANDLERS: Dict[str, Callable[[Any], Tuple[str, Optional[str]]]] = {
    "checkout.session.completed": _on_checkout_completed,
    "invoice.payment_succeeded": _on_invoice_succeeded,
    "invoice.paid": _on_invoice_succeeded,
    "invoice.payment_failed": _on_invoice_failed,
    "customer.subscription.updated": _on_subscription_updated,
    "customer.subscription.deleted": _on_subscription_deleted,
}


def _open_log(event_id: str, event_type: str, payload: Dict[str, Any]) -> Tuple[BillingEventLog, bool]:
    """Return the event's log row and whether it was already processed."""
    log = BillingEventLog.query.filter_by(stripe_event_id=event_id).one_or_none()
    if log is not None:
        if log.processed_at is not None:
            return log, True
        log.retries = (log.retries or 0) + 1
        db.session.commit()
        return log, False

    log = BillingEventLog(
        stripe_event_id=event_id,
        type=event_type,
        signature_valid=True,
        payload=payload,
    )
    db.session.add(log)
    try:
        db.session.commit()
    except IntegrityError:
        # A concurrent delivery inserted it first
        db.session.rollback()
        log = BillingEventLog.query.filter_by(stripe_event_id=event_id).one()
        return log, log.processed_at is not None
    return log, False


def reconcile(event: Any, payload: Optional[Dict[str, Any]] = None) -> ReconcileResult:
    """Apply one Stripe event. Handler errors are recorded on the log row, never raised."""
    event_id = field_of(event, "id")
    event_type = field_of(event, "type")
    if not event_id or not event_type:
        raise ValidationError("Malformed event", details="id and type are required")

    if payload is None:
        payload = event if isinstance(event, dict) else {"id": event_id, "type": event_type}
    log, processed = _open_log(event_id, event_type, payload)
    if processed:
        logger.info("reconciler.duplicate", extra={"event_id": event_id, "type": event_type})
        return ReconcileResult(event_id, event_type, OUTCOME_DUPLICATE)
    log_id = log.id

    handler = HANDLERS.get(event_type)
    obj = field_of(field_of(event, "data"), "object") or {}
    try:
        if handler is None:
            outcome, detail = OUTCOME_IGNORED, None
        else:
            outcome, detail = handler(obj)
    except Exception as exc:
        db.session.rollback()
        log = db.session.get(BillingEventLog, log_id)
        log.notes = f"handler_error:{type(exc).__name__}"[:255]
        db.session.commit()
        logger.exception("reconciler.handler_error", extra={"event_id": event_id, "type": event_type})
        return ReconcileResult(event_id, event_type, OUTCOME_FAILED, type(exc).__name__)

    log = db.session.get(BillingEventLog, log_id)
    log.processed_at = datetime.now(timezone.utc)
    log.notes = (f"{outcome}:{detail}" if detail else outcome)[:255]
    db.session.commit()
    logger.info(
        "reconciler.event",
        extra={"event_id": event_id, "type": event_type, "outcome": outcome, "detail": detail},
    )
    return ReconcileResult(event_id, event_type, outcome, detail)
