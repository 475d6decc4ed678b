import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from armonyco.extensions import db
from armonyco.models import Organization, OrganizationSubscription, SubscriptionPlan
from armonyco.models.subscription import (
    SUB_ACTIVE,
    SUB_CANCELLED,
    SUB_EXPIRED,
    SUB_PAST_DUE,
    SUB_STATUSES,
    SUB_SUSPENDED,
)
from armonyco.billing.errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

# Stripe subscription.status -> our status
_PROVIDER_STATUS_MAP = {
    "active": SUB_ACTIVE,
    "trialing": SUB_ACTIVE,
    "past_due": SUB_PAST_DUE,
    "unpaid": SUB_SUSPENDED,
    "paused": SUB_SUSPENDED,
    "canceled": SUB_CANCELLED,
    "incomplete_expired": SUB_EXPIRED,
}


# Rows still billed by Stripe; supersede moves all of them out
LIVE_STATUSES = (SUB_ACTIVE, SUB_PAST_DUE, SUB_SUSPENDED)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def from_timestamp(ts) -> Optional[datetime]:
    return datetime.fromtimestamp(int(ts), tz=timezone.utc) if ts else None


def get_active(organization_id: int) -> Optional[OrganizationSubscription]:
    return OrganizationSubscription.query.filter_by(
        organization_id=organization_id, status=SUB_ACTIVE
    ).one_or_none()


def list_live(organization_id: int) -> List[OrganizationSubscription]:
    return (
        OrganizationSubscription.query.filter(
            OrganizationSubscription.organization_id == organization_id,
            OrganizationSubscription.status.in_(LIVE_STATUSES),
        )
        .order_by(OrganizationSubscription.id.desc())
        .all()
    )


def get_current(organization_id: int) -> Optional[OrganizationSubscription]:
    """The active row, else the newest past_due/suspended one."""
    active = get_active(organization_id)
    if active is not None:
        return active
    live = list_live(organization_id)
    return live[0] if live else None


def find_by_stripe_id(stripe_subscription_id: str) -> Optional[OrganizationSubscription]:
    if not stripe_subscription_id:
        return None
    return OrganizationSubscription.query.filter_by(stripe_subscription_id=stripe_subscription_id).one_or_none()


def find_latest_by_customer(stripe_customer_id: str) -> Optional[OrganizationSubscription]:
    if not stripe_customer_id:
        return None
    return (
        OrganizationSubscription.query.filter_by(stripe_customer_id=stripe_customer_id)
        .order_by(OrganizationSubscription.id.desc())
        .first()
    )


def supersede(
    organization_id: int,
    plan_id: int,
    *,
    stripe_subscription_id: Optional[str] = None,
    stripe_customer_id: Optional[str] = None,
    started_at: Optional[datetime] = None,
    expires_at: Optional[datetime] = None,
) -> Tuple[OrganizationSubscription, bool]:
    """
    Make `plan_id` the organization's single active subscription.

    The organization row is locked for the duration so two concurrent
    supersedes serialize. Every other live row (active, past_due or
    suspended) is cancelled before the new one is inserted, in one commit.
    Calling again with the same stripe_subscription_id returns the existing
    row (created=False).
    """
    org = db.session.execute(
        select(Organization).where(Organization.id == organization_id).with_for_update()
    ).scalar_one_or_none()
    if org is None:
        db.session.rollback()
        raise NotFoundError("Organization not found", details={"organizationId": organization_id})
    if db.session.get(SubscriptionPlan, plan_id) is None:
        db.session.rollback()
        raise NotFoundError("Plan not found", details={"planId": plan_id})

    if stripe_subscription_id:
        existing = find_by_stripe_id(stripe_subscription_id)
        if existing is not None:
            db.session.rollback()
            if existing.organization_id != organization_id:
                raise ConflictError(
                    "Subscription belongs to another organization",
                    details={"stripeSubscriptionId": stripe_subscription_id},
                )
            return existing, False

    previous = list_live(organization_id)
    for old in previous:
        old.status = SUB_CANCELLED
        old.expires_at = old.expires_at or _now()
    # Old rows must leave 'active' before the new row hits the partial unique index
    db.session.flush()

    sub = OrganizationSubscription(
        organization_id=organization_id,
        plan_id=plan_id,
        status=SUB_ACTIVE,
        started_at=started_at or _now(),
        expires_at=expires_at,
        stripe_customer_id=stripe_customer_id,
        stripe_subscription_id=stripe_subscription_id,
        payment_failed_count=0,
    )
    db.session.add(sub)
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise ConflictError(
            "Concurrent subscription change for organization",
            details={"organizationId": organization_id},
        ) from exc

    logger.info(
        "subscriptions.supersede",
        extra={
            "organization_id": organization_id,
            "plan_id": plan_id,
            "superseded": [s.id for s in previous],
            "stripe_subscription_id": stripe_subscription_id,
        },
    )
    return sub, True


def mark_status(subscription_id: int, status: str, *, expires_at: Optional[datetime] = None) -> OrganizationSubscription:
    if status not in SUB_STATUSES:
        raise ValidationError(f"Unknown subscription status {status!r}")

    sub = db.session.execute(
        select(OrganizationSubscription)
        .where(OrganizationSubscription.id == subscription_id)
        .with_for_update()
    ).scalar_one_or_none()
    if sub is None:
        db.session.rollback()
        raise NotFoundError("Subscription not found", details={"subscriptionId": subscription_id})

    if status == SUB_ACTIVE and sub.status != SUB_ACTIVE:
        other = get_active(sub.organization_id)
        if other is not None and other.id != sub.id:
            db.session.rollback()
            raise ConflictError(
                "Organization already has an active subscription",
                details={"organizationId": sub.organization_id, "activeSubscriptionId": other.id},
            )

    previous = sub.status
    sub.status = status
    if expires_at is not None:
        sub.expires_at = expires_at
    db.session.commit()
    if previous != status:
        logger.info(
            "subscriptions.status_changed",
            extra={"subscription_id": sub.id, "from": previous, "to": status},
        )
    return sub


def record_payment_failure(subscription: OrganizationSubscription, *, threshold: int = 3) -> OrganizationSubscription:
    """Bump the failure counter; past_due below the threshold, suspended at or above it."""
    sub = db.session.execute(
        select(OrganizationSubscription)
        .where(OrganizationSubscription.id == subscription.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one()
    sub.payment_failed_count = (sub.payment_failed_count or 0) + 1
    sub.last_payment_attempt = _now()
    failed = sub.payment_failed_count
    db.session.commit()

    new_status = SUB_SUSPENDED if failed >= threshold else SUB_PAST_DUE
    if sub.status in (SUB_CANCELLED, SUB_EXPIRED):
        return sub
    logger.warning(
        "subscriptions.payment_failed",
        extra={"subscription_id": sub.id, "failed_count": failed, "threshold": threshold, "status": new_status},
    )
    return mark_status(sub.id, new_status)


def record_payment_success(subscription: OrganizationSubscription, *, expires_at: Optional[datetime] = None) -> OrganizationSubscription:
    sub = db.session.execute(
        select(OrganizationSubscription)
        .where(OrganizationSubscription.id == subscription.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one()
    sub.payment_failed_count = 0
    sub.last_payment_attempt = _now()
    db.session.commit()
    if sub.status in (SUB_CANCELLED, SUB_EXPIRED):
        return sub
    return mark_status(sub.id, SUB_ACTIVE, expires_at=expires_at)


def apply_provider_status(
    subscription: OrganizationSubscription,
    provider_status: Optional[str],
    *,
    expires_at: Optional[datetime] = None,
) -> OrganizationSubscription:
    """Follow status drift reported by Stripe (customer.subscription.updated)."""
    status = _PROVIDER_STATUS_MAP.get(provider_status or "")
    if status is None:
        logger.info(
            "subscriptions.provider_status_ignored",
            extra={"subscription_id": subscription.id, "provider_status": provider_status},
        )
        return subscription
    # A superseded row stays cancelled even if Stripe still reports it active
    if subscription.status == SUB_CANCELLED and status == SUB_ACTIVE:
        return subscription
    return mark_status(subscription.id, status, expires_at=expires_at)
