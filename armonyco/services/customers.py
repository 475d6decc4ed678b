import logging
from typing import Dict, Optional

from armonyco.extensions import db
from armonyco.models import BillingCustomer
from armonyco.billing.errors import ValidationError
from armonyco.billing.provider import PaymentProvider, ProviderCustomer
from armonyco.services import subscriptions

logger = logging.getLogger(__name__)


def resolve_customer(
    provider: PaymentProvider,
    email: Optional[str],
    known_customer_id: Optional[str] = None,
    metadata: Optional[Dict[str, str]] = None,
) -> ProviderCustomer:
    """
    Find or create the Stripe customer for a billing email.

    A known customer id short-circuits without any provider call. Otherwise
    the first customer with that email is reused, and only when there is none
    a new one is created, tagged with `metadata`.
    """
    if known_customer_id:
        return ProviderCustomer(id=known_customer_id, email=email)

    email = (email or "").strip()
    if not email:
        raise ValidationError("Missing required fields", details="email is required")

    found = provider.find_customer_by_email(email)
    if found is not None:
        logger.info("billing.customer.reused", extra={"customer_id": found.id})
        return found

    created = provider.create_customer(email, metadata={k: str(v) for k, v in (metadata or {}).items() if v is not None})
    logger.info("billing.customer.created", extra={"customer_id": created.id})
    return created


def known_customer_for_org(organization_id: int) -> Optional[str]:
    """Stripe customer id already associated with the organization, if any."""
    bc = (
        BillingCustomer.query.filter_by(org_id=organization_id)
        .order_by(BillingCustomer.id.desc())
        .first()
    )
    if bc is not None:
        return bc.stripe_customer_id
    sub = subscriptions.get_current(organization_id)
    return sub.stripe_customer_id if sub is not None else None


def upsert_billing_customer(organization_id: int, stripe_customer_id: str, email: Optional[str] = None) -> BillingCustomer:
    """Record the organization's Stripe customer. Does not commit."""
    bc = BillingCustomer.query.filter_by(stripe_customer_id=stripe_customer_id).one_or_none()
    if bc is None:
        bc = BillingCustomer(org_id=organization_id, stripe_customer_id=stripe_customer_id, billing_email=email)
        db.session.add(bc)
    elif email and not bc.billing_email:
        bc.billing_email = email
    return bc
