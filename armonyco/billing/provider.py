"""
Payment provider boundary.

Everything that talks to Stripe goes through a PaymentProvider. Responses
are turned into the small dataclasses below before they reach the services,
and Stripe exceptions are translated into the billing error taxonomy here
and nowhere else. When no secret key is configured the app gets a
MockPaymentProvider instead, so callers never branch on configuration.
"""
import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import stripe
from flask import current_app
from stripe import StripeClient

from armonyco.billing.errors import (
    BillingError,
    ProviderAuthError,
    ProviderRequestError,
    ProviderUnavailableError,
)

logger = logging.getLogger(__name__)

MOCK_SESSION_ID = "mock_session_id"


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: Optional[str]
    mode: str
    customer_id: Optional[str] = None
    mock: bool = False


@dataclass(frozen=True)
class ProviderCustomer:
    id: str
    email: Optional[str] = None


@dataclass(frozen=True)
class SessionStatus:
    id: str
    status: str
    amount_total: Optional[int] = None
    payment_intent_id: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    mock: bool = False


def field_of(obj: Any, name: str, default: Any = None) -> Any:
    """Read a field from a StripeObject, a plain dict or anything with attributes."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def ref_id(value: Any) -> Optional[str]:
    """Stripe fields may hold an id or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return field_of(value, "id")


def make_idempotency_key(*parts: Any) -> str:
    raw = "|".join(str(p) for p in parts)
    return "checkout:" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


def params_hash(d: Dict[str, Any]) -> str:
    # Stable across runs if params identical; changes when any field changes
    return hashlib.sha256(json.dumps(d, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")).hexdigest()[:16]


def translate_stripe_error(exc: Exception) -> BillingError:
    """Map a Stripe SDK exception onto the billing error taxonomy."""
    detail = getattr(exc, "user_message", None) or str(exc)
    if isinstance(exc, (stripe.AuthenticationError, stripe.PermissionError)):
        return ProviderAuthError("Payment provider rejected credentials", details=detail)
    if isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError)):
        return ProviderUnavailableError("Payment provider unavailable", details=detail)
    if isinstance(exc, (stripe.InvalidRequestError, stripe.CardError, stripe.IdempotencyError)):
        return ProviderRequestError("Payment provider rejected the request", details=detail)
    if isinstance(exc, stripe.APIError):
        return ProviderUnavailableError("Payment provider error", details=detail)
    return ProviderRequestError("Payment provider error", details=detail)


class PaymentProvider:
    """Interface the billing services depend on."""

    is_mock = False

    def create_checkout_session(self, params: Dict[str, Any], *, idempotency_key: Optional[str] = None) -> CheckoutSession:
        raise NotImplementedError

    def retrieve_checkout_session(self, session_id: str) -> SessionStatus:
        raise NotImplementedError

    def find_customer_by_email(self, email: str) -> Optional[ProviderCustomer]:
        raise NotImplementedError

    def create_customer(self, email: str, metadata: Optional[Dict[str, str]] = None) -> ProviderCustomer:
        raise NotImplementedError

    def cancel_subscription(self, subscription_id: str) -> None:
        raise NotImplementedError


class StripePaymentProvider(PaymentProvider):
    def __init__(self, secret_key: str, *, timeout: float = 10.0, max_network_retries: int = 2):
        self._client = StripeClient(
            secret_key,
            http_client=stripe.RequestsClient(timeout=timeout),
            max_network_retries=max_network_retries,
        )

    def _call(self, op: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except stripe.StripeError as exc:
            err = translate_stripe_error(exc)
            logger.warning(
                "billing.provider.%s_failed",
                op,
                extra={"error": err.error, "stripe_error": type(exc).__name__},
            )
            raise err from exc

    def create_checkout_session(self, params, *, idempotency_key=None):
        options = {"idempotency_key": idempotency_key} if idempotency_key else {}
        session = self._call(
            "checkout_create",
            self._client.checkout.sessions.create,
            params=params,
            options=options,
        )
        return CheckoutSession(
            id=field_of(session, "id"),
            url=field_of(session, "url"),
            mode=field_of(session, "mode") or params.get("mode"),
            customer_id=ref_id(field_of(session, "customer")) or params.get("customer"),
        )

    def retrieve_checkout_session(self, session_id):
        session = self._call(
            "checkout_retrieve",
            self._client.checkout.sessions.retrieve,
            session_id,
            params={"expand": ["payment_intent"]},
        )
        payment_status = field_of(session, "payment_status")
        return SessionStatus(
            id=field_of(session, "id"),
            status="success" if payment_status == "paid" else (payment_status or "unknown"),
            amount_total=field_of(session, "amount_total"),
            payment_intent_id=ref_id(field_of(session, "payment_intent")),
            metadata=dict(field_of(session, "metadata") or {}),
        )

    def find_customer_by_email(self, email):
        result = self._call(
            "customer_list",
            self._client.customers.list,
            params={"email": email, "limit": 1},
        )
        data = field_of(result, "data") or []
        if not data:
            return None
        first = data[0]
        return ProviderCustomer(id=field_of(first, "id"), email=field_of(first, "email"))

    def create_customer(self, email, metadata=None):
        customer = self._call(
            "customer_create",
            self._client.customers.create,
            params={"email": email, "metadata": metadata or {}},
        )
        return ProviderCustomer(id=field_of(customer, "id"), email=field_of(customer, "email"))

    def cancel_subscription(self, subscription_id):
        self._call("subscription_cancel", self._client.subscriptions.cancel, subscription_id)


class MockPaymentProvider(PaymentProvider):
    """Stand-in used when STRIPE_SECRET_KEY is absent. Every response is labelled mock."""

    is_mock = True

    def __init__(self, base_url: str = ""):
        self._base = (base_url or "").rstrip("/")

    def create_checkout_session(self, params, *, idempotency_key=None):
        mode = params.get("mode", "payment")
        tab = "subscription" if mode == "payment" else "billing"
        return CheckoutSession(
            id=MOCK_SESSION_ID,
            url=f"{self._base}/app/settings?tab={tab}&checkout=mock",
            mode=mode,
            customer_id=params.get("customer"),
            mock=True,
        )

    def retrieve_checkout_session(self, session_id):
        if session_id.startswith("mock_session") or session_id.startswith("cs_test_"):
            return SessionStatus(id=session_id, status="success", metadata={}, mock=True)
        return SessionStatus(id=session_id, status="not_found", mock=True)

    def find_customer_by_email(self, email):
        return None

    def create_customer(self, email, metadata=None):
        digest = hashlib.sha256((email or "").lower().encode("utf-8")).hexdigest()[:14]
        return ProviderCustomer(id=f"cus_mock_{digest}", email=email)

    def cancel_subscription(self, subscription_id):
        logger.info("billing.provider.mock_cancel", extra={"subscription_id": subscription_id})


def build_provider(config) -> PaymentProvider:
    key = config.get("STRIPE_SECRET_KEY")
    if not key:
        return MockPaymentProvider(config.get("APP_BASE_URL", ""))
    return StripePaymentProvider(
        key,
        timeout=float(config.get("STRIPE_TIMEOUT_SECONDS", 10)),
        max_network_retries=int(config.get("STRIPE_MAX_NETWORK_RETRIES", 2)),
    )


def init_provider(app) -> None:
    provider = build_provider(app.config)
    app.extensions["payment_provider"] = provider
    if provider.is_mock:
        app.logger.warning("Stripe secret key missing; billing runs against the mock provider")


def get_provider() -> PaymentProvider:
    provider = current_app.extensions.get("payment_provider")
    if provider is None:
        provider = build_provider(current_app.config)
        current_app.extensions["payment_provider"] = provider
    return provider
