import os
# Ensure the app factory picks the Testing config & SQLite memory DB
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite:///:memory:")
# Billing runs against the mock provider unless a test swaps one in
os.environ.pop("STRIPE_SECRET_KEY", None)
os.environ.pop("STRIPE_WEBHOOK_SECRET", None)

import pytest
from armonyco import create_app
from armonyco.extensions import db
from armonyco.billing import catalog
from armonyco.billing.provider import (
    CheckoutSession,
    PaymentProvider,
    ProviderCustomer,
    SessionStatus,
)
from armonyco.models import (
    Organization,
    User,
    OrgMembership,
    Hotel,
    Product,
    SubscriptionPlan,
    ROLE_OWNER,
)

PRICE_CONFIG = {
    "STRIPE_PRICE_STARTER": "price_starter",
    "STRIPE_PRICE_PRO": "price_pro",
    "STRIPE_PRICE_ELITE": "price_elite",
    "STRIPE_PRICE_PACK_5K": "price_pack_5k",
    "STRIPE_PRICE_PACK_10K": "price_pack_10k",
    "STRIPE_PRICE_PACK_25K": "price_pack_25k",
    "STRIPE_PRICE_PACK_50K": "price_pack_50k",
}

@pytest.fixture(scope="session")
def app():
    app = create_app()
    app.config.update(
        TESTING=True,
        APP_BASE_URL="http://example.test",
        WTF_CSRF_ENABLED=False,
        LOGIN_DISABLED=True,
        STRIPE_SECRET_KEY=None,
        STRIPE_WEBHOOK_SECRET=None,
        **PRICE_CONFIG,
    )
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()

@pytest.fixture()
def client(app):
    return app.test_client()

@pytest.fixture()
def ctx(app):
    """Run the test body inside an app context (service-level tests)."""
    with app.app_context():
        yield

@pytest.fixture(autouse=True)
def _db_clean(app):
    # Clean BEFORE each test
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()
    yield
    # And AFTER each test (keeps state hermetic even if a test fails mid-transaction)
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()

# ---- fake payment provider ----

class FakeProvider(PaymentProvider):
    """Records every call; answers like Stripe would."""

    def __init__(self):
        self.sessions = []
        self.customers = {}
        self.created_customers = []
        self.cancelled = []
        self.lookups = []
        self.fail_with = None

    def create_checkout_session(self, params, *, idempotency_key=None):
        if self.fail_with is not None:
            raise self.fail_with
        self.sessions.append({"params": params, "idempotency_key": idempotency_key})
        sid = f"cs_test_{len(self.sessions)}"
        return CheckoutSession(
            id=sid,
            url=f"https://checkout.stripe.test/{sid}",
            mode=params["mode"],
            customer_id=params.get("customer"),
        )

    def retrieve_checkout_session(self, session_id):
        return SessionStatus(id=session_id, status="success", amount_total=8900, payment_intent_id="pi_1", metadata={"planId": "1"})

    def find_customer_by_email(self, email):
        self.lookups.append(email)
        cid = self.customers.get(email)
        return ProviderCustomer(id=cid, email=email) if cid else None

    def create_customer(self, email, metadata=None):
        cid = f"cus_new_{len(self.created_customers) + 1}"
        self.created_customers.append({"email": email, "metadata": metadata})
        self.customers[email] = cid
        return ProviderCustomer(id=cid, email=email)

    def cancel_subscription(self, subscription_id):
        if self.fail_with is not None:
            raise self.fail_with
        self.cancelled.append(subscription_id)

@pytest.fixture()
def provider(app):
    original = app.extensions.get("payment_provider")
    fake = FakeProvider()
    app.extensions["payment_provider"] = fake
    yield fake
    app.extensions["payment_provider"] = original

# ---- data helpers ----

def seed_plans():
    for p in catalog.DEFAULT_PLANS:
        db.session.add(SubscriptionPlan(
            id=p.id, code=p.code, name=p.name, rank=p.rank,
            monthly_credits=p.monthly_credits, price_major_units=p.price_major_units,
        ))
    db.session.commit()

def make_org(name="Hotel Group", billing_email="billing@example.com"):
    org = Organization(name=name, billing_email=billing_email)
    db.session.add(org)
    db.session.commit()
    return org

def make_member(org_id, email="owner@example.com", role=ROLE_OWNER):
    u = User(email=email, org_id=org_id)
    u.set_password("x")
    db.session.add(u)
    db.session.commit()
    db.session.add(OrgMembership(org_id=org_id, user_id=u.id, role=role))
    db.session.commit()
    return u

def make_hotel(org_id, name="Grand Hotel"):
    h = Hotel(organization_id=org_id, hotel_name=name)
    db.session.add(h)
    db.session.commit()
    return h

def make_product(code="concierge", name="AI Concierge", category="guest"):
    p = Product(code=code, name=name, category=category)
    db.session.add(p)
    db.session.commit()
    return p

def login(client, user_id: int):
    # Simulate Flask-Login session
    with client.session_transaction() as sess:
        sess["_user_id"] = str(user_id)
