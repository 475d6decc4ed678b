import pytest
from armonyco.extensions import db
from armonyco.models import BillingCustomer, BillingEventLog, LedgerTransaction, OrganizationSubscription
from armonyco.models.ledger import TX_CREDIT_PURCHASE, TX_SUBSCRIPTION_RENEWAL, TX_SUBSCRIPTION_UPGRADE
from armonyco.billing.errors import ProviderUnavailableError, ValidationError
from armonyco.services import ledger, subscriptions
from armonyco.services.reconciler import reconcile
from conftest import make_member, make_org, seed_plans

def _event(event_id, event_type, obj):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}

def _checkout_completed(event_id, session_id, metadata, **fields):
    obj = {"id": session_id, "object": "checkout.session", "metadata": metadata}
    obj.update(fields)
    return _event(event_id, "checkout.session.completed", obj)

def _upgrade_event(org_id, event_id="evt_upgrade", session_id="cs_upgrade"):
    return _checkout_completed(
        event_id, session_id,
        {
            "organizationId": str(org_id),
            "planId": "2",
            "action": "upgrade",
            "previousSubscriptionId": "sub_starter",
            "type": "subscription",
        },
        mode="subscription",
        customer="cus_1",
        subscription="sub_pro",
        customer_details={"email": "billing@example.com"},
    )

def test_upgrade_replaces_plan_and_grants_once(ctx, provider):
    seed_plans()
    org = make_org()
    starter, _ = subscriptions.supersede(org.id, 1, stripe_subscription_id="sub_starter", stripe_customer_id="cus_1")

    res = reconcile(_upgrade_event(org.id))
    assert res.outcome == "processed"
    assert res.detail == "upgrade"

    active = OrganizationSubscription.query.filter_by(organization_id=org.id, status="active").all()
    assert len(active) == 1
    assert active[0].plan_id == 2
    assert active[0].stripe_subscription_id == "sub_pro"
    db.session.refresh(starter)
    assert starter.status == "cancelled"

    txs = LedgerTransaction.query.filter_by(principal_id=ledger.org_principal(org.id)).all()
    assert len(txs) == 1
    assert txs[0].type == TX_SUBSCRIPTION_UPGRADE
    assert txs[0].amount == 100_000
    assert txs[0].reference_id == "cs_upgrade"
    assert provider.cancelled == ["sub_starter"]
    assert BillingCustomer.query.filter_by(org_id=org.id, stripe_customer_id="cus_1").count() == 1

    # Redelivery of the same event
    again = reconcile(_upgrade_event(org.id))
    assert again.outcome == "duplicate"
    assert LedgerTransaction.query.filter_by(principal_id=ledger.org_principal(org.id)).count() == 1
    assert provider.cancelled == ["sub_starter"]

def test_same_session_under_new_event_id_grants_once(ctx, provider):
    seed_plans()
    org = make_org()
    subscriptions.supersede(org.id, 1, stripe_subscription_id="sub_starter")
    reconcile(_upgrade_event(org.id, event_id="evt_a"))
    res = reconcile(_upgrade_event(org.id, event_id="evt_b"))
    assert res.outcome == "processed"
    assert ledger.balance_of(ledger.org_principal(org.id)) == 100_000
    assert OrganizationSubscription.query.filter_by(organization_id=org.id, status="active").count() == 1

def test_credit_pack_purchase_credited_once(ctx, provider):
    org = make_org()
    evt = _checkout_completed(
        "evt_pack", "cs_pack",
        {"organizationId": str(org.id), "credits": "11000", "creditPackId": "2",
         "packName": "Popular Pack", "type": "credit_purchase"},
        mode="payment",
    )
    assert reconcile(evt).outcome == "processed"
    assert reconcile(evt).outcome == "duplicate"

    principal = ledger.org_principal(org.id)
    assert ledger.balance_of(principal) == 11_000
    tx = LedgerTransaction.query.filter_by(principal_id=principal).one()
    assert tx.type == TX_CREDIT_PURCHASE
    assert tx.meta["creditPackId"] == "2"

    log = BillingEventLog.query.filter_by(stripe_event_id="evt_pack").one()
    assert log.processed_at is not None
    assert log.notes == "processed:credited"

def test_snake_case_user_metadata_resolves_org(ctx, provider):
    org = make_org()
    u = make_member(org.id)
    evt = _checkout_completed(
        "evt_legacy", "cs_legacy",
        {"user_id": str(u.id), "credits": "5000", "type": "credit_purchase"},
        mode="payment",
    )
    reconcile(evt)
    assert ledger.balance_of(ledger.org_principal(org.id)) == 5_000

def test_user_only_subscription_grants_to_user(ctx, provider):
    seed_plans()
    evt = _checkout_completed(
        "evt_user", "cs_user",
        {"planId": "1", "userId": "77", "type": "subscription"},
        mode="subscription", customer="cus_u", subscription="sub_u",
    )
    res = reconcile(evt)
    assert res.detail == "user_credits_only"
    assert ledger.balance_of(ledger.user_principal(77)) == 25_000
    assert OrganizationSubscription.query.count() == 0

def _invoice(event_id, invoice_id, sub_id, event_type="invoice.payment_succeeded", **fields):
    obj = {"id": invoice_id, "object": "invoice", "subscription": sub_id, "billing_reason": "subscription_cycle"}
    obj.update(fields)
    return _event(event_id, event_type, obj)

def test_renewal_invoice_grants_plan_credits(ctx, provider):
    seed_plans()
    org = make_org()
    sub, _ = subscriptions.supersede(org.id, 1, stripe_subscription_id="sub_r")
    res = reconcile(_invoice("evt_inv", "in_1", "sub_r", period_end=1893456000))
    assert res.detail == "renewed"
    tx = LedgerTransaction.query.filter_by(reference_id="in_1").one()
    assert tx.type == TX_SUBSCRIPTION_RENEWAL
    assert tx.amount == 25_000
    db.session.refresh(sub)
    assert sub.expires_at is not None

    # Same invoice through invoice.paid: no second grant
    reconcile(_invoice("evt_inv_paid", "in_1", "sub_r", event_type="invoice.paid"))
    assert LedgerTransaction.query.filter_by(reference_id="in_1").count() == 1

def test_invoice_subscription_from_parent_details(ctx, provider):
    seed_plans()
    org = make_org()
    subscriptions.supersede(org.id, 2, stripe_subscription_id="sub_nested")
    evt = _invoice("evt_nested", "in_nested", None,
                   parent={"subscription_details": {"subscription": "sub_nested"}})
    assert reconcile(evt).detail == "renewed"
    assert ledger.balance_of(ledger.org_principal(org.id)) == 100_000

def test_initial_invoice_is_left_to_checkout(ctx, provider):
    seed_plans()
    org = make_org()
    subscriptions.supersede(org.id, 1, stripe_subscription_id="sub_i")
    res = reconcile(_invoice("evt_first", "in_first", "sub_i", billing_reason="subscription_create"))
    assert res.outcome == "ignored"
    assert LedgerTransaction.query.count() == 0

def test_invoice_for_cancelled_subscription_ignored(ctx, provider):
    seed_plans()
    org = make_org()
    old, _ = subscriptions.supersede(org.id, 1, stripe_subscription_id="sub_old")
    subscriptions.supersede(org.id, 2, stripe_subscription_id="sub_new")
    res = reconcile(_invoice("evt_old", "in_old", "sub_old"))
    assert res.outcome == "ignored"
    assert res.detail == "subscription_cancelled"
    assert LedgerTransaction.query.count() == 0

def test_invoice_for_superseded_past_due_subscription_ignored(ctx, provider):
    seed_plans()
    org = make_org()
    old, _ = subscriptions.supersede(org.id, 1, stripe_subscription_id="sub_old")
    subscriptions.record_payment_failure(old)
    subscriptions.supersede(org.id, 2, stripe_subscription_id="sub_new")

    res = reconcile(_invoice("evt_late", "in_late", "sub_old"))
    assert (res.outcome, res.detail) == ("ignored", "subscription_cancelled")
    assert LedgerTransaction.query.filter_by(type=TX_SUBSCRIPTION_RENEWAL).count() == 0
    assert [s.stripe_subscription_id for s in subscriptions.list_live(org.id)] == ["sub_new"]

def test_replace_target_of_another_org_is_not_cancelled(ctx, provider):
    seed_plans()
    victim = make_org("Victim")
    attacker = make_org("Attacker", billing_email="attacker@example.com")
    subscriptions.supersede(victim.id, 1, stripe_subscription_id="sub_victim")

    evt = _checkout_completed(
        "evt_foreign", "cs_foreign",
        {
            "organizationId": str(attacker.id),
            "planId": "2",
            "action": "upgrade",
            "previousSubscriptionId": "sub_victim",
            "replace_subscription": "sub_victim",
            "type": "subscription",
        },
        mode="subscription", customer="cus_att", subscription="sub_attacker",
    )
    res = reconcile(evt)
    assert res.outcome == "processed"
    assert provider.cancelled == []
    assert subscriptions.get_active(victim.id).stripe_subscription_id == "sub_victim"
    assert subscriptions.get_active(attacker.id).stripe_subscription_id == "sub_attacker"

def test_past_due_current_subscription_is_replaced(ctx, provider):
    seed_plans()
    org = make_org()
    starter, _ = subscriptions.supersede(org.id, 1, stripe_subscription_id="sub_starter")
    subscriptions.record_payment_failure(starter)

    res = reconcile(_upgrade_event(org.id))
    assert res.outcome == "processed"
    assert provider.cancelled == ["sub_starter"]
    db.session.refresh(starter)
    assert starter.status == "cancelled"

def test_payment_failures_suspend_after_threshold(app, ctx, provider, monkeypatch):
    monkeypatch.setitem(app.config, "PAYMENT_FAILURE_SUSPEND_THRESHOLD", 2)
    seed_plans()
    org = make_org()
    subscriptions.supersede(org.id, 1, stripe_subscription_id="sub_f")
    assert reconcile(_invoice("evt_f1", "in_f1", "sub_f", event_type="invoice.payment_failed")).detail == "past_due"
    assert reconcile(_invoice("evt_f2", "in_f2", "sub_f", event_type="invoice.payment_failed")).detail == "suspended"
    assert subscriptions.find_by_stripe_id("sub_f").status == "suspended"
    assert LedgerTransaction.query.count() == 0

def test_subscription_deleted_keeps_credits(ctx, provider):
    seed_plans()
    org = make_org()
    subscriptions.supersede(org.id, 1, stripe_subscription_id="sub_d")
    ledger.grant(ledger.org_principal(org.id), 500, TX_CREDIT_PURCHASE, "pre-d")

    res = reconcile(_event("evt_del", "customer.subscription.deleted", {"id": "sub_d", "status": "canceled"}))
    assert res.detail == "cancelled"
    assert subscriptions.get_active(org.id) is None
    assert ledger.balance_of(ledger.org_principal(org.id)) == 500

def test_subscription_updated_maps_status(ctx, provider):
    seed_plans()
    org = make_org()
    subscriptions.supersede(org.id, 1, stripe_subscription_id="sub_u")
    res = reconcile(_event("evt_upd", "customer.subscription.updated", {"id": "sub_u", "status": "past_due"}))
    assert res.detail == "past_due"

def test_unhandled_event_type_is_recorded_and_ignored(ctx, provider):
    res = reconcile(_event("evt_other", "payment_intent.created", {"id": "pi_1"}))
    assert res.outcome == "ignored"
    log = BillingEventLog.query.filter_by(stripe_event_id="evt_other").one()
    assert log.processed_at is not None

def test_unknown_subscription_ignored(ctx, provider):
    res = reconcile(_invoice("evt_ghost", "in_ghost", "sub_ghost"))
    assert (res.outcome, res.detail) == ("ignored", "unknown_subscription")

def test_handler_error_is_isolated_and_retried(ctx, provider):
    org = make_org()
    evt = _checkout_completed(
        "evt_retry", "cs_retry",
        {"organizationId": str(org.id), "planId": "2", "action": "initial", "type": "subscription"},
        mode="subscription", customer="cus_r", subscription="sub_retry",
    )
    # Plans not seeded yet: the handler fails
    res = reconcile(evt)
    assert res.outcome == "failed"
    assert res.detail == "NotFoundError"
    log = BillingEventLog.query.filter_by(stripe_event_id="evt_retry").one()
    assert log.processed_at is None
    assert log.notes == "handler_error:NotFoundError"

    seed_plans()
    res = reconcile(evt)
    assert res.outcome == "processed"
    log = BillingEventLog.query.filter_by(stripe_event_id="evt_retry").one()
    assert log.retries == 1
    assert log.processed_at is not None
    assert ledger.balance_of(ledger.org_principal(org.id)) == 100_000

def test_cancel_failure_does_not_fail_event(ctx, provider):
    seed_plans()
    org = make_org()
    subscriptions.supersede(org.id, 1, stripe_subscription_id="sub_starter")
    provider.fail_with = ProviderUnavailableError("Payment provider unavailable")
    res = reconcile(_upgrade_event(org.id))
    assert res.outcome == "processed"
    assert subscriptions.get_active(org.id).plan_id == 2

def test_malformed_event_rejected(ctx):
    with pytest.raises(ValidationError):
        reconcile({"type": "invoice.paid"})
