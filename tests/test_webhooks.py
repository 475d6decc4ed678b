import json
import stripe
from armonyco.models import BillingEventLog
from armonyco.services import ledger
from conftest import make_org

def _construct(payload, sig_header, secret):
    if sig_header != "t=1,v1=good":
        raise stripe.SignatureVerificationError("bad signature", sig_header)
    return json.loads(payload)

def _post(client, event, sig="t=1,v1=good"):
    return client.post(
        "/webhooks/stripe",
        data=json.dumps(event),
        headers={"Stripe-Signature": sig, "Content-Type": "application/json"},
    )

def _pack_event(org_id, event_id="evt_wh_pack"):
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {"object": {
            "id": "cs_wh_pack",
            "mode": "payment",
            "metadata": {"organizationId": str(org_id), "credits": "5000", "type": "credit_purchase"},
        }},
    }

def _with_secret(app, monkeypatch):
    monkeypatch.setitem(app.config, "STRIPE_WEBHOOK_SECRET", "whsec_test")
    monkeypatch.setattr(stripe.Webhook, "construct_event", staticmethod(_construct))

def test_mock_mode_acknowledges_without_processing(app, client):
    with app.app_context():
        org_id = make_org().id
    resp = _post(client, _pack_event(org_id))
    assert resp.status_code == 200
    assert resp.get_json() == {"received": True, "mock": True}
    with app.app_context():
        assert BillingEventLog.query.count() == 0
        assert ledger.balance_of(ledger.org_principal(org_id)) == 0

def test_signed_event_is_reconciled(app, client, monkeypatch):
    _with_secret(app, monkeypatch)
    with app.app_context():
        org_id = make_org().id

    resp = _post(client, _pack_event(org_id))
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["ok"] is True
    assert body["duplicate"] is False
    assert body["outcome"] == "processed"

    resp = _post(client, _pack_event(org_id))
    assert resp.get_json()["duplicate"] is True

    with app.app_context():
        assert ledger.balance_of(ledger.org_principal(org_id)) == 5000
        log = BillingEventLog.query.filter_by(stripe_event_id="evt_wh_pack").one()
        assert log.signature_valid is True

def test_invalid_signature_rejected_and_logged_once(app, client, monkeypatch):
    _with_secret(app, monkeypatch)
    with app.app_context():
        org_id = make_org().id

    for _ in range(2):
        resp = _post(client, _pack_event(org_id), sig="t=1,v1=forged")
        assert resp.status_code == 400
        assert resp.get_json() == {"error": "invalid_signature"}

    with app.app_context():
        assert ledger.balance_of(ledger.org_principal(org_id)) == 0
        rows = BillingEventLog.query.all()
        assert len(rows) == 1
        assert rows[0].signature_valid is False
        assert rows[0].stripe_event_id.startswith("invalid:")

def test_handler_failure_still_acknowledged(app, client, monkeypatch):
    _with_secret(app, monkeypatch)
    event = {
        "id": "evt_wh_bad",
        "type": "checkout.session.completed",
        "data": {"object": {"id": "cs_bad", "mode": "payment", "metadata": {"type": "credit_purchase"}}},
    }
    resp = _post(client, event)
    assert resp.status_code == 200
    assert resp.get_json()["outcome"] == "failed"
    with app.app_context():
        log = BillingEventLog.query.filter_by(stripe_event_id="evt_wh_bad").one()
        assert log.processed_at is None
        assert log.notes == "handler_error:ValidationError"
