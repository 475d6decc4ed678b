import hashlib
import json
from flask import request, jsonify, current_app
from . import bp
from armonyco.extensions import db, csrf
from armonyco.models import BillingEventLog
from armonyco.services.reconciler import reconcile
import stripe


def _log_invalid_signature(raw_bytes: bytes) -> None:
    # Deterministic synthetic id; nothing from an unverified payload is trusted
    digest = hashlib.sha256(raw_bytes).hexdigest()[:32]
    synthetic_id = f"invalid:{digest}"
    if BillingEventLog.query.filter_by(stripe_event_id=synthetic_id).first():
        return
    db.session.add(BillingEventLog(
        stripe_event_id=synthetic_id,
        type="signature_invalid",
        signature_valid=False,
        payload={},
    ))
    db.session.commit()


@csrf.exempt
@bp.post("/stripe")
def stripe_webhook():
    """
    Stripe → /webhooks/stripe
    Verifies the signature, then hands the event to the reconciler.
    """
    secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    if not secret:
        current_app.logger.warning("stripe_webhook.mock_mode: STRIPE_WEBHOOK_SECRET not configured, event not processed")
        return jsonify({"received": True, "mock": True}), 200

    raw_bytes = request.get_data(cache=False, as_text=False)
    sig_header = request.headers.get("Stripe-Signature", "")

    try:
        stripe.Webhook.construct_event(
            payload=raw_bytes.decode("utf-8"),
            sig_header=sig_header,
            secret=secret,
        )
    except (stripe.SignatureVerificationError, ValueError):
        _log_invalid_signature(raw_bytes)
        current_app.logger.warning("stripe_webhook.invalid_signature")
        return jsonify({"error": "invalid_signature"}), 400

    # Signature checked: work on plain JSON so handlers see dicts regardless of SDK version
    event = json.loads(raw_bytes.decode("utf-8"))
    result = reconcile(event, payload=event)

    # Handler failures still answer 200; the event row stays unprocessed and a redelivery retries it
    return jsonify({"ok": True, "duplicate": result.outcome == "duplicate", **result.to_dict()}), 200
