from datetime import datetime

from flask import request, jsonify, current_app
from flask_login import login_required, current_user

from . import bp
from armonyco.extensions import limiter
from armonyco.models.org_membership import ROLE_OWNER, ROLE_ADMIN
from armonyco.billing import catalog
from armonyco.billing.errors import ValidationError, parse_int
from armonyco.services import checkout, ledger
from armonyco.services.policy import require_member, role_required, _membership, _abort_smart


def _json_body():
    return request.get_json(silent=True) or {}


def _parse_dt(value, field):
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 timestamp", details={"field": field, "value": value})


@bp.post("/credits/checkout")
@limiter.limit("10/minute")
@login_required
@role_required(ROLE_OWNER, ROLE_ADMIN)
def credits_checkout():
    data = _json_body()
    result = checkout.create_credit_checkout(data.get("organizationId"), data.get("creditPackId"))
    return jsonify({
        "checkoutUrl": result.checkout_url,
        "sessionId": result.session_id,
        "message": result.message,
        "mock": result.mock,
    })


@bp.post("/subscriptions/checkout")
@limiter.limit("10/minute")
@login_required
def subscription_checkout():
    data = _json_body()
    org_id = data.get("organizationId")
    if org_id not in (None, ""):
        # Buying for an organization needs admin rights on it
        if not current_user.is_authenticated:
            return _abort_smart(401)
        m = _membership(parse_int(org_id, "organizationId"))
        if m is None:
            return _abort_smart(404)
        if m.role not in (ROLE_OWNER, ROLE_ADMIN):
            return _abort_smart(403)

    result = checkout.create_subscription_checkout(
        data.get("planId"),
        data.get("email"),
        amount=data.get("amount"),
        plan_name=data.get("planName"),
        credits=data.get("credits"),
        user_id=data.get("userId") or getattr(current_user, "id", None),
        organization_id=org_id,
        metadata=data.get("metadata"),
        success_url=data.get("successUrl"),
        cancel_url=data.get("cancelUrl"),
    )
    return jsonify({
        "sessionId": result.session_id,
        "url": result.checkout_url,
        "customerId": result.customer_id,
        "mode": result.mode,
        "action": result.action,
        "mock": result.mock,
    })


@bp.post("/subscriptions/change")
@limiter.limit("10/minute")
@login_required
@role_required(ROLE_OWNER, ROLE_ADMIN)
def subscription_change():
    data = _json_body()
    result = checkout.create_plan_change_checkout(
        data.get("organizationId"),
        data.get("newPlanId"),
        data.get("currentSubscriptionId"),
    )
    return jsonify({
        "checkoutUrl": result.checkout_url,
        "sessionId": result.session_id,
        "action": result.action,
        "message": result.message,
        "mock": result.mock,
    })


@bp.get("/checkout/verify")
@login_required
def checkout_verify():
    result = checkout.verify_checkout(request.args.get("session_id"))
    return jsonify({
        "status": result.status,
        "paymentIntentId": result.payment_intent_id,
        "amount": result.amount,
        "metadata": result.metadata,
        "mock": result.mock,
    })


@bp.get("/organizations/<int:org_id>/balance")
@login_required
@require_member
def organization_balance(org_id):
    principal = ledger.org_principal(org_id)
    credits = ledger.balance_of(principal)
    return jsonify({
        "organizationId": org_id,
        "principalId": principal,
        "credits": credits,
        "tokens": ledger.tokens_from_credits(credits),
    })


@bp.get("/organizations/<int:org_id>/history")
@login_required
@require_member
def organization_history(org_id):
    principal = ledger.org_principal(org_id)
    start = _parse_dt(request.args.get("start"), "start")
    end = _parse_dt(request.args.get("end"), "end")
    txs = ledger.history_of(
        principal,
        tx_type=request.args.get("type") or None,
        start=start,
        end=end,
        limit=parse_int(request.args.get("limit", 50), "limit"),
        offset=parse_int(request.args.get("offset", 0), "offset"),
    )
    return jsonify({
        "organizationId": org_id,
        "transactions": [tx.to_dict() for tx in txs],
        "stats": ledger.stats_of(principal, start=start),
    })


@bp.post("/organizations/<int:org_id>/consume")
@login_required
@require_member
def organization_consume(org_id):
    data = _json_body()
    amount = parse_int(data.get("amount"), "amount")
    tx = ledger.consume(
        ledger.org_principal(org_id),
        amount,
        data.get("reason"),
        reference_id=data.get("referenceId"),
        meta={"userId": getattr(current_user, "id", None)},
    )
    current_app.logger.info(
        "billing.consume",
        extra={"org_id": org_id, "amount": amount, "transaction_id": tx.id},
    )
    return jsonify({"transaction": tx.to_dict(), "credits": tx.balance_after})


@bp.get("/plans")
def plans():
    return jsonify({"plans": catalog.catalog_snapshot()["plans"]})


@bp.get("/credit-packs")
def credit_packs():
    return jsonify({"creditPacks": catalog.catalog_snapshot()["creditPacks"]})
