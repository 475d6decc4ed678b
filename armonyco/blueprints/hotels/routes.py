from flask import request, jsonify
from flask_login import login_required

from . import bp
from armonyco.extensions import db
from armonyco.models import Hotel
from armonyco.models.org_membership import ROLE_OWNER, ROLE_ADMIN
from armonyco.models.product_activation import ACTIVATION_ACTIVE
from armonyco.billing.errors import NotFoundError, require_fields
from armonyco.services import activations
from armonyco.services.policy import require_member, role_required


def _hotel_in_org(org_id: int, hotel_id: int) -> Hotel:
    hotel = db.session.get(Hotel, hotel_id)
    if hotel is None or hotel.organization_id != org_id:
        raise NotFoundError("Hotel not found", details={"hotelId": hotel_id})
    return hotel


@bp.get("/<int:org_id>/hotels/<int:hotel_id>/products")
@login_required
@require_member
def list_products(org_id, hotel_id):
    _hotel_in_org(org_id, hotel_id)
    rows = activations.list_for_hotel(hotel_id, status=request.args.get("status") or None)
    return jsonify({"hotelId": hotel_id, "products": [r.to_dict() for r in rows]})


@bp.get("/<int:org_id>/hotels/<int:hotel_id>/products/<int:product_id>")
@login_required
@require_member
def get_product(org_id, hotel_id, product_id):
    _hotel_in_org(org_id, hotel_id)
    row = activations.get_activation(hotel_id, product_id)
    if row is None:
        return jsonify({
            "hotelId": hotel_id,
            "productId": product_id,
            "status": activations.get_status(hotel_id, product_id),
            "activatedAt": None,
        })
    return jsonify(row.to_dict())


@bp.put("/<int:org_id>/hotels/<int:hotel_id>/products/<int:product_id>")
@login_required
@role_required(ROLE_OWNER, ROLE_ADMIN)
def set_product_status(org_id, hotel_id, product_id):
    _hotel_in_org(org_id, hotel_id)
    data = request.get_json(silent=True) or {}
    require_fields(data, "status")
    if str(data["status"]).lower() == ACTIVATION_ACTIVE:
        activations.require_entitlement(org_id)
    row = activations.set_status(hotel_id, product_id, data["status"])
    return jsonify(row.to_dict())


@bp.post("/<int:org_id>/hotels/<int:hotel_id>/products/deactivate-all")
@login_required
@role_required(ROLE_OWNER, ROLE_ADMIN)
def deactivate_all(org_id, hotel_id):
    _hotel_in_org(org_id, hotel_id)
    count = activations.deactivate_all(hotel_id)
    return jsonify({"hotelId": hotel_id, "deactivated": count})
