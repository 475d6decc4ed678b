import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import case, func, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from armonyco.extensions import db
from armonyco.models import Hotel, Product, ProductActivation
from armonyco.models.product_activation import (
    ACTIVATION_ACTIVE,
    ACTIVATION_INACTIVE,
    ACTIVATION_STATUSES,
)
from armonyco.billing.errors import ConflictError, EntitlementRequired, NotFoundError, ValidationError
from armonyco.services import ledger, subscriptions

logger = logging.getLogger(__name__)

_UPSERT_DIALECTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def _validate_status(status: str) -> str:
    status = (status or "").strip().lower()
    if status not in ACTIVATION_STATUSES:
        raise ValidationError(
            "Invalid status",
            details=f"status must be one of {', '.join(ACTIVATION_STATUSES)}",
        )
    return status


def set_status(hotel_id: int, product_id: int, status: str) -> ProductActivation:
    """
    Upsert the (hotel, product) activation in one statement.

    activated_at is stamped when the row enters 'active' and kept as-is on
    every other transition, so pausing and resuming does not lose it.
    """
    status = _validate_status(status)
    if db.session.get(Hotel, hotel_id) is None:
        raise NotFoundError("Hotel not found", details={"hotelId": hotel_id})
    if db.session.get(Product, product_id) is None:
        raise NotFoundError("Product not found", details={"productId": product_id})

    dialect = db.session.get_bind().dialect.name
    insert = _UPSERT_DIALECTS.get(dialect)
    if insert is None:
        raise ConflictError(
            "Activation upsert is not supported by this database",
            details={"dialect": dialect},
        )

    now = datetime.now(timezone.utc)
    table = ProductActivation.__table__
    stmt = insert(table).values(
        hotel_id=hotel_id,
        product_id=product_id,
        status=status,
        activated_at=now if status == ACTIVATION_ACTIVE else None,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[table.c.hotel_id, table.c.product_id],
        set_={
            "status": stmt.excluded.status,
            "activated_at": case(
                (
                    (stmt.excluded.status == ACTIVATION_ACTIVE) & (table.c.status != ACTIVATION_ACTIVE),
                    stmt.excluded.activated_at,
                ),
                else_=table.c.activated_at,
            ),
            "updated_at": func.now(),
        },
    )
    db.session.execute(stmt)
    db.session.commit()

    row = (
        ProductActivation.query.filter_by(hotel_id=hotel_id, product_id=product_id)
        .execution_options(populate_existing=True)
        .one()
    )
    logger.info(
        "activations.set_status",
        extra={"hotel_id": hotel_id, "product_id": product_id, "status": status},
    )
    return row


def get_status(hotel_id: int, product_id: int) -> str:
    row = ProductActivation.query.filter_by(hotel_id=hotel_id, product_id=product_id).one_or_none()
    return row.status if row is not None else ACTIVATION_INACTIVE


def get_activation(hotel_id: int, product_id: int) -> Optional[ProductActivation]:
    return ProductActivation.query.filter_by(hotel_id=hotel_id, product_id=product_id).one_or_none()


def list_for_hotel(hotel_id: int, status: Optional[str] = None) -> List[ProductActivation]:
    q = ProductActivation.query.filter_by(hotel_id=hotel_id)
    if status:
        q = q.filter(ProductActivation.status == _validate_status(status))
    return q.order_by(ProductActivation.product_id.asc()).all()


def deactivate_all(hotel_id: int) -> int:
    res = db.session.execute(
        update(ProductActivation)
        .where(
            ProductActivation.hotel_id == hotel_id,
            ProductActivation.status != ACTIVATION_INACTIVE,
        )
        .values(status=ACTIVATION_INACTIVE, updated_at=func.now())
    )
    db.session.commit()
    logger.info("activations.deactivate_all", extra={"hotel_id": hotel_id, "count": res.rowcount})
    return res.rowcount


def has_active_product(organization_id: int, product_code: str) -> bool:
    """True if any hotel of the organization has the product switched on."""
    row = (
        db.session.query(ProductActivation.id)
        .join(Hotel, Hotel.id == ProductActivation.hotel_id)
        .join(Product, Product.id == ProductActivation.product_id)
        .filter(
            Hotel.organization_id == organization_id,
            Product.code == product_code,
            ProductActivation.status == ACTIVATION_ACTIVE,
        )
        .first()
    )
    return row is not None


def require_entitlement(organization_id: int) -> None:
    """Products can only be switched on with an active plan or a positive credit balance."""
    if subscriptions.get_active(organization_id) is not None:
        return
    if ledger.balance_of(ledger.org_principal(organization_id)) > 0:
        return
    raise EntitlementRequired(
        "An active subscription or credit balance is required",
        details={"organizationId": organization_id, "missing": "active_subscription"},
    )
