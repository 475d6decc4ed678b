from sqlalchemy import func, UniqueConstraint
from armonyco.extensions import db

ACTIVATION_ACTIVE = "active"
ACTIVATION_PAUSED = "paused"
ACTIVATION_INACTIVE = "inactive"
ACTIVATION_STATUSES = (ACTIVATION_ACTIVE, ACTIVATION_PAUSED, ACTIVATION_INACTIVE)

class ProductActivation(db.Model):
    __tablename__ = "hotel_product_activations"

    id = db.Column(db.Integer, primary_key=True)
    hotel_id = db.Column(
        db.Integer,
        db.ForeignKey("organization_hotels.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    product_id = db.Column(db.Integer, db.ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    status = db.Column(db.String(16), nullable=False, server_default=ACTIVATION_INACTIVE)
    activated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    product = db.relationship("Product", lazy="joined")

    __table_args__ = (
        # Conflict target for the upsert in services.activations
        UniqueConstraint("hotel_id", "product_id", name="uq_hotel_product_activations_hotel_product"),
        db.CheckConstraint(
            "status IN ('active','paused','inactive')",
            name="ck_hotel_product_activations_status_valid",
        ),
    )

    def to_dict(self) -> dict:
        p = self.product
        return {
            "hotelId": self.hotel_id,
            "productId": self.product_id,
            "code": p.code if p else None,
            "name": p.name if p else None,
            "category": p.category if p else None,
            "status": self.status,
            "activatedAt": self.activated_at.isoformat() if self.activated_at else None,
        }
