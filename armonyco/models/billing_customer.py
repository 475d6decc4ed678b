from sqlalchemy import func
from armonyco.extensions import db

class BillingCustomer(db.Model):
    __tablename__ = "billing_customers"

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id", ondelete="RESTRICT"), nullable=False, index=True)
    stripe_customer_id = db.Column(db.String(64), nullable=False, unique=True, index=True)

    billing_email = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    def __repr__(self) -> str:
        return f"<BillingCustomer id={self.id} org_id={self.org_id} stripe_customer_id={self.stripe_customer_id!r}>"
