from sqlalchemy import func
from armonyco.extensions import db

class SubscriptionPlan(db.Model):
    __tablename__ = "subscription_plans"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(32), nullable=False, unique=True)
    name = db.Column(db.String(64), nullable=False)

    # Ordinal used only to classify a plan change as upgrade/downgrade
    rank = db.Column(db.Integer, nullable=False, index=True)
    monthly_credits = db.Column(db.Integer, nullable=False)
    price_major_units = db.Column(db.Integer, nullable=True)  # NULL = custom pricing
    is_active = db.Column(db.Boolean, nullable=False, server_default=db.true())

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())

    def __repr__(self) -> str:
        return f"<SubscriptionPlan id={self.id} code={self.code!r} rank={self.rank}>"
