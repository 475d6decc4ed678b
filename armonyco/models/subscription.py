from sqlalchemy import func, text, Index
from armonyco.extensions import db

SUB_ACTIVE = "active"
SUB_PAST_DUE = "past_due"
SUB_SUSPENDED = "suspended"
SUB_CANCELLED = "cancelled"
SUB_EXPIRED = "expired"
SUB_STATUSES = (SUB_ACTIVE, SUB_PAST_DUE, SUB_SUSPENDED, SUB_CANCELLED, SUB_EXPIRED)

class OrganizationSubscription(db.Model):
    __tablename__ = "organization_subscriptions"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(
        db.Integer,
        db.ForeignKey("organizations.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    plan_id = db.Column(db.Integer, db.ForeignKey("subscription_plans.id", ondelete="RESTRICT"), nullable=False)

    status = db.Column(db.String(32), nullable=False, index=True, server_default=SUB_ACTIVE)
    started_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)

    stripe_customer_id = db.Column(db.String(64), nullable=True, index=True)
    stripe_subscription_id = db.Column(db.String(64), nullable=True, unique=True, index=True)

    payment_failed_count = db.Column(db.Integer, nullable=False, server_default=text("0"))
    last_payment_attempt = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    plan = db.relationship("SubscriptionPlan", lazy="joined")

    __table_args__ = (
        # Backstop for supersede(): never two active rows for one org
        Index(
            "uq_organization_subscriptions_one_active",
            "organization_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        db.CheckConstraint(
            "status IN ('active','past_due','suspended','cancelled','expired')",
            name="ck_organization_subscriptions_status_valid",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<OrganizationSubscription id={self.id} organization_id={self.organization_id} "
            f"plan_id={self.plan_id} status={self.status!r}>"
        )
