from sqlalchemy import func, text
from armonyco.extensions import db

TX_SUBSCRIPTION_INITIAL = "subscription_initial"
TX_SUBSCRIPTION_RENEWAL = "subscription_renewal"
TX_SUBSCRIPTION_UPGRADE = "subscription_upgrade"
TX_SUBSCRIPTION_DOWNGRADE = "subscription_downgrade"
TX_MANUAL_ADJUSTMENT = "manual_adjustment"
TX_CONSUMPTION = "consumption"
TX_REFUND = "refund"
TX_CREDIT_PURCHASE = "credit_purchase"
TX_TYPES = (
    TX_SUBSCRIPTION_INITIAL,
    TX_SUBSCRIPTION_RENEWAL,
    TX_SUBSCRIPTION_UPGRADE,
    TX_SUBSCRIPTION_DOWNGRADE,
    TX_MANUAL_ADJUSTMENT,
    TX_CONSUMPTION,
    TX_REFUND,
    TX_CREDIT_PURCHASE,
)

class LedgerTransaction(db.Model):
    """Append-only. Rows are never updated or deleted."""
    __tablename__ = "ledger_transactions"

    id = db.Column(db.Integer, primary_key=True)
    principal_id = db.Column(db.String(64), nullable=False, index=True)
    amount = db.Column(db.Integer, nullable=False)
    balance_before = db.Column(db.Integer, nullable=False)
    balance_after = db.Column(db.Integer, nullable=False)
    type = db.Column(db.String(40), nullable=False, index=True)

    # Idempotency key: Stripe session/invoice id, or caller-supplied
    reference_id = db.Column(db.String(255), nullable=True, unique=True)

    description = db.Column(db.String(255), nullable=True)
    meta = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)

    __table_args__ = (
        db.CheckConstraint("balance_after = balance_before + amount", name="ck_ledger_transactions_arithmetic"),
        db.CheckConstraint("balance_after >= 0", name="ck_ledger_transactions_non_negative"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "principalId": self.principal_id,
            "amount": self.amount,
            "balanceBefore": self.balance_before,
            "balanceAfter": self.balance_after,
            "type": self.type,
            "referenceId": self.reference_id,
            "description": self.description,
            "metadata": self.meta or {},
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return (
            f"<LedgerTransaction id={self.id} principal={self.principal_id!r} amount={self.amount} "
            f"after={self.balance_after} type={self.type!r}>"
        )

class LedgerBalance(db.Model):
    """Cached projection of the latest balance_after per principal; rebuildable from the log."""
    __tablename__ = "ledger_balances"

    principal_id = db.Column(db.String(64), primary_key=True)
    balance = db.Column(db.Integer, nullable=False, server_default=text("0"))
    version = db.Column(db.Integer, nullable=False, server_default=text("0"))
    last_transaction_id = db.Column(db.Integer, db.ForeignKey("ledger_transactions.id"), nullable=True)

    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        db.CheckConstraint("balance >= 0", name="ck_ledger_balances_non_negative"),
    )
