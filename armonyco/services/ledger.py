"""
Credit/token ledger.

`ledger_transactions` is the source of truth; `ledger_balances` is a cached
projection of the latest `balance_after` per principal. Every append goes
through `_append()`, which locks the projection row, writes the transaction
and then moves the projection with a conditional UPDATE on `version`. If
another writer got there first the whole attempt is rolled back and retried,
so `balance_before` always equals the previous transaction's `balance_after`.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from armonyco.extensions import db
from armonyco.models.ledger import (
    LedgerBalance,
    LedgerTransaction,
    TX_CONSUMPTION,
    TX_MANUAL_ADJUSTMENT,
    TX_REFUND,
    TX_TYPES,
)
from armonyco.billing.errors import ConflictError, InsufficientBalance, ValidationError

logger = logging.getLogger(__name__)

TOKENS_PER_CREDIT = 100
MAX_APPEND_ATTEMPTS = 5


@dataclass(frozen=True)
class GrantResult:
    transaction: LedgerTransaction
    created: bool

    @property
    def balance(self) -> int:
        return self.transaction.balance_after


def org_principal(org_id: Any) -> str:
    return f"org:{org_id}"


def user_principal(user_id: Any) -> str:
    return f"user:{user_id}"


def tokens_from_credits(credits: int) -> int:
    return int(credits) * TOKENS_PER_CREDIT


def credits_from_tokens(tokens: int) -> int:
    return int(tokens) // TOKENS_PER_CREDIT


def _validate_principal(principal_id: str) -> None:
    if not principal_id or not isinstance(principal_id, str):
        raise ValidationError("principal_id is required")


def _lock_balance_row(principal_id: str) -> LedgerBalance:
    """SELECT ... FOR UPDATE the projection row, creating it on first use."""
    stmt = (
        select(LedgerBalance)
        .where(LedgerBalance.principal_id == principal_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    row = db.session.execute(stmt).scalar_one_or_none()
    if row is not None:
        return row

    row = LedgerBalance(principal_id=principal_id, balance=0, version=0)
    db.session.add(row)
    try:
        db.session.flush()
    except IntegrityError:
        # Another writer created it between our SELECT and INSERT
        db.session.rollback()
        row = db.session.execute(stmt).scalar_one()
    return row


def _find_by_reference(reference_id: str) -> Optional[LedgerTransaction]:
    return LedgerTransaction.query.filter_by(reference_id=reference_id).one_or_none()


def _append(
    principal_id: str,
    amount: int,
    tx_type: str,
    *,
    reference_id: Optional[str] = None,
    description: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> LedgerTransaction:
    if tx_type not in TX_TYPES:
        raise ValidationError(f"Unknown transaction type {tx_type!r}")

    for attempt in range(1, MAX_APPEND_ATTEMPTS + 1):
        bal = _lock_balance_row(principal_id)
        before, seen_version = bal.balance, bal.version
        after = before + amount
        if after < 0:
            db.session.rollback()
            raise InsufficientBalance(
                "Insufficient balance",
                requested=abs(amount),
                available=before,
            )

        tx = LedgerTransaction(
            principal_id=principal_id,
            amount=amount,
            balance_before=before,
            balance_after=after,
            type=tx_type,
            reference_id=reference_id,
            description=description,
            meta=meta,
        )
        db.session.add(tx)
        db.session.flush()

        res = db.session.execute(
            update(LedgerBalance)
            .where(
                LedgerBalance.principal_id == principal_id,
                LedgerBalance.version == seen_version,
            )
            .values(balance=after, version=seen_version + 1, last_transaction_id=tx.id)
        )
        if res.rowcount == 1:
            db.session.commit()
            logger.info(
                "ledger.append",
                extra={
                    "principal_id": principal_id,
                    "type": tx_type,
                    "amount": amount,
                    "balance_after": after,
                    "reference_id": reference_id,
                },
            )
            return tx

        db.session.rollback()
        logger.warning(
            "ledger.append.version_conflict",
            extra={"principal_id": principal_id, "attempt": attempt},
        )

    raise ConflictError(
        "Ledger balance changed concurrently; giving up",
        details={"principalId": principal_id, "attempts": MAX_APPEND_ATTEMPTS},
    )


def grant(
    principal_id: str,
    amount: int,
    tx_type: str,
    reference_id: Optional[str],
    *,
    description: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> GrantResult:
    """
    Credit `amount` to a principal. With a reference_id this is idempotent:
    a second call with the same reference returns the original transaction.
    """
    _validate_principal(principal_id)
    if int(amount) <= 0:
        raise ValidationError("Grant amount must be positive", details={"amount": amount})

    if reference_id:
        existing = _find_by_reference(reference_id)
        if existing is not None:
            logger.info(
                "ledger.grant.duplicate",
                extra={"principal_id": principal_id, "reference_id": reference_id},
            )
            return GrantResult(existing, created=False)

    try:
        tx = _append(
            principal_id,
            int(amount),
            tx_type,
            reference_id=reference_id,
            description=description,
            meta=meta,
        )
    except IntegrityError:
        # Lost the race on the unique reference_id: the other writer's row wins
        db.session.rollback()
        existing = _find_by_reference(reference_id) if reference_id else None
        if existing is None:
            raise
        return GrantResult(existing, created=False)
    return GrantResult(tx, created=True)


def consume(
    principal_id: str,
    amount: int,
    reason: str,
    *,
    reference_id: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> LedgerTransaction:
    """
    Debit `amount`; raises InsufficientBalance and writes nothing if it would go negative.

    A repeated reference_id replays the original debit when it was the same
    consumption for the same principal, and raises ConflictError otherwise.
    """
    _validate_principal(principal_id)
    if int(amount) <= 0:
        raise ValidationError("Consumption amount must be positive", details={"amount": amount})
    if not reason:
        raise ValidationError("reason is required")

    if reference_id:
        existing = _find_by_reference(reference_id)
        if existing is not None:
            return _replayed_consumption(existing, principal_id, amount)

    try:
        return _append(
            principal_id,
            -int(amount),
            TX_CONSUMPTION,
            reference_id=reference_id,
            description=f"Consumption: {reason}",
            meta={"action": reason, **(meta or {})},
        )
    except IntegrityError:
        # A concurrent writer used the same reference_id first
        db.session.rollback()
        existing = _find_by_reference(reference_id) if reference_id else None
        if existing is None:
            raise
        return _replayed_consumption(existing, principal_id, amount)


def _replayed_consumption(existing: LedgerTransaction, principal_id: str, amount: int) -> LedgerTransaction:
    if (
        existing.principal_id != principal_id
        or existing.type != TX_CONSUMPTION
        or existing.amount != -int(amount)
    ):
        raise ConflictError(
            "reference_id already used by another transaction",
            details={"referenceId": existing.reference_id},
        )
    logger.info(
        "ledger.consume.duplicate",
        extra={"principal_id": principal_id, "reference_id": existing.reference_id},
    )
    return existing


def adjust(
    principal_id: str,
    delta: int,
    reason: str,
    *,
    actor: Optional[str] = None,
    reference_id: Optional[str] = None,
) -> LedgerTransaction:
    """Operator correction in either direction; never takes a balance below zero."""
    _validate_principal(principal_id)
    if int(delta) == 0:
        raise ValidationError("Adjustment must be non-zero")
    if reference_id and _find_by_reference(reference_id):
        raise ConflictError("Adjustment already recorded", details={"referenceId": reference_id})
    try:
        return _append(
            principal_id,
            int(delta),
            TX_MANUAL_ADJUSTMENT,
            reference_id=reference_id,
            description=f"Manual adjustment: {reason}",
            meta={"reason": reason, "actor": actor},
        )
    except IntegrityError as exc:
        db.session.rollback()
        raise ConflictError("Adjustment already recorded", details={"referenceId": reference_id}) from exc


def refund(principal_id: str, amount: int, reference_id: str, *, reason: str = "refund") -> GrantResult:
    """Give credits back for a reversed consumption; idempotent on reference_id."""
    return grant(
        principal_id,
        amount,
        TX_REFUND,
        reference_id,
        description=f"Refund: {reason}",
        meta={"reason": reason},
    )


def balance_of(principal_id: str) -> int:
    row = db.session.get(LedgerBalance, principal_id, populate_existing=True)
    return row.balance if row else 0


def tokens_of(principal_id: str) -> int:
    return tokens_from_credits(balance_of(principal_id))


def history_of(
    principal_id: str,
    *,
    tx_type: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[LedgerTransaction]:
    """Newest first."""
    q = LedgerTransaction.query.filter(LedgerTransaction.principal_id == principal_id)
    if tx_type:
        q = q.filter(LedgerTransaction.type == tx_type)
    if start:
        q = q.filter(LedgerTransaction.created_at >= start)
    if end:
        q = q.filter(LedgerTransaction.created_at <= end)
    limit = max(1, min(int(limit), 1000))
    return q.order_by(LedgerTransaction.id.desc()).offset(max(0, int(offset))).limit(limit).all()


def stats_of(principal_id: str, *, start: Optional[datetime] = None) -> Dict[str, int]:
    added = consumed = count = 0
    q = LedgerTransaction.query.filter(LedgerTransaction.principal_id == principal_id)
    if start:
        q = q.filter(LedgerTransaction.created_at >= start)
    for tx in q.yield_per(500):
        if tx.amount > 0:
            added += tx.amount
        else:
            consumed += -tx.amount
        count += 1
    return {
        "totalAdded": added,
        "totalConsumed": consumed,
        "netChange": added - consumed,
        "transactionCount": count,
    }


def replay_balance(principal_id: str) -> int:
    """Fold the log in creation order. Raises ConflictError if a link in the chain is broken."""
    balance = 0
    q = (
        LedgerTransaction.query.filter(LedgerTransaction.principal_id == principal_id)
        .order_by(LedgerTransaction.id.asc())
    )
    for tx in q.yield_per(500):
        if tx.balance_before != balance or tx.balance_after != tx.balance_before + tx.amount:
            raise ConflictError(
                "Ledger chain broken",
                details={"principalId": principal_id, "transactionId": tx.id},
            )
        balance = tx.balance_after
    return balance


def verify_balance(principal_id: str) -> bool:
    return replay_balance(principal_id) == balance_of(principal_id)


def rebuild_balance(principal_id: str) -> int:
    """Recompute the cached projection from the log."""
    replayed = replay_balance(principal_id)
    last = (
        LedgerTransaction.query.filter(LedgerTransaction.principal_id == principal_id)
        .order_by(LedgerTransaction.id.desc())
        .first()
    )
    bal = _lock_balance_row(principal_id)
    if bal.balance != replayed:
        logger.warning(
            "ledger.rebuild.drift",
            extra={"principal_id": principal_id, "cached": bal.balance, "replayed": replayed},
        )
    bal.balance = replayed
    bal.version = bal.version + 1
    bal.last_transaction_id = last.id if last else None
    db.session.commit()
    return replayed
