import types
import pytest
from armonyco.extensions import db
from armonyco.models import LedgerTransaction, LedgerBalance
from armonyco.models.ledger import (
    TX_CONSUMPTION,
    TX_CREDIT_PURCHASE,
    TX_MANUAL_ADJUSTMENT,
    TX_SUBSCRIPTION_INITIAL,
)
from armonyco.billing.errors import ConflictError, InsufficientBalance, ValidationError
from armonyco.services import ledger

ORG = ledger.org_principal(1)

def _chain_ok(principal):
    """Every transaction's balance_after equals the cached balance at the end of the chain."""
    txs = LedgerTransaction.query.filter_by(principal_id=principal).order_by(LedgerTransaction.id).all()
    prev = 0
    for tx in txs:
        assert tx.balance_before == prev
        assert tx.balance_after == tx.balance_before + tx.amount
        prev = tx.balance_after
    assert ledger.balance_of(principal) == prev
    return txs

def test_grant_appends_and_moves_balance(ctx):
    res = ledger.grant(ORG, 25_000, TX_SUBSCRIPTION_INITIAL, "cs_1")
    assert res.created is True
    assert res.transaction.balance_before == 0
    assert res.transaction.balance_after == 25_000
    assert ledger.balance_of(ORG) == 25_000
    assert ledger.tokens_of(ORG) == 2_500_000

def test_grant_is_idempotent_on_reference(ctx):
    first = ledger.grant(ORG, 11_000, TX_CREDIT_PURCHASE, "cs_pack")
    second = ledger.grant(ORG, 11_000, TX_CREDIT_PURCHASE, "cs_pack")
    assert first.created is True
    assert second.created is False
    assert second.transaction.id == first.transaction.id
    assert LedgerTransaction.query.filter_by(reference_id="cs_pack").count() == 1
    assert ledger.balance_of(ORG) == 11_000

def test_grant_rejects_non_positive_amount(ctx):
    with pytest.raises(ValidationError):
        ledger.grant(ORG, 0, TX_CREDIT_PURCHASE, "cs_zero")
    assert ledger.balance_of(ORG) == 0

def test_grant_rejects_unknown_type(ctx):
    with pytest.raises(ValidationError):
        ledger.grant(ORG, 10, "gift", "ref_gift")

def test_consume_more_than_balance_fails_and_writes_nothing(ctx):
    user = ledger.user_principal(1)
    ledger.grant(user, 300, TX_CREDIT_PURCHASE, "cs_300")
    with pytest.raises(InsufficientBalance) as ei:
        ledger.consume(user, 500, "report_generation")
    assert ei.value.requested == 500
    assert ei.value.available == 300
    assert ei.value.status_code == 402
    assert ledger.balance_of(user) == 300
    assert LedgerTransaction.query.filter_by(principal_id=user, type=TX_CONSUMPTION).count() == 0

def test_consume_exact_balance_reaches_zero(ctx):
    ledger.grant(ORG, 300, TX_CREDIT_PURCHASE, "cs_a")
    tx = ledger.consume(ORG, 300, "report_generation")
    assert tx.amount == -300
    assert tx.balance_after == 0
    assert tx.meta["action"] == "report_generation"
    assert ledger.balance_of(ORG) == 0

def test_sequential_consumers_never_overdraw(ctx):
    ledger.grant(ORG, 500, TX_CREDIT_PURCHASE, "cs_500")
    ledger.consume(ORG, 300, "first")
    with pytest.raises(InsufficientBalance):
        ledger.consume(ORG, 300, "second")
    assert ledger.balance_of(ORG) == 200
    _chain_ok(ORG)

def test_consume_requires_reason(ctx):
    ledger.grant(ORG, 10, TX_CREDIT_PURCHASE, "cs_r")
    with pytest.raises(ValidationError):
        ledger.consume(ORG, 1, "")

def test_replay_matches_balance_after_every_operation(ctx):
    ledger.grant(ORG, 1_000, TX_SUBSCRIPTION_INITIAL, "cs_i")
    _chain_ok(ORG)
    ledger.consume(ORG, 250, "analysis")
    _chain_ok(ORG)
    ledger.adjust(ORG, -50, "goodwill reversal", actor="ops")
    _chain_ok(ORG)
    ledger.refund(ORG, 250, "refund:analysis")
    txs = _chain_ok(ORG)
    assert ledger.replay_balance(ORG) == 950
    assert ledger.verify_balance(ORG) is True
    assert [t.type for t in txs][-2] == TX_MANUAL_ADJUSTMENT

def test_adjust_cannot_go_negative(ctx):
    ledger.grant(ORG, 100, TX_CREDIT_PURCHASE, "cs_100")
    with pytest.raises(InsufficientBalance):
        ledger.adjust(ORG, -101, "too much")
    assert ledger.balance_of(ORG) == 100

def test_adjust_duplicate_reference_conflicts(ctx):
    ledger.adjust(ORG, 100, "credit note", reference_id="adj-1")
    with pytest.raises(ConflictError):
        ledger.adjust(ORG, 100, "credit note", reference_id="adj-1")
    assert ledger.balance_of(ORG) == 100

def test_consume_same_reference_replays_original_debit(ctx):
    ledger.grant(ORG, 100, TX_CREDIT_PURCHASE, "cs_c1")
    first = ledger.consume(ORG, 10, "report", reference_id="c1")
    again = ledger.consume(ORG, 10, "report", reference_id="c1")
    assert again.id == first.id
    assert ledger.balance_of(ORG) == 90
    assert LedgerTransaction.query.filter_by(type=TX_CONSUMPTION).count() == 1

def test_consume_reference_reused_for_other_debit_conflicts(ctx):
    ledger.grant(ORG, 100, TX_CREDIT_PURCHASE, "cs_c2")
    ledger.consume(ORG, 10, "report", reference_id="c2")
    with pytest.raises(ConflictError):
        ledger.consume(ORG, 25, "report", reference_id="c2")
    with pytest.raises(ConflictError):
        ledger.consume(ledger.org_principal(2), 10, "report", reference_id="c2")
    # A grant's reference cannot be reused as a debit either
    with pytest.raises(ConflictError):
        ledger.consume(ORG, 10, "report", reference_id="cs_c2")
    assert ledger.balance_of(ORG) == 90
    _chain_ok(ORG)

def test_consume_reference_race_is_resolved(ctx, monkeypatch):
    ledger.grant(ORG, 100, TX_CREDIT_PURCHASE, "cs_c3")
    first = ledger.consume(ORG, 10, "report", reference_id="c3")
    # Simulate losing the race: the pre-check misses, the insert hits the unique index
    real_find = ledger._find_by_reference
    calls = {"n": 0}
    def find_once_missing(ref):
        calls["n"] += 1
        return None if calls["n"] == 1 else real_find(ref)
    monkeypatch.setattr(ledger, "_find_by_reference", find_once_missing)

    again = ledger.consume(ORG, 10, "report", reference_id="c3")
    assert again.id == first.id
    assert ledger.balance_of(ORG) == 90

def test_history_newest_first_with_type_filter(ctx):
    ledger.grant(ORG, 100, TX_CREDIT_PURCHASE, "h1")
    ledger.consume(ORG, 10, "a")
    ledger.consume(ORG, 20, "b")
    hist = ledger.history_of(ORG)
    assert [t.amount for t in hist] == [-20, -10, 100]
    only = ledger.history_of(ORG, tx_type=TX_CONSUMPTION, limit=1)
    assert len(only) == 1 and only[0].amount == -20
    stats = ledger.stats_of(ORG)
    assert stats == {"totalAdded": 100, "totalConsumed": 30, "netChange": 70, "transactionCount": 3}

def test_principals_are_isolated(ctx):
    other = ledger.org_principal(2)
    ledger.grant(ORG, 100, TX_CREDIT_PURCHASE, "iso-1")
    ledger.grant(other, 7, TX_CREDIT_PURCHASE, "iso-2")
    assert ledger.balance_of(ORG) == 100
    assert ledger.balance_of(other) == 7

def test_rebuild_restores_drifted_projection(ctx):
    ledger.grant(ORG, 400, TX_CREDIT_PURCHASE, "rb-1")
    ledger.consume(ORG, 100, "x")
    row = db.session.get(LedgerBalance, ORG)
    row.balance = 9_999
    db.session.commit()
    assert ledger.verify_balance(ORG) is False
    assert ledger.rebuild_balance(ORG) == 300
    assert ledger.balance_of(ORG) == 300
    assert ledger.verify_balance(ORG) is True

def test_version_conflict_is_retried(ctx, monkeypatch):
    ledger.grant(ORG, 100, TX_CREDIT_PURCHASE, "v-1")
    real_lock = ledger._lock_balance_row
    calls = {"n": 0}

    def _stale_once(principal_id):
        row = real_lock(principal_id)
        calls["n"] += 1
        if calls["n"] == 1:
            # Looks like another writer bumped the version after our read
            return types.SimpleNamespace(balance=row.balance, version=row.version - 1)
        return row

    monkeypatch.setattr(ledger, "_lock_balance_row", _stale_once)
    tx = ledger.consume(ORG, 40, "retry")
    assert calls["n"] == 2
    assert tx.balance_before == 100 and tx.balance_after == 60
    monkeypatch.undo()
    _chain_ok(ORG)

def test_persistent_conflict_raises_after_bounded_attempts(ctx, monkeypatch):
    ledger.grant(ORG, 100, TX_CREDIT_PURCHASE, "c-1")
    monkeypatch.setattr(
        ledger, "_lock_balance_row",
        lambda principal_id: types.SimpleNamespace(balance=100, version=-1),
    )
    with pytest.raises(ConflictError):
        ledger.consume(ORG, 10, "never")
    monkeypatch.undo()
    assert ledger.balance_of(ORG) == 100
    assert LedgerTransaction.query.filter_by(principal_id=ORG).count() == 1
