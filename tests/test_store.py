from decimal import Decimal

import pytest

import batch_engine
from errors import ConcurrencyConflict, EntityNotFound
from models import CommissionModel
from money import fmt, pct, q, take
from store import MemoryStore, require, saved


def _batch():
    return batch_engine.new_batch("a1", 20, CommissionModel.SIXTY_FORTY, Decimal("2400"), Decimal("50"))


def test_rollback_on_error():
    store = MemoryStore()
    batch = _batch()

    with pytest.raises(RuntimeError):
        with store.transaction() as tx:
            tx.insert_batch(batch)
            raise RuntimeError("boom")

    with store.transaction() as tx:
        assert tx.get_batch(batch.id) is None


def test_nested_transaction_joins_outer():
    """inner block commits nothing on its own, the outer failure undoes both."""
    store = MemoryStore()
    outer_batch, inner_batch = _batch(), _batch()

    with pytest.raises(RuntimeError):
        with store.transaction() as tx:
            tx.insert_batch(outer_batch)
            with store.transaction() as inner:
                inner.insert_batch(inner_batch)
            raise RuntimeError("boom")

    with store.transaction() as tx:
        assert tx.list_batches() == []


def test_versioned_update():
    store = MemoryStore()
    batch = _batch()
    with store.transaction() as tx:
        tx.insert_batch(batch)
        stored = tx.update_batch(batch, 1)
        assert stored.version == 2
        assert tx.update_batch(batch, 1) is None


def test_require_and_saved():
    with pytest.raises(EntityNotFound):
        require(None, "batch", "b1")
    with pytest.raises(ConcurrencyConflict) as exc:
        saved(None, "batch", "b1", 3)
    assert exc.value.to_dict()["details"]["expected_version"] == 3


def test_money_helpers_round_down():
    assert q("10.019") == Decimal("10.01")
    assert pct(Decimal("0.05"), 50) == Decimal("0.02")
    assert take(Decimal("100"), Decimal("150")) == (Decimal("100"), Decimal("0"))
    assert take(Decimal("100"), Decimal("-5")) == (Decimal("0.00"), Decimal("100"))
    assert fmt(Decimal("5")) == "5.00"
