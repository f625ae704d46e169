from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

import tranche_engine
from errors import InsufficientStock, InvalidStateTransition
from models import TrancheState

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _tranche(stock=10, state=TrancheState.INACTIVE, number=1):
    t = tranche_engine.build_tranches("b1", 2 * stock)[0]
    return replace(t, number=number, initial_stock=stock, current_stock=stock, state=state)


def test_split_quantity():
    assert tranche_engine.split_quantity(51) == [17, 17, 17]
    assert tranche_engine.split_quantity(50) == [25, 25]
    assert tranche_engine.split_quantity(21) == [11, 10]
    assert tranche_engine.split_quantity(100) == [33, 33, 34]
    assert sum(tranche_engine.split_quantity(77)) == 77

    with pytest.raises(ValueError):
        tranche_engine.split_quantity(0)


def test_build_tranches_numbers_and_stock():
    tranches = tranche_engine.build_tranches("b1", 51)

    assert [t.number for t in tranches] == [1, 2, 3]
    assert all(t.state is TrancheState.INACTIVE for t in tranches)
    assert all(t.initial_stock == t.current_stock == 17 for t in tranches)
    assert all(t.batch_id == "b1" for t in tranches)


def test_lifecycle_stamps_timestamps():
    t = _tranche()
    t = tranche_engine.transition(t, TrancheState.RELEASED, T0)
    t = tranche_engine.transition(t, TrancheState.IN_TRANSIT, T0 + timedelta(hours=1))
    t = tranche_engine.transition(t, TrancheState.IN_HAND, T0 + timedelta(hours=2))

    assert t.state is TrancheState.IN_HAND
    assert t.released_at == T0
    assert t.in_hand_at == T0 + timedelta(hours=2)


def test_illegal_transitions():
    t = _tranche()
    with pytest.raises(InvalidStateTransition):
        tranche_engine.transition(t, TrancheState.IN_HAND, T0)

    # reserved tranche can only be finalized once it is empty
    with pytest.raises(InvalidStateTransition):
        tranche_engine.transition(t, TrancheState.FINALIZED, T0)

    empty = tranche_engine.consume(t, 10, bulk=True)
    assert tranche_engine.transition(empty, TrancheState.FINALIZED, T0).state is TrancheState.FINALIZED


def test_consume_retail_needs_in_hand():
    released = _tranche(state=TrancheState.RELEASED)
    with pytest.raises(InvalidStateTransition):
        tranche_engine.consume(released, 1)

    in_hand = _tranche(state=TrancheState.IN_HAND)
    after = tranche_engine.consume(in_hand, 4)
    assert after.current_stock == 6
    assert after.bulk_consumed == 0


def test_consume_more_than_stock():
    in_hand = _tranche(state=TrancheState.IN_HAND)
    with pytest.raises(InsufficientStock) as exc:
        tranche_engine.consume(in_hand, 11)
    assert exc.value.details["shortfall"] == 1


def test_bulk_consume_counts_units():
    after = tranche_engine.consume(_tranche(), 7, bulk=True)
    assert after.current_stock == 3
    assert after.bulk_consumed == 7


def test_stock_pct_and_helpers():
    t = _tranche(state=TrancheState.IN_HAND)
    assert tranche_engine.stock_pct(t) == Decimal("100")
    assert tranche_engine.stock_pct(tranche_engine.consume(t, 9)) == Decimal("10")

    tranches = tranche_engine.build_tranches("b1", 51)
    assert tranche_engine.is_last(tranches[2], tranches)
    assert not tranche_engine.is_last(tranches[0], tranches)
    assert tranche_engine.active_tranche(tranches) is None
    assert tranche_engine.next_releasable(tranches).number == 1


def test_due_for_transit():
    released = tranche_engine.transition(_tranche(), TrancheState.RELEASED, T0)
    dwell = timedelta(hours=2)

    assert not tranche_engine.due_for_transit(released, T0 + timedelta(hours=1), dwell)
    assert tranche_engine.due_for_transit(released, T0 + timedelta(hours=2), dwell)
    assert not tranche_engine.due_for_transit(_tranche(), T0 + timedelta(hours=5), dwell)
