from decimal import Decimal

from cascade_engine import operator_share, split
from models import CommissionModel


def test_sixty_forty_split():
    """
    75,000 profit under 60/40: agent 45,000, operator 30,000, no sponsors.
    """
    result = split(Decimal("75000"), CommissionModel.SIXTY_FORTY)

    assert result.agent_share == Decimal("45000.00")
    assert result.operator_share == Decimal("30000.00")
    assert result.sponsor_shares == ()
    assert result.total() == Decimal("75000.00")


def test_cascade_two_sponsors():
    """
    100,000 with a chain of two: agent 50k, L1 25k, L2 12.5k, operator keeps 12.5k.
    """
    result = split(Decimal("100000"), CommissionModel.CASCADE, ["s1", "s2"])

    assert result.agent_share == Decimal("50000.00")
    assert [(s.sponsor_id, s.level, s.amount) for s in result.sponsor_shares] == [
        ("s1", 1, Decimal("25000.00")),
        ("s2", 2, Decimal("12500.00")),
    ]
    assert result.operator_share == Decimal("12500.00")


def test_cascade_without_sponsors_gives_operator_the_other_half():
    result = split(Decimal("1000"), "50/50-cascade", [])

    assert result.agent_share == Decimal("500.00")
    assert result.operator_share == Decimal("500.00")


def test_cascade_conservation_for_every_chain_length():
    """
    odd amount so the halves keep rounding down. whatever the chain length
    (0..10) agent + sponsors + operator must equal the profit exactly.
    """
    profit = Decimal("12345.67")
    for length in range(0, 11):
        chain = [f"s{i}" for i in range(length)]
        result = split(profit, CommissionModel.CASCADE, chain)

        assert result.total() == profit
        assert len(result.sponsor_shares) == length
        assert result.operator_share >= 0
        # each level gets no more than the one below it
        previous = result.agent_share
        for share in result.sponsor_shares:
            assert share.amount <= previous
            previous = share.amount


def test_no_profit_no_split():
    for profit in (Decimal("0"), Decimal("-50")):
        result = split(profit, CommissionModel.CASCADE, ["s1"])
        assert result.agent_share == Decimal("0")
        assert result.operator_share == Decimal("0")
        assert result.sponsor_shares == ()


def test_operator_share_helper():
    assert operator_share(Decimal("100"), CommissionModel.SIXTY_FORTY) == Decimal("40.00")
    assert operator_share(Decimal("100"), CommissionModel.CASCADE, ["s1"]) == Decimal("25.00")
