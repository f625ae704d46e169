from decimal import Decimal
from typing import List, NamedTuple, Sequence, Tuple

from models import CommissionModel, SponsorShare
from money import ZERO, pct, q, to_decimal

AGENT_PCT_60_40 = Decimal("60")
AGENT_PCT_CASCADE = Decimal("50")
CASCADE_PCT = Decimal("50")


class ProfitSplit(NamedTuple):
    agent_share: Decimal
    operator_share: Decimal
    sponsor_shares: Tuple[SponsorShare, ...]

    def total(self) -> Decimal:
        return self.agent_share + self.operator_share + sum(
            (s.amount for s in self.sponsor_shares), ZERO
        )


def split(net_profit, model, sponsor_chain: Sequence[str] = ()) -> ProfitSplit:
    """
    net_profit: Decimal
    model: CommissionModel (or its string value)
    sponsor_chain: sponsor ids, closest first. already bounded and
      already cut at the operator (see sponsor_engine.get_sponsor_chain).

    every share is rounded down to cents, the operator takes whatever is
    left so agent + sponsors + operator == net_profit exactly.
    """
    profit = to_decimal(net_profit)
    model = CommissionModel(model)

    if profit <= 0:
        return ProfitSplit(ZERO, ZERO, ())

    profit = q(profit)

    if model is CommissionModel.SIXTY_FORTY:
        agent = pct(profit, AGENT_PCT_60_40)
        return ProfitSplit(agent, profit - agent, ())

    # 50/50 cascade: agent gets half, each sponsor half of the link below it
    agent = pct(profit, AGENT_PCT_CASCADE)
    shares: List[SponsorShare] = []
    previous = agent
    for level, sponsor_id in enumerate(sponsor_chain, start=1):
        amount = pct(previous, CASCADE_PCT)
        shares.append(SponsorShare(sponsor_id=sponsor_id, level=level, amount=amount))
        previous = amount

    distributed = agent + sum((s.amount for s in shares), ZERO)
    operator = profit - distributed
    return ProfitSplit(agent, operator, tuple(shares))


def operator_share(net_profit, model, sponsor_chain: Sequence[str] = ()) -> Decimal:
    return split(net_profit, model, sponsor_chain).operator_share
