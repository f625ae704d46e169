"""
narrow contracts for the things the settlement core consumes but does not own:
the agent directory, the equipment debt source, the notification sink and the
reward-fund ledger. in-memory versions live here, postgres versions in
db/collaborators.py.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol

from money import ZERO, to_decimal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentRecord:
    id: str
    state: str = "ACTIVE"
    sponsor_id: Optional[str] = None
    requires_password_change: bool = False


class AgentDirectory(Protocol):
    def find_agent(self, agent_id: str) -> Optional[AgentRecord]: ...


class EquipmentDebtSource(Protocol):
    def debt_for(self, agent_id: str) -> Decimal: ...


class NotificationSink(Protocol):
    def notify(self, agent_id: str, template_key: str, data: Dict[str, Any]) -> None: ...


class RewardFund(Protocol):
    def record_inflow(self, amount: Decimal, reason: str, batch_id: Optional[str]) -> None: ...


class InMemoryAgentDirectory:
    def __init__(self, agents=None):
        self.agents: Dict[str, AgentRecord] = {}
        for agent in agents or []:
            self.add(agent)

    def add(self, agent: AgentRecord):
        self.agents[agent.id] = agent

    def find_agent(self, agent_id):
        return self.agents.get(agent_id)


class StaticEquipmentDebt:
    def __init__(self, debts=None):
        self.debts = {k: to_decimal(v) for k, v in (debts or {}).items()}

    def debt_for(self, agent_id):
        return self.debts.get(agent_id, ZERO)


class LoggingNotifier:
    """keeps what it was asked to send (handy in tests) and logs it."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    def notify(self, agent_id, template_key, data):
        logger.info("notify %s %s %s", agent_id, template_key, data)
        self.sent.append({"agent_id": agent_id, "template": template_key, "data": data})

    def templates(self) -> List[str]:
        return [n["template"] for n in self.sent]


class InMemoryRewardFund:
    def __init__(self):
        self.entries: List[Dict[str, Any]] = []

    def record_inflow(self, amount, reason, batch_id):
        # one inflow per (reason, batch), redelivered events are ignored
        if any(e["reason"] == reason and e["batch_id"] == batch_id for e in self.entries):
            return
        self.entries.append({"amount": to_decimal(amount), "reason": reason, "batch_id": batch_id})

    def balance(self) -> Decimal:
        return sum((e["amount"] for e in self.entries), ZERO)


@dataclass
class Collaborators:
    directory: AgentDirectory
    equipment_debt: EquipmentDebtSource
    notifier: NotificationSink
    reward_fund: RewardFund


def in_memory_collaborators(agents=None, debts=None) -> Collaborators:
    return Collaborators(
        directory=InMemoryAgentDirectory(agents),
        equipment_debt=StaticEquipmentDebt(debts),
        notifier=LoggingNotifier(),
        reward_fund=InMemoryRewardFund(),
    )


def safe_notify(notifier, agent_id, template_key, data):
    """notification failures are logged and dropped, they never reach the caller."""
    try:
        notifier.notify(agent_id, template_key, data)
    except Exception:
        logger.exception("notification %s for %s failed", template_key, agent_id)
