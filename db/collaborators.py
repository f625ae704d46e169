"""postgres versions of the collaborator ports (agents, equipment debt, reward fund)."""
import logging

from db import repositories as repo
from db.db import get_conn
from ports import AgentRecord

logger = logging.getLogger(__name__)


class PgAgentDirectory:
    def __init__(self, dsn: str = None):
        self.dsn = dsn

    def find_agent(self, agent_id):
        with get_conn(self.dsn) as conn:
            row = repo.get_agent(conn, agent_id)
        if row is None:
            return None
        return AgentRecord(
            id=row["id"],
            state=row["state"],
            sponsor_id=row["sponsor_id"],
            requires_password_change=row["requires_password_change"],
        )


class PgEquipmentDebt:
    def __init__(self, dsn: str = None):
        self.dsn = dsn

    def debt_for(self, agent_id):
        with get_conn(self.dsn) as conn:
            return repo.open_equipment_debt(conn, agent_id)


class PgRewardFund:
    def __init__(self, dsn: str = None):
        self.dsn = dsn

    def record_inflow(self, amount, reason, batch_id):
        with get_conn(self.dsn) as conn:
            try:
                created = repo.insert_reward_fund_entry(conn, amount, reason, batch_id)
                conn.commit()
            except Exception:
                conn.rollback()
                raise
        if not created:
            logger.info("reward fund inflow %s/%s already recorded", reason, batch_id)
