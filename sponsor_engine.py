import logging
from typing import List, Optional

from errors import BusinessRuleViolation, EntityNotFound

logger = logging.getLogger(__name__)


def get_sponsor_chain(agent_id, directory, operator_id, max_hops=10) -> List[str]:
    """
    walk UP from agent_id through the directory and return the sponsors,
    closest first: [N-1, N-2, ...].

    stops when
      - the next sponsor is the operator (operator is never part of the chain),
      - an agent has no sponsor,
      - max_hops sponsors were collected,
      - we would revisit someone (malformed data, treated as end of chain).
    """
    chain: List[str] = []
    seen = {agent_id}
    current = agent_id

    while len(chain) < max_hops:
        record = directory.find_agent(current)
        if record is None:
            break
        sponsor: Optional[str] = record.sponsor_id
        if not sponsor or sponsor == operator_id:
            break
        if sponsor in seen:
            logger.warning("sponsor cycle detected above %s at %s, cutting chain", agent_id, sponsor)
            break
        chain.append(sponsor)
        seen.add(sponsor)
        current = sponsor

    return chain


def require_eligible_agent(agent_id, directory):
    """
    agent must exist, be ACTIVE and not be stuck on a forced password change.
    returns the directory record.
    """
    record = directory.find_agent(agent_id)
    if record is None:
        raise EntityNotFound("agent", agent_id)
    if record.state != "ACTIVE":
        raise BusinessRuleViolation(
            "agent_active", f"agent {agent_id} is {record.state}", agent_id=agent_id, state=record.state
        )
    if record.requires_password_change:
        raise BusinessRuleViolation(
            "password_change_pending",
            f"agent {agent_id} must change password first",
            agent_id=agent_id,
        )
    return record
