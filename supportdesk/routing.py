"""Routing of escalated conversations to human agents."""
import random
from dataclasses import dataclass
from typing import Optional
import structlog

from supportdesk.db import Database

logger = structlog.get_logger()


@dataclass
class Assignment:
    agent_id: str
    agent_name: str
    workload: int


class AgentRouter:
    """Picks the online agent best placed to take a conversation.

    Specialists of the conversation's category are preferred. Among the
    candidates the one with the fewest active conversations wins, and ties
    are broken at random.
    """

    def __init__(self, database: Database, rng: random.Random = None):
        self.database = database
        self.rng = rng or random.Random()

    def assign(self, conversation_id: str, category: Optional[str] = None) -> Optional[Assignment]:
        """Assign the conversation to an agent.

        The conversation keeps its mode; the agent still has to take it over.

        Returns:
            The assignment, or None when no agent is online
        """
        online = self.database.list_agents(status="online")
        if not online:
            logger.info("no_agents_online", conversation_id=conversation_id)
            return None

        specialists = [a for a in online if category and category in a["specialties"]]
        candidates = specialists or online

        workloads = self.database.count_active_conversations([a["id"] for a in candidates])
        min_workload = min(workloads.get(a["id"], 0) for a in candidates)
        least_loaded = [a for a in candidates if workloads.get(a["id"], 0) == min_workload]
        selected = self.rng.choice(least_loaded)

        self.database.update_conversation(conversation_id, assigned_agent=selected["id"])
        logger.info(
            "conversation_assigned",
            conversation_id=conversation_id,
            agent_id=selected["id"],
            workload=min_workload,
            specialist=bool(specialists),
        )
        return Assignment(agent_id=selected["id"], agent_name=selected["name"], workload=min_workload)
