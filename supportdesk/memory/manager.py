"""Conversation memory and mode management.

Handles message persistence, history formatting for the model, and the
two-state conversation mode machine:

    ai --(low-confidence escalation | manual takeover)--> human
    human --(return to AI by the assigned agent)--> ai

Every transition is idempotent: repeating it is a no-op that reports the
current state.
"""
import re
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import structlog

from supportdesk import config
from supportdesk.db import Database
from supportdesk.errors import ConversationNotFoundError

logger = structlog.get_logger()

MODE_AI = "ai"
MODE_HUMAN = "human"

STATUS_ACTIVE = "active"
STATUS_WAITING = "waiting"
STATUS_CLOSED = "closed"

FILE_ONLY_MESSAGE = re.compile(r"^\[Sent \d+ file\(s\)\]$")


@dataclass
class ModeTransition:
    """Result of a mode change request."""

    changed: bool
    mode: str
    status: str
    assigned_agent: Optional[str] = None


class ConversationManager:
    """Manages conversations, their messages and their mode."""

    def __init__(
        self,
        database: Database,
        history_limit: int = None,
        history_window: int = None,
    ):
        """Initialize the conversation manager.

        Args:
            database: Backing store
            history_limit: Messages fetched when building model context
            history_window: Messages kept after dropping file-only messages
        """
        self.database = database
        self.history_limit = history_limit or config.HISTORY_LIMIT
        self.history_window = history_window or config.HISTORY_WINDOW

    def create_conversation(self, category_id: Optional[int] = None) -> str:
        """Start a new conversation in AI mode."""
        conversation_id = str(uuid.uuid4())
        self.database.create_conversation(conversation_id, category_id=category_id)
        logger.info("conversation_created", conversation_id=conversation_id)
        return conversation_id

    def get_conversation(self, conversation_id: str) -> Dict[str, Any]:
        """Fetch a conversation.

        Raises:
            ConversationNotFoundError: If it doesn't exist
        """
        conversation = self.database.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    def get_category(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        """The workflow category attached to a conversation, if any."""
        conversation = self.get_conversation(conversation_id)
        if not conversation.get("category_id"):
            return None
        return self.database.get_category(conversation["category_id"])

    def add_message(
        self,
        conversation_id: str,
        sender: str,
        content: str,
        is_internal: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Append a message from 'user', 'ai' or 'agent'."""
        if sender not in ("user", "ai", "agent"):
            raise ValueError(f"Unknown sender: {sender}")
        message_id = self.database.add_message(
            conversation_id, sender, content, is_internal=is_internal, metadata=metadata
        )
        logger.info(
            "conversation_message_added",
            conversation_id=conversation_id,
            sender=sender,
            message_id=message_id,
            is_internal=is_internal,
        )
        return message_id

    def get_recent_messages(
        self, conversation_id: str, limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        return self.database.get_recent_messages(conversation_id, limit or self.history_limit)

    def format_history(self, conversation_id: str) -> List[Dict[str, str]]:
        """Recent customer-visible messages as model chat turns.

        Internal notes and file-only placeholders are dropped; user messages
        map to the 'user' role, AI and agent messages to 'assistant'.
        """
        messages = [
            m
            for m in self.get_recent_messages(conversation_id)
            if not m["is_internal"] and not FILE_ONLY_MESSAGE.match(m["content"])
        ]
        history = [
            {
                "role": "user" if m["sender"] == "user" else "assistant",
                "content": m["content"],
            }
            for m in messages[-self.history_window :]
        ]
        logger.debug(
            "conversation_history_formatted",
            conversation_id=conversation_id,
            message_count=len(history),
        )
        return history

    def escalate(self, conversation_id: str) -> ModeTransition:
        """Hand an AI conversation to the human queue (mode human, status waiting)."""
        conversation = self.get_conversation(conversation_id)
        if conversation["mode"] == MODE_HUMAN:
            return ModeTransition(
                changed=False,
                mode=conversation["mode"],
                status=conversation["status"],
                assigned_agent=conversation["assigned_agent"],
            )

        self.database.update_conversation(conversation_id, mode=MODE_HUMAN, status=STATUS_WAITING)
        logger.info("conversation_escalated", conversation_id=conversation_id)
        return ModeTransition(
            changed=True,
            mode=MODE_HUMAN,
            status=STATUS_WAITING,
            assigned_agent=conversation["assigned_agent"],
        )

    def takeover(self, conversation_id: str, agent_id: str) -> ModeTransition:
        """An agent takes over the conversation.

        Taking over a conversation the same agent is already active on is a
        no-op that returns the current assignment. A conversation routed to
        the agent but still waiting becomes active.
        """
        conversation = self.get_conversation(conversation_id)
        if (
            conversation["mode"] == MODE_HUMAN
            and conversation["status"] == STATUS_ACTIVE
            and conversation["assigned_agent"] == agent_id
        ):
            logger.debug("takeover_noop", conversation_id=conversation_id, agent_id=agent_id)
            return ModeTransition(
                changed=False,
                mode=conversation["mode"],
                status=conversation["status"],
                assigned_agent=agent_id,
            )

        self.database.update_conversation(
            conversation_id,
            mode=MODE_HUMAN,
            status=STATUS_ACTIVE,
            assigned_agent=agent_id,
        )
        logger.info(
            "conversation_taken_over",
            conversation_id=conversation_id,
            agent_id=agent_id,
            previous_agent=conversation["assigned_agent"],
        )
        return ModeTransition(
            changed=True, mode=MODE_HUMAN, status=STATUS_ACTIVE, assigned_agent=agent_id
        )

    def return_to_ai(self, conversation_id: str) -> ModeTransition:
        """Hand the conversation back to the AI and clear the assignment.

        Callers must check that the requesting agent is the assigned one.
        """
        conversation = self.get_conversation(conversation_id)
        if conversation["mode"] == MODE_AI:
            return ModeTransition(
                changed=False,
                mode=conversation["mode"],
                status=conversation["status"],
                assigned_agent=conversation["assigned_agent"],
            )

        self.database.update_conversation(
            conversation_id, mode=MODE_AI, status=STATUS_ACTIVE, assigned_agent=None
        )
        logger.info("conversation_returned_to_ai", conversation_id=conversation_id)
        return ModeTransition(changed=True, mode=MODE_AI, status=STATUS_ACTIVE)
