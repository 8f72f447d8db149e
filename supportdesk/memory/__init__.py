"""Conversation memory and mode management."""
from supportdesk.memory.manager import ConversationManager, ModeTransition

__all__ = ["ConversationManager", "ModeTransition"]
