"""Learning from live agent replies.

When an agent answers a customer, the last customer question and the agent's
answer are saved to the knowledge base as a Q&A pair. A pair that is nearly
identical to existing knowledge is merged into that entry instead of creating
a new one.
"""
import re
import time
from typing import Optional
import structlog

from supportdesk import config
from supportdesk.db import Database
from supportdesk.rag.embedder import EmbeddingGenerator
from supportdesk.rag.similarity import VectorIndex

logger = structlog.get_logger()

MERGE_SEPARATOR = "\n\n---\n"

NAME_INTRODUCTION = re.compile(r"\bmy name is\s+\w+(?:\s+\w+)?", re.IGNORECASE)
# Only capitalised names after "I'm" / "I am", so "I am having trouble" survives
SELF_INTRODUCTION = re.compile(r"\b(?i:i'm|i am)\s+[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*")
CONTACT_DISCLOSURE = re.compile(r"\bmy (?:email|phone|number|cell) is\s+\S+", re.IGNORECASE)


def scrub_personal_info(text: str) -> str:
    """Replace self-introductions and volunteered contact details."""
    text = NAME_INTRODUCTION.sub("[user]", text)
    text = SELF_INTRODUCTION.sub("[user]", text)
    return CONTACT_DISCLOSURE.sub("[user contact]", text)


def format_qa(question: str, answer: str) -> str:
    return f"Q: {question}\nA: {answer}"


class AgentReplyLearner:
    """Turns agent answers into new or merged knowledge entries."""

    def __init__(
        self,
        embedder: EmbeddingGenerator,
        index: VectorIndex,
        database: Database,
        duplicate_threshold: float = None,
    ):
        self.embedder = embedder
        self.index = index
        self.database = database
        self.duplicate_threshold = (
            config.DUPLICATE_THRESHOLD if duplicate_threshold is None else duplicate_threshold
        )

    async def learn(self, conversation_id: str, agent_answer: str) -> Optional[int]:
        """Save the Q&A pair formed by the last customer question and this answer.

        Never raises; failures are logged.

        Returns:
            ID of the created or merged knowledge entry, or None if nothing was learned
        """
        try:
            return await self._learn(conversation_id, agent_answer)
        except Exception as e:
            logger.error(
                "agent_reply_learning_failed",
                conversation_id=conversation_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

    async def _learn(self, conversation_id: str, agent_answer: str) -> Optional[int]:
        if not agent_answer or not agent_answer.strip():
            return None

        last_user_message = self.database.get_last_user_message(conversation_id)
        if last_user_message is None:
            logger.debug("no_user_question_to_learn_from", conversation_id=conversation_id)
            return None

        question = scrub_personal_info(last_user_message["content"])
        qa_text = format_qa(question, agent_answer)
        qa_vector = await self.embedder.embed_one(qa_text)

        matches = await self.index.query(qa_vector, top_k=1, min_similarity=-1.0)
        best = matches[0] if matches else None

        if best is not None and best.similarity >= self.duplicate_threshold:
            merged_id = await self._merge(best, qa_text)
            if merged_id is not None:
                logger.info(
                    "agent_reply_merged",
                    entry_id=merged_id,
                    similarity=round(best.similarity, 3),
                    question_preview=question[:50],
                )
                return merged_id

        entry_id = self.database.create_entry(
            filename=f"agent-reply-{int(time.time() * 1000)}",
            original_name="Agent Reply (auto-learned)",
            file_type="qa-pair",
            content=qa_text,
            chunks=[qa_text],
        )
        embedding_id = self.database.insert_embedding(
            entry_id=entry_id,
            chunk_index=0,
            text=qa_text,
            vector=qa_vector,
            metadata={"source": "agent-reply", "conversation_id": str(conversation_id)},
        )
        self.database.link_chunk_embedding(entry_id, 0, embedding_id)

        logger.info("agent_reply_learned", entry_id=entry_id, question_preview=question[:50])
        return entry_id

    async def _merge(self, match, qa_text: str) -> Optional[int]:
        entry = self.database.get_entry(match.knowledge_entry_id)
        if entry is None or not entry["active"]:
            logger.warning(
                "orphan_embedding_removed",
                embedding_id=match.embedding_id,
                entry_id=match.knowledge_entry_id,
            )
            self.database.delete_embedding(match.embedding_id)
            return None

        chunk = next(
            (c for c in entry["chunks"] if c["index"] == match.chunk_index),
            None,
        )
        chunk_text = chunk["text"] if chunk else match.text

        merged_content = f"{entry['content'] or ''}{MERGE_SEPARATOR}{qa_text}"
        merged_chunk = f"{chunk_text}{MERGE_SEPARATOR}{qa_text}"

        merged_vector = await self.embedder.embed_one(merged_chunk)
        self.database.merge_into_entry(entry["id"], merged_content, match.chunk_index, merged_chunk)
        self.database.update_embedding(match.embedding_id, merged_chunk, merged_vector)
        return entry["id"]
