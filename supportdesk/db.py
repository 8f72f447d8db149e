"""SQLite document store for the support desk.

Collections:
- knowledge_entries / knowledge_chunks: ingested documents and learned Q&A pairs
- embeddings: one vector per chunk, linked back to its entry
- response_cache: semantically cached answers
- conversations / messages: chat state read by the answering pipeline
- categories / agents: workflow prompts and routing targets
"""
import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional
import structlog

from supportdesk import config

logger = structlog.get_logger()

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS knowledge_entries (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        filename TEXT NOT NULL,
        original_name TEXT,
        file_type TEXT,
        file_size INTEGER,
        content TEXT NOT NULL,
        active INTEGER NOT NULL DEFAULT 1,
        uploaded_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS knowledge_chunks (
        entry_id INTEGER NOT NULL REFERENCES knowledge_entries(id),
        chunk_index INTEGER NOT NULL,
        text TEXT NOT NULL,
        embedding_id INTEGER,
        PRIMARY KEY (entry_id, chunk_index)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS embeddings (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        knowledge_entry_id INTEGER NOT NULL REFERENCES knowledge_entries(id),
        chunk_index INTEGER NOT NULL,
        text TEXT NOT NULL,
        vector_json TEXT NOT NULL,
        metadata_json TEXT,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_embeddings_entry ON embeddings(knowledge_entry_id)",
    """
    CREATE TABLE IF NOT EXISTS response_cache (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        question TEXT NOT NULL,
        question_vector_json TEXT NOT NULL,
        response TEXT NOT NULL,
        confidence REAL,
        sources_json TEXT,
        hit_count INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_response_cache_created ON response_cache(created_at)",
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id TEXT PRIMARY KEY,
        mode TEXT NOT NULL DEFAULT 'ai',
        status TEXT NOT NULL DEFAULT 'active',
        assigned_agent TEXT,
        category_id INTEGER,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        conversation_id TEXT NOT NULL REFERENCES conversations(id),
        sender TEXT NOT NULL,
        content TEXT NOT NULL,
        is_internal INTEGER NOT NULL DEFAULT 0,
        metadata_json TEXT,
        sent_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id)",
    """
    CREATE TABLE IF NOT EXISTS categories (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        prompt TEXT NOT NULL,
        active INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS agents (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'offline',
        specialties_json TEXT
    )
    """,
]

CONVERSATION_FIELDS = {"mode", "status", "assigned_agent", "category_id"}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _loads(value: Optional[str], default: Any = None) -> Any:
    return json.loads(value) if value else default


class Database:
    """Thin persistence layer over a single SQLite file.

    A connection is opened per operation, so one instance can be shared by
    concurrent request handlers.
    """

    def __init__(self, path: Path = None):
        self.path = Path(path or config.DB_PATH)

    def get_connection(self) -> sqlite3.Connection:
        """Get a connection with row_factory set to sqlite3.Row."""
        conn = sqlite3.connect(self.path)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[sqlite3.Cursor]:
        conn = self.get_connection()
        try:
            yield conn.cursor()
            conn.commit()
        except Exception as e:
            conn.rollback()
            logger.error("database_operation_failed", operation=operation, error=str(e))
            raise
        finally:
            conn.close()

    def init_database(self) -> None:
        """Create tables and indexes if they don't exist."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._transaction("init_database") as cursor:
            for statement in SCHEMA:
                cursor.execute(statement)
        logger.info("database_initialized", db_path=str(self.path))

    # ------------------------------------------------------------------
    # Knowledge entries

    def create_entry(
        self,
        filename: str,
        content: str,
        chunks: Iterable[str],
        original_name: Optional[str] = None,
        file_type: Optional[str] = None,
        file_size: Optional[int] = None,
    ) -> int:
        """Insert a knowledge entry with its ordered chunks.

        Returns:
            ID of the new entry
        """
        with self._transaction("create_entry") as cursor:
            cursor.execute(
                """
                INSERT INTO knowledge_entries (
                    filename, original_name, file_type, file_size, content, active, uploaded_at
                ) VALUES (?, ?, ?, ?, ?, 1, ?)
                """,
                (
                    filename,
                    original_name or filename,
                    file_type,
                    file_size if file_size is not None else len(content),
                    content,
                    utcnow().isoformat(),
                ),
            )
            entry_id = cursor.lastrowid
            cursor.executemany(
                "INSERT INTO knowledge_chunks (entry_id, chunk_index, text) VALUES (?, ?, ?)",
                [(entry_id, index, text) for index, text in enumerate(chunks)],
            )
        logger.info("knowledge_entry_created", entry_id=entry_id, filename=filename)
        return entry_id

    def get_entry(self, entry_id: int) -> Optional[Dict[str, Any]]:
        """Fetch an entry with its chunks (active or not)."""
        conn = self.get_connection()
        try:
            row = conn.execute(
                "SELECT * FROM knowledge_entries WHERE id = ?", (entry_id,)
            ).fetchone()
            if row is None:
                return None
            entry = dict(row)
            entry["active"] = bool(entry["active"])
            chunk_rows = conn.execute(
                """
                SELECT chunk_index, text, embedding_id FROM knowledge_chunks
                WHERE entry_id = ? ORDER BY chunk_index
                """,
                (entry_id,),
            ).fetchall()
            entry["chunks"] = [
                {"index": r["chunk_index"], "text": r["text"], "embedding_id": r["embedding_id"]}
                for r in chunk_rows
            ]
            return entry
        finally:
            conn.close()

    def list_entries(self) -> List[Dict[str, Any]]:
        """List active entries, newest first, with their chunk counts."""
        conn = self.get_connection()
        try:
            rows = conn.execute(
                """
                SELECT e.id, e.filename, e.original_name, e.file_type, e.file_size,
                       e.uploaded_at, COUNT(c.chunk_index) AS chunk_count
                FROM knowledge_entries e
                LEFT JOIN knowledge_chunks c ON c.entry_id = e.id
                WHERE e.active = 1
                GROUP BY e.id
                ORDER BY e.uploaded_at DESC, e.id DESC
                """
            ).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()

    def count_entries(self, active_only: bool = True) -> int:
        conn = self.get_connection()
        try:
            query = "SELECT COUNT(*) FROM knowledge_entries"
            if active_only:
                query += " WHERE active = 1"
            return conn.execute(query).fetchone()[0]
        finally:
            conn.close()

    def replace_entry_content(self, entry_id: int, content: str, chunks: Iterable[str]) -> None:
        """Overwrite an entry's content and replace all of its chunks."""
        with self._transaction("replace_entry_content") as cursor:
            cursor.execute(
                "UPDATE knowledge_entries SET content = ?, file_size = ? WHERE id = ?",
                (content, len(content), entry_id),
            )
            cursor.execute("DELETE FROM knowledge_chunks WHERE entry_id = ?", (entry_id,))
            cursor.executemany(
                "INSERT INTO knowledge_chunks (entry_id, chunk_index, text) VALUES (?, ?, ?)",
                [(entry_id, index, text) for index, text in enumerate(chunks)],
            )

    def merge_into_entry(
        self, entry_id: int, content: str, chunk_index: int, chunk_text: str
    ) -> None:
        """Store merged content and the merged text of one chunk."""
        with self._transaction("merge_into_entry") as cursor:
            cursor.execute(
                "UPDATE knowledge_entries SET content = ?, file_size = ? WHERE id = ?",
                (content, len(content), entry_id),
            )
            cursor.execute(
                "UPDATE knowledge_chunks SET text = ? WHERE entry_id = ? AND chunk_index = ?",
                (chunk_text, entry_id, chunk_index),
            )

    def link_chunk_embedding(self, entry_id: int, chunk_index: int, embedding_id: int) -> None:
        with self._transaction("link_chunk_embedding") as cursor:
            cursor.execute(
                """
                UPDATE knowledge_chunks SET embedding_id = ?
                WHERE entry_id = ? AND chunk_index = ?
                """,
                (embedding_id, entry_id, chunk_index),
            )

    def deactivate_entry(self, entry_id: int) -> bool:
        """Soft-delete an entry. Returns False if it was missing or already inactive."""
        with self._transaction("deactivate_entry") as cursor:
            cursor.execute(
                "UPDATE knowledge_entries SET active = 0 WHERE id = ? AND active = 1",
                (entry_id,),
            )
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Embeddings

    def insert_embedding(
        self,
        entry_id: int,
        chunk_index: int,
        text: str,
        vector: List[float],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        with self._transaction("insert_embedding") as cursor:
            cursor.execute(
                """
                INSERT INTO embeddings (
                    knowledge_entry_id, chunk_index, text, vector_json, metadata_json, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    entry_id,
                    chunk_index,
                    text,
                    json.dumps(list(vector)),
                    json.dumps(metadata or {}),
                    utcnow().isoformat(),
                ),
            )
            return cursor.lastrowid

    def update_embedding(self, embedding_id: int, text: str, vector: List[float]) -> None:
        with self._transaction("update_embedding") as cursor:
            cursor.execute(
                "UPDATE embeddings SET text = ?, vector_json = ? WHERE id = ?",
                (text, json.dumps(list(vector)), embedding_id),
            )

    def delete_embedding(self, embedding_id: int) -> None:
        with self._transaction("delete_embedding") as cursor:
            cursor.execute("DELETE FROM embeddings WHERE id = ?", (embedding_id,))

    def delete_embeddings_for_entry(self, entry_id: int) -> int:
        """Purge every embedding of an entry and unlink its chunks.

        Returns:
            Number of embeddings deleted
        """
        with self._transaction("delete_embeddings_for_entry") as cursor:
            cursor.execute("DELETE FROM embeddings WHERE knowledge_entry_id = ?", (entry_id,))
            deleted = cursor.rowcount
            cursor.execute(
                "UPDATE knowledge_chunks SET embedding_id = NULL WHERE entry_id = ?",
                (entry_id,),
            )
        logger.info("embeddings_deleted", entry_id=entry_id, count=deleted)
        return deleted

    def get_searchable_embeddings(self) -> List[Dict[str, Any]]:
        """All embeddings whose owning entry is active, in insertion order.

        Each row carries the owning entry's filename.
        """
        conn = self.get_connection()
        try:
            rows = conn.execute(
                """
                SELECT em.id, em.knowledge_entry_id, em.chunk_index, em.text,
                       em.vector_json, em.metadata_json, ke.filename
                FROM embeddings em
                JOIN knowledge_entries ke ON ke.id = em.knowledge_entry_id
                WHERE ke.active = 1
                ORDER BY em.id
                """
            ).fetchall()
            records = []
            for row in rows:
                record = dict(row)
                record["vector"] = json.loads(record.pop("vector_json"))
                record["metadata"] = _loads(record.pop("metadata_json"), {})
                records.append(record)
            return records
        finally:
            conn.close()

    def get_embedding(self, embedding_id: int) -> Optional[Dict[str, Any]]:
        conn = self.get_connection()
        try:
            row = conn.execute("SELECT * FROM embeddings WHERE id = ?", (embedding_id,)).fetchone()
            if row is None:
                return None
            record = dict(row)
            record["vector"] = json.loads(record.pop("vector_json"))
            record["metadata"] = _loads(record.pop("metadata_json"), {})
            return record
        finally:
            conn.close()

    def count_embeddings(self, entry_id: Optional[int] = None) -> int:
        conn = self.get_connection()
        try:
            if entry_id is None:
                return conn.execute("SELECT COUNT(*) FROM embeddings").fetchone()[0]
            return conn.execute(
                "SELECT COUNT(*) FROM embeddings WHERE knowledge_entry_id = ?", (entry_id,)
            ).fetchone()[0]
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Response cache

    def insert_cached_response(
        self,
        question: str,
        question_vector: List[float],
        response: str,
        confidence: float,
        sources: List[str],
        created_at: datetime,
    ) -> int:
        with self._transaction("insert_cached_response") as cursor:
            cursor.execute(
                """
                INSERT INTO response_cache (
                    question, question_vector_json, response, confidence,
                    sources_json, hit_count, created_at
                ) VALUES (?, ?, ?, ?, ?, 0, ?)
                """,
                (
                    question,
                    json.dumps(list(question_vector)),
                    response,
                    confidence,
                    json.dumps(list(sources)),
                    created_at.isoformat(),
                ),
            )
            return cursor.lastrowid

    def get_recent_cached_responses(self, limit: int, since: datetime) -> List[Dict[str, Any]]:
        """Unexpired cache entries created at or after ``since``, newest first."""
        conn = self.get_connection()
        try:
            rows = conn.execute(
                """
                SELECT * FROM response_cache
                WHERE created_at >= ?
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (since.isoformat(), limit),
            ).fetchall()
            entries = []
            for row in rows:
                entry = dict(row)
                entry["question_vector"] = json.loads(entry.pop("question_vector_json"))
                entry["sources"] = _loads(entry.pop("sources_json"), [])
                entries.append(entry)
            return entries
        finally:
            conn.close()

    def get_cached_response(self, cache_id: int) -> Optional[Dict[str, Any]]:
        conn = self.get_connection()
        try:
            row = conn.execute("SELECT * FROM response_cache WHERE id = ?", (cache_id,)).fetchone()
            if row is None:
                return None
            entry = dict(row)
            entry["question_vector"] = json.loads(entry.pop("question_vector_json"))
            entry["sources"] = _loads(entry.pop("sources_json"), [])
            return entry
        finally:
            conn.close()

    def increment_cache_hit(self, cache_id: int) -> None:
        with self._transaction("increment_cache_hit") as cursor:
            cursor.execute(
                "UPDATE response_cache SET hit_count = hit_count + 1 WHERE id = ?", (cache_id,)
            )

    def delete_cached_responses_before(self, cutoff: datetime) -> int:
        with self._transaction("delete_cached_responses_before") as cursor:
            cursor.execute("DELETE FROM response_cache WHERE created_at < ?", (cutoff.isoformat(),))
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Conversations and messages

    def create_conversation(self, conversation_id: str, category_id: Optional[int] = None) -> None:
        with self._transaction("create_conversation") as cursor:
            cursor.execute(
                """
                INSERT INTO conversations (id, mode, status, category_id, created_at)
                VALUES (?, 'ai', 'active', ?, ?)
                """,
                (conversation_id, category_id, utcnow().isoformat()),
            )

    def get_conversation(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        conn = self.get_connection()
        try:
            row = conn.execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
            return dict(row) if row else None
        finally:
            conn.close()

    def update_conversation(self, conversation_id: str, **fields: Any) -> None:
        """Update mode/status/assignment columns of a conversation."""
        unknown = set(fields) - CONVERSATION_FIELDS
        if unknown:
            raise ValueError(f"Unknown conversation fields: {sorted(unknown)}")
        if not fields:
            return
        assignments = ", ".join(f"{name} = ?" for name in fields)
        with self._transaction("update_conversation") as cursor:
            cursor.execute(
                f"UPDATE conversations SET {assignments} WHERE id = ?",
                (*fields.values(), conversation_id),
            )

    def add_message(
        self,
        conversation_id: str,
        sender: str,
        content: str,
        is_internal: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        with self._transaction("add_message") as cursor:
            cursor.execute(
                """
                INSERT INTO messages (
                    conversation_id, sender, content, is_internal, metadata_json, sent_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    conversation_id,
                    sender,
                    content,
                    int(is_internal),
                    json.dumps(metadata) if metadata else None,
                    utcnow().isoformat(),
                ),
            )
            return cursor.lastrowid

    def get_recent_messages(self, conversation_id: str, limit: int) -> List[Dict[str, Any]]:
        """Most recent ``limit`` messages in chronological order."""
        conn = self.get_connection()
        try:
            rows = conn.execute(
                """
                SELECT * FROM messages WHERE conversation_id = ?
                ORDER BY sent_at DESC, id DESC
                LIMIT ?
                """,
                (conversation_id, limit),
            ).fetchall()
            messages = []
            for row in reversed(rows):
                message = dict(row)
                message["is_internal"] = bool(message["is_internal"])
                message["metadata"] = _loads(message.pop("metadata_json"), {})
                messages.append(message)
            return messages
        finally:
            conn.close()

    def get_last_user_message(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        conn = self.get_connection()
        try:
            row = conn.execute(
                """
                SELECT * FROM messages
                WHERE conversation_id = ? AND sender = 'user' AND is_internal = 0
                ORDER BY sent_at DESC, id DESC
                LIMIT 1
                """,
                (conversation_id,),
            ).fetchone()
            return dict(row) if row else None
        finally:
            conn.close()

    def count_active_conversations(self, agent_ids: List[str]) -> Dict[str, int]:
        """Number of active conversations assigned to each of ``agent_ids``."""
        if not agent_ids:
            return {}
        conn = self.get_connection()
        try:
            placeholders = ",".join("?" * len(agent_ids))
            rows = conn.execute(
                f"""
                SELECT assigned_agent, COUNT(*) AS workload FROM conversations
                WHERE status = 'active' AND assigned_agent IN ({placeholders})
                GROUP BY assigned_agent
                """,
                agent_ids,
            ).fetchall()
            return {row["assigned_agent"]: row["workload"] for row in rows}
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Categories and agents

    def create_category(self, name: str, prompt: str) -> int:
        with self._transaction("create_category") as cursor:
            cursor.execute(
                "INSERT INTO categories (name, prompt, active) VALUES (?, ?, 1)", (name, prompt)
            )
            return cursor.lastrowid

    def get_category(self, category_id: int) -> Optional[Dict[str, Any]]:
        conn = self.get_connection()
        try:
            row = conn.execute(
                "SELECT * FROM categories WHERE id = ? AND active = 1", (category_id,)
            ).fetchone()
            return dict(row) if row else None
        finally:
            conn.close()

    def upsert_agent(
        self,
        agent_id: str,
        name: str,
        status: str = "offline",
        specialties: Optional[List[str]] = None,
    ) -> None:
        with self._transaction("upsert_agent") as cursor:
            cursor.execute(
                """
                INSERT INTO agents (id, name, status, specialties_json) VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    status = excluded.status,
                    specialties_json = excluded.specialties_json
                """,
                (agent_id, name, status, json.dumps(specialties or [])),
            )

    def list_agents(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        conn = self.get_connection()
        try:
            if status is None:
                rows = conn.execute("SELECT * FROM agents ORDER BY id").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM agents WHERE status = ? ORDER BY id", (status,)
                ).fetchall()
            agents = []
            for row in rows:
                agent = dict(row)
                agent["specialties"] = _loads(agent.pop("specialties_json"), [])
                agents.append(agent)
            return agents
        finally:
            conn.close()
