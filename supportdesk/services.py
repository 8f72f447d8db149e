"""Wiring of the pipeline components around one store and one backend."""
from dataclasses import dataclass
from typing import Optional
import httpx

from supportdesk.db import Database
from supportdesk.engine import ConfidenceEngine
from supportdesk.llm_client import ModelBackend, OllamaClient
from supportdesk.memory import ConversationManager
from supportdesk.rag.chunker import TextChunker
from supportdesk.rag.embedder import EmbeddingGenerator
from supportdesk.rag.ingest import IngestPipeline
from supportdesk.rag.learner import AgentReplyLearner
from supportdesk.rag.response_cache import ResponseCache
from supportdesk.rag.retriever import Retriever
from supportdesk.rag.similarity import LinearScanIndex, VectorIndex
from supportdesk.routing import AgentRouter
from supportdesk.tasks import BackgroundTasks


@dataclass
class Services:
    database: Database
    backend: ModelBackend
    tasks: BackgroundTasks
    embedder: EmbeddingGenerator
    index: VectorIndex
    ingest: IngestPipeline
    cache: ResponseCache
    learner: AgentReplyLearner
    conversations: ConversationManager
    router: AgentRouter
    engine: ConfidenceEngine


def build_services(
    database: Optional[Database] = None,
    backend: Optional[ModelBackend] = None,
    embedding_batch_delay: Optional[float] = None,
    fetch_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Services:
    """Create every component, sharing the given store and backend.

    ``fetch_transport`` replaces the network for URL imports (used by tests).
    The caller is responsible for ``database.init_database()``.
    """
    database = database or Database()
    backend = backend or OllamaClient()

    tasks = BackgroundTasks()
    embedder = EmbeddingGenerator(backend, database, batch_delay=embedding_batch_delay)
    index = LinearScanIndex(database)
    cache = ResponseCache(embedder, database)
    conversations = ConversationManager(database)
    router = AgentRouter(database)

    return Services(
        database=database,
        backend=backend,
        tasks=tasks,
        embedder=embedder,
        index=index,
        ingest=IngestPipeline(TextChunker(), embedder, database, transport=fetch_transport),
        cache=cache,
        learner=AgentReplyLearner(embedder, index, database),
        conversations=conversations,
        router=router,
        engine=ConfidenceEngine(
            retriever=Retriever(embedder, index),
            cache=cache,
            backend=backend,
            conversations=conversations,
            router=router,
            tasks=tasks,
        ),
    )
