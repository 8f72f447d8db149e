"""Pytest configuration and fixtures."""
import math
from typing import Dict, List, Optional

import pytest

from supportdesk.db import Database
from supportdesk.errors import ConfigurationError
from supportdesk.llm_client import ModelBackend
from supportdesk.services import build_services


def vector_at(similarity: float) -> List[float]:
    """Unit vector whose cosine similarity with [1, 0, 0] is ``similarity``."""
    return [similarity, math.sqrt(max(0.0, 1.0 - similarity ** 2)), 0.0]


BASE_VECTOR = [1.0, 0.0, 0.0]


class FakeBackend(ModelBackend):
    """In-process model backend with scripted vectors and answers.

    Texts without a scripted vector embed to ``default_vector``.
    """

    def __init__(
        self,
        vectors: Optional[Dict[str, List[float]]] = None,
        answer: str = "You can request a refund within 30 days.",
        default_vector: Optional[List[float]] = None,
    ):
        self.vectors = dict(vectors or {})
        self.answer = answer
        self.default_vector = default_vector or [0.0, 0.0, 1.0]
        self.configured = True
        self.failing_texts = set()
        self.generate_error: Optional[Exception] = None
        self.embed_calls: List[str] = []
        self.generate_calls: List[dict] = []

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def embed(self, text: str) -> List[float]:
        self.embed_calls.append(text)
        if not self.configured:
            raise ConfigurationError("Model backend is not configured")
        if text in self.failing_texts:
            raise RuntimeError("embedding backend unavailable")
        return list(self.vectors.get(text, self.default_vector))

    async def generate(self, prompt: str, messages: List[Dict[str, str]]) -> str:
        self.generate_calls.append({"prompt": prompt, "messages": list(messages)})
        if not self.configured:
            raise ConfigurationError("Model backend is not configured")
        if self.generate_error is not None:
            raise self.generate_error
        return self.answer


@pytest.fixture
def database(tmp_path) -> Database:
    """Fresh SQLite database in a temporary directory."""
    db = Database(tmp_path / "supportdesk.sqlite")
    db.init_database()
    return db


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def services(database, backend):
    """All components wired around the test database and fake backend."""
    return build_services(database, backend, embedding_batch_delay=0)
