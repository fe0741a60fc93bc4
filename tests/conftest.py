"""
Root pytest configuration.

Puts the project root on sys.path and provides shared fixtures: a temporary
knowledge store, an entry factory, a fake embedding service and a builder for
OpenCode-style source databases.
"""

import json
import math
import sqlite3
import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pytest

# Add project root to path for all tests - do this IMMEDIATELY at module load
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from core.interfaces.embedding_service_interface import EmbeddingServiceInterface
from core.types.knowledge_types import KnowledgeEntry, now_ms
from modules.knowledge.knowledge_store import KnowledgeStore, new_id


class FakeEmbeddings(EmbeddingServiceInterface):
    """Returns the vector of the first key found in the text, else a default."""

    def __init__(self, vectors: Optional[Dict[str, Sequence[float]]] = None, default: Optional[Sequence[float]] = None):
        self.vectors = dict(vectors or {})
        self.default = list(default or [0.0, 0.0, 1.0])
        self.calls: List[str] = []

    @property
    def model_name(self) -> str:
        return "fake-embedding"

    @property
    def embedding_dim(self) -> int:
        return len(self.default)

    async def embed_text(self, text: str) -> List[float]:
        self.calls.append(text)
        for key, vector in self.vectors.items():
            if key in text:
                return list(vector)
        return list(self.default)

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        return [await self.embed_text(t) for t in texts]


def vector_at(similarity: float) -> List[float]:
    """A unit vector whose cosine similarity with [1, 0, 0] is `similarity`."""
    return [similarity, math.sqrt(max(0.0, 1 - similarity ** 2)), 0.0]


class OpenCodeDB:
    """Minimal OpenCode-shaped database for episode tests."""

    SCHEMA = '''
        CREATE TABLE project (id TEXT PRIMARY KEY, name TEXT);
        CREATE TABLE session (
            id TEXT PRIMARY KEY, project_id TEXT, parent_id TEXT,
            title TEXT, directory TEXT, time_created INTEGER
        );
        CREATE TABLE message (id TEXT PRIMARY KEY, session_id TEXT, time_created INTEGER, data TEXT);
        CREATE TABLE part (id TEXT PRIMARY KEY, message_id TEXT, session_id TEXT, time_created INTEGER, data TEXT);
    '''

    def __init__(self, path: Path):
        self.path = path
        conn = sqlite3.connect(path)
        conn.executescript(self.SCHEMA)
        conn.commit()
        conn.close()

    def _execute(self, sql: str, params: tuple):
        conn = sqlite3.connect(self.path)
        conn.execute(sql, params)
        conn.commit()
        conn.close()

    def add_project(self, project_id: str, name: str):
        self._execute("INSERT INTO project (id, name) VALUES (?, ?)", (project_id, name))

    def add_session(self, session_id: str, title: Optional[str] = "Session", project_id: Optional[str] = None,
                    parent_id: Optional[str] = None, directory: str = "/work", time_created: int = 1000):
        self._execute(
            "INSERT INTO session (id, project_id, parent_id, title, directory, time_created) VALUES (?, ?, ?, ?, ?, ?)",
            (session_id, project_id, parent_id, title, directory, time_created),
        )

    def add_message(self, session_id: str, message_id: str, role: str, time_created: int,
                    text: Optional[str] = None, compaction: bool = False):
        self._execute(
            "INSERT INTO message (id, session_id, time_created, data) VALUES (?, ?, ?, ?)",
            (message_id, session_id, time_created, json.dumps({"role": role})),
        )
        if compaction:
            self._execute(
                "INSERT INTO part (id, message_id, session_id, time_created, data) VALUES (?, ?, ?, ?, ?)",
                (f"{message_id}-compaction", message_id, session_id, time_created, json.dumps({"type": "compaction"})),
            )
        if text is not None:
            self._execute(
                "INSERT INTO part (id, message_id, session_id, time_created, data) VALUES (?, ?, ?, ?, ?)",
                (f"{message_id}-text", message_id, session_id, time_created, json.dumps({"type": "text", "text": text})),
            )

    def add_conversation(self, session_id: str, count: int, start_time: int = 1000, prefix: Optional[str] = None):
        """Alternating user/assistant messages, one millisecond apart."""
        prefix = prefix or session_id
        for i in range(count):
            role = "user" if i % 2 == 0 else "assistant"
            self.add_message(session_id, f"{prefix}-m{i}", role, start_time + i, text=f"{role} message {i} in {session_id}")


@pytest.fixture
def store(tmp_path):
    """Fresh knowledge store in a temp directory."""
    knowledge_store = KnowledgeStore(tmp_path / "knowledge.db")
    yield knowledge_store
    knowledge_store.close()


@pytest.fixture
def make_entry(store):
    """Insert a knowledge entry with sensible defaults; keyword arguments override."""
    def _make(content: str = "The API listens on port 8080.", **overrides) -> KnowledgeEntry:
        now = overrides.pop("now", now_ms())
        data = dict(
            id=new_id(),
            type="fact",
            content=content,
            topics=["general"],
            confidence=0.9,
            source="test",
            scope="personal",
            status="active",
            strength=0.9,
            created_at=now,
            updated_at=now,
            last_accessed_at=now,
            access_count=0,
            observation_count=1,
            derived_from=["session-0"],
            embedding=[1.0, 0.0, 0.0],
        )
        data.update(overrides)
        return store.insert_entry(KnowledgeEntry(**data))
    return _make


@pytest.fixture
def fake_embeddings():
    """Factory for FakeEmbeddings(vectors, default)."""
    return FakeEmbeddings


@pytest.fixture
def similar_vector():
    """vector_at(similarity) -> unit vector with that cosine against [1, 0, 0]."""
    return vector_at


@pytest.fixture
def opencode_db(tmp_path):
    return OpenCodeDB(tmp_path / "opencode.db")
