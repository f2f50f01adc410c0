import math
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest
from chromadb.errors import DuplicateIDError, NotFoundError

# Add project root to sys.path for imports
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))


# ---------------------------------------------------------------- Chroma


class FakeCollection:
    def __init__(self, name, metadata=None):
        self.name = name
        self.metadata = dict(metadata or {})
        self.points = {}  # id -> (embedding, metadata)
        self.upserts = []
        self.fail_upsert = None
        self.fail_get = None

    def count(self):
        return len(self.points)

    @staticmethod
    def _reject_duplicates(ids, operation):
        seen = set()
        duplicates = [i for i in ids if i in seen or seen.add(i)]
        if duplicates:
            raise DuplicateIDError(
                f"Expected IDs to be unique, found duplicates of: {', '.join(duplicates)} in {operation}."
            )

    def upsert(self, ids, embeddings, metadatas):
        if self.fail_upsert is not None:
            raise self.fail_upsert
        self._reject_duplicates(ids, "upsert")
        self.upserts.append(list(ids))
        for point_id, embedding, metadata in zip(ids, embeddings, metadatas):
            self.points[point_id] = (list(embedding), dict(metadata))

    def get(self, ids=None, include=None, limit=None):
        if self.fail_get is not None:
            raise self.fail_get
        include = include or []
        if ids is not None:
            self._reject_duplicates(ids, "get")
        selected = [i for i in ids if i in self.points] if ids is not None else list(self.points)
        if limit is not None:
            selected = selected[:limit]
        return {
            "ids": selected,
            "metadatas": [self.points[i][1] for i in selected] if "metadatas" in include else None,
            "embeddings": [self.points[i][0] for i in selected] if "embeddings" in include else None,
        }

    def delete(self, ids):
        self._reject_duplicates(ids, "delete")
        for point_id in ids:
            self.points.pop(point_id, None)

    def query(self, query_embeddings, n_results, include=None):
        query = query_embeddings[0]

        def distance(vector):
            dot = sum(a * b for a, b in zip(query, vector))
            norm = math.sqrt(sum(a * a for a in query)) * math.sqrt(sum(b * b for b in vector))
            return 1.0 - (dot / norm if norm else 0.0)

        ranked = sorted(self.points.items(), key=lambda kv: distance(kv[1][0]))[:n_results]
        return {
            "ids": [[pid for pid, _ in ranked]],
            "distances": [[distance(point[0]) for _, point in ranked]],
            "metadatas": [[point[1] for _, point in ranked]],
        }


class FakeChromaClient:
    def __init__(self):
        self.collections = {}
        self.calls = []

    def get_collection(self, name):
        self.calls.append(("get_collection", name))
        if name not in self.collections:
            raise NotFoundError(f"Collection [{name}] does not exist")
        return self.collections[name]

    def create_collection(self, name, metadata=None):
        self.calls.append(("create_collection", name))
        collection = FakeCollection(name, metadata)
        self.collections[name] = collection
        return collection

    def delete_collection(self, name):
        self.calls.append(("delete_collection", name))
        if name not in self.collections:
            raise NotFoundError(f"Collection [{name}] does not exist")
        del self.collections[name]

    def list_collections(self):
        return list(self.collections.values())


# ---------------------------------------------------------------- Neo4j


class FakeResult(list):
    def consume(self):
        return None


class FakeTransaction:
    def __init__(self, driver):
        self.driver = driver
        self.calls = []

    def run(self, cypher, parameters=None, **kwargs):
        params = {**(parameters or {}), **kwargs}
        self.calls.append((" ".join(cypher.split()), params))
        return self.driver.execute(cypher, params)


class FakeSession:
    def __init__(self, driver):
        self.driver = driver

    def __enter__(self):
        self.driver.sessions_opened += 1
        return self

    def __exit__(self, *exc):
        self.driver.sessions_closed += 1
        return False

    def run(self, cypher, parameters=None, **kwargs):
        return self.driver.execute(cypher, {**(parameters or {}), **kwargs})

    def execute_write(self, work):
        tx = FakeTransaction(self.driver)
        result = work(tx)
        self.driver.committed.append(tx.calls)
        return result


class FakeNeo4jDriver:
    """Records every query; answers with queued record lists."""

    def __init__(self):
        self.calls = []
        self.responses = []
        self.fail_on = None
        self.sessions_opened = 0
        self.sessions_closed = 0
        self.committed = []
        self.databases = []
        self.closed = False

    def execute(self, cypher, params):
        self.calls.append((" ".join(cypher.split()), dict(params)))
        if self.fail_on and self.fail_on in cypher:
            raise RuntimeError("neo4j unavailable")
        return FakeResult(self.responses.pop(0) if self.responses else [])

    def session(self, database=None):
        self.databases.append(database)
        return FakeSession(self)

    def close(self):
        self.closed = True

    @property
    def queries(self):
        return [cypher for cypher, _ in self.calls]


# ---------------------------------------------------------------- OpenAI / embeddings


class FakeOpenAI:
    def __init__(self, replies=None):
        self.replies = list(replies or [])
        self.requests = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    def _create(self, **kwargs):
        self.requests.append(kwargs)
        content = self.replies.pop(0) if self.replies else "ok"
        message = SimpleNamespace(content=content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class LetterEmbeddingBackend:
    """Deterministic 4-dim vectors: vowel, consonant, digit and space counts."""

    def __init__(self):
        self.batches = []

    def embed(self, texts):
        self.batches.append(list(texts))
        return [self.vector(text) for text in texts]

    @staticmethod
    def vector(text):
        lowered = text.lower()
        vowels = sum(ch in "aeiou" for ch in lowered)
        consonants = sum(ch.isalpha() and ch not in "aeiou" for ch in lowered)
        digits = sum(ch.isdigit() for ch in lowered)
        spaces = sum(ch.isspace() for ch in lowered)
        return [float(vowels), float(consonants), float(digits), float(spaces) + 0.5]


@pytest.fixture
def chroma_client():
    return FakeChromaClient()


@pytest.fixture
def neo4j_driver():
    return FakeNeo4jDriver()


@pytest.fixture
def fake_openai():
    return FakeOpenAI()


@pytest.fixture
def embedding_backend():
    return LetterEmbeddingBackend()
