"""Shared fixtures: a temp store, a table-driven embedder, a scripted completion chain and a hub over them."""

import zlib
from typing import Optional

import numpy as np
import pytest

from fact_ingest import FactIngestor
from hub import MemoryHub
from llm_client import CompletionError
from memory_clusters import ClusterEngine
from memory_config import ClusterSettings, MemoryConfig
from memory_store import MemoryStore

DIM = 8


def vec(*values: float) -> list[float]:
    """An 8-dim vector from leading components, zero padded."""
    padded = [float(v) for v in values] + [0.0] * (DIM - len(values))
    return padded[:DIM]


def unit(i: int) -> list[float]:
    v = [0.0] * DIM
    v[i] = 1.0
    return v


class FakeEmbedder:
    """
    Deterministic embedder. Texts in the table get their listed vector; any
    other text gets a stable pseudo-random vector seeded from its crc32.
    Set available=False to simulate the embedding service being down.
    """

    def __init__(self, table: Optional[dict] = None):
        self.table = dict(table or {})
        self.available = True
        self.calls: list[str] = []

    def add(self, text: str, vector: list[float]):
        self.table[text] = vector

    async def embed(self, text: str) -> Optional[list[float]]:
        self.calls.append(text)
        if not self.available:
            return None
        if text in self.table:
            return list(self.table[text])
        rng = np.random.default_rng(zlib.crc32(text.encode("utf-8")))
        return rng.normal(size=DIM).tolist()

    async def close(self):
        pass


class FakeCompletion:
    """Stands in for CompletionChain: returns scripted responses in order."""

    def __init__(self, responses: Optional[list] = None):
        self.responses = list(responses or [])
        self.calls: list[tuple[str, str]] = []
        self.last_provider = None

    async def complete(self, system_prompt, user_prompt, max_tokens=2048, temperature=0.2) -> str:
        self.calls.append((system_prompt, user_prompt))
        if not self.responses:
            raise CompletionError("All LLM providers failed. Last error: no scripted response")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def close(self):
        pass


@pytest.fixture
def store(tmp_path):
    s = MemoryStore(tmp_path / "memory.db", dimensions=DIM)
    yield s
    s.close()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def engine(store, embedder):
    return ClusterEngine(store, embedder, ClusterSettings())


@pytest.fixture
def memory_file(tmp_path):
    return tmp_path / "MEMORY.md"


@pytest.fixture
def ingestor(memory_file, embedder):
    return FactIngestor(memory_file, embedder)


@pytest.fixture
def completion():
    return FakeCompletion()


@pytest.fixture
def hub(tmp_path, store, embedder, completion):
    """A hub over the temp store with no network clients."""
    config = MemoryConfig(data_dir=str(tmp_path))
    return MemoryHub(config, store, embedder, completion)
