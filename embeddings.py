#!/usr/bin/env python3
"""
Embedding clients and vector math helpers.

Two backends share one async interface, `await embedder.embed(text)`, which
returns a list of floats or None. Callers treat None as "embedding service
unavailable" and degrade (skip dedup, skip vector search) instead of failing.

- OllamaEmbedder: POST {host}/api/embeddings via httpx, short timeout
- LocalEmbedder:  lazy-loaded sentence-transformers model (CPU), run in a thread
"""

import asyncio
import logging
import threading
from typing import Optional, Protocol

import httpx
import numpy as np
from scipy.spatial.distance import cdist

from memory_config import EmbeddingSettings

logger = logging.getLogger(__name__)


class Embedder(Protocol):
    dimensions: int

    async def embed(self, text: str) -> Optional[list[float]]: ...


# ── Ollama ────────────────────────────────────────────────────────────────────

class OllamaEmbedder:
    """Embeddings from an Ollama server (/api/embeddings)."""

    def __init__(
        self,
        host: str = "http://localhost:11434",
        model: str = "nomic-embed-text",
        dimensions: int = 768,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.host = host.rstrip("/")
        self.model = model
        self.dimensions = dimensions
        self.timeout = timeout
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def embed(self, text: str) -> Optional[list[float]]:
        try:
            response = await self.client.post(
                f"{self.host}/api/embeddings",
                json={"model": self.model, "prompt": text},
                timeout=self.timeout,
            )
            response.raise_for_status()
            embedding = response.json().get("embedding")
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            logger.warning(f"[Embed] {self.model} unavailable: {e}")
            return None
        if not embedding or len(embedding) != self.dimensions:
            logger.warning(f"[Embed] Unexpected embedding shape from {self.model}")
            return None
        return embedding

    async def close(self):
        await self.client.aclose()


# ── Local sentence-transformers ──────────────────────────────────────────────

class LocalEmbedder:
    """Lazy-loaded sentence-transformer (CPU only). Needs the `local` extra."""

    def __init__(self, model_name: str = "nomic-ai/nomic-embed-text-v1.5", dimensions: int = 768):
        self.model_name = model_name
        self.dimensions = dimensions
        self._model = None
        self._lock = threading.Lock()

    def _load_model(self):
        if self._model is None:
            with self._lock:
                if self._model is None:
                    from sentence_transformers import SentenceTransformer
                    self._model = SentenceTransformer(
                        self.model_name,
                        trust_remote_code=True,
                        device="cpu",
                    )

    def _encode(self, text: str) -> list[float]:
        self._load_model()
        return self._model.encode(
            text, convert_to_numpy=True, normalize_embeddings=True
        ).tolist()

    async def embed(self, text: str) -> Optional[list[float]]:
        try:
            embedding = await asyncio.to_thread(self._encode, text)
        except Exception as e:
            logger.warning(f"[Embed] Local model failed: {e}")
            return None
        if len(embedding) != self.dimensions:
            logger.warning(f"[Embed] {self.model_name} returned {len(embedding)} dimensions, expected {self.dimensions}")
            return None
        return embedding

    async def close(self):
        pass


def build_embedder(settings: EmbeddingSettings):
    if settings.kind == "local":
        return LocalEmbedder(settings.model, settings.dimensions)
    return OllamaEmbedder(
        host=settings.host,
        model=settings.model,
        dimensions=settings.dimensions,
        timeout=settings.timeout,
    )


# ── Vector math ───────────────────────────────────────────────────────────────

def cosine_similarity(vec1, vec2) -> float:
    a = np.asarray(vec1, dtype=np.float32)
    b = np.asarray(vec2, dtype=np.float32)
    norm = float(np.linalg.norm(a) * np.linalg.norm(b))
    if norm == 0:
        return 0.0
    return float(np.dot(a, b) / norm)


def similarity_matrix(queries, candidates) -> np.ndarray:
    """Pairwise cosine similarity, shape (len(queries), len(candidates))."""
    q = np.atleast_2d(np.asarray(queries, dtype=np.float32))
    c = np.atleast_2d(np.asarray(candidates, dtype=np.float32))
    if q.size == 0 or c.size == 0:
        return np.zeros((len(q) if q.size else 0, len(c) if c.size else 0))
    sims = 1.0 - cdist(q, c, metric="cosine")
    return np.nan_to_num(sims, nan=0.0)
