#!/usr/bin/env python3
"""
Hybrid Retrieval — vector similarity fused with BM25 keyword ranking.

    combined = vector_weight * vector_score + bm25_weight * bm25_score

Vector scores are cosine similarities (1 - distance). BM25 scores come from
SQLite FTS5, where more negative is better; they are normalized to [0, 1] by
|score| / max(|score|). A record found by only one side gets 0 for the other
and is tagged "vector" or "bm25"; records found by both are "hybrid".

If the embedding service is down the vector side is empty and ranking falls
back to pure keyword order.
"""

import logging
import re
from dataclasses import dataclass, asdict
from typing import Optional

from embeddings import Embedder
from memory_config import HybridSettings
from memory_store import MESSAGES, MemoryStore

logger = logging.getLogger(__name__)

FALLBACK_TOKEN = "memory"
UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9\s-]")


@dataclass
class SearchHit:
    id: str
    text: str
    role: str
    group_id: str
    score: float
    vector_score: float = 0.0
    bm25_score: float = 0.0
    source: str = "hybrid"

    def to_dict(self) -> dict:
        return asdict(self)


def sanitize_fts_query(query: str) -> str:
    """
    Reduce a raw query to FTS5-safe syntax: alnum, space and hyphen only, each
    token quoted and OR-joined. Never returns an empty query.
    """
    cleaned = UNSAFE_CHARS.sub(" ", query or "")
    tokens = [t.strip("-") for t in cleaned.split()]
    tokens = [t for t in tokens if t]
    if not tokens:
        tokens = [FALLBACK_TOKEN]
    return " OR ".join(f'"{t}"' for t in tokens)


def normalize_bm25(rows: list[dict]) -> dict[str, float]:
    """owner_id → |score| / max |score|, in [0, 1]."""
    if not rows:
        return {}
    top = max(abs(r["score"]) for r in rows)
    if top == 0:
        return {r["owner_id"]: 0.0 for r in rows}
    return {r["owner_id"]: abs(r["score"]) / top for r in rows}


def fuse_results(
    vector_rows: list[dict],
    keyword_rows: list[dict],
    limit: int,
    vector_weight: float = 0.6,
    bm25_weight: float = 0.4,
) -> list[SearchHit]:
    """
    Merge vector hits ({owner_id, similarity, ...}) and keyword hits
    ({owner_id, score, ...}) by record identity, best combined score first.
    """
    hits: dict[str, SearchHit] = {}
    for row in vector_rows:
        hits[row["owner_id"]] = SearchHit(
            id=row["owner_id"],
            text=row.get("text", ""),
            role=row.get("role", ""),
            group_id=row.get("group_id", ""),
            score=0.0,
            vector_score=float(row["similarity"]),
            source="vector",
        )
    for owner_id, bm25 in normalize_bm25(keyword_rows).items():
        if owner_id in hits:
            hits[owner_id].bm25_score = bm25
            hits[owner_id].source = "hybrid"
            continue
        row = next(r for r in keyword_rows if r["owner_id"] == owner_id)
        hits[owner_id] = SearchHit(
            id=owner_id,
            text=row.get("text", ""),
            role=row.get("role", ""),
            group_id=row.get("group_id", ""),
            score=0.0,
            bm25_score=bm25,
            source="bm25",
        )
    for hit in hits.values():
        hit.score = vector_weight * hit.vector_score + bm25_weight * hit.bm25_score
    ranked = sorted(hits.values(), key=lambda h: h.score, reverse=True)
    return ranked[:limit]


class HybridRetrieval:
    """Answers "what past records are relevant to X" over one store collection."""

    def __init__(
        self,
        store: MemoryStore,
        embedder: Embedder,
        settings: Optional[HybridSettings] = None,
        collection: str = MESSAGES,
    ):
        self.store = store
        self.embedder = embedder
        self.settings = settings or HybridSettings()
        self.collection = collection

    async def hybrid_search(
        self,
        query: str,
        exclude_group_id: Optional[str] = None,
        limit: int = 5,
        vector_threshold: Optional[float] = None,
    ) -> list[SearchHit]:
        threshold = self.settings.vector_threshold if vector_threshold is None else vector_threshold
        fetch = limit * 2

        vector_rows = []
        embedding = await self.embedder.embed(query) if query and query.strip() else None
        if embedding is not None:
            vector_rows = [
                r for r in self.store.search_vectors(
                    self.collection, embedding, fetch, exclude_group=exclude_group_id
                )
                if r["similarity"] >= threshold
            ]
        else:
            logger.info("[Search] No query embedding, keyword-only search")

        keyword_rows = self.store.keyword_search(
            self.collection, sanitize_fts_query(query), fetch, exclude_group=exclude_group_id
        )

        results = fuse_results(
            vector_rows, keyword_rows, limit,
            vector_weight=self.settings.vector_weight,
            bm25_weight=self.settings.bm25_weight,
        )
        logger.debug(
            f"[Search] {len(vector_rows)} vector + {len(keyword_rows)} keyword → {len(results)} results"
        )
        return results
