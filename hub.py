#!/usr/bin/env python3
"""
Memory Hub — one object that owns every memory component.

build_hub(config) constructs the store, embedder, completion chain, cluster
engine, retrieval, ingestion, context budget, heartbeat and background queue
from a single MemoryConfig. Nothing below the hub reads configuration on its
own.

Chat-facing entry points:
- index_message(): persist a message and make it searchable
- build_context_message(): one system message with everything relevant
- record_exchange(): queue post-response fact extraction
- check_and_flush(): keep the live conversation under budget
"""

import logging
import sqlite3
from dataclasses import dataclass
from typing import Optional

import httpx

from context_budget import ContextBudget
from embeddings import Embedder, build_embedder
from fact_ingest import (
    FactIngestor,
    append_daily_log,
    extract_facts,
    load_memory_context,
)
from heartbeat import MaintenanceScheduler
from hybrid_search import HybridRetrieval
from llm_client import CompletionChain
from memory_clusters import AssignResult, ClusterEngine
from memory_config import MemoryConfig
from memory_store import MESSAGES, MemoryStore
from task_queue import BackgroundQueue

logger = logging.getLogger(__name__)

SNIPPET_CHARS = 500
CONTEXT_RESULTS = 5
CONTEXT_CLUSTERS = 3

CONTEXT_PREAMBLE = "You have access to the following memory and context:"
CONTEXT_FOOTER = (
    "Use this context if it helps answer the current question, "
    "but don't explicitly mention that you're using memory unless asked."
)


@dataclass
class ExchangeResult:
    facts: list[str]
    added: int
    assigned: list[AssignResult]

    def to_dict(self) -> dict:
        return {
            "facts": self.facts,
            "added": self.added,
            "assigned": [a.to_dict() for a in self.assigned],
        }


class MemoryHub:
    """Composition root for the memory layer."""

    def __init__(
        self,
        config: MemoryConfig,
        store: MemoryStore,
        embedder: Embedder,
        chain: CompletionChain,
        client: Optional[httpx.AsyncClient] = None,
        max_background: int = 2,
    ):
        self.config = config
        self.store = store
        self.embedder = embedder
        self.chain = chain
        self.client = client
        self.clusters = ClusterEngine(store, embedder, config.clusters, config.naming, client)
        self.retrieval = HybridRetrieval(store, embedder, config.hybrid, collection=MESSAGES)
        self.ingestor = FactIngestor(config.memory_file, embedder, config.ingest)
        self.budget = ContextBudget(chain, self.ingestor, config.daily_dir, config.flush)
        self.heartbeat = MaintenanceScheduler(
            self.clusters,
            self.ingestor,
            chain,
            daily_dir=config.daily_dir,
            archive_dir=config.archive_dir,
            settings=config.heartbeat,
            cluster_settings=config.clusters,
            state_file=config.data_path / "heartbeat_state.json",
        )
        self.queue = BackgroundQueue(max_background)

    # ── Messages ──────────────────────────────────────────────────────────────

    async def index_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        message_id: Optional[str] = None,
        model: str = "",
    ) -> str:
        """Store a message with its keyword entry and (best-effort) its vector."""
        message_id = self.store.add_message(conversation_id, role, content, message_id, model)
        embedding = await self.embedder.embed(content)
        if embedding is not None:
            try:
                self.store.delete_vectors(MESSAGES, owner_id=message_id)
                self.store.add_vector(MESSAGES, message_id, conversation_id, content, embedding, role=role)
            except sqlite3.Error as e:
                logger.warning(f"[Hub] Vector write failed for message {message_id}: {e}")
        else:
            logger.info(f"[Hub] Message {message_id} indexed without vector")
        return message_id

    # ── Facts ─────────────────────────────────────────────────────────────────

    async def add_fact(self, fact: str, source: str = "manual") -> tuple[AssignResult, int]:
        """Assign to a cluster and append to the memory document."""
        result = await self.clusters.assign(fact, source=source)
        added = await self.ingestor.ingest([fact])
        return result, added

    async def process_exchange(
        self,
        user_message: str,
        assistant_message: str,
        model_label: Optional[str] = None,
    ) -> ExchangeResult:
        facts = await extract_facts(self.chain, user_message, assistant_message)
        added = 0
        assigned = []
        if facts:
            added = await self.ingestor.ingest(facts)
            for fact in facts:
                assigned.append(await self.clusters.assign(fact, source="fact-extraction"))
            logger.info(f"[Hub] Assigned {len(facts)} facts to clusters")

        if model_label is None:
            provider = self.chain.last_provider
            model_label = f"{provider.kind}/{provider.model}" if provider else "unknown"
        append_daily_log(
            self.config.daily_dir,
            f"Chat exchange with {model_label} - {len(facts)} facts extracted",
        )
        return ExchangeResult(facts, added, assigned)

    def record_exchange(
        self,
        user_message: str,
        assistant_message: str,
        model_label: Optional[str] = None,
    ) -> str:
        """Queue process_exchange to run in the background. Returns the task id."""
        return self.queue.submit(
            "process_exchange", self.process_exchange,
            user_message, assistant_message, model_label,
        )

    # ── Context ───────────────────────────────────────────────────────────────

    async def build_context_message(
        self,
        query: str,
        conversation_id: Optional[str] = None,
    ) -> Optional[dict]:
        """System message carrying memory documents, logs, past messages and clusters."""
        ctx = load_memory_context(
            self.config.memory_file, self.config.user_file, self.config.daily_dir
        )
        parts = []
        if ctx.memory:
            parts.append(f"=== Long-Term Memory ===\n{ctx.memory}")
        if ctx.user:
            parts.append(f"=== User Profile ===\n{ctx.user}")
        if ctx.daily_yesterday:
            parts.append(f"=== Yesterday's Session Log ===\n{ctx.daily_yesterday}")
        if ctx.daily_today:
            parts.append(f"=== Today's Session Log ===\n{ctx.daily_today}")

        hits = await self.retrieval.hybrid_search(
            query, exclude_group_id=conversation_id, limit=CONTEXT_RESULTS
        )
        if hits:
            lines = []
            for i, hit in enumerate(hits, 1):
                text = hit.text[:SNIPPET_CHARS] + ("..." if len(hit.text) > SNIPPET_CHARS else "")
                lines.append(f"[Memory {i}] {hit.role}: {text}")
            parts.append("=== Relevant Past Conversations ===\n" + "\n".join(lines))

        clusters = await self.clusters.search_clusters(query, CONTEXT_CLUSTERS)
        if clusters:
            blocks = []
            for c in clusters:
                block = f"[{c['name']}]\n" + "\n".join(f"- {m['content']}" for m in c["members"])
                if c["linked"]:
                    block += "\nRelated:\n" + "\n".join(
                        f"- (from {lm['cluster_name']}) {lm['content']}" for lm in c["linked"]
                    )
                blocks.append(block)
            parts.append("=== Associated Memory Clusters ===\n" + "\n\n".join(blocks))

        if not parts:
            return None
        logger.debug(f"[Hub] Injecting {len(parts)} memory sections")
        return {
            "role": "system",
            "content": f"{CONTEXT_PREAMBLE}\n\n" + "\n\n".join(parts) + f"\n\n{CONTEXT_FOOTER}",
        }

    async def check_and_flush(self, messages: list[dict], model: Optional[str]) -> tuple[list[dict], bool]:
        return await self.budget.check_and_flush(messages, model)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def close(self):
        await self.heartbeat.stop()
        await self.queue.join()
        await self.chain.close()
        close_embedder = getattr(self.embedder, "close", None)
        if close_embedder is not None:
            await close_embedder()
        if self.client is not None:
            await self.client.aclose()
        self.store.close()


def build_hub(config: MemoryConfig) -> MemoryHub:
    """Wire every component from one config object."""
    config.data_path.mkdir(parents=True, exist_ok=True)
    store = MemoryStore(config.db_file, config.embedding.dimensions)
    embedder = build_embedder(config.embedding)
    chain = CompletionChain(config.completion_chain)
    naming_client = httpx.AsyncClient(timeout=config.naming.timeout)
    logger.info(f"[Hub] Memory data at {config.data_path}")
    return MemoryHub(config, store, embedder, chain, client=naming_client)
