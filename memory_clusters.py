#!/usr/bin/env python3
"""
Cluster Engine — associative grouping of facts into named, linked clusters.

Each fact becomes a cluster member. On assignment the fact is embedded and
compared with existing members (top-K cosine). The cluster with the best mean
similarity wins if it clears the creation threshold; otherwise a new cluster
is created and named. Every other cluster with a member above the link
threshold gets a cross-cluster link to the winner (new links start at 0.5,
re-observed links gain 0.1, capped at 1.0).

Consolidation (run by the heartbeat):
- merge_singletons(): pull one-member clusters into their nearest multi-member
  cluster, then group the rest by curated category
- rename_all_clusters(): relabel every cluster from its members' words

Member vectors are maintained as delete+insert and are best-effort: a vector
failure is logged and never fails the relational write that triggered it.
"""

import logging
import sqlite3
from dataclasses import dataclass, asdict
from typing import Optional

import httpx

from cluster_naming import (
    PersonFactDetector,
    categorize_text,
    clean_model_name,
    name_from_fact,
    name_from_members,
)
from embeddings import Embedder
from llm_client import CompletionError, complete_with
from memory_config import ClusterSettings, ProviderConfig
from memory_store import MEMBERS, MemoryStore

logger = logging.getLogger(__name__)

SEARCH_HITS = 20
SINGLETON_SEARCH_HITS = 20
LINKED_MEMBERS = 3

CLUSTER_NAME_PROMPT = """Given this fact, generate a short 1-3 word category name for it. Return ONLY the category name, nothing else.

Fact: {fact}"""


@dataclass
class AssignResult:
    cluster_id: Optional[str] = None
    cluster_name: Optional[str] = None
    is_new: bool = False
    member_id: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


class ClusterEngine:
    """Assigns facts to clusters and keeps the cluster graph tidy."""

    def __init__(
        self,
        store: MemoryStore,
        embedder: Embedder,
        settings: Optional[ClusterSettings] = None,
        naming: Optional[ProviderConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.store = store
        self.embedder = embedder
        self.settings = settings or ClusterSettings()
        self.naming = naming
        self.client = client
        self.person_detector = PersonFactDetector(self.settings.person_names)

    # ── Naming ────────────────────────────────────────────────────────────────

    async def generate_cluster_name(self, fact: str, naming: Optional[ProviderConfig] = None) -> str:
        """Ask a local model for a 1-3 word label; fall back to the deterministic extractor."""
        provider = naming or self.naming
        if provider is None or self.client is None:
            return name_from_fact(fact)
        try:
            raw = await complete_with(
                self.client, provider, "", CLUSTER_NAME_PROMPT.format(fact=fact),
                max_tokens=20, temperature=0.1,
            )
            name = clean_model_name(raw)
            if name:
                return name
        except (httpx.HTTPError, CompletionError) as e:
            logger.warning(f"[Clusters] Naming model failed, using extractor: {e}")
        return name_from_fact(fact)

    # ── Vector helpers ────────────────────────────────────────────────────────

    async def _member_vector(self, member: dict, reembed: bool = False):
        vector = None if reembed else self.store.get_vector(MEMBERS, member["id"])
        if vector is None:
            vector = await self.embedder.embed(member["content"])
        return vector

    async def _reindex_member(self, member: dict, cluster_id: str, reembed: bool = False):
        """Replace every vector record of a member with one under cluster_id."""
        try:
            vector = await self._member_vector(member, reembed=reembed)
            self.store.delete_vectors(MEMBERS, owner_id=member["id"])
            if vector is not None:
                self.store.add_vector(MEMBERS, member["id"], cluster_id, member["content"], vector)
        except sqlite3.Error as e:
            logger.warning(f"[Clusters] Vector update failed for member {member['id']}: {e}")

    # ── Assignment ────────────────────────────────────────────────────────────

    async def assign(
        self,
        fact: str,
        source: str = "conversation",
        naming: Optional[ProviderConfig] = None,
    ) -> AssignResult:
        """Put a fact in the best-matching cluster (or a new one) and link related clusters."""
        fact = fact.strip()
        if not fact:
            return AssignResult()
        embedding = await self.embedder.embed(fact)
        if embedding is None:
            logger.error("[Clusters] Failed to generate embedding, fact not clustered")
            return AssignResult()

        try:
            hits = self.store.search_vectors(MEMBERS, embedding, self.settings.search_k)
            scores: dict[str, list[float]] = {}
            link_candidates: list[str] = []
            for hit in hits:
                cid = hit["group_id"]
                if not self.store.cluster_exists(cid):
                    continue
                scores.setdefault(cid, []).append(hit["similarity"])
                if hit["similarity"] > self.settings.link_threshold and cid not in link_candidates:
                    link_candidates.append(cid)

            best_id, best_sim = None, 0.0
            for cid, sims in scores.items():
                avg = sum(sims) / len(sims)
                if avg > best_sim:
                    best_id, best_sim = cid, avg
            logger.debug(f"[Clusters] Best cluster match: {best_id} ({best_sim:.3f})")

            is_new = False
            if best_id is None or best_sim <= self.settings.similarity_threshold:
                name = await self.generate_cluster_name(fact, naming)
                cluster_id = self.store.create_cluster(name)
                is_new = True
                logger.info(f"[Clusters] Created cluster: {name}")
            else:
                cluster_id = best_id
                name = self.store.get_cluster(cluster_id)["name"]

            member_id = self.store.add_member(
                cluster_id, fact, source=source, importance=self.settings.default_importance
            )
            if member_id is None:
                logger.error(f"[Clusters] Cluster {cluster_id} vanished before insert")
                return AssignResult()

            try:
                self.store.add_vector(MEMBERS, member_id, cluster_id, fact, embedding)
            except sqlite3.Error as e:
                logger.warning(f"[Clusters] Vector insert failed for {member_id}: {e}")

            for other in link_candidates:
                if other == cluster_id:
                    continue
                self.store.create_or_strengthen_link(
                    cluster_id, other,
                    initial=self.settings.new_link_strength,
                    step=self.settings.link_step,
                )
            return AssignResult(cluster_id, name, is_new, member_id)
        except sqlite3.Error as e:
            logger.error(f"[Clusters] Error assigning fact: {e}")
            return AssignResult()

    # ── Queries ───────────────────────────────────────────────────────────────

    def get_clusters(self) -> list[dict]:
        clusters = self.store.list_clusters()
        for c in clusters:
            c["links"] = self.store.get_linked_clusters(c["id"])
        return clusters

    def get_cluster(self, cluster_id: str) -> Optional[dict]:
        cluster = self.store.get_cluster(cluster_id)
        if cluster is None:
            return None
        cluster["members"] = self.store.get_members(cluster_id)
        cluster["linked_clusters"] = self.store.get_linked_clusters(cluster_id)
        return cluster

    async def search_clusters(self, query: str, limit: int = 3) -> list[dict]:
        """
        Clusters relevant to a query, best first.

        Each result carries its full member list plus up to three members from
        each linked cluster whose link strength clears the floor.
        """
        embedding = await self.embedder.embed(query)
        if embedding is None:
            logger.warning("[Clusters] Failed to embed query, no cluster results")
            return []

        hits = self.store.search_vectors(MEMBERS, embedding, SEARCH_HITS)
        scores: dict[str, list[float]] = {}
        for hit in hits:
            scores.setdefault(hit["group_id"], []).append(hit["similarity"])
        ranked = sorted(
            ((cid, sum(s) / len(s)) for cid, s in scores.items()),
            key=lambda x: x[1],
            reverse=True,
        )

        results = []
        for cluster_id, score in ranked:
            if len(results) >= limit:
                break
            cluster = self.store.get_cluster(cluster_id)
            if cluster is None:
                continue
            linked = []
            for link in self.store.get_linked_clusters(cluster_id, self.settings.linked_strength_floor):
                for m in self.store.get_members(link["cluster_id"], limit=LINKED_MEMBERS):
                    linked.append({
                        "content": m["content"],
                        "cluster_id": link["cluster_id"],
                        "cluster_name": link["name"],
                        "link_strength": link["strength"],
                    })
            results.append({
                "id": cluster_id,
                "name": cluster["name"],
                "description": cluster["description"],
                "score": score,
                "members": self.store.get_members(cluster_id),
                "linked": linked,
            })
        return results

    # ── Member operations ─────────────────────────────────────────────────────

    async def move_member(self, member_id: str, target_cluster_id: str) -> bool:
        member = self.store.get_member(member_id)
        if member is None or not self.store.move_member(member_id, target_cluster_id):
            return False
        await self._reindex_member(member, target_cluster_id)
        return True

    async def edit_member(self, member_id: str, content: str) -> bool:
        """Rewrite a member's text and re-embed it."""
        content = content.strip()
        if not content or not self.store.update_member_content(member_id, content):
            return False
        member = self.store.get_member(member_id)
        await self._reindex_member(member, member["cluster_id"], reembed=True)
        return True

    def delete_member(self, member_id: str) -> bool:
        return self.store.delete_member(member_id)

    async def merge_clusters(self, source_id: str, target_id: str) -> int:
        """Move every member of source into target; the emptied source is deleted. Returns members moved."""
        if source_id == target_id:
            return 0
        if not self.store.cluster_exists(source_id) or not self.store.cluster_exists(target_id):
            return 0
        moved = 0
        for member in self.store.get_members(source_id):
            if await self.move_member(member["id"], target_id):
                moved += 1
        return moved

    async def split_cluster(self, cluster_id: str, member_ids: list[str], new_name: str) -> Optional[str]:
        """Move the listed members of cluster_id into a new cluster. Returns the new id."""
        if not self.store.cluster_exists(cluster_id) or not new_name.strip():
            return None
        members = [
            m for m in (self.store.get_member(mid) for mid in member_ids)
            if m is not None and m["cluster_id"] == cluster_id
        ]
        if not members:
            return None
        new_id = self.store.create_cluster(new_name.strip()[:50])
        for member in members:
            await self.move_member(member["id"], new_id)
        return new_id

    # ── Consolidation ─────────────────────────────────────────────────────────

    def _find_people_cluster(self, sizes: dict[str, int]) -> Optional[str]:
        clusters = {c["id"]: c for c in self.store.list_clusters()}
        candidates = [cid for cid, n in sizes.items() if n > 1 and cid in clusters]
        for cid in candidates:
            if self.person_detector.is_people_cluster_name(clusters[cid]["name"]):
                return cid
        for cid in candidates:
            if any(self.person_detector.is_person_fact(m["content"]) for m in self.store.get_members(cid)):
                return cid
        return None

    async def _absorb(self, member: dict, source_id: str, target_id: str) -> bool:
        if not self.store.move_member(member["id"], target_id):
            return False
        await self._reindex_member(member, target_id)
        logger.debug(f"[Clusters] Merged singleton {source_id} into {target_id}")
        return True

    async def merge_singletons(self, threshold: Optional[float] = None) -> int:
        """
        Consolidate one-member clusters. Returns the number merged.

        Pass 1 (embedding): merge into the most similar multi-member cluster when
        similarity >= threshold; person facts prefer the people/family cluster.
        Pass 2 (category): group the remaining singletons by curated category,
        either into an existing cluster of that category or into each other.
        """
        threshold = self.settings.link_threshold if threshold is None else threshold
        sizes = {c["id"]: c["member_count"] for c in self.store.list_clusters()}
        non_singletons = {cid for cid, n in sizes.items() if n > 1}
        singletons = [cid for cid, n in sizes.items() if n == 1]
        people_cluster = self._find_people_cluster(sizes)
        merged = 0

        for cluster_id in singletons:
            members = self.store.get_members(cluster_id)
            if len(members) != 1:
                continue
            member = members[0]

            if (
                people_cluster
                and people_cluster != cluster_id
                and self.person_detector.is_person_fact(member["content"])
            ):
                if await self._absorb(member, cluster_id, people_cluster):
                    merged += 1
                    continue

            vector = await self._member_vector(member)
            if vector is None:
                continue
            best_id, best_sim = None, 0.0
            for hit in self.store.search_vectors(MEMBERS, vector, SINGLETON_SEARCH_HITS):
                cid = hit["group_id"]
                if cid == cluster_id or cid not in non_singletons:
                    continue
                if hit["similarity"] > best_sim:
                    best_id, best_sim = cid, hit["similarity"]
            if best_id and best_sim >= threshold:
                if await self._absorb(member, cluster_id, best_id):
                    merged += 1

        merged += await self._merge_singletons_by_category()
        logger.info(f"[Clusters] Merged {merged}/{len(singletons)} singletons")
        return merged

    async def _merge_singletons_by_category(self) -> int:
        clusters = self.store.list_clusters()
        groups: dict[str, list[tuple[str, dict]]] = {}
        for c in clusters:
            if c["member_count"] != 1:
                continue
            member = self.store.get_members(c["id"])[0]
            category = categorize_text(member["content"])
            if category:
                groups.setdefault(category, []).append((c["id"], member))
        if not groups:
            return 0

        existing: dict[str, str] = {}
        for c in clusters:
            if c["member_count"] > 1:
                texts = [m["content"] for m in self.store.get_members(c["id"])]
                existing.setdefault(name_from_members(texts), c["id"])

        merged = 0
        for category, group in groups.items():
            target = existing.get(category)
            if target is None:
                if len(group) < 2:
                    continue
                target = group[0][0]
                group = group[1:]
                self.store.rename_cluster(target, category)
            logger.info(f"[Clusters] Category merge: {len(group)} singleton(s) into \"{category}\"")
            for cluster_id, member in group:
                if await self._absorb(member, cluster_id, target):
                    merged += 1
        return merged

    def rename_all_clusters(self) -> int:
        """Relabel clusters from their members. Returns how many names changed."""
        renamed = 0
        for cluster in self.store.list_clusters():
            members = self.store.get_members(cluster["id"])
            if not members:
                continue
            name = name_from_members(m["content"] for m in members)
            if name and name != cluster["name"]:
                self.store.rename_cluster(cluster["id"], name)
                logger.info(f"[Clusters] Renamed \"{cluster['name']}\" → \"{name}\"")
                renamed += 1
        return renamed
