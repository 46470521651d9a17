#!/usr/bin/env python3
"""
Heartbeat — unattended memory maintenance.

One cycle runs four tasks in order, each isolated so a failure in one does
not stop the rest:

  A) audit_clusters      — singleton consolidation, then model-proposed merge/move/split
  B) cleanup_facts       — model-proposed remove/reword/merge of MEMORY.md bullets
  C) summarize_daily_logs — fold daily logs past retention into long-term facts, then archive
  D) maintain_links      — prune weak links, strengthen links between same-day clusters

Model proposals go through parse → schema check → existence check → apply,
one action at a time. Actions that fail a check are skipped and reported,
never raised.

The scheduler runs as an asyncio task in the serving loop: warmup delay,
then one cycle every interval. A cycle requested while another is active
returns {"skipped": True}.
"""

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Optional

from fact_ingest import FactIngestor, document_lock, extract_fact_lines
from llm_client import CompletionChain, CompletionError, extract_json
from memory_clusters import ClusterEngine
from memory_config import ClusterSettings, HeartbeatSettings

logger = logging.getLogger(__name__)

DAILY_LOG_RE = re.compile(r"^(\d{4}-\d{2}-\d{2})\.md$")
MIN_LOG_CHARS = 20

# ── Prompts ──────────────────────────────────────────────────────────────────

AUDIT_PROMPT = """You are a memory cluster maintenance system. Analyze the clusters below and suggest reorganization actions. Return ONLY valid JSON with this exact structure:
{"actions":[]}

Action types:
- merge: {"type":"merge","sourceClusterId":"...","targetClusterId":"...","reason":"..."}
  Use when two clusters cover the same topic.
- move: {"type":"move","memberId":"...","fromClusterId":"...","toClusterId":"...","reason":"..."}
  Use when a specific fact belongs in a different cluster.
- split: {"type":"split","clusterId":"...","memberIds":["..."],"newClusterName":"...","reason":"..."}
  Use when a cluster contains clearly distinct subtopics.

Rules:
- Only suggest actions you are confident about.
- Prefer fewer, high-confidence actions over many speculative ones.
- If clusters look well-organized, return {"actions":[]}.
- Do NOT suggest merging clusters that cover genuinely different topics."""

CLEANUP_PROMPT = """You are a memory maintenance system. Review the facts below and suggest cleanup actions. Return ONLY valid JSON:
{"actions":[]}

Action types:
- remove: {"type":"remove","fact":"exact fact text","reason":"..."}
  Use for outdated, trivial, or clearly wrong facts.
- reword: {"type":"reword","original":"exact original text","replacement":"improved text","reason":"..."}
  Use for awkward phrasing, typos, or facts that could be clearer.
- merge: {"type":"merge","originals":["fact1","fact2"],"replacement":"merged fact","reason":"..."}
  Use when two or more facts say essentially the same thing.

Rules:
- Only suggest confident actions. When in doubt, leave facts alone.
- The "fact" and "original" fields must match the input EXACTLY (verbatim).
- Prefer merging duplicates over removing them.
- Do NOT remove facts just because they seem mundane. The user chose to remember them.
- If the facts look clean, return {"actions":[]}."""

DAILY_SUMMARY_PROMPT = """You are a memory log summarizer. Review the daily log below and extract any important facts that should be preserved long-term. Return ONLY valid JSON:
{"summary":"one-line summary of the day","remainingFacts":["fact1","fact2"]}

Rules:
- remainingFacts should only contain facts worth preserving permanently (user preferences, project decisions, personal info).
- Write facts as "User has..." or "User prefers..." style.
- Skip routine entries like "Chat exchange with model - 0 facts extracted".
- If nothing is worth keeping, return {"summary":"...","remainingFacts":[]}."""


# ── Typed actions ────────────────────────────────────────────────────────────

def _text(data: dict, key: str) -> Optional[str]:
    value = data.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _text_list(data: dict, key: str) -> Optional[list[str]]:
    value = data.get(key)
    if not isinstance(value, list):
        return None
    items = [v.strip() for v in value if isinstance(v, str) and v.strip()]
    return items or None


@dataclass
class MergeAction:
    source_cluster_id: str
    target_cluster_id: str
    reason: str = ""
    kind: str = "merge"


@dataclass
class MoveAction:
    member_id: str
    from_cluster_id: str
    to_cluster_id: str
    reason: str = ""
    kind: str = "move"


@dataclass
class SplitAction:
    cluster_id: str
    member_ids: list[str]
    new_cluster_name: str
    reason: str = ""
    kind: str = "split"


@dataclass
class FactRemove:
    fact: str
    reason: str = ""
    kind: str = "remove"


@dataclass
class FactReword:
    original: str
    replacement: str
    reason: str = ""
    kind: str = "reword"


@dataclass
class FactMerge:
    originals: list[str]
    replacement: str
    reason: str = ""
    kind: str = "merge"


def parse_cluster_action(data: Any):
    """One raw model action → typed action, or None if a required field is missing."""
    if not isinstance(data, dict):
        return None
    kind = data.get("type")
    reason = data.get("reason") if isinstance(data.get("reason"), str) else ""
    if kind == "merge":
        src, dst = _text(data, "sourceClusterId"), _text(data, "targetClusterId")
        if src and dst:
            return MergeAction(src, dst, reason)
    elif kind == "move":
        mid, src, dst = _text(data, "memberId"), _text(data, "fromClusterId"), _text(data, "toClusterId")
        if mid and src and dst:
            return MoveAction(mid, src, dst, reason)
    elif kind == "split":
        cid, name = _text(data, "clusterId"), _text(data, "newClusterName")
        members = _text_list(data, "memberIds")
        if cid and name and members:
            return SplitAction(cid, members, name, reason)
    return None


def parse_fact_action(data: Any):
    if not isinstance(data, dict):
        return None
    kind = data.get("type")
    reason = data.get("reason") if isinstance(data.get("reason"), str) else ""
    if kind == "remove":
        fact = _text(data, "fact")
        if fact:
            return FactRemove(fact, reason)
    elif kind == "reword":
        original, replacement = _text(data, "original"), _text(data, "replacement")
        if original and replacement:
            return FactReword(original, replacement, reason)
    elif kind == "merge":
        originals, replacement = _text_list(data, "originals"), _text(data, "replacement")
        if originals and replacement:
            return FactMerge(originals, replacement, reason)
    return None


def parse_actions(response: str, parser: Callable) -> tuple[list, int]:
    """(typed actions, count of malformed entries dropped)."""
    payload = extract_json(response, expect=dict)
    raw = payload.get("actions") if isinstance(payload, dict) else None
    if not isinstance(raw, list):
        return [], 0
    actions = [parser(a) for a in raw]
    valid = [a for a in actions if a is not None]
    return valid, len(actions) - len(valid)


@dataclass
class ActionReport:
    """What happened to each proposed action in one task."""
    applied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    def skip(self, action, why: str):
        self.skipped.append(f"{action.kind}: {why}")
        logger.info(f"[Heartbeat] Skipped {action.kind} action: {why}")


# ── Config / state ───────────────────────────────────────────────────────────

@dataclass
class HeartbeatState:
    """Persistent state for the heartbeat."""
    last_run: float = 0
    last_run_date: str = ""
    run_count: int = 0
    last_elapsed: str = ""
    last_result: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "last_run": self.last_run,
            "last_run_date": self.last_run_date,
            "run_count": self.run_count,
            "last_elapsed": self.last_elapsed,
            "last_result": self.last_result,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "HeartbeatState":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


# ── Scheduler ────────────────────────────────────────────────────────────────

class MaintenanceScheduler:
    """
    Periodic maintenance over the cluster store and the memory document.

    - run_maintenance(): one full cycle, single-flight
    - start()/stop(): warmup, then a cycle every interval_hours
    """

    def __init__(
        self,
        clusters: ClusterEngine,
        ingestor: FactIngestor,
        chain: CompletionChain,
        daily_dir: Path,
        archive_dir: Path,
        settings: Optional[HeartbeatSettings] = None,
        cluster_settings: Optional[ClusterSettings] = None,
        state_file: Optional[Path] = None,
        on_status: Optional[Callable[[str], None]] = None,
    ):
        self.clusters = clusters
        self.store = clusters.store
        self.ingestor = ingestor
        self.chain = chain
        self.daily_dir = Path(daily_dir)
        self.archive_dir = Path(archive_dir)
        self.settings = settings or HeartbeatSettings()
        self.cluster_settings = cluster_settings or clusters.settings
        self.state_file = Path(state_file) if state_file else None
        self.on_status = on_status or (lambda x: None)
        self.state = HeartbeatState()
        self._cycle_active = False
        self._loop_task: Optional[asyncio.Task] = None

        self._load_state()

    def _status(self, message: str):
        logger.info(message)
        self.on_status(message)

    def _load_state(self):
        if not self.state_file or not self.state_file.exists():
            return
        try:
            with open(self.state_file) as f:
                self.state = HeartbeatState.from_dict(json.load(f))
        except (OSError, ValueError, TypeError, AttributeError) as e:
            logger.warning(f"[Heartbeat] State load error: {e}")

    def _save_state(self):
        if not self.state_file:
            return
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.state_file, "w") as f:
                json.dump(self.state.to_dict(), f, indent=2, default=str)
        except OSError as e:
            logger.warning(f"[Heartbeat] State save error: {e}")

    # ── Task A: clusters ──────────────────────────────────────────────────────

    def _cluster_summaries(self, clusters: list[dict]) -> str:
        blocks = []
        for c in clusters:
            detail = self.clusters.get_cluster(c["id"])
            if not detail:
                continue
            member_lines = "\n".join(
                f"  - [{m['id']}] {m['content']}" for m in detail["members"]
            )
            linked = ", ".join(link["name"] for link in detail["linked_clusters"])
            block = f"Cluster \"{c['name']}\" (id: {c['id']}, {c['member_count']} members):\n{member_lines}"
            if linked:
                block += f"\n  Links: {linked}"
            blocks.append(block)
        return "\n\n".join(blocks)

    async def _apply_cluster_action(self, action, report: ActionReport, results: dict):
        if isinstance(action, MergeAction):
            if action.source_cluster_id == action.target_cluster_id:
                return report.skip(action, "source and target are the same cluster")
            if not self.store.cluster_exists(action.source_cluster_id):
                return report.skip(action, f"unknown cluster {action.source_cluster_id}")
            if not self.store.cluster_exists(action.target_cluster_id):
                return report.skip(action, f"unknown cluster {action.target_cluster_id}")
            moved = await self.clusters.merge_clusters(action.source_cluster_id, action.target_cluster_id)
            if moved:
                results["merges"] += 1
                report.applied.append(f"merge {action.source_cluster_id} → {action.target_cluster_id}")
        elif isinstance(action, MoveAction):
            member = self.store.get_member(action.member_id)
            if member is None or member["cluster_id"] != action.from_cluster_id:
                return report.skip(action, f"member {action.member_id} not in {action.from_cluster_id}")
            if not self.store.cluster_exists(action.to_cluster_id):
                return report.skip(action, f"unknown cluster {action.to_cluster_id}")
            if await self.clusters.move_member(action.member_id, action.to_cluster_id):
                results["moves"] += 1
                report.applied.append(f"move {action.member_id} → {action.to_cluster_id}")
            else:
                report.skip(action, "move refused")
        elif isinstance(action, SplitAction):
            if not self.store.cluster_exists(action.cluster_id):
                return report.skip(action, f"unknown cluster {action.cluster_id}")
            new_id = await self.clusters.split_cluster(
                action.cluster_id, action.member_ids, action.new_cluster_name
            )
            if new_id:
                results["splits"] += 1
                report.applied.append(f"split {action.cluster_id} → {new_id}")
            else:
                report.skip(action, "no listed member belongs to the cluster")

    async def audit_clusters(self) -> dict:
        self._status("[Heartbeat] Task A: Auditing clusters...")
        results = {"singletons": 0, "merges": 0, "moves": 0, "splits": 0, "skipped": 0}

        results["singletons"] = await self.clusters.merge_singletons(self.cluster_settings.link_threshold)

        clusters = self.store.list_clusters()
        if len(clusters) < 2:
            logger.info("[Heartbeat] Not enough clusters to audit")
        else:
            try:
                response = await self.chain.complete(AUDIT_PROMPT, self._cluster_summaries(clusters))
            except CompletionError as e:
                logger.warning(f"[Heartbeat] Cluster audit skipped: {e}")
                response = ""
            actions, malformed = parse_actions(response, parse_cluster_action)
            report = ActionReport()
            for action in actions:
                await self._apply_cluster_action(action, report, results)
            results["skipped"] = len(report.skipped) + malformed

        if results["singletons"] or results["merges"] or results["moves"] or results["splits"]:
            self.clusters.rename_all_clusters()
        self._status(
            f"[Heartbeat] Cluster audit complete: {results['merges']} merges, "
            f"{results['moves']} moves, {results['splits']} splits"
        )
        return results

    # ── Task B: facts ─────────────────────────────────────────────────────────

    async def _mirror_reword(self, original: str, replacement: str):
        for member in self.store.find_members_by_content(original)[:1]:
            await self.clusters.edit_member(member["id"], replacement)

    async def _mirror_merge(self, originals: list[str], replacement: str):
        kept = False
        for text in originals:
            for member in self.store.find_members_by_content(text)[:1]:
                if not kept:
                    await self.clusters.edit_member(member["id"], replacement)
                    kept = True
                else:
                    self.clusters.delete_member(member["id"])

    async def cleanup_facts(self) -> dict:
        self._status("[Heartbeat] Task B: Cleaning up facts...")
        results = {"removed": 0, "reworded": 0, "merged": 0, "skipped": 0}
        memory_file = self.ingestor.memory_file
        if not memory_file.exists():
            logger.info("[Heartbeat] No memory document found")
            return results

        facts = extract_fact_lines(memory_file.read_text(encoding="utf-8"))
        if len(facts) < 3:
            logger.info("[Heartbeat] Too few facts to clean up")
            return results

        numbered = "\n".join(f"{i + 1}. {f}" for i, f in enumerate(facts))
        try:
            response = await self.chain.complete(CLEANUP_PROMPT, numbered)
        except CompletionError as e:
            logger.warning(f"[Heartbeat] Fact cleanup skipped: {e}")
            return results
        actions, malformed = parse_actions(response, parse_fact_action)
        report = ActionReport()

        async with document_lock(memory_file):
            lines = memory_file.read_text(encoding="utf-8").split("\n")
            ops: dict[int, Optional[str]] = {}   # line index → replacement (None = delete)

            def find(text: str) -> int:
                target = f"- {text}"
                for i, line in enumerate(lines):
                    if line == target and i not in ops:
                        return i
                return -1

            mirrors = []
            for action in actions:
                if isinstance(action, FactRemove):
                    idx = find(action.fact)
                    if idx < 0:
                        report.skip(action, "fact text not found verbatim")
                        continue
                    ops[idx] = None
                    results["removed"] += 1
                elif isinstance(action, FactReword):
                    idx = find(action.original)
                    if idx < 0:
                        report.skip(action, "original text not found verbatim")
                        continue
                    ops[idx] = f"- {action.replacement}"
                    results["reworded"] += 1
                    mirrors.append(action)
                elif isinstance(action, FactMerge):
                    found = []
                    for text in action.originals:
                        idx = find(text)
                        if idx >= 0 and idx not in (i for i, _ in found):
                            found.append((idx, text))
                    if len(found) < 2:
                        report.skip(action, "fewer than two originals found verbatim")
                        continue
                    ops[found[0][0]] = f"- {action.replacement}"
                    for idx, _ in found[1:]:
                        ops[idx] = None
                    results["merged"] += 1
                    mirrors.append(FactMerge([t for _, t in found], action.replacement, action.reason))

            if ops:
                for idx in sorted(ops, reverse=True):
                    if ops[idx] is None:
                        del lines[idx]
                    else:
                        lines[idx] = ops[idx]
                memory_file.write_text("\n".join(lines), encoding="utf-8")

        for action in mirrors:
            if isinstance(action, FactReword):
                await self._mirror_reword(action.original, action.replacement)
            else:
                await self._mirror_merge(action.originals, action.replacement)

        results["skipped"] = len(report.skipped) + malformed
        self._status(
            f"[Heartbeat] Fact cleanup complete: {results['removed']} removed, "
            f"{results['reworded']} reworded, {results['merged']} merged"
        )
        return results

    # ── Task C: daily logs ────────────────────────────────────────────────────

    def _archive(self, path: Path):
        self.archive_dir.mkdir(parents=True, exist_ok=True)
        path.rename(self.archive_dir / path.name)

    def old_daily_logs(self, now: Optional[datetime] = None) -> list[Path]:
        if not self.daily_dir.exists():
            return []
        cutoff = (now or datetime.now()) - timedelta(days=self.settings.daily_retention_days)
        old = []
        for path in sorted(self.daily_dir.glob("*.md")):
            match = DAILY_LOG_RE.match(path.name)
            if not match:
                continue
            try:
                day = datetime.strptime(match.group(1), "%Y-%m-%d")
            except ValueError:
                continue
            if day < cutoff:
                old.append(path)
        return old

    async def summarize_daily_logs(self, now: Optional[datetime] = None) -> dict:
        self._status("[Heartbeat] Task C: Summarizing old daily logs...")
        results = {"archived": 0, "facts_extracted": 0}
        for path in self.old_daily_logs(now):
            try:
                content = path.read_text(encoding="utf-8")
                if len(content.strip()) < MIN_LOG_CHARS:
                    self._archive(path)
                    results["archived"] += 1
                    continue
                response = await self.chain.complete(DAILY_SUMMARY_PROMPT, content)
                parsed = extract_json(response, expect=dict) or {}
                facts = [
                    f.strip() for f in parsed.get("remainingFacts") or []
                    if isinstance(f, str) and f.strip()
                ]
                if facts:
                    await self.ingestor.ingest(facts)
                    results["facts_extracted"] += len(facts)
                self._archive(path)
                results["archived"] += 1
                logger.info(f"[Heartbeat] Archived {path.name} ({len(facts)} facts)")
            except (CompletionError, OSError) as e:
                logger.warning(f"[Heartbeat] Daily log {path.name} left in place: {e}")
        self._status(
            f"[Heartbeat] Daily log archival complete: {results['archived']} archived, "
            f"{results['facts_extracted']} facts extracted"
        )
        return results

    # ── Task D: links ─────────────────────────────────────────────────────────

    async def maintain_links(self) -> dict:
        self._status("[Heartbeat] Task D: Maintaining cluster links...")
        results = {"pruned": 0, "strengthened": 0}
        results["pruned"] = self.store.prune_links(self.cluster_settings.prune_below)

        for day, cluster_ids in self.store.clusters_by_member_date().items():
            unique = list(dict.fromkeys(cluster_ids))
            for i in range(len(unique)):
                for j in range(i + 1, len(unique)):
                    if self.store.strengthen_link(unique[i], unique[j], self.cluster_settings.cooccurrence_step):
                        results["strengthened"] += 1
        self._status(
            f"[Heartbeat] Link maintenance complete: {results['pruned']} pruned, "
            f"{results['strengthened']} strengthened"
        )
        return results

    # ── Orchestration ─────────────────────────────────────────────────────────

    async def run_maintenance(self) -> dict:
        """Run all four tasks sequentially. Returns their combined results."""
        if self._cycle_active:
            self._status("[Heartbeat] Maintenance already in progress, skipping")
            return {"skipped": True}
        self._cycle_active = True
        start = time.time()
        self._status("[Heartbeat] === Starting maintenance cycle ===")
        results: dict = {}
        try:
            for name, task in (
                ("audit", self.audit_clusters),
                ("cleanup", self.cleanup_facts),
                ("archive", self.summarize_daily_logs),
                ("links", self.maintain_links),
            ):
                try:
                    results[name] = await task()
                except Exception as e:
                    logger.exception(f"[Heartbeat] Task {name} failed")
                    results[name] = {"error": str(e)}
            results["elapsed"] = f"{time.time() - start:.1f}s"
            self.state.last_run = time.time()
            self.state.last_run_date = datetime.now().strftime("%Y-%m-%d")
            self.state.run_count += 1
            self.state.last_elapsed = results["elapsed"]
            self.state.last_result = results
            self._save_state()
            self._status(f"[Heartbeat] === Maintenance complete in {results['elapsed']} ===")
            return results
        finally:
            self._cycle_active = False

    async def _heartbeat_loop(self):
        try:
            await asyncio.sleep(self.settings.warmup_minutes * 60)
            while True:
                await self.run_maintenance()
                await asyncio.sleep(self.settings.interval_hours * 3600)
        except asyncio.CancelledError:
            pass
        self._status("[Heartbeat] Loop stopped")

    def start(self):
        """Schedule the loop on the running event loop."""
        if not self.settings.enabled:
            self._status("[Heartbeat] Disabled")
            return
        if self._loop_task and not self._loop_task.done():
            self._status("[Heartbeat] Already running, ignoring start")
            return
        self._loop_task = asyncio.get_running_loop().create_task(self._heartbeat_loop())
        self._status(
            f"[Heartbeat] Scheduled every {self.settings.interval_hours}h "
            f"(first run in {self.settings.warmup_minutes}min)"
        )

    async def stop(self):
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
            self._status("[Heartbeat] Stopped")

    @property
    def running(self) -> bool:
        return self._cycle_active

    def status(self) -> dict:
        return {
            "enabled": self.settings.enabled,
            "scheduled": bool(self._loop_task and not self._loop_task.done()),
            "cycle_active": self._cycle_active,
            "interval_hours": self.settings.interval_hours,
            "state": self.state.to_dict(),
        }
