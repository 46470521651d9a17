#!/usr/bin/env python3
"""
Fact Ingestion — dedup and place new facts in the long-term memory document.

MEMORY.md layout, parsed structurally on every ingest:

    # Long-Term Memory

    ## Hardware
    - User's AI server has dual RTX 3090s

    ## Other
    - ...

Any "## " line starts a section; any "- " line inside a section is a fact.

For each candidate fact, in order (later facts see earlier ones):
  1. case-insensitive exact dedup against every existing fact line
  2. embedding dedup (cosine > 0.85); skipped if the embedding service is down
  3. placement under the most similar section (heading + facts), else "Other"
  4. insertion after the section's last bullet, applied bottom-up

The document is read-modify-written as a whole, so every writer goes through
document_lock(path).

Also here: daily logs, memory-context loading, and fact extraction from a
chat exchange.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

import numpy as np

from embeddings import Embedder, similarity_matrix
from llm_client import CompletionChain, CompletionError, extract_json
from memory_config import IngestSettings

logger = logging.getLogger(__name__)

DOCUMENT_HEADER = "# Long-Term Memory\n"
EMBED_CACHE_SIZE = 4096
ASSISTANT_SUBJECT = re.compile(r"^(the )?assistant\b", re.IGNORECASE)

FACT_EXTRACTION_PROMPT = """You are a fact extraction system. Extract facts about the USER from what the USER said in the chat exchange below.

RULES:
- Return ONLY a valid JSON array of strings, or [] if nothing worth remembering.
- Each fact MUST be a complete, self-contained sentence with full context.
- Only extract facts that the USER has stated about themselves, their life, their preferences, or their projects.
- Do NOT extract general knowledge, web search results, trivia, or information the AI provided.
- Do NOT extract facts from the Assistant's response, only from what the User said.
- Include: names, preferences, technical specs, relationships, decisions, project details the user mentions.
- Do NOT include: greetings, casual chat, temporary context, questions without answers.
- Write facts as "User has..." or "User prefers...", never "Assistant has...".

GOOD examples (facts the user stated about themselves):
["User has 4 dogs: Casper, Cece, Calypso, and Erika", "User's AI server has dual RTX 3090s with 48GB total VRAM"]

BAD examples (AI-provided info, fragments, or general knowledge):
["Constantinople fell in 1453", "RTX 3090", "The weather is nice"]"""

EXCHANGE_TEMPLATE = """USER MESSAGE:
{user}

ASSISTANT RESPONSE (for context only, do NOT extract facts from this):
{assistant}"""

_document_locks: dict[str, asyncio.Lock] = {}


def document_lock(path: Path) -> asyncio.Lock:
    """The single writer lock for a document path."""
    key = str(Path(path).resolve())
    lock = _document_locks.get(key)
    if lock is None:
        lock = _document_locks[key] = asyncio.Lock()
    return lock


# ── Document parsing ─────────────────────────────────────────────────────────

@dataclass
class Section:
    heading: str
    start: int                     # index of the "## " line
    end: int                       # last line index belonging to the section
    facts: list[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return f"{self.heading}: " + ". ".join(self.facts)


def parse_sections(lines: list[str]) -> list[Section]:
    sections: list[Section] = []
    current: Optional[Section] = None
    for i, line in enumerate(lines):
        if line.startswith("## "):
            if current:
                current.end = i - 1
                sections.append(current)
            current = Section(heading=line[3:].strip(), start=i, end=-1)
        elif current and line.startswith("- "):
            current.facts.append(line[2:].strip())
    if current:
        current.end = len(lines) - 1
        sections.append(current)
    return sections


def extract_fact_lines(content: str) -> list[str]:
    return [line[2:].strip() for line in content.split("\n") if line.startswith("- ")]


def insertion_index(lines: list[str], section: Section) -> int:
    """Line index after which new bullets for this section go."""
    after = section.start
    for i in range(section.start, section.end + 1):
        if lines[i].startswith("- "):
            after = i
    return after


def splice_bullets(lines: list[str], inserts: dict[int, list[str]]) -> list[str]:
    """Insert bullet facts after each given line index, bottom-up so offsets hold."""
    lines = list(lines)
    for after in sorted(inserts, reverse=True):
        lines[after + 1:after + 1] = [f"- {f}" for f in inserts[after]]
    return lines


# ── Ingestion ────────────────────────────────────────────────────────────────

class FactIngestor:
    """Dedups and places facts into one long-term memory document."""

    def __init__(
        self,
        memory_file: Path,
        embedder: Embedder,
        settings: Optional[IngestSettings] = None,
    ):
        self.memory_file = Path(memory_file)
        self.embedder = embedder
        self.settings = settings or IngestSettings()
        self._cache: dict[str, Optional[list[float]]] = {}

    async def _embed(self, text: str) -> Optional[list[float]]:
        if text in self._cache:
            return self._cache[text]
        vector = await self.embedder.embed(text)
        if vector is not None:
            if len(self._cache) >= EMBED_CACHE_SIZE:
                self._cache.clear()
            self._cache[text] = vector
        return vector

    def read(self) -> str:
        if self.memory_file.exists():
            return self.memory_file.read_text(encoding="utf-8")
        return DOCUMENT_HEADER

    async def ingest(self, facts: list[str]) -> int:
        """Append new facts to the document. Returns how many were actually added."""
        facts = [f.strip() for f in facts if f and f.strip()]
        if not facts:
            return 0
        async with document_lock(self.memory_file):
            return await self._ingest_locked(facts)

    async def _ingest_locked(self, facts: list[str]) -> int:
        content = self.read()
        lines = content.split("\n")
        sections = parse_sections(lines)
        existing = extract_fact_lines(content)
        existing_lower = {f.lower() for f in existing}

        existing_vectors = []
        for fact in existing:
            vec = await self._embed(fact)
            if vec is not None:
                existing_vectors.append(vec)
        section_vectors = [await self._embed(s.text) for s in sections]

        catch_all = self.settings.catch_all_section
        placed: dict[int, list[str]] = {}   # section index (-1 = catch-all) → facts
        for fact in facts:
            if fact.lower() in existing_lower:
                logger.info(f"[Ingest] Skipping exact duplicate: \"{fact}\"")
                continue

            vec = await self._embed(fact)
            target = -1
            if vec is not None:
                if existing_vectors:
                    sims = similarity_matrix([vec], existing_vectors)[0]
                    best = float(np.max(sims))
                    if best > self.settings.dedup_threshold:
                        logger.info(f"[Ingest] Skipping semantic duplicate ({best:.3f}): \"{fact}\"")
                        continue
                scored = [(i, v) for i, v in enumerate(section_vectors) if v is not None]
                if scored:
                    sims = similarity_matrix([vec], [v for _, v in scored])[0]
                    best_pos = int(np.argmax(sims))
                    if float(sims[best_pos]) > self.settings.section_threshold:
                        target = scored[best_pos][0]
                existing_vectors.append(vec)
            else:
                logger.warning(f"[Ingest] Embedding unavailable, placing \"{fact}\" → {catch_all}")

            if target < 0:
                for i, s in enumerate(sections):
                    if s.heading == catch_all:
                        target = i
                        break
            where = sections[target].heading if target >= 0 else catch_all
            logger.debug(f"[Ingest] Placing \"{fact}\" → {where}")
            placed.setdefault(target, []).append(fact)
            existing_lower.add(fact.lower())

        if not placed:
            logger.info("[Ingest] No new facts to add (all duplicates)")
            return 0

        inserts = {insertion_index(lines, sections[i]): f for i, f in placed.items() if i >= 0}
        lines = splice_bullets(lines, inserts)
        if -1 in placed:
            while lines and lines[-1] == "":
                lines.pop()
            lines.extend(["", f"## {catch_all}"] + [f"- {f}" for f in placed[-1]])

        self.memory_file.parent.mkdir(parents=True, exist_ok=True)
        self.memory_file.write_text("\n".join(lines).rstrip("\n") + "\n", encoding="utf-8")
        added = sum(len(f) for f in placed.values())
        logger.info(f"[Ingest] Added {added} new facts to memory")
        return added


# ── Daily logs + context ─────────────────────────────────────────────────────

def append_daily_log(daily_dir: Path, summary: str, now: Optional[datetime] = None) -> Path:
    now = now or datetime.now()
    daily_dir = Path(daily_dir)
    daily_dir.mkdir(parents=True, exist_ok=True)
    daily_file = daily_dir / f"{now.strftime('%Y-%m-%d')}.md"
    if not daily_file.exists():
        daily_file.write_text(f"# Daily Log - {now.strftime('%Y-%m-%d')}\n\n", encoding="utf-8")
    with open(daily_file, "a", encoding="utf-8") as f:
        f.write(f"### {now.strftime('%H:%M')}\n- {summary}\n\n")
    return daily_file


@dataclass
class MemoryContext:
    memory: str = ""
    user: str = ""
    daily_today: str = ""
    daily_yesterday: str = ""


def _read_if_exists(path: Path) -> str:
    return path.read_text(encoding="utf-8") if path.exists() else ""


def load_memory_context(
    memory_file: Path,
    user_file: Path,
    daily_dir: Path,
    today: Optional[datetime] = None,
) -> MemoryContext:
    today = today or datetime.now()
    yesterday = today - timedelta(days=1)
    return MemoryContext(
        memory=_read_if_exists(Path(memory_file)),
        user=_read_if_exists(Path(user_file)),
        daily_today=_read_if_exists(Path(daily_dir) / f"{today.strftime('%Y-%m-%d')}.md"),
        daily_yesterday=_read_if_exists(Path(daily_dir) / f"{yesterday.strftime('%Y-%m-%d')}.md"),
    )


# ── Extraction from chat ─────────────────────────────────────────────────────

def parse_facts(response: str) -> list[str]:
    """JSON array of fact strings from model output; assistant-subject facts dropped."""
    parsed = extract_json(response, expect=list)
    if not parsed:
        return []
    facts = []
    for f in parsed:
        if not isinstance(f, str) or not f.strip():
            continue
        if ASSISTANT_SUBJECT.match(f.strip()):
            logger.info(f"[Ingest] Filtered out assistant-subject fact: \"{f}\"")
            continue
        facts.append(f.strip())
    return facts


async def extract_facts(chain: CompletionChain, user_message: str, assistant_message: str) -> list[str]:
    try:
        response = await chain.complete(
            FACT_EXTRACTION_PROMPT,
            EXCHANGE_TEMPLATE.format(user=user_message, assistant=assistant_message),
            max_tokens=1024,
            temperature=0.1,
        )
    except CompletionError as e:
        logger.warning(f"[Ingest] Fact extraction failed: {e}")
        return []
    facts = parse_facts(response)
    logger.info(f"[Ingest] Extracted {len(facts)} facts")
    return facts
