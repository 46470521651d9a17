#!/usr/bin/env python3
"""
Context Budget — keep a conversation under its model's context window.

Token counts are a character heuristic (ceil(len / 4)), not a tokenizer.
When a conversation passes 80% of the model's limit, the older turns are
summarized into durable facts (daily log + long-term memory) and the live
message list is compacted to a marker, the system prompt and the last ten
messages. A flush never loses data: on any failure the original list is
returned untouched.
"""

import logging
import math
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from fact_ingest import FactIngestor, append_daily_log
from llm_client import CompletionChain
from memory_config import FlushSettings

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_LIMIT = 8192

# Substring → context window. Longest matching key wins.
MODEL_CONTEXT_LIMITS = {
    "o1": 200000,
    "o3": 200000,
    "o4": 200000,
    "claude-opus-4": 200000,
    "claude-sonnet-4": 200000,
    "claude-haiku-4": 200000,
    "gpt-5": 128000,
    "gpt-4o": 128000,
    "gpt-4-turbo": 128000,
    "gpt-4": 8192,
    "command": 128000,
    "grok-4": 131072,
    "grok-3": 131072,
    "scout": 131072,
    "llama": 131072,
    "deepseek": 131072,
    "qwen": 32768,
    "mistral": 32768,
    "phi": 16384,
    "gemma": 8192,
}

COMPACTED_NOTICE = (
    "[Context was compacted to save space. "
    "Key points from earlier conversation were saved to memory.]"
)

FLUSH_SYSTEM_PROMPT = (
    "You are a memory extraction system. Extract and save important facts, "
    "decisions, and context from this conversation."
)

FLUSH_USER_PROMPT = """This conversation is getting long. Extract all important facts, decisions, preferences, action items, and technical details from the following conversation. Write them as bullet points.

{transcript}"""

BULLET_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(.*\S)\s*$")


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text or "") / 4)


def estimate_messages_tokens(messages: list[dict]) -> int:
    return sum(estimate_tokens(str(m.get("content", ""))) for m in messages)


def context_limit(model: Optional[str]) -> int:
    name = (model or "").lower()
    best_key = None
    for key in MODEL_CONTEXT_LIMITS:
        if key in name and (best_key is None or len(key) > len(best_key)):
            best_key = key
    return MODEL_CONTEXT_LIMITS[best_key] if best_key else DEFAULT_CONTEXT_LIMIT


@dataclass
class FlushCheck:
    needs_flush: bool
    token_count: int
    context_limit: int
    usage: float


def should_flush(messages: list[dict], model: Optional[str], flush_ratio: float = 0.80) -> FlushCheck:
    tokens = estimate_messages_tokens(messages)
    limit = context_limit(model)
    return FlushCheck(
        needs_flush=tokens > flush_ratio * limit,
        token_count=tokens,
        context_limit=limit,
        usage=tokens / limit,
    )


def build_transcript(messages: list[dict], max_chars: int) -> str:
    """User/assistant turns as "ROLE: content"; keeps the tail if too long."""
    turns = [
        f"{m['role'].upper()}: {m.get('content', '')}"
        for m in messages
        if m.get("role") in ("user", "assistant")
    ]
    transcript = "\n\n".join(turns)
    if len(transcript) > max_chars:
        transcript = transcript[-max_chars:]
    return transcript


def parse_bullets(text: str) -> list[str]:
    facts = []
    for line in text.splitlines():
        match = BULLET_RE.match(line)
        if match:
            facts.append(match.group(1).strip())
    return facts


def compact_messages(messages: list[dict], keep_last: int = 10) -> list[dict]:
    tail = messages[-keep_last:] if keep_last > 0 else []
    compacted = [{"role": "system", "content": COMPACTED_NOTICE}]
    system = next((m for m in messages if m.get("role") == "system"), None)
    if system is not None and not any(m is system for m in tail):
        compacted.append(system)
    return compacted + list(tail)


class ContextBudget:
    """Per-turn flush check and best-effort compaction."""

    def __init__(
        self,
        chain: CompletionChain,
        ingestor: FactIngestor,
        daily_dir: Path,
        settings: Optional[FlushSettings] = None,
    ):
        self.chain = chain
        self.ingestor = ingestor
        self.daily_dir = Path(daily_dir)
        self.settings = settings or FlushSettings()

    def should_flush(self, messages: list[dict], model: Optional[str]) -> FlushCheck:
        return should_flush(messages, model, self.settings.flush_ratio)

    async def perform_flush(self, messages: list[dict], model: Optional[str]) -> list[dict]:
        """Summarize, persist and compact. Returns the original list on any failure."""
        try:
            max_chars = int(context_limit(model) * self.settings.transcript_ratio * 4)
            transcript = build_transcript(messages, max_chars)
            if not transcript:
                return messages
            summary = await self.chain.complete(
                FLUSH_SYSTEM_PROMPT,
                FLUSH_USER_PROMPT.format(transcript=transcript),
                max_tokens=2048,
                temperature=0.2,
            )
            append_daily_log(self.daily_dir, f"Context flush summary:\n{summary}")
            facts = parse_bullets(summary)
            if facts:
                added = await self.ingestor.ingest(facts)
                logger.info(f"[Flush] Saved {added}/{len(facts)} facts from flushed context")
            compacted = compact_messages(messages, self.settings.keep_last)
            logger.info(f"[Flush] Compacted {len(messages)} → {len(compacted)} messages")
            return compacted
        except Exception as e:
            logger.warning(f"[Flush] Flush failed, keeping full context: {e}")
            return messages

    async def check_and_flush(self, messages: list[dict], model: Optional[str]) -> tuple[list[dict], bool]:
        """(messages, flushed). Messages are compacted only when over budget and the flush succeeds."""
        check = self.should_flush(messages, model)
        if not check.needs_flush:
            return messages, False
        logger.info(
            f"[Flush] {check.token_count}/{check.context_limit} tokens ({check.usage:.0%}), flushing"
        )
        result = await self.perform_flush(messages, model)
        return result, result is not messages
