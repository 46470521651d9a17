#!/usr/bin/env python3
"""
LLM Client — completion backends tried in a fixed priority order.

Each backend is one ProviderConfig:
- kind "openai": llama.cpp server or any OpenAI-compatible /v1/chat/completions
- kind "ollama": Ollama /api/chat (non-streaming)

The first backend that returns non-empty text wins. When every backend fails,
CompletionError carries the last error seen.

Also holds extract_json(), the best-effort parser for model output that wraps
JSON in prose, markdown fences or <think> blocks.
"""

import ast
import json
import logging
import re
from typing import Any, Optional, Sequence

import httpx

from memory_config import ProviderConfig

logger = logging.getLogger(__name__)

THINK_RE = re.compile(r"<think>.*?</think>", re.DOTALL | re.IGNORECASE)


class CompletionError(Exception):
    """Raised when no completion backend produced a usable response."""


# ── Single backend ───────────────────────────────────────────────────────────

def _response_text(provider: ProviderConfig, response: httpx.Response, pick) -> str:
    """Generated text from a response body; any shape mismatch is a CompletionError."""
    try:
        content = pick(response.json())
    except (ValueError, KeyError, IndexError, TypeError, AttributeError) as e:
        raise CompletionError(
            f"{provider.kind}/{provider.model} returned an unexpected response: {e!r}"
        ) from e
    if content is None:
        return ""
    if not isinstance(content, str):
        raise CompletionError(f"{provider.kind}/{provider.model} returned non-text content")
    return content


async def complete_with(
    client: httpx.AsyncClient,
    provider: ProviderConfig,
    system_prompt: str,
    user_prompt: str,
    max_tokens: int = 2048,
    temperature: float = 0.2,
) -> str:
    """One call to one backend. Raises on transport errors or empty output."""
    messages = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": user_prompt})
    host = provider.host.rstrip("/")

    if provider.kind == "ollama":
        response = await client.post(
            f"{host}/api/chat",
            json={
                "model": provider.model,
                "messages": messages,
                "stream": False,
                "options": {"temperature": temperature, "num_predict": max_tokens},
            },
            timeout=provider.timeout,
        )
        response.raise_for_status()
        content = _response_text(provider, response, lambda body: (body.get("message") or {}).get("content"))
    else:
        response = await client.post(
            f"{host}/v1/chat/completions",
            json={
                "model": provider.model,
                "messages": messages,
                "max_tokens": max_tokens,
                "temperature": temperature,
            },
            timeout=provider.timeout,
        )
        response.raise_for_status()
        content = _response_text(provider, response, lambda body: body["choices"][0]["message"]["content"])

    content = THINK_RE.sub("", content).strip()
    if not content:
        raise CompletionError(f"{provider.kind}/{provider.model} returned an empty response")
    return content


# ── Fallback chain ───────────────────────────────────────────────────────────

class CompletionChain:
    """Ordered fallback over completion backends."""

    def __init__(
        self,
        providers: Sequence[ProviderConfig],
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not providers:
            raise ValueError("CompletionChain needs at least one provider")
        self.providers = list(providers)
        self.client = client or httpx.AsyncClient(timeout=60.0)
        self.last_provider: Optional[ProviderConfig] = None

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int = 2048,
        temperature: float = 0.2,
    ) -> str:
        last_error: Optional[Exception] = None
        for provider in self.providers:
            try:
                text = await complete_with(
                    self.client, provider, system_prompt, user_prompt,
                    max_tokens=max_tokens, temperature=temperature,
                )
                self.last_provider = provider
                return text
            except (httpx.HTTPError, CompletionError, ValueError) as e:
                logger.warning(f"[LLM] {provider.kind}/{provider.model} failed: {e}")
                last_error = e
        raise CompletionError(f"All LLM providers failed. Last error: {last_error}")

    async def close(self):
        await self.client.aclose()


# ── JSON recovery ────────────────────────────────────────────────────────────

def _balanced_span(text: str, start: int) -> Optional[str]:
    """Return text[start:end] for the bracket group opening at start, respecting strings."""
    opener = text[start]
    closer = "}" if opener == "{" else "]"
    depth = 0
    quote = None
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if quote:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == quote:
                quote = None
            continue
        if ch in ('"', "'"):
            quote = ch
        elif ch == opener:
            depth += 1
        elif ch == closer:
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def _repair_single_quotes(candidate: str) -> str:
    """Turn {'a': 'b'} pseudo-JSON into {"a": "b"}."""
    repaired = re.sub(r"(?<![A-Za-z0-9])'((?:[^'\\]|\\.)*)'", lambda m: json.dumps(m.group(1)), candidate)
    repaired = re.sub(r",\s*([}\]])", r"\1", repaired)
    return repaired


def _parse_candidate(candidate: str) -> Any:
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        pass
    try:
        value = ast.literal_eval(candidate)
        if isinstance(value, (dict, list)):
            return value
    except (ValueError, SyntaxError):
        pass
    try:
        return json.loads(_repair_single_quotes(candidate))
    except json.JSONDecodeError:
        return None


def extract_json(text: Optional[str], expect: Optional[type] = None) -> Any:
    """
    Pull the first balanced {...} or [...] out of model output and parse it.

    expect=dict or expect=list restricts the search to that bracket type.
    Returns None when nothing parseable is found.
    """
    if not text:
        return None
    text = THINK_RE.sub("", text)
    openers = {dict: "{", list: "["}.get(expect, "{[")
    for i, ch in enumerate(text):
        if ch not in openers:
            continue
        candidate = _balanced_span(text, i)
        if candidate is None:
            continue
        value = _parse_candidate(candidate)
        if value is not None and (expect is None or isinstance(value, expect)):
            return value
    return None
