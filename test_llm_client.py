import json

import httpx
import pytest

from llm_client import CompletionChain, CompletionError, complete_with, extract_json
from memory_config import ProviderConfig

OLLAMA = ProviderConfig(kind="ollama", host="http://ollama.test/", model="qwen3:14b")
LLAMACPP = ProviderConfig(kind="openai", host="http://llamacpp.test", model="scout")


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_ollama_request_shape_and_think_stripping() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"message": {"content": "<think>pondering</think>\n Paris "}})

    client = _client(handler)
    text = await complete_with(client, OLLAMA, "Be brief.", "Capital of France?", max_tokens=50, temperature=0.1)
    await client.aclose()

    assert text == "Paris"
    assert seen["url"] == "http://ollama.test/api/chat"
    body = seen["body"]
    assert body["stream"] is False
    assert body["options"] == {"temperature": 0.1, "num_predict": 50}
    assert body["messages"] == [
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "Capital of France?"},
    ]


@pytest.mark.asyncio
async def test_openai_compatible_request_omits_empty_system_prompt() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"choices": [{"message": {"content": "Hardware"}}]})

    client = _client(handler)
    text = await complete_with(client, LLAMACPP, "", "Name this cluster")
    await client.aclose()

    assert text == "Hardware"
    assert seen["path"] == "/v1/chat/completions"
    assert seen["body"]["messages"] == [{"role": "user", "content": "Name this cluster"}]
    assert seen["body"]["max_tokens"] == 2048


@pytest.mark.asyncio
async def test_empty_completion_is_an_error() -> None:
    client = _client(lambda request: httpx.Response(200, json={"message": {"content": "<think>x</think>  "}}))

    with pytest.raises(CompletionError):
        await complete_with(client, OLLAMA, "", "hello")
    await client.aclose()


@pytest.mark.asyncio
async def test_chain_falls_back_in_order_and_records_provider() -> None:
    hosts = []

    def handler(request: httpx.Request) -> httpx.Response:
        hosts.append(request.url.host)
        if request.url.host == "llamacpp.test":
            return httpx.Response(503, json={"error": "loading model"})
        return httpx.Response(200, json={"message": {"content": "fallback answer"}})

    chain = CompletionChain([LLAMACPP, OLLAMA], client=_client(handler))

    assert await chain.complete("sys", "user") == "fallback answer"
    assert hosts == ["llamacpp.test", "ollama.test"]
    assert chain.last_provider is OLLAMA
    await chain.close()


@pytest.mark.asyncio
async def test_chain_raises_when_every_provider_fails() -> None:

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "ollama.test":
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"choices": []})

    chain = CompletionChain([LLAMACPP, OLLAMA], client=_client(handler))

    with pytest.raises(CompletionError, match="All LLM providers failed"):
        await chain.complete("sys", "user")
    assert chain.last_provider is None
    await chain.close()


@pytest.mark.asyncio
async def test_malformed_response_falls_through_to_next_provider() -> None:
    hosts = []

    def handler(request: httpx.Request) -> httpx.Response:
        hosts.append(request.url.host)
        if request.url.host == "llamacpp.test":
            return httpx.Response(200, json={"choices": None})
        return httpx.Response(200, json={"message": {"content": "ok"}})

    chain = CompletionChain([LLAMACPP, OLLAMA], client=_client(handler))

    assert await chain.complete("sys", "user") == "ok"
    assert hosts == ["llamacpp.test", "ollama.test"]
    assert chain.last_provider is OLLAMA
    await chain.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [b"null", b"[\"not\", \"an\", \"object\"]", b"{\"message\": {\"content\": 42}}"])
async def test_unexpected_body_shape_is_a_completion_error(body) -> None:
    client = _client(lambda request: httpx.Response(200, content=body))

    with pytest.raises(CompletionError, match="ollama/qwen3:14b"):
        await complete_with(client, OLLAMA, "", "hello")
    await client.aclose()


def test_chain_needs_a_provider() -> None:
    with pytest.raises(ValueError):
        CompletionChain([])


def test_extract_json_from_fenced_prose() -> None:
    text = 'Here\'s the result:\n```json\n{"actions": [{"type": "merge"}]}\n```\nLet me know!'
    assert extract_json(text) == {"actions": [{"type": "merge"}]}


def test_extract_json_skips_think_blocks() -> None:
    assert extract_json('<think>{"draft": 1}</think>{"final": 2}') == {"final": 2}


def test_extract_json_respects_expected_type() -> None:
    text = 'Meta {"count": 1} then ["User likes jazz"]'
    assert extract_json(text, expect=list) == ["User likes jazz"]
    assert extract_json(text, expect=dict) == {"count": 1}


def test_extract_json_repairs_common_model_mistakes() -> None:
    assert extract_json("{'summary': 'ok', 'remainingFacts': ['User likes jazz',]}") == {
        "summary": "ok",
        "remainingFacts": ["User likes jazz"],
    }
    assert extract_json('{"facts": ["a", "b",], "done": true}') == {"facts": ["a", "b"], "done": True}


def test_extract_json_handles_brackets_inside_strings() -> None:
    assert extract_json('{"text": "a } brace and a ] bracket"}') == {"text": "a } brace and a ] bracket"}


def test_extract_json_returns_none_without_json() -> None:
    assert extract_json(None) is None
    assert extract_json("") is None
    assert extract_json("nothing to see here") is None
    assert extract_json("{broken: [}") is None
