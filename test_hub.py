import pytest

from conftest import unit
from hub import CONTEXT_FOOTER, CONTEXT_PREAMBLE
from memory_store import MESSAGES

DOG_MESSAGE = "my dog Casper loves the beach"
DOG_FACT = "User has a dog named Casper"


@pytest.mark.asyncio
async def test_index_message_stores_text_and_single_vector(hub, store, embedder) -> None:
    embedder.add(DOG_MESSAGE, unit(0))

    message_id = await hub.index_message("conv-1", "user", DOG_MESSAGE, message_id="m1")
    await hub.index_message("conv-1", "user", DOG_MESSAGE, message_id="m1")

    assert message_id == "m1"
    assert len(store.get_messages("conv-1")) == 1
    assert store.count_vectors(MESSAGES, owner_id="m1") == 1


@pytest.mark.asyncio
async def test_index_message_without_embedding_is_still_keyword_searchable(hub, store, embedder) -> None:
    embedder.available = False

    await hub.index_message("conv-1", "assistant", "the zephyrine protocol", message_id="m1")

    assert store.count_vectors(MESSAGES) == 0
    hits = await hub.retrieval.hybrid_search("zephyrine")
    assert [h.id for h in hits] == ["m1"]


@pytest.mark.asyncio
async def test_vector_write_failure_keeps_the_message(hub, store, embedder) -> None:
    embedder.add("short vector", [0.1, 0.2, 0.3])

    message_id = await hub.index_message("conv-1", "user", "short vector", message_id="m1")

    assert message_id == "m1"
    assert [m["content"] for m in store.get_messages("conv-1")] == ["short vector"]
    assert store.count_vectors(MESSAGES) == 0


@pytest.mark.asyncio
async def test_context_message_carries_every_section(hub, embedder, tmp_path) -> None:
    embedder.add(DOG_MESSAGE, unit(0))
    embedder.add(DOG_FACT, unit(0))
    embedder.add("dog", unit(0))
    (tmp_path / "USER.md").write_text("Name: Sam\n", encoding="utf-8")
    await hub.index_message("old-conv", "user", DOG_MESSAGE)
    await hub.add_fact(DOG_FACT)

    message = await hub.build_context_message("dog", conversation_id="current")

    assert message["role"] == "system"
    content = message["content"]
    assert content.startswith(CONTEXT_PREAMBLE)
    assert content.endswith(CONTEXT_FOOTER)
    assert "=== Long-Term Memory ===\n# Long-Term Memory" in content
    assert "=== User Profile ===\nName: Sam" in content
    assert f"[Memory 1] user: {DOG_MESSAGE}" in content
    assert f"=== Associated Memory Clusters ===\n[Dog Casper]\n- {DOG_FACT}" in content


@pytest.mark.asyncio
async def test_context_message_skips_current_conversation(hub, embedder) -> None:
    embedder.add(DOG_MESSAGE, unit(0))
    embedder.add("dog", unit(0))
    await hub.index_message("current", "user", DOG_MESSAGE)

    assert await hub.build_context_message("dog", conversation_id="current") is None


@pytest.mark.asyncio
async def test_long_snippets_are_truncated(hub, embedder) -> None:
    long_text = "dog " + "y" * 600
    embedder.add(long_text, unit(0))
    embedder.add("dog", unit(0))
    await hub.index_message("old-conv", "assistant", long_text)

    message = await hub.build_context_message("dog")

    assert f"[Memory 1] assistant: {long_text[:500]}..." in message["content"]


@pytest.mark.asyncio
async def test_process_exchange_saves_and_clusters_facts(hub, store, embedder, completion, tmp_path) -> None:
    completion.responses.append('["User is training for a marathon"]')
    embedder.add("User is training for a marathon", unit(2))

    result = await hub.process_exchange("I'm training for a marathon", "Great, good luck!")

    assert result.facts == ["User is training for a marathon"]
    assert result.added == 1
    assert result.assigned[0].cluster_id is not None
    assert store.get_member(result.assigned[0].member_id)["source"] == "fact-extraction"
    assert "- User is training for a marathon" in (tmp_path / "MEMORY.md").read_text(encoding="utf-8")
    log = next((tmp_path / "daily").glob("*.md")).read_text(encoding="utf-8")
    assert "Chat exchange with unknown - 1 facts extracted" in log


@pytest.mark.asyncio
async def test_record_exchange_runs_in_background(hub, tmp_path) -> None:
    task_id = hub.record_exchange("hello", "hi there", model_label="ollama/qwen3:14b")

    await hub.queue.join(timeout=5)

    assert hub.queue.get(task_id).to_dict()["status"] == "completed"
    log = next((tmp_path / "daily").glob("*.md")).read_text(encoding="utf-8")
    assert "Chat exchange with ollama/qwen3:14b - 0 facts extracted" in log


@pytest.mark.asyncio
async def test_add_fact_reports_cluster_and_document(hub, embedder, tmp_path) -> None:
    embedder.add(DOG_FACT, unit(0))

    result, added = await hub.add_fact(DOG_FACT)

    assert result.is_new is True
    assert added == 1
    assert hub.store.get_member(result.member_id)["source"] == "manual"

    _, again = await hub.add_fact(DOG_FACT)
    assert again == 0
