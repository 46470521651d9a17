import pytest
from fastapi.testclient import TestClient

from server import app, get_hub


@pytest.fixture
def client(hub):
    app.dependency_overrides[get_hub] = lambda: hub
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_routes_need_a_hub() -> None:
    response = TestClient(app).get("/api/memory/clusters")
    assert response.status_code == 503


def test_memory_overview(client) -> None:
    response = client.get("/api/memory")

    assert response.status_code == 200
    body = response.json()
    assert body["memory"] == ""
    assert body["heartbeat"]["enabled"] is True
    assert body["queue"]["in_flight"] == 0


def test_daily_log_lookup(client, hub) -> None:
    assert client.get("/api/memory/daily/yesterday").status_code == 400
    assert client.get("/api/memory/daily/2026-01-01").status_code == 404

    hub.config.archive_dir.mkdir(parents=True)
    (hub.config.archive_dir / "2026-01-01.md").write_text("# Daily Log - 2026-01-01\n", encoding="utf-8")

    response = client.get("/api/memory/daily/2026-01-01")
    assert response.status_code == 200
    assert response.json()["content"].startswith("# Daily Log")


def test_fact_lifecycle(client) -> None:
    assert client.post("/api/memory/add", json={"fact": "   "}).status_code == 400

    added = client.post("/api/memory/add", json={"fact": "User keeps bees"}).json()
    assert added["added_to_document"] == 1
    cluster = added["cluster"]
    assert cluster["is_new"] is True

    listed = client.get("/api/memory/clusters").json()["clusters"]
    assert [c["id"] for c in listed] == [cluster["cluster_id"]]
    detail = client.get(f"/api/memory/clusters/{cluster['cluster_id']}").json()
    assert [m["content"] for m in detail["members"]] == ["User keeps bees"]

    member_id = cluster["member_id"]
    assert client.put(f"/api/memory/facts/{member_id}", json={"content": " "}).status_code == 400
    updated = client.put(f"/api/memory/facts/{member_id}", json={"content": "User keeps two beehives"})
    assert updated.json()["content"] == "User keeps two beehives"

    assert client.delete(f"/api/memory/facts/{member_id}").status_code == 200
    assert client.get(f"/api/memory/clusters/{cluster['cluster_id']}").status_code == 404


def test_missing_facts_and_clusters_are_404(client) -> None:
    assert client.get("/api/memory/clusters/nope").status_code == 404
    assert client.put("/api/memory/facts/nope", json={"content": "x"}).status_code == 404
    assert client.delete("/api/memory/facts/nope").status_code == 404


def test_cluster_search_requires_query(client) -> None:
    assert client.post("/api/memory/clusters/search", json={"query": "  "}).status_code == 400
    assert client.post("/api/memory/clusters/search", json={"query": "bees"}).json() == {"clusters": []}


def test_indexed_messages_are_searchable(client) -> None:
    bad = client.post(
        "/api/memory/messages", json={"conversation_id": "c1", "role": "robot", "content": "beep"}
    )
    assert bad.status_code == 400

    for text in ("the zephyrine codename", "zephyrine again"):
        response = client.post(
            "/api/memory/messages", json={"conversation_id": "c1", "role": "user", "content": text}
        )
        assert response.status_code == 200

    results = client.post("/api/memory/search", json={"query": "zephyrine", "limit": 0}).json()["results"]
    assert len(results) == 1
    assert results[0]["group_id"] == "c1"

    excluded = client.post(
        "/api/memory/search", json={"query": "zephyrine", "conversation_id": "c1"}
    ).json()["results"]
    assert excluded == []


def test_flush_under_budget_returns_messages_unchanged(client) -> None:
    messages = [{"role": "system", "content": "Be nice."}, {"role": "user", "content": "hello"}]

    body = client.post("/api/memory/flush", json={"messages": messages, "model": "gpt-4o"}).json()

    assert body["flushed"] is False
    assert body["messages"] == messages
    assert body["context_limit"] == 128000
    assert body["token_count"] == 4


def test_manual_maintenance_runs_a_cycle(client) -> None:
    body = client.post("/api/memory/maintain").json()

    assert set(body) == {"audit", "cleanup", "archive", "links", "elapsed"}
