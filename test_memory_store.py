import random

import pytest

from conftest import unit, vec
from memory_store import MEMBERS, MESSAGES


def _cluster_with_member(store, name: str, content: str, created_at=None):
    cluster_id = store.create_cluster(name)
    member_id = store.add_member(cluster_id, content, created_at=created_at)
    return cluster_id, member_id


def test_link_is_stored_once_regardless_of_order(store) -> None:
    a, _ = _cluster_with_member(store, "A", "fact a")
    b, _ = _cluster_with_member(store, "B", "fact b")

    assert store.create_or_strengthen_link(a, b) == pytest.approx(0.5)
    assert store.create_or_strengthen_link(b, a) == pytest.approx(0.6)

    links = store.all_links()
    assert len(links) == 1
    assert links[0]["cluster_a"] < links[0]["cluster_b"]
    assert store.get_link(b, a)["strength"] == pytest.approx(0.6)


def test_link_strength_is_capped_at_one(store) -> None:
    a, _ = _cluster_with_member(store, "A", "fact a")
    b, _ = _cluster_with_member(store, "B", "fact b")
    for _ in range(10):
        strength = store.create_or_strengthen_link(a, b)
    assert strength == pytest.approx(1.0)
    assert store.strengthen_link(a, b, 0.05) is False
    assert store.get_link(a, b)["strength"] <= 1.0


def test_self_links_and_missing_clusters_are_rejected(store) -> None:
    a, _ = _cluster_with_member(store, "A", "fact a")
    assert store.create_or_strengthen_link(a, a) is None
    assert store.create_or_strengthen_link(a, "missing") is None
    assert store.strengthen_link(a, "missing", 0.1) is False
    assert store.all_links() == []


def test_strengthen_link_only_touches_existing_links(store) -> None:
    a, _ = _cluster_with_member(store, "A", "fact a")
    b, _ = _cluster_with_member(store, "B", "fact b")
    assert store.strengthen_link(a, b, 0.05) is False
    store.create_or_strengthen_link(a, b, initial=0.5)
    assert store.strengthen_link(b, a, 0.05) is True
    assert store.get_link(a, b)["strength"] == pytest.approx(0.55)


def test_move_member_deletes_emptied_cluster_and_its_links(store) -> None:
    a, member_a = _cluster_with_member(store, "A", "fact a")
    b, _ = _cluster_with_member(store, "B", "fact b")
    store.create_or_strengthen_link(a, b)

    assert store.move_member(member_a, b) is True

    assert not store.cluster_exists(a)
    assert store.count_members(b) == 2
    assert store.all_links() == []
    assert store.get_member(member_a)["cluster_id"] == b


def test_move_member_refuses_noop_and_missing_target(store) -> None:
    a, member_a = _cluster_with_member(store, "A", "fact a")
    assert store.move_member(member_a, a) is False
    assert store.move_member(member_a, "missing") is False
    assert store.move_member("missing", a) is False
    assert store.count_members(a) == 1


def test_delete_member_cascades_vectors_and_empty_cluster(store) -> None:
    a, member_a = _cluster_with_member(store, "A", "fact a")
    store.add_vector(MEMBERS, member_a, a, "fact a", unit(0))

    assert store.delete_member(member_a) is True

    assert store.count_vectors(MEMBERS) == 0
    assert not store.cluster_exists(a)
    assert store.delete_member(member_a) is False


def test_add_member_to_missing_cluster_returns_none(store) -> None:
    assert store.add_member("missing", "orphan fact") is None
    assert store.all_members() == []


def test_members_are_ordered_by_importance_then_recency(store) -> None:
    cluster_id = store.create_cluster("A")
    old = store.add_member(cluster_id, "old", importance=0.5, created_at="2026-01-01 09:00:00")
    new = store.add_member(cluster_id, "new", importance=0.5, created_at="2026-01-03 09:00:00")
    key = store.add_member(cluster_id, "key", importance=0.9, created_at="2026-01-02 09:00:00")

    assert [m["id"] for m in store.get_members(cluster_id)] == [key, new, old]
    assert [m["id"] for m in store.get_members(cluster_id, limit=2)] == [key, new]


def test_vector_search_collapses_duplicate_records(store) -> None:
    a, member_a = _cluster_with_member(store, "A", "fact a")
    b, member_b = _cluster_with_member(store, "B", "fact b")
    store.add_vector(MEMBERS, member_a, a, "fact a", unit(0))
    store.add_vector(MEMBERS, member_a, a, "fact a", unit(0))
    store.add_vector(MEMBERS, member_b, b, "fact b", vec(0.6, 0.8))

    hits = store.search_vectors(MEMBERS, unit(0), 5)

    assert [h["owner_id"] for h in hits] == [member_a, member_b]
    assert hits[0]["similarity"] == pytest.approx(1.0, abs=1e-5)
    assert hits[1]["similarity"] == pytest.approx(0.6, abs=1e-5)


def test_vector_search_excludes_group(store) -> None:
    store.add_message("conv-1", "user", "first", message_id="m1")
    store.add_message("conv-2", "user", "second", message_id="m2")
    store.add_vector(MESSAGES, "m1", "conv-1", "first", unit(0), role="user")
    store.add_vector(MESSAGES, "m2", "conv-2", "second", unit(0), role="user")

    hits = store.search_vectors(MESSAGES, unit(0), 5, exclude_group="conv-1")

    assert [h["owner_id"] for h in hits] == ["m2"]


def test_keyword_search_ranks_with_bm25(store) -> None:
    store.add_message("conv-1", "user", "the quantum flux capacitor hums", message_id="m1")
    store.add_message("conv-1", "assistant", "nice weather today", message_id="m2")

    rows = store.keyword_search(MESSAGES, '"capacitor"', 5)

    assert [r["owner_id"] for r in rows] == ["m1"]
    assert rows[0]["score"] < 0
    assert rows[0]["role"] == "user"
    assert store.keyword_search(MEMBERS, '"capacitor"', 5) == []


def test_delete_vectors_by_group(store) -> None:
    store.add_vector(MESSAGES, "m1", "conv-1", "one", unit(0))
    store.add_vector(MESSAGES, "m2", "conv-1", "two", unit(1))
    store.add_vector(MESSAGES, "m3", "conv-2", "three", unit(2))

    assert store.delete_vectors(MESSAGES, group_id="conv-1") == 2
    assert store.count_vectors(MESSAGES) == 1
    assert store.get_vector(MESSAGES, "m3").tolist() == pytest.approx(unit(2))


def test_prune_links_removes_only_weak_links(store) -> None:
    a, _ = _cluster_with_member(store, "A", "a")
    b, _ = _cluster_with_member(store, "B", "b")
    c, _ = _cluster_with_member(store, "C", "c")
    store.create_or_strengthen_link(a, b, initial=0.2)
    store.create_or_strengthen_link(a, c, initial=0.5)

    assert store.prune_links(0.3) == 1
    assert store.get_link(a, b) is None
    assert store.get_link(a, c) is not None


def test_clusters_by_member_date_groups_by_calendar_day(store) -> None:
    a, _ = _cluster_with_member(store, "A", "a", created_at="2026-01-05 08:00:00")
    b, _ = _cluster_with_member(store, "B", "b", created_at="2026-01-05 21:30:00")
    c, _ = _cluster_with_member(store, "C", "c", created_at="2026-01-06 10:00:00")
    store.add_member(a, "a2", created_at="2026-01-05 09:00:00")

    by_day = store.clusters_by_member_date()

    assert sorted(by_day["2026-01-05"]) == sorted([a, b])
    assert by_day["2026-01-06"] == [c]


def test_linked_clusters_are_strongest_first(store) -> None:
    a, _ = _cluster_with_member(store, "A", "a")
    b, _ = _cluster_with_member(store, "B", "b")
    c, _ = _cluster_with_member(store, "C", "c")
    store.create_or_strengthen_link(a, b, initial=0.35)
    store.create_or_strengthen_link(c, a, initial=0.8)

    linked = store.get_linked_clusters(a)
    assert [link["cluster_id"] for link in linked] == [c, b]
    assert linked[0]["name"] == "C"
    assert [link["cluster_id"] for link in store.get_linked_clusters(a, min_strength=0.5)] == [c]


def test_wipe_clusters_keeps_messages(store) -> None:
    a, member_a = _cluster_with_member(store, "A", "a")
    store.add_vector(MEMBERS, member_a, a, "a", unit(0))
    store.add_message("conv-1", "user", "hello there", message_id="m1")

    counts = store.wipe_clusters()

    assert counts == {"clusters": 1, "members": 1, "links": 0, "vectors": 1}
    assert store.list_clusters() == []
    assert len(store.get_messages("conv-1")) == 1
    assert store.keyword_search(MESSAGES, '"hello"', 5)


def test_random_mutations_never_leave_empty_clusters(store) -> None:
    rng = random.Random(7)
    for step in range(120):
        members = store.all_members()
        clusters = store.list_clusters()
        op = rng.choice(["add", "add", "move", "delete", "link"])
        if op == "add" or not members:
            if clusters and rng.random() < 0.6:
                store.add_member(rng.choice(clusters)["id"], f"fact {step}")
            else:
                _cluster_with_member(store, f"C{step}", f"fact {step}")
        elif op == "move" and clusters:
            store.move_member(rng.choice(members)["id"], rng.choice(clusters)["id"])
        elif op == "delete":
            store.delete_member(rng.choice(members)["id"])
        elif op == "link" and len(clusters) > 1:
            x, y = rng.sample(clusters, 2)
            store.create_or_strengthen_link(x["id"], y["id"])

        assert all(c["member_count"] > 0 for c in store.list_clusters())
        for link in store.all_links():
            assert link["cluster_a"] < link["cluster_b"]
            assert 0.0 <= link["strength"] <= 1.0
            assert store.cluster_exists(link["cluster_a"])
            assert store.cluster_exists(link["cluster_b"])
