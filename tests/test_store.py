from __future__ import annotations

import sqlite3

import pytest

from editcrew.store import CURRENT_SCHEMA_VERSION, Store


def test_insert_and_get_outcome_round_trips_lists(tmp_path):
    store = Store(tmp_path / "editcrew.db")

    stored = store.insert_outcome(
        project_id="shop",
        task_summary="Add testimonials section",
        strategy="delegate",
        outcome="success",
        files_changed=["sections/testimonials.liquid"],
        tool_sequence=["coordinator", "liquid", "css"],
        iteration_count=3,
        token_usage={"input_tokens": 120},
        role="coordinator",
    )
    loaded = store.get_outcome(stored.id)

    assert loaded is not None
    assert loaded.files_changed == ["sections/testimonials.liquid"]
    assert loaded.tool_sequence == ["coordinator", "liquid", "css"]
    assert loaded.token_usage == {"input_tokens": 120}
    assert loaded.embedding is None
    assert store.get_outcome("missing") is None


def test_list_outcomes_newest_first_and_role_filter(tmp_path):
    store = Store(tmp_path / "editcrew.db")
    store.insert_outcome("shop", "old", "delegate", "success", role="coordinator", created_at="2026-01-01T00:00:00+00:00")
    store.insert_outcome("shop", "new", "hybrid", "partial", role="css", created_at="2026-02-01T00:00:00+00:00")
    store.insert_outcome("other", "elsewhere", "delegate", "success")

    assert [item.task_summary for item in store.list_outcomes("shop")] == ["new", "old"]
    assert [item.task_summary for item in store.list_outcomes("shop", role="coordinator")] == ["old"]


def test_embedding_search_uses_inclusive_threshold(tmp_path):
    store = Store(tmp_path / "editcrew.db")
    exact = store.insert_outcome("shop", "exact", "delegate", "success")
    diagonal = store.insert_outcome("shop", "diagonal", "delegate", "success")
    orthogonal = store.insert_outcome("shop", "orthogonal", "delegate", "success")
    store.insert_outcome("shop", "no embedding yet", "delegate", "success")
    assert store.update_outcome_embedding(exact.id, [1.0, 0.0])
    assert store.update_outcome_embedding(diagonal.id, [1.0, 1.0])
    assert store.update_outcome_embedding(orthogonal.id, [0.0, 1.0])
    assert not store.update_outcome_embedding("missing", [1.0, 0.0])

    results = store.search_by_embedding("shop", [1.0, 0.0], threshold=0.5, limit=5)

    assert [item.task_summary for item in results] == ["exact", "diagonal"]
    assert results[0].similarity == pytest.approx(1.0)
    assert results[1].similarity == pytest.approx(0.7071, abs=1e-3)
    at_threshold = store.search_by_embedding("shop", [1.0, 0.0], threshold=1.0, limit=5)
    assert [item.task_summary for item in at_threshold] == ["exact"]


def test_keyword_search_only_returns_successes(tmp_path):
    store = Store(tmp_path / "editcrew.db")
    store.insert_outcome("shop", "Redesign header navigation", "delegate", "success", created_at="2026-01-01T00:00:00+00:00")
    store.insert_outcome("shop", "Header tweaks failed", "delegate", "failure")
    store.insert_outcome("shop", "Sticky header navigation", "hybrid", "success", created_at="2026-03-01T00:00:00+00:00")

    results = store.search_by_keywords("shop", ["header", "navigation", "sticky"], limit=5)

    assert [item.task_summary for item in results] == ["Sticky header navigation", "Redesign header navigation"]
    assert results[0].similarity == pytest.approx(1.0)
    assert results[1].similarity == pytest.approx(2 / 3)
    assert store.search_by_keywords("shop", [], limit=5) == []


def test_preferences_are_reinforced_and_capped(tmp_path):
    store = Store(tmp_path / "editcrew.db")

    first = store.upsert_preference("shop", "style", "Use BEM class names", 0.6)
    second = store.upsert_preference("shop", "style", "Use BEM class names", 1.0)
    capped = store.upsert_preference("shop", "naming", "kebab-case files", 0.99)

    assert first.confidence == pytest.approx(0.6)
    assert second.confidence == pytest.approx(0.72)
    assert second.observation_count == 2
    assert capped.confidence == pytest.approx(0.95)
    assert [p.preference for p in store.list_preferences("shop")] == ["kebab-case files", "Use BEM class names"]
    assert [p.preference for p in store.list_preferences("shop", min_confidence=0.9)] == ["kebab-case files"]


def test_schema_version_is_recorded(tmp_path):
    db_path = tmp_path / "editcrew.db"
    Store(db_path)
    Store(db_path)

    conn = sqlite3.connect(db_path)
    try:
        rows = conn.execute("SELECT version FROM schema_version").fetchall()
    finally:
        conn.close()
    assert rows == [(CURRENT_SCHEMA_VERSION,)]
