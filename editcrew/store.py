"""
SQLite database storage for Editcrew.

Schema:
- task_outcomes: Completed task metadata with an optional backfilled embedding
- preferences: Reinforced per-project user preferences
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator
from uuid import uuid4

from .config import DB_FILENAME, get_editcrew_dir
from .embeddings import cosine_similarity

CURRENT_SCHEMA_VERSION = 2
MAX_PREFERENCE_CONFIDENCE = 0.95

SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL
);

-- One row per completed coordinator task
CREATE TABLE IF NOT EXISTS task_outcomes (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    user_id TEXT NOT NULL DEFAULT '',
    task_summary TEXT NOT NULL,
    strategy TEXT NOT NULL,
    outcome TEXT NOT NULL,
    files_changed_json TEXT,
    tool_sequence_json TEXT,
    iteration_count INTEGER NOT NULL DEFAULT 0,
    token_usage_json TEXT,
    role TEXT,
    embedding_json TEXT,
    created_at TEXT NOT NULL
);

-- Reinforced user preferences
CREATE TABLE IF NOT EXISTS preferences (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id TEXT NOT NULL,
    category TEXT NOT NULL,
    preference TEXT NOT NULL,
    confidence REAL NOT NULL,
    observation_count INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(project_id, category, preference)
);

CREATE INDEX IF NOT EXISTS idx_outcomes_project ON task_outcomes(project_id, created_at);
CREATE INDEX IF NOT EXISTS idx_preferences_project ON preferences(project_id);
"""


@dataclass
class TaskOutcome:
    """Stored task outcome. ``similarity`` is only set by searches."""
    id: str
    project_id: str
    user_id: str
    task_summary: str
    strategy: str
    outcome: str
    files_changed: list[str] = field(default_factory=list)
    tool_sequence: list[str] = field(default_factory=list)
    iteration_count: int = 0
    token_usage: dict[str, Any] = field(default_factory=dict)
    role: str | None = None
    created_at: str = ""
    embedding: list[float] | None = None
    similarity: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "user_id": self.user_id,
            "task_summary": self.task_summary,
            "strategy": self.strategy,
            "outcome": self.outcome,
            "files_changed": self.files_changed,
            "tool_sequence": self.tool_sequence,
            "iteration_count": self.iteration_count,
            "token_usage": self.token_usage,
            "role": self.role,
            "created_at": self.created_at,
            "similarity": self.similarity,
        }


@dataclass
class Preference:
    """Stored user preference."""
    id: int | None
    project_id: str
    category: str
    preference: str
    confidence: float
    observation_count: int
    created_at: str
    updated_at: str


def _load_json(value: str | None, default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default


class Store:
    """SQLite storage manager for Editcrew."""

    def __init__(self, db_path: Path | None = None):
        if db_path is None:
            db_path = get_editcrew_dir() / DB_FILENAME
        self.db_path = db_path
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        """Ensure database schema exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.executescript(SCHEMA)
            self._run_migrations(conn)

    def _get_schema_version(self, conn: sqlite3.Connection) -> int:
        row = conn.execute("SELECT version FROM schema_version ORDER BY version DESC LIMIT 1").fetchone()
        if row is None:
            return 0
        value = row[0]
        return int(value) if value is not None else 0

    def _set_schema_version(self, conn: sqlite3.Connection, version: int) -> None:
        conn.execute("DELETE FROM schema_version")
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (version,))

    def _column_exists(self, conn: sqlite3.Connection, table: str, column: str) -> bool:
        rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
        return any(str(row[1]) == column for row in rows)

    def _run_migrations(self, conn: sqlite3.Connection) -> None:
        current = self._get_schema_version(conn)
        if current >= CURRENT_SCHEMA_VERSION:
            return

        # v1 -> v2: outcomes are scoped by agent role
        if current < 2:
            if not self._column_exists(conn, "task_outcomes", "role"):
                conn.execute("ALTER TABLE task_outcomes ADD COLUMN role TEXT")
            current = 2

        self._set_schema_version(conn, current)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connection."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def _now(self) -> str:
        """Get current timestamp in ISO format."""
        return datetime.now(timezone.utc).isoformat()

    def _row_to_outcome(self, row: sqlite3.Row) -> TaskOutcome:
        data = dict(row)
        return TaskOutcome(
            id=data["id"],
            project_id=data["project_id"],
            user_id=data.get("user_id") or "",
            task_summary=data["task_summary"],
            strategy=data["strategy"],
            outcome=data["outcome"],
            files_changed=_load_json(data.get("files_changed_json"), []),
            tool_sequence=_load_json(data.get("tool_sequence_json"), []),
            iteration_count=int(data.get("iteration_count") or 0),
            token_usage=_load_json(data.get("token_usage_json"), {}),
            role=data.get("role"),
            created_at=data["created_at"],
            embedding=_load_json(data.get("embedding_json"), None),
        )

    # =========================================================================
    # Task Outcomes
    # =========================================================================

    def insert_outcome(
        self,
        project_id: str,
        task_summary: str,
        strategy: str,
        outcome: str,
        user_id: str = "",
        files_changed: list[str] | None = None,
        tool_sequence: list[str] | None = None,
        iteration_count: int = 0,
        token_usage: dict[str, Any] | None = None,
        role: str | None = None,
        created_at: str | None = None,
    ) -> TaskOutcome:
        """Insert outcome metadata; the embedding is written later."""
        outcome_id = str(uuid4())
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO task_outcomes (
                    id, project_id, user_id, task_summary, strategy, outcome,
                    files_changed_json, tool_sequence_json, iteration_count,
                    token_usage_json, role, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    outcome_id,
                    project_id,
                    user_id,
                    task_summary,
                    strategy,
                    outcome,
                    json.dumps(files_changed or []),
                    json.dumps(tool_sequence or []),
                    iteration_count,
                    json.dumps(token_usage or {}),
                    role,
                    created_at or self._now(),
                ),
            )
            row = conn.execute("SELECT * FROM task_outcomes WHERE id = ?", (outcome_id,)).fetchone()
            return self._row_to_outcome(row)

    def update_outcome_embedding(self, outcome_id: str, embedding: list[float]) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE task_outcomes SET embedding_json = ? WHERE id = ?",
                (json.dumps(embedding), outcome_id),
            )
            return cursor.rowcount > 0

    def get_outcome(self, outcome_id: str) -> TaskOutcome | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM task_outcomes WHERE id = ?", (outcome_id,)).fetchone()
            return self._row_to_outcome(row) if row else None

    def list_outcomes(self, project_id: str, limit: int = 20, role: str | None = None) -> list[TaskOutcome]:
        """List outcomes for a project, newest first."""
        query = "SELECT * FROM task_outcomes WHERE project_id = ?"
        params: list[Any] = [project_id]
        if role is not None:
            query += " AND role = ?"
            params.append(role)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
            return [self._row_to_outcome(row) for row in rows]

    def search_by_embedding(
        self,
        project_id: str,
        embedding: list[float],
        threshold: float,
        limit: int,
        role: str | None = None,
    ) -> list[TaskOutcome]:
        """Cosine search over stored embeddings; rows at or above ``threshold``, best first."""
        query = "SELECT * FROM task_outcomes WHERE project_id = ? AND embedding_json IS NOT NULL"
        params: list[Any] = [project_id]
        if role is not None:
            query += " AND role = ?"
            params.append(role)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()

        scored = []
        for row in rows:
            outcome = self._row_to_outcome(row)
            if not outcome.embedding:
                continue
            outcome.similarity = cosine_similarity(embedding, outcome.embedding)
            if outcome.similarity >= threshold:
                scored.append(outcome)
        scored.sort(key=lambda item: item.similarity or 0.0, reverse=True)
        return scored[:limit]

    def search_by_keywords(
        self,
        project_id: str,
        keywords: list[str],
        limit: int,
        role: str | None = None,
    ) -> list[TaskOutcome]:
        """Successful outcomes whose summary contains any keyword, newest first."""
        words = [word.lower() for word in keywords if word]
        if not words:
            return []
        clauses = " OR ".join("instr(lower(task_summary), ?) > 0" for _ in words)
        query = f"SELECT * FROM task_outcomes WHERE project_id = ? AND outcome = 'success' AND ({clauses})"
        params: list[Any] = [project_id, *words]
        if role is not None:
            query += " AND role = ?"
            params.append(role)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()

        results = []
        for row in rows:
            outcome = self._row_to_outcome(row)
            summary = outcome.task_summary.lower()
            outcome.similarity = sum(1 for word in words if word in summary) / len(words)
            results.append(outcome)
        return results

    # =========================================================================
    # Preferences
    # =========================================================================

    def upsert_preference(
        self,
        project_id: str,
        category: str,
        preference: str,
        confidence: float,
    ) -> Preference:
        """Insert a preference or reinforce an existing one."""
        now = self._now()
        with self._connect() as conn:
            existing = conn.execute(
                "SELECT * FROM preferences WHERE project_id = ? AND category = ? AND preference = ?",
                (project_id, category, preference),
            ).fetchone()
            if existing is None:
                conn.execute(
                    """
                    INSERT INTO preferences (
                        project_id, category, preference, confidence,
                        observation_count, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, 1, ?, ?)
                    """,
                    (project_id, category, preference, min(confidence, MAX_PREFERENCE_CONFIDENCE), now, now),
                )
            else:
                reinforced = min(float(existing["confidence"]) * 0.7 + confidence * 0.3, MAX_PREFERENCE_CONFIDENCE)
                conn.execute(
                    """
                    UPDATE preferences
                    SET confidence = ?, observation_count = observation_count + 1, updated_at = ?
                    WHERE id = ?
                    """,
                    (reinforced, now, existing["id"]),
                )
            row = conn.execute(
                "SELECT * FROM preferences WHERE project_id = ? AND category = ? AND preference = ?",
                (project_id, category, preference),
            ).fetchone()
            return Preference(**dict(row))

    def list_preferences(self, project_id: str, min_confidence: float = 0.0) -> list[Preference]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM preferences
                WHERE project_id = ? AND confidence >= ?
                ORDER BY confidence DESC, observation_count DESC
                """,
                (project_id, min_confidence),
            ).fetchall()
            return [Preference(**dict(row)) for row in rows]
