"""
Outcome memory: what worked before on this project.

Outcome metadata is written synchronously; the embedding is computed on a
background queue and written back later. Retrieval prefers vector
similarity and falls back to keyword matching, so a missing embedding
only degrades ranking.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

from . import prompts
from .config import MemoryConfig
from .store import Store, TaskOutcome

logger = logging.getLogger(__name__)

MAX_SUMMARY_CHARS = 2000
MAX_KEYWORDS = 6
SECONDS_PER_DAY = 24 * 60 * 60

OUTCOME_SUCCESS = "success"
OUTCOME_PARTIAL = "partial"
OUTCOME_FAILURE = "failure"


class TextEmbedder(Protocol):
    def embed(self, text: str) -> list[float] | None: ...


@dataclass
class StoreOutcomeInput:
    project_id: str
    task_summary: str
    strategy: str
    outcome: str
    user_id: str = ""
    files_changed: list[str] = field(default_factory=list)
    tool_sequence: list[str] = field(default_factory=list)
    iteration_count: int = 0
    token_usage: dict[str, Any] = field(default_factory=dict)
    role: str | None = None


@dataclass
class BackfillJob:
    outcome_id: str
    text: str
    attempts: int = 0
    last_error: str | None = None


class EmbeddingBackfillQueue:
    """At-least-once embedding writes with bounded attempts and a dead-letter list."""

    def __init__(self, store: Store, embedder: TextEmbedder, max_attempts: int = 3, workers: int = 1):
        self.store = store
        self.embedder = embedder
        self.max_attempts = max(1, max_attempts)
        self.worker_count = max(1, workers)
        self.dead_letters: list[BackfillJob] = []
        self._queue: asyncio.Queue[BackfillJob] | None = None
        self._workers: list[asyncio.Task[None]] = []

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    def start(self) -> None:
        if self._queue is None:
            self._queue = asyncio.Queue()
        self._workers = [task for task in self._workers if not task.done()]
        while len(self._workers) < self.worker_count:
            self._workers.append(asyncio.create_task(self._worker()))

    def submit(self, job: BackfillJob) -> None:
        """Enqueue a job; must be called from inside a running event loop."""
        self.start()
        assert self._queue is not None
        self._queue.put_nowait(job)

    async def _attempt(self, job: BackfillJob) -> bool:
        job.attempts += 1
        try:
            embedding = await asyncio.to_thread(self.embedder.embed, job.text)
            if embedding is None:
                job.last_error = "embedder returned no vector"
                return False
            if not await asyncio.to_thread(self.store.update_outcome_embedding, job.outcome_id, embedding):
                job.last_error = "outcome row not found"
                return False
        except Exception as exc:  # noqa: BLE001
            job.last_error = str(exc)
            return False
        return True

    async def _worker(self) -> None:
        assert self._queue is not None
        while True:
            job = await self._queue.get()
            try:
                if await self._attempt(job):
                    continue
                if job.attempts < self.max_attempts:
                    logger.info(
                        "Embedding backfill for %s failed (attempt %d/%d): %s",
                        job.outcome_id,
                        job.attempts,
                        self.max_attempts,
                        job.last_error,
                    )
                    self._queue.put_nowait(job)
                else:
                    logger.warning(
                        "Embedding backfill for %s gave up after %d attempts: %s",
                        job.outcome_id,
                        job.attempts,
                        job.last_error,
                    )
                    self.dead_letters.append(job)
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        if self._queue is not None:
            await self._queue.join()

    async def stop(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []


def extract_keywords(query: str) -> list[str]:
    return [word for word in query.lower().split() if len(word) > 3][:MAX_KEYWORDS]


def _parse_timestamp(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def decayed_score(similarity: float, age_days: float, decay_rate: float = 0.05) -> float:
    return similarity * (1 - decay_rate) ** (max(age_days, 0.0) / 7)


def format_for_prompt(
    outcomes: list[TaskOutcome],
    threshold: float = 0.7,
    max_age_days: float = 90,
    max_results: int = 3,
    decay_rate: float = 0.05,
    now: datetime | None = None,
) -> str:
    """Render the outcomes that survive age and decayed-score gates, best first."""
    current = now or datetime.now(timezone.utc)
    scored: list[tuple[float, TaskOutcome]] = []
    for outcome in outcomes:
        created = _parse_timestamp(outcome.created_at)
        if created is None:
            continue
        age_days = (current - created).total_seconds() / SECONDS_PER_DAY
        if age_days > max_age_days:
            continue
        score = decayed_score(outcome.similarity or 0.0, age_days, decay_rate)
        if score < threshold:
            continue
        scored.append((score, outcome))
    scored.sort(key=lambda item: item[0], reverse=True)
    scored = scored[:max_results]
    if not scored:
        return ""

    lines = []
    for rank, (score, outcome) in enumerate(scored, start=1):
        files = ", ".join(outcome.files_changed) if outcome.files_changed else "unknown"
        tools = " → ".join(outcome.tool_sequence[:5]) if outcome.tool_sequence else "unknown"
        lines.append(
            f'{rank}. "{outcome.task_summary[:150]}" ({round(score * 100)}% match)\n'
            f"   Strategy: {outcome.strategy or 'unknown'} | Files: {files}\n"
            f"   Tool flow: {tools} | Iterations: {outcome.iteration_count}"
        )
    return f"{prompts.MEMORY_BLOCK_HEADER}\n\n" + "\n\n".join(lines) + f"\n\n{prompts.MEMORY_BLOCK_FOOTER}"


class OutcomeMemory:
    def __init__(self, db: Store, embedder: TextEmbedder, config: MemoryConfig | None = None):
        self.db = db
        self.embedder = embedder
        self.config = config or MemoryConfig()
        self.backfill = EmbeddingBackfillQueue(
            db,
            embedder,
            max_attempts=self.config.backfill_max_attempts,
            workers=self.config.backfill_workers,
        )

    async def store(self, item: StoreOutcomeInput) -> str | None:
        """Insert outcome metadata and queue its embedding. Returns the new id, or None."""
        summary = item.task_summary[:MAX_SUMMARY_CHARS]
        try:
            stored = await asyncio.to_thread(
                self.db.insert_outcome,
                project_id=item.project_id,
                task_summary=summary,
                strategy=item.strategy,
                outcome=item.outcome,
                user_id=item.user_id,
                files_changed=item.files_changed,
                tool_sequence=item.tool_sequence,
                iteration_count=item.iteration_count,
                token_usage=item.token_usage,
                role=item.role,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to store task outcome: %s", exc)
            return None
        self.backfill.submit(BackfillJob(outcome_id=stored.id, text=summary))
        return stored.id

    def retrieve_similar(
        self,
        project_id: str,
        query: str,
        max_results: int = 5,
        threshold: float = 0.5,
        role: str | None = None,
    ) -> list[TaskOutcome]:
        """Vector search first; keyword search when it errors or finds nothing."""
        try:
            embedding = self.embedder.embed(query)
            if embedding is not None:
                found = self.db.search_by_embedding(project_id, embedding, threshold, max_results, role=role)
                if found:
                    return found
        except Exception as exc:  # noqa: BLE001
            logger.warning("Vector outcome search failed, using keywords: %s", exc)

        keywords = extract_keywords(query)
        if not keywords:
            return []
        try:
            return self.db.search_by_keywords(project_id, keywords, max_results, role=role)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Keyword outcome search failed: %s", exc)
            return []

    def prompt_block(self, project_id: str, query: str, role: str | None = None) -> str:
        config = self.config
        outcomes = self.retrieve_similar(
            project_id,
            query,
            max_results=config.max_results,
            threshold=config.retrieve_threshold,
            role=role,
        )
        return format_for_prompt(
            outcomes,
            threshold=config.prompt_threshold,
            max_age_days=config.max_age_days,
            max_results=config.prompt_max_results,
            decay_rate=config.decay_rate,
        )
