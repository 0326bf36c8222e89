"""Background enrichment jobs.

Ingestion returns before media and articles are fetched. Each bookmark
gets an EnrichmentJob describing its latest background run, so callers
(and tests) can wait for completion instead of polling.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


class EnrichmentStatus(str, Enum):
    """Status of an enrichment job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class EnrichmentJob:
    """Tracks the latest enrichment run of one bookmark."""

    bookmark_id: str
    status: EnrichmentStatus = EnrichmentStatus.PENDING
    media: bool = False  # media fan-out scheduled
    articles: bool = False  # article fan-out scheduled
    media_saved: int = 0
    articles_saved: int = 0
    links_seen: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error: str | None = None

    @property
    def done(self) -> bool:
        return self.status in (EnrichmentStatus.COMPLETED, EnrichmentStatus.FAILED)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for JSON serialization."""
        return {
            "bookmark_id": self.bookmark_id,
            "status": self.status.value,
            "media": self.media,
            "articles": self.articles,
            "media_saved": self.media_saved,
            "articles_saved": self.articles_saved,
            "links_seen": self.links_seen,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
        }


EnrichmentWork = Callable[[EnrichmentJob], Awaitable[None]]


class EnrichmentTracker:
    """In-process registry of enrichment jobs and the tasks running them.

    Runs for the same bookmark are serialized by a per-bookmark lock;
    runs for different bookmarks proceed concurrently.
    """

    def __init__(self) -> None:
        self._jobs: dict[str, EnrichmentJob] = {}
        self._tasks: dict[str, set[asyncio.Task]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, bookmark_id: str) -> asyncio.Lock:
        lock = self._locks.get(bookmark_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[bookmark_id] = lock
        return lock

    def get(self, bookmark_id: str) -> EnrichmentJob | None:
        return self._jobs.get(bookmark_id)

    def pending_count(self) -> int:
        return sum(len(tasks) for tasks in self._tasks.values())

    def forget(self, bookmark_id: str) -> None:
        """Drop the job record of a deleted bookmark. Running tasks are left alone."""
        self._jobs.pop(bookmark_id, None)

    def clear(self) -> None:
        self._jobs.clear()

    def start(
        self,
        bookmark_id: str,
        work: EnrichmentWork,
        media: bool = False,
        articles: bool = False,
    ) -> EnrichmentJob:
        """Register a new job and schedule work(job) on the running loop.

        When nothing is scheduled the job is recorded as completed
        straight away and no task is created.
        """
        job = EnrichmentJob(bookmark_id=bookmark_id, media=media, articles=articles)
        self._jobs[bookmark_id] = job

        if not (media or articles):
            job.status = EnrichmentStatus.COMPLETED
            job.finished_at = job.created_at
            return job

        task = asyncio.create_task(self._run(job, work), name=f"enrich:{bookmark_id}")
        self._tasks.setdefault(bookmark_id, set()).add(task)
        task.add_done_callback(lambda t, bid=bookmark_id: self._on_done(bid, t))
        return job

    def _on_done(self, bookmark_id: str, task: asyncio.Task) -> None:
        tasks = self._tasks.get(bookmark_id)
        if tasks is None:
            return
        tasks.discard(task)
        if not tasks:
            del self._tasks[bookmark_id]
            lock = self._locks.get(bookmark_id)
            if lock is not None and not lock.locked():
                del self._locks[bookmark_id]

    async def _run(self, job: EnrichmentJob, work: EnrichmentWork) -> None:
        async with self.lock_for(job.bookmark_id):
            job.status = EnrichmentStatus.RUNNING
            job.started_at = datetime.now(timezone.utc)
            try:
                await work(job)
                job.status = EnrichmentStatus.COMPLETED
            except Exception as e:
                logger.exception(f"Enrichment failed for bookmark {job.bookmark_id}")
                job.status = EnrichmentStatus.FAILED
                job.error = f"{type(e).__name__}: {e}"
            finally:
                job.finished_at = datetime.now(timezone.utc)

    async def wait(self, bookmark_id: str, timeout: float | None = None) -> EnrichmentJob | None:
        """Wait for every scheduled run of bookmark_id, then return its job.

        Returns early (with the job still running) when timeout expires.
        """
        tasks = list(self._tasks.get(bookmark_id, ()))
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)
        return self.get(bookmark_id)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for all in-flight enrichment, e.g. on shutdown."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            tasks = [t for tasks in self._tasks.values() for t in tasks]
            if not tasks:
                return
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                logger.warning(f"Gave up waiting for {len(tasks)} enrichment task(s)")
                return
            await asyncio.wait(tasks, timeout=remaining)
