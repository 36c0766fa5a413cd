"""
Cooperative background scheduler.

Each task kind runs on its own interval in the FastAPI event loop and owns a
single slot. A tick that finds its slot taken is skipped, never queued, and
the slot is released whatever the outcome.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.orm import sessionmaker

from pulse.config import Settings, settings as default_settings
from pulse.core.scenarios import simulate_sweep
from pulse.core.sentiment import analyze_next_post
from pulse.core.viability import assess_next_candidate
from pulse.db import session_scope
from pulse.services.classifier import TextClassifier
from pulse.sources.collector import collect_next_post, reprocess_sweep
from pulse.sources.profiles import collect_next_profile
from pulse.utils import now_utc

logger = logging.getLogger(__name__)


class TaskKind(str, Enum):
    PROFILE = "profile"
    COMMENTS = "comments"
    REPROCESS = "reprocess"
    SENTIMENT = "sentiment"
    VIABILITY = "viability"
    SCENARIO = "scenario"


class SlotBusy(RuntimeError):
    """The task kind already has a run in flight."""


class Outcome(str, Enum):
    DONE = "done"
    IDLE = "idle"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass
class TaskSlot:
    """Single-occupancy slot guarding one task kind."""

    kind: TaskKind
    interval: float
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    runs: int = 0
    last_outcome: Optional[Outcome] = None
    last_error: Optional[str] = None
    last_run_at: Optional[datetime] = None

    @property
    def busy(self) -> bool:
        return self.lock.locked()


@dataclass
class RunResult:
    kind: TaskKind
    outcome: Outcome
    processed: int = 0
    detail: Optional[str] = None


def _count(result: Any) -> int:
    if result is None:
        return 0
    if isinstance(result, list):
        return len(result)
    return 1


class Scheduler:
    """Runs every task kind on its interval and exposes manual force-runs."""

    def __init__(
        self,
        session_factory: sessionmaker,
        scraper: Any,
        classifier: TextClassifier,
        config: Settings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.session_factory = session_factory
        self.scraper = scraper
        self.classifier = classifier
        self.config = config or default_settings
        self._sleep = sleep
        self._tasks: List[asyncio.Task] = []
        self.slots: Dict[TaskKind, TaskSlot] = {
            TaskKind.PROFILE: TaskSlot(TaskKind.PROFILE, self.config.PROFILE_INTERVAL),
            TaskKind.COMMENTS: TaskSlot(TaskKind.COMMENTS, self.config.COMMENTS_INTERVAL),
            TaskKind.REPROCESS: TaskSlot(TaskKind.REPROCESS, self.config.REPROCESS_INTERVAL),
            TaskKind.SENTIMENT: TaskSlot(TaskKind.SENTIMENT, self.config.SENTIMENT_INTERVAL),
            TaskKind.VIABILITY: TaskSlot(TaskKind.VIABILITY, self.config.VIABILITY_INTERVAL),
            TaskKind.SCENARIO: TaskSlot(TaskKind.SCENARIO, self.config.SCENARIO_INTERVAL),
        }

    async def _execute(self, kind: TaskKind, force: bool) -> Any:
        """One unit (or one bounded sweep) of work, in its own transaction."""
        with session_scope(self.session_factory) as session:
            if kind is TaskKind.PROFILE:
                return await collect_next_profile(session, self.scraper, self.config, force=force)
            if kind is TaskKind.COMMENTS:
                return await collect_next_post(session, self.scraper, self.config, force=force)
            if kind is TaskKind.REPROCESS:
                return await reprocess_sweep(session, self.scraper, self.config, force=force, sleep=self._sleep)
            if kind is TaskKind.SENTIMENT:
                return await analyze_next_post(session, self.classifier, self.config, force=force, sleep=self._sleep)
            if kind is TaskKind.VIABILITY:
                return await assess_next_candidate(
                    session, self.classifier, self.config, force=force, sleep=self._sleep
                )
            return await simulate_sweep(session, self.config, force=force, sleep=self._sleep)

    async def run_now(self, kind: TaskKind, force: bool = False) -> RunResult:
        """
        Run one tick of a task kind.

        Returns SKIPPED without touching the slot when a tick is already in
        flight. Errors are logged and reported, never raised.
        """
        kind = TaskKind(kind)
        try:
            async with self.occupy(kind) as slot:
                return await self._tick(slot, force)
        except SlotBusy:
            logger.info("Task %s still running, tick skipped", kind.value)
            return RunResult(kind, Outcome.SKIPPED, detail="already running")

    @asynccontextmanager
    async def occupy(self, kind: TaskKind) -> AsyncIterator[TaskSlot]:
        """
        Hold the slot of a task kind.

        Raises:
            SlotBusy: A run of this kind is already in flight
        """
        slot = self.slots[TaskKind(kind)]
        if slot.lock.locked():
            raise SlotBusy(slot.kind.value)
        async with slot.lock:
            yield slot

    async def _tick(self, slot: TaskSlot, force: bool) -> RunResult:
        kind = slot.kind
        slot.last_run_at = now_utc()
        slot.runs += 1
        try:
            result = await self._execute(kind, force)
        except Exception as e:
            logger.exception("Task %s failed", kind.value)
            slot.last_outcome = Outcome.ERROR
            slot.last_error = f"{type(e).__name__}: {e}"
            return RunResult(kind, Outcome.ERROR, detail=slot.last_error)

        processed = _count(result)
        slot.last_outcome = Outcome.DONE if processed else Outcome.IDLE
        slot.last_error = None
        return RunResult(kind, slot.last_outcome, processed=processed)

    async def _loop(self, kind: TaskKind) -> None:
        slot = self.slots[kind]
        logger.info("Task %s scheduled every %.0fs", kind.value, slot.interval)
        while True:
            await self._sleep(slot.interval)
            await self.run_now(kind)

    def start(self) -> None:
        """Start one loop per task kind on the running event loop."""
        if self._tasks:
            return
        self._tasks = [asyncio.create_task(self._loop(kind), name=f"pulse-{kind.value}") for kind in TaskKind]
        logger.info("Scheduler started with %d tasks", len(self._tasks))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Scheduler stopped")

    def status(self) -> List[Dict[str, Any]]:
        return [
            {
                "kind": slot.kind.value,
                "interval_seconds": slot.interval,
                "busy": slot.busy,
                "runs": slot.runs,
                "last_outcome": slot.last_outcome.value if slot.last_outcome else None,
                "last_error": slot.last_error,
                "last_run_at": slot.last_run_at,
            }
            for slot in self.slots.values()
        ]


__all__ = ["Outcome", "RunResult", "Scheduler", "SlotBusy", "TaskKind", "TaskSlot"]
