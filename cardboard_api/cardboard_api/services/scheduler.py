"""Background runner for reconciliation and reservation cleanup.

The HTTP triggers under ``/api/v1/cron`` are the normal way these jobs are
driven.  Single-replica deployments without an external cron can set
``API_SCHEDULER_ENABLED=true`` instead, and the app starts an asyncio task
that polls once a minute.

Only three cron shapes are understood, which covers the maintenance jobs:
hourly (``M * * * *``), daily (``M H * * *``) and weekly (``M H * * D``,
Sunday = 0).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy.exc import DBAPIError

logger = logging.getLogger(__name__)

JobAction = Callable[[], Awaitable[Any]]


# ---------------------------------------------------------------------------
# Cron subset
# ---------------------------------------------------------------------------


def _field(raw: str, upper: int, expression: str) -> int:
    if not raw.isdigit() or int(raw) > upper:
        raise ValueError(f"Unsupported cron expression {expression!r}: bad field {raw!r}")
    return int(raw)


def compute_next_run(cron_expression: str, from_time: datetime) -> datetime:
    """First firing of *cron_expression* strictly after *from_time*.

    Raises
    ------
    ValueError
        For anything other than the hourly, daily or weekly shapes, or a
        field out of range.
    """
    fields = cron_expression.split()
    if len(fields) != 5 or fields[2:4] != ["*", "*"]:
        raise ValueError(f"Unsupported cron expression {cron_expression!r}")
    minute_raw, hour_raw, _, _, dow_raw = fields

    minute = _field(minute_raw, 59, cron_expression)
    base = from_time.replace(minute=minute, second=0, microsecond=0)

    if hour_raw == "*":
        if dow_raw != "*":
            raise ValueError(f"Unsupported cron expression {cron_expression!r}")
        step = timedelta(hours=1)
        candidate = base
    else:
        candidate = base.replace(hour=_field(hour_raw, 23, cron_expression))
        if dow_raw == "*":
            step = timedelta(days=1)
        else:
            step = timedelta(weeks=1)
            # datetime.weekday() is Monday=0, cron is Sunday=0.
            wanted = (_field(dow_raw, 6, cron_expression) + 6) % 7
            candidate += timedelta(days=(wanted - candidate.weekday()) % 7)

    if candidate <= from_time:
        candidate += step
    return candidate


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


@dataclass
class ScheduledJob:
    name: str
    cron_expression: str
    action: JobAction
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None


class MaintenanceScheduler:
    """Polls registered jobs and runs the due ones one after another.

    A failing job is logged and moved to its next slot, so one broken job
    neither stops the loop nor gets retried every poll.
    """

    def __init__(self, poll_seconds: float = 60.0) -> None:
        self._poll_seconds = poll_seconds
        self._jobs: list[ScheduledJob] = []
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None

    @property
    def jobs(self) -> list[ScheduledJob]:
        return list(self._jobs)

    def add_job(self, name: str, cron_expression: str, action: JobAction) -> ScheduledJob:
        first = compute_next_run(cron_expression, datetime.now(UTC))
        job = ScheduledJob(name=name, cron_expression=cron_expression, action=action, next_run_at=first)
        self._jobs.append(job)
        logger.info("Job %s scheduled with %r; first run %s", name, cron_expression, first.isoformat())
        return job

    async def start(self) -> None:
        if self._task is not None:
            logger.warning("Maintenance scheduler is already running")
            return
        self._task = asyncio.create_task(self._loop(), name="cardboard-maintenance")
        logger.info("Maintenance scheduler started (%d jobs)", len(self._jobs))

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Maintenance scheduler stopped")

    async def _loop(self) -> None:
        while True:
            await self.run_due_jobs()
            await asyncio.sleep(self._poll_seconds)

    async def run_due_jobs(self, now: datetime | None = None) -> list[str]:
        """Run the jobs whose slot has come; returns their names in run order."""
        now = now or datetime.now(UTC)
        due = [job for job in self._jobs if job.next_run_at is not None and job.next_run_at <= now]
        for job in due:
            await self._run(job, now)
        return [job.name for job in due]

    async def _run(self, job: ScheduledJob, now: datetime) -> None:
        try:
            outcome = await job.action()
        except DBAPIError as exc:
            logger.error("Job %s hit a database error: %s", job.name, exc, exc_info=True)
        except Exception:
            logger.exception("Job %s failed", job.name)
        else:
            logger.info("Job %s finished: %s", job.name, outcome)
        job.last_run_at = now
        job.next_run_at = compute_next_run(job.cron_expression, now)
