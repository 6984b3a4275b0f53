"""
Delay Scheduler — Durable resume points for flow sessions.

Delay nodes, waitInput timeouts, send retries and step-limit continuations
all become rows in the delay job table. A background sweep claims due rows
(each claim is a conditional update, so a job runs on exactly one worker)
and hands them to the Flow Session Engine.

Job outcomes after a claim:
  session missing or completed  → done
  engine reports session_locked → rescheduled +locked_reschedule_seconds
  engine raised                 → failed once attempts >= max_job_attempts,
                                  else rescheduled +error_reschedule_seconds
  anything else                 → done
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from config.settings import FlowConfig
from database.store_base import BaseFlowStore
from models.schemas import DelayJob, DelayJobKind, DelayJobStatus, utcnow

logger = structlog.get_logger()

AdvanceFn = Callable[..., Awaitable[Any]]


class DelayScheduler:
    """
    Usage:
        scheduler = DelayScheduler(store, settings.flow)
        scheduler.bind(engine.advance)
        await scheduler.start_background()
    """

    def __init__(self, store: BaseFlowStore, config: FlowConfig = None,
                 advance: AdvanceFn = None):
        self.store = store
        self.config = config or FlowConfig()
        self._advance = advance
        self._task: Optional[asyncio.Task] = None

    def bind(self, advance: AdvanceFn):
        """Attach the engine entry point (the engine itself schedules through us)."""
        self._advance = advance

    # ── Scheduling ────────────────────────────────────────────

    async def schedule(self, session_id: str, run_at: datetime,
                       kind: DelayJobKind = DelayJobKind.DELAY,
                       tenant_id: str = "") -> DelayJob:
        job = await self.store.create_delay_job(DelayJob(
            session_id=session_id, tenant_id=tenant_id, run_at=run_at, kind=kind,
        ))
        logger.info("delay_job_scheduled",
                    job_id=job.id,
                    session_id=session_id,
                    kind=kind.value,
                    run_at=run_at.isoformat())
        return job

    async def cancel_all(self, session_id: str) -> int:
        cancelled = await self.store.cancel_delay_jobs(session_id)
        if cancelled:
            logger.info("delay_jobs_cancelled", session_id=session_id, count=cancelled)
        return cancelled

    # ── Sweep ─────────────────────────────────────────────────

    async def sweep(self, now: datetime = None) -> dict[str, int]:
        """Claim and run every due job (up to one batch). Returns outcome counts."""
        if self._advance is None:
            raise RuntimeError("DelayScheduler has no engine bound")

        now = now or utcnow()
        jobs = await self.store.claim_due_jobs(now, self.config.sweep_batch_size)
        counts = {"claimed": len(jobs), "done": 0, "rescheduled": 0, "failed": 0}

        for job in jobs:
            outcome = await self._run_job(job)
            counts[outcome] += 1

        if jobs:
            logger.info("delay_sweep_complete", **counts)
        return counts

    async def _run_job(self, job: DelayJob) -> str:
        session = await self.store.get_flow_session(job.session_id)
        if session is None or session.is_terminal:
            await self.store.finish_delay_job(job.id, DelayJobStatus.DONE)
            return "done"

        try:
            result = await self._advance(job.session_id, job_kind=job.kind)
        except Exception as e:
            logger.error("delay_job_error",
                         job_id=job.id,
                         session_id=job.session_id,
                         attempts=job.attempts,
                         error=str(e),
                         exc_info=True)
            if job.attempts >= self.config.max_job_attempts:
                await self.store.finish_delay_job(job.id, DelayJobStatus.FAILED, error=str(e))
                return "failed"
            retry_at = utcnow() + timedelta(seconds=self.config.error_reschedule_seconds)
            await self.store.reschedule_delay_job(job.id, retry_at, error=str(e))
            return "rescheduled"

        if getattr(result, "reason", "") == "session_locked":
            retry_at = utcnow() + timedelta(seconds=self.config.locked_reschedule_seconds)
            await self.store.reschedule_delay_job(job.id, retry_at, error="session_locked")
            logger.info("delay_job_session_locked", job_id=job.id, session_id=job.session_id)
            return "rescheduled"

        await self.store.finish_delay_job(job.id, DelayJobStatus.DONE)
        return "done"

    # ── Background loop ───────────────────────────────────────

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self):
        logger.info("delay_sweep_started", interval=self.config.sweep_interval_seconds)
        while True:
            try:
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("delay_sweep_error", error=str(e), exc_info=True)
            await asyncio.sleep(self.config.sweep_interval_seconds)
