"""
Queue Consumer — Pulls flow-step jobs from the queue and drives the engine.

Runs as one or more async tasks inside the application process.
For horizontal scaling, deploy multiple processes with the same consumer_group;
Redis Streams guarantees each job is delivered to exactly one consumer, and
the session processing lock keeps two workers off the same session anyway.

Topology:
  ┌──────────────────┐       ┌─────────────────┐       ┌────────────┐
  │ Trigger dispatch │──pub──▶│ flow:steps      │──────▶│  Consumer  │
  │ Webhook ingest   │       │ (Redis Stream)   │       │  Worker(s) │
  └──────────────────┘       └─────────────────┘       └─────┬──────┘
                                                              │
                             ┌─────────────────┐              │
                             │ flow:delayed    │◀── retry ────┤
                             │ (sorted set)    │              │
                             └────────┬────────┘              │
                                      │ promote               │
                                      ▼                       │
                             ┌─────────────────┐              │
                             │ flow:steps      │              │
                             └─────────────────┘              │
                             ┌─────────────────┐              │
                             │ flow:dlq        │◀── exhaust ──┘
                             └─────────────────┘
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Optional

from job_queue.message_queue import (
    JobKind, MessageQueue, QueueJob, Queues,
    get_message_queue,
)

logger = structlog.get_logger()


class DispatchError(Exception):
    """Raised when a flow-step job could not run and should be retried."""
    pass


class FlowStepConsumer:
    """
    Consumes jobs from the flow-step queue and invokes the Flow Session Engine.

    Usage:
        consumer = FlowStepConsumer(engine, queue)
        await consumer.start_background()
        await consumer.stop()
    """

    def __init__(
        self,
        engine,  # core.engine.FlowSessionEngine
        queue: MessageQueue = None,
        consumer_group: str = "flow-workers",
        consumer_name: str = "",
        concurrency: int = 5,
    ):
        self.engine = engine
        self.queue = queue or get_message_queue()
        self.consumer_group = consumer_group
        self.consumer_name = consumer_name
        self.concurrency = concurrency
        self._tasks: list[asyncio.Task] = []
        self._semaphore = asyncio.Semaphore(concurrency)

    async def start(self):
        """Start consuming; blocks until stop() is called."""
        logger.info("flow_consumer_starting",
                    group=self.consumer_group,
                    concurrency=self.concurrency)
        await self.queue.consume(
            queue=Queues.FLOW_STEPS,
            handler=self.handle_job,
            consumer_group=self.consumer_group,
            consumer_name=self.consumer_name,
        )

    async def start_background(self) -> asyncio.Task:
        """Start consuming in a background task. Returns the task handle."""
        task = asyncio.create_task(self.start())
        self._tasks.append(task)
        return task

    async def stop(self):
        """Gracefully stop all consumer tasks."""
        self.queue.stop_consuming()
        for task in self._tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("flow_consumer_stopped")

    async def handle_job(self, job: QueueJob):
        """
        Run one step job. `input` jobs carry the contact's answer to a
        waitInput/menu node; `advance` jobs just move the cursor. A locked
        session raises DispatchError so the queue retries the job later.
        """
        async with self._semaphore:
            logger.info("processing_job",
                        job_id=job.job_id,
                        session_id=job.session_id,
                        kind=job.kind,
                        attempt=job.attempt)

            if job.kind == JobKind.INPUT:
                result = await self.engine.advance(job.session_id, user_input=job.user_input or "")
            else:
                result = await self.engine.advance(job.session_id)

            if result.reason == "session_locked":
                logger.info("job_session_locked", job_id=job.job_id, session_id=job.session_id)
                raise DispatchError(f"Session {job.session_id} is locked")

            logger.info("job_processed",
                        job_id=job.job_id,
                        status=result.status,
                        reason=result.reason,
                        steps=result.steps)
            return result


# ──────────────────────────────────────────────────────────────
#  Delayed Job Promoter
# ──────────────────────────────────────────────────────────────

class DelayedJobPromoter:
    """
    Background task that periodically moves retried jobs whose scheduled_at
    has arrived back onto the flow-step queue.
    """

    def __init__(self, queue: MessageQueue = None, interval_seconds: int = 5):
        self.queue = queue or get_message_queue()
        self.interval = interval_seconds
        self._task: Optional[asyncio.Task] = None

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
        logger.info("delayed_promoter_started", interval=self.interval)
        while True:
            try:
                await self.queue.promote_delayed()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("promoter_error", error=str(e), exc_info=True)
            await asyncio.sleep(self.interval)
