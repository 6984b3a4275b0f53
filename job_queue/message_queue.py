"""
Flow-step queue — Abstract interface with Redis Streams and in-memory backends.

The trigger dispatcher and webhook ingestion never run workflow steps inline;
they publish a job here and a consumer drives the Flow Session Engine.

Queue Topology:
  flow:steps     — Steps ready to run (first step of a new session, inbound input)
  flow:delayed   — Handler retries with a future execution time (sorted set in Redis)
  flow:dlq       — Dead-letter queue for jobs that exhausted their attempts

Message Schema:
  {
      "job_id":        unique job identifier,
      "session_id":    FlowSession ID,
      "tenant_id":     owning tenant,
      "kind":          advance|input,
      "user_input":    text answering a waitInput/menu node (input jobs only),
      "attempt":       current attempt number (for retries),
      "max_attempts":  ceiling before DLQ,
      "scheduled_at":  ISO timestamp when the job should execute,
      "created_at":    ISO timestamp when the job was enqueued,
      "metadata":      arbitrary extra data,
  }
"""
from __future__ import annotations

import asyncio
import json
import uuid
import structlog
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Optional

from models.schemas import utcnow

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Job Model
# ──────────────────────────────────────────────────────────────

class JobKind:
    ADVANCE = "advance"
    INPUT = "input"


@dataclass
class QueueJob:
    """A unit of work on the flow-step queue."""
    session_id: str
    kind: str = JobKind.ADVANCE
    tenant_id: str = ""
    user_input: Optional[str] = None
    attempt: int = 0
    max_attempts: int = 3
    scheduled_at: str = ""
    created_at: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    job_id: str = ""

    def __post_init__(self):
        if not self.job_id:
            self.job_id = f"job_{uuid.uuid4().hex[:12]}"
        if not self.created_at:
            self.created_at = utcnow().isoformat()
        if not self.scheduled_at:
            self.scheduled_at = self.created_at

    def to_dict(self) -> dict[str, str]:
        """Flatten to string fields (Redis stream entries are flat string maps)."""
        d = asdict(self)
        d["metadata"] = json.dumps(d["metadata"])
        d["attempt"] = str(d["attempt"])
        d["max_attempts"] = str(d["max_attempts"])
        # None is not a valid stream value; an absent key means no input
        if d["user_input"] is None:
            del d["user_input"]
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueueJob:
        data = dict(data)
        if isinstance(data.get("metadata"), str):
            data["metadata"] = json.loads(data["metadata"])
        data["attempt"] = int(data.get("attempt", 0))
        data["max_attempts"] = int(data.get("max_attempts", 3))
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})

    @property
    def run_at(self) -> datetime:
        return datetime.fromisoformat(self.scheduled_at)

    def next_retry_job(self, backoff_seconds: int = 5) -> QueueJob:
        """Create a copy with incremented attempt and exponential backoff."""
        retry_at = utcnow() + timedelta(seconds=backoff_seconds * (2 ** self.attempt))
        return QueueJob(
            session_id=self.session_id,
            kind=self.kind,
            tenant_id=self.tenant_id,
            user_input=self.user_input,
            attempt=self.attempt + 1,
            max_attempts=self.max_attempts,
            scheduled_at=retry_at.isoformat(),
            created_at=self.created_at,
            metadata={**self.metadata, "last_failure_at": utcnow().isoformat()},
            job_id=self.job_id,  # same job_id across retries for tracing
        )


# ──────────────────────────────────────────────────────────────
#  Queue Names
# ──────────────────────────────────────────────────────────────

class Queues:
    FLOW_STEPS = "flow:steps"
    DELAYED = "flow:delayed"
    DLQ = "flow:dlq"


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class MessageQueue(ABC):
    """Abstract message queue interface."""

    retry_backoff_base: int = 5

    @abstractmethod
    async def connect(self):
        """Establish connection to the queue backend."""
        ...

    @abstractmethod
    async def close(self):
        """Gracefully shut down."""
        ...

    @abstractmethod
    async def publish(self, queue: str, job: QueueJob):
        """Publish a job to a queue."""
        ...

    @abstractmethod
    async def publish_delayed(self, job: QueueJob):
        """Publish a job that should execute at job.scheduled_at."""
        ...

    @abstractmethod
    async def consume(
        self,
        queue: str,
        handler: Callable[[QueueJob], Any],
        consumer_group: str = "default",
        consumer_name: str = "",
        batch_size: int = 10,
    ):
        """
        Start consuming from a queue. Blocks and calls handler for each job.
        A handler exception routes the job through nack().
        """
        ...

    @abstractmethod
    async def nack(self, queue: str, job: QueueJob, consumer_group: str = "default"):
        """Negative-acknowledge: route to retry or DLQ."""
        ...

    @abstractmethod
    async def queue_length(self, queue: str) -> int:
        """Return the number of pending jobs in a queue."""
        ...

    @abstractmethod
    async def promote_delayed(self) -> int:
        """Move delayed jobs whose scheduled_at has arrived to the step queue."""
        ...

    def stop_consuming(self):
        self._running = False


# ──────────────────────────────────────────────────────────────
#  Redis Streams Implementation
# ──────────────────────────────────────────────────────────────

class RedisMessageQueue(MessageQueue):
    """
    Production queue backed by Redis Streams + a Sorted Set.

    - The step queue and DLQ are Redis Streams with consumer groups
    - The delayed queue is a Redis Sorted Set (ZRANGEBYSCORE for promotion)
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", retry_backoff_base: int = 5):
        self._redis_url = redis_url
        self._redis = None
        self._running = False
        self.retry_backoff_base = retry_backoff_base

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            max_connections=20,
        )
        await self._redis.ping()
        logger.info("redis_queue_connected", url=self._redis_url)

    async def close(self):
        self._running = False
        if self._redis:
            await self._redis.aclose()

    async def _ensure_group(self, queue: str, group: str):
        """Create consumer group if it doesn't exist."""
        from redis.exceptions import ResponseError
        try:
            await self._redis.xgroup_create(queue, group, id="0", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def publish(self, queue: str, job: QueueJob):
        await self._redis.xadd(queue, job.to_dict())
        logger.info("job_published",
                    queue=queue,
                    job_id=job.job_id,
                    session_id=job.session_id,
                    kind=job.kind)

    async def publish_delayed(self, job: QueueJob):
        score = job.run_at.timestamp()
        payload = json.dumps(job.to_dict())
        await self._redis.zadd(Queues.DELAYED, {payload: score})
        logger.info("delayed_job_published",
                    job_id=job.job_id,
                    scheduled_at=job.scheduled_at)

    async def consume(
        self,
        queue: str,
        handler: Callable[[QueueJob], Any],
        consumer_group: str = "default",
        consumer_name: str = "",
        batch_size: int = 10,
    ):
        if not consumer_name:
            consumer_name = f"worker_{uuid.uuid4().hex[:8]}"

        await self._ensure_group(queue, consumer_group)
        self._running = True
        logger.info("consumer_started",
                    queue=queue,
                    group=consumer_group,
                    consumer=consumer_name)

        while self._running:
            try:
                messages = await self._redis.xreadgroup(
                    groupname=consumer_group,
                    consumername=consumer_name,
                    streams={queue: ">"},
                    count=batch_size,
                    block=2000,
                )

                if not messages:
                    continue

                for _stream, stream_messages in messages:
                    for message_id, fields in stream_messages:
                        job = QueueJob.from_dict(fields)
                        try:
                            await handler(job)
                        except Exception as e:
                            logger.error("job_handler_error",
                                         job_id=job.job_id,
                                         error=str(e))
                            await self.nack(queue, job, consumer_group)
                        await self._redis.xack(queue, consumer_group, message_id)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("consumer_error", queue=queue, error=str(e), exc_info=True)
                await asyncio.sleep(1)

    async def nack(self, queue: str, job: QueueJob, consumer_group: str = "default"):
        if job.attempt + 1 >= job.max_attempts:
            job.metadata["dlq_reason"] = f"Exceeded {job.max_attempts} attempts"
            await self.publish(Queues.DLQ, job)
            logger.warning("job_moved_to_dlq",
                           job_id=job.job_id,
                           session_id=job.session_id,
                           attempts=job.attempt + 1)
        else:
            retry_job = job.next_retry_job(self.retry_backoff_base)
            await self.publish_delayed(retry_job)
            logger.info("job_scheduled_for_retry",
                        job_id=job.job_id,
                        attempt=retry_job.attempt,
                        scheduled_at=retry_job.scheduled_at)

    async def queue_length(self, queue: str) -> int:
        if queue == Queues.DELAYED:
            return await self._redis.zcard(queue)
        return await self._redis.xlen(queue)

    async def promote_delayed(self) -> int:
        """Move jobs whose scheduled_at <= now from the sorted set to the step stream."""
        now = utcnow().timestamp()
        ready = await self._redis.zrangebyscore(Queues.DELAYED, "-inf", now)

        if not ready:
            return 0

        pipe = self._redis.pipeline()
        for payload in ready:
            job = QueueJob.from_dict(json.loads(payload))
            pipe.xadd(Queues.FLOW_STEPS, job.to_dict())
            pipe.zrem(Queues.DELAYED, payload)
        await pipe.execute()

        logger.info("delayed_jobs_promoted", count=len(ready))
        return len(ready)


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryMessageQueue(MessageQueue):
    """
    Development/test queue backed by asyncio primitives.
    Single-process only, no consumer groups or persistence.
    Delayed jobs are promoted by DelayedJobPromoter, as with Redis.
    """

    def __init__(self, retry_backoff_base: int = 5):
        self._queues: dict[str, asyncio.Queue] = {}
        self._delayed: list[tuple[float, QueueJob]] = []
        self.dlq: list[QueueJob] = []
        self._running = False
        self.retry_backoff_base = retry_backoff_base

    def _get_queue(self, name: str) -> asyncio.Queue:
        if name not in self._queues:
            self._queues[name] = asyncio.Queue()
        return self._queues[name]

    async def connect(self):
        logger.info("inmemory_queue_connected")

    async def close(self):
        self._running = False

    async def publish(self, queue: str, job: QueueJob):
        if queue == Queues.DLQ:
            self.dlq.append(job)
        else:
            await self._get_queue(queue).put(job)
        logger.info("job_published",
                    queue=queue,
                    job_id=job.job_id,
                    session_id=job.session_id,
                    kind=job.kind)

    async def publish_delayed(self, job: QueueJob):
        self._delayed.append((job.run_at.timestamp(), job))
        self._delayed.sort(key=lambda x: x[0])
        logger.info("delayed_job_published",
                    job_id=job.job_id,
                    scheduled_at=job.scheduled_at)

    async def consume(
        self,
        queue: str,
        handler: Callable[[QueueJob], Any],
        consumer_group: str = "default",
        consumer_name: str = "",
        batch_size: int = 10,
    ):
        q = self._get_queue(queue)
        self._running = True
        logger.info("consumer_started", queue=queue)

        while self._running:
            try:
                job = await asyncio.wait_for(q.get(), timeout=2.0)
            except asyncio.TimeoutError:
                continue
            try:
                await handler(job)
            except Exception as e:
                logger.error("job_handler_error",
                             job_id=job.job_id,
                             error=str(e))
                await self.nack(queue, job)

    async def nack(self, queue: str, job: QueueJob, consumer_group: str = "default"):
        if job.attempt + 1 >= job.max_attempts:
            job.metadata["dlq_reason"] = f"Exceeded {job.max_attempts} attempts"
            self.dlq.append(job)
            logger.warning("job_moved_to_dlq",
                           job_id=job.job_id,
                           session_id=job.session_id,
                           attempts=job.attempt + 1)
        else:
            await self.publish_delayed(job.next_retry_job(self.retry_backoff_base))

    async def queue_length(self, queue: str) -> int:
        if queue == Queues.DELAYED:
            return len(self._delayed)
        if queue == Queues.DLQ:
            return len(self.dlq)
        return self._get_queue(queue).qsize()

    def drain(self, queue: str) -> list[QueueJob]:
        """Pop every pending job without running it."""
        q = self._get_queue(queue)
        items = []
        while not q.empty():
            items.append(q.get_nowait())
        return items

    async def promote_delayed(self) -> int:
        now = utcnow().timestamp()
        ready = [job for ts, job in self._delayed if ts <= now]
        self._delayed = [(ts, job) for ts, job in self._delayed if ts > now]

        for job in ready:
            await self.publish(Queues.FLOW_STEPS, job)

        if ready:
            logger.info("delayed_jobs_promoted", count=len(ready))
        return len(ready)


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

_instance: Optional[MessageQueue] = None


def create_message_queue(queue_config: dict[str, Any] = None) -> MessageQueue:
    """Factory: create the configured queue backend (singleton)."""
    global _instance
    if _instance:
        return _instance

    config = queue_config or {}
    backend = config.get("backend", "memory")
    backoff = int(config.get("retry_backoff_base", 5))

    if backend == "redis":
        url = config.get("redis_url", "redis://localhost:6379")
        _instance = RedisMessageQueue(redis_url=url, retry_backoff_base=backoff)
    else:
        _instance = InMemoryMessageQueue(retry_backoff_base=backoff)

    return _instance


def get_message_queue() -> MessageQueue:
    """Return the singleton queue instance."""
    global _instance
    if _instance is None:
        _instance = create_message_queue()
    return _instance


def reset_message_queue() -> None:
    """Reset the singleton (for testing)."""
    global _instance
    _instance = None
