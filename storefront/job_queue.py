"""
Durable, prioritized, retryable job queue.

Job rows in the ``jobs`` table are the source of truth for job state; the
message broker only carries job ids to the worker pool. Each queue owns:

* a registry of job kinds (``JobDefinition``) with a typed payload model,
  decoded once per delivery
* a bounded worker pool (semaphore sized to ``concurrency``), optionally
  rate limited
* exponential or fixed backoff between attempts, and bounded retention of
  finished jobs (oldest evicted first)

Delivery is at-least-once: a claim on the job row (``waiting -> active``)
decides which delivery runs an attempt. Duplicate deliveries of finished
jobs, and deliveries that arrive before a delayed job is due, are dropped.
"""
import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Protocol, Type, Union
from uuid import uuid4

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, Text, delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError

from .database import Base

logger = logging.getLogger(__name__)

# Broker TTLs and the local clock may disagree by a few milliseconds
EARLY_DELIVERY_TOLERANCE = timedelta(milliseconds=250)


class JobState(str, Enum):
    """Job lifecycle states."""
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class Job(Base):
    """A unit of deferred work."""

    __tablename__ = "jobs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    queue = Column(String(64), nullable=False)
    kind = Column(String(64), nullable=False)
    payload = Column(JSON, nullable=False)
    priority = Column(Integer, nullable=False, default=0)

    state = Column(String(20), nullable=False, default=JobState.WAITING.value)
    progress = Column(Integer, nullable=False, default=0)
    attempts_made = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=1)
    backoff_type = Column(String(20), nullable=False, default="exponential")
    backoff_delay_ms = Column(Integer, nullable=False, default=0)

    result = Column(JSON, nullable=True)
    failure_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    available_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    processed_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_jobs_queue_state_finished", "queue", "state", "finished_at"),
    )


class QueueUnavailable(Exception):
    """The queue could not accept a job (broker or job store unreachable)."""


class PermanentJobError(Exception):
    """Raised by handlers for failures that another attempt cannot fix."""


class UnknownJobType(PermanentJobError):
    """A delivered job names a kind with no registered handler."""


class Backoff(BaseModel):
    """Delay between attempts."""
    type: str = "exponential"  # exponential | fixed
    delay_ms: int = Field(default=2000, ge=0)

    def delay_for(self, attempts_made: int) -> int:
        """Delay before the attempt following attempt number ``attempts_made``."""
        if self.type == "fixed":
            return self.delay_ms
        return self.delay_ms * 2 ** max(attempts_made - 1, 0)


class JobOptions(BaseModel):
    """Per-job submission options."""
    priority: int = 0
    delay_ms: int = Field(default=0, ge=0)
    attempts: int = Field(default=3, ge=1)
    backoff: Backoff = Field(default_factory=Backoff)


class JobStatus(BaseModel):
    """Point-in-time view of a job."""
    job_id: str
    queue: str
    kind: str
    state: JobState
    progress: int
    priority: int
    attempts_made: int
    max_attempts: int
    result: Optional[Dict[str, Any]] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    failure_reason: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobStatus":
        return cls(
            job_id=job.id,
            queue=job.queue,
            kind=job.kind,
            state=JobState(job.state),
            progress=job.progress,
            priority=job.priority,
            attempts_made=job.attempts_made,
            max_attempts=job.max_attempts,
            result=job.result,
            payload=job.payload or {},
            failure_reason=job.failure_reason,
            created_at=job.created_at,
            processed_at=job.processed_at,
            finished_at=job.finished_at,
        )


class JobContext:
    """Passed to handlers for the attempt being executed."""

    def __init__(self, queue: "JobQueue", job_id: str, kind: str, attempts_made: int, max_attempts: int):
        self.queue = queue
        self.job_id = job_id
        self.kind = kind
        self.attempts_made = attempts_made
        self.max_attempts = max_attempts

    @property
    def is_final_attempt(self) -> bool:
        return self.attempts_made >= self.max_attempts

    async def update_progress(self, progress: int):
        """Report advisory progress (0-100) for status polling."""
        await self.queue.update_progress(self.job_id, progress)


Handler = Callable[[JobContext, Any], Awaitable[Optional[Dict[str, Any]]]]
FailureHook = Callable[[JobContext, Any, BaseException], Awaitable[None]]


@dataclass(frozen=True)
class JobDefinition:
    """Binds a job kind to its payload model, handler and exhaustion hook."""
    kind: str
    payload_model: Type[BaseModel]
    handler: Handler
    on_failed: Optional[FailureHook] = None


@dataclass(frozen=True)
class RateLimit:
    """At most ``max_jobs`` attempts may start within any ``per_seconds`` window."""
    max_jobs: int
    per_seconds: float


class JobTransport(Protocol):
    """Delivery channel for job ids (RabbitMQ in production)."""

    async def publish_job(self, queue_name: str, job_id: str, priority: int = 0, delay_ms: int = 0) -> None: ...

    async def consume_jobs(
        self,
        queue_name: str,
        callback: Callable[[str, bool], Awaitable[None]],
        prefetch: int,
    ) -> None: ...

    async def stop_consuming(self, queue_name: str) -> None: ...


class _RateLimiter:
    """Sliding-window limiter on attempt starts."""

    def __init__(self, limit: RateLimit):
        self.limit = limit
        self._starts: deque = deque()
        self._lock = asyncio.Lock()

    async def acquire(self):
        async with self._lock:
            while True:
                now = time.monotonic()
                while self._starts and now - self._starts[0] >= self.limit.per_seconds:
                    self._starts.popleft()
                if len(self._starts) < self.limit.max_jobs:
                    self._starts.append(now)
                    return
                await asyncio.sleep(self.limit.per_seconds - (now - self._starts[0]))


class JobQueue:
    """A named job queue with its own worker pool."""

    def __init__(
        self,
        name: str,
        session_factory,
        transport: JobTransport,
        definitions: Iterable[JobDefinition],
        concurrency: int = 1,
        rate_limit: Optional[RateLimit] = None,
        keep_completed: int = 50,
        keep_failed: int = 25,
        default_options: Optional[JobOptions] = None,
        drain_timeout: float = 30.0,
    ):
        """
        Initialize a job queue.

        Args:
            name: Queue name, also the broker queue name
            session_factory: Async session factory for the job store
            transport: Delivers job ids to this process
            definitions: Job kinds this queue can run
            concurrency: Maximum attempts running at once
            rate_limit: Optional limit on attempt starts
            keep_completed: Completed jobs retained for inspection
            keep_failed: Failed jobs retained for inspection
            default_options: Options used when ``submit`` gets none
            drain_timeout: Seconds ``stop`` waits for running attempts
        """
        self.name = name
        self.session_factory = session_factory
        self.transport = transport
        self.concurrency = concurrency
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed
        self.default_options = default_options or JobOptions()
        self.drain_timeout = drain_timeout

        self._definitions: Dict[str, JobDefinition] = {d.kind: d for d in definitions}
        self._semaphore = asyncio.Semaphore(concurrency)
        self._limiter = _RateLimiter(rate_limit) if rate_limit else None
        self._in_flight: set[asyncio.Task] = set()
        self._running = False

    @property
    def kinds(self) -> list[str]:
        return sorted(self._definitions)

    async def start(self):
        """Start consuming deliveries for this queue."""
        if self._running:
            logger.warning(f"Job queue {self.name} already running")
            return

        self._running = True
        await self.transport.consume_jobs(self.name, self._on_delivery, prefetch=self.concurrency)
        logger.info(f"Job queue {self.name} started (concurrency={self.concurrency})")

    async def stop(self):
        """Stop consuming and wait for running attempts to finish."""
        if not self._running:
            return

        self._running = False
        await self.transport.stop_consuming(self.name)

        if self._in_flight:
            logger.info(f"Waiting for {len(self._in_flight)} running job(s) on {self.name}")
            await asyncio.wait(set(self._in_flight), timeout=self.drain_timeout)

        logger.info(f"Job queue {self.name} stopped")

    # Producer side

    async def submit(
        self,
        kind: str,
        payload: Union[BaseModel, Dict[str, Any]],
        options: Optional[JobOptions] = None,
    ) -> str:
        """
        Enqueue a job and return its id without waiting for execution.

        Raises:
            QueueUnavailable: the job store or the broker rejected the job
            pydantic.ValidationError: payload does not match the kind's model
        """
        options = options or self.default_options
        if isinstance(payload, BaseModel):
            data = payload.model_dump(mode="json")
        else:
            data = dict(payload)

        definition = self._definitions.get(kind)
        if definition:
            definition.payload_model.model_validate(data)

        now = datetime.utcnow()
        job = Job(
            id=str(uuid4()),
            queue=self.name,
            kind=kind,
            payload=data,
            priority=options.priority,
            state=JobState.WAITING.value,
            max_attempts=options.attempts,
            backoff_type=options.backoff.type,
            backoff_delay_ms=options.backoff.delay_ms,
            created_at=now,
            available_at=now + timedelta(milliseconds=options.delay_ms),
        )

        try:
            async with self.session_factory() as session:
                session.add(job)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Could not persist job {kind} on {self.name}: {str(e)}")
            raise QueueUnavailable(f"Job store unavailable for queue {self.name}") from e

        try:
            await self.transport.publish_job(
                self.name, job.id, priority=options.priority, delay_ms=options.delay_ms
            )
        except Exception as e:
            logger.error(f"Could not publish job {job.id} to {self.name}: {str(e)}")
            await self._discard(job.id)
            raise QueueUnavailable(f"Message broker unavailable for queue {self.name}") from e

        logger.info(f"Added job {kind} to {self.name} (id={job.id}, priority={options.priority})")
        return job.id

    async def _discard(self, job_id: str):
        try:
            async with self.session_factory() as session:
                await session.execute(delete(Job).where(Job.id == job_id))
                await session.commit()
        except SQLAlchemyError:
            logger.error(f"Could not remove unpublished job {job_id}", exc_info=True)

    # Introspection

    async def get_status(self, job_id: str) -> Optional[JobStatus]:
        """Return the job's current status, or None for unknown or evicted ids."""
        async with self.session_factory() as session:
            job = await session.get(Job, job_id)
            if job is None or job.queue != self.name:
                return None
            return JobStatus.from_job(job)

    async def counts(self) -> Dict[str, int]:
        """Number of retained jobs per state."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Job.state, func.count(Job.id))
                .where(Job.queue == self.name)
                .group_by(Job.state)
            )
            counts = {state.value: 0 for state in JobState}
            for state, count in result.all():
                counts[state] = count
            counts["total"] = sum(counts[state.value] for state in JobState)
            return counts

    async def clean(self, state: JobState, grace_seconds: int, limit: int = 100) -> int:
        """Delete up to ``limit`` finished jobs in ``state`` older than ``grace_seconds``."""
        if state not in (JobState.COMPLETED, JobState.FAILED):
            raise ValueError("Only finished jobs can be cleaned")

        cutoff = datetime.utcnow() - timedelta(seconds=grace_seconds)
        async with self.session_factory() as session:
            result = await session.execute(
                select(Job.id)
                .where(Job.queue == self.name, Job.state == state.value, Job.finished_at < cutoff)
                .order_by(Job.finished_at)
                .limit(limit)
            )
            ids = result.scalars().all()
            if ids:
                await session.execute(delete(Job).where(Job.id.in_(ids)))
                await session.commit()

        logger.info(f"Cleaned {len(ids)} {state.value} job(s) from {self.name}")
        return len(ids)

    async def update_progress(self, job_id: str, progress: int):
        progress = max(0, min(100, int(progress)))
        async with self.session_factory() as session:
            await session.execute(
                update(Job)
                .execution_options(synchronize_session=False)
                .where(Job.id == job_id, Job.state == JobState.ACTIVE.value)
                .values(progress=progress)
            )
            await session.commit()

    # Consumer side

    async def _on_delivery(self, job_id: str, redelivered: bool):
        """Transport callback. Raising here makes the transport redeliver."""
        task = asyncio.current_task()
        if task:
            self._in_flight.add(task)
        try:
            async with self._semaphore:
                if self._limiter:
                    await self._limiter.acquire()

                job = await self._claim(job_id, redelivered)
                if job is None:
                    return
                await self._run(job)
        finally:
            if task:
                self._in_flight.discard(task)

    async def _claim(self, job_id: str, redelivered: bool) -> Optional[Job]:
        """Move the job to ACTIVE and count the attempt; None when this delivery must not run it."""
        now = datetime.utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                update(Job)
                .execution_options(synchronize_session=False)
                .where(
                    Job.id == job_id,
                    Job.state == JobState.WAITING.value,
                    Job.available_at <= now + EARLY_DELIVERY_TOLERANCE,
                )
                .values(
                    state=JobState.ACTIVE.value,
                    attempts_made=Job.attempts_made + 1,
                    processed_at=now,
                    progress=0,
                )
            )
            await session.commit()
            if result.rowcount == 1:
                return await session.get(Job, job_id)

            job = await session.get(Job, job_id)
            if job is None:
                logger.warning(f"Job {job_id} not found on {self.name}, dropping delivery")
                return None

            if job.state == JobState.ACTIVE.value and redelivered:
                # Worker died mid-attempt and the broker handed the job back.
                if job.attempts_made >= job.max_attempts:
                    await self._fail_stalled(job)
                    return None

                result = await session.execute(
                    update(Job)
                    .execution_options(synchronize_session=False)
                    .where(
                        Job.id == job_id,
                        Job.state == JobState.ACTIVE.value,
                        Job.attempts_made == job.attempts_made,
                    )
                    .values(attempts_made=Job.attempts_made + 1, processed_at=now, progress=0)
                )
                await session.commit()
                if result.rowcount == 1:
                    logger.warning(f"Job {job_id} stalled, restarting attempt")
                    await session.refresh(job)
                    return job

            if job.state == JobState.WAITING.value:
                logger.info(f"Ignoring early delivery of job {job_id}, due at {job.available_at.isoformat()}")
                return None

            logger.info(f"Ignoring duplicate delivery of job {job_id} (state={job.state})")
            return None

    async def _run(self, job: Job):
        definition = self._definitions.get(job.kind)
        if definition is None:
            await self._finish_failed(job, UnknownJobType(f"Unknown job type: {job.kind}"))
            return

        try:
            payload = definition.payload_model.model_validate(job.payload)
        except ValidationError as e:
            await self._finish_failed(
                job, PermanentJobError(f"Invalid payload for {job.kind}: {e}")
            )
            return

        context = JobContext(self, job.id, job.kind, job.attempts_made, job.max_attempts)
        logger.info(
            f"Processing job {job.id} ({job.kind}) "
            f"attempt {job.attempts_made}/{job.max_attempts}"
        )

        try:
            result = await definition.handler(context, payload)
        except PermanentJobError as e:
            logger.error(f"Job {job.id} failed permanently: {str(e)}")
            await self._finish_failed(job, e, definition, context, payload)
        except Exception as e:
            logger.error(f"Job {job.id} attempt {job.attempts_made} failed: {str(e)}", exc_info=True)
            if job.attempts_made < job.max_attempts:
                await self._schedule_retry(job, e)
            else:
                await self._finish_failed(job, e, definition, context, payload)
        else:
            await self._finish_completed(job, result)

    async def _fail_stalled(self, job: Job):
        error = PermanentJobError("job stalled more than allowable limit")
        definition = self._definitions.get(job.kind)
        if definition is None:
            await self._finish_failed(job, error)
            return

        try:
            payload = definition.payload_model.model_validate(job.payload)
        except ValidationError:
            await self._finish_failed(job, error)
            return

        context = JobContext(self, job.id, job.kind, job.attempts_made, job.max_attempts)
        await self._finish_failed(job, error, definition, context, payload)

    async def _schedule_retry(self, job: Job, error: BaseException):
        backoff = Backoff(type=job.backoff_type, delay_ms=job.backoff_delay_ms)
        delay_ms = backoff.delay_for(job.attempts_made)

        async with self.session_factory() as session:
            await session.execute(
                update(Job)
                .execution_options(synchronize_session=False)
                .where(Job.id == job.id)
                .values(
                    state=JobState.WAITING.value,
                    failure_reason=_describe(error),
                    available_at=datetime.utcnow() + timedelta(milliseconds=delay_ms),
                )
            )
            await session.commit()

        await self.transport.publish_job(self.name, job.id, priority=job.priority, delay_ms=delay_ms)
        logger.info(f"Job {job.id} scheduled for retry in {delay_ms}ms")

    async def _finish_completed(self, job: Job, result: Optional[Dict[str, Any]]):
        async with self.session_factory() as session:
            await session.execute(
                update(Job)
                .execution_options(synchronize_session=False)
                .where(Job.id == job.id)
                .values(
                    state=JobState.COMPLETED.value,
                    progress=100,
                    result=result or {},
                    failure_reason=None,
                    finished_at=datetime.utcnow(),
                )
            )
            await session.commit()

        logger.info(f"Job {job.id} ({job.kind}) completed")
        await self._prune(JobState.COMPLETED, self.keep_completed)

    async def _finish_failed(
        self,
        job: Job,
        error: BaseException,
        definition: Optional[JobDefinition] = None,
        context: Optional[JobContext] = None,
        payload: Any = None,
    ):
        async with self.session_factory() as session:
            await session.execute(
                update(Job)
                .execution_options(synchronize_session=False)
                .where(Job.id == job.id)
                .values(
                    state=JobState.FAILED.value,
                    failure_reason=_describe(error),
                    finished_at=datetime.utcnow(),
                )
            )
            await session.commit()

        logger.error(
            f"Job {job.id} ({job.kind}) failed after {job.attempts_made} attempt(s): {_describe(error)}"
        )

        if definition and definition.on_failed and context is not None:
            try:
                await definition.on_failed(context, payload, error)
            except Exception:
                # Job stays FAILED; compensation is left to the periodic sweep.
                logger.error(f"Failure hook for job {job.id} raised", exc_info=True)

        await self._prune(JobState.FAILED, self.keep_failed)

    async def _prune(self, state: JobState, keep: int):
        """Evict the oldest finished jobs beyond the retention count."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Job.id)
                .where(Job.queue == self.name, Job.state == state.value)
                .order_by(Job.finished_at.desc(), Job.created_at.desc())
                .offset(keep)
            )
            stale = result.scalars().all()
            if stale:
                await session.execute(delete(Job).where(Job.id.in_(stale)))
                await session.commit()
                logger.debug(f"Evicted {len(stale)} {state.value} job(s) from {self.name}")


def _describe(error: BaseException) -> str:
    return str(error) or error.__class__.__name__
