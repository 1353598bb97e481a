"""
Database-backed job dispatcher.

Jobs are rows in `job_events`. Payloads are validated against the schema
registered for the event name at enqueue time. Workers claim due rows with
an atomic UPDATE, so a job runs at least once; handlers must tolerate
duplicate delivery. Failed attempts are retried with exponential backoff
and moved to DEAD once the attempt budget of their event class is spent.
"""

import asyncio
import logging
import os
import socket
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from autonaim_interview.config import Settings, get_settings
from autonaim_interview.db.models import JobEventModel
from autonaim_interview.db.repository import JobEventRepository
from autonaim_interview.errors import InterviewEngineError, SchemaViolation, TransientError
from autonaim_interview.jobs.schemas import JOB_SCHEMAS, JobHandle, JobPayload, JobStatus, RetryPolicy
from autonaim_interview.observability import Observability

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _to_handle(model: JobEventModel) -> JobHandle:
    return JobHandle(
        id=model.id,
        name=model.name,
        payload=dict(model.payload),
        status=JobStatus(model.status),
        attempts=model.attempts,
        max_attempts=model.max_attempts,
        run_at=_as_utc(model.run_at),
        last_error=model.last_error,
    )


class JobDispatcher:
    """Publishes and consumes schema-validated background jobs."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        observability: Observability,
        settings: Settings | None = None,
        policies: dict[str, RetryPolicy] | None = None,
        worker_id: str | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """
        Initialize the dispatcher.

        Args:
            session_factory: Factory for database sessions.
            observability: Process observability state.
            settings: Application settings.
            policies: Retry policy overrides per event name.
            worker_id: Identifier written to claimed rows.
            clock: Source of "now"; overridable in tests.
        """
        settings = settings or get_settings()
        self._session_factory = session_factory
        self._obs = observability
        self._clock = clock
        self._worker_id = worker_id or f"{socket.gethostname()}:{os.getpid()}"
        self._timeout_s = settings.job_timeout_s
        self._poll_interval_s = settings.job_poll_interval_s
        self._handlers: dict[str, Handler] = {}
        self._stop = asyncio.Event()

        default = RetryPolicy(
            max_attempts=settings.job_max_attempts,
            base_delay_s=settings.job_backoff_base_s,
            max_delay_s=settings.job_backoff_max_s,
        )
        self._policies: dict[str, RetryPolicy] = {name: default for name in JOB_SCHEMAS}
        self._policies["voice.transcribe"] = default.model_copy(update={"max_attempts": default.max_attempts + 1})
        self._policies["credentials.verify"] = default.model_copy(update={"max_attempts": 3})
        self._policies.update(policies or {})

    def policy_for(self, event_name: str) -> RetryPolicy:
        return self._policies[event_name]

    def register_handler(self, event_name: str, handler: Handler) -> None:
        """
        Register the handler for an event name.

        Raises:
            SchemaViolation: If no schema exists for the event name.
        """
        if event_name not in JOB_SCHEMAS:
            raise SchemaViolation(event_name, "unknown event name")
        self._handlers[event_name] = handler
        logger.debug(f"Registered handler for {event_name}")

    def validate(self, event_name: str, payload: dict[str, Any] | BaseModel) -> JobPayload:
        """
        Validate a payload against the schema registered for the event.

        Raises:
            SchemaViolation: Unknown event name or payload mismatch.
        """
        schema = JOB_SCHEMAS.get(event_name)
        if schema is None:
            raise SchemaViolation(event_name, "unknown event name")
        if isinstance(payload, schema):
            return payload
        if isinstance(payload, BaseModel):
            raise SchemaViolation(event_name, f"expected {schema.__name__}, got {type(payload).__name__}")
        try:
            return schema.model_validate(payload)
        except ValidationError as e:
            raise SchemaViolation(event_name, e.errors(include_input=False, include_url=False)) from e

    async def enqueue(
        self,
        event_name: str,
        payload: dict[str, Any] | BaseModel,
        delay_s: float = 0.0,
    ) -> JobHandle:
        """
        Validate and persist a job.

        Args:
            event_name: Namespaced event name, e.g. "voice.transcribe".
            payload: Payload (wire dict with camelCase keys, or payload model).
            delay_s: Postpone the first attempt.

        Returns:
            Handle of the queued job.

        Raises:
            SchemaViolation: Unknown event or invalid payload; nothing is stored.
        """
        validated = self.validate(event_name, payload)
        now = self._clock()
        async with self._session_factory() as session:
            async with session.begin():
                model = await JobEventRepository(session).create(
                    JobEventModel(
                        name=event_name,
                        payload=validated.to_wire(),
                        status=JobStatus.PENDING.value,
                        attempts=0,
                        max_attempts=self.policy_for(event_name).max_attempts,
                        run_at=now + timedelta(seconds=delay_s),
                        created_at=now,
                        updated_at=now,
                    )
                )
                handle = _to_handle(model)
        self._obs.increment(f"job.enqueued.{event_name}")
        logger.info(f"Enqueued {event_name} job {handle.id}")
        return handle

    async def get_job(self, job_id: UUID) -> JobHandle | None:
        async with self._session_factory() as session:
            model = await JobEventRepository(session).get_by_id(job_id)
            return _to_handle(model) if model else None

    async def list_dead(self, limit: int = 100) -> list[JobHandle]:
        """Jobs that exhausted their retries, for manual inspection."""
        async with self._session_factory() as session:
            models = await JobEventRepository(session).list_by_status(JobStatus.DEAD.value, limit)
            return [_to_handle(m) for m in models]

    async def requeue_dead(self, job_id: UUID) -> JobHandle:
        """Give a dead job a fresh attempt budget."""
        now = self._clock()
        async with self._session_factory() as session:
            async with session.begin():
                model = await JobEventRepository(session).get_by_id(job_id)
                if model is None or model.status != JobStatus.DEAD.value:
                    raise ValueError(f"Job {job_id} is not dead")
                if JOB_SCHEMAS[model.name].secret_fields:
                    raise ValueError(f"Job {job_id} ({model.name}) no longer holds its secrets; enqueue it again")
                model.status = JobStatus.PENDING.value
                model.attempts = 0
                model.run_at = now
                model.updated_at = now
                handle = _to_handle(model)
        logger.info(f"Requeued dead job {job_id} ({handle.name})")
        return handle

    async def process_due(self, limit: int = 10) -> int:
        """
        Claim and run due jobs once.

        Only events with a registered handler are claimed; jobs for other
        events stay queued for the process that handles them.

        Returns:
            Number of jobs executed by this call.
        """
        if not self._handlers:
            return 0
        async with self._session_factory() as session:
            job_ids = await JobEventRepository(session).due_ids(self._clock(), limit, sorted(self._handlers))
        executed = 0
        for job_id in job_ids:
            if await self._run_job(job_id):
                executed += 1
        return executed

    async def _claim(self, job_id: UUID) -> tuple[str, dict[str, Any], int] | None:
        now = self._clock()
        locked_until = now + timedelta(seconds=self._timeout_s * 2)
        async with self._session_factory() as session:
            async with session.begin():
                repo = JobEventRepository(session)
                if not await repo.claim(job_id, self._worker_id, now, locked_until):
                    return None
                model = await repo.get_by_id(job_id)
                return model.name, dict(model.payload), model.attempts

    async def _run_job(self, job_id: UUID) -> bool:
        claimed = await self._claim(job_id)
        if claimed is None:
            return False
        name, raw_payload, attempt = claimed

        error: BaseException | None = None
        handler = self._handlers.get(name)
        if handler is None:
            error = LookupError(f"No handler registered for {name}")
        else:
            try:
                payload = JOB_SCHEMAS[name].model_validate(raw_payload)
                with self._obs.span(f"job.{name}", job_id=str(job_id), attempt=attempt):
                    await asyncio.wait_for(handler(payload), timeout=self._timeout_s)
            except TimeoutError:
                error = TransientError(f"Handler timed out after {self._timeout_s}s")
            except Exception as e:
                error = e

        await self._record_outcome(job_id, name, attempt, error)
        return True

    async def _record_outcome(self, job_id: UUID, name: str, attempt: int, error: BaseException | None) -> None:
        now = self._clock()
        policy = self.policy_for(name)
        permanent = isinstance(error, (InterviewEngineError, ValidationError)) and not isinstance(
            error, TransientError
        )
        async with self._session_factory() as session:
            async with session.begin():
                model = await JobEventRepository(session).get_by_id(job_id)
                if model is None:
                    return
                model.locked_by = None
                model.locked_until = None
                model.updated_at = now
                if error is None:
                    model.status = JobStatus.DONE.value
                    model.last_error = None
                elif permanent or attempt >= policy.max_attempts:
                    model.status = JobStatus.DEAD.value
                    model.last_error = repr(error)
                else:
                    model.status = JobStatus.PENDING.value
                    model.last_error = repr(error)
                    model.run_at = now + timedelta(seconds=policy.delay_for(attempt))
                if model.status != JobStatus.PENDING.value:
                    model.payload = JOB_SCHEMAS[name].redact(dict(model.payload))

        if error is None:
            logger.info(f"Job {name} {job_id} done (attempt {attempt})")
        elif permanent or attempt >= policy.max_attempts:
            self._obs.report_failure("job_dispatcher", error, job_id=str(job_id), job=name, attempts=attempt)
            logger.error(f"Job {name} {job_id} moved to DEAD after {attempt} attempt(s)")
        else:
            self._obs.increment(f"job.retry.{name}")
            logger.warning(f"Job {name} {job_id} failed (attempt {attempt}/{policy.max_attempts}): {error}")

    def stop(self) -> None:
        self._stop.set()

    async def run_worker(self, batch_size: int = 10) -> None:
        """Poll for due jobs until `stop()` is called."""
        logger.info(f"Job worker {self._worker_id} started with handlers: {sorted(self._handlers)}")
        while not self._stop.is_set():
            try:
                executed = await self.process_due(batch_size)
            except Exception as e:
                self._obs.report_failure("job_worker", e)
                executed = 0
            if executed == 0:
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self._poll_interval_s)
                except TimeoutError:
                    pass
        logger.info(f"Job worker {self._worker_id} stopped")
