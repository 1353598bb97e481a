"""
Tests for job publishing, schema validation, retries and dead-lettering.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from autonaim_interview.errors import InvalidInbound, SchemaViolation, TransientError
from autonaim_interview.jobs.dispatcher import JobDispatcher
from autonaim_interview.jobs.schemas import (
    REDACTED,
    CredentialsVerifyPayload,
    InterviewScorePayload,
    JobStatus,
    RetryPolicy,
    VoiceTranscribePayload,
)


@pytest.fixture
def dispatcher(store, observability, settings) -> JobDispatcher:
    return JobDispatcher(
        store.session_factory,
        observability,
        settings,
        policies={"interview.score": RetryPolicy(max_attempts=2, base_delay_s=0, max_delay_s=0)},
        worker_id="test-worker",
    )


class TestEnqueue:
    """Payloads are validated before anything is stored."""

    @pytest.mark.asyncio
    async def test_voice_job_without_file_id_is_rejected(self, dispatcher: JobDispatcher) -> None:
        with pytest.raises(SchemaViolation) as exc_info:
            await dispatcher.enqueue("voice.transcribe", {"messageId": str(uuid4())})

        assert exc_info.value.event_name == "voice.transcribe"
        assert await dispatcher.process_due() == 0

    @pytest.mark.asyncio
    async def test_unknown_event_is_rejected(self, dispatcher: JobDispatcher) -> None:
        with pytest.raises(SchemaViolation):
            await dispatcher.enqueue("voice.translate", {"messageId": str(uuid4())})
        with pytest.raises(SchemaViolation):
            dispatcher.register_handler("voice.translate", lambda payload: None)

    @pytest.mark.asyncio
    async def test_extra_fields_are_rejected(self, dispatcher: JobDispatcher) -> None:
        with pytest.raises(SchemaViolation):
            await dispatcher.enqueue("interview.score", {"conversationId": str(uuid4()), "force": True})

    @pytest.mark.asyncio
    async def test_payload_model_of_wrong_type_is_rejected(self, dispatcher: JobDispatcher) -> None:
        payload = InterviewScorePayload(conversation_id=uuid4())
        with pytest.raises(SchemaViolation):
            await dispatcher.enqueue("voice.transcribe", payload)

    @pytest.mark.asyncio
    async def test_wire_payload_uses_camel_case(self, dispatcher: JobDispatcher) -> None:
        message_id = uuid4()
        handle = await dispatcher.enqueue(
            "voice.transcribe", VoiceTranscribePayload(message_id=message_id, file_id="abc.ogg")
        )

        assert handle.status == JobStatus.PENDING
        assert handle.payload == {"messageId": str(message_id), "fileId": "abc.ogg"}
        assert handle.max_attempts == dispatcher.policy_for("voice.transcribe").max_attempts

    def test_credentials_payload_hides_password_in_repr(self) -> None:
        payload = CredentialsVerifyPayload(email="hr@example.com", password="hunter2", workspace_id="ws")

        assert "hunter2" not in repr(payload)
        assert payload.to_wire()["password"] == "hunter2"


class TestProcessing:
    """At-least-once execution with backoff and a dead-letter state."""

    @pytest.mark.asyncio
    async def test_handler_receives_typed_payload(self, dispatcher: JobDispatcher) -> None:
        received = []

        async def handler(payload: InterviewScorePayload) -> None:
            received.append(payload)

        dispatcher.register_handler("interview.score", handler)
        conversation_id = uuid4()
        handle = await dispatcher.enqueue("interview.score", {"conversationId": str(conversation_id)})

        assert await dispatcher.process_due() == 1
        assert received == [InterviewScorePayload(conversation_id=conversation_id)]
        done = await dispatcher.get_job(handle.id)
        assert done.status == JobStatus.DONE
        assert done.attempts == 1
        assert await dispatcher.process_due() == 0

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, dispatcher: JobDispatcher, observability) -> None:
        calls = 0

        async def flaky(payload) -> None:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise TransientError("database hiccup")

        dispatcher.register_handler("interview.score", flaky)
        handle = await dispatcher.enqueue("interview.score", {"conversationId": str(uuid4())})

        await dispatcher.process_due()
        retried = await dispatcher.get_job(handle.id)
        assert retried.status == JobStatus.PENDING
        assert "database hiccup" in retried.last_error

        await dispatcher.process_due()
        done = await dispatcher.get_job(handle.id)
        assert done.status == JobStatus.DONE
        assert done.attempts == 2
        assert observability.counters["job.retry.interview.score"] == 1

    @pytest.mark.asyncio
    async def test_exhausted_job_moves_to_dead_and_can_be_requeued(
        self, dispatcher: JobDispatcher, observability
    ) -> None:
        async def broken(payload) -> None:
            raise RuntimeError("always fails")

        dispatcher.register_handler("interview.score", broken)
        handle = await dispatcher.enqueue("interview.score", {"conversationId": str(uuid4())})

        await dispatcher.process_due()
        await dispatcher.process_due()

        dead = await dispatcher.get_job(handle.id)
        assert dead.status == JobStatus.DEAD
        assert dead.attempts == 2
        assert [job.id for job in await dispatcher.list_dead()] == [handle.id]
        assert observability.counters["job_dispatcher.failure"] == 1

        requeued = await dispatcher.requeue_dead(handle.id)
        assert requeued.status == JobStatus.PENDING
        assert requeued.attempts == 0
        with pytest.raises(ValueError):
            await dispatcher.requeue_dead(handle.id)

    @pytest.mark.asyncio
    async def test_permanent_error_skips_retries(self, dispatcher: JobDispatcher) -> None:
        async def rejects(payload) -> None:
            raise InvalidInbound("audio file is gone")

        dispatcher.register_handler("voice.transcribe", rejects)
        handle = await dispatcher.enqueue("voice.transcribe", {"messageId": str(uuid4()), "fileId": "x.ogg"})

        await dispatcher.process_due()

        dead = await dispatcher.get_job(handle.id)
        assert dead.status == JobStatus.DEAD
        assert dead.attempts == 1

    @pytest.mark.asyncio
    async def test_job_without_handler_stays_queued(self, dispatcher: JobDispatcher) -> None:
        async def handler(payload) -> None:
            pass

        dispatcher.register_handler("voice.transcribe", handler)
        handle = await dispatcher.enqueue("interview.score", {"conversationId": str(uuid4())})

        assert await dispatcher.process_due() == 0

        job = await dispatcher.get_job(handle.id)
        assert job.status == JobStatus.PENDING
        assert job.attempts == 0
        assert job.last_error is None

    @pytest.mark.asyncio
    async def test_dispatcher_without_handlers_claims_nothing(self, dispatcher: JobDispatcher) -> None:
        handle = await dispatcher.enqueue("message.deliver", {"conversationId": str(uuid4()), "messageId": str(uuid4())})

        assert await dispatcher.process_due() == 0
        assert (await dispatcher.get_job(handle.id)).attempts == 0

    def test_retry_policy_backoff_is_bounded(self) -> None:
        policy = RetryPolicy(max_attempts=5, base_delay_s=2, max_delay_s=10)

        assert [policy.delay_for(n) for n in range(1, 5)] == [2, 4, 8, 10]


class TestHandlerTimeout:
    """A handler that never returns counts as a transient failure."""

    @pytest.mark.asyncio
    async def test_hanging_handler_is_rescheduled_then_dead(self, store, observability, settings) -> None:
        now = [datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)]
        dispatcher = JobDispatcher(
            store.session_factory,
            observability,
            settings.model_copy(update={"job_timeout_s": 0.05}),
            policies={"interview.score": RetryPolicy(max_attempts=2, base_delay_s=30, max_delay_s=30)},
            worker_id="test-worker",
            clock=lambda: now[0],
        )

        async def hangs(payload) -> None:
            await asyncio.Event().wait()

        dispatcher.register_handler("interview.score", hangs)
        handle = await dispatcher.enqueue("interview.score", {"conversationId": str(uuid4())})

        assert await dispatcher.process_due() == 1
        retried = await dispatcher.get_job(handle.id)
        assert retried.status == JobStatus.PENDING
        assert retried.attempts == 1
        assert "timed out" in retried.last_error
        assert retried.run_at == now[0] + timedelta(seconds=30)
        assert await dispatcher.process_due() == 0

        now[0] += timedelta(seconds=31)
        assert await dispatcher.process_due() == 1
        dead = await dispatcher.get_job(handle.id)
        assert dead.status == JobStatus.DEAD
        assert dead.attempts == 2
        assert observability.counters["job.retry.interview.score"] == 1


class TestSecretPayloads:
    """Secrets stay in the queue only while the job can still run."""

    @pytest.mark.asyncio
    async def test_password_is_masked_once_the_job_is_done(self, dispatcher: JobDispatcher) -> None:
        async def verify(payload: CredentialsVerifyPayload) -> None:
            assert payload.password.get_secret_value() == "hunter2"

        dispatcher.register_handler("credentials.verify", verify)
        handle = await dispatcher.enqueue(
            "credentials.verify", CredentialsVerifyPayload(email="hr@example.com", password="hunter2", workspace_id="ws")
        )
        assert handle.payload["password"] == "hunter2"

        await dispatcher.process_due()

        done = await dispatcher.get_job(handle.id)
        assert done.status == JobStatus.DONE
        assert done.payload["password"] == REDACTED
        assert done.payload["email"] == "hr@example.com"

    @pytest.mark.asyncio
    async def test_password_is_kept_for_retry_and_masked_when_dead(self, dispatcher: JobDispatcher) -> None:
        async def unreachable(payload) -> None:
            raise TransientError("job board is down")

        dispatcher.register_handler("credentials.verify", unreachable)
        handle = await dispatcher.enqueue(
            "credentials.verify", {"email": "hr@example.com", "password": "hunter2", "workspaceId": "ws"}
        )

        await dispatcher.process_due()
        assert (await dispatcher.get_job(handle.id)).payload["password"] == "hunter2"

        while (await dispatcher.get_job(handle.id)).status == JobStatus.PENDING:
            await dispatcher.process_due()

        dead = await dispatcher.get_job(handle.id)
        assert dead.status == JobStatus.DEAD
        assert dead.payload["password"] == REDACTED
        with pytest.raises(ValueError):
            await dispatcher.requeue_dead(handle.id)
