"""
Tests for the background job handlers: voice transcription, out-of-band
replies, scoring passes and integration checks.
"""

import logging
from uuid import UUID

import httpx
import pytest
from conftest import FakeLLM, FakeSTT, RecordingDispatcher, no_sleep

from autonaim_interview.agents.invitation import URL_PLACEHOLDER, InvitationGenerator
from autonaim_interview.agents.scoring import ScoringEngine
from autonaim_interview.channels.base import ChannelRouter
from autonaim_interview.channels.telegram import TelegramChannelAdapter
from autonaim_interview.channels.web import WebChannelAdapter
from autonaim_interview.db.store import hash_token
from autonaim_interview.errors import DeliveryFailed, InvalidInbound, TransientError
from autonaim_interview.jobs.handlers import JobHandlers, MessageDelivery
from autonaim_interview.jobs.schemas import (
    ConversationReplyPayload,
    CredentialsVerifyPayload,
    IntegrationVerifyPayload,
    InterviewScorePayload,
    InvitationGeneratePayload,
    MessageDeliverPayload,
    VoiceTranscribePayload,
)
from autonaim_interview.orchestrator.schemas import (
    CanonicalMessage,
    Channel,
    ChannelCredential,
    ContentType,
    ConversationStatus,
    DeliveryStatus,
    SenderRole,
)


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def stt() -> FakeSTT:
    return FakeSTT()


@pytest.fixture
def verify_requests() -> list[httpx.Request]:
    return []


@pytest.fixture
def verify_status() -> dict:
    return {"status": 200, "json": {"valid": True}}


@pytest.fixture
def handlers(
    store, state_machine, observability, settings, file_store, telegram_api, stt, dispatcher,
    verify_requests, verify_status,
) -> JobHandlers:
    telegram = TelegramChannelAdapter(
        store,
        state_machine,
        observability,
        settings,
        sleep=no_sleep,
        client=telegram_api.client(),
        dispatcher=dispatcher,
        file_store=file_store,
    )
    web = WebChannelAdapter(store, state_machine, observability, settings, sleep=no_sleep)

    def verify_endpoint(request: httpx.Request) -> httpx.Response:
        verify_requests.append(request)
        return httpx.Response(verify_status["status"], json=verify_status["json"])

    job_handlers = JobHandlers(
        store=store,
        state_machine=state_machine,
        router=ChannelRouter({Channel.WEB: web, Channel.TELEGRAM: telegram}),
        scoring_engine=ScoringEngine(FakeLLM(default="Solid, concise answers."), settings),
        invitation_generator=InvitationGenerator(store, FakeLLM(default=""), settings),
        stt=stt,
        file_store=file_store,
        observability=observability,
        settings=settings,
        telegram_client_factory=lambda token: telegram_api.client(token),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(verify_endpoint)),
    )
    job_handlers.register(dispatcher)
    return job_handlers


async def voice_message(store, state_machine, file_store, chat_id: str = "42"):
    conversation = await store.create_conversation(Channel.TELEGRAM, "response-1")
    await store.bind_chat(conversation.id, chat_id)
    file_id = await file_store.save(b"OggS\x00fake-opus", suffix=".ogg")
    voice = await state_machine.record_inbound(
        conversation.id,
        CanonicalMessage(
            sender=SenderRole.CANDIDATE,
            content_type=ContentType.VOICE,
            content="[voice message]",
            file_id=file_id,
            channel=Channel.TELEGRAM,
            metadata={"chat_id": chat_id},
        ),
    )
    return conversation, voice


class TestVoiceTranscription:
    """voice.transcribe then conversation.reply."""

    @pytest.mark.asyncio
    async def test_transcript_lands_on_same_message_and_reply_is_requested(
        self, handlers, store, state_machine, file_store, stt, dispatcher
    ) -> None:
        conversation, voice = await voice_message(store, state_machine, file_store)

        await handlers.transcribe_voice(VoiceTranscribePayload(message_id=voice.id, file_id=voice.file_id))

        history = await store.get_history(conversation.id)
        assert len(history) == 1
        assert history[0].id == voice.id
        assert history[0].voice_transcript == stt.text
        assert dispatcher.enqueued == [
            ("conversation.reply", {"conversationId": str(conversation.id), "messageId": str(voice.id)})
        ]

    @pytest.mark.asyncio
    async def test_duplicate_run_does_not_transcribe_again(
        self, handlers, store, state_machine, file_store, stt
    ) -> None:
        conversation, voice = await voice_message(store, state_machine, file_store)
        payload = VoiceTranscribePayload(message_id=voice.id, file_id=voice.file_id)

        await handlers.transcribe_voice(payload)
        await handlers.transcribe_voice(payload)

        assert stt.calls == 1
        history = await store.get_history(conversation.id)
        assert len(history) == 1
        assert history[0].voice_transcript == stt.text

    @pytest.mark.asyncio
    async def test_reply_is_generated_and_delivered_once(
        self, handlers, store, state_machine, file_store, telegram_api
    ) -> None:
        conversation, voice = await voice_message(store, state_machine, file_store)
        await handlers.transcribe_voice(VoiceTranscribePayload(message_id=voice.id, file_id=voice.file_id))
        payload = ConversationReplyPayload(conversation_id=conversation.id, message_id=voice.id)

        await handlers.reply_to_conversation(payload)
        await handlers.reply_to_conversation(payload)

        history = await store.get_history(conversation.id)
        assert [m.sender for m in history] == [SenderRole.CANDIDATE, SenderRole.BOT]
        assert history[1].delivery_status == DeliveryStatus.SENT
        assert len(telegram_api.sent) == 1
        assert telegram_api.sent[0]["chat_id"] == "42"
        assert telegram_api.sent[0]["text"] == history[1].content

    @pytest.mark.asyncio
    async def test_missing_audio_is_a_permanent_failure(
        self, handlers, store, state_machine, file_store
    ) -> None:
        conversation = await store.create_conversation(Channel.TELEGRAM, "response-2")
        voice = await state_machine.record_inbound(
            conversation.id,
            CanonicalMessage(
                sender=SenderRole.CANDIDATE, content_type=ContentType.VOICE, content="[voice]", file_id="gone.ogg"
            ),
        )

        with pytest.raises(InvalidInbound):
            await handlers.transcribe_voice(VoiceTranscribePayload(message_id=voice.id, file_id="gone.ogg"))

    @pytest.mark.asyncio
    async def test_late_transcript_on_completed_interview_requests_rescore(
        self, handlers, store, state_machine, file_store, dispatcher
    ) -> None:
        conversation, voice = await voice_message(store, state_machine, file_store)
        await state_machine.complete(conversation.id)

        await handlers.transcribe_voice(VoiceTranscribePayload(message_id=voice.id, file_id=voice.file_id))

        assert dispatcher.enqueued == [("interview.score", {"conversationId": str(conversation.id)})]
        assert (await store.get_message(voice.id)).voice_transcript is not None

    @pytest.mark.asyncio
    async def test_mismatched_file_is_ignored(self, handlers, store, state_machine, file_store, stt) -> None:
        _, voice = await voice_message(store, state_machine, file_store)

        await handlers.transcribe_voice(VoiceTranscribePayload(message_id=voice.id, file_id="other.ogg"))

        assert stt.calls == 0


class TestRemoteDelivery:
    """A worker without the Telegram credential hands replies to the bot process."""

    @pytest.fixture
    def worker_handlers(self, store, state_machine, observability, settings, file_store, stt, dispatcher) -> JobHandlers:
        web = WebChannelAdapter(store, state_machine, observability, settings, sleep=no_sleep)
        job_handlers = JobHandlers(
            store=store,
            state_machine=state_machine,
            router=ChannelRouter({Channel.WEB: web}),
            scoring_engine=ScoringEngine(FakeLLM(default="ok"), settings),
            invitation_generator=InvitationGenerator(store, FakeLLM(default=""), settings),
            stt=stt,
            file_store=file_store,
            observability=observability,
            settings=settings,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200))),
        )
        job_handlers.register(dispatcher)
        return job_handlers

    @pytest.fixture
    def bot_delivery(self, store, state_machine, observability, settings, telegram_api, dispatcher, file_store):
        telegram = TelegramChannelAdapter(
            store,
            state_machine,
            observability,
            settings,
            sleep=no_sleep,
            client=telegram_api.client(),
            dispatcher=dispatcher,
            file_store=file_store,
        )
        return MessageDelivery(store, ChannelRouter({Channel.TELEGRAM: telegram}))

    async def queued_reply(self, worker_handlers, store, state_machine, file_store, dispatcher):
        conversation, voice = await voice_message(store, state_machine, file_store)
        await worker_handlers.transcribe_voice(VoiceTranscribePayload(message_id=voice.id, file_id=voice.file_id))
        dispatcher.enqueued.clear()
        await worker_handlers.reply_to_conversation(
            ConversationReplyPayload(conversation_id=conversation.id, message_id=voice.id)
        )
        return conversation

    @pytest.mark.asyncio
    async def test_worker_enqueues_delivery_instead_of_sending(
        self, worker_handlers, store, state_machine, file_store, dispatcher, telegram_api
    ) -> None:
        conversation = await self.queued_reply(worker_handlers, store, state_machine, file_store, dispatcher)

        reply = (await store.get_history(conversation.id))[-1]
        assert reply.sender == SenderRole.BOT
        assert reply.delivery_status == DeliveryStatus.PENDING
        assert dispatcher.enqueued == [
            ("message.deliver", {"conversationId": str(conversation.id), "messageId": str(reply.id)})
        ]
        assert telegram_api.sent == []

    @pytest.mark.asyncio
    async def test_bot_delivers_queued_reply_once(
        self, worker_handlers, bot_delivery, store, state_machine, file_store, dispatcher, telegram_api
    ) -> None:
        conversation = await self.queued_reply(worker_handlers, store, state_machine, file_store, dispatcher)
        reply = (await store.get_history(conversation.id))[-1]
        payload = MessageDeliverPayload(conversation_id=conversation.id, message_id=reply.id)

        await bot_delivery.deliver_message(payload)
        await bot_delivery.deliver_message(payload)

        assert (await store.get_message(reply.id)).delivery_status == DeliveryStatus.SENT
        assert [m["text"] for m in telegram_api.sent] == [reply.content]

    @pytest.mark.asyncio
    async def test_failed_delivery_is_retryable(
        self, worker_handlers, bot_delivery, store, state_machine, file_store, dispatcher, telegram_api
    ) -> None:
        conversation = await self.queued_reply(worker_handlers, store, state_machine, file_store, dispatcher)
        reply = (await store.get_history(conversation.id))[-1]
        telegram_api.failing_sends = 100

        with pytest.raises(DeliveryFailed):
            await bot_delivery.deliver_message(
                MessageDeliverPayload(conversation_id=conversation.id, message_id=reply.id)
            )

        assert (await store.get_message(reply.id)).delivery_status == DeliveryStatus.FAILED


class TestScoring:
    """interview.score passes are deduplicated by snapshot."""

    @pytest.mark.asyncio
    async def test_unchanged_snapshot_is_scored_once(self, handlers, store, observability) -> None:
        conversation = await store.create_conversation(Channel.WEB, "response-3")
        await store.append_turn(
            conversation.id,
            CanonicalMessage(sender=SenderRole.CANDIDATE, content="Hello"),
            CanonicalMessage(sender=SenderRole.BOT, content="What is your experience with databases?"),
        )
        await store.append_message(
            conversation.id,
            CanonicalMessage(
                sender=SenderRole.CANDIDATE,
                content="Five years with PostgreSQL databases, tuning queries and designing schemas.",
            ),
        )
        await store.transition_status(conversation.id, ConversationStatus.COMPLETED, "done")
        payload = InterviewScorePayload(conversation_id=conversation.id)

        await handlers.score_interview(payload)
        await handlers.score_interview(payload)

        passes = await store.list_scoring(conversation.id)
        assert len(passes) == 1
        assert passes[0].analysis == "Solid, concise answers."
        assert passes[0].channel == Channel.WEB
        assert observability.counters["funnel.interview.scored"] == 1

    @pytest.mark.asyncio
    async def test_new_transcript_triggers_new_pass(
        self, handlers, store, state_machine, file_store
    ) -> None:
        conversation, voice = await voice_message(store, state_machine, file_store)
        await state_machine.complete(conversation.id)
        payload = InterviewScorePayload(conversation_id=conversation.id)

        await handlers.score_interview(payload)
        await handlers.transcribe_voice(VoiceTranscribePayload(message_id=voice.id, file_id=voice.file_id))
        await handlers.score_interview(payload)

        passes = await store.list_scoring(conversation.id)
        assert len(passes) == 2
        assert passes[0].snapshot_hash != passes[1].snapshot_hash


class TestIntegrationChecks:
    """integration.verify and credentials.verify."""

    @pytest.mark.asyncio
    async def test_valid_bot_token_is_reauthenticated(self, handlers, store, observability) -> None:
        credential = await store.save_credential(ChannelCredential(workspace_id="ws-1", session_data="123:abc"))
        await store.mark_auth_error(credential.id, "old failure")

        await handlers.verify_integration(IntegrationVerifyPayload(integration_id=credential.id, workspace_id="ws-1"))

        updated = await store.get_credential(credential.id)
        assert updated.auth_error is None
        assert updated.user_info["username"] == "hr_bot"
        assert observability.counters["funnel.integration.verified"] == 1

    @pytest.mark.asyncio
    async def test_rejected_bot_token_is_marked(self, handlers, store, telegram_api) -> None:
        credential = await store.save_credential(ChannelCredential(workspace_id="ws-1", session_data="123:abc"))
        telegram_api.unauthorized = True

        await handlers.verify_integration(IntegrationVerifyPayload(integration_id=credential.id, workspace_id="ws-1"))

        updated = await store.get_credential(credential.id)
        assert updated.auth_error is not None
        assert not updated.is_usable

    @pytest.mark.asyncio
    async def test_other_workspace_credential_is_untouched(self, handlers, store, observability) -> None:
        credential = await store.save_credential(ChannelCredential(workspace_id="ws-1", session_data="123:abc"))

        await handlers.verify_integration(IntegrationVerifyPayload(integration_id=credential.id, workspace_id="ws-2"))

        assert (await store.get_credential(credential.id)).user_info == {}
        assert "funnel.integration.verified" not in observability.counters

    @pytest.mark.asyncio
    async def test_credentials_check_never_logs_password(
        self, handlers, observability, verify_requests, verify_status, caplog
    ) -> None:
        verify_status["json"] = {"valid": False}
        payload = CredentialsVerifyPayload(email="hr@example.com", password="s3cret-pass", workspace_id="ws-1")

        with caplog.at_level(logging.DEBUG):
            await handlers.verify_credentials(payload)

        assert len(verify_requests) == 1
        assert b"s3cret-pass" in verify_requests[0].content
        assert "s3cret-pass" not in caplog.text
        assert observability.counters["funnel.credentials.verified"] == 1

    @pytest.mark.asyncio
    async def test_credentials_endpoint_outage_is_retryable(self, handlers, verify_status) -> None:
        verify_status.update(status=503, json={"error": "maintenance"})
        payload = CredentialsVerifyPayload(email="hr@example.com", password="pw", workspace_id="ws-1")

        with pytest.raises(TransientError):
            await handlers.verify_credentials(payload)


class TestInvitation:
    @pytest.mark.asyncio
    async def test_invitation_is_generated_once_per_response(self, handlers, store, observability, settings) -> None:
        payload = InvitationGeneratePayload(response_id="response-9")

        await handlers.generate_invitation(payload)
        conversation = await store.find_conversation("response-9", Channel.WEB)
        first = conversation.metadata["invitation"]
        await handlers.generate_invitation(payload)

        again = await store.find_conversation("response-9", Channel.WEB)
        stored = again.metadata["invitation"]
        assert again.id == conversation.id
        assert stored["text_template"] == first["text_template"]
        assert stored["pin_code"] == first["pin_code"]
        assert URL_PLACEHOLDER in stored["text_template"]
        assert first["pin_code"] in first["text_template"]
        assert (await store.resolve_pin(first["pin_code"])) == conversation.id
        assert observability.counters["funnel.invitation.generated"] == 2

    @pytest.mark.asyncio
    async def test_metadata_never_holds_the_access_token(self, store, settings) -> None:
        generator = InvitationGenerator(store, FakeLLM(default=""), settings)

        invitation = await generator.generate("response-10")

        assert invitation.url.startswith(settings.interview_base_url)
        assert invitation.url in invitation.text
        token = invitation.url.rsplit("/", 1)[1]
        conversation = await store.find_conversation("response-10", Channel.WEB)
        stored = conversation.metadata["invitation"]
        assert token not in str(conversation.metadata)
        assert stored["token_hash"] == hash_token(token)
        assert (await store.resolve_token(token)).conversation_id == conversation.id

    @pytest.mark.asyncio
    async def test_repeated_generation_issues_a_working_link(self, store, settings) -> None:
        generator = InvitationGenerator(store, FakeLLM(default=""), settings)

        first = await generator.generate("response-11")
        second = await generator.generate("response-11")

        assert second.url != first.url
        assert second.pin_code == first.pin_code
        assert second.text == first.text.replace(first.url, second.url)
        for invitation in (first, second):
            token = invitation.url.rsplit("/", 1)[1]
            assert (await store.resolve_token(token)).conversation_id == UUID(invitation.conversation_id)
