"""
Handlers for the background job events.

Every handler may run more than once for the same payload and must leave
the same observable state as a single run.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable

import httpx

from autonaim_interview.agents.invitation import InvitationGenerator
from autonaim_interview.agents.scoring import ScoringEngine
from autonaim_interview.channels.base import ChannelRouter
from autonaim_interview.channels.telegram import TelegramAuthError, TelegramBotClient
from autonaim_interview.config import Settings, get_settings
from autonaim_interview.errors import DeliveryFailed, InvalidInbound, TransientError
from autonaim_interview.jobs.schemas import (
    ConversationReplyPayload,
    CredentialsVerifyPayload,
    IntegrationVerifyPayload,
    InterviewScorePayload,
    InvitationGeneratePayload,
    MessageDeliverPayload,
    VoiceTranscribePayload,
)
from autonaim_interview.observability import Observability
from autonaim_interview.orchestrator.schemas import ConversationSnapshot, ConversationStatus, DeliveryStatus
from autonaim_interview.voice.files import LocalFileStore
from autonaim_interview.voice.stt import STTProvider

if TYPE_CHECKING:
    from autonaim_interview.db.store import SessionStore
    from autonaim_interview.jobs.dispatcher import JobDispatcher
    from autonaim_interview.orchestrator.state_machine import ConversationStateMachine

logger = logging.getLogger(__name__)


class JobHandlers:
    """Binds each job event to the component that does the work."""

    def __init__(
        self,
        store: SessionStore,
        state_machine: ConversationStateMachine,
        router: ChannelRouter,
        scoring_engine: ScoringEngine,
        invitation_generator: InvitationGenerator,
        stt: STTProvider,
        file_store: LocalFileStore,
        observability: Observability,
        settings: Settings | None = None,
        telegram_client_factory: Callable[[str], TelegramBotClient] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._store = store
        self._state_machine = state_machine
        self._router = router
        self._scoring = scoring_engine
        self._invitations = invitation_generator
        self._stt = stt
        self._files = file_store
        self._obs = observability
        self._high_score = settings.high_score_threshold
        self._verify_url = settings.credentials_verify_url
        self._telegram_client_factory = telegram_client_factory or (
            lambda token: TelegramBotClient(token, api_base=settings.telegram_api_base)
        )
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._dispatcher: JobDispatcher | None = None

    def register(self, dispatcher: JobDispatcher) -> None:
        """Register all handlers; follow-up jobs are enqueued on the same dispatcher."""
        self._dispatcher = dispatcher
        dispatcher.register_handler("voice.transcribe", self.transcribe_voice)
        dispatcher.register_handler("conversation.reply", self.reply_to_conversation)
        dispatcher.register_handler("interview.score", self.score_interview)
        dispatcher.register_handler("integration.verify", self.verify_integration)
        dispatcher.register_handler("credentials.verify", self.verify_credentials)
        dispatcher.register_handler("invitation.generate", self.generate_invitation)

    async def _enqueue(self, event_name: str, payload: dict) -> None:
        if self._dispatcher is None:
            raise RuntimeError("JobHandlers.register() was not called")
        await self._dispatcher.enqueue(event_name, payload)

    async def transcribe_voice(self, payload: VoiceTranscribePayload) -> None:
        """Transcribe a voice message and trigger the reply or a re-score."""
        message = await self._store.get_message(payload.message_id)
        if message is None:
            logger.warning(f"Voice message {payload.message_id} not found, skipping transcription")
            return
        if message.file_id != payload.file_id:
            logger.warning(f"File {payload.file_id} does not belong to message {message.id}, skipping")
            return

        if message.voice_transcript is None:
            try:
                audio = await self._files.read(payload.file_id)
            except FileNotFoundError as e:
                raise InvalidInbound(f"Voice file {payload.file_id} is missing") from e
            result = await self._stt.transcribe(audio)
            updated = await self._state_machine.apply_transcript(message, result.text)
            if updated is None:
                return
            message = updated
            logger.info(f"Transcribed voice message {message.id} ({len(result.text)} chars)")

        conversation = await self._store.get_conversation(message.conversation_id)
        if conversation.status is ConversationStatus.ACTIVE:
            await self._enqueue(
                "conversation.reply", {"conversationId": str(conversation.id), "messageId": str(message.id)}
            )
        elif conversation.status is ConversationStatus.COMPLETED:
            await self._enqueue("interview.score", {"conversationId": str(conversation.id)})

    async def reply_to_conversation(self, payload: ConversationReplyPayload) -> None:
        """Answer a stored candidate message and deliver the reply."""
        conversation = await self._store.get_conversation(payload.conversation_id)
        result = await self._state_machine.reply_to_message(
            payload.conversation_id,
            payload.message_id,
            self._router.capabilities_for(conversation.channel),
        )
        if result is None or result.reply.delivery_status is not DeliveryStatus.PENDING:
            return
        if self._router.serves(conversation.channel):
            await self._router.deliver(conversation, result.reply)
        else:
            # The channel credential is held by another process (the bot).
            await self._enqueue(
                "message.deliver", {"conversationId": str(conversation.id), "messageId": str(result.reply.id)}
            )

    async def score_interview(self, payload: InterviewScorePayload) -> None:
        """Run a scoring pass unless the latest one already covers this snapshot."""
        conversation = await self._store.get_conversation(payload.conversation_id)
        messages = await self._store.list_messages(payload.conversation_id)
        snapshot = ConversationSnapshot(conversation=conversation, messages=messages)

        latest = await self._store.latest_scoring(conversation.id)
        if latest is not None and latest.snapshot_hash == self._scoring.snapshot_hash(snapshot):
            logger.info(f"Conversation {conversation.id} already scored for this snapshot")
            return

        result = await self._scoring.score(snapshot)
        saved = await self._store.save_scoring(result)
        self._obs.funnel_event(
            "interview.scored",
            conversation_id=str(conversation.id),
            score=saved.score,
            detailed_score=saved.detailed_score,
            recommendation=saved.recommendation,
        )
        if saved.detailed_score >= self._high_score:
            self._obs.funnel_event(
                "interview.high_score", conversation_id=str(conversation.id), detailed_score=saved.detailed_score
            )

    async def verify_integration(self, payload: IntegrationVerifyPayload) -> None:
        """Check a bot credential against the provider and record its health."""
        credential = await self._store.get_credential(payload.integration_id)
        if credential is None or credential.workspace_id != payload.workspace_id:
            logger.warning(f"Integration {payload.integration_id} not found in workspace {payload.workspace_id}")
            return

        client = self._telegram_client_factory(credential.session_data)
        try:
            bot_info = await client.get_me()
        except TelegramAuthError as e:
            await self._store.mark_auth_error(credential.id, str(e))
            self._obs.funnel_event(
                "integration.verified", integration_id=str(credential.id), workspace_id=payload.workspace_id, ok=False
            )
            return
        finally:
            await client.close()

        await self._store.reauthenticate(credential.id, user_info=bot_info)
        self._obs.funnel_event(
            "integration.verified", integration_id=str(credential.id), workspace_id=payload.workspace_id, ok=True
        )

    async def verify_credentials(self, payload: CredentialsVerifyPayload) -> None:
        """Check job-board login credentials with the verification endpoint."""
        try:
            response = await self._http_client.post(
                self._verify_url,
                json={
                    "email": payload.email,
                    "password": payload.password.get_secret_value(),
                    "workspaceId": payload.workspace_id,
                },
            )
        except httpx.HTTPError as e:
            raise TransientError(f"Credential verification request failed: {type(e).__name__}") from e

        if response.status_code >= 500 or response.status_code == 429:
            raise TransientError(f"Credential verification unavailable (HTTP {response.status_code})")
        valid = False
        if response.status_code < 400:
            try:
                valid = bool(response.json().get("valid", True))
            except ValueError:
                valid = True

        logger.info(f"Credentials for workspace {payload.workspace_id} verified: valid={valid}")
        self._obs.funnel_event("credentials.verified", workspace_id=payload.workspace_id, valid=valid)

    async def generate_invitation(self, payload: InvitationGeneratePayload) -> None:
        invitation = await self._invitations.generate(payload.response_id)
        self._obs.funnel_event(
            "invitation.generated", response_id=payload.response_id, conversation_id=invitation.conversation_id
        )

    async def close(self) -> None:
        await self._http_client.aclose()


class MessageDelivery:
    """
    Sends stored bot messages on behalf of processes without the channel.

    Registered by the process that holds the channel credential lease, so
    every outbound Telegram message goes through the lease holder.
    """

    def __init__(self, store: SessionStore, router: ChannelRouter) -> None:
        self._store = store
        self._router = router

    def register(self, dispatcher: JobDispatcher) -> None:
        dispatcher.register_handler("message.deliver", self.deliver_message)

    async def deliver_message(self, payload: MessageDeliverPayload) -> None:
        """
        Raises:
            DeliveryFailed: The message could not be sent; the job is retried.
        """
        message = await self._store.get_message(payload.message_id)
        if message is None or message.conversation_id != payload.conversation_id:
            logger.warning(f"Message {payload.message_id} not found in conversation {payload.conversation_id}")
            return
        if message.delivery_status is DeliveryStatus.SENT:
            logger.info(f"Message {message.id} already delivered")
            return

        conversation = await self._store.get_conversation(payload.conversation_id)
        result = await self._router.deliver(conversation, message)
        if not result.delivered:
            raise DeliveryFailed(f"Delivery of message {message.id} failed ({result.error})")
