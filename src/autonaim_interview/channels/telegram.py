"""
Telegram messaging-bot channel.

Inbound updates arrive from the Bot API (long polling). A chat is bound to
a conversation either already (chat id stored on the conversation) or by
sending the 4-digit pin code from the invitation. Voice notes are stored as
files and transcribed by a background job; the reply follows the transcript.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import TYPE_CHECKING, Any, ClassVar
from uuid import UUID

import httpx

from autonaim_interview.channels.base import ChannelAdapter
from autonaim_interview.errors import (
    AccessDenied,
    ChannelUnavailable,
    ConversationClosed,
    DeliveryFailed,
    InvalidInbound,
)
from autonaim_interview.orchestrator.schemas import (
    CanonicalMessage,
    Channel,
    ChannelCapabilities,
    ChannelCredential,
    ContentType,
    Conversation,
    ConversationRef,
    Message,
    SenderRole,
    TurnResult,
)

if TYPE_CHECKING:
    from autonaim_interview.jobs.dispatcher import JobDispatcher
    from autonaim_interview.voice.files import LocalFileStore

logger = logging.getLogger(__name__)

_PIN_CODE = re.compile(r"\b\d{4}\b")

VOICE_PLACEHOLDER = "[voice message]"

IDENTIFICATION_PROMPT = (
    "Hello! To continue your interview here, please send the 4-digit code from your invitation."
)


def extract_pin_code(text: str) -> str | None:
    match = _PIN_CODE.search(text or "")
    return match.group(0) if match else None


class TelegramAuthError(ChannelUnavailable):
    """The bot token was rejected by the Bot API."""


class TelegramBotClient:
    """Minimal async client for the Telegram Bot API."""

    def __init__(
        self,
        bot_token: str,
        api_base: str = "https://api.telegram.org",
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._bot_token = bot_token
        self._api_base = api_base.rstrip("/")
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    async def _call(self, method: str, payload: dict[str, Any] | None = None, timeout: float | None = None) -> Any:
        url = f"{self._api_base}/bot{self._bot_token}/{method}"
        try:
            kwargs: dict[str, Any] = {"json": payload or {}}
            if timeout is not None:
                kwargs["timeout"] = timeout
            response = await self._client.post(url, **kwargs)
        except httpx.HTTPError as e:
            raise DeliveryFailed(f"Telegram {method} request failed: {type(e).__name__}") from e

        if response.status_code == 401:
            raise TelegramAuthError("Telegram rejected the bot token")
        try:
            body = response.json()
        except ValueError as e:
            raise DeliveryFailed(f"Telegram {method} returned invalid JSON (HTTP {response.status_code})") from e
        if response.status_code >= 400 or not body.get("ok"):
            description = body.get("description", "unknown error")
            raise DeliveryFailed(f"Telegram {method} failed (HTTP {response.status_code}): {description}")
        return body.get("result")

    async def get_me(self) -> dict[str, Any]:
        return await self._call("getMe")

    async def send_message(self, chat_id: str, text: str) -> str:
        """Send a text message and return its message id."""
        result = await self._call("sendMessage", {"chat_id": chat_id, "text": text})
        return str(result["message_id"])

    async def get_updates(self, offset: int | None = None, timeout: int = 25) -> list[dict[str, Any]]:
        payload: dict[str, Any] = {"timeout": timeout, "allowed_updates": ["message"]}
        if offset is not None:
            payload["offset"] = offset
        return await self._call("getUpdates", payload, timeout=timeout + 10)

    async def download_file(self, file_id: str) -> bytes:
        """Fetch the content of an uploaded file (voice note)."""
        info = await self._call("getFile", {"file_id": file_id})
        url = f"{self._api_base}/file/bot{self._bot_token}/{info['file_path']}"
        try:
            response = await self._client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise DeliveryFailed(f"Telegram file download failed: {type(e).__name__}") from e
        return response.content

    async def close(self) -> None:
        await self._client.aclose()


class TelegramChannelAdapter(ChannelAdapter):
    """Interview over a Telegram bot."""

    channel: ClassVar[Channel] = Channel.TELEGRAM

    def __init__(
        self,
        *args: Any,
        client: TelegramBotClient,
        dispatcher: JobDispatcher,
        file_store: LocalFileStore,
        credential: ChannelCredential | None = None,
        owner: str = "telegram-adapter",
        **kwargs: Any,
    ) -> None:
        super().__init__(*args, **kwargs)
        self._client = client
        self._dispatcher = dispatcher
        self._file_store = file_store
        self._credential = credential
        self._owner = owner
        self._lease_s = self._settings.credential_lease_s
        self._offset: int | None = None
        self._stop = asyncio.Event()

    @property
    def capabilities(self) -> ChannelCapabilities:
        return ChannelCapabilities(streaming=False, voice_input=True, max_message_chars=4096)

    # Credential

    async def acquire(self) -> None:
        """
        Take the exclusive lease on the bot credential.

        Raises:
            ChannelUnavailable: Credential unusable or owned by another instance.
        """
        if self._credential is None:
            return
        self._credential = await self._store.acquire_credential(self._credential.id, self._owner, self._lease_s)
        logger.info(f"Telegram credential {self._credential.id} leased by {self._owner}")

    async def release(self) -> None:
        if self._credential is not None:
            await self._store.release_credential(self._credential.id, self._owner)

    async def _ensure_lease(self) -> None:
        """
        Confirm this instance may use the bot credential, renewing the lease if needed.

        Raises:
            ChannelUnavailable: Credential in authError or leased by another instance.
        """
        if self._credential is None:
            return
        current = await self._store.get_credential(self._credential.id)
        if (
            current is not None
            and current.is_usable
            and current.in_use_by == self._owner
            and current.lease_expires_at is not None
            and current.lease_expires_at > self._store.now()
        ):
            return
        await self.acquire()

    async def _auth_failed(self, error: TelegramAuthError) -> None:
        if self._credential is not None:
            await self._store.mark_auth_error(self._credential.id, str(error))
        self._obs.report_failure("channel.telegram", error)

    # Capability set

    async def resolve_identity(self, channel_token: str) -> ConversationRef:
        """Resolve a chat id to its bound ACTIVE conversation."""
        conversation = await self._store.find_by_chat_id(str(channel_token))
        if conversation is None:
            raise AccessDenied()
        return ConversationRef(conversation_id=conversation.id, channel=conversation.channel)

    async def receive_inbound(self, raw_event: Any) -> CanonicalMessage:
        """
        Translate a Bot API update. Voice content is downloaded and stored.

        Raises:
            InvalidInbound: Update without text or voice.
        """
        message = (raw_event or {}).get("message") or {}
        chat_id = str((message.get("chat") or {}).get("id", ""))
        if not chat_id:
            raise InvalidInbound("Telegram update has no chat")
        external_id = str(message["message_id"]) if "message_id" in message else None
        metadata = {"chat_id": chat_id}

        voice = message.get("voice") or message.get("audio")
        if voice and voice.get("file_id"):
            data = await self._client.download_file(voice["file_id"])
            file_id = await self._file_store.save(data, suffix=".ogg")
            metadata["telegram_file_id"] = voice["file_id"]
            return CanonicalMessage(
                sender=SenderRole.CANDIDATE,
                content_type=ContentType.VOICE,
                content=VOICE_PLACEHOLDER,
                file_id=file_id,
                voice_duration=voice.get("duration"),
                external_message_id=external_id,
                channel=Channel.TELEGRAM,
                metadata=metadata,
            )

        text = (message.get("text") or message.get("caption") or "").strip()
        if not text:
            raise InvalidInbound("Telegram update carries neither text nor voice")
        return CanonicalMessage(
            sender=SenderRole.CANDIDATE,
            content=text,
            external_message_id=external_id,
            channel=Channel.TELEGRAM,
            metadata=metadata,
        )

    async def _send(self, conversation: Conversation, message: CanonicalMessage) -> str | None:
        chat_id = conversation.metadata.get("chat_id")
        if not chat_id:
            raise ChannelUnavailable(f"Conversation {conversation.id} is not bound to a chat")
        await self._ensure_lease()
        try:
            external_id = await self._client.send_message(chat_id, message.content)
        except TelegramAuthError as e:
            await self._auth_failed(e)
            raise
        if self._credential is not None:
            await self._store.mark_credential_used(self._credential.id)
        return external_id

    # Update handling

    async def _bind_by_pin(self, chat_id: str, text: str) -> Conversation | None:
        pin_code = extract_pin_code(text)
        if pin_code is None:
            return None
        conversation_id = await self._store.resolve_pin(pin_code)
        if conversation_id is None:
            return None
        source = await self._store.get_conversation(conversation_id)
        if not source.is_active:
            return None
        if source.channel is Channel.TELEGRAM:
            target = source
        else:
            target = await self._store.find_conversation(source.candidate_ref, Channel.TELEGRAM)
            if target is None or not target.is_active:
                metadata = {k: v for k, v in source.metadata.items() if k != "invitation"}
                metadata["source_conversation_id"] = str(source.id)
                target = await self._store.create_conversation(Channel.TELEGRAM, source.candidate_ref, metadata)
        bound = await self._store.bind_chat(target.id, chat_id)
        logger.info(f"Chat {chat_id} bound to conversation {bound.id} by pin code")
        return bound

    async def _reply_direct(self, chat_id: str, text: str) -> None:
        try:
            await self._ensure_lease()
            await self._client.send_message(chat_id, text)
        except TelegramAuthError as e:
            await self._auth_failed(e)
        except (DeliveryFailed, ChannelUnavailable) as e:
            logger.warning(f"Could not answer chat {chat_id}: {e}")

    async def handle_update(self, update: dict[str, Any]) -> TurnResult | Message | None:
        """
        Process one Bot API update end to end.

        Returns:
            The committed turn for text, the stored voice message for voice,
            or None when nothing was recorded.
        """
        message = update.get("message")
        if not message or "chat" not in message:
            return None
        chat_id = str(message["chat"]["id"])

        try:
            ref = await self.resolve_identity(chat_id)
            conversation_id = ref.conversation_id
        except AccessDenied:
            bound = await self._bind_by_pin(chat_id, message.get("text") or "")
            if bound is None:
                await self._reply_direct(chat_id, IDENTIFICATION_PROMPT)
                return None
            conversation_id = bound.id

        external_id = str(message.get("message_id", ""))
        if external_id and await self._store.find_by_external_id(conversation_id, external_id):
            logger.info(f"Duplicate Telegram message {external_id} for conversation {conversation_id}, ignoring")
            self._obs.increment("telegram.duplicate")
            return None
        if not (await self._store.get_conversation(conversation_id)).is_active:
            logger.info(f"Conversation {conversation_id} closed, message from chat {chat_id} not recorded")
            return None

        try:
            inbound = await self.receive_inbound(update)
        except InvalidInbound as e:
            logger.debug(f"Ignoring Telegram update: {e}")
            return None

        try:
            if inbound.content_type is ContentType.VOICE:
                return await self._record_voice(conversation_id, inbound)
            result = await self._state_machine.handle_inbound_turn(conversation_id, inbound, self.capabilities)
        except ConversationClosed:
            logger.info(f"Conversation {conversation_id} closed, message from chat {chat_id} not recorded")
            return None

        await self.deliver_outbound(conversation_id, result.reply)
        return result

    async def _record_voice(self, conversation_id: UUID, inbound: CanonicalMessage) -> Message:
        try:
            stored = await self._state_machine.record_inbound(conversation_id, inbound)
        except ConversationClosed:
            # Closed between the status check and the insert.
            await self._file_store.delete(inbound.file_id)
            raise
        await self._dispatcher.enqueue(
            "voice.transcribe", {"messageId": str(stored.id), "fileId": stored.file_id}
        )
        return stored

    # Polling

    def stop(self) -> None:
        self._stop.set()

    async def poll_once(self, timeout: int = 25) -> int:
        """Fetch and process one batch of updates."""
        updates = await self._client.get_updates(self._offset, timeout=timeout)
        for update in updates:
            self._offset = int(update["update_id"]) + 1
            try:
                await self.handle_update(update)
            except Exception as e:
                self._obs.report_failure("channel.telegram", e, update_id=update.get("update_id"))
        return len(updates)

    async def run(self, timeout: int = 25) -> None:
        """Long-poll the Bot API until `stop()` is called."""
        await self.acquire()
        logger.info("Telegram polling started")
        try:
            while not self._stop.is_set():
                try:
                    await self.poll_once(timeout)
                    if self._credential is not None:
                        await self.acquire()
                except TelegramAuthError as e:
                    await self._auth_failed(e)
                    break
                except DeliveryFailed as e:
                    logger.warning(f"Telegram polling failed: {e}")
                    await self._sleep(self._backoff_s)
        finally:
            await self.release()
            logger.info("Telegram polling stopped")
