"""
Invitation generator.

Prepares a web interview for a candidate response: a conversation, an
access token with its pin code, and the invitation text.

Conversation metadata keeps the invitation with its link replaced by a
placeholder and only the hash of the token; the usable link exists only in
the `Invitation` handed back to the caller.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from autonaim_interview.config import Settings, get_settings
from autonaim_interview.db.store import hash_token
from autonaim_interview.errors import LLMProviderError
from autonaim_interview.models.llm_client import LLMClient, LLMClientBase, Message as LLMMessage
from autonaim_interview.orchestrator.schemas import Channel, IssuedToken

if TYPE_CHECKING:
    from autonaim_interview.db.store import SessionStore

logger = logging.getLogger(__name__)

URL_PLACEHOLDER = "{interview_url}"


class Invitation(BaseModel):
    """Invitation ready to be sent to the candidate."""

    conversation_id: str
    url: str = Field(..., description="Web interview link carrying the access token")
    pin_code: str = Field(..., description="Code that binds a messenger chat to this interview")
    text: str
    expires_at: str


class StoredInvitation(BaseModel):
    """Invitation as kept in conversation metadata, without the access token."""

    conversation_id: str
    token_hash: str = Field(..., description="sha256 of the latest issued access token")
    pin_code: str
    text_template: str = Field(..., description=f"Invitation text with the link as {URL_PLACEHOLDER}")
    expires_at: str


class InvitationGenerator:
    """Creates (or reuses) the web interview and invitation for a response."""

    INVITATION_PROMPT = """Write a short, friendly invitation to an online interview.

Candidate: {candidate_name}
Position: {position_title}
Company: {company_name}

The message must contain this link exactly once: {url}
Mention that the candidate can also continue in the messenger bot by sending the code {pin_code}.
Keep it under 600 characters. Plain text, no markdown."""

    TEMPLATE = (
        "Hello{greeting_name}! Thank you for your interest in the {position_title} position. "
        "We invite you to a short online interview: {url}\n"
        "You can also continue in our messenger bot by sending the code {pin_code}."
    )

    def __init__(
        self,
        store: SessionStore,
        llm_client: LLMClientBase | None = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._store = store
        self._llm_client = llm_client or LLMClient()
        self._base_url = settings.interview_base_url.rstrip("/")

    async def generate(self, response_id: str, metadata: dict[str, Any] | None = None) -> Invitation:
        """
        Produce the invitation for a candidate response.

        Idempotent per response: a second call keeps the conversation, the
        text and the pin code, and issues a fresh link for them.

        Args:
            response_id: Candidate response id (used as the candidate reference).
            metadata: Conversation metadata for a newly created conversation.

        Returns:
            The invitation with a usable link.
        """
        conversation = await self._store.find_conversation(response_id, Channel.WEB)
        if conversation is None:
            conversation = await self._store.create_conversation(Channel.WEB, response_id, metadata)
        elif conversation.metadata.get("invitation"):
            stored = StoredInvitation.model_validate(conversation.metadata["invitation"])
            issued = await self._store.issue_token(conversation.id, pin_code=stored.pin_code)
            logger.info(f"Invitation for response {response_id} already exists, issued a new link")
            return await self._save(issued, stored.text_template)

        issued = await self._store.issue_token(conversation.id)
        url = self._url_for(issued)
        context = {
            "candidate_name": conversation.metadata.get("candidate_name") or "",
            "position_title": conversation.metadata.get("position_title") or "open",
            "company_name": conversation.metadata.get("company_name") or "our company",
            "url": url,
            "pin_code": issued.pin_code,
        }

        text = ""
        try:
            response = await self._llm_client.chat(
                [LLMMessage(role="user", content=self.INVITATION_PROMPT.format(**context))],
                temperature=0.5,
            )
            text = response.content.strip()
        except LLMProviderError as e:
            logger.warning(f"Invitation text generation failed, using template: {e}")
        if url not in text:
            name = context["candidate_name"]
            text = self.TEMPLATE.format(greeting_name=f", {name}" if name else "", **context)

        invitation = await self._save(issued, text.replace(url, URL_PLACEHOLDER))
        logger.info(f"Generated invitation for response {response_id} (conversation {conversation.id})")
        return invitation

    def _url_for(self, issued: IssuedToken) -> str:
        return f"{self._base_url}/{issued.token}"

    async def _save(self, issued: IssuedToken, text_template: str) -> Invitation:
        stored = StoredInvitation(
            conversation_id=str(issued.conversation_id),
            token_hash=hash_token(issued.token),
            pin_code=issued.pin_code,
            text_template=text_template,
            expires_at=issued.expires_at.isoformat(),
        )
        await self._store.update_metadata(issued.conversation_id, {"invitation": stored.model_dump()})
        url = self._url_for(issued)
        return Invitation(
            conversation_id=stored.conversation_id,
            url=url,
            pin_code=issued.pin_code,
            text=text_template.replace(URL_PLACEHOLDER, url),
            expires_at=stored.expires_at,
        )
