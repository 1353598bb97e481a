"""
Shared fixtures: a SQLite-backed session store and a scripted LLM.
"""

import json
from collections.abc import AsyncIterator
from typing import Any

import httpx
import pytest
import pytest_asyncio

from autonaim_interview.channels.telegram import TelegramBotClient
from autonaim_interview.config import Settings
from autonaim_interview.db.store import SessionStore
from autonaim_interview.errors import LLMProviderError
from autonaim_interview.models.llm_client import LLMClientBase, LLMResponse, Message, StreamChunk
from autonaim_interview.observability import Observability
from autonaim_interview.orchestrator.state_machine import ConversationStateMachine
from autonaim_interview.orchestrator.tools import InterviewTools
from autonaim_interview.orchestrator.turn_orchestrator import TurnOrchestrator
from autonaim_interview.voice.files import LocalFileStore
from autonaim_interview.voice.stt import STTProvider, TranscriptionResult


class FakeLLM(LLMClientBase):
    """
    Scripted LLM.

    Each script entry answers one call: a string or LLMResponse is returned,
    an exception is raised, and a list is streamed item by item (exceptions
    inside the list are raised mid-stream). Once the script is used up the
    default reply is returned.
    """

    def __init__(self, script: list[Any] | None = None, default: str = "Tell me more about that.") -> None:
        self.script = list(script or [])
        self.default = default
        self.calls: list[list[Message]] = []

    @property
    def model(self) -> str:
        return "fake-model"

    def _next(self, messages: list[Message]) -> Any:
        self.calls.append(list(messages))
        return self.script.pop(0) if self.script else self.default

    async def chat(self, messages, temperature=0.7, max_tokens=None, tools=None, **kwargs) -> LLMResponse:
        item = self._next(messages)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, LLMResponse):
            return item
        if isinstance(item, list):
            return LLMResponse(content="".join(str(part) for part in item))
        return LLMResponse(content=str(item))

    async def stream_chat(self, messages, temperature=0.7, max_tokens=None, tools=None, **kwargs):
        item = self._next(messages)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, LLMResponse):
            yield StreamChunk(delta=item.content, tool_calls=item.tool_calls, done=True)
            return
        parts = item if isinstance(item, list) else [item]
        for part in parts:
            if isinstance(part, BaseException):
                raise part
            yield StreamChunk(delta=str(part))
        yield StreamChunk(done=True)


async def no_sleep(_: float) -> None:
    return None


def transient(message: str = "provider down") -> LLMProviderError:
    return LLMProviderError(message, status_code=503, transient=True)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        llm_max_retries=2,
        llm_retry_backoff_s=0.0,
        turn_timeout_s=5.0,
        max_bot_questions=8,
        job_backoff_base_s=0.0,
        job_backoff_max_s=0.0,
        delivery_backoff_s=0.0,
        file_storage_path=str(tmp_path / "files"),
    )


@pytest.fixture
def observability() -> Observability:
    return Observability()


@pytest_asyncio.fixture
async def store(settings: Settings) -> AsyncIterator[SessionStore]:
    store = SessionStore.from_url(settings.database_url)
    await store.create_all()
    yield store
    await store.dispose()


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def orchestrator(llm: FakeLLM, observability: Observability, settings: Settings, store: SessionStore) -> TurnOrchestrator:
    return TurnOrchestrator(
        llm_client=llm,
        observability=observability,
        tools=InterviewTools(store),
        settings=settings,
        sleep=no_sleep,
    )


@pytest.fixture
def state_machine(
    store: SessionStore,
    orchestrator: TurnOrchestrator,
    observability: Observability,
) -> ConversationStateMachine:
    return ConversationStateMachine(store, orchestrator, observability)


class FakeTelegramAPI:
    """In-memory Bot API served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.files: dict[str, bytes] = {}
        self.updates: list[dict[str, Any]] = []
        self.failing_sends = 0
        self.unauthorized = False
        self._next_id = 100

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.unauthorized:
            return httpx.Response(401, json={"ok": False, "error_code": 401, "description": "Unauthorized"})
        path = request.url.path
        if "/file/" in path:
            return httpx.Response(200, content=self.files[path.rsplit("/", 1)[-1]])

        method = path.rsplit("/", 1)[-1]
        body = json.loads(request.content or b"{}")
        if method == "getMe":
            return self._ok({"id": 1, "is_bot": True, "username": "hr_bot"})
        if method == "sendMessage":
            if self.failing_sends > 0:
                self.failing_sends -= 1
                return httpx.Response(502, json={"ok": False, "description": "Bad Gateway"})
            self._next_id += 1
            self.sent.append(body)
            return self._ok({"message_id": self._next_id, "chat": {"id": body["chat_id"]}})
        if method == "getFile":
            return self._ok({"file_id": body["file_id"], "file_path": f"voice/{body['file_id']}.oga"})
        if method == "getUpdates":
            updates, self.updates = self.updates, []
            return self._ok(updates)
        return httpx.Response(404, json={"ok": False, "description": "Not Found"})

    def _ok(self, result: Any) -> httpx.Response:
        return httpx.Response(200, json={"ok": True, "result": result})

    def add_voice_file(self, telegram_file_id: str, data: bytes) -> None:
        self.files[f"{telegram_file_id}.oga"] = data

    def client(self, bot_token: str = "123:abc") -> TelegramBotClient:
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
        return TelegramBotClient(bot_token, api_base="https://tg.test", http_client=http_client)


class FakeSTT(STTProvider):
    def __init__(self, text: str = "I have three years of experience with Python and SQL") -> None:
        self.text = text
        self.calls = 0

    async def transcribe(self, audio: bytes) -> TranscriptionResult:
        self.calls += 1
        return TranscriptionResult(text=self.text, language="en")


class RecordingDispatcher:
    """Collects enqueued jobs instead of running them."""

    def __init__(self) -> None:
        self.enqueued: list[tuple[str, dict]] = []
        self.handlers: dict[str, Any] = {}

    def register_handler(self, event_name: str, handler) -> None:
        self.handlers[event_name] = handler

    async def enqueue(self, event_name: str, payload: dict, delay_s: float = 0.0) -> None:
        self.enqueued.append((event_name, payload))


@pytest.fixture
def telegram_api() -> FakeTelegramAPI:
    return FakeTelegramAPI()


@pytest.fixture
def file_store(settings: Settings) -> LocalFileStore:
    return LocalFileStore(settings.file_storage_path)
