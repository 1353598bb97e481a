"""
Main entry point for the autonaim interview engine.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass
from datetime import timedelta

from autonaim_interview.agents.invitation import InvitationGenerator
from autonaim_interview.agents.scoring import ScoringEngine
from autonaim_interview.channels.base import ChannelRouter
from autonaim_interview.channels.telegram import TelegramBotClient, TelegramChannelAdapter
from autonaim_interview.channels.web import WebChannelAdapter
from autonaim_interview.config import Settings, get_settings
from autonaim_interview.db.store import SessionStore
from autonaim_interview.errors import ChannelUnavailable
from autonaim_interview.jobs.dispatcher import JobDispatcher
from autonaim_interview.jobs.handlers import JobHandlers, MessageDelivery
from autonaim_interview.models.llm_client import LLMClient
from autonaim_interview.observability import Observability
from autonaim_interview.orchestrator.schemas import Channel
from autonaim_interview.orchestrator.state_machine import ConversationStateMachine
from autonaim_interview.orchestrator.sweeper import IdleSweeper
from autonaim_interview.orchestrator.tools import InterviewTools
from autonaim_interview.orchestrator.turn_orchestrator import TurnOrchestrator
from autonaim_interview.voice.files import LocalFileStore
from autonaim_interview.voice.stt import STTConfig, WhisperSTT

logger = logging.getLogger(__name__)


def setup_logging(settings: Settings) -> None:
    """Configure application logging."""
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else getattr(logging, settings.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    # httpx logs every request at INFO, which would include the bot token in URLs.
    logging.getLogger("httpx").setLevel(logging.WARNING)


@dataclass
class Application:
    """Components of one process, wired once at start-up."""

    settings: Settings
    observability: Observability
    store: SessionStore
    llm_client: LLMClient
    state_machine: ConversationStateMachine
    dispatcher: JobDispatcher
    web: WebChannelAdapter
    file_store: LocalFileStore

    async def close(self) -> None:
        await self.llm_client.close()
        await self.store.dispose()


def build_application(settings: Settings | None = None) -> Application:
    settings = settings or get_settings()
    observability = Observability()
    store = SessionStore.from_url(
        settings.database_url, echo=settings.debug, token_ttl_minutes=settings.web_token_ttl_minutes
    )
    llm_client = LLMClient(
        model=settings.llm_model_name,
        base_url=settings.llm_base_url,
        timeout=settings.llm_timeout,
    )
    orchestrator = TurnOrchestrator(
        llm_client=llm_client,
        observability=observability,
        tools=InterviewTools(store),
        settings=settings,
    )
    state_machine = ConversationStateMachine(
        store,
        orchestrator,
        observability,
        conflict_policy=settings.turn_conflict_policy,
        inactivity_window=timedelta(minutes=settings.inactivity_window_minutes),
        turn_lease=timedelta(seconds=settings.turn_lease_s),
    )
    dispatcher = JobDispatcher(store.session_factory, observability, settings)
    state_machine.attach_dispatcher(dispatcher)
    web = WebChannelAdapter(store, state_machine, observability, settings)
    return Application(
        settings=settings,
        observability=observability,
        store=store,
        llm_client=llm_client,
        state_machine=state_machine,
        dispatcher=dispatcher,
        web=web,
        file_store=LocalFileStore(settings.file_storage_path),
    )


async def run_chat(app: Application) -> None:
    """Local text interview over the streaming web channel."""
    conversation = await app.store.create_conversation(Channel.WEB, "local-cli")
    issued = await app.store.issue_token(conversation.id)
    print(f"Interview {conversation.id} started. Type 'quit' to leave.\n")

    while True:
        try:
            text = (await asyncio.to_thread(input, "You: ")).strip()
        except EOFError:
            break
        if text.lower() in {"quit", "exit"}:
            break
        if not text:
            continue

        print("Recruiter: ", end="", flush=True)
        completed = False
        async for event in app.web.stream_reply(issued.token, {"text": text}, session_id=str(conversation.id)):
            if event.type == "delta":
                print(event.text, end="", flush=True)
            elif event.type == "end":
                completed = event.completed
            elif event.type == "error":
                print(f"[{event.code}]", end="")
        print("\n")
        if completed:
            print("The interview is complete. Thank you!")
            break


async def telegram_adapter(app: Application, workspace_id: str) -> tuple[TelegramChannelAdapter, TelegramBotClient]:
    credential = await app.store.get_workspace_credential(workspace_id)
    if credential is None:
        raise ChannelUnavailable(f"No Telegram credential for workspace {workspace_id}")
    client = TelegramBotClient(credential.session_data, api_base=app.settings.telegram_api_base)
    adapter = TelegramChannelAdapter(
        app.store,
        app.state_machine,
        app.observability,
        app.settings,
        client=client,
        dispatcher=app.dispatcher,
        file_store=app.file_store,
        credential=credential,
        owner=f"telegram:{workspace_id}",
    )
    return adapter, client


async def run_worker(app: Application) -> None:
    """
    Job worker plus the idle conversation sweep.

    Telegram replies are handed to the bot process as `message.deliver`
    jobs, since only the holder of the credential lease may send.
    """
    settings = app.settings
    handlers = JobHandlers(
        store=app.store,
        state_machine=app.state_machine,
        router=ChannelRouter({Channel.WEB: app.web}),
        scoring_engine=ScoringEngine(app.llm_client, settings),
        invitation_generator=InvitationGenerator(app.store, app.llm_client, settings),
        stt=WhisperSTT(STTConfig.from_settings(settings)),
        file_store=app.file_store,
        observability=app.observability,
        settings=settings,
    )
    handlers.register(app.dispatcher)
    sweeper = IdleSweeper(app.state_machine, app.observability, settings.sweep_interval_s)
    try:
        await asyncio.gather(app.dispatcher.run_worker(), sweeper.run())
    finally:
        await handlers.close()


async def run_bot(app: Application, workspace_id: str) -> None:
    """Telegram long polling for one workspace's bot, delivering queued replies."""
    adapter, client = await telegram_adapter(app, workspace_id)
    MessageDelivery(app.store, ChannelRouter({Channel.TELEGRAM: adapter})).register(app.dispatcher)

    async def poll() -> None:
        try:
            await adapter.run()
        finally:
            app.dispatcher.stop()

    try:
        await asyncio.gather(poll(), app.dispatcher.run_worker())
    finally:
        await client.close()


async def run(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="autonaim-interview")
    parser.add_argument(
        "--mode",
        choices=["chat", "worker", "bot", "init-db"],
        default="chat",
        help="Local chat, job worker, Telegram bot, or schema bootstrap",
    )
    parser.add_argument("--workspace", help="Workspace whose Telegram bot to poll (bot mode)")
    args = parser.parse_args(argv)
    if args.mode == "bot" and not args.workspace:
        parser.error("--workspace is required in bot mode")

    app = build_application()
    logger.info(f"Starting in {args.mode} mode (model {app.settings.llm_model_name})")
    try:
        if args.mode == "init-db":
            await app.store.create_all()
        elif args.mode == "chat":
            await run_chat(app)
        elif args.mode == "worker":
            await run_worker(app)
        else:
            await run_bot(app, args.workspace)
    finally:
        await app.close()


def main() -> None:
    """Main entry point for the application."""
    setup_logging(get_settings())

    try:
        asyncio.run(run(sys.argv[1:]))
    except KeyboardInterrupt:
        print("\nStopped by user.")
        sys.exit(0)
    except Exception as e:
        logging.error(f"Application error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
