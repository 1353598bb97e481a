"""
Tests for the inactivity sweep.
"""

from datetime import timedelta

import pytest
from conftest import FakeLLM

from autonaim_interview.db.store import SessionStore
from autonaim_interview.observability import Observability
from autonaim_interview.orchestrator.schemas import CanonicalMessage, Channel, ConversationStatus, SenderRole
from autonaim_interview.orchestrator.state_machine import ConversationStateMachine
from autonaim_interview.orchestrator.sweeper import IdleSweeper
from autonaim_interview.orchestrator.turn_orchestrator import TurnOrchestrator


class BrokenStateMachine:
    async def sweep_idle(self, now=None, limit=100):
        raise RuntimeError("database went away")


def shifted(store: SessionStore, hours: float) -> SessionStore:
    base = store.now()
    return SessionStore(store.session_factory, clock=lambda: base + timedelta(hours=hours))


class TestIdleSweep:
    @pytest.mark.asyncio
    async def test_only_idle_conversations_are_cancelled(
        self, store: SessionStore, observability: Observability, settings
    ) -> None:
        idle = await store.create_conversation(Channel.WEB, "idle")
        recent = await store.create_conversation(Channel.WEB, "recent")
        finished = await store.create_conversation(Channel.WEB, "finished")
        await store.transition_status(finished.id, ConversationStatus.COMPLETED, "done")

        # Activity 23 hours later keeps one conversation alive.
        later = shifted(store, 23)
        await later.append_message(
            recent.id, CanonicalMessage(sender=SenderRole.CANDIDATE, content="still here")
        )

        sweeping_store = shifted(store, 25)
        machine = ConversationStateMachine(
            sweeping_store,
            TurnOrchestrator(llm_client=FakeLLM(), observability=observability, settings=settings),
            observability,
            inactivity_window=timedelta(hours=24),
        )
        sweeper = IdleSweeper(machine, observability)

        assert await sweeper.run_once() == 1

        assert (await store.get_conversation(idle.id)).status == ConversationStatus.CANCELLED
        assert (await store.get_conversation(idle.id)).status_reason == "inactivity timeout"
        assert (await store.get_conversation(recent.id)).status == ConversationStatus.ACTIVE
        assert (await store.get_conversation(finished.id)).status == ConversationStatus.COMPLETED
        assert observability.counters["funnel.interview.cancelled"] == 1

        # A second sweep finds nothing left to do.
        assert await sweeper.run_once() == 0

    @pytest.mark.asyncio
    async def test_sweep_failure_is_reported(self, observability: Observability) -> None:
        sweeper = IdleSweeper(BrokenStateMachine(), observability)

        assert await sweeper.run_once() == 0
        assert observability.counters["idle_sweeper.failure"] == 1
