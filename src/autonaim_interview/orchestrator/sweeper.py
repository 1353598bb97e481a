"""
Background sweep that cancels idle conversations.
"""

from __future__ import annotations

import asyncio
import logging

from autonaim_interview.observability import Observability
from autonaim_interview.orchestrator.state_machine import ConversationStateMachine

logger = logging.getLogger(__name__)


class IdleSweeper:
    """Periodically runs `ConversationStateMachine.sweep_idle`."""

    def __init__(
        self,
        state_machine: ConversationStateMachine,
        observability: Observability,
        interval_s: float = 300.0,
    ) -> None:
        self._state_machine = state_machine
        self._obs = observability
        self._interval_s = interval_s
        self._stop = asyncio.Event()

    def stop(self) -> None:
        self._stop.set()

    async def run_once(self) -> int:
        """Run one sweep; failures are reported and do not stop the loop."""
        try:
            cancelled = await self._state_machine.sweep_idle()
        except Exception as e:
            self._obs.report_failure("idle_sweeper", e)
            return 0
        return len(cancelled)

    async def run(self) -> None:
        logger.info(f"Idle sweeper started (every {self._interval_s}s)")
        while not self._stop.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._interval_s)
            except TimeoutError:
                pass
        logger.info("Idle sweeper stopped")
