"""
Process-wide observability state.

One `Observability` instance is built at process start (see `main`) and handed
to every component that needs it. It owns failure reporting, timing spans, and
the funnel-activity sink. Nothing in business logic reaches for a module global.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class FunnelSink(Protocol):
    """External consumer of funnel-activity events."""

    def emit(self, name: str, data: dict[str, Any]) -> None: ...


class LoggingFunnelSink:
    """Default sink: funnel events go to the log."""

    def __init__(self) -> None:
        self._logger = logging.getLogger("autonaim_interview.funnel")

    def emit(self, name: str, data: dict[str, Any]) -> None:
        self._logger.info(f"funnel {name}: {data}")


class Observability:
    """Failure reporting, timing spans and funnel events for one process."""

    def __init__(self, funnel_sink: FunnelSink | None = None) -> None:
        self._funnel_sink = funnel_sink or LoggingFunnelSink()
        self._counters: Counter[str] = Counter()
        self._failures: list[dict[str, Any]] = []

    @contextmanager
    def span(self, name: str, **attrs: Any) -> Iterator[dict[str, Any]]:
        """
        Time an operation and log its outcome.

        The yielded dict can be filled with extra attributes by the caller.
        """
        started = time.perf_counter()
        fields: dict[str, Any] = dict(attrs)
        try:
            yield fields
        except BaseException as e:
            elapsed_ms = (time.perf_counter() - started) * 1000
            self._counters[f"{name}.error"] += 1
            logger.debug(f"span {name} failed after {elapsed_ms:.0f}ms ({type(e).__name__}) {fields}")
            raise
        else:
            elapsed_ms = (time.perf_counter() - started) * 1000
            self._counters[f"{name}.ok"] += 1
            logger.debug(f"span {name} took {elapsed_ms:.0f}ms {fields}")

    def report_failure(self, component: str, error: BaseException, **context: Any) -> None:
        """
        Record a failure that was handled (degraded) rather than propagated.

        Args:
            component: Name of the reporting component.
            error: The underlying exception.
            **context: Identifiers that help locate the failure.
        """
        self._counters[f"{component}.failure"] += 1
        self._failures.append({"component": component, "error": repr(error), **context})
        logger.error(f"{component} failure: {error} {context}")

    def funnel_event(self, name: str, **data: Any) -> None:
        """Forward a funnel-activity event to the external sink."""
        self._counters[f"funnel.{name}"] += 1
        try:
            self._funnel_sink.emit(name, data)
        except Exception as e:
            logger.warning(f"Funnel sink rejected event {name}: {e}")

    def increment(self, name: str, amount: int = 1) -> None:
        """Bump a named counter."""
        self._counters[name] += amount

    @property
    def counters(self) -> dict[str, int]:
        """Snapshot of all counters."""
        return dict(self._counters)

    @property
    def failures(self) -> list[dict[str, Any]]:
        """Failures reported so far."""
        return list(self._failures)
