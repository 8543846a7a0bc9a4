from __future__ import annotations

from dataclasses import dataclass
import logging
from threading import Event
from typing import Callable

from chainloop.detector import PollingKeywordDetector
from chainloop.errors import StreamReadError
from chainloop.models import MonitorResult, MonitorTimeout, StageTransition, TerminalState
from chainloop.observability import log_event, logging_monitor_context
from chainloop.state_machine import ChainStateMachine


LOGGER = logging.getLogger("chainloop.monitor")


@dataclass(frozen=True)
class MonitorStatus:
    active: bool
    stage_index: int
    stage_name: str
    awaited_keyword: str
    iteration: int
    max_iterations: int
    poll_count: int
    executed_stage_count: int
    all_resolved_observed: bool
    terminal_state: TerminalState | None


class ChainMonitor:
    """Runs the poll → detect → act loop for one stream as a repeating scheduled task."""

    def __init__(
        self,
        *,
        detector: PollingKeywordDetector,
        state_machine: ChainStateMachine,
        poll_interval_seconds: float,
        monitor_id: str = "chain-loop-monitor",
        on_transition: Callable[[StageTransition], None] | None = None,
    ) -> None:
        self._detector = detector
        self._state_machine = state_machine
        self._poll_interval_seconds = poll_interval_seconds
        self._monitor_id = monitor_id
        self._on_transition = on_transition
        self._stop_event = Event()
        self._active = False
        self._result: MonitorResult | None = None

    @property
    def active(self) -> bool:
        return self._active

    @property
    def result(self) -> MonitorResult | None:
        return self._result

    def start(self) -> None:
        self._detector.start()
        self._stop_event.clear()
        self._active = True
        self._result = None
        log_event(
            LOGGER,
            "monitor_started",
            monitor_id=self._monitor_id,
            stages=" -> ".join(stage.name for stage in self._state_machine.stages),
            max_iterations=self._state_machine.iterations.max_iterations,
            poll_interval_seconds=self._poll_interval_seconds,
        )

    def stop(self) -> MonitorResult | None:
        if not self._active:
            return self._result
        log_event(LOGGER, "monitor_stop_requested", monitor_id=self._monitor_id)
        return self._finish("stopped", detail="stop requested")

    def tick(self) -> MonitorResult | None:
        if not self._active:
            return self._result

        try:
            outcome = self._detector.poll(self._state_machine.awaited_keyword)
        except StreamReadError as exc:
            log_event(
                LOGGER,
                "monitor_read_failed",
                level=logging.ERROR,
                monitor_id=self._monitor_id,
                error=str(exc),
            )
            return self._finish("fatal_error", detail=str(exc))

        if isinstance(outcome, MonitorTimeout):
            return self._finish(
                "timeout", detail=f"no progress after {outcome.elapsed_seconds:.1f}s"
            )
        if outcome is None:
            return None

        transition = self._state_machine.handle(outcome)
        if self._on_transition is not None:
            self._on_transition(transition)
        if self._state_machine.terminal_state is not None:
            return self._finish(
                self._state_machine.terminal_state, detail=self._state_machine.terminal_detail
            )
        return None

    def run(self) -> MonitorResult:
        with logging_monitor_context(self._monitor_id):
            self.start()
            while True:
                result = self.tick()
                if result is not None:
                    return result
                if self._stop_event.wait(self._poll_interval_seconds):
                    return self._finish("stopped", detail="stop requested")

    def status(self) -> MonitorStatus:
        machine = self._state_machine
        return MonitorStatus(
            active=self._active,
            stage_index=machine.active_stage_index,
            stage_name=machine.active_stage.name,
            awaited_keyword=machine.awaited_keyword,
            iteration=machine.iterations.iteration,
            max_iterations=machine.iterations.max_iterations,
            poll_count=self._detector.poll_count,
            executed_stage_count=len(machine.executed_stage_log),
            all_resolved_observed=machine.iterations.resolved_observed,
            terminal_state=machine.terminal_state,
        )

    def _finish(self, state: TerminalState, *, detail: str | None) -> MonitorResult:
        if self._result is not None:
            return self._result
        self._state_machine.terminate(state, detail=detail)
        self._active = False
        self._stop_event.set()
        self._result = MonitorResult(
            terminal_state=state,
            iterations=self._state_machine.iterations.iteration,
            poll_count=self._detector.poll_count,
            executed_stage_count=len(self._state_machine.executed_stage_log),
            detail=detail,
        )
        log_event(
            LOGGER,
            "monitor_finished",
            monitor_id=self._monitor_id,
            terminal_state=state,
            iterations=self._result.iterations,
            poll_count=self._result.poll_count,
            executed_stage_count=self._result.executed_stage_count,
            detail=detail,
        )
        return self._result
