from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Callable

from chainloop.actions import ActionExecutor
from chainloop.errors import ActionError, ChainloopError
from chainloop.iteration import IterationController
from chainloop.models import (
    ChainStageConfig,
    DetectionEvent,
    ExecutionRecord,
    StageTransition,
    TerminalState,
    TransitionKind,
)
from chainloop.observability import log_event


LOGGER = logging.getLogger("chainloop.state_machine")


class ChainStateMachine:
    """Walks the ordered chain of stages, one detected keyword at a time.

    A stage without ``next_stage_name`` keeps awaiting its own keyword, so a single stage
    can loop until its loop check terminates the run. Failed or lock-blocked actions leave
    the machine on the same stage.
    """

    def __init__(
        self,
        stages: tuple[ChainStageConfig, ...],
        *,
        executor: ActionExecutor,
        iterations: IterationController,
        now_iso: Callable[[], str] | None = None,
    ) -> None:
        if not stages:
            raise ValueError("ChainStateMachine requires at least one stage")
        names = [stage.name for stage in stages]
        if len(set(names)) != len(names):
            raise ValueError("Chain stage names must be unique")
        self._index_by_name = {stage.name: index for index, stage in enumerate(stages)}
        for stage in stages:
            if stage.next_stage_name is not None and stage.next_stage_name not in names:
                raise ValueError(f"Unknown next stage {stage.next_stage_name!r}")
        self._stages = stages
        self._executor = executor
        self._iterations = iterations
        self._now_iso = now_iso or _utc_now_iso8601
        self._active_stage_index = 0
        self._executed: list[ExecutionRecord] = []
        self._executed_keys: set[tuple[str, int, int]] = set()
        self._terminal_state: TerminalState | None = None
        self._terminal_detail: str | None = None

    @property
    def stages(self) -> tuple[ChainStageConfig, ...]:
        return self._stages

    @property
    def active_stage_index(self) -> int:
        return self._active_stage_index

    @property
    def active_stage(self) -> ChainStageConfig:
        return self._stages[self._active_stage_index]

    @property
    def awaited_keyword(self) -> str:
        return self.active_stage.keyword

    @property
    def executed_stage_log(self) -> tuple[ExecutionRecord, ...]:
        return tuple(self._executed)

    @property
    def iterations(self) -> IterationController:
        return self._iterations

    @property
    def terminal_state(self) -> TerminalState | None:
        return self._terminal_state

    @property
    def terminal_detail(self) -> str | None:
        return self._terminal_detail

    @property
    def is_terminal(self) -> bool:
        return self._terminal_state is not None

    def handle(self, event: DetectionEvent) -> StageTransition:
        stage_index = self._active_stage_index
        stage = self.active_stage

        if self._terminal_state is not None:
            return self._transition("ignored", event.keyword, stage_index, detail="terminal")
        if event.keyword != stage.keyword:
            return self._transition(
                "ignored", event.keyword, stage_index, detail=f"awaiting {stage.keyword}"
            )

        if stage.loop_check is not None:
            try:
                decision = self._iterations.evaluate(stage.loop_check)
            except ChainloopError as exc:
                return self._transition(
                    "action_error",
                    event.keyword,
                    stage_index,
                    detail=f"loop check failed: {exc}",
                )
            if decision.terminate and decision.reason is not None:
                self._terminal_state = decision.reason
                self._terminal_detail = f"loop check on stage {stage.name}"
                log_event(
                    LOGGER,
                    "loop_terminated",
                    reason=decision.reason,
                    stage=stage.name,
                    iteration=self._iterations.iteration,
                )
                return self._transition(
                    "terminated", event.keyword, stage_index, terminal_state=decision.reason
                )

        iteration = self._iterations.iteration
        key = (event.keyword, stage_index, iteration)
        if key in self._executed_keys:
            return self._transition(
                "skipped_duplicate_execution",
                event.keyword,
                stage_index,
                detail="stage already executed in this iteration",
            )

        try:
            outcome = self._executor.execute(stage, iteration=iteration)
        except ActionError as exc:
            return self._transition("action_error", event.keyword, stage_index, detail=str(exc))

        if outcome.status == "duplicate_blocked":
            return self._transition(
                "action_blocked", event.keyword, stage_index, detail="send lock unavailable"
            )

        record = ExecutionRecord(
            keyword=event.keyword,
            stage_index=stage_index,
            iteration=iteration,
            timestamp=self._now_iso(),
        )
        self._executed.append(record)
        self._executed_keys.add(record.key)

        if stage.next_stage_name is not None:
            self._active_stage_index = self._index_by_name[stage.next_stage_name]
        return self._transition("advanced", event.keyword, stage_index, detail=outcome.status)

    def terminate(self, state: TerminalState, *, detail: str | None = None) -> None:
        if self._terminal_state is not None:
            return
        self._terminal_state = state
        self._terminal_detail = detail
        log_event(
            LOGGER,
            "stage_machine_terminated",
            level=logging.INFO if state == "stopped" else logging.WARNING,
            terminal_state=state,
            stage=self.active_stage.name,
            detail=detail,
        )

    def _transition(
        self,
        kind: TransitionKind,
        keyword: str,
        from_stage_index: int,
        *,
        terminal_state: TerminalState | None = None,
        detail: str | None = None,
    ) -> StageTransition:
        transition = StageTransition(
            kind=kind,
            keyword=keyword,
            from_stage_index=from_stage_index,
            to_stage_index=self._active_stage_index,
            iteration=self._iterations.iteration,
            terminal_state=terminal_state,
            detail=detail,
        )
        log_event(
            LOGGER,
            "stage_transition",
            level=logging.ERROR if kind == "action_error" else logging.INFO,
            kind=kind,
            keyword=keyword,
            from_stage=self._stages[from_stage_index].name,
            to_stage=self.active_stage.name,
            iteration=transition.iteration,
            terminal_state=terminal_state,
            detail=detail,
        )
        return transition


def _utc_now_iso8601() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
