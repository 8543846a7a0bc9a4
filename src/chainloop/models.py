from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal


ActionType = Literal["send_work_to_agent", "forward_response_to_agent"]
TerminationReason = Literal["max_iterations", "all_resolved"]
TerminalState = Literal["all_resolved", "max_iterations", "timeout", "fatal_error", "stopped"]
ActionStatus = Literal["executed", "duplicate_blocked", "no_work", "no_response"]
TransitionKind = Literal[
    "ignored",
    "skipped_duplicate_execution",
    "advanced",
    "terminated",
    "action_error",
    "action_blocked",
]

ACTION_TYPES: tuple[ActionType, ...] = ("send_work_to_agent", "forward_response_to_agent")


@dataclass(frozen=True)
class ActionDescriptor:
    type: ActionType
    parameters: tuple[tuple[str, str | int | float | bool], ...] = ()

    def params_dict(self) -> dict[str, str | int | float | bool]:
        return dict(self.parameters)


@dataclass(frozen=True)
class LoopCheckConfig:
    increment_iteration: bool = False
    check_max_iterations: bool = False
    check_all_resolved: bool = False


@dataclass(frozen=True)
class ChainStageConfig:
    name: str
    keyword: str
    instruction: str | None = None
    action: ActionDescriptor | None = None
    next_stage_name: str | None = None
    loop_check: LoopCheckConfig | None = None


@dataclass(frozen=True)
class ExecutionRecord:
    keyword: str
    stage_index: int
    iteration: int
    timestamp: str

    @property
    def key(self) -> tuple[str, int, int]:
        return (self.keyword, self.stage_index, self.iteration)


@dataclass(frozen=True)
class DetectionEvent:
    keyword: str
    position: int
    poll_count: int
    detected_at: float


@dataclass(frozen=True)
class MonitorTimeout:
    elapsed_seconds: float
    poll_count: int


@dataclass(frozen=True)
class TerminationDecision:
    terminate: bool
    reason: TerminationReason | None = None


@dataclass(frozen=True)
class WorkItem:
    item_id: str
    title: str
    description: str
    status: str
    priority: str = "medium"
    category: str = "general"
    details: tuple[str, ...] = ()


@dataclass(frozen=True)
class AgentResponse:
    text: str
    received_at: str


@dataclass(frozen=True)
class ActionOutcome:
    status: ActionStatus
    detail: str | None = None


@dataclass(frozen=True)
class StageTransition:
    kind: TransitionKind
    keyword: str
    from_stage_index: int
    to_stage_index: int
    iteration: int
    terminal_state: TerminalState | None = None
    detail: str | None = None


@dataclass(frozen=True)
class LockEvent:
    timestamp: float
    holder_id: str | None
    action: str
    success: bool
    duration_seconds: float | None = None


@dataclass(frozen=True)
class LockStatus:
    holder_id: str | None
    acquired_at: float | None
    held_for_seconds: float | None
    cooldown_remaining_seconds: float


@dataclass(frozen=True)
class LockMetrics:
    acquisitions: int
    releases: int
    duplicates_blocked: int
    forced_releases: int
    recent_events: tuple[LockEvent, ...] = field(default_factory=tuple)

    @property
    def lock_efficiency(self) -> float | None:
        if self.acquisitions == 0:
            return None
        return self.releases / self.acquisitions

    @property
    def duplicate_rate(self) -> float | None:
        attempts = self.acquisitions + self.duplicates_blocked
        if attempts == 0:
            return None
        return self.duplicates_blocked / attempts

    @property
    def average_hold_seconds(self) -> float | None:
        durations = [
            event.duration_seconds
            for event in self.recent_events
            if "released" in event.action and event.duration_seconds is not None
        ]
        if not durations:
            return None
        return sum(durations) / len(durations)


@dataclass(frozen=True)
class MonitorResult:
    terminal_state: TerminalState
    iterations: int
    poll_count: int
    executed_stage_count: int
    detail: str | None = None
