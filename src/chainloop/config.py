from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import tomllib
from typing import Literal, cast

from chainloop.models import (
    ACTION_TYPES,
    ActionDescriptor,
    ActionType,
    ChainStageConfig,
    LoopCheckConfig,
)


LockBackendName = Literal["memory", "file"]


@dataclass(frozen=True)
class RuntimeConfig:
    base_dir: Path
    poll_interval_seconds: float = 2.0
    timeout_seconds: float = 3600.0
    holder_id: str = "chain-loop-monitor"


@dataclass(frozen=True)
class StreamConfig:
    target: str
    capture_lines: int = 30
    max_buffer_chars: int = 10_000
    rotation_threshold_chars: int = 100
    submit_key_presses: int = 2


@dataclass(frozen=True)
class LockConfig:
    backend: LockBackendName = "file"
    cooldown_seconds: float = 2.0
    force_release_after_seconds: float = 600.0
    allowed_holders: frozenset[str] | None = None
    recent_event_limit: int = 100


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 3
    initial_delay_seconds: float = 2.0
    max_delay_seconds: float = 30.0
    multiplier: float = 2.5
    jitter: float = 0.2


@dataclass(frozen=True)
class LoopConfig:
    max_iterations: int = 5
    check_all_resolved: bool = True
    exit_on_all_resolved: bool = True


@dataclass(frozen=True)
class AgentConfig:
    command: tuple[str, ...]
    compact_after_forward: bool = True
    add_instructions: bool = True
    timeout_seconds: float = 900.0


@dataclass(frozen=True)
class WorkItemsConfig:
    path: Path
    unresolved_statuses: tuple[str, ...] = ("fail",)


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    stream: StreamConfig
    lock: LockConfig
    retry: RetryConfig
    loop: LoopConfig
    agent: AgentConfig
    work_items: WorkItemsConfig
    stages: tuple[ChainStageConfig, ...]

    @property
    def lock_state_path(self) -> Path:
        return self.runtime.base_dir / "send_lock.json"


class ConfigError(ValueError):
    pass


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    runtime_data = _require_table(data, "runtime")
    stream_data = _require_table(data, "stream")
    lock_data = _optional_table(data, "lock") or {}
    retry_data = _optional_table(data, "retry") or {}
    loop_data = _optional_table(data, "loop") or {}
    agent_data = _require_table(data, "agent")
    work_items_data = _require_table(data, "work_items")
    chain_data = _require_table(data, "chain")

    runtime = RuntimeConfig(
        base_dir=Path(_require_str(runtime_data, "base_dir")).expanduser(),
        poll_interval_seconds=_float_with_default(runtime_data, "poll_interval_seconds", 2.0),
        timeout_seconds=_float_with_default(runtime_data, "timeout_seconds", 3600.0),
        holder_id=_str_with_default(runtime_data, "holder_id", "chain-loop-monitor"),
    )
    if runtime.poll_interval_seconds < 0.1:
        raise ConfigError("runtime.poll_interval_seconds must be >= 0.1")
    if runtime.timeout_seconds <= 0:
        raise ConfigError("runtime.timeout_seconds must be > 0")

    stream = StreamConfig(
        target=_require_str(stream_data, "target"),
        capture_lines=_int_with_default(stream_data, "capture_lines", 30),
        max_buffer_chars=_int_with_default(stream_data, "max_buffer_chars", 10_000),
        rotation_threshold_chars=_int_with_default(stream_data, "rotation_threshold_chars", 100),
        submit_key_presses=_int_with_default(stream_data, "submit_key_presses", 2),
    )
    if stream.capture_lines < 1:
        raise ConfigError("stream.capture_lines must be >= 1")
    if stream.max_buffer_chars < 1:
        raise ConfigError("stream.max_buffer_chars must be >= 1")
    if stream.rotation_threshold_chars < 0:
        raise ConfigError("stream.rotation_threshold_chars must be >= 0")
    if stream.submit_key_presses < 1:
        raise ConfigError("stream.submit_key_presses must be >= 1")

    lock = _parse_lock_config(lock_data)
    retry = _parse_retry_config(retry_data)

    loop = LoopConfig(
        max_iterations=_int_with_default(loop_data, "max_iterations", 5),
        check_all_resolved=_bool_with_default(loop_data, "check_all_resolved", True),
        exit_on_all_resolved=_bool_with_default(loop_data, "exit_on_all_resolved", True),
    )
    if loop.max_iterations < 1:
        raise ConfigError("loop.max_iterations must be >= 1")

    agent = AgentConfig(
        command=_require_str_list(agent_data, "command"),
        compact_after_forward=_bool_with_default(agent_data, "compact_after_forward", True),
        add_instructions=_bool_with_default(agent_data, "add_instructions", True),
        timeout_seconds=_float_with_default(agent_data, "timeout_seconds", 900.0),
    )

    work_items = WorkItemsConfig(
        path=Path(_require_str(work_items_data, "path")).expanduser(),
        unresolved_statuses=_str_list_with_default(
            work_items_data, "unresolved_statuses", ("fail",)
        ),
    )

    return AppConfig(
        runtime=runtime,
        stream=stream,
        lock=lock,
        retry=retry,
        loop=loop,
        agent=agent,
        work_items=work_items,
        stages=_parse_stages(chain_data),
    )


def _parse_lock_config(lock_data: dict[str, object]) -> LockConfig:
    backend = _str_with_default(lock_data, "backend", "file").strip().lower()
    if backend not in {"memory", "file"}:
        raise ConfigError("lock.backend must be one of: memory, file")
    allowed_holders: frozenset[str] | None = None
    if "allowed_holders" in lock_data:
        allowed_holders = frozenset(_require_str_list(lock_data, "allowed_holders"))
    lock = LockConfig(
        backend=cast(LockBackendName, backend),
        cooldown_seconds=_float_with_default(lock_data, "cooldown_seconds", 2.0),
        force_release_after_seconds=_float_with_default(
            lock_data, "force_release_after_seconds", 600.0
        ),
        allowed_holders=allowed_holders,
        recent_event_limit=_int_with_default(lock_data, "recent_event_limit", 100),
    )
    if lock.cooldown_seconds < 0:
        raise ConfigError("lock.cooldown_seconds must be >= 0")
    if lock.force_release_after_seconds <= lock.cooldown_seconds:
        raise ConfigError("lock.force_release_after_seconds must exceed lock.cooldown_seconds")
    if lock.recent_event_limit < 1:
        raise ConfigError("lock.recent_event_limit must be >= 1")
    return lock


def _parse_retry_config(retry_data: dict[str, object]) -> RetryConfig:
    retry = RetryConfig(
        max_retries=_int_with_default(retry_data, "max_retries", 3),
        initial_delay_seconds=_float_with_default(retry_data, "initial_delay_seconds", 2.0),
        max_delay_seconds=_float_with_default(retry_data, "max_delay_seconds", 30.0),
        multiplier=_float_with_default(retry_data, "multiplier", 2.5),
        jitter=_float_with_default(retry_data, "jitter", 0.2),
    )
    if retry.max_retries < 1:
        raise ConfigError("retry.max_retries must be >= 1")
    if retry.initial_delay_seconds < 0 or retry.max_delay_seconds < 0:
        raise ConfigError("retry delays must be >= 0")
    if retry.multiplier < 1:
        raise ConfigError("retry.multiplier must be >= 1")
    if not 0 <= retry.jitter < 1:
        raise ConfigError("retry.jitter must be in [0, 1)")
    return retry


def _parse_stages(chain_data: dict[str, object]) -> tuple[ChainStageConfig, ...]:
    raw_stages = chain_data.get("stages")
    if not isinstance(raw_stages, list) or not raw_stages:
        raise ConfigError("[[chain.stages]] must define at least one stage")

    stages: list[ChainStageConfig] = []
    for index, raw_stage in enumerate(raw_stages):
        stage_data = _require_nested_table(raw_stage, table_name=f"chain.stages[{index}]")
        stages.append(_parse_stage(stage_data, index=index))

    names = [stage.name for stage in stages]
    duplicate_names = sorted({name for name in names if names.count(name) > 1})
    if duplicate_names:
        raise ConfigError(f"Duplicate chain stage names: {', '.join(duplicate_names)}")
    for stage in stages:
        if stage.next_stage_name is not None and stage.next_stage_name not in names:
            raise ConfigError(
                f"Stage {stage.name!r} has unknown next_stage {stage.next_stage_name!r}; "
                f"expected one of: {', '.join(names)}"
            )
    return tuple(stages)


def _parse_stage(stage_data: dict[str, object], *, index: int) -> ChainStageConfig:
    keyword = _require_str(stage_data, "keyword")
    action: ActionDescriptor | None = None
    if "action" in stage_data:
        action_data = _require_nested_table(
            stage_data["action"], table_name=f"chain.stages[{index}].action"
        )
        action = _parse_action(action_data)
    loop_check: LoopCheckConfig | None = None
    if "loop_check" in stage_data:
        loop_check_data = _require_nested_table(
            stage_data["loop_check"], table_name=f"chain.stages[{index}].loop_check"
        )
        loop_check = LoopCheckConfig(
            increment_iteration=_bool_with_default(loop_check_data, "increment_iteration", False),
            check_max_iterations=_bool_with_default(
                loop_check_data, "check_max_iterations", False
            ),
            check_all_resolved=_bool_with_default(loop_check_data, "check_all_resolved", False),
        )
    return ChainStageConfig(
        name=_str_with_default(stage_data, "name", keyword),
        keyword=keyword,
        instruction=_optional_instruction(stage_data, "instruction"),
        action=action,
        next_stage_name=_optional_str(stage_data, "next_stage"),
        loop_check=loop_check,
    )


def _parse_action(action_data: dict[str, object]) -> ActionDescriptor:
    action_type = _require_str(action_data, "type").strip().lower()
    if action_type not in ACTION_TYPES:
        raise ConfigError(f"action.type must be one of: {', '.join(ACTION_TYPES)}")
    raw_parameters = action_data.get("parameters", {})
    parameters = _require_nested_table(raw_parameters, table_name="action.parameters")
    normalized: list[tuple[str, str | int | float | bool]] = []
    for key, value in sorted(parameters.items()):
        if not isinstance(value, str | int | float | bool):
            raise ConfigError(f"action.parameters.{key} must be a scalar value")
        normalized.append((key, value))
    return ActionDescriptor(type=cast(ActionType, action_type), parameters=tuple(normalized))


def _optional_instruction(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be a string if provided")
    if not value.strip():
        return None
    return value


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _require_nested_table(value: object, *, table_name: str) -> dict[str, object]:
    if not isinstance(value, dict):
        raise ConfigError(f"{table_name} must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"{table_name} must have string keys")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _float_with_default(data: dict[str, object], key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ConfigError(f"{key} must be a number")
    return float(value)


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _require_str_list(data: dict[str, object], key: str) -> tuple[str, ...]:
    value = data.get(key)
    if not isinstance(value, list) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str) or not item.strip():
            raise ConfigError(f"{key} is required and must be a non-empty list of strings")
        out.append(item)
    return tuple(out)


def _str_list_with_default(
    data: dict[str, object], key: str, default: tuple[str, ...]
) -> tuple[str, ...]:
    if key not in data:
        return default
    return tuple(item.strip().lower() for item in _require_str_list(data, key))
