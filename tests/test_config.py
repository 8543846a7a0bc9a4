from __future__ import annotations

from pathlib import Path
import re

import pytest

from chainloop import config
from chainloop.config import AppConfig, ConfigError
from chainloop.models import ActionDescriptor, ChainStageConfig, LoopCheckConfig


_SECTIONS = {
    "runtime": '[runtime]\nbase_dir = "/tmp/chainloop"',
    "stream": '[stream]\ntarget = "claude:0.0"',
    "agent": '[agent]\ncommand = ["analyst", "--print"]',
    "work_items": '[work_items]\npath = "/tmp/tasks.json"',
}
_BASE = "\n\n".join(_SECTIONS.values())

_CHAIN = """
[[chain.stages]]
keyword = "TASK_FINISHED"
""".strip()


def _write(path: Path, content: str) -> Path:
    path.write_text(content, encoding="utf-8")
    return path


def _load(tmp_path: Path, content: str) -> AppConfig:
    return config.load_config(_write(tmp_path / "chainloop.toml", content))


def test_load_config_full_chain_and_overrides(tmp_path: Path) -> None:
    loaded = _load(
        tmp_path,
        """
[runtime]
base_dir = "~/tmp/chainloop"
poll_interval_seconds = 0.5
timeout_seconds = 1800
holder_id = "claude-loop"

[stream]
target = "claude:0.0"
capture_lines = 50
max_buffer_chars = 5000
rotation_threshold_chars = 80
submit_key_presses = 1

[lock]
backend = "MEMORY"
cooldown_seconds = 1
force_release_after_seconds = 300
allowed_holders = ["claude-loop", "operator-loop"]
recent_event_limit = 20

[retry]
max_retries = 4
initial_delay_seconds = 0.5
max_delay_seconds = 8
multiplier = 2
jitter = 0.1

[loop]
max_iterations = 3
exit_on_all_resolved = false

[agent]
command = ["analyst", "--print"]
compact_after_forward = false
timeout_seconds = 120

[work_items]
path = "~/tasks.json"
unresolved_statuses = ["FAIL", " blocked "]

[[chain.stages]]
name = "code_done"
keyword = "TASK_FINISHED"
next_stage = "analysis_done"

[chain.stages.loop_check]
increment_iteration = true
check_max_iterations = true
check_all_resolved = true

[chain.stages.action]
type = "send_work_to_agent"

[chain.stages.action.parameters]
context = "login page"
batch = 2

[[chain.stages]]
name = "analysis_done"
keyword = "ANALYSIS_READY"
instruction = "Apply the analysis now."
next_stage = "code_done"

[chain.stages.action]
type = "Forward_Response_To_Agent"
""".strip(),
    )

    assert loaded.runtime.base_dir.as_posix().endswith("/tmp/chainloop")
    assert loaded.runtime.poll_interval_seconds == 0.5
    assert loaded.runtime.timeout_seconds == 1800.0
    assert loaded.runtime.holder_id == "claude-loop"
    assert loaded.stream.capture_lines == 50
    assert loaded.stream.max_buffer_chars == 5000
    assert loaded.stream.rotation_threshold_chars == 80
    assert loaded.stream.submit_key_presses == 1
    assert loaded.lock.backend == "memory"
    assert loaded.lock.allowed_holders == frozenset({"claude-loop", "operator-loop"})
    assert loaded.lock.recent_event_limit == 20
    assert loaded.retry.max_retries == 4
    assert loaded.retry.multiplier == 2.0
    assert loaded.loop.max_iterations == 3
    assert loaded.loop.check_all_resolved is True
    assert loaded.loop.exit_on_all_resolved is False
    assert loaded.agent.command == ("analyst", "--print")
    assert loaded.agent.compact_after_forward is False
    assert loaded.agent.add_instructions is True
    assert loaded.work_items.unresolved_statuses == ("fail", "blocked")
    assert loaded.lock_state_path == loaded.runtime.base_dir / "send_lock.json"

    assert loaded.stages == (
        ChainStageConfig(
            name="code_done",
            keyword="TASK_FINISHED",
            instruction=None,
            action=ActionDescriptor(
                type="send_work_to_agent",
                parameters=(("batch", 2), ("context", "login page")),
            ),
            next_stage_name="analysis_done",
            loop_check=LoopCheckConfig(
                increment_iteration=True,
                check_max_iterations=True,
                check_all_resolved=True,
            ),
        ),
        ChainStageConfig(
            name="analysis_done",
            keyword="ANALYSIS_READY",
            instruction="Apply the analysis now.",
            action=ActionDescriptor(type="forward_response_to_agent"),
            next_stage_name="code_done",
        ),
    )


def test_load_config_applies_defaults(tmp_path: Path) -> None:
    loaded = _load(tmp_path, f"{_BASE}\n\n{_CHAIN}")

    assert loaded.runtime.poll_interval_seconds == 2.0
    assert loaded.runtime.timeout_seconds == 3600.0
    assert loaded.runtime.holder_id == "chain-loop-monitor"
    assert loaded.stream.capture_lines == 30
    assert loaded.stream.max_buffer_chars == 10_000
    assert loaded.stream.rotation_threshold_chars == 100
    assert loaded.lock.backend == "file"
    assert loaded.lock.cooldown_seconds == 2.0
    assert loaded.lock.force_release_after_seconds == 600.0
    assert loaded.lock.allowed_holders is None
    assert loaded.retry == config.RetryConfig()
    assert loaded.loop == config.LoopConfig()
    assert loaded.work_items.unresolved_statuses == ("fail",)
    assert loaded.stages == (ChainStageConfig(name="TASK_FINISHED", keyword="TASK_FINISHED"),)


@pytest.mark.parametrize(
    "extra, expected",
    [
        ("[runtime]\npoll_interval_seconds = 0.01", "runtime.poll_interval_seconds must be >= 0.1"),
        ("[runtime]\ntimeout_seconds = 0", "runtime.timeout_seconds must be > 0"),
        ("[stream]\ncapture_lines = 0", "stream.capture_lines must be >= 1"),
        ("[stream]\nmax_buffer_chars = 0", "stream.max_buffer_chars must be >= 1"),
        ("[stream]\nrotation_threshold_chars = -1", "stream.rotation_threshold_chars must be >= 0"),
        ("[stream]\nsubmit_key_presses = 0", "stream.submit_key_presses must be >= 1"),
        ('[lock]\nbackend = "redis"', "lock.backend must be one of: memory, file"),
        ("[lock]\ncooldown_seconds = -1", "lock.cooldown_seconds must be >= 0"),
        (
            "[lock]\ncooldown_seconds = 10\nforce_release_after_seconds = 10",
            "lock.force_release_after_seconds must exceed lock.cooldown_seconds",
        ),
        ("[lock]\nrecent_event_limit = 0", "lock.recent_event_limit must be >= 1"),
        ("[retry]\nmax_retries = 0", "retry.max_retries must be >= 1"),
        ("[retry]\ninitial_delay_seconds = -1", "retry delays must be >= 0"),
        ("[retry]\nmultiplier = 0.5", "retry.multiplier must be >= 1"),
        ("[retry]\njitter = 1.0", "retry.jitter must be in [0, 1)"),
        ("[loop]\nmax_iterations = 0", "loop.max_iterations must be >= 1"),
        ("[loop]\nmax_iterations = true", "max_iterations must be an integer"),
    ],
)
def test_load_config_rejects_invalid_values(tmp_path: Path, extra: str, expected: str) -> None:
    table, _, body = extra.partition("\n")
    content = _BASE.replace(table, f"{table}\n{body}") if table in _BASE else f"{_BASE}\n{extra}"
    with pytest.raises(ConfigError, match=re.escape(expected)):
        _load(tmp_path, f"{content}\n\n{_CHAIN}")


@pytest.mark.parametrize(
    "chain, expected",
    [
        ("", "[chain] is required"),
        ("[chain]\nstages = []", "[[chain.stages]] must define at least one stage"),
        ("[[chain.stages]]\nname = 'x'", "keyword is required"),
        (
            "[[chain.stages]]\nkeyword = 'A'\n[[chain.stages]]\nkeyword = 'A'",
            "Duplicate chain stage names: A",
        ),
        (
            "[[chain.stages]]\nkeyword = 'A'\nnext_stage = 'missing'",
            "Stage 'A' has unknown next_stage 'missing'; expected one of: A",
        ),
        (
            "[[chain.stages]]\nkeyword = 'A'\n[chain.stages.action]\ntype = 'teleport'",
            "action.type must be one of: send_work_to_agent, forward_response_to_agent",
        ),
        (
            "[[chain.stages]]\nkeyword = 'A'\naction = 'send_work_to_agent'",
            "chain.stages[0].action must be a TOML table",
        ),
        (
            "[[chain.stages]]\nkeyword = 'A'\n[chain.stages.action]\n"
            "type = 'send_work_to_agent'\nparameters = { nested = [1] }",
            "action.parameters.nested must be a scalar value",
        ),
        ("[[chain.stages]]\nkeyword = 'A'\ninstruction = 3", "instruction must be a string"),
    ],
)
def test_load_config_rejects_invalid_chains(tmp_path: Path, chain: str, expected: str) -> None:
    with pytest.raises(ConfigError, match=re.escape(expected)):
        _load(tmp_path, f"{_BASE}\n\n{chain}")


@pytest.mark.parametrize("table", ["runtime", "stream", "agent", "work_items"])
def test_load_config_requires_tables(tmp_path: Path, table: str) -> None:
    content = "\n\n".join(body for name, body in _SECTIONS.items() if name != table)
    with pytest.raises(ConfigError, match=re.escape(f"[{table}] is required")):
        _load(tmp_path, f"{content}\n\n{_CHAIN}")


def test_blank_instruction_is_treated_as_absent(tmp_path: Path) -> None:
    loaded = _load(tmp_path, f"{_BASE}\n\n{_CHAIN}\ninstruction = '   '")
    assert loaded.stages[0].instruction is None


def test_null_text_is_an_ordinary_instruction(tmp_path: Path) -> None:
    loaded = _load(tmp_path, f"{_BASE}\n\n{_CHAIN}\ninstruction = 'null'")
    assert loaded.stages[0].instruction == "null"


def test_helper_tables_and_strings() -> None:
    assert config._require_table({"x": {}}, "x") == {}
    with pytest.raises(ConfigError, match="required and must be a TOML table"):
        config._require_table({"x": 3}, "x")
    with pytest.raises(ConfigError, match="must have string keys"):
        config._require_table({"x": {1: "v"}}, "x")

    assert config._optional_table({}, "x") is None
    with pytest.raises(ConfigError, match="must be a TOML table when provided"):
        config._optional_table({"x": 1}, "x")
    with pytest.raises(ConfigError, match="must have string keys"):
        config._require_nested_table({1: "v"}, table_name="t")

    assert config._require_str({"k": "v"}, "k") == "v"
    with pytest.raises(ConfigError, match="required and must be a non-empty string"):
        config._require_str({"k": ""}, "k")
    assert config._optional_str({}, "k") is None
    with pytest.raises(ConfigError, match="non-empty string if provided"):
        config._optional_str({"k": 1}, "k")
    assert config._str_with_default({}, "k", "d") == "d"


def test_helper_numeric_bool_and_lists() -> None:
    assert config._int_with_default({}, "k", 7) == 7
    with pytest.raises(ConfigError, match="must be an integer"):
        config._int_with_default({"k": 1.5}, "k", 7)
    assert config._float_with_default({"k": 3}, "k", 1.0) == 3.0
    with pytest.raises(ConfigError, match="must be a number"):
        config._float_with_default({"k": True}, "k", 1.0)
    assert config._bool_with_default({"k": False}, "k", True) is False
    with pytest.raises(ConfigError, match="must be a boolean"):
        config._bool_with_default({"k": "yes"}, "k", True)

    assert config._require_str_list({"k": ["a", "b"]}, "k") == ("a", "b")
    with pytest.raises(ConfigError, match="non-empty list of strings"):
        config._require_str_list({"k": []}, "k")
    with pytest.raises(ConfigError, match="non-empty list of strings"):
        config._require_str_list({"k": ["a", " "]}, "k")
    assert config._str_list_with_default({}, "k", ("x",)) == ("x",)
    assert config._str_list_with_default({"k": [" A "]}, "k", ("x",)) == ("a",)


def test_example_config_loads() -> None:
    example = Path(__file__).resolve().parents[1] / "chainloop.example.toml"
    loaded = config.load_config(example)

    assert [stage.name for stage in loaded.stages] == ["code_done", "analysis_done"]
    assert loaded.stages[0].loop_check == LoopCheckConfig(
        increment_iteration=True, check_max_iterations=True, check_all_resolved=True
    )
    assert loaded.stages[1].action == ActionDescriptor(type="forward_response_to_agent")
    assert loaded.agent.command == ("claude", "--print")
    assert loaded.lock.backend == "file"
