from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from chainloop.config import WorkItemsConfig
from chainloop.errors import WorkItemError
from chainloop.work_items import JsonWorkItemSource


def _write_tasks(path: Path, tasks: object) -> Path:
    path.write_text(json.dumps({"tasks": tasks}), encoding="utf-8")
    return path


def test_unresolved_items_are_parsed_from_task_file(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    path = _write_tasks(
        tmp_path / "tasks.json",
        {
            "login": {
                "feature_name": "Login form",
                "description": "Submit button does nothing",
                "status": "FAIL",
                "priority": "high",
                "category": "auth",
                "test_steps": [
                    {"step": 1, "action": "Open /login", "expectation": "Form renders"},
                    {"action": "Click submit", "result": "Nothing happened"},
                    "Check the console",
                    42,
                ],
            },
            "search": {"title": "Search", "status": "pass"},
        },
    )
    source = JsonWorkItemSource(path)

    with caplog.at_level(logging.INFO, logger="chainloop.work_items"):
        items = source.get_unresolved_items()

    assert len(items) == 1
    item = items[0]
    assert item.item_id == "login"
    assert item.title == "Login form"
    assert item.status == "fail"
    assert item.priority == "high"
    assert item.category == "auth"
    assert item.details == (
        "1. Open /login; expected: Form renders",
        "2. Click submit; result: Nothing happened",
        "3. Check the console",
    )
    assert "event=work_items_loaded" in caplog.text
    assert "unresolved_count=1" in caplog.text
    assert source.all_resolved() is False


def test_defaults_for_sparse_items(tmp_path: Path) -> None:
    path = _write_tasks(tmp_path / "tasks.json", {"T-7": {"status": "fail"}})
    (item,) = JsonWorkItemSource(path).get_unresolved_items()
    assert item.title == "T-7"
    assert item.description == ""
    assert item.priority == "medium"
    assert item.category == "general"
    assert item.details == ()


def test_file_is_reread_on_every_call(tmp_path: Path) -> None:
    path = _write_tasks(tmp_path / "tasks.json", {"a": {"status": "fail"}})
    source = JsonWorkItemSource(path)
    assert source.all_resolved() is False

    _write_tasks(path, {"a": {"status": "pass"}})
    assert source.all_resolved() is True
    assert source.get_unresolved_items() == ()


def test_configured_statuses_are_case_insensitive(tmp_path: Path) -> None:
    path = _write_tasks(
        tmp_path / "tasks.json",
        {"a": {"status": "Blocked"}, "b": {"status": "fail"}, "c": {"status": "pass"}},
    )
    source = JsonWorkItemSource.from_config(
        WorkItemsConfig(path=path, unresolved_statuses=("BLOCKED", "fail"))
    )
    assert [item.item_id for item in source.get_unresolved_items()] == ["a", "b"]


def test_missing_tasks_key_means_nothing_to_do(tmp_path: Path) -> None:
    path = tmp_path / "tasks.json"
    path.write_text("{}", encoding="utf-8")
    assert JsonWorkItemSource(path).all_resolved() is True


@pytest.mark.parametrize(
    "content, expected",
    [
        ("{nope", "not valid JSON"),
        ("[]", "must contain a JSON object"),
        ('{"tasks": []}', "'tasks' must be a JSON object"),
        ('{"tasks": {"a": "fail"}}', "Task 'a' must be a JSON object"),
    ],
)
def test_malformed_task_files_raise(tmp_path: Path, content: str, expected: str) -> None:
    path = tmp_path / "tasks.json"
    path.write_text(content, encoding="utf-8")
    with pytest.raises(WorkItemError, match=expected):
        JsonWorkItemSource(path).get_unresolved_items()


def test_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(WorkItemError, match="not found"):
        JsonWorkItemSource(tmp_path / "missing.json").all_resolved()
