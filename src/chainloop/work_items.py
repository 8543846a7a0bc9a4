from __future__ import annotations

from abc import ABC, abstractmethod
import json
import logging
from pathlib import Path
from typing import cast

from chainloop.config import WorkItemsConfig
from chainloop.errors import WorkItemError
from chainloop.models import WorkItem
from chainloop.observability import log_event


LOGGER = logging.getLogger("chainloop.work_items")


class WorkItemSource(ABC):
    @abstractmethod
    def get_unresolved_items(self) -> tuple[WorkItem, ...]:
        """Return the items that still need work."""

    @abstractmethod
    def all_resolved(self) -> bool:
        """Return True when no tracked item still needs work."""


class JsonWorkItemSource(WorkItemSource):
    """Reads ``{"tasks": {"<id>": {"status": ...}}}`` fresh on every call."""

    def __init__(self, path: Path, *, unresolved_statuses: tuple[str, ...] = ("fail",)) -> None:
        self._path = path
        self._unresolved_statuses = frozenset(status.lower() for status in unresolved_statuses)

    @classmethod
    def from_config(cls, config: WorkItemsConfig) -> JsonWorkItemSource:
        return cls(config.path, unresolved_statuses=config.unresolved_statuses)

    def get_unresolved_items(self) -> tuple[WorkItem, ...]:
        items = tuple(
            item for item in self._load_items() if item.status in self._unresolved_statuses
        )
        log_event(LOGGER, "work_items_loaded", path=str(self._path), unresolved_count=len(items))
        return items

    def all_resolved(self) -> bool:
        return not any(item.status in self._unresolved_statuses for item in self._load_items())

    def _load_items(self) -> tuple[WorkItem, ...]:
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise WorkItemError(f"Work item file not found: {self._path}") from exc
        except json.JSONDecodeError as exc:
            raise WorkItemError(f"Work item file is not valid JSON: {self._path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise WorkItemError(f"Work item file must contain a JSON object: {self._path}")
        raw_tasks = payload.get("tasks")
        if raw_tasks is None:
            return ()
        if not isinstance(raw_tasks, dict):
            raise WorkItemError(f"'tasks' must be a JSON object: {self._path}")
        items: list[WorkItem] = []
        for item_id, raw_task in raw_tasks.items():
            if not isinstance(raw_task, dict):
                raise WorkItemError(f"Task {item_id!r} must be a JSON object")
            items.append(_parse_item(str(item_id), cast(dict[str, object], raw_task)))
        return tuple(items)


def _parse_item(item_id: str, task: dict[str, object]) -> WorkItem:
    return WorkItem(
        item_id=item_id,
        title=_text(task.get("feature_name")) or _text(task.get("title")) or item_id,
        description=_text(task.get("description")) or "",
        status=(_text(task.get("status")) or "").lower(),
        priority=_text(task.get("priority")) or "medium",
        category=_text(task.get("category")) or "general",
        details=_step_lines(task.get("test_steps")),
    )


def _step_lines(raw_steps: object) -> tuple[str, ...]:
    if not isinstance(raw_steps, list):
        return ()
    lines: list[str] = []
    for index, raw_step in enumerate(raw_steps, start=1):
        if isinstance(raw_step, str):
            lines.append(f"{index}. {raw_step}")
            continue
        if not isinstance(raw_step, dict):
            continue
        step = cast(dict[str, object], raw_step)
        number = step.get("step", index)
        parts = [f"{number}. {_text(step.get('action')) or '-'}"]
        expectation = _text(step.get("expectation"))
        if expectation:
            parts.append(f"expected: {expectation}")
        result = _text(step.get("result"))
        if result:
            parts.append(f"result: {result}")
        lines.append("; ".join(parts))
    return tuple(lines)


def _text(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None
