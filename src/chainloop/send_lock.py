from __future__ import annotations

from abc import ABC, abstractmethod
from collections import deque
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass, field, replace
import fcntl
import json
import logging
import os
from pathlib import Path
import threading
import time
from typing import Callable, Iterator

from chainloop.config import LockConfig
from chainloop.models import LockEvent, LockMetrics, LockStatus
from chainloop.observability import log_event


LOGGER = logging.getLogger("chainloop.send_lock")
_DEFAULT_RECENT_EVENT_LIMIT = 100


@dataclass
class LockState:
    holder_id: str | None = None
    acquired_at: float | None = None
    cooldown_until: float = 0.0
    acquisitions: int = 0
    releases: int = 0
    duplicates_blocked: int = 0
    forced_releases: int = 0
    recent_events: deque[LockEvent] = field(
        default_factory=lambda: deque(maxlen=_DEFAULT_RECENT_EVENT_LIMIT)
    )

    def record(
        self,
        *,
        timestamp: float,
        holder_id: str | None,
        action: str,
        success: bool,
        duration_seconds: float | None = None,
    ) -> None:
        self.recent_events.append(
            LockEvent(
                timestamp=timestamp,
                holder_id=holder_id,
                action=action,
                success=success,
                duration_seconds=duration_seconds,
            )
        )

    def copy(self) -> LockState:
        events = deque(self.recent_events, maxlen=self.recent_events.maxlen)
        return replace(self, recent_events=events)

    def clear(self) -> None:
        self.holder_id = None
        self.acquired_at = None
        self.cooldown_until = 0.0
        self.acquisitions = 0
        self.releases = 0
        self.duplicates_blocked = 0
        self.forced_releases = 0
        self.recent_events.clear()

    def to_payload(self) -> dict[str, object]:
        return {
            "holder_id": self.holder_id,
            "acquired_at": self.acquired_at,
            "cooldown_until": self.cooldown_until,
            "acquisitions": self.acquisitions,
            "releases": self.releases,
            "duplicates_blocked": self.duplicates_blocked,
            "forced_releases": self.forced_releases,
            "recent_events": [
                {
                    "timestamp": event.timestamp,
                    "holder_id": event.holder_id,
                    "action": event.action,
                    "success": event.success,
                    "duration_seconds": event.duration_seconds,
                }
                for event in self.recent_events
            ],
        }

    @classmethod
    def from_payload(cls, payload: dict[str, object], *, recent_event_limit: int) -> LockState:
        raw_holder = payload.get("holder_id")
        raw_acquired_at = payload.get("acquired_at")
        events: deque[LockEvent] = deque(maxlen=recent_event_limit)
        raw_events = payload.get("recent_events")
        if isinstance(raw_events, list):
            for raw_event in raw_events:
                if not isinstance(raw_event, dict):
                    continue
                raw_duration = raw_event.get("duration_seconds")
                raw_event_holder = raw_event.get("holder_id")
                events.append(
                    LockEvent(
                        timestamp=float(raw_event.get("timestamp", 0.0)),
                        holder_id=raw_event_holder if isinstance(raw_event_holder, str) else None,
                        action=str(raw_event.get("action", "")),
                        success=bool(raw_event.get("success", False)),
                        duration_seconds=(
                            float(raw_duration) if isinstance(raw_duration, int | float) else None
                        ),
                    )
                )
        return cls(
            holder_id=raw_holder if isinstance(raw_holder, str) else None,
            acquired_at=(
                float(raw_acquired_at) if isinstance(raw_acquired_at, int | float) else None
            ),
            cooldown_until=_float_field(payload, "cooldown_until"),
            acquisitions=_int_field(payload, "acquisitions"),
            releases=_int_field(payload, "releases"),
            duplicates_blocked=_int_field(payload, "duplicates_blocked"),
            forced_releases=_int_field(payload, "forced_releases"),
            recent_events=events,
        )


class LockBackend(ABC):
    @abstractmethod
    def transaction(self) -> AbstractContextManager[LockState]:
        """Yield the lock state under exclusive access and persist it on exit."""

    @abstractmethod
    def snapshot(self) -> LockState:
        """Return a copy of the lock state without modifying it."""


class InMemoryLockBackend(LockBackend):
    def __init__(self, *, recent_event_limit: int = _DEFAULT_RECENT_EVENT_LIMIT) -> None:
        self._mutex = threading.Lock()
        self._recent_event_limit = recent_event_limit
        self._state = LockState(recent_events=deque(maxlen=recent_event_limit))

    @contextmanager
    def transaction(self) -> Iterator[LockState]:
        with self._mutex:
            yield self._state

    def snapshot(self) -> LockState:
        with self._mutex:
            return self._state.copy()


class FileLockBackend(LockBackend):
    """Lock state shared between processes through a JSON file guarded by flock."""

    def __init__(
        self, state_path: Path, *, recent_event_limit: int = _DEFAULT_RECENT_EVENT_LIMIT
    ) -> None:
        self._state_path = state_path
        self._guard_path = state_path.with_name(f"{state_path.name}.guard")
        self._recent_event_limit = recent_event_limit

    @property
    def state_path(self) -> Path:
        return self._state_path

    @contextmanager
    def transaction(self) -> Iterator[LockState]:
        with self._exclusive():
            state = self._read_state()
            yield state
            self._write_state(state)

    def snapshot(self) -> LockState:
        with self._guarded(fcntl.LOCK_SH):
            return self._read_state()

    def _exclusive(self) -> AbstractContextManager[None]:
        return self._guarded(fcntl.LOCK_EX)

    @contextmanager
    def _guarded(self, operation: int) -> Iterator[None]:
        self._state_path.parent.mkdir(parents=True, exist_ok=True)
        self._guard_path.touch(exist_ok=True)
        with self._guard_path.open("r+", encoding="utf-8") as handle:
            fcntl.flock(handle.fileno(), operation)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def _read_state(self) -> LockState:
        try:
            payload_text = self._state_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return self._fresh_state()
        if not payload_text:
            return self._fresh_state()
        try:
            payload = json.loads(payload_text)
        except json.JSONDecodeError:
            log_event(
                LOGGER,
                "send_lock_state_unreadable",
                level=logging.WARNING,
                path=str(self._state_path),
            )
            return self._fresh_state()
        if not isinstance(payload, dict):
            return self._fresh_state()
        return LockState.from_payload(payload, recent_event_limit=self._recent_event_limit)

    def _write_state(self, state: LockState) -> None:
        tmp_path = self._state_path.with_name(f"{self._state_path.name}.{os.getpid()}.tmp")
        tmp_path.write_text(
            json.dumps(state.to_payload(), sort_keys=True) + "\n", encoding="utf-8"
        )
        os.replace(tmp_path, self._state_path)

    def _fresh_state(self) -> LockState:
        return LockState(recent_events=deque(maxlen=self._recent_event_limit))


class SendLock:
    """Non-blocking mutual exclusion over the single outbound channel.

    A failed ``try_acquire`` means "skip this attempt": callers never wait for the lock.
    Every successful release opens a cooldown window during which no holder can acquire.
    A holder that keeps the lock past ``force_release_after_seconds`` is evicted by the
    next acquisition attempt.
    """

    def __init__(
        self,
        backend: LockBackend,
        *,
        cooldown_seconds: float = 2.0,
        force_release_after_seconds: float = 600.0,
        allowed_holders: frozenset[str] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if force_release_after_seconds <= cooldown_seconds:
            raise ValueError("force_release_after_seconds must exceed cooldown_seconds")
        self._backend = backend
        self._cooldown_seconds = cooldown_seconds
        self._force_release_after_seconds = force_release_after_seconds
        self._allowed_holders = allowed_holders
        self._clock = clock

    @classmethod
    def from_config(
        cls,
        config: LockConfig,
        *,
        state_path: Path,
        clock: Callable[[], float] = time.time,
    ) -> SendLock:
        backend: LockBackend
        if config.backend == "file":
            backend = FileLockBackend(state_path, recent_event_limit=config.recent_event_limit)
        else:
            backend = InMemoryLockBackend(recent_event_limit=config.recent_event_limit)
        return cls(
            backend,
            cooldown_seconds=config.cooldown_seconds,
            force_release_after_seconds=config.force_release_after_seconds,
            allowed_holders=config.allowed_holders,
            clock=clock,
        )

    def try_acquire(self, holder_id: str) -> bool:
        if not self._is_valid_holder(holder_id):
            log_event(
                LOGGER, "send_lock_invalid_holder", level=logging.ERROR, holder_id=holder_id
            )
            return False

        with self._backend.transaction() as state:
            now = self._clock()
            self._force_release_if_stale(state, now)

            if state.holder_id is not None:
                state.duplicates_blocked += 1
                state.record(
                    timestamp=now, holder_id=holder_id, action="duplicate_blocked", success=False
                )
                log_event(
                    LOGGER,
                    "send_lock_duplicate_blocked",
                    holder_id=holder_id,
                    current_holder_id=state.holder_id,
                    duplicates_blocked=state.duplicates_blocked,
                )
                return False

            if now < state.cooldown_until:
                state.duplicates_blocked += 1
                state.record(
                    timestamp=now, holder_id=holder_id, action="cooldown_blocked", success=False
                )
                log_event(
                    LOGGER,
                    "send_lock_cooldown_blocked",
                    holder_id=holder_id,
                    cooldown_remaining_seconds=state.cooldown_until - now,
                    duplicates_blocked=state.duplicates_blocked,
                )
                return False

            state.holder_id = holder_id
            state.acquired_at = now
            state.acquisitions += 1
            state.record(timestamp=now, holder_id=holder_id, action="acquired", success=True)
            log_event(
                LOGGER,
                "send_lock_acquired",
                holder_id=holder_id,
                acquisitions=state.acquisitions,
            )
            return True

    def release(self, holder_id: str) -> bool:
        with self._backend.transaction() as state:
            now = self._clock()
            if state.holder_id is None:
                log_event(
                    LOGGER,
                    "send_lock_release_without_holder",
                    level=logging.WARNING,
                    holder_id=holder_id,
                )
                return False
            if state.holder_id != holder_id:
                log_event(
                    LOGGER,
                    "send_lock_release_mismatch",
                    level=logging.WARNING,
                    holder_id=holder_id,
                    current_holder_id=state.holder_id,
                )
                return False

            held_for = now - state.acquired_at if state.acquired_at is not None else None
            state.holder_id = None
            state.acquired_at = None
            state.releases += 1
            state.cooldown_until = now + self._cooldown_seconds
            state.record(
                timestamp=now,
                holder_id=holder_id,
                action="released",
                success=True,
                duration_seconds=held_for,
            )
            log_event(
                LOGGER,
                "send_lock_released",
                holder_id=holder_id,
                held_for_seconds=held_for,
                releases=state.releases,
            )
            return True

    @contextmanager
    def held(self, holder_id: str) -> Iterator[bool]:
        acquired = self.try_acquire(holder_id)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(holder_id)

    def status(self) -> LockStatus:
        state = self._backend.snapshot()
        now = self._clock()
        return LockStatus(
            holder_id=state.holder_id,
            acquired_at=state.acquired_at,
            held_for_seconds=now - state.acquired_at if state.acquired_at is not None else None,
            cooldown_remaining_seconds=max(0.0, state.cooldown_until - now),
        )

    def metrics(self, *, recent_limit: int | None = None) -> LockMetrics:
        state = self._backend.snapshot()
        events = tuple(state.recent_events)
        if recent_limit is not None:
            events = events[-recent_limit:] if recent_limit > 0 else ()
        return LockMetrics(
            acquisitions=state.acquisitions,
            releases=state.releases,
            duplicates_blocked=state.duplicates_blocked,
            forced_releases=state.forced_releases,
            recent_events=events,
        )

    def reset(self) -> None:
        with self._backend.transaction() as state:
            previous_holder = state.holder_id
            state.clear()
        log_event(
            LOGGER,
            "send_lock_reset",
            level=logging.WARNING,
            previous_holder_id=previous_holder,
        )

    def _force_release_if_stale(self, state: LockState, now: float) -> None:
        if state.holder_id is None or state.acquired_at is None:
            return
        held_for = now - state.acquired_at
        if held_for <= self._force_release_after_seconds:
            return
        stale_holder = state.holder_id
        state.holder_id = None
        state.acquired_at = None
        state.forced_releases += 1
        state.cooldown_until = now
        state.record(
            timestamp=now,
            holder_id=stale_holder,
            action="force_released_stale_timeout",
            success=True,
            duration_seconds=held_for,
        )
        log_event(
            LOGGER,
            "send_lock_force_released",
            level=logging.WARNING,
            holder_id=stale_holder,
            held_for_seconds=held_for,
            forced_releases=state.forced_releases,
        )

    def _is_valid_holder(self, holder_id: str) -> bool:
        if not isinstance(holder_id, str) or not holder_id.strip():
            return False
        if self._allowed_holders is None:
            return True
        return holder_id in self._allowed_holders


def _int_field(payload: dict[str, object], key: str) -> int:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        return 0
    return value


def _float_field(payload: dict[str, object], key: str) -> float:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, int | float):
        return 0.0
    return float(value)
