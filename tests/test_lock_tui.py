from __future__ import annotations

import asyncio

import pytest
from textual.widgets import DataTable

from chainloop import lock_tui as tui
from chainloop.models import LockEvent, LockMetrics, LockStatus
from chainloop.send_lock import InMemoryLockBackend, SendLock


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeTable:
    def __init__(self) -> None:
        self.rows: list[tuple[object, ...]] = []

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def add_row(self, *values: object) -> None:
        self.rows.append(values)


def test_lock_tui_helper_functions() -> None:
    assert tui._render_seconds(3.2) == "3.2s"
    assert tui._render_seconds(120.0) == "2.0m"
    assert tui._render_seconds(7200.0) == "2.00h"
    assert tui._render_ratio(0.125) == "12.5%"
    assert tui._render_optional_ratio(None) == "n/a"
    assert tui._render_optional_seconds(None) == "n/a"
    assert tui._render_timestamp(0.0) == "00:00:00"

    summary = tui._summary_text(
        status=LockStatus(
            holder_id="claude-loop",
            acquired_at=10.0,
            held_for_seconds=4.0,
            cooldown_remaining_seconds=0.0,
        ),
        metrics=LockMetrics(
            acquisitions=4,
            releases=3,
            duplicates_blocked=1,
            forced_releases=0,
            recent_events=(
                LockEvent(
                    timestamp=5.0,
                    holder_id="claude-loop",
                    action="released",
                    success=True,
                    duration_seconds=2.0,
                ),
            ),
        ),
    )
    first, second = summary.splitlines()
    assert first == "holder=claude-loop held_for=4.0s cooldown=0.0s"
    assert "efficiency=75.0%" in second
    assert "duplicate_rate=20.0%" in second
    assert "avg_hold=2.0s" in second

    idle = tui._summary_text(
        status=LockStatus(
            holder_id=None, acquired_at=None, held_for_seconds=None, cooldown_remaining_seconds=1.5
        ),
        metrics=LockMetrics(acquisitions=0, releases=0, duplicates_blocked=0, forced_releases=0),
    )
    assert idle.startswith("holder=free held_for=- cooldown=1.5s")
    assert "efficiency=n/a" in idle


def test_fill_event_table_lists_newest_first() -> None:
    empty = FakeTable()
    tui._fill_event_table(empty, ())  # type: ignore[arg-type]
    assert empty.rows == [("-", "-", "no events", "-", "-")]

    table = FakeTable()
    tui._fill_event_table(
        table,  # type: ignore[arg-type]
        (
            LockEvent(timestamp=0.0, holder_id="a", action="acquired", success=True),
            LockEvent(
                timestamp=61.0,
                holder_id=None,
                action="released",
                success=False,
            ),
            LockEvent(
                timestamp=700.0,
                holder_id="a",
                action="force_released_stale_timeout",
                success=True,
                duration_seconds=700.0,
            ),
        ),
    )
    assert table.rows == [
        ("00:11:40", "a", "force_released_stale_timeout", "yes", "11.7m"),
        ("00:01:01", "-", "released", "no", "-"),
        ("00:00:00", "a", "acquired", "yes", "-"),
    ]


def test_run_lock_dashboard_runs_app(monkeypatch: pytest.MonkeyPatch) -> None:
    called: dict[str, object] = {}

    class FakeApp:
        def __init__(self, **kwargs) -> None:  # type: ignore[no-untyped-def]
            called["kwargs"] = kwargs

        def run(self) -> None:
            called["ran"] = True

    monkeypatch.setattr(tui, "LockDashboardApp", FakeApp)
    send_lock = SendLock(InMemoryLockBackend())
    tui.run_lock_dashboard(send_lock=send_lock, refresh_seconds=3)

    assert called["ran"] is True
    assert called["kwargs"] == {"send_lock": send_lock, "refresh_seconds": 3}


def test_lock_dashboard_app_refresh_and_reset() -> None:
    clock = FakeClock()
    send_lock = SendLock(InMemoryLockBackend(), cooldown_seconds=0.0, clock=clock)
    assert send_lock.try_acquire("claude-loop") is True
    assert send_lock.try_acquire("operator-loop") is False

    app = tui.LockDashboardApp(send_lock=send_lock, refresh_seconds=60)

    async def run_app() -> None:
        async with app.run_test() as pilot:
            await pilot.pause()
            table = app.query_one("#events-table", DataTable)
            assert table.row_count == 2
            assert "holder=claude-loop" in app.summary
            assert "duplicates_blocked=1" in app.summary

            clock.now += 5.0
            send_lock.release("claude-loop")
            app.action_refresh()
            assert table.row_count == 3
            assert "holder=free" in app.summary
            assert "avg_hold=5.0s" in app.summary

            app.action_reset_lock()
            assert "press x again" in app.summary
            assert "acquisitions=1" in app.summary

            app.action_refresh()
            assert "press x again" not in app.summary

            app.action_reset_lock()
            app.action_reset_lock()
            assert table.row_count == 1
            assert "acquisitions=0" in app.summary
            assert "press x again" not in app.summary

    asyncio.run(run_app())
