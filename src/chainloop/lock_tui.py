from __future__ import annotations

from datetime import datetime, timezone

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical
from textual.widgets import DataTable, Footer, Header, Static

from chainloop.models import LockEvent, LockMetrics, LockStatus
from chainloop.send_lock import SendLock


_EVENT_ROW_LIMIT = 50
_RESET_PROMPT = "press x again to reset the lock, r to cancel"


class LockDashboardApp(App[None]):
    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "refresh", "Refresh"),
        Binding("x", "reset_lock", "Reset Lock"),
    ]
    CSS = """
    Screen {
        layout: vertical;
    }
    .panel-title {
        text-style: bold;
        padding-left: 1;
    }
    #summary {
        height: 3;
        padding: 0 1;
    }
    DataTable {
        height: 1fr;
    }
    """

    def __init__(self, *, send_lock: SendLock, refresh_seconds: float = 1.0) -> None:
        super().__init__()
        self._send_lock = send_lock
        self._refresh_seconds = refresh_seconds
        self._summary = ""
        self._reset_armed = False

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Vertical():
            yield Static("", id="summary")
            yield Static("Recent Lock Events", classes="panel-title")
            yield DataTable(id="events-table")
        yield Footer()

    def on_mount(self) -> None:
        table = self.query_one("#events-table", DataTable)
        table.add_columns("time", "holder", "action", "success", "held")
        self.refresh_data()
        self.set_interval(self._refresh_seconds, self.refresh_data)

    @property
    def summary(self) -> str:
        return self._summary

    def refresh_data(self) -> None:
        status = self._send_lock.status()
        metrics = self._send_lock.metrics(recent_limit=_EVENT_ROW_LIMIT)
        self._summary = _summary_text(status=status, metrics=metrics)
        if self._reset_armed:
            self._summary = f"{self._summary}\n{_RESET_PROMPT}"
        self.query_one("#summary", Static).update(self._summary)
        table = self.query_one("#events-table", DataTable)
        table.clear(columns=False)
        _fill_event_table(table, metrics.recent_events)

    def action_refresh(self) -> None:
        self._reset_armed = False
        self.refresh_data()

    def action_reset_lock(self) -> None:
        # A reset evicts the live holder, so it takes two presses.
        if not self._reset_armed:
            self._reset_armed = True
            self.refresh_data()
            return
        self._reset_armed = False
        self._send_lock.reset()
        self.refresh_data()


def run_lock_dashboard(*, send_lock: SendLock, refresh_seconds: float = 1.0) -> None:
    app = LockDashboardApp(send_lock=send_lock, refresh_seconds=refresh_seconds)
    app.run()


def _fill_event_table(table: DataTable, events: tuple[LockEvent, ...]) -> None:
    if not events:
        table.add_row("-", "-", "no events", "-", "-")
        return
    # Newest first.
    for event in reversed(events):
        table.add_row(
            _render_timestamp(event.timestamp),
            event.holder_id or "-",
            event.action,
            "yes" if event.success else "no",
            "-" if event.duration_seconds is None else _render_seconds(event.duration_seconds),
        )


def _summary_text(*, status: LockStatus, metrics: LockMetrics) -> str:
    holder = status.holder_id or "free"
    held = "-" if status.held_for_seconds is None else _render_seconds(status.held_for_seconds)
    first = (
        f"holder={holder} held_for={held} "
        f"cooldown={_render_seconds(status.cooldown_remaining_seconds)}"
    )
    second = (
        f"acquisitions={metrics.acquisitions} releases={metrics.releases} "
        f"duplicates_blocked={metrics.duplicates_blocked} "
        f"forced_releases={metrics.forced_releases} "
        f"efficiency={_render_optional_ratio(metrics.lock_efficiency)} "
        f"duplicate_rate={_render_optional_ratio(metrics.duplicate_rate)} "
        f"avg_hold={_render_optional_seconds(metrics.average_hold_seconds)}"
    )
    return f"{first}\n{second}"


def _render_timestamp(value: float) -> str:
    return datetime.fromtimestamp(value, tz=timezone.utc).strftime("%H:%M:%S")


def _render_seconds(value: float) -> str:
    if value < 60:
        return f"{value:.1f}s"
    if value < 3600:
        return f"{value / 60.0:.1f}m"
    return f"{value / 3600.0:.2f}h"


def _render_ratio(value: float) -> str:
    return f"{value * 100.0:.1f}%"


def _render_optional_ratio(value: float | None) -> str:
    return "n/a" if value is None else _render_ratio(value)


def _render_optional_seconds(value: float | None) -> str:
    return "n/a" if value is None else _render_seconds(value)
