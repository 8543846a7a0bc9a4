from __future__ import annotations

import argparse
from dataclasses import asdict
import json
from pathlib import Path
from typing import Callable

from chainloop.actions import ActionExecutor
from chainloop.agents import CommandAgentGateway
from chainloop.channels import TmuxChannel
from chainloop.config import AppConfig, load_config
from chainloop.detector import PollingKeywordDetector
from chainloop.iteration import IterationController
from chainloop.lock_tui import run_lock_dashboard
from chainloop.models import MonitorResult, StageTransition
from chainloop.monitor import ChainMonitor
from chainloop.observability import configure_logging
from chainloop.retry_policy import RetryPolicy
from chainloop.send_lock import SendLock
from chainloop.state_machine import ChainStateMachine
from chainloop.work_items import JsonWorkItemSource


_SUCCESS_STATES = frozenset({"all_resolved", "max_iterations"})


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chainloop")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser(
        "run", help="Monitor the stream and drive the configured chain until it terminates"
    )
    _add_common_arguments(run_parser)

    lock_parser = subparsers.add_parser("lock", help="Inspect and manage the shared send lock")
    _add_common_arguments(lock_parser)
    lock_subparsers = lock_parser.add_subparsers(dest="lock_command", required=True)

    status_parser = lock_subparsers.add_parser(
        "status", help="Show the current holder, cooldown and metrics"
    )
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Print lock status and metrics as JSON",
    )

    reset_parser = lock_subparsers.add_parser(
        "reset", help="Clear the lock holder and all counters"
    )
    reset_parser.add_argument(
        "--yes",
        action="store_true",
        help="Confirm the reset",
    )

    watch_parser = lock_subparsers.add_parser("watch", help="Open a live lock dashboard")
    watch_parser.add_argument(
        "--refresh-seconds",
        type=float,
        default=1.0,
        help="Dashboard refresh interval",
    )

    return parser


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=Path("chainloop.toml"))
    parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="high",
        default=None,
        choices=("low", "high"),
        help="Enable runtime logging to stderr (low keeps only lifecycle events)",
    )


def main() -> None:
    args = build_parser().parse_args()
    config = load_config(args.config)
    configure_logging(getattr(args, "verbose", None), state_dir=config.runtime.base_dir)

    if args.command == "run":
        _cmd_run(config)
        return
    if args.command == "lock":
        _cmd_lock(config, args)
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _cmd_run(config: AppConfig) -> None:
    config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
    monitor = build_monitor(config, on_transition=_print_transition)
    try:
        result = monitor.run()
    except KeyboardInterrupt:
        stopped = monitor.stop()
        if stopped is None:
            raise
        result = stopped
    _print_result(result)
    if result.terminal_state not in _SUCCESS_STATES:
        raise SystemExit(1)


def build_monitor(
    config: AppConfig,
    *,
    on_transition: Callable[[StageTransition], None] | None = None,
) -> ChainMonitor:
    send_lock = SendLock.from_config(config.lock, state_path=config.lock_state_path)
    channel = TmuxChannel.from_config(config.stream)
    work_items = JsonWorkItemSource.from_config(config.work_items)
    send_retry = RetryPolicy.for_channel_send()
    agent = CommandAgentGateway.from_config(
        config.agent, code_channel=channel, send_retry=send_retry
    )
    executor = ActionExecutor(
        holder_id=config.runtime.holder_id,
        send_lock=send_lock,
        channel=channel,
        agent=agent,
        work_items=work_items,
        agent_retry=RetryPolicy.for_agent_communication(config.retry),
        send_retry=send_retry,
    )
    iterations = IterationController.from_config(config.loop, all_resolved=work_items.all_resolved)
    detector = PollingKeywordDetector(
        channel,
        timeout_seconds=config.runtime.timeout_seconds,
        max_buffer_chars=config.stream.max_buffer_chars,
        rotation_threshold_chars=config.stream.rotation_threshold_chars,
    )
    state_machine = ChainStateMachine(config.stages, executor=executor, iterations=iterations)
    return ChainMonitor(
        detector=detector,
        state_machine=state_machine,
        poll_interval_seconds=config.runtime.poll_interval_seconds,
        monitor_id=config.runtime.holder_id,
        on_transition=on_transition,
    )


def _cmd_lock(config: AppConfig, args: argparse.Namespace) -> None:
    send_lock = SendLock.from_config(config.lock, state_path=config.lock_state_path)
    if args.lock_command == "status":
        _cmd_lock_status(send_lock, as_json=bool(args.json))
        return
    if args.lock_command == "reset":
        if not args.yes:
            raise RuntimeError("lock reset requires --yes")
        send_lock.reset()
        print("Send lock reset.")
        return
    if args.lock_command == "watch":
        run_lock_dashboard(send_lock=send_lock, refresh_seconds=float(args.refresh_seconds))
        return
    raise RuntimeError(f"Unknown lock command: {args.lock_command}")


def _cmd_lock_status(send_lock: SendLock, *, as_json: bool) -> None:
    status = send_lock.status()
    metrics = send_lock.metrics()
    if as_json:
        payload = {
            "status": asdict(status),
            "metrics": {
                "acquisitions": metrics.acquisitions,
                "releases": metrics.releases,
                "duplicates_blocked": metrics.duplicates_blocked,
                "forced_releases": metrics.forced_releases,
                "lock_efficiency": metrics.lock_efficiency,
                "duplicate_rate": metrics.duplicate_rate,
                "average_hold_seconds": metrics.average_hold_seconds,
                "recent_events": [asdict(event) for event in metrics.recent_events],
            },
        }
        print(json.dumps(payload, indent=2))
        return

    print(f"holder={status.holder_id or '<none>'}")
    if status.held_for_seconds is not None:
        print(f"held_for_seconds={status.held_for_seconds:.1f}")
    print(f"cooldown_remaining_seconds={status.cooldown_remaining_seconds:.1f}")
    print(
        f"acquisitions={metrics.acquisitions} releases={metrics.releases} "
        f"duplicates_blocked={metrics.duplicates_blocked} "
        f"forced_releases={metrics.forced_releases}"
    )


def _print_transition(transition: StageTransition) -> None:
    if transition.kind == "ignored":
        return
    line = (
        f"[{transition.kind}] keyword={transition.keyword} "
        f"stage={transition.from_stage_index}->{transition.to_stage_index} "
        f"iteration={transition.iteration}"
    )
    if transition.detail:
        line += f" ({transition.detail})"
    print(line)


def _print_result(result: MonitorResult) -> None:
    print(
        f"Chain loop finished: state={result.terminal_state} iterations={result.iterations} "
        f"polls={result.poll_count} executed_stages={result.executed_stage_count}"
    )
    if result.detail:
        print(f"detail={result.detail}")
