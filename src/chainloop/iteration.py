from __future__ import annotations

import logging
from typing import Callable

from chainloop.config import LoopConfig
from chainloop.models import LoopCheckConfig, TerminationDecision
from chainloop.observability import log_event


LOGGER = logging.getLogger("chainloop.iteration")


class IterationController:
    """Bounded iteration counter plus the loop termination predicate.

    Whether tracked work is resolved is answered by ``all_resolved``; the controller itself
    knows nothing about work items.
    """

    def __init__(
        self,
        *,
        max_iterations: int,
        all_resolved: Callable[[], bool],
        check_all_resolved: bool = True,
        exit_on_all_resolved: bool = True,
    ) -> None:
        if max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        self._max_iterations = max_iterations
        self._all_resolved = all_resolved
        self._check_all_resolved = check_all_resolved
        self._exit_on_all_resolved = exit_on_all_resolved
        self._iteration = 0
        self._resolved_observed = False

    @classmethod
    def from_config(
        cls, config: LoopConfig, *, all_resolved: Callable[[], bool]
    ) -> IterationController:
        return cls(
            max_iterations=config.max_iterations,
            all_resolved=all_resolved,
            check_all_resolved=config.check_all_resolved,
            exit_on_all_resolved=config.exit_on_all_resolved,
        )

    @property
    def iteration(self) -> int:
        return self._iteration

    @property
    def max_iterations(self) -> int:
        return self._max_iterations

    @property
    def resolved_observed(self) -> bool:
        return self._resolved_observed

    def record_iteration(self) -> int:
        if self._iteration < self._max_iterations:
            self._iteration += 1
        log_event(
            LOGGER,
            "iteration_recorded",
            iteration=self._iteration,
            max_iterations=self._max_iterations,
        )
        return self._iteration

    def should_terminate(
        self,
        *,
        check_max_iterations: bool = True,
        check_all_resolved: bool = False,
    ) -> TerminationDecision:
        if check_max_iterations and self._iteration >= self._max_iterations:
            log_event(
                LOGGER,
                "max_iterations_reached",
                iteration=self._iteration,
                max_iterations=self._max_iterations,
            )
            return TerminationDecision(terminate=True, reason="max_iterations")

        if check_all_resolved and self._check_all_resolved and self._exit_on_all_resolved:
            if self._all_resolved():
                self._resolved_observed = True
                log_event(LOGGER, "all_items_resolved", iteration=self._iteration)
                return TerminationDecision(terminate=True, reason="all_resolved")

        return TerminationDecision(terminate=False)

    def evaluate(self, loop_check: LoopCheckConfig) -> TerminationDecision:
        if loop_check.increment_iteration:
            self.record_iteration()
        return self.should_terminate(
            check_max_iterations=loop_check.check_max_iterations,
            check_all_resolved=loop_check.check_all_resolved,
        )
