from __future__ import annotations

import logging

from chainloop.agents import AgentGateway
from chainloop.channels import TextChannel
from chainloop.errors import ActionError
from chainloop.models import ActionDescriptor, ActionOutcome, ChainStageConfig
from chainloop.observability import log_event
from chainloop.retry_policy import RetryPolicy
from chainloop.send_lock import SendLock
from chainloop.work_items import WorkItemSource


LOGGER = logging.getLogger("chainloop.actions")


class ActionExecutor:
    """Runs a stage's instruction and action while holding the send lock.

    The whole exchange, including waiting for an agent response, happens under the lock so
    no other holder can interleave a send on the shared channel.
    """

    def __init__(
        self,
        *,
        holder_id: str,
        send_lock: SendLock,
        channel: TextChannel,
        agent: AgentGateway,
        work_items: WorkItemSource,
        agent_retry: RetryPolicy,
        send_retry: RetryPolicy,
    ) -> None:
        self._holder_id = holder_id
        self._send_lock = send_lock
        self._channel = channel
        self._agent = agent
        self._work_items = work_items
        self._agent_retry = agent_retry
        self._send_retry = send_retry

    @property
    def holder_id(self) -> str:
        return self._holder_id

    def execute(self, stage: ChainStageConfig, *, iteration: int) -> ActionOutcome:
        if stage.instruction is None and stage.action is None:
            return ActionOutcome(status="executed", detail="no_action")

        action_name = stage.action.type if stage.action is not None else "send_instruction"
        with self._send_lock.held(self._holder_id) as acquired:
            if not acquired:
                log_event(
                    LOGGER,
                    "action_duplicate_blocked",
                    stage=stage.name,
                    action=action_name,
                    holder_id=self._holder_id,
                )
                return ActionOutcome(status="duplicate_blocked")

            log_event(
                LOGGER,
                "action_started",
                stage=stage.name,
                action=action_name,
                iteration=iteration,
            )
            try:
                if stage.instruction is not None:
                    self._send_instruction(stage.instruction, stage_name=stage.name)
                outcome = ActionOutcome(status="executed", detail="instruction_sent")
                if stage.action is not None:
                    outcome = self._run_action(stage.action, iteration=iteration)
            except Exception as exc:
                log_event(
                    LOGGER,
                    "action_failed",
                    level=logging.ERROR,
                    stage=stage.name,
                    action=action_name,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise ActionError(action_name, exc) from exc

            log_event(
                LOGGER,
                "action_finished",
                stage=stage.name,
                action=action_name,
                status=outcome.status,
            )
            return outcome

    def _send_instruction(self, instruction: str, *, stage_name: str) -> None:
        self._send_retry.run(lambda: self._channel.send(instruction), stage=stage_name)

    def _run_action(self, action: ActionDescriptor, *, iteration: int) -> ActionOutcome:
        params = action.params_dict()
        if action.type == "send_work_to_agent":
            items = self._work_items.get_unresolved_items()
            if not items:
                log_event(LOGGER, "action_no_unresolved_items", iteration=iteration)
                return ActionOutcome(status="no_work", detail="no unresolved items")
            response = self._agent_retry.run(
                lambda: self._agent.send_work_to_agent(items, params),
                action=action.type,
                iteration=iteration,
            )
            if response is None:
                return ActionOutcome(status="no_response", detail=f"{len(items)} items sent")
            return ActionOutcome(status="executed", detail=f"{len(items)} items sent")

        if action.type == "forward_response_to_agent":
            # Several sends; the gateway retries each one itself.
            if not self._agent.forward_response_to_agent(params):
                return ActionOutcome(status="no_response", detail="no response to forward")
            return ActionOutcome(status="executed", detail="response forwarded")

        raise ValueError(f"Unsupported action type: {action.type}")
