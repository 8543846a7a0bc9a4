from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
import logging
from typing import Mapping

from chainloop.channels import TextChannel
from chainloop.config import AgentConfig
from chainloop.errors import AgentError, SendError
from chainloop.models import AgentResponse, WorkItem
from chainloop.observability import log_event
from chainloop.prompts import DEFAULT_COMPLETION_KEYWORD, build_forward_prompt, build_work_prompt
from chainloop.retry_policy import RetryPolicy
from chainloop.shell import run


LOGGER = logging.getLogger("chainloop.agents")
_COMPACT_COMMAND = "/compact"

ActionParams = Mapping[str, str | int | float | bool]


class AgentGateway(ABC):
    @abstractmethod
    def send_work_to_agent(
        self, items: tuple[WorkItem, ...], params: ActionParams
    ) -> AgentResponse | None:
        """Hand unresolved items to the analysis agent and wait for its response."""

    @abstractmethod
    def forward_response_to_agent(self, params: ActionParams) -> bool:
        """Forward the latest analysis response to the code agent; False if none exists."""


class CommandAgentGateway(AgentGateway):
    """Runs the analysis agent as a subprocess and forwards its answer over a text channel."""

    def __init__(
        self,
        *,
        command: tuple[str, ...],
        code_channel: TextChannel,
        compact_after_forward: bool = True,
        add_instructions: bool = True,
        timeout_seconds: float = 900.0,
        send_retry: RetryPolicy | None = None,
    ) -> None:
        if not command:
            raise ValueError("command must not be empty")
        self._command = command
        self._code_channel = code_channel
        self._compact_after_forward = compact_after_forward
        self._add_instructions = add_instructions
        self._timeout_seconds = timeout_seconds
        self._send_retry = send_retry or RetryPolicy.for_channel_send()
        self._latest_response: AgentResponse | None = None

    @classmethod
    def from_config(
        cls,
        config: AgentConfig,
        *,
        code_channel: TextChannel,
        send_retry: RetryPolicy | None = None,
    ) -> CommandAgentGateway:
        return cls(
            command=config.command,
            code_channel=code_channel,
            compact_after_forward=config.compact_after_forward,
            add_instructions=config.add_instructions,
            timeout_seconds=config.timeout_seconds,
            send_retry=send_retry,
        )

    @property
    def latest_response(self) -> AgentResponse | None:
        return self._latest_response

    def send_work_to_agent(
        self, items: tuple[WorkItem, ...], params: ActionParams
    ) -> AgentResponse | None:
        context = params.get("context")
        prompt = build_work_prompt(
            items=items, context=context if isinstance(context, str) else None
        )
        log_event(
            LOGGER,
            "analysis_agent_call_started",
            item_count=len(items),
            prompt_chars=len(prompt),
        )
        output = run(list(self._command), input_text=prompt, timeout_seconds=self._timeout_seconds)
        text = output.strip()
        if not text:
            raise AgentError("No response received from analysis agent")
        self._latest_response = AgentResponse(text=text, received_at=_utc_now_iso8601())
        log_event(LOGGER, "analysis_agent_call_completed", response_chars=len(text))
        return self._latest_response

    def forward_response_to_agent(self, params: ActionParams) -> bool:
        """Send the analysis answer into the code pane, then optionally ``/compact``.

        Each send is retried on its own. A compaction that still fails is only logged, so a
        forwarded prompt is never delivered twice.
        """
        if self._latest_response is None:
            log_event(LOGGER, "forward_skipped_no_response", level=logging.WARNING)
            return False
        keyword = params.get("completion_keyword")
        add_instructions = params.get("add_instructions", self._add_instructions)
        prompt = build_forward_prompt(
            response_text=self._latest_response.text,
            add_instructions=bool(add_instructions),
            completion_keyword=keyword if isinstance(keyword, str) else DEFAULT_COMPLETION_KEYWORD,
        )
        self._send_retry.run(lambda: self._code_channel.send(prompt), step="forward_prompt")
        compacted = False
        if self._compact_after_forward:
            try:
                self._send_retry.run(
                    lambda: self._code_channel.send(_COMPACT_COMMAND), step="compact"
                )
                compacted = True
            except SendError as exc:
                log_event(
                    LOGGER,
                    "compact_send_failed",
                    level=logging.WARNING,
                    error=str(exc),
                )
        log_event(
            LOGGER,
            "response_forwarded",
            response_chars=len(self._latest_response.text),
            compacted=compacted,
        )
        return True


def _utc_now_iso8601() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
