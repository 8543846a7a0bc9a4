from __future__ import annotations

from abc import ABC, abstractmethod
import logging
import time
from typing import Callable

from chainloop.config import StreamConfig
from chainloop.errors import SendError, StreamReadError
from chainloop.observability import log_event
from chainloop.retry_policy import RetryPolicy
from chainloop.shell import CommandError, run


LOGGER = logging.getLogger("chainloop.channels")


class TextChannel(ABC):
    @abstractmethod
    def read_snapshot(self) -> str:
        """Return the current tail of the stream; raise StreamReadError on failure."""

    @abstractmethod
    def send(self, text: str) -> None:
        """Deliver text to the stream's input; raise SendError on failure."""


class TmuxChannel(TextChannel):
    def __init__(
        self,
        target: str,
        *,
        capture_lines: int = 30,
        submit_key_presses: int = 2,
        submit_delay_seconds: float = 2.0,
        command_timeout_seconds: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
        key_retry: RetryPolicy | None = None,
    ) -> None:
        self._target = target
        self._capture_lines = capture_lines
        self._submit_key_presses = submit_key_presses
        self._submit_delay_seconds = submit_delay_seconds
        self._command_timeout_seconds = command_timeout_seconds
        self._sleep = sleep
        self._key_retry = key_retry or RetryPolicy.for_channel_send(sleep=sleep)

    @classmethod
    def from_config(cls, config: StreamConfig) -> TmuxChannel:
        return cls(
            config.target,
            capture_lines=config.capture_lines,
            submit_key_presses=config.submit_key_presses,
        )

    @property
    def target(self) -> str:
        return self._target

    def read_snapshot(self) -> str:
        try:
            return run(
                [
                    "tmux",
                    "capture-pane",
                    "-t",
                    self._target,
                    "-p",
                    "-S",
                    f"-{self._capture_lines}",
                ],
                timeout_seconds=self._command_timeout_seconds,
            )
        except CommandError as exc:
            raise StreamReadError(f"Cannot read tmux target {self._target}: {exc}") from exc

    def send(self, text: str) -> None:
        """Type ``text`` literally, then press the submit key.

        A failure while typing is transient: nothing reached the pane, so the caller may
        send again. Once the text is typed only the key presses are retried here, and a
        press that still fails is reported as non-transient so the text is never retyped.
        """
        try:
            run(
                ["tmux", "send-keys", "-t", self._target, "-l", text],
                timeout_seconds=self._command_timeout_seconds,
            )
        except CommandError as exc:
            raise SendError(f"Cannot send to tmux target {self._target}: {exc}") from exc

        for press in range(self._submit_key_presses):
            if press > 0:
                self._sleep(self._submit_delay_seconds)
            try:
                self._key_retry.run(self._press_submit, target=self._target, press=press + 1)
            except SendError as exc:
                raise SendError(
                    f"Text reached tmux target {self._target} but submit failed: {exc}",
                    transient=False,
                ) from exc
        log_event(
            LOGGER,
            "channel_text_sent",
            target=self._target,
            char_count=len(text),
            submit_key_presses=self._submit_key_presses,
        )

    def _press_submit(self) -> None:
        try:
            run(
                ["tmux", "send-keys", "-t", self._target, "Enter"],
                timeout_seconds=self._command_timeout_seconds,
            )
        except CommandError as exc:
            raise SendError(f"Cannot press Enter on tmux target {self._target}: {exc}") from exc
