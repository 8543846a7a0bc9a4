from __future__ import annotations

from dataclasses import dataclass, field
import logging
import random
import time
from typing import Callable, TypeVar

from chainloop.config import RetryConfig
from chainloop.errors import SendError
from chainloop.observability import log_event


LOGGER = logging.getLogger("chainloop.retry_policy")
_TRANSIENT_MESSAGE_MARKERS = (
    "timeout",
    "timed out",
    "no response received",
    "session closed",
    "target closed",
    "protocol error",
)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryAttempt:
    error: BaseException
    attempt: int
    max_retries: int
    delay_seconds: float
    context: tuple[tuple[str, object], ...] = ()


def is_transient_error(error: BaseException) -> bool:
    """Classify timeouts, connection resets and transient protocol errors as retryable."""
    if isinstance(error, SendError):
        return error.transient
    if isinstance(error, TimeoutError | ConnectionError):
        return True
    if getattr(error, "timed_out", False):
        return True
    message = str(error).lower()
    return any(marker in message for marker in _TRANSIENT_MESSAGE_MARKERS)


def _log_retry(attempt: RetryAttempt) -> None:
    log_event(
        LOGGER,
        "retry_scheduled",
        attempt=attempt.attempt,
        max_retries=attempt.max_retries,
        delay_seconds=attempt.delay_seconds,
        error_type=type(attempt.error).__name__,
        error=str(attempt.error),
        **dict(attempt.context),
    )


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0
    multiplier: float = 2.0
    jitter: float = 0.1
    classifier: Callable[[BaseException], bool] = is_transient_error
    on_retry: Callable[[RetryAttempt], None] = _log_retry
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    rng: Callable[[], float] = field(default=random.random, repr=False)

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")

    @classmethod
    def from_config(cls, config: RetryConfig, **overrides: object) -> RetryPolicy:
        kwargs: dict[str, object] = {
            "max_retries": config.max_retries,
            "initial_delay_seconds": config.initial_delay_seconds,
            "max_delay_seconds": config.max_delay_seconds,
            "multiplier": config.multiplier,
            "jitter": config.jitter,
        }
        kwargs.update(overrides)
        return cls(**kwargs)  # type: ignore[arg-type]

    @classmethod
    def for_agent_communication(
        cls, config: RetryConfig | None = None, **overrides: object
    ) -> RetryPolicy:
        """Slow backoff for analysis-agent calls; ``[retry]`` settings replace the preset."""
        if config is None:
            config = RetryConfig(
                max_retries=3,
                initial_delay_seconds=2.0,
                max_delay_seconds=30.0,
                multiplier=2.5,
                jitter=0.2,
            )
        return cls.from_config(config, **overrides)

    @classmethod
    def for_channel_send(cls, **overrides: object) -> RetryPolicy:
        return cls.from_config(
            RetryConfig(
                max_retries=3,
                initial_delay_seconds=1.0,
                max_delay_seconds=10.0,
                multiplier=1.5,
                jitter=0.1,
            ),
            **overrides,
        )

    def base_delay(self, attempt: int) -> float:
        if attempt < 1:
            raise ValueError("attempt must be >= 1")
        exponential = self.initial_delay_seconds * (self.multiplier ** (attempt - 1))
        return min(self.max_delay_seconds, exponential)

    def delay(self, attempt: int) -> float:
        clamped = self.base_delay(attempt)
        jitter_amount = clamped * self.jitter * (self.rng() * 2 - 1)
        return max(0.0, clamped + jitter_amount)

    def run(self, fn: Callable[[], T], **context: object) -> T:
        for attempt in range(1, self.max_retries + 1):
            try:
                return fn()
            except Exception as exc:
                if attempt >= self.max_retries or not self.classifier(exc):
                    raise
                delay_seconds = self.delay(attempt)
                self.on_retry(
                    RetryAttempt(
                        error=exc,
                        attempt=attempt,
                        max_retries=self.max_retries,
                        delay_seconds=delay_seconds,
                        context=tuple(sorted(context.items())),
                    )
                )
                self.sleep(delay_seconds)
        raise AssertionError("unreachable")
