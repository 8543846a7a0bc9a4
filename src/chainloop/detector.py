from __future__ import annotations

import hashlib
import logging
import time
from typing import Callable

from chainloop.channels import TextChannel
from chainloop.models import DetectionEvent, MonitorTimeout
from chainloop.observability import log_event


LOGGER = logging.getLogger("chainloop.detector")
_COMMENT_PREFIXES = ("//", "#", "*")
_QUOTE_CHARS = ('"', "'", "`")
_TRAILING_CONTENT_WINDOW = 50
_TRAILING_CONTENT_WARN_CHARS = 20


def buffer_fingerprint(buffer: str) -> str:
    return hashlib.sha256(buffer.encode("utf-8")).hexdigest()


def keyword_line(buffer: str, position: int) -> str:
    line_start = buffer.rfind("\n", 0, position) + 1
    line_end = buffer.find("\n", position)
    if line_end == -1:
        line_end = len(buffer)
    return buffer[line_start:line_end]


def is_actual_signal(buffer: str, keyword: str, position: int) -> bool:
    """Reject occurrences on comment-like lines or wrapped in quotes."""
    line = keyword_line(buffer, position)
    if line.strip().startswith(_COMMENT_PREFIXES):
        return False
    for quote in _QUOTE_CHARS:
        if f"{quote}{keyword}{quote}" in line:
            return False
    return True


class PollingKeywordDetector:
    """Detects each real occurrence of a keyword in a rolling stream tail exactly once.

    Two independent guards suppress repeats: the keyword's last index must move past the
    index recorded at its previous detection, and the buffer must differ from the buffer
    that produced the previous detection.
    """

    def __init__(
        self,
        channel: TextChannel,
        *,
        timeout_seconds: float,
        max_buffer_chars: int = 10_000,
        rotation_threshold_chars: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._channel = channel
        self._timeout_seconds = timeout_seconds
        self._max_buffer_chars = max_buffer_chars
        self._rotation_threshold_chars = rotation_threshold_chars
        self._clock = clock
        self._started_at: float | None = None
        self._poll_count = 0
        self._last_content = ""
        self._buffer = ""
        self._last_detected_positions: dict[str, int] = {}
        self._last_detected_fingerprint: str | None = None

    @property
    def started_at(self) -> float | None:
        return self._started_at

    @property
    def deadline_at(self) -> float | None:
        if self._started_at is None:
            return None
        return self._started_at + self._timeout_seconds

    @property
    def poll_count(self) -> int:
        return self._poll_count

    @property
    def output_buffer(self) -> str:
        return self._buffer

    @property
    def last_detected_positions(self) -> dict[str, int]:
        return dict(self._last_detected_positions)

    @property
    def last_detected_fingerprint(self) -> str | None:
        return self._last_detected_fingerprint

    def start(self) -> None:
        self._started_at = self._clock()
        self._poll_count = 0
        self._last_content = ""
        self._buffer = ""
        self._last_detected_positions.clear()
        self._last_detected_fingerprint = None

    def elapsed_seconds(self) -> float:
        if self._started_at is None:
            return 0.0
        return self._clock() - self._started_at

    def poll(self, keyword: str) -> DetectionEvent | MonitorTimeout | None:
        if self._started_at is None:
            raise RuntimeError("PollingKeywordDetector.poll called before start()")
        self._poll_count += 1
        now = self._clock()
        elapsed = now - self._started_at
        if elapsed > self._timeout_seconds:
            log_event(
                LOGGER,
                "monitor_timeout",
                level=logging.WARNING,
                keyword=keyword,
                elapsed_seconds=elapsed,
                poll_count=self._poll_count,
            )
            return MonitorTimeout(elapsed_seconds=elapsed, poll_count=self._poll_count)

        self.ingest(self._channel.read_snapshot())
        if not self.detect(keyword):
            return None
        return DetectionEvent(
            keyword=keyword,
            position=self._last_detected_positions[keyword],
            poll_count=self._poll_count,
            detected_at=now,
        )

    def ingest(self, snapshot: str) -> None:
        if snapshot != self._last_content:
            delta = abs(len(snapshot) - len(self._last_content))
            if delta > self._rotation_threshold_chars and self._last_detected_positions:
                log_event(
                    LOGGER,
                    "stream_window_rotated",
                    previous_chars=len(self._last_content),
                    current_chars=len(snapshot),
                    cleared_keywords=len(self._last_detected_positions),
                )
                self._last_detected_positions.clear()
            self._last_content = snapshot
        self._buffer = snapshot[-self._max_buffer_chars :]

    def detect(self, keyword: str) -> bool:
        buffer = self._buffer
        current_position = buffer.rfind(keyword)
        if current_position == -1:
            return False
        if current_position <= self._last_detected_positions.get(keyword, -1):
            return False

        fingerprint = buffer_fingerprint(buffer)
        if fingerprint == self._last_detected_fingerprint:
            log_event(
                LOGGER,
                "keyword_skipped_identical_buffer",
                keyword=keyword,
                position=current_position,
            )
            return False

        if not is_actual_signal(buffer, keyword, current_position):
            log_event(
                LOGGER,
                "keyword_skipped_false_positive",
                keyword=keyword,
                position=current_position,
                line=keyword_line(buffer, current_position),
            )
            return False

        trailing = buffer[
            current_position + len(keyword) : current_position
            + len(keyword)
            + _TRAILING_CONTENT_WINDOW
        ]
        if len(trailing.strip()) > _TRAILING_CONTENT_WARN_CHARS:
            log_event(
                LOGGER,
                "keyword_trailing_content",
                level=logging.WARNING,
                keyword=keyword,
                trailing=trailing,
            )

        self._last_detected_positions[keyword] = current_position
        self._last_detected_fingerprint = fingerprint
        log_event(
            LOGGER,
            "keyword_detected",
            keyword=keyword,
            position=current_position,
            poll_count=self._poll_count,
        )
        return True
