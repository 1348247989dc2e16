# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Autoscaler event notifications."""

import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Callable, Deque, Dict, Optional, Protocol, Tuple

from streamscale.autoscaler.context import JobAutoScalerContext
from streamscale.autoscaler.metrics import ScalingMetric
from streamscale.autoscaler.scaling_summary import ScalingSummary
from streamscale.runtime.logging import configure_streamscale_logging

configure_streamscale_logging()
logger = logging.getLogger(__name__)

MAX_KEPT_EVENTS = 1000

SCALING_REPORT_REASON = "ScalingReport"
SCALING_SUMMARY_HEADER_SCALING_EXECUTION_ENABLED = "Scaling execution enabled, begin scaling vertices:"
SCALING_SUMMARY_HEADER_SCALING_EXECUTION_DISABLED = "Scaling execution disabled by config "
SCALING_EXECUTION_DISABLED_REASON = "%s:%s, recommended parallelism change:"
SCALING_SUMMARY_ENTRY = (
    "{ Vertex ID %s | Parallelism %d -> %d | Processing capacity %.2f -> %.2f | "
    "Target data rate %.2f}"
)


class EventType(str, Enum):
    NORMAL = "Normal"
    WARNING = "Warning"


class AutoScalerEventHandler(Protocol):
    def handle_event(
        self,
        context: JobAutoScalerContext,
        event_type: EventType,
        reason: str,
        message: str,
        message_key: Optional[str],
        interval: Optional[timedelta],
    ) -> None:
        ...

    def handle_scaling_event(
        self,
        context: JobAutoScalerContext,
        summaries: Dict[str, ScalingSummary],
        message: str,
        interval: Optional[timedelta],
    ) -> None:
        ...


def _metric_average(summary: ScalingSummary, metric: ScalingMetric) -> float:
    value = summary.metrics.get(metric)
    if value is None or value.average is None:
        return float("nan")
    return value.average


def scaling_report(summaries: Dict[str, ScalingSummary], message: str) -> str:
    """Render the per-vertex scaling summary after ``message``."""
    lines = [message]
    for vertex_id in sorted(summaries):
        summary = summaries[vertex_id]
        processing_rate = _metric_average(summary, ScalingMetric.TRUE_PROCESSING_RATE)
        expected_rate = _metric_average(summary, ScalingMetric.EXPECTED_PROCESSING_RATE)
        if math.isnan(expected_rate):
            # scale the observed capacity when the evaluator gave no expectation
            expected_rate = (
                processing_rate * summary.new_parallelism / summary.current_parallelism
            )
        lines.append(
            SCALING_SUMMARY_ENTRY
            % (
                vertex_id,
                summary.current_parallelism,
                summary.new_parallelism,
                processing_rate,
                expected_rate,
                _metric_average(summary, ScalingMetric.TARGET_DATA_RATE),
            )
        )
    return " ".join(lines)


@dataclass
class Event:
    job_key: str
    event_type: EventType
    reason: str
    message: str
    message_key: Optional[str]


class LoggingEventHandler:
    """Event handler that writes events to the log.

    A repeated event with the same job, reason and message key is dropped
    while still inside its interval. The latest ``max_events`` emitted events
    are kept in ``events``.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        max_events: int = MAX_KEPT_EVENTS,
    ):
        self._clock = clock
        self._lock = threading.Lock()
        # throttle key -> (emission time, interval in seconds)
        self._last_emitted: Dict[Tuple[str, str, str], Tuple[float, float]] = {}
        self.events: Deque[Event] = deque(maxlen=max_events)

    def _evict_expired(self, now: float) -> None:
        expired = [
            key
            for key, (emitted, seconds) in self._last_emitted.items()
            if now - emitted >= seconds
        ]
        for key in expired:
            del self._last_emitted[key]

    def _throttled(
        self, key: Tuple[str, str, str], interval: Optional[timedelta]
    ) -> bool:
        with self._lock:
            now = self._clock()
            self._evict_expired(now)
            if interval is None:
                return False
            if key in self._last_emitted:
                return True
            if interval.total_seconds() > 0:
                self._last_emitted[key] = (now, interval.total_seconds())
            return False

    def handle_event(
        self,
        context: JobAutoScalerContext,
        event_type: EventType,
        reason: str,
        message: str,
        message_key: Optional[str],
        interval: Optional[timedelta],
    ) -> None:
        key = (context.job_key, reason, message_key or message)
        if self._throttled(key, interval):
            logger.debug(f"Suppressed repeated {reason} event for {context.job_key}")
            return
        self.events.append(
            Event(context.job_key, event_type, reason, message, message_key)
        )
        level = logging.WARNING if event_type == EventType.WARNING else logging.INFO
        logger.log(level, f"[{context.job_key}] {reason}: {message}")

    def handle_scaling_event(
        self,
        context: JobAutoScalerContext,
        summaries: Dict[str, ScalingSummary],
        message: str,
        interval: Optional[timedelta],
    ) -> None:
        # Same recommendation is reported once per interval
        message_key = message + "|" + ",".join(
            f"{v}:{summaries[v].new_parallelism}" for v in sorted(summaries)
        )
        self.handle_event(
            context,
            EventType.NORMAL,
            SCALING_REPORT_REASON,
            scaling_report(summaries, message),
            message_key,
            interval,
        )
