# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Target parallelism of a single vertex."""

import logging
import math
from datetime import datetime, timedelta
from typing import Dict, Optional, Protocol

from streamscale.autoscaler.config import AutoScalerConfig
from streamscale.autoscaler.context import JobAutoScalerContext
from streamscale.autoscaler.events import AutoScalerEventHandler, EventType
from streamscale.autoscaler.metrics import (
    ScalingMetric,
    VertexMetrics,
    metric_average,
    metric_current,
)
from streamscale.autoscaler.scaling_summary import ScalingSummary
from streamscale.autoscaler.scaling_tracking import DelayedScaleDown
from streamscale.autoscaler.topology import HASH_SHIP_STRATEGY
from streamscale.runtime.logging import configure_streamscale_logging

configure_streamscale_logging()
logger = logging.getLogger(__name__)

INEFFECTIVE_SCALING_REASON = "IneffectiveScaling"
INEFFECTIVE_MESSAGE_FORMAT = (
    "Ineffective scaling detected for %s (expected increase: %.2f, actual increase %.2f). "
    "Blocking of ineffective scaling decisions is %s"
)


class ParallelismChange:
    """Result of a vertex target computation."""

    __slots__ = ("new_parallelism",)

    def __init__(self, new_parallelism: Optional[int]):
        self.new_parallelism = new_parallelism

    @classmethod
    def no_change(cls) -> "ParallelismChange":
        return cls(None)

    @classmethod
    def build(cls, new_parallelism: int) -> "ParallelismChange":
        return cls(new_parallelism)

    @property
    def is_no_change(self) -> bool:
        return self.new_parallelism is None

    def __eq__(self, other: object) -> bool:
        return (
            isinstance(other, ParallelismChange)
            and other.new_parallelism == self.new_parallelism
        )

    def __repr__(self) -> str:
        if self.is_no_change:
            return "ParallelismChange(no_change)"
        return f"ParallelismChange({self.new_parallelism})"


class VertexScaler(Protocol):
    def compute_scale_target_parallelism(
        self,
        context: JobAutoScalerContext,
        vertex_id: str,
        inputs: Dict[str, str],
        metrics: VertexMetrics,
        history: Dict[datetime, ScalingSummary],
        restart_time: timedelta,
        delayed_scale_down: DelayedScaleDown,
        now: datetime,
    ) -> ParallelismChange:
        ...


def target_processing_capacity(
    metrics: VertexMetrics, config: AutoScalerConfig, restart_time: timedelta
) -> Optional[float]:
    """Records/s the vertex must process at the target utilization.

    Besides the incoming data rate the vertex has to work off its current lag
    and the data that piles up during the restart, both within the catch-up
    duration.
    """
    target_rate = metric_average(metrics, ScalingMetric.TARGET_DATA_RATE)
    if target_rate is None or math.isnan(target_rate):
        return None
    catch_up_seconds = config.catch_up_duration.total_seconds()
    catch_up_rate = 0.0
    if catch_up_seconds > 0:
        lag = metric_current(metrics, ScalingMetric.LAG, 0.0)
        catch_up_rate = (
            lag + target_rate * restart_time.total_seconds()
        ) / catch_up_seconds
    if config.target_utilization <= 0:
        return math.inf
    return (target_rate + catch_up_rate) / config.target_utilization


def align_to_key_groups(parallelism: int, max_parallelism: int, upper_bound: int) -> int:
    """Smallest divisor of ``max_parallelism`` between ``parallelism`` and ``upper_bound``.

    Keeps hash partitioned vertices evenly loaded. Returns ``parallelism``
    unchanged when no such divisor exists.
    """
    for candidate in range(parallelism, upper_bound + 1):
        if max_parallelism % candidate == 0:
            return candidate
    return parallelism


class JobVertexScaler:
    def __init__(self, event_handler: AutoScalerEventHandler):
        self.event_handler = event_handler

    def compute_scale_target_parallelism(
        self,
        context: JobAutoScalerContext,
        vertex_id: str,
        inputs: Dict[str, str],
        metrics: VertexMetrics,
        history: Dict[datetime, ScalingSummary],
        restart_time: timedelta,
        delayed_scale_down: DelayedScaleDown,
        now: datetime,
    ) -> ParallelismChange:
        config = context.configuration
        current = metric_current(metrics, ScalingMetric.PARALLELISM)
        true_rate = metric_average(metrics, ScalingMetric.TRUE_PROCESSING_RATE)
        if current is None or true_rate is None or math.isnan(true_rate) or true_rate <= 0:
            logger.warning(
                f"True processing rate of {vertex_id} is not available, cannot compute a new parallelism"
            )
            return ParallelismChange.no_change()
        current_parallelism = int(current)

        target_capacity = target_processing_capacity(metrics, config, restart_time)
        if target_capacity is None:
            logger.warning(f"Target data rate of {vertex_id} is not available")
            return ParallelismChange.no_change()

        scale_factor = target_capacity / true_rate
        scale_factor = max(scale_factor, 1.0 - config.max_scale_down_factor)
        scale_factor = min(scale_factor, 1.0 + config.max_scale_up_factor)

        max_parallelism = int(
            metric_current(
                metrics, ScalingMetric.MAX_PARALLELISM, config.vertex_max_parallelism
            )
        )
        upper_bound = max(
            min(config.vertex_max_parallelism, max_parallelism),
            config.vertex_min_parallelism,
        )
        new_parallelism = int(math.ceil(current_parallelism * scale_factor))
        new_parallelism = min(max(new_parallelism, config.vertex_min_parallelism), upper_bound)
        if HASH_SHIP_STRATEGY in inputs.values():
            new_parallelism = align_to_key_groups(
                new_parallelism, max_parallelism, upper_bound
            )

        logger.debug(
            f"Vertex {vertex_id}: capacity {target_capacity:.2f} vs true rate {true_rate:.2f}, "
            f"parallelism {current_parallelism} -> {new_parallelism}"
        )

        if new_parallelism == current_parallelism:
            delayed_scale_down.clear_scale_down_request(vertex_id)
            return ParallelismChange.no_change()

        if new_parallelism > current_parallelism:
            delayed_scale_down.clear_scale_down_request(vertex_id)
            if self._block_ineffective_scale_up(context, vertex_id, metrics, history):
                return ParallelismChange.no_change()
            return ParallelismChange.build(new_parallelism)

        return self._delay_scale_down(
            config,
            vertex_id,
            current_parallelism,
            new_parallelism,
            delayed_scale_down,
            now,
        )

    def _delay_scale_down(
        self,
        config: AutoScalerConfig,
        vertex_id: str,
        current_parallelism: int,
        new_parallelism: int,
        delayed_scale_down: DelayedScaleDown,
        now: datetime,
    ) -> ParallelismChange:
        info = delayed_scale_down.trigger_scale_down(vertex_id, now, new_parallelism)
        if now - info.first_trigger_time < config.scale_down_interval:
            logger.debug(
                f"Scale down of {vertex_id} delayed until "
                f"{info.first_trigger_time + config.scale_down_interval}"
            )
            return ParallelismChange.no_change()
        if info.max_recommended_parallelism >= current_parallelism:
            return ParallelismChange.no_change()
        return ParallelismChange.build(info.max_recommended_parallelism)

    def _block_ineffective_scale_up(
        self,
        context: JobAutoScalerContext,
        vertex_id: str,
        metrics: VertexMetrics,
        history: Dict[datetime, ScalingSummary],
    ) -> bool:
        """Whether the previous scale-up realised too little of its expected gain."""
        if not history:
            return False
        last = history[max(history)]
        if not last.is_scaled_up:
            return False

        last_rate = metric_average(last.metrics, ScalingMetric.TRUE_PROCESSING_RATE)
        current_rate = metric_average(metrics, ScalingMetric.TRUE_PROCESSING_RATE)
        if last_rate is None or current_rate is None:
            return False
        expected_rate = metric_current(last.metrics, ScalingMetric.EXPECTED_PROCESSING_RATE)
        if expected_rate is None:
            expected_rate = last_rate * last.new_parallelism / last.current_parallelism

        expected_increase = expected_rate - last_rate
        actual_increase = current_rate - last_rate
        if expected_increase <= 0:
            return False

        config = context.configuration
        if actual_increase / expected_increase >= config.scaling_effectiveness_threshold:
            return False

        blocking = config.scaling_effectiveness_detection_enabled
        message = INEFFECTIVE_MESSAGE_FORMAT % (
            vertex_id,
            expected_increase,
            actual_increase,
            "enabled" if blocking else "disabled",
        )
        self.event_handler.handle_event(
            context,
            EventType.WARNING,
            INEFFECTIVE_SCALING_REASON,
            message,
            INEFFECTIVE_SCALING_REASON + vertex_id,
            config.scaling_event_interval,
        )
        return blocking
