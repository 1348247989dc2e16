# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Task manager memory tuning advice."""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Protocol

from pydantic import BaseModel, Field

from streamscale.autoscaler.config import AutoScalerConfig
from streamscale.autoscaler.context import JobAutoScalerContext
from streamscale.autoscaler.events import AutoScalerEventHandler, EventType
from streamscale.autoscaler.metrics import (
    EvaluatedMetrics,
    ScalingMetric,
    metric_average,
    metric_current,
)
from streamscale.autoscaler.resources import format_memory_size
from streamscale.autoscaler.scaling_summary import ScalingSummary
from streamscale.autoscaler.topology import JobTopology
from streamscale.runtime.logging import configure_streamscale_logging

configure_streamscale_logging()
logger = logging.getLogger(__name__)

MEMORY_TUNING_REASON = "MemoryTuning"


class ConfigChanges(BaseModel):
    """Option overrides and removals proposed for the job configuration."""

    overrides: Dict[str, Any] = Field(default_factory=dict)
    removals: List[str] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.overrides and not self.removals

    def new_config_with_overrides(self, config: AutoScalerConfig) -> AutoScalerConfig:
        return config.with_overrides(self.overrides, self.removals)


class MemoryTuning(Protocol):
    def tune_task_manager_memory(
        self,
        context: JobAutoScalerContext,
        evaluated_metrics: EvaluatedMetrics,
        topology: JobTopology,
        summaries: Dict[str, ScalingSummary],
        event_handler: AutoScalerEventHandler,
    ) -> ConfigChanges:
        ...


class NoopMemoryTuning:
    def tune_task_manager_memory(
        self,
        context: JobAutoScalerContext,
        evaluated_metrics: EvaluatedMetrics,
        topology: JobTopology,
        summaries: Dict[str, ScalingSummary],
        event_handler: AutoScalerEventHandler,
    ) -> ConfigChanges:
        return ConfigChanges()


def get_total_memory(config: AutoScalerConfig, context: JobAutoScalerContext) -> int:
    """Total process memory of one task manager in bytes, 0 when unknown."""
    if config.total_process_memory:
        return config.total_process_memory
    if context.task_manager_memory:
        return context.task_manager_memory
    return 0


class HeapUsageMemoryTuning:
    """Resize task managers so that the observed heap usage meets a target.

    Heap usage is taken from the job-level HEAP_MAX_USAGE_RATIO average and
    HEAP_MEMORY_USED. The proposed size never drops below the heap currently
    in use.
    """

    def __init__(self, event_interval: timedelta = timedelta(minutes=30)):
        self.event_interval = event_interval

    def tune_task_manager_memory(
        self,
        context: JobAutoScalerContext,
        evaluated_metrics: EvaluatedMetrics,
        topology: JobTopology,
        summaries: Dict[str, ScalingSummary],
        event_handler: AutoScalerEventHandler,
    ) -> ConfigChanges:
        config = context.configuration
        total_memory = get_total_memory(config, context)
        if total_memory <= 0:
            logger.debug(f"Task manager memory of {context.job_key} unknown, not tuning")
            return ConfigChanges()

        global_metrics = evaluated_metrics.global_metrics
        heap_usage = metric_average(global_metrics, ScalingMetric.HEAP_MAX_USAGE_RATIO)
        if heap_usage is None or heap_usage <= 0:
            return ConfigChanges()

        heap_used = metric_current(global_metrics, ScalingMetric.HEAP_MEMORY_USED, 0.0)
        target = config.memory_tuning_heap_target
        new_memory = max(int(total_memory * heap_usage / target), int(heap_used))
        if new_memory == total_memory:
            return ConfigChanges()

        message = (
            f"Heap usage {heap_usage:.2f} against target {target:.2f}: "
            f"total process memory {format_memory_size(total_memory)} -> "
            f"{format_memory_size(new_memory)}"
        )
        logger.info(f"[{context.job_key}] {message}")
        event_handler.handle_event(
            context,
            EventType.NORMAL,
            MEMORY_TUNING_REASON,
            message,
            None,
            self.event_interval,
        )
        return ConfigChanges(overrides={"total_process_memory": new_memory})
