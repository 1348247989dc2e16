# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Evaluated scaling metrics handed to the decision engine each cycle."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel


class ScalingMetric(str, Enum):
    """Metric names produced by the metric evaluator"""

    TRUE_PROCESSING_RATE = "TRUE_PROCESSING_RATE"
    CURRENT_PROCESSING_RATE = "CURRENT_PROCESSING_RATE"
    TARGET_DATA_RATE = "TARGET_DATA_RATE"
    CATCH_UP_DATA_RATE = "CATCH_UP_DATA_RATE"
    LAG = "LAG"
    SCALE_UP_RATE_THRESHOLD = "SCALE_UP_RATE_THRESHOLD"
    SCALE_DOWN_RATE_THRESHOLD = "SCALE_DOWN_RATE_THRESHOLD"
    EXPECTED_PROCESSING_RATE = "EXPECTED_PROCESSING_RATE"
    PARALLELISM = "PARALLELISM"
    MAX_PARALLELISM = "MAX_PARALLELISM"
    RECOMMENDED_PARALLELISM = "RECOMMENDED_PARALLELISM"

    # State backend
    CACHE_HIT_RATE = "CACHE_HIT_RATE"
    STATE_ACCESS_LATENCY = "STATE_ACCESS_LATENCY"

    # Job level
    GC_PRESSURE = "GC_PRESSURE"
    HEAP_MAX_USAGE_RATIO = "HEAP_MAX_USAGE_RATIO"
    HEAP_MEMORY_USED = "HEAP_MEMORY_USED"
    NUM_TASK_SLOTS_USED = "NUM_TASK_SLOTS_USED"


class EvaluatedScalingMetric(BaseModel):
    current: Optional[float] = None
    average: Optional[float] = None

    @classmethod
    def of(cls, value: float) -> "EvaluatedScalingMetric":
        """Value that only has a current reading"""
        return cls(current=value)


VertexMetrics = Dict[ScalingMetric, EvaluatedScalingMetric]


@dataclass
class EvaluatedMetrics:
    """Per-vertex and job-level metrics of one evaluation cycle.

    Read-only to the decision engine except for RECOMMENDED_PARALLELISM,
    which is written back for every vertex that gets a scaling proposal.
    """

    vertex_metrics: Dict[str, VertexMetrics] = field(default_factory=dict)
    global_metrics: VertexMetrics = field(default_factory=dict)


def metric_current(
    metrics: VertexMetrics, metric: ScalingMetric, default: Optional[float] = None
) -> Optional[float]:
    value = metrics.get(metric)
    if value is None or value.current is None:
        return default
    return value.current


def metric_average(
    metrics: VertexMetrics, metric: ScalingMetric, default: Optional[float] = None
) -> Optional[float]:
    value = metrics.get(metric)
    if value is None or value.average is None:
        return default
    return value.average
