# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Vertical/horizontal elastic scaling policy.

For every vertex the policy remembers the previous period's decision and
picks the mechanism of the next move: vertical (one more managed memory rung,
parallelism kept) or horizontal (parallelism changed, memory kept). A vertical
move that did not improve cache hit rate or state latency is rolled back.

Each (PolicyState, stateful) pair maps to exactly one transition function in
``TRANSITIONS`` so every branch of the decision table can be tested on its own.
"""

import logging
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

from pydantic import BaseModel, Field

from streamscale.autoscaler.config import AutoScalerConfig
from streamscale.autoscaler.defaults import LARGE_TASK_MANAGER_MEMORY_BYTES
from streamscale.autoscaler.metrics import (
    ScalingMetric,
    VertexMetrics,
    metric_average,
    metric_current,
)
from streamscale.autoscaler.resources import ResourceProfile
from streamscale.autoscaler.scaling_summary import ScalingSummary
from streamscale.runtime.logging import configure_streamscale_logging

configure_streamscale_logging()
logger = logging.getLogger(__name__)

STATELESS_MEMORY_LEVEL = -1


class ScalingInformation(BaseModel):
    parallelism: int
    # Rung of the managed memory ladder, -1 for stateless vertices
    memory_level: int = 0
    avg_cache_hit_rate: float = 0.0
    avg_state_latency: float = 0.0
    avg_throughput: float = 0.0
    vertical_scaling: bool = False
    horizontal_scaling: bool = False
    stop_vertical_scaling: bool = False

    @property
    def stateless(self) -> bool:
        return self.avg_cache_hit_rate == 0.0


class ScalingConfiguration(BaseModel):
    """Per-vertex elastic scaling decisions of one scaling period."""

    period: int
    scaling: Dict[str, ScalingInformation] = Field(default_factory=dict)

    def parallelism_overrides(self) -> Dict[str, str]:
        return {v: str(info.parallelism) for v, info in self.scaling.items()}

    def resource_profile_overrides(
        self, config: AutoScalerConfig
    ) -> Dict[str, ResourceProfile]:
        return {
            v: resource_profile_for_memory_level(config, info.memory_level)
            for v, info in self.scaling.items()
        }


def build_scaling_configuration(
    vertex_metrics: Dict[str, VertexMetrics],
    summaries: Dict[str, ScalingSummary],
    period: int,
) -> ScalingConfiguration:
    """Start a new period from this cycle's metrics and proposed parallelism."""
    scaling = {}
    for vertex_id, metrics in vertex_metrics.items():
        if vertex_id in summaries:
            parallelism = summaries[vertex_id].new_parallelism
        else:
            parallelism = int(metric_current(metrics, ScalingMetric.PARALLELISM, 1))
        scaling[vertex_id] = ScalingInformation(
            parallelism=parallelism,
            avg_cache_hit_rate=metric_average(
                metrics, ScalingMetric.CACHE_HIT_RATE, 0.0
            ),
            avg_state_latency=metric_average(
                metrics, ScalingMetric.STATE_ACCESS_LATENCY, 0.0
            ),
            avg_throughput=metric_average(
                metrics, ScalingMetric.CURRENT_PROCESSING_RATE, 0.0
            ),
        )
    return ScalingConfiguration(period=period, scaling=scaling)


def resource_profile_for_memory_level(
    config: AutoScalerConfig, memory_level: int
) -> ResourceProfile:
    """Slot resource profile for a rung of the vertical scaling ladder.

    Managed memory doubles per rung; rung -1 has no managed memory.
    """
    total_memory = config.total_process_memory or 0
    if total_memory >= LARGE_TASK_MANAGER_MEMORY_BYTES:
        base_managed_mb, heap_mb, network_mb = 343, 363, 84
    else:
        base_managed_mb, heap_mb, network_mb = 158, 134, 39
    managed_mb = (
        0
        if memory_level == STATELESS_MEMORY_LEVEL
        else int(base_managed_mb * 2**memory_level)
    )
    return ResourceProfile(
        cpu_cores=1.0,
        task_heap_mb=heap_mb,
        task_off_heap_mb=0,
        managed_mb=managed_mb,
        network_mb=network_mb,
    )


class PolicyState(str, Enum):
    NO_HISTORY = "no_history"
    PREVIOUS_VERTICAL = "previous_vertical"
    PREVIOUS_HORIZONTAL = "previous_horizontal"
    # parallelism did not change since the previous period
    UNCHANGED = "unchanged"


def classify(
    information: ScalingInformation, previous: Optional[ScalingInformation]
) -> Tuple[PolicyState, bool]:
    stateful = not information.stateless
    if previous is None:
        return PolicyState.NO_HISTORY, stateful
    if previous.parallelism == information.parallelism:
        return PolicyState.UNCHANGED, stateful
    if previous.vertical_scaling:
        return PolicyState.PREVIOUS_VERTICAL, stateful
    return PolicyState.PREVIOUS_HORIZONTAL, stateful


def _memory_starved(information: ScalingInformation, config: AutoScalerConfig) -> bool:
    return (
        information.avg_cache_hit_rate < config.min_cache_hit_rate_threshold
        or information.avg_state_latency > config.state_access_latency_threshold
    )


def _can_grow(previous: ScalingInformation, config: AutoScalerConfig) -> bool:
    return previous.memory_level + 1 < config.max_memory_level


def _grow_vertically(
    information: ScalingInformation, previous: ScalingInformation
) -> ScalingInformation:
    return information.model_copy(
        update={
            "parallelism": previous.parallelism,
            "memory_level": previous.memory_level + 1,
            "vertical_scaling": True,
        }
    )


def _stay_horizontal(
    information: ScalingInformation, previous: ScalingInformation
) -> ScalingInformation:
    return information.model_copy(
        update={"memory_level": previous.memory_level, "horizontal_scaling": True}
    )


def _stateless(
    information: ScalingInformation,
    previous: Optional[ScalingInformation],
    config: AutoScalerConfig,
) -> ScalingInformation:
    return information.model_copy(update={"memory_level": STATELESS_MEMORY_LEVEL})


def _first_decision(
    information: ScalingInformation,
    previous: Optional[ScalingInformation],
    config: AutoScalerConfig,
) -> ScalingInformation:
    if information.parallelism == 1:
        # Already minimal: neither mechanism is assigned.
        return information
    if _memory_starved(information, config):
        return information.model_copy(
            update={"parallelism": 1, "memory_level": 1, "vertical_scaling": True}
        )
    return information.model_copy(update={"horizontal_scaling": True})


def _after_vertical(
    information: ScalingInformation,
    previous: ScalingInformation,
    config: AutoScalerConfig,
) -> ScalingInformation:
    improved = (
        information.avg_cache_hit_rate - previous.avg_cache_hit_rate
        > config.improved_cache_hit_rate_threshold
        or information.avg_state_latency < previous.avg_state_latency
    )
    if not improved:
        logger.info("Vertical scaling did not help, rolling back one memory level")
        return information.model_copy(
            update={
                "memory_level": previous.memory_level - 1,
                "stop_vertical_scaling": True,
                "horizontal_scaling": True,
            }
        )

    throughput_improved = information.avg_throughput > previous.avg_throughput * (
        1.0 + config.min_improved_throughput
    )
    if (
        throughput_improved
        and information.avg_cache_hit_rate < config.max_cache_hit_rate_threshold
        and _can_grow(previous, config)
    ):
        return _grow_vertically(information, previous)
    if throughput_improved and information.avg_cache_hit_rate < config.max_cache_hit_rate_threshold:
        logger.info(f"Memory level {previous.memory_level} is the highest allowed")
    return _stay_horizontal(information, previous)


def _after_horizontal(
    information: ScalingInformation,
    previous: ScalingInformation,
    config: AutoScalerConfig,
) -> ScalingInformation:
    if _memory_starved(information, config) and _can_grow(previous, config):
        return _grow_vertically(information, previous)
    return _stay_horizontal(information, previous)


def _carry_over(
    information: ScalingInformation,
    previous: ScalingInformation,
    config: AutoScalerConfig,
) -> ScalingInformation:
    return information.model_copy(
        update={
            "memory_level": previous.memory_level,
            "vertical_scaling": previous.vertical_scaling,
            "horizontal_scaling": previous.horizontal_scaling,
            "stop_vertical_scaling": previous.stop_vertical_scaling,
        }
    )


# (information, previous, config); previous is None only in NO_HISTORY
Transition = Callable[..., ScalingInformation]

TRANSITIONS: Dict[Tuple[PolicyState, bool], Transition] = {
    (PolicyState.NO_HISTORY, False): _stateless,
    (PolicyState.PREVIOUS_VERTICAL, False): _stateless,
    (PolicyState.PREVIOUS_HORIZONTAL, False): _stateless,
    (PolicyState.UNCHANGED, False): _stateless,
    (PolicyState.NO_HISTORY, True): _first_decision,
    (PolicyState.PREVIOUS_VERTICAL, True): _after_vertical,
    (PolicyState.PREVIOUS_HORIZONTAL, True): _after_horizontal,
    (PolicyState.UNCHANGED, True): _carry_over,
}


class ElasticScalingPolicy:
    def __init__(self, config: AutoScalerConfig):
        self.config = config

    def decide(
        self,
        information: ScalingInformation,
        previous: Optional[ScalingInformation],
    ) -> ScalingInformation:
        state, stateful = classify(information, previous)
        return TRANSITIONS[(state, stateful)](information, previous, self.config)

    def apply(
        self,
        current: ScalingConfiguration,
        previous: Optional[ScalingConfiguration],
    ) -> ScalingConfiguration:
        """Return the decided configuration; neither input is modified."""
        decided = {}
        for vertex_id, information in current.scaling.items():
            previous_information = (
                previous.scaling.get(vertex_id) if previous is not None else None
            )
            decision = self.decide(information, previous_information)
            logger.debug(
                f"Vertex {vertex_id}: {classify(information, previous_information)[0].value} -> "
                f"parallelism={decision.parallelism} memory_level={decision.memory_level} "
                f"vertical={decision.vertical_scaling} horizontal={decision.horizontal_scaling}"
            )
            decided[vertex_id] = decision
        return ScalingConfiguration(period=current.period, scaling=decided)
