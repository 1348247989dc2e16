# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Autoscaler configuration model."""

from datetime import timedelta
from typing import Any, Iterable, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from streamscale.autoscaler.defaults import AutoScalerDefaults
from streamscale.autoscaler.resources import parse_memory_size


class AutoScalerConfig(BaseModel):
    """Options of one job's autoscaler.

    Memory options are stored as bytes and accept strings like "4g".
    Durations accept timedelta, seconds or ISO-8601 strings.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    scaling_enabled: bool = AutoScalerDefaults.scaling_enabled
    excluded_periods: List[str] = Field(default_factory=list)
    vertex_exclude_ids: List[str] = Field(default_factory=list)
    scaling_event_interval: timedelta = AutoScalerDefaults.scaling_event_interval

    gc_pressure_threshold: float = AutoScalerDefaults.gc_pressure_threshold
    heap_usage_threshold: float = AutoScalerDefaults.heap_usage_threshold

    memory_tuning_enabled: bool = AutoScalerDefaults.memory_tuning_enabled
    memory_tuning_heap_target: float = AutoScalerDefaults.memory_tuning_heap_target

    cpu_quota: Optional[float] = None
    memory_quota: Optional[int] = None
    num_task_slots: int = AutoScalerDefaults.num_task_slots
    total_process_memory: Optional[int] = None

    restart_time: timedelta = AutoScalerDefaults.restart_time
    restart_time_tracking_enabled: bool = (
        AutoScalerDefaults.restart_time_tracking_enabled
    )
    restart_time_tracking_limit: timedelta = (
        AutoScalerDefaults.restart_time_tracking_limit
    )
    tracking_max_age: timedelta = AutoScalerDefaults.tracking_max_age
    tracking_max_count: int = AutoScalerDefaults.tracking_max_count

    target_utilization: float = AutoScalerDefaults.target_utilization
    max_scale_down_factor: float = AutoScalerDefaults.max_scale_down_factor
    max_scale_up_factor: float = AutoScalerDefaults.max_scale_up_factor
    scale_down_interval: timedelta = AutoScalerDefaults.scale_down_interval
    catch_up_duration: timedelta = AutoScalerDefaults.catch_up_duration
    vertex_min_parallelism: int = AutoScalerDefaults.vertex_min_parallelism
    vertex_max_parallelism: int = AutoScalerDefaults.vertex_max_parallelism
    scaling_effectiveness_detection_enabled: bool = (
        AutoScalerDefaults.scaling_effectiveness_detection_enabled
    )
    scaling_effectiveness_threshold: float = (
        AutoScalerDefaults.scaling_effectiveness_threshold
    )

    elastic_scaling_enabled: bool = AutoScalerDefaults.elastic_scaling_enabled
    min_cache_hit_rate_threshold: float = (
        AutoScalerDefaults.min_cache_hit_rate_threshold
    )
    max_cache_hit_rate_threshold: float = (
        AutoScalerDefaults.max_cache_hit_rate_threshold
    )
    improved_cache_hit_rate_threshold: float = (
        AutoScalerDefaults.improved_cache_hit_rate_threshold
    )
    state_access_latency_threshold: float = (
        AutoScalerDefaults.state_access_latency_threshold
    )
    min_improved_throughput: float = AutoScalerDefaults.min_improved_throughput
    max_memory_level: int = AutoScalerDefaults.max_memory_level

    @field_validator("memory_quota", "total_process_memory", mode="before")
    @classmethod
    def _parse_memory(cls, value: Any) -> Any:
        if value is None:
            return None
        return parse_memory_size(value)

    @field_validator("num_task_slots", "vertex_min_parallelism")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError(f"must be at least 1, got {value}")
        return value

    @field_validator(
        "target_utilization",
        "gc_pressure_threshold",
        "memory_tuning_heap_target",
        "min_cache_hit_rate_threshold",
        "max_cache_hit_rate_threshold",
    )
    @classmethod
    def _ratio(cls, value: float) -> float:
        if not 0.0 <= value <= 1.0:
            raise ValueError(f"must be within [0, 1], got {value}")
        return value

    @model_validator(mode="after")
    def _check_bounds(self) -> "AutoScalerConfig":
        if self.vertex_max_parallelism < self.vertex_min_parallelism:
            raise ValueError(
                f"vertex_max_parallelism ({self.vertex_max_parallelism}) must not be "
                f"below vertex_min_parallelism ({self.vertex_min_parallelism})"
            )
        if self.min_cache_hit_rate_threshold > self.max_cache_hit_rate_threshold:
            raise ValueError(
                "min_cache_hit_rate_threshold must not exceed max_cache_hit_rate_threshold"
            )
        return self

    def with_overrides(
        self, overrides: Mapping[str, Any], removals: Iterable[str] = ()
    ) -> "AutoScalerConfig":
        """Return a new validated config with option values replaced.

        Removed options fall back to their defaults.
        """
        removals = list(removals)
        if not overrides and not removals:
            return self
        values = self.model_dump()
        for key in removals:
            values.pop(key, None)
        values.update(overrides)
        return AutoScalerConfig.model_validate(values)
