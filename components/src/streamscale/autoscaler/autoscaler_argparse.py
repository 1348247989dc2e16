# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

import argparse
from typing import List

from streamscale.autoscaler.calendar_utils import validate_excluded_periods
from streamscale.autoscaler.config import AutoScalerConfig
from streamscale.autoscaler.defaults import AutoScalerDefaults
from streamscale.autoscaler.exceptions import InvalidConfigurationError

# Options copied into AutoScalerConfig under the same name
_PASSTHROUGH_OPTIONS = [
    "excluded_periods",
    "vertex_exclude_ids",
    "scaling_event_interval",
    "gc_pressure_threshold",
    "heap_usage_threshold",
    "memory_tuning_enabled",
    "memory_tuning_heap_target",
    "cpu_quota",
    "memory_quota",
    "num_task_slots",
    "total_process_memory",
    "restart_time",
    "restart_time_tracking_enabled",
    "restart_time_tracking_limit",
    "tracking_max_age",
    "tracking_max_count",
    "target_utilization",
    "max_scale_down_factor",
    "max_scale_up_factor",
    "scale_down_interval",
    "catch_up_duration",
    "vertex_min_parallelism",
    "vertex_max_parallelism",
    "scaling_effectiveness_detection_enabled",
    "scaling_effectiveness_threshold",
    "elastic_scaling_enabled",
    "min_cache_hit_rate_threshold",
    "max_cache_hit_rate_threshold",
    "improved_cache_hit_rate_threshold",
    "state_access_latency_threshold",
    "min_improved_throughput",
    "max_memory_level",
]


def create_autoscaler_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for the autoscaler.

    Returns:
        argparse.ArgumentParser: Configured argument parser for the autoscaler
    """
    parser = argparse.ArgumentParser(description="Streaming job autoscaler")

    # Execution gating
    parser.add_argument(
        "--disable-scaling",
        action="store_true",
        default=not AutoScalerDefaults.scaling_enabled,
        help="Compute and report scaling decisions without executing them",
    )
    parser.add_argument(
        "--excluded-periods",
        nargs="*",
        default=[],
        help='Blackout periods, e.g. "22:00-06:00", "Mon-Fri 09:00-17:00" or "Sat,Sun" (UTC)',
    )
    parser.add_argument(
        "--vertex-exclude-ids",
        nargs="*",
        default=[],
        help="Vertex ids that are never scaled",
    )
    parser.add_argument(
        "--scaling-event-interval",
        type=float,
        default=AutoScalerDefaults.scaling_event_interval.total_seconds(),
        help="Minimum interval between repeated events in seconds",
    )

    # Memory pressure and tuning
    parser.add_argument(
        "--gc-pressure-threshold",
        type=float,
        default=AutoScalerDefaults.gc_pressure_threshold,
        help="GC time ratio above which scaling is paused",
    )
    parser.add_argument(
        "--heap-usage-threshold",
        type=float,
        default=AutoScalerDefaults.heap_usage_threshold,
        help="Heap usage ratio above which scaling is paused",
    )
    parser.add_argument(
        "--memory-tuning-enabled",
        action="store_true",
        default=AutoScalerDefaults.memory_tuning_enabled,
        help="Apply memory tuning overrides before the resource quota checks",
    )
    parser.add_argument(
        "--memory-tuning-heap-target",
        type=float,
        default=AutoScalerDefaults.memory_tuning_heap_target,
        help="Heap usage ratio targeted by memory tuning",
    )

    # Resources
    parser.add_argument(
        "--cpu-quota", type=float, default=None, help="Total CPU quota of the job"
    )
    parser.add_argument(
        "--memory-quota",
        default=None,
        help='Total memory quota of the job, e.g. "64g"',
    )
    parser.add_argument(
        "--num-task-slots",
        type=int,
        default=AutoScalerDefaults.num_task_slots,
        help="Task slots per task manager",
    )
    parser.add_argument(
        "--total-process-memory",
        default=None,
        help='Total process memory of one task manager, e.g. "4g"',
    )
    parser.add_argument(
        "--task-manager-cpu",
        type=float,
        default=None,
        help="CPU cores of one task manager (enables the cluster capacity check)",
    )

    # Restart time
    parser.add_argument(
        "--restart-time",
        type=float,
        default=AutoScalerDefaults.restart_time.total_seconds(),
        help="Expected restart time in seconds",
    )
    parser.add_argument(
        "--restart-time-tracking-enabled",
        action="store_true",
        default=AutoScalerDefaults.restart_time_tracking_enabled,
        help="Use the maximum observed restart time instead of --restart-time",
    )
    parser.add_argument(
        "--restart-time-tracking-limit",
        type=float,
        default=AutoScalerDefaults.restart_time_tracking_limit.total_seconds(),
        help="Upper bound of the observed restart time in seconds",
    )
    parser.add_argument(
        "--tracking-max-age",
        type=float,
        default=AutoScalerDefaults.tracking_max_age.total_seconds(),
        help="Seconds a restart tracking record is kept",
    )
    parser.add_argument(
        "--tracking-max-count",
        type=int,
        default=AutoScalerDefaults.tracking_max_count,
        help="Number of newest restart tracking records kept",
    )

    # Vertex scaler
    parser.add_argument(
        "--target-utilization",
        type=float,
        default=AutoScalerDefaults.target_utilization,
        help="Target utilization of every vertex",
    )
    parser.add_argument(
        "--max-scale-down-factor",
        type=float,
        default=AutoScalerDefaults.max_scale_down_factor,
        help="Maximum relative parallelism decrease per step",
    )
    parser.add_argument(
        "--max-scale-up-factor",
        type=float,
        default=AutoScalerDefaults.max_scale_up_factor,
        help="Maximum relative parallelism increase per step",
    )
    parser.add_argument(
        "--scale-down-interval",
        type=float,
        default=AutoScalerDefaults.scale_down_interval.total_seconds(),
        help="Seconds a scale-down must keep being proposed before it is applied",
    )
    parser.add_argument(
        "--catch-up-duration",
        type=float,
        default=AutoScalerDefaults.catch_up_duration.total_seconds(),
        help="Seconds within which the backlog should be processed",
    )
    parser.add_argument(
        "--vertex-min-parallelism",
        type=int,
        default=AutoScalerDefaults.vertex_min_parallelism,
        help="Lower bound of vertex parallelism",
    )
    parser.add_argument(
        "--vertex-max-parallelism",
        type=int,
        default=AutoScalerDefaults.vertex_max_parallelism,
        help="Upper bound of vertex parallelism",
    )
    parser.add_argument(
        "--scaling-effectiveness-detection-enabled",
        action="store_true",
        default=AutoScalerDefaults.scaling_effectiveness_detection_enabled,
        help="Block scale-ups that repeat an ineffective one",
    )
    parser.add_argument(
        "--scaling-effectiveness-threshold",
        type=float,
        default=AutoScalerDefaults.scaling_effectiveness_threshold,
        help="Minimum share of the expected gain a scale-up must realise",
    )

    # Elastic policy
    parser.add_argument(
        "--elastic-scaling-enabled",
        action="store_true",
        default=AutoScalerDefaults.elastic_scaling_enabled,
        help="Choose between vertical (memory) and horizontal (parallelism) scaling",
    )
    parser.add_argument(
        "--min-cache-hit-rate-threshold",
        type=float,
        default=AutoScalerDefaults.min_cache_hit_rate_threshold,
        help="Cache hit rate below which a stateful vertex needs more memory",
    )
    parser.add_argument(
        "--max-cache-hit-rate-threshold",
        type=float,
        default=AutoScalerDefaults.max_cache_hit_rate_threshold,
        help="Cache hit rate above which more memory stops helping",
    )
    parser.add_argument(
        "--improved-cache-hit-rate-threshold",
        type=float,
        default=AutoScalerDefaults.improved_cache_hit_rate_threshold,
        help="Cache hit rate increase that counts as an improvement",
    )
    parser.add_argument(
        "--state-access-latency-threshold",
        type=float,
        default=AutoScalerDefaults.state_access_latency_threshold,
        help="State access latency (ms) above which a vertex needs more memory",
    )
    parser.add_argument(
        "--min-improved-throughput",
        type=float,
        default=AutoScalerDefaults.min_improved_throughput,
        help="Relative throughput gain that justifies another memory level",
    )
    parser.add_argument(
        "--max-memory-level",
        type=int,
        default=AutoScalerDefaults.max_memory_level,
        help="Exclusive upper bound of the managed memory level",
    )

    # Runner
    parser.add_argument(
        "--adjustment-interval",
        type=int,
        default=AutoScalerDefaults.adjustment_interval,
        help="Interval between scaling decisions in seconds",
    )
    parser.add_argument(
        "--metric-reporting-prometheus-port",
        type=int,
        default=AutoScalerDefaults.metric_reporting_prometheus_port,
        help="Port for the Prometheus metrics endpoint (0 disables it)",
    )
    return parser


def config_from_args(args: argparse.Namespace) -> AutoScalerConfig:
    values = {name: getattr(args, name) for name in _PASSTHROUGH_OPTIONS}
    values["scaling_enabled"] = not args.disable_scaling
    return AutoScalerConfig.model_validate(values)


def validate_autoscaler_args(args: argparse.Namespace) -> None:
    """Validate autoscaler arguments.

    Raises:
        ValueError: If argument constraints are violated
    """
    errors: List[str] = []
    if args.vertex_min_parallelism < 1:
        errors.append("--vertex-min-parallelism must be at least 1")
    if args.vertex_max_parallelism < args.vertex_min_parallelism:
        errors.append(
            "--vertex-max-parallelism must not be below --vertex-min-parallelism"
        )
    if not 0.0 < args.target_utilization <= 1.0:
        errors.append("--target-utilization must be within (0, 1]")
    if args.min_cache_hit_rate_threshold > args.max_cache_hit_rate_threshold:
        errors.append(
            "--min-cache-hit-rate-threshold must not exceed --max-cache-hit-rate-threshold"
        )
    if args.adjustment_interval <= 0:
        errors.append("--adjustment-interval must be positive")
    if args.num_task_slots < 1:
        errors.append("--num-task-slots must be at least 1")
    if args.tracking_max_count < 1:
        errors.append("--tracking-max-count must be at least 1")
    try:
        validate_excluded_periods(args.excluded_periods)
    except InvalidConfigurationError as e:
        errors.extend(e.errors)

    if errors:
        raise InvalidConfigurationError(errors)
