# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

from datetime import timedelta


class AutoScalerDefaults:
    # Execution gating
    scaling_enabled = True
    scaling_event_interval = timedelta(minutes=30)

    # Memory pressure guard
    gc_pressure_threshold = 0.3
    heap_usage_threshold = 1.0

    # Memory tuning
    memory_tuning_enabled = False
    memory_tuning_heap_target = 0.7

    # Task manager shape
    num_task_slots = 1

    # Restart time estimation
    restart_time = timedelta(minutes=5)
    restart_time_tracking_enabled = False
    restart_time_tracking_limit = timedelta(minutes=30)
    tracking_max_age = timedelta(hours=24)
    tracking_max_count = 5

    # Vertex scaler
    target_utilization = 0.7
    max_scale_down_factor = 0.6
    max_scale_up_factor = 100000.0
    scale_down_interval = timedelta(hours=1)
    catch_up_duration = timedelta(minutes=30)
    vertex_min_parallelism = 1
    vertex_max_parallelism = 200
    scaling_effectiveness_detection_enabled = False
    scaling_effectiveness_threshold = 0.1

    # Elastic (vertical/horizontal) policy
    elastic_scaling_enabled = False
    min_cache_hit_rate_threshold = 0.8
    max_cache_hit_rate_threshold = 0.95
    improved_cache_hit_rate_threshold = 0.05
    state_access_latency_threshold = 1.0  # ms
    min_improved_throughput = 0.1
    max_memory_level = 4

    # Runner
    adjustment_interval = 60  # seconds
    metric_reporting_prometheus_port = 0


# Memory size of a task manager from which the large resource ladder is used.
LARGE_TASK_MANAGER_MEMORY_BYTES = 4 * 1024 * 1024 * 1024
