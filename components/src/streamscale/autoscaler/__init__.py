# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Autoscaler - scaling decision engine for streaming jobs.

Every decision cycle an external evaluator produces per-vertex metrics; the
ScalingExecutor turns them into per-vertex parallelism (and, with the elastic
policy, managed memory) targets and persists them in the state store, where a
deployment mechanism picks them up.

Architecture:
- Metrics evaluators observe the job (external)
- ScalingExecutor decides, gates and persists a rescale
- ElasticScalingPolicy chooses vertical or horizontal scaling per vertex
- AutoScalerRunner drives the executor for many jobs concurrently

Usage:
    python -m streamscale.autoscaler --snapshot job.json --state-dir ./state
"""

__all__ = [
    "AutoScalerConfig",
    "AutoScalerRunner",
    "ElasticScalingPolicy",
    "EvaluatedMetrics",
    "EvaluatedScalingMetric",
    "FileStateStore",
    "InMemoryStateStore",
    "JobAutoScalerContext",
    "JobTopology",
    "LoggingEventHandler",
    "ScalingExecutor",
    "ScalingMetric",
    "ScalingSummary",
    "VertexInfo",
]

from streamscale.autoscaler.config import AutoScalerConfig
from streamscale.autoscaler.context import JobAutoScalerContext
from streamscale.autoscaler.elastic_policy import ElasticScalingPolicy
from streamscale.autoscaler.events import LoggingEventHandler
from streamscale.autoscaler.metrics import (
    EvaluatedMetrics,
    EvaluatedScalingMetric,
    ScalingMetric,
)
from streamscale.autoscaler.runner import AutoScalerRunner
from streamscale.autoscaler.scaling_executor import ScalingExecutor
from streamscale.autoscaler.scaling_summary import ScalingSummary
from streamscale.autoscaler.state_store import FileStateStore, InMemoryStateStore
from streamscale.autoscaler.topology import JobTopology, VertexInfo
