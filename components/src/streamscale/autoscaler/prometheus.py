# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

from typing import Optional

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge

DECISION_NO_CHANGE = "no_change"
DECISION_BLOCKED = "blocked"
DECISION_RESOURCES_EXCEEDED = "resources_exceeded"
DECISION_SCALED = "scaled"


class AutoScalerPrometheusMetrics:
    """Container for all autoscaler Prometheus metrics."""

    def __init__(
        self,
        prefix: str = "autoscaler",
        registry: Optional[CollectorRegistry] = None,
    ):
        registry = registry if registry is not None else REGISTRY

        self.decisions = Counter(
            f"{prefix}:scaling_decisions",
            "Scaling decisions by outcome",
            ["job", "outcome"],
            registry=registry,
        )

        # Per vertex
        self.recommended_parallelism = Gauge(
            f"{prefix}:recommended_parallelism",
            "Parallelism recommended in the latest decision",
            ["job", "vertex"],
            registry=registry,
        )
        self.memory_level = Gauge(
            f"{prefix}:memory_level",
            "Managed memory level chosen by the elastic policy",
            ["job", "vertex"],
            registry=registry,
        )

        self.scaling_period = Gauge(
            f"{prefix}:scaling_period",
            "Elastic scaling period of the job",
            ["job"],
            registry=registry,
        )

    def record_decision(self, job_key: str, outcome: str) -> None:
        self.decisions.labels(job=job_key, outcome=outcome).inc()
