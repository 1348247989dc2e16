# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Run scaling decisions for a job snapshot.

    python -m streamscale.autoscaler --snapshot job.json --state-dir ./state

The snapshot holds the job topology and its evaluated metrics; state from
earlier runs is read from and written to ``--state-dir``. With ``--run`` the
snapshot is re-read and decided on every ``--adjustment-interval`` seconds.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, Field

from streamscale.autoscaler.autoscaler_argparse import (
    config_from_args,
    create_autoscaler_parser,
    validate_autoscaler_args,
)
from streamscale.autoscaler.context import JobAutoScalerContext
from streamscale.autoscaler.events import LoggingEventHandler
from streamscale.autoscaler.metrics import EvaluatedMetrics, VertexMetrics
from streamscale.autoscaler.prometheus import AutoScalerPrometheusMetrics
from streamscale.autoscaler.resources import parse_memory_size
from streamscale.autoscaler.runner import AutoScalerRunner
from streamscale.autoscaler.scaling_executor import ScalingExecutor
from streamscale.autoscaler.state_store import FileStateStore
from streamscale.autoscaler.topology import JobTopology, VertexInfo
from streamscale.runtime.logging import configure_streamscale_logging

configure_streamscale_logging()
logger = logging.getLogger(__name__)


class JobSnapshot(BaseModel):
    job_key: str
    job_id: Optional[str] = None
    task_manager_memory: Optional[Union[str, int]] = None
    topology: List[VertexInfo]
    vertex_metrics: Dict[str, VertexMetrics] = Field(default_factory=dict)
    global_metrics: VertexMetrics = Field(default_factory=dict)


class SnapshotEvaluator:
    """Reads the job's evaluated metrics from a snapshot file on every cycle."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def load(self) -> JobSnapshot:
        return JobSnapshot.model_validate_json(self.path.read_text())

    def evaluate(
        self, context: JobAutoScalerContext
    ) -> Tuple[EvaluatedMetrics, JobTopology]:
        snapshot = self.load()
        return (
            EvaluatedMetrics(snapshot.vertex_metrics, snapshot.global_metrics),
            JobTopology(snapshot.topology),
        )


def build_runner(
    args: argparse.Namespace,
) -> Tuple[AutoScalerRunner, JobAutoScalerContext]:
    """Wire the runner for the snapshot job from validated arguments."""
    evaluator = SnapshotEvaluator(args.snapshot)
    snapshot = evaluator.load()
    context = JobAutoScalerContext(
        job_key=snapshot.job_key,
        job_id=snapshot.job_id or snapshot.job_key,
        configuration=config_from_args(args),
        task_manager_cpu=args.task_manager_cpu,
        task_manager_memory=(
            parse_memory_size(snapshot.task_manager_memory)
            if snapshot.task_manager_memory is not None
            else None
        ),
    )

    prometheus_metrics = None
    if args.metric_reporting_prometheus_port:
        prometheus_metrics = AutoScalerPrometheusMetrics()
    executor = ScalingExecutor(
        LoggingEventHandler(),
        FileStateStore(args.state_dir),
        prometheus_metrics=prometheus_metrics,
    )
    runner = AutoScalerRunner(
        executor,
        adjustment_interval=args.adjustment_interval,
        prometheus_port=args.metric_reporting_prometheus_port,
    )
    runner.register_job(context, evaluator)
    return runner, context


def decision_report(
    runner: AutoScalerRunner, context: JobAutoScalerContext, scaled: bool
) -> Dict[str, Any]:
    store = runner.executor.state_store
    return {
        "job": context.job_key,
        "scaled": scaled,
        "parallelism_overrides": store.get_parallelism_overrides(context),
        "resource_profile_overrides": {
            vertex: str(profile)
            for vertex, profile in store.get_resource_profile_overrides(context).items()
        },
        "scaling_period": store.get_scaling_period(context),
    }


def create_parser() -> argparse.ArgumentParser:
    parser = create_autoscaler_parser()
    parser.add_argument("--snapshot", required=True, help="Job snapshot JSON file")
    parser.add_argument(
        "--state-dir", required=True, help="Directory holding the autoscaler state"
    )
    parser.add_argument(
        "--run",
        action="store_true",
        help="Keep deciding every --adjustment-interval seconds, re-reading the snapshot",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = create_parser().parse_args(argv)
    validate_autoscaler_args(args)

    runner, context = build_runner(args)
    if args.run:
        logger.info(
            f"Scaling {context.job_key} every {args.adjustment_interval}s from {args.snapshot}"
        )
        asyncio.run(runner.run())
        return 0

    asyncio.run(runner.run_once())
    job = runner.jobs[context.job_key]
    if job.last_error is not None:
        raise job.last_error

    report = decision_report(runner, context, bool(job.last_decision))
    json.dump(report, sys.stdout, indent=2)
    sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
