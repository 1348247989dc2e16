# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Periodic control loop driving the scaling executor for many jobs."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Protocol, Tuple

from prometheus_client import start_http_server

from streamscale.autoscaler.context import JobAutoScalerContext
from streamscale.autoscaler.defaults import AutoScalerDefaults
from streamscale.autoscaler.metrics import EvaluatedMetrics, ScalingMetric, metric_current
from streamscale.autoscaler.scaling_executor import ScalingExecutor
from streamscale.autoscaler.scaling_tracking import ScalingTracking
from streamscale.autoscaler.topology import JobTopology
from streamscale.runtime.logging import configure_streamscale_logging

configure_streamscale_logging()
logger = logging.getLogger(__name__)


class MetricsEvaluator(Protocol):
    def evaluate(
        self, context: JobAutoScalerContext
    ) -> Tuple[EvaluatedMetrics, JobTopology]:
        ...


@dataclass
class RegisteredJob:
    context: JobAutoScalerContext
    evaluator: MetricsEvaluator
    last_decision: Optional[bool] = None
    last_error: Optional[BaseException] = None


class AutoScalerRunner:
    def __init__(
        self,
        executor: ScalingExecutor,
        adjustment_interval: float = AutoScalerDefaults.adjustment_interval,
        prometheus_port: int = AutoScalerDefaults.metric_reporting_prometheus_port,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.executor = executor
        self.adjustment_interval = adjustment_interval
        self.prometheus_port = prometheus_port
        self.clock = clock
        self.jobs: Dict[str, RegisteredJob] = {}

    def register_job(
        self, context: JobAutoScalerContext, evaluator: MetricsEvaluator
    ) -> None:
        if context.job_key in self.jobs:
            logger.warning(f"Job {context.job_key} already registered, replacing it")
        self.jobs[context.job_key] = RegisteredJob(context, evaluator)

    def unregister_job(self, job_key: str, remove_state: bool = False) -> None:
        job = self.jobs.pop(job_key, None)
        self.executor.forget_job(job_key)
        if job is not None and remove_state:
            self.executor.state_store.remove_job(job.context)

    def _update_scaling_tracking(
        self,
        context: JobAutoScalerContext,
        tracking: ScalingTracking,
        evaluated_metrics: EvaluatedMetrics,
        now: datetime,
    ) -> None:
        """Close the pending restart record and drop expired ones."""
        store = self.executor.state_store
        conf = context.configuration
        running = {}
        for vertex_id, metrics in evaluated_metrics.vertex_metrics.items():
            parallelism = metric_current(metrics, ScalingMetric.PARALLELISM)
            if parallelism is not None:
                running[vertex_id] = int(parallelism)

        completed = tracking.record_restart_if_parallelism_matches(
            now, running, store.get_parallelism_overrides(context)
        )
        num_records = len(tracking.scaling_records)
        tracking.remove_old_records(
            now, conf.tracking_max_age, conf.tracking_max_count
        )
        if completed or len(tracking.scaling_records) != num_records:
            store.store_scaling_tracking(context, tracking)

    def _scale_job(self, job: RegisteredJob) -> bool:
        store = self.executor.state_store
        context = job.context
        now = self.clock()
        evaluated_metrics, topology = job.evaluator.evaluate(context)
        tracking = store.get_scaling_tracking(context)
        self._update_scaling_tracking(context, tracking, evaluated_metrics, now)

        delayed_scale_down = store.get_delayed_scale_down(context)
        try:
            return self.executor.scale_resource(
                context,
                evaluated_metrics,
                store.get_scaling_history(context),
                tracking,
                now,
                topology,
                delayed_scale_down,
            )
        finally:
            store.store_delayed_scale_down(context, delayed_scale_down)

    async def run_once(self) -> Dict[str, Optional[bool]]:
        """Run one decision for every registered job.

        Jobs are scaled concurrently, each in a worker thread. A failing job is
        logged and retried in the next cycle; its result is None.
        """
        jobs = list(self.jobs.values())
        results = await asyncio.gather(
            *(asyncio.to_thread(self._scale_job, job) for job in jobs),
            return_exceptions=True,
        )
        decisions: Dict[str, Optional[bool]] = {}
        for job, result in zip(jobs, results):
            if isinstance(result, BaseException):
                logger.error(
                    f"Scaling decision for {job.context.job_key} failed: {result}",
                    exc_info=result,
                )
                job.last_error = result
                job.last_decision = None
            else:
                job.last_error = None
                job.last_decision = result
            decisions[job.context.job_key] = job.last_decision
        return decisions

    async def run(self) -> None:
        if self.prometheus_port:
            start_http_server(self.prometheus_port)
            logger.info(f"Started Prometheus metrics server on port {self.prometheus_port}")

        while True:
            decisions = await self.run_once()
            scaled = [job for job, decision in decisions.items() if decision]
            if scaled:
                logger.info(f"Triggered scaling for {', '.join(sorted(scaled))}")
            await asyncio.sleep(self.adjustment_interval)
