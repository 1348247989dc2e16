# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Turns evaluated metrics into an executed (persisted) scaling decision."""

import logging
import math
import threading
from datetime import datetime, timedelta
from typing import Dict, Iterable, Optional

from streamscale.autoscaler.calendar_utils import in_excluded_periods
from streamscale.autoscaler.config import AutoScalerConfig
from streamscale.autoscaler.context import JobAutoScalerContext
from streamscale.autoscaler.elastic_policy import (
    ElasticScalingPolicy,
    ScalingConfiguration,
    build_scaling_configuration,
)
from streamscale.autoscaler.events import (
    SCALING_EXECUTION_DISABLED_REASON,
    SCALING_SUMMARY_HEADER_SCALING_EXECUTION_DISABLED,
    SCALING_SUMMARY_HEADER_SCALING_EXECUTION_ENABLED,
    AutoScalerEventHandler,
    EventType,
)
from streamscale.autoscaler.memory_tuning import (
    ConfigChanges,
    MemoryTuning,
    NoopMemoryTuning,
    get_total_memory,
)
from streamscale.autoscaler.metrics import (
    EvaluatedMetrics,
    EvaluatedScalingMetric,
    ScalingMetric,
    VertexMetrics,
    metric_average,
    metric_current,
)
from streamscale.autoscaler.prometheus import (
    DECISION_BLOCKED,
    DECISION_NO_CHANGE,
    DECISION_RESOURCES_EXCEEDED,
    DECISION_SCALED,
    AutoScalerPrometheusMetrics,
)
from streamscale.autoscaler.resources import (
    NoopResourceCheck,
    ResourceCheck,
    ceil_div,
    estimate_num_task_slots_after_rescale,
    format_memory_size,
)
from streamscale.autoscaler.scaling_summary import ScalingSummary
from streamscale.autoscaler.scaling_tracking import (
    DelayedScaleDown,
    ScalingHistory,
    ScalingRecord,
    ScalingTracking,
    add_to_scaling_history_and_store,
)
from streamscale.autoscaler.state_store import AutoScalerStateStore
from streamscale.autoscaler.topology import JobTopology
from streamscale.autoscaler.vertex_scaler import JobVertexScaler, VertexScaler
from streamscale.runtime.logging import configure_streamscale_logging

configure_streamscale_logging()
logger = logging.getLogger(__name__)

MEMORY_PRESSURE_REASON = "MemoryPressure"
RESOURCE_QUOTA_REACHED_REASON = "ResourceQuotaReached"

GC_PRESSURE_MESSAGE = (
    "GC Pressure %s is above the allowed limit for scaling operations. "
    "Please adjust the available memory manually."
)
HEAP_USAGE_MESSAGE = (
    "Heap Usage %s is above the allowed limit for scaling operations. "
    "Please adjust the available memory manually."
)
RESOURCE_QUOTA_REACHED_MESSAGE = (
    "Resource usage is above the allowed limit for scaling operations. "
    "Please adjust the resource quota manually."
)


class ScalingExecutor:
    """Decides and persists the rescale of one job per invocation.

    A decision is only written out after every gate passed: admin switches,
    memory pressure, cluster capacity and resource quota. Calls for the same
    job are serialised; different jobs proceed independently.
    """

    def __init__(
        self,
        event_handler: AutoScalerEventHandler,
        state_store: AutoScalerStateStore,
        resource_check: Optional[ResourceCheck] = None,
        vertex_scaler: Optional[VertexScaler] = None,
        memory_tuning: Optional[MemoryTuning] = None,
        prometheus_metrics: Optional[AutoScalerPrometheusMetrics] = None,
    ):
        self.event_handler = event_handler
        self.state_store = state_store
        self.resource_check = (
            resource_check if resource_check is not None else NoopResourceCheck()
        )
        self.vertex_scaler = (
            vertex_scaler if vertex_scaler is not None else JobVertexScaler(event_handler)
        )
        self.memory_tuning = (
            memory_tuning if memory_tuning is not None else NoopMemoryTuning()
        )
        self.prometheus_metrics = prometheus_metrics

        self._locks_guard = threading.Lock()
        self._job_locks: Dict[str, threading.Lock] = {}

    def _job_lock(self, job_key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._job_locks.get(job_key)
            if lock is None:
                lock = threading.Lock()
                self._job_locks[job_key] = lock
            return lock

    def forget_job(self, job_key: str) -> None:
        """Drop the per-job lock of a job that is no longer scaled."""
        with self._locks_guard:
            self._job_locks.pop(job_key, None)

    def _record(self, context: JobAutoScalerContext, outcome: str) -> None:
        if self.prometheus_metrics is not None:
            self.prometheus_metrics.record_decision(context.job_key, outcome)

    def scale_resource(
        self,
        context: JobAutoScalerContext,
        evaluated_metrics: EvaluatedMetrics,
        scaling_history: ScalingHistory,
        scaling_tracking: ScalingTracking,
        now: datetime,
        topology: JobTopology,
        delayed_scale_down: DelayedScaleDown,
    ) -> bool:
        """Run one scaling decision, returning whether a rescale was triggered.

        Store failures propagate to the caller; nothing is written before all
        gating checks have passed.
        """
        with self._job_lock(context.job_key):
            return self._scale_resource(
                context,
                evaluated_metrics,
                scaling_history,
                scaling_tracking,
                now,
                topology,
                delayed_scale_down,
            )

    def _scale_resource(
        self,
        context: JobAutoScalerContext,
        evaluated_metrics: EvaluatedMetrics,
        scaling_history: ScalingHistory,
        scaling_tracking: ScalingTracking,
        now: datetime,
        topology: JobTopology,
        delayed_scale_down: DelayedScaleDown,
    ) -> bool:
        conf = context.configuration
        restart_time = scaling_tracking.get_max_restart_time_or_default(conf)

        summaries = self.compute_scaling_summary(
            context,
            evaluated_metrics,
            scaling_history,
            restart_time,
            topology,
            delayed_scale_down,
            now,
        )
        if not summaries:
            logger.info(
                f"[{context.job_key}] All job vertices are currently running at their target parallelism."
            )
            self._record(context, DECISION_NO_CHANGE)
            return False

        self._update_recommended_parallelism(context, evaluated_metrics, summaries)

        if self._check_if_blocked_and_trigger_scaling_event(
            context, summaries, conf, now
        ):
            self._record(context, DECISION_BLOCKED)
            return False

        config_changes = self.memory_tuning.tune_task_manager_memory(
            context, evaluated_metrics, topology, summaries, self.event_handler
        )
        if conf.memory_tuning_enabled:
            tuned_conf = config_changes.new_config_with_overrides(conf)
        else:
            tuned_conf = conf
            config_changes = ConfigChanges()

        if self.scaling_would_exceed_max_resources(
            tuned_conf, topology, evaluated_metrics, summaries, context
        ):
            self._record(context, DECISION_RESOURCES_EXCEEDED)
            return False

        elastic_configuration = None
        if conf.elastic_scaling_enabled:
            elastic_configuration = self._decide_elastic_scaling(
                context, tuned_conf, evaluated_metrics, summaries
            )

        add_to_scaling_history_and_store(
            self.state_store, context, scaling_history, now, summaries
        )
        scaling_tracking.add_scaling_record(now, ScalingRecord())
        self.state_store.store_scaling_tracking(context, scaling_tracking)
        self.state_store.store_parallelism_overrides(
            context,
            self.get_vertex_parallelism_overrides(
                evaluated_metrics.vertex_metrics, summaries
            ),
        )
        self.state_store.store_config_changes(context, config_changes)

        if elastic_configuration is not None:
            self._store_elastic_scaling(context, tuned_conf, elastic_configuration)

        self.scaling_triggered(context)
        delayed_scale_down.clear_all()

        logger.info(
            f"[{context.job_key}] Scaling {len(summaries)} vertices: "
            + ", ".join(
                f"{v} {s.current_parallelism}->{s.new_parallelism}"
                for v, s in sorted(summaries.items())
            )
        )
        self._record(context, DECISION_SCALED)
        return True

    def _update_recommended_parallelism(
        self,
        context: JobAutoScalerContext,
        evaluated_metrics: EvaluatedMetrics,
        summaries: Dict[str, ScalingSummary],
    ) -> None:
        for vertex_id, summary in summaries.items():
            evaluated_metrics.vertex_metrics[vertex_id][
                ScalingMetric.RECOMMENDED_PARALLELISM
            ] = EvaluatedScalingMetric.of(summary.new_parallelism)
            if self.prometheus_metrics is not None:
                self.prometheus_metrics.recommended_parallelism.labels(
                    job=context.job_key, vertex=vertex_id
                ).set(summary.new_parallelism)

    def _check_if_blocked_and_trigger_scaling_event(
        self,
        context: JobAutoScalerContext,
        summaries: Dict[str, ScalingSummary],
        conf: AutoScalerConfig,
        now: datetime,
    ) -> bool:
        excluded = in_excluded_periods(conf, now)
        if not conf.scaling_enabled:
            message = SCALING_SUMMARY_HEADER_SCALING_EXECUTION_DISABLED + (
                SCALING_EXECUTION_DISABLED_REASON % ("scaling_enabled", False)
            )
        elif excluded:
            message = SCALING_SUMMARY_HEADER_SCALING_EXECUTION_DISABLED + (
                SCALING_EXECUTION_DISABLED_REASON
                % ("excluded_periods", conf.excluded_periods)
            )
        else:
            message = SCALING_SUMMARY_HEADER_SCALING_EXECUTION_ENABLED

        self.event_handler.handle_scaling_event(
            context, summaries, message, conf.scaling_event_interval
        )
        return not conf.scaling_enabled or excluded

    def _decide_elastic_scaling(
        self,
        context: JobAutoScalerContext,
        conf: AutoScalerConfig,
        evaluated_metrics: EvaluatedMetrics,
        summaries: Dict[str, ScalingSummary],
    ) -> ScalingConfiguration:
        """Run the elastic policy for this period and annotate the summaries.

        Reads only; the decided configuration is written by
        ``_store_elastic_scaling`` once the plain decision is persisted.
        """
        period = self.state_store.get_scaling_period(context)
        current = build_scaling_configuration(
            evaluated_metrics.vertex_metrics, summaries, period
        )
        previous = (
            self.state_store.get_scaling_configuration(context, period - 1)
            if period > 0
            else None
        )
        decided = ElasticScalingPolicy(conf).apply(current, previous)
        logger.info(f"[{context.job_key}] Elastic scaling configuration: {decided}")

        current_profiles = self.state_store.get_resource_profile_overrides(context)
        new_profiles = decided.resource_profile_overrides(conf)
        for vertex_id, summary in summaries.items():
            summary.current_resource_profile = current_profiles.get(vertex_id)
            summary.new_resource_profile = new_profiles.get(vertex_id)
        return decided

    def _store_elastic_scaling(
        self,
        context: JobAutoScalerContext,
        conf: AutoScalerConfig,
        decided: ScalingConfiguration,
    ) -> None:
        self.state_store.store_scaling_configuration(context, decided)
        self.state_store.store_parallelism_overrides(
            context, decided.parallelism_overrides()
        )
        self.state_store.store_resource_profile_overrides(
            context, decided.resource_profile_overrides(conf)
        )

        if self.prometheus_metrics is not None:
            for vertex_id, information in decided.scaling.items():
                self.prometheus_metrics.memory_level.labels(
                    job=context.job_key, vertex=vertex_id
                ).set(information.memory_level)

    def scaling_triggered(self, context: JobAutoScalerContext) -> int:
        """Advance the job's scaling period after an executed rescale."""
        period = self.state_store.get_scaling_period(context) + 1
        self.state_store.store_scaling_period(context, period)
        if self.prometheus_metrics is not None:
            self.prometheus_metrics.scaling_period.labels(job=context.job_key).set(period)
        return period

    def compute_scaling_summary(
        self,
        context: JobAutoScalerContext,
        evaluated_metrics: EvaluatedMetrics,
        scaling_history: ScalingHistory,
        restart_time: timedelta,
        topology: JobTopology,
        delayed_scale_down: DelayedScaleDown,
        now: datetime,
    ) -> Dict[str, ScalingSummary]:
        if self.is_job_under_memory_pressure(context, evaluated_metrics.global_metrics):
            logger.info(f"[{context.job_key}] Skipping vertex scaling due to memory pressure")
            return {}

        excluded_vertices = set(context.configuration.vertex_exclude_ids)
        summaries: Dict[str, ScalingSummary] = {}
        for vertex_id, metrics in evaluated_metrics.vertex_metrics.items():
            if vertex_id in excluded_vertices:
                logger.debug(f"Vertex {vertex_id} is excluded from scaling, ignoring it")
                continue

            change = self.vertex_scaler.compute_scale_target_parallelism(
                context,
                vertex_id,
                topology.get(vertex_id).inputs,
                metrics,
                scaling_history.get(vertex_id, {}),
                restart_time,
                delayed_scale_down,
                now,
            )
            if change.is_no_change:
                continue
            current_parallelism = int(metric_current(metrics, ScalingMetric.PARALLELISM))
            if change.new_parallelism == current_parallelism:
                continue
            summaries[vertex_id] = ScalingSummary(
                current_parallelism=current_parallelism,
                new_parallelism=change.new_parallelism,
                metrics=dict(metrics),
            )

        if self.all_changed_vertices_within_utilization_target(
            evaluated_metrics.vertex_metrics, summaries.keys()
        ):
            return {}
        return summaries

    @staticmethod
    def all_changed_vertices_within_utilization_target(
        vertex_metrics: Dict[str, VertexMetrics], changed_vertices: Iterable[str]
    ) -> bool:
        """Whether every changed vertex already processes within its target band.

        A vertex is outside its band when its true processing rate is below
        the lower or above the upper rate threshold.
        """
        changed_vertices = list(changed_vertices)
        if not changed_vertices:
            return True

        for vertex_id in changed_vertices:
            metrics = vertex_metrics[vertex_id]
            true_rate = metric_average(metrics, ScalingMetric.TRUE_PROCESSING_RATE)
            up = metric_current(metrics, ScalingMetric.SCALE_UP_RATE_THRESHOLD)
            down = metric_current(metrics, ScalingMetric.SCALE_DOWN_RATE_THRESHOLD)
            if true_rate is None or up is None or down is None:
                return False
            if math.isnan(true_rate) or math.isnan(up) or math.isnan(down):
                return False
            lower, upper = min(up, down), max(up, down)
            if true_rate < lower or true_rate > upper:
                logger.debug(
                    f"Vertex {vertex_id} processing rate {true_rate:.2f} outside target "
                    f"[{lower:.2f}, {upper:.2f}]"
                )
                return False

        logger.info("All vertex processing rates are within target.")
        return True

    def is_job_under_memory_pressure(
        self, context: JobAutoScalerContext, global_metrics: VertexMetrics
    ) -> bool:
        conf = context.configuration
        gc_pressure = metric_current(global_metrics, ScalingMetric.GC_PRESSURE)
        if gc_pressure is not None and gc_pressure > conf.gc_pressure_threshold:
            self.event_handler.handle_event(
                context,
                EventType.NORMAL,
                MEMORY_PRESSURE_REASON,
                GC_PRESSURE_MESSAGE % gc_pressure,
                "gcPressure",
                conf.scaling_event_interval,
            )
            return True

        heap_usage = metric_average(global_metrics, ScalingMetric.HEAP_MAX_USAGE_RATIO)
        if heap_usage is not None and heap_usage > conf.heap_usage_threshold:
            self.event_handler.handle_event(
                context,
                EventType.NORMAL,
                MEMORY_PRESSURE_REASON,
                HEAP_USAGE_MESSAGE % heap_usage,
                "heapUsage",
                conf.scaling_event_interval,
            )
            return True

        return False

    def scaling_would_exceed_max_resources(
        self,
        tuned_conf: AutoScalerConfig,
        topology: JobTopology,
        evaluated_metrics: EvaluatedMetrics,
        summaries: Dict[str, ScalingSummary],
        context: JobAutoScalerContext,
    ) -> bool:
        if self.scaling_would_exceed_cluster_resources(
            tuned_conf, evaluated_metrics, summaries, context
        ):
            return True
        if self.scaling_would_exceed_resource_quota(
            tuned_conf, topology, summaries, context
        ):
            self.event_handler.handle_event(
                context,
                EventType.WARNING,
                RESOURCE_QUOTA_REACHED_REASON,
                RESOURCE_QUOTA_REACHED_MESSAGE,
                None,
                tuned_conf.scaling_event_interval,
            )
            return True
        return False

    def scaling_would_exceed_cluster_resources(
        self,
        tuned_conf: AutoScalerConfig,
        evaluated_metrics: EvaluatedMetrics,
        summaries: Dict[str, ScalingSummary],
        context: JobAutoScalerContext,
    ) -> bool:
        task_manager_cpu = context.task_manager_cpu or 0.0
        task_manager_memory = get_total_memory(tuned_conf, context)
        if task_manager_cpu <= 0 or task_manager_memory <= 0:
            # Task manager shape unknown, nothing to check against
            return False

        num_task_slots_used = metric_current(
            evaluated_metrics.global_metrics, ScalingMetric.NUM_TASK_SLOTS_USED
        )
        if num_task_slots_used is None:
            logger.info(f"[{context.job_key}] Task slot metrics not ready yet")
            return True
        num_task_slots_used = int(num_task_slots_used)
        slots_after_rescale = estimate_num_task_slots_after_rescale(
            evaluated_metrics.vertex_metrics, summaries, num_task_slots_used
        )

        slots_per_tm = tuned_conf.num_task_slots
        current_num_tms = ceil_div(num_task_slots_used, slots_per_tm)
        new_num_tms = ceil_div(slots_after_rescale, slots_per_tm)
        return not self.resource_check.try_schedule(
            current_num_tms, new_num_tms, task_manager_cpu, task_manager_memory
        )

    @staticmethod
    def scaling_would_exceed_resource_quota(
        tuned_conf: AutoScalerConfig,
        topology: JobTopology,
        summaries: Dict[str, ScalingSummary],
        context: JobAutoScalerContext,
    ) -> bool:
        slot_sharing_groups = topology.slot_sharing_group_mapping
        if not slot_sharing_groups:
            return False
        if tuned_conf.cpu_quota is None and tuned_conf.memory_quota is None:
            return False

        current_total_slots = 0
        new_total_slots = 0
        for members in slot_sharing_groups.values():
            changed = [summaries[v] for v in members if v in summaries]
            current_total_slots += max(
                (s.current_parallelism for s in changed), default=0
            )
            new_total_slots += max((s.new_parallelism for s in changed), default=0)

        slots_per_tm = tuned_conf.num_task_slots
        current_num_tms = current_total_slots // slots_per_tm
        new_num_tms = new_total_slots // slots_per_tm
        if new_num_tms <= current_num_tms:
            logger.debug(
                "Skipping quota check, new resource allocation does not exceed the current one"
            )
            return False

        if tuned_conf.cpu_quota is not None:
            total_cpu = (context.task_manager_cpu or 0.0) * new_num_tms
            if total_cpu > tuned_conf.cpu_quota:
                logger.info(f"[{context.job_key}] CPU resource quota reached with value: {total_cpu}")
                return True

        if tuned_conf.memory_quota is not None:
            total_memory = get_total_memory(tuned_conf, context) * new_num_tms
            if total_memory > tuned_conf.memory_quota:
                logger.info(
                    f"[{context.job_key}] Memory resource quota reached with value: "
                    f"{format_memory_size(total_memory)}"
                )
                return True

        return False

    @staticmethod
    def get_vertex_parallelism_overrides(
        vertex_metrics: Dict[str, VertexMetrics], summaries: Dict[str, ScalingSummary]
    ) -> Dict[str, str]:
        overrides = {}
        for vertex_id, metrics in vertex_metrics.items():
            if vertex_id in summaries:
                overrides[vertex_id] = str(summaries[vertex_id].new_parallelism)
            else:
                overrides[vertex_id] = str(
                    int(metric_current(metrics, ScalingMetric.PARALLELISM))
                )
        return overrides
