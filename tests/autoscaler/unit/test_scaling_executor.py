# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

from datetime import timedelta

import pytest
from prometheus_client import CollectorRegistry

from streamscale.autoscaler.config import AutoScalerConfig
from streamscale.autoscaler.context import JobAutoScalerContext
from streamscale.autoscaler.elastic_policy import STATELESS_MEMORY_LEVEL
from streamscale.autoscaler.events import (
    SCALING_SUMMARY_HEADER_SCALING_EXECUTION_DISABLED,
    SCALING_SUMMARY_HEADER_SCALING_EXECUTION_ENABLED,
    EventType,
)
from streamscale.autoscaler.exceptions import UnknownVertexError
from streamscale.autoscaler.memory_tuning import HeapUsageMemoryTuning
from streamscale.autoscaler.metrics import (
    EvaluatedMetrics,
    EvaluatedScalingMetric,
    ScalingMetric,
)
from streamscale.autoscaler.prometheus import AutoScalerPrometheusMetrics
from streamscale.autoscaler.resources import ClusterResourceCheck, NodeCapacity
from streamscale.autoscaler.scaling_executor import (
    MEMORY_PRESSURE_REASON,
    RESOURCE_QUOTA_REACHED_REASON,
    ScalingExecutor,
)
from streamscale.autoscaler.scaling_summary import ScalingSummary
from streamscale.autoscaler.scaling_tracking import DelayedScaleDown, ScalingTracking
from streamscale.autoscaler.topology import JobTopology, VertexInfo
from tests.autoscaler.fakes import (
    NOW,
    FixedVertexScaler,
    RecordingStateStore,
    make_vertex_metrics,
)

pytestmark = [
    pytest.mark.unit,
    pytest.mark.autoscaler,
]

GIB = 1024 * 1024 * 1024

TOPOLOGY = JobTopology(
    [
        VertexInfo(vertex_id="a", parallelism=2, slot_sharing_group="default"),
        VertexInfo(
            vertex_id="b",
            inputs={"a": "FORWARD"},
            parallelism=2,
            slot_sharing_group="default",
        ),
    ]
)


def job_metrics(a=None, b=None, global_metrics=None) -> EvaluatedMetrics:
    """Vertex a is outside its processing band, b inside."""
    return EvaluatedMetrics(
        vertex_metrics={
            "a": a or make_vertex_metrics(2, true_rate=100.0, scale_up=90.0, scale_down=40.0),
            "b": b or make_vertex_metrics(2, true_rate=100.0, scale_up=150.0, scale_down=50.0),
        },
        global_metrics=global_metrics or {},
    )


def make_context(**options) -> JobAutoScalerContext:
    task_manager = {
        key: options.pop(key)
        for key in ("task_manager_cpu", "task_manager_memory")
        if key in options
    }
    return JobAutoScalerContext(
        job_key="job",
        job_id="job-id",
        configuration=AutoScalerConfig(**options),
        **task_manager,
    )


class Harness:
    """Executor wired to recording fakes plus the per-job inputs of one cycle."""

    def __init__(self, targets=None, **executor_args):
        self.event_handler = executor_args.pop("event_handler")
        self.state_store = executor_args.pop("state_store")
        self.scaler = FixedVertexScaler(targets if targets is not None else {"a": 4})
        self.executor = ScalingExecutor(
            self.event_handler,
            self.state_store,
            vertex_scaler=self.scaler,
            **executor_args,
        )
        self.history = {}
        self.tracking = ScalingTracking()
        self.delayed = DelayedScaleDown()

    def scale(self, context, metrics=None, now=NOW, topology=TOPOLOGY) -> bool:
        return self.executor.scale_resource(
            context,
            metrics if metrics is not None else job_metrics(),
            self.history,
            self.tracking,
            now,
            topology,
            self.delayed,
        )


@pytest.fixture
def harness(event_handler, state_store):
    return Harness(event_handler=event_handler, state_store=state_store)


# ── No-op cycles ────────────────────────────────────────────────────────


def test_no_proposal_writes_nothing(event_handler, state_store):
    harness = Harness({}, event_handler=event_handler, state_store=state_store)

    assert not harness.scale(make_context())
    assert state_store.writes == 0
    assert event_handler.scaling_events == []


def test_vertices_within_target_band_are_not_scaled(harness, state_store, event_handler):
    metrics = job_metrics(
        a=make_vertex_metrics(2, true_rate=100.0, scale_up=150.0, scale_down=50.0)
    )

    assert not harness.scale(make_context(), metrics)
    assert state_store.writes == 0
    assert event_handler.scaling_events == []


def test_band_check_requires_thresholds():
    vertex_metrics = {
        "a": make_vertex_metrics(2, true_rate=100.0, scale_up=150.0, scale_down=50.0),
        "b": make_vertex_metrics(2, true_rate=100.0),
        "c": make_vertex_metrics(2, true_rate=float("nan"), scale_up=150.0, scale_down=50.0),
    }

    check = ScalingExecutor.all_changed_vertices_within_utilization_target
    assert check(vertex_metrics, [])
    assert check(vertex_metrics, ["a"])
    assert not check(vertex_metrics, ["a", "b"])
    assert not check(vertex_metrics, ["c"])


def test_excluded_vertex_is_not_evaluated(harness):
    context = make_context(vertex_exclude_ids=["a"])

    assert not harness.scale(context)
    assert harness.scaler.calls == ["b"]


def test_unknown_vertex_fails(harness):
    metrics = job_metrics()
    metrics.vertex_metrics["c"] = make_vertex_metrics(1)

    with pytest.raises(UnknownVertexError):
        harness.scale(make_context(), metrics)


# ── Execution gating ────────────────────────────────────────────────────


class TestBlockedScaling:
    def test_disabled_scaling_only_reports(self, harness, state_store, event_handler):
        metrics = job_metrics()

        assert not harness.scale(make_context(scaling_enabled=False), metrics)

        recommended = metrics.vertex_metrics["a"][ScalingMetric.RECOMMENDED_PARALLELISM]
        assert recommended.current == 4
        assert ScalingMetric.RECOMMENDED_PARALLELISM not in metrics.vertex_metrics["b"]
        assert state_store.writes == 0

        (summaries, message), = event_handler.scaling_events
        assert message.startswith(SCALING_SUMMARY_HEADER_SCALING_EXECUTION_DISABLED)
        assert "scaling_enabled:False" in message
        assert summaries["a"].new_parallelism == 4

    def test_excluded_period_only_reports(self, harness, state_store, event_handler):
        assert not harness.scale(make_context(excluded_periods=["Sat,Sun"]))

        assert state_store.writes == 0
        (_, message), = event_handler.scaling_events
        assert "excluded_periods" in message

    def test_enabled_scaling_reports(self, harness, event_handler):
        assert harness.scale(make_context(excluded_periods=["Mon-Fri"]))

        (_, message), = event_handler.scaling_events
        assert message == SCALING_SUMMARY_HEADER_SCALING_EXECUTION_ENABLED


class TestMemoryPressure:
    def test_gc_pressure_vetoes_scaling(self, harness, state_store, event_handler):
        metrics = job_metrics(
            global_metrics={ScalingMetric.GC_PRESSURE: EvaluatedScalingMetric.of(0.5)}
        )

        assert not harness.scale(make_context(), metrics)
        assert harness.scaler.calls == []
        assert state_store.writes == 0
        assert event_handler.reasons() == [MEMORY_PRESSURE_REASON]
        assert event_handler.events[0][3] == "gcPressure"

    def test_heap_usage_vetoes_scaling(self, harness, event_handler):
        metrics = job_metrics(
            global_metrics={
                ScalingMetric.HEAP_MAX_USAGE_RATIO: EvaluatedScalingMetric(average=1.5)
            }
        )

        assert not harness.scale(make_context(), metrics)
        assert harness.scaler.calls == []
        assert event_handler.events[0][3] == "heapUsage"

    def test_pressure_below_threshold_is_ignored(self, harness):
        metrics = job_metrics(
            global_metrics={
                ScalingMetric.GC_PRESSURE: EvaluatedScalingMetric.of(0.1),
                ScalingMetric.HEAP_MAX_USAGE_RATIO: EvaluatedScalingMetric(average=0.5),
            }
        )

        assert harness.scale(make_context(), metrics)


# ── Resource checks ─────────────────────────────────────────────────────


class TestResourceQuota:
    def test_cpu_quota_blocks_scale_up(self, harness, state_store, event_handler):
        context = make_context(cpu_quota=3.0, task_manager_cpu=1.0)

        assert not harness.scale(context)
        assert state_store.writes == 0
        assert event_handler.reasons() == [RESOURCE_QUOTA_REACHED_REASON]
        assert event_handler.events[0][0] == EventType.WARNING

    def test_cpu_quota_allows_scale_up_within_quota(self, harness):
        assert harness.scale(make_context(cpu_quota=4.0, task_manager_cpu=1.0))

    def test_memory_quota_blocks_scale_up(self, harness, event_handler):
        context = make_context(memory_quota="3g", task_manager_memory=GIB)

        assert not harness.scale(context)
        assert event_handler.reasons() == [RESOURCE_QUOTA_REACHED_REASON]

    def test_scale_down_ignores_quota(self, event_handler, state_store):
        harness = Harness({"a": 1}, event_handler=event_handler, state_store=state_store)

        assert harness.scale(make_context(cpu_quota=0.5, task_manager_cpu=1.0))

    def test_quota_is_monotone(self):
        summaries = {"a": ScalingSummary(current_parallelism=2, new_parallelism=4)}
        context = make_context(task_manager_cpu=1.0)

        def exceeds(quota):
            config = AutoScalerConfig(cpu_quota=quota)
            return ScalingExecutor.scaling_would_exceed_resource_quota(
                config, TOPOLOGY, summaries, context
            )

        results = [exceeds(quota) for quota in (1.0, 2.0, 3.0, 4.0, 5.0, 8.0)]
        assert results == [True, True, True, False, False, False]

    def test_slots_per_task_manager(self, harness):
        # 2 -> 4 slots in task managers of 4 slots: 0 -> 1 task managers
        assert harness.scale(
            make_context(cpu_quota=1.0, num_task_slots=4, task_manager_cpu=1.0)
        )


class TestClusterResources:
    def test_missing_slot_metric_blocks(self, harness, state_store):
        context = make_context(task_manager_cpu=1.0, task_manager_memory=GIB)

        assert not harness.scale(context)
        assert state_store.writes == 0

    @pytest.mark.parametrize("num_nodes,scaled", [(1, False), (2, True)])
    def test_cluster_capacity(self, event_handler, state_store, num_nodes, scaled):
        check = ClusterResourceCheck(
            [NodeCapacity(f"node-{i}", free_cpu=1.0, free_memory=GIB) for i in range(num_nodes)]
        )
        harness = Harness(
            event_handler=event_handler, state_store=state_store, resource_check=check
        )
        context = make_context(task_manager_cpu=1.0, task_manager_memory=GIB)
        metrics = job_metrics(
            global_metrics={ScalingMetric.NUM_TASK_SLOTS_USED: EvaluatedScalingMetric.of(2)}
        )

        assert harness.scale(context, metrics) is scaled


# ── Executed decisions ──────────────────────────────────────────────────


def test_scaling_decision_is_persisted(harness, state_store, context):
    harness.delayed.trigger_scale_down("b", NOW - timedelta(minutes=5), 1)

    assert harness.scale(context)

    assert state_store.get_parallelism_overrides(context) == {"a": "4", "b": "2"}
    history = state_store.get_scaling_history(context)
    assert history["a"][NOW].new_parallelism == 4
    assert "b" not in history
    assert harness.history["a"][NOW].current_parallelism == 2
    assert state_store.get_scaling_tracking(context).latest() == NOW
    assert state_store.get_config_changes(context).is_empty()
    assert state_store.get_scaling_period(context) == 1
    assert state_store.get_resource_profile_overrides(context) == {}
    assert len(harness.delayed) == 0


def test_period_advances_with_every_rescale(harness, state_store, context):
    harness.scale(context, now=NOW)
    harness.scale(context, now=NOW + timedelta(hours=1))

    assert state_store.get_scaling_period(context) == 2


def test_store_failure_propagates(event_handler, context):
    class FailingStore(RecordingStateStore):
        def store_parallelism_overrides(self, context, overrides):
            raise OSError("disk full")

    store = FailingStore()
    harness = Harness(event_handler=event_handler, state_store=store)

    with pytest.raises(OSError, match="disk full"):
        harness.scale(context)
    assert store.get_scaling_period(context) == 0


def test_vertex_parallelism_overrides():
    vertex_metrics = job_metrics().vertex_metrics
    summaries = {"b": ScalingSummary(current_parallelism=2, new_parallelism=1)}

    overrides = ScalingExecutor.get_vertex_parallelism_overrides(vertex_metrics, summaries)

    assert overrides == {"a": "2", "b": "1"}


def test_delayed_scale_down_follows_decision_time(event_handler, state_store):
    executor = ScalingExecutor(event_handler, state_store)
    context = make_context(target_utilization=0.5, catch_up_duration=timedelta(0))
    topology = JobTopology([VertexInfo(vertex_id="a", parallelism=8)])
    delayed = DelayedScaleDown()

    def scale(now):
        # capacity 50 against 100 processed
        metrics = EvaluatedMetrics(
            vertex_metrics={
                "a": make_vertex_metrics(
                    8, true_rate=100.0, target_rate=25.0, scale_up=20.0, scale_down=10.0
                )
            }
        )
        return executor.scale_resource(
            context, metrics, {}, ScalingTracking(), now, topology, delayed
        )

    assert not scale(NOW)
    assert delayed.delayed_vertices["a"].first_trigger_time == NOW
    assert not scale(NOW + timedelta(minutes=30))

    assert scale(NOW + timedelta(hours=2))
    assert state_store.get_parallelism_overrides(context) == {"a": "4"}
    assert len(delayed) == 0


def test_forget_job_drops_lock(harness, context):
    harness.scale(context)
    assert context.job_key in harness.executor._job_locks

    harness.executor.forget_job(context.job_key)
    assert context.job_key not in harness.executor._job_locks


# ── Memory tuning ───────────────────────────────────────────────────────


class TestMemoryTuning:
    def tuning_metrics(self):
        return job_metrics(
            global_metrics={
                ScalingMetric.HEAP_MAX_USAGE_RATIO: EvaluatedScalingMetric(average=0.25)
            }
        )

    def harness(self, event_handler, state_store):
        return Harness(
            event_handler=event_handler,
            state_store=state_store,
            memory_tuning=HeapUsageMemoryTuning(),
        )

    def test_tuned_memory_is_stored(self, event_handler, state_store):
        context = make_context(
            memory_tuning_enabled=True,
            memory_tuning_heap_target=0.5,
            task_manager_memory=4 * GIB,
        )

        assert self.harness(event_handler, state_store).scale(context, self.tuning_metrics())

        changes = state_store.get_config_changes(context)
        assert changes.overrides == {"total_process_memory": 2 * GIB}

    def test_disabled_tuning_stores_no_changes(self, event_handler, state_store):
        context = make_context(memory_tuning_heap_target=0.5, task_manager_memory=4 * GIB)

        assert self.harness(event_handler, state_store).scale(context, self.tuning_metrics())

        assert state_store.get_config_changes(context).is_empty()

    @pytest.mark.parametrize("tuning_enabled,scaled", [(False, False), (True, True)])
    def test_quota_checked_against_tuned_memory(
        self, event_handler, state_store, tuning_enabled, scaled
    ):
        # 4 task managers: 16g untuned, 8g tuned
        context = make_context(
            memory_tuning_enabled=tuning_enabled,
            memory_tuning_heap_target=0.5,
            memory_quota="10g",
            task_manager_memory=4 * GIB,
        )

        harness = self.harness(event_handler, state_store)
        assert harness.scale(context, self.tuning_metrics()) is scaled


# ── Elastic scaling ─────────────────────────────────────────────────────


def test_elastic_policy_over_two_periods(harness, state_store):
    context = make_context(elastic_scaling_enabled=True)

    first = job_metrics(
        a=make_vertex_metrics(
            2, true_rate=100.0, scale_up=90.0, scale_down=40.0,
            cache_hit_rate=0.5, state_latency=2.0, throughput=100.0,
        )
    )
    assert harness.scale(context, first, now=NOW)

    configuration = state_store.get_scaling_configuration(context, 0)
    assert configuration.scaling["a"].memory_level == 1
    assert configuration.scaling["a"].vertical_scaling
    assert configuration.scaling["b"].memory_level == STATELESS_MEMORY_LEVEL
    assert state_store.get_parallelism_overrides(context) == {"a": "1", "b": "2"}
    profiles = state_store.get_resource_profile_overrides(context)
    assert profiles["a"].managed_mb == 316
    assert profiles["b"].managed_mb == 0
    assert state_store.get_scaling_period(context) == 1

    harness.scaler.targets = {"a": 2}
    second = job_metrics(
        a=make_vertex_metrics(
            1, true_rate=100.0, scale_up=90.0, scale_down=40.0,
            cache_hit_rate=0.7, state_latency=2.0, throughput=150.0,
        )
    )
    assert harness.scale(context, second, now=NOW + timedelta(hours=1))

    information = state_store.get_scaling_configuration(context, 1).scaling["a"]
    assert information.parallelism == 1
    assert information.memory_level == 2
    assert state_store.get_parallelism_overrides(context)["a"] == "1"
    assert state_store.get_resource_profile_overrides(context)["a"].managed_mb == 632
    assert state_store.get_scaling_period(context) == 2

    summary = state_store.get_scaling_history(context)["a"][NOW + timedelta(hours=1)]
    assert summary.current_resource_profile.managed_mb == 316
    assert summary.new_resource_profile.managed_mb == 632


# ── Prometheus ──────────────────────────────────────────────────────────


def test_decisions_exported_to_prometheus(event_handler, state_store, context):
    registry = CollectorRegistry()
    harness = Harness(
        event_handler=event_handler,
        state_store=state_store,
        prometheus_metrics=AutoScalerPrometheusMetrics(registry=registry),
    )
    in_band = job_metrics(
        a=make_vertex_metrics(2, true_rate=100.0, scale_up=150.0, scale_down=50.0)
    )

    harness.scale(context, in_band)
    harness.scale(context)

    def sample(name, **labels):
        return registry.get_sample_value(name, {"job": "job", **labels})

    assert sample("autoscaler:scaling_decisions_total", outcome="no_change") == 1.0
    assert sample("autoscaler:scaling_decisions_total", outcome="scaled") == 1.0
    assert sample("autoscaler:recommended_parallelism", vertex="a") == 4.0
    assert sample("autoscaler:scaling_period") == 1.0
