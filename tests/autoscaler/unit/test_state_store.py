# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

from datetime import timedelta

import pytest

from streamscale.autoscaler.context import JobAutoScalerContext
from streamscale.autoscaler.elastic_policy import ScalingConfiguration, ScalingInformation
from streamscale.autoscaler.memory_tuning import ConfigChanges
from streamscale.autoscaler.metrics import EvaluatedScalingMetric, ScalingMetric
from streamscale.autoscaler.resources import ResourceProfile
from streamscale.autoscaler.scaling_summary import ScalingSummary
from streamscale.autoscaler.scaling_tracking import (
    DelayedScaleDown,
    ScalingRecord,
    ScalingTracking,
)
from streamscale.autoscaler.state_store import (
    MAX_SCALING_CONFIGURATIONS,
    FileStateStore,
    InMemoryStateStore,
)
from tests.autoscaler.fakes import NOW

pytestmark = [
    pytest.mark.unit,
    pytest.mark.autoscaler,
]


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryStateStore()
    return FileStateStore(tmp_path / "state")


def test_empty_job_state(store, context):
    assert store.get_scaling_history(context) == {}
    assert store.get_parallelism_overrides(context) == {}
    assert store.get_scaling_period(context) == 0
    assert store.get_scaling_configuration(context, 0) is None
    assert len(store.get_delayed_scale_down(context)) == 0
    assert store.get_config_changes(context).is_empty()


def test_stored_values_are_copies(store, context):
    overrides = {"a": "4"}
    store.store_parallelism_overrides(context, overrides)
    overrides["a"] = "8"

    loaded = store.get_parallelism_overrides(context)
    loaded["b"] = "1"

    assert store.get_parallelism_overrides(context) == {"a": "4"}


def test_jobs_are_isolated(store, context):
    other = JobAutoScalerContext(job_key="other", job_id="other-id")
    store.store_scaling_period(context, 3)

    assert store.get_scaling_period(context) == 3
    assert store.get_scaling_period(other) == 0


def test_scaling_configurations_by_period(store, context):
    for period in range(MAX_SCALING_CONFIGURATIONS + 2):
        store.store_scaling_configuration(
            context,
            ScalingConfiguration(
                period=period, scaling={"a": ScalingInformation(parallelism=period + 1)}
            ),
        )

    latest = MAX_SCALING_CONFIGURATIONS + 1
    assert store.get_scaling_configuration(context, latest).scaling["a"].parallelism == latest + 1
    assert store.get_scaling_configuration(context, 0) is None


def test_remove_job(store, context):
    store.store_parallelism_overrides(context, {"a": "2"})
    store.remove_job(context)

    assert store.get_parallelism_overrides(context) == {}


def test_file_store_survives_restart(tmp_path, context):
    store = FileStateStore(tmp_path)
    summary = ScalingSummary(
        current_parallelism=2,
        new_parallelism=4,
        metrics={ScalingMetric.TRUE_PROCESSING_RATE: EvaluatedScalingMetric(average=10.0)},
    )
    tracking = ScalingTracking()
    tracking.add_scaling_record(NOW, ScalingRecord(end_time=NOW + timedelta(minutes=1)))
    delayed = DelayedScaleDown()
    delayed.trigger_scale_down("b", NOW, 1)
    profile = ResourceProfile(cpu_cores=1.0, task_heap_mb=134, managed_mb=316, network_mb=39)

    store.store_scaling_history(context, {"a": {NOW: summary}})
    store.store_scaling_tracking(context, tracking)
    store.store_parallelism_overrides(context, {"a": "4", "b": "2"})
    store.store_config_changes(context, ConfigChanges(overrides={"total_process_memory": 1024}))
    store.store_resource_profile_overrides(context, {"a": profile})
    store.store_delayed_scale_down(context, delayed)
    store.store_scaling_period(context, 5)
    store.store_scaling_configuration(
        context,
        ScalingConfiguration(
            period=4,
            scaling={"a": ScalingInformation(parallelism=1, memory_level=1, vertical_scaling=True)},
        ),
    )

    reloaded = FileStateStore(tmp_path)
    history = reloaded.get_scaling_history(context)
    assert history["a"][NOW].new_parallelism == 4
    assert history["a"][NOW].metrics[ScalingMetric.TRUE_PROCESSING_RATE].average == 10.0
    assert reloaded.get_scaling_tracking(context).latest() == NOW
    assert reloaded.get_parallelism_overrides(context) == {"a": "4", "b": "2"}
    assert reloaded.get_config_changes(context).overrides == {"total_process_memory": 1024}
    assert reloaded.get_resource_profile_overrides(context) == {"a": profile}
    assert reloaded.get_delayed_scale_down(context).delayed_vertices["b"].first_trigger_time == NOW
    assert reloaded.get_scaling_period(context) == 5
    information = reloaded.get_scaling_configuration(context, 4).scaling["a"]
    assert information.memory_level == 1
    assert information.vertical_scaling


def test_file_store_writes_one_document_per_job(tmp_path):
    store = FileStateStore(tmp_path)
    store.store_scaling_period(JobAutoScalerContext(job_key="ns/job-a", job_id="a"), 1)
    store.store_scaling_period(JobAutoScalerContext(job_key="ns/job-b", job_id="b"), 2)

    files = sorted(p.relative_to(tmp_path).as_posix() for p in tmp_path.rglob("*.json"))
    assert files == ["ns_job-a/state.json", "ns_job-b/state.json"]
