# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

from datetime import timedelta

import pytest

from streamscale.autoscaler.config import AutoScalerConfig
from streamscale.autoscaler.scaling_summary import ScalingSummary
from streamscale.autoscaler.scaling_tracking import (
    DelayedScaleDown,
    ScalingRecord,
    ScalingTracking,
    add_to_scaling_history_and_store,
)
from tests.autoscaler.fakes import NOW

pytestmark = [
    pytest.mark.unit,
    pytest.mark.autoscaler,
]


# ── ScalingTracking ─────────────────────────────────────────────────────


class TestScalingTracking:
    def test_records_kept_in_time_order(self):
        tracking = ScalingTracking()
        tracking.add_scaling_record(NOW, ScalingRecord())
        tracking.add_scaling_record(NOW - timedelta(hours=1), ScalingRecord())

        assert list(tracking.scaling_records) == [NOW - timedelta(hours=1), NOW]
        assert tracking.latest() == NOW

    def test_record_restart_completed(self):
        tracking = ScalingTracking()
        assert not tracking.record_restart_completed(NOW)

        tracking.add_scaling_record(NOW, ScalingRecord())
        assert tracking.record_restart_completed(NOW + timedelta(minutes=2))
        # already completed
        assert not tracking.record_restart_completed(NOW + timedelta(minutes=3))

    def test_restart_completes_when_parallelism_matches_overrides(self):
        tracking = ScalingTracking()
        tracking.add_scaling_record(NOW, ScalingRecord())
        overrides = {"a": "4", "b": "2"}
        later = NOW + timedelta(minutes=2)

        assert not tracking.record_restart_if_parallelism_matches(
            later, {"a": 2, "b": 2}, overrides
        )
        assert not tracking.record_restart_if_parallelism_matches(later, {"a": 4}, {})
        # vertices without an override are not compared
        assert tracking.record_restart_if_parallelism_matches(
            later, {"a": 4, "b": 2, "c": 7}, overrides
        )
        assert tracking.scaling_records[NOW].end_time == later

    def test_default_restart_time_without_tracking(self):
        config = AutoScalerConfig(restart_time=timedelta(minutes=7))
        tracking = ScalingTracking()
        tracking.add_scaling_record(NOW, ScalingRecord(end_time=NOW + timedelta(minutes=1)))

        assert tracking.get_max_restart_time_or_default(config) == timedelta(minutes=7)

    def test_default_restart_time_without_completed_records(self):
        config = AutoScalerConfig(restart_time_tracking_enabled=True)
        tracking = ScalingTracking()
        tracking.add_scaling_record(NOW, ScalingRecord())

        assert tracking.get_max_restart_time_or_default(config) == config.restart_time

    def test_max_observed_restart_time(self):
        config = AutoScalerConfig(restart_time_tracking_enabled=True)
        tracking = ScalingTracking()
        start = NOW - timedelta(hours=2)
        tracking.add_scaling_record(start, ScalingRecord(end_time=start + timedelta(minutes=3)))
        tracking.add_scaling_record(NOW, ScalingRecord(end_time=NOW + timedelta(minutes=8)))

        assert tracking.get_max_restart_time_or_default(config) == timedelta(minutes=8)

    def test_observed_restart_time_capped(self):
        config = AutoScalerConfig(
            restart_time_tracking_enabled=True,
            restart_time_tracking_limit=timedelta(minutes=10),
        )
        tracking = ScalingTracking()
        tracking.add_scaling_record(NOW, ScalingRecord(end_time=NOW + timedelta(hours=1)))

        assert tracking.get_max_restart_time_or_default(config) == timedelta(minutes=10)

    def test_remove_old_records(self):
        tracking = ScalingTracking()
        for hours in (48, 3, 2, 1):
            tracking.add_scaling_record(NOW - timedelta(hours=hours), ScalingRecord())

        tracking.remove_old_records(NOW, keep_time=timedelta(days=1), keep_count=2)

        assert list(tracking.scaling_records) == [
            NOW - timedelta(hours=2),
            NOW - timedelta(hours=1),
        ]


# ── DelayedScaleDown ────────────────────────────────────────────────────


class TestDelayedScaleDown:
    def test_first_trigger_time_kept(self):
        delayed = DelayedScaleDown()
        delayed.trigger_scale_down("a", NOW, 4)
        info = delayed.trigger_scale_down("a", NOW + timedelta(minutes=5), 3)

        assert info.first_trigger_time == NOW
        assert info.max_recommended_parallelism == 4

    def test_max_recommended_parallelism_raised(self):
        delayed = DelayedScaleDown()
        delayed.trigger_scale_down("a", NOW, 4)
        info = delayed.trigger_scale_down("a", NOW, 6)

        assert info.max_recommended_parallelism == 6

    def test_clear(self):
        delayed = DelayedScaleDown()
        delayed.trigger_scale_down("a", NOW, 4)
        delayed.trigger_scale_down("b", NOW, 2)

        delayed.clear_scale_down_request("a")
        assert "a" not in delayed
        assert "b" in delayed

        delayed.clear_all()
        assert len(delayed) == 0


def test_history_appended_and_stored(context, state_store):
    history = {}
    summaries = {"a": ScalingSummary(current_parallelism=2, new_parallelism=4)}

    add_to_scaling_history_and_store(state_store, context, history, NOW, summaries)

    assert history["a"][NOW].new_parallelism == 4
    assert state_store.get_scaling_history(context)["a"][NOW].new_parallelism == 4
