# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Bookkeeping of past scaling decisions.

ScalingTracking estimates the restart time of the next rescale from the
restarts observed so far, the scaling history feeds the vertex scaler's trend
analysis and DelayedScaleDown holds scale-down proposals until they have been
stable long enough.
"""

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Dict, Mapping, Optional

from pydantic import BaseModel, Field

from streamscale.autoscaler.config import AutoScalerConfig
from streamscale.autoscaler.scaling_summary import ScalingSummary
from streamscale.runtime.logging import configure_streamscale_logging

if TYPE_CHECKING:
    from streamscale.autoscaler.context import JobAutoScalerContext
    from streamscale.autoscaler.state_store import AutoScalerStateStore

configure_streamscale_logging()
logger = logging.getLogger(__name__)

# vertex id -> decision time -> applied summary
ScalingHistory = Dict[str, Dict[datetime, ScalingSummary]]


class ScalingRecord(BaseModel):
    end_time: Optional[datetime] = None


class ScalingTracking(BaseModel):
    # scaling start time -> record, oldest first
    scaling_records: Dict[datetime, ScalingRecord] = Field(default_factory=dict)

    def add_scaling_record(self, start_time: datetime, record: ScalingRecord) -> None:
        self.scaling_records[start_time] = record
        self.scaling_records = dict(sorted(self.scaling_records.items()))

    def latest(self) -> Optional[datetime]:
        if not self.scaling_records:
            return None
        return next(reversed(self.scaling_records))

    def record_restart_completed(self, end_time: datetime) -> bool:
        """Mark the newest open record as finished at ``end_time``.

        Returns False when there is no open record to complete.
        """
        start = self.latest()
        if start is None:
            return False
        record = self.scaling_records[start]
        if record.end_time is not None or end_time < start:
            return False
        record.end_time = end_time
        logger.debug(f"Restart started at {start} completed after {end_time - start}")
        return True

    def record_restart_if_parallelism_matches(
        self,
        now: datetime,
        running_parallelism: Mapping[str, int],
        parallelism_overrides: Mapping[str, str],
    ) -> bool:
        """Complete the newest open record once the job runs its overrides.

        Vertices without an override are not compared.
        """
        if not parallelism_overrides:
            return False
        for vertex_id, parallelism in running_parallelism.items():
            target = parallelism_overrides.get(vertex_id)
            if target is not None and int(target) != parallelism:
                logger.debug(
                    f"Vertex {vertex_id} runs with parallelism {parallelism}, "
                    f"waiting for {target}"
                )
                return False
        return self.record_restart_completed(now)

    def get_max_restart_time_or_default(self, config: AutoScalerConfig) -> timedelta:
        if config.restart_time_tracking_enabled:
            observed = [
                record.end_time - start
                for start, record in self.scaling_records.items()
                if record.end_time is not None
            ]
            if observed:
                return min(max(observed), config.restart_time_tracking_limit)
        return config.restart_time

    def remove_old_records(
        self, now: datetime, keep_time: timedelta, keep_count: int
    ) -> None:
        """Drop records older than ``keep_time`` and all but the newest ``keep_count``."""
        cutoff = now - keep_time
        kept = [(t, r) for t, r in self.scaling_records.items() if t >= cutoff]
        self.scaling_records = dict(kept[-keep_count:] if keep_count > 0 else [])


class DelayedScaleDownInfo(BaseModel):
    first_trigger_time: datetime
    max_recommended_parallelism: int


class DelayedScaleDown(BaseModel):
    delayed_vertices: Dict[str, DelayedScaleDownInfo] = Field(default_factory=dict)

    def trigger_scale_down(
        self, vertex_id: str, now: datetime, parallelism: int
    ) -> DelayedScaleDownInfo:
        """Register a scale-down proposal, keeping the first trigger time.

        The highest parallelism recommended while the request is pending is
        remembered so that the eventual scale-down is not deeper than any
        recommendation made during the delay.
        """
        info = self.delayed_vertices.get(vertex_id)
        if info is None:
            info = DelayedScaleDownInfo(
                first_trigger_time=now, max_recommended_parallelism=parallelism
            )
            self.delayed_vertices[vertex_id] = info
        elif parallelism > info.max_recommended_parallelism:
            info.max_recommended_parallelism = parallelism
        return info

    def clear_scale_down_request(self, vertex_id: str) -> None:
        self.delayed_vertices.pop(vertex_id, None)

    def clear_all(self) -> None:
        self.delayed_vertices.clear()

    def __contains__(self, vertex_id: object) -> bool:
        return vertex_id in self.delayed_vertices

    def __len__(self) -> int:
        return len(self.delayed_vertices)


def add_to_scaling_history_and_store(
    state_store: "AutoScalerStateStore",
    context: "JobAutoScalerContext",
    scaling_history: ScalingHistory,
    now: datetime,
    summaries: Dict[str, ScalingSummary],
) -> None:
    for vertex_id, summary in summaries.items():
        scaling_history.setdefault(vertex_id, {})[now] = summary
    state_store.store_scaling_history(context, scaling_history)
