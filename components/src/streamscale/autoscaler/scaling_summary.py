# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

from typing import Dict, Optional

from pydantic import BaseModel, Field, model_validator

from streamscale.autoscaler.metrics import EvaluatedScalingMetric, ScalingMetric
from streamscale.autoscaler.resources import ResourceProfile


class ScalingSummary(BaseModel):
    """Proposed parallelism change of one vertex.

    A summary always describes a change: building one with equal current and
    new parallelism is rejected, so "no change" never enters the pipeline.
    """

    current_parallelism: int
    new_parallelism: int
    current_resource_profile: Optional[ResourceProfile] = None
    new_resource_profile: Optional[ResourceProfile] = None
    metrics: Dict[ScalingMetric, EvaluatedScalingMetric] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_change(self) -> "ScalingSummary":
        if self.current_parallelism == self.new_parallelism:
            raise ValueError(
                f"Current parallelism ({self.current_parallelism}) must differ from "
                "new parallelism in a scaling summary"
            )
        if self.new_parallelism < 1:
            raise ValueError(f"New parallelism must be positive, got {self.new_parallelism}")
        return self

    @property
    def is_scaled_up(self) -> bool:
        return self.new_parallelism > self.current_parallelism
