# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

from dataclasses import dataclass, field
from typing import Optional

from streamscale.autoscaler.config import AutoScalerConfig


@dataclass
class JobAutoScalerContext:
    """Identity, configuration and task manager shape of one scaled job."""

    job_key: str
    job_id: str
    configuration: AutoScalerConfig = field(default_factory=AutoScalerConfig)
    # Resources of one task manager, when known
    task_manager_cpu: Optional[float] = None
    task_manager_memory: Optional[int] = None
