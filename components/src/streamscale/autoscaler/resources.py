# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Resource profiles, memory sizes and cluster capacity checks."""

import logging
import math
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Protocol, Union

from pydantic import BaseModel, ConfigDict

from streamscale.autoscaler.metrics import EvaluatedScalingMetric, ScalingMetric
from streamscale.runtime.logging import configure_streamscale_logging

if TYPE_CHECKING:
    from streamscale.autoscaler.scaling_summary import ScalingSummary

configure_streamscale_logging()
logger = logging.getLogger(__name__)

MEBI = 1024 * 1024

_MEMORY_UNITS = {
    "": 1,
    "b": 1,
    "bytes": 1,
    "k": 1024,
    "kb": 1024,
    "kib": 1024,
    "m": MEBI,
    "mb": MEBI,
    "mib": MEBI,
    "g": 1024 * MEBI,
    "gb": 1024 * MEBI,
    "gib": 1024 * MEBI,
    "t": 1024 * 1024 * MEBI,
    "tb": 1024 * 1024 * MEBI,
    "tib": 1024 * 1024 * MEBI,
}

_MEMORY_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([a-zA-Z]*)\s*$")


def parse_memory_size(value: Union[str, int, float]) -> int:
    """Parse "4g", "512 mb", "1024" etc. into a number of bytes."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid memory size: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"Memory size must not be negative: {value}")
        return int(value)
    match = _MEMORY_PATTERN.match(value)
    if not match:
        raise ValueError(f"Invalid memory size: {value!r}")
    number, unit = match.groups()
    unit = unit.lower()
    if unit not in _MEMORY_UNITS:
        raise ValueError(f"Unknown memory unit {unit!r} in {value!r}")
    return int(float(number) * _MEMORY_UNITS[unit])


def format_memory_size(num_bytes: int) -> str:
    for suffix, factor in (("gb", 1024 * MEBI), ("mb", MEBI), ("kb", 1024)):
        if num_bytes >= factor and num_bytes % factor == 0:
            return f"{num_bytes // factor}{suffix}"
    if num_bytes >= MEBI:
        return f"{num_bytes / MEBI:.3f}mb"
    return f"{num_bytes}bytes"


class ResourceProfile(BaseModel):
    """Resources requested by one task slot."""

    model_config = ConfigDict(frozen=True)

    cpu_cores: float
    task_heap_mb: int
    task_off_heap_mb: int = 0
    managed_mb: int = 0
    network_mb: int = 0

    @property
    def total_memory_mb(self) -> int:
        return (
            self.task_heap_mb + self.task_off_heap_mb + self.managed_mb + self.network_mb
        )

    def __str__(self) -> str:
        return (
            f"ResourceProfile{{cpuCores={self.cpu_cores}, "
            f"taskHeapMemory={self.task_heap_mb}mb, "
            f"taskOffHeapMemory={self.task_off_heap_mb}mb, "
            f"managedMemory={self.managed_mb}mb, "
            f"networkMemory={self.network_mb}mb}}"
        )


class ResourceCheck(Protocol):
    def try_schedule(
        self,
        current_instances: int,
        new_instances: int,
        cpu_per_instance: float,
        memory_per_instance: int,
    ) -> bool:
        """Return whether the cluster can go from current to new task managers."""
        ...


class NoopResourceCheck:
    """Resource check that assumes unlimited cluster capacity."""

    def try_schedule(
        self,
        current_instances: int,
        new_instances: int,
        cpu_per_instance: float,
        memory_per_instance: int,
    ) -> bool:
        return True


@dataclass
class NodeCapacity:
    """Free resources of one cluster node."""

    name: str
    free_cpu: float
    free_memory: int


@dataclass
class ClusterResourceCheck:
    """First-fit check of additional task managers against node free capacity.

    Only the task managers added by a rescale need a new placement; the ones
    that already run keep their nodes. Scaling down always fits.
    """

    nodes: List[NodeCapacity] = field(default_factory=list)

    def try_schedule(
        self,
        current_instances: int,
        new_instances: int,
        cpu_per_instance: float,
        memory_per_instance: int,
    ) -> bool:
        additional = new_instances - current_instances
        if additional <= 0:
            return True

        free = {n.name: [n.free_cpu, n.free_memory] for n in self.nodes}
        for i in range(additional):
            placed = False
            for name, (cpu, memory) in free.items():
                if cpu >= cpu_per_instance and memory >= memory_per_instance:
                    free[name] = [cpu - cpu_per_instance, memory - memory_per_instance]
                    placed = True
                    break
            if not placed:
                logger.info(
                    f"Cannot place task manager {i + 1}/{additional} "
                    f"({cpu_per_instance} cpu, {format_memory_size(memory_per_instance)}) "
                    f"on any of {len(self.nodes)} nodes"
                )
                return False
        return True


def estimate_num_task_slots_after_rescale(
    vertex_metrics: Dict[str, Dict[ScalingMetric, EvaluatedScalingMetric]],
    summaries: Dict[str, "ScalingSummary"],
    num_task_slots_used: int,
) -> int:
    """Estimate the task slots the job needs once the summaries are applied.

    With slot sharing the job needs as many slots as its highest vertex
    parallelism. When more slots are in use than that, slot sharing is off and
    every parallelism delta changes the slot count one to one.
    """
    current_max = 0
    new_max = 0
    delta = 0
    for vertex, metrics in vertex_metrics.items():
        current = int(metrics[ScalingMetric.PARALLELISM].current)
        summary = summaries.get(vertex)
        new = summary.new_parallelism if summary is not None else current
        current_max = max(current_max, current)
        new_max = max(new_max, new)
        delta += new - current

    if num_task_slots_used > current_max:
        return num_task_slots_used + delta
    return new_max


def ceil_div(value: int, divisor: int) -> int:
    return int(math.ceil(value / float(divisor)))

