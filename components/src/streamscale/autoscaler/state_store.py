# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Per-job autoscaler state.

Everything the autoscaler remembers about a job between decision cycles lives
in one ``PersistedJobState`` document: scaling history and tracking, the
overrides read by the deployment side, pending scale-downs and the elastic
policy's period counter with its ScalingConfiguration generations. Nothing is
shared between jobs.
"""

import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Callable, Dict, Optional, Protocol, TypeVar

from pydantic import BaseModel, Field

from streamscale.autoscaler.context import JobAutoScalerContext
from streamscale.autoscaler.elastic_policy import ScalingConfiguration
from streamscale.autoscaler.memory_tuning import ConfigChanges
from streamscale.autoscaler.resources import ResourceProfile
from streamscale.autoscaler.scaling_tracking import (
    DelayedScaleDown,
    ScalingHistory,
    ScalingTracking,
)
from streamscale.runtime.logging import configure_streamscale_logging

configure_streamscale_logging()
logger = logging.getLogger(__name__)

T = TypeVar("T")

# Generations older than this many periods are never read again
MAX_SCALING_CONFIGURATIONS = 8


class AutoScalerStateStore(Protocol):
    def get_scaling_history(self, context: JobAutoScalerContext) -> ScalingHistory:
        ...

    def store_scaling_history(
        self, context: JobAutoScalerContext, history: ScalingHistory
    ) -> None:
        ...

    def get_scaling_tracking(self, context: JobAutoScalerContext) -> ScalingTracking:
        ...

    def store_scaling_tracking(
        self, context: JobAutoScalerContext, tracking: ScalingTracking
    ) -> None:
        ...

    def get_parallelism_overrides(self, context: JobAutoScalerContext) -> Dict[str, str]:
        ...

    def store_parallelism_overrides(
        self, context: JobAutoScalerContext, overrides: Dict[str, str]
    ) -> None:
        ...

    def get_config_changes(self, context: JobAutoScalerContext) -> ConfigChanges:
        ...

    def store_config_changes(
        self, context: JobAutoScalerContext, changes: ConfigChanges
    ) -> None:
        ...

    def get_resource_profile_overrides(
        self, context: JobAutoScalerContext
    ) -> Dict[str, ResourceProfile]:
        ...

    def store_resource_profile_overrides(
        self, context: JobAutoScalerContext, overrides: Dict[str, ResourceProfile]
    ) -> None:
        ...

    def get_delayed_scale_down(self, context: JobAutoScalerContext) -> DelayedScaleDown:
        ...

    def store_delayed_scale_down(
        self, context: JobAutoScalerContext, delayed_scale_down: DelayedScaleDown
    ) -> None:
        ...

    def get_scaling_period(self, context: JobAutoScalerContext) -> int:
        ...

    def store_scaling_period(self, context: JobAutoScalerContext, period: int) -> None:
        ...

    def get_scaling_configuration(
        self, context: JobAutoScalerContext, period: int
    ) -> Optional[ScalingConfiguration]:
        ...

    def store_scaling_configuration(
        self, context: JobAutoScalerContext, configuration: ScalingConfiguration
    ) -> None:
        ...

    def remove_job(self, context: JobAutoScalerContext) -> None:
        ...


class PersistedJobState(BaseModel):
    scaling_history: ScalingHistory = Field(default_factory=dict)
    scaling_tracking: ScalingTracking = Field(default_factory=ScalingTracking)
    parallelism_overrides: Dict[str, str] = Field(default_factory=dict)
    config_changes: ConfigChanges = Field(default_factory=ConfigChanges)
    resource_profile_overrides: Dict[str, ResourceProfile] = Field(
        default_factory=dict
    )
    delayed_scale_down: DelayedScaleDown = Field(default_factory=DelayedScaleDown)
    scaling_period: int = 0
    scaling_configurations: Dict[int, ScalingConfiguration] = Field(
        default_factory=dict
    )


class _JobStateStore:
    """Store operations over a load/save pair of whole job documents.

    Values handed in and out are deep copies, so callers can keep mutating
    their objects without changing what was persisted.
    """

    def __init__(self):
        self._lock = threading.Lock()

    def _load(self, job_key: str) -> PersistedJobState:
        raise NotImplementedError

    def _save(self, job_key: str, state: PersistedJobState) -> None:
        raise NotImplementedError

    def _delete(self, job_key: str) -> None:
        raise NotImplementedError

    def _read(
        self, context: JobAutoScalerContext, getter: Callable[[PersistedJobState], T]
    ) -> T:
        with self._lock:
            return getter(self._load(context.job_key).model_copy(deep=True))

    def _write(
        self,
        context: JobAutoScalerContext,
        setter: Callable[[PersistedJobState], None],
    ) -> None:
        with self._lock:
            state = self._load(context.job_key).model_copy(deep=True)
            setter(state)
            self._save(context.job_key, state)

    def get_scaling_history(self, context: JobAutoScalerContext) -> ScalingHistory:
        return self._read(context, lambda s: s.scaling_history)

    def store_scaling_history(
        self, context: JobAutoScalerContext, history: ScalingHistory
    ) -> None:
        def setter(state: PersistedJobState) -> None:
            state.scaling_history = {
                vertex: dict(entries) for vertex, entries in history.items()
            }

        self._write(context, setter)

    def get_scaling_tracking(self, context: JobAutoScalerContext) -> ScalingTracking:
        return self._read(context, lambda s: s.scaling_tracking)

    def store_scaling_tracking(
        self, context: JobAutoScalerContext, tracking: ScalingTracking
    ) -> None:
        def setter(state: PersistedJobState) -> None:
            state.scaling_tracking = tracking.model_copy(deep=True)

        self._write(context, setter)

    def get_parallelism_overrides(self, context: JobAutoScalerContext) -> Dict[str, str]:
        return self._read(context, lambda s: s.parallelism_overrides)

    def store_parallelism_overrides(
        self, context: JobAutoScalerContext, overrides: Dict[str, str]
    ) -> None:
        def setter(state: PersistedJobState) -> None:
            state.parallelism_overrides = dict(overrides)

        self._write(context, setter)

    def get_config_changes(self, context: JobAutoScalerContext) -> ConfigChanges:
        return self._read(context, lambda s: s.config_changes)

    def store_config_changes(
        self, context: JobAutoScalerContext, changes: ConfigChanges
    ) -> None:
        def setter(state: PersistedJobState) -> None:
            state.config_changes = changes.model_copy(deep=True)

        self._write(context, setter)

    def get_resource_profile_overrides(
        self, context: JobAutoScalerContext
    ) -> Dict[str, ResourceProfile]:
        return self._read(context, lambda s: s.resource_profile_overrides)

    def store_resource_profile_overrides(
        self, context: JobAutoScalerContext, overrides: Dict[str, ResourceProfile]
    ) -> None:
        def setter(state: PersistedJobState) -> None:
            state.resource_profile_overrides = dict(overrides)

        self._write(context, setter)

    def get_delayed_scale_down(self, context: JobAutoScalerContext) -> DelayedScaleDown:
        return self._read(context, lambda s: s.delayed_scale_down)

    def store_delayed_scale_down(
        self, context: JobAutoScalerContext, delayed_scale_down: DelayedScaleDown
    ) -> None:
        def setter(state: PersistedJobState) -> None:
            state.delayed_scale_down = delayed_scale_down.model_copy(deep=True)

        self._write(context, setter)

    def get_scaling_period(self, context: JobAutoScalerContext) -> int:
        return self._read(context, lambda s: s.scaling_period)

    def store_scaling_period(self, context: JobAutoScalerContext, period: int) -> None:
        def setter(state: PersistedJobState) -> None:
            state.scaling_period = period

        self._write(context, setter)

    def get_scaling_configuration(
        self, context: JobAutoScalerContext, period: int
    ) -> Optional[ScalingConfiguration]:
        return self._read(context, lambda s: s.scaling_configurations.get(period))

    def store_scaling_configuration(
        self, context: JobAutoScalerContext, configuration: ScalingConfiguration
    ) -> None:
        def setter(state: PersistedJobState) -> None:
            state.scaling_configurations[configuration.period] = configuration.model_copy(
                deep=True
            )
            for period in sorted(state.scaling_configurations)[
                :-MAX_SCALING_CONFIGURATIONS
            ]:
                del state.scaling_configurations[period]

        self._write(context, setter)

    def remove_job(self, context: JobAutoScalerContext) -> None:
        with self._lock:
            self._delete(context.job_key)


class InMemoryStateStore(_JobStateStore):
    def __init__(self):
        super().__init__()
        self._states: Dict[str, PersistedJobState] = {}

    def _load(self, job_key: str) -> PersistedJobState:
        state = self._states.get(job_key)
        return state if state is not None else PersistedJobState()

    def _save(self, job_key: str, state: PersistedJobState) -> None:
        self._states[job_key] = state

    def _delete(self, job_key: str) -> None:
        self._states.pop(job_key, None)


_UNSAFE_PATH_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


class FileStateStore(_JobStateStore):
    """Keeps each job's state in ``<directory>/<job_key>/state.json``.

    Documents are loaded on first access and cached; every store rewrites the
    document through a temporary file and an atomic rename.
    """

    STATE_FILE = "state.json"

    def __init__(self, directory):
        super().__init__()
        self.directory = Path(directory)
        self._cache: Dict[str, PersistedJobState] = {}

    def _path(self, job_key: str) -> Path:
        return self.directory / _UNSAFE_PATH_CHARS.sub("_", job_key) / self.STATE_FILE

    def _load(self, job_key: str) -> PersistedJobState:
        state = self._cache.get(job_key)
        if state is not None:
            return state
        path = self._path(job_key)
        if path.exists():
            state = PersistedJobState.model_validate_json(path.read_text())
            logger.debug(f"Loaded autoscaler state of {job_key} from {path}")
        else:
            state = PersistedJobState()
        self._cache[job_key] = state
        return state

    def _save(self, job_key: str, state: PersistedJobState) -> None:
        path = self._path(job_key)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".state-", suffix=".json")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(state.model_dump_json(indent=2))
            os.replace(tmp_name, path)
        except BaseException:
            os.unlink(tmp_name)
            raise
        self._cache[job_key] = state

    def _delete(self, job_key: str) -> None:
        self._cache.pop(job_key, None)
        path = self._path(job_key)
        if path.exists():
            path.unlink()
            logger.info(f"Removed autoscaler state of {job_key}")
