# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

import pytest

from streamscale.autoscaler.context import JobAutoScalerContext
from tests.autoscaler.fakes import RecordingEventHandler, RecordingStateStore


@pytest.fixture
def event_handler():
    return RecordingEventHandler()


@pytest.fixture
def state_store():
    return RecordingStateStore()


@pytest.fixture
def context():
    return JobAutoScalerContext(job_key="job", job_id="job-id")
