# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Errors raised by the autoscaler decision engine.

Expected decision outcomes (nothing to scale, scaling blocked, quota reached)
are never reported through exceptions; these types cover configuration and
programming errors that abort the current decision cycle.
"""

from typing import List


class AutoScalerError(Exception):
    """Base class for autoscaler errors."""


class UnknownVertexError(AutoScalerError, KeyError):
    """A vertex id was referenced that is not part of the job topology."""

    def __init__(self, vertex_id: str, context: str = "job topology"):
        self.vertex_id = vertex_id
        super().__init__(f"Vertex {vertex_id} is not part of the {context}")

    def __str__(self) -> str:
        return self.args[0]


class InvalidConfigurationError(AutoScalerError, ValueError):
    """One or more autoscaler options have invalid values."""

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__("Invalid autoscaler configuration: " + "; ".join(errors))
