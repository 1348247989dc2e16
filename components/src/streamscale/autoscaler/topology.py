# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

from typing import Dict, Iterable, List, Optional, Set

from pydantic import BaseModel, Field

from streamscale.autoscaler.exceptions import UnknownVertexError

HASH_SHIP_STRATEGY = "HASH"


class VertexInfo(BaseModel):
    vertex_id: str
    # upstream vertex id -> ship strategy (FORWARD, REBALANCE, HASH, ...)
    inputs: Dict[str, str] = Field(default_factory=dict)
    parallelism: int = 1
    max_parallelism: int = 128
    slot_sharing_group: Optional[str] = None


class JobTopology:
    """Snapshot of the job graph for one decision cycle."""

    def __init__(self, vertices: Iterable[VertexInfo]):
        self._vertices: Dict[str, VertexInfo] = {v.vertex_id: v for v in vertices}
        for vertex in self._vertices.values():
            for upstream in vertex.inputs:
                if upstream not in self._vertices:
                    raise UnknownVertexError(
                        upstream, context=f"topology (input of {vertex.vertex_id})"
                    )

        self._slot_sharing_groups: Dict[str, Set[str]] = {}
        for vertex in self._vertices.values():
            if vertex.slot_sharing_group is not None:
                self._slot_sharing_groups.setdefault(
                    vertex.slot_sharing_group, set()
                ).add(vertex.vertex_id)

    def get(self, vertex_id: str) -> VertexInfo:
        try:
            return self._vertices[vertex_id]
        except KeyError:
            raise UnknownVertexError(vertex_id) from None

    def __contains__(self, vertex_id: object) -> bool:
        return vertex_id in self._vertices

    @property
    def vertices(self) -> List[VertexInfo]:
        return list(self._vertices.values())

    @property
    def slot_sharing_group_mapping(self) -> Dict[str, Set[str]]:
        return {group: set(members) for group, members in self._slot_sharing_groups.items()}
