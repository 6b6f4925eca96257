# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Pydantic schemas for the editor canvas and tab bar.

Canvas nodes carry an open `properties` bag whose keys are interpreted by the
node-type specific config UI; the session core only ever copies it around.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class Tab(BaseModel):
    """An open editing session bound to one workflow id."""
    id: int
    name: str


class Position(BaseModel):
    x: float = 0.0
    y: float = 0.0


class NodeData(BaseModel):
    label: str = ""
    properties: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        # Config panels may attach extra keys through update_node_data
        extra = "allow"


class Node(BaseModel):
    id: str
    type: str = ""
    position: Position = Field(default_factory=Position)
    data: NodeData = Field(default_factory=NodeData)


class Edge(BaseModel):
    id: str
    source: str
    target: str
    source_handle: Optional[str] = Field(default=None, alias="sourceHandle")
    target_handle: Optional[str] = Field(default=None, alias="targetHandle")
    label: Optional[Any] = None
    animated: bool = False

    class Config:
        populate_by_name = True


class CanvasState(BaseModel):
    """Nodes and edges of one tab, cached while the tab is in the background."""
    nodes: List[Node] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)
