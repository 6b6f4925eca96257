# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Conversion between the stored workflow definition and the live canvas.

materialize_canvas() turns a WorkflowDef (flat positionX/positionY, label at
the top level) into canvas nodes/edges; serialize_canvas() is the inverse used
when saving.
"""

from typing import Iterable

from schemas.canvas import CanvasState, Edge, Node, NodeData, Position
from schemas.workflow import EdgeDef, NodeDef, WorkflowDef

DEFAULT_NODE_TYPE = "start"


def materialize_canvas(definition: WorkflowDef) -> CanvasState:
    """Build the canvas state for a freshly fetched workflow."""
    nodes = [
        Node(
            id=n.id,
            type=n.type,
            position=Position(x=n.position_x, y=n.position_y),
            data=NodeData(label=n.label, properties=dict(n.properties or {})),
        )
        for n in definition.nodes
    ]
    edges = [
        Edge(
            id=e.id,
            source=e.source,
            target=e.target,
            source_handle=e.source_handle,
            target_handle=e.target_handle,
            label=e.label,
            animated=True,
        )
        for e in definition.edges
    ]
    return CanvasState(nodes=nodes, edges=edges)


def serialize_canvas(nodes: Iterable[Node], edges: Iterable[Edge]) -> WorkflowDef:
    """Serialize live nodes/edges into the wire definition format."""
    node_defs = []
    for n in nodes:
        node_type = n.type or DEFAULT_NODE_TYPE
        node_defs.append(NodeDef(
            id=n.id,
            type=node_type,
            label=n.data.label or n.type or "",
            position_x=n.position.x,
            position_y=n.position.y,
            properties=dict(n.data.properties or {}),
        ))

    edge_defs = [
        EdgeDef(
            id=e.id,
            source=e.source,
            target=e.target,
            source_handle=e.source_handle or "",
            target_handle=e.target_handle or "",
            # Rendered labels can be arbitrary objects; only text is stored
            label=e.label if isinstance(e.label, str) else "",
        )
        for e in edges
    ]
    return WorkflowDef(nodes=node_defs, edges=edge_defs)
