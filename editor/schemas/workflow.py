# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Pydantic schemas for the workflow API wire format.

These mirror the JSON the workflow service sends and accepts. Field names are
snake_case in Python and camelCase on the wire; both spellings are accepted
when parsing, and `to_wire()` always emits the camelCase form.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class WireModel(BaseModel):
    """Base for all wire schemas."""

    class Config:
        populate_by_name = True
        extra = "ignore"

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


# =============================================================================
# Workflow Definition
# =============================================================================

class NodeDef(WireModel):
    id: str
    type: str
    label: str = ""
    position_x: float = Field(default=0.0, alias="positionX")
    position_y: float = Field(default=0.0, alias="positionY")
    properties: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("properties", mode="before")
    @classmethod
    def default_properties(cls, v):
        return v or {}


class EdgeDef(WireModel):
    id: str
    source: str
    target: str
    source_handle: Optional[str] = Field(default=None, alias="sourceHandle")
    target_handle: Optional[str] = Field(default=None, alias="targetHandle")
    label: Optional[str] = None


class WorkflowDef(WireModel):
    nodes: List[NodeDef] = Field(default_factory=list)
    edges: List[EdgeDef] = Field(default_factory=list)

    @field_validator("nodes", "edges", mode="before")
    @classmethod
    def default_lists(cls, v):
        return v or []


class Workflow(WireModel):
    """Server-owned workflow entity."""

    id: int
    name: str
    description: str = ""
    definition: WorkflowDef = Field(default_factory=WorkflowDef)
    created_at: Optional[str] = Field(default=None, alias="createdAt")
    updated_at: Optional[str] = Field(default=None, alias="updatedAt")
    last_run_at: Optional[str] = Field(default=None, alias="lastRunAt")
    avg_run_time_sec: Optional[float] = Field(default=None, alias="avgRunTimeSec")

    @field_validator("definition", mode="before")
    @classmethod
    def default_definition(cls, v):
        # The service returns null for workflows that were never saved
        return v if v is not None else {}

    @field_validator("description", mode="before")
    @classmethod
    def default_description(cls, v):
        return v or ""


class WorkflowUpdate(WireModel):
    """Body of PUT /workflows/{id}."""

    name: str
    description: str = ""
    definition: WorkflowDef


# =============================================================================
# Executions
# =============================================================================

class Execution(WireModel):
    id: int
    workflow_id: int = Field(alias="workflowId")
    status: str
    started_at: Optional[str] = Field(default=None, alias="startedAt")
    finished_at: Optional[str] = Field(default=None, alias="finishedAt")
    error: Optional[str] = None


class ExecutionResult(WireModel):
    """Response of POST /workflows/{id}/execute. A failed run still carries its execution id."""

    execution_id: Optional[int] = Field(default=None, alias="executionId")
    status: str = ""
    error: Optional[str] = None


class ExecutionLog(WireModel):
    id: int
    execution_id: int = Field(alias="executionId")
    node_id: str = Field(alias="nodeId")
    node_type: str = Field(default="", alias="nodeType")
    status: str
    input: Optional[str] = None
    output: Optional[str] = None
    error: Optional[str] = None
    executed_at: Optional[str] = Field(default=None, alias="executedAt")


class DebugEventType(str, Enum):
    """Event tags of the debug run stream"""
    STARTED = "started"
    NODE = "node"
    FINISHED = "finished"


class DebugEvent(WireModel):
    """One line of a debug run stream: started -> node* -> finished."""

    execution_id: Optional[int] = Field(default=None, alias="executionId")
    event: str
    node_id: Optional[str] = Field(default=None, alias="nodeId")
    node_type: Optional[str] = Field(default=None, alias="nodeType")
    node_label: Optional[str] = Field(default=None, alias="nodeLabel")
    status: str = ""
    input: Optional[str] = None
    output: Optional[str] = None
    error: Optional[str] = None
    executed_at: Optional[str] = Field(default=None, alias="executedAt")

    @property
    def is_finished(self) -> bool:
        return self.event == DebugEventType.FINISHED.value
