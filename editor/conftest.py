# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Pytest Configuration and Fixtures for Eflo Editor Tests.

Provides an in-memory workflow repository, tab storage and a ready session so
tests never need a running workflow service.
"""

import asyncio
import json
from typing import Any, Dict, Iterable, List, Optional, Set

import httpx
import pytest

from core.exceptions import NetworkError, ResourceNotFoundError
from core.http.client import WorkflowApiClient
from schemas.workflow import (
    Execution,
    ExecutionLog,
    ExecutionResult,
    Workflow,
    WorkflowDef,
    WorkflowUpdate,
)
from services.session_store import SessionStore
from services.tab_storage import InMemoryKeyValueStore, TabPersistence

TEST_BASE_URL = "http://eflo.test/api"


class FakeRepository:
    """
    In-memory WorkflowRepository.

    Every call is recorded in `calls`. Operation names added to `fail_on` raise
    NetworkError; an asyncio.Event put in `gates` holds that operation until set.
    """

    def __init__(self, workflows: Iterable[Workflow] = ()):
        self.workflows: Dict[int, Workflow] = {w.id: w for w in workflows}
        self.executions: Dict[int, List[Execution]] = {}
        self.logs: Dict[int, List[ExecutionLog]] = {}
        self.updates: List[tuple] = []
        self.calls: List[tuple] = []
        self.fail_on: Set[str] = set()
        self.gates: Dict[str, asyncio.Event] = {}
        self.execution_status = "completed"
        self._next_id = max(self.workflows, default=0) + 1

    async def _enter(self, op: str, *args: Any) -> None:
        self.calls.append((op, *args))
        gate = self.gates.get(op)
        if gate is not None:
            await gate.wait()
        if op in self.fail_on:
            raise NetworkError(f"{op} failed", status_code=503)

    def call_count(self, op: str) -> int:
        return sum(1 for call in self.calls if call[0] == op)

    async def list_workflows(self) -> List[Workflow]:
        await self._enter("list_workflows")
        return list(self.workflows.values())

    async def get_workflow(self, workflow_id: int) -> Workflow:
        await self._enter("get_workflow", workflow_id)
        if workflow_id not in self.workflows:
            raise ResourceNotFoundError("Workflow", workflow_id)
        return self.workflows[workflow_id]

    async def create_workflow(self, name: str, description: str,
                              definition: Optional[WorkflowDef] = None) -> Workflow:
        await self._enter("create_workflow", name)
        workflow = Workflow(
            id=self._next_id,
            name=name,
            description=description,
            definition=definition or WorkflowDef(),
        )
        self._next_id += 1
        self.workflows[workflow.id] = workflow
        return workflow

    async def update_workflow(self, workflow_id: int, update: WorkflowUpdate) -> Optional[Workflow]:
        await self._enter("update_workflow", workflow_id)
        if workflow_id not in self.workflows:
            raise ResourceNotFoundError("Workflow", workflow_id)
        self.updates.append((workflow_id, update))
        saved = self.workflows[workflow_id].model_copy(update={
            "name": update.name,
            "description": update.description,
            "definition": update.definition,
        })
        self.workflows[workflow_id] = saved
        return saved

    async def delete_workflow(self, workflow_id: int) -> None:
        await self._enter("delete_workflow", workflow_id)
        self.workflows.pop(workflow_id, None)

    async def import_workflow(self, data: Dict[str, Any]) -> Optional[Workflow]:
        await self._enter("import_workflow")
        return await self.create_workflow(
            data.get("name", "Imported"),
            data.get("description", ""),
            WorkflowDef.model_validate(data.get("definition") or {}),
        )

    async def export_workflow(self, workflow_id: int) -> Dict[str, Any]:
        await self._enter("export_workflow", workflow_id)
        return self.workflows[workflow_id].to_wire()

    async def execute_workflow(self, workflow_id: int) -> ExecutionResult:
        await self._enter("execute_workflow", workflow_id)
        execution_id = sum(len(v) for v in self.executions.values()) + 1
        self.executions.setdefault(workflow_id, []).append(
            Execution(id=execution_id, workflow_id=workflow_id, status=self.execution_status)
        )
        return ExecutionResult(execution_id=execution_id, status=self.execution_status)

    async def get_executions(self, workflow_id: int) -> List[Execution]:
        await self._enter("get_executions", workflow_id)
        return list(self.executions.get(workflow_id, []))

    async def get_execution_logs(self, execution_id: int) -> List[ExecutionLog]:
        await self._enter("get_execution_logs", execution_id)
        return list(self.logs.get(execution_id, []))


def make_workflow(workflow_id: int, name: str, node_ids: Iterable[str] = ()) -> Workflow:
    """Workflow whose definition is a chain of the given node ids."""
    node_ids = list(node_ids)
    nodes = [
        {"id": nid, "type": "agent", "label": nid.upper(), "positionX": i * 100, "positionY": 50}
        for i, nid in enumerate(node_ids)
    ]
    edges = [
        {"id": f"e-{a}-{b}", "source": a, "target": b}
        for a, b in zip(node_ids, node_ids[1:])
    ]
    return Workflow.model_validate({
        "id": workflow_id,
        "name": name,
        "description": f"{name} description",
        "definition": {"nodes": nodes, "edges": edges},
    })


class ChunkedStream(httpx.AsyncByteStream):
    """Response body delivered in the given chunks, optionally failing afterwards."""

    def __init__(self, chunks: Iterable[bytes], error: Optional[Exception] = None):
        self.chunks = list(chunks)
        self.error = error
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error

    async def aclose(self) -> None:
        self.closed = True


def debug_lines(*events: Dict[str, Any]) -> bytes:
    return "".join(f"data: {json.dumps(e, ensure_ascii=False)}\n" for e in events).encode("utf-8")


def make_api_client(handler) -> WorkflowApiClient:
    """WorkflowApiClient wired to an httpx.MockTransport handler, without retries."""
    return WorkflowApiClient(
        base_url=TEST_BASE_URL,
        max_retries=0,
        retry_initial_delay=0,
        transport=httpx.MockTransport(handler),
    )


@pytest.fixture
def sample_workflows() -> List[Workflow]:
    return [
        make_workflow(1, "Ingest", ["a", "b", "c"]),
        make_workflow(2, "Summarize", ["x", "y"]),
        make_workflow(3, "Empty"),
    ]


@pytest.fixture
def repository(sample_workflows) -> FakeRepository:
    return FakeRepository(sample_workflows)


@pytest.fixture
def kv_store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def persistence(kv_store) -> TabPersistence:
    return TabPersistence(kv_store)


@pytest.fixture
def session(repository, persistence) -> SessionStore:
    return SessionStore(repository, persistence=persistence)
