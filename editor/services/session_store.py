# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Editor Session Store

Single source of truth for which workflows are open, which one is visible and
what its canvas currently looks like.

State:
- open_tabs / active_tab_id: the tab bar, persisted across restarts
- tab_states: canvas cache per tab id, written on every outgoing transition
- nodes / edges: the live canvas of the active tab
- current_workflow: local snapshot of the active workflow's metadata
- history: executions and logs of the active tab

All mutations are synchronous. Only repository calls await, and every
transition reads the live canvas and the outgoing tab id after its last await,
so a flush can never land under the wrong id.

Usage:
    session = build_session()
    await session.restore_tabs_on_startup()
    await session.open_workflow(42)
    session.add_node(node)
    await session.save_active_workflow()
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Set

from config import settings as default_settings
from core.canvas import materialize_canvas, serialize_canvas
from core.exceptions import NetworkError
from schemas.canvas import CanvasState, Edge, Node, NodeData, Position, Tab
from schemas.workflow import ExecutionResult, Workflow, WorkflowDef, WorkflowUpdate
from services.execution_history import ExecutionHistory
from services.tab_storage import TabPersistence, create_tab_persistence

logger = logging.getLogger(__name__)

Listener = Callable[["SessionStore", Set[str]], None]


class SessionStore:
    """
    Multi-tab editor session.

    Constructed once at startup and passed to whatever needs it. Listeners
    registered with subscribe() run after every state change; tab persistence
    is one of them.
    """

    def __init__(
        self,
        repository,
        persistence: Optional[TabPersistence] = None,
        history: Optional[ExecutionHistory] = None,
    ):
        self.repository = repository
        self.persistence = persistence
        self.history = history or ExecutionHistory(repository)

        open_tabs, active_tab_id = persistence.load() if persistence else ([], None)
        if active_tab_id is not None and not any(t.id == active_tab_id for t in open_tabs):
            logger.warning(f"Stored active tab {active_tab_id} is not an open tab, ignoring it")
            active_tab_id = None

        self.workflows: List[Workflow] = []
        self.current_workflow: Optional[Workflow] = None
        self.loading = False

        self.open_tabs: List[Tab] = open_tabs
        self.active_tab_id: Optional[int] = active_tab_id
        self.tab_states: Dict[int, CanvasState] = {}

        self.nodes: List[Node] = []
        self.edges: List[Edge] = []
        self.selected_node_id: Optional[str] = None
        self.debug_run_trigger: Optional[int] = None

        self._listeners: List[Listener] = []
        self._workflow_snapshots: Dict[int, Workflow] = {}
        # Tabs restored from storage whose canvas has not been fetched yet
        self._unloaded: Set[int] = {t.id for t in open_tabs}
        self._pending_refreshes: Set[asyncio.Task] = set()

        if persistence is not None:
            self.subscribe(self._persist_tabs)

        logger.info(
            f"Session initialized ({len(open_tabs)} restored tabs, active={active_tab_id})"
        )

    # =========================================================================
    # State plumbing
    # =========================================================================

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener. Returns a callable that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set(self, **changes: Any) -> None:
        changed = set()
        for key, value in changes.items():
            old = getattr(self, key)
            if old is not value and old != value:
                changed.add(key)
            setattr(self, key, value)
        self._notify(changed)

    def _notify(self, changed: Set[str]) -> None:
        if not changed:
            return
        for listener in list(self._listeners):
            listener(self, changed)

    def _persist_tabs(self, _session: "SessionStore", changed: Set[str]) -> None:
        if "open_tabs" in changed or "active_tab_id" in changed:
            self.persistence.save(self.open_tabs, self.active_tab_id)

    def snapshot(self) -> Dict[str, Any]:
        """Read-only view of the session for UI layers."""
        return {
            "workflows": list(self.workflows),
            "current_workflow": self.current_workflow,
            "loading": self.loading,
            "open_tabs": list(self.open_tabs),
            "active_tab_id": self.active_tab_id,
            "nodes": list(self.nodes),
            "edges": list(self.edges),
            "selected_node_id": self.selected_node_id,
            "executions": list(self.history.executions),
            "execution_logs": list(self.history.execution_logs),
            "show_execution_panel": self.history.show_execution_panel,
            "debug_run_trigger": self.debug_run_trigger,
        }

    @property
    def executions(self):
        return self.history.executions

    @property
    def execution_logs(self):
        return self.history.execution_logs

    def is_open(self, workflow_id: int) -> bool:
        return any(t.id == workflow_id for t in self.open_tabs)

    def _flushed_tab_states(self) -> Dict[int, CanvasState]:
        """Copy of the cache with the live canvas stored under the current active id."""
        tab_states = dict(self.tab_states)
        outgoing = self.active_tab_id
        if outgoing is not None:
            tab_states[outgoing] = CanvasState(nodes=list(self.nodes), edges=list(self.edges))
        return tab_states

    def _tabs_with(self, workflow: Workflow) -> List[Tab]:
        if self.is_open(workflow.id):
            return [
                Tab(id=t.id, name=workflow.name) if t.id == workflow.id else t
                for t in self.open_tabs
            ]
        return [*self.open_tabs, Tab(id=workflow.id, name=workflow.name)]

    def _metadata_for(self, workflow_id: int) -> Optional[Workflow]:
        if self.current_workflow is not None and self.current_workflow.id == workflow_id:
            return self.current_workflow
        return self._workflow_snapshots.get(workflow_id)

    def _remember(self, workflow: Workflow) -> None:
        self._workflow_snapshots[workflow.id] = workflow

    # =========================================================================
    # Workflow list
    # =========================================================================

    async def fetch_workflows(self) -> List[Workflow]:
        self._set(loading=True)
        try:
            workflows = await self.repository.list_workflows()
            self._set(workflows=workflows)
            return workflows
        finally:
            self._set(loading=False)

    # =========================================================================
    # Tab transitions
    # =========================================================================

    async def open_workflow(self, workflow_id: int) -> Optional[Workflow]:
        """
        Open a workflow in a tab and make it active.

        Already open and active: nothing happens. Already open with a cached
        canvas: the cached canvas is restored. Otherwise the definition is
        fetched and materialized.

        Raises:
            NetworkError: If the fetch fails. The session is left as it was.
        """
        if self.active_tab_id == workflow_id and self.is_open(workflow_id):
            return self.current_workflow

        show_loading = workflow_id not in self.tab_states
        if show_loading:
            self._set(loading=True)
        try:
            workflow = await self.repository.get_workflow(workflow_id)
        finally:
            if show_loading:
                self._set(loading=False)

        self._remember(workflow)
        if self.active_tab_id == workflow_id and self.is_open(workflow_id):
            # Activated by another call while this fetch was in flight
            self._set(current_workflow=workflow)
            return workflow

        # Flush the outgoing tab first; its id and canvas are read now, after the await
        tab_states = self._flushed_tab_states()
        cached = tab_states.get(workflow_id) if self.is_open(workflow_id) else None
        if cached is None:
            cached = materialize_canvas(workflow.definition)
            tab_states[workflow_id] = cached
        self._unloaded.discard(workflow_id)

        self._set(
            current_workflow=workflow,
            nodes=list(cached.nodes),
            edges=list(cached.edges),
            selected_node_id=None,
            open_tabs=self._tabs_with(workflow),
            active_tab_id=workflow_id,
            tab_states=tab_states,
        )
        self.history.clear()
        logger.info(f"Opened workflow {workflow_id} ({len(self.open_tabs)} tabs open)")
        return workflow

    def switch_tab(self, workflow_id: int) -> None:
        """
        Make an open tab active. Unknown ids and the active id are ignored.

        The canvas swap happens immediately; the workflow metadata is refreshed
        in the background.
        """
        if self.active_tab_id == workflow_id or not self.is_open(workflow_id):
            return

        tab_states = self._flushed_tab_states()
        cached = tab_states.get(workflow_id) or CanvasState()
        self._set(
            nodes=list(cached.nodes),
            edges=list(cached.edges),
            active_tab_id=workflow_id,
            selected_node_id=None,
            tab_states=tab_states,
            current_workflow=self._workflow_snapshots.get(workflow_id),
        )
        self.history.clear()
        self._schedule_refresh(workflow_id)

    def close_tab(self, workflow_id: int) -> None:
        """
        Close a tab and drop its cached canvas.

        Closing the active tab selects the tab now at the closed tab's index
        (or the last one); closing the last tab resets the session.
        """
        index = next((i for i, t in enumerate(self.open_tabs) if t.id == workflow_id), -1)
        if index == -1:
            return

        new_tabs = [t for t in self.open_tabs if t.id != workflow_id]
        tab_states = dict(self.tab_states)
        tab_states.pop(workflow_id, None)
        self._workflow_snapshots.pop(workflow_id, None)
        self._unloaded.discard(workflow_id)

        if self.active_tab_id != workflow_id:
            if self.active_tab_id is not None:
                tab_states[self.active_tab_id] = CanvasState(nodes=list(self.nodes), edges=list(self.edges))
            self._set(open_tabs=new_tabs, tab_states=tab_states)
            return

        if not new_tabs:
            self._reset()
            return

        next_tab = new_tabs[min(index, len(new_tabs) - 1)]
        cached = tab_states.get(next_tab.id) or CanvasState()
        self._set(
            open_tabs=new_tabs,
            active_tab_id=next_tab.id,
            nodes=list(cached.nodes),
            edges=list(cached.edges),
            selected_node_id=None,
            tab_states=tab_states,
            current_workflow=self._workflow_snapshots.get(next_tab.id),
        )
        self.history.clear()
        self._schedule_refresh(next_tab.id)

    def _reset(self) -> None:
        self._workflow_snapshots.clear()
        self._unloaded.clear()
        self._set(
            open_tabs=[],
            active_tab_id=None,
            current_workflow=None,
            nodes=[],
            edges=[],
            selected_node_id=None,
            tab_states={},
        )
        self.history.clear()
        logger.info("Last tab closed, session reset")

    def _schedule_refresh(self, workflow_id: int) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running loop, skipping metadata refresh for workflow {workflow_id}")
            return
        task = loop.create_task(self._refresh_workflow(workflow_id))
        self._pending_refreshes.add(task)
        task.add_done_callback(self._pending_refreshes.discard)

    async def _refresh_workflow(self, workflow_id: int) -> None:
        try:
            workflow = await self.repository.get_workflow(workflow_id)
        except NetworkError as e:
            logger.warning(f"Could not refresh workflow {workflow_id}: {e.message}")
            return

        if not self.is_open(workflow_id):
            return
        self._remember(workflow)
        if self.active_tab_id != workflow_id:
            logger.debug(f"Discarding refresh of workflow {workflow_id}, tab no longer active")
            return

        changes: Dict[str, Any] = {"current_workflow": workflow}
        if workflow_id in self._unloaded:
            # First visit to a restored tab: show the stored definition unless the user already drew something
            self._unloaded.discard(workflow_id)
            if not self.nodes and not self.edges:
                canvas = materialize_canvas(workflow.definition)
                tab_states = dict(self.tab_states)
                tab_states[workflow_id] = canvas
                changes.update(nodes=list(canvas.nodes), edges=list(canvas.edges), tab_states=tab_states)
        self._set(**changes)

    async def wait_for_refreshes(self) -> None:
        """Wait for background metadata refreshes started by tab switches."""
        while self._pending_refreshes:
            await asyncio.gather(*list(self._pending_refreshes), return_exceptions=True)

    async def restore_tabs_on_startup(self) -> Optional[Workflow]:
        """
        Re-fetch the workflow that was active before the restart.

        Cached canvases never survive a restart, so the active tab is always
        loaded from the repository.
        """
        active = self.active_tab_id
        if active is None or not self.is_open(active):
            return None

        self._set(loading=True)
        try:
            workflow = await self.repository.get_workflow(active)
        finally:
            self._set(loading=False)

        self._remember(workflow)
        if self.active_tab_id != active:
            return workflow

        canvas = materialize_canvas(workflow.definition)
        tab_states = dict(self.tab_states)
        tab_states[active] = canvas
        self._unloaded.discard(active)
        self._set(
            current_workflow=workflow,
            nodes=list(canvas.nodes),
            edges=list(canvas.edges),
            selected_node_id=None,
            open_tabs=self._tabs_with(workflow),
            tab_states=tab_states,
        )
        logger.info(f"Restored workflow {active} from previous session")
        return workflow

    # =========================================================================
    # Workflow CRUD
    # =========================================================================

    async def create_new_workflow(self, name: str, description: str) -> Workflow:
        """Create an empty workflow on the server and open it in a new tab."""
        workflow = await self.repository.create_workflow(name, description, WorkflowDef())
        self._remember(workflow)

        tab_states = self._flushed_tab_states()
        tab_states[workflow.id] = CanvasState()
        self._set(
            current_workflow=workflow,
            nodes=[],
            edges=[],
            selected_node_id=None,
            open_tabs=self._tabs_with(workflow),
            active_tab_id=workflow.id,
            tab_states=tab_states,
        )
        self.history.clear()
        logger.info(f"Created workflow {workflow.id} '{workflow.name}'")

        try:
            await self.fetch_workflows()
        except NetworkError as e:
            logger.warning(f"Workflow list refresh failed after create: {e.message}")
        return workflow

    async def save_active_workflow(self) -> Optional[Workflow]:
        """
        Save the active tab's live canvas.

        The target workflow id, its metadata and the canvas are captured before
        the request is sent, so switching tabs while the save is in flight
        cannot redirect it.

        Raises:
            NetworkError: If the update fails. Local edits are kept.
        """
        target_id = self.active_tab_id
        if target_id is None:
            return None
        if target_id in self._unloaded:
            logger.warning(f"Workflow {target_id} has not been loaded yet, not saving an empty canvas over it")
            return None

        metadata = self._metadata_for(target_id)
        if metadata is not None:
            name, description = metadata.name, metadata.description
        else:
            tab = next(t for t in self.open_tabs if t.id == target_id)
            name, description = tab.name, ""

        definition = serialize_canvas(list(self.nodes), list(self.edges))
        update = WorkflowUpdate(name=name, description=description, definition=definition)

        saved = await self.repository.update_workflow(target_id, update)
        logger.info(
            f"Saved workflow {target_id} ({len(definition.nodes)} nodes, {len(definition.edges)} edges)"
        )

        if not self.is_open(target_id):
            return saved
        changes: Dict[str, Any] = {
            "open_tabs": [Tab(id=t.id, name=name) if t.id == target_id else t for t in self.open_tabs]
        }
        if self.active_tab_id == target_id:
            tab_states = dict(self.tab_states)
            tab_states[target_id] = CanvasState(nodes=list(self.nodes), edges=list(self.edges))
            changes["tab_states"] = tab_states
        if saved is not None:
            self._remember(saved)
            if self.active_tab_id == target_id:
                changes["current_workflow"] = saved
        self._set(**changes)
        return saved

    async def remove_workflow(self, workflow_id: int) -> None:
        """Delete a workflow on the server and close its tab."""
        await self.repository.delete_workflow(workflow_id)
        self.close_tab(workflow_id)
        await self.fetch_workflows()

    async def import_workflow(self, data: Dict[str, Any]) -> Optional[Workflow]:
        """Import an exported workflow and open it."""
        workflow = await self.repository.import_workflow(data)
        await self.fetch_workflows()
        if workflow is not None:
            await self.open_workflow(workflow.id)
        return workflow

    async def export_workflow(self, workflow_id: int) -> Dict[str, Any]:
        return await self.repository.export_workflow(workflow_id)

    # =========================================================================
    # Canvas editing
    # =========================================================================

    def set_nodes(self, nodes: List[Node]) -> None:
        self._set(nodes=list(nodes))

    def set_edges(self, edges: List[Edge]) -> None:
        self._set(edges=list(edges))

    def add_node(self, node: Node) -> None:
        self._set(nodes=[*self.nodes, node])

    def remove_node(self, node_id: str) -> None:
        """Remove a node together with every edge touching it."""
        changes: Dict[str, Any] = {
            "nodes": [n for n in self.nodes if n.id != node_id],
            "edges": [e for e in self.edges if e.source != node_id and e.target != node_id],
        }
        if self.selected_node_id == node_id:
            changes["selected_node_id"] = None
        self._set(**changes)

    def move_node(self, node_id: str, x: float, y: float) -> None:
        self._set(nodes=[
            n.model_copy(update={"position": Position(x=x, y=y)}) if n.id == node_id else n
            for n in self.nodes
        ])

    def update_node_data(self, node_id: str, data: Dict[str, Any]) -> None:
        """Shallow-merge `data` into a node's data (label, properties, extra keys)."""
        nodes = []
        for n in self.nodes:
            if n.id == node_id:
                merged = NodeData.model_validate({**n.data.model_dump(), **data})
                n = n.model_copy(update={"data": merged})
            nodes.append(n)
        self._set(nodes=nodes)

    def connect(
        self,
        source: str,
        target: str,
        source_handle: Optional[str] = None,
        target_handle: Optional[str] = None,
        label: Optional[str] = None,
    ) -> Optional[Edge]:
        """Add an animated edge. An identical existing connection is left alone."""
        for e in self.edges:
            if (e.source, e.target, e.source_handle or None, e.target_handle or None) == (
                source, target, source_handle or None, target_handle or None
            ):
                return None
        edge = Edge(
            id=f"xy-edge__{source}{source_handle or ''}-{target}{target_handle or ''}",
            source=source,
            target=target,
            source_handle=source_handle,
            target_handle=target_handle,
            label=label,
            animated=True,
        )
        self._set(edges=[*self.edges, edge])
        return edge

    def remove_edge(self, edge_id: str) -> None:
        self._set(edges=[e for e in self.edges if e.id != edge_id])

    def set_selected_node_id(self, node_id: Optional[str]) -> None:
        self._set(selected_node_id=node_id)

    def get_selected_node(self) -> Optional[Node]:
        if not self.selected_node_id:
            return None
        return next((n for n in self.nodes if n.id == self.selected_node_id), None)

    # =========================================================================
    # Execution
    # =========================================================================

    async def run_workflow(self) -> Optional[ExecutionResult]:
        """Save, execute synchronously on the server, then show the execution list."""
        target_id = self.active_tab_id
        if target_id is None or self.current_workflow is None:
            return None
        await self.save_active_workflow()
        result = await self.repository.execute_workflow(target_id)
        if result.status == "failed":
            logger.warning(f"Workflow {target_id} execution {result.execution_id} failed: {result.error}")
        if self.active_tab_id == target_id:
            await self.history.fetch_executions(target_id)
            self.history.set_show_execution_panel(True)
            self._notify({"executions", "show_execution_panel"})
        return result

    async def fetch_executions(self):
        executions = await self.history.fetch_executions(self.active_tab_id)
        self._notify({"executions"})
        return executions

    async def fetch_execution_logs(self, execution_id: int):
        logs = await self.history.fetch_execution_logs(execution_id)
        self._notify({"execution_logs"})
        return logs

    def set_show_execution_panel(self, show: bool) -> None:
        self.history.set_show_execution_panel(show)
        self._notify({"show_execution_panel"})

    def request_debug_run(self) -> Optional[int]:
        """Ask the debug panel to start a debug run of the active workflow."""
        if self.active_tab_id is None:
            return None
        self._set(debug_run_trigger=self.active_tab_id)
        return self.active_tab_id

    def clear_debug_run_trigger(self) -> None:
        self._set(debug_run_trigger=None)


def build_session(app_settings=None, repository=None) -> SessionStore:
    """
    Create the session with the configured repository and tab storage.

    Call once at startup and pass the result to the UI layer.
    """
    app_settings = app_settings or default_settings
    if repository is None:
        from core.http.client import WorkflowApiClient

        repository = WorkflowApiClient(base_url=app_settings.api_base_url)
    persistence = create_tab_persistence(app_settings.storage_backend, app_settings.storage_path)
    return SessionStore(repository, persistence=persistence)
