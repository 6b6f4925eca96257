# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Tests for the multi-tab editor session.

Covers tab transitions (open / switch / close), the per-tab canvas cache,
saving, tab persistence across restarts and the failure paths.
"""

import asyncio
import json
import random

import pytest

from conftest import FakeRepository, make_workflow
from core.exceptions import NetworkError, ResourceNotFoundError
from schemas.canvas import Node, NodeData, Position, Tab
from services.session_store import SessionStore, build_session
from services.tab_storage import (
    ACTIVE_TAB_STORAGE_KEY,
    TAB_STORAGE_KEY,
    InMemoryKeyValueStore,
    TabPersistence,
)


def node_ids(session):
    return [n.id for n in session.nodes]


def new_node(node_id, label="", node_type="agent"):
    return Node(id=node_id, type=node_type, position=Position(x=1, y=2), data=NodeData(label=label))


# =============================================================================
# open_workflow
# =============================================================================

@pytest.mark.asyncio
async def test_open_workflow_materializes_definition(session):
    workflow = await session.open_workflow(1)

    assert workflow.name == "Ingest"
    assert session.open_tabs == [Tab(id=1, name="Ingest")]
    assert session.active_tab_id == 1
    assert session.current_workflow.id == 1
    assert node_ids(session) == ["a", "b", "c"]
    assert session.nodes[1].position == Position(x=100, y=50)
    assert session.nodes[0].data.label == "A"
    assert [e.id for e in session.edges] == ["e-a-b", "e-b-c"]
    assert all(e.animated for e in session.edges)
    assert 1 in session.tab_states
    assert session.loading is False


@pytest.mark.asyncio
async def test_open_active_workflow_is_noop(session, repository):
    await session.open_workflow(1)
    session.add_node(new_node("z"))

    await session.open_workflow(1)

    assert repository.call_count("get_workflow") == 1
    assert "z" in node_ids(session)


@pytest.mark.asyncio
async def test_open_cached_tab_restores_cache_without_loading(session, repository):
    loading_changes = []
    session.subscribe(lambda s, changed: loading_changes.append(s.loading) if "loading" in changed else None)

    await session.open_workflow(1)
    session.add_node(new_node("z"))
    await session.open_workflow(2)
    loading_changes.clear()

    await session.open_workflow(1)

    assert session.active_tab_id == 1
    assert node_ids(session) == ["a", "b", "c", "z"]
    assert [t.id for t in session.open_tabs] == [1, 2]
    assert loading_changes == []
    assert repository.call_count("get_workflow") == 3


@pytest.mark.asyncio
async def test_open_workflow_fetch_failure_leaves_state_untouched(session, repository):
    await session.open_workflow(1)
    session.add_node(new_node("z"))
    repository.fail_on.add("get_workflow")

    with pytest.raises(NetworkError):
        await session.open_workflow(2)

    assert session.open_tabs == [Tab(id=1, name="Ingest")]
    assert session.active_tab_id == 1
    assert node_ids(session) == ["a", "b", "c", "z"]
    assert session.loading is False


@pytest.mark.asyncio
async def test_open_unknown_workflow_raises_not_found(session):
    with pytest.raises(ResourceNotFoundError):
        await session.open_workflow(99)

    assert session.open_tabs == []
    assert session.loading is False


# =============================================================================
# switch_tab
# =============================================================================

@pytest.mark.asyncio
async def test_switch_round_trip_restores_edits(session):
    await session.open_workflow(1)
    await session.open_workflow(2)
    session.switch_tab(1)
    session.add_node(new_node("z"))
    session.connect("c", "z")
    edited_nodes = list(session.nodes)
    edited_edges = list(session.edges)

    session.switch_tab(2)
    assert node_ids(session) == ["x", "y"]

    session.switch_tab(1)
    assert session.nodes == edited_nodes
    assert session.edges == edited_edges
    await session.wait_for_refreshes()


@pytest.mark.asyncio
async def test_switch_tab_ignores_unknown_and_active_ids(session):
    await session.open_workflow(1)
    before = session.snapshot()

    session.switch_tab(1)
    session.switch_tab(42)

    assert session.snapshot() == before


@pytest.mark.asyncio
async def test_switch_tab_clears_selection_and_history(session, repository):
    await session.open_workflow(1)
    await session.open_workflow(2)
    session.switch_tab(1)
    await session.run_workflow()
    session.set_selected_node_id("a")
    assert len(session.executions) == 1

    session.switch_tab(2)

    assert session.selected_node_id is None
    assert session.executions == []
    await session.wait_for_refreshes()


@pytest.mark.asyncio
async def test_switch_tab_refreshes_metadata_in_background(session, repository):
    await session.open_workflow(1)
    await session.open_workflow(2)
    repository.workflows[1] = repository.workflows[1].model_copy(update={"name": "Ingest v2"})

    session.switch_tab(1)
    assert session.current_workflow.name == "Ingest"

    await session.wait_for_refreshes()
    assert session.current_workflow.name == "Ingest v2"


@pytest.mark.asyncio
async def test_stale_refresh_is_discarded(session, repository):
    await session.open_workflow(1)
    await session.open_workflow(2)
    gate = asyncio.Event()
    repository.gates["get_workflow"] = gate

    session.switch_tab(1)
    await asyncio.sleep(0)
    session.switch_tab(2)
    gate.set()
    await session.wait_for_refreshes()

    assert session.active_tab_id == 2
    assert session.current_workflow.id == 2
    assert node_ids(session) == ["x", "y"]


@pytest.mark.asyncio
async def test_failed_refresh_keeps_canvas(session, repository):
    await session.open_workflow(1)
    await session.open_workflow(2)
    repository.fail_on.add("get_workflow")

    session.switch_tab(1)
    await session.wait_for_refreshes()

    assert session.active_tab_id == 1
    assert node_ids(session) == ["a", "b", "c"]
    assert session.current_workflow.id == 1


# =============================================================================
# close_tab
# =============================================================================

@pytest.mark.asyncio
async def test_close_active_middle_tab_selects_next(session):
    for workflow_id in (1, 2, 3):
        await session.open_workflow(workflow_id)
    session.switch_tab(2)

    session.close_tab(2)

    assert [t.id for t in session.open_tabs] == [1, 3]
    assert session.active_tab_id == 3
    assert 2 not in session.tab_states
    assert session.nodes == []
    await session.wait_for_refreshes()


@pytest.mark.asyncio
async def test_close_active_last_tab_selects_previous(session):
    for workflow_id in (1, 2, 3):
        await session.open_workflow(workflow_id)

    session.close_tab(3)

    assert session.active_tab_id == 2
    assert node_ids(session) == ["x", "y"]
    await session.wait_for_refreshes()


@pytest.mark.asyncio
async def test_close_only_tab_resets_session(session):
    await session.open_workflow(1)

    session.close_tab(1)

    assert session.open_tabs == []
    assert session.active_tab_id is None
    assert session.current_workflow is None
    assert session.nodes == []
    assert session.edges == []
    assert session.tab_states == {}


@pytest.mark.asyncio
async def test_close_inactive_tab_flushes_active_canvas(session):
    await session.open_workflow(1)
    await session.open_workflow(2)
    session.add_node(new_node("z"))

    session.close_tab(1)

    assert session.active_tab_id == 2
    assert [n.id for n in session.tab_states[2].nodes] == ["x", "y", "z"]
    assert node_ids(session) == ["x", "y", "z"]


def test_close_unknown_tab_is_ignored(session):
    session.close_tab(7)
    assert session.open_tabs == []


@pytest.mark.asyncio
async def test_active_tab_is_always_open(session):
    rng = random.Random(7)
    for _ in range(200):
        op = rng.choice(["open", "switch", "close"])
        workflow_id = rng.choice([1, 2, 3])
        if op == "open":
            await session.open_workflow(workflow_id)
        elif op == "switch":
            session.switch_tab(workflow_id)
        else:
            session.close_tab(workflow_id)

        tab_ids = [t.id for t in session.open_tabs]
        assert len(tab_ids) == len(set(tab_ids))
        assert session.active_tab_id is None or session.active_tab_id in tab_ids
        if session.active_tab_id is None:
            assert tab_ids == []
    await session.wait_for_refreshes()


# =============================================================================
# Saving and CRUD
# =============================================================================

@pytest.mark.asyncio
async def test_save_serializes_live_canvas(session, repository):
    await session.open_workflow(1)
    session.move_node("a", 5, 6)
    session.add_node(Node(id="n", type="", data=NodeData(label="")))

    saved = await session.save_active_workflow()

    workflow_id, update = repository.updates[0]
    assert workflow_id == 1
    assert update.name == "Ingest"
    assert update.description == "Ingest description"
    first = update.definition.nodes[0]
    assert (first.position_x, first.position_y) == (5, 6)
    last = update.definition.nodes[-1]
    assert (last.type, last.label) == ("start", "")
    assert saved.id == 1
    assert session.current_workflow == saved
    assert [n.id for n in session.tab_states[1].nodes] == ["a", "b", "c", "n"]


@pytest.mark.asyncio
async def test_save_target_is_fixed_when_tab_switches_mid_save(session, repository):
    await session.open_workflow(1)
    await session.open_workflow(2)
    session.switch_tab(1)
    await session.wait_for_refreshes()
    session.add_node(new_node("n1"))

    gate = asyncio.Event()
    repository.gates["update_workflow"] = gate
    save = asyncio.ensure_future(session.save_active_workflow())
    await asyncio.sleep(0)
    session.switch_tab(2)
    gate.set()
    await save
    await session.wait_for_refreshes()

    workflow_id, update = repository.updates[0]
    assert workflow_id == 1
    assert update.name == "Ingest"
    assert "n1" in [n.id for n in update.definition.nodes]
    assert session.active_tab_id == 2
    assert session.current_workflow.id == 2
    assert node_ids(session) == ["x", "y"]


@pytest.mark.asyncio
async def test_failed_save_keeps_local_edits(session, repository):
    await session.open_workflow(1)
    session.add_node(new_node("z"))
    repository.fail_on.add("update_workflow")

    with pytest.raises(NetworkError):
        await session.save_active_workflow()

    assert node_ids(session) == ["a", "b", "c", "z"]
    assert session.active_tab_id == 1


@pytest.mark.asyncio
async def test_save_without_active_tab_is_noop(session, repository):
    assert await session.save_active_workflow() is None
    assert repository.updates == []


@pytest.mark.asyncio
async def test_create_new_workflow_opens_empty_tab(session, repository):
    await session.open_workflow(1)
    session.add_node(new_node("z"))

    workflow = await session.create_new_workflow("Fresh", "brand new")

    assert workflow.id == 4
    assert [t.id for t in session.open_tabs] == [1, 4]
    assert session.active_tab_id == 4
    assert session.nodes == [] and session.edges == []
    assert [n.id for n in session.tab_states[1].nodes] == ["a", "b", "c", "z"]
    assert len(session.workflows) == 4


@pytest.mark.asyncio
async def test_create_new_workflow_survives_list_refresh_failure(session, repository):
    repository.fail_on.add("list_workflows")

    workflow = await session.create_new_workflow("Fresh", "")

    assert session.active_tab_id == workflow.id
    assert session.loading is False


@pytest.mark.asyncio
async def test_fetch_workflows(session, repository):
    workflows = await session.fetch_workflows()
    assert [w.id for w in workflows] == [1, 2, 3]
    assert session.workflows == workflows


@pytest.mark.asyncio
async def test_remove_workflow_closes_its_tab(session, repository):
    await session.open_workflow(1)
    await session.open_workflow(2)

    await session.remove_workflow(2)

    assert [t.id for t in session.open_tabs] == [1]
    assert session.active_tab_id == 1
    assert 2 not in repository.workflows
    assert [w.id for w in session.workflows] == [1, 3]
    await session.wait_for_refreshes()


@pytest.mark.asyncio
async def test_import_and_export_workflow(session, repository):
    exported = await session.export_workflow(2)
    assert exported["definition"]["nodes"][0]["positionX"] == 0

    imported = await session.import_workflow(exported)

    assert session.active_tab_id == imported.id
    assert node_ids(session) == ["x", "y"]


# =============================================================================
# Canvas editing
# =============================================================================

@pytest.mark.asyncio
async def test_remove_node_drops_connected_edges_and_selection(session):
    await session.open_workflow(1)
    session.set_selected_node_id("b")

    session.remove_node("b")

    assert node_ids(session) == ["a", "c"]
    assert session.edges == []
    assert session.selected_node_id is None
    assert session.get_selected_node() is None


@pytest.mark.asyncio
async def test_connect_ignores_duplicate(session):
    await session.open_workflow(2)

    edge = session.connect("x", "y", source_handle="out")
    duplicate = session.connect("x", "y", source_handle="out")

    assert edge.id == "xy-edge__xout-y"
    assert edge.animated is True
    assert duplicate is None
    assert len(session.edges) == 2


@pytest.mark.asyncio
async def test_update_node_data_merges(session):
    await session.open_workflow(1)
    session.update_node_data("a", {"properties": {"model": "m1"}, "color": "red"})
    session.set_selected_node_id("a")

    node = session.get_selected_node()
    assert node.data.label == "A"
    assert node.data.properties == {"model": "m1"}
    assert node.data.model_dump()["color"] == "red"


# =============================================================================
# Execution
# =============================================================================

@pytest.mark.asyncio
async def test_run_workflow_saves_then_executes(session, repository):
    await session.open_workflow(1)

    result = await session.run_workflow()

    ops = [c[0] for c in repository.calls]
    assert ops.index("update_workflow") < ops.index("execute_workflow")
    assert result.status == "completed"
    assert [e.id for e in session.executions] == [result.execution_id]
    assert session.history.show_execution_panel is True


@pytest.mark.asyncio
async def test_fetch_execution_logs(session, repository):
    from schemas.workflow import ExecutionLog

    await session.open_workflow(1)
    repository.logs[9] = [ExecutionLog(id=1, execution_id=9, node_id="a", status="ok")]

    logs = await session.fetch_execution_logs(9)

    assert [log.node_id for log in logs] == ["a"]
    assert session.execution_logs == logs


@pytest.mark.asyncio
async def test_request_debug_run(session):
    assert session.request_debug_run() is None

    await session.open_workflow(2)
    assert session.request_debug_run() == 2
    assert session.debug_run_trigger == 2

    session.clear_debug_run_trigger()
    assert session.debug_run_trigger is None


# =============================================================================
# Listeners and persistence
# =============================================================================

@pytest.mark.asyncio
async def test_subscribe_reports_changed_keys(session):
    seen = []
    unsubscribe = session.subscribe(lambda s, changed: seen.append(changed))

    await session.open_workflow(1)
    assert any("active_tab_id" in changed for changed in seen)

    unsubscribe()
    seen.clear()
    session.add_node(new_node("z"))
    assert seen == []


@pytest.mark.asyncio
async def test_tabs_are_written_on_every_tab_change(session, kv_store):
    await session.open_workflow(1)
    await session.open_workflow(2)

    assert json.loads(kv_store.get_item(TAB_STORAGE_KEY)) == [
        {"id": 1, "name": "Ingest"},
        {"id": 2, "name": "Summarize"},
    ]
    assert json.loads(kv_store.get_item(ACTIVE_TAB_STORAGE_KEY)) == 2

    session.close_tab(1)
    session.close_tab(2)
    assert json.loads(kv_store.get_item(TAB_STORAGE_KEY)) == []
    assert json.loads(kv_store.get_item(ACTIVE_TAB_STORAGE_KEY)) is None


@pytest.mark.asyncio
async def test_restart_restores_tabs_and_refetches_active(repository, kv_store, session):
    await session.open_workflow(1)
    await session.open_workflow(2)
    session.add_node(new_node("unsaved"))

    restarted = SessionStore(repository, persistence=TabPersistence(kv_store))
    assert [t.id for t in restarted.open_tabs] == [1, 2]
    assert restarted.active_tab_id == 2
    assert restarted.nodes == []
    assert restarted.tab_states == {}

    await restarted.restore_tabs_on_startup()
    assert node_ids(restarted) == ["x", "y"]
    assert restarted.current_workflow.id == 2

    restarted.switch_tab(1)
    await restarted.wait_for_refreshes()
    assert node_ids(restarted) == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_unvisited_restored_tab_is_not_saved(repository):
    store = InMemoryKeyValueStore({
        TAB_STORAGE_KEY: json.dumps([{"id": 1, "name": "Ingest"}]),
        ACTIVE_TAB_STORAGE_KEY: "1",
    })
    session = SessionStore(repository, persistence=TabPersistence(store))

    assert await session.save_active_workflow() is None
    assert repository.updates == []


def test_stored_active_id_outside_tabs_is_ignored(repository):
    store = InMemoryKeyValueStore({
        TAB_STORAGE_KEY: json.dumps([{"id": 1, "name": "Ingest"}]),
        ACTIVE_TAB_STORAGE_KEY: "5",
    })

    session = SessionStore(repository, persistence=TabPersistence(store))

    assert session.active_tab_id is None
    assert [t.id for t in session.open_tabs] == [1]


@pytest.mark.asyncio
async def test_restore_without_active_tab_does_nothing(session, repository):
    assert await session.restore_tabs_on_startup() is None
    assert repository.calls == []


def test_build_session_uses_configured_storage(tmp_path):
    from config import Settings

    app_settings = Settings(storage_backend="file", storage_path=str(tmp_path))
    repository = FakeRepository([make_workflow(1, "Ingest")])

    session = build_session(app_settings, repository=repository)

    assert session.repository is repository
    session.persistence.save([Tab(id=1, name="Ingest")], 1)
    assert (tmp_path / f"{TAB_STORAGE_KEY}.json").exists()


@pytest.mark.asyncio
async def test_build_session_survives_unusable_storage(tmp_path):
    from config import Settings

    blocker = tmp_path / "not-a-directory"
    blocker.write_text("")
    app_settings = Settings(storage_backend="sqlite", storage_path=str(blocker))
    repository = FakeRepository([make_workflow(1, "Ingest", ["a"])])

    session = build_session(app_settings, repository=repository)
    await session.open_workflow(1)

    assert [tab.id for tab in session.open_tabs] == [1]
    assert session.persistence.load() == ([Tab(id=1, name="Ingest")], 1)
    session.close_tab(1)
    assert session.open_tabs == []
