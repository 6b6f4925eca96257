# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Debug Run Coordinator

Saves the active workflow, starts a debug run and records the streamed events.

A run belongs to the workflow it was started for, not to whatever tab is
visible: switching tabs neither aborts the stream nor moves its events. Only
DebugRun.cancel() stops a run early.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from core.exceptions import NetworkError
from core.http.debug_stream import StreamError, StreamEvent, stream_debug_events
from schemas.workflow import DebugEvent, DebugEventType

logger = logging.getLogger(__name__)


@dataclass
class DebugRun:
    """Events and outcome of one debug run."""

    workflow_id: int
    events: List[DebugEvent] = field(default_factory=list)
    error: Optional[str] = None
    running: bool = False
    cancelled: bool = False
    _task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def execution_id(self) -> Optional[int]:
        for event in self.events:
            if event.execution_id is not None:
                return event.execution_id
        return None

    @property
    def status(self) -> Optional[str]:
        """Status of the finished event, None while no finished event arrived."""
        for event in reversed(self.events):
            if event.event == DebugEventType.FINISHED.value:
                return event.status
        return None

    def cancel(self) -> None:
        """Stop the run. Events received so far are kept."""
        self.cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    def _on_task_done(self, _task: asyncio.Task) -> None:
        # A task cancelled before its first step never enters _execute
        self.running = False


class DebugRunner:
    """Starts debug runs for a session and keeps the latest run per workflow."""

    def __init__(self, session, api=None):
        self.session = session
        self.api = api or session.repository
        self.runs: Dict[int, DebugRun] = {}

    def get_run(self, workflow_id: int) -> Optional[DebugRun]:
        return self.runs.get(workflow_id)

    def start(self, workflow_id: Optional[int] = None,
              on_event: Optional[Callable[[DebugEvent], None]] = None) -> Optional[DebugRun]:
        """Run in a background task. Returns the run immediately."""
        workflow_id = workflow_id if workflow_id is not None else self.session.active_tab_id
        if workflow_id is None:
            return None
        existing = self.runs.get(workflow_id)
        if existing is not None and existing.running and not existing._task.done():
            return existing

        run = DebugRun(workflow_id=workflow_id, running=True)
        self.runs[workflow_id] = run
        run._task = asyncio.get_running_loop().create_task(self._execute(run, on_event))
        run._task.add_done_callback(run._on_task_done)
        return run

    async def run(self, workflow_id: Optional[int] = None,
                  on_event: Optional[Callable[[DebugEvent], None]] = None) -> Optional[DebugRun]:
        """Run and wait for the stream to finish."""
        run = self.start(workflow_id, on_event)
        if run is None:
            return None
        try:
            await run._task
        except asyncio.CancelledError:
            if not run.cancelled:
                raise
        return run

    async def run_pending(self) -> Optional[DebugRun]:
        """Start the run requested through SessionStore.request_debug_run(), if any."""
        trigger = self.session.debug_run_trigger
        if trigger is None:
            return None
        return await self.run(trigger)

    async def _execute(self, run: DebugRun, on_event: Optional[Callable[[DebugEvent], None]]) -> None:
        workflow_id = run.workflow_id
        if self.session.debug_run_trigger == workflow_id:
            self.session.clear_debug_run_trigger()

        stream = None
        try:
            if self.session.active_tab_id == workflow_id:
                try:
                    await self.session.save_active_workflow()
                except NetworkError as e:
                    logger.error(f"Debug run for workflow {workflow_id} aborted, save failed: {e.message}")
                    run.error = e.message
                    return

            stream = stream_debug_events(self.api, workflow_id)
            async for item in stream:
                if isinstance(item, StreamEvent):
                    run.events.append(item.event)
                    if on_event is not None:
                        on_event(item.event)
                elif isinstance(item, StreamError):
                    run.error = item.message
        except asyncio.CancelledError:
            logger.info(f"Debug run for workflow {workflow_id} cancelled after {len(run.events)} events")
            raise
        finally:
            # Also reached when cancelled while the save is in flight
            if stream is not None:
                await stream.aclose()
            run.running = False

        if self.session.active_tab_id == workflow_id:
            try:
                await self.session.fetch_executions()
            except NetworkError as e:
                logger.warning(f"Could not refresh executions after debug run: {e.message}")
