# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Execution History Cache

In-memory list of past executions and the logs of one selected execution,
for the workflow in the active tab. Invalidated on every tab transition.
"""

import logging
from typing import List, Optional

from schemas.workflow import Execution, ExecutionLog

logger = logging.getLogger(__name__)


class ExecutionHistory:
    """
    Executions/logs for the active tab.

    clear() bumps a generation counter; a fetch that was started before the
    most recent clear() drops its result instead of writing history that
    belongs to a tab the user already left.
    """

    def __init__(self, repository):
        self.repository = repository
        self.executions: List[Execution] = []
        self.execution_logs: List[ExecutionLog] = []
        self.show_execution_panel = False
        self._generation = 0

    def clear(self) -> None:
        self._generation += 1
        self.executions = []
        self.execution_logs = []

    def set_show_execution_panel(self, show: bool) -> None:
        self.show_execution_panel = show

    async def fetch_executions(self, workflow_id: Optional[int]) -> List[Execution]:
        if workflow_id is None:
            return self.executions
        generation = self._generation
        executions = await self.repository.get_executions(workflow_id)
        if generation != self._generation:
            logger.debug(f"Discarding stale executions for workflow {workflow_id}")
            return executions
        self.executions = executions
        return executions

    async def fetch_execution_logs(self, execution_id: int) -> List[ExecutionLog]:
        generation = self._generation
        logs = await self.repository.get_execution_logs(execution_id)
        if generation != self._generation:
            logger.debug(f"Discarding stale logs for execution {execution_id}")
            return logs
        self.execution_logs = logs
        return logs
