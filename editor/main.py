# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Eflo editor command line

Small terminal front end over the editor core, mainly for poking at a running
workflow service:

    python main.py tabs             # tabs persisted by the last session
    python main.py show 42          # workflow definition as JSON
    python main.py debug 42         # stream a debug run, one JSON event per line
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import TextIO

from config import settings
from core.exceptions import EfloException
from core.http.client import WorkflowApiClient
from core.http.debug_stream import consume_debug_stream
from core.logging_config import configure_logging
from services.tab_storage import TabPersistence, create_tab_persistence

logger = logging.getLogger(__name__)


async def run_debug(api, workflow_id: int, out: TextIO = sys.stdout) -> int:
    """Print each debug event as a JSON line. Returns the process exit code."""
    errors = []

    def on_event(event):
        out.write(json.dumps(event.to_wire()) + "\n")
        out.flush()

    def on_error(message: str):
        errors.append(message)
        logger.error(f"Debug run failed: {message}")

    def on_done():
        logger.info(f"Debug run for workflow {workflow_id} done")

    await consume_debug_stream(api, workflow_id, on_event, on_done, on_error)
    return 1 if errors else 0


async def show_workflow(api, workflow_id: int, out: TextIO = sys.stdout) -> int:
    workflow = await api.get_workflow(workflow_id)
    out.write(f"=== WORKFLOW #{workflow.id}: {workflow.name} ===\n")
    out.write(json.dumps(workflow.definition.to_wire(), indent=2) + "\n")
    return 0


def show_tabs(persistence: TabPersistence, out: TextIO = sys.stdout) -> int:
    tabs, active_tab_id = persistence.load()
    if not tabs:
        out.write("No open tabs\n")
        return 0
    for tab in tabs:
        marker = "*" if tab.id == active_tab_id else " "
        out.write(f"{marker} {tab.id}\t{tab.name}\n")
    return 0


async def _run_with_client(command: str, workflow_id: int) -> int:
    async with WorkflowApiClient() as api:
        if command == "debug":
            return await run_debug(api, workflow_id)
        return await show_workflow(api, workflow_id)


def main(argv=None) -> int:
    """Main entry point for command-line usage."""
    parser = argparse.ArgumentParser(
        description="Eflo workflow editor tools"
    )
    parser.add_argument(
        "command",
        choices=["tabs", "show", "debug"],
        help="Command to execute"
    )
    parser.add_argument(
        "workflow_id",
        nargs="?",
        type=int,
        help="Workflow id (for show and debug)"
    )

    args = parser.parse_args(argv)
    configure_logging()

    try:
        if args.command == "tabs":
            return show_tabs(create_tab_persistence(settings.storage_backend, settings.storage_path))

        if args.workflow_id is None:
            parser.error(f"workflow_id is required for the {args.command} command")
        return asyncio.run(_run_with_client(args.command, args.workflow_id))

    except EfloException as e:
        logger.error(f"Error: {e.message}")
        return 1


if __name__ == "__main__":
    exit(main())
