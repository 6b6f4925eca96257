# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Async HTTP client for the workflow API.

This is the workflow graph repository the editor session talks to: fetch and
save workflow definitions, trigger executions and read execution history.
Every failure is raised as a NetworkError (or a subclass), so callers only
ever need to handle one family of exceptions.

Usage:
    async with WorkflowApiClient() as api:
        workflow = await api.get_workflow(42)
"""

import asyncio
import logging
from typing import Any, AsyncContextManager, Awaitable, Callable, Dict, List, Optional, Protocol, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from config import settings
from core.exceptions import NetworkError, RepositoryTimeoutError, ResourceNotFoundError
from schemas.workflow import (
    Execution,
    ExecutionLog,
    ExecutionResult,
    Workflow,
    WorkflowDef,
    WorkflowUpdate,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)

# Bad Gateway, Service Unavailable, Gateway Timeout
RETRY_STATUS_CODES = [502, 503, 504]


class WorkflowRepository(Protocol):
    """The subset of the workflow API the session store depends on."""

    async def list_workflows(self) -> List[Workflow]: ...

    async def get_workflow(self, workflow_id: int) -> Workflow: ...

    async def create_workflow(self, name: str, description: str,
                              definition: Optional[WorkflowDef] = None) -> Workflow: ...

    async def update_workflow(self, workflow_id: int, update: WorkflowUpdate) -> Optional[Workflow]: ...

    async def delete_workflow(self, workflow_id: int) -> None: ...

    async def import_workflow(self, data: Dict[str, Any]) -> Optional[Workflow]: ...

    async def export_workflow(self, workflow_id: int) -> Dict[str, Any]: ...

    async def execute_workflow(self, workflow_id: int) -> ExecutionResult: ...

    async def get_executions(self, workflow_id: int) -> List[Execution]: ...

    async def get_execution_logs(self, execution_id: int) -> List[ExecutionLog]: ...

    def open_debug_stream(self, workflow_id: int) -> AsyncContextManager[httpx.Response]: ...


# ============================================================================
# Retry Logic
# ============================================================================

async def _retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    max_retries: int,
    initial_delay: float,
    backoff_factor: float,
    retry_on_status: Optional[List[int]] = None
) -> T:
    """
    Retry a function with exponential backoff.

    Args:
        func: Async function to retry
        max_retries: Maximum number of retry attempts
        initial_delay: Initial delay in seconds
        backoff_factor: Multiplier for delay between retries
        retry_on_status: List of HTTP status codes to retry on

    Returns:
        Result from function call

    Raises:
        Last exception if all retries fail
    """
    retry_on_status = retry_on_status or RETRY_STATUS_CODES

    for attempt in range(max_retries + 1):
        try:
            return await func()
        except httpx.HTTPStatusError as e:
            if e.response.status_code not in retry_on_status or attempt >= max_retries:
                raise
            delay = initial_delay * (backoff_factor ** attempt)
            logger.warning(
                f"Retry {attempt + 1}/{max_retries} after {delay}s "
                f"(status {e.response.status_code})"
            )
            await asyncio.sleep(delay)
        except httpx.RequestError as e:
            if attempt >= max_retries:
                logger.error(f"All {max_retries} retries exhausted")
                raise
            delay = initial_delay * (backoff_factor ** attempt)
            logger.warning(
                f"Retry {attempt + 1}/{max_retries} after {delay}s "
                f"(error: {type(e).__name__})"
            )
            await asyncio.sleep(delay)

    raise RuntimeError("unreachable")


# ============================================================================
# Client
# ============================================================================

class WorkflowApiClient:
    """
    httpx-based implementation of WorkflowRepository.

    Idempotent requests (GET, PUT, DELETE) are retried on transient failures;
    POSTs are sent once so an execution is never triggered twice.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_initial_delay: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url or settings.api_base_url
        self.max_retries = settings.max_retries if max_retries is None else max_retries
        self.retry_initial_delay = (
            settings.retry_initial_delay if retry_initial_delay is None else retry_initial_delay
        )
        self.stream_timeout = httpx.Timeout(
            connect=settings.debug_stream_connect_timeout,
            read=settings.debug_stream_read_timeout,
            write=settings.debug_stream_connect_timeout,
            pool=settings.debug_stream_connect_timeout
        )
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or settings.request_timeout_seconds,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )
        logger.info(f"Workflow API client initialized ({self.base_url})")

    async def __aenter__(self) -> "WorkflowApiClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Request plumbing
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        resource: Optional[str] = None,
        resource_id: Any = None,
        retry: bool = True,
    ) -> httpx.Response:
        async def _send() -> httpx.Response:
            response = await self._client.request(method, path, json=json, params=params)
            response.raise_for_status()
            return response

        logger.debug(f"[Workflow API] {method} {path}")
        try:
            if retry and self.max_retries > 0:
                return await _retry_with_backoff(
                    _send,
                    max_retries=self.max_retries,
                    initial_delay=self.retry_initial_delay,
                    backoff_factor=settings.retry_backoff_factor,
                )
            return await _send()

        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            error_detail = e.response.text.strip() or e.response.reason_phrase
            logger.error(f"[Workflow API] {method} {path} returned {status} - {error_detail}")
            if status == 404 and resource is not None:
                raise ResourceNotFoundError(resource, resource_id, detail={"response": error_detail}) from e
            raise NetworkError(
                f"{method} {path} failed with status {status}: {error_detail}",
                status_code=status,
                detail={"url": str(e.request.url), "method": method, "response": error_detail}
            ) from e

        except httpx.TimeoutException as e:
            logger.error(f"[Workflow API] {method} {path} timed out: {e}")
            raise RepositoryTimeoutError(
                f"{method} {path} timed out",
                detail={"error": type(e).__name__}
            ) from e

        except httpx.RequestError as e:
            logger.error(f"[Workflow API] Failed to reach {self.base_url}: {e}")
            raise NetworkError(
                f"Connection error: {type(e).__name__}",
                detail={"url": f"{self.base_url}{path}", "error": str(e)}
            ) from e

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise NetworkError(
                f"Invalid JSON from {response.request.method} {response.request.url.path}",
                status_code=502
            ) from e

    @staticmethod
    def _parse(model: Type[M], payload: Any) -> M:
        try:
            return model.model_validate(payload)
        except ValidationError as e:
            raise NetworkError(
                f"Unexpected {model.__name__} payload",
                status_code=502,
                detail={"errors": e.errors(include_url=False)}
            ) from e

    def _parse_list(self, model: Type[M], payload: Any) -> List[M]:
        return [self._parse(model, item) for item in (payload or [])]

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    async def list_workflows(self) -> List[Workflow]:
        response = await self._request("GET", "/workflows")
        return self._parse_list(Workflow, self._json(response))

    async def get_workflow(self, workflow_id: int) -> Workflow:
        response = await self._request(
            "GET", f"/workflows/{workflow_id}", resource="Workflow", resource_id=workflow_id
        )
        return self._parse(Workflow, self._json(response))

    async def create_workflow(
        self,
        name: str,
        description: str,
        definition: Optional[WorkflowDef] = None
    ) -> Workflow:
        body = {
            "name": name,
            "description": description,
            "definition": (definition or WorkflowDef()).to_wire(),
        }
        response = await self._request("POST", "/workflows", json=body, retry=False)
        return self._parse(Workflow, self._json(response))

    async def update_workflow(self, workflow_id: int, update: WorkflowUpdate) -> Optional[Workflow]:
        response = await self._request(
            "PUT",
            f"/workflows/{workflow_id}",
            json=update.to_wire(),
            resource="Workflow",
            resource_id=workflow_id,
        )
        payload = self._json(response)
        # Older servers acknowledge with an empty body
        if isinstance(payload, dict) and "id" in payload:
            return self._parse(Workflow, payload)
        return None

    async def delete_workflow(self, workflow_id: int) -> None:
        await self._request(
            "DELETE", f"/workflows/{workflow_id}", resource="Workflow", resource_id=workflow_id
        )

    async def export_workflow(self, workflow_id: int) -> Dict[str, Any]:
        response = await self._request(
            "GET", f"/workflows/{workflow_id}/export", resource="Workflow", resource_id=workflow_id
        )
        return self._json(response) or {}

    async def import_workflow(self, data: Dict[str, Any]) -> Optional[Workflow]:
        response = await self._request("POST", "/workflows/import", json=data, retry=False)
        payload = self._json(response)
        if isinstance(payload, dict) and payload.get("id"):
            return self._parse(Workflow, payload)
        return None

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    async def execute_workflow(self, workflow_id: int) -> ExecutionResult:
        response = await self._request(
            "POST",
            f"/workflows/{workflow_id}/execute",
            resource="Workflow",
            resource_id=workflow_id,
            retry=False,
        )
        return self._parse(ExecutionResult, self._json(response) or {})

    async def get_executions(self, workflow_id: int) -> List[Execution]:
        response = await self._request("GET", f"/workflows/{workflow_id}/executions")
        return self._parse_list(Execution, self._json(response))

    async def get_execution(self, execution_id: int) -> Execution:
        response = await self._request(
            "GET", f"/executions/{execution_id}", resource="Execution", resource_id=execution_id
        )
        return self._parse(Execution, self._json(response))

    async def get_execution_logs(self, execution_id: int) -> List[ExecutionLog]:
        response = await self._request("GET", f"/executions/{execution_id}/logs")
        return self._parse_list(ExecutionLog, self._json(response))

    def open_debug_stream(self, workflow_id: int) -> AsyncContextManager[httpx.Response]:
        """
        Start a debug run. The returned context manager yields the streaming
        response unread; the status is not checked here.
        """
        return self._client.stream(
            "POST",
            f"/workflows/{workflow_id}/execute/debug",
            headers={"Accept": "text/event-stream"},
            timeout=self.stream_timeout,
        )
