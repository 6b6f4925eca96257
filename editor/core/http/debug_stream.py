# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Debug Run Stream Consumer

Turns the streaming response of POST /workflows/{id}/execute/debug into an
ordered sequence of DebugEvents. The server writes one `data: <json>` line per
event (started -> node* -> finished), flushed as they happen, so a single read
can end in the middle of a line or of a multi-byte character.

Two entry points:
- stream_debug_events(): async generator of StreamEvent | StreamError | StreamDone.
  Always ends with exactly one StreamDone unless the caller stops iterating.
- consume_debug_stream(): callback adapter (on_event, on_done, on_error) on top of it.

Usage:
    async for item in stream_debug_events(api, workflow_id):
        if isinstance(item, StreamEvent):
            render(item.event)
        elif isinstance(item, StreamError):
            show_error(item.message)
"""

import codecs
import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, List, Optional, Union

import httpx
from pydantic import ValidationError

from core.exceptions import StreamProtocolError, StreamTransportError
from schemas.workflow import DebugEvent

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "


# =============================================================================
# Stream items
# =============================================================================

@dataclass
class StreamEvent:
    event: DebugEvent


@dataclass
class StreamError:
    message: str
    status_code: Optional[int] = None


@dataclass
class StreamDone:
    events_received: int = 0


StreamItem = Union[StreamEvent, StreamError, StreamDone]


# =============================================================================
# Line parsing
# =============================================================================

def parse_data_line(line: str) -> Optional[DebugEvent]:
    """
    Parse one complete line of the stream.

    Returns:
        The event, or None for lines that carry no payload (blank lines,
        comments, anything without the `data: ` prefix, empty payloads)

    Raises:
        StreamProtocolError: If the payload is not a JSON event object
    """
    if not line.startswith(DATA_PREFIX):
        return None
    raw = line[len(DATA_PREFIX):]
    if raw.endswith("\r"):
        raw = raw[:-1]
    raw = raw.strip()
    if not raw:
        return None

    try:
        payload = json.loads(raw)
    except ValueError as e:
        raise StreamProtocolError(raw, str(e)) from e
    if not isinstance(payload, dict):
        raise StreamProtocolError(raw, f"expected an object, got {type(payload).__name__}")
    try:
        return DebugEvent.model_validate(payload)
    except ValidationError as e:
        raise StreamProtocolError(raw, f"{e.error_count()} validation error(s)") from e


class DebugLineDecoder:
    """
    Incremental bytes -> events decoder.

    Keeps a partial UTF-8 sequence and a partial line between feeds. Malformed
    lines are counted and skipped; they never stop the stream.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.dropped_lines = 0

    @property
    def pending(self) -> str:
        """Text received after the last line boundary."""
        return self._buffer

    def feed(self, chunk: bytes) -> List[DebugEvent]:
        self._buffer += self._decoder.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")
        return self._parse_lines(lines)

    def close(self) -> List[DebugEvent]:
        """Flush the decoder and parse a trailing line that had no newline."""
        self._buffer += self._decoder.decode(b"", final=True)
        remainder, self._buffer = self._buffer, ""
        if not remainder:
            return []
        return self._parse_lines([remainder])

    def _parse_lines(self, lines: List[str]) -> List[DebugEvent]:
        events = []
        for line in lines:
            try:
                event = parse_data_line(line)
            except StreamProtocolError as e:
                self.dropped_lines += 1
                logger.debug(f"Skipping malformed debug line: {e.message} ({e.detail.get('line')!r})")
                continue
            if event is not None:
                events.append(event)
        return events


# =============================================================================
# Consumer
# =============================================================================

def _has_body(response: httpx.Response) -> bool:
    if response.status_code in (204, 205):
        return False
    return response.headers.get("content-length") != "0"


def _check_response(response: httpx.Response) -> None:
    if not response.is_success:
        raise StreamTransportError(
            response.reason_phrase or "Request failed",
            status_code=response.status_code
        )
    if not _has_body(response):
        raise StreamTransportError("No response body", status_code=response.status_code)


async def stream_debug_events(api: Any, workflow_id: int) -> AsyncIterator[StreamItem]:
    """
    Start a debug run and yield its events as they arrive.

    Args:
        api: Object providing open_debug_stream(workflow_id), e.g. WorkflowApiClient
        workflow_id: Workflow to run

    Yields:
        StreamEvent per parsed line in server order, at most one StreamError,
        then exactly one StreamDone. Stopping iteration early closes the response.
    """
    received = 0
    logger.info(f"Debug run started for workflow {workflow_id}")
    try:
        async with api.open_debug_stream(workflow_id) as response:
            _check_response(response)

            decoder = DebugLineDecoder()
            async for chunk in response.aiter_bytes():
                for event in decoder.feed(chunk):
                    received += 1
                    yield StreamEvent(event)
            for event in decoder.close():
                received += 1
                yield StreamEvent(event)

            if decoder.dropped_lines:
                logger.warning(
                    f"Debug run for workflow {workflow_id} skipped {decoder.dropped_lines} malformed line(s)"
                )

    except StreamTransportError as e:
        logger.error(f"Debug run for workflow {workflow_id} failed: {e.message} (status {e.status_code})")
        yield StreamError(e.message, status_code=e.status_code)

    except Exception as e:
        logger.error(f"Debug stream for workflow {workflow_id} aborted: {type(e).__name__}: {e}")
        yield StreamError(str(e) or "Stream error")

    logger.info(f"Debug run finished for workflow {workflow_id} ({received} events)")
    yield StreamDone(events_received=received)


async def _invoke(callback: Callable[..., Any], *args: Any) -> None:
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


async def consume_debug_stream(
    api: Any,
    workflow_id: int,
    on_event: Callable[[DebugEvent], Any],
    on_done: Callable[[], Any],
    on_error: Callable[[str], Any],
) -> None:
    """
    Callback form of stream_debug_events().

    on_event fires once per event in order, on_error at most once per failure,
    and on_done exactly once on every exit path, always last. Callbacks may be
    plain functions or coroutines. An on_event or on_error callback that
    raises ends the stream through on_error like a transport failure would;
    an exception raised by on_done propagates to the caller.
    """
    stream = stream_debug_events(api, workflow_id)
    try:
        async for item in stream:
            if isinstance(item, StreamEvent):
                await _invoke(on_event, item.event)
            elif isinstance(item, StreamError):
                await _invoke(on_error, item.message)
    except Exception as e:
        logger.error(f"Debug stream callback failed: {type(e).__name__}: {e}")
        await _invoke(on_error, str(e) or "Stream error")
    finally:
        await stream.aclose()
        await _invoke(on_done)
