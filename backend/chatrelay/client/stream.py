"""Stream reconciler: decode the relayed event stream into increments.

The relayed body is UTF-8 text framed the text/event-stream way: increments
are separated by a blank line and each line may carry a ``data: `` prefix.
``[DONE]`` marks the logical end of the stream; anything after it is ignored.

Decoding is chunk-boundary invariant. Incomplete UTF-8 sequences are carried
by an incremental decoder and incomplete increments by a text carry buffer,
so a stream delivered one byte at a time reassembles exactly like one
delivered in a single read.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

import httpx

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
DATA_PREFIX = "data: "
ERROR_EVENT = "event: error"


class StreamError(Exception):
    """A stream failed; ``message`` is what gets surfaced to the user."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status


@dataclass(frozen=True)
class Increment:
    text: str
    is_error: bool = False


class IncrementDecoder:
    """Incremental decoder from raw bytes to framed increments."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.done = False

    def feed(self, chunk: bytes) -> list[Increment]:
        if self.done:
            return []
        self._buffer = (self._buffer + self._decoder.decode(chunk)).replace("\r\n", "\n")
        parts = self._buffer.split("\n\n")
        self._buffer = parts.pop()
        return self._frame(parts)

    def finish(self) -> list[Increment]:
        """Flush whatever is left once the transport has closed."""
        if self.done:
            return []
        tail = (self._buffer + self._decoder.decode(b"", final=True)).replace("\r\n", "\n")
        self._buffer = ""
        return self._frame([tail.rstrip("\n")])

    def _frame(self, parts: list[str]) -> list[Increment]:
        increments = []
        for part in parts:
            lines = part.split("\n")
            is_error = lines[0] == ERROR_EVENT
            if is_error:
                lines = lines[1:]
            text = "\n".join(
                line[len(DATA_PREFIX):] if line.startswith(DATA_PREFIX) else line
                for line in lines
            )
            if text == DONE_SENTINEL:
                self.done = True
                break
            if text or is_error:
                increments.append(Increment(text=text, is_error=is_error))
        return increments


class CancellationToken:
    """Cancels the stream bound to it. Cancelling more than once is a no-op."""

    def __init__(self) -> None:
        self._cancelled = False
        self._task: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def bind(self, task: asyncio.Task) -> None:
        self._task = task
        if self._cancelled:
            task.cancel()

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()


class StreamOutcome(str, Enum):
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


@dataclass
class StreamResult:
    outcome: StreamOutcome = StreamOutcome.COMPLETED
    status: Optional[int] = None
    latency_ms: Optional[int] = None
    error: Optional[str] = None


def error_message(response: httpx.Response) -> str:
    """Extract ``error.message`` from a failed response, falling back to its text."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        message = body["error"].get("message")
        if isinstance(message, str) and message:
            return message
    return response.text or "Request failed"


async def _consume(
    client: httpx.AsyncClient,
    path: str,
    payload: dict[str, Any],
    on_delta: Callable[[str], None],
    result: StreamResult,
) -> None:
    started = time.perf_counter()
    async with client.stream("POST", path, json=payload) as response:
        result.status = response.status_code
        result.latency_ms = int((time.perf_counter() - started) * 1000)
        if not response.is_success:
            await response.aread()
            raise StreamError(error_message(response), response.status_code)

        decoder = IncrementDecoder()

        def apply(increments: list[Increment]) -> None:
            for increment in increments:
                if increment.is_error:
                    raise StreamError(increment.text or "Stream interrupted")
                on_delta(increment.text)

        async for chunk in response.aiter_bytes():
            apply(decoder.feed(chunk))
            if decoder.done:
                return
        apply(decoder.finish())


async def stream_chat(
    client: httpx.AsyncClient,
    payload: dict[str, Any],
    on_delta: Callable[[str], None],
    on_error: Callable[[str], None],
    token: CancellationToken,
    path: str = "/api/chat",
) -> StreamResult:
    """Post ``payload`` and apply each increment through ``on_delta`` in order.

    Failures are reported once through ``on_error``. Cancelling ``token``
    aborts the network read and ends the call with an ``ABORTED`` result and
    no error report.
    """
    result = StreamResult()
    if token.cancelled:
        result.outcome = StreamOutcome.ABORTED
        return result

    task = asyncio.create_task(_consume(client, path, payload, on_delta, result))
    token.bind(task)
    try:
        await asyncio.wait({task})
    except asyncio.CancelledError:
        task.cancel()
        raise

    if task.cancelled():
        logger.info("Chat stream aborted")
        result.outcome = StreamOutcome.ABORTED
        return result

    exc = task.exception()
    if exc is None:
        return result

    if isinstance(exc, StreamError):
        message = exc.message
    else:
        message = str(exc) or type(exc).__name__
    logger.warning("Chat stream failed: %s", message)
    result.outcome = StreamOutcome.FAILED
    result.error = message
    on_error(message)
    return result
