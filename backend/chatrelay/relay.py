from __future__ import annotations

import asyncio
import codecs
import contextlib
import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Protocol

from .abort import AbortCoordinator, AbortReason, AbortState
from .config import ABORT_POLL_S
from .logging_utils import get_logger
from .ollama import OllamaClient

log = get_logger(__name__)

RELAY_ERROR_MESSAGE = "Failed to contact Ollama"

_EOF = object()


class UpstreamBody(Protocol):
    def aiter_bytes(self) -> AsyncIterator[bytes]: ...

    async def aclose(self) -> None: ...


class NdjsonLineBuffer:
    """Splits a byte stream into complete lines regardless of how reads are chunked."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[str]:
        self._buffer += self._decoder.decode(chunk)
        return self._drain()

    def flush(self) -> list[str]:
        self._buffer += self._decoder.decode(b"", final=True)
        lines = self._drain()
        tail, self._buffer = self._buffer.strip(), ""
        if tail:
            lines.append(tail)
        return lines

    def _drain(self) -> list[str]:
        *complete, self._buffer = self._buffer.split("\n")
        return [line.strip() for line in complete if line.strip()]


@dataclass(frozen=True)
class UpstreamFrame:
    delta: str | None = None
    error: str | None = None


def extract_delta(payload: dict[str, Any]) -> str | None:
    # Chat endpoint shape wins over the generate endpoint shape.
    message = payload.get("message")
    if isinstance(message, dict):
        content = message.get("content")
        if isinstance(content, str) and content:
            return content
    response = payload.get("response")
    if isinstance(response, str) and response:
        return response
    return None


def parse_frame(line: str) -> UpstreamFrame | None:
    try:
        payload = json.loads(line)
    except ValueError:
        log.warning("Skipping non-JSON chunk from upstream: %.200s", line)
        return None
    if not isinstance(payload, dict):
        log.warning("Skipping non-object chunk from upstream: %.200s", line)
        return None
    error = payload.get("error")
    if error and not isinstance(error, str):
        error = json.dumps(error, ensure_ascii=False)
    return UpstreamFrame(delta=extract_delta(payload), error=error or None)


def encode_frame(payload: dict[str, Any]) -> bytes:
    return (json.dumps(payload, ensure_ascii=False) + "\n").encode("utf-8")


class StreamRelay:
    """Re-frames the upstream NDJSON token stream for the client.

    Preconditions: the user's turn is already stored and ``upstream`` is an open,
    status-checked response. Postconditions: exactly one terminal frame
    (``done`` or ``error``) is written unless the client went away, and the
    assistant reply is handed to ``on_complete`` only after a clean upstream end.
    """

    def __init__(
        self,
        client: OllamaClient,
        *,
        queue_size: int = 64,
        poll_interval_s: float = ABORT_POLL_S,
    ) -> None:
        self.client = client
        self.queue_size = queue_size
        self.poll_interval_s = poll_interval_s

    async def open(self, turns: list[dict[str, str]], model: str) -> Any:
        return await self.client.open_chat_stream(turns, model)

    async def stream(
        self,
        upstream: UpstreamBody,
        coordinator: AbortCoordinator,
        *,
        on_complete: Callable[[str], Any],
        label: str = "",
    ) -> AsyncIterator[bytes]:
        queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=self.queue_size)
        done = asyncio.Event()
        pump_err: Exception | None = None

        async def pump() -> None:
            nonlocal pump_err
            lines = NdjsonLineBuffer()
            try:
                async for chunk in upstream.aiter_bytes():
                    for line in lines.feed(chunk):
                        await queue.put(line)
                for line in lines.flush():
                    await queue.put(line)
                await queue.put(_EOF)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                pump_err = e
                await queue.put(_EOF)
            finally:
                done.set()

        task = asyncio.create_task(pump())
        if coordinator.state is AbortState.IDLE:
            coordinator.arm()
        coordinator.on_fire(task.cancel)
        parts: list[str] = []
        try:
            while not coordinator.fired:
                try:
                    item = await asyncio.wait_for(queue.get(), timeout=self.poll_interval_s)
                except asyncio.TimeoutError:
                    if coordinator.fired or (done.is_set() and queue.empty()):
                        break
                    continue
                if item is _EOF:
                    break
                frame = parse_frame(item)
                if frame is None:
                    continue
                if frame.delta:
                    parts.append(frame.delta)
                    yield encode_frame({"type": "delta", "content": frame.delta})
                if frame.error:
                    log.warning("Upstream reported an error %s| %s", f"({label}) " if label else "", frame.error)
                    coordinator.fire(AbortReason.UPSTREAM_FAILED)
                    yield encode_frame({"type": "error", "message": frame.error})
                    return

            if coordinator.fired:
                log.warning("Client connection closed before response finished %s", label)
                return
            if pump_err is not None:
                raise pump_err

            answer = "".join(parts)
            if answer.strip():
                on_complete(answer)
            yield encode_frame({"type": "done"})
        except (asyncio.CancelledError, GeneratorExit):
            if coordinator.fire(AbortReason.RESPONSE_CLOSED):
                log.warning("Response closed before the relay finished %s", label)
            raise
        except Exception:
            if coordinator.client_closed:
                log.warning("Relay stopped after client left %s", label)
                return
            log.exception("Upstream stream failed %s", label)
            coordinator.fire(AbortReason.UPSTREAM_FAILED)
            yield encode_frame({"type": "error", "message": RELAY_ERROR_MESSAGE})
        finally:
            await coordinator.disarm()
            if not task.done():
                task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
            await upstream.aclose()
