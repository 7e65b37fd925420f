from __future__ import annotations

import asyncio
import contextlib
import enum
from typing import Any, Callable, Protocol

from .config import ABORT_POLL_S
from .logging_utils import get_logger

log = get_logger(__name__)


class DisconnectAware(Protocol):
    async def is_disconnected(self) -> bool: ...


class AbortState(str, enum.Enum):
    IDLE = "idle"
    ARMED = "armed"
    FIRED = "fired"


class AbortReason(str, enum.Enum):
    CLIENT_DISCONNECTED = "client_disconnected"
    RESPONSE_CLOSED = "response_closed"
    UPSTREAM_FAILED = "upstream_failed"


_CLIENT_REASONS = (AbortReason.CLIENT_DISCONNECTED, AbortReason.RESPONSE_CLOSED)


class AbortCoordinator:
    """Single cancellation signal for one chat turn.

    The inbound request (client socket), the outbound response body and the
    upstream fetch have independent lifetimes. Any of them may ``fire`` the
    coordinator; only the first call has effect and runs the registered
    callbacks (typically cancelling the upstream pump task).
    """

    def __init__(self, request: DisconnectAware | None = None, *, poll_interval_s: float = ABORT_POLL_S) -> None:
        self.request = request
        self.poll_interval_s = poll_interval_s
        self.state = AbortState.IDLE
        self.reason: AbortReason | None = None
        self._callbacks: list[Callable[[], Any]] = []
        self._watcher: asyncio.Task[None] | None = None

    @property
    def fired(self) -> bool:
        return self.state is AbortState.FIRED

    @property
    def client_closed(self) -> bool:
        return self.reason in _CLIENT_REASONS

    def arm(self, on_fire: Callable[[], Any] | None = None) -> None:
        if self.state is not AbortState.IDLE:
            raise RuntimeError(f"AbortCoordinator cannot be armed from state {self.state.value}")
        if on_fire is not None:
            self._callbacks.append(on_fire)
        self.state = AbortState.ARMED
        if self.request is not None:
            self._watcher = asyncio.create_task(self._watch_disconnect())

    def on_fire(self, callback: Callable[[], Any]) -> None:
        """Register another observer; runs immediately when the coordinator has already fired."""
        if self.fired:
            callback()
            return
        self._callbacks.append(callback)

    def fire(self, reason: AbortReason) -> bool:
        if self.state is AbortState.FIRED:
            return False
        self.state = AbortState.FIRED
        self.reason = reason
        callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            try:
                cb()
            except Exception:
                log.exception("Abort callback failed")
        return True

    async def _watch_disconnect(self) -> None:
        assert self.request is not None
        while self.state is AbortState.ARMED:
            if await self.request.is_disconnected():
                if self.fire(AbortReason.CLIENT_DISCONNECTED):
                    log.warning("Client disconnected; aborting upstream request.")
                return
            await asyncio.sleep(self.poll_interval_s)

    async def disarm(self) -> None:
        """Detach every observer. Safe to call more than once and from any state."""
        self._callbacks = []
        watcher, self._watcher = self._watcher, None
        if watcher is not None and not watcher.done():
            watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watcher
