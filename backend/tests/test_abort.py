from __future__ import annotations

import asyncio

import pytest

from chatrelay.abort import AbortCoordinator, AbortReason, AbortState
from conftest import FakeRequest


def test_fire_is_idempotent_and_runs_callbacks_once():
    coordinator = AbortCoordinator()
    calls = []
    coordinator.arm(on_fire=lambda: calls.append("cancel"))
    assert coordinator.state is AbortState.ARMED

    assert coordinator.fire(AbortReason.UPSTREAM_FAILED) is True
    assert coordinator.fire(AbortReason.CLIENT_DISCONNECTED) is False
    assert calls == ["cancel"]
    assert coordinator.state is AbortState.FIRED
    assert coordinator.reason is AbortReason.UPSTREAM_FAILED
    assert not coordinator.client_closed


def test_cannot_arm_twice():
    coordinator = AbortCoordinator()
    coordinator.arm()
    with pytest.raises(RuntimeError):
        coordinator.arm()


def test_watcher_fires_on_client_disconnect():
    async def scenario():
        request = FakeRequest()
        coordinator = AbortCoordinator(request, poll_interval_s=0.01)
        cancelled = asyncio.Event()
        coordinator.arm(on_fire=cancelled.set)
        request.disconnected = True
        await asyncio.wait_for(cancelled.wait(), timeout=2)
        await coordinator.disarm()
        return coordinator

    coordinator = asyncio.run(scenario())
    assert coordinator.reason is AbortReason.CLIENT_DISCONNECTED
    assert coordinator.client_closed


def test_disarm_detaches_watcher_and_callbacks():
    async def scenario():
        request = FakeRequest()
        coordinator = AbortCoordinator(request, poll_interval_s=0.01)
        calls = []
        coordinator.arm(on_fire=lambda: calls.append(1))
        watcher = coordinator._watcher
        await coordinator.disarm()
        assert watcher is not None and watcher.done()
        assert coordinator._watcher is None
        coordinator.fire(AbortReason.RESPONSE_CLOSED)
        return calls

    assert asyncio.run(scenario()) == []


def test_late_observer_runs_immediately_after_fire():
    coordinator = AbortCoordinator()
    coordinator.arm()
    coordinator.fire(AbortReason.CLIENT_DISCONNECTED)
    calls = []
    coordinator.on_fire(lambda: calls.append("late"))
    assert calls == ["late"]
