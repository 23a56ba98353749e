"""Tests for the debouncer."""

import asyncio

import pytest

from kuna_calsync.debouncer import Debouncer


@pytest.mark.asyncio
async def test_burst_runs_action_once():
    calls = []

    async def action():
        calls.append(1)

    debouncer = Debouncer()
    for _ in range(5):
        debouncer.schedule(0.02, action)
    assert debouncer.pending

    await asyncio.sleep(0.1)
    await debouncer.wait_idle()
    assert calls == [1]
    assert not debouncer.pending


@pytest.mark.asyncio
async def test_cancel_drops_pending_action():
    calls = []
    debouncer = Debouncer()
    debouncer.schedule(0.02, lambda: calls.append(1))
    debouncer.cancel()

    await asyncio.sleep(0.05)
    assert calls == []


@pytest.mark.asyncio
async def test_failing_action_is_logged_not_raised(caplog):
    async def action():
        raise RuntimeError("push failed")

    debouncer = Debouncer()
    debouncer.schedule(0, action)
    await asyncio.sleep(0.02)
    await debouncer.wait_idle()

    assert "push failed" in caplog.text
