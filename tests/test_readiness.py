"""Bounded TCP readiness probe."""

from __future__ import annotations

import asyncio
import time

import pytest

import theme_sandbox_server as tsm
from tests.conftest import free_port


def test_ready_when_listening():
    async def scenario():
        server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        try:
            return await tsm.ReadinessProber().wait_until_ready(port, max_attempts=3)
        finally:
            server.close()
            await server.wait_closed()

    assert asyncio.run(scenario()) is True


def test_gives_up_after_exact_attempts(monkeypatch: pytest.MonkeyPatch):
    attempts = []
    real_port_open = tsm._port_open

    async def counting_port_open(port, host=tsm.PROBE_HOST, timeout=1.0):
        attempts.append(port)
        return await real_port_open(port, host, timeout)

    monkeypatch.setattr(tsm, "_port_open", counting_port_open)
    port = free_port()

    start = time.monotonic()
    ok = asyncio.run(
        tsm.ReadinessProber().wait_until_ready(port, max_attempts=4, interval=0.05)
    )
    elapsed = time.monotonic() - start

    assert ok is False
    assert attempts == [port] * 4
    # Three sleeps between four attempts, none after the last
    assert elapsed < 2.0


def test_becomes_ready_mid_probe(monkeypatch: pytest.MonkeyPatch):
    results = iter([False, False, True])

    async def flaky_port_open(port, host=tsm.PROBE_HOST, timeout=1.0):
        return next(results)

    monkeypatch.setattr(tsm, "_port_open", flaky_port_open)
    prober = tsm.ReadinessProber(max_attempts=10, interval=0)
    assert asyncio.run(prober.wait_until_ready(6100)) is True


def test_constructor_defaults():
    prober = tsm.ReadinessProber()
    assert prober.max_attempts == 60
    assert prober.interval == 0.5
    assert prober.connect_timeout == 1.0
    assert prober.host == "127.0.0.1"


def test_port_open_closed_port():
    assert asyncio.run(tsm._port_open(free_port(), timeout=0.5)) is False
