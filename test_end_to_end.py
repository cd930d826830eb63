#!/usr/bin/env python3
"""
End-to-end tests: full application, real sockets
"""

import asyncio
import os
import signal
import sys

import pytest

from app import ProxyApplication
from config_manager import build_config
from proxy_test_utils import (
    mock_service,
    open_client,
    read_exactly,
    read_to_eof,
    run,
    unused_address,
    wait_until,
)
from shutdown import ShutdownState

def make_app(backends, **overrides):
    config = build_config(listen_addr="127.0.0.1:0", backends=backends, **overrides)
    app = ProxyApplication(config=config, configure_logging=False)
    app.initialize()
    app.listener.bind()
    return app

def test_ping_through_proxy_to_echo_backend():
    async def scenario():
        async with mock_service('echo') as backend:
            app = make_app([backend.address], connection_timeout=60)
            app_task = asyncio.ensure_future(app.start())

            reader, writer = await open_client(app.listener.bound_address)
            writer.write(b"ping")
            await writer.drain()
            assert await read_exactly(reader, 4) == b"ping"
            writer.close()

            await wait_until(lambda: len(app.active) == 0)
            app.request_shutdown("test done")
            assert await asyncio.wait_for(app_task, 5) == "test done"

    run(scenario())

def test_unreachable_backends_close_client_within_dial_timeout():
    async def scenario():
        app = make_app([unused_address(), unused_address()], dial_timeout=1.0)
        app_task = asyncio.ensure_future(app.start())
        loop = asyncio.get_running_loop()

        reader, writer = await open_client(app.listener.bound_address)
        started = loop.time()
        assert await read_to_eof(reader, timeout=3) == b""
        assert loop.time() - started < 3
        writer.close()

        await wait_until(lambda: len(app.active) == 0)
        app.request_shutdown("test done")
        await asyncio.wait_for(app_task, 5)

    run(scenario())

def test_idle_timeout_stops_the_proxy():
    async def scenario():
        async with mock_service('echo') as backend:
            app = make_app([backend.address], connection_timeout=1)
            reason = await asyncio.wait_for(app.start(), 5)

            assert reason == "idle timeout"
            assert app.coordinator.state is ShutdownState.STOPPED
            assert not app.listener.is_serving

    run(scenario())

def shutdown_mid_transfer(trigger):
    async def scenario():
        async with mock_service('echo') as backend:
            app = make_app([backend.address])
            address = app.listener.bound_address
            app_task = asyncio.ensure_future(app.start())

            reader, writer = await open_client(address)
            writer.write(b"part one")
            await writer.drain()
            assert await read_exactly(reader, 8) == b"part one"

            trigger(app)
            await wait_until(lambda: app.coordinator.state is ShutdownState.DRAINING)

            # No new connections once draining
            await wait_until(lambda: not app.listener.is_serving)
            with pytest.raises(OSError):
                await open_client(address)

            # The in-flight relay finishes its transfer
            writer.write(b"part two")
            await writer.drain()
            assert await read_exactly(reader, 8) == b"part two"
            assert not app_task.done()

            writer.close()
            reason = await asyncio.wait_for(app_task, 5)
            assert app.coordinator.state is ShutdownState.STOPPED
            assert len(app.active) == 0
            return reason

    return run(scenario())

def test_shutdown_request_drains_in_flight_relay():
    assert shutdown_mid_transfer(lambda app: app.request_shutdown("operator")) == "operator"

@pytest.mark.skipif(sys.platform == 'win32', reason="POSIX signals only")
def test_sigterm_drains_in_flight_relay():
    reason = shutdown_mid_transfer(lambda app: os.kill(os.getpid(), signal.SIGTERM))
    assert reason == "SIGTERM"
