#!/usr/bin/env python3
"""
Tests for the listener accept loop
"""

import asyncio
import socket

import pytest

from backend_selector import RandomSelector
from config_manager import build_config
from connection_relay import ActiveConnectionSet, ConnectionRelay
from listener import ProxyListener
from proxy_errors import BindError
from proxy_test_utils import (
    ScriptedSelector,
    mock_service,
    open_client,
    read_exactly,
    read_to_eof,
    run,
    unused_address,
    wait_until,
)

def make_listener(backends, selector=None, on_accept=None, dial_timeout=2.0):
    config = build_config(listen_addr="127.0.0.1:0", backends=backends,
                          dial_timeout=dial_timeout)
    return ProxyListener(
        config,
        selector or RandomSelector(),
        ConnectionRelay(dial_timeout=config.dial_timeout),
        ActiveConnectionSet(),
        on_accept=on_accept
    )

async def stop(listener, serve_task):
    listener.close()
    await asyncio.wait_for(asyncio.gather(serve_task, return_exceptions=True), 5)

def test_bind_failure_raises_bind_error():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as taken:
        taken.bind(('127.0.0.1', 0))
        taken.listen(1)
        addr = "127.0.0.1:%d" % taken.getsockname()[1]

        listener = ProxyListener(build_config(listen_addr=addr, backends=["127.0.0.1:1"]),
                                 RandomSelector(), ConnectionRelay(), ActiveConnectionSet())
        with pytest.raises(BindError) as excinfo:
            listener.bind()

    assert excinfo.value.fatal
    assert addr in str(excinfo.value)

def test_bound_address_reports_ephemeral_port():
    listener = make_listener(["127.0.0.1:1"])
    listener.bind()
    try:
        host, port = listener.bound_address
        assert host == "127.0.0.1"
        assert port > 0
    finally:
        listener.close()

def test_relays_through_selected_backend():
    async def scenario():
        async with mock_service('echo') as backend:
            accepted = []
            listener = make_listener([backend.address], on_accept=accepted.append)
            listener.bind()
            serve_task = asyncio.ensure_future(listener.serve())

            reader, writer = await open_client(listener.bound_address)
            writer.write(b"ping")
            await writer.drain()
            assert await read_exactly(reader, 4) == b"ping"

            assert listener.accepted == 1
            assert len(accepted) == 1
            assert accepted[0].backend_addr == backend.address
            assert len(listener.active) == 1

            writer.close()
            await wait_until(lambda: len(listener.active) == 0)
            await stop(listener, serve_task)

    run(scenario())

def test_accept_loop_is_not_blocked_by_open_relays():
    async def scenario():
        async with mock_service('echo') as backend:
            listener = make_listener([backend.address])
            listener.bind()
            serve_task = asyncio.ensure_future(listener.serve())

            clients = [await open_client(listener.bound_address) for _ in range(5)]
            for index, (reader, writer) in enumerate(clients):
                message = b"client-%d" % index
                writer.write(message)
                await writer.drain()
                assert await read_exactly(reader, len(message)) == message

            await wait_until(lambda: len(listener.active) == 5)

            for reader, writer in clients:
                writer.close()
            await wait_until(lambda: len(listener.active) == 0)
            await stop(listener, serve_task)

    run(scenario())

def test_unreachable_backend_does_not_stop_listener():
    async def scenario():
        async with mock_service('echo') as backend:
            selector = ScriptedSelector([unused_address(), backend.address])
            listener = make_listener([backend.address], selector=selector)
            listener.bind()
            serve_task = asyncio.ensure_future(listener.serve())

            reader, writer = await open_client(listener.bound_address)
            assert await read_to_eof(reader) == b""
            writer.close()

            reader, writer = await open_client(listener.bound_address)
            writer.write(b"still here")
            await writer.drain()
            assert await read_exactly(reader, 10) == b"still here"
            writer.close()

            assert not serve_task.done()
            await wait_until(lambda: len(listener.active) == 0)
            await stop(listener, serve_task)

    run(scenario())

def test_close_stops_accepting_but_keeps_relays():
    async def scenario():
        async with mock_service('echo') as backend:
            listener = make_listener([backend.address])
            listener.bind()
            address = listener.bound_address
            serve_task = asyncio.ensure_future(listener.serve())

            reader, writer = await open_client(address)
            writer.write(b"one")
            await writer.drain()
            assert await read_exactly(reader, 3) == b"one"

            await stop(listener, serve_task)
            assert not listener.is_serving

            with pytest.raises(OSError):
                await open_client(address)

            # The relay accepted before close keeps working
            writer.write(b"two")
            await writer.drain()
            assert await read_exactly(reader, 3) == b"two"
            writer.close()
            await wait_until(lambda: len(listener.active) == 0)

    run(scenario())

def test_close_is_idempotent():
    async def scenario():
        listener = make_listener(["127.0.0.1:1"])
        listener.bind()
        serve_task = asyncio.ensure_future(listener.serve())
        await asyncio.sleep(0)
        listener.close()
        listener.close()
        await asyncio.wait_for(asyncio.gather(serve_task, return_exceptions=True), 5)
        assert serve_task.done()

    run(scenario())

def test_accept_error_is_logged_and_loop_continues(monkeypatch):
    async def scenario():
        async with mock_service('echo') as backend:
            listener = make_listener([backend.address])
            listener.bind()
            loop = asyncio.get_running_loop()
            real_accept = loop.sock_accept
            failures = []

            async def flaky_accept(sock):
                if not failures:
                    failures.append(1)
                    raise OSError(24, "Too many open files")
                return await real_accept(sock)

            monkeypatch.setattr(loop, "sock_accept", flaky_accept)
            serve_task = asyncio.ensure_future(listener.serve())

            reader, writer = await open_client(listener.bound_address)
            writer.write(b"ok")
            await writer.drain()
            assert await read_exactly(reader, 2) == b"ok"
            assert failures == [1]

            writer.close()
            await wait_until(lambda: len(listener.active) == 0)
            await stop(listener, serve_task)

    run(scenario())

def test_connection_accepted_while_closing_is_not_leaked(monkeypatch):
    async def scenario():
        listener = make_listener(["127.0.0.1:1"])
        listener.bind()
        loop = asyncio.get_running_loop()
        ours, theirs = socket.socketpair()
        ready = loop.create_future()

        async def pending_accept(sock):
            return await ready

        monkeypatch.setattr(loop, "sock_accept", pending_accept)
        serve_task = asyncio.ensure_future(listener.serve())
        await asyncio.sleep(0.05)

        # The accept completes on the same turn the listener is closed
        ready.set_result((ours, ('127.0.0.1', 40000)))
        listener.close()
        await asyncio.wait_for(asyncio.gather(serve_task, return_exceptions=True), 5)
        await asyncio.sleep(0)

        assert ours.fileno() == -1
        assert listener.accepted == 0
        assert not listener.is_serving
        theirs.close()

    run(scenario())
