#!/usr/bin/env python3
"""
Shared helpers for the L4Proxy test suite
Mock backend services and socket plumbing used across test modules
"""

import asyncio
import logging
import socket
from contextlib import asynccontextmanager, contextmanager
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)

def run(coro, timeout: float = 20.0):
    """Run a coroutine on a fresh event loop with an overall deadline"""
    return asyncio.run(asyncio.wait_for(coro, timeout))

def unused_address(host: str = '127.0.0.1') -> str:
    """An address with nothing listening on it"""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        port = sock.getsockname()[1]
    return f"{host}:{port}"

async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01):
    """Poll predicate() until it is true or the deadline passes"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)

async def read_exactly(reader: asyncio.StreamReader, size: int, timeout: float = 5.0) -> bytes:
    return await asyncio.wait_for(reader.readexactly(size), timeout)

async def read_to_eof(reader: asyncio.StreamReader, timeout: float = 5.0) -> bytes:
    return await asyncio.wait_for(reader.read(), timeout)

class MockService:
    """
    Mock backend service.

    Modes:
        echo   - send every received chunk straight back
        sink   - swallow everything
        greet  - send the greeting, then close

    read_delay postpones the first read so the sender backs up.
    """

    def __init__(self, host: str = '127.0.0.1', port: int = 0,
                 mode: str = 'echo', greeting: bytes = b'',
                 read_delay: float = 0.0):
        self.host = host
        self.port = port
        self.mode = mode
        self.greeting = greeting
        self.read_delay = read_delay
        self.server = None
        self.writers: List[asyncio.StreamWriter] = []
        self.received = bytearray()
        self.request_count = 0
        self.closed_connections = 0

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    async def start(self):
        self.server = await asyncio.start_server(
            self._handle_connection,
            self.host,
            self.port
        )
        self.port = self.server.sockets[0].getsockname()[1]
        logger.info(f"Mock service started on {self.address} ({self.mode})")

    async def stop(self):
        if self.server:
            self.server.close()

        # Server.wait_closed() also waits for open connections on newer Pythons
        for writer in self.writers:
            if not writer.is_closing():
                writer.close()
        self.writers.clear()

        if self.server:
            await self.server.wait_closed()

    async def _handle_connection(self, reader: asyncio.StreamReader,
                                 writer: asyncio.StreamWriter):
        self.writers.append(writer)
        self.request_count += 1

        try:
            if self.mode == 'greet':
                writer.write(self.greeting)
                await writer.drain()
                return

            if self.read_delay:
                # Leave the client to fill our receive window first
                await asyncio.sleep(self.read_delay)

            while True:
                data = await reader.read(65536)
                if not data:
                    break
                self.received.extend(data)
                if self.mode == 'echo':
                    writer.write(data)
                    await writer.drain()
        except ConnectionError:
            pass
        finally:
            writer.close()
            self.closed_connections += 1

@asynccontextmanager
async def mock_service(mode: str = 'echo', greeting: bytes = b'', read_delay: float = 0.0):
    service = MockService(mode=mode, greeting=greeting, read_delay=read_delay)
    await service.start()
    try:
        yield service
    finally:
        await service.stop()

@asynccontextmanager
async def accepted_connection():
    """
    Yield (accepted_reader, accepted_writer, peer_reader, peer_writer).

    The accepted side is what the proxy would get from its listener, the
    peer side plays the remote client.
    """
    accepted: asyncio.Queue = asyncio.Queue()

    async def on_client(reader, writer):
        await accepted.put((reader, writer))

    server = await asyncio.start_server(on_client, '127.0.0.1', 0)
    port = server.sockets[0].getsockname()[1]
    peer_reader, peer_writer = await asyncio.open_connection('127.0.0.1', port)
    reader, writer = await asyncio.wait_for(accepted.get(), 5)
    try:
        yield reader, writer, peer_reader, peer_writer
    finally:
        for w in (writer, peer_writer):
            if not w.is_closing():
                w.close()
        server.close()
        await server.wait_closed()

async def open_client(address: Tuple[str, int]):
    return await asyncio.wait_for(asyncio.open_connection(*address), 5)

@contextmanager
def preserved_logging():
    """Restore root logger handlers and level after code that reconfigures them"""
    import safe_logger

    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    try:
        yield
    finally:
        for handler in list(root.handlers):
            if handler not in handlers:
                root.removeHandler(handler)
                handler.close()
        for handler in handlers:
            if handler not in root.handlers:
                root.addHandler(handler)
        root.setLevel(level)
        safe_logger.disable_safe_logging()

class ScriptedSelector:
    """Selector returning a fixed sequence of backends, then repeating the last"""

    def __init__(self, picks: List[str]):
        self.picks = list(picks)
        self.calls = 0

    def choose(self, backends) -> str:
        pick = self.picks[min(self.calls, len(self.picks) - 1)]
        self.calls += 1
        return pick

class FakeListener:
    def __init__(self):
        self.closed = 0

    def close(self):
        self.closed += 1

class FakeConnection:
    """Stands in for a ProxiedConnection inside an ActiveConnectionSet"""

    def __init__(self, task: Optional[asyncio.Task] = None):
        self.task = task
