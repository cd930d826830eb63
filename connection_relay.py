#!/usr/bin/env python3
"""
Bidirectional TCP relay for L4Proxy

Each accepted client is paired with one freshly dialled backend connection.
Bytes are copied in both directions by two tasks; as soon as either copy
ends, both sockets are closed and the relay waits for the other copy to
notice before reporting completion.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import List, Optional, Set

from config_manager import parse_address
from proxy_errors import BackendUnreachable, RelayIOError
from safe_logger import get_safe_logger

logger = get_safe_logger(__name__)

CLIENT_TO_BACKEND = "client->backend"
BACKEND_TO_CLIENT = "backend->client"

# How long a closing socket may take to flush before it is aborted.
# Copies never leave counted bytes in the transport buffer, so an abort
# only drops a chunk that was still being written and not yet counted.
CLOSE_GRACE = 1.0


def format_peer(writer: asyncio.StreamWriter) -> str:
    peer = writer.get_extra_info('peername')
    if isinstance(peer, tuple) and len(peer) >= 2:
        return f"{peer[0]}:{peer[1]}"
    return str(peer)


@dataclass(eq=False)
class ProxiedConnection:
    """One client socket paired with one backend socket"""
    client_reader: asyncio.StreamReader
    client_writer: asyncio.StreamWriter
    backend_addr: str
    client_addr: str = ""
    created_at: float = field(default_factory=time.time)
    backend_reader: Optional[asyncio.StreamReader] = None
    backend_writer: Optional[asyncio.StreamWriter] = None
    bytes_to_backend: int = 0
    bytes_to_client: int = 0
    torn_down: bool = False
    task: Optional[asyncio.Task] = None

    def __post_init__(self):
        if not self.client_addr:
            self.client_addr = format_peer(self.client_writer)

    @property
    def age(self) -> float:
        return time.time() - self.created_at

    @property
    def closed(self) -> bool:
        """True once every socket of the pair is closing or closed"""
        return all(w.is_closing() for w in self._writers())

    def _writers(self) -> List[asyncio.StreamWriter]:
        return [w for w in (self.client_writer, self.backend_writer) if w is not None]

    def record(self, direction: str, count: int):
        if direction == CLIENT_TO_BACKEND:
            self.bytes_to_backend += count
        else:
            self.bytes_to_client += count

    def close(self):
        """Close both sides. Safe to call repeatedly."""
        self.torn_down = True
        for writer in self._writers():
            if not writer.is_closing():
                writer.close()

    def abort(self):
        """Drop both sides without flushing pending writes"""
        self.torn_down = True
        for writer in self._writers():
            writer.transport.abort()

    async def wait_closed(self):
        for writer in self._writers():
            try:
                await asyncio.wait_for(writer.wait_closed(), timeout=CLOSE_GRACE)
            except asyncio.TimeoutError:
                writer.transport.abort()
            except (ConnectionError, OSError):
                # Peer reset while we were closing; the socket is gone either way
                pass


@dataclass
class RelayOutcome:
    """What happened on one finished relay"""
    client_addr: str
    backend_addr: str
    bytes_to_backend: int
    bytes_to_client: int
    duration: float
    error: Optional[RelayIOError] = None


class ActiveConnectionSet:
    """
    In-flight relays, kept for shutdown draining.

    Mutated only from the event loop thread, which serialises add/discard
    against the size checks made by the shutdown coordinator.
    """

    def __init__(self):
        self._connections: Set[ProxiedConnection] = set()
        self._empty: Optional[asyncio.Event] = None

    def _event(self) -> asyncio.Event:
        if self._empty is None:
            self._empty = asyncio.Event()
            if not self._connections:
                self._empty.set()
        return self._empty

    def add(self, conn: ProxiedConnection):
        self._connections.add(conn)
        self._event().clear()

    def discard(self, conn: ProxiedConnection):
        self._connections.discard(conn)
        if not self._connections:
            self._event().set()

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, conn: object) -> bool:
        return conn in self._connections

    def snapshot(self) -> List[ProxiedConnection]:
        return list(self._connections)

    async def wait_empty(self, timeout: Optional[float] = None) -> bool:
        """Wait until no relay is in flight. Returns False on timeout."""
        if not self._connections:
            return True
        try:
            await asyncio.wait_for(self._event().wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def cancel_all(self) -> int:
        """Cancel every in-flight relay task, returning how many were cancelled"""
        cancelled = 0
        for conn in self.snapshot():
            if conn.task is not None and not conn.task.done():
                conn.task.cancel()
                cancelled += 1
        return cancelled


class ConnectionRelay:
    """Dials a backend and pumps bytes both ways until either side stops"""

    def __init__(self, dial_timeout: float = 5.0, buffer_size: int = 64 * 1024):
        self.dial_timeout = dial_timeout
        self.buffer_size = buffer_size

    async def dial(self, conn: ProxiedConnection):
        """
        Open the backend connection for conn.

        Raises:
            BackendUnreachable: after closing the client, if the dial
                failed or did not finish within dial_timeout
        """
        try:
            host, port = parse_address(conn.backend_addr)
            conn.backend_reader, conn.backend_writer = await asyncio.wait_for(
                asyncio.open_connection(host, port),
                timeout=self.dial_timeout
            )
        except (asyncio.TimeoutError, OSError, ValueError) as e:
            conn.close()
            await conn.wait_closed()
            raise BackendUnreachable(conn.backend_addr, e, conn.client_addr) from e

        logger.debug(f"Connected to backend {conn.backend_addr} for {conn.client_addr}")

    async def relay(self, conn: ProxiedConnection) -> RelayOutcome:
        """Run one proxied connection to completion"""
        await self.dial(conn)

        copies = [
            asyncio.ensure_future(self._pump(
                conn, conn.client_reader, conn.backend_writer, CLIENT_TO_BACKEND)),
            asyncio.ensure_future(self._pump(
                conn, conn.backend_reader, conn.client_writer, BACKEND_TO_CLIENT)),
        ]

        try:
            await asyncio.wait(copies, return_when=asyncio.FIRST_COMPLETED)
            conn.close()

            # The surviving copy sees EOF once its socket finishes closing
            _, pending = await asyncio.wait(copies, timeout=CLOSE_GRACE)
            if pending:
                logger.debug(f"Aborting sockets for {conn.client_addr}, close did not complete")
                conn.abort()
            results = await asyncio.gather(*copies, return_exceptions=True)
        finally:
            conn.close()
            for task in copies:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*copies, return_exceptions=True)
            await conn.wait_closed()

        error = None
        for result in results:
            if isinstance(result, RelayIOError):
                error = error or result
            elif isinstance(result, Exception):
                raise result

        outcome = RelayOutcome(
            client_addr=conn.client_addr,
            backend_addr=conn.backend_addr,
            bytes_to_backend=conn.bytes_to_backend,
            bytes_to_client=conn.bytes_to_client,
            duration=conn.age,
            error=error
        )

        if error:
            logger.warning(f"Relay error for {conn.client_addr} -> {conn.backend_addr}: {error}")
        logger.info(f"Connection from {conn.client_addr} closed. Proxying to "
                    f"{conn.backend_addr} terminated ({conn.bytes_to_backend} bytes up, "
                    f"{conn.bytes_to_client} bytes down, {outcome.duration:.2f}s)")
        return outcome

    async def _pump(self, conn: ProxiedConnection, reader: asyncio.StreamReader,
                    writer: asyncio.StreamWriter, direction: str):
        """Copy one direction until EOF or error, then tear the pair down"""
        # drain() returns only once the transport buffer is empty
        writer.transport.set_write_buffer_limits(0)
        try:
            while True:
                data = await reader.read(self.buffer_size)
                if not data:
                    logger.debug(f"{direction}: end of stream for {conn.client_addr}")
                    break

                writer.write(data)
                await writer.drain()
                conn.record(direction, len(data))

        except (ConnectionError, OSError) as e:
            if conn.torn_down:
                logger.debug(f"{direction}: stopped by teardown ({e})")
                return
            raise RelayIOError(direction, e) from e
        finally:
            conn.close()
