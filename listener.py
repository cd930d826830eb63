#!/usr/bin/env python3
"""
Listener accept loop for L4Proxy
Accepts clients, picks a backend for each and hands them to a relay task
"""

import asyncio
import socket
from typing import Callable, Optional, Tuple

from config_manager import Config, parse_address
from connection_relay import ActiveConnectionSet, ConnectionRelay, ProxiedConnection
from proxy_errors import AcceptError, BackendUnreachable, BindError
from safe_logger import get_safe_logger

logger = get_safe_logger(__name__)

# Pause after a failed accept so EMFILE and friends do not spin the loop
ACCEPT_BACKOFF = 0.1
LISTEN_BACKLOG = 128


class ProxyListener:
    """Owns the listening socket and spawns one relay task per client"""

    def __init__(self, config: Config, selector, relay: ConnectionRelay,
                 active: ActiveConnectionSet,
                 on_accept: Optional[Callable[[ProxiedConnection], None]] = None):
        self.config = config
        self.selector = selector
        self.relay = relay
        self.active = active
        self.on_accept = on_accept

        self.accepted = 0
        self._sock: Optional[socket.socket] = None
        self._serve_task: Optional[asyncio.Task] = None
        self._closing = False

    @property
    def bound_address(self) -> Tuple[str, int]:
        if self._sock is None:
            raise RuntimeError("listener is not bound")
        host, port = self._sock.getsockname()[:2]
        return host, port

    @property
    def is_serving(self) -> bool:
        """True while the listening socket is open"""
        return self._sock is not None and self._sock.fileno() != -1

    def bind(self):
        """
        Create the listening socket.

        Raises:
            BindError: if the address is invalid or cannot be bound
        """
        if self._sock is not None:
            return

        try:
            host, port = parse_address(self.config.listen_addr)
            family = socket.AF_INET6 if ':' in host else socket.AF_INET
            sock = socket.create_server((host, port), family=family,
                                        backlog=LISTEN_BACKLOG)
        except (OSError, ValueError) as e:
            raise BindError(self.config.listen_addr, e) from e

        sock.setblocking(False)
        self._sock = sock
        host, port = self.bound_address
        logger.info(f"Proxy server is listening on {host}:{port}")

    async def serve(self):
        """Accept connections until close() is called"""
        self.bind()
        self._serve_task = asyncio.current_task()
        loop = asyncio.get_running_loop()
        logger.info("Proxy server is ready to accept connections.")

        try:
            while not self._closing:
                accept = asyncio.ensure_future(loop.sock_accept(self._sock))
                try:
                    client_sock, _ = await asyncio.shield(accept)
                except asyncio.CancelledError:
                    await self._abandon_accept(accept)
                    if self._closing:
                        break
                    raise
                except OSError as e:
                    if self._closing:
                        break
                    logger.error(str(AcceptError(e)))
                    await asyncio.sleep(ACCEPT_BACKOFF)
                    continue

                await self._dispatch(client_sock)
        finally:
            self._close_socket()
            logger.info("Listener closed, no longer accepting connections")

    async def _abandon_accept(self, accept: asyncio.Future):
        """Close whatever a cancelled accept has already picked up"""
        def close_accepted(fut: asyncio.Future):
            if fut.cancelled() or fut.exception() is not None:
                return
            client_sock, addr = fut.result()
            logger.debug(f"Dropping connection from {addr[0]}:{addr[1]}, listener closing")
            client_sock.close()

        # An accept whose socket is ready completes on this turn of the loop
        await asyncio.sleep(0)
        accept.add_done_callback(close_accepted)
        accept.cancel()

    async def _dispatch(self, client_sock: socket.socket):
        """Register the client and start its relay without waiting on it"""
        try:
            reader, writer = await asyncio.open_connection(sock=client_sock)
        except asyncio.CancelledError:
            client_sock.close()
            raise
        except OSError as e:
            client_sock.close()
            logger.error(f"failed to set up accepted connection: {e}")
            return

        backend = self.selector.choose(self.config.backends)
        conn = ProxiedConnection(reader, writer, backend)
        self.accepted += 1
        logger.info(f"Handling connection from {conn.client_addr}. "
                    f"Proxying to backend: {backend}")

        self.active.add(conn)
        conn.task = asyncio.ensure_future(self._run_relay(conn))

        if self.on_accept is not None:
            self.on_accept(conn)

    async def _run_relay(self, conn: ProxiedConnection):
        try:
            await self.relay.relay(conn)
        except BackendUnreachable as e:
            logger.error(f"failed to proxy {conn.client_addr}: {e}")
        except asyncio.CancelledError:
            logger.warning(f"Relay {conn.client_addr} -> {conn.backend_addr} cancelled")
            raise
        except Exception as e:
            logger.exception(f"Unexpected error proxying {conn.client_addr} -> "
                             f"{conn.backend_addr}: {e}")
        finally:
            conn.close()
            self.active.discard(conn)

    def close(self):
        """Stop accepting. In-flight relays are left alone."""
        if self._closing:
            return
        self._closing = True

        if self._serve_task is not None and not self._serve_task.done():
            # serve() closes the socket on its way out
            self._serve_task.cancel()
        else:
            self._close_socket()

    def _close_socket(self):
        if self._sock is not None:
            self._sock.close()
