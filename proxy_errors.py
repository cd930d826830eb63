#!/usr/bin/env python3
"""
Error taxonomy for L4Proxy

Only BindError is fatal to the process. Everything else is scoped to a
single accept call or a single proxied connection and gets logged.
"""

from typing import Optional


class ProxyError(Exception):
    """Base class for proxy errors"""
    fatal = False


class BindError(ProxyError):
    """Listening socket could not be created"""
    fatal = True

    def __init__(self, listen_addr: str, reason: Exception):
        self.listen_addr = listen_addr
        self.reason = reason
        super().__init__(f"failed to listen on {listen_addr}: {reason}")


class AcceptError(ProxyError):
    """A single accept() call failed"""

    def __init__(self, reason: Exception):
        self.reason = reason
        super().__init__(f"failed to accept connection: {reason}")


class BackendUnreachable(ProxyError):
    """Dial to the chosen backend failed or timed out"""

    def __init__(self, backend_addr: str, reason: Exception,
                 client_addr: Optional[str] = None):
        self.backend_addr = backend_addr
        self.client_addr = client_addr
        self.reason = reason
        detail = str(reason) or type(reason).__name__
        super().__init__(f"failed to connect to backend {backend_addr}: {detail}")


class RelayIOError(ProxyError):
    """Read or write failed while relaying bytes"""

    def __init__(self, direction: str, reason: Exception):
        self.direction = direction
        self.reason = reason
        super().__init__(f"failed to copy {direction}: {reason}")
