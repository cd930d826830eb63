#!/usr/bin/env python3
"""
L4Proxy Application Class
Main application logic separated from entry point
"""

import asyncio
import logging
from typing import Optional

from backend_selector import create_selector
from config_manager import Config, ConfigManager
from connection_relay import ActiveConnectionSet, ConnectionRelay
from listener import ProxyListener
from safe_logger import get_safe_logger, parse_size, setup_safe_logging
from shutdown import ShutdownCoordinator

logger = get_safe_logger(__name__)

class ProxyApplication:
    """Main application class integrating all components"""

    def __init__(self, config_file: Optional[str] = None,
                 environment: Optional[str] = None,
                 config: Optional[Config] = None,
                 configure_logging: bool = True):
        self.config_manager = ConfigManager()
        self.config = config
        self.config_file = config_file
        self.environment = environment
        self.configure_logging = configure_logging

        # Core components
        self.selector = None
        self.relay: Optional[ConnectionRelay] = None
        self.active: Optional[ActiveConnectionSet] = None
        self.listener: Optional[ProxyListener] = None
        self.coordinator: Optional[ShutdownCoordinator] = None

        # Application state
        self.running = False
        self._serve_task: Optional[asyncio.Task] = None

    def initialize(self):
        """Load configuration and build all components"""
        if self.config is None:
            self.config = self.config_manager.load_config(self.config_file, self.environment)

        if self.configure_logging:
            self._setup_logging()

        self.selector = create_selector(self.config.selection_policy)
        self.relay = ConnectionRelay(
            dial_timeout=self.config.dial_timeout,
            buffer_size=self.config.buffer_size
        )
        self.active = ActiveConnectionSet()
        self.listener = ProxyListener(self.config, self.selector, self.relay, self.active)
        self.coordinator = ShutdownCoordinator(
            self.listener,
            self.active,
            idle_timeout=self.config.connection_timeout,
            drain_timeout=self.config.drain_timeout,
            wait_for_drain=self.config.wait_for_drain
        )
        self.listener.on_accept = self.coordinator.notify_activity

        logger.info(f"Backends: {', '.join(self.config.backends)} "
                    f"({self.config.selection_policy} selection)")

    def _setup_logging(self):
        """Setup logging based on configuration"""
        log_config = self.config.logging
        file_config = log_config.file

        setup_safe_logging(
            enabled=log_config.enabled,
            level=getattr(logging, log_config.level),
            fmt=log_config.format,
            log_file=file_config.path if file_config.enabled else None,
            max_bytes=parse_size(file_config.max_size),
            backup_count=file_config.rotate_count
        )

        # Component-specific logging levels
        for component, level in log_config.components.items():
            logging.getLogger(component).setLevel(getattr(logging, level))

    async def start(self) -> str:
        """
        Run the proxy until it has fully drained.

        Returns:
            The reason shutdown was triggered

        Raises:
            BindError: if the listen address cannot be bound
        """
        if self.listener is None:
            self.initialize()

        self.listener.bind()
        self.coordinator.install_signal_handlers()
        self.running = True

        self._serve_task = asyncio.ensure_future(self.listener.serve())
        self._serve_task.add_done_callback(self._on_listener_done)

        try:
            reason = await self.coordinator.run()
            logger.info(f"L4Proxy stopped ({reason})")
            return reason
        finally:
            await self.shutdown()

    def _on_listener_done(self, task: asyncio.Task):
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Listener failed: {exc}")
            self.coordinator.request_shutdown("listener failure")

    def request_shutdown(self, reason: str = "requested"):
        if self.coordinator is not None:
            self.coordinator.request_shutdown(reason)

    async def shutdown(self):
        """Shutdown the application cleanly"""
        if not self.running:
            return
        self.running = False

        self.coordinator.remove_signal_handlers()
        self.listener.close()
        if self._serve_task is not None:
            await asyncio.gather(self._serve_task, return_exceptions=True)

        logger.info("L4Proxy shutdown complete")
