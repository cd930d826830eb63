#!/usr/bin/env python3
"""
L4Proxy Main Entry Point
"""

import asyncio
import logging
import sys

from app import ProxyApplication
from cli_utils import create_argument_parser, load_configuration, validate_configuration
from config_manager import ConfigurationError
from proxy_errors import BindError
from safe_logger import setup_safe_logging

async def run(args) -> int:
    """Run the proxy, returning the process exit status"""
    try:
        config = load_configuration(args)
    except ConfigurationError as e:
        print(f"failed to load configuration: {e}", file=sys.stderr)
        return 1

    # Logging is reconfigured from the loaded configuration here
    app = ProxyApplication(config=config)
    try:
        await app.start()
    except BindError as e:
        print(f"fatal: {e}", file=sys.stderr)
        return 1
    return 0

def main(argv=None) -> int:
    """Main entry point"""
    parser = create_argument_parser()
    args = parser.parse_args(argv)

    # Basic logging until the configuration is loaded
    setup_safe_logging(level=logging.DEBUG if args.debug else logging.INFO)

    if args.validate_config:
        return 0 if validate_configuration(args) else 1

    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        return 130

if __name__ == '__main__':
    sys.exit(main())
