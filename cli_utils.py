#!/usr/bin/env python3
"""
CLI Utilities for L4Proxy
Command line argument parsing and validation functions
"""

import argparse
import dataclasses

from config_manager import Config, ConfigManager, SELECTION_POLICIES, validate_config

__version__ = "1.0.0"

def create_argument_parser():
    """Create command line argument parser"""
    parser = argparse.ArgumentParser(
        description='L4Proxy - TCP forwarding proxy',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s -c config.yaml                               # With config file
  %(prog)s -c config.yaml -e production                 # With environment
  %(prog)s -l 127.0.0.1:9000 -b 127.0.0.1:9101          # No config file
  %(prog)s --validate-config -c config.yaml             # Validate config only
        """
    )

    parser.add_argument(
        '-c', '--config',
        help='Configuration file path (YAML or JSON)'
    )

    parser.add_argument(
        '-e', '--environment',
        help='Environment name (dev/prod/test)'
    )

    parser.add_argument(
        '-l', '--listen',
        metavar='HOST:PORT',
        help='Listen address, overrides the configuration'
    )

    parser.add_argument(
        '-b', '--backend',
        action='append',
        metavar='HOST:PORT',
        help='Backend address; repeat for several. Replaces configured backends'
    )

    parser.add_argument(
        '-t', '--timeout',
        type=int,
        metavar='SECONDS',
        help='Idle timeout: shut down when no connection arrives for this long'
    )

    parser.add_argument(
        '--dial-timeout',
        type=float,
        metavar='SECONDS',
        help='Backend connect timeout (default: 5)'
    )

    parser.add_argument(
        '--drain-timeout',
        type=float,
        metavar='SECONDS',
        help='Hard deadline for in-flight connections during shutdown'
    )

    parser.add_argument(
        '--policy',
        choices=SELECTION_POLICIES,
        help='Backend selection policy (default: random)'
    )

    parser.add_argument(
        '-d', '--debug',
        action='store_true',
        help='Enable debug logging'
    )

    parser.add_argument(
        '--validate-config',
        action='store_true',
        help='Validate configuration and exit'
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'L4Proxy {__version__}'
    )

    return parser

def apply_cli_overrides(config: Config, args) -> Config:
    """Return a copy of config with command line values applied"""
    overrides = {}
    if args.listen:
        overrides['listen_addr'] = args.listen
    if args.backend:
        overrides['backends'] = tuple(args.backend)
    if args.timeout is not None:
        overrides['connection_timeout'] = args.timeout
    if args.dial_timeout is not None:
        overrides['dial_timeout'] = args.dial_timeout
    if args.drain_timeout is not None:
        overrides['drain_timeout'] = args.drain_timeout
    if args.policy:
        overrides['selection_policy'] = args.policy
    if args.debug:
        overrides['logging'] = dataclasses.replace(config.logging, level='DEBUG')

    if not overrides:
        return config

    config = dataclasses.replace(config, **overrides)
    validate_config(config)
    return config

def load_configuration(args) -> Config:
    """Load the configuration file and apply command line overrides"""
    config = ConfigManager().load_config(args.config, args.environment)
    return apply_cli_overrides(config, args)

def validate_configuration(args) -> bool:
    """Validate configuration and print a summary"""
    try:
        config = load_configuration(args)

        print("✓ Configuration is valid")
        print(f"  Listen address: {config.listen_addr}")
        print(f"  Backends: {', '.join(config.backends)}")
        print(f"  Selection: {config.selection_policy}")
        print(f"  Idle timeout: {config.connection_timeout}s")
        print(f"  Dial timeout: {config.dial_timeout}s")
        drain = f"{config.drain_timeout}s" if config.drain_timeout else "unbounded"
        print(f"  Drain deadline: {drain}")

        return True

    except Exception as e:
        print(f"✗ Configuration validation failed: {e}")
        return False
