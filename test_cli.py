#!/usr/bin/env python3
"""
Tests for the command line entry point
"""

import socket

import pytest

import app
import main
from cli_utils import apply_cli_overrides, create_argument_parser
from config_manager import ConfigManager, ConfigurationError, build_config
from proxy_test_utils import preserved_logging

def parse(*argv):
    return create_argument_parser().parse_args(list(argv))

def test_overrides_replace_configured_values():
    config = build_config(backends=["a:1", "b:2"])
    args = parse("-l", "127.0.0.1:9000", "-b", "127.0.0.1:9101", "-b", "127.0.0.1:9102",
                 "-t", "30", "--dial-timeout", "2", "--policy", "round_robin", "-d")

    updated = apply_cli_overrides(config, args)

    assert updated.listen_addr == "127.0.0.1:9000"
    assert updated.backends == ("127.0.0.1:9101", "127.0.0.1:9102")
    assert updated.connection_timeout == 30
    assert updated.dial_timeout == 2.0
    assert updated.selection_policy == "round_robin"
    assert updated.logging.level == "DEBUG"
    # Original stays untouched
    assert config.backends == ("a:1", "b:2")

def test_no_overrides_returns_same_config():
    config = build_config(backends=["a:1"])
    assert apply_cli_overrides(config, parse()) is config

def test_invalid_override_is_rejected():
    config = build_config(backends=["a:1"])
    with pytest.raises(ConfigurationError):
        apply_cli_overrides(config, parse("-t", "0"))

def test_validate_config_command(tmp_path, capsys):
    config_file = tmp_path / "config.yaml"
    config_file.write_text("listen_addr: 127.0.0.1:9000\nbackends: [127.0.0.1:9101]\n")

    with preserved_logging():
        assert main.main(["--validate-config", "-c", str(config_file)]) == 0
    assert "Configuration is valid" in capsys.readouterr().out

    config_file.write_text("backends: []\n")
    with preserved_logging():
        assert main.main(["--validate-config", "-c", str(config_file)]) == 1
    assert "validation failed" in capsys.readouterr().out

def test_bind_failure_exits_non_zero(tmp_path, capsys):
    config_file = tmp_path / "config.yaml"
    config_file.write_text("backends: [127.0.0.1:1]\n")

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as taken:
        taken.bind(('127.0.0.1', 0))
        taken.listen(1)
        addr = "127.0.0.1:%d" % taken.getsockname()[1]

        with preserved_logging():
            status = main.main(["-c", str(config_file), "-l", addr])

    assert status == 1
    assert "failed to listen on" in capsys.readouterr().err

def test_config_loading_is_logged(tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(ConfigManager, "_find_config_file", lambda self: None)

    started = []

    async def fake_start(self):
        self.initialize()
        started.append(self.config)
        return "stubbed"

    monkeypatch.setattr(app.ProxyApplication, "start", fake_start)

    with preserved_logging():
        status = main.main(["-l", "127.0.0.1:0", "-b", "127.0.0.1:1"])

    assert status == 0
    assert started[0].backends == ("127.0.0.1:1",)
    assert "No configuration file found, using built-in defaults" in capsys.readouterr().out
