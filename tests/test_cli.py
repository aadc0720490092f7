"""Tests for the command line entry point."""

import asyncio
import os
import signal

import pytest

from mockd.cli import CONFIG_ENV, main, run, setup_parser
from mockd.server import default_registry

from .test_server import CountingServer, wait_serving


@pytest.fixture(autouse=True)
def no_env_config(monkeypatch):
    monkeypatch.delenv(CONFIG_ENV, raising=False)


class TestArguments:
    def test_defaults(self):
        args = setup_parser(default_registry()).parse_args(["--cfg", "mock.yml"])
        assert args.protocol == "http"
        assert args.cfg == "mock.yml"
        assert not args.debug

    def test_config_from_environment(self, monkeypatch):
        monkeypatch.setenv(CONFIG_ENV, "/etc/mockd.yml")
        args = setup_parser(default_registry()).parse_args(["--protocol", "dns"])
        assert args.protocol == "dns"
        assert args.cfg == "/etc/mockd.yml"

    def test_unknown_protocol(self):
        with pytest.raises(SystemExit):
            main(["--protocol", "smtp", "--cfg", "mock.yml"])

    def test_missing_config(self):
        with pytest.raises(SystemExit) as e:
            main([])
        assert e.value.code == 2


class TestStartup:
    def test_config_file_not_found(self, tmp_path):
        assert main(["--cfg", str(tmp_path / "missing.yml")]) == 1

    def test_invalid_config(self, write_config):
        path = write_config({"http": {"routes": [{"uri": "/a", "response": {"code": 42}}]}})
        assert main(["--cfg", path]) == 1

    def test_wrong_section(self, write_config):
        path = write_config({"http": {"routes": []}})
        assert main(["--protocol", "dns", "--cfg", path]) == 1


class TestSignals:
    async def test_repeated_signal_shuts_down_once(self, write_config):
        server = CountingServer()
        server.init(write_config({"routes": []}))
        running = asyncio.ensure_future(run(server))
        await wait_serving(server)

        os.kill(os.getpid(), signal.SIGTERM)
        os.kill(os.getpid(), signal.SIGTERM)
        await asyncio.wait_for(running, timeout=5)
        assert server.stops == 1
