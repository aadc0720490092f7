#!python3
# -*- coding: utf-8 -*-

from abc import ABC, abstractmethod
import asyncio
from typing import Any, Dict, Generic, List, Optional, TypeVar

from .configuration import ConfigurationError, load_config
from .file_guard import Guard
from .logger import log

__all__ = ["MockServer", "ServerRegistry", "UnknownProtocolError", "default_registry"]

SHUTDOWN_TIMEOUT = 5

SettingsT = TypeVar("SettingsT")
TableT = TypeVar("TableT")


class UnknownProtocolError(KeyError):
    def __str__(self) -> str:
        return f"unknown protocol {self.args[0]}"


class MockServer(ABC, Generic[SettingsT, TableT]):
    """Common life cycle of a mock server.

    init() loads the configuration and builds the first table, serve()
    runs the listeners until shutdown() is called. While serving, the
    configuration file is watched and reloaded on change."""

    name = "mock"

    def __init__(self) -> None:
        self.cfg_file: Optional[str] = None
        self.settings: Optional[SettingsT] = None
        self.table: Optional[TableT] = None
        self.guard: Optional[Guard] = None
        self.stopped: Optional[asyncio.Event] = None
        self.stopping = False

    @abstractmethod
    def parse(self, config: dict) -> SettingsT:
        pass

    @abstractmethod
    def build_table(self, settings: SettingsT) -> TableT:
        pass

    @abstractmethod
    async def start(self) -> None:
        """Open the listeners"""

    @abstractmethod
    async def stop(self) -> None:
        """Close the listeners, letting running requests finish"""

    def load(self, cfg_file: str) -> tuple:
        settings = self.parse(load_config(cfg_file))
        return settings, self.build_table(settings)

    def init(self, cfg_file: str) -> None:
        self.cfg_file = cfg_file
        self.settings, self.table = self.load(cfg_file)
        log(__name__).info("%s server initialized from %s", self.name, cfg_file)

    def reload(self) -> bool:
        if self.cfg_file is None:
            raise RuntimeError("reload() before init()")
        try:
            settings, table = self.load(self.cfg_file)
        except ConfigurationError as e:
            log(__name__).warning("Reload of %s failed, keeping previous routes: %s", self.cfg_file, e)
            return False

        if self.settings is not None and self.transport(settings) != self.transport(self.settings):
            log(__name__).warning(
                "Listener settings of %s changed, restart to apply them", self.cfg_file
            )
        self.table = table
        log(__name__).info("Activated new %s table from %s", self.name, self.cfg_file)
        return True

    def transport(self, settings: Any) -> tuple:
        return settings.transport() if settings is not None else ()

    async def serve(self) -> None:
        if self.cfg_file is None:
            raise RuntimeError("serve() before init()")
        self.stopped = asyncio.Event()
        self.stopping = False
        await self.start()
        self.guard = Guard()
        self.guard.watch(self.cfg_file, self.reload)
        self.guard.start()
        await self.stopped.wait()

    async def shutdown(self) -> None:
        """Stop serving, later calls wait for the first one to finish"""
        if self.stopping:
            if self.stopped is not None:
                await self.stopped.wait()
            return
        self.stopping = True
        log(__name__).info("Shutting down %s server", self.name)
        try:
            if self.guard is not None:
                await asyncio.get_running_loop().run_in_executor(None, self.guard.stop)
                self.guard = None
            await self.stop()
        finally:
            if self.stopped is not None:
                self.stopped.set()


class ServerRegistry:
    def __init__(self) -> None:
        self.servers: Dict[str, MockServer] = dict()

    def add(self, name: str, server: MockServer) -> None:
        self.servers[name] = server

    def get(self, name: str) -> MockServer:
        try:
            return self.servers[name]
        except KeyError:
            raise UnknownProtocolError(name) from None

    def list(self) -> List[str]:
        return list(self.servers)

    def __contains__(self, name: object) -> bool:
        return name in self.servers


def default_registry() -> ServerRegistry:
    from .dns_server import DNS_Server
    from .http_server import HttpServer

    registry = ServerRegistry()
    registry.add("http", HttpServer())
    registry.add("dns", DNS_Server())
    return registry
