#!python3
# -*- coding: utf-8 -*-

from abc import ABC, abstractmethod
import asyncio
from functools import partial
import socket
import struct
from typing import Any, Awaitable, Callable, Coroutine, Optional, Set, Tuple, cast

from dnslib import A, CLASS, DNSError, DNSRecord, QR, QTYPE, RCODE, RR

from .configuration import DnsSettings, parse_dns
from .logger import log, log_exception
from .server import SHUTDOWN_TIMEOUT, MockServer
from .tables import RecordTable

UPSTREAM_TIMEOUT = 2
TCP_IDLE_TIMEOUT = 10

Address = Tuple[str, int]
Resolver = Callable[[DNSRecord, bytes, Any], Awaitable[bytes]]


def qt_qn(record: DNSRecord) -> Tuple[str, str]:
    return QTYPE[record.q.qtype], str(record.q.qname)


def error_reply(record: DNSRecord, rcode: int = RCODE.SERVFAIL) -> bytes:
    response = record.reply()
    response.header.rcode = rcode
    return cast(bytes, response.pack())


class UpstreamExchange(asyncio.DatagramProtocol):
    """Send one query, wait for the matching answer"""

    def __init__(self, request: bytes) -> None:
        self.request = request
        self.answer: asyncio.Future[bytes] = asyncio.get_running_loop().create_future()

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        cast(asyncio.DatagramTransport, transport).sendto(self.request)

    def datagram_received(self, data: bytes, addr: Address) -> None:
        # answers carry the id of the query
        if data[:2] == self.request[:2] and not self.answer.done():
            self.answer.set_result(data)

    def error_received(self, exc: Exception) -> None:
        if not self.answer.done():
            self.answer.set_exception(exc)

    def connection_lost(self, exc: Exception | None) -> None:
        if not self.answer.done():
            self.answer.set_exception(exc or ConnectionError("upstream socket closed"))


async def forward(data: bytes, parent: Address, timeout: float = UPSTREAM_TIMEOUT) -> bytes:
    """Single UDP round trip to the parent resolver, no retry"""
    loop = asyncio.get_running_loop()
    transport, protocol = await loop.create_datagram_endpoint(
        partial(UpstreamExchange, data), remote_addr=parent
    )
    try:
        return await asyncio.wait_for(protocol.answer, timeout=timeout)
    finally:
        transport.close()


class DNS_Handler(ABC):
    def __init__(self, resolver: Resolver) -> None:
        self.resolver = resolver
        self.tasks: Set[asyncio.Task] = set()
        self.closing = False

    @abstractmethod
    async def close(self) -> None:
        pass

    @property
    @abstractmethod
    def address(self) -> Optional[Address]:
        pass

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task

    async def drain(self) -> None:
        """Give running queries SHUTDOWN_TIMEOUT seconds to finish"""
        if not self.tasks:
            return
        log(__name__).info("Waiting for %d running queries", len(self.tasks))
        _, pending = await asyncio.wait(set(self.tasks), timeout=SHUTDOWN_TIMEOUT)
        for task in pending:
            task.cancel()
        if pending:
            log(__name__).warning("Cancelled %d queries on shutdown", len(pending))
            await asyncio.wait(pending)

    async def handle(self, data: bytes, addr: Any) -> Optional[bytes]:
        try:
            record = DNSRecord.parse(data)
        except DNSError as e:
            log(__name__).info("Malformed packet from %s: %s", addr, e)
            return None

        if QR[record.header.qr] != "QUERY":
            log(__name__).info("Not a QUERY: %s", record)
            return None
        if not record.questions:
            return error_reply(record, RCODE.FORMERR)

        try:
            return await self.resolver(record, data, addr)
        except Exception:
            log(__name__).error("Error in resolve", exc_info=True)
            return error_reply(record)


class UDP_Handler(asyncio.DatagramProtocol, DNS_Handler):
    def __init__(self, resolver: Resolver) -> None:
        DNS_Handler.__init__(self, resolver)
        asyncio.DatagramProtocol.__init__(self)
        self.transport: Optional[asyncio.DatagramTransport] = None
        self.closed = asyncio.Event()

    def __repr__(self) -> str:
        return "%s listening on %s" % (self.__class__.__name__, self.address)

    @property
    def address(self) -> Optional[Address]:
        if self.transport is None:
            return None
        return cast(Address, self.transport.get_extra_info("sockname")[:2])

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = cast(asyncio.DatagramTransport, transport)

    def connection_lost(self, exc: Exception | None) -> None:
        self.closed.set()

    async def close(self) -> None:
        self.closing = True
        await self.drain()
        if self.transport:
            self.transport.close()
            await self.closed.wait()
        log(__name__).info("UDP Server closed")

    @log_exception
    async def process_datagram(self, data: bytes, addr: Address) -> None:
        response = await self.handle(data, addr)
        if response and self.transport:
            self.transport.sendto(response, addr)

    def datagram_received(self, data: bytes, addr: Address) -> None:
        if self.closing:
            return
        self.spawn(self.process_datagram(data, addr))


class TCP_Handler(DNS_Handler):
    def __init__(self, resolver: Resolver, timeout: float = TCP_IDLE_TIMEOUT) -> None:
        DNS_Handler.__init__(self, resolver)
        self.timeout = timeout
        self.server: Optional[asyncio.Server] = None
        self.connections: Set[asyncio.StreamWriter] = set()

    def __repr__(self) -> str:
        return "%s listening on %s" % (self.__class__.__name__, self.address)

    @property
    def address(self) -> Optional[Address]:
        if self.server is None or not self.server.sockets:
            return None
        return cast(Address, self.server.sockets[0].getsockname()[:2])

    def set_server(self, server: asyncio.Server) -> None:
        self.server = server

    async def close(self) -> None:
        self.closing = True
        if self.server:
            self.server.close()
        await self.drain()
        for writer in list(self.connections):
            writer.close()
        if self.server:
            await self.server.wait_closed()
        log(__name__).info("TCP Server closed")

    async def read_request(self, reader: asyncio.StreamReader) -> bytes:
        header = await reader.readexactly(2)
        (length,) = struct.unpack(">H", header)
        return await reader.readexactly(length)

    async def client_connected(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        self.connections.add(writer)
        peer = writer.get_extra_info("peername")
        try:
            while not self.closing:
                try:
                    request = await asyncio.wait_for(self.read_request(reader), timeout=self.timeout)
                except (asyncio.TimeoutError, asyncio.IncompleteReadError, ConnectionError):
                    return
                response = await self.spawn(self.handle(request, peer))
                if response:
                    writer.write(struct.pack(">H", len(response)) + response)
                    await writer.drain()
        except ConnectionError as e:
            log(__name__).debug("Connection to %s lost: %s", peer, e)
        finally:
            self.connections.discard(writer)
            writer.close()


def listen_on(settings: DnsSettings) -> Tuple[Optional[str], int]:
    if settings.protocol.endswith("6"):
        return settings.host or "::", socket.AF_INET6
    if settings.protocol.endswith("4") or settings.protocol == "udp":
        return settings.host or "0.0.0.0", socket.AF_INET
    return settings.host, socket.AF_UNSPEC


class DNS_Server(MockServer[DnsSettings, RecordTable]):
    name = "dns"

    def __init__(self) -> None:
        super().__init__()
        self.handler: Optional[DNS_Handler] = None

    def parse(self, config: dict) -> DnsSettings:
        return parse_dns(config)

    def build_table(self, settings: DnsSettings) -> RecordTable:
        return RecordTable.build(settings.routes)

    @property
    def address(self) -> Optional[Address]:
        return self.handler.address if self.handler is not None else None

    async def resolve(self, record: DNSRecord, data: bytes, addr: Any) -> bytes:
        table = self.table
        settings = self.settings
        if table is None or settings is None:
            raise RuntimeError("resolve() before init()")

        qtype, qname = qt_qn(record)
        records = table.lookup(qtype, qname)
        if records is None:
            log(__name__).info("forward request %s %s to parent DNS %s", qtype, qname, settings.parent)
            try:
                return await forward(data, settings.parent)
            except (OSError, asyncio.TimeoutError) as e:
                log(__name__).warning("forward parent DNS %s %s failed: %r", addr, qname, e)
                return error_reply(record)

        log(__name__).info("Resolving %s: %s for %s from table", qtype, qname, addr)
        response = record.reply(aa=1)
        for rr in records:
            response.add_answer(
                RR(record.q.qname, QTYPE.A, CLASS.IN, ttl=rr.ttl, rdata=A(rr.address))
            )
        return cast(bytes, response.pack())

    async def start(self) -> None:
        settings = self.settings
        if settings is None:
            raise RuntimeError("start() before init()")
        loop = asyncio.get_running_loop()
        host, family = listen_on(settings)

        if settings.protocol.startswith("udp"):
            _, udp_handler = await loop.create_datagram_endpoint(
                partial(UDP_Handler, self.resolve),
                local_addr=(host, settings.port),
                family=family,
            )
            self.handler = udp_handler
        else:
            tcp_handler = TCP_Handler(self.resolve)
            server = await asyncio.start_server(
                tcp_handler.client_connected,
                host=host,
                port=settings.port,
                family=family,
                reuse_address=True,
            )
            tcp_handler.set_server(server)
            self.handler = tcp_handler

        log(__name__).info("Server running: %s", self.handler)

    async def stop(self) -> None:
        if self.handler is not None:
            await self.handler.close()
            self.handler = None
