"""
Tests for the DNS mock server.

A real listener is started on the loopback interface, a fake parent
resolver answers forwarded queries.
"""

import asyncio
from functools import partial

import pytest
from dnslib import A, DNSRecord, QTYPE, RCODE, RR

from mockd.dns_server import DNS_Server, UDP_Handler, forward

UPSTREAM_ANSWER = "192.0.2.53"


class FakeParent(asyncio.DatagramProtocol):
    """Answers every query with a single A record"""

    def __init__(self):
        self.transport = None
        self.queries = []

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        request = DNSRecord.parse(data)
        self.queries.append(str(request.q.qname))
        reply = request.reply()
        reply.add_answer(RR(request.q.qname, QTYPE.A, rdata=A(UPSTREAM_ANSWER), ttl=30))
        self.transport.sendto(reply.pack(), addr)


@pytest.fixture
async def parent():
    loop = asyncio.get_running_loop()
    transport, protocol = await loop.create_datagram_endpoint(
        FakeParent, local_addr=("127.0.0.1", 0)
    )
    yield protocol
    transport.close()


def dns_yaml(parent_addr, protocol="udp4", extra=""):
    host, port = parent_addr
    return (
        "dns:\n"
        "  host: 127.0.0.1\n"
        "  port: 0\n"
        f"  protocol: {protocol}\n"
        f"  parent: {host}:{port}\n"
        "  routes:\n"
        "    - rrtype: A\n"
        "      fqdn: www.my.internal\n"
        "      ip: 10.0.0.1,10.0.0.2\n"
        "      ttl: 60\n" + extra
    )


async def query(address, name, qtype="A", tcp=False):
    question = DNSRecord.question(name, qtype)
    loop = asyncio.get_running_loop()
    data = await loop.run_in_executor(
        None, partial(question.send, address[0], address[1], tcp=tcp, timeout=5)
    )
    return DNSRecord.parse(data)


def answers(reply):
    return sorted(str(rr.rdata) for rr in reply.rr)


@pytest.fixture
async def server(parent, write_config):
    server = DNS_Server()
    server.init(write_config(dns_yaml(parent.transport.get_extra_info("sockname"))))
    await server.start()
    yield server
    await server.stop()


class TestUDP:
    async def test_mocked_record(self, server, parent):
        reply = await query(server.address, "www.my.internal")
        assert reply.header.rcode == RCODE.NOERROR
        assert reply.header.aa == 1
        assert answers(reply) == ["10.0.0.1", "10.0.0.2"]
        assert {rr.ttl for rr in reply.rr} == {60}
        assert parent.queries == []

    async def test_name_is_case_insensitive(self, server):
        reply = await query(server.address, "WWW.My.Internal.")
        assert answers(reply) == ["10.0.0.1", "10.0.0.2"]

    async def test_unknown_name_is_forwarded(self, server, parent):
        reply = await query(server.address, "example.org")
        assert answers(reply) == [UPSTREAM_ANSWER]
        assert parent.queries == ["example.org."]

    async def test_other_type_is_forwarded(self, server, parent):
        reply = await query(server.address, "www.my.internal", "AAAA")
        assert answers(reply) == [UPSTREAM_ANSWER]
        assert parent.queries == ["www.my.internal."]

    async def test_reload(self, server, parent, write_config):
        write_config(
            dns_yaml(
                parent.transport.get_extra_info("sockname"),
                extra="    - rrtype: A\n      fqdn: new.my.internal\n      ip: 10.0.0.9\n",
            )
        )
        assert server.reload()
        reply = await query(server.address, "new.my.internal")
        assert answers(reply) == ["10.0.0.9"]
        assert parent.queries == []

    async def test_invalid_reload_keeps_records(self, server, write_config):
        write_config("dns:\n  routes:\n    - rrtype: CNAME\n      fqdn: a.b\n      ip: 1.2.3.4\n")
        assert not server.reload()
        reply = await query(server.address, "www.my.internal")
        assert answers(reply) == ["10.0.0.1", "10.0.0.2"]


class TestUnreachableParent:
    async def test_servfail(self, write_config):
        # bind and release a port so nothing listens there
        loop = asyncio.get_running_loop()
        transport, _ = await loop.create_datagram_endpoint(
            asyncio.DatagramProtocol, local_addr=("127.0.0.1", 0)
        )
        dead = transport.get_extra_info("sockname")
        transport.close()

        server = DNS_Server()
        server.init(write_config(dns_yaml(dead)))
        await server.start()
        try:
            reply = await query(server.address, "example.org")
            assert reply.header.rcode == RCODE.SERVFAIL
            assert reply.rr == []
        finally:
            await server.stop()


class TestTCP:
    async def test_mocked_record(self, parent, write_config):
        server = DNS_Server()
        server.init(
            write_config(dns_yaml(parent.transport.get_extra_info("sockname"), protocol="tcp4"))
        )
        await server.start()
        try:
            reply = await query(server.address, "www.my.internal", tcp=True)
            assert answers(reply) == ["10.0.0.1", "10.0.0.2"]
            reply = await query(server.address, "example.org", tcp=True)
            assert answers(reply) == [UPSTREAM_ANSWER]
        finally:
            await server.stop()


class TestHandler:
    @pytest.fixture
    def handler(self):
        async def resolver(record, data, addr):
            raise RuntimeError("boom")

        return UDP_Handler(resolver)

    async def test_malformed_packet_is_dropped(self, handler):
        assert await handler.handle(b"\x00\x01garbage", ("127.0.0.1", 1)) is None

    async def test_response_is_ignored(self, handler):
        packet = DNSRecord.question("example.org").reply().pack()
        assert await handler.handle(packet, ("127.0.0.1", 1)) is None

    async def test_no_question(self, handler):
        reply = await handler.handle(DNSRecord().pack(), ("127.0.0.1", 1))
        assert DNSRecord.parse(reply).header.rcode == RCODE.FORMERR

    async def test_resolver_error(self, handler):
        packet = DNSRecord.question("example.org").pack()
        reply = await handler.handle(packet, ("127.0.0.1", 1))
        assert DNSRecord.parse(reply).header.rcode == RCODE.SERVFAIL


class TestForward:
    async def test_round_trip(self, parent):
        question = DNSRecord.question("example.net")
        data = await forward(question.pack(), parent.transport.get_extra_info("sockname"))
        reply = DNSRecord.parse(data)
        assert reply.header.id == question.header.id
        assert answers(reply) == [UPSTREAM_ANSWER]

    async def test_timeout(self):
        loop = asyncio.get_running_loop()
        transport, _ = await loop.create_datagram_endpoint(
            asyncio.DatagramProtocol, local_addr=("127.0.0.1", 0)
        )
        try:
            silent = transport.get_extra_info("sockname")
            with pytest.raises(asyncio.TimeoutError):
                await forward(DNSRecord.question("example.net").pack(), silent, timeout=0.2)
        finally:
            transport.close()


class TestLifecycle:
    async def test_serve_and_shutdown(self, parent, write_config):
        server = DNS_Server()
        server.init(write_config(dns_yaml(parent.transport.get_extra_info("sockname"))))
        serving = asyncio.ensure_future(server.serve())
        while server.address is None:
            await asyncio.sleep(0.01)

        reply = await query(server.address, "www.my.internal")
        assert len(reply.rr) == 2

        await server.shutdown()
        await asyncio.wait_for(serving, timeout=5)
        assert server.handler is None

    async def test_start_before_init(self):
        with pytest.raises(RuntimeError):
            await DNS_Server().start()

    async def test_query_before_init_is_servfail(self):
        handler = UDP_Handler(DNS_Server().resolve)
        packet = DNSRecord.question("example.org").pack()
        reply = await handler.handle(packet, ("127.0.0.1", 1))
        assert DNSRecord.parse(reply).header.rcode == RCODE.SERVFAIL
