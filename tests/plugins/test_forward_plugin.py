"""
Brief: Tests for appsdns.plugins.resolve.forward.Forward using local UDP/TCP stubs.

Inputs:
  - None

Outputs:
  - None
"""

import socket
import threading
import time

import pytest
from dnslib import QTYPE, RCODE, RR, A, DNSRecord

from appsdns.plugins.resolve import forward as forward_mod
from appsdns.plugins.resolve.base import PluginContext
from appsdns.plugins.resolve.forward import Forward, ForwardError
from appsdns.servers.transports.tcp import read_frame, write_frame
from appsdns.servers.transports.udp import UDPError


class StubUpstream:
    """Brief: One-shot UDP (and optional TCP) DNS stub on 127.0.0.1.

    Inputs:
      - answer: IPv4 string placed in the A answer
      - truncate_udp: when True, the UDP reply carries TC=1 and no answers

    Outputs:
      - .port shared by the UDP and TCP sockets
    """

    def __init__(self, answer="192.0.2.1", truncate_udp=False, rcode=RCODE.NOERROR):
        self.answer = answer
        self.truncate_udp = truncate_udp
        self.rcode = rcode
        self.tcp_queries = 0
        self.udp = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.udp.bind(("127.0.0.1", 0))
        self.port = self.udp.getsockname()[1]
        self.tcp = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.tcp.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.tcp.bind(("127.0.0.1", self.port))
        self.tcp.listen(1)
        threading.Thread(target=self._serve_udp, daemon=True).start()
        threading.Thread(target=self._serve_tcp, daemon=True).start()

    def _reply(self, wire, truncated):
        req = DNSRecord.parse(wire)
        reply = req.reply()
        reply.header.rcode = self.rcode
        if truncated:
            reply.header.tc = 1
        elif self.rcode == RCODE.NOERROR:
            reply.add_answer(RR(req.q.qname, QTYPE.A, rdata=A(self.answer), ttl=60))
        return reply.pack()

    def _serve_udp(self):
        try:
            data, addr = self.udp.recvfrom(65535)
        except OSError:
            return
        self.udp.sendto(self._reply(data, self.truncate_udp), addr)

    def _serve_tcp(self):
        try:
            conn, _ = self.tcp.accept()
        except OSError:
            return
        with conn:
            query = read_frame(conn)
            self.tcp_queries += 1
            write_frame(conn, self._reply(query, False))

    def close(self):
        self.udp.close()
        self.tcp.close()


@pytest.fixture
def stub():
    servers = []

    def _make(**kwargs):
        s = StubUpstream(**kwargs)
        servers.append(s)
        return s

    yield _make
    for s in servers:
        s.close()


def _unused_udp_port():
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


def _ctx(deadline=None):
    req = DNSRecord.question("www.example.com", "A")
    return PluginContext(req, "127.0.0.1", deadline=deadline)


def test_forward_relays_upstream_answer(stub):
    """
    Brief: The first upstream's answer is written with the request's ID.

    Inputs:
      - stub upstream answering 192.0.2.1

    Outputs:
      - None: Asserts rcode, answer and message ID
    """
    up = stub(answer="192.0.2.1")
    plugin = Forward(upstreams=[{"host": "127.0.0.1", "port": up.port}], timeout_ms=1000)
    ctx = _ctx()

    rcode, err = plugin.handle(ctx)

    assert (rcode, err) == (RCODE.NOERROR, None)
    assert ctx.writer.msg.header.id == ctx.request.header.id
    assert [str(rr.rdata) for rr in ctx.writer.msg.rr] == ["192.0.2.1"]


def test_forward_relays_upstream_rcode(stub):
    """
    Brief: Upstream NXDOMAIN is relayed as-is.

    Inputs:
      - stub upstream answering NXDOMAIN

    Outputs:
      - None: Asserts returned rcode and written message
    """
    up = stub(rcode=RCODE.NXDOMAIN)
    plugin = Forward(upstreams=[{"host": "127.0.0.1", "port": up.port}])
    ctx = _ctx()

    rcode, err = plugin.handle(ctx)

    assert rcode == RCODE.NXDOMAIN
    assert err is None
    assert ctx.writer.msg.header.rcode == RCODE.NXDOMAIN


def test_forward_retries_truncated_answer_over_tcp(stub):
    """
    Brief: A TC=1 UDP reply is retried over TCP against the same upstream.

    Inputs:
      - stub upstream truncating UDP replies

    Outputs:
      - None: Asserts the TCP answer is used
    """
    up = stub(answer="192.0.2.77", truncate_udp=True)
    plugin = Forward(upstreams=[{"host": "127.0.0.1", "port": up.port}])
    ctx = _ctx()

    rcode, _ = plugin.handle(ctx)

    assert rcode == RCODE.NOERROR
    assert up.tcp_queries == 1
    assert ctx.writer.msg.header.tc == 0
    assert [str(rr.rdata) for rr in ctx.writer.msg.rr] == ["192.0.2.77"]


def test_forward_fails_over_to_next_upstream(stub, monkeypatch):
    """
    Brief: A failing upstream is skipped in favour of the next one.

    Inputs:
      - first upstream raising UDPError, second stub answering

    Outputs:
      - None: Asserts the second upstream's answer
    """
    up = stub(answer="192.0.2.9")
    dead_port = _unused_udp_port()
    real_udp_query = forward_mod.udp_query

    def flaky_udp_query(host, port, query, **kwargs):
        if port == dead_port:
            raise UDPError("connection refused")
        return real_udp_query(host, port, query, **kwargs)

    monkeypatch.setattr(forward_mod, "udp_query", flaky_udp_query)
    plugin = Forward(
        upstreams=[
            {"host": "127.0.0.1", "port": dead_port},
            {"host": "127.0.0.1", "port": up.port},
        ]
    )
    ctx = _ctx()

    rcode, _ = plugin.handle(ctx)

    assert rcode == RCODE.NOERROR
    assert [str(rr.rdata) for rr in ctx.writer.msg.rr] == ["192.0.2.9"]


def test_forward_all_upstreams_failing_is_servfail(monkeypatch):
    """
    Brief: When every upstream fails the plugin returns SERVFAIL and writes nothing.

    Inputs:
      - udp_query always raising

    Outputs:
      - None: Asserts SERVFAIL and ForwardError
    """

    def boom(*args, **kwargs):
        raise UDPError("timeout")

    monkeypatch.setattr(forward_mod, "udp_query", boom)
    plugin = Forward(upstreams=[{"host": "127.0.0.1", "port": 53}])
    ctx = _ctx()

    rcode, err = plugin.handle(ctx)

    assert rcode == RCODE.SERVFAIL
    assert isinstance(err, ForwardError)
    assert not ctx.writer.written


def test_forward_respects_expired_deadline(monkeypatch):
    """
    Brief: No upstream is contacted once the query deadline has passed.

    Inputs:
      - context with a past deadline

    Outputs:
      - None: Asserts SERVFAIL without any upstream call
    """
    calls = []
    monkeypatch.setattr(
        forward_mod, "udp_query", lambda *a, **k: calls.append(a) or b""
    )
    plugin = Forward(upstreams=[{"host": "127.0.0.1", "port": 53}])

    rcode, err = plugin.handle(_ctx(deadline=time.monotonic() - 1))

    assert rcode == RCODE.SERVFAIL
    assert "deadline" in str(err)
    assert calls == []


def test_forward_caps_attempt_timeout_by_deadline(monkeypatch):
    """
    Brief: The per-attempt timeout never exceeds the time left for the query.

    Inputs:
      - timeout_ms=5000 with roughly 200ms left

    Outputs:
      - None: Asserts the timeout passed to udp_query
    """
    seen = {}

    def capture(host, port, query, *, timeout_ms, **kwargs):
        seen["timeout_ms"] = timeout_ms
        raise UDPError("timeout")

    monkeypatch.setattr(forward_mod, "udp_query", capture)
    plugin = Forward(upstreams=[{"host": "127.0.0.1", "port": 53}], timeout_ms=5000)

    plugin.handle(_ctx(deadline=time.monotonic() + 0.2))

    assert 0 < seen["timeout_ms"] <= 200


def test_forward_config_requires_upstreams():
    """
    Brief: The config model rejects an empty upstream list.

    Inputs:
      - upstreams=[]

    Outputs:
      - None: Asserts validation error and port default
    """
    model = Forward.get_config_model()

    with pytest.raises(Exception):
        model(upstreams=[])
    assert model(upstreams=[{"host": "10.0.0.1"}]).upstreams[0].port == 53
