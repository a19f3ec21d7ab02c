import functools
import logging
import threading
import time
from typing import List, Optional

from dnslib import OPCODE, QTYPE, RCODE, DNSHeader, DNSRecord
from dnslib.buffer import Buffer

from appsdns.plugins.resolve.base import (
    BasePlugin,
    PluginContext,
    ResponseWriter,
    make_error_reply,
)
from .tcp_server import DEFAULT_IDLE_TIMEOUT, make_tcp_server
from .udp_server import make_udp_server

logger = logging.getLogger("appsdns.server")

DEFAULT_QUERY_TIMEOUT_MS = 5000


def _set_response_id(wire: bytes, req_id: int) -> bytes:
    """Ensure the response DNS ID matches the request ID.

    Inputs:
      - wire: DNS response bytes.
      - req_id: int request ID to set in the first two bytes.

    Outputs:
      - bytes: response with corrected ID.

    The DNS ID is the first 2 bytes (big-endian); they are rewritten without
    re-parsing the message.
    """
    if len(wire) < 2:
        return wire
    return (int(req_id) & 0xFFFF).to_bytes(2, "big") + wire[2:]


def _header_reply(header: DNSHeader, rcode: int) -> bytes:
    """Build a reply that carries only a header: no question, no records."""
    reply = DNSRecord(
        DNSHeader(id=header.id, qr=1, opcode=header.opcode, rd=header.rd, rcode=rcode)
    )
    return reply.pack()


def _unparseable_reply(data: bytes) -> bytes:
    """FORMERR for a query whose header is readable; b"" when it is not."""
    if len(data) < 12:
        return b""
    try:
        header = DNSHeader.parse(Buffer(data[:12]))
    except Exception:  # dnslib raises DNSError/struct errors on garbage
        return b""
    return _header_reply(header, RCODE.FORMERR)


def resolve_query_bytes(
    data: bytes,
    client_ip: str,
    chain: Optional[BasePlugin],
    *,
    timeout_ms: int = DEFAULT_QUERY_TIMEOUT_MS,
    transport: str = "udp",
) -> bytes:
    """Resolve a single DNS wire query through the handler chain.

    Inputs:
      - data: Wire-format DNS query bytes.
      - client_ip: String client IP for the plugin context and logs.
      - chain: Head of the plugin chain (None answers every query SERVFAIL).
      - timeout_ms: Budget for the whole chain; becomes the context deadline.
      - transport: "udp" or "tcp", recorded on the context.

    Outputs:
      - bytes: Wire-format DNS response, or b"" when the input is too broken
        to answer (the listener then sends nothing).

    Example:
      >>> resp = resolve_query_bytes(query_bytes, "127.0.0.1", chain)  # doctest: +SKIP
    """
    try:
        req = DNSRecord.parse(data)
    except Exception as e:  # dnslib raises DNSError and friends on bad input
        logger.debug("unparseable query from %s: %s", client_ip, e)
        return _unparseable_reply(data)

    if req.header.opcode != OPCODE.QUERY:
        return _header_reply(req.header, RCODE.NOTIMP)
    if len(req.questions) != 1:
        return _header_reply(req.header, RCODE.FORMERR)

    q = req.questions[0]
    qname = str(q.qname)
    qtype_name = QTYPE.get(q.qtype, str(q.qtype))

    if chain is None:
        logger.error("no plugins configured; answering %s SERVFAIL", qname)
        return _set_response_id(
            make_error_reply(req, RCODE.SERVFAIL).pack(), req.header.id
        )

    writer = ResponseWriter()
    ctx = PluginContext(
        req,
        client_ip,
        writer,
        deadline=time.monotonic() + max(0, int(timeout_ms)) / 1000.0,
        transport=transport,
    )

    try:
        rcode, err = chain.handle(ctx)
    except Exception:
        logger.exception(
            "plugin chain raised for %s %s from %s", qname, qtype_name, client_ip
        )
        return _set_response_id(
            make_error_reply(req, RCODE.SERVFAIL).pack(), req.header.id
        )

    if err is not None:
        logger.warning(
            "%s %s from %s: rcode=%s error=%s",
            qname,
            qtype_name,
            client_ip,
            RCODE.get(rcode, rcode),
            err,
        )

    if writer.written:
        return _set_response_id(writer.msg.pack(), req.header.id)

    if rcode == RCODE.NOERROR:
        logger.error(
            "plugin chain returned NOERROR without writing a response for %s %s",
            qname,
            qtype_name,
        )
        rcode = RCODE.SERVFAIL
    return _set_response_id(make_error_reply(req, rcode).pack(), req.header.id)


class DNSServer:
    """A UDP and TCP DNS server wrapper around one plugin chain.

    Example use:
        >>> from appsdns.servers.server import DNSServer
        >>> server = DNSServer("127.0.0.1", 0, chain)  # doctest: +SKIP
        >>> threading.Thread(target=server.serve_forever, daemon=True).start()  # doctest: +SKIP
        >>> server.stop()  # doctest: +SKIP
    """

    def __init__(
        self,
        host: str,
        port: int,
        chain: Optional[BasePlugin],
        *,
        timeout_ms: int = DEFAULT_QUERY_TIMEOUT_MS,
        udp: bool = True,
        tcp: bool = True,
        tcp_idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
    ) -> None:
        """Bind the listeners.

        Inputs:
            host: The host to listen on.
            port: The port to listen on (0 picks an ephemeral port; when both
                transports are enabled TCP binds the port UDP was given).
            chain: Head of the plugin chain.
            timeout_ms: Per-query deadline in milliseconds.
            udp / tcp: Which listeners to bind.
            tcp_idle_timeout: Seconds before an idle TCP connection is closed.

        Raises OSError (including PermissionError) when binding fails and
        ValueError when neither transport is enabled.
        """
        if not udp and not tcp:
            raise ValueError("at least one of udp or tcp must be enabled")

        self.chain = chain
        self.timeout_ms = int(timeout_ms)
        self.udp_server = None
        self.tcp_server = None
        self._threads: List[threading.Thread] = []

        try:
            if udp:
                self.udp_server = make_udp_server(
                    host, port, functools.partial(self._resolve, transport="udp")
                )
                port = self.udp_server.server_address[1]
                logger.debug("DNS UDP server bound to %s:%d", host, port)
            if tcp:
                self.tcp_server = make_tcp_server(
                    host,
                    port,
                    functools.partial(self._resolve, transport="tcp"),
                    idle_timeout=tcp_idle_timeout,
                )
                port = self.tcp_server.server_address[1]
                logger.debug("DNS TCP server bound to %s:%d", host, port)
        except PermissionError as e:
            logger.error(
                "Permission denied when binding to %s:%d. Try a port >1024 or "
                "run with elevated privileges. Original error: %s",
                host,
                port,
                e,
            )
            self._close_sockets()
            raise
        except OSError:
            self._close_sockets()
            raise

        self.host = host
        self.port = port

    def _resolve(self, data: bytes, client_ip: str, *, transport: str) -> bytes:
        return resolve_query_bytes(
            data, client_ip, self.chain, timeout_ms=self.timeout_ms, transport=transport
        )

    def _servers(self):
        return [s for s in (self.udp_server, self.tcp_server) if s is not None]

    def serve_forever(self) -> None:
        """Serve every bound listener until stop() is called.

        Inputs:
          - None
        Outputs:
          - None; blocks until all listener loops return.
        """
        for srv in self._servers():
            t = threading.Thread(
                target=srv.serve_forever,
                name=f"appsdns-{srv.__class__.__name__}",
                daemon=True,
            )
            t.start()
            self._threads.append(t)
        logger.info("appsdns listening on %s:%d", self.host, self.port)
        for t in self._threads:
            t.join()

    def stop(self) -> None:
        """Request graceful shutdown and close the listener sockets.

        Inputs:
          - None
        Outputs:
          - None; safe to call from a thread other than the one blocked in
            serve_forever().
        """
        if self._threads:
            # shutdown() blocks until serve_forever() returns, so it is only
            # valid once the listener loops were started.
            for srv in self._servers():
                srv.shutdown()
        self._close_sockets()

    def _close_sockets(self) -> None:
        for srv in self._servers():
            try:
                srv.server_close()
            except OSError:
                logger.exception("Error while closing %s", srv)
