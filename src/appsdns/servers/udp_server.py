import logging
import socket
import socketserver
from typing import Callable

logger = logging.getLogger("appsdns.udp")


class _ThreadingUDPServer6(socketserver.ThreadingUDPServer):
    address_family = socket.AF_INET6


class DNSUDPHandler(socketserver.BaseRequestHandler):
    """
    Brief: UDP handler that delegates each datagram to a resolver callable.

    Inputs:
    - request: (data, socket) tuple provided by socketserver
    - client_address: peer address

    Outputs:
    - None; sends at most one datagram back. An empty resolver result means
      the query is dropped and the client observes a timeout.

    Example:
        This handler is used internally by DNSServer, which binds a subclass
        carrying its own resolver.
    """

    resolver: Callable[[bytes, str], bytes] = staticmethod(lambda b, ip: b"")

    def handle(self) -> None:
        data, sock = self.request  # type: ignore[misc]
        peer_ip = (
            self.client_address[0]
            if isinstance(self.client_address, tuple)
            else "0.0.0.0"
        )
        wire = self.resolver(data, peer_ip)
        if not wire:
            return
        try:
            sock.sendto(wire, self.client_address)
        except OSError as e:
            logger.warning("failed to send UDP response to %s: %s", peer_ip, e)


def make_udp_server(
    host: str, port: int, resolver: Callable[[bytes, str], bytes]
) -> socketserver.ThreadingUDPServer:
    """
    Brief: Bind a ThreadingUDPServer whose handler threads call *resolver*.

    Inputs:
    - host: listen address (IPv6 literals select an AF_INET6 socket)
    - port: listen port; 0 binds an ephemeral port
    - resolver: callable mapping (query_bytes, client_ip) -> response_bytes

    Outputs:
    - Bound, not yet serving, ThreadingUDPServer with daemon handler threads.
    """
    handler_cls = type(
        "BoundDNSUDPHandler", (DNSUDPHandler,), {"resolver": staticmethod(resolver)}
    )
    server_cls = (
        _ThreadingUDPServer6 if ":" in host else socketserver.ThreadingUDPServer
    )
    server = server_cls((host, port), handler_cls)
    server.daemon_threads = True
    return server
