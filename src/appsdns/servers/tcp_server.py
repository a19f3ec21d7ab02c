import logging
import socket
import socketserver
from typing import Callable

from appsdns.servers.transports.tcp import read_frame, write_frame

logger = logging.getLogger("appsdns.tcp")

DEFAULT_IDLE_TIMEOUT = 15.0


class _ThreadingTCPServer(socketserver.ThreadingTCPServer):
    allow_reuse_address = True


class _ThreadingTCPServer6(_ThreadingTCPServer):
    address_family = socket.AF_INET6


class DNSTCPHandler(socketserver.BaseRequestHandler):
    """
    Brief: DNS-over-TCP connection handler (RFC 7766 two-byte length framing).

    Inputs:
    - request: connected socket provided by socketserver
    - client_address: peer address

    Outputs:
    - None; answers framed queries until the peer closes the connection, the
      connection stays idle for ``idle_timeout`` seconds, or the resolver asks
      for a drop (empty response).
    """

    resolver: Callable[[bytes, str], bytes] = staticmethod(lambda b, ip: b"")
    idle_timeout: float = DEFAULT_IDLE_TIMEOUT

    def handle(self) -> None:
        sock: socket.socket = self.request
        peer_ip = (
            self.client_address[0]
            if isinstance(self.client_address, tuple)
            else "0.0.0.0"
        )
        sock.settimeout(self.idle_timeout)
        try:
            while True:
                query = read_frame(sock)
                if not query:
                    break
                response = self.resolver(query, peer_ip)
                if not response:
                    break
                write_frame(sock, response)
        except socket.timeout:
            logger.debug("closing idle TCP connection from %s", peer_ip)
        except OSError as e:
            logger.debug("TCP connection from %s ended: %s", peer_ip, e)


def make_tcp_server(
    host: str,
    port: int,
    resolver: Callable[[bytes, str], bytes],
    *,
    idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
) -> socketserver.ThreadingTCPServer:
    """
    Brief: Bind a ThreadingTCPServer; one handler thread per connection.

    Inputs:
    - host: listen address (IPv6 literals select an AF_INET6 socket)
    - port: listen port; 0 binds an ephemeral port
    - resolver: callable mapping (query_bytes, client_ip) -> response_bytes
    - idle_timeout: seconds a connection may stay silent before it is closed

    Outputs:
    - Bound, not yet serving, ThreadingTCPServer with daemon handler threads.
    """
    handler_cls = type(
        "BoundDNSTCPHandler",
        (DNSTCPHandler,),
        {"resolver": staticmethod(resolver), "idle_timeout": float(idle_timeout)},
    )
    server_cls = _ThreadingTCPServer6 if ":" in host else _ThreadingTCPServer
    server = server_cls((host, port), handler_cls)
    server.daemon_threads = True
    return server
