"""DNS over TCP: RFC 7766 length-prefixed framing plus a one-shot client.

Every message on a DNS TCP stream is preceded by its length as a two-byte
big-endian integer. The listener in ``appsdns.servers.tcp_server`` and the
``forward`` plugin both go through read_frame()/write_frame().
"""

import socket
import struct
from typing import Optional

_LENGTH = struct.Struct("!H")

MAX_MESSAGE_SIZE = 0xFFFF


class TCPError(Exception):
    """
    Brief: DNS-over-TCP exchange failed (connect, I/O, early close or ID mismatch).

    Inputs:
      - message: Error description.

    Outputs:
      - Exception instance.
    """

    pass


def write_frame(sock: socket.socket, payload: bytes) -> None:
    """Send *payload* behind its two-byte length; ValueError above 65535 bytes."""
    if len(payload) > MAX_MESSAGE_SIZE:
        raise ValueError(f"DNS message of {len(payload)} bytes cannot be framed")
    sock.sendall(_LENGTH.pack(len(payload)) + payload)


def _read_exactly(sock: socket.socket, n: int) -> Optional[bytes]:
    buf = bytearray(n)
    view = memoryview(buf)
    got = 0
    while got < n:
        read = sock.recv_into(view[got:], n - got)
        if read == 0:
            return None
        got += read
    return bytes(buf)


def read_frame(sock: socket.socket) -> Optional[bytes]:
    """
    Brief: Read one length-prefixed DNS message.

    Inputs:
      - sock: Connected blocking socket (timeouts surface as socket.timeout).

    Outputs:
      - bytes, or None when the peer closed the stream, whether cleanly
        between messages or part way through one.
    """
    header = _read_exactly(sock, _LENGTH.size)
    if header is None:
        return None
    (length,) = _LENGTH.unpack(header)
    if length == 0:
        return b""
    return _read_exactly(sock, length)


def tcp_query(
    host: str,
    port: int,
    query: bytes,
    *,
    connect_timeout_ms: int = 1000,
    read_timeout_ms: int = 1500,
) -> bytes:
    """
    Brief: Send one query over a fresh TCP connection and return the reply.

    Inputs:
      - host: Upstream resolver host/IP.
      - port: Upstream TCP port.
      - query: Wire-format DNS query bytes.
      - connect_timeout_ms: Bound on establishing the connection.
      - read_timeout_ms: Bound on each socket read/write afterwards.

    Outputs:
      - bytes: Wire-format DNS response carrying the query's ID.

    Example:
      >>> resp = tcp_query('192.0.2.53', 53, query_wire)  # doctest: +SKIP
    """
    try:
        sock = socket.create_connection(
            (host, int(port)), timeout=connect_timeout_ms / 1000.0
        )
    except OSError as e:
        raise TCPError(f"connect to {host}:{port} failed: {e}") from e

    with sock:
        try:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            sock.settimeout(read_timeout_ms / 1000.0)
            write_frame(sock, query)
            resp = read_frame(sock)
        except OSError as e:
            raise TCPError(f"exchange with {host}:{port} failed: {e}") from e

    if not resp:
        raise TCPError(f"{host}:{port} closed the connection without a response")
    if resp[:2] != query[:2]:
        raise TCPError(f"{host}:{port} answered with a mismatched message ID")
    return resp
