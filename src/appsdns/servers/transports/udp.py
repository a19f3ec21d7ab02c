import socket
import time
from typing import Optional


class UDPError(Exception):
    """
    Brief: DNS-over-UDP exchange failed (socket error, timeout or no matching reply).

    Inputs:
    - message: description

    Outputs:
    - Exception instance
    """

    pass


def _family_for(host: str) -> int:
    return socket.AF_INET6 if ":" in host else socket.AF_INET


def udp_query(
    host: str,
    port: int,
    query: bytes,
    *,
    timeout_ms: int = 2000,
    source_ip: Optional[str] = None,
) -> bytes:
    """
    Brief: Send one DNS query over UDP and wait for the reply carrying its ID.

    Inputs:
    - host: upstream resolver IP (IPv4 or IPv6 literal)
    - port: upstream UDP port
    - query: wire-format DNS query bytes (at least the 2-byte ID)
    - timeout_ms: total time allowed for the exchange
    - source_ip: optional source address to bind

    Outputs:
    - bytes: wire-format DNS response whose ID matches the query

    Notes:
    - The socket is connected, so datagrams from other peers are discarded by
      the kernel. Datagrams from the upstream with a different ID (late
      answers to an earlier query) are skipped until the timeout.

    Example:
        >>> try:
        ...     udp_query('127.0.0.1', 9, b'\\x00\\x01', timeout_ms=10)
        ... except UDPError:
        ...     pass
    """
    if len(query) < 2:
        raise UDPError("query too short to carry a message ID")
    want_id = query[:2]
    deadline = time.monotonic() + timeout_ms / 1000.0

    try:
        with socket.socket(_family_for(host), socket.SOCK_DGRAM) as s:
            if source_ip:
                s.bind((source_ip, 0))
            s.connect((host, int(port)))
            s.send(query)
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise UDPError(f"UDP error: no reply from {host}:{port}")
                s.settimeout(remaining)
                data = s.recv(65535)
                if data[:2] == want_id:
                    return data
    except socket.timeout as e:
        raise UDPError(f"UDP error: timed out waiting for {host}:{port}") from e
    except OSError as e:
        raise UDPError(f"UDP error: {e}") from e
