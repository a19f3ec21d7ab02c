"""Client for the service discovery controller registration API.

Brief:
  The discovery controller maps application hostnames to the IP addresses of
  their registered backends. This module owns the mutually authenticated HTTPS
  session used to ask it, and decodes only the part of its answer that DNS
  needs.

Inputs:
  - TLS material paths and controller host/port, supplied once at startup.

Outputs:
  - DiscoveryClient.discover(name) -> list of address strings.
"""

from __future__ import annotations

import logging
import socket
import ssl
import threading
import time
import urllib.parse
from typing import Any, List, Optional

import requests
from pydantic import BaseModel, Field, ValidationError, field_validator
from requests.adapters import HTTPAdapter
from urllib3.connectionpool import HTTPConnectionPool, HTTPSConnectionPool

logger = logging.getLogger(__name__)

REGISTRATION_PATH = "registration"


class DiscoveryError(Exception):
    """
    Brief: Discovery controller call failed (transport, TLS, HTTP status or body).

    Inputs:
    - message: description including the queried name

    Outputs:
    - Exception instance; the original cause is chained via ``__cause__``.
    """

    pass


class TLSConfigError(Exception):
    """Raised at startup when TLS material cannot be loaded."""

    pass


class RegistrationHost(BaseModel):
    """Brief: One registered backend of a service.

    Only ``ip_address`` is consumed; other fields the controller sends
    (last_check_in, port, revision, service, service_repo_name, tags) are
    accepted and dropped. A null or non-string address decodes as None.
    """

    ip_address: Optional[str] = None

    class Config:
        extra = "ignore"

    @field_validator("ip_address", mode="before")
    @classmethod
    def _loose_address(cls, value: Any) -> Optional[str]:
        return value if isinstance(value, str) else None


class RegistrationResponse(BaseModel):
    """Brief: Body of ``GET /<api-version>/registration/<name>``.

    Example body:
        {"hosts": [{"ip_address": "10.255.141.235", "port": 0, "tags": {}}],
         "env": "", "service": ""}

    Entries that are not objects decode as None and are skipped, so one bad
    entry never fails the lookup.
    """

    hosts: Optional[List[Optional[RegistrationHost]]] = Field(default=None)

    class Config:
        extra = "ignore"

    @field_validator("hosts", mode="before")
    @classmethod
    def _drop_non_objects(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [item if isinstance(item, dict) else None for item in value]
        return value

    def addresses(self) -> List[str]:
        return [
            host.ip_address
            for host in self.hosts or []
            if host is not None and host.ip_address
        ]


def build_tls_context(
    ca_path: str, client_cert_path: str, client_key_path: str
) -> ssl.SSLContext:
    """
    Brief: Build the client-side SSLContext for mutual TLS with the controller.

    Inputs:
    - ca_path: PEM bundle used to verify the controller's certificate
    - client_cert_path: PEM client certificate presented to the controller
    - client_key_path: PEM private key for client_cert_path

    Outputs:
    - ssl.SSLContext with hostname checking and certificate verification on

    Raises:
    - TLSConfigError when any file is missing, unreadable or malformed.
    """
    try:
        ctx = ssl.create_default_context(ssl.Purpose.SERVER_AUTH, cafile=ca_path)
        ctx.load_cert_chain(certfile=client_cert_path, keyfile=client_key_path)
    except (OSError, ssl.SSLError, ValueError) as e:
        raise TLSConfigError(f"failed to load TLS material: {e}") from e
    ctx.minimum_version = ssl.TLSVersion.TLSv1_2
    return ctx


# The discover() call in progress on this thread, if any.
_current_call = threading.local()


def _shutdown_connection(conn: Any) -> None:
    sock = getattr(conn, "sock", None)
    if not isinstance(sock, socket.socket):
        return
    try:
        # Plain socket shutdown, bypassing SSLSocket's, so a read blocked in
        # another thread sees EOF instead of a torn-down SSL object.
        socket.socket.shutdown(sock, socket.SHUT_RDWR)
    except OSError as e:
        logger.debug("shutdown of expired discovery connection failed: %s", e)


class _CallWatchdog:
    """Brief: Bound one whole discover() call, headers and body included.

    Per-read socket timeouts restart whenever a byte arrives, so a controller
    that trickles its answer could hold the query thread forever. When the
    timer fires, every connection the call checked out of the pool is shut
    down and the blocked read fails.
    """

    def __init__(self, seconds: float) -> None:
        self._lock = threading.Lock()
        self._conns: List[Any] = []
        self.expired = False
        self._timer = threading.Timer(max(seconds, 0.0), self._expire)
        self._timer.daemon = True

    def attach(self, conn: Any) -> None:
        with self._lock:
            self._conns.append(conn)

    def _expire(self) -> None:
        with self._lock:
            self.expired = True
            conns = list(self._conns)
        for conn in conns:
            _shutdown_connection(conn)

    def __enter__(self) -> "_CallWatchdog":
        _current_call.watchdog = self
        self._timer.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self._timer.cancel()
        _current_call.watchdog = None


class _WatchedPoolMixin:
    def _get_conn(self, timeout=None):
        conn = super()._get_conn(timeout)
        watchdog = getattr(_current_call, "watchdog", None)
        if watchdog is not None:
            watchdog.attach(conn)
        return conn


class _WatchedHTTPConnectionPool(_WatchedPoolMixin, HTTPConnectionPool):
    pass


class _WatchedHTTPSConnectionPool(_WatchedPoolMixin, HTTPSConnectionPool):
    pass


class _DeadlineAdapter(HTTPAdapter):
    """HTTPAdapter whose pools report checked-out connections to _CallWatchdog."""

    def init_poolmanager(self, connections, maxsize, block=False, **pool_kwargs):
        super().init_poolmanager(connections, maxsize, block=block, **pool_kwargs)
        self.poolmanager.pool_classes_by_scheme = {
            "http": _WatchedHTTPConnectionPool,
            "https": _WatchedHTTPSConnectionPool,
        }


class _TLSAdapter(_DeadlineAdapter):
    """_DeadlineAdapter whose connection pools share one pre-built SSLContext."""

    def __init__(self, ssl_context: ssl.SSLContext, **kwargs) -> None:
        self._ssl_context = ssl_context
        super().__init__(**kwargs)

    def init_poolmanager(self, connections, maxsize, block=False, **pool_kwargs):
        pool_kwargs["ssl_context"] = self._ssl_context
        super().init_poolmanager(connections, maxsize, block=block, **pool_kwargs)


class DiscoveryClient:
    """Brief: Thread-safe client for the discovery controller.

    Inputs (constructor):
      - base_url: Scheme and authority of the controller, e.g.
        "https://sdc.example:8054".
      - ssl_context: Pre-built client SSLContext (see build_tls_context).
        When None, the session's default verification applies.
      - api_version: Path segment preceding "registration" (default "v1").
      - dial_timeout: Seconds allowed for the TCP connect.
      - tls_handshake_timeout: Additional seconds allowed for the TLS handshake;
        urllib3 bounds connect and handshake together, so the connect-phase
        timeout is the sum of the two.
      - read_timeout: Seconds allowed for the response when the caller gives
        no deadline.
      - max_idle_conns_per_host: Size of the persistent connection pool.
      - session: Optional pre-configured requests.Session (tests).

    Outputs:
      - DiscoveryClient; one instance is shared by all in-flight queries.
    """

    def __init__(
        self,
        base_url: str,
        ssl_context: Optional[ssl.SSLContext] = None,
        *,
        api_version: str = "v1",
        dial_timeout: float = 2.0,
        tls_handshake_timeout: float = 1.0,
        read_timeout: float = 5.0,
        max_idle_conns_per_host: int = 1024,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_version = api_version.strip("/")
        self.connect_timeout = float(dial_timeout) + float(tls_handshake_timeout)
        self.read_timeout = float(read_timeout)

        if session is None:
            session = requests.Session()
            # Proxy and CA-bundle environment variables must not alter the
            # pinned trust anchor or route registry traffic elsewhere.
            session.trust_env = False
            adapter_kwargs = {
                "pool_connections": 1,
                "pool_maxsize": int(max_idle_conns_per_host),
                "max_retries": 0,
            }
            if ssl_context is not None:
                adapter = _TLSAdapter(ssl_context, **adapter_kwargs)
            else:
                adapter = _DeadlineAdapter(**adapter_kwargs)
            session.mount("https://", adapter)
            session.mount("http://", _DeadlineAdapter(**adapter_kwargs))
        self._session = session

    @classmethod
    def from_tls_files(
        cls,
        host: str,
        port: int,
        *,
        ca_path: str,
        client_cert_path: str,
        client_key_path: str,
        **kwargs,
    ) -> "DiscoveryClient":
        """Brief: Build a client for https://host:port from PEM files.

        Raises TLSConfigError when the TLS material cannot be loaded.
        """
        ssl_context = build_tls_context(ca_path, client_cert_path, client_key_path)
        if ":" in host and not host.startswith("["):
            host = f"[{host}]"
        return cls(f"https://{host}:{int(port)}", ssl_context, **kwargs)

    def url_for(self, name: str) -> str:
        """Registration URL for *name*; the trailing dot of an FQDN is kept."""
        segment = urllib.parse.quote(name, safe="")
        return f"{self.base_url}/{self.api_version}/{REGISTRATION_PATH}/{segment}"

    def discover(self, name: str, deadline: Optional[float] = None) -> List[str]:
        """
        Brief: Fetch the addresses registered for *name*.

        Inputs:
        - name: Fully-qualified DNS name as queried (e.g. "app.apps.internal.")
        - deadline: Optional time.monotonic() instant bounding the whole call

        Outputs:
        - list[str]: Address strings in controller order; empty when nothing
          is registered under *name*.

        Raises:
        - DiscoveryError on deadline expiry, transport/TLS failure, non-2xx
          status or an undecodable body.
        """
        url = self.url_for(name)
        connect_timeout = self.connect_timeout
        read_timeout = self.read_timeout
        budget = connect_timeout + read_timeout
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise DiscoveryError(
                    f"failed to discover service {name}: query deadline exceeded"
                )
            connect_timeout = min(connect_timeout, remaining)
            read_timeout = remaining
            budget = remaining

        watchdog = _CallWatchdog(budget)
        try:
            with watchdog:
                res = self._session.get(url, timeout=(connect_timeout, read_timeout))
        except requests.RequestException as e:
            if watchdog.expired:
                raise DiscoveryError(
                    f"failed to discover service {name}: query deadline exceeded"
                ) from e
            raise DiscoveryError(f"failed to discover service {name}: {e}") from e
        if watchdog.expired:
            # A connection cut mid-headers can still parse as a short response.
            res.close()
            raise DiscoveryError(
                f"failed to discover service {name}: query deadline exceeded"
            )

        try:
            if not 200 <= res.status_code < 300:
                raise DiscoveryError(
                    f"failed to discover service {name}: "
                    f"unexpected HTTP status {res.status_code}"
                )
            try:
                payload = res.json()
            except ValueError as e:
                raise DiscoveryError(
                    f"failed to discover service {name}: invalid JSON body: {e}"
                ) from e
            if not isinstance(payload, dict):
                raise DiscoveryError(
                    f"failed to discover service {name}: "
                    f"expected a JSON object, got {type(payload).__name__}"
                )
            try:
                body = RegistrationResponse(**payload)
            except ValidationError as e:
                raise DiscoveryError(
                    f"failed to discover service {name}: malformed registration: {e}"
                ) from e
        finally:
            res.close()

        addresses = body.addresses()
        logger.debug("discovered %d address(es) for %s", len(addresses), name)
        return addresses

    def close(self) -> None:
        """Close pooled connections."""
        self._session.close()
