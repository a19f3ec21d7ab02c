from __future__ import annotations

import logging
from typing import Dict, List, Optional, Union

from dnslib import RCODE, DNSRecord
from pydantic import BaseModel, Field

from appsdns.plugins.resolve.base import (
    BasePlugin,
    HandlerResult,
    PluginContext,
    PluginError,
    ResponseWriteError,
    plugin_aliases,
)
from appsdns.servers.transports.tcp import TCPError, tcp_query
from appsdns.servers.transports.udp import UDPError, udp_query

logger = logging.getLogger(__name__)


class ForwardError(PluginError):
    """Raised/returned when no upstream produced a usable response."""


class UpstreamConfig(BaseModel):
    host: str = Field(min_length=1)
    port: int = Field(default=53, ge=1, le=65535)


class ForwardConfig(BaseModel):
    """Brief: Typed configuration model for Forward.

    Inputs:
      - upstreams: Ordered upstream resolvers ({host, port}); tried in order.
      - timeout_ms: Per-attempt timeout, capped by the query deadline.

    Outputs:
      - ForwardConfig instance with normalized field types.
    """

    upstreams: List[UpstreamConfig] = Field(min_length=1)
    timeout_ms: int = Field(default=2000, ge=1)

    class Config:
        extra = "allow"


@plugin_aliases("forward", "upstream", "proxy")
class Forward(BasePlugin):
    """
    Brief: Terminal plugin that relays queries to upstream resolvers.

    Upstreams are tried in order until one answers. A truncated UDP answer is
    retried over TCP against the same upstream. The response is relayed
    verbatim apart from the message ID. This plugin never calls the next
    plugin; queries nobody upstream can answer end with SERVFAIL.
    """

    @classmethod
    def get_config_model(cls):
        return ForwardConfig

    @property
    def upstreams(self) -> List[Dict[str, Union[str, int]]]:
        raw = self.config.get("upstreams") or []
        return [
            {"host": str(u["host"]), "port": int(u.get("port", 53))}
            for u in raw
            if isinstance(u, dict)
        ]

    def _attempt_timeout_ms(self, ctx: PluginContext) -> Optional[int]:
        timeout_ms = int(self.config.get("timeout_ms", 2000))
        remaining = ctx.remaining()
        if remaining is None:
            return timeout_ms
        if remaining <= 0:
            return None
        return max(1, min(timeout_ms, int(remaining * 1000)))

    def _exchange(self, upstream: Dict, query: bytes, timeout_ms: int) -> bytes:
        host, port = str(upstream["host"]), int(upstream["port"])
        wire = udp_query(host, port, query, timeout_ms=timeout_ms)
        if DNSRecord.parse(wire).header.tc:
            self.logger.debug(
                "%s: truncated answer from %s:%d; retrying over TCP",
                self.name,
                host,
                port,
            )
            wire = tcp_query(
                host,
                port,
                query,
                connect_timeout_ms=timeout_ms,
                read_timeout_ms=timeout_ms,
            )
        return wire

    def handle(self, ctx: PluginContext) -> HandlerResult:
        query = ctx.request.pack()
        last_error: Optional[Exception] = None

        for upstream in self.upstreams:
            timeout_ms = self._attempt_timeout_ms(ctx)
            if timeout_ms is None:
                last_error = ForwardError(self.name, "query deadline exceeded")
                break
            try:
                wire = self._exchange(upstream, query, timeout_ms)
                response = DNSRecord.parse(wire)
            except (UDPError, TCPError) as exc:
                self.logger.warning(
                    "%s: upstream %s:%s failed for %s: %s",
                    self.name,
                    upstream["host"],
                    upstream["port"],
                    ctx.qname,
                    exc,
                )
                last_error = exc
                continue
            except Exception as exc:
                # dnslib raises DNSError and assorted parse errors on bad wire data.
                self.logger.warning(
                    "%s: unparseable response from %s:%s: %s",
                    self.name,
                    upstream["host"],
                    upstream["port"],
                    exc,
                )
                last_error = exc
                continue

            response.header.id = ctx.request.header.id
            try:
                ctx.writer.write_msg(response)
            except ResponseWriteError as exc:
                return RCODE.SERVFAIL, exc
            return int(response.header.rcode), None

        if last_error is None:
            last_error = ForwardError(self.name, "no upstreams configured")
        self.logger.error(
            "%s: all upstreams failed for %s: %s", self.name, ctx.qname, last_error
        )
        if isinstance(last_error, ForwardError):
            return RCODE.SERVFAIL, last_error
        return RCODE.SERVFAIL, ForwardError(
            self.name, f"all upstreams failed: {last_error}"
        )
