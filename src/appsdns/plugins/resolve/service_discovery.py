from __future__ import annotations

import ipaddress
import logging
from typing import Iterable, List, Optional, Union

from dnslib import AAAA, CLASS, QTYPE, RCODE, RR, A, DNSLabel, DNSRecord
from pydantic import BaseModel, Field

from appsdns.discovery.client import DiscoveryClient, DiscoveryError
from appsdns.plugins.resolve.base import (
    BasePlugin,
    HandlerResult,
    PluginContext,
    PluginError,
    ResponseWriteError,
    plugin_aliases,
)

logger = logging.getLogger(__name__)

MAX_TTL = 2**32 - 1

_ELIGIBLE_QTYPES = frozenset((QTYPE.A, QTYPE.AAAA))


def is_eligible(qclass: int, qtype: int) -> bool:
    """Brief: Decide whether a query may be answered from the discovery controller.

    Inputs:
      - qclass: Question class code.
      - qtype: Question type code.

    Outputs:
      - bool: True only for class IN with type A or AAAA.

    Example:
      >>> is_eligible(CLASS.IN, QTYPE.AAAA)
      True
      >>> is_eligible(CLASS.IN, QTYPE.MX)
      False
    """
    return qclass == CLASS.IN and qtype in _ELIGIBLE_QTYPES


def _ipv4_bytes(
    ip: Union[ipaddress.IPv4Address, ipaddress.IPv6Address],
) -> Optional[bytes]:
    if ip.version == 4:
        return ip.packed
    mapped = ip.ipv4_mapped
    if mapped is not None:
        return mapped.packed
    return None


def _ipv6_bytes(ip: Union[ipaddress.IPv4Address, ipaddress.IPv6Address]) -> bytes:
    if ip.version == 6:
        return ip.packed
    return b"\x00" * 10 + b"\xff\xff" + ip.packed


def synthesize_answers(
    qname: Union[str, DNSLabel], qtype: int, addresses: Iterable[str], ttl: int
) -> List[RR]:
    """Brief: Turn discovered address strings into answer records for one question.

    Inputs:
      - qname: Query name, used verbatim as the owner of every record.
      - qtype: QTYPE.A or QTYPE.AAAA; decides the family of every record.
      - addresses: Address strings in discovery order.
      - ttl: TTL stamped on every record.

    Outputs:
      - list[RR]: Records in input order. Unparseable entries are skipped.
        Under A only addresses with a 4-byte form (IPv4, IPv4-mapped IPv6)
        are kept; under AAAA every address has a 16-byte form, IPv4 being
        emitted as its ::ffff:a.b.c.d mapping. Empty when nothing matches.

    Example:
      >>> [str(rr.rdata) for rr in synthesize_answers("a.", QTYPE.A, ["10.0.0.1", "::1"], 30)]
      ['10.0.0.1']
    """
    answers: List[RR] = []
    for text in addresses:
        try:
            ip = ipaddress.ip_address(text)
        except ValueError:
            logger.debug("skipping unparseable address %r for %s", text, qname)
            continue

        if qtype == QTYPE.A:
            packed = _ipv4_bytes(ip)
            if packed is None:
                continue
            rdata = A(tuple(packed))
        elif qtype == QTYPE.AAAA:
            rdata = AAAA(tuple(_ipv6_bytes(ip)))
        else:
            return []

        answers.append(
            RR(rname=qname, rtype=qtype, rclass=CLASS.IN, ttl=ttl, rdata=rdata)
        )
    return answers


def build_response(request: DNSRecord, answers: List[RR]) -> DNSRecord:
    """Brief: Build the authoritative reply carrying *answers* for *request*."""
    reply = request.reply(aa=1)
    reply.header.rcode = RCODE.NOERROR
    for rr in answers:
        reply.add_answer(rr)
    return reply


class ServiceDiscoveryConfig(BaseModel):
    """Brief: Typed configuration model for ServiceDiscovery.

    Inputs:
      - tls_ca_path: CA bundle verifying the discovery controller.
      - tls_client_cert_path: Client certificate presented to the controller.
      - tls_client_key_path: Private key for the client certificate.
      - sdc_host: Discovery controller host name or address.
      - sdc_port: Discovery controller port.
      - ttl: TTL stamped on synthesized records.
      - api_version: Registration API version path segment.
      - dial_timeout_ms: TCP connect timeout.
      - tls_handshake_timeout_ms: TLS handshake timeout.
      - max_idle_conns_per_host: Persistent connection pool size.

    Outputs:
      - ServiceDiscoveryConfig instance with normalized field types.
    """

    tls_ca_path: str
    tls_client_cert_path: str
    tls_client_key_path: str
    sdc_host: str = Field(min_length=1)
    sdc_port: int = Field(ge=1, le=65535)
    ttl: int = Field(default=0, ge=0, le=MAX_TTL)
    api_version: str = "v1"
    dial_timeout_ms: int = Field(default=2000, ge=1)
    tls_handshake_timeout_ms: int = Field(default=1000, ge=1)
    max_idle_conns_per_host: int = Field(default=1024, ge=1)

    class Config:
        extra = "allow"


@plugin_aliases("service_discovery", "svcdiscovery", "sdc")
class ServiceDiscovery(BasePlugin):
    """
    Brief: Answer A/AAAA queries for application hostnames from the discovery controller.

    Eligible queries (class IN, type A or AAAA) trigger exactly one registry
    lookup. When the registry reports addresses matching the requested
    family, this plugin writes an authoritative answer itself. An empty
    registration, or one with no usable address, defers the untouched query
    to the next plugin so other authorities can answer the same name. A
    failed lookup ends the query with SERVFAIL; the next plugin is not
    consulted because the registry is the source of truth for these names.
    """

    client: Optional[DiscoveryClient] = None

    @classmethod
    def get_config_model(cls):
        """Brief: Return the Pydantic model used to validate plugin configuration.

        Outputs:
          - ServiceDiscoveryConfig class for use by the core config loader.
        """

        return ServiceDiscoveryConfig

    @property
    def ttl(self) -> int:
        return int(self.config.get("ttl", 0))

    def setup(self) -> None:
        """
        Brief: Load TLS material and build the shared discovery client.

        Outputs:
          - None; raises TLSConfigError when the CA, certificate or key cannot
            be loaded so startup fails rather than individual queries.
        """
        self.client = DiscoveryClient.from_tls_files(
            str(self.config["sdc_host"]),
            int(self.config["sdc_port"]),
            ca_path=str(self.config["tls_ca_path"]),
            client_cert_path=str(self.config["tls_client_cert_path"]),
            client_key_path=str(self.config["tls_client_key_path"]),
            api_version=str(self.config.get("api_version", "v1")),
            dial_timeout=int(self.config.get("dial_timeout_ms", 2000)) / 1000.0,
            tls_handshake_timeout=int(
                self.config.get("tls_handshake_timeout_ms", 1000)
            )
            / 1000.0,
            max_idle_conns_per_host=int(
                self.config.get("max_idle_conns_per_host", 1024)
            ),
        )
        self.logger.info(
            "%s: using discovery controller %s", self.name, self.client.base_url
        )

    def handle(self, ctx: PluginContext) -> HandlerResult:
        qclass, qtype, qname = ctx.qclass, ctx.qtype, ctx.request.q.qname

        if not is_eligible(qclass, qtype):
            return self.next_or_failure(ctx)

        if self.client is None:
            return RCODE.SERVFAIL, PluginError(
                self.name, "discovery client not initialized; setup() was not run"
            )

        try:
            addresses = self.client.discover(str(qname), deadline=ctx.deadline)
        except DiscoveryError as exc:
            self.logger.error("%s: %s", self.name, exc)
            return RCODE.SERVFAIL, exc

        answers = synthesize_answers(qname, qtype, addresses, self.ttl)
        if not answers:
            self.logger.debug(
                "%s: no %s answer for %s from %d address(es); deferring",
                self.name,
                self.qtype_name(qtype),
                qname,
                len(addresses),
            )
            return self.next_or_failure(ctx)

        self.logger.debug("%s: %s", qname, [str(rr) for rr in answers])
        try:
            ctx.writer.write_msg(build_response(ctx.request, answers))
        except ResponseWriteError as exc:
            self.logger.error("%s: %s", self.name, exc)
            return RCODE.SERVFAIL, exc
        return RCODE.NOERROR, None

    def close(self) -> None:
        if self.client is not None:
            self.client.close()
