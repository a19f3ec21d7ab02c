"""Render a resolv.conf-style nameserver file for an upstream DNS host.

Brief:
  Resolves a host name (typically the cluster DNS service) to every A and AAAA
  address and writes one ``nameserver <ip>`` line per address. Resolution is
  retried while the host does not exist yet or DNS is temporarily unavailable.

Inputs:
  - --upstream-dns-host: host to resolve
  - --out: output path

Outputs:
  - Exit status 0 after the file was written atomically, 1 on failure.
"""

from __future__ import annotations

import argparse
import ipaddress
import logging
import os
import tempfile
import time
from typing import Callable, List, Optional

import dns.exception
import dns.resolver

from .config.logging_config import init_logging

logger = logging.getLogger("appsdns.resolvwriter")

DEFAULT_RETRY_DELAY = 3.0
DEFAULT_MAX_DELAY = 30.0

# Failures that mean "not there yet" or "try again later".
RETRYABLE_ERRORS = (
    dns.resolver.NXDOMAIN,
    dns.resolver.NoAnswer,
    dns.resolver.NoNameservers,
    dns.exception.Timeout,
)


class ResolveError(Exception):
    """Raised when a host cannot be resolved and retrying will not help."""

    pass


def lookup_ips(host: str, resolver: Optional[dns.resolver.Resolver] = None) -> List[str]:
    """Brief: Resolve *host* to all of its IPv4 and IPv6 addresses.

    Inputs:
      - host: Host name or IP literal.
      - resolver: Optional dnspython Resolver (defaults to one configured from
        the system resolv.conf).

    Outputs:
      - list[str]: A addresses followed by AAAA addresses. An IP literal is
        returned as-is.

    Raises:
      - dns.resolver.NoAnswer when the name exists but has neither family.
      - Any other dnspython exception unchanged.
    """
    try:
        return [str(ipaddress.ip_address(host))]
    except ValueError:
        pass

    r = resolver or dns.resolver.Resolver(configure=True)
    ips: List[str] = []
    for rdtype in ("A", "AAAA"):
        try:
            answer = r.resolve(host, rdtype, search=True)
        except dns.resolver.NoAnswer:
            continue
        ips.extend(rdata.address for rdata in answer)
    if not ips:
        raise dns.resolver.NoAnswer(f"no A or AAAA records for {host}")
    return ips


def resolve(
    host: str,
    *,
    retry_delay: float = DEFAULT_RETRY_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    max_attempts: Optional[int] = None,
    lookup: Callable[[str], List[str]] = lookup_ips,
    sleep: Callable[[float], None] = time.sleep,
) -> List[str]:
    """Brief: Resolve *host*, retrying transient and not-found failures.

    Inputs:
      - host: Host name to resolve.
      - retry_delay: First backoff in seconds; doubled after each failure.
      - max_delay: Upper bound for a single backoff.
      - max_attempts: Total attempts allowed; None retries forever because the
        host is expected to appear eventually.
      - lookup / sleep: Injection points for tests.

    Outputs:
      - list[str]: Resolved addresses.

    Raises:
      - ResolveError: on a non-retryable failure or once max_attempts is
        exhausted.
    """
    delay = float(retry_delay)
    attempt = 0
    while True:
        attempt += 1
        try:
            return lookup(host)
        except RETRYABLE_ERRORS as exc:
            if max_attempts is not None and attempt >= max_attempts:
                raise ResolveError(
                    f"failed to resolve {host!r} after {attempt} attempt(s): {exc}"
                ) from exc
            logger.warning(
                "resolving %s failed (attempt %d): %s; retrying in %.1fs",
                host,
                attempt,
                exc,
                delay,
            )
            sleep(delay)
            delay = min(delay * 2, float(max_delay))
        except dns.exception.DNSException as exc:
            raise ResolveError(f"failed to resolve {host!r}: {exc}") from exc


def render(nameservers: List[str], out_path: str) -> None:
    """Brief: Atomically write one ``nameserver <ip>`` line per address.

    Inputs:
      - nameservers: Addresses in the order they should appear.
      - out_path: Destination file; replaced in a single rename.

    Outputs:
      - None. Raises OSError when the file cannot be written.
    """
    directory = os.path.dirname(os.path.abspath(out_path))
    fd, tmp_path = tempfile.mkstemp(prefix=".resolv-", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            for ns in nameservers:
                f.write(f"nameserver {ns}\n")
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, out_path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        raise


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Resolve a DNS host and render its addresses as nameserver lines"
    )
    parser.add_argument(
        "--upstream-dns-host", required=True, help="The upstream DNS host to be resolved."
    )
    parser.add_argument(
        "--out", required=True, help="The output path for the rendered resolv.conf."
    )
    parser.add_argument(
        "--retry-delay",
        type=float,
        default=DEFAULT_RETRY_DELAY,
        help="Initial delay between resolution attempts in seconds (default: 3)",
    )
    parser.add_argument(
        "--max-delay",
        type=float,
        default=DEFAULT_MAX_DELAY,
        help="Maximum delay between resolution attempts in seconds (default: 30)",
    )
    parser.add_argument(
        "--max-attempts",
        type=int,
        default=None,
        help="Give up after this many attempts (default: retry forever)",
    )
    args = parser.parse_args(argv)

    init_logging({"level": "info"})

    try:
        ips = resolve(
            args.upstream_dns_host,
            retry_delay=args.retry_delay,
            max_delay=args.max_delay,
            max_attempts=args.max_attempts,
        )
    except ResolveError as exc:
        logger.error("%s", exc)
        return 1

    try:
        render(ips, args.out)
    except OSError as exc:
        logger.error("failed to render %s: %s", args.out, exc)
        return 1

    logger.info("wrote %d nameserver(s) to %s", len(ips), args.out)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())  # pragma: no cover
