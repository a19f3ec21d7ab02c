from __future__ import annotations

import logging
import time
from typing import ClassVar, Optional, Sequence, Tuple, Union, final

from dnslib import CLASS, QTYPE, RCODE, DNSRecord

from appsdns.config.logging_config import configure_named_logger

logger = logging.getLogger(__name__)

# Result of one handler in the chain: the DNS response code it settled on and
# the error that caused it (None on success or clean deferral).
HandlerResult = Tuple[int, Optional[Exception]]


class PluginError(Exception):
    """Brief: Error raised or returned by a plugin in the handler chain.

    Inputs:
      - plugin: Name of the plugin the error originates from.
      - message: Human-readable description.

    Outputs:
      - Exception instance whose str() is prefixed with "plugin/<name>: ".
    """

    def __init__(self, plugin: str, message: str) -> None:
        self.plugin = plugin
        super().__init__(f"plugin/{plugin}: {message}")


class ResponseWriteError(Exception):
    """Raised when a plugin tries to finalize a query that already has a response."""


class ResponseWriter:
    """Brief: Collects the single DNS message finalized for one query.

    Inputs:
      - None.

    Outputs:
      - ResponseWriter whose ``msg`` stays None until a plugin calls
        write_msg(). Exactly one write is accepted per query; the server
        transmits the collected message after the chain returns.

    Example:
        >>> w = ResponseWriter()
        >>> w.written
        False
    """

    def __init__(self) -> None:
        self.msg: Optional[DNSRecord] = None

    @property
    def written(self) -> bool:
        return self.msg is not None

    def write_msg(self, msg: DNSRecord) -> None:
        """Record *msg* as the response for this query.

        Raises ResponseWriteError when a response was already written.
        """
        if self.msg is not None:
            raise ResponseWriteError("response already written for this query")
        self.msg = msg


class PluginContext:
    """Brief: Per-query context handed down the handler chain.

    Inputs:
      - request: Parsed dnslib DNSRecord of the inbound query.
      - client_ip: str IP address of the requesting client.
      - writer: ResponseWriter collecting the response; a fresh one is
        created when omitted.
      - deadline: Optional time.monotonic() instant after which work for this
        query should be abandoned.
      - transport: "udp" or "tcp".

    Outputs:
      - PluginContext instance. Plugins that defer must pass it on untouched.

    Example use:
        >>> from dnslib import DNSRecord
        >>> ctx = PluginContext(DNSRecord.question("example.com", "A"), "192.0.2.1")
        >>> ctx.qname
        'example.com.'
        >>> ctx.remaining() is None
        True
    """

    @final
    def __init__(
        self,
        request: DNSRecord,
        client_ip: str,
        writer: Optional[ResponseWriter] = None,
        *,
        deadline: Optional[float] = None,
        transport: str = "udp",
    ) -> None:
        self.request = request
        self.client_ip = client_ip
        self.writer = writer if writer is not None else ResponseWriter()
        self.deadline = deadline
        self.transport = transport

    @property
    def qname(self) -> str:
        return str(self.request.q.qname)

    @property
    def qtype(self) -> int:
        return int(self.request.q.qtype)

    @property
    def qclass(self) -> int:
        return int(self.request.q.qclass)

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline (may be negative), or None when unbounded."""
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    def expired(self) -> bool:
        left = self.remaining()
        return left is not None and left <= 0


def make_error_reply(request: DNSRecord, rcode: int) -> DNSRecord:
    """Brief: Build an empty reply to *request* carrying *rcode*.

    Inputs:
      - request: Original query.
      - rcode: DNS response code (e.g. RCODE.SERVFAIL).

    Outputs:
      - DNSRecord: Non-authoritative reply with the question echoed and no
        answer, authority, or additional records.
    """
    reply = request.reply(aa=0)
    reply.header.rcode = rcode
    return reply


class BasePlugin:
    """Brief: Base class for every handler in the DNS chain.

    Each plugin holds a reference to exactly one next plugin, set once at
    construction, and exposes ``handle(ctx) -> (rcode, error)``. A plugin
    either finalizes the query by writing to ``ctx.writer`` or defers by
    returning ``self.next_or_failure(ctx)``.

    Inputs:
      - name: Optional human-friendly identifier used in logs. Defaults to the
        first alias or the class name.
      - next_plugin: The following handler in the chain (None for the last).
      - **config: Plugin configuration. Recognized base options:
          - priority (int | str): Chain position, lower runs first (1-255).
          - setup_priority (int | str): setup() ordering (1-255); falls back
            to priority.
          - logging (dict): Per-plugin logging block (level, stderr, file,
            syslog) applied to the plugin's module logger.

    Outputs:
      - Initialized plugin instance.

    Example use:
        >>> class Refuse(BasePlugin):
        ...     def handle(self, ctx):
        ...         return RCODE.REFUSED, None
        >>> Refuse(name="refuse", priority=5).priority
        5
    """

    priority: ClassVar[int] = 100
    setup_priority: ClassVar[int] = 100
    aliases: ClassVar[Sequence[str]] = ()

    @classmethod
    def get_aliases(cls) -> Sequence[str]:
        return tuple(getattr(cls, "aliases", ()))

    @final
    def __init__(
        self,
        name: Optional[str] = None,
        next_plugin: Optional["BasePlugin"] = None,
        **config: object,
    ) -> None:
        if name is not None:
            self.name = str(name)
        else:
            aliases = list(self.get_aliases())
            self.name = str(aliases[0]) if aliases else self.__class__.__name__

        self.next = next_plugin
        self.config = config
        logger.debug("loading %s", self)

        self.logger = logging.getLogger(getattr(self.__class__, "__module__", __name__))
        plugin_logging_cfg = config.get("logging")
        if isinstance(plugin_logging_cfg, dict):
            self.logger = configure_named_logger(self.logger.name, plugin_logging_cfg)

        self.priority = self._parse_priority_value(
            config.get("priority", self.__class__.priority), "priority", logger
        )
        self.setup_priority = self._parse_priority_value(
            config.get(
                "setup_priority", config.get("priority", self.__class__.setup_priority)
            ),
            "setup_priority",
            logger,
        )

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"

    @staticmethod
    def _parse_priority_value(value: object, key: str, logger: logging.Logger) -> int:
        """Brief: Parse and clamp a priority value to the inclusive range [1, 255].

        Inputs:
          - value: Priority value (int, str, or other).
          - key: Config key name for logging (e.g., "priority").
          - logger: Logger instance for warnings.

        Outputs:
          - int: Clamped priority; 100 on invalid input.

        Example:
            >>> BasePlugin._parse_priority_value("25", "priority", logger)
            25
            >>> BasePlugin._parse_priority_value(300, "priority", logger)
            255
        """
        default = 100
        try:
            val = int(value)  # type: ignore[arg-type]
        except (ValueError, TypeError):
            logger.warning("Invalid %s %r; using default %d", key, value, default)
            return default

        if val < 1:
            logger.warning("%s below 1; clamping to 1", key)
            return 1
        if val > 255:
            logger.warning("%s above 255; clamping to 255", key)
            return 255
        return val

    @staticmethod
    def qtype_name(qtype: Union[int, str]) -> str:
        """Normalize a DNS qtype value to its uppercase mnemonic (e.g. 28 -> "AAAA")."""
        if isinstance(qtype, int):
            return str(QTYPE.get(qtype, str(qtype))).upper()
        return str(qtype).upper()

    @staticmethod
    def qclass_name(qclass: int) -> str:
        return str(CLASS.get(qclass, str(qclass))).upper()

    def handle(self, ctx: PluginContext) -> HandlerResult:
        """Brief: Process one query; the base implementation defers.

        Inputs:
          - ctx: PluginContext for the query.

        Outputs:
          - (rcode, error): Response code and optional error. When the plugin
            wrote a response, rcode reflects it; when it deferred, the next
            plugin's result is returned verbatim.
        """
        return self.next_or_failure(ctx)

    @final
    def next_or_failure(self, ctx: PluginContext) -> HandlerResult:
        """Brief: Hand *ctx* unchanged to the next plugin.

        Outputs:
          - The next plugin's (rcode, error), or (SERVFAIL, PluginError) when
            this plugin is the last in the chain.
        """
        if self.next is None:
            return RCODE.SERVFAIL, PluginError(self.name, "no next plugin found")
        return self.next.handle(ctx)

    def setup(self) -> None:
        """Brief: One-time initialization run before listeners start.

        Notes:
          - Exceptions raised here abort startup. The base implementation is
            a no-op.
        """
        return None

    def close(self) -> None:
        """Release resources acquired in setup(); the base implementation is a no-op."""
        return None


def plugin_aliases(*aliases: str):
    """Brief: Decorator to set aliases on a plugin class for registry discovery.

    Inputs:
      - *aliases: Variable number of alias strings for the plugin.

    Outputs:
      - Callable that applies the aliases to a plugin class and returns it.

    Example:
        >>> @plugin_aliases("fwd", "proxy")
        ... class Forward(BasePlugin):
        ...     pass
        >>> Forward.aliases
        ('fwd', 'proxy')
    """

    def _wrap(cls: type) -> type:
        cls.aliases = tuple(aliases)
        return cls

    return _wrap
