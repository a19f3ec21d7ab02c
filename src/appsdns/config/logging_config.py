"""Logging setup shared by the appsdns entry points and per-plugin loggers.

Lines look like ``2026-01-02T03:04:05Z [warn] appsdns.plugins.resolve.forward: ...``.
The same ``logging`` block shape is accepted at the top level of the config
and inside individual plugin entries:

    logging:
      level: info          # debug | info | warn | error | crit
      stderr: true
      file: /var/log/appsdns.log
      syslog: {address: /dev/log, facility: daemon, tag: appsdns}
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import sys
import time
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "crit": logging.CRITICAL,
    "critical": logging.CRITICAL,
}

# Short lowercase tag per level; levels in between use the nearest lower one.
_TAG_ORDER = (
    (logging.CRITICAL, "crit"),
    (logging.ERROR, "error"),
    (logging.WARNING, "warn"),
    (logging.INFO, "info"),
    (logging.DEBUG, "debug"),
)

LOG_FORMAT = "%(asctime)s %(level_tag)s %(name)s: %(message)s"

DEFAULT_SYSLOG_ADDRESS = "/dev/log"
DEFAULT_SYSLOG_TAG = "appsdns"


def level_tag(levelno: int) -> str:
    for threshold, tag in _TAG_ORDER:
        if levelno >= threshold:
            return f"[{tag}]"
    return f"[lvl{levelno}]"


class BracketLevelFormatter(logging.Formatter):
    """``<UTC ISO-8601 time> [level] logger: message`` lines for stderr and files."""

    converter = time.gmtime

    def formatTime(self, record, datefmt=None):
        return time.strftime("%Y-%m-%dT%H:%M:%SZ", self.converter(record.created))

    def format(self, record):
        record.level_tag = level_tag(record.levelno)
        return super().format(record)


class SyslogFormatter(logging.Formatter):
    """``[tag: ][level] logger: message``; syslog stamps its own time."""

    def __init__(self, tag: Optional[str] = None) -> None:
        super().__init__()
        self.tag = tag

    def format(self, record):
        record.level_tag = level_tag(record.levelno)
        line = f"{record.level_tag} {record.name}: {record.getMessage()}"
        return f"{self.tag}: {line}" if self.tag else line


def parse_level(value: object, default: int = logging.INFO) -> int:
    """Brief: Map a textual level name (debug, info, warn, ...) to a logging level.

    Inputs:
      - value: Level name; case-insensitive. Unknown values map to *default*.
      - default: Level used when value is missing or unknown.

    Outputs:
      - int: logging level constant.

    Example:
      >>> parse_level("WARN") == logging.WARNING
      True
    """
    if value is None:
        return default
    return LEVELS.get(str(value).strip().lower(), default)


def _file_handler(file_path: str, formatter: logging.Formatter) -> logging.Handler:
    path = os.path.abspath(os.path.expanduser(file_path))
    os.makedirs(os.path.dirname(path), exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(formatter)
    return handler


def _syslog_target(
    spec: Union[bool, Mapping[str, Any]],
) -> Tuple[Union[str, Tuple[str, int]], int, str]:
    """Resolve a ``syslog`` value (true or mapping) to (address, facility, tag)."""
    opts: Mapping[str, Any] = spec if isinstance(spec, Mapping) else {}
    address = opts.get("address", DEFAULT_SYSLOG_ADDRESS)
    if isinstance(address, list):
        # YAML has no tuples; [host, port] is a UDP syslog collector.
        address = (str(address[0]), int(address[1]))
    syslog_cls = logging.handlers.SysLogHandler
    facility_name = f"LOG_{str(opts.get('facility', 'user')).upper()}"
    facility = getattr(syslog_cls, facility_name, syslog_cls.LOG_USER)
    return address, facility, str(opts.get("tag", DEFAULT_SYSLOG_TAG))


def build_handlers(cfg: Mapping[str, Any]) -> List[logging.Handler]:
    """Brief: Construct the stderr/file/syslog handlers a logging block asks for.

    Inputs:
      - cfg: Mapping with optional keys stderr (default True), file, syslog.

    Outputs:
      - list[logging.Handler]: Handlers with formatters attached. A syslog
        target that cannot be opened is logged as a warning and skipped; a
        file that cannot be opened raises OSError.
    """
    formatter = BracketLevelFormatter(fmt=LOG_FORMAT)
    handlers: List[logging.Handler] = []

    if cfg.get("stderr", True):
        stream = logging.StreamHandler(sys.stderr)
        stream.setFormatter(formatter)
        handlers.append(stream)

    file_path = cfg.get("file")
    if isinstance(file_path, str) and file_path.strip():
        handlers.append(_file_handler(file_path.strip(), formatter))

    syslog_spec = cfg.get("syslog")
    if syslog_spec:
        address, facility, tag = _syslog_target(syslog_spec)
        try:
            syslog = logging.handlers.SysLogHandler(address=address, facility=facility)
        except (OSError, ValueError) as e:
            logging.getLogger(__name__).warning(
                "Failed to configure syslog at %s: %s", address, e
            )
        else:
            syslog.setFormatter(SyslogFormatter(tag=tag))
            handlers.append(syslog)

    return handlers


def _install(target: logging.Logger, cfg: Mapping[str, Any]) -> None:
    target.setLevel(parse_level(cfg.get("level")))
    for old in list(target.handlers):
        target.removeHandler(old)
    for handler in build_handlers(cfg):
        target.addHandler(handler)


def init_logging(cfg: Optional[Dict[str, Any]]) -> None:
    """
    Configure the root logger from the top-level ``logging`` block.

    Args:
        cfg: Mapping with optional keys level (default info), stderr
            (default true), file and syslog. None means defaults.

    Notes:
        Existing root handlers are replaced, so calling this again (for
        example after a fallback configuration) does not duplicate output.
        Python warnings are routed into logging.
    """
    _install(logging.getLogger(), cfg or {})
    logging.captureWarnings(True)


def configure_named_logger(name: str, cfg: Mapping[str, Any]) -> logging.Logger:
    """Brief: Give one logger (a plugin's module logger) its own level and outputs.

    Inputs:
      - name: Logger name.
      - cfg: Logging block, same keys as init_logging().

    Outputs:
      - logging.Logger: Configured logger; it no longer propagates to root.
    """
    named = logging.getLogger(name)
    _install(named, cfg)
    named.propagate = False
    return named
