import argparse
import logging
import signal
import threading
from typing import List, Optional

from .config.config_parser import (
    close_plugins,
    load_plugins,
    parse_config_file,
    run_setup,
)
from .config.logging_config import init_logging
from .servers.server import DEFAULT_QUERY_TIMEOUT_MS, DNSServer
from .servers.tcp_server import DEFAULT_IDLE_TIMEOUT

logger = logging.getLogger("appsdns.main")


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="DNS server answering application hostnames from service discovery"
    )
    parser.add_argument("--config", default="config.yaml", help="Path to YAML config")
    parser.add_argument(
        "-v",
        "--var",
        action="append",
        default=[],
        metavar="KEY=YAML",
        help="Set a config variable (overrides environment and config vars)",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for the DNS server.
    Parses arguments, loads configuration, builds the plugin chain, runs plugin
    setup and serves until SIGTERM/SIGINT.

    Args:
        argv: Command-line arguments.

    Returns:
        An exit code: 0 after a clean shutdown, 1 when startup fails.

    Example use:
        CLI:
            appsdns --config config.yaml -v CA=/certs/ca.crt
    """
    args = build_arg_parser().parse_args(argv)

    try:
        cfg = parse_config_file(args.config, cli_vars=args.var)
    except (OSError, ValueError) as exc:
        # Logging is not configured yet; fall back to a basic stderr handler.
        init_logging({})
        logger.error("Failed to load config %s: %s", args.config, exc)
        return 1

    init_logging(cfg.get("logging"))
    logger.info("Loaded config from %s", args.config)

    try:
        plugins = load_plugins(cfg.get("plugins", []))
    except (ValueError, KeyError, ImportError, TypeError, AttributeError) as exc:
        logger.error("Failed to load plugins: %s", exc)
        return 1

    try:
        run_setup(plugins)
    except Exception as exc:
        logger.error("Plugin setup failed: %s", exc, exc_info=True)
        close_plugins(plugins)
        return 1

    server_cfg = cfg.get("server") or {}
    host = str(server_cfg.get("host", "0.0.0.0"))
    port = int(server_cfg.get("port", 53))
    try:
        server = DNSServer(
            host,
            port,
            plugins[0] if plugins else None,
            timeout_ms=int(
                server_cfg.get("query_timeout_ms", DEFAULT_QUERY_TIMEOUT_MS)
            ),
            udp=bool(server_cfg.get("udp", True)),
            tcp=bool(server_cfg.get("tcp", True)),
            tcp_idle_timeout=float(
                server_cfg.get("tcp_idle_timeout", DEFAULT_IDLE_TIMEOUT)
            ),
        )
    except (OSError, ValueError) as exc:
        logger.error("Failed to start DNS server on %s:%d: %s", host, port, exc)
        close_plugins(plugins)
        return 1

    def _shutdown_handler(signum, frame):
        logger.info("Received %s; shutting down", signal.Signals(signum).name)
        # stop() waits for the listener loops, so it must not run on the
        # thread that is blocked in serve_forever().
        threading.Thread(target=server.stop, daemon=True).start()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            signal.signal(sig, _shutdown_handler)
        except ValueError:
            # Only the main thread may install handlers (e.g. tests).
            logger.warning("Could not install %s handler", sig.name)

    try:
        server.serve_forever()
    finally:
        close_plugins(plugins)
        logger.info("appsdns stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())  # pragma: no cover
