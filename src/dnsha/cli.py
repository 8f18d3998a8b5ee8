"""Project CLI entrypoint.

Provides CLI commands for DNSHA:
- dnsha run: Run one node of the HA pair until SIGINT/SIGTERM
- dnsha check: Run the health checks once (exit 0 healthy, 1 degraded, 2 unhealthy)
- dnsha status: Query a running node's /status endpoint
- dnsha sample-config: Print a commented sample config
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
import time
from importlib.metadata import PackageNotFoundError, version
from typing import Any

from dnsha.errors import ConfigError

# LogRecord attributes that are not structured fields
_RESERVED = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys() | {"message", "asctime"}
)

EXIT_BY_STATUS = {"HEALTHY": 0, "DEGRADED": 1, "UNHEALTHY": 2}


def _pkg_version() -> str:
    try:
        return version("dnsha")
    except PackageNotFoundError:
        return "0.0.0"


class _StructuredFormatter(logging.Formatter):
    """Appends the `extra` fields of a record as key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        fields = {k: v for k, v in record.__dict__.items() if k not in _RESERVED}
        if not fields:
            return base
        return base + " " + " ".join(f"{k}={v}" for k, v in sorted(fields.items()))


def setup_logging(level: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(
        _StructuredFormatter("%(asctime)s %(levelname)-8s %(name)s: %(message)s", "%H:%M:%S")
    )
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), handlers=[handler])


def _overrides(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {
        "node_id": args.node_id,
        "virtual_address": args.vip,
        "interface": args.interface,
        "peer_address": args.peer,
        "priority": args.priority,
    }
    if getattr(args, "dry_run", False):
        overrides["dry_run"] = True
    return overrides


def _cmd_run(args: argparse.Namespace) -> int:
    from dnsha.config import DEFAULT_PRIORITY_BY_ROLE, load_config  # noqa: PLC0415
    from dnsha.node import HaNode  # noqa: PLC0415

    overrides = _overrides(args)
    if args.role and args.priority is None:
        overrides["priority"] = DEFAULT_PRIORITY_BY_ROLE[args.role]
    config = load_config(args.config, **overrides)

    node = HaNode(config)
    shutdown = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: shutdown.set())
    signal.signal(signal.SIGTERM, lambda *_: shutdown.set())

    node.start()
    deadline = time.monotonic() + args.duration_s if args.duration_s > 0 else None
    while not shutdown.is_set():
        if deadline is not None and time.monotonic() >= deadline:
            break
        shutdown.wait(timeout=1.0)
    node.stop()
    return 0


def _cmd_check(args: argparse.Namespace) -> int:
    from dnsha.config import load_config  # noqa: PLC0415
    from dnsha.health.checks import build_checks  # noqa: PLC0415
    from dnsha.health.probe import HealthProbe  # noqa: PLC0415

    config = load_config(args.config, **_overrides(args))
    # A one-shot run holds no role, so the VIP consistency check is skipped
    specs = [s for s in config.checks if s.kind != "vip"]
    checks = build_checks(specs, default_timeout_s=config.timing.check_timeout_s)
    probe = HealthProbe(checks)
    try:
        verdict = probe.sample()
    finally:
        probe.stop()
    print(json.dumps(verdict.to_dict(), indent=2))
    return EXIT_BY_STATUS.get(verdict.overall.value, 2)


def _cmd_status(args: argparse.Namespace) -> int:
    import httpx  # noqa: PLC0415

    url = f"http://{args.host}:{args.port}/status"
    try:
        response = httpx.get(url, timeout=args.timeout_s)
        response.raise_for_status()
    except httpx.HTTPError as e:
        print(f"ERROR: {url}: {e}", file=sys.stderr)
        return 1
    print(json.dumps(response.json(), indent=2))
    return 0


def _cmd_sample_config(_args: argparse.Namespace) -> int:
    from dnsha.config import sample_config_yaml  # noqa: PLC0415

    print(sample_config_yaml(), end="")
    return 0


def _add_node_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("-c", "--config", help="YAML config file")
    p.add_argument("--node-id", help="Unique node id (default: hostname)")
    p.add_argument("--vip", help="Virtual address with prefix, e.g. 192.168.1.200/24")
    p.add_argument("--interface", help="Interface the VIP lives on")
    p.add_argument("--peer", help="Peer address")
    p.add_argument("--priority", type=int, help="Election priority (1-254)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dnsha", description="DNS high-availability pair")
    parser.add_argument("--version", action="version", version=f"dnsha {_pkg_version()}")
    parser.add_argument("--log-level", default="INFO", help="DEBUG, INFO, WARNING, ERROR")

    sub = parser.add_subparsers(dest="cmd", required=True)

    p_run = sub.add_parser("run", help="Run one node of the HA pair")
    _add_node_args(p_run)
    p_run.add_argument(
        "--role",
        choices=["master", "slave", "backup"],
        help="Selects the default priority (master 100, slave/backup 90)",
    )
    p_run.add_argument(
        "--dry-run", action="store_true", help="Simulate VIP binding instead of touching interfaces"
    )
    p_run.add_argument("--duration-s", type=int, default=0, help="Duration seconds (0 = forever)")

    p_check = sub.add_parser("check", help="Run health checks once and exit with the verdict")
    _add_node_args(p_check)

    p_status = sub.add_parser("status", help="Show a running node's status")
    p_status.add_argument("--host", default="127.0.0.1")
    p_status.add_argument("--port", type=int, default=9153)
    p_status.add_argument("--timeout-s", type=float, default=3.0)

    sub.add_parser("sample-config", help="Print a sample YAML config")

    return parser


COMMANDS = {
    "run": _cmd_run,
    "check": _cmd_check,
    "status": _cmd_status,
    "sample-config": _cmd_sample_config,
}


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level)

    try:
        rc = COMMANDS[args.cmd](args)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        raise SystemExit(2) from None
    if rc:
        raise SystemExit(rc)
