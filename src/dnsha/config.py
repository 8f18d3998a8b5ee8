"""Node configuration: dataclasses, YAML loading and DNSHA_* env overrides.

Precedence (lowest first): dataclass defaults < YAML file < environment.

Env parsing rules:
- unset / empty / whitespace -> keep the lower-precedence value
- booleans accept 1/true/yes/on and 0/false/no/off (case-insensitive)
- anything else raises ConfigError; a bad value never silently becomes a default
"""

from __future__ import annotations

import ipaddress
import logging
import os
import socket
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from dnsha.errors import ConfigError

logger = logging.getLogger(__name__)

TRUTHY: frozenset[str] = frozenset({"1", "true", "yes", "on"})
FALSEY: frozenset[str] = frozenset({"0", "false", "no", "off"})

ENV_PREFIX = "DNSHA_"

DEFAULT_HEARTBEAT_PORT = 8730
DEFAULT_REPLICATION_PORT = 8731
DEFAULT_STATUS_PORT = 9153

# Priorities follow VRRP: 1..254 usable, master 100 / slave 90 by convention
MIN_PRIORITY = 1
MAX_PRIORITY = 254
DEFAULT_PRIORITY_BY_ROLE = {"master": 100, "slave": 90, "backup": 90}

DEFAULT_SYNC_ROOTS = {
    "smartdns": "/etc/smartdns",
    "adguardhome": "/opt/AdGuardHome/conf",
}


# ── env helpers ───────────────────────────────────────────────────────────


def env_str(name: str, default: str | None = None) -> str | None:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip()


def env_bool(name: str, default: bool | None = None) -> bool | None:
    """Parse a boolean env var; unknown values raise ConfigError."""
    raw = env_str(name)
    if raw is None:
        return default
    v = raw.lower()
    if v in TRUTHY:
        return True
    if v in FALSEY:
        return False
    raise ConfigError(f"invalid boolean value for {name}: {raw!r}")


def env_int(
    name: str,
    default: int | None = None,
    *,
    min_value: int | None = None,
    max_value: int | None = None,
) -> int | None:
    """Parse an integer env var with optional inclusive bounds."""
    raw = env_str(name)
    if raw is None:
        return default
    try:
        result = int(raw)
    except ValueError:
        raise ConfigError(f"invalid integer value for {name}: {raw!r}") from None
    if min_value is not None and result < min_value:
        raise ConfigError(f"{name}={result} is below minimum {min_value}")
    if max_value is not None and result > max_value:
        raise ConfigError(f"{name}={result} is above maximum {max_value}")
    return result


def env_float(name: str, default: float | None = None) -> float | None:
    raw = env_str(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"invalid float value for {name}: {raw!r}") from None


# ── dataclasses ───────────────────────────────────────────────────────────


@dataclass
class TimingConfig:
    """Loop intervals and timeouts, all in seconds.

    Attributes:
        probe_interval_s: Health probe period (env: DNSHA_PROBE_INTERVAL_S)
        check_timeout_s: Default per-check timeout
        heartbeat_interval_s: Peer heartbeat period (env: DNSHA_HEARTBEAT_INTERVAL_S)
        liveness_timeout_s: Peer silence before UNREACHABLE (default 3 x heartbeat)
        evaluation_interval_s: Failover evaluation period (default = probe interval)
        debounce_s: Replication debounce window
        heartbeat_send_timeout_s: UDP send timeout (default min(0.5, heartbeat / 2))
        transfer_timeout_s: Replication socket timeout
        takeover_grace_s: Extra silence an election loser waits in FAULT
            before claiming MASTER (default 2 x liveness timeout)
    """

    probe_interval_s: float = 2.0
    check_timeout_s: float = 2.0
    heartbeat_interval_s: float = 1.0
    liveness_timeout_s: float | None = None
    evaluation_interval_s: float | None = None
    debounce_s: float = 1.0
    heartbeat_send_timeout_s: float | None = None
    transfer_timeout_s: float = 10.0
    takeover_grace_s: float | None = None

    def __post_init__(self) -> None:
        if self.liveness_timeout_s is None:
            self.liveness_timeout_s = 3 * self.heartbeat_interval_s
        if self.heartbeat_send_timeout_s is None:
            self.heartbeat_send_timeout_s = min(0.5, self.heartbeat_interval_s / 2)
        if self.evaluation_interval_s is None:
            self.evaluation_interval_s = self.probe_interval_s
        if self.takeover_grace_s is None:
            self.takeover_grace_s = 2 * self.liveness_timeout_s

        for f in fields(self):
            value = getattr(self, f.name)
            if value <= 0:
                raise ConfigError(f"{f.name} must be > 0, got {value}")
        # One lost heartbeat must not flip the peer to UNREACHABLE
        if self.liveness_timeout_s < 2 * self.heartbeat_interval_s:
            msg = (
                f"liveness_timeout_s ({self.liveness_timeout_s}) must be >= 2x "
                f"heartbeat_interval_s ({self.heartbeat_interval_s})"
            )
            raise ConfigError(msg)
        if self.heartbeat_send_timeout_s >= self.heartbeat_interval_s:
            msg = (
                f"heartbeat_send_timeout_s ({self.heartbeat_send_timeout_s}) must be < "
                f"heartbeat_interval_s ({self.heartbeat_interval_s})"
            )
            raise ConfigError(msg)

    # Resolved (non-optional) views, valid after __post_init__
    @property
    def liveness_s(self) -> float:
        assert self.liveness_timeout_s is not None
        return self.liveness_timeout_s

    @property
    def send_timeout_s(self) -> float:
        assert self.heartbeat_send_timeout_s is not None
        return self.heartbeat_send_timeout_s

    @property
    def evaluation_s(self) -> float:
        assert self.evaluation_interval_s is not None
        return self.evaluation_interval_s

    @property
    def takeover_grace(self) -> float:
        assert self.takeover_grace_s is not None
        return self.takeover_grace_s


@dataclass
class CheckSpec:
    """Declarative health check entry.

    Attributes:
        kind: process | port | dns | http | disk | vip
        name: Unique check name (used in verdicts and metrics)
        critical: Critical failures make the node UNHEALTHY, others DEGRADED
        timeout_s: Per-check timeout (None = TimingConfig.check_timeout_s)
        params: Kind-specific parameters
    """

    kind: str
    name: str
    critical: bool = True
    timeout_s: float | None = None
    params: dict[str, Any] = field(default_factory=dict)

    KINDS = frozenset({"process", "port", "dns", "http", "disk", "vip"})

    def __post_init__(self) -> None:
        if self.kind not in self.KINDS:
            raise ConfigError(f"unknown check kind {self.kind!r} (allowed: {sorted(self.KINDS)})")
        if not self.name:
            raise ConfigError("check name must not be empty")
        if self.timeout_s is not None and self.timeout_s <= 0:
            raise ConfigError(f"check {self.name}: timeout_s must be > 0")


def default_checks() -> list[CheckSpec]:
    """Default checks for a SmartDNS + AdGuardHome resolver node."""
    return [
        CheckSpec("process", "smartdns_process", params={"process": "smartdns"}),
        CheckSpec("process", "adguardhome_process", params={"process": "AdGuardHome"}),
        CheckSpec("port", "dns_port", params={"host": "127.0.0.1", "port": 53}),
        CheckSpec(
            "dns",
            "dns_resolve",
            params={"server": "127.0.0.1", "qname": "www.baidu.com"},
        ),
        CheckSpec("port", "adguard_web_port", critical=False, params={"port": 8080}),
        CheckSpec(
            "disk",
            "disk_headroom",
            critical=False,
            params={"path": "/", "max_used_pct": 90.0},
        ),
        CheckSpec("vip", "vip_consistent", critical=False),
    ]


@dataclass
class ReplicationConfig:
    """Config replication settings.

    Attributes:
        enabled: Run the replicator and receiver (env: DNSHA_SYNC_ENABLED)
        roots: alias -> local directory; both nodes must use the same aliases
        listen_host: Receiver bind host
        port: Receiver TCP port (env: DNSHA_SYNC_PORT)
        max_file_bytes: Refuse to replicate files larger than this
    """

    enabled: bool = True
    roots: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_SYNC_ROOTS))
    listen_host: str = "0.0.0.0"
    port: int = DEFAULT_REPLICATION_PORT
    max_file_bytes: int = 16 * 1024 * 1024

    def __post_init__(self) -> None:
        for alias in self.roots:
            if not alias or "/" in alias or alias in (".", ".."):
                raise ConfigError(f"invalid sync root alias {alias!r}")
        if not 0 < self.port < 65536:
            raise ConfigError(f"replication port out of range: {self.port}")
        if self.max_file_bytes <= 0:
            raise ConfigError("max_file_bytes must be > 0")


@dataclass
class NodeConfig:
    """Everything one node of the pair needs.

    Attributes:
        virtual_address: VIP with prefix, e.g. 192.168.1.200/24 (env: DNSHA_VIP)
        interface: Interface the VIP lives on (env: DNSHA_INTERFACE)
        peer_address: Peer host for heartbeats and replication (env: DNSHA_PEER_ADDRESS)
        node_id: Unique node id, defaults to the hostname (env: DNSHA_NODE_ID)
        priority: Election priority, higher wins (env: DNSHA_PRIORITY)
        listen_host: Heartbeat bind host
        heartbeat_port: UDP heartbeat port, same on both nodes
        status_port: HTTP status port, 0 disables (env: DNSHA_STATUS_PORT)
        notify_command: Executable run with the new role after each transition
        gratuitous_arp: Announce the VIP with arping after binding
        dry_run: Use the in-memory binder instead of touching interfaces
            (env: DNSHA_DRY_RUN)
    """

    virtual_address: str
    interface: str
    peer_address: str
    node_id: str = field(default_factory=socket.gethostname)
    priority: int = 100
    listen_host: str = "0.0.0.0"
    heartbeat_port: int = DEFAULT_HEARTBEAT_PORT
    status_port: int = DEFAULT_STATUS_PORT
    notify_command: str | None = None
    gratuitous_arp: bool = True
    dry_run: bool = False
    timing: TimingConfig = field(default_factory=TimingConfig)
    replication: ReplicationConfig = field(default_factory=ReplicationConfig)
    checks: list[CheckSpec] = field(default_factory=default_checks)

    def __post_init__(self) -> None:
        try:
            ipaddress.ip_interface(self.virtual_address)
        except ValueError:
            raise ConfigError(f"invalid virtual_address: {self.virtual_address!r}") from None
        if not self.interface:
            raise ConfigError("interface must not be empty")
        if not self.peer_address:
            raise ConfigError("peer_address must not be empty")
        if not self.node_id:
            raise ConfigError("node_id must not be empty")
        if not MIN_PRIORITY <= self.priority <= MAX_PRIORITY:
            raise ConfigError(
                f"priority {self.priority} outside [{MIN_PRIORITY}, {MAX_PRIORITY}]"
            )
        for port_name in ("heartbeat_port", "status_port"):
            port = getattr(self, port_name)
            if not 0 <= port < 65536:
                raise ConfigError(f"{port_name} out of range: {port}")
        names = [c.name for c in self.checks]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ConfigError(f"duplicate check names: {dupes}")

    @property
    def vip_host(self) -> str:
        """VIP without its prefix length."""
        return str(ipaddress.ip_interface(self.virtual_address).ip)


# ── loading ───────────────────────────────────────────────────────────────


def _timing_from(data: dict[str, Any]) -> TimingConfig:
    known = {f.name for f in fields(TimingConfig)}
    unknown = set(data) - known
    if unknown:
        raise ConfigError(f"unknown timing keys: {sorted(unknown)}")
    return TimingConfig(**data)


def _checks_from(items: list[dict[str, Any]]) -> list[CheckSpec]:
    checks = []
    for item in items:
        item = dict(item)
        try:
            kind = item.pop("kind")
            name = item.pop("name")
        except KeyError as e:
            raise ConfigError(f"check entry missing {e.args[0]!r}: {item}") from None
        critical = bool(item.pop("critical", True))
        timeout_s = item.pop("timeout_s", None)
        params = item.pop("params", {})
        # Flat params are accepted too: {kind: port, name: x, port: 53}
        params = {**item, **params}
        checks.append(CheckSpec(kind, name, critical=critical, timeout_s=timeout_s, params=params))
    return checks


def config_from_dict(data: dict[str, Any]) -> NodeConfig:
    """Build NodeConfig from a plain dict (parsed YAML)."""
    data = dict(data)
    timing = _timing_from(data.pop("timing", None) or {})
    replication = ReplicationConfig(**(data.pop("replication", None) or {}))
    checks_raw = data.pop("checks", None)
    checks = default_checks() if checks_raw is None else _checks_from(checks_raw)

    known = {f.name for f in fields(NodeConfig)}
    unknown = set(data) - known
    if unknown:
        raise ConfigError(f"unknown config keys: {sorted(unknown)}")
    try:
        return NodeConfig(**data, timing=timing, replication=replication, checks=checks)
    except TypeError as e:
        raise ConfigError(f"incomplete node config: {e}") from None


def apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of data with DNSHA_* environment overrides applied."""
    out = dict(data)
    simple = {
        "node_id": env_str(f"{ENV_PREFIX}NODE_ID"),
        "virtual_address": env_str(f"{ENV_PREFIX}VIP"),
        "interface": env_str(f"{ENV_PREFIX}INTERFACE"),
        "peer_address": env_str(f"{ENV_PREFIX}PEER_ADDRESS"),
        "priority": env_int(
            f"{ENV_PREFIX}PRIORITY", min_value=MIN_PRIORITY, max_value=MAX_PRIORITY
        ),
        "status_port": env_int(f"{ENV_PREFIX}STATUS_PORT", min_value=0, max_value=65535),
        "dry_run": env_bool(f"{ENV_PREFIX}DRY_RUN"),
        "notify_command": env_str(f"{ENV_PREFIX}NOTIFY_COMMAND"),
    }
    out.update({k: v for k, v in simple.items() if v is not None})

    timing = dict(out.get("timing") or {})
    for key, env in (
        ("probe_interval_s", "PROBE_INTERVAL_S"),
        ("heartbeat_interval_s", "HEARTBEAT_INTERVAL_S"),
        ("liveness_timeout_s", "LIVENESS_TIMEOUT_S"),
        ("debounce_s", "DEBOUNCE_S"),
    ):
        value = env_float(f"{ENV_PREFIX}{env}")
        if value is not None:
            timing[key] = value
    if timing:
        out["timing"] = timing

    replication = dict(out.get("replication") or {})
    enabled = env_bool(f"{ENV_PREFIX}SYNC_ENABLED")
    if enabled is not None:
        replication["enabled"] = enabled
    port = env_int(f"{ENV_PREFIX}SYNC_PORT", min_value=1, max_value=65535)
    if port is not None:
        replication["port"] = port
    if replication:
        out["replication"] = replication
    return out


def load_config(path: str | Path | None = None, **overrides: Any) -> NodeConfig:
    """Load YAML config (optional), then env overrides, then explicit overrides.

    Raises:
        ConfigError: Missing file, invalid YAML or invalid values.
    """
    data: dict[str, Any] = {}
    if path is not None:
        p = Path(path)
        try:
            with p.open() as f:
                loaded = yaml.safe_load(f)
        except FileNotFoundError:
            raise ConfigError(f"config file not found: {p}") from None
        except yaml.YAMLError as e:
            raise ConfigError(f"invalid YAML in {p}: {e}") from None
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"config root must be a mapping, got {type(loaded).__name__}")
        data = loaded

    data = apply_env_overrides(data)
    data.update({k: v for k, v in overrides.items() if v is not None})
    config = config_from_dict(data)
    logger.debug(
        "CONFIG_LOADED",
        extra={"node_id": config.node_id, "source": str(path) if path else "defaults"},
    )
    return config


def sample_config_yaml() -> str:
    """Commented sample config (dnsha sample-config)."""
    return """\
# dnsha node configuration
node_id: dns-a
virtual_address: 192.168.1.200/24
interface: eth0
peer_address: 192.168.1.101
priority: 100            # master 100, slave 90
heartbeat_port: 8730
status_port: 9153
# notify_command: /etc/dnsha/notify.sh

timing:
  probe_interval_s: 2
  heartbeat_interval_s: 1
  # liveness_timeout_s: 3   # default 3x heartbeat
  debounce_s: 1

replication:
  enabled: true
  port: 8731
  roots:
    smartdns: /etc/smartdns
    adguardhome: /opt/AdGuardHome/conf

checks:
  - {kind: process, name: smartdns_process, process: smartdns}
  - {kind: process, name: adguardhome_process, process: AdGuardHome}
  - {kind: port, name: dns_port, port: 53}
  - {kind: dns, name: dns_resolve, server: 127.0.0.1, qname: www.baidu.com}
  - {kind: http, name: adguard_web, critical: false, url: "http://127.0.0.1:8080/"}
  - {kind: disk, name: disk_headroom, critical: false, path: /, max_used_pct: 90}
  - {kind: vip, name: vip_consistent, critical: false}
"""
