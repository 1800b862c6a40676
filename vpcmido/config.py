# File: vpcmido/config.py
"""
Driver configuration.

Values come from VPCMIDO_* environment variables, optionally overridden by a
YAML file passed to load_config().
"""

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from vpcmido.cidr import split_cidr
from vpcmido.errors import ConfigError, MalformedCIDR
from vpcmido.ids import DEFAULT_MAX_ROUTER_IDS

MAX_GATEWAYS = 32


@dataclass(frozen=True)
class GatewayConfig:
    """One external gateway: backend host name, its public IP and interface."""

    host: str
    ip: str
    iface: str


@dataclass(frozen=True)
class DriverConfig:
    eucanetd_host: Optional[str] = None
    gateways: List[GatewayConfig] = field(default_factory=list)
    public_network: str = "0.0.0.0/0"
    public_gateway_ip: Optional[str] = None
    int_rtnetwork: str = "169.254.0.0"
    int_rtslashnet: int = 16
    metadata_ip: str = "169.254.169.254"
    max_router_ids: int = DEFAULT_MAX_ROUTER_IDS
    max_routes_per_subnet: int = 256
    disable_l2_isolation: bool = False

    # Backend calls
    backend_retries: int = 3
    backend_backoff_seconds: float = 0.5

    # Driver loop
    interval_seconds: int = 10
    workers: int = 1
    cleanup_after_reconcile: bool = True
    enable_metaproxy: bool = False

    # Desired state / surfaces
    database_url: Optional[str] = None
    gni_file: Optional[str] = None
    sim_state_file: Optional[str] = None
    rest_port: int = 8000
    log_level: str = "INFO"

    @property
    def int_rtcidr(self) -> str:
        return f"{self.int_rtnetwork}/{self.int_rtslashnet}"

    def validate(self):
        if len(self.gateways) > MAX_GATEWAYS:
            raise ConfigError(f"at most {MAX_GATEWAYS} gateways supported, got {len(self.gateways)}")
        try:
            split_cidr(self.int_rtcidr)
        except MalformedCIDR as e:
            raise ConfigError(f"invalid internal router network: {e}") from e
        if self.max_router_ids < 1:
            raise ConfigError("max_router_ids must be positive")
        if self.workers < 1:
            raise ConfigError("workers must be at least 1")
        if self.backend_retries < 1:
            raise ConfigError("backend_retries must be at least 1")
        return self


_BOOL_KEYS = {"disable_l2_isolation", "cleanup_after_reconcile", "enable_metaproxy"}
_INT_KEYS = {
    "int_rtslashnet",
    "max_router_ids",
    "max_routes_per_subnet",
    "backend_retries",
    "interval_seconds",
    "workers",
    "rest_port",
}
_FLOAT_KEYS = {"backend_backoff_seconds"}


def _coerce(key: str, value: Any) -> Any:
    if key in _BOOL_KEYS:
        if isinstance(value, bool):
            return value
        raw = str(value).strip().lower()
        if raw in {"1", "true", "yes", "on"}:
            return True
        if raw in {"0", "false", "no", "off"}:
            return False
        raise ConfigError(f"Config field '{key}' must be a boolean")
    if key in _INT_KEYS:
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ConfigError(f"Config field '{key}' must be an integer")
    if key in _FLOAT_KEYS:
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ConfigError(f"Config field '{key}' must be a number")
    if key == "gateways":
        return parse_gateways(value)
    return value


def parse_gateways(value: Any) -> List[GatewayConfig]:
    """
    Accepts a list of {host, ip, iface} mappings or the compact
    "host:ip:iface,host:ip:iface" form used in environment variables.
    """
    if value in (None, ""):
        return []
    if isinstance(value, str):
        gateways = []
        for item in value.split(","):
            parts = item.strip().split(":")
            if len(parts) != 3 or not all(parts):
                raise ConfigError(f"gateway entry must be host:ip:iface, got {item!r}")
            gateways.append(GatewayConfig(host=parts[0], ip=parts[1], iface=parts[2]))
        return gateways
    if isinstance(value, list):
        gateways = []
        for item in value:
            if isinstance(item, GatewayConfig):
                gateways.append(item)
                continue
            if not isinstance(item, dict) or not {"host", "ip", "iface"} <= set(item):
                raise ConfigError(f"gateway entry must have host, ip and iface: {item!r}")
            gateways.append(GatewayConfig(host=item["host"], ip=item["ip"], iface=item["iface"]))
        return gateways
    raise ConfigError("gateways must be a list or a host:ip:iface string")


def _from_env() -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for f in fields(DriverConfig):
        raw = os.getenv(f"VPCMIDO_{f.name.upper()}")
        if raw is None or not raw.strip():
            continue
        values[f.name] = _coerce(f.name, raw.strip())
    return values


def _from_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError("Top-level config must be a mapping")
    known = {f.name for f in fields(DriverConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")
    return {k: _coerce(k, v) for k, v in data.items()}


def load_config(path: Optional[str] = None, **overrides) -> DriverConfig:
    """Build a validated DriverConfig from env, then file, then explicit overrides."""
    values = _from_env()
    config_path = path or os.getenv("VPCMIDO_CONFIG")
    if config_path:
        values.update(_from_file(Path(config_path)))
    values.update({k: _coerce(k, v) for k, v in overrides.items()})
    return replace(DriverConfig(), **values).validate()
