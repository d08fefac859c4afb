from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# Preferred MCP port; also the default remote/local port of every tunnel.
DEFAULT_PORT = 9847

CONFIG_PATH = Path(os.environ.get("SSHBRIDGE_CONFIG", str(Path.home() / ".config" / "sshbridge" / "config.yml")))


@dataclass(frozen=True)
class AppConfig:
    host: str = "127.0.0.1"
    port: int = DEFAULT_PORT
    keepalive_interval: float = 30.0      # seconds between ": ping" comments on idle SSE streams
    session_queue_size: int = 256         # pending events per SSE session before drop-oldest kicks in
    # Tunnel supervisor
    connect_confirm_delay: float = 2.0    # ssh still alive after this long => connected
    reconnect_base_delay: float = 3.0
    reconnect_growth_factor: float = 1.5
    reconnect_max_delay: float = 60.0
    max_reconnect_attempts: int = 10
    tunnels: list[dict[str, Any]] = field(default_factory=list)
    config_version: int = 1


def _positive_float(value: Any, default: float, *, minimum: float = 0.0) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return float(value) if float(value) > minimum else default


def _positive_int(value: Any, default: int, *, minimum: int = 0) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return int(value) if int(value) > minimum else default


def _validate_tunnel(entry: Any) -> dict[str, Any] | None:
    if isinstance(entry, str) and entry.strip():
        return {"host": entry.strip()}
    if not isinstance(entry, dict):
        return None
    host = entry.get("host")
    if not isinstance(host, str) or not host.strip():
        return None
    cleaned: dict[str, Any] = {"host": host.strip()}
    for camel, snake in (("remotePort", "remote_port"), ("localPort", "local_port")):
        raw = entry.get(camel, entry.get(snake))
        if isinstance(raw, int) and not isinstance(raw, bool) and 0 < raw < 65536:
            cleaned[camel] = raw
    identity = entry.get("identityFile", entry.get("identity_file"))
    if isinstance(identity, str) and identity.strip():
        cleaned["identityFile"] = identity.strip()
    if "enabled" in entry:
        cleaned["enabled"] = bool(entry["enabled"])
    return cleaned


def _validate(cfg: dict[str, Any]) -> dict[str, Any]:
    defaults = AppConfig().__dict__.copy()
    merged = {**defaults, **cfg}
    if not isinstance(merged.get("host"), str) or not merged["host"].strip():
        merged["host"] = defaults["host"]
    raw_port = merged.get("port")
    merged["port"] = raw_port if isinstance(raw_port, int) and not isinstance(raw_port, bool) and 0 < raw_port < 65536 else defaults["port"]
    merged["keepalive_interval"] = _positive_float(merged.get("keepalive_interval"), defaults["keepalive_interval"])
    merged["session_queue_size"] = _positive_int(merged.get("session_queue_size"), defaults["session_queue_size"])
    merged["connect_confirm_delay"] = _positive_float(merged.get("connect_confirm_delay"), defaults["connect_confirm_delay"])
    merged["reconnect_base_delay"] = _positive_float(merged.get("reconnect_base_delay"), defaults["reconnect_base_delay"])
    # growth factor must stay above 1 or the backoff stops growing
    merged["reconnect_growth_factor"] = _positive_float(
        merged.get("reconnect_growth_factor"), defaults["reconnect_growth_factor"], minimum=1.0
    )
    merged["reconnect_max_delay"] = _positive_float(merged.get("reconnect_max_delay"), defaults["reconnect_max_delay"])
    if merged["reconnect_max_delay"] < merged["reconnect_base_delay"]:
        merged["reconnect_max_delay"] = merged["reconnect_base_delay"]
    merged["max_reconnect_attempts"] = _positive_int(
        merged.get("max_reconnect_attempts"), defaults["max_reconnect_attempts"], minimum=-1
    )
    raw_tunnels = merged.get("tunnels")
    tunnels = raw_tunnels if isinstance(raw_tunnels, list) else []
    merged["tunnels"] = [t for t in (_validate_tunnel(entry) for entry in tunnels) if t is not None]
    merged["config_version"] = defaults["config_version"]
    return {key: merged[key] for key in defaults}


def load_config(path: Path = CONFIG_PATH) -> dict[str, Any]:
    path.parent.mkdir(parents=True, exist_ok=True)
    if not path.exists():
        cfg = _validate({})
        save_config(cfg, path)
        return cfg

    raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    cfg = _validate(raw if isinstance(raw, dict) else {})
    if cfg != raw:
        save_config(cfg, path)
    return cfg


def save_config(cfg: dict[str, Any], path: Path = CONFIG_PATH) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    validated = _validate(cfg)
    tmp_path = path.with_suffix(".tmp")
    tmp_path.write_text(yaml.safe_dump(validated, sort_keys=True), encoding="utf-8")
    tmp_path.replace(path)


def to_app_config(cfg: dict[str, Any]) -> AppConfig:
    return AppConfig(**_validate(cfg))


def env_port() -> int | None:
    """Port override from ``SSHBRIDGE_PORT``; None when unset or invalid."""
    raw = os.environ.get("SSHBRIDGE_PORT", "").strip()
    if raw.isdigit() and 0 < int(raw) < 65536:
        return int(raw)
    return None
