"""Configuration loader for the deployment core."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

DEFAULT_CONFIG_PATH = Path("config/dcd.defaults.yml")


@dataclass(frozen=True)
class SSHConfig:
    identity_file: Optional[str] = None
    known_hosts: str = "~/.ssh/known_hosts"
    strict_host_keys: bool = True
    connect_timeout_sec: int = 30
    keepalive_sec: int = 15
    reconnect_attempts: int = 4
    backoff_base_sec: float = 1.0
    backoff_max_sec: float = 30.0
    command_timeout_sec: int = 1800


@dataclass(frozen=True)
class SyncConfig:
    upload_concurrency: int = 4
    verify_uploads: bool = True
    prune_orphans: bool = False


@dataclass(frozen=True)
class HealthConfig:
    interval_sec: float = 5.0
    timeout_sec: float = 300.0
    log_tail_lines: int = 50


@dataclass(frozen=True)
class DockerConfig:
    min_docker_version: str = "20.10.0"
    min_compose_version: str = "2.0.0"
    prune_images: bool = False
    pull_before_up: bool = True


@dataclass(frozen=True)
class FirewallConfig:
    enabled: bool = True


@dataclass(frozen=True)
class DcdConfig:
    default_user: str = "root"
    remote_base_dir: str = "/opt"
    ssh: SSHConfig = field(default_factory=SSHConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    docker: DockerConfig = field(default_factory=DockerConfig)
    firewall: FirewallConfig = field(default_factory=FirewallConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DcdConfig":
        ssh = data.get("ssh", {}) or {}
        sync = data.get("sync", {}) or {}
        health = data.get("health", {}) or {}
        docker = data.get("docker", {}) or {}
        firewall = data.get("firewall", {}) or {}
        return cls(
            default_user=data.get("default_user", "root"),
            remote_base_dir=data.get("remote_base_dir", "/opt"),
            ssh=SSHConfig(
                identity_file=ssh.get("identity_file") or None,
                known_hosts=ssh.get("known_hosts", "~/.ssh/known_hosts"),
                strict_host_keys=_as_bool(ssh.get("strict_host_keys", True)),
                connect_timeout_sec=int(ssh.get("connect_timeout_sec", 30)),
                keepalive_sec=int(ssh.get("keepalive_sec", 15)),
                reconnect_attempts=int(ssh.get("reconnect_attempts", 4)),
                backoff_base_sec=float(ssh.get("backoff_base_sec", 1.0)),
                backoff_max_sec=float(ssh.get("backoff_max_sec", 30.0)),
                command_timeout_sec=int(ssh.get("command_timeout_sec", 1800)),
            ),
            sync=SyncConfig(
                upload_concurrency=max(1, int(sync.get("upload_concurrency", 4))),
                verify_uploads=_as_bool(sync.get("verify_uploads", True)),
                prune_orphans=_as_bool(sync.get("prune_orphans", False)),
            ),
            health=HealthConfig(
                interval_sec=float(health.get("interval_sec", 5.0)),
                timeout_sec=float(health.get("timeout_sec", 300.0)),
                log_tail_lines=int(health.get("log_tail_lines", 50)),
            ),
            docker=DockerConfig(
                min_docker_version=str(docker.get("min_docker_version", "20.10.0")),
                min_compose_version=str(docker.get("min_compose_version", "2.0.0")),
                prune_images=_as_bool(docker.get("prune_images", False)),
                pull_before_up=_as_bool(docker.get("pull_before_up", True)),
            ),
            firewall=FirewallConfig(
                enabled=_as_bool(firewall.get("enabled", True)),
            ),
        )


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


ENV_MAP = {
    "default_user": "DCD_DEFAULT_USER",
    "remote_base_dir": "DCD_REMOTE_BASE_DIR",
    "ssh.identity_file": "DCD_IDENTITY_FILE",
    "ssh.known_hosts": "DCD_KNOWN_HOSTS",
    "ssh.strict_host_keys": "DCD_STRICT_HOST_KEYS",
    "ssh.connect_timeout_sec": "DCD_CONNECT_TIMEOUT_SEC",
    "ssh.keepalive_sec": "DCD_KEEPALIVE_SEC",
    "ssh.reconnect_attempts": "DCD_RECONNECT_ATTEMPTS",
    "ssh.backoff_base_sec": "DCD_BACKOFF_BASE_SEC",
    "ssh.backoff_max_sec": "DCD_BACKOFF_MAX_SEC",
    "ssh.command_timeout_sec": "DCD_COMMAND_TIMEOUT_SEC",
    "sync.upload_concurrency": "DCD_UPLOAD_CONCURRENCY",
    "sync.verify_uploads": "DCD_VERIFY_UPLOADS",
    "sync.prune_orphans": "DCD_PRUNE_ORPHANS",
    "health.interval_sec": "DCD_HEALTH_INTERVAL_SEC",
    "health.timeout_sec": "DCD_HEALTH_TIMEOUT_SEC",
    "health.log_tail_lines": "DCD_HEALTH_LOG_TAIL_LINES",
    "docker.min_docker_version": "DCD_MIN_DOCKER_VERSION",
    "docker.min_compose_version": "DCD_MIN_COMPOSE_VERSION",
    "docker.prune_images": "DCD_PRUNE_IMAGES",
    "docker.pull_before_up": "DCD_PULL_BEFORE_UP",
    "firewall.enabled": "DCD_FIREWALL_ENABLED",
}

_INT_KEYS = {
    "connect_timeout_sec", "keepalive_sec", "reconnect_attempts",
    "command_timeout_sec", "upload_concurrency", "log_tail_lines",
}
_FLOAT_KEYS = {"backoff_base_sec", "backoff_max_sec", "interval_sec", "timeout_sec"}
_BOOL_KEYS = {"strict_host_keys", "verify_uploads", "prune_orphans",
              "prune_images", "pull_before_up", "enabled"}


def load_yaml(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def merge_env_overrides(config_data: Dict[str, Any]) -> Dict[str, Any]:
    merged = json.loads(json.dumps(config_data))  # deep copy via json

    for dotted_key, env_name in ENV_MAP.items():
        if env_name not in os.environ:
            continue
        value: Any = os.environ[env_name]
        target = merged
        parts = dotted_key.split(".")
        for part in parts[:-1]:
            if not isinstance(target.get(part), dict):
                target[part] = {}
            target = target[part]
        last = parts[-1]
        if last in _INT_KEYS:
            value = int(value)
        elif last in _FLOAT_KEYS:
            value = float(value)
        elif last in _BOOL_KEYS:
            value = _as_bool(value)
        target[last] = value

    return merged


def load_config(config_path: str | Path | None = None) -> DcdConfig:
    """
    Load configuration from YAML with ``DCD_*`` environment overrides.

    With no path, ``config/dcd.defaults.yml`` is read when it exists in the
    working directory; otherwise the built-in defaults apply (still subject
    to env overrides). An explicit path that does not exist is an error.
    """
    data: Dict[str, Any] = {}
    if config_path is not None:
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        data = load_yaml(path)
    elif DEFAULT_CONFIG_PATH.exists():
        data = load_yaml(DEFAULT_CONFIG_PATH)
    data = merge_env_overrides(data)
    return DcdConfig.from_dict(data)


def configure_logging(verbosity: int = 0) -> None:
    """Console logging for the CLI layer: 0=INFO, 1+=DEBUG."""
    level = logging.DEBUG if verbosity > 0 else logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s %(name)s %(message)s")
    if verbosity < 2:
        # paramiko's transport chatter is only useful at -vv
        logging.getLogger("paramiko").setLevel(logging.WARNING)
