"""
Data model shared by the executors, the sync engine and the orchestrator.

The DeploymentPlan is produced outside the core (compose/.env analysis)
and treated as read-only input. Reports are plain dataclasses with
``to_dict`` so the CLI can render or serialize them.
"""

import posixpath
import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import PlanError

DEFAULT_SSH_PORT = 22
LOCAL_TARGET = "local://"

MANIFEST_FILE = ".dcd-manifest.json"
ENV_FILE = ".env.dcd"


# ── Target ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class Target:
    """SSH destination. ``local`` targets run on the control machine."""
    user: str
    host: str
    port: int = DEFAULT_SSH_PORT
    local: bool = False

    @classmethod
    def parse(cls, value: str, default_user: str = "root") -> "Target":
        """
        Parse ``[user@]host[:port]``.

        Accepts an optional ``ssh://`` prefix and bracketed IPv6 hosts
        (``user@[fe80::1]:2222``). ``local://`` yields a local target.
        """
        raw = (value or "").strip()
        if not raw:
            raise ValueError("empty target")
        if raw == LOCAL_TARGET:
            return cls(user=default_user, host="localhost", port=0, local=True)
        if raw.startswith("ssh://"):
            raw = raw[len("ssh://"):]

        user = default_user
        if "@" in raw:
            user, raw = raw.split("@", 1)
            if not user:
                raise ValueError(f"empty user in target '{value}'")

        port = DEFAULT_SSH_PORT
        if raw.startswith("["):
            end = raw.find("]")
            if end == -1:
                raise ValueError(f"malformed IPv6 address in target '{value}'")
            host = raw[1:end]
            rest = raw[end + 1:]
            if rest:
                if not rest.startswith(":"):
                    raise ValueError(f"unexpected text after host in '{value}'")
                port = _parse_port(rest[1:], value)
        elif raw.count(":") == 1:
            host, port_str = raw.split(":", 1)
            port = _parse_port(port_str, value)
        else:
            # bare hostname, IPv4 or unbracketed IPv6
            host = raw

        if not host:
            raise ValueError(f"missing host in target '{value}'")
        return cls(user=user, host=host, port=port)

    @property
    def address(self) -> str:
        if self.local:
            return LOCAL_TARGET
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{self.user}@{host}:{self.port}"

    def __str__(self) -> str:
        return self.address


def _parse_port(port_str: str, original: str) -> int:
    try:
        port = int(port_str)
    except ValueError:
        raise ValueError(f"invalid port '{port_str}' in target '{original}'") from None
    if not 0 < port < 65536:
        raise ValueError(f"port out of range in target '{original}'")
    return port


# ── Deployment plan ──────────────────────────────────────────────

def safe_relpath(path: str) -> str:
    """
    Normalize a remote-relative path and reject anything that would land
    outside the remote working directory.
    """
    if not path or path.startswith("/") or "\\" in path:
        raise PlanError(f"remote path must be relative and POSIX-style: {path!r}")
    norm = posixpath.normpath(path)
    if norm in (".", "") or norm == ".." or norm.startswith("../"):
        raise PlanError(f"remote path escapes the working directory: {path!r}")
    return norm


@dataclass(frozen=True)
class PortSpec:
    """A port the deployment exposes on the host."""
    port: int
    protocol: str = "tcp"  # tcp | udp | both

    def __post_init__(self):
        if self.protocol not in ("tcp", "udp", "both"):
            raise ValueError(f"unsupported protocol '{self.protocol}'")


@dataclass(frozen=True)
class FileDependency:
    """A local file or directory and where it lives under the remote workdir."""
    local_path: str
    remote_path: str


@dataclass(frozen=True)
class DeploymentPlan:
    """
    Structured result of compose/.env analysis.

    Attributes:
        project_name: Compose project name.
        compose_files: Local compose file paths, in override order. Each is
            synced to the remote workdir under its basename.
        env_vars: Resolved environment; materialized as ``.env.dcd``.
        ports: Ports to open in the firewall.
        file_deps: Volume/config dependencies (local -> remote-relative).
        remote_dir: Remote working directory; defaults to
            ``<remote_base_dir>/<project_name>``.
    """
    project_name: str
    compose_files: Tuple[str, ...] = ()
    env_vars: Mapping[str, str] = field(default_factory=dict)
    ports: Tuple[PortSpec, ...] = ()
    file_deps: Tuple[FileDependency, ...] = ()
    remote_dir: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeploymentPlan":
        ports = []
        for p in data.get("ports", []):
            if isinstance(p, dict):
                ports.append(PortSpec(int(p["port"]), p.get("protocol", "tcp")))
            else:
                ports.append(PortSpec(int(p)))
        deps = []
        for d in data.get("file_deps", []):
            if isinstance(d, dict):
                deps.append(FileDependency(d["local"], d["remote"]))
            else:
                deps.append(FileDependency(d[0], d[1]))
        return cls(
            project_name=data["project_name"],
            compose_files=tuple(data.get("compose_files", [])),
            env_vars=dict(data.get("env_vars", {})),
            ports=tuple(ports),
            file_deps=tuple(deps),
            remote_dir=data.get("remote_dir"),
        )

    def resolve_remote_dir(self, base_dir: str = "/opt") -> str:
        if self.remote_dir:
            return self.remote_dir.rstrip("/") or "/"
        return posixpath.join(base_dir, self.project_name)

    def compose_file_names(self) -> List[str]:
        return [Path(p).name for p in self.compose_files]

    def validate(self) -> None:
        """Check local files exist and remote paths stay inside the workdir."""
        if not self.project_name:
            raise PlanError("project name is required")
        if not self.compose_files:
            raise PlanError("at least one compose file is required")
        names = set()
        for path in self.compose_files:
            if not Path(path).is_file():
                raise PlanError(f"compose file not found: {path}")
            name = Path(path).name
            if name in names:
                raise PlanError(f"duplicate compose file name: {name}")
            names.add(name)
        for dep in self.file_deps:
            if not Path(dep.local_path).exists():
                raise PlanError(f"referenced file/directory not found: {dep.local_path}")
            rel = safe_relpath(dep.remote_path)
            if rel in (MANIFEST_FILE, ENV_FILE):
                raise PlanError(f"remote path is reserved: {rel}")


# ── Execution ────────────────────────────────────────────────────

@dataclass
class ExecOutput:
    """Result of a command execution."""
    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: float = 0.0
    host: str = ""
    timestamp: float = field(default_factory=time.time)

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def lines(self) -> List[str]:
        return [ln.strip() for ln in self.stdout.splitlines() if ln.strip()]

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["success"] = self.success
        return d


@dataclass
class FileInfo:
    """Subset of stat information the core relies on."""
    path: str
    size: int
    mode: int
    is_dir: bool
    mtime: float = 0.0


# ── Health ───────────────────────────────────────────────────────

class HealthStatus(Enum):
    """Classified container health."""
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    NONE = "none"          # running, no healthcheck declared
    STARTING = "starting"  # transient, still inside start period

    @property
    def passing(self) -> bool:
        return self in (HealthStatus.HEALTHY, HealthStatus.NONE)


@dataclass
class ServiceHealth:
    """Health of a single compose service."""
    name: str
    status: HealthStatus
    state: str = ""
    health: str = ""
    exit_code: int = 0
    log_tail: str = ""

    def describe(self) -> str:
        health = self.health or "no health check"
        return f"{self.name} (state: {self.state}, health: {health})"

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d


# ── Reports ──────────────────────────────────────────────────────

@dataclass
class SyncReport:
    """Outcome of one sync run."""
    uploaded: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    mode_updated: List[str] = field(default_factory=list)
    orphaned: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    manifest_written: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.uploaded or self.mode_updated or self.removed)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["changed"] = self.changed
        return d


@dataclass
class DeploymentReport:
    """Returned by a successful ``up``."""
    project: str
    target: str
    remote_dir: str
    sync: SyncReport = field(default_factory=SyncReport)
    docker_version: str = ""
    compose_version: str = ""
    docker_installed: bool = False
    ports_opened: List[str] = field(default_factory=list)
    compose_resent: bool = False
    services: List[ServiceHealth] = field(default_factory=list)
    health_checked: bool = False
    states: List[str] = field(default_factory=list)
    duration_sec: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["sync"] = self.sync.to_dict()
        d["services"] = [s.to_dict() for s in self.services]
        return d


@dataclass
class StatusReport:
    """Read-only view of a deployment."""
    project: str
    target: str
    remote_dir: str
    deployed: bool = False
    services: List[ServiceHealth] = field(default_factory=list)
    pending_changes: List[str] = field(default_factory=list)
    states: List[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return bool(self.services) and all(s.status.passing for s in self.services)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["services"] = [s.to_dict() for s in self.services]
        d["healthy"] = self.healthy
        return d


@dataclass
class DestroyReport:
    """Counts of what ``destroy`` removed."""
    project: str
    target: str
    remote_dir: str
    containers_removed: int = 0
    networks_removed: int = 0
    volumes_removed: int = 0
    images_removed: bool = False
    workdir_removed: bool = False
    states: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ── Progress events ──────────────────────────────────────────────

class EventKind(Enum):
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    HEALTH_ATTEMPT = "health_attempt"
    HEALTH_STATUS = "health_status"
    OUTPUT = "output"


@dataclass
class DeployerEvent:
    """Progress notification delivered to the caller's callback."""
    kind: EventKind
    message: str
    detail: str = ""
    timestamp: float = field(default_factory=time.time)

    def __str__(self) -> str:
        labels = {
            EventKind.STEP_STARTED: "Started",
            EventKind.STEP_COMPLETED: "Completed",
            EventKind.STEP_FAILED: "Failed",
            EventKind.HEALTH_ATTEMPT: "Health Check",
            EventKind.HEALTH_STATUS: "Health Status",
            EventKind.OUTPUT: "|",
        }
        text = f"{labels[self.kind]}: {self.message}"
        if self.detail:
            text += f" - {self.detail}"
        return text
