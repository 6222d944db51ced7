#!/usr/bin/env python3
"""
Docker Manager — docker/compose on the target host

Everything the orchestrator needs from Docker, expressed as commands on
an Executor:

- Version detection for the engine and Compose (plugin or standalone)
- Installation on Debian/Ubuntu from download.docker.com
- Compose lifecycle: pull, up, down, image prune
- ``compose ps --format json`` parsing and health classification
- Log tails for failing services
- Project-scoped container/network/volume queries for destroy

Compose is always invoked from the remote working directory with the
synced compose files and the generated env file:

    docker compose -p <project> -f <file>... --env-file .env.dcd <sub>
"""

import json
import logging
import posixpath
import re
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .config import DockerConfig
from .errors import CommandError, DockerSetupError, ProtocolError
from .executor import Executor
from .models import ENV_FILE, ExecOutput, HealthStatus, ServiceHealth

logger = logging.getLogger(__name__)

SUPPORTED_DISTROS = ("debian", "ubuntu")
COMPOSE_FALLBACK_VERSION = "2.32.1"
COMPOSE_PLUGIN_PATH = "/usr/local/lib/docker/cli-plugins/docker-compose"
PROJECT_LABEL = "com.docker.compose.project"

_VERSION_RE = re.compile(r"(\d+)\.(\d+)(?:\.(\d+))?")

# Worst status wins when a service has several replicas.
_SEVERITY = {
    HealthStatus.UNHEALTHY: 3,
    HealthStatus.STARTING: 2,
    HealthStatus.NONE: 1,
    HealthStatus.HEALTHY: 0,
}


def parse_version(text: str) -> Optional[Tuple[int, int, int]]:
    """First ``X.Y[.Z]`` in ``text`` as a tuple, or None."""
    match = _VERSION_RE.search(text or "")
    if not match:
        return None
    major, minor, patch = match.groups()
    return int(major), int(minor), int(patch or 0)


def version_at_least(found: str, minimum: str) -> bool:
    have = parse_version(found)
    need = parse_version(minimum)
    if have is None:
        return False
    return need is None or have >= need


def compose_project_name(name: str) -> str:
    """Normalize to what compose accepts for ``-p``: lowercase, [a-z0-9_-]."""
    normalized = re.sub(r"[^a-z0-9_-]", "-", name.lower()).strip("-_")
    return normalized or "default"


def parse_os_release(text: str) -> Dict[str, str]:
    info = {}
    for line in (text or "").splitlines():
        if "=" not in line or line.lstrip().startswith("#"):
            continue
        key, value = line.split("=", 1)
        info[key.strip()] = value.strip().strip('"').strip("'")
    return info


# ── ps parsing ───────────────────────────────────────────────────

def parse_ps_output(text: str) -> List[Dict[str, Any]]:
    """
    Decode ``compose ps --format json``.

    Older Compose releases print one JSON array, newer ones print one
    object per line; both are accepted.
    """
    text = (text or "").strip()
    if not text:
        return []
    try:
        if text.startswith("["):
            entries = json.loads(text)
        else:
            entries = [json.loads(line) for line in text.splitlines() if line.strip()]
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Unparseable compose ps output: {e}") from e
    return [e for e in entries if isinstance(e, dict)]


def classify(entry: Dict[str, Any]) -> HealthStatus:
    """
    Classify one container from its ps entry.

    running + no health check        -> NONE
    running + healthy                -> HEALTHY
    running + starting               -> STARTING
    exited with code 0 (one-shot)    -> NONE
    anything else                    -> UNHEALTHY
    """
    state = str(entry.get("State", "")).lower()
    health = str(entry.get("Health", "") or "").lower()
    if state == "running":
        if health in ("", "none"):
            return HealthStatus.NONE
        if health == "healthy":
            return HealthStatus.HEALTHY
        if health == "starting":
            return HealthStatus.STARTING
        return HealthStatus.UNHEALTHY
    if state == "exited" and _exit_code(entry) == 0:
        return HealthStatus.NONE
    return HealthStatus.UNHEALTHY


def _exit_code(entry: Dict[str, Any]) -> int:
    try:
        return int(entry.get("ExitCode", 0) or 0)
    except (TypeError, ValueError):
        return -1


def summarize_services(entries: Sequence[Dict[str, Any]]) -> List[ServiceHealth]:
    """One ServiceHealth per service; replicas collapse to their worst status."""
    by_service: Dict[str, ServiceHealth] = {}
    for entry in entries:
        name = entry.get("Service") or entry.get("Name") or "unknown"
        health = ServiceHealth(
            name=name,
            status=classify(entry),
            state=str(entry.get("State", "")),
            health=str(entry.get("Health", "") or ""),
            exit_code=_exit_code(entry),
        )
        current = by_service.get(name)
        if current is None or _SEVERITY[health.status] > _SEVERITY[current.status]:
            by_service[name] = health
    return [by_service[name] for name in sorted(by_service)]


# ── Manager ──────────────────────────────────────────────────────

class DockerManager:
    """Docker and Compose operations for one project on one host."""

    def __init__(
        self,
        executor: Executor,
        project_name: str,
        remote_dir: str,
        compose_files: Sequence[str] = (),
        config: DockerConfig = None,
    ):
        self.executor = executor
        self.project = compose_project_name(project_name)
        self.remote_dir = remote_dir
        self.compose_files = list(compose_files)
        self.config = config or DockerConfig()
        self.compose_cmd: Optional[List[str]] = None
        self.use_project_files = True

    # ── Detection ────────────────────────────────────────────────

    def detect_distro(self) -> str:
        result = self.executor.query(["cat", "/etc/os-release"], check=False)
        info = parse_os_release(result.stdout)
        distro = info.get("ID", "").lower()
        if distro not in SUPPORTED_DISTROS:
            for like in info.get("ID_LIKE", "").lower().split():
                if like in SUPPORTED_DISTROS:
                    return like
        return distro or "unknown"

    def docker_version(self) -> Optional[str]:
        result = self.executor.query(["docker", "--version"], check=False)
        if not result.success:
            return None
        version = parse_version(result.stdout)
        return ".".join(map(str, version)) if version else None

    def compose_version(self) -> Optional[str]:
        """Detect Compose and remember how to invoke it."""
        for cmd in (["docker", "compose"], ["docker-compose"]):
            result = self.executor.query(cmd + ["version", "--short"], check=False)
            if result.success:
                version = parse_version(result.stdout)
                if version:
                    self.compose_cmd = cmd
                    return ".".join(map(str, version))
        self.compose_cmd = None
        return None

    def project_files_present(self) -> bool:
        """Whether the synced compose files are in the working directory."""
        if not self.compose_files:
            return False
        first = posixpath.join(self.remote_dir, self.compose_files[0])
        return self.executor.stat(first) is not None

    # ── Installation ─────────────────────────────────────────────

    def ensure_docker(self, on_output: Callable[[str], None] = None) -> Tuple[str, str, bool]:
        """
        Make sure Docker and Compose meet the configured minimums.

        Returns:
            (docker_version, compose_version, installed_now)

        Raises:
            DockerSetupError: unsupported distro, failed install, or versions
                still too old afterwards.
        """
        installed = False
        docker_version = self.docker_version()
        if docker_version is None or not version_at_least(docker_version, self.config.min_docker_version):
            found = docker_version or "not installed"
            logger.info(f"Docker {found}; need >= {self.config.min_docker_version}, installing")
            self.install_docker(on_output)
            installed = True
            docker_version = self.docker_version()
            if docker_version is None or not version_at_least(docker_version, self.config.min_docker_version):
                raise DockerSetupError(
                    f"Docker {docker_version or 'missing'} after install; "
                    f"need >= {self.config.min_docker_version}"
                )

        compose_version = self.compose_version()
        if compose_version is None or not version_at_least(compose_version, self.config.min_compose_version):
            logger.info(f"Compose {compose_version or 'not installed'}; installing plugin")
            self.install_compose(on_output)
            installed = True
            compose_version = self.compose_version()
            if compose_version is None or not version_at_least(compose_version, self.config.min_compose_version):
                raise DockerSetupError(
                    f"Docker Compose {compose_version or 'missing'} after install; "
                    f"need >= {self.config.min_compose_version}"
                )

        logger.info(f"Docker {docker_version}, Compose {compose_version} ({' '.join(self.compose_cmd)})")
        return docker_version, compose_version, installed

    def _supported_distro(self) -> str:
        distro = self.detect_distro()
        if distro not in SUPPORTED_DISTROS:
            raise DockerSetupError(
                f"Unsupported distribution '{distro}'. Automatic installation supports "
                f"Debian and Ubuntu only; install Docker manually."
            )
        return distro

    def install_docker(self, on_output: Callable[[str], None] = None) -> None:
        """Install Docker CE and the compose plugin from download.docker.com."""
        distro = self._supported_distro()
        repo = f"https://download.docker.com/linux/{distro}"
        steps = [
            "apt-get update",
            "apt-get install -y ca-certificates curl gnupg",
            "install -m 0755 -d /etc/apt/keyrings",
            f"curl -fsSL {repo}/gpg | gpg --dearmor --yes -o /etc/apt/keyrings/docker.gpg",
            "chmod a+r /etc/apt/keyrings/docker.gpg",
            'echo "deb [arch=$(dpkg --print-architecture) signed-by=/etc/apt/keyrings/docker.gpg] '
            f'{repo} $(. /etc/os-release && echo "$VERSION_CODENAME") stable" '
            "> /etc/apt/sources.list.d/docker.list",
            "apt-get update",
            "apt-get install -y docker-ce docker-ce-cli containerd.io "
            "docker-buildx-plugin docker-compose-plugin",
        ]
        self._run_steps("Docker install", steps, on_output)

        result = self.executor.run(["systemctl", "enable", "--now", "docker"], check=False)
        if not result.success:
            logger.warning(f"Could not enable docker service: {result.stderr.strip()}")

    def install_compose(self, on_output: Callable[[str], None] = None) -> None:
        """Install the compose plugin via apt, falling back to the release binary."""
        self._supported_distro()
        try:
            self._run_steps("Compose install",
                            ["apt-get update", "apt-get install -y docker-compose-plugin"],
                            on_output)
            return
        except DockerSetupError as e:
            logger.warning(f"{e}; falling back to compose v{COMPOSE_FALLBACK_VERSION} binary")

        url = (f"https://github.com/docker/compose/releases/download/v{COMPOSE_FALLBACK_VERSION}/"
               f"docker-compose-linux-$(uname -m)")
        self._run_steps("Compose binary install", [
            f"mkdir -p {posixpath.dirname(COMPOSE_PLUGIN_PATH)}",
            f'curl -fsSL "{url}" -o {COMPOSE_PLUGIN_PATH}',
            f"chmod +x {COMPOSE_PLUGIN_PATH}",
        ], on_output)

    def _run_steps(self, what: str, steps: List[str], on_output) -> None:
        for step in steps:
            try:
                self.executor.run(
                    ["sh", "-c", step],
                    env={"DEBIAN_FRONTEND": "noninteractive"},
                    on_output=on_output,
                )
            except CommandError as e:
                raise DockerSetupError(f"{what} failed at '{step}': {e.stderr_tail.strip()}") from e

    # ── Compose ──────────────────────────────────────────────────

    def compose_argv(self, args: Sequence[str]) -> List[str]:
        if self.compose_cmd is None:
            self.compose_version()
            if self.compose_cmd is None:
                raise DockerSetupError("Docker Compose is not available on the target")
        argv = list(self.compose_cmd) + ["-p", self.project]
        if self.use_project_files:
            for name in self.compose_files:
                argv += ["-f", name]
            argv += ["--env-file", ENV_FILE]
        return argv + list(args)

    def compose(
        self,
        args: Sequence[str],
        check: bool = True,
        on_output: Callable[[str], None] = None,
        read_only: bool = False,
    ) -> ExecOutput:
        """Run a compose subcommand. ``read_only`` ones survive a dropped connection."""
        working_dir = self.remote_dir if self.use_project_files else None
        run = self.executor.query if read_only else self.executor.run
        return run(self.compose_argv(args), working_dir=working_dir,
                   check=check, on_output=on_output)

    def prune_images(self) -> None:
        """Remove dangling images that belong to this project."""
        result = self.executor.run(
            ["docker", "image", "prune", "-f", "--filter", f"label={PROJECT_LABEL}={self.project}"],
            check=False,
        )
        if result.success:
            logger.info(f"Pruned project images: {result.lines()[-1] if result.lines() else 'none'}")
        else:
            logger.warning(f"Image prune failed: {result.stderr.strip()}")

    def pull(self, on_output=None) -> None:
        self.compose(["pull"], on_output=on_output)

    def up(self, on_output=None) -> None:
        self.compose(["up", "-d", "--remove-orphans"], on_output=on_output)

    def down(self, remove_images: bool = False, on_output=None) -> None:
        args = ["down", "--remove-orphans"]
        if remove_images:
            args += ["--rmi", "all"]
        self.compose(args, on_output=on_output)

    # ── Queries ──────────────────────────────────────────────────

    def ps(self) -> List[Dict[str, Any]]:
        result = self.compose(["ps", "-a", "--format", "json"], read_only=True)
        return parse_ps_output(result.stdout)

    def service_health(self) -> List[ServiceHealth]:
        return summarize_services(self.ps())

    def logs_tail(self, service: str, lines: int = 50) -> str:
        result = self.compose(["logs", "--no-color", "--tail", str(lines), service], check=False,
                              read_only=True)
        return (result.stdout + result.stderr).strip()

    def containers(self, running_only: bool = False) -> List[str]:
        args = ["ps", "-q"] if running_only else ["ps", "-a", "-q"]
        return self.compose(args, read_only=True).lines()

    def networks(self) -> List[str]:
        return self._labelled("network")

    def volumes(self) -> List[str]:
        return self._labelled("volume")

    def _labelled(self, kind: str) -> List[str]:
        result = self.executor.query(
            ["docker", kind, "ls", "-q", "--filter", f"label={PROJECT_LABEL}={self.project}"]
        )
        return result.lines()

    def remove_volumes(self, names: Sequence[str]) -> None:
        if names:
            self.executor.run(["docker", "volume", "rm", "-f", *names])

    def __repr__(self) -> str:
        return f"DockerManager(project={self.project}, dir={self.remote_dir})"
