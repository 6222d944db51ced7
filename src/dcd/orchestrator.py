#!/usr/bin/env python3
"""
Deployment Orchestrator — up / status / destroy

Each operation is a small state machine. A transition function maps the
current state to ``(next_state, effect)``; the Deployer runs the effect
and only then enters the next state, so the state attached to a failure
is always the last one that fully completed.

    up:      init -> connected -> synced -> docker_ready -> compose_up
                  -> [health_checking] -> succeeded
    destroy: init -> connected -> confirmed -> compose_down
                  -> [volumes_removed] -> destroyed
    status:  init -> connected -> queried -> reported   (read-only)

Failures surface as OperationFailed carrying the operation, the last
completed state, the cause and whatever report was collected. Nothing is
rolled back. The executor (and with it the SSH session) is closed on
every exit path, including Ctrl-C.

Usage:
    report = up(plan, "deploy@203.0.113.7", UpOptions(), on_event=print)
    status(plan, "deploy@203.0.113.7").healthy
    destroy(plan, target, DestroyOptions(force=True))
"""

import logging
import posixpath
import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .config import DcdConfig
from .docker import DockerManager
from .errors import (
    DcdError, DockerSetupError, HealthCheckFailed, HealthCheckTimeout, OperationCancelled,
    OperationFailed, PlanError, SSHConnectionError, UserAborted,
)
from .executor import Executor, connect_executor
from .firewall import UfwManager
from .models import (
    MANIFEST_FILE, DeployerEvent, DeploymentPlan, DeploymentReport, DestroyReport,
    EventKind, HealthStatus, ServiceHealth, StatusReport, Target,
)
from .sync import SyncEngine

logger = logging.getLogger(__name__)

EventCallback = Callable[[DeployerEvent], None]
ConfirmCallback = Callable[[str], bool]
ExecutorFactory = Callable[[Target, DcdConfig], Executor]


# ── States ───────────────────────────────────────────────────────

class UpState(Enum):
    INIT = "init"
    CONNECTED = "connected"
    SYNCED = "synced"
    DOCKER_READY = "docker_ready"
    COMPOSE_UP = "compose_up"
    HEALTH_CHECKING = "health_checking"
    SUCCEEDED = "succeeded"


class DestroyState(Enum):
    INIT = "init"
    CONNECTED = "connected"
    CONFIRMED = "confirmed"
    COMPOSE_DOWN = "compose_down"
    VOLUMES_REMOVED = "volumes_removed"
    DESTROYED = "destroyed"


class StatusState(Enum):
    INIT = "init"
    CONNECTED = "connected"
    QUERIED = "queried"
    REPORTED = "reported"


@dataclass
class UpOptions:
    skip_health_check: bool = False
    skip_progress: bool = False
    open_firewall: bool = True


@dataclass
class DestroyOptions:
    force: bool = False
    remove_volumes: bool = False
    remove_images: bool = False


Step = Optional[Tuple[Enum, str]]


def up_transition(state: UpState, options: UpOptions) -> Step:
    if state is UpState.INIT:
        return UpState.CONNECTED, "connect"
    if state is UpState.CONNECTED:
        return UpState.SYNCED, "sync"
    if state is UpState.SYNCED:
        return UpState.DOCKER_READY, "ensure_docker"
    if state is UpState.DOCKER_READY:
        return UpState.COMPOSE_UP, "compose_up"
    if state is UpState.COMPOSE_UP:
        if options.skip_health_check:
            return UpState.SUCCEEDED, "finish"
        return UpState.HEALTH_CHECKING, "health_check"
    if state is UpState.HEALTH_CHECKING:
        return UpState.SUCCEEDED, "finish"
    return None


def destroy_transition(state: DestroyState, options: DestroyOptions) -> Step:
    if state is DestroyState.INIT:
        return DestroyState.CONNECTED, "connect"
    if state is DestroyState.CONNECTED:
        return DestroyState.CONFIRMED, "confirm"
    if state is DestroyState.CONFIRMED:
        return DestroyState.COMPOSE_DOWN, "compose_down"
    if state is DestroyState.COMPOSE_DOWN:
        if options.remove_volumes:
            return DestroyState.VOLUMES_REMOVED, "remove_volumes"
        return DestroyState.DESTROYED, "finish"
    if state is DestroyState.VOLUMES_REMOVED:
        return DestroyState.DESTROYED, "finish"
    return None


def status_transition(state: StatusState, options: Any = None) -> Step:
    if state is StatusState.INIT:
        return StatusState.CONNECTED, "connect"
    if state is StatusState.CONNECTED:
        return StatusState.QUERIED, "query"
    if state is StatusState.QUERIED:
        return StatusState.REPORTED, "finish"
    return None


STEP_LABELS = {
    "connect": "Connect to target",
    "sync": "Synchronize files",
    "ensure_docker": "Ensure Docker and Compose",
    "compose_up": "Start services",
    "health_check": "Health checks",
    "confirm": "Confirm destruction",
    "compose_down": "Stop and remove services",
    "remove_volumes": "Remove volumes and working directory",
    "query": "Query deployment",
    "finish": "Finish",
}


@dataclass
class AuditEntry:
    """Record of one step taken against the target."""
    timestamp: float = field(default_factory=time.time)
    operation: str = ""
    step: str = ""
    target: str = ""
    success: bool = True
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ── Deployer ─────────────────────────────────────────────────────

class Deployer:
    """
    Runs up/status/destroy for one plan against one target.

    One Deployer invocation owns one executor for its whole duration.
    """

    def __init__(
        self,
        plan: DeploymentPlan,
        target: Union[Target, str],
        config: DcdConfig = None,
        executor_factory: ExecutorFactory = connect_executor,
        on_event: EventCallback = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or DcdConfig()
        self.plan = plan
        self.target = target if isinstance(target, Target) else Target.parse(
            target, default_user=self.config.default_user)
        self.remote_dir = plan.resolve_remote_dir(self.config.remote_base_dir)
        self.executor_factory = executor_factory
        self.on_event = on_event
        self._sleep = sleep
        self._clock = clock
        self._operation = ""
        self._show_output = True
        self._audit_log: List[AuditEntry] = []
        self._confirm: Optional[ConfirmCallback] = None

        self.executor: Optional[Executor] = None
        self.docker: Optional[DockerManager] = None
        self.sync_engine: Optional[SyncEngine] = None

    # ── Plumbing ─────────────────────────────────────────────────

    def _emit(self, kind: EventKind, message: str, detail: str = "") -> None:
        if kind is EventKind.OUTPUT and not self._show_output:
            return
        if self.on_event is not None:
            self.on_event(DeployerEvent(kind=kind, message=message, detail=detail))

    def _output(self, line: str) -> None:
        self._emit(EventKind.OUTPUT, line)

    def _audit(self, step: str, success: bool, detail: str = "") -> None:
        entry = AuditEntry(operation=self._operation, step=step, target=str(self.target),
                           success=success, detail=detail)
        self._audit_log.append(entry)
        level = logging.INFO if success else logging.WARNING
        logger.log(level, f"[AUDIT] {self._operation}.{step} {self.target}: "
                          f"{'ok' if success else 'FAIL'} {detail}".rstrip())

    def _drive(self, operation: str, state: Enum, transition, options, report):
        """Step the machine to its terminal state, running each effect first."""
        self._operation = operation
        start = time.time()
        effect = None
        try:
            while True:
                step = transition(state, options)
                if step is None:
                    break
                next_state, effect = step
                label = STEP_LABELS.get(effect, effect)
                if effect != "finish":
                    self._emit(EventKind.STEP_STARTED, label)
                getattr(self, f"_{operation}_{effect}")(report, options)
                state = next_state
                report.states.append(state.value)
                if effect != "finish":
                    self._emit(EventKind.STEP_COMPLETED, label)
                    self._audit(effect, True)
            if hasattr(report, "duration_sec"):
                report.duration_sec = round(time.time() - start, 1)
            return report
        except KeyboardInterrupt as e:
            cause = OperationCancelled(f"{operation} interrupted during '{effect}'")
            self._fail(effect, cause)
            raise OperationFailed(operation, state, cause, report) from e
        except (DcdError, OSError) as e:
            self._fail(effect, e)
            raise OperationFailed(operation, state, e, report) from e
        finally:
            self._close()

    def _fail(self, effect: Optional[str], cause: BaseException) -> None:
        self._emit(EventKind.STEP_FAILED, STEP_LABELS.get(effect, effect or ""), str(cause))
        self._audit(effect or "unknown", False, f"{type(cause).__name__}: {cause}")

    def _close(self) -> None:
        if self.executor is not None:
            try:
                self.executor.close()
            except (DcdError, OSError) as e:
                logger.warning(f"Error closing connection to {self.target}: {e}")
            self.executor = None

    def _connect(self) -> None:
        self.executor = self.executor_factory(self.target, self.config)
        self.sync_engine = SyncEngine(self.executor, self.remote_dir, self.config.sync)
        self.docker = DockerManager(
            self.executor,
            self.plan.project_name,
            self.remote_dir,
            self.plan.compose_file_names(),
            self.config.docker,
        )

    # ── Up ───────────────────────────────────────────────────────

    def up(self, options: UpOptions = None) -> DeploymentReport:
        """
        Deploy the plan: sync files, ensure docker, start services, wait
        for them to become healthy.

        Raises:
            OperationFailed: with ``last_state`` set to the last UpState reached.
        """
        options = options or UpOptions()
        self._show_output = not options.skip_progress
        report = DeploymentReport(project=self.plan.project_name, target=str(self.target),
                                  remote_dir=self.remote_dir)
        return self._drive("up", UpState.INIT, up_transition, options, report)

    def _up_connect(self, report, options):
        self.plan.validate()
        self._connect()

    def _up_sync(self, report, options):
        report.sync = self.sync_engine.sync(self.plan)

    def _up_ensure_docker(self, report, options):
        docker_version, compose_version, installed = self.docker.ensure_docker(self._output)
        report.docker_version = docker_version
        report.compose_version = compose_version
        report.docker_installed = installed

    def _up_compose_up(self, report, options):
        if (options.open_firewall and self.config.firewall.enabled
                and self.plan.ports and not self.target.local):
            firewall = UfwManager(self.executor, self._output)
            report.ports_opened = firewall.ensure_ports(self.plan.ports, self.plan.project_name)

        if self.config.docker.prune_images:
            self.docker.prune_images()
        if self.config.docker.pull_before_up:
            self.docker.pull(self._output)
        report.compose_resent = self._start_services()

    def _start_services(self) -> bool:
        """
        Run ``compose up``. Returns True if it had to be sent a second time.

        If the connection drops after the command went out, its effect on
        the host is unknown: reconnect, look at the containers, and resend
        only when they are not all running.
        """
        try:
            self.docker.up(self._output)
            return False
        except SSHConnectionError as e:
            if not e.command_sent:
                raise
            logger.warning(f"Connection lost during compose up: {e}")

        self.executor.reconnect()
        entries = self.docker.ps()
        if entries and all(str(c.get("State", "")).lower() == "running" for c in entries):
            logger.info("compose up had completed on the host; not resending")
            self._audit("compose_up_verify", True, "containers running after reconnect")
            return False

        logger.warning("Services not all running after reconnect; resending compose up")
        self._audit("compose_up_resend", True, f"{len(entries)} containers found")
        self.docker.up(self._output)
        return True

    def _up_health_check(self, report, options):
        report.services = self.wait_healthy()
        report.health_checked = True

    def _up_finish(self, report, options):
        logger.info(f"Deployment of {self.plan.project_name} to {self.target} succeeded")

    def wait_healthy(self) -> List[ServiceHealth]:
        """
        Poll service health until every service passes or the window closes.

        Unhealthy is only final when the window closes, so services that
        recover (restart policy, slow dependencies) still pass.

        Raises:
            HealthCheckFailed: services still unhealthy when the window closed,
                or no services at all.
            HealthCheckTimeout: services still starting when the window closed.
        """
        interval = self.config.health.interval_sec
        deadline = self._clock() + self.config.health.timeout_sec
        attempt = 0
        services: List[ServiceHealth] = []

        while True:
            attempt += 1
            services = self.docker.service_health()
            passing = [s for s in services if s.status.passing]
            self._emit(EventKind.HEALTH_ATTEMPT, f"attempt {attempt}",
                       f"{len(passing)}/{len(services)} services passing")
            for svc in services:
                self._emit(EventKind.HEALTH_STATUS, svc.name, svc.status.value)

            if services and len(passing) == len(services):
                logger.info(f"All {len(services)} services passing after {attempt} attempts")
                return services

            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            self._sleep(min(interval, remaining))

        if not services:
            raise HealthCheckFailed(f"No services found for project {self.plan.project_name}")

        lines = self.config.health.log_tail_lines
        unhealthy = [s for s in services if s.status is HealthStatus.UNHEALTHY]
        if unhealthy:
            for svc in unhealthy:
                svc.log_tail = self.docker.logs_tail(svc.name, lines)
            names = ", ".join(s.describe() for s in unhealthy)
            details = "\n".join(f"--- {s.name} ---\n{s.log_tail}" for s in unhealthy)
            raise HealthCheckFailed(f"Unhealthy services: {names}\n{details}", unhealthy)

        starting = [s for s in services if s.status is HealthStatus.STARTING]
        for svc in starting:
            svc.log_tail = self.docker.logs_tail(svc.name, lines)
        raise HealthCheckTimeout(
            f"Services still starting after {self.config.health.timeout_sec:.0f}s: "
            + ", ".join(s.name for s in starting),
            starting,
        )

    # ── Status ───────────────────────────────────────────────────

    def status(self) -> StatusReport:
        """Read-only snapshot: deployed?, service health, pending local changes."""
        self._show_output = False
        report = StatusReport(project=self.plan.project_name, target=str(self.target),
                              remote_dir=self.remote_dir)
        return self._drive("status", StatusState.INIT, status_transition, None, report)

    def _status_connect(self, report, options):
        self._connect()

    def _status_query(self, report, options):
        manifest = posixpath.join(self.remote_dir, MANIFEST_FILE)
        report.deployed = self.executor.stat(manifest) is not None

        if self.docker.compose_version() is None:
            logger.warning(f"Docker Compose not available on {self.target}")
        else:
            self.docker.use_project_files = self.docker.project_files_present()
            report.services = self.docker.service_health()

        try:
            report.pending_changes = self.sync_engine.pending_changes(self.plan)
        except PlanError as e:
            logger.warning(f"Cannot compare local files: {e}")

    def _status_finish(self, report, options):
        passing = sum(1 for s in report.services if s.status.passing)
        logger.info(f"{self.plan.project_name}: {passing}/{len(report.services)} services passing, "
                    f"{len(report.pending_changes)} pending changes")

    # ── Destroy ──────────────────────────────────────────────────

    def destroy(self, options: DestroyOptions = None, confirm: ConfirmCallback = None) -> DestroyReport:
        """
        Stop and remove the project's containers and networks, and with
        ``remove_volumes`` its volumes and remote working directory.

        Without ``force`` the ``confirm`` callback must approve; declining
        (or having no callback) raises UserAborted before anything changes.
        """
        options = options or DestroyOptions()
        self._confirm = confirm
        report = DestroyReport(project=self.plan.project_name, target=str(self.target),
                               remote_dir=self.remote_dir)
        return self._drive("destroy", DestroyState.INIT, destroy_transition, options, report)

    def _destroy_connect(self, report, options):
        self._connect()
        if self.docker.compose_version() is None:
            raise DockerSetupError(f"Docker Compose not available on {self.target}; nothing to destroy")
        self.docker.use_project_files = self.docker.project_files_present()

    def _destroy_confirm(self, report, options):
        if options.force:
            logger.info("Forced destroy, skipping confirmation")
            return
        running = self.docker.containers(running_only=True)
        what = "containers, networks"
        if options.remove_volumes:
            what += ", volumes and the remote working directory"
        prompt = (f"Destroy project '{self.plan.project_name}' on {self.target}? "
                  f"{len(running)} running containers. This removes {what}.")
        if self._confirm is None or not self._confirm(prompt):
            raise UserAborted("Destroy cancelled by user")

    def _destroy_compose_down(self, report, options):
        containers = self.docker.containers()
        networks = self.docker.networks()
        self.docker.down(remove_images=options.remove_images, on_output=self._output)
        report.containers_removed = len(containers)
        report.networks_removed = len(networks)
        report.images_removed = options.remove_images

    def _destroy_remove_volumes(self, report, options):
        volumes = self.docker.volumes()
        self.docker.remove_volumes(volumes)
        report.volumes_removed = len(volumes)
        if self.executor.stat(self.remote_dir) is not None:
            self.executor.remove(self.remote_dir)
            report.workdir_removed = True

    def _destroy_finish(self, report, options):
        logger.info(f"Destroyed {self.plan.project_name} on {self.target}: "
                    f"{report.containers_removed} containers, {report.networks_removed} networks, "
                    f"{report.volumes_removed} volumes")

    # ── Audit Log ────────────────────────────────────────────────

    def get_audit_log(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Get recent audit entries."""
        return [e.to_dict() for e in reversed(self._audit_log[-limit:])]

    def get_audit_summary(self) -> Dict[str, Any]:
        total = len(self._audit_log)
        successes = sum(1 for e in self._audit_log if e.success)
        steps: Dict[str, int] = {}
        for e in self._audit_log:
            steps[e.step] = steps.get(e.step, 0) + 1
        return {
            "total_steps": total,
            "successes": successes,
            "failures": total - successes,
            "steps_by_type": steps,
        }

    def __repr__(self) -> str:
        return f"Deployer({self.plan.project_name} -> {self.target}, steps={len(self._audit_log)})"


# ── Entry points ─────────────────────────────────────────────────

def up(plan: DeploymentPlan, target: Union[Target, str], options: UpOptions = None,
       config: DcdConfig = None, **kwargs) -> DeploymentReport:
    return Deployer(plan, target, config, **kwargs).up(options)


def status(plan: DeploymentPlan, target: Union[Target, str],
           config: DcdConfig = None, **kwargs) -> StatusReport:
    return Deployer(plan, target, config, **kwargs).status()


def destroy(plan: DeploymentPlan, target: Union[Target, str], options: DestroyOptions = None,
            config: DcdConfig = None, confirm: ConfirmCallback = None, **kwargs) -> DestroyReport:
    return Deployer(plan, target, config, **kwargs).destroy(options, confirm)
