"""
dcd — Docker Compose Deployment core

Provides:
- Deployment Orchestrator (Deployer, up/status/destroy) — FSM-driven lifecycle
- Sync Engine (SyncEngine) — hash-gated file sync with a remote manifest
- Executors (LocalExecutor, RemoteExecutor) — commands and file transfer
- Remote Session (RemoteSession) — one paramiko connection, many channels
- Docker Manager (DockerManager) — install, compose lifecycle, health
- UFW Manager (UfwManager) — idempotent firewall rules
"""

from .config import DcdConfig, load_config, configure_logging
from .docker import DockerManager
from .errors import (
    DcdError, ExecError, SSHConnectionError, AuthError, HostKeyError,
    ProtocolError, CommandError, CommandTimeout, PlanError, SyncError,
    DockerSetupError, FirewallError, HealthCheckFailed, HealthCheckTimeout,
    OperationCancelled, UserAborted, OperationFailed,
)
from .executor import Executor, LocalExecutor, RemoteExecutor, connect_executor
from .firewall import UfwManager
from .manifest import diff_manifests, DiffPlan, ManifestEntry
from .models import (
    Target, DeploymentPlan, PortSpec, FileDependency, ServiceHealth,
    HealthStatus, DeploymentReport, StatusReport, DestroyReport,
    DeployerEvent, EventKind, SyncReport,
)
from .orchestrator import (
    Deployer, UpOptions, DestroyOptions, UpState, DestroyState, StatusState,
    up, status, destroy,
)
from .session import RemoteSession
from .sync import SyncEngine

__version__ = "0.1.0"

__all__ = [
    'DcdConfig', 'load_config', 'configure_logging',
    'DockerManager', 'UfwManager',
    'DcdError', 'ExecError', 'SSHConnectionError', 'AuthError', 'HostKeyError',
    'ProtocolError', 'CommandError', 'CommandTimeout', 'PlanError', 'SyncError',
    'DockerSetupError', 'FirewallError', 'HealthCheckFailed', 'HealthCheckTimeout',
    'OperationCancelled', 'UserAborted', 'OperationFailed',
    'Executor', 'LocalExecutor', 'RemoteExecutor', 'connect_executor',
    'diff_manifests', 'DiffPlan', 'ManifestEntry',
    'Target', 'DeploymentPlan', 'PortSpec', 'FileDependency', 'ServiceHealth',
    'HealthStatus', 'DeploymentReport', 'StatusReport', 'DestroyReport',
    'DeployerEvent', 'EventKind', 'SyncReport',
    'Deployer', 'UpOptions', 'DestroyOptions', 'UpState', 'DestroyState', 'StatusState',
    'up', 'status', 'destroy',
    'RemoteSession', 'SyncEngine',
]
