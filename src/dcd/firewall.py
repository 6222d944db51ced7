"""
UFW firewall management on the target host.

Opens the ports a deployment exposes. Idempotent: existing rules are
parsed from ``ufw status`` and only missing ``port/proto`` rules are added.
SSH (22/tcp) is always allowed before ufw is enabled so enabling it never
locks the session out.
"""

import logging
import re
from typing import Callable, List, Sequence, Set

from .errors import CommandError, FirewallError
from .executor import Executor
from .models import PortSpec

logger = logging.getLogger(__name__)

SSH_RULE = "22/tcp"
_RULE_TOKEN = re.compile(r"^(\d+(?::\d+)?)(?:/(tcp|udp))?$")


def rule_specs(port: PortSpec) -> List[str]:
    """UFW rule specs for a port: ``both`` expands to tcp and udp."""
    if port.protocol == "both":
        return [f"{port.port}/tcp", f"{port.port}/udp"]
    return [f"{port.port}/{port.protocol}"]


def parse_ufw_rules(status_output: str) -> Set[str]:
    """
    Collect allowed ``port/proto`` specs from ``ufw status`` output.

    A rule without a protocol (``ufw allow 80``) covers both tcp and udp.
    IPv6 duplicates (``80/tcp (v6)``) collapse into the same spec.
    """
    rules = set()
    for line in (status_output or "").splitlines():
        if "ALLOW" not in line:
            continue
        # numbered output prefixes "[ 1]"
        line = re.sub(r"^\[\s*\d+\]\s*", "", line.strip())
        token = line.split()[0] if line.split() else ""
        match = _RULE_TOKEN.match(token)
        if not match:
            continue
        port, proto = match.groups()
        if proto:
            rules.add(f"{port}/{proto}")
        else:
            rules.update({f"{port}/tcp", f"{port}/udp"})
    return rules


class UfwManager:
    """Makes sure ufw is installed, enabled, and allows the given ports."""

    def __init__(self, executor: Executor, on_output: Callable[[str], None] = None):
        self.executor = executor
        self.on_output = on_output

    def _ufw(self, *args: str):
        try:
            return self.executor.run(["ufw", *args])
        except CommandError as e:
            raise FirewallError(f"ufw {' '.join(args)} failed: {e.stderr_tail.strip()}") from e

    def ensure_installed(self) -> None:
        if self.executor.run(["which", "ufw"], check=False).success:
            return
        logger.info("ufw not found, installing")
        try:
            self.executor.run(
                ["sh", "-c", "apt-get update && apt-get install -y ufw"],
                env={"DEBIAN_FRONTEND": "noninteractive"},
                on_output=self.on_output,
            )
        except CommandError as e:
            raise FirewallError(f"Failed to install ufw: {e.stderr_tail.strip()}") from e

    def is_active(self) -> bool:
        return "Status: active" in self._ufw("status").stdout

    def ensure_enabled(self) -> None:
        if self.is_active():
            return
        logger.info(f"Enabling ufw (allowing {SSH_RULE} first)")
        self._ufw("allow", SSH_RULE)
        self._ufw("--force", "enable")

    def existing_rules(self) -> Set[str]:
        return parse_ufw_rules(self._ufw("status").stdout)

    def ensure_ports(self, ports: Sequence[PortSpec], project: str) -> List[str]:
        """
        Allow every port in ``ports``. Returns the rule specs that were added.
        """
        if not ports:
            return []
        self.ensure_installed()
        self.ensure_enabled()

        existing = self.existing_rules()
        added = []
        for port in ports:
            for spec in rule_specs(port):
                if spec in existing:
                    logger.info(f"Firewall rule already present: {spec}")
                    continue
                self._ufw("allow", spec, "comment", f"dcd: {project}")
                existing.add(spec)
                added.append(spec)
                logger.info(f"Firewall rule added: {spec}")
        return added
