#!/usr/bin/env python3
"""
Unit tests for the shared data model: targets, plans, reports
"""

import sys
import pytest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from dcd.errors import OperationFailed, PlanError, SSHConnectionError, CommandError
from dcd.models import (
    Target, DeploymentPlan, FileDependency, PortSpec, ExecOutput, HealthStatus,
    ServiceHealth, StatusReport, DeployerEvent, EventKind, safe_relpath,
)


# ── Target ───────────────────────────────────────────────────────

class TestTarget:

    def test_host_only_uses_defaults(self):
        t = Target.parse("example.com")
        assert (t.user, t.host, t.port) == ("root", "example.com", 22)

    def test_user_host_port(self):
        t = Target.parse("deploy@10.0.0.5:2222")
        assert (t.user, t.host, t.port) == ("deploy", "10.0.0.5", 2222)

    def test_default_user_from_config(self):
        assert Target.parse("host", default_user="ubuntu").user == "ubuntu"

    def test_ssh_scheme_prefix(self):
        t = Target.parse("ssh://admin@host:22")
        assert t.user == "admin"
        assert t.host == "host"

    def test_bracketed_ipv6(self):
        t = Target.parse("root@[fe80::1]:2200")
        assert t.host == "fe80::1"
        assert t.port == 2200
        assert str(t) == "root@[fe80::1]:2200"

    def test_bare_ipv6(self):
        t = Target.parse("2001:db8::7")
        assert t.host == "2001:db8::7"
        assert t.port == 22

    def test_local_target(self):
        t = Target.parse("local://")
        assert t.local is True
        assert str(t) == "local://"

    @pytest.mark.parametrize("bad", ["", "user@", "@host", "host:abc", "host:70000", "[::1"])
    def test_invalid_targets(self, bad):
        with pytest.raises(ValueError):
            Target.parse(bad)

    def test_immutable(self):
        t = Target.parse("host")
        with pytest.raises(AttributeError):
            t.port = 23


# ── Plan ─────────────────────────────────────────────────────────

class TestDeploymentPlan:

    def test_safe_relpath_normalizes(self):
        assert safe_relpath("a/./b/../c") == "a/c"

    @pytest.mark.parametrize("bad", ["/etc/passwd", "../x", "a/../../x", ".", "a\\b", ""])
    def test_safe_relpath_rejects_escapes(self, bad):
        with pytest.raises(PlanError):
            safe_relpath(bad)

    def test_default_remote_dir(self):
        plan = DeploymentPlan(project_name="shop")
        assert plan.resolve_remote_dir() == "/opt/shop"
        assert plan.resolve_remote_dir("/srv") == "/srv/shop"

    def test_explicit_remote_dir(self):
        plan = DeploymentPlan(project_name="shop", remote_dir="/home/app/shop/")
        assert plan.resolve_remote_dir() == "/home/app/shop"

    def test_from_dict(self):
        plan = DeploymentPlan.from_dict({
            "project_name": "shop",
            "compose_files": ["deploy/docker-compose.yml"],
            "env_vars": {"A": "1"},
            "ports": [80, {"port": 53, "protocol": "both"}],
            "file_deps": [{"local": "./conf", "remote": "conf"}, ["./x.sql", "db/x.sql"]],
        })
        assert plan.ports == (PortSpec(80, "tcp"), PortSpec(53, "both"))
        assert plan.file_deps[1] == FileDependency("./x.sql", "db/x.sql")
        assert plan.compose_file_names() == ["docker-compose.yml"]

    def test_bad_protocol(self):
        with pytest.raises(ValueError):
            PortSpec(80, "sctp")

    def test_validate_missing_compose_file(self, tmp_path):
        plan = DeploymentPlan(project_name="x", compose_files=(str(tmp_path / "nope.yml"),))
        with pytest.raises(PlanError, match="not found"):
            plan.validate()

    def test_validate_duplicate_basenames(self, tmp_path):
        (tmp_path / "a").mkdir()
        (tmp_path / "b").mkdir()
        for d in ("a", "b"):
            (tmp_path / d / "compose.yml").write_text("services: {}\n")
        plan = DeploymentPlan(
            project_name="x",
            compose_files=(str(tmp_path / "a" / "compose.yml"), str(tmp_path / "b" / "compose.yml")),
        )
        with pytest.raises(PlanError, match="duplicate"):
            plan.validate()

    def test_validate_reserved_remote_path(self, tmp_path):
        compose = tmp_path / "compose.yml"
        compose.write_text("services: {}\n")
        plan = DeploymentPlan(
            project_name="x",
            compose_files=(str(compose),),
            file_deps=(FileDependency(str(compose), ".dcd-manifest.json"),),
        )
        with pytest.raises(PlanError, match="reserved"):
            plan.validate()


# ── Results & Reports ────────────────────────────────────────────

class TestResults:

    def test_exec_output(self):
        out = ExecOutput(command="ls", exit_code=0, stdout=" a \n\n b\n")
        assert out.success is True
        assert out.lines() == ["a", "b"]
        assert out.to_dict()["success"] is True

    def test_health_status_passing(self):
        assert HealthStatus.HEALTHY.passing
        assert HealthStatus.NONE.passing
        assert not HealthStatus.STARTING.passing
        assert not HealthStatus.UNHEALTHY.passing

    def test_status_report_healthy(self):
        report = StatusReport(project="p", target="t", remote_dir="/opt/p")
        assert report.healthy is False
        report.services = [ServiceHealth("web", HealthStatus.NONE)]
        assert report.healthy is True
        assert report.to_dict()["services"][0]["status"] == "none"

    def test_event_str(self):
        e = DeployerEvent(EventKind.STEP_FAILED, "Start services", "boom")
        assert str(e) == "Failed: Start services - boom"


class TestErrors:

    def test_connection_error_is_retryable(self):
        assert SSHConnectionError("x").retryable is True
        assert SSHConnectionError("x", command_sent=True).command_sent is True

    def test_command_error_bounds_stderr(self):
        err = CommandError(["docker", "ps"], 1, "e" * 5000)
        assert err.exit_code == 1
        assert len(err.stderr_tail) == 2000

    def test_operation_failed_to_dict(self):
        err = OperationFailed("up", HealthStatus.STARTING, CommandError(["x"], 2))
        d = err.to_dict()
        assert d["operation"] == "up"
        assert d["last_state"] == "starting"
        assert d["error"] == "CommandError"
