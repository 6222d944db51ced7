#!/usr/bin/env python3
"""
Unit tests for RemoteSession — connection, retry, host keys, channels
"""

import logging
import sys
import pytest
from pathlib import Path
from unittest.mock import patch, MagicMock

import paramiko

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from dcd.config import SSHConfig
from dcd.errors import AuthError, CommandTimeout, HostKeyError, SSHConnectionError
from dcd.models import Target
from dcd.session import (
    RemoteSession, StrictHostKeyPolicy, WarnHostKeyPolicy,
    expand_tilde, load_private_key,
)


class FakeChannel:
    """Just enough of paramiko.Channel for RemoteSession.exec."""

    def __init__(self, stdout=(), stderr=(), exit_code=0, finished=True, on_exit=None):
        self._out = list(stdout)
        self._err = list(stderr)
        self.exit_code = exit_code
        self.finished = finished
        self.on_exit = on_exit
        self.command = None
        self.combined = False
        self.closed = False

    def set_combine_stderr(self, combine):
        self.combined = combine

    def exec_command(self, command):
        self.command = command

    def recv_ready(self):
        return bool(self._out)

    def recv(self, n):
        return self._out.pop(0)

    def recv_stderr_ready(self):
        return bool(self._err)

    def recv_stderr(self, n):
        return self._err.pop(0)

    def exit_status_ready(self):
        return self.finished

    def recv_exit_status(self):
        if self.on_exit:
            self.on_exit()
        return self.exit_code

    def close(self):
        self.closed = True


# ── Fixtures ─────────────────────────────────────────────────────

@pytest.fixture
def ssh_client():
    """Patch paramiko.SSHClient; yields (MockClass, client, transport)."""
    with patch("dcd.session.paramiko.SSHClient") as MockClient:
        client = MockClient.return_value
        transport = client.get_transport.return_value
        transport.is_active.return_value = True
        yield MockClient, client, transport


@pytest.fixture
def delays():
    return []


@pytest.fixture
def session(delays, tmp_path):
    config = SSHConfig(known_hosts=str(tmp_path / "known_hosts"), reconnect_attempts=3)
    s = RemoteSession(Target.parse("deploy@203.0.113.7"), config, sleep=delays.append)
    s._key = MagicMock()
    return s


# ── Key Loading ──────────────────────────────────────────────────

class TestKeyLoading:

    def test_explicit_key_missing(self, tmp_path):
        with pytest.raises(AuthError, match="not found"):
            load_private_key(str(tmp_path / "id_missing"))

    def test_no_default_keys(self, monkeypatch, tmp_path):
        monkeypatch.setenv("HOME", str(tmp_path))
        with pytest.raises(AuthError, match="No SSH keys found"):
            load_private_key()

    def test_default_key_detected(self, monkeypatch, tmp_path):
        monkeypatch.setenv("HOME", str(tmp_path))
        (tmp_path / ".ssh").mkdir()
        (tmp_path / ".ssh" / "id_rsa").write_text("fake")
        fake_class = MagicMock()
        with patch("dcd.session.KEY_CLASSES", [fake_class]):
            key = load_private_key()
        assert key is fake_class.from_private_key_file.return_value
        fake_class.from_private_key_file.assert_called_once_with(str(tmp_path / ".ssh" / "id_rsa"))

    def test_unparseable_key(self, tmp_path):
        path = tmp_path / "id_bad"
        path.write_text("garbage")
        failing = MagicMock()
        failing.from_private_key_file.side_effect = paramiko.SSHException("bad")
        with patch("dcd.session.KEY_CLASSES", [failing, failing]):
            with pytest.raises(AuthError, match="Could not parse"):
                load_private_key(str(path))

    def test_tilde_forms(self, monkeypatch, tmp_path):
        monkeypatch.setenv("HOME", str(tmp_path))
        assert expand_tilde("~/.ssh/key") == str(tmp_path / ".ssh" / "key")
        assert expand_tilde("/abs/key") == "/abs/key"
        with pytest.raises(AuthError):
            expand_tilde("~other/key")


# ── Connection ───────────────────────────────────────────────────

class TestConnect:

    def test_connect_success(self, session, ssh_client):
        _, client, transport = ssh_client

        session.connect()

        assert session.connected is True
        kwargs = client.connect.call_args.kwargs
        assert kwargs["hostname"] == "203.0.113.7"
        assert kwargs["username"] == "deploy"
        assert kwargs["port"] == 22
        assert kwargs["allow_agent"] is False
        assert kwargs["look_for_keys"] is False
        transport.set_keepalive.assert_called_once_with(15)

    def test_strict_policy_by_default(self, session, ssh_client):
        _, client, _ = ssh_client
        session.connect()
        policy = client.set_missing_host_key_policy.call_args.args[0]
        assert isinstance(policy, StrictHostKeyPolicy)

    def test_permissive_policy_is_opt_in(self, ssh_client, tmp_path):
        _, client, _ = ssh_client
        config = SSHConfig(known_hosts=str(tmp_path / "kh"), strict_host_keys=False)
        s = RemoteSession(Target.parse("h"), config)
        s._key = MagicMock()
        s.connect()
        policy = client.set_missing_host_key_policy.call_args.args[0]
        assert isinstance(policy, WarnHostKeyPolicy)

    def test_known_hosts_loaded(self, ssh_client, tmp_path):
        _, client, _ = ssh_client
        kh = tmp_path / "known_hosts"
        kh.write_text("")
        s = RemoteSession(Target.parse("h"), SSHConfig(known_hosts=str(kh)))
        s._key = MagicMock()
        s.connect()
        client.load_host_keys.assert_called_once_with(str(kh))

    def test_auth_failure_not_retried(self, session, ssh_client, delays):
        _, client, _ = ssh_client
        client.connect.side_effect = paramiko.AuthenticationException("denied")

        with pytest.raises(AuthError, match="authentication failed"):
            session.connect()

        assert client.connect.call_count == 1
        assert delays == []

    def test_bad_host_key_rejected(self, session, ssh_client):
        _, client, _ = ssh_client
        got = MagicMock()
        got.asbytes.return_value = b"presented"
        client.connect.side_effect = paramiko.BadHostKeyException("203.0.113.7", got, MagicMock())

        with pytest.raises(HostKeyError, match="VERIFICATION FAILED"):
            session.connect()
        assert client.connect.call_count == 1

    def test_transient_failure_retried_with_backoff(self, session, ssh_client, delays):
        _, client, _ = ssh_client
        client.connect.side_effect = [ConnectionRefusedError("refused"), OSError("reset"), None]

        session.connect()

        assert client.connect.call_count == 3
        assert delays == [1.0, 2.0]
        assert session.connect_count == 1

    def test_gives_up_after_bounded_attempts(self, session, ssh_client, delays):
        _, client, _ = ssh_client
        client.connect.side_effect = OSError("unreachable")

        with pytest.raises(SSHConnectionError, match="after 3 attempts"):
            session.connect()
        assert client.connect.call_count == 3
        assert len(delays) == 2

    def test_backoff_is_capped(self, session):
        assert session.backoff_delay(1) == 1.0
        assert session.backoff_delay(3) == 4.0
        assert session.backoff_delay(10) == 30.0

    def test_context_manager_closes(self, session, ssh_client):
        _, client, _ = ssh_client
        with session as s:
            assert s.connected
        client.close.assert_called()
        assert session.connected is False

    def test_repr(self, session):
        assert "disconnected" in repr(session)
        assert "203.0.113.7" in repr(session)


# ── Host key policies ────────────────────────────────────────────

class TestHostKeyPolicies:

    def _key(self):
        key = MagicMock()
        key.get_name.return_value = "ssh-ed25519"
        key.get_base64.return_value = "AAAAC3Nza"
        key.asbytes.return_value = b"key-bytes"
        return key

    def test_strict_rejects_unknown(self):
        with pytest.raises(HostKeyError, match="not in known_hosts"):
            StrictHostKeyPolicy().missing_host_key(MagicMock(), "host", self._key())

    def test_warn_accepts_and_logs(self, caplog):
        client = MagicMock()
        key = self._key()
        with caplog.at_level(logging.WARNING, logger="dcd.session"):
            WarnHostKeyPolicy().missing_host_key(client, "host", key)
        client.get_host_keys.return_value.add.assert_called_once_with("host", "ssh-ed25519", key)
        assert "UNKNOWN HOST KEY" in caplog.text
        assert "SHA256:" in caplog.text


# ── Command Execution ────────────────────────────────────────────

class TestExec:

    def test_exec_collects_output(self, session, ssh_client):
        _, _, transport = ssh_client
        chan = FakeChannel(stdout=[b"Docker version 24.0.7\n"], stderr=[b"warn\n"])
        transport.open_session.return_value = chan
        session.connect()

        out = session.exec("docker --version")

        assert chan.command == "docker --version"
        assert out.success
        assert out.stdout == "Docker version 24.0.7\n"
        assert out.stderr == "warn\n"
        assert out.host == "203.0.113.7"
        assert chan.closed is True

    def test_exec_streams_lines(self, session, ssh_client):
        _, _, transport = ssh_client
        chan = FakeChannel(stdout=[b"pulling web\npul", b"ling db\r\n", b"done"])
        transport.open_session.return_value = chan
        session.connect()
        lines = []

        session.exec("docker compose pull", on_output=lines.append)

        assert chan.combined is True
        assert lines == ["pulling web", "pulling db", "done"]

    def test_exec_nonzero_exit(self, session, ssh_client):
        _, _, transport = ssh_client
        transport.open_session.return_value = FakeChannel(stderr=[b"nope"], exit_code=2)
        session.connect()

        out = session.exec("false")

        assert out.exit_code == 2
        assert out.success is False

    def test_exec_timeout_closes_channel(self, session, ssh_client):
        _, _, transport = ssh_client
        chan = FakeChannel(finished=False)
        transport.open_session.return_value = chan
        session.connect()

        with pytest.raises(CommandTimeout):
            session.exec("sleep 100", timeout=0.01)
        assert chan.closed is True

    def test_drop_after_send_is_flagged(self, session, ssh_client):
        _, _, transport = ssh_client

        def drop():
            transport.is_active.return_value = False

        transport.open_session.return_value = FakeChannel(exit_code=-1, on_exit=drop)
        session.connect()

        with pytest.raises(SSHConnectionError) as exc:
            session.exec("docker compose up -d")
        assert exc.value.command_sent is True

    def test_exec_log_and_stats(self, session, ssh_client):
        _, _, transport = ssh_client
        transport.open_session.side_effect = lambda timeout=None: FakeChannel(stdout=[b"ok"])
        session.connect()
        session.exec("echo one")
        session.exec("echo two")

        log = session.get_exec_log()
        stats = session.get_exec_stats()

        assert [e["command"] for e in log] == ["echo two", "echo one"]
        assert stats["total_commands"] == 2
        assert stats["successes"] == 2
        assert stats["connects"] == 1


# ── Reconnect ────────────────────────────────────────────────────

class TestWithReconnect:

    def test_idempotent_operation_retried(self, session, ssh_client, delays):
        session.connect()
        calls = []

        def op():
            calls.append(1)
            if len(calls) == 1:
                raise SSHConnectionError("channel lost")
            return "ok"

        assert session.with_reconnect(op, "stat") == "ok"
        assert len(calls) == 2
        assert delays == [1.0]

    def test_sent_command_never_retried(self, session, ssh_client):
        session.connect()
        calls = []

        def op():
            calls.append(1)
            raise SSHConnectionError("lost", command_sent=True)

        with pytest.raises(SSHConnectionError):
            session.with_reconnect(op, "up")
        assert len(calls) == 1

    def test_reconnects_when_transport_dead(self, session, ssh_client):
        _, client, transport = ssh_client
        session.connect()
        # keepalive noticed the drop; the next handshake brings it back
        transport.is_active.return_value = False
        client.connect.side_effect = lambda **kw: transport.is_active.configure_mock(return_value=True)

        assert session.with_reconnect(lambda: "ok") == "ok"
        assert session.connect_count == 2
