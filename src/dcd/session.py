#!/usr/bin/env python3
"""
Remote Session — one SSH connection per invocation

Owns a single paramiko transport to the target and hands out short-lived
channels on top of it: command channels for remote execution and SFTP
subsystem channels for file transfer. Channels are independent; closing
one never touches the others or the connection.

Connection model:
- Key-based auth only (identity file or ~/.ssh/id_ed25519, ~/.ssh/id_rsa)
- Host keys checked against known_hosts; unknown keys rejected unless
  permissive mode is switched on explicitly (then accepted with a warning)
- Transport keep-alive on a fixed interval for the session's lifetime
- Connection attempts retried with exponential backoff; auth and host-key
  failures are never retried
- Every command is logged and kept in an in-memory exec log

Usage:
    with RemoteSession(Target.parse("deploy@203.0.113.7"), SSHConfig()) as s:
        out = s.exec("docker compose version --short")
"""

import base64
import codecs
import hashlib
import logging
import os
import socket
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, TypeVar

import paramiko

from .config import SSHConfig
from .errors import (
    AuthError, CommandTimeout, HostKeyError, ProtocolError, SSHConnectionError,
)
from .models import ExecOutput, Target

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_KEY_FILES = ["~/.ssh/id_ed25519", "~/.ssh/id_rsa"]
KEY_CLASSES = [paramiko.Ed25519Key, paramiko.RSAKey, paramiko.ECDSAKey]
READ_CHUNK = 32768
POLL_INTERVAL = 0.05

# Errors that mean the socket or transport went away.
TRANSPORT_ERRORS = (paramiko.SSHException, EOFError, OSError, socket.timeout)


def expand_tilde(path: str) -> str:
    """Expand ``~`` and ``~/...``; other tilde forms are rejected."""
    if path == "~" or path.startswith("~/"):
        return os.path.expanduser(path)
    if path.startswith("~"):
        raise AuthError(
            f"Unsupported tilde pattern '{path}'. Only '~' and '~/' are supported."
        )
    return path


def key_fingerprint(key: paramiko.PKey) -> str:
    digest = hashlib.sha256(key.asbytes()).digest()
    return "SHA256:" + base64.b64encode(digest).decode().rstrip("=")


# ── Host key policies ────────────────────────────────────────────

class StrictHostKeyPolicy(paramiko.MissingHostKeyPolicy):
    """Reject hosts that are not in known_hosts."""

    def missing_host_key(self, client, hostname, key):
        raise HostKeyError(
            f"Host key for {hostname} is not in known_hosts "
            f"({key.get_name()} {key_fingerprint(key)}). Add it, or enable "
            f"permissive host key checking explicitly."
        )


class WarnHostKeyPolicy(paramiko.MissingHostKeyPolicy):
    """Accept unknown hosts for this session only, loudly."""

    def missing_host_key(self, client, hostname, key):
        logger.warning(
            f"UNKNOWN HOST KEY for {hostname}: {key.get_name()} {key_fingerprint(key)}. "
            f"Connecting anyway (permissive mode); this does not protect against "
            f"man-in-the-middle attacks. To trust it add: "
            f"'{hostname} {key.get_name()} {key.get_base64()}' to known_hosts"
        )
        client.get_host_keys().add(hostname, key.get_name(), key)


# ── Key loading ──────────────────────────────────────────────────

def load_private_key(identity_file: Optional[str] = None) -> paramiko.PKey:
    """
    Load the private key used for authentication.

    An explicit identity file must exist and parse. Without one, the
    default key locations are tried in order.
    """
    if identity_file:
        path = expand_tilde(identity_file)
        if not os.path.isfile(path):
            raise AuthError(f"Specified SSH key file not found: {path}")
        return _read_key_file(path)

    for default in DEFAULT_KEY_FILES:
        expanded = os.path.expanduser(default)
        if os.path.isfile(expanded):
            logger.debug(f"Using SSH key: {expanded}")
            return _read_key_file(expanded)

    raise AuthError(
        "No SSH keys found. Tried ~/.ssh/id_ed25519 and ~/.ssh/id_rsa. "
        "Specify an identity file or generate a key."
    )


def _read_key_file(path: str) -> paramiko.PKey:
    for key_class in KEY_CLASSES:
        try:
            return key_class.from_private_key_file(path)
        except paramiko.PasswordRequiredException:
            raise AuthError(f"SSH key {path} is passphrase-protected; use an agent-free key") from None
        except (paramiko.SSHException, ValueError):
            continue
    raise AuthError(f"Could not parse SSH key: {path}")


# ── Session ──────────────────────────────────────────────────────

class RemoteSession:
    """
    A single SSH connection with on-demand channels.

    Thread-safe for concurrent channel use: several threads may run
    commands and SFTP transfers at the same time over the one transport.
    """

    def __init__(
        self,
        target: Target,
        config: SSHConfig = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.target = target
        self.config = config or SSHConfig()
        self._sleep = sleep
        self._client: Optional[paramiko.SSHClient] = None
        self._key: Optional[paramiko.PKey] = None
        self._exec_log: List[ExecOutput] = []
        self._lock = threading.RLock()
        self.connect_count = 0

    # ── Connection Management ────────────────────────────────────

    @property
    def connected(self) -> bool:
        if self._client is None:
            return False
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    def connect(self) -> None:
        """Connect with bounded exponential backoff."""
        with self._lock:
            if not self.connected:
                self._connect_with_retry()

    def _connect_with_retry(self) -> None:
        if self._key is None:
            self._key = load_private_key(self.config.identity_file)

        attempts = max(1, self.config.reconnect_attempts)
        last_error: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            try:
                self._connect_once()
                return
            except SSHConnectionError as e:
                last_error = e
                if attempt == attempts:
                    break
                delay = self.backoff_delay(attempt)
                logger.warning(
                    f"SSH connect to {self.target} failed (attempt {attempt}/{attempts}): "
                    f"{e}. Retrying in {delay:.1f}s"
                )
                self._sleep(delay)

        raise SSHConnectionError(
            f"Could not connect to {self.target} after {attempts} attempts: {last_error}"
        )

    def backoff_delay(self, attempt: int) -> float:
        delay = self.config.backoff_base_sec * (2 ** (attempt - 1))
        return min(delay, self.config.backoff_max_sec)

    def _connect_once(self) -> None:
        client = paramiko.SSHClient()
        known_hosts = expand_tilde(self.config.known_hosts)
        if os.path.isfile(known_hosts):
            client.load_host_keys(known_hosts)
        else:
            logger.warning(f"Known hosts file not found at '{known_hosts}'")

        if self.config.strict_host_keys:
            client.set_missing_host_key_policy(StrictHostKeyPolicy())
        else:
            client.set_missing_host_key_policy(WarnHostKeyPolicy())

        timeout = self.config.connect_timeout_sec
        try:
            client.connect(
                hostname=self.target.host,
                port=self.target.port,
                username=self.target.user,
                pkey=self._key,
                timeout=timeout,
                banner_timeout=timeout,
                auth_timeout=timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except HostKeyError:
            client.close()
            raise
        except paramiko.BadHostKeyException as e:
            client.close()
            raise HostKeyError(
                f"HOST KEY VERIFICATION FAILED for {self.target.host}: the presented key "
                f"({key_fingerprint(e.key)}) does not match known_hosts. Connection rejected."
            ) from e
        except paramiko.AuthenticationException as e:
            client.close()
            raise AuthError(
                f"SSH authentication failed for {self.target.user}@{self.target.host}: {e}"
            ) from e
        except TRANSPORT_ERRORS as e:
            client.close()
            raise SSHConnectionError(f"{type(e).__name__}: {e}") from e

        transport = client.get_transport()
        if self.config.keepalive_sec > 0:
            transport.set_keepalive(self.config.keepalive_sec)

        self._client = client
        self.connect_count += 1
        logger.info(f"SSH connected to {self.target}")

    def reconnect(self) -> None:
        """Drop whatever is left of the connection and connect again."""
        logger.warning(f"Reconnecting to {self.target}")
        with self._lock:
            self._drop()
            self._connect_with_retry()

    def ensure_connected(self) -> None:
        with self._lock:
            if not self.connected:
                self._drop()
                self._connect_with_retry()

    def _drop(self) -> None:
        if self._client is not None:
            try:
                self._client.close()
            except TRANSPORT_ERRORS as e:
                logger.debug(f"Ignoring error while dropping connection: {e}")
            self._client = None

    def close(self) -> None:
        """Close the connection and every channel on it."""
        if self._client is not None:
            self._drop()
            logger.info("SSH connection closed")

    # ── Retry ────────────────────────────────────────────────────

    def with_reconnect(self, operation: Callable[[], T], description: str = "") -> T:
        """
        Run an idempotent operation, reconnecting on connection loss.

        Only for operations that are safe to repeat: opening channels,
        reading, and overwriting uploads. Remote commands are not routed
        through here once they have been sent.
        """
        attempts = max(1, self.config.reconnect_attempts)
        attempt = 0
        while True:
            attempt += 1
            self.ensure_connected()
            try:
                return operation()
            except SSHConnectionError as e:
                if e.command_sent or attempt == attempts:
                    raise
                logger.warning(
                    f"Connection lost during {description or 'operation'} "
                    f"(attempt {attempt}/{attempts}): {e}"
                )
                self._sleep(self.backoff_delay(attempt))

    # ── Channels ─────────────────────────────────────────────────

    def _transport(self) -> paramiko.Transport:
        if not self.connected:
            raise SSHConnectionError(f"Not connected to {self.target}")
        return self._client.get_transport()

    def _open_session_channel(self) -> paramiko.Channel:
        transport = self._transport()
        try:
            return transport.open_session(timeout=self.config.connect_timeout_sec)
        except TRANSPORT_ERRORS as e:
            if transport.is_active():
                raise ProtocolError(f"Channel open refused: {e}") from e
            raise SSHConnectionError(f"Connection lost opening channel: {e}") from e

    @contextmanager
    def channel(self) -> Iterator[paramiko.Channel]:
        """A command channel, closed on every exit path."""
        chan = self.with_reconnect(self._open_session_channel, "channel open")
        try:
            yield chan
        finally:
            chan.close()

    def _open_sftp(self) -> paramiko.SFTPClient:
        transport = self._transport()
        try:
            return paramiko.SFTPClient.from_transport(transport)
        except TRANSPORT_ERRORS as e:
            if transport.is_active():
                raise ProtocolError(f"SFTP subsystem unavailable: {e}") from e
            raise SSHConnectionError(f"Connection lost opening SFTP: {e}") from e

    @contextmanager
    def sftp(self) -> Iterator[paramiko.SFTPClient]:
        """An SFTP channel, closed on every exit path."""
        client = self.with_reconnect(self._open_sftp, "sftp open")
        try:
            yield client
        finally:
            client.close()

    # ── Command Execution ────────────────────────────────────────

    def exec(
        self,
        command: str,
        timeout: Optional[float] = None,
        on_output: Optional[Callable[[str], None]] = None,
    ) -> ExecOutput:
        """
        Execute a shell command on the target.

        With ``on_output`` set, stdout and stderr are merged and delivered
        line by line as they arrive.

        Raises:
            SSHConnectionError: connection lost; ``command_sent`` tells
                whether the command may have started remotely.
            CommandTimeout: the command ran past ``timeout``.
        """
        cmd_timeout = timeout or self.config.command_timeout_sec
        start = time.time()

        with self.channel() as chan:
            if on_output is not None:
                chan.set_combine_stderr(True)
            try:
                chan.exec_command(command)
            except TRANSPORT_ERRORS as e:
                raise SSHConnectionError(
                    f"Connection lost sending command: {e}", command_sent=True
                ) from e
            stdout, stderr = self._drain(chan, command, cmd_timeout, on_output)
            exit_code = chan.recv_exit_status()
            if exit_code == -1 and not self.connected:
                raise SSHConnectionError(
                    f"Connection lost while running: {command[:80]}", command_sent=True
                )

        result = ExecOutput(
            command=command,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            duration_ms=round((time.time() - start) * 1000, 1),
            host=self.target.host,
        )
        self._exec_log.append(result)

        level = logging.INFO if result.success else logging.WARNING
        logger.log(
            level,
            f"[SSH] {command[:80]} -> exit={result.exit_code} "
            f"({result.duration_ms:.0f}ms)"
        )
        return result

    def _drain(self, chan, command, timeout, on_output):
        out_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        err_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        out_parts: List[str] = []
        err_parts: List[str] = []
        pending = ""
        deadline = time.monotonic() + timeout

        while True:
            got_data = False
            try:
                if chan.recv_ready():
                    text = out_decoder.decode(chan.recv(READ_CHUNK))
                    out_parts.append(text)
                    if on_output is not None:
                        pending = _emit_lines(pending + text, on_output)
                    got_data = True
                if chan.recv_stderr_ready():
                    err_parts.append(err_decoder.decode(chan.recv_stderr(READ_CHUNK)))
                    got_data = True
            except TRANSPORT_ERRORS as e:
                raise SSHConnectionError(
                    f"Connection lost while running: {e}", command_sent=True
                ) from e

            if got_data:
                continue
            if chan.exit_status_ready() and not chan.recv_ready() and not chan.recv_stderr_ready():
                break
            if time.monotonic() > deadline:
                raise CommandTimeout(f"Command timed out after {timeout}s: {command[:80]}")
            time.sleep(POLL_INTERVAL)

        out_parts.append(out_decoder.decode(b"", final=True))
        err_parts.append(err_decoder.decode(b"", final=True))
        if on_output is not None and pending:
            on_output(pending)
        return "".join(out_parts), "".join(err_parts)

    # ── Audit ────────────────────────────────────────────────────

    def get_exec_log(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Get recent command execution log."""
        entries = self._exec_log[-limit:]
        return [e.to_dict() for e in reversed(entries)]

    def get_exec_stats(self) -> Dict[str, Any]:
        """Get execution statistics."""
        total = len(self._exec_log)
        successes = sum(1 for e in self._exec_log if e.success)
        avg_duration = (
            sum(e.duration_ms for e in self._exec_log) / total
            if total > 0 else 0
        )
        return {
            "total_commands": total,
            "successes": successes,
            "failures": total - successes,
            "avg_duration_ms": round(avg_duration, 1),
            "connected": self.connected,
            "connects": self.connect_count,
            "host": self.target.host,
        }

    # ── Context Manager ──────────────────────────────────────────

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __repr__(self) -> str:
        status = "connected" if self.connected else "disconnected"
        return f"RemoteSession({self.target}, {status})"


def _emit_lines(buffer: str, on_output: Callable[[str], None]) -> str:
    """Deliver complete lines (``\\n`` or ``\\r`` terminated); return the rest."""
    normalized = buffer.replace("\r\n", "\n").replace("\r", "\n")
    *complete, rest = normalized.split("\n")
    for line in complete:
        if line:
            on_output(line)
    return rest
