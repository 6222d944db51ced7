#!/usr/bin/env python3
"""
Executors — one command/file-transfer interface, two capabilities

    LocalExecutor   runs on the control machine (subprocess + shutil)
    RemoteExecutor  runs on the target over a RemoteSession (exec + SFTP)

Everything above this layer (sync engine, docker manager, firewall,
orchestrator) talks to an Executor and never to paramiko directly, so the
same code paths deploy to ``local://`` and to a remote host.

Commands are passed as argv lists; the remote side quotes them with
shlex before handing them to the login shell. Use ``shell()`` when a
pipeline is genuinely needed.
"""

import logging
import os
import shlex
import shutil
import stat as stat_mod
import subprocess
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import paramiko

from .config import DcdConfig
from .errors import CommandError, CommandTimeout, ProtocolError, SSHConnectionError
from .manifest import sha256_file
from .models import ExecOutput, FileInfo, Target
from .session import RemoteSession

logger = logging.getLogger(__name__)

OutputCallback = Callable[[str], None]

QUERY_ATTEMPTS = 3


def build_command(
    argv: Sequence[str],
    working_dir: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
) -> str:
    """Render argv as a single shell-safe command line."""
    if not argv:
        raise ValueError("empty command")
    cmd = shlex.join(argv)
    if env:
        assignments = " ".join(f"{k}={shlex.quote(str(v))}" for k, v in sorted(env.items()))
        cmd = f"env {assignments} {cmd}"
    if working_dir:
        cmd = f"cd {shlex.quote(working_dir)} && {cmd}"
    return cmd


class Executor:
    """
    Uniform command and file-transfer interface.

    Subclasses implement the primitives; ``run`` adds exit-code checking
    on top of ``_execute``.
    """

    host = ""

    def run(
        self,
        argv: Sequence[str],
        working_dir: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
        check: bool = True,
        on_output: Optional[OutputCallback] = None,
    ) -> ExecOutput:
        """
        Run a command and wait for it.

        Raises:
            CommandError: exit code != 0 and ``check`` is set.
            CommandTimeout: the command ran past ``timeout``.
            SSHConnectionError / AuthError / ProtocolError: transport failure.
        """
        result = self._execute(list(argv), working_dir, env, timeout, on_output)
        if check and not result.success:
            raise CommandError(argv, result.exit_code, result.stderr or result.stdout)
        return result

    def shell(self, script: str, **kwargs) -> ExecOutput:
        return self.run(["sh", "-c", script], **kwargs)

    def query(self, argv: Sequence[str], attempts: int = QUERY_ATTEMPTS, **kwargs) -> ExecOutput:
        """
        Run a read-only command, reconnecting and re-running it when the
        connection drops. Never use this for commands that change state.
        """
        attempts = max(1, attempts)
        for attempt in range(1, attempts + 1):
            try:
                return self.run(argv, **kwargs)
            except SSHConnectionError as e:
                if attempt == attempts:
                    raise
                logger.warning(
                    f"Connection lost during query '{' '.join(argv)[:80]}' "
                    f"(attempt {attempt}/{attempts}): {e}"
                )
                self.reconnect()

    def _execute(self, argv, working_dir, env, timeout, on_output) -> ExecOutput:
        raise NotImplementedError

    # ── Files ────────────────────────────────────────────────────

    def upload(self, local_path: str, remote_path: str, mode: Optional[int] = None) -> None:
        raise NotImplementedError

    def download(self, remote_path: str, local_path: str) -> None:
        raise NotImplementedError

    def mkdir_all(self, remote_path: str) -> None:
        raise NotImplementedError

    def stat(self, remote_path: str) -> Optional[FileInfo]:
        raise NotImplementedError

    def remove(self, remote_path: str) -> None:
        """Remove a file, or a directory tree. Missing paths are ignored."""
        raise NotImplementedError

    def rename(self, src: str, dst: str) -> None:
        """Atomically replace ``dst`` with ``src``."""
        raise NotImplementedError

    def chmod(self, remote_path: str, mode: int) -> None:
        raise NotImplementedError

    def read_text(self, remote_path: str) -> Optional[str]:
        """File contents, or None if the file does not exist."""
        raise NotImplementedError

    def write_text(self, remote_path: str, text: str, mode: Optional[int] = None) -> None:
        raise NotImplementedError

    def checksum(self, remote_path: str) -> str:
        """Lowercase hex SHA-256 of a file on the target."""
        raise NotImplementedError

    # ── Lifecycle ────────────────────────────────────────────────

    def reconnect(self) -> None:
        """Re-establish the transport. No-op where there is none."""

    def close(self) -> None:
        pass

    def get_exec_log(self, limit: int = 50) -> List[Dict[str, Any]]:
        return []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


# ── Local ────────────────────────────────────────────────────────

class LocalExecutor(Executor):
    """Runs everything on the control machine."""

    host = "localhost"

    def __init__(self):
        self._exec_log: List[ExecOutput] = []

    def _execute(self, argv, working_dir, env, timeout, on_output) -> ExecOutput:
        command = shlex.join(argv)
        full_env = None
        if env:
            full_env = dict(os.environ)
            full_env.update({k: str(v) for k, v in env.items()})

        start = time.time()
        try:
            if on_output is None:
                proc = subprocess.run(
                    argv, cwd=working_dir, env=full_env,
                    capture_output=True, text=True, errors="replace", timeout=timeout,
                )
                exit_code, stdout, stderr = proc.returncode, proc.stdout, proc.stderr
            else:
                exit_code, stdout, stderr = self._stream(argv, working_dir, full_env,
                                                         timeout, on_output)
        except subprocess.TimeoutExpired:
            raise CommandTimeout(f"Command timed out after {timeout}s: {command[:80]}") from None
        except FileNotFoundError as e:
            # missing binary or working directory, reported like a shell would
            exit_code, stdout, stderr = 127, "", str(e)

        result = ExecOutput(
            command=command,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            duration_ms=round((time.time() - start) * 1000, 1),
            host=self.host,
        )
        self._exec_log.append(result)
        level = logging.INFO if result.success else logging.WARNING
        logger.log(level, f"[LOCAL] {command[:80]} -> exit={exit_code} ({result.duration_ms:.0f}ms)")
        return result

    @staticmethod
    def _stream(argv, working_dir, env, timeout, on_output):
        proc = subprocess.Popen(
            argv, cwd=working_dir, env=env,
            stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
            text=True, errors="replace",
        )
        timed_out = threading.Event()

        def _kill():
            timed_out.set()
            proc.kill()

        timer = threading.Timer(timeout, _kill) if timeout else None
        if timer:
            timer.start()
        lines = []
        try:
            for line in proc.stdout:
                lines.append(line)
                stripped = line.rstrip("\r\n")
                if stripped:
                    on_output(stripped)
            proc.wait()
        finally:
            if timer:
                timer.cancel()
            # the callback raised (or Ctrl-C): do not leave the child behind
            if proc.poll() is None:
                proc.kill()
                proc.wait()
            proc.stdout.close()
        if timed_out.is_set():
            raise subprocess.TimeoutExpired(argv, timeout)
        return proc.returncode, "".join(lines), ""

    def upload(self, local_path, remote_path, mode=None):
        Path(remote_path).parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(local_path, remote_path)
        if mode is not None:
            os.chmod(remote_path, mode)

    def download(self, remote_path, local_path):
        shutil.copyfile(remote_path, local_path)

    def mkdir_all(self, remote_path):
        Path(remote_path).mkdir(parents=True, exist_ok=True)

    def stat(self, remote_path):
        try:
            st = os.stat(remote_path)
        except FileNotFoundError:
            return None
        return FileInfo(
            path=remote_path,
            size=st.st_size,
            mode=stat_mod.S_IMODE(st.st_mode),
            is_dir=stat_mod.S_ISDIR(st.st_mode),
            mtime=st.st_mtime,
        )

    def remove(self, remote_path):
        path = Path(remote_path)
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        elif path.exists() or path.is_symlink():
            path.unlink()

    def rename(self, src, dst):
        os.replace(src, dst)

    def chmod(self, remote_path, mode):
        os.chmod(remote_path, mode)

    def read_text(self, remote_path):
        try:
            return Path(remote_path).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def write_text(self, remote_path, text, mode=None):
        Path(remote_path).write_text(text, encoding="utf-8")
        if mode is not None:
            os.chmod(remote_path, mode)

    def checksum(self, remote_path):
        return sha256_file(remote_path)

    def get_exec_log(self, limit=50):
        return [e.to_dict() for e in reversed(self._exec_log[-limit:])]

    def __repr__(self) -> str:
        return "LocalExecutor()"


# ── Remote ───────────────────────────────────────────────────────

class RemoteExecutor(Executor):
    """Runs commands and file transfers on the target through a RemoteSession."""

    def __init__(self, session: RemoteSession):
        self.session = session
        self.host = session.target.host

    def _execute(self, argv, working_dir, env, timeout, on_output) -> ExecOutput:
        command = build_command(argv, working_dir, env)
        return self.session.exec(command, timeout=timeout, on_output=on_output)

    def _sftp(self, description: str, operation: Callable[[paramiko.SFTPClient], Any]) -> Any:
        """
        Run an SFTP operation on a fresh channel, retried across reconnects.

        Only idempotent operations go through here. FileNotFoundError is
        passed through for callers that treat absence as a result.
        """
        def attempt():
            with self.session.sftp() as sftp:
                try:
                    return operation(sftp)
                except FileNotFoundError:
                    raise
                except (paramiko.SSHException, EOFError, OSError) as e:
                    if not self.session.connected:
                        raise SSHConnectionError(f"Connection lost during {description}: {e}") from e
                    raise ProtocolError(f"{description} failed: {e}") from e

        return self.session.with_reconnect(attempt, description)

    def upload(self, local_path, remote_path, mode=None):
        def put(sftp):
            sftp.put(local_path, remote_path)
            if mode is not None:
                sftp.chmod(remote_path, mode)

        self._sftp(f"upload {remote_path}", put)

    def download(self, remote_path, local_path):
        self._sftp(f"download {remote_path}", lambda sftp: sftp.get(remote_path, local_path))

    def mkdir_all(self, remote_path):
        def mkdirs(sftp):
            current = "/" if remote_path.startswith("/") else ""
            for part in [p for p in remote_path.split("/") if p]:
                current = f"{current}{part}/"
                try:
                    sftp.stat(current)
                except FileNotFoundError:
                    sftp.mkdir(current.rstrip("/"))

        self._sftp(f"mkdir {remote_path}", mkdirs)

    def stat(self, remote_path):
        try:
            attrs = self._sftp(f"stat {remote_path}", lambda sftp: sftp.stat(remote_path))
        except FileNotFoundError:
            return None
        return FileInfo(
            path=remote_path,
            size=attrs.st_size or 0,
            mode=stat_mod.S_IMODE(attrs.st_mode or 0),
            is_dir=stat_mod.S_ISDIR(attrs.st_mode or 0),
            mtime=float(attrs.st_mtime or 0),
        )

    def remove(self, remote_path):
        info = self.stat(remote_path)
        if info is None:
            return
        if info.is_dir:
            self.run(["rm", "-rf", "--", remote_path])
        else:
            self._sftp(f"remove {remote_path}", lambda sftp: sftp.remove(remote_path))

    def rename(self, src, dst):
        self._sftp(f"rename {src}", lambda sftp: sftp.posix_rename(src, dst))

    def chmod(self, remote_path, mode):
        self._sftp(f"chmod {remote_path}", lambda sftp: sftp.chmod(remote_path, mode))

    def read_text(self, remote_path):
        def read(sftp):
            with sftp.open(remote_path, "r") as handle:
                return handle.read().decode("utf-8")

        try:
            return self._sftp(f"read {remote_path}", read)
        except FileNotFoundError:
            return None

    def write_text(self, remote_path, text, mode=None):
        def write(sftp):
            with sftp.open(remote_path, "w") as handle:
                handle.write(text.encode("utf-8"))
            if mode is not None:
                sftp.chmod(remote_path, mode)

        self._sftp(f"write {remote_path}", write)

    def checksum(self, remote_path):
        result = self.run(["sha256sum", "--", remote_path])
        digest = result.stdout.split()[0] if result.stdout.split() else ""
        if len(digest) != 64:
            raise ProtocolError(f"Unexpected sha256sum output for {remote_path}: {result.stdout!r}")
        return digest.lower()

    def reconnect(self):
        self.session.reconnect()

    def close(self):
        self.session.close()

    def get_exec_log(self, limit=50):
        return self.session.get_exec_log(limit)

    def __repr__(self) -> str:
        return f"RemoteExecutor({self.session!r})"


def connect_executor(target: Target, config: Optional[DcdConfig] = None) -> Executor:
    """Open the executor for a target: local for ``local://``, SSH otherwise."""
    config = config or DcdConfig()
    if target.local:
        return LocalExecutor()
    session = RemoteSession(target, config.ssh)
    session.connect()
    return RemoteExecutor(session)
