"""
Scripted in-memory executor shared by the docker, firewall and
orchestrator tests.
"""

import hashlib
import posixpath
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from dcd.executor import Executor
from dcd.models import ExecOutput, FileInfo


class FakeExecutor(Executor):
    """
    Commands are matched by substring against the space-joined argv.
    Each rule holds a queue of responses; the last one repeats.

    A response is a stdout string, a dict of ExecOutput fields, an
    exception instance (raised), or a callable taking argv.
    """

    host = "fake"

    def __init__(self):
        self.rules = []
        self.calls = []
        self.files = {}
        self.dirs = set()
        self.closed = 0
        self.reconnects = 0

    def script(self, pattern, *responses):
        self.rules.insert(0, (pattern, list(responses)))
        return self

    def commands(self, pattern):
        return [c for c in self.calls if pattern in c]

    def _execute(self, argv, working_dir, env, timeout, on_output):
        cmd = " ".join(argv)
        self.calls.append(cmd)
        response = ""
        for pattern, queue in self.rules:
            if pattern in cmd:
                response = queue[0] if len(queue) == 1 else queue.pop(0)
                break

        if callable(response) and not isinstance(response, BaseException):
            response = response(argv)
        if isinstance(response, BaseException):
            raise response
        if isinstance(response, str):
            response = {"stdout": response}
        result = ExecOutput(command=cmd, **{"exit_code": 0, **response})
        if on_output is not None:
            for line in result.stdout.splitlines():
                on_output(line)
        return result

    # ── Files ────────────────────────────────────────────────────

    def upload(self, local_path, remote_path, mode=None):
        self.files[remote_path] = (Path(local_path).read_bytes(), mode or 0o644)

    def write_text(self, remote_path, text, mode=None):
        self.files[remote_path] = (text.encode("utf-8"), mode or 0o644)

    def read_text(self, remote_path):
        if remote_path not in self.files:
            return None
        return self.files[remote_path][0].decode("utf-8")

    def download(self, remote_path, local_path):
        Path(local_path).write_bytes(self.files[remote_path][0])

    def mkdir_all(self, remote_path):
        self.dirs.add(remote_path)

    def stat(self, remote_path):
        if remote_path in self.files:
            data, mode = self.files[remote_path]
            return FileInfo(path=remote_path, size=len(data), mode=mode, is_dir=False)
        if remote_path in self.dirs:
            return FileInfo(path=remote_path, size=0, mode=0o755, is_dir=True)
        return None

    def remove(self, remote_path):
        prefix = remote_path.rstrip("/") + "/"
        for path in [p for p in self.files if p == remote_path or p.startswith(prefix)]:
            del self.files[path]
        self.dirs = {d for d in self.dirs if d != remote_path and not d.startswith(prefix)}

    def rename(self, src, dst):
        self.files[dst] = self.files.pop(src)

    def chmod(self, remote_path, mode):
        data, _ = self.files[remote_path]
        self.files[remote_path] = (data, mode)

    def checksum(self, remote_path):
        return hashlib.sha256(self.files[remote_path][0]).hexdigest()

    def reconnect(self):
        self.reconnects += 1

    def close(self):
        self.closed += 1

    def under(self, remote_dir):
        """Relative paths of files stored under ``remote_dir``."""
        prefix = remote_dir.rstrip("/") + "/"
        return sorted(posixpath.relpath(p, remote_dir) for p in self.files if p.startswith(prefix))
