#!/usr/bin/env python3
"""
Sync Engine — hash-gated file transfer to the remote working directory

Reconciles the files a DeploymentPlan needs (compose files, generated
env file, volume/config dependencies) with what the remote manifest says
is already there:

    1. Hash every local file (SHA-256, streamed) and record its mode
    2. Read <workdir>/.dcd-manifest.json (absent -> everything is new)
    3. Diff: new / modified / mode changed / unchanged / orphaned
    4. Upload new and modified files concurrently, verify their hashes
    5. After every upload has finished, write the manifest to a temp
       file and rename it into place

Orphaned files stay on the host and in the manifest unless pruning is
switched on. A run with no local changes uploads nothing and leaves the
manifest untouched.
"""

import logging
import posixpath
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Mapping, Tuple

from .config import SyncConfig
from .errors import SyncError
from .executor import Executor
from .manifest import (
    DiffPlan, LocalSource, ManifestEntry, build_local_manifest, diff_manifests,
    dump_manifest, local_entries, parse_manifest,
)
from .models import MANIFEST_FILE, DeploymentPlan, SyncReport

logger = logging.getLogger(__name__)

MANIFEST_TMP_SUFFIX = ".tmp"


class SyncEngine:
    """Keeps one remote working directory in step with a plan."""

    def __init__(self, executor: Executor, remote_dir: str, config: SyncConfig = None):
        self.executor = executor
        self.remote_dir = remote_dir
        self.config = config or SyncConfig()

    @property
    def manifest_path(self) -> str:
        return posixpath.join(self.remote_dir, MANIFEST_FILE)

    def remote_path(self, rel: str) -> str:
        return posixpath.join(self.remote_dir, rel)

    # ── Read side ────────────────────────────────────────────────

    def fetch_remote_manifest(self) -> Dict[str, ManifestEntry]:
        try:
            text = self.executor.read_text(self.manifest_path)
        except UnicodeDecodeError as e:
            logger.warning(f"Remote manifest is not valid UTF-8 ({e}); treating it as empty")
            return {}
        return parse_manifest(text)

    def diff(self, plan: DeploymentPlan) -> Tuple[Dict[str, LocalSource], Dict[str, ManifestEntry], DiffPlan]:
        sources = build_local_manifest(plan)
        remote = self.fetch_remote_manifest()
        return sources, remote, diff_manifests(local_entries(sources), remote)

    def pending_changes(self, plan: DeploymentPlan) -> List[str]:
        """Paths a sync would touch right now. Read-only."""
        _, _, diff = self.diff(plan)
        return sorted(diff.new + diff.modified + diff.mode_changed)

    # ── Write side ───────────────────────────────────────────────

    def sync(self, plan: DeploymentPlan) -> SyncReport:
        """
        Bring the remote working directory in line with the plan.

        Raises:
            SyncError: an uploaded file's remote hash does not match.
            PlanError: the plan references missing or escaping paths.
            ExecError: transfer failed after reconnect attempts.
        """
        self.executor.mkdir_all(self.remote_dir)
        sources, remote, diff = self.diff(plan)
        logger.info(f"Sync plan for {self.remote_dir}: {diff.summary()}")

        report = SyncReport(
            unchanged=list(diff.unchanged),
            orphaned=list(diff.orphaned),
        )

        uploads = [sources[rel] for rel in diff.to_upload]
        if uploads:
            self._prepare_dirs(uploads)
            self._upload_all(uploads)
            report.uploaded = [s.rel for s in uploads]

        for rel in diff.mode_changed:
            self.executor.chmod(self.remote_path(rel), sources[rel].entry.mode)
            report.mode_updated.append(rel)

        new_manifest: Dict[str, ManifestEntry] = dict(local_entries(sources))
        for rel in diff.orphaned:
            if self.config.prune_orphans:
                logger.info(f"Pruning orphaned file {rel}")
                self.executor.remove(self.remote_path(rel))
                report.removed.append(rel)
            else:
                logger.info(f"Leaving orphaned file in place: {rel}")
                new_manifest[rel] = remote[rel]

        if report.changed:
            self._write_manifest(new_manifest)
            report.manifest_written = True
        else:
            logger.info("Remote files already up to date")
        return report

    def _prepare_dirs(self, uploads: List[LocalSource]) -> None:
        dirs = sorted({posixpath.dirname(self.remote_path(s.rel)) for s in uploads})
        for directory in dirs:
            if directory != self.remote_dir:
                self.executor.mkdir_all(directory)

    def _upload_all(self, uploads: List[LocalSource]) -> None:
        workers = max(1, min(self.config.upload_concurrency, len(uploads)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="dcd-upload") as pool:
            futures = [(s.rel, pool.submit(self._upload_one, s)) for s in uploads]
        # barrier: the pool has drained before any result is inspected
        errors = []
        for rel, future in futures:
            exc = future.exception()
            if exc is not None:
                errors.append((rel, exc))
        if errors:
            for rel, exc in errors[1:]:
                logger.error(f"Upload of {rel} also failed: {exc}")
            raise errors[0][1]

    def _upload_one(self, source: LocalSource) -> None:
        target = self.remote_path(source.rel)
        if source.content is not None:
            self.executor.write_text(target, source.content, mode=source.entry.mode)
        else:
            self.executor.upload(source.local_path, target, mode=source.entry.mode)
        logger.debug(f"Uploaded {source.rel}")

        if self.config.verify_uploads:
            actual = self.executor.checksum(target)
            if actual != source.entry.hash:
                raise SyncError(
                    f"Hash mismatch after upload of {source.rel}: "
                    f"expected {source.entry.hash}, got {actual}"
                )

    def _write_manifest(self, entries: Mapping[str, ManifestEntry]) -> None:
        tmp = self.manifest_path + MANIFEST_TMP_SUFFIX
        self.executor.write_text(tmp, dump_manifest(entries), mode=0o644)
        self.executor.rename(tmp, self.manifest_path)
        logger.info(f"Manifest written ({len(entries)} entries)")
