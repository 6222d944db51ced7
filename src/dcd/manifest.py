"""Sync manifest: local hashing, remote manifest codec, and the diff."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from jsonschema import Draft7Validator

from .errors import PlanError
from .models import ENV_FILE, MANIFEST_FILE, DeploymentPlan, safe_relpath

logger = logging.getLogger(__name__)

MANIFEST_VERSION = 1
HASH_CHUNK = 64 * 1024
ENV_FILE_MODE = 0o600

MANIFEST_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["version", "files"],
    "properties": {
        "version": {"type": "integer", "enum": [MANIFEST_VERSION]},
        "files": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "required": ["hash", "mode"],
                "properties": {
                    "hash": {"type": "string", "pattern": "^[0-9a-f]{64}$"},
                    "mode": {"type": "integer", "minimum": 0, "maximum": 0o7777},
                },
            },
        },
    },
}

_validator = Draft7Validator(MANIFEST_SCHEMA)


def validate_manifest(payload: Dict[str, Any]) -> None:
    errors = sorted(_validator.iter_errors(payload), key=lambda e: list(e.path))
    if errors:
        messages = ", ".join(error.message for error in errors)
        raise ValueError(f"manifest validation failed: {messages}")


@dataclass(frozen=True)
class ManifestEntry:
    hash: str
    mode: int


@dataclass(frozen=True)
class LocalSource:
    """One file the sync engine is responsible for on the remote side."""
    rel: str
    entry: ManifestEntry
    local_path: Optional[str] = None
    content: Optional[str] = None  # generated files (the env file)


# ── Hashing ──────────────────────────────────────────────────────

def sha256_file(path: str) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(HASH_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _file_mode(path: str) -> int:
    return stat.S_IMODE(os.stat(path).st_mode)


# ── Env file ─────────────────────────────────────────────────────

_ENV_KEY = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_ENV_PLAIN = re.compile(r"^[A-Za-z0-9_./:@%+,=-]+$")


def render_env_file(env_vars: Mapping[str, str]) -> str:
    """
    Render resolved variables as a compose ``--env-file``.

    Keys are sorted so the output, and therefore its hash, is stable.
    Plain values are written bare; values with a single quote or newline
    are double-quoted with escapes; everything else is single-quoted.
    """
    lines = ["# Generated by dcd. Local edits are overwritten on deploy."]
    for key in sorted(env_vars):
        if not _ENV_KEY.match(key):
            raise PlanError(f"invalid environment variable name: {key!r}")
        lines.append(f"{key}={_quote_env_value(str(env_vars[key]))}")
    return "\n".join(lines) + "\n"


def _quote_env_value(value: str) -> str:
    if _ENV_PLAIN.match(value):
        return value
    if "'" not in value and "\n" not in value:
        return f"'{value}'"
    escaped = (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("$", "\\$")
        .replace("\n", "\\n")
    )
    return f'"{escaped}"'


# ── Local manifest ───────────────────────────────────────────────

def build_local_manifest(plan: DeploymentPlan) -> Dict[str, LocalSource]:
    """
    Collect every file the plan needs on the remote side.

    Compose files land under their basename, the env file is generated,
    and directory dependencies are expanded recursively.
    """
    sources: Dict[str, LocalSource] = {}

    def add(source: LocalSource, origin: str) -> None:
        existing = sources.get(source.rel)
        if existing is not None and existing.entry != source.entry:
            raise PlanError(f"conflicting sources for remote path {source.rel} ({origin})")
        sources[source.rel] = source

    for path in plan.compose_files:
        rel = Path(path).name
        add(LocalSource(rel, ManifestEntry(sha256_file(path), _file_mode(path)), local_path=path), path)

    env_text = render_env_file(plan.env_vars)
    add(LocalSource(ENV_FILE, ManifestEntry(sha256_text(env_text), ENV_FILE_MODE), content=env_text),
        "environment")

    for dep in plan.file_deps:
        base_rel = safe_relpath(dep.remote_path)
        local = Path(dep.local_path)
        if local.is_dir():
            for root, dirs, files in os.walk(local):
                dirs.sort()
                for name in sorted(files):
                    full = Path(root) / name
                    if not full.is_file():
                        continue
                    rel = safe_relpath(f"{base_rel}/{full.relative_to(local).as_posix()}")
                    add(LocalSource(rel, ManifestEntry(sha256_file(str(full)), _file_mode(str(full))),
                                    local_path=str(full)), dep.local_path)
        elif local.is_file():
            add(LocalSource(base_rel, ManifestEntry(sha256_file(str(local)), _file_mode(str(local))),
                            local_path=str(local)), dep.local_path)
        else:
            raise PlanError(f"referenced file/directory not found: {dep.local_path}")

    for rel in sources:
        if rel == MANIFEST_FILE:
            raise PlanError(f"remote path is reserved: {rel}")
    return sources


def local_entries(sources: Mapping[str, LocalSource]) -> Dict[str, ManifestEntry]:
    return {rel: src.entry for rel, src in sources.items()}


# ── Remote manifest codec ────────────────────────────────────────

def parse_manifest(text: Optional[str]) -> Dict[str, ManifestEntry]:
    """
    Decode the remote manifest.

    A missing, unreadable or invalid manifest yields an empty mapping so
    that every local file is treated as new. Entries that would resolve
    outside the working directory are dropped.
    """
    if not text:
        return {}
    try:
        payload = json.loads(text)
        validate_manifest(payload)
    except ValueError as e:
        logger.warning(f"Ignoring unreadable remote manifest: {e}")
        return {}

    entries: Dict[str, ManifestEntry] = {}
    for rel, raw in payload["files"].items():
        try:
            clean = safe_relpath(rel)
        except PlanError:
            logger.warning(f"Dropping manifest entry outside the working directory: {rel!r}")
            continue
        entries[clean] = ManifestEntry(raw["hash"], raw["mode"])
    return entries


def dump_manifest(entries: Mapping[str, ManifestEntry]) -> str:
    payload = {
        "version": MANIFEST_VERSION,
        "files": {rel: {"hash": e.hash, "mode": e.mode} for rel, e in entries.items()},
    }
    validate_manifest(payload)
    return json.dumps(payload, sort_keys=True, indent=2) + "\n"


# ── Diff ─────────────────────────────────────────────────────────

@dataclass
class DiffPlan:
    new: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)
    mode_changed: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    orphaned: List[str] = field(default_factory=list)

    @property
    def to_upload(self) -> List[str]:
        return sorted(self.new + self.modified)

    @property
    def has_changes(self) -> bool:
        return bool(self.new or self.modified or self.mode_changed)

    def summary(self) -> str:
        return (f"{len(self.new)} new, {len(self.modified)} modified, "
                f"{len(self.mode_changed)} mode changed, {len(self.unchanged)} unchanged, "
                f"{len(self.orphaned)} orphaned")


def diff_manifests(
    local: Mapping[str, ManifestEntry],
    remote: Mapping[str, ManifestEntry],
) -> DiffPlan:
    """Classify every path by comparing local entries with the remote manifest."""
    plan = DiffPlan()
    for rel in sorted(local):
        mine = local[rel]
        theirs = remote.get(rel)
        if theirs is None:
            plan.new.append(rel)
        elif theirs.hash != mine.hash:
            plan.modified.append(rel)
        elif theirs.mode != mine.mode:
            plan.mode_changed.append(rel)
        else:
            plan.unchanged.append(rel)
    plan.orphaned = sorted(rel for rel in remote if rel not in local)
    return plan
