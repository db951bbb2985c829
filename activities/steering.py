"""
Activity: Steering Sync — keep the repository's steering files in step with
the central steering source.

The source directory holds a ``manifest.json``:

    {"name": "...", "version": "1.2.0", "description": "...",
     "steeringFiles": [{"path": ".kiro/steering/x.md",
                        "checksum": "sha256:<hex>", "required": true}]}

File paths are relative to both the source directory and the repo root. A
copy of the manifest is kept at ``.kiro/steering/manifest.json`` to record
the synchronized version.
"""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
from pathlib import Path

import config
from activities.git_ops import commit_changes
from errors import ValidationError
from models.schemas import SyncResult, VersionInfo

log = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
INITIAL_VERSION = "0.0.0"


def file_checksum(path: Path) -> str:
    return "sha256:" + hashlib.sha256(path.read_bytes()).hexdigest()


def compare_versions(v1: str, v2: str) -> int:
    """-1, 0 or 1 as ``v1`` is older than, equal to or newer than ``v2``."""
    parts1 = [int(p) if p.isdigit() else 0 for p in v1.split(".")]
    parts2 = [int(p) if p.isdigit() else 0 for p in v2.split(".")]
    width = max(len(parts1), len(parts2))
    parts1 += [0] * (width - len(parts1))
    parts2 += [0] * (width - len(parts2))
    return (parts1 > parts2) - (parts1 < parts2)


def load_manifest(path: Path) -> dict:
    try:
        manifest = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise ValueError(f"Failed to load manifest from {path}: {e}") from e
    if (
        not isinstance(manifest, dict)
        or not manifest.get("name")
        or not manifest.get("version")
        or not isinstance(manifest.get("steeringFiles"), list)
    ):
        raise ValueError(f"Invalid manifest structure: {path}")
    for i, entry in enumerate(manifest["steeringFiles"]):
        if not isinstance(entry, dict) or not entry.get("path") or not entry.get("checksum"):
            raise ValueError(f"Invalid steering file entry {i} in {path}: path and checksum are required")
        rel = Path(entry["path"])
        if rel.is_absolute() or ".." in rel.parts:
            raise ValueError(f"Steering file path escapes the repository: {entry['path']}")
    return manifest


class SteeringSynchronizer:

    def __init__(self, repo_path: str, source_path: str, steering_dir: str = config.STEERING_DIR):
        self.repo_path = Path(repo_path)
        self.source_path = Path(source_path)
        self.steering_path = self.repo_path / steering_dir
        self.local_manifest = self.steering_path / MANIFEST_NAME
        self.source_manifest = self.source_path / MANIFEST_NAME

    def check_version(self) -> VersionInfo:
        """Compare the local copy against the source manifest."""
        try:
            source = load_manifest(self.source_manifest)
        except ValueError as e:
            raise ValidationError("Failed to check steering version", "steering", [str(e)]) from e

        current = INITIAL_VERSION
        if self.local_manifest.exists():
            try:
                current = load_manifest(self.local_manifest)["version"]
            except ValueError:
                log.info("Local steering manifest unreadable, treating as initial sync")
        else:
            log.info("No local steering manifest, treating as initial sync")

        missing = []
        for entry in source["steeringFiles"]:
            target = self.repo_path / entry["path"]
            if not target.is_file() or file_checksum(target) != entry["checksum"]:
                missing.append(entry["path"])

        info = VersionInfo(
            current_version=current,
            latest_version=source["version"],
            is_outdated=compare_versions(current, source["version"]) < 0 or bool(missing),
            missing_files=missing,
        )
        log.info(
            "Steering version: current=%s latest=%s outdated=%s missing=%d",
            info.current_version, info.latest_version, info.is_outdated, len(missing),
        )
        return info

    def synchronize(self) -> SyncResult:
        """Copy every file whose checksum differs, then refresh the local manifest."""
        result = SyncResult()
        try:
            source = load_manifest(self.source_manifest)
        except ValueError as e:
            raise ValidationError("Failed to synchronize steering files", "steering", [str(e)]) from e

        self.steering_path.mkdir(parents=True, exist_ok=True)
        for entry in source["steeringFiles"]:
            rel = entry["path"]
            target = self.repo_path / rel
            if not target.resolve().is_relative_to(self.repo_path.resolve()):
                result.errors.append(f"Refusing to write outside the repository: {rel}")
                continue
            try:
                existed = target.is_file()
                if existed and file_checksum(target) == entry["checksum"]:
                    continue

                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(self.source_path / rel, target)

                copied = file_checksum(target)
                if copied != entry["checksum"]:
                    result.errors.append(
                        f"Checksum mismatch after copying {rel}: expected {entry['checksum']}, got {copied}"
                    )
                    continue

                (result.updated_files if existed else result.added_files).append(rel)
                log.info("%s steering file: %s", "Updated" if existed else "Added", rel)
            except OSError as e:
                log.error("Failed to synchronize %s: %s", rel, e)
                result.errors.append(f"Failed to synchronize {rel}: {e}")

        try:
            shutil.copyfile(self.source_manifest, self.local_manifest)
        except OSError as e:
            result.errors.append(f"Failed to update local manifest: {e}")

        log.info(
            "Steering sync complete: added=%d updated=%d errors=%d",
            len(result.added_files), len(result.updated_files), len(result.errors),
        )
        return result

    def commit_updates(self, files: list[str]) -> dict:
        if not files:
            log.info("No steering files to commit")
            return {"status": "nothing_to_commit"}

        manifest_rel = str(self.local_manifest.relative_to(self.repo_path))
        lines = "\n".join(f"  - {f}" for f in files)
        message = (
            "chore(steering): synchronize steering files\n\n"
            f"Updated {len(files)} steering file(s):\n{lines}"
        )
        return commit_changes(str(self.repo_path), message, [*files, manifest_rel])


def sync_steering(repo_path: str, source_path: str) -> SyncResult:
    """Check, sync and commit in one step. A synchronized tree is left untouched."""
    if not source_path:
        log.info("No steering source configured, skipping steering sync")
        return SyncResult()
    if not (Path(source_path) / MANIFEST_NAME).is_file():
        log.warning("Steering manifest not found in %s, skipping steering sync", source_path)
        return SyncResult()

    syncer = SteeringSynchronizer(repo_path, source_path)
    info = syncer.check_version()
    if not info.is_outdated:
        log.info("Steering files up to date (%s)", info.current_version)
        return SyncResult()

    result = syncer.synchronize()
    syncer.commit_updates(result.added_files + result.updated_files)
    return result
