"""
Activity: Git Operations — checkout, spec validation, commit, push and diff.

Every command goes through ``_git``, which raises GitOperationError on a
non-zero exit.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

import config
from errors import GitOperationError
from models.schemas import SpecValidation

log = logging.getLogger(__name__)

GIT_TIMEOUT = 120  # seconds


def checkout_branch(repo_path: str, branch_name: str) -> dict:
    """Fetch, verify the branch exists on origin, then check it out."""
    log.info("Checking out branch: %s", branch_name)
    _git(repo_path, "fetch", "origin", operation="checkout")

    remote_branches = _git(repo_path, "branch", "-r", operation="checkout")
    names = {line.strip() for line in remote_branches.splitlines()}
    if f"origin/{branch_name}" not in names:
        raise GitOperationError(f"Branch '{branch_name}' does not exist in remote", "checkout")

    _git(repo_path, "checkout", branch_name, operation="checkout")
    log.info("Branch checked out: %s", branch_name)
    return {"status": "checked_out", "branch": branch_name}


def current_branch(repo_path: str) -> str:
    return _git(repo_path, "rev-parse", "--abbrev-ref", "HEAD", operation="rev-parse").strip()


def validate_spec_files(repo_path: str, spec_path: str, branch_name: str = "") -> SpecValidation:
    """Check the spec folder holds requirements.md, design.md and tasks.md."""
    log.info("Validating spec files in %s", spec_path)
    folder = Path(repo_path) / spec_path
    errors: list[str] = []

    branch_exists = True
    if branch_name:
        branch_exists = current_branch(repo_path) == branch_name
        if not branch_exists:
            errors.append(f"Branch '{branch_name}' is not checked out")

    present = {name: False for name in config.REQUIRED_SPEC_FILES}
    folder_exists = folder.is_dir()
    if not folder_exists:
        errors.append(f"Spec folder does not exist: {spec_path}")
    else:
        for name in present:
            if (folder / name).is_file():
                present[name] = True
            else:
                errors.append(f"Required file missing: {name}")

    result = SpecValidation(
        branch_exists=branch_exists,
        spec_folder_exists=folder_exists,
        requirements=present["requirements.md"],
        design=present["design.md"],
        tasks=present["tasks.md"],
        errors=errors,
    )
    log.info("Spec validation complete: valid=%s errors=%s", result.is_valid, errors)
    return result


def commit_changes(repo_path: str, message: str, files: list[str] | None = None) -> dict:
    """Stage ``files`` (or everything) and commit."""
    log.info("Committing: %s", message)
    if files:
        _git(repo_path, "add", "--", *files, operation="commit")
    else:
        _git(repo_path, "add", "-A", operation="commit")

    # Check if there's anything to commit
    staged = _git(repo_path, "diff", "--cached", "--name-only", operation="commit")
    if not staged.strip():
        log.info("Nothing to commit")
        return {"status": "nothing_to_commit", "message": message}

    _git(repo_path, "commit", "-m", message, operation="commit")
    sha = _git(repo_path, "rev-parse", "HEAD", operation="commit").strip()
    return {"status": "committed", "message": message, "sha": sha}


def push_branch(repo_path: str, branch_name: str) -> dict:
    """Push branch to origin."""
    log.info("Pushing branch: %s", branch_name)
    _git(repo_path, "push", "origin", branch_name, operation="push")
    return {"status": "pushed", "branch": branch_name}


def changed_files(repo_path: str) -> list[str]:
    """Files changed against HEAD plus staged files, de-duplicated in order."""
    unstaged = _git(repo_path, "diff", "--name-only", "HEAD", operation="diff")
    staged = _git(repo_path, "diff", "--name-only", "--cached", operation="diff")

    seen: dict[str, None] = {}
    for line in (unstaged + "\n" + staged).splitlines():
        name = line.strip()
        if name:
            seen.setdefault(name, None)
    return list(seen)


def _git(repo_path: str, *args: str, operation: str = "") -> str:
    """Run a git command in the target repo and return its stdout."""
    try:
        result = subprocess.run(
            ["git", *args],
            capture_output=True,
            text=True,
            cwd=repo_path,
            timeout=GIT_TIMEOUT,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        raise GitOperationError(f"git {args[0]} failed: {e}", operation or args[0]) from e

    if result.returncode != 0:
        log.warning("git %s failed: %s", " ".join(args), result.stderr.strip())
        raise GitOperationError(
            f"git {args[0]} failed: {result.stderr.strip() or result.stdout.strip()}",
            operation or args[0],
        )
    return result.stdout
