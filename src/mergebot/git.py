from __future__ import annotations

import logging
import os
import subprocess
import threading
from pathlib import Path
from typing import Protocol

from .errors import GitOperationError, MergeConflict, NotFastForward, PushRejected, TransportError
from .models import MergeOutcome, MergeTarget
from .utils import clone_dirname

logger = logging.getLogger(__name__)

_CONFLICT_SIGNALS = ("conflict",)
_NOT_FAST_FORWARD_SIGNALS = ("fast-forward", "fast forward", "diverging branches")
_PUSH_REJECTED_SIGNALS = ("[rejected]", "rejected", "non-fast-forward", "fetch first", "protected branch")


class GitExecutor(Protocol):
    """Merges ``base_branch`` into ``target_branch`` of one repository and pushes it.

    Implementations report every failure through the returned outcome and never
    raise, so one repository cannot abort the others.
    """

    def merge(self, target: MergeTarget) -> MergeOutcome:
        ...


def run_git(args: list[str], *, cwd: Path | None = None, timeout: float = 120) -> str:
    """Run one git command non-interactively and return its combined output.

    Raises:
        TransportError: If git is missing, times out or exits non-zero. The
            exception carries the command output for classification.
    """
    command = ["git", *args]
    env = {**os.environ, "GIT_TERMINAL_PROMPT": "0", "GIT_MERGE_AUTOEDIT": "no"}
    try:
        result = subprocess.run(
            command,
            cwd=str(cwd) if cwd else None,
            text=True,
            capture_output=True,
            timeout=timeout,
            env=env,
        )
    except FileNotFoundError as exc:
        raise TransportError("git executable not found") from exc
    except subprocess.TimeoutExpired as exc:
        raise TransportError(f"Command timed out after {timeout}s: {' '.join(command)}") from exc
    output = "\n".join(part.strip() for part in (result.stdout or "", result.stderr or "") if part.strip())
    if result.returncode != 0:
        detail = output or f"exit {result.returncode}"
        raise TransportError(f"Command failed: {' '.join(command)}\n{detail}", output=output)
    return output


def classify_merge_failure(output: str) -> type[GitOperationError]:
    lowered = output.lower()
    if any(signal in lowered for signal in _CONFLICT_SIGNALS):
        return MergeConflict
    if any(signal in lowered for signal in _NOT_FAST_FORWARD_SIGNALS):
        return NotFastForward
    return TransportError


def classify_push_failure(output: str) -> type[GitOperationError]:
    lowered = output.lower()
    if any(signal in lowered for signal in _PUSH_REJECTED_SIGNALS):
        return PushRejected
    return TransportError


class LocalGitExecutor:
    """Runs the fast-forward merge sequence against local clones under ``workdir``.

    Each repository gets one clone, reused across sessions and guarded by its
    own lock. The remote only changes on a successful push; after any failure
    the clone is hard-reset to ``origin/<target>``.
    """

    def __init__(self, workdir: Path, *, timeout_seconds: float = 120) -> None:
        self.workdir = workdir
        self.timeout_seconds = timeout_seconds
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def clone_path(self, target: MergeTarget) -> Path:
        return self.workdir / clone_dirname(target.repository, target.url)

    def merge(self, target: MergeTarget) -> MergeOutcome:
        clone = self.clone_path(target)
        with self._lock_for(clone):
            try:
                self._merge_locked(clone, target)
            except GitOperationError as exc:
                logger.warning(
                    "merge of %s (%s -> %s) failed: %s",
                    target.repository,
                    target.base_branch,
                    target.target_branch,
                    exc.reason.value,
                )
                logger.debug("git output for %s: %s", target.repository, exc.output or exc)
                self._restore(clone, target)
                return MergeOutcome.failed(exc.reason, str(exc).splitlines()[0])
        logger.info("merged %s: %s -> %s", target.repository, target.base_branch, target.target_branch)
        return MergeOutcome.succeeded(f"{target.base_branch} -> {target.target_branch}")

    def _merge_locked(self, clone: Path, target: MergeTarget) -> None:
        self._ensure_clone(clone, target)
        self._git(["fetch", "--all", "--prune"], clone)
        self._git(
            ["switch", "--discard-changes", "-C", target.target_branch, f"origin/{target.target_branch}"],
            clone,
        )
        try:
            self._git(["merge", "--ff-only", "--no-edit", f"origin/{target.base_branch}"], clone)
        except TransportError as exc:
            failure = classify_merge_failure(exc.output)
            raise failure(
                f"cannot fast-forward {target.target_branch} to {target.base_branch}", output=exc.output
            ) from exc
        try:
            self._git(["push", "--no-verify", "origin", target.target_branch], clone)
        except TransportError as exc:
            failure = classify_push_failure(exc.output)
            raise failure(f"push of {target.target_branch} failed", output=exc.output) from exc

    def _ensure_clone(self, clone: Path, target: MergeTarget) -> None:
        if (clone / ".git").is_dir():
            return
        clone.parent.mkdir(parents=True, exist_ok=True)
        logger.info("cloning %s into %s", target.repository, clone)
        self._git(["clone", target.url, str(clone)], None)

    def _restore(self, clone: Path, target: MergeTarget) -> None:
        if not (clone / ".git").is_dir():
            return
        try:
            self._git(["reset", "--hard", f"origin/{target.target_branch}"], clone)
        except TransportError as exc:
            logger.warning("could not reset clone of %s: %s", target.repository, exc)

    def _git(self, args: list[str], cwd: Path | None) -> str:
        return run_git(args, cwd=cwd, timeout=self.timeout_seconds)

    def _lock_for(self, clone: Path) -> threading.Lock:
        key = str(clone)
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock
