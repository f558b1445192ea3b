from __future__ import annotations

import fcntl
import json
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from .canonical import to_canonical_json
from .models import DeployResult, DeployStatus, JobStatus, MergeFailureReason, MergeJob, MergeOutcome, MergeTarget
from .session import ApprovalSession

logger = logging.getLogger(__name__)

_LOCK_SUFFIX = ".lock"


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive lock on a ``.lock`` sidecar of *path* for the context."""
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


class SessionArchive:
    """Records of sessions that reached a terminal state.

    Records live in memory for the life of the process. With a ``path`` they
    are also appended to a JSON-lines file, one canonical JSON object per line,
    so several processes can share one archive.
    """

    def __init__(self, path: Path | None = None) -> None:
        self.path = path
        self._records: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def record(self, session: ApprovalSession) -> dict[str, Any]:
        record = session.to_record()
        line = to_canonical_json(record)
        # In-memory records match what a reader of the file sees.
        stored = json.loads(line)
        with self._lock:
            self._records[session.session_id] = stored
        if self.path is not None:
            with _locked_file(self.path):
                with self.path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
        logger.debug("archived session %s (%s)", session.session_id, stored["state"])
        return stored

    def get(self, session_id: str) -> dict[str, Any] | None:
        with self._lock:
            return self._records.get(session_id)

    def result(self, session_id: str) -> DeployResult | None:
        record = self.get(session_id)
        if record is None or record.get("result") is None:
            return None
        return result_from_record(record["result"])

    def records(self) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._records.values())

    def load(self) -> int:
        """Read previously archived records from ``path`` into memory; returns how many were read."""
        if self.path is None or not self.path.is_file():
            return 0
        loaded = 0
        with _locked_file(self.path):
            lines = self.path.read_text(encoding="utf-8").splitlines()
        for number, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError as exc:
                raise ValueError(f"archive {self.path} line {number} is not valid JSON") from exc
            with self._lock:
                self._records[record["session_id"]] = record
            loaded += 1
        return loaded

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


def result_from_record(payload: dict[str, Any]) -> DeployResult:
    jobs = []
    for job in payload.get("jobs", []):
        reason = job.get("reason")
        outcome = MergeOutcome(
            status=JobStatus(job["status"]),
            reason=MergeFailureReason(reason) if reason else None,
            detail=job.get("detail", ""),
        )
        target = MergeTarget(
            repository=job["repository"],
            url=job.get("url", ""),
            base_branch=job["base_branch"],
            target_branch=job["target_branch"],
        )
        jobs.append(MergeJob(target=target, outcome=outcome))
    return DeployResult(session_id=payload["session_id"], status=DeployStatus(payload["status"]), jobs=tuple(jobs))
