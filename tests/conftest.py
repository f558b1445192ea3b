from __future__ import annotations

import shutil
import subprocess
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest


requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start if start is not None else datetime(2026, 1, 5, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


def deployable_payload(
    name: str = "shop",
    *,
    repos: list[dict[str, Any]] | None = None,
    team_id: str | None = None,
) -> dict[str, Any]:
    if repos is None:
        repos = [
            repo_payload("api", approvers=["UALICE", "UBOB"]),
            repo_payload("web", approvers=["UALICE", "UCAROL"]),
        ]
    payload: dict[str, Any] = {"name": name, "repos": repos}
    if team_id is not None:
        payload["team_id"] = team_id
    return payload


def repo_payload(
    name: str,
    *,
    url: str | None = None,
    environment: str = "staging",
    approvers: list[str] | None = None,
    groups: list[dict[str, Any]] | None = None,
    base: str = "main",
    target: str = "staging",
) -> dict[str, Any]:
    users: list[dict[str, Any]] = [{"user_id": user_id, "approver": True} for user_id in (approvers or [])]
    users.extend(groups or [])
    return {
        "name": name,
        "url": url or f"git@example.com:acme/{name}.git",
        "environments": [{"name": environment, "base": base, "target": target, "users": users}],
    }


# ---------------------------------------------------------------------------
# Local git remotes
# ---------------------------------------------------------------------------


def git(cwd: Path, *args: str) -> str:
    result = subprocess.run(["git", *args], cwd=str(cwd), text=True, capture_output=True, check=True)
    return result.stdout.strip()


def commit_file(repo: Path, name: str, content: str) -> str:
    (repo / name).write_text(content, encoding="utf-8")
    git(repo, "add", name)
    git(repo, "commit", "-q", "-m", f"update {name}")
    return git(repo, "rev-parse", "HEAD")


def remote_sha(remote: Path, branch: str) -> str:
    return git(remote, "rev-parse", f"refs/heads/{branch}")


@pytest.fixture()
def git_identity(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Mergebot Tests")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "tests@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Mergebot Tests")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "tests@example.com")


@pytest.fixture()
def make_remote(tmp_path: Path, git_identity: None):
    """Create a bare remote with ``main`` and ``staging`` at the same commit; returns (remote, seed clone)."""

    def _make(name: str) -> tuple[Path, Path]:
        remote = tmp_path / "remotes" / f"{name}.git"
        seed = tmp_path / "seeds" / name
        remote.parent.mkdir(parents=True, exist_ok=True)
        seed.mkdir(parents=True)
        git(remote.parent, "init", "-q", "--bare", remote.name)
        git(remote, "symbolic-ref", "HEAD", "refs/heads/main")
        git(seed, "init", "-q")
        commit_file(seed, "README.md", f"# {name}\n")
        git(seed, "branch", "-M", "main")
        git(seed, "remote", "add", "origin", str(remote))
        git(seed, "push", "-q", "origin", "main", "main:staging")
        return remote, seed

    return _make
