from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off", ""})


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    deployables_path: str = "deployables.json"
    git_workdir: str = "git_workdir"
    approval_timeout_seconds: int = 3_600
    max_merge_workers: int = 4
    max_concurrent_deploys: int = 8
    git_timeout_seconds: int = 120
    merge_max_attempts: int = 5
    merge_backoff_seconds: float = 1.0
    slack_api_base_url: str = "https://slack.com/api"
    notify_max_retries: int = 3
    notify_backoff_seconds: float = 0.5
    archive_path: str = ""
    restrict_requesters: bool = False
    approve_reactions: tuple[str, ...] = ("+1", "thumbsup")

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            deployables_path=os.getenv("MERGEBOT_DEPLOYABLES_PATH", "deployables.json"),
            git_workdir=os.getenv("MERGEBOT_GIT_WORKDIR", "git_workdir"),
            approval_timeout_seconds=_get_env_int("MERGEBOT_APPROVAL_TIMEOUT_SECONDS", default=3_600, minimum=0),
            max_merge_workers=_get_env_int("MERGEBOT_MAX_MERGE_WORKERS", default=4, minimum=1, maximum=64),
            max_concurrent_deploys=_get_env_int("MERGEBOT_MAX_CONCURRENT_DEPLOYS", default=8, minimum=1, maximum=64),
            git_timeout_seconds=_get_env_int("MERGEBOT_GIT_TIMEOUT_SECONDS", default=120, minimum=1),
            merge_max_attempts=_get_env_int("MERGEBOT_MERGE_MAX_ATTEMPTS", default=5, minimum=1, maximum=20),
            merge_backoff_seconds=_get_env_float("MERGEBOT_MERGE_BACKOFF_SECONDS", default=1.0, minimum=0.0),
            slack_api_base_url=os.getenv("MERGEBOT_SLACK_API_BASE_URL", "https://slack.com/api"),
            notify_max_retries=_get_env_int("MERGEBOT_NOTIFY_MAX_RETRIES", default=3, minimum=0, maximum=10),
            notify_backoff_seconds=_get_env_float("MERGEBOT_NOTIFY_BACKOFF_SECONDS", default=0.5, minimum=0.0),
            archive_path=os.getenv("MERGEBOT_ARCHIVE_PATH", ""),
            restrict_requesters=_get_env_bool("MERGEBOT_RESTRICT_REQUESTERS", default=False),
            approve_reactions=_get_env_list("MERGEBOT_APPROVE_REACTIONS", default=("+1", "thumbsup")),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        if not self.deployables_path.strip():
            raise ValueError("MERGEBOT_DEPLOYABLES_PATH must be non-empty")
        if not self.git_workdir.strip():
            raise ValueError("MERGEBOT_GIT_WORKDIR must be non-empty")
        base_url = self.slack_api_base_url.strip().rstrip("/")
        if not base_url.startswith(("http://", "https://")):
            raise ValueError(f"MERGEBOT_SLACK_API_BASE_URL must be an http(s) URL, got: {self.slack_api_base_url!r}")
        if self.approval_timeout_seconds < 0:
            raise ValueError("MERGEBOT_APPROVAL_TIMEOUT_SECONDS must be >= 0")
        if self.max_merge_workers < 1:
            raise ValueError("MERGEBOT_MAX_MERGE_WORKERS must be >= 1")
        if self.max_concurrent_deploys < 1:
            raise ValueError("MERGEBOT_MAX_CONCURRENT_DEPLOYS must be >= 1")
        if self.merge_max_attempts < 1:
            raise ValueError("MERGEBOT_MERGE_MAX_ATTEMPTS must be >= 1")
        reactions = tuple(reaction.strip().strip(":") for reaction in self.approve_reactions if reaction.strip())
        if not reactions:
            raise ValueError("MERGEBOT_APPROVE_REACTIONS must name at least one reaction")
        return RuntimeSettings(
            deployables_path=self.deployables_path.strip(),
            git_workdir=self.git_workdir.strip(),
            approval_timeout_seconds=self.approval_timeout_seconds,
            max_merge_workers=self.max_merge_workers,
            max_concurrent_deploys=self.max_concurrent_deploys,
            git_timeout_seconds=self.git_timeout_seconds,
            merge_max_attempts=self.merge_max_attempts,
            merge_backoff_seconds=self.merge_backoff_seconds,
            slack_api_base_url=base_url,
            notify_max_retries=self.notify_max_retries,
            notify_backoff_seconds=self.notify_backoff_seconds,
            archive_path=self.archive_path.strip(),
            restrict_requesters=self.restrict_requesters,
            approve_reactions=reactions,
        )

    def deployables_file(self, repo_root: Path) -> Path:
        path = Path(self.deployables_path)
        return path if path.is_absolute() else repo_root / path

    def git_workdir_path(self, repo_root: Path) -> Path:
        path = Path(self.git_workdir)
        return path if path.is_absolute() else repo_root / path

    def archive_file(self, repo_root: Path) -> Path | None:
        if not self.archive_path:
            return None
        path = Path(self.archive_path)
        return path if path.is_absolute() else repo_root / path


def ensure_slack_token(repo_root: Path | None = None) -> str:
    """Load SLACK_API_TOKEN from environment or .env and return it.

    Args:
        repo_root: Optional repo root path to search for .env file.

    Returns:
        The bot token string.

    Raises:
        RuntimeError: If SLACK_API_TOKEN is unavailable after all sources are checked.
    """
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    token = os.getenv("SLACK_API_TOKEN", "").strip()
    if not token:
        raise RuntimeError("SLACK_API_TOKEN is required to talk to Slack")
    return token


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float, maximum: float = 3_600.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if not minimum <= parsed <= maximum:
        raise ValueError(f"{name} must be within [{minimum}, {maximum}], got: {parsed}")
    return parsed


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean, got: {raw!r}")


def _get_env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())
