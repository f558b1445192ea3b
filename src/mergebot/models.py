from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from .utils import normalize_name


APPROVE_REACTION = "approve"


class SessionState(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    ABANDONED = "abandoned"


SESSION_STATE_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.PENDING: frozenset({SessionState.APPROVED, SessionState.ABANDONED}),
    SessionState.APPROVED: frozenset({SessionState.EXECUTING}),
    SessionState.EXECUTING: frozenset({SessionState.COMPLETED, SessionState.FAILED}),
    SessionState.COMPLETED: frozenset(),
    SessionState.FAILED: frozenset(),
    SessionState.ABANDONED: frozenset(),
}

TERMINAL_STATES: frozenset[SessionState] = frozenset(
    state for state, allowed in SESSION_STATE_TRANSITIONS.items() if not allowed
)

# States that hold the per-(deployable, environment) in-flight marker.
IN_FLIGHT_STATES: frozenset[SessionState] = frozenset(
    {SessionState.PENDING, SessionState.APPROVED, SessionState.EXECUTING}
)


class JobStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class MergeFailureReason(str, Enum):
    CONFLICT = "conflict"
    PUSH_REJECTED = "push-rejected"
    NOT_FAST_FORWARD = "not-fast-forward"
    TRANSPORT_ERROR = "transport-error"


RETRYABLE_FAILURES = frozenset({MergeFailureReason.TRANSPORT_ERROR, MergeFailureReason.PUSH_REJECTED})


class DeployStatus(str, Enum):
    ALL_SUCCEEDED = "all-succeeded"
    PARTIAL_FAILURE = "partial-failure"
    ABORTED = "aborted"


# ---------------------------------------------------------------------------
# Deployable configuration (read-only, validated from deployables.json)
# ---------------------------------------------------------------------------


def _validate_identifier(value: str, label: str) -> str:
    stripped = value.strip()
    if not stripped:
        raise ValueError(f"{label} must be non-empty")
    if any(char.isspace() for char in stripped):
        raise ValueError(f"{label} must not contain whitespace: {value!r}")
    return stripped


class UserApprover(BaseModel):
    """A single chat user who may initiate deploys and, if ``approver``, must approve them."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    user_id: str = Field(min_length=1)
    approver: bool = True


class GroupApprover(BaseModel):
    """A chat user group; ``min_approvers`` of its members must approve."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    group_id: str = Field(min_length=1)
    min_approvers: int = Field(default=1, ge=1)


ApproverEntry = UserApprover | GroupApprover


class Environment(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str
    base_branch: str = Field(validation_alias=AliasChoices("base_branch", "base"))
    target_branch: str = Field(validation_alias=AliasChoices("target_branch", "target"))
    approvers: tuple[ApproverEntry, ...] = Field(
        default=(),
        validation_alias=AliasChoices("approvers", "users"),
    )

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        return _validate_identifier(value, "environment name")

    @field_validator("base_branch", "target_branch")
    @classmethod
    def _check_branch(cls, value: str) -> str:
        return _validate_identifier(value, "branch name")

    @model_validator(mode="after")
    def _check_distinct_branches(self) -> "Environment":
        if self.base_branch == self.target_branch:
            raise ValueError(f"environment {self.name!r} merges {self.base_branch!r} into itself")
        return self

    def matches(self, name: str) -> bool:
        return normalize_name(self.name) == normalize_name(name)

    @property
    def approver_user_ids(self) -> frozenset[str]:
        return frozenset(
            entry.user_id for entry in self.approvers if isinstance(entry, UserApprover) and entry.approver
        )

    @property
    def listed_user_ids(self) -> frozenset[str]:
        return frozenset(entry.user_id for entry in self.approvers if isinstance(entry, UserApprover))

    @property
    def groups(self) -> tuple[GroupApprover, ...]:
        return tuple(entry for entry in self.approvers if isinstance(entry, GroupApprover))


class Repository(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    url: str = Field(min_length=1)
    environments: tuple[Environment, ...] = ()

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        return _validate_identifier(value, "repository name")

    @model_validator(mode="after")
    def _check_unique_environments(self) -> "Repository":
        seen: set[str] = set()
        for environment in self.environments:
            key = normalize_name(environment.name)
            if key in seen:
                raise ValueError(f"repository {self.name!r} declares environment {environment.name!r} twice")
            seen.add(key)
        return self

    def environment(self, name: str) -> Environment | None:
        for environment in self.environments:
            if environment.matches(name):
                return environment
        return None


class Deployable(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    team_id: str | None = None
    notification_channel_id: str | None = None
    repos: tuple[Repository, ...] = Field(min_length=1)

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        return _validate_identifier(value, "deployable name")

    def matches(self, name: str) -> bool:
        return normalize_name(self.name) == normalize_name(name)

    def targets_for(self, environment_name: str) -> list[tuple[Repository, Environment]]:
        """Return the repositories defining ``environment_name``, in configured order."""
        matched: list[tuple[Repository, Environment]] = []
        for repo in self.repos:
            environment = repo.environment(environment_name)
            if environment is not None:
                matched.append((repo, environment))
        return matched


# ---------------------------------------------------------------------------
# Runtime records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DeployCommand:
    deployable_name: str
    environment_name: str
    requester_id: str
    team_id: str | None = None


@dataclass(frozen=True)
class ApprovalEvent:
    session_id: str
    user_id: str
    reaction_kind: str = APPROVE_REACTION


@dataclass(frozen=True)
class GroupRequirement:
    """A group resolved to its members at session creation."""

    group_id: str
    members: frozenset[str]
    min_approvers: int = 1


@dataclass(frozen=True)
class MergeTarget:
    repository: str
    url: str
    base_branch: str
    target_branch: str


@dataclass(frozen=True)
class MergeOutcome:
    status: JobStatus
    reason: MergeFailureReason | None = None
    detail: str = ""

    @classmethod
    def succeeded(cls, detail: str = "") -> "MergeOutcome":
        return cls(status=JobStatus.SUCCEEDED, detail=detail)

    @classmethod
    def failed(cls, reason: MergeFailureReason, detail: str = "") -> "MergeOutcome":
        return cls(status=JobStatus.FAILED, reason=reason, detail=detail)

    @property
    def retryable(self) -> bool:
        return self.status is JobStatus.FAILED and self.reason in RETRYABLE_FAILURES

    def describe(self) -> str:
        if self.status is JobStatus.FAILED and self.reason is not None:
            return f"failed({self.reason.value})"
        return self.status.value


PENDING_OUTCOME = MergeOutcome(status=JobStatus.PENDING)


@dataclass(frozen=True)
class MergeJob:
    target: MergeTarget
    outcome: MergeOutcome = PENDING_OUTCOME

    @property
    def repository(self) -> str:
        return self.target.repository

    @property
    def status(self) -> JobStatus:
        return self.outcome.status

    def with_outcome(self, outcome: MergeOutcome) -> "MergeJob":
        return replace(self, outcome=outcome)

    def to_dict(self) -> dict[str, Any]:
        return {
            "repository": self.target.repository,
            "base_branch": self.target.base_branch,
            "target_branch": self.target.target_branch,
            "status": self.outcome.status.value,
            "reason": self.outcome.reason.value if self.outcome.reason is not None else None,
            "detail": self.outcome.detail,
        }


@dataclass(frozen=True)
class DeployResult:
    session_id: str
    status: DeployStatus
    jobs: tuple[MergeJob, ...] = field(default_factory=tuple)

    @classmethod
    def from_jobs(cls, session_id: str, jobs: list[MergeJob] | tuple[MergeJob, ...]) -> "DeployResult":
        pending = [job.repository for job in jobs if job.status is JobStatus.PENDING]
        if pending:
            raise ValueError(f"cannot aggregate result while jobs are pending: {', '.join(pending)}")
        status = (
            DeployStatus.ALL_SUCCEEDED
            if all(job.status is JobStatus.SUCCEEDED for job in jobs)
            else DeployStatus.PARTIAL_FAILURE
        )
        return cls(session_id=session_id, status=status, jobs=tuple(jobs))

    @classmethod
    def aborted(cls, session_id: str) -> "DeployResult":
        return cls(session_id=session_id, status=DeployStatus.ABORTED)

    @property
    def all_succeeded(self) -> bool:
        return self.status is DeployStatus.ALL_SUCCEEDED

    @property
    def outcomes(self) -> list[str]:
        return [job.outcome.describe() for job in self.jobs]

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "jobs": [job.to_dict() for job in self.jobs],
        }
