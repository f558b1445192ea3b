from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Sequence
from datetime import UTC, datetime
from typing import Any

from .errors import ConfigurationError, InvalidSessionTransition, SessionTimedOut
from .models import (
    SESSION_STATE_TRANSITIONS,
    TERMINAL_STATES,
    DeployResult,
    GroupRequirement,
    MergeJob,
    MergeTarget,
    SessionState,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


class ApprovalSession:
    """Lifecycle of one deploy request, from approval solicitation to merge result.

    Every state change happens under the session's own lock, so concurrent
    approval events serialize per session and exactly one caller observes the
    ``PENDING -> APPROVED`` transition. Sessions never share a lock.

    Quorum requires every individual approver plus ``min_approvers`` members of
    each group. Group members that are not otherwise required count only
    toward their groups.
    """

    def __init__(
        self,
        *,
        session_id: str,
        requester_id: str,
        deployable_name: str,
        environment_name: str,
        required_approvers: Iterable[str],
        targets: Sequence[MergeTarget],
        groups: Iterable[GroupRequirement] = (),
        created_at: datetime | None = None,
        deadline: datetime | None = None,
        channel: str | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.session_id = session_id
        self.requester_id = requester_id
        self.deployable_name = deployable_name
        self.environment_name = environment_name
        self.required_approvers: frozenset[str] = frozenset(required_approvers)
        self.groups: tuple[GroupRequirement, ...] = tuple(groups)
        self.targets: tuple[MergeTarget, ...] = tuple(targets)
        self.channel = channel
        self._clock = clock
        self.created_at = created_at if created_at is not None else clock()
        self.deadline = deadline
        self.message_ref: Any = None
        self.result: DeployResult | None = None

        if not self.required_approvers and not self.groups:
            raise ConfigurationError(f"session {session_id} has no approvers")
        for group in self.groups:
            if len(group.members) < group.min_approvers:
                raise ConfigurationError(
                    f"group {group.group_id} needs {group.min_approvers} approver(s) "
                    f"but has {len(group.members)} member(s)"
                )
        if not self.targets:
            raise ConfigurationError(f"session {session_id} has no repositories to merge")

        self._lock = threading.Lock()
        self._state = SessionState.PENDING
        self._approved: set[str] = set()

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def approved_by(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._approved)

    @property
    def eligible_approvers(self) -> frozenset[str]:
        members = frozenset(member for group in self.groups for member in group.members)
        return self.required_approvers | members

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def outstanding_approvers(self) -> frozenset[str]:
        with self._lock:
            return self.required_approvers - self._approved

    def outstanding_groups(self) -> tuple[GroupRequirement, ...]:
        with self._lock:
            return tuple(group for group in self.groups if not self._group_satisfied(group))

    def deadline_passed(self, now: datetime | None = None) -> bool:
        if self.deadline is None:
            return False
        current = now if now is not None else self._clock()
        return current >= self.deadline

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def record_approval(self, user_id: str, now: datetime | None = None) -> bool:
        """Record ``user_id``'s approval.

        Returns ``True`` only for the call that completes quorum and moves the
        session to ``APPROVED``. Approvals from ineligible users, repeats and
        approvals on a session that has left ``PENDING`` return ``False``.

        Raises:
            SessionTimedOut: If the deadline has passed; the session is abandoned.
        """
        current = now if now is not None else self._clock()
        with self._lock:
            if self._state is not SessionState.PENDING:
                logger.debug("session %s ignoring approval in state %s", self.session_id, self._state.value)
                return False
            if self.deadline is not None and current >= self.deadline:
                self._abandon_locked("deadline elapsed")
                raise SessionTimedOut(self.session_id)
            if user_id not in self.eligible_approvers:
                logger.debug("session %s ignoring reaction from non-approver", self.session_id)
                return False
            if user_id in self._approved:
                return False
            self._approved.add(user_id)
            logger.info(
                "session %s approval recorded (%d/%d individual)",
                self.session_id,
                len(self._approved & self.required_approvers),
                len(self.required_approvers),
            )
            if not self._quorum_reached():
                return False
            self._transition(SessionState.APPROVED)
            logger.info("session %s reached quorum", self.session_id)
            return True

    def timeout(self, now: datetime | None = None) -> bool:
        """Abandon the session if it is still pending and its deadline has passed."""
        current = now if now is not None else self._clock()
        with self._lock:
            if self._state is not SessionState.PENDING:
                return False
            if self.deadline is None or current < self.deadline:
                return False
            self._abandon_locked("deadline elapsed")
            return True

    def cancel(self) -> bool:
        with self._lock:
            if self._state is not SessionState.PENDING:
                return False
            self._abandon_locked("cancelled")
            return True

    def begin_execution(self) -> tuple[MergeJob, ...]:
        """Authorize dispatch and return one pending job per repository.

        Raises:
            InvalidSessionTransition: Unless the session is ``APPROVED``. A second
                call always raises, so jobs are handed out once.
        """
        with self._lock:
            if self._state is not SessionState.APPROVED:
                raise InvalidSessionTransition(
                    f"session {self.session_id} cannot begin execution from {self._state.value}"
                )
            self._transition(SessionState.EXECUTING)
        logger.info("session %s dispatching %d merge job(s)", self.session_id, len(self.targets))
        return tuple(MergeJob(target=target) for target in self.targets)

    def complete(self, result: DeployResult) -> SessionState:
        """Record the merge result; any failed job marks the whole session ``FAILED``."""
        if result.session_id != self.session_id:
            raise ValueError(f"result for {result.session_id} cannot complete session {self.session_id}")
        with self._lock:
            if self._state is not SessionState.EXECUTING:
                raise InvalidSessionTransition(
                    f"session {self.session_id} cannot complete from {self._state.value}"
                )
            target = SessionState.COMPLETED if result.all_succeeded else SessionState.FAILED
            self._transition(target)
            self.result = result
        logger.info("session %s finished: %s %s", self.session_id, target.value, result.outcomes)
        return target

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_record(self) -> dict[str, Any]:
        with self._lock:
            state = self._state
            approved = sorted(self._approved)
            result = self.result
        return {
            "session_id": self.session_id,
            "requester_id": self.requester_id,
            "deployable": self.deployable_name,
            "environment": self.environment_name,
            "state": state.value,
            "required_approvers": sorted(self.required_approvers),
            "groups": [
                {
                    "group_id": group.group_id,
                    "members": sorted(group.members),
                    "min_approvers": group.min_approvers,
                }
                for group in self.groups
            ],
            "approved_by": approved,
            "created_at": self.created_at,
            "deadline": self.deadline,
            "result": result.to_dict() if result is not None else None,
        }

    def __repr__(self) -> str:
        return (
            f"ApprovalSession(session_id={self.session_id!r}, deployable={self.deployable_name!r}, "
            f"environment={self.environment_name!r}, state={self._state.value!r})"
        )

    # ------------------------------------------------------------------
    # Internals (caller holds self._lock)
    # ------------------------------------------------------------------

    def _group_satisfied(self, group: GroupRequirement) -> bool:
        return len(group.members & self._approved) >= group.min_approvers

    def _quorum_reached(self) -> bool:
        if not self.required_approvers <= self._approved:
            return False
        return all(self._group_satisfied(group) for group in self.groups)

    def _abandon_locked(self, reason: str) -> None:
        self._transition(SessionState.ABANDONED)
        self.result = DeployResult.aborted(self.session_id)
        logger.info("session %s abandoned: %s", self.session_id, reason)

    def _transition(self, target: SessionState) -> None:
        allowed = SESSION_STATE_TRANSITIONS[self._state]
        if target not in allowed:
            raise InvalidSessionTransition(
                f"session {self.session_id}: {self._state.value} -> {target.value} is not allowed"
            )
        self._state = target
