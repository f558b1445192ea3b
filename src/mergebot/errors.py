from __future__ import annotations

from .models import MergeFailureReason


class MergebotError(RuntimeError):
    """Base class for errors surfaced by the deploy orchestrator."""


class UnknownDeployable(MergebotError):
    def __init__(self, deployable_name: str) -> None:
        super().__init__(f"Unknown deployable: {deployable_name!r}")
        self.deployable_name = deployable_name


class NoMatchingEnvironment(MergebotError):
    def __init__(self, deployable_name: str, environment_name: str) -> None:
        super().__init__(f"Deployable {deployable_name!r} has no repository with environment {environment_name!r}")
        self.deployable_name = deployable_name
        self.environment_name = environment_name


class SessionAlreadyInFlight(MergebotError):
    """Raised when a deployable/environment pair already has an open session."""

    def __init__(self, deployable_name: str, environment_name: str, session_id: str) -> None:
        super().__init__(
            f"A deploy of {deployable_name!r} to {environment_name!r} is already in flight (session {session_id})"
        )
        self.deployable_name = deployable_name
        self.environment_name = environment_name
        self.session_id = session_id


class SessionTimedOut(MergebotError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} passed its approval deadline")
        self.session_id = session_id


class UnknownSession(MergebotError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Unknown session: {session_id}")
        self.session_id = session_id


class InvalidSessionTransition(MergebotError):
    """Raised when a session operation is attempted from the wrong state."""


class ConfigurationError(MergebotError):
    """Raised when a deployable's configuration cannot produce a valid session."""


class CommandError(MergebotError):
    """Raised when an inbound chat command cannot be turned into a deploy request."""


class GitOperationError(MergebotError):
    """Failure of one repository's merge sequence.

    Subclasses pin ``reason`` to the failure kind reported in the job outcome.
    """

    reason: MergeFailureReason = MergeFailureReason.TRANSPORT_ERROR

    def __init__(self, message: str, *, output: str = "") -> None:
        super().__init__(message)
        self.output = output


class MergeConflict(GitOperationError):
    reason = MergeFailureReason.CONFLICT


class NotFastForward(GitOperationError):
    reason = MergeFailureReason.NOT_FAST_FORWARD


class PushRejected(GitOperationError):
    reason = MergeFailureReason.PUSH_REJECTED


class TransportError(GitOperationError):
    reason = MergeFailureReason.TRANSPORT_ERROR
