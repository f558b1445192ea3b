from importlib.metadata import version

from .archive import SessionArchive
from .coordinator import DeployCoordinator
from .errors import (
    CommandError,
    ConfigurationError,
    GitOperationError,
    InvalidSessionTransition,
    MergebotError,
    MergeConflict,
    NoMatchingEnvironment,
    NotFastForward,
    PushRejected,
    SessionAlreadyInFlight,
    SessionTimedOut,
    TransportError,
    UnknownDeployable,
    UnknownSession,
)
from .git import GitExecutor, LocalGitExecutor
from .models import (
    ApprovalEvent,
    Deployable,
    DeployCommand,
    DeployResult,
    DeployStatus,
    Environment,
    GroupApprover,
    JobStatus,
    MergeFailureReason,
    MergeJob,
    MergeOutcome,
    MergeTarget,
    Repository,
    SessionState,
    UserApprover,
)
from .notifications import LoggingGateway, MessageRef, NotificationGateway, Recipients
from .registry import DeployableRegistry, GroupDirectory, StaticGroupDirectory, load_registry
from .session import ApprovalSession
from .settings import RuntimeSettings
from .slack import SlackApi, SlackGateway, SlackGroupDirectory, SlashCommand


def get_version() -> str:
    try:
        return version(__name__)
    except Exception:
        return "0.0.0"


__all__ = [
    "ApprovalEvent",
    "ApprovalSession",
    "CommandError",
    "ConfigurationError",
    "DeployCommand",
    "DeployCoordinator",
    "DeployResult",
    "DeployStatus",
    "Deployable",
    "DeployableRegistry",
    "Environment",
    "GitExecutor",
    "GitOperationError",
    "GroupApprover",
    "GroupDirectory",
    "InvalidSessionTransition",
    "JobStatus",
    "LocalGitExecutor",
    "LoggingGateway",
    "MergeConflict",
    "MergeFailureReason",
    "MergeJob",
    "MergeOutcome",
    "MergeTarget",
    "MergebotError",
    "MessageRef",
    "NoMatchingEnvironment",
    "NotFastForward",
    "NotificationGateway",
    "PushRejected",
    "Recipients",
    "Repository",
    "RuntimeSettings",
    "SessionAlreadyInFlight",
    "SessionArchive",
    "SessionState",
    "SessionTimedOut",
    "SlackApi",
    "SlackGateway",
    "SlackGroupDirectory",
    "SlashCommand",
    "StaticGroupDirectory",
    "TransportError",
    "UnknownDeployable",
    "UnknownSession",
    "UserApprover",
    "get_version",
    "load_registry",
]
