from __future__ import annotations

import itertools
import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Protocol

from .models import APPROVE_REACTION, DeployResult, GroupRequirement

logger = logging.getLogger(__name__)

# Called with (user_id, reaction_kind) for each reaction on a subscribed message.
ReactionListener = Callable[[str, str], None]


@dataclass(frozen=True)
class MessageRef:
    """Identity of a posted message; reactions are routed by it."""

    channel: str
    ts: str


@dataclass(frozen=True)
class Recipients:
    users: tuple[str, ...] = ()
    groups: tuple[GroupRequirement, ...] = ()

    @classmethod
    def build(cls, users: Iterable[str], groups: Iterable[GroupRequirement] = ()) -> "Recipients":
        return cls(users=tuple(sorted(set(users))), groups=tuple(groups))

    def with_user(self, user_id: str) -> "Recipients":
        if user_id in self.users:
            return self
        return Recipients(users=tuple(sorted((*self.users, user_id))), groups=self.groups)


@dataclass(frozen=True)
class ApprovalRequestMessage:
    session_id: str
    deployable: str
    environment: str
    requester_id: str
    repositories: tuple[str, ...]


@dataclass(frozen=True)
class ApprovalGrantedMessage:
    session_id: str
    deployable: str
    environment: str
    requester_id: str
    approved_by: tuple[str, ...]
    repositories: tuple[str, ...]


@dataclass(frozen=True)
class DeployResultMessage:
    session_id: str
    deployable: str
    environment: str
    requester_id: str
    result: DeployResult


Message = ApprovalRequestMessage | ApprovalGrantedMessage | DeployResultMessage


def mention_user(user_id: str) -> str:
    return f"<@{user_id}>"


def mention_group(group: GroupRequirement) -> str:
    noun = "member" if group.min_approvers == 1 else "members"
    return f"{group.min_approvers} {noun} of <!subteam^{group.group_id}>"


def join_mentions(mentions: list[str]) -> str:
    if not mentions:
        return ""
    if len(mentions) == 1:
        return mentions[0]
    return f"{', '.join(mentions[:-1])} & {mentions[-1]}"


def render_mentions(recipients: Recipients) -> str:
    mentions = [mention_user(user_id) for user_id in recipients.users]
    mentions.extend(mention_group(group) for group in recipients.groups)
    return join_mentions(mentions)


def render_text(recipients: Recipients, message: Message) -> str:
    """Render the plain-text body used for chat messages and logs."""
    if isinstance(message, ApprovalRequestMessage):
        return (
            f"{mention_user(message.requester_id)} wants to deploy *{message.deployable}* "
            f"to *{message.environment}* ({', '.join(message.repositories)}).\n"
            f"Waiting for approval from {render_mentions(recipients)}. React to this message to approve.\n"
            f"Session: `{message.session_id}`"
        )
    if isinstance(message, ApprovalGrantedMessage):
        count = len(message.repositories)
        noun = "repository" if count == 1 else "repositories"
        return (
            f"{render_mentions(recipients)}: deploy of *{message.deployable}* to *{message.environment}* "
            f"is fully approved by {join_mentions([mention_user(user) for user in message.approved_by])}. "
            f"Merging {count} {noun}.\n"
            f"Session: `{message.session_id}`"
        )
    result = message.result
    lines = [
        f"{render_mentions(recipients)}: deploy of *{message.deployable}* to *{message.environment}* "
        f"finished with status *{result.status.value}*."
    ]
    for job in result.jobs:
        line = f"- {job.repository} ({job.target.base_branch} -> {job.target.target_branch}): {job.outcome.describe()}"
        lines.append(line)
    lines.append(f"Session: `{message.session_id}`")
    return "\n".join(lines)


class NotificationGateway(Protocol):
    """Sends messages and routes reactions on them; holds no deploy logic."""

    def send(self, channel: str | None, recipients: Recipients, message: Message) -> MessageRef | None:
        ...

    def subscribe(self, ref: MessageRef, listener: ReactionListener, *, team_id: str | None = None) -> None:
        ...

    def unsubscribe(self, ref: MessageRef) -> None:
        ...


class ReactionSubscriptions:
    """Thread-safe mapping from message identity to its reaction listener.

    A subscription made with a ``team_id`` only accepts reactions reported for
    that workspace.
    """

    def __init__(self) -> None:
        self._listeners: dict[MessageRef, tuple[ReactionListener, str | None]] = {}
        self._lock = threading.Lock()

    def add(self, ref: MessageRef, listener: ReactionListener, team_id: str | None = None) -> None:
        with self._lock:
            self._listeners[ref] = (listener, team_id)

    def remove(self, ref: MessageRef) -> None:
        with self._lock:
            self._listeners.pop(ref, None)

    def dispatch(self, ref: MessageRef, user_id: str, kind: str, *, team_id: str | None = None) -> bool:
        with self._lock:
            entry = self._listeners.get(ref)
        if entry is None:
            logger.debug("no listener for reaction on %s/%s", ref.channel, ref.ts)
            return False
        listener, expected_team = entry
        if expected_team is not None and team_id != expected_team:
            logger.warning(
                "reaction on %s/%s from team %s ignored; expected %s", ref.channel, ref.ts, team_id, expected_team
            )
            return False
        listener(user_id, kind)
        return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)


@dataclass
class SentMessage:
    channel: str | None
    recipients: Recipients
    message: Message
    ref: MessageRef
    text: str


@dataclass
class LoggingGateway:
    """In-process gateway: logs rendered messages and lets callers inject reactions."""

    default_channel: str = "local"
    sent: list[SentMessage] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._subscriptions = ReactionSubscriptions()
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def send(self, channel: str | None, recipients: Recipients, message: Message) -> MessageRef | None:
        text = render_text(recipients, message)
        with self._lock:
            ref = MessageRef(channel=channel or self.default_channel, ts=f"{next(self._counter)}.000000")
            self.sent.append(
                SentMessage(channel=ref.channel, recipients=recipients, message=message, ref=ref, text=text)
            )
        logger.info("message %s/%s:\n%s", ref.channel, ref.ts, text)
        return ref

    def subscribe(self, ref: MessageRef, listener: ReactionListener, *, team_id: str | None = None) -> None:
        self._subscriptions.add(ref, listener, team_id)

    def unsubscribe(self, ref: MessageRef) -> None:
        self._subscriptions.remove(ref)

    def react(
        self,
        ref: MessageRef,
        user_id: str,
        kind: str = APPROVE_REACTION,
        *,
        team_id: str | None = None,
    ) -> bool:
        return self._subscriptions.dispatch(ref, user_id, kind, team_id=team_id)

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    def messages_of(self, message_type: type) -> list[SentMessage]:
        with self._lock:
            return [sent for sent in self.sent if isinstance(sent.message, message_type)]
