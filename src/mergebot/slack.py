from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
import urllib.error
import urllib.parse
import urllib.request
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from .errors import CommandError, ConfigurationError, MergebotError
from .models import APPROVE_REACTION, DeployCommand
from .notifications import Message, MessageRef, ReactionListener, ReactionSubscriptions, Recipients, render_text
from .settings import RuntimeSettings, ensure_slack_token

logger = logging.getLogger(__name__)

_SLACK_TIMEOUT_SECONDS = 15
_RETRYABLE_API_ERRORS = frozenset(
    {"ratelimited", "rate_limited", "internal_error", "service_unavailable", "fatal_error"}
)
_DEPLOY_COMMAND = "/deploy"
_SIGNATURE_VERSION = "v0"
_MAX_SIGNATURE_AGE_SECONDS = 60 * 5


class SlackApiError(MergebotError):
    """Slack accepted the request but answered ``ok: false``."""

    def __init__(self, method: str, error: str) -> None:
        super().__init__(f"Slack {method} failed: {error}")
        self.method = method
        self.error = error

    @property
    def retryable(self) -> bool:
        return self.error in _RETRYABLE_API_ERRORS


class SlackTransportError(MergebotError):
    """The request never produced a usable Slack response."""


def _http_post_json(
    url: str,
    payload: dict[str, Any],
    headers: dict[str, str],
) -> dict[str, Any]:
    """Send a JSON POST request and return the parsed JSON response.

    Raises:
        SlackTransportError: If the HTTP request fails or the response is not valid JSON.
    """
    request = urllib.request.Request(
        url,
        method="POST",
        headers={"Content-Type": "application/json; charset=utf-8", **headers},
        data=json.dumps(payload).encode("utf-8"),
    )
    return _send(request, url)


def _http_get_json(url: str, headers: dict[str, str]) -> dict[str, Any]:
    request = urllib.request.Request(url, method="GET", headers=headers)
    return _send(request, url)


def _send(request: urllib.request.Request, url: str) -> dict[str, Any]:
    try:
        with urllib.request.urlopen(request, timeout=_SLACK_TIMEOUT_SECONDS) as response:
            data = response.read().decode("utf-8")
            parsed = json.loads(data)
    except urllib.error.HTTPError as exc:
        logger.error("HTTP %d from %s", exc.code, url)
        raise SlackTransportError(f"HTTP {exc.code} from {url}: {exc.reason}") from exc
    except urllib.error.URLError as exc:
        logger.error("URL error reaching %s: %s", url, exc.reason)
        raise SlackTransportError(f"Failed to reach {url}: {exc.reason}") from exc
    except json.JSONDecodeError as exc:
        logger.error("Invalid JSON response from %s", url)
        raise SlackTransportError(f"Invalid JSON response from {url}") from exc
    if not isinstance(parsed, dict):
        raise SlackTransportError(f"Expected a JSON object from {url}, got {type(parsed).__name__}")
    return parsed


class SlackApi:
    """Minimal Web API client covering the two methods the bot calls."""

    def __init__(self, token: str, *, base_url: str = "https://slack.com/api") -> None:
        if not token.strip():
            raise ValueError("Slack token must be non-empty")
        self._token = token.strip()
        self.base_url = base_url.rstrip("/")

    @property
    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._token}"}

    def post_message(self, channel: str, text: str, blocks: list[dict[str, Any]] | None = None) -> MessageRef:
        payload: dict[str, Any] = {"channel": channel, "text": text}
        if blocks:
            payload["blocks"] = blocks
        data = _http_post_json(f"{self.base_url}/chat.postMessage", payload, headers=self._headers)
        self._check(data, "chat.postMessage")
        ts = data.get("ts")
        if not isinstance(ts, str) or not ts:
            raise SlackTransportError("chat.postMessage response is missing the message ts")
        return MessageRef(channel=str(data.get("channel") or channel), ts=ts)

    def usergroup_members(self, group_id: str) -> frozenset[str]:
        query = urllib.parse.urlencode({"usergroup": group_id})
        data = _http_get_json(f"{self.base_url}/usergroups.users.list?{query}", headers=self._headers)
        self._check(data, "usergroups.users.list")
        users = data.get("users") or []
        if not isinstance(users, list):
            raise SlackTransportError("usergroups.users.list returned a non-list 'users' field")
        return frozenset(str(user) for user in users)

    @staticmethod
    def _check(data: dict[str, Any], method: str) -> None:
        if not data.get("ok", False):
            raise SlackApiError(method, str(data.get("error") or "unknown_error"))


class SlackGroupDirectory:
    """Resolves approver groups through ``usergroups.users.list``."""

    def __init__(self, api: SlackApi) -> None:
        self._api = api

    def resolve_group(self, group_id: str) -> frozenset[str]:
        try:
            return self._api.usergroup_members(group_id)
        except (SlackApiError, SlackTransportError) as exc:
            raise ConfigurationError(f"could not resolve user group {group_id}: {exc}") from exc


# ---------------------------------------------------------------------------
# Inbound payloads
# ---------------------------------------------------------------------------


class SlashCommand(BaseModel):
    """Form fields Slack posts for a slash command invocation."""

    model_config = ConfigDict(extra="ignore")

    command: str
    text: str = ""
    team_id: str
    user_id: str
    channel_id: str | None = None

    @classmethod
    def from_form(cls, body: str) -> "SlashCommand":
        fields = dict(urllib.parse.parse_qsl(body, keep_blank_values=True))
        try:
            return cls.model_validate(fields)
        except ValidationError as exc:
            raise CommandError(f"malformed slash command payload: {exc}") from exc

    def to_deploy_command(self) -> DeployCommand:
        if self.command.strip() != _DEPLOY_COMMAND:
            raise CommandError(f"{self.command!r} is not a deploy command")
        parts = self.text.split()
        if len(parts) != 2:
            raise CommandError(f"usage: {_DEPLOY_COMMAND} <deployable> <environment>")
        deployable_name, environment_name = parts
        return DeployCommand(
            deployable_name=deployable_name,
            environment_name=environment_name,
            requester_id=self.user_id,
            team_id=self.team_id,
        )


@dataclass(frozen=True)
class UrlVerification:
    challenge: str


@dataclass(frozen=True)
class ReactionEvent:
    team_id: str | None
    user_id: str
    reaction: str
    ref: MessageRef


def parse_event_envelope(payload: dict[str, Any]) -> UrlVerification | ReactionEvent | None:
    """Parse an Events API envelope; anything other than a reaction on a message is ``None``."""
    kind = payload.get("type")
    if kind == "url_verification":
        challenge = payload.get("challenge")
        if not isinstance(challenge, str):
            raise ValueError("url_verification payload is missing 'challenge'")
        return UrlVerification(challenge=challenge)
    if kind != "event_callback":
        logger.debug("ignoring envelope of type %r", kind)
        return None
    event = payload.get("event")
    if not isinstance(event, dict) or event.get("type") != "reaction_added":
        return None
    item = event.get("item")
    if not isinstance(item, dict) or item.get("type") != "message":
        return None
    user = event.get("user")
    reaction = event.get("reaction")
    channel = item.get("channel")
    ts = item.get("ts")
    if not all(isinstance(value, str) and value for value in (user, reaction, channel, ts)):
        logger.warning("reaction_added event is missing fields: %s", sorted(event))
        return None
    team_id = payload.get("team_id")
    return ReactionEvent(
        team_id=team_id if isinstance(team_id, str) else None,
        user_id=user,
        reaction=reaction,
        ref=MessageRef(channel=channel, ts=ts),
    )


def verify_signature(
    signing_secret: str,
    *,
    timestamp: str,
    body: str,
    signature: str,
    now: float | None = None,
) -> bool:
    """Check a request's ``X-Slack-Signature`` against the app's signing secret."""
    try:
        sent_at = int(timestamp)
    except ValueError:
        return False
    current = now if now is not None else time.time()
    if abs(current - sent_at) > _MAX_SIGNATURE_AGE_SECONDS:
        return False
    basestring = f"{_SIGNATURE_VERSION}:{timestamp}:{body}".encode("utf-8")
    digest = hmac.new(signing_secret.encode("utf-8"), basestring, hashlib.sha256).hexdigest()
    return hmac.compare_digest(f"{_SIGNATURE_VERSION}={digest}", signature)


def normalize_reaction(name: str) -> str:
    """Strip colons and skin-tone modifiers: ``:+1::skin-tone-3:`` becomes ``+1``."""
    base = name.strip().strip(":")
    return base.split("::", 1)[0]


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class SlackGateway:
    """NotificationGateway over the Slack Web and Events APIs."""

    def __init__(
        self,
        api: SlackApi,
        *,
        default_channel: str | None = None,
        approve_reactions: tuple[str, ...] = ("+1", "thumbsup"),
        max_retries: int = 3,
        backoff_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.api = api
        self.default_channel = default_channel
        self.approve_reactions = frozenset(normalize_reaction(name) for name in approve_reactions)
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._subscriptions = ReactionSubscriptions()

    @classmethod
    def from_settings(
        cls,
        settings: RuntimeSettings,
        *,
        default_channel: str | None = None,
        repo_root: Path | None = None,
    ) -> "SlackGateway":
        """Build a gateway from runtime settings; ``SLACK_API_TOKEN`` must be available."""
        api = SlackApi(ensure_slack_token(repo_root), base_url=settings.slack_api_base_url)
        return cls(
            api,
            default_channel=default_channel,
            approve_reactions=settings.approve_reactions,
            max_retries=settings.notify_max_retries,
            backoff_seconds=settings.notify_backoff_seconds,
        )

    def send(self, channel: str | None, recipients: Recipients, message: Message) -> MessageRef | None:
        destination = channel or self.default_channel
        if not destination:
            raise ConfigurationError("no Slack channel configured for notifications")
        text = render_text(recipients, message)
        blocks = [{"type": "section", "text": {"type": "mrkdwn", "text": text}}]
        return self._with_retries(lambda: self.api.post_message(destination, text, blocks))

    def subscribe(self, ref: MessageRef, listener: ReactionListener, *, team_id: str | None = None) -> None:
        self._subscriptions.add(ref, listener, team_id)

    def unsubscribe(self, ref: MessageRef) -> None:
        self._subscriptions.remove(ref)

    def reaction_kind(self, reaction: str) -> str:
        name = normalize_reaction(reaction)
        return APPROVE_REACTION if name in self.approve_reactions else name

    def handle_payload(self, payload: dict[str, Any]) -> str | None:
        """Handle an Events API envelope; returns the challenge for ``url_verification``."""
        parsed = parse_event_envelope(payload)
        if isinstance(parsed, UrlVerification):
            return parsed.challenge
        if isinstance(parsed, ReactionEvent):
            kind = self.reaction_kind(parsed.reaction)
            logger.debug("reaction %s on %s/%s", parsed.reaction, parsed.ref.channel, parsed.ref.ts)
            self._subscriptions.dispatch(parsed.ref, parsed.user_id, kind, team_id=parsed.team_id)
        return None

    def _with_retries(self, operation: Callable[[], MessageRef]) -> MessageRef:
        attempt = 0
        while True:
            try:
                return operation()
            except (SlackApiError, SlackTransportError) as exc:
                retryable = isinstance(exc, SlackTransportError) or exc.retryable
                if not retryable or attempt >= self.max_retries:
                    raise
                delay = self.backoff_seconds * (2**attempt)
                attempt += 1
                logger.warning(
                    "Slack delivery failed (%s); retry %d/%d in %.2fs", exc, attempt, self.max_retries, delay
                )
                self._sleep(delay)
