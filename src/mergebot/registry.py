from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from pydantic import TypeAdapter, ValidationError

from .errors import ConfigurationError
from .models import Deployable, Environment, GroupRequirement, Repository
from .utils import normalize_name

logger = logging.getLogger(__name__)

_DEPLOYABLES_ADAPTER = TypeAdapter(list[Deployable])


class GroupDirectory(Protocol):
    """Resolves a chat user group to the user ids of its members."""

    def resolve_group(self, group_id: str) -> frozenset[str]:
        ...


class StaticGroupDirectory:
    """Group directory backed by a fixed mapping; unknown groups resolve to no members."""

    def __init__(self, groups: Mapping[str, Iterable[str]] | None = None) -> None:
        self._groups = {group_id: frozenset(members) for group_id, members in (groups or {}).items()}

    def resolve_group(self, group_id: str) -> frozenset[str]:
        return self._groups.get(group_id, frozenset())


@dataclass(frozen=True)
class ApproverRequirement:
    users: frozenset[str]
    groups: tuple[GroupRequirement, ...]

    @property
    def eligible(self) -> frozenset[str]:
        members = frozenset(member for group in self.groups for member in group.members)
        return self.users | members

    @property
    def is_empty(self) -> bool:
        return not self.users and not self.groups


class DeployableRegistry:
    """Read-only lookup from deployable name to its configured repositories."""

    def __init__(self, deployables: Iterable[Deployable]) -> None:
        self._deployables: list[Deployable] = []
        seen: dict[tuple[str, str | None], str] = {}
        for deployable in deployables:
            key = (normalize_name(deployable.name), deployable.team_id)
            if key in seen:
                raise ValueError(f"Duplicate deployable name: {deployable.name!r}")
            seen[key] = deployable.name
            self._deployables.append(deployable)

    @classmethod
    def from_file(cls, path: Path) -> "DeployableRegistry":
        """Load deployables from a JSON file.

        Raises:
            FileNotFoundError: If the file does not exist.
            ValueError: If the file is not valid JSON or fails validation.
        """
        if not path.is_file():
            raise FileNotFoundError(f"deployables file not found: {path}")
        text = path.read_text(encoding="utf-8")
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValueError(f"deployables file at {path} is not valid JSON: {exc}") from exc
        try:
            deployables = _DEPLOYABLES_ADAPTER.validate_python(payload)
        except ValidationError as exc:
            raise ValueError(f"deployables file at {path} failed validation: {exc}") from exc
        logger.info("loaded %d deployable(s) from %s", len(deployables), path)
        return cls(deployables)

    def find_deployable(self, name: str, *, team_id: str | None = None) -> Deployable | None:
        """Return the deployable called ``name``, or ``None``.

        A deployable pinned to a workspace is invisible to commands issued from
        any other workspace.
        """
        for deployable in self._deployables:
            if not deployable.matches(name):
                continue
            if team_id is not None and deployable.team_id is not None and deployable.team_id != team_id:
                continue
            return deployable
        return None

    def names(self) -> list[str]:
        return [deployable.name for deployable in self._deployables]

    def __iter__(self) -> Iterator[Deployable]:
        return iter(self._deployables)

    def __len__(self) -> int:
        return len(self._deployables)


def load_registry(path: Path) -> DeployableRegistry:
    return DeployableRegistry.from_file(path)


def resolve_approvers(
    matched: Sequence[tuple[Repository, Environment]],
    directory: GroupDirectory | None,
) -> ApproverRequirement:
    """Union the approvers of every matched environment into one requirement.

    Groups are expanded once here; later membership changes do not affect the
    session built from the result. A group named by several repositories keeps
    the strictest ``min_approvers``.

    Raises:
        ConfigurationError: If a group cannot be resolved or can never reach its
            minimum, or if no approvers are configured at all.
    """
    users: set[str] = set()
    group_minimums: dict[str, int] = {}
    for _repo, environment in matched:
        users.update(environment.approver_user_ids)
        for group in environment.groups:
            group_minimums[group.group_id] = max(group_minimums.get(group.group_id, 0), group.min_approvers)

    groups: list[GroupRequirement] = []
    if group_minimums:
        if directory is None:
            raise ConfigurationError(
                f"approver groups {sorted(group_minimums)} are configured but no group directory is available"
            )
        groups = _resolve_groups(group_minimums, directory)

    requirement = ApproverRequirement(users=frozenset(users), groups=tuple(groups))
    if requirement.is_empty:
        raise ConfigurationError("no approvers are configured for the requested environment")
    return requirement


def _resolve_groups(group_minimums: dict[str, int], directory: GroupDirectory) -> list[GroupRequirement]:
    groups: list[GroupRequirement] = []
    for group_id, minimum in sorted(group_minimums.items()):
        members = directory.resolve_group(group_id)
        if len(members) < minimum:
            raise ConfigurationError(
                f"group {group_id} needs {minimum} approver(s) but resolves to {len(members)} member(s)"
            )
        groups.append(GroupRequirement(group_id=group_id, members=frozenset(members), min_approvers=minimum))
    return groups


def requester_is_listed(
    requester_id: str,
    matched: Sequence[tuple[Repository, Environment]],
    requirement: ApproverRequirement,
) -> bool:
    if any(requester_id in environment.listed_user_ids for _repo, environment in matched):
        return True
    return any(requester_id in group.members for group in requirement.groups)
