"""Entry point for `python -m mergebot` and the `mergebot` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path

from mergebot import DeployCoordinator, LocalGitExecutor, LoggingGateway, SessionArchive, StaticGroupDirectory
from mergebot.errors import MergebotError, UnknownSession
from mergebot.models import SessionState
from mergebot.registry import DeployableRegistry, load_registry
from mergebot.settings import RuntimeSettings


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Approval-gated multi-repository deploys")
    parser.add_argument(
        "--deployables",
        type=Path,
        default=None,
        help="Path to deployables.json (default: MERGEBOT_DEPLOYABLES_PATH)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("validate", help="Load and validate the deployables file")

    deploy = subparsers.add_parser("deploy", help="Run one deploy non-interactively")
    deploy.add_argument("deployable", help="Deployable name")
    deploy.add_argument("environment", help="Environment name")
    deploy.add_argument("--requester", required=True, help="User id requesting the deploy")
    deploy.add_argument(
        "--approve-as",
        action="append",
        default=[],
        metavar="USER_ID",
        help="Record an approval from this user (repeatable)",
    )
    deploy.add_argument(
        "--group",
        action="append",
        default=[],
        metavar="GROUP_ID=USER[,USER...]",
        help="Static membership for an approver group (repeatable)",
    )
    deploy.add_argument("--workdir", type=Path, default=None, help="Directory for local clones")
    deploy.add_argument("--team-id", default=None, help="Workspace id the command is issued from")
    return parser.parse_args(argv)


def parse_groups(values: list[str]) -> dict[str, list[str]]:
    groups: dict[str, list[str]] = {}
    for value in values:
        group_id, sep, members = value.partition("=")
        if not sep or not group_id.strip():
            raise ValueError(f"--group expects GROUP_ID=USER[,USER...], got: {value!r}")
        groups[group_id.strip()] = [member.strip() for member in members.split(",") if member.strip()]
    return groups


def run_validate(registry: DeployableRegistry) -> int:
    for deployable in registry:
        team = f" (team {deployable.team_id})" if deployable.team_id else ""
        print(f"{deployable.name}{team}")
        for repo in deployable.repos:
            print(f"  {repo.name}: {repo.url}")
            for environment in repo.environments:
                approvers = len(environment.approver_user_ids) + len(environment.groups)
                print(
                    f"    {environment.name}: {environment.base_branch} -> {environment.target_branch} "
                    f"({approvers} approver entr{'y' if approvers == 1 else 'ies'})"
                )
    print(f"deployables={len(registry)}")
    return 0


def run_deploy(args: argparse.Namespace, registry: DeployableRegistry, settings: RuntimeSettings) -> int:
    repo_root = Path.cwd()
    workdir = args.workdir if args.workdir is not None else settings.git_workdir_path(repo_root)
    gateway = LoggingGateway()
    coordinator = DeployCoordinator(
        registry,
        LocalGitExecutor(workdir, timeout_seconds=settings.git_timeout_seconds),
        gateway,
        directory=StaticGroupDirectory(parse_groups(args.group)),
        archive=SessionArchive(settings.archive_file(repo_root)),
        settings=settings,
    )
    try:
        try:
            session_id = coordinator.request_deploy(
                args.deployable,
                args.environment,
                args.requester,
                team_id=args.team_id,
            )
        except MergebotError as exc:
            logging.error("Deploy request rejected: %s", exc)
            return 1

        session = coordinator.get_session(session_id)
        deployable = registry.find_deployable(args.deployable, team_id=args.team_id)
        reaction_team = deployable.team_id if deployable is not None else None
        if session is not None and session.message_ref is not None:
            for user_id in args.approve_as:
                gateway.react(session.message_ref, user_id, team_id=reaction_team)
        if session is not None and session.state is SessionState.PENDING:
            logging.warning("Approvals incomplete for %s; cancelling", session_id)
            try:
                coordinator.cancel(session_id)
            except UnknownSession:
                logging.info("Session %s already closed", session_id)

        result = coordinator.wait(session_id)
    finally:
        coordinator.shutdown()

    print(f"session_id={session_id}")
    print(f"status={result.status.value}")
    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.all_succeeded else 1


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.from_env()
        path = args.deployables if args.deployables is not None else settings.deployables_file(Path.cwd())
        registry = load_registry(path)
        if args.command == "deploy":
            parse_groups(args.group)
    except (OSError, ValueError) as exc:
        logging.error("Unable to load configuration: %s", exc)
        return 1

    if args.command == "validate":
        return run_validate(registry)
    return run_deploy(args, registry, settings)


if __name__ == "__main__":
    raise SystemExit(main())
