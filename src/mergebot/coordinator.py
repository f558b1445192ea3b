from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta

from .archive import SessionArchive
from .errors import NoMatchingEnvironment, SessionAlreadyInFlight, SessionTimedOut, UnknownDeployable, UnknownSession
from .git import GitExecutor
from .models import (
    APPROVE_REACTION,
    ApprovalEvent,
    DeployCommand,
    DeployResult,
    MergeFailureReason,
    MergeJob,
    MergeOutcome,
    MergeTarget,
)
from .notifications import (
    ApprovalGrantedMessage,
    ApprovalRequestMessage,
    DeployResultMessage,
    NotificationGateway,
    Recipients,
)
from .registry import DeployableRegistry, GroupDirectory, requester_is_listed, resolve_approvers
from .session import ApprovalSession, Clock, utc_now
from .settings import RuntimeSettings
from .utils import new_session_id, normalize_name

logger = logging.getLogger(__name__)

InFlightKey = tuple[str, str]


class DeployCoordinator:
    """Turns deploy commands into approval sessions and approved sessions into merges.

    Process-wide state is the live session table and the in-flight marker per
    (deployable, environment); both change only under ``self._lock``. Session
    state itself is guarded by each session's own lock, so approvals for
    different sessions never contend.

    Merges for one session run concurrently on the job pool. A job whose merge
    fails with a retryable reason is attempted again with exponential backoff,
    up to ``merge_max_attempts`` times. The session finishes only after every
    job has reported.
    """

    def __init__(
        self,
        registry: DeployableRegistry,
        git_executor: GitExecutor,
        gateway: NotificationGateway,
        *,
        directory: GroupDirectory | None = None,
        archive: SessionArchive | None = None,
        settings: RuntimeSettings | None = None,
        clock: Clock = utc_now,
        start_timers: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._registry = registry
        self._git = git_executor
        self._gateway = gateway
        self._directory = directory
        self._archive = archive if archive is not None else SessionArchive()
        self._settings = settings if settings is not None else RuntimeSettings()
        self._clock = clock
        self._start_timers = start_timers
        self._sleep = sleep

        self._lock = threading.Lock()
        self._sessions: dict[str, ApprovalSession] = {}
        self._in_flight: dict[InFlightKey, str] = {}
        self._finished: dict[str, threading.Event] = {}
        self._timers: dict[str, threading.Timer] = {}

        self._dispatch_pool = ThreadPoolExecutor(
            max_workers=self._settings.max_concurrent_deploys,
            thread_name_prefix="mergebot-session",
        )
        self._job_pool = ThreadPoolExecutor(
            max_workers=self._settings.max_merge_workers,
            thread_name_prefix="mergebot-merge",
        )

    @property
    def archive(self) -> SessionArchive:
        return self._archive

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def submit_command(self, command: DeployCommand) -> str:
        return self.request_deploy(
            command.deployable_name,
            command.environment_name,
            command.requester_id,
            team_id=command.team_id,
        )

    def request_deploy(
        self,
        deployable_name: str,
        environment_name: str,
        requester_id: str,
        *,
        team_id: str | None = None,
    ) -> str:
        """Open an approval session and ask its approvers; returns the session id without waiting.

        Raises:
            UnknownDeployable: No deployable of that name is visible to ``team_id``.
            NoMatchingEnvironment: No repository defines the environment, or the
                requester is not allowed to deploy it.
            ConfigurationError: The matched environments have no usable approvers.
            SessionAlreadyInFlight: The pair already has a pending or running session.
        """
        deployable = self._registry.find_deployable(deployable_name, team_id=team_id)
        if deployable is None:
            raise UnknownDeployable(deployable_name)
        matched = deployable.targets_for(environment_name)
        if not matched:
            raise NoMatchingEnvironment(deployable.name, environment_name)

        requirement = resolve_approvers(matched, self._directory)
        if self._settings.restrict_requesters and not requester_is_listed(requester_id, matched, requirement):
            logger.info("requester is not listed for %s/%s", deployable.name, environment_name)
            raise NoMatchingEnvironment(deployable.name, environment_name)

        environment_label = matched[0][1].name
        targets = [
            MergeTarget(
                repository=repo.name,
                url=repo.url,
                base_branch=environment.base_branch,
                target_branch=environment.target_branch,
            )
            for repo, environment in matched
        ]
        now = self._clock()
        timeout_seconds = self._settings.approval_timeout_seconds
        session = ApprovalSession(
            session_id=new_session_id(),
            requester_id=requester_id,
            deployable_name=deployable.name,
            environment_name=environment_label,
            required_approvers=requirement.users,
            groups=requirement.groups,
            targets=targets,
            created_at=now,
            deadline=now + timedelta(seconds=timeout_seconds) if timeout_seconds > 0 else None,
            channel=deployable.notification_channel_id,
            clock=self._clock,
        )

        key = self._key(session)
        with self._lock:
            existing = self._in_flight.get(key)
            if existing is not None:
                raise SessionAlreadyInFlight(deployable.name, environment_label, existing)
            self._sessions[session.session_id] = session
            self._in_flight[key] = session.session_id
            self._finished[session.session_id] = threading.Event()

        logger.info(
            "session %s opened: %s to %s for %d repo(s), requested by %s",
            session.session_id,
            deployable.name,
            environment_label,
            len(targets),
            requester_id,
        )
        self._request_approval(
            session,
            Recipients.build(requirement.users, requirement.groups),
            team_id=deployable.team_id,
        )
        self._schedule_timer(session)
        return session.session_id

    def handle_event(self, event: ApprovalEvent) -> bool:
        if event.reaction_kind != APPROVE_REACTION:
            logger.debug("ignoring %r reaction on session %s", event.reaction_kind, event.session_id)
            return False
        return self.on_approval_event(event.session_id, event.user_id)

    def on_approval_event(self, session_id: str, user_id: str) -> bool:
        """Feed an approval into its session; returns ``True`` when it started the merge run."""
        session = self.get_session(session_id)
        if session is None:
            logger.debug("approval for unknown or finished session %s ignored", session_id)
            return False
        try:
            approved = session.record_approval(user_id)
        except SessionTimedOut:
            logger.info("approval arrived after the deadline of session %s", session_id)
            self._finalize(session)
            return False
        if not approved:
            return False

        self._cancel_timer(session_id)
        jobs = session.begin_execution()
        future = self._dispatch_pool.submit(self._run_jobs, session, jobs)
        future.add_done_callback(self._log_dispatch_failure)
        return True

    def cancel(self, session_id: str) -> bool:
        session = self.get_session(session_id)
        if session is None:
            raise UnknownSession(session_id)
        if not session.cancel():
            return False
        self._finalize(session)
        return True

    def expire_sessions(self, now: datetime | None = None) -> list[str]:
        """Abandon every pending session past its deadline; returns their ids."""
        with self._lock:
            sessions = list(self._sessions.values())
        expired = []
        for session in sessions:
            if session.timeout(now):
                self._finalize(session)
                expired.append(session.session_id)
        return expired

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_session(self, session_id: str) -> ApprovalSession | None:
        with self._lock:
            return self._sessions.get(session_id)

    def active_sessions(self) -> list[ApprovalSession]:
        with self._lock:
            return list(self._sessions.values())

    def wait(self, session_id: str, timeout: float | None = None) -> DeployResult:
        """Block until ``session_id`` finishes and return its result.

        Raises:
            UnknownSession: The id was never issued by this coordinator.
            TimeoutError: The session did not finish within ``timeout`` seconds.
        """
        with self._lock:
            finished = self._finished.get(session_id)
            session = self._sessions.get(session_id)
        if finished is not None:
            if not finished.wait(timeout):
                raise TimeoutError(f"session {session_id} did not finish within {timeout}s")
            if session is not None and session.result is not None:
                return session.result
        result = self._archive.result(session_id)
        if result is None:
            raise UnknownSession(session_id)
        return result

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        self._dispatch_pool.shutdown(wait=wait)
        self._job_pool.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # Merge run
    # ------------------------------------------------------------------

    def _run_jobs(self, session: ApprovalSession, jobs: tuple[MergeJob, ...]) -> DeployResult:
        self._notify_approved(session)
        futures = [self._job_pool.submit(self._run_job, session.session_id, job) for job in jobs]
        finished = [future.result() for future in futures]
        result = DeployResult.from_jobs(session.session_id, finished)
        session.complete(result)
        self._finalize(session)
        return result

    def _run_job(self, session_id: str, job: MergeJob) -> MergeJob:
        max_attempts = self._settings.merge_max_attempts
        attempt = 1
        while True:
            outcome = self._attempt_merge(session_id, job)
            if not outcome.retryable or attempt >= max_attempts:
                break
            delay = self._settings.merge_backoff_seconds * (2 ** (attempt - 1))
            logger.warning(
                "session %s: %s %s (attempt %d/%d); retrying in %.2fs",
                session_id,
                job.repository,
                outcome.describe(),
                attempt,
                max_attempts,
                delay,
            )
            self._sleep(delay)
            attempt += 1
        logger.info("session %s: %s %s after %d attempt(s)", session_id, job.repository, outcome.describe(), attempt)
        return job.with_outcome(outcome)

    def _attempt_merge(self, session_id: str, job: MergeJob) -> MergeOutcome:
        try:
            return self._git.merge(job.target)
        except Exception as exc:  # noqa: BLE001
            logger.exception("session %s: merge of %s raised", session_id, job.repository)
            return MergeOutcome.failed(MergeFailureReason.TRANSPORT_ERROR, str(exc))

    @staticmethod
    def _log_dispatch_failure(future: Future[DeployResult]) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("merge run failed: %s", exc, exc_info=exc)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _finalize(self, session: ApprovalSession) -> None:
        """Archive a terminal session, report it, and release its in-flight marker."""
        self._cancel_timer(session.session_id)
        if session.message_ref is not None:
            self._gateway.unsubscribe(session.message_ref)
        try:
            self._archive.record(session)
            self._notify_result(session)
        finally:
            with self._lock:
                self._sessions.pop(session.session_id, None)
                key = self._key(session)
                if self._in_flight.get(key) == session.session_id:
                    del self._in_flight[key]
                finished = self._finished.pop(session.session_id, None)
            logger.info("session %s closed in state %s", session.session_id, session.state.value)
            if finished is not None:
                finished.set()

    def _request_approval(
        self,
        session: ApprovalSession,
        recipients: Recipients,
        *,
        team_id: str | None = None,
    ) -> None:
        message = ApprovalRequestMessage(
            session_id=session.session_id,
            deployable=session.deployable_name,
            environment=session.environment_name,
            requester_id=session.requester_id,
            repositories=tuple(target.repository for target in session.targets),
        )
        try:
            ref = self._gateway.send(session.channel, recipients, message)
        except Exception as exc:  # noqa: BLE001
            logger.error("session %s: approval request not delivered: %s", session.session_id, exc)
            return
        if ref is None:
            return
        session.message_ref = ref
        session_id = session.session_id
        self._gateway.subscribe(
            ref,
            lambda user_id, kind: self.handle_event(ApprovalEvent(session_id, user_id, kind)),
            team_id=team_id,
        )
        # The session may have finished while the request was in flight.
        if session.is_terminal:
            self._gateway.unsubscribe(ref)

    def _notify_approved(self, session: ApprovalSession) -> None:
        message = ApprovalGrantedMessage(
            session_id=session.session_id,
            deployable=session.deployable_name,
            environment=session.environment_name,
            requester_id=session.requester_id,
            approved_by=tuple(sorted(session.approved_by)),
            repositories=tuple(target.repository for target in session.targets),
        )
        try:
            self._gateway.send(session.channel, Recipients.build([session.requester_id]), message)
        except Exception as exc:  # noqa: BLE001
            logger.error("session %s: approval notice not delivered: %s", session.session_id, exc)

    def _notify_result(self, session: ApprovalSession) -> None:
        result = session.result if session.result is not None else DeployResult.aborted(session.session_id)
        recipients = Recipients.build(session.required_approvers, session.groups).with_user(session.requester_id)
        message = DeployResultMessage(
            session_id=session.session_id,
            deployable=session.deployable_name,
            environment=session.environment_name,
            requester_id=session.requester_id,
            result=result,
        )
        try:
            self._gateway.send(session.channel, recipients, message)
        except Exception as exc:  # noqa: BLE001
            logger.error("session %s: result notification not delivered: %s", session.session_id, exc)

    # ------------------------------------------------------------------
    # Deadlines
    # ------------------------------------------------------------------

    def _schedule_timer(self, session: ApprovalSession) -> None:
        if not self._start_timers or session.deadline is None:
            return
        delay = max((session.deadline - self._clock()).total_seconds(), 0.0)
        timer = threading.Timer(delay, self._on_deadline, args=(session.session_id,))
        timer.daemon = True
        with self._lock:
            if session.session_id not in self._sessions:
                return
            self._timers[session.session_id] = timer
        timer.start()

    def _on_deadline(self, session_id: str) -> None:
        session = self.get_session(session_id)
        if session is None:
            return
        if not session.deadline_passed():
            self._schedule_timer(session)
            return
        with self._lock:
            self._timers.pop(session_id, None)
        if session.timeout():
            self._finalize(session)

    def _cancel_timer(self, session_id: str) -> None:
        with self._lock:
            timer = self._timers.pop(session_id, None)
        if timer is not None:
            timer.cancel()

    @staticmethod
    def _key(session: ApprovalSession) -> InFlightKey:
        return normalize_name(session.deployable_name), normalize_name(session.environment_name)
