from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from conftest import FakeClock
from mergebot.errors import ConfigurationError, InvalidSessionTransition, SessionTimedOut
from mergebot.models import (
    DeployResult,
    DeployStatus,
    GroupRequirement,
    JobStatus,
    MergeFailureReason,
    MergeOutcome,
    MergeTarget,
    SessionState,
)
from mergebot.session import ApprovalSession


def _targets(*names: str) -> list[MergeTarget]:
    return [MergeTarget(repository=name, url=f"/remotes/{name}.git", base_branch="main", target_branch="staging")
            for name in names]


def _session(
    clock: FakeClock,
    *,
    approvers: tuple[str, ...] = ("UALICE", "UBOB"),
    groups: tuple[GroupRequirement, ...] = (),
    timeout_seconds: int | None = None,
    repos: tuple[str, ...] = ("api", "web"),
) -> ApprovalSession:
    return ApprovalSession(
        session_id="DEP-test",
        requester_id="UREQ",
        deployable_name="shop",
        environment_name="staging",
        required_approvers=approvers,
        groups=groups,
        targets=_targets(*repos),
        deadline=clock() + timedelta(seconds=timeout_seconds) if timeout_seconds is not None else None,
        clock=clock,
    )


def test_quorum_requires_every_approver_in_any_order(clock: FakeClock) -> None:
    session = _session(clock, approvers=("UALICE", "UBOB", "UCAROL"))

    assert session.record_approval("UCAROL") is False
    assert session.record_approval("UALICE") is False
    assert session.state is SessionState.PENDING
    assert session.outstanding_approvers() == frozenset({"UBOB"})

    assert session.record_approval("UBOB") is True
    assert session.state is SessionState.APPROVED
    assert session.approved_by == frozenset({"UALICE", "UBOB", "UCAROL"})


def test_unlisted_user_never_counts(clock: FakeClock) -> None:
    session = _session(clock)

    assert session.record_approval("UMALLORY") is False
    assert session.approved_by == frozenset()
    session.record_approval("UALICE")
    assert session.record_approval("UMALLORY") is False
    assert session.approved_by == frozenset({"UALICE"})
    assert session.state is SessionState.PENDING


def test_duplicate_approval_is_idempotent(clock: FakeClock) -> None:
    session = _session(clock)

    session.record_approval("UALICE")
    session.record_approval("UALICE")

    assert session.approved_by == frozenset({"UALICE"})
    assert session.state is SessionState.PENDING


def test_concurrent_final_approvals_transition_once(clock: FakeClock) -> None:
    session = _session(clock)
    session.record_approval("UALICE")
    barrier = threading.Barrier(16)
    results: list[bool] = []
    results_lock = threading.Lock()

    def approve() -> None:
        barrier.wait()
        outcome = session.record_approval("UBOB")
        with results_lock:
            results.append(outcome)

    threads = [threading.Thread(target=approve) for _ in range(16)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(True) == 1
    jobs = session.begin_execution()
    assert [job.repository for job in jobs] == ["api", "web"]
    with pytest.raises(InvalidSessionTransition):
        session.begin_execution()


def test_approvals_after_quorum_are_ignored(clock: FakeClock) -> None:
    session = _session(clock, approvers=("UALICE",))

    assert session.record_approval("UALICE") is True
    assert session.record_approval("UALICE") is False
    session.begin_execution()
    assert session.record_approval("UALICE") is False
    assert session.state is SessionState.EXECUTING


def test_timeout_abandons_pending_session(clock: FakeClock) -> None:
    session = _session(clock, timeout_seconds=60)
    session.record_approval("UALICE")

    assert session.timeout(clock()) is False
    clock.advance(61)
    assert session.timeout() is True

    assert session.state is SessionState.ABANDONED
    assert session.result == DeployResult.aborted("DEP-test")
    with pytest.raises(InvalidSessionTransition):
        session.begin_execution()
    assert session.timeout() is False


def test_approval_past_deadline_raises_and_abandons(clock: FakeClock) -> None:
    session = _session(clock, timeout_seconds=30)
    session.record_approval("UALICE")
    clock.advance(30)

    with pytest.raises(SessionTimedOut):
        session.record_approval("UBOB")

    assert session.state is SessionState.ABANDONED
    assert session.record_approval("UBOB") is False


def test_session_without_deadline_never_times_out(clock: FakeClock) -> None:
    session = _session(clock)
    clock.advance(10 * 24 * 3600)

    assert session.timeout() is False
    assert session.state is SessionState.PENDING


def test_cancel_only_from_pending(clock: FakeClock) -> None:
    session = _session(clock, approvers=("UALICE",))
    session.record_approval("UALICE")

    assert session.cancel() is False
    assert session.state is SessionState.APPROVED

    other = _session(clock)
    assert other.cancel() is True
    assert other.state is SessionState.ABANDONED


def test_group_requires_min_members(clock: FakeClock) -> None:
    group = GroupRequirement(group_id="SREVIEW", members=frozenset({"U1", "U2", "U3"}), min_approvers=2)
    session = _session(clock, approvers=("UALICE",), groups=(group,))

    session.record_approval("UALICE")
    assert session.record_approval("U1") is False
    assert session.outstanding_groups() == (group,)
    assert session.record_approval("U3") is True
    assert session.outstanding_groups() == ()


def test_group_only_session_is_satisfied_by_one_member(clock: FakeClock) -> None:
    group = GroupRequirement(group_id="SREVIEW", members=frozenset({"U1", "U2"}))
    session = _session(clock, approvers=(), groups=(group,))

    assert session.record_approval("U2") is True


def test_session_requires_approvers(clock: FakeClock) -> None:
    with pytest.raises(ConfigurationError):
        _session(clock, approvers=())

    empty_group = GroupRequirement(group_id="SEMPTY", members=frozenset(), min_approvers=1)
    with pytest.raises(ConfigurationError):
        _session(clock, approvers=(), groups=(empty_group,))


def test_partial_failure_completes_as_failed(clock: FakeClock) -> None:
    session = _session(clock, approvers=("UALICE",), repos=("one", "two", "three"))
    session.record_approval("UALICE")
    jobs = session.begin_execution()
    outcomes = [
        MergeOutcome.succeeded(),
        MergeOutcome.failed(MergeFailureReason.NOT_FAST_FORWARD),
        MergeOutcome.succeeded(),
    ]
    result = DeployResult.from_jobs(session.session_id, [job.with_outcome(o) for job, o in zip(jobs, outcomes)])

    assert session.complete(result) is SessionState.FAILED
    assert result.status is DeployStatus.PARTIAL_FAILURE
    assert result.outcomes == ["succeeded", "failed(not-fast-forward)", "succeeded"]
    assert session.result is result


def test_complete_requires_executing_and_finished_jobs(clock: FakeClock) -> None:
    session = _session(clock, approvers=("UALICE",))
    session.record_approval("UALICE")
    with pytest.raises(InvalidSessionTransition):
        session.complete(DeployResult.from_jobs(session.session_id, []))

    jobs = session.begin_execution()
    assert all(job.status is JobStatus.PENDING for job in jobs)
    with pytest.raises(ValueError):
        DeployResult.from_jobs(session.session_id, jobs)

    done = [job.with_outcome(MergeOutcome.succeeded()) for job in jobs]
    assert session.complete(DeployResult.from_jobs(session.session_id, done)) is SessionState.COMPLETED
    with pytest.raises(InvalidSessionTransition):
        session.complete(DeployResult.from_jobs(session.session_id, done))


def test_to_record_reports_state_and_result(clock: FakeClock) -> None:
    session = _session(clock, approvers=("UALICE",), timeout_seconds=60)
    session.record_approval("UALICE")
    jobs = session.begin_execution()
    session.complete(DeployResult.from_jobs(session.session_id, [j.with_outcome(MergeOutcome.succeeded()) for j in jobs]))

    record = session.to_record()

    assert record["state"] == "completed"
    assert record["approved_by"] == ["UALICE"]
    assert record["result"]["status"] == "all-succeeded"
    assert [job["repository"] for job in record["result"]["jobs"]] == ["api", "web"]
