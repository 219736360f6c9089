"""State transitions for a diagnostic record.

Everything here is pure: functions take the record (or the relevant fields)
plus already-fetched data and update or compute state. Remote queries live
in ``refresh.py`` and side effects in ``dispatcher.py``.

Remediation ladder::

    start_job -> refresh_job -> [receive_job] -> restart -> ignore

Diagnostics are attempted once; a failed job with no output skips straight
to restart. Nothing ever loops back to start_job.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from vdimedic.models import (
    DiagnosticJob,
    DiagnosticRecord,
    JobRunState,
    MachineInfo,
    RemediationAction,
    SessionState,
)


def looks_hung(machine: MachineInfo | None, hung_reasons: list[str]) -> bool:
    """Whether a machine matches the hung-session signature."""
    if machine is None:
        return False
    return (
        machine.last_connection_failure in hung_reasons
        and not machine.is_physical
        and not machine.in_maintenance_mode
        and machine.sessions_established == 1
    )


def observe(
    record: DiagnosticRecord,
    machine: MachineInfo | None,
    hung_reasons: list[str],
    normal_reason: str,
) -> None:
    """Apply a fresh machine lookup to a record."""
    if machine is None:
        record.looks_hung = False
        record.debugging_complete = True
        record.debug_info.append("No machine record found for session")
        return

    # Cache names; later actions need them even after the session is gone
    if machine.dns_name and not record.host_name:
        record.host_name = machine.dns_name
    if not record.machine_name:
        record.machine_name = machine.machine_name

    record.looks_hung = looks_hung(machine, hung_reasons)

    if machine.last_connection_failure == normal_reason:
        record.session_state = SessionState.WORKING
        record.debugging_complete = True
        record.debug_info.append(
            f"{machine.machine_name} reports a normal last connection"
        )
    elif record.looks_hung and record.session_state == SessionState.UNKNOWN:
        record.session_state = SessionState.HUNG


def job_timed_out(job: DiagnosticJob, now: datetime, timeout: float) -> bool:
    """Whether a running job has exceeded its timeout."""
    if job.state != JobRunState.RUNNING or job.started_at is None:
        return False
    return now - job.started_at > timedelta(seconds=timeout)


def expire_job(job: DiagnosticJob, now: datetime, timeout: float) -> bool:
    """Force a timed-out job to failed. The remote job keeps running.

    Returns:
        True if the job was expired.
    """
    if not job_timed_out(job, now, timeout):
        return False
    job.state = JobRunState.FAILED
    return True


def decide(
    is_hung: bool,
    complete: bool,
    last_action: RemediationAction | None,
    job_state: JobRunState,
    has_output: bool,
) -> tuple[RemediationAction, bool]:
    """Pick the next remediation step.

    Returns:
        Tuple of (suggested_action, debugging_complete)
    """
    if not is_hung or complete:
        return RemediationAction.IGNORE, True

    if last_action is None:
        return RemediationAction.START_JOB, False

    if last_action == RemediationAction.START_JOB:
        return RemediationAction.REFRESH_JOB, False

    if last_action == RemediationAction.REFRESH_JOB:
        if job_state == JobRunState.COMPLETED:
            return RemediationAction.RECEIVE_JOB, False
        if job_state == JobRunState.RUNNING:
            return RemediationAction.REFRESH_JOB, False
        # Failed, or never got started
        if has_output:
            return RemediationAction.RECEIVE_JOB, False
        return RemediationAction.RESTART, False

    if last_action == RemediationAction.RECEIVE_JOB:
        return RemediationAction.RESTART, False

    # restart or ignore: the ladder is exhausted
    return RemediationAction.IGNORE, True


def awaiting_observation(record: DiagnosticRecord) -> bool:
    """Whether the record is open but its hung status is still unverified."""
    return (
        record.session_state == SessionState.QUERY_FAILED
        and not record.looks_hung
        and not record.debugging_complete
    )


def update_suggested_action(record: DiagnosticRecord) -> RemediationAction:
    """Recompute the record's suggested action from its current state.

    A record whose machine has never been observed because the broker
    queries failed stays open with an ``ignore`` suggestion; the loop
    waits for the next cycle instead of dispatching it.
    """
    if awaiting_observation(record):
        record.suggested_action = RemediationAction.IGNORE
        return record.suggested_action

    action, complete = decide(
        record.looks_hung,
        record.debugging_complete,
        record.last_action,
        record.job.state,
        record.job.has_output,
    )
    record.suggested_action = action
    if complete:
        record.debugging_complete = True
    return action
