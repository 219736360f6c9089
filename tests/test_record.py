"""Tests for the diagnostic record state transitions."""

from datetime import datetime, timedelta

import pytest
from pydantic import ValidationError

from vdimedic.core.record import (
    decide,
    expire_job,
    job_timed_out,
    looks_hung,
    observe,
    update_suggested_action,
)
from vdimedic.models import (
    DEFAULT_HUNG_REASONS,
    DiagnosticJob,
    DiagnosticRecord,
    JobRunState,
    RemediationAction as A,
    SessionState,
)

from fakes import hung_machine


def make_record(**kwargs) -> DiagnosticRecord:
    return DiagnosticRecord(admin_address="broker01", session_id="1001", **kwargs)


class TestLooksHung:
    """Tests for the hung-session predicate."""

    def test_matches_signature(self):
        assert looks_hung(hung_machine(), DEFAULT_HUNG_REASONS) is True

    def test_none_machine(self):
        assert looks_hung(None, DEFAULT_HUNG_REASONS) is False

    @pytest.mark.parametrize(
        "overrides",
        [
            {"last_connection_failure": "None"},
            {"last_connection_failure": "Licensing"},
            {"is_physical": True},
            {"in_maintenance_mode": True},
            {"sessions_established": 0},
            {"sessions_established": 2},
        ],
    )
    def test_each_condition_required(self, overrides):
        assert looks_hung(hung_machine(**overrides), DEFAULT_HUNG_REASONS) is False

    def test_custom_reasons(self):
        machine = hung_machine(last_connection_failure="RegistrationTimeout")
        assert looks_hung(machine, DEFAULT_HUNG_REASONS) is False
        assert looks_hung(machine, ["RegistrationTimeout"]) is True


class TestDecide:
    """Tests for the decision table."""

    @pytest.mark.parametrize(
        "last,job_state,has_output,expected",
        [
            (None, JobRunState.NOT_STARTED, False, A.START_JOB),
            (A.START_JOB, JobRunState.RUNNING, False, A.REFRESH_JOB),
            (A.START_JOB, JobRunState.FAILED, False, A.REFRESH_JOB),
            (A.REFRESH_JOB, JobRunState.FAILED, True, A.RECEIVE_JOB),
            (A.REFRESH_JOB, JobRunState.FAILED, False, A.RESTART),
            (A.REFRESH_JOB, JobRunState.COMPLETED, False, A.RECEIVE_JOB),
            (A.REFRESH_JOB, JobRunState.COMPLETED, True, A.RECEIVE_JOB),
            (A.REFRESH_JOB, JobRunState.RUNNING, True, A.REFRESH_JOB),
            (A.RECEIVE_JOB, JobRunState.COMPLETED, True, A.RESTART),
        ],
    )
    def test_ladder(self, last, job_state, has_output, expected):
        action, complete = decide(True, False, last, job_state, has_output)
        assert action == expected
        assert complete is False

    def test_after_restart_is_complete(self):
        assert decide(True, False, A.RESTART, JobRunState.COMPLETED, True) == (A.IGNORE, True)

    def test_not_hung_is_complete(self):
        assert decide(False, False, None, JobRunState.NOT_STARTED, False) == (A.IGNORE, True)

    def test_never_suggests_start_job_twice(self):
        for job_state in JobRunState:
            for has_output in (True, False):
                for last in A:
                    action, _ = decide(True, False, last, job_state, has_output)
                    assert action != A.START_JOB

    def test_complete_is_sticky(self):
        for job_state in JobRunState:
            for last in [None, *A]:
                for is_hung in (True, False):
                    assert decide(is_hung, True, last, job_state, True) == (A.IGNORE, True)

    def test_deterministic(self):
        args = (True, False, A.REFRESH_JOB, JobRunState.FAILED, True)
        assert {decide(*args) for _ in range(10)} == {(A.RECEIVE_JOB, False)}


class TestUpdateSuggestedAction:
    """Tests for applying the decision table to a record."""

    def test_fresh_hung_record_starts_job(self):
        record = make_record(looks_hung=True)
        assert update_suggested_action(record) == A.START_JOB
        assert record.debugging_complete is False

    def test_sets_complete_when_not_hung(self):
        record = make_record(looks_hung=False)
        assert update_suggested_action(record) == A.IGNORE
        assert record.debugging_complete is True

    def test_unverified_record_stays_open(self):
        record = make_record(looks_hung=False, session_state=SessionState.QUERY_FAILED)
        assert update_suggested_action(record) == A.IGNORE
        assert record.debugging_complete is False

    def test_query_failed_after_hung_continues_ladder(self):
        record = make_record(looks_hung=True, session_state=SessionState.QUERY_FAILED)
        assert update_suggested_action(record) == A.START_JOB
        assert record.debugging_complete is False

    def test_complete_record_stays_ignored(self):
        record = make_record(looks_hung=True, debugging_complete=True)
        record.action_log.append(A.START_JOB)
        record.job.state = JobRunState.COMPLETED
        for _ in range(3):
            assert update_suggested_action(record) == A.IGNORE
        assert record.debugging_complete is True


class TestObserve:
    """Tests for applying machine lookups."""

    def test_hung_machine(self):
        record = make_record()
        observe(record, hung_machine(), DEFAULT_HUNG_REASONS, "None")
        assert record.looks_hung is True
        assert record.session_state == SessionState.HUNG
        assert record.host_name == "vdi-001.corp.local"
        assert record.machine_name == "CORP\\VDI-001"
        assert record.debugging_complete is False

    def test_normal_reason_is_false_alarm(self):
        record = make_record()
        observe(record, hung_machine(last_connection_failure="None"), DEFAULT_HUNG_REASONS, "None")
        assert record.session_state == SessionState.WORKING
        assert record.debugging_complete is True
        assert record.looks_hung is False

    def test_missing_machine_completes(self):
        record = make_record()
        observe(record, None, DEFAULT_HUNG_REASONS, "None")
        assert record.debugging_complete is True
        assert record.debug_info

    def test_cached_host_name_not_overwritten(self):
        record = make_record(host_name="original.corp.local")
        observe(record, hung_machine(dns_name="other.corp.local"), DEFAULT_HUNG_REASONS, "None")
        assert record.host_name == "original.corp.local"


class TestJobTimeout:
    """Tests for job timeout detection."""

    def test_running_job_times_out(self):
        start = datetime(2024, 3, 1, 8, 0, 0)
        job = DiagnosticJob(state=JobRunState.RUNNING, started_at=start)

        assert job_timed_out(job, start + timedelta(seconds=300), 300) is False
        assert job_timed_out(job, start + timedelta(seconds=301), 300) is True
        assert expire_job(job, start + timedelta(seconds=301), 300) is True
        assert job.state == JobRunState.FAILED

    def test_completed_job_never_times_out(self):
        start = datetime(2024, 3, 1, 8, 0, 0)
        job = DiagnosticJob(state=JobRunState.COMPLETED, started_at=start)
        assert expire_job(job, start + timedelta(hours=5), 300) is False
        assert job.state == JobRunState.COMPLETED


class TestRecordModel:
    """Tests for the record model itself."""

    def test_identity_is_immutable(self):
        record = make_record()
        with pytest.raises(ValidationError):
            record.session_id = "other"
        with pytest.raises(ValidationError):
            record.admin_address = "other"

    def test_label(self):
        assert make_record().label == "broker01/1001"
