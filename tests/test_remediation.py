"""Tests for the remediation loop, including full ladder scenarios."""

import asyncio

import pytest

from vdimedic.core.discovery import to_records
from vdimedic.core.dispatcher import ActionDispatcher
from vdimedic.core.refresh import RecordRefresher
from vdimedic.core.remediation import RemediationLoop
from vdimedic.models import (
    Candidate,
    DiagnosticRecord,
    DiagnosticsConfig,
    DiscoveryConfig,
    JobRunState,
    RemediationAction as A,
    RemediationConfig,
    SessionState,
)

from fakes import FakeFleet, FakeJobs, FakePower, ManualClock, hung_machine

ENDPOINT = "broker01"


class Harness:
    """Loop wired to fakes with a manual clock."""

    def __init__(
        self,
        jobs: FakeJobs | None = None,
        poll_interval: float = 30,
        budget: int = 1200,
        job_timeout: int = 300,
        max_parallel: int = 10,
    ):
        self.clock = ManualClock()
        self.fleet = FakeFleet()
        self.jobs = jobs or FakeJobs()
        self.power = FakePower()
        self.finished: list[DiagnosticRecord] = []
        diagnostics = DiagnosticsConfig(command=["collect", "{host}"], job_timeout=job_timeout)
        self.refresher = RecordRefresher(
            self.fleet, self.jobs, DiscoveryConfig(), diagnostics, clock=self.clock
        )
        self.dispatcher = ActionDispatcher(
            self.jobs, self.power, self.refresher, diagnostics, clock=self.clock
        )
        self.loop = RemediationLoop(
            self.refresher,
            self.dispatcher,
            RemediationConfig(poll_interval=poll_interval, budget=budget, max_parallel=max_parallel),
            clock=self.clock,
            sleep=self.clock.sleep,
            on_finished=self._on_finished,
        )

    async def _on_finished(self, record):
        self.finished.append(record)

    def record(self, session_id: str = "1001", **machine) -> DiagnosticRecord:
        self.fleet.add(
            ENDPOINT,
            hung_machine(name=f"CORP\\VDI-{session_id}", session_id=session_id, **machine),
        )
        return DiagnosticRecord(admin_address=ENDPOINT, session_id=session_id)


class TestLadderScenarios:
    """Step-by-step walks through the remediation ladder."""

    @pytest.mark.asyncio
    async def test_happy_path(self):
        h = Harness(jobs=FakeJobs(states=[JobRunState.COMPLETED], output="proc list"))
        record = h.record()

        await h.refresher.refresh(record)
        assert record.suggested_action == A.START_JOB

        await h.dispatcher.invoke(record)
        await h.refresher.refresh(record)
        assert record.suggested_action == A.REFRESH_JOB

        await h.dispatcher.invoke(record)
        await h.refresher.refresh(record)
        assert record.job.state == JobRunState.COMPLETED
        assert record.suggested_action == A.RECEIVE_JOB

        await h.dispatcher.invoke(record)
        await h.refresher.refresh(record)
        assert record.suggested_action == A.RESTART

        await h.dispatcher.invoke(record)
        await h.refresher.refresh(record)
        assert record.suggested_action == A.IGNORE
        assert record.debugging_complete is True
        assert record.restart_issued is True
        assert record.action_log == [A.START_JOB, A.REFRESH_JOB, A.RECEIVE_JOB, A.RESTART]

    @pytest.mark.asyncio
    async def test_no_host_skips_receive(self):
        h = Harness()
        record = h.record(dns_name=None)
        h.fleet.sessions[(ENDPOINT, "1001")].dns_name = None

        await h.refresher.refresh(record)
        await h.dispatcher.invoke(record)
        assert record.job.state == JobRunState.FAILED

        await h.refresher.refresh(record)
        assert record.suggested_action == A.REFRESH_JOB
        await h.dispatcher.invoke(record)

        await h.refresher.refresh(record)
        assert record.suggested_action == A.RESTART
        assert h.jobs.submitted == []


class TestRemediationLoop:
    """Tests for driving records to completion."""

    @pytest.mark.asyncio
    async def test_drives_to_restart(self):
        h = Harness(jobs=FakeJobs(states=[JobRunState.COMPLETED], output="proc list"))
        record = h.record()

        await h.loop.drive(record)

        assert record.debugging_complete is True
        assert record.action_log == [A.START_JOB, A.REFRESH_JOB, A.RECEIVE_JOB, A.RESTART]
        assert h.power.resets == [(ENDPOINT, "CORP\\VDI-1001")]
        assert record.budget_expired is False
        assert record.finished_at is not None
        assert h.finished == [record]

    @pytest.mark.asyncio
    async def test_false_alarm_takes_no_action(self):
        h = Harness()
        record = h.record(last_connection_failure="None")

        await h.loop.drive(record)

        assert record.session_state == SessionState.WORKING
        assert record.debugging_complete is True
        assert record.action_log == []
        assert h.jobs.submitted == []
        assert h.power.resets == []

    @pytest.mark.asyncio
    async def test_broker_outage_on_first_cycle(self):
        h = Harness(jobs=FakeJobs(states=[JobRunState.COMPLETED], output="proc list"))
        record = h.record()
        h.fleet.outages = 2

        await h.loop.drive(record)

        assert record.session_state == SessionState.HUNG
        assert record.action_log == [A.START_JOB, A.REFRESH_JOB, A.RECEIVE_JOB, A.RESTART]
        assert h.power.resets == [(ENDPOINT, "CORP\\VDI-1001")]

    @pytest.mark.asyncio
    async def test_broker_outage_on_discovered_record(self):
        h = Harness(jobs=FakeJobs(states=[JobRunState.COMPLETED], output="proc list"))
        h.record()
        record = to_records([
            Candidate(endpoint=ENDPOINT, session_id="1001", machine=h.fleet.machines[(ENDPOINT, "1001")])
        ])[0]
        h.fleet.outages = 2

        await h.loop.drive(record)

        assert record.action_log == [A.START_JOB, A.REFRESH_JOB, A.RECEIVE_JOB, A.RESTART]
        assert record.restart_issued is True

    @pytest.mark.asyncio
    async def test_broker_never_answers(self):
        h = Harness(poll_interval=30, budget=120)
        record = h.record()
        h.fleet.outages = 1000

        await h.loop.drive(record)

        assert record.budget_expired is True
        assert record.session_state == SessionState.QUERY_FAILED
        assert record.action_log == []
        assert h.power.resets == []

    @pytest.mark.asyncio
    async def test_stuck_job_with_output_is_received(self):
        h = Harness(
            jobs=FakeJobs(states=[JobRunState.RUNNING], output="partial"),
            poll_interval=30,
            job_timeout=60,
        )
        record = h.record()

        await h.loop.drive(record)

        assert record.job.state == JobRunState.FAILED
        assert A.RECEIVE_JOB in record.action_log
        assert record.action_log[-1] == A.RESTART
        assert record.restart_issued is True

    @pytest.mark.asyncio
    async def test_stuck_job_without_output_restarts(self):
        h = Harness(jobs=FakeJobs(states=[JobRunState.RUNNING]), poll_interval=30, job_timeout=60)
        record = h.record()

        await h.loop.drive(record)

        assert A.RECEIVE_JOB not in record.action_log
        assert record.action_log[-2:] == [A.REFRESH_JOB, A.RESTART]
        assert record.restart_issued is True

    @pytest.mark.asyncio
    async def test_budget_expiry_forces_one_more_action(self):
        h = Harness(
            jobs=FakeJobs(states=[JobRunState.RUNNING]),
            poll_interval=30,
            budget=60,
            job_timeout=10_000,
        )
        record = h.record()

        await h.loop.drive(record)

        assert record.budget_expired is True
        assert record.debugging_complete is False
        # start, refresh at t=30, refresh at t=60, then the forced attempt
        assert record.action_log == [A.START_JOB, A.REFRESH_JOB, A.REFRESH_JOB, A.REFRESH_JOB]
        assert h.finished == [record]

    @pytest.mark.asyncio
    async def test_restart_issued_at_most_once(self):
        h = Harness(jobs=FakeJobs(states=[JobRunState.FAILED]), budget=10_000)
        record = h.record()

        await h.loop.drive(record)
        await h.loop.drive(record)

        assert len(h.power.resets) == 1
        assert record.action_log.count(A.RESTART) == 1


class TestConcurrentRun:
    """Tests for running many records."""

    @pytest.mark.asyncio
    async def test_all_records_driven(self):
        h = Harness(jobs=FakeJobs(states=[JobRunState.COMPLETED]))
        records = [h.record(str(1000 + i)) for i in range(5)]

        results = await h.loop.run(records)

        assert results == records
        assert all(r.debugging_complete for r in records)
        assert len(h.power.resets) == 5
        assert len(h.finished) == 5

    @pytest.mark.asyncio
    async def test_crash_in_one_record_does_not_affect_others(self):
        h = Harness(jobs=FakeJobs(states=[JobRunState.COMPLETED]))
        good = h.record("1001")
        bad = h.record("1002")
        h.fleet.sessions[(ENDPOINT, "1002")] = RuntimeError("broker SDK exploded")

        await h.loop.run([bad, good])

        assert good.restart_issued is True
        assert bad.debugging_complete is False
        assert any("broker SDK exploded" in line for line in bad.debug_info)
        # Both still reported
        assert {r.session_id for r in h.finished} == {"1001", "1002"}

    @pytest.mark.asyncio
    async def test_slow_record_does_not_block_others(self):
        h = Harness(jobs=FakeJobs(states=[JobRunState.COMPLETED]))
        slow = h.record("1001")
        fast = h.record("1002")
        release = asyncio.Event()

        original = h.fleet.get_session

        async def get_session(endpoint, session_id):
            if session_id == "1001":
                await release.wait()
            return await original(endpoint, session_id)

        h.fleet.get_session = get_session

        task = asyncio.create_task(h.loop.run([slow, fast]))
        for _ in range(100):
            await asyncio.sleep(0)
            if fast.finished_at is not None:
                break

        assert fast.debugging_complete is True
        assert slow.finished_at is None

        release.set()
        await task
        assert slow.debugging_complete is True
        assert [r.session_id for r in h.finished] == ["1002", "1001"]

    @pytest.mark.asyncio
    async def test_empty_run(self):
        h = Harness()
        assert await h.loop.run([]) == []
