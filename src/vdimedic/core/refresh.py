"""Read-only refresh of a diagnostic record from the broker and job runner."""

from __future__ import annotations

from loguru import logger

from vdimedic.clients.base import (
    FleetQueryError,
    FleetQueryService,
    JobNotFoundError,
    ObjectNotFoundError,
    RemoteJobError,
    RemoteJobService,
)
from vdimedic.core.clock import SYSTEM_CLOCK, Clock
from vdimedic.core.record import expire_job, observe, update_suggested_action
from vdimedic.models import (
    DiagnosticRecord,
    DiagnosticsConfig,
    DiscoveryConfig,
    JobRunState,
    SessionState,
)


class RecordRefresher:
    """Re-queries the current state of a record. Never mutates remote state."""

    def __init__(
        self,
        fleet: FleetQueryService,
        jobs: RemoteJobService,
        discovery: DiscoveryConfig,
        diagnostics: DiagnosticsConfig,
        clock: Clock = SYSTEM_CLOCK,
    ):
        self._fleet = fleet
        self._jobs = jobs
        self._discovery = discovery
        self._diagnostics = diagnostics
        self._clock = clock

    async def refresh(self, record: DiagnosticRecord) -> None:
        """Refresh session, machine and job state, then re-decide."""
        if not record.debugging_complete:
            await self._refresh_session(record)

        if not record.debugging_complete:
            await self._refresh_machine(record)

        await self.refresh_job(record)
        update_suggested_action(record)

        logger.debug(
            f"[{record.label}] state={record.session_state.value} "
            f"hung={record.looks_hung} job={record.job.state.value} "
            f"next={record.suggested_action.value}"
        )

    async def _refresh_session(self, record: DiagnosticRecord) -> None:
        try:
            session = await self._fleet.get_session(record.admin_address, record.session_id)
        except ObjectNotFoundError:
            if record.session_state != SessionState.DESTROYED:
                logger.info(f"[{record.label}] Session no longer exists")
                record.debug_info.append("Session no longer exists")
            record.session_state = SessionState.DESTROYED
            record.debugging_complete = True
            return
        except FleetQueryError as e:
            logger.warning(f"[{record.label}] Session query failed: {e}")
            record.session_state = SessionState.QUERY_FAILED
            record.debug_info.append(f"Session query failed: {e}")
            return

        if record.session_state == SessionState.QUERY_FAILED:
            record.session_state = SessionState.UNKNOWN
        if session.user_name and not record.user_name:
            record.user_name = session.user_name
        if session.dns_name and not record.host_name:
            record.host_name = session.dns_name

    async def _refresh_machine(self, record: DiagnosticRecord) -> None:
        try:
            machine = await self._fleet.get_machine(record.admin_address, record.session_id)
        except FleetQueryError as e:
            logger.warning(f"[{record.label}] Machine query failed: {e}")
            record.session_state = SessionState.QUERY_FAILED
            record.debug_info.append(f"Machine query failed: {e}")
            return

        observe(
            record,
            machine,
            self._discovery.hung_reasons,
            self._discovery.normal_reason,
        )
        if record.session_state == SessionState.WORKING:
            logger.info(f"[{record.label}] Machine reports normal operation, nothing to do")

    async def refresh_job(self, record: DiagnosticRecord) -> None:
        """Refresh the diagnostic job's run state."""
        job = record.job
        if job.handle is None:
            return

        try:
            polled = await self._jobs.poll(job.handle)
            # A job already failed by timeout stays failed while still running
            if not (job.state == JobRunState.FAILED and polled == JobRunState.RUNNING):
                job.state = polled
            job.has_output = job.has_output or await self._jobs.has_output(job.handle)
        except JobNotFoundError:
            logger.warning(
                f"[{record.label}] Diagnostic job {job.handle.id} is gone, "
                f"keeping last state {job.state.value}"
            )
            record.debug_info.append(f"Diagnostic job {job.handle.id} disappeared")
            job.handle = None
            return
        except RemoteJobError as e:
            logger.warning(f"[{record.label}] Failed to poll diagnostic job: {e}")
            record.debug_info.append(f"Job poll failed: {e}")
            job.state = JobRunState.FAILED
            return

        if expire_job(job, self._clock.now(), self._diagnostics.job_timeout):
            logger.warning(
                f"[{record.label}] Diagnostic job {job.handle.id} exceeded "
                f"{self._diagnostics.job_timeout}s, treating as failed"
            )
            record.debug_info.append(
                f"Diagnostic job timed out after {self._diagnostics.job_timeout}s"
            )
