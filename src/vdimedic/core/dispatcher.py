"""Action dispatcher: the only component that changes remote state."""

from __future__ import annotations

from loguru import logger

from vdimedic.clients.base import PowerActionService, RemoteJobService
from vdimedic.core.clock import SYSTEM_CLOCK, Clock
from vdimedic.core.refresh import RecordRefresher
from vdimedic.models import (
    DiagnosticRecord,
    DiagnosticsConfig,
    JobRunState,
    RemediationAction,
)


class ActionDispatcher:
    """Executes remediation actions against a record.

    Every invocation is appended to the record's action log, including
    no-ops, so the decision table always has a last action to look at.
    Collaborator failures are recorded on the record, never raised.
    """

    def __init__(
        self,
        jobs: RemoteJobService,
        power: PowerActionService,
        refresher: RecordRefresher,
        diagnostics: DiagnosticsConfig,
        clock: Clock = SYSTEM_CLOCK,
    ):
        self._jobs = jobs
        self._power = power
        self._refresher = refresher
        self._diagnostics = diagnostics
        self._clock = clock
        self._handlers = {
            RemediationAction.START_JOB: self._start_job,
            RemediationAction.REFRESH_JOB: self._refresh_job,
            RemediationAction.RECEIVE_JOB: self._receive_job,
            RemediationAction.RESTART: self._restart,
            RemediationAction.IGNORE: self._ignore,
        }

    async def invoke(
        self,
        record: DiagnosticRecord,
        action: RemediationAction | None = None,
    ) -> RemediationAction:
        """Run an action (the record's suggested one by default).

        Returns:
            The action that was logged.
        """
        action = action or record.suggested_action
        if record.debugging_complete and action != RemediationAction.IGNORE:
            logger.debug(f"[{record.label}] Complete, ignoring requested {action.value}")
            action = RemediationAction.IGNORE

        record.action_log.append(action)
        if action != RemediationAction.IGNORE:
            logger.info(f"[{record.label}] Action: {action.value}")

        try:
            await self._handlers[action](record)
        except Exception as e:
            logger.error(f"[{record.label}] {action.value} failed: {e}")
            record.action_result.append(f"{action.value} failed: {e}")
            record.debug_info.append(f"{action.value} raised {type(e).__name__}: {e}")

        return action

    async def _start_job(self, record: DiagnosticRecord) -> None:
        job = record.job

        if not record.host_name:
            job.state = JobRunState.FAILED
            record.action_result.append("Diagnostic job not started: host name unknown")
            return

        if job.handle is not None or job.state == JobRunState.FAILED:
            logger.debug(f"[{record.label}] Diagnostic job already started or failed")
            return

        if not self._diagnostics.enabled:
            job.state = JobRunState.FAILED
            record.action_result.append("Diagnostics disabled, skipping diagnostic job")
            return

        try:
            handle = await self._jobs.submit(record.host_name, self._diagnostics.command)
        except Exception:
            job.state = JobRunState.FAILED
            raise

        job.handle = handle
        job.state = JobRunState.RUNNING
        job.started_at = self._clock.now()
        record.action_result.append(
            f"Diagnostic job {handle.id} started on {record.host_name}"
        )

    async def _refresh_job(self, record: DiagnosticRecord) -> None:
        await self._refresher.refresh_job(record)

    async def _receive_job(self, record: DiagnosticRecord) -> None:
        job = record.job
        if job.handle is None:
            logger.debug(f"[{record.label}] No diagnostic job to receive")
            return

        output = await self._jobs.collect_output(
            job.handle,
            wait=True,
            timeout=self._diagnostics.receive_timeout,
        )
        job.received = True
        record.action_result.append(
            f"Diagnostic output from {job.handle.host_name}:\n{output.rstrip()}"
            if output.strip()
            else f"Diagnostic job {job.handle.id} produced no output"
        )

    async def _restart(self, record: DiagnosticRecord) -> None:
        if record.restart_issued:
            logger.debug(f"[{record.label}] Restart already issued")
            return

        if not record.machine_name:
            record.action_result.append("Restart skipped: no machine record")
            return

        # Latch before calling out: a failed reset is never retried
        record.restart_issued = True
        handle = await self._power.reset(record.admin_address, record.machine_name)
        record.action_result.append(
            f"Reset of {record.machine_name} queued (action {handle.uid}, {handle.state})"
        )
        logger.info(f"[{record.label}] Reset queued for {record.machine_name}")

    async def _ignore(self, record: DiagnosticRecord) -> None:
        pass
