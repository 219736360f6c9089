"""Final remediation reports."""

from __future__ import annotations

from loguru import logger

from vdimedic.clients.base import Notifier
from vdimedic.models import DiagnosticRecord, NotificationConfig, SessionState


class NotificationReporter:
    """Flattens finished records into reports and hands them to a notifier."""

    def __init__(self, notifier: Notifier, config: NotificationConfig):
        self._notifier = notifier
        self._config = config

    def flatten(self, record: DiagnosticRecord) -> dict[str, str]:
        """Flatten a record into string fields, joining multi-valued ones."""
        sep = self._config.delimiter

        def fmt(value) -> str:
            if value is None:
                return "-"
            if hasattr(value, "value"):
                return str(value.value)
            if hasattr(value, "isoformat"):
                return value.isoformat(timespec="seconds")
            return str(value)

        return {
            "admin_address": record.admin_address,
            "session_id": record.session_id,
            "host_name": fmt(record.host_name),
            "machine_name": fmt(record.machine_name),
            "user_name": fmt(record.user_name),
            "session_state": fmt(record.session_state),
            "looks_hung": fmt(record.looks_hung),
            "debugging_complete": fmt(record.debugging_complete),
            "restart_issued": fmt(record.restart_issued),
            "budget_expired": fmt(record.budget_expired),
            "job_state": fmt(record.job.state),
            "job_received": fmt(record.job.received),
            "action_log": sep.join(a.value for a in record.action_log),
            "suggested_action": fmt(record.suggested_action),
            "action_result": sep.join(record.action_result),
            "debug_info": sep.join(record.debug_info),
            "started": fmt(record.created_at),
            "finished": fmt(record.finished_at),
        }

    def render(self, record: DiagnosticRecord) -> tuple[str, str]:
        """Build the subject and body of a report."""
        host = record.host_name or record.machine_name or f"session {record.session_id}"
        if record.restart_issued:
            outcome = "restarted"
        elif record.session_state == SessionState.WORKING:
            outcome = "recovered"
        elif record.budget_expired:
            outcome = "remediation timed out"
        else:
            outcome = record.session_state.value

        subject = f"[VDIMedic] {host}: {outcome}"
        body = "\n".join(f"{key}: {value}" for key, value in self.flatten(record).items())
        return subject, body

    def should_report(self, record: DiagnosticRecord) -> bool:
        """Whether a finished record should be reported."""
        if not self._config.enabled:
            return False
        if (
            self._config.skip_self_corrected
            and record.session_state == SessionState.WORKING
            and not record.action_log
        ):
            return False
        return True

    async def report(self, record: DiagnosticRecord) -> bool:
        """Send a report for a finished record.

        Returns:
            True if a report was delivered.
        """
        if not self.should_report(record):
            logger.debug(f"[{record.label}] Report suppressed")
            return False

        subject, body = self.render(record)
        try:
            sent = await self._notifier.send(self._config.recipients, subject, body)
        except Exception as e:
            logger.error(f"[{record.label}] Failed to send report: {e}")
            return False

        if not sent:
            logger.warning(f"[{record.label}] Report was not accepted by the notifier")
        return sent
