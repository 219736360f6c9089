"""VDIMedic core components."""

from vdimedic.core.clock import Clock
from vdimedic.core.discovery import CandidateDiscovery, to_records
from vdimedic.core.dispatcher import ActionDispatcher
from vdimedic.core.record import decide, looks_hung, update_suggested_action
from vdimedic.core.refresh import RecordRefresher
from vdimedic.core.remediation import RemediationLoop
from vdimedic.core.reporter import NotificationReporter
from vdimedic.core.scanner import ScanScheduler

__all__ = [
    "ActionDispatcher",
    "CandidateDiscovery",
    "Clock",
    "NotificationReporter",
    "RecordRefresher",
    "RemediationLoop",
    "ScanScheduler",
    "decide",
    "looks_hung",
    "to_records",
    "update_suggested_action",
]
