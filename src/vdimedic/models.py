"""Pydantic models for VDIMedic configuration and state."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class SessionState(str, Enum):
    """Last observed state of a tracked session."""

    UNKNOWN = "unknown"
    HUNG = "hung"
    DESTROYED = "destroyed"  # Session object no longer exists on the broker
    WORKING = "working"  # Machine reports a normal last connection
    QUERY_FAILED = "query_failed"


class JobRunState(str, Enum):
    """Run state of a remote diagnostic job."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class RemediationAction(str, Enum):
    """Steps of the remediation ladder."""

    START_JOB = "start_job"
    REFRESH_JOB = "refresh_job"
    RECEIVE_JOB = "receive_job"
    RESTART = "restart"
    IGNORE = "ignore"


# Broker-side connection failure reasons associated with an incomplete logon
DEFAULT_HUNG_REASONS = ["SessionPreparation", "ConnectionTimeout"]

# Reason reported by a machine whose last connection succeeded
NORMAL_CONNECTION_REASON = "None"


# ============================================================================
# Broker records
# ============================================================================


class BrokerModel(BaseModel):
    """Base for records returned by the broker API (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MachineInfo(BrokerModel):
    """A machine as reported by the broker."""

    machine_name: str
    dns_name: str | None = None
    desktop_group_name: str | None = None
    last_connection_failure: str = NORMAL_CONNECTION_REASON
    is_physical: bool = False
    in_maintenance_mode: bool = False
    sessions_established: int = 0
    session_support: str = "SingleSession"
    session_id: str | None = None  # The established session, if any


class SessionInfo(BrokerModel):
    """A session as reported by the broker."""

    session_id: str
    user_name: str | None = None
    machine_name: str | None = None
    dns_name: str | None = None
    session_state: str | None = None
    start_time: datetime | None = None


class PowerActionHandle(BrokerModel):
    """Handle for an asynchronous power action queued on the broker."""

    uid: str
    machine_name: str
    action: str = "Reset"
    state: str = "Pending"


class Candidate(BaseModel):
    """A session found by discovery that looks hung."""

    endpoint: str
    session_id: str
    machine: MachineInfo


class JobHandle(BaseModel):
    """Handle for a submitted remote diagnostic job."""

    id: str
    host_name: str
    submitted_at: datetime


# ============================================================================
# Diagnostic state
# ============================================================================


class DiagnosticJob(BaseModel):
    """The single diagnostic job owned by a record."""

    handle: JobHandle | None = None
    state: JobRunState = JobRunState.NOT_STARTED
    started_at: datetime | None = None
    has_output: bool = False
    received: bool = False


class DiagnosticRecord(BaseModel):
    """Remediation state for one suspected-hung session."""

    admin_address: str = Field(frozen=True)
    session_id: str = Field(frozen=True)

    # Cached once resolved; the session may disappear before restart
    host_name: str | None = None
    machine_name: str | None = None
    user_name: str | None = None

    session_state: SessionState = SessionState.UNKNOWN
    looks_hung: bool = False
    debugging_complete: bool = False
    restart_issued: bool = False
    budget_expired: bool = False

    job: DiagnosticJob = Field(default_factory=DiagnosticJob)
    action_log: list[RemediationAction] = Field(default_factory=list)
    suggested_action: RemediationAction = RemediationAction.IGNORE

    # Append-only trails, only consumed by the report
    action_result: list[str] = Field(default_factory=list)
    debug_info: list[str] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=datetime.now)
    finished_at: datetime | None = None

    @property
    def last_action(self) -> RemediationAction | None:
        """Most recent dispatched action."""
        return self.action_log[-1] if self.action_log else None

    @property
    def label(self) -> str:
        """Short identifier used in log lines."""
        return f"{self.admin_address}/{self.session_id}"


# ============================================================================
# Configuration
# ============================================================================


class BrokerConfig(BaseModel):
    """Broker management API configuration."""

    endpoints: list[str] = Field(default_factory=list)
    url_template: str = "https://{endpoint}/broker/api/v1"
    token: str | None = None
    timeout: float = 30.0  # seconds
    verify_tls: bool = True


class DiscoveryConfig(BaseModel):
    """Candidate discovery configuration."""

    group_pattern: str = "*"
    hung_reasons: list[str] = Field(default_factory=lambda: list(DEFAULT_HUNG_REASONS))
    normal_reason: str = NORMAL_CONNECTION_REASON
    single_session_only: bool = True


class DiagnosticsConfig(BaseModel):
    """Remote diagnostic job configuration."""

    enabled: bool = True
    # {host} is replaced with the machine's DNS name
    command: list[str] = Field(
        default_factory=lambda: [
            "pwsh",
            "-NoProfile",
            "-Command",
            "Invoke-Command -ComputerName {host} -ScriptBlock "
            "{ Get-Process -IncludeUserName | Format-Table -AutoSize | Out-String -Width 4096 }",
        ]
    )
    job_timeout: int = 300  # seconds before a running job is considered failed
    receive_timeout: int = 60  # max seconds to wait when collecting output


class RemediationConfig(BaseModel):
    """Remediation loop configuration."""

    poll_interval: float = 30.0  # seconds
    budget: int = 1200  # per-record wall-clock budget in seconds
    max_parallel: int = 20


class NotificationConfig(BaseModel):
    """Final report delivery configuration."""

    enabled: bool = True
    webhook_url: str | None = None
    recipients: list[str] = Field(default_factory=list)
    delimiter: str = "; "
    skip_self_corrected: bool = True


class ScanConfig(BaseModel):
    """Scheduled re-scan configuration."""

    schedule: str = "*/15 * * * *"
    timezone: str = "UTC"


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    file: str | None = None
    rotation: str = "10 MB"
    retention: int = 5


class VDIMedicConfig(BaseModel):
    """Main VDIMedic configuration."""

    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    diagnostics: DiagnosticsConfig = Field(default_factory=DiagnosticsConfig)
    remediation: RemediationConfig = Field(default_factory=RemediationConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    scan: ScanConfig = Field(default_factory=ScanConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
