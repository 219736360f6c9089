"""Interfaces for the external services VDIMedic drives.

The remediation core only talks to these abstractions, so the broker, the
remote job runner and the messaging gateway can be swapped (or faked in
tests) without touching the state machine.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from vdimedic.models import (
    JobHandle,
    JobRunState,
    MachineInfo,
    PowerActionHandle,
    SessionInfo,
)


class FleetQueryError(Exception):
    """A broker query failed."""

    pass


class ObjectNotFoundError(FleetQueryError):
    """The queried broker object no longer exists."""

    pass


class PowerActionError(Exception):
    """The broker rejected or failed a power action."""

    pass


class RemoteJobError(Exception):
    """A remote diagnostic job could not be submitted or collected."""

    pass


class JobNotFoundError(RemoteJobError):
    """The job runner no longer knows about a job handle."""

    pass


class FleetQueryService(ABC):
    """Read-only queries against a broker management endpoint."""

    @abstractmethod
    async def get_session(self, endpoint: str, session_id: str) -> SessionInfo:
        """Fetch a session.

        Raises:
            ObjectNotFoundError: The session no longer exists.
            FleetQueryError: Any other query failure.
        """

    @abstractmethod
    async def get_machine(self, endpoint: str, session_id: str) -> MachineInfo | None:
        """Fetch the machine hosting a session, or None when there is none."""

    @abstractmethod
    async def find_candidate_machines(
        self,
        endpoint: str,
        group_pattern: str,
        failure_reasons: list[str],
    ) -> list[MachineInfo]:
        """List machines in matching desktop groups with one of the failure reasons."""


class PowerActionService(ABC):
    """Power actions queued on a broker endpoint."""

    @abstractmethod
    async def reset(self, endpoint: str, machine_name: str) -> PowerActionHandle:
        """Queue a reset for a machine. The broker throttles and runs it later."""


class RemoteJobService(ABC):
    """Fire-and-forget diagnostic commands on remote hosts."""

    @abstractmethod
    async def submit(self, host_name: str, payload: list[str]) -> JobHandle:
        """Start a diagnostic job against a host."""

    @abstractmethod
    async def poll(self, handle: JobHandle) -> JobRunState:
        """Current run state of a job.

        Raises:
            JobNotFoundError: The job is unknown to the runner.
        """

    @abstractmethod
    async def has_output(self, handle: JobHandle) -> bool:
        """Whether the job has produced any output yet."""

    @abstractmethod
    async def collect_output(
        self,
        handle: JobHandle,
        wait: bool = True,
        timeout: float | None = None,
    ) -> str:
        """Collect the job output, optionally waiting for it to finish."""

    def release(self, handle: JobHandle) -> None:
        """Drop the runner's bookkeeping for a job whose record is finished."""


class Notifier(ABC):
    """Outbound messaging gateway."""

    @abstractmethod
    async def send(self, recipients: list[str], subject: str, body: str) -> bool:
        """Deliver a message. Returns True when accepted by the gateway."""
