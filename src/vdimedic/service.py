"""Wires discovery, remediation and reporting into runnable passes."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from loguru import logger

from vdimedic.clients.base import (
    FleetQueryService,
    Notifier,
    PowerActionService,
    RemoteJobService,
)
from vdimedic.clients.broker import BrokerClient
from vdimedic.clients.jobs import SubprocessJobRunner
from vdimedic.core.clock import SYSTEM_CLOCK, Clock
from vdimedic.core.discovery import CandidateDiscovery, to_records
from vdimedic.core.dispatcher import ActionDispatcher
from vdimedic.core.refresh import RecordRefresher
from vdimedic.core.remediation import RemediationLoop
from vdimedic.core.reporter import NotificationReporter
from vdimedic.models import Candidate, DiagnosticRecord, SessionState, VDIMedicConfig
from vdimedic.notify import build_notifier


@dataclass
class PassSummary:
    """Outcome of one discovery + remediation pass."""

    candidates: list[Candidate] = field(default_factory=list)
    records: list[DiagnosticRecord] = field(default_factory=list)

    @property
    def restarted(self) -> int:
        return sum(1 for r in self.records if r.restart_issued)

    @property
    def recovered(self) -> int:
        return sum(1 for r in self.records if r.session_state == SessionState.WORKING)

    @property
    def expired(self) -> int:
        return sum(1 for r in self.records if r.budget_expired)

    @property
    def completed(self) -> int:
        return sum(1 for r in self.records if r.debugging_complete)


class RemediationService:
    """High level entry point used by the CLI."""

    def __init__(
        self,
        config: VDIMedicConfig,
        fleet: FleetQueryService,
        power: PowerActionService,
        jobs: RemoteJobService,
        notifier: Notifier,
        clock: Clock = SYSTEM_CLOCK,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config
        self.fleet = fleet
        self.jobs = jobs
        self.discovery = CandidateDiscovery(fleet, config.discovery)
        self.refresher = RecordRefresher(
            fleet, jobs, config.discovery, config.diagnostics, clock=clock
        )
        self.dispatcher = ActionDispatcher(
            jobs, power, self.refresher, config.diagnostics, clock=clock
        )
        self.reporter = NotificationReporter(notifier, config.notifications)
        self.loop = RemediationLoop(
            self.refresher,
            self.dispatcher,
            config.remediation,
            clock=clock,
            sleep=sleep,
            on_finished=self._on_finished,
        )

    @classmethod
    def from_config(cls, config: VDIMedicConfig) -> "RemediationService":
        """Build a service with the concrete broker, job and notifier adapters."""
        broker = BrokerClient(config.broker)
        return cls(
            config,
            fleet=broker,
            power=broker,
            jobs=SubprocessJobRunner(),
            notifier=build_notifier(config.notifications),
        )

    async def _on_finished(self, record: DiagnosticRecord) -> None:
        if record.job.handle is not None:
            self.jobs.release(record.job.handle)
        await self.reporter.report(record)

    def _endpoints(self, endpoints: list[str] | None) -> list[str]:
        endpoints = endpoints or self.config.broker.endpoints
        if not endpoints:
            logger.warning("No broker endpoints configured")
        return endpoints

    async def discover(
        self,
        endpoints: list[str] | None = None,
        group_pattern: str | None = None,
    ) -> list[Candidate]:
        """Find hung-session candidates."""
        return await self.discovery.discover(self._endpoints(endpoints), group_pattern)

    async def remediate(self, records: list[DiagnosticRecord]) -> list[DiagnosticRecord]:
        """Drive records to completion and report each one."""
        return await self.loop.run(records)

    async def debug_session(self, endpoint: str, session_id: str) -> DiagnosticRecord:
        """Remediate a single, explicitly named session."""
        record = DiagnosticRecord(admin_address=endpoint, session_id=session_id)
        results = await self.loop.run([record])
        return results[0]

    async def run_pass(
        self,
        endpoints: list[str] | None = None,
        group_pattern: str | None = None,
    ) -> PassSummary:
        """Run one discovery + remediation pass."""
        candidates = await self.discover(endpoints, group_pattern)
        summary = PassSummary(candidates=candidates)
        if not candidates:
            logger.info("No hung sessions found")
            return summary

        summary.records = await self.remediate(to_records(candidates))
        logger.info(
            f"Pass complete: {len(summary.records)} sessions, "
            f"{summary.restarted} restarted, {summary.recovered} recovered, "
            f"{summary.expired} timed out"
        )
        return summary

    async def close(self) -> None:
        """Release client connections."""
        close = getattr(self.fleet, "close", None)
        if close is not None:
            await close()
