"""Candidate discovery: find sessions that look hung."""

from __future__ import annotations

import asyncio

from loguru import logger

from vdimedic.clients.base import FleetQueryService
from vdimedic.core.record import looks_hung
from vdimedic.models import Candidate, DiagnosticRecord, DiscoveryConfig, MachineInfo


class CandidateDiscovery:
    """Scans broker endpoints for machines with the hung-session signature."""

    def __init__(self, fleet: FleetQueryService, config: DiscoveryConfig):
        self._fleet = fleet
        self._config = config

    def is_candidate(self, machine: MachineInfo) -> bool:
        """Whether a machine qualifies for remediation."""
        if not looks_hung(machine, self._config.hung_reasons):
            return False
        if self._config.single_session_only and machine.session_support != "SingleSession":
            return False
        return machine.session_id is not None

    async def _scan_endpoint(self, endpoint: str, group_pattern: str) -> list[Candidate]:
        try:
            machines = await self._fleet.find_candidate_machines(
                endpoint,
                group_pattern,
                self._config.hung_reasons,
            )
        except Exception as e:
            logger.error(f"Discovery failed on {endpoint}, skipping: {e}")
            return []

        candidates = [
            Candidate(endpoint=endpoint, session_id=m.session_id, machine=m)
            for m in machines
            if self.is_candidate(m)
        ]
        logger.info(
            f"{endpoint}: {len(candidates)} of {len(machines)} machines look hung"
        )
        return candidates

    async def discover(
        self,
        endpoints: list[str],
        group_pattern: str | None = None,
    ) -> list[Candidate]:
        """Scan all endpoints concurrently.

        An endpoint that fails is logged and left out; the others still
        contribute their candidates.
        """
        pattern = group_pattern or self._config.group_pattern
        results = await asyncio.gather(
            *(self._scan_endpoint(endpoint, pattern) for endpoint in endpoints)
        )

        seen: set[tuple[str, str]] = set()
        candidates = []
        for batch in results:
            for candidate in batch:
                key = (candidate.endpoint, candidate.session_id)
                if key in seen:
                    continue
                seen.add(key)
                candidates.append(candidate)

        return candidates


def to_records(candidates: list[Candidate]) -> list[DiagnosticRecord]:
    """Create fresh diagnostic records for discovered candidates."""
    return [
        DiagnosticRecord(
            admin_address=c.endpoint,
            session_id=c.session_id,
            host_name=c.machine.dns_name,
            machine_name=c.machine.machine_name,
            # Already matched the hung signature during discovery
            looks_hung=True,
        )
        for c in candidates
    ]
