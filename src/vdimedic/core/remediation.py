"""Remediation loop: drives diagnostic records to completion."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Awaitable, Callable

from loguru import logger

from vdimedic.core.clock import SYSTEM_CLOCK, Clock
from vdimedic.core.dispatcher import ActionDispatcher
from vdimedic.core.refresh import RecordRefresher
from vdimedic.models import DiagnosticRecord, RemediationAction, RemediationConfig


class RemediationLoop:
    """Runs refresh -> act cycles for many records concurrently.

    Each record gets its own task. Records share nothing except the
    collaborator clients, so one slow or failing record never holds up
    another.
    """

    def __init__(
        self,
        refresher: RecordRefresher,
        dispatcher: ActionDispatcher,
        config: RemediationConfig,
        clock: Clock = SYSTEM_CLOCK,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_finished: Callable[[DiagnosticRecord], Awaitable[None]] | None = None,
    ):
        """Initialize the remediation loop.

        Args:
            refresher: Read-only record refresher.
            dispatcher: Action dispatcher.
            config: Poll interval, per-record budget and parallelism.
            clock: Time source for the budget.
            sleep: Coroutine used between polls.
            on_finished: Called once per record when it is done or abandoned.
        """
        self._refresher = refresher
        self._dispatcher = dispatcher
        self._config = config
        self._clock = clock
        self._sleep = sleep
        self._on_finished = on_finished

    async def drive(self, record: DiagnosticRecord) -> DiagnosticRecord:
        """Drive one record until it completes or its budget runs out."""
        deadline = self._clock.now() + timedelta(seconds=self._config.budget)
        logger.info(f"[{record.label}] Remediation started (budget {self._config.budget}s)")

        while True:
            await self._refresher.refresh(record)
            if record.debugging_complete:
                break

            if record.suggested_action == RemediationAction.IGNORE:
                # Open but unverified: wait for the broker to answer
                logger.debug(f"[{record.label}] Hung status unknown, retrying next cycle")
            else:
                await self._dispatcher.invoke(record)
                if record.debugging_complete:
                    break

            if self._clock.now() >= deadline:
                await self._expire(record)
                break

            await self._sleep(self._config.poll_interval)

        record.finished_at = self._clock.now()
        logger.info(
            f"[{record.label}] Remediation finished: state={record.session_state.value} "
            f"actions={[a.value for a in record.action_log]} "
            f"restart_issued={record.restart_issued}"
        )

        if self._on_finished:
            await self._on_finished(record)

        return record

    async def _expire(self, record: DiagnosticRecord) -> None:
        """Give a record one last forced action, then abandon it."""
        record.budget_expired = True
        logger.warning(f"[{record.label}] Budget of {self._config.budget}s exhausted")
        record.debug_info.append(f"Remediation budget of {self._config.budget}s exhausted")

        await self._refresher.refresh(record)
        if (
            not record.debugging_complete
            and record.suggested_action != RemediationAction.IGNORE
        ):
            await self._dispatcher.invoke(record)

    async def _drive_guarded(
        self,
        record: DiagnosticRecord,
        semaphore: asyncio.Semaphore,
    ) -> DiagnosticRecord:
        async with semaphore:
            try:
                return await self.drive(record)
            except Exception as e:
                logger.exception(f"[{record.label}] Remediation crashed: {e}")
                record.debug_info.append(f"Remediation aborted: {type(e).__name__}: {e}")
                if record.finished_at is None:
                    # Crashed before reporting: still surface what was gathered
                    record.finished_at = self._clock.now()
                    if self._on_finished:
                        await self._on_finished(record)
                return record

    async def run(self, records: list[DiagnosticRecord]) -> list[DiagnosticRecord]:
        """Drive all records concurrently."""
        if not records:
            return []

        semaphore = asyncio.Semaphore(self._config.max_parallel)
        logger.info(
            f"Remediating {len(records)} sessions "
            f"(max {self._config.max_parallel} in parallel)"
        )
        return list(
            await asyncio.gather(
                *(self._drive_guarded(record, semaphore) for record in records)
            )
        )
