"""Local subprocess runner for remote diagnostic jobs.

Each job is a command (typically ``pwsh`` with ``Invoke-Command`` or ``ssh``)
that reaches out to the affected host. Output is streamed into a buffer as it
arrives so a job that never finishes can still be harvested.
"""

from __future__ import annotations

import asyncio
import codecs
import uuid
from datetime import datetime

from loguru import logger

from vdimedic.clients.base import JobNotFoundError, RemoteJobError, RemoteJobService
from vdimedic.models import JobHandle, JobRunState

READ_CHUNK_SIZE = 64 * 1024


class _RunningJob:
    """Bookkeeping for one spawned job."""

    def __init__(self, handle: JobHandle, process: asyncio.subprocess.Process):
        self.handle = handle
        self.process = process
        self.chunks: list[str] = []
        self.reader: asyncio.Task | None = None

    @property
    def output(self) -> str:
        return "".join(self.chunks)


class SubprocessJobRunner(RemoteJobService):
    """Runs diagnostic commands as local asyncio subprocesses."""

    def __init__(self, max_output_bytes: int = 1024 * 1024):
        """Initialize the job runner.

        Args:
            max_output_bytes: Output kept per job; the rest is read and dropped.
        """
        self._max_output_bytes = max_output_bytes
        self._jobs: dict[str, _RunningJob] = {}

    @staticmethod
    def render_command(host_name: str, payload: list[str]) -> list[str]:
        """Substitute the host name into a command template."""
        return [part.replace("{host}", host_name) for part in payload]

    async def submit(self, host_name: str, payload: list[str]) -> JobHandle:
        if not payload:
            raise RemoteJobError("Empty diagnostic command")

        cmd = self.render_command(host_name, payload)
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                stdin=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            raise RemoteJobError(f"Failed to start diagnostic job for {host_name}: {e}") from e

        handle = JobHandle(
            id=uuid.uuid4().hex[:12],
            host_name=host_name,
            submitted_at=datetime.now(),
        )
        job = _RunningJob(handle, process)
        job.reader = asyncio.create_task(self._read_output(job))
        self._jobs[handle.id] = job

        logger.info(f"Diagnostic job {handle.id} started for {host_name} (PID {process.pid})")
        return handle

    async def _read_output(self, job: _RunningJob) -> None:
        """Stream the job's output into its buffer until EOF."""
        stdout = job.process.stdout
        if stdout is None:
            await job.process.wait()
            return

        # Chunks, not lines: a single huge line must not stall the reader
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        remaining = self._max_output_bytes
        while True:
            data = await stdout.read(READ_CHUNK_SIZE)
            if not data:
                break
            if remaining > 0:
                kept = data[:remaining]
                remaining -= len(kept)
                job.chunks.append(decoder.decode(kept))
        job.chunks.append(decoder.decode(b"", final=True))

        await job.process.wait()
        logger.debug(
            f"Diagnostic job {job.handle.id} exited with code {job.process.returncode}"
        )

    def _get(self, handle: JobHandle) -> _RunningJob:
        job = self._jobs.get(handle.id)
        if job is None:
            raise JobNotFoundError(f"Unknown diagnostic job {handle.id}")
        return job

    async def poll(self, handle: JobHandle) -> JobRunState:
        job = self._get(handle)
        if job.reader is None or not job.reader.done():
            return JobRunState.RUNNING
        if job.process.returncode == 0:
            return JobRunState.COMPLETED
        return JobRunState.FAILED

    async def has_output(self, handle: JobHandle) -> bool:
        return any(self._get(handle).chunks)

    async def collect_output(
        self,
        handle: JobHandle,
        wait: bool = True,
        timeout: float | None = None,
    ) -> str:
        job = self._get(handle)

        if wait and job.reader is not None and not job.reader.done():
            try:
                # shield: a timed-out wait must not cancel the reader
                await asyncio.wait_for(asyncio.shield(job.reader), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    f"Diagnostic job {handle.id} still running after {timeout}s, "
                    f"collecting partial output"
                )

        return job.output

    def release(self, handle: JobHandle) -> None:
        """Drop bookkeeping for a job. The process itself is left alone.

        A job that is still running is dropped once its output is drained.
        """
        job = self._jobs.get(handle.id)
        if job is None:
            return
        if job.reader is None or job.reader.done():
            self._jobs.pop(handle.id, None)
            return
        job.reader.add_done_callback(lambda _: self._jobs.pop(handle.id, None))

    @property
    def job_count(self) -> int:
        """Number of jobs tracked by the runner."""
        return len(self._jobs)
