"""
Sequential model downloads with throttled progress and retry on server 500s.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence, Tuple

from .config import GatewayConfig
from .control_plane import ControlPlaneClient, StreamExit
from .errors import ControlPlaneError
from .events import EventChannel
from .tables import parse_progress

logger = logging.getLogger(__name__)

TRANSIENT_SIGNATURES = (
    "response status code does not indicate success: 500",
    "internal server error",
    "500 (internal server error)",
)


def is_transient_failure(stderr: str) -> bool:
    text = (stderr or "").lower()
    return any(signature in text for signature in TRANSIENT_SIGNATURES)


class JobState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class DownloadJob:
    alias: str
    state: JobState = JobState.PENDING
    last_progress_percent: Optional[float] = None
    last_progress_line: Optional[str] = None
    log_buffer: List[str] = field(default_factory=list)
    attempt: int = 0
    retries: int = 0
    first_stderr: Optional[str] = None
    _flushed_progress: Optional[Tuple[float, str]] = field(default=None, repr=False)


@dataclass(frozen=True)
class AttemptResult:
    ok: bool
    exit_code: Optional[int]
    stderr: str

    def describe(self) -> str:
        if self.exit_code is None:
            return "could not start"
        return f"exit code {self.exit_code}"


class DownloadOrchestrator:
    def __init__(self, control_plane: ControlPlaneClient, config: GatewayConfig):
        self.control_plane = control_plane
        self.flush_interval_s = config.progress_flush_s
        self.max_retries = config.download_max_retries
        self.backoff_s = config.download_backoff_s

    async def start_downloads(
        self, aliases: Sequence[str], channel: EventChannel
    ) -> List[DownloadJob]:
        """Download each alias in turn, never two at once, then send {done}."""
        jobs = []
        for alias in aliases:
            job = DownloadJob(alias=alias)
            jobs.append(job)
            channel.log(f"Starting download for {alias}")
            await self._run_job(job, channel)
        channel.send({"done": True})
        return jobs

    async def _run_job(self, job: DownloadJob, channel: EventChannel) -> None:
        first = await self._attempt(job, channel)
        if first.ok:
            job.state = JobState.SUCCEEDED
            return

        job.first_stderr = first.stderr
        if not is_transient_failure(first.stderr):
            job.state = JobState.FAILED
            logger.error("Download failed for %s (%s):\n%s", job.alias, first.describe(), first.stderr)
            channel.send(
                {"error": f"Download failed for {job.alias} ({first.describe()})", "stderr": first.stderr}
            )
            return

        for retry in range(1, self.max_retries + 1):
            job.retries = retry
            channel.log(
                f"Detected server 500 for {job.alias}, retry attempt {retry} of {self.max_retries}..."
            )
            await self._probe_cache(channel)
            await asyncio.sleep(self.backoff_s * retry)
            result = await self._attempt(job, channel)
            if result.ok:
                job.state = JobState.SUCCEEDED
                channel.log(f"Retry succeeded for {job.alias}")
                return
            channel.log(f"Retry {retry} for {job.alias} failed ({result.describe()})")

        job.state = JobState.FAILED
        logger.error("Download failed for %s after retries. First stderr:\n%s", job.alias, first.stderr)
        channel.send(
            {
                "error": f"Download failed for {job.alias} after {self.max_retries} retries",
                "stderr": first.stderr,
            }
        )

    async def _probe_cache(self, channel: EventChannel) -> None:
        try:
            result = await self.control_plane.run_once("cache", "list")
            channel.log(f"Cache check OK (len {len(result.stdout)})")
        except ControlPlaneError as e:
            channel.log(f"Cache check failed: {e}")

    async def _attempt(self, job: DownloadJob, channel: EventChannel) -> AttemptResult:
        job.attempt += 1
        job.state = JobState.RUNNING
        stderr_lines: List[str] = []
        exit_code = None

        ticker = asyncio.create_task(self._flush_every_interval(job, channel))
        try:
            async for item in self.control_plane.download(job.alias):
                if isinstance(item, StreamExit):
                    exit_code = item.exit_code
                elif item.channel == "stderr":
                    stderr_lines.append(item.text)
                    job.log_buffer.append(item.text)
                else:
                    self._take_stdout(job, item.text)
        except ControlPlaneError as e:
            ticker.cancel()
            channel.log(f"Download error for {job.alias}: {e}")
            return AttemptResult(ok=False, exit_code=None, stderr=e.stderr)
        finally:
            ticker.cancel()

        self._flush(job, channel)
        stderr = "".join(line + "\n" for line in stderr_lines)
        if exit_code == 0:
            channel.log(f"Download completed: {job.alias}")
            return AttemptResult(ok=True, exit_code=0, stderr=stderr)
        return AttemptResult(ok=False, exit_code=exit_code, stderr=stderr)

    @staticmethod
    def _take_stdout(job: DownloadJob, line: str) -> None:
        percent = parse_progress(line)
        if percent is None:
            job.log_buffer.append(line)
            return
        # progress travels in its own event field, not as a log line
        job.last_progress_percent = percent
        job.last_progress_line = line

    async def _flush_every_interval(self, job: DownloadJob, channel: EventChannel) -> None:
        while True:
            await asyncio.sleep(self.flush_interval_s)
            self._flush(job, channel)

    @staticmethod
    def _flush(job: DownloadJob, channel: EventChannel) -> None:
        if job.last_progress_percent is not None:
            current = (job.last_progress_percent, job.last_progress_line)
            if current != job._flushed_progress:
                job._flushed_progress = current
                channel.send(
                    {
                        "progress": job.last_progress_percent,
                        "progressLine": job.last_progress_line,
                        "alias": job.alias,
                    }
                )
        if job.log_buffer:
            channel.send({"log": "\n".join(job.log_buffer), "alias": job.alias})
            job.log_buffer.clear()
