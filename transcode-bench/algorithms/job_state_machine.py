"""
Canonical job lifecycle tracking for encoding jobs.

Jobs move forward through ``download -> queue -> encode -> upload`` and end in
one of the terminal statuses ``success``, ``partial`` or ``fail``. Provider
specific status vocabularies are mapped onto these names by the encoding
adapters; this module only records the transitions.
"""

import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional

import aiohttp

from common.errors import BenchmarkError, PollingExhaustedError
from configuration import MAX_POLL_RETRIES

logger = logging.getLogger(__name__)


class JobStatus:
    """Canonical job status names."""

    DOWNLOAD = 'download'
    QUEUE = 'queue'
    ENCODE = 'encode'
    UPLOAD = 'upload'
    SUCCESS = 'success'
    PARTIAL = 'partial'
    FAIL = 'fail'

    TERMINAL = frozenset([SUCCESS, PARTIAL, FAIL])

    # Forward progress rank; terminal statuses share the last rank
    RANK = {DOWNLOAD: 0, QUEUE: 1, ENCODE: 2, UPLOAD: 3, SUCCESS: 4, PARTIAL: 4, FAIL: 4}

    @classmethod
    def is_valid(cls, status) -> bool:
        return isinstance(status, str) and status in cls.RANK

    @classmethod
    def is_terminal(cls, status) -> bool:
        return status in cls.TERMINAL


def resolve_terminal_status(succeeded: int, failed: int) -> str:
    """Terminal status of a job from its output counts.

    Args:
        succeeded: Number of outputs produced successfully
        failed: Number of outputs that failed

    Returns:
        'success' if every output succeeded, 'partial' if some succeeded and
        some failed, 'fail' otherwise
    """
    if succeeded and failed:
        return JobStatus.PARTIAL
    if succeeded:
        return JobStatus.SUCCESS
    return JobStatus.FAIL


class Job:
    """One encoding job tracked from submission to a terminal status."""

    def __init__(self, job_id: str, input: str, status: str = JobStatus.QUEUE,
                 input_format: str = None, input_size: int = None,
                 output_prefix: str = None, outputs: List[dict] = None,
                 started: float = None):
        self.job_id = job_id
        self.input = input
        self.input_format = input_format
        self.input_size = input_size
        self.output_prefix = output_prefix
        self.outputs = outputs or []
        self.status = status
        self.start = started if started is not None else time.time()
        self.stop: Optional[float] = None
        # status -> time the status was first observed
        self.log: Dict[str, float] = {status: self.start}
        # status -> seconds spent in that status
        self.times: Dict[str, float] = {}
        self.stats: Optional[dict] = None
        self.output_files = 0
        self.output_size = 0

    @property
    def is_terminal(self) -> bool:
        return JobStatus.is_terminal(self.status)

    def __repr__(self):
        return f"Job(job_id={self.job_id!r}, status={self.status!r})"


class JobStateMachine:
    """Polls an encoding adapter and advances jobs through the canonical lifecycle.

    A poll asks the adapter for the status of every non-terminal job. Jobs
    the adapter omits, or reports with a status outside the canonical
    vocabulary, fail immediately. When the adapter returns nothing at all the
    poll is retried up to ``max_retries`` times before every pending job is
    failed.
    """

    def __init__(self, adapter, max_retries: int = MAX_POLL_RETRIES,
                 clock: Callable[[], float] = time.time, retry_delay: float = 0,
                 sleep=asyncio.sleep):
        self.adapter = adapter
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._clock = clock
        self._sleep = sleep
        self.jobs: Dict[str, Job] = {}

    def add_job(self, job: Job) -> Job:
        self.jobs[job.job_id] = job
        return job

    def pending_jobs(self) -> List[Job]:
        return [job for job in self.jobs.values() if not job.is_terminal]

    def is_complete(self) -> bool:
        return all(job.is_terminal for job in self.jobs.values())

    def counts(self) -> Dict[str, int]:
        counts = {status: 0 for status in JobStatus.RANK}
        for job in self.jobs.values():
            counts[job.status] += 1
        return counts

    async def poll(self) -> bool:
        """Poll every pending job once.

        Returns:
            True once every job is in a terminal status

        Raises:
            PollingExhaustedError: If the adapter returned no statuses on the
                first attempt and every retry; pending jobs are failed first
        """
        pending = self.pending_jobs()
        if not pending:
            return True

        job_ids = [job.job_id for job in pending]
        statuses = None
        for attempt in range(self.max_retries + 1):
            statuses = await self._fetch(job_ids)
            if statuses:
                break
            if attempt < self.max_retries:
                logger.warning(f"No job status returned for {len(job_ids)} jobs - retry {attempt + 1} of {self.max_retries}")
                if self.retry_delay:
                    await self._sleep(self.retry_delay)

        if not statuses:
            for job in pending:
                self._transition(job, JobStatus.FAIL)
            raise PollingExhaustedError(
                f"Unable to get job status after {self.max_retries} retries - {len(pending)} jobs failed",
                failed_jobs=job_ids)

        for job in pending:
            if job.job_id not in statuses:
                logger.error(f"Status for job {job.job_id} missing from poll response - setting status to fail")
                self._transition(job, JobStatus.FAIL)
                continue

            status = statuses[job.job_id]
            if not JobStatus.is_valid(status):
                logger.error(f"Job {job.job_id} reported invalid status {status!r} - setting status to fail")
                self._transition(job, JobStatus.FAIL)
                continue

            self.observe(job, status)

        return self.is_complete()

    def observe(self, job: Job, status: str) -> bool:
        """Record a reported status for ``job``.

        Returns:
            True if the report caused a transition
        """
        if status == job.status or status in job.log:
            logger.debug(f"Status for job {job.job_id} has not changed from {job.status}")
            return False
        if JobStatus.RANK[status] < JobStatus.RANK[job.status]:
            logger.debug(f"Ignoring status {status} for job {job.job_id} - already at {job.status}")
            return False
        self._transition(job, status)
        return True

    def _transition(self, job: Job, status: str) -> None:
        now = self._clock()
        previous = job.status
        job.times[previous] = now - job.log[previous]
        job.log[status] = now
        job.status = status
        if JobStatus.is_terminal(status):
            job.stop = now
        logger.info(f"Job {job.job_id} status changed from {previous} to {status}")

    async def _fetch(self, job_ids: List[str]) -> Optional[dict]:
        try:
            return await self.adapter.get_job_status(job_ids)
        except (BenchmarkError, aiohttp.ClientError) as e:
            logger.error(f"Job status request failed: {e}")
            return None
