"""Test suite for job lifecycle tracking."""

import sys
import os
import unittest
from unittest.mock import AsyncMock

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from algorithms.job_state_machine import Job, JobStateMachine, JobStatus, resolve_terminal_status
from common.errors import DispatchError, PollingExhaustedError


class Clock:

    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def resolve_cases():
    return [
        ((3, 0), JobStatus.SUCCESS),
        ((2, 1), JobStatus.PARTIAL),
        ((0, 2), JobStatus.FAIL),
        ((0, 0), JobStatus.FAIL),
    ]


class TestResolveTerminalStatus:

    def test_cases(self):
        for (succeeded, failed), expected in resolve_cases():
            assert resolve_terminal_status(succeeded, failed) == expected


class TestJobStateMachine(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.clock = Clock()
        self.adapter = AsyncMock()
        self.machine = JobStateMachine(self.adapter, clock=self.clock)

    def add(self, job_id, status=JobStatus.QUEUE):
        return self.machine.add_job(Job(job_id, f"{job_id}.mp4", status=status, started=self.clock()))

    async def test_encode_upload_success(self):
        job = self.add('job1')
        self.adapter.get_job_status.side_effect = [
            {'job1': JobStatus.ENCODE},
            {'job1': JobStatus.UPLOAD},
            {'job1': JobStatus.SUCCESS},
        ]

        for advance, expected_complete in ((5, False), (10, False), (2, True)):
            self.clock.now += advance
            self.assertEqual(await self.machine.poll(), expected_complete)

        self.assertEqual(job.status, JobStatus.SUCCESS)
        self.assertEqual(list(job.log), [JobStatus.QUEUE, JobStatus.ENCODE, JobStatus.UPLOAD, JobStatus.SUCCESS])
        self.assertEqual(job.times, {JobStatus.QUEUE: 5, JobStatus.ENCODE: 10, JobStatus.UPLOAD: 2})
        self.assertEqual(job.stop, 1017.0)

    async def test_only_pending_jobs_polled(self):
        self.add('done', status=JobStatus.SUCCESS)
        self.add('running')
        self.adapter.get_job_status.return_value = {'running': JobStatus.ENCODE}

        await self.machine.poll()

        self.adapter.get_job_status.assert_awaited_once_with(['running'])

    async def test_omitted_job_fails(self):
        self.add('job1')
        job2 = self.add('job2')
        self.adapter.get_job_status.return_value = {'job1': JobStatus.ENCODE}

        self.assertFalse(await self.machine.poll())

        self.assertEqual(job2.status, JobStatus.FAIL)
        self.assertIsNotNone(job2.stop)
        self.assertEqual(self.machine.jobs['job1'].status, JobStatus.ENCODE)

    async def test_invalid_status_fails_job(self):
        job = self.add('job1')
        self.adapter.get_job_status.return_value = {'job1': 'transcoding'}

        self.assertTrue(await self.machine.poll())
        self.assertEqual(job.status, JobStatus.FAIL)

    async def test_same_status_is_not_a_transition(self):
        job = self.add('job1')
        self.adapter.get_job_status.return_value = {'job1': JobStatus.QUEUE}

        await self.machine.poll()

        self.assertEqual(job.times, {})
        self.assertEqual(list(job.log), [JobStatus.QUEUE])

    async def test_status_never_regresses(self):
        job = self.add('job1')
        self.adapter.get_job_status.side_effect = [
            {'job1': JobStatus.ENCODE},
            {'job1': JobStatus.QUEUE},
            {'job1': JobStatus.DOWNLOAD},
        ]
        for _ in range(3):
            await self.machine.poll()

        self.assertEqual(job.status, JobStatus.ENCODE)
        self.assertEqual(list(job.log), [JobStatus.QUEUE, JobStatus.ENCODE])

    async def test_retries_then_recovers(self):
        job = self.add('job1')
        self.adapter.get_job_status.side_effect = [None, {}, {'job1': JobStatus.SUCCESS}]

        self.assertTrue(await self.machine.poll())

        self.assertEqual(self.adapter.get_job_status.await_count, 3)
        self.assertEqual(job.status, JobStatus.SUCCESS)

    async def test_adapter_errors_count_as_empty_responses(self):
        self.add('job1')
        self.adapter.get_job_status.side_effect = [DispatchError('down'), {'job1': JobStatus.ENCODE}]

        self.assertFalse(await self.machine.poll())
        self.assertEqual(self.adapter.get_job_status.await_count, 2)

    async def test_retry_exhaustion_fails_pending_jobs(self):
        job1 = self.add('job1')
        job2 = self.add('job2')
        self.adapter.get_job_status.return_value = None

        with self.assertRaises(PollingExhaustedError) as ctx:
            await self.machine.poll()

        self.assertEqual(self.adapter.get_job_status.await_count, 4)
        self.assertEqual(sorted(ctx.exception.failed_jobs), ['job1', 'job2'])
        self.assertEqual(job1.status, JobStatus.FAIL)
        self.assertEqual(job2.status, JobStatus.FAIL)
        self.assertTrue(self.machine.is_complete())

    async def test_counts(self):
        self.add('a', status=JobStatus.SUCCESS)
        self.add('b', status=JobStatus.FAIL)
        self.add('c')
        counts = self.machine.counts()
        self.assertEqual(counts[JobStatus.SUCCESS], 1)
        self.assertEqual(counts[JobStatus.FAIL], 1)
        self.assertEqual(counts[JobStatus.QUEUE], 1)

    async def test_no_jobs_is_complete(self):
        self.assertTrue(await self.machine.poll())
        self.adapter.get_job_status.assert_not_awaited()


if __name__ == '__main__':
    unittest.main()
