import unittest
from datetime import datetime, timezone
from unittest.mock import MagicMock

from botocore.exceptions import ClientError
from omegaconf import OmegaConf

from core.errors import FatalCallFailure, ReindexConflict, TransientCallFailure
from core.executor import CallExecutor, RetryPolicy
from core.reindex import (
    BedrockReindexBackend, HttpReindexBackend, ReindexBackend, ReindexTrigger, create_reindex_backend,
    is_conflict_message,
)


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class FakeBackend(ReindexBackend):
    name = 'fake'

    def __init__(self, active=None, statuses=None, conflict=False):
        self.active = list(active or [])          # successive list_active_jobs answers
        self.statuses = list(statuses or [])      # successive get_job statuses
        self.conflict = conflict
        self.started = []

    def start_job(self, description):
        if self.conflict:
            raise ReindexConflict()
        self.started.append(description)
        return {'job_id': f"job-{len(self.started)}", 'status': 'STARTING', 'started_at': '2024-05-01T12:00:00',
                'updated_at': None, 'failure_reasons': []}

    def get_job(self, job_id):
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        reasons = ['document too large'] if status == 'FAILED' else []
        return {'job_id': job_id, 'status': status, 'started_at': None, 'updated_at': None,
                'failure_reasons': reasons}

    def list_active_jobs(self):
        if not self.active:
            return []
        return self.active.pop(0) if len(self.active) > 1 else self.active[0]


class TestReindexTrigger(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.executor = CallExecutor(name="backend", max_concurrent=2, min_interval=0.0,
                                     retry=RetryPolicy(max_retries=1, base_delay=0.0, jitter=0.0))

    async def asyncTearDown(self):
        await self.executor.close()

    def make_trigger(self, backend):
        cfg = OmegaConf.create({'reindex': {'availability_interval': 30, 'availability_timeout': 120,
                                            'completion_interval': 10, 'completion_timeout': 60}})
        return ReindexTrigger(backend, self.executor, cfg, sleep=self.clock.sleep, clock=self.clock)

    async def test_skipped_without_backend(self):
        trigger = self.make_trigger(None)
        self.assertFalse(trigger.is_configured)
        result = await trigger.trigger('acme.com')
        self.assertEqual(result.status, 'skipped')
        self.assertEqual(result.to_dict(), {'status': 'skipped', 'message': 'No re-index backend configured',
                                            'domain': 'acme.com'})

    async def test_started(self):
        backend = FakeBackend()
        result = await self.make_trigger(backend).trigger('acme.com')
        self.assertEqual(result.status, 'started')
        self.assertEqual(result.job_id, 'job-1')
        self.assertEqual(len(backend.started), 1)
        self.assertIn('acme.com', backend.started[0])

    async def test_conflict(self):
        with self.assertRaises(ReindexConflict):
            await self.make_trigger(FakeBackend(conflict=True)).trigger('acme.com')

    async def test_waits_for_availability(self):
        backend = FakeBackend(active=[['job-0'], []])
        result = await self.make_trigger(backend).trigger('acme.com', wait_for_availability=True)
        self.assertEqual(result.status, 'started')
        self.assertEqual(self.clock.sleeps, [30])

    async def test_availability_timeout(self):
        backend = FakeBackend(active=[['job-0']])
        with self.assertRaises(ReindexConflict) as ctx:
            await self.make_trigger(backend).trigger('acme.com', wait_for_availability=True)
        self.assertEqual(ctx.exception.active_job_id, 'job-0')
        self.assertEqual(backend.started, [])

    async def test_wait_for_completion(self):
        backend = FakeBackend(statuses=['IN_PROGRESS', 'IN_PROGRESS', 'COMPLETE'])
        result = await self.make_trigger(backend).trigger('acme.com', wait_for_completion=True)
        self.assertEqual(result.status, 'complete')
        self.assertEqual(result.final_status, 'COMPLETE')
        self.assertEqual(self.clock.sleeps, [10, 10])

    async def test_failed_job(self):
        backend = FakeBackend(statuses=['FAILED'])
        result = await self.make_trigger(backend).trigger('acme.com', wait_for_completion=True)
        self.assertEqual(result.status, 'failed')
        self.assertIn('document too large', result.message)

    async def test_completion_timeout_returns_last_status(self):
        backend = FakeBackend(statuses=['IN_PROGRESS'])
        result = await self.make_trigger(backend).trigger('acme.com', wait_for_completion=True)
        self.assertEqual(result.status, 'started')
        self.assertEqual(result.final_status, 'IN_PROGRESS')

    async def test_status(self):
        status = await self.make_trigger(FakeBackend(statuses=['COMPLETE'])).status('job-9')
        self.assertEqual(status['jobId'], 'job-9')
        self.assertTrue(status['isComplete'])
        self.assertFalse(status['isFailed'])
        self.assertFalse(status['isInProgress'])

        with self.assertRaises(FatalCallFailure):
            await self.make_trigger(None).status('job-9')


class TestHttpReindexBackend(unittest.TestCase):

    def setUp(self):
        self.session = MagicMock()
        self.backend = HttpReindexBackend('https://kb.acme.com/api/', api_key='secret', session=self.session)

    def respond(self, status_code, json_data=None, text=''):
        response = MagicMock()
        response.status_code = status_code
        response.json.return_value = json_data
        response.text = text
        self.session.request.return_value = response

    def test_start_job(self):
        self.respond(200, {'id': 'abc', 'status': 'starting'})
        job = self.backend.start_job('Sync for acme.com')
        self.assertEqual(job['job_id'], 'abc')
        self.assertEqual(job['status'], 'STARTING')
        args, kwargs = self.session.request.call_args
        self.assertEqual(args, ('POST', 'https://kb.acme.com/api/jobs'))
        self.assertEqual(kwargs['headers']['Authorization'], 'Bearer secret')

    def test_conflict(self):
        self.respond(409)
        with self.assertRaises(ReindexConflict):
            self.backend.start_job('Sync')
        self.respond(400, text='An ingestion job is already running')
        with self.assertRaises(ReindexConflict):
            self.backend.start_job('Sync')

    def test_errors(self):
        self.respond(503)
        with self.assertRaises(TransientCallFailure):
            self.backend.get_job('abc')
        self.respond(401, text='unauthorized')
        with self.assertRaises(FatalCallFailure):
            self.backend.get_job('abc')

    def test_list_active_jobs(self):
        self.respond(200, {'jobs': [{'id': 'a', 'status': 'in_progress'}, {'id': 'b', 'status': 'complete'}]})
        self.assertEqual(self.backend.list_active_jobs(), ['a'])


class TestBedrockReindexBackend(unittest.TestCase):

    def setUp(self):
        self.client = MagicMock()
        self.backend = BedrockReindexBackend('KB123', 'DS456', self.client)

    def test_start_job(self):
        self.client.start_ingestion_job.return_value = {'ingestionJob': {
            'ingestionJobId': 'job-1', 'status': 'STARTING',
            'startedAt': datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
        }}
        job = self.backend.start_job('Sync for acme.com')
        self.assertEqual(job['job_id'], 'job-1')
        self.assertEqual(job['started_at'], '2024-05-01T12:00:00+00:00')
        self.client.start_ingestion_job.assert_called_once_with(
            knowledgeBaseId='KB123', dataSourceId='DS456', description='Sync for acme.com')

    def test_error_mapping(self):
        self.client.start_ingestion_job.side_effect = ClientError(
            {'Error': {'Code': 'ConflictException', 'Message': 'busy'}}, 'StartIngestionJob')
        with self.assertRaises(ReindexConflict):
            self.backend.start_job('Sync')

        self.client.start_ingestion_job.side_effect = ClientError(
            {'Error': {'Code': 'ThrottlingException', 'Message': 'slow down'}}, 'StartIngestionJob')
        with self.assertRaises(TransientCallFailure):
            self.backend.start_job('Sync')

        self.client.start_ingestion_job.side_effect = ClientError(
            {'Error': {'Code': 'AccessDeniedException', 'Message': 'no'}}, 'StartIngestionJob')
        with self.assertRaises(FatalCallFailure):
            self.backend.start_job('Sync')

    def test_list_active_jobs(self):
        self.client.list_ingestion_jobs.return_value = {'ingestionJobSummaries': [
            {'ingestionJobId': 'a', 'status': 'IN_PROGRESS'},
            {'ingestionJobId': 'b', 'status': 'COMPLETE'},
        ]}
        self.assertEqual(self.backend.list_active_jobs(), ['a'])


class TestReindexHelpers(unittest.TestCase):

    def test_is_conflict_message(self):
        self.assertTrue(is_conflict_message('Data source is already in use by another job'))
        self.assertTrue(is_conflict_message('There is an ongoing ingestion job'))
        self.assertFalse(is_conflict_message('Access denied'))
        self.assertFalse(is_conflict_message(None))

    def test_create_reindex_backend(self):
        self.assertIsNone(create_reindex_backend(OmegaConf.create({'reindex': {'backend': 'none'}})))
        with self.assertRaises(ValueError):
            create_reindex_backend(OmegaConf.create({'reindex': {'backend': 'http'}}))
        with self.assertRaises(ValueError):
            create_reindex_backend(OmegaConf.create({'reindex': {'backend': 'carrier-pigeon'}}))
        backend = create_reindex_backend(OmegaConf.create({'reindex': {
            'backend': 'http', 'endpoint': 'https://kb.acme.com', 'api_key': 'k'}}))
        self.assertIsInstance(backend, HttpReindexBackend)


if __name__ == '__main__':
    unittest.main()
