import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional

import requests
from omegaconf import DictConfig

from core.errors import FatalCallFailure, ReindexConflict, TransientCallFailure
from core.executor import CallExecutor, RETRYABLE_STATUS_CODES
from core.models import iso_now
from core.utils import create_session_with_retries, configure_session_for_ssl

logger = logging.getLogger(__name__)

CONFLICT_MARKERS = ['already in use', 'ongoing ingestion job', 'ingestion job is already running']
ACTIVE_STATUSES = {'STARTING', 'IN_PROGRESS', 'STOPPING'}
COMPLETE_STATUS = 'COMPLETE'
FAILED_STATUSES = {'FAILED', 'STOPPED'}


def is_conflict_message(message: str) -> bool:
    message = (message or '').lower()
    return any(marker in message for marker in CONFLICT_MARKERS)


@dataclass
class ReindexResult:
    status: str                         # 'started', 'complete', 'failed', 'skipped'
    message: str
    job_id: Optional[str] = None
    domain: Optional[str] = None
    started_at: Optional[str] = None
    final_status: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

# =============================================================================
# BACKENDS
# =============================================================================

class ReindexBackend(ABC):
    """
    Blocking client of a managed retrieval backend that can re-index the stored documents.

    start_job raises ReindexConflict when the backend reports that a job is already running.
    """
    name = 'backend'

    @abstractmethod
    def start_job(self, description: str) -> Dict[str, Any]:
        ...

    @abstractmethod
    def get_job(self, job_id: str) -> Dict[str, Any]:
        ...

    @abstractmethod
    def list_active_jobs(self) -> List[str]:
        ...


class BedrockReindexBackend(ReindexBackend):
    """Starts ingestion jobs on a Bedrock knowledge base data source (boto3 'bedrock-agent')."""
    name = 'bedrock'

    def __init__(self, knowledge_base_id: str, data_source_id: str, client):
        self.knowledge_base_id = knowledge_base_id
        self.data_source_id = data_source_id
        self.client = client

    def _raise(self, error: Exception):
        response = getattr(error, 'response', {}) or {}
        code = response.get('Error', {}).get('Code', '')
        status = response.get('ResponseMetadata', {}).get('HTTPStatusCode')
        message = str(error)
        if code == 'ConflictException' or is_conflict_message(message):
            raise ReindexConflict()
        if code in ('ThrottlingException', 'ServiceQuotaExceededException') or status in RETRYABLE_STATUS_CODES:
            raise TransientCallFailure(f"Bedrock call throttled: {message}", status_code=status)
        raise FatalCallFailure(f"Bedrock call failed: {message}", status_code=status)

    @staticmethod
    def _job_dict(job: Dict[str, Any]) -> Dict[str, Any]:
        started_at = job.get('startedAt')
        updated_at = job.get('updatedAt')
        return {
            'job_id': job.get('ingestionJobId'),
            'status': job.get('status', 'UNKNOWN'),
            'started_at': started_at.isoformat() if hasattr(started_at, 'isoformat') else started_at,
            'updated_at': updated_at.isoformat() if hasattr(updated_at, 'isoformat') else updated_at,
            'failure_reasons': job.get('failureReasons', []),
        }

    def start_job(self, description):
        try:
            response = self.client.start_ingestion_job(
                knowledgeBaseId=self.knowledge_base_id,
                dataSourceId=self.data_source_id,
                description=description,
            )
        except Exception as e:
            self._raise(e)
        return self._job_dict(response['ingestionJob'])

    def get_job(self, job_id):
        try:
            response = self.client.get_ingestion_job(
                knowledgeBaseId=self.knowledge_base_id,
                dataSourceId=self.data_source_id,
                ingestionJobId=job_id,
            )
        except Exception as e:
            self._raise(e)
        return self._job_dict(response['ingestionJob'])

    def list_active_jobs(self):
        try:
            response = self.client.list_ingestion_jobs(
                knowledgeBaseId=self.knowledge_base_id,
                dataSourceId=self.data_source_id,
                maxResults=10,
            )
        except Exception as e:
            self._raise(e)
        return [
            job.get('ingestionJobId') for job in response.get('ingestionJobSummaries', [])
            if job.get('status') in ACTIVE_STATUSES
        ]


class HttpReindexBackend(ReindexBackend):
    """
    Generic HTTP re-index endpoint.

    POST {endpoint}/jobs starts a job, GET {endpoint}/jobs/{id} reads it and
    GET {endpoint}/jobs?status=active lists running jobs. A 409 reply means a job
    is already running.
    """
    name = 'http'

    def __init__(self, endpoint: str, api_key: Optional[str] = None, timeout: int = 30,
                 session: Optional[requests.Session] = None, ssl_verify=None):
        self.endpoint = endpoint.rstrip('/')
        self.timeout = timeout
        self.headers = {'Content-Type': 'application/json'}
        if api_key:
            self.headers['Authorization'] = f"Bearer {api_key}"
        if session is None:
            session = create_session_with_retries(retries=0)
            configure_session_for_ssl(session, {'ssl_verify': ssl_verify})
        self.session = session

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.endpoint}{path}"
        try:
            response = self.session.request(method, url, headers=self.headers, timeout=self.timeout, **kwargs)
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            raise TransientCallFailure(f"Re-index endpoint unreachable: {e}")
        if response.status_code == 409 or (response.status_code >= 400 and is_conflict_message(response.text)):
            raise ReindexConflict()
        if response.status_code in RETRYABLE_STATUS_CODES:
            raise TransientCallFailure(f"Re-index endpoint returned {response.status_code}",
                                       status_code=response.status_code)
        if response.status_code >= 400:
            raise FatalCallFailure(f"Re-index endpoint returned {response.status_code}: {response.text[:200]}",
                                   status_code=response.status_code)
        return response.json()

    @staticmethod
    def _job_dict(data: Dict[str, Any]) -> Dict[str, Any]:
        return {
            'job_id': data.get('job_id') or data.get('id'),
            'status': str(data.get('status', 'UNKNOWN')).upper(),
            'started_at': data.get('started_at'),
            'updated_at': data.get('updated_at'),
            'failure_reasons': data.get('failure_reasons', []),
        }

    def start_job(self, description):
        return self._job_dict(self._request('POST', '/jobs', json={'description': description}))

    def get_job(self, job_id):
        return self._job_dict(self._request('GET', f'/jobs/{job_id}'))

    def list_active_jobs(self):
        data = self._request('GET', '/jobs', params={'status': 'active'})
        jobs = data.get('jobs', []) if isinstance(data, dict) else data
        return [j.get('job_id') or j.get('id') for j in jobs
                if str(j.get('status', '')).upper() in ACTIVE_STATUSES]


def create_reindex_backend(cfg: DictConfig) -> Optional[ReindexBackend]:
    reindex_cfg = cfg.get('reindex', {})
    backend = reindex_cfg.get('backend', 'none')
    if backend in (None, 'none', ''):
        return None
    if backend == 'bedrock':
        import boto3

        if not reindex_cfg.get('knowledge_base_id') or not reindex_cfg.get('data_source_id'):
            raise ValueError("reindex.knowledge_base_id and reindex.data_source_id are required for bedrock")
        client_kwargs = {}
        if reindex_cfg.get('region'):
            client_kwargs['region_name'] = reindex_cfg.region
        client = boto3.client('bedrock-agent', **client_kwargs)
        return BedrockReindexBackend(reindex_cfg.knowledge_base_id, reindex_cfg.data_source_id, client)
    if backend == 'http':
        if not reindex_cfg.get('endpoint'):
            raise ValueError("reindex.endpoint is required for the http re-index backend")
        return HttpReindexBackend(
            reindex_cfg.endpoint,
            api_key=reindex_cfg.get('api_key'),
            timeout=reindex_cfg.get('timeout', 30),
            ssl_verify=reindex_cfg.get('ssl_verify'),
        )
    raise ValueError(f"Unknown reindex backend: {backend}")

# =============================================================================
# TRIGGER
# =============================================================================

class ReindexTrigger(object):
    """
    Start a backend re-index job after new content was stored, without colliding
    with a job that is already running.
    """
    def __init__(self, backend: Optional[ReindexBackend], executor: CallExecutor,
                 cfg: Optional[DictConfig] = None, sleep=asyncio.sleep, clock=time.monotonic):
        reindex_cfg = cfg.get('reindex', {}) if cfg is not None else {}
        self.backend = backend
        self.executor = executor
        self.availability_interval = reindex_cfg.get('availability_interval', 30)
        self.availability_timeout = reindex_cfg.get('availability_timeout', 300)
        self.completion_interval = reindex_cfg.get('completion_interval', 10)
        self.completion_timeout = reindex_cfg.get('completion_timeout', 300)
        self._sleep = sleep
        self._clock = clock

    @property
    def is_configured(self) -> bool:
        return self.backend is not None

    async def _wait_until_available(self) -> None:
        deadline = self._clock() + self.availability_timeout
        while True:
            active = await self.executor.run_sync(self.backend.list_active_jobs, operation="list re-index jobs")
            if not active:
                return
            if self._clock() >= deadline:
                logger.warning(f"Re-index backend still busy after {self.availability_timeout}s (jobs {active})")
                raise ReindexConflict(active_job_id=active[0])
            logger.info(f"Re-index job {active[0]} in progress, checking again in {self.availability_interval}s")
            await self._sleep(self.availability_interval)

    async def _wait_for_completion(self, job_id: str) -> Dict[str, Any]:
        deadline = self._clock() + self.completion_timeout
        while True:
            job = await self.executor.run_sync(self.backend.get_job, job_id, operation=f"re-index status {job_id}")
            if job['status'] == COMPLETE_STATUS or job['status'] in FAILED_STATUSES:
                return job
            if self._clock() >= deadline:
                logger.warning(f"Re-index job {job_id} not finished after {self.completion_timeout}s")
                return job
            await self._sleep(self.completion_interval)

    async def trigger(self, domain: Optional[str] = None, wait_for_completion: bool = False,
                      wait_for_availability: bool = False) -> ReindexResult:
        """
        Start a re-index job.

        Args:
            domain (str): what the job is for; used in the job description
            wait_for_completion (bool): poll until the job completes or fails
            wait_for_availability (bool): wait for a running job to finish before starting

        Returns:
            ReindexResult: 'skipped' when no backend is configured

        Raises:
            ReindexConflict: a job is already running on the backend
        """
        if not self.is_configured:
            logger.info("No re-index backend configured, skipping sync")
            return ReindexResult(status='skipped', message='No re-index backend configured', domain=domain)

        if wait_for_availability:
            await self._wait_until_available()

        description = f"Sync for {domain} at {iso_now()}" if domain else f"Sync at {iso_now()}"
        job = await self.executor.run_sync(self.backend.start_job, description, operation="start re-index job")
        job_id = job['job_id']
        logger.info(f"Started re-index job {job_id} on {self.backend.name} backend")
        result = ReindexResult(status='started', message='Re-index job started', job_id=job_id,
                               domain=domain, started_at=job.get('started_at'))

        if wait_for_completion:
            final = await self._wait_for_completion(job_id)
            result.final_status = final['status']
            if final['status'] == COMPLETE_STATUS:
                result.status, result.message = 'complete', 'Re-index job completed'
            elif final['status'] in FAILED_STATUSES:
                result.status = 'failed'
                result.message = f"Re-index job failed: {', '.join(final.get('failure_reasons') or []) or 'unknown'}"
        return result

    async def status(self, job_id: str) -> Dict[str, Any]:
        """
        Report a re-index job as {jobId, status, startedAt, updatedAt, failureReasons,
        isComplete, isFailed, isInProgress}.
        """
        if not self.is_configured:
            raise FatalCallFailure("No re-index backend configured")
        job = await self.executor.run_sync(self.backend.get_job, job_id, operation=f"re-index status {job_id}")
        status = job['status']
        return {
            'jobId': job.get('job_id', job_id),
            'status': status,
            'startedAt': job.get('started_at'),
            'updatedAt': job.get('updated_at'),
            'failureReasons': job.get('failure_reasons') or [],
            'isComplete': status == COMPLETE_STATUS,
            'isFailed': status in FAILED_STATUSES,
            'isInProgress': status in ACTIVE_STATUSES,
        }
