"""
AWS Elastic Transcoder encoding system implementation.
"""

import datetime
import json
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from algorithms.job_state_machine import JobStatus, resolve_terminal_status
from common.batch_executor import RequestDescriptor
from common.errors import DispatchError
from signing import SigningContext, get_signer
from signing.sigv4 import TIMESTAMP_FORMAT
from systems.base import EncodingSystem, StorageSystem

logger = logging.getLogger(__name__)

API_HOST = 'elastictranscoder.{region}.amazonaws.com'
API_SERVICE_ID = 'elastictranscoder'
JOBS_RESOURCE = '/2012-09-25/jobs'
PIPELINES_RESOURCE = '/2012-09-25/pipelines'

DEFAULT_REGION = 'us-east-1'
REGIONS = ['us-east-1', 'us-west-1', 'us-west-2', 'eu-west-1', 'ap-southeast-1',
           'ap-southeast-2', 'ap-northeast-1', 'sa-east-1']

# Read Job is limited by AWS to 4 requests per second
MAX_READ_JOB_REQUESTS_SEC = 4

# Pipeline selectors for service param 1 (otherwise a pipeline id or name)
PIPELINE_ALL = '_all_'
PIPELINE_FIRST = '_first_'


def api_json_encode(obj) -> str:
    """JSON encode a request body with every scalar value as a string.

    The Elastic Transcoder API only accepts string values, so numbers and
    booleans are stringified ('true'/'false') before encoding.
    """
    def stringify(value):
        if isinstance(value, dict):
            return {key: stringify(val) for key, val in value.items()}
        if isinstance(value, (list, tuple)):
            return [stringify(val) for val in value]
        if isinstance(value, bool):
            return 'true' if value else 'false'
        if isinstance(value, (int, float)):
            return str(value)
        return value

    return json.dumps(stringify(obj))


class ElasticTranscoderSystem(EncodingSystem):
    """AWS Elastic Transcoder encoding system."""

    name = 'aws'
    initial_status_download = False

    def __init__(self, executor, key: str, secret: str = None, region: str = None,
                 params: Dict[str, str] = None, clock=None, **kwargs):
        super().__init__(executor, key, secret, region or DEFAULT_REGION, params, **kwargs)
        self.signer = get_signer('aws')
        self.host = API_HOST.format(region=self.region)
        self.pipeline_selector = self.params.get('param1') or PIPELINE_ALL
        self.preset_id = self.params.get('param2')
        self.pipelines: Optional[Dict[str, str]] = None
        self._pipeline_index = 0
        self._clock = clock or (lambda: datetime.datetime.now(datetime.timezone.utc))

    def _url(self, uri: str, params: Dict[str, str] = None) -> str:
        url = f"https://{self.host}{uri if uri.startswith('/') else '/' + uri}"
        if params:
            url += '?' + '&'.join(f"{quote(str(k), safe='')}={quote(str(v), safe='')}" for k, v in params.items())
        return url

    def _request(self, uri: str, method: str = 'GET', params: Dict[str, str] = None,
                 body: Dict[str, Any] = None) -> RequestDescriptor:
        payload = api_json_encode(body) if body is not None and method in ('POST', 'PUT') else ''
        headers = {'host': self.host, 'x-amz-date': self._clock().strftime(TIMESTAMP_FORMAT)}
        if payload:
            headers['content-type'] = 'application/json'
        context = SigningContext(
            access_key=self.key,
            secret=self.secret,
            method=method,
            uri=uri,
            region=self.region,
            service=API_SERVICE_ID,
            query=params,
            headers=headers,
            payload=payload,
        )
        headers = self.signer.sign(context)
        return RequestDescriptor(self._url(uri, params), method, headers, body=payload or None)

    async def _invoke(self, uri: str, method: str = 'GET', body: Dict[str, Any] = None):
        return await self.invoke_api(lambda: self._request(uri, method, body=body), f"{method} {uri}")

    async def init(self, storage: StorageSystem = None) -> bool:
        """Select the pipelines jobs are submitted to."""
        pipelines = await self.get_pipelines(storage.container if storage else None)
        if pipelines is None:
            logger.error("Unable to get account AWS transcoder pipelines")
            return False

        selected = {}
        for pipeline_id, name in pipelines.items():
            if self.pipeline_selector in (PIPELINE_ALL, PIPELINE_FIRST) or self.pipeline_selector in (pipeline_id, name):
                selected[pipeline_id] = name
                logger.info(f"Added pipeline {pipeline_id}/{name} matching pipeline parameter {self.pipeline_selector}")
                if self.pipeline_selector != PIPELINE_ALL:
                    break

        if not selected:
            logger.error(f"Unable to find a matching pipeline for pipeline parameter {self.pipeline_selector}")
            return False

        self.pipelines = selected
        logger.info(f"Initialization successful - {len(selected)} pipelines assigned and API host {self.host}")
        return True

    async def get_pipelines(self, bucket: str = None) -> Optional[Dict[str, str]]:
        """Active pipelines whose input and output bucket is ``bucket``.

        Returns:
            Mapping of pipeline id to name, or None on error
        """
        response = await self._invoke(PIPELINES_RESOURCE)
        if not isinstance(response, dict) or not isinstance(response.get('Pipelines'), list):
            return None

        pipelines = {}
        for pipeline in response['Pipelines']:
            pipeline_id = pipeline.get('Id')
            if pipeline.get('Status') != 'Active':
                logger.debug(f"Skipping pipeline {pipeline_id} because status is not Active")
            elif bucket and (pipeline.get('InputBucket') != bucket or pipeline.get('OutputBucket') != bucket):
                logger.debug(f"Skipping pipeline {pipeline_id} because its buckets are not {bucket}")
            else:
                pipelines[pipeline_id] = pipeline.get('Name')
        return pipelines

    def next_pipeline(self) -> Optional[str]:
        if not self.pipelines:
            return None
        return list(self.pipelines)[self._pipeline_index % len(self.pipelines)]

    async def authenticate(self) -> bool:
        return bool(self.pipelines)

    async def encode(self, storage, input, input_format, input_size, format, settings, outputs) -> Optional[str]:
        pipeline_id = self.next_pipeline()
        if not pipeline_id:
            logger.error("Unable to initiate encoding - no pipeline available")
            return None

        job = {'Input': {'Key': input}, 'Outputs': [], 'PipelineId': pipeline_id}
        for output in outputs:
            preset_id = output.get('preset_id') or self.preset_id
            if not preset_id:
                logger.error(f"No preset configured for output {output['output']} - aborting job")
                return None
            job_output = {'Key': output['output'], 'ThumbnailPattern': '', 'PresetId': preset_id}
            if settings.get('hls'):
                # Segments and the playlist are named after the key without its extension
                job_output['Key'] = job_output['Key'].replace('.m3u8', '')
                job_output['SegmentDuration'] = settings.get('hls_segment')
            job['Outputs'].append(job_output)

        response = await self._invoke(JOBS_RESOURCE, 'POST', body=job)
        job_id = response.get('Job', {}).get('Id') if isinstance(response, dict) else None
        if not job_id:
            logger.error(f"Unable to create job for input {input}")
            return None

        logger.info(f"Encode job started successfully - job ID {job_id} on pipeline {pipeline_id}")
        self._pipeline_index = (self._pipeline_index + 1) % len(self.pipelines)
        return job_id

    @staticmethod
    def map_job_status(job: Dict[str, Any]) -> str:
        """Canonical status of a job from the status of its outputs."""
        queued = encoding = complete = failed = 0
        for output in job.get('Outputs') or []:
            status = output.get('Status')
            if status == 'Submitted':
                queued += 1
            elif status in ('In Progress', 'Progressing'):
                encoding += 1
            elif status == 'Complete':
                complete += 1
            else:
                failed += 1

        if encoding:
            return JobStatus.ENCODE
        if queued:
            return JobStatus.QUEUE
        return resolve_terminal_status(complete, failed)

    async def get_job_status(self, job_ids: List[str]) -> Optional[Dict[str, str]]:
        if not job_ids:
            logger.error("Invoked without specifying any job ids")
            return None

        ceiling = min(self.executor.max_per_second or MAX_READ_JOB_REQUESTS_SEC, MAX_READ_JOB_REQUESTS_SEC)
        requests = [self._request(f"{JOBS_RESOURCE}/{job_id}") for job_id in job_ids]
        try:
            result = await self.executor.execute(requests, capture_body=True, max_per_second=ceiling)
        except DispatchError as e:
            logger.error(f"Unable to invoke job status API requests: {e}")
            return None

        statuses = {}
        for job_id, outcome in zip(job_ids, result):
            if not outcome.ok:
                logger.error(f"Unable to get status for job {job_id} - status code {outcome.status}. Setting job status to fail")
                statuses[job_id] = JobStatus.FAIL
                continue
            try:
                job = json.loads(outcome.body)['Job']
                if not isinstance(job.get('Outputs'), list) or 'Status' not in job:
                    raise KeyError('Outputs')
            except (ValueError, KeyError, TypeError, AttributeError):
                logger.error(f"Read job response for job {job_id} is missing Job Status or Outputs. Setting job status to fail")
                statuses[job_id] = JobStatus.FAIL
                continue
            statuses[job_id] = self.map_job_status(job)
            logger.debug(f"Set status of job {job_id} to {statuses[job_id]} using API status {job['Status']}")
        return statuses or None

    async def job_stats(self, job_id: str) -> Optional[Dict[str, Any]]:
        response = await self._invoke(f"{JOBS_RESOURCE}/{job_id}")
        job = response.get('Job') if isinstance(response, dict) else None
        if not job or not isinstance(job.get('Outputs'), list):
            logger.error(f"Read job response for job {job_id} did not include Job Status or Outputs")
            return None

        stats: Dict[str, Any] = {'output_failed': 0, 'output_success': 0}
        durations, resolutions = [], []
        for output in job['Outputs']:
            if output.get('Status') != 'Complete':
                stats['output_failed'] += 1
                continue
            stats['output_success'] += 1
            if output.get('Duration') is not None:
                durations.append(str(output['Duration']))
            if output.get('Width') and output.get('Height'):
                resolutions.append(f"{int(output['Width'])}x{int(output['Height'])}")
        if durations:
            stats['output_durations'] = ','.join(durations)
        if resolutions:
            stats['output_video_resolutions'] = ','.join(resolutions)
        return stats

    def same_region(self, storage: StorageSystem) -> bool:
        return storage.api == 's3' and storage.region == self.region

    def validate_region(self, region: Optional[str]) -> bool:
        return (region or DEFAULT_REGION) in REGIONS
