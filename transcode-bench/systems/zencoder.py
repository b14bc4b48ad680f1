"""
Zencoder encoding system implementation.

Service parameters:
    param1: Name of account credentials stored with Zencoder for storage access.
        Without it storage keys are embedded in input and output URLs
    param2: '1' to submit jobs in test mode
    param3: '1' to enable strict mode on outputs
"""

import datetime
import json
import logging
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote_plus

from algorithms.job_state_machine import JobStatus, resolve_terminal_status
from common.batch_executor import RequestDescriptor
from common.errors import DispatchError
from systems.base import EncodingSystem, StorageSystem

logger = logging.getLogger(__name__)

API_URL = 'https://app.zencoder.com/api/v2/'
API_KEY_HEADER = 'Zencoder-Api-Key'
DEFAULT_REGION = 'us'

# Zencoder region -> (storage api, storage region) of the co-located storage
STORAGE_REGIONS: Dict[str, Tuple[str, str]] = {
    'us': ('s3', 'us-east-1'),
    'us-virginia': ('s3', 'us-east-1'),
    'europe': ('s3', 'eu-west-1'),
    'eu-dublin': ('s3', 'eu-west-1'),
    'asia': ('s3', 'ap-southeast-1'),
    'asia-singapore': ('s3', 'ap-southeast-1'),
    'sa': ('s3', 'sa-east-1'),
    'sa-saopaulo': ('s3', 'sa-east-1'),
    'australia': ('s3', 'ap-southeast-2'),
    'australia-sydney': ('s3', 'ap-southeast-2'),
    'us-oregon': ('s3', 'us-west-2'),
    'us-n-california': ('s3', 'us-west-1'),
    'asia-tokyo': ('s3', 'ap-northeast-1'),
    'us-central-gce': ('gcs', 'us-central1'),
    'eu-west-gce': ('gcs', 'europe-west1'),
}

# Media file attributes reported as input stats
_INPUT_STATS = [
    ('audio_bitrate_in_kbps', 'audio_bit_rate'),
    ('audio_sample_rate', 'audio_sample_rate'),
    ('channels', 'audio_channels'),
    ('audio_codec', 'audio_codec'),
    ('total_bitrate_in_kbps', 'total_bit_rate'),
    ('video_bitrate_in_kbps', 'video_bit_rate'),
    ('video_codec', 'video_codec'),
    ('frame_rate', 'video_frame_rate'),
]

# Media file attributes collected across outputs
_OUTPUT_STATS = [
    ('audio_bitrate_in_kbps', 'output_audio_bit_rate'),
    ('audio_sample_rate', 'output_audio_sample_rates'),
    ('channels', 'output_audio_channels'),
    ('audio_codec', 'output_audio_codecs'),
    ('format', 'output_formats'),
    ('total_bitrate_in_kbps', 'output_total_bit_rates'),
    ('video_bitrate_in_kbps', 'output_video_bit_rates'),
    ('video_codec', 'output_video_codecs'),
    ('frame_rate', 'output_video_frame_rates'),
]


def _timestamp(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        parsed = datetime.datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        logger.warning(f"Unable to parse timestamp {value}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed.timestamp()


def _number(value):
    if isinstance(value, (int, float)):
        return value
    try:
        return float(value) if '.' in str(value) else int(value)
    except (TypeError, ValueError):
        return value


class ZencoderSystem(EncodingSystem):
    """Zencoder encoding system."""

    name = 'zencoder'
    initial_status_download = True

    def __init__(self, executor, key: str, secret: str = None, region: str = None,
                 params: Dict[str, str] = None, **kwargs):
        super().__init__(executor, key, secret, region, params, **kwargs)
        self.credentials = None
        self.test_mode = False
        self.strict_mode = False

    async def init(self, storage: StorageSystem = None) -> bool:
        self.credentials = self.params.get('param1') or None
        self.test_mode = self.params.get('param2') == '1'
        self.strict_mode = self.params.get('param3') == '1'
        self.region = self.region or DEFAULT_REGION
        logger.info(f"Initialized Zencoder in region {self.region} - credentials: {self.credentials}; "
                    f"test mode: {self.test_mode}; strict mode: {self.strict_mode}")
        return True

    def _headers(self, method: str = 'GET') -> Dict[str, str]:
        headers = {API_KEY_HEADER: self.key}
        if method in ('POST', 'PUT'):
            headers['Content-Type'] = 'application/json'
        return headers

    @staticmethod
    def _url(action: str, prefix: str = None) -> str:
        return f"{API_URL}{prefix or ''}{action}.json"

    def _request(self, action: str, method: str = 'GET', body: Dict[str, Any] = None,
                 prefix: str = None) -> RequestDescriptor:
        data = json.dumps(body) if body is not None and method in ('POST', 'PUT') else None
        return RequestDescriptor(self._url(action, prefix), method, self._headers(method), body=data)

    async def _invoke(self, action: str, method: str = 'GET', body: Dict[str, Any] = None,
                      prefix: str = None):
        return await self.invoke_api(lambda: self._request(action, method, body, prefix),
                                     f"{method} {prefix or ''}{action}")

    def storage_url(self, storage: StorageSystem, object_key: str) -> Optional[str]:
        """Zencoder URL of an object in ``storage``.

        Storage keys are embedded in the URL unless named credentials are
        configured.
        """
        if storage.api not in ('s3', 'gcs'):
            return None
        url = f"{storage.api}://"
        if not self.credentials:
            url += f"{quote_plus(storage.key or '')}:{quote_plus(storage.secret or '')}@"
        return f"{url}{storage.container}/{object_key}"

    async def authenticate(self) -> bool:
        response = await self._invoke('account')
        if isinstance(response, dict) and response.get('account_state') == 'active':
            logger.info("Zencoder authentication successful")
            return True
        logger.error("Zencoder authentication failed - account is not active")
        return False

    async def encode(self, storage, input, input_format, input_size, format, settings, outputs) -> Optional[str]:
        url = self.storage_url(storage, input)
        if not url:
            logger.error(f"Unable to get input URL for object {input} in {storage.api} storage")
            return None

        job: Dict[str, Any] = {
            'input': url,
            'download_connections': self.number_of_downloaders(input_size or 0),
            'outputs': [],
        }
        if self.region != DEFAULT_REGION:
            job['region'] = self.region
        if self.test_mode:
            job['test'] = True
        if self.credentials:
            job['credentials'] = self.credentials

        for output in outputs:
            job['outputs'].append(self._output(storage, format, settings, output))

        response = await self._invoke('jobs', 'POST', job)
        if not isinstance(response, dict) or not response.get('outputs'):
            logger.error(f"Unable to submit job for input {input}")
            return None

        job_id = str(response['id'])
        if len(response['outputs']) != len(job['outputs']):
            logger.warning(f"Number of job outputs {len(response['outputs'])} does not match "
                           f"number of requested outputs {len(job['outputs'])}")
        logger.info(f"Job submitted successfully - job ID {job_id}, outputs {len(response['outputs'])}")
        return job_id

    def _output(self, storage: StorageSystem, format: str, settings: Dict[str, Any],
                output: Dict[str, Any]) -> Dict[str, Any]:
        entry: Dict[str, Any] = {
            'url': self.storage_url(storage, output['output']),
            'format': format,
            'audio_bitrate': output.get('audio_bitrate'),
            'audio_codec': settings.get('audio_codec'),
        }
        if settings.get('hls'):
            entry['format'] = 'aac' if output.get('audio_only') else 'ts'
            entry['type'] = 'segmented'
        if self.strict_mode:
            entry['strict'] = True
        if self.credentials:
            entry['credentials'] = self.credentials
        if settings.get('audio_aac_profile') not in (None, 'auto'):
            entry['max_aac_profile'] = settings['audio_aac_profile']
        if settings.get('audio_sample_rate') not in (None, 'auto'):
            entry['audio_sample_rate'] = settings['audio_sample_rate']

        if not output.get('audio_only'):
            if settings.get('bframes'):
                entry['h264_bframes'] = settings['bframes']
            if output.get('h264_profile'):
                entry['h264_profile'] = output['h264_profile']
            if settings.get('reference_frames'):
                entry['h264_reference_frames'] = settings['reference_frames']
            if output.get('keyframe') is not None:
                entry['keyframe_rate'] = output['keyframe']
            if output.get('frame_rate') is not None:
                entry['max_frame_rate'] = output['frame_rate']
            entry['one_pass'] = not settings.get('two_pass')
            if settings.get('hls') and settings.get('hls_segment'):
                entry['segment_seconds'] = settings['hls_segment']
            if output.get('video_bitrate') is not None:
                entry['video_bitrate'] = output['video_bitrate']
            if settings.get('video_codec'):
                entry['video_codec'] = settings['video_codec']
            if output.get('width') is not None:
                entry['width'] = output['width']

        logger.debug(f"Added encoding output: {'; '.join(f'{k}={v}' for k, v in sorted(entry.items()) if k != 'url')}")
        return entry

    @staticmethod
    def map_progress(response: Dict[str, Any]) -> Optional[str]:
        """Canonical status of a job from its progress response.

        Returns:
            The status, or None if the response matches no known lifecycle stage
        """
        state = response['state']
        input_info = response['input']
        outputs = response['outputs']

        states = set()
        queued = uploading = succeeded = failed = 0
        for output in outputs:
            output_state = str(output.get('state', '')).strip().lower()
            states.add(output_state)
            if str(output.get('current_event', '')).strip().lower() == 'uploading':
                uploading += 1
            if output_state in ('queued', 'assigning'):
                queued += 1
            elif output_state == 'finished':
                succeeded += 1
            elif output_state == 'failed':
                failed += 1

        if input_info.get('state') in ('queued', 'processing') or 'current_event' in input_info:
            return JobStatus.DOWNLOAD
        if queued:
            return JobStatus.QUEUE
        if 'processing' in states:
            pending = len(outputs) - succeeded - failed
            return JobStatus.ENCODE if uploading != pending else JobStatus.UPLOAD
        if state == 'finished':
            return resolve_terminal_status(succeeded, failed)
        if state in ('failed', 'cancelled'):
            return JobStatus.PARTIAL if succeeded else JobStatus.FAIL
        return None

    async def get_job_status(self, job_ids: List[str]) -> Optional[Dict[str, str]]:
        if not job_ids:
            logger.error("Invoked without specifying any job ids")
            return None

        requests = [self._request('progress', prefix=f"jobs/{job_id}/") for job_id in job_ids]
        try:
            result = await self.executor.execute(requests, capture_body=True)
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
                response = json.loads(outcome.body)
                if not response['outputs'] or 'state' not in response['input'] or 'state' not in response:
                    raise KeyError('outputs')
            except (ValueError, KeyError, TypeError):
                logger.error(f"Status response for job {job_id} did not include state, input or outputs. Setting job status to fail")
                statuses[job_id] = JobStatus.FAIL
                continue

            status = self.map_progress(response)
            if status is None:
                logger.error(f"Failed to determine status of job {job_id} from state {response['state']}")
                continue
            statuses[job_id] = status
            logger.debug(f"Status of job {job_id} is {status}")
        return statuses or None

    async def job_stats(self, job_id: str) -> Optional[Dict[str, Any]]:
        response = await self._invoke(job_id, prefix='jobs/')
        job = response.get('job') if isinstance(response, dict) else None
        if not job or 'input_media_file' not in job:
            logger.error(f"Job stats API response for {job_id} does not have the input_media_file key")
            return None

        media = job['input_media_file'] or {}
        stats: Dict[str, Any] = {}
        for field, stat in _INPUT_STATS:
            if media.get(field) is not None:
                stats[stat] = _number(media[field]) if stat not in ('audio_codec', 'video_codec') else media[field]
        if media.get('duration_in_ms') is not None:
            stats['duration'] = media['duration_in_ms'] / 1000
        if media.get('width') and media.get('height'):
            stats['video_resolution'] = f"{int(media['width'])}x{int(media['height'])}"

        errors = [media['error_message']] if media.get('error_message') else []
        starts = [t for t in (_timestamp(job.get('created_at')), _timestamp(job.get('submitted_at'))) if t]
        if starts:
            stats['job_start'] = min(starts)
        else:
            logger.warning(f"Unable to determine created_at or submitted_at for job {job_id}")

        collected: Dict[str, List[str]] = {stat: [] for _, stat in _OUTPUT_STATS}
        collected['output_durations'] = []
        collected['output_video_resolutions'] = []
        finished = [t for t in [_timestamp(job.get('finished_at'))] if t]
        output_success = output_failed = 0
        for output in job.get('output_media_files') or []:
            stop = _timestamp(output.get('finished_at'))
            if stop:
                finished.append(stop)
            if output.get('error_message') and output['error_message'] not in errors:
                errors.append(output['error_message'])
            if output.get('state') == 'failed':
                output_failed += 1
            else:
                output_success += 1
            for field, stat in _OUTPUT_STATS:
                if output.get(field) is not None:
                    collected[stat].append(str(output[field]))
            if output.get('duration_in_ms') is not None:
                collected['output_durations'].append(str(output['duration_in_ms'] / 1000))
            if output.get('width') and output.get('height'):
                collected['output_video_resolutions'].append(f"{int(output['width'])}x{int(output['height'])}")

        if finished:
            stats['job_stop'] = max(finished)
        if 'job_start' in stats and 'job_stop' in stats:
            stats['job_time'] = stats['job_stop'] - stats['job_start']
        if errors:
            stats['error'] = '; '.join(errors)
        stats['output_failed'] = output_failed
        stats['output_success'] = output_success
        stats.update({stat: ','.join(values) for stat, values in collected.items() if values})

        logger.debug(f"Got stats for job {job_id}: {'; '.join(f'{k}={v}' for k, v in stats.items())}")
        return stats

    def storage_region(self, region: str = None) -> Optional[Tuple[str, str]]:
        return STORAGE_REGIONS.get(region or self.region or DEFAULT_REGION)

    def same_region(self, storage: StorageSystem) -> bool:
        region = self.storage_region()
        return region is not None and region == (storage.api, storage.region)

    def validate_region(self, region: Optional[str]) -> bool:
        return self.storage_region(region) is not None
