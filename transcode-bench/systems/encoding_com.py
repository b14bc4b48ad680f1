"""
encoding.com encoding system implementation.

The service key is the encoding.com user id and the service secret its user
key. Service parameters:
    param1: '0' to disable multithreaded input transfer (enabled by default)
    param2: '1' to read S3 inputs in place (nocopy), '0' to always copy them.
        When unset nocopy is used for S3 storage in the service region
    param3: 'turbo' or 'twin_turbo' to request faster encoding
"""

import datetime
import json
import logging
import re
from typing import Any, Dict, List, Optional

from algorithms.job_state_machine import JobStatus, resolve_terminal_status
from common.batch_executor import RequestDescriptor
from systems.base import EncodingSystem, StorageSystem

logger = logging.getLogger(__name__)

API_URL = 'https://manage.encoding.com'
DEFAULT_REGION = 'us-east-1'
REGIONS = ['us-east-1', 'us-west-1', 'us-west-2', 'eu-west-1', 'ap-southeast-1',
           'ap-southeast-2', 'ap-northeast-1', 'sa-east-1']

# encoding.com job status -> canonical status
STATUS_MAP: Dict[str, str] = {
    'new': JobStatus.DOWNLOAD,
    'downloading': JobStatus.DOWNLOAD,
    'ready to process': JobStatus.QUEUE,
    'waiting for encoder': JobStatus.QUEUE,
    'processing': JobStatus.ENCODE,
    'saving': JobStatus.UPLOAD,
    'finished': JobStatus.SUCCESS,
    'error': JobStatus.FAIL,
}

AUDIO_CODECS = {'vorbis': 'libvorbis', 'mp3': 'libmp3lame'}
AAC_CODECS = {'he-aac': 'dolby_heaac', 'he-aacv2': 'dolby_heaacv2'}
VIDEO_CODECS = {'h264': 'libx264', 'theora': 'libtheora', 'vp8': 'libvpx'}

# Output file name suffix added by the runner: _a<audio>[_v<video>]_<n>.<ext>
_OUTPUT_SUFFIX = re.compile(r'_a[^_/]*(?:_v[^_/]*)?_[0-9]+\.[^./]+$')

_TIME_FORMAT = '%Y-%m-%d %H:%M:%S'
_NUMBER = re.compile(r'^\s*([0-9]+(?:\.[0-9]+)?)')


def _as_list(value, key: str) -> List[Dict[str, Any]]:
    """encoding.com collapses single element lists into the element itself."""
    if isinstance(value, dict):
        return [value] if key in value else []
    return [item for item in value or [] if isinstance(item, dict)]


def _timestamp(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        parsed = datetime.datetime.strptime(value.strip(), _TIME_FORMAT)
    except ValueError:
        logger.warning(f"Unable to parse timestamp {value}")
        return None
    return parsed.replace(tzinfo=datetime.timezone.utc).timestamp()


def _number(value):
    """Leading number of a media info value such as '1128k' or '61.5'."""
    match = _NUMBER.match(str(value))
    if not match:
        return value
    return float(match.group(1)) if '.' in match.group(1) else int(match.group(1))


class EncodingComSystem(EncodingSystem):
    """encoding.com encoding system."""

    name = 'encoding.com'
    initial_status_download = True
    # encoding.com throttles with 421
    rate_limited_statuses = (421, 429)

    def __init__(self, executor, key: str, secret: str = None, region: str = None,
                 params: Dict[str, str] = None, **kwargs):
        super().__init__(executor, key, secret, region, params, **kwargs)
        self.multithread = True
        self.nocopy: Optional[bool] = None
        self.turbo = False
        self.twin_turbo = False

    async def init(self, storage: StorageSystem = None) -> bool:
        self.multithread = self.params.get('param1') in (None, '', '1')
        if self.params.get('param2'):
            self.nocopy = self.params['param2'] == '1'
        self.turbo = self.params.get('param3') == 'turbo'
        self.twin_turbo = self.params.get('param3') == 'twin_turbo'
        self.region = self.region or DEFAULT_REGION
        logger.info(f"Initialized encoding.com in region {self.region} - multithread: {self.multithread}; "
                    f"nocopy: {self.nocopy}; turbo: {self.turbo}; twin turbo: {self.twin_turbo}")
        return True

    def _request(self, action: str, attrs: Dict[str, Any] = None) -> RequestDescriptor:
        query = dict(attrs or {})
        query['action'] = action
        query['userid'] = self.key
        query['userkey'] = self.secret
        if self.region and self.region != DEFAULT_REGION:
            query['region'] = self.region
        return RequestDescriptor(API_URL, 'POST', form={'json': json.dumps({'query': query})})

    async def _invoke(self, action: str, attrs: Dict[str, Any] = None) -> Optional[Dict[str, Any]]:
        """Run an API action and return the body of its response.

        Returns:
            The 'response' object, or None if the call failed or reported errors
        """
        response = await self.invoke_api(lambda: self._request(action, attrs), f"API action {action}")
        body = response.get('response') if isinstance(response, dict) else None
        if not isinstance(body, dict):
            logger.error(f"Unable to decode API response for action {action}")
            return None
        if body.get('errors'):
            logger.error(f"API action {action} failed: {body['errors']}")
            return None
        return body

    async def authenticate(self) -> bool:
        if await self._invoke('GetMediaList') is not None:
            logger.info("encoding.com authentication successful")
            return True
        logger.error("encoding.com authentication failed")
        return False

    def source_url(self, storage: StorageSystem, input: str) -> str:
        nocopy = self.nocopy
        if nocopy is None:
            nocopy = storage.api == 's3' and self.same_region(storage)
        options = (['nocopy'] if nocopy else []) + (['multithread'] if self.multithread else [])
        url = storage.get_object_url(input, auth=True)
        return f"{url}?{'&'.join(options)}" if options else url

    def job_format(self, storage: StorageSystem, format: str, settings: Dict[str, Any],
                   outputs: List[Dict[str, Any]]) -> Dict[str, Any]:
        """The 'format' section of an AddMedia request.

        HLS variants are combined into comma separated lists; every other job
        has a single output.
        """
        hls = bool(settings.get('hls'))
        format = 'm4a' if format == 'aac' else format
        job_format: Dict[str, Any] = {}
        if hls:
            job_format['output'] = 'ipad_stream'
            job_format['pack_files'] = 'no'
            job_format['segment_duration'] = settings.get('hls_segment')
        else:
            job_format['output'] = format

        audio_codec = settings.get('audio_codec')
        if audio_codec in AUDIO_CODECS:
            job_format['audio_codec'] = AUDIO_CODECS[audio_codec]
        else:
            job_format['audio_codec'] = AAC_CODECS.get(settings.get('audio_aac_profile'), 'dolby_aac')
        if settings.get('audio_sample_rate') not in (None, 'auto'):
            job_format['audio_sample_rate'] = settings['audio_sample_rate']
        if settings.get('video_codec'):
            job_format['video_codec'] = VIDEO_CODECS.get(settings['video_codec'], 'libvpx')
        job_format['bframes'] = 2 if (settings.get('bframes') or 0) > 1 else 0
        job_format['refs'] = settings.get('reference_frames')
        job_format['two_pass'] = 'yes' if settings.get('two_pass') else 'no'
        if self.twin_turbo:
            job_format['twin_turbo'] = 'yes'
        elif self.turbo:
            job_format['turbo'] = 'yes'

        def append(key, value):
            job_format[key] = f"{job_format[key]},{value}" if key in job_format else str(value)

        for output in outputs:
            if hls and output.get('audio_only'):
                job_format['add_audio_only'] = 'yes'
            else:
                if output.get('audio_bitrate') is not None:
                    job_format['audio_bitrate'] = f"{output['audio_bitrate']}k"
                if not output.get('audio_only'):
                    if output.get('width') is not None:
                        append('size', f"{int(output['width'])}x0")
                    if output.get('video_bitrate') is not None:
                        append('bitrates' if hls else 'bitrate', f"{output['video_bitrate']}k")
                    if output.get('frame_rate') is not None:
                        append('framerates' if hls else 'framerate', output['frame_rate'])
                    if output.get('keyframe') is not None:
                        append('keyframes' if hls else 'keyframe', output['keyframe'])
                    # baseline is the default and may not be requested explicitly
                    if format == 'mp4' and output.get('h264_profile') not in (None, 'baseline'):
                        job_format['profile'] = output['h264_profile']
            # Only one destination is supported; HLS playlists are named after the input
            destination = _OUTPUT_SUFFIX.sub('', output['output']) if hls else output['output']
            job_format['destination'] = storage.get_object_url(destination, auth=True)
        return job_format

    async def encode(self, storage, input, input_format, input_size, format, settings, outputs) -> Optional[str]:
        source = self.source_url(storage, input)
        job_format = self.job_format(storage, format, settings, outputs)
        logger.info(f"Initiating encoding of {input} with settings: "
                    f"{'; '.join(f'{k}={v}' for k, v in job_format.items() if k != 'destination')}")

        response = await self._invoke('AddMedia', {'source': source, 'format': job_format})
        job_id = response.get('MediaID') if response else None
        if not job_id:
            logger.error(f"Unable to initiate encoding for {input}")
            return None
        logger.info(f"Initiated encoding for {input} successfully. MediaID {job_id}")
        return str(job_id)

    @staticmethod
    def map_job_status(job: Dict[str, Any]) -> Optional[str]:
        """Canonical status of a job; terminal jobs are resolved from their formats."""
        status = STATUS_MAP.get(str(job.get('status', '')).strip().lower())
        if status not in (JobStatus.SUCCESS, JobStatus.FAIL):
            return status
        failed = finished = 0
        for job_format in _as_list(job.get('format'), 'status'):
            if str(job_format.get('status', '')).strip().lower() == 'error':
                failed += 1
            else:
                finished += 1
        if not failed and not finished:
            return status
        return resolve_terminal_status(finished, failed)

    async def get_job_status(self, job_ids: List[str]) -> Optional[Dict[str, str]]:
        if not job_ids:
            logger.error("Invoked without specifying any job ids")
            return None

        response = await self._invoke('GetStatus', {'extended': 'yes', 'mediaid': ','.join(job_ids)})
        if not response or not response.get('job'):
            logger.error("Unable to get job status - 'job' not included in GetStatus response")
            return None

        statuses = {}
        for job in _as_list(response['job'], 'id'):
            job_id = str(job.get('id'))
            status = self.map_job_status(job)
            if status is None:
                logger.error(f"Unable to determine status for job {job_id} from status string {job.get('status')}")
                continue
            statuses[job_id] = status
            logger.debug(f"Returning status {status} for job {job_id} from status string {job.get('status')}")
        return statuses or None

    async def job_stats(self, job_id: str) -> Optional[Dict[str, Any]]:
        response = await self._invoke('GetStatus', {'extended': 'yes', 'mediaid': job_id})
        job = response.get('job') if response else None
        if not isinstance(job, dict) or str(job.get('id')) != str(job_id):
            logger.error(f"GetStatus response does not include job {job_id}")
            return None

        media = await self._invoke('GetMediaInfo', {'mediaid': job_id})
        if not media or 'bitrate' not in media:
            logger.error(f"GetMediaInfo response for job {job_id} does not include bitrate")
            return None

        stats: Dict[str, Any] = {}
        for field, stat in (('audio_bitrate', 'audio_bit_rate'), ('audio_channels', 'audio_channels'),
                            ('audio_sample_rate', 'audio_sample_rate'), ('duration', 'duration'),
                            ('bitrate', 'total_bit_rate'), ('video_bitrate', 'video_bit_rate')):
            if media.get(field) is not None:
                stats[stat] = _number(media[field])
        if media.get('audio_codec'):
            stats['audio_codec'] = media['audio_codec']
        if media.get('video_codec'):
            stats['video_codec'] = str(media['video_codec']).split(' ')[0]
        if media.get('frame_rate'):
            stats['video_frame_rate'] = media['frame_rate']
        if media.get('size'):
            stats['video_resolution'] = media['size']
        if ('audio_bit_rate' not in stats and isinstance(stats.get('total_bit_rate'), (int, float))
                and isinstance(stats.get('video_bit_rate'), (int, float))
                and stats['total_bit_rate'] > stats['video_bit_rate']):
            stats['audio_bit_rate'] = stats['total_bit_rate'] - stats['video_bit_rate']

        start, stop = _timestamp(job.get('created')), _timestamp(job.get('finished'))
        if start:
            stats['job_start'] = start
        if stop:
            stats['job_stop'] = stop
        if start and stop:
            stats['job_time'] = stop - start

        logger.debug(f"Got stats for job {job_id}: {'; '.join(f'{k}={v}' for k, v in stats.items())}")
        return stats

    def same_region(self, storage: StorageSystem) -> bool:
        return storage.api == 's3' and (self.region or DEFAULT_REGION) == storage.region

    def validate_region(self, region: Optional[str]) -> bool:
        return (region or DEFAULT_REGION) in REGIONS
