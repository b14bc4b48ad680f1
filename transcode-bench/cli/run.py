"""
Encoding test iteration: submit one job per input, poll to completion and
report per-job results.
"""

import asyncio
import logging
import os
import random
import sys
import time
from typing import Any, Dict, List, Optional

from algorithms.job_state_machine import Job, JobStateMachine, JobStatus
from common.errors import BenchmarkError, PollingExhaustedError
from configuration import (
    AUDIO_EXTENSIONS,
    CLEANUP_FILE,
    DEFAULT_FORMAT,
    DEFAULT_FORMAT_AUDIO,
    DEFAULT_FORMAT_VIDEO,
    FORMAT_CODECS,
    HLS_VARIANTS,
    MAX_AUDIO_BITRATE,
    MAX_BFRAMES,
    MAX_HLS_SEGMENT,
    MAX_KEYFRAME,
    MAX_REFERENCE_FRAMES,
    MAX_VIDEO_BITRATE,
    POLL_INTERVAL_SECONDS,
    ROUND_PRECISION,
    RUN_DIR,
    SLEEP_BEFORE_SET_SIZE,
    SUPPORTED_AUDIO_AAC_PROFILES,
    SUPPORTED_AUDIO_SAMPLE_RATES,
    SUPPORTED_FORMATS,
    SUPPORTED_PROFILES,
    VALID_JOB_STATS,
    EncodingParameters,
)
from systems.base import EncodingSystem, StorageSystem

logger = logging.getLogger(__name__)

MB = 1024 * 1024


def is_audio(name: str) -> bool:
    """True for an audio-only file name or format."""
    return name.rsplit('.', 1)[-1].strip().lower() in AUDIO_EXTENSIONS


def cleanup_file_path(run_dir: str = RUN_DIR) -> str:
    return os.path.join(run_dir, CLEANUP_FILE)


class EncodingInput:
    """An input object and the format it is encoded to."""

    def __init__(self, name: str, format: str, size: int):
        self.name = name
        self.format = format
        self.size = size
        self.input_format = name.rsplit('.', 1)[-1].strip().lower()
        self.audio_only = is_audio(name) or is_audio(format)
        self.audio_codec, video_codec = FORMAT_CODECS.get(format, (None, None))
        self.video_codec = None if self.audio_only else video_codec


class EncodingRunner:
    """Runs one encoding test iteration against an encoding service."""

    def __init__(self, encoder: EncodingSystem, storage: StorageSystem,
                 params: EncodingParameters, run_dir: str = RUN_DIR,
                 poll_interval: float = POLL_INTERVAL_SECONDS,
                 settle_delay: float = SLEEP_BEFORE_SET_SIZE,
                 sleep=asyncio.sleep, clock=time.time, out=None):
        self.encoder = encoder
        self.storage = storage
        self.params = params
        self.run_dir = run_dir
        self.poll_interval = poll_interval
        self.settle_delay = settle_delay
        self.out = out or sys.stdout
        self._sleep = sleep
        self._clock = clock
        self.inputs: Optional[List[EncodingInput]] = None
        self.state_machine = JobStateMachine(encoder, clock=clock)

    @property
    def jobs(self) -> List[Job]:
        return list(self.state_machine.jobs.values())

    def output_format(self, name: str) -> str:
        if self.params.format == DEFAULT_FORMAT:
            return DEFAULT_FORMAT_AUDIO if is_audio(name) else DEFAULT_FORMAT_VIDEO
        return self.params.format

    async def resolve_inputs(self) -> bool:
        """Find input objects matching the input filter and read their sizes."""
        objects = await self.storage.get_container_objects(self.params.input_filter)
        if objects is None:
            logger.error(f"Error getting input objects {self.params.input_filter}")
            return False

        inputs = []
        for name in objects:
            size = await self.storage.get_size(name)
            if not size:
                logger.error(f"Unable to determine size of object {name}")
                return False
            encoding_input = EncodingInput(name, self.output_format(name), size)
            logger.info(f"Added object {name} to encoding job queue. Format: {encoding_input.input_format}; "
                        f"Encode Format: {encoding_input.format}; Size: {round(size / MB, ROUND_PRECISION)} MB")
            inputs.append(encoding_input)

        self.inputs = inputs
        total = sum(i.size for i in inputs)
        logger.info(f"A total of {round(total / MB, ROUND_PRECISION)} MB from {len(inputs)} media files will be encoded")
        return True

    async def prepare(self) -> bool:
        """Initialize both services, resolve inputs and validate parameters."""
        if not await self.storage.init():
            logger.error("Unable to initiate storage service")
            return False
        if not await self.resolve_inputs():
            return False
        try:
            initialized = await self.encoder.init(self.storage)
        except BenchmarkError as e:
            logger.error(f"Unable to initiate service: {e}")
            initialized = False
        if not initialized:
            logger.error("Unable to initiate service - aborting test")
            return False
        if not await self.validate():
            logger.error("Runtime parameters are invalid - aborting test")
            return False
        logger.info(f"Runtime validation successful for service {self.encoder.name}")
        return True

    async def validate(self) -> bool:
        """Validate runtime parameters, logging every violation."""
        p = self.params
        errors = []
        if p.audio_aac_profile and p.audio_aac_profile not in SUPPORTED_AUDIO_AAC_PROFILES:
            errors.append(f"Invalid audio_aac_profile {p.audio_aac_profile}")
        if p.audio_bitrate and not 0 <= p.audio_bitrate <= MAX_AUDIO_BITRATE:
            errors.append(f"Invalid audio_bitrate {p.audio_bitrate}")
        if p.audio_sample_rate and str(p.audio_sample_rate) not in SUPPORTED_AUDIO_SAMPLE_RATES:
            errors.append(f"Invalid audio_sample_rate {p.audio_sample_rate}")
        if not p.format or p.format not in SUPPORTED_FORMATS:
            errors.append(f"Invalid format {p.format}")
        if self.inputs is None:
            errors.append(f"Error getting input objects {p.input_filter}")
        elif not self.inputs:
            errors.append(f"No matching input objects {p.input_filter}")
        if not 0 <= p.bframes <= MAX_BFRAMES:
            errors.append(f"Invalid bframes {p.bframes}")
        if not 0 <= p.reference_frames <= MAX_REFERENCE_FRAMES:
            errors.append(f"Invalid reference_frames {p.reference_frames}")
        if p.hls and not 0 <= p.hls_segment <= MAX_HLS_SEGMENT:
            errors.append(f"Invalid hls_segment {p.hls_segment}")
        if p.hls and not any(bit & p.hls for bit in HLS_VARIANTS):
            errors.append(f"Invalid hls {p.hls} - no variant selected")
        if not 0 <= p.keyframe <= MAX_KEYFRAME:
            errors.append(f"Invalid keyframe {p.keyframe}")
        if p.profile and p.profile not in SUPPORTED_PROFILES:
            errors.append(f"Invalid profile {p.profile}")
        if not self.encoder.validate_region(self.encoder.region):
            errors.append(f"service_region {self.encoder.region} is not valid")
        if p.video_bitrate and not 0 <= p.video_bitrate <= MAX_VIDEO_BITRATE:
            errors.append(f"Invalid video_bitrate {p.video_bitrate}")
        if not self.encoder.key:
            errors.append("service_key is required")
        elif not await self.encoder.authenticate():
            errors.append(f"Encoding service authentication failed in region {self.encoder.region}")

        for error in errors:
            logger.error(error)
        return not errors

    def base_output(self) -> Dict[str, Any]:
        output = {}
        p = self.params
        if p.audio_bitrate:
            output['audio_bitrate'] = p.audio_bitrate
        if p.frame_rate:
            output['frame_rate'] = p.frame_rate
        if p.profile:
            output['h264_profile'] = p.profile
        if p.keyframe:
            output['keyframe'] = p.keyframe
        if p.video_bitrate:
            output['video_bitrate'] = p.video_bitrate
        if p.width:
            output['width'] = p.width
        return output

    def base_outputs(self) -> List[Dict[str, Any]]:
        """Output settings shared by every job: one per selected HLS variant, or one plain output."""
        if not self.params.hls:
            return [self.base_output()]
        outputs = []
        for bit, variant in sorted(HLS_VARIANTS.items()):
            if bit & self.params.hls:
                logger.debug(f"Adding hls variant {bit} to output jobs: "
                             f"{'; '.join(f'{k}={v}' for k, v in variant.items())}")
                outputs.append(dict(variant))
        return outputs

    def job_outputs(self, encoding_input: EncodingInput, prefix: str) -> List[Dict[str, Any]]:
        """Outputs of the job for ``encoding_input`` written under ``prefix``.

        Video variants of an HLS job are dropped for audio only inputs; a
        single plain output keeps its audio settings instead.
        """
        variants = self.base_outputs()
        extension = 'm3u8' if self.params.hls else encoding_input.format
        outputs = []
        for output in variants:
            output['audio_only'] = encoding_input.audio_only or (bool(self.params.hls) and 'video_bitrate' not in output)
            if encoding_input.audio_only and 'video_bitrate' in output:
                if len(variants) > 1:
                    logger.debug("Removed video output for audio only job")
                    continue
                for key in ('video_bitrate', 'frame_rate', 'h264_profile', 'keyframe', 'width'):
                    output.pop(key, None)

            base = os.path.basename(encoding_input.name)
            for ext in (encoding_input.input_format, encoding_input.input_format.upper()):
                base = base.replace(f".{ext}", '')
            video = '' if output['audio_only'] else f"_v{output.get('video_bitrate', '-def')}"
            output['output'] = (f"{prefix}/{base}_a{output.get('audio_bitrate', '-def')}{video}"
                                f"_{len(outputs) + 1}.{extension}")
            logger.debug(f"Adding output file with settings: {'; '.join(f'{k}={v}' for k, v in output.items())}")
            outputs.append(output)
        return outputs

    def job_settings(self, encoding_input: EncodingInput) -> Dict[str, Any]:
        p = self.params
        return {
            'audio_aac_profile': p.audio_aac_profile,
            'audio_codec': encoding_input.audio_codec,
            'audio_sample_rate': p.audio_sample_rate,
            'video_codec': encoding_input.video_codec,
            'bframes': p.bframes,
            'reference_frames': p.reference_frames,
            'two_pass': p.two_pass,
            'hls': bool(p.hls),
            'hls_segment': p.hls_segment,
        }

    async def start(self) -> bool:
        """Submit one encoding job per input.

        Returns:
            True if at least one job started
        """
        for encoding_input in self.inputs or []:
            prefix = f"ch{random.randint(0, 2 ** 31 - 1)}"
            outputs = self.job_outputs(encoding_input, prefix)
            if not outputs:
                logger.error(f"Unable to start encoding job for {encoding_input.name} - there are no outputs")
                continue
            logger.info(f"Initiating encoding for input object {encoding_input.name}, input format "
                        f"{encoding_input.input_format}, output format {encoding_input.format}; audio_codec "
                        f"{encoding_input.audio_codec}; video_codec {encoding_input.video_codec}")
            try:
                job_id = await self.encoder.encode(
                    self.storage, encoding_input.name, encoding_input.input_format, encoding_input.size,
                    encoding_input.format, self.job_settings(encoding_input), outputs)
            except BenchmarkError as e:
                logger.error(f"Unable to start encoding job for {encoding_input.name}: {e}")
                continue
            if not job_id:
                logger.error(f"Unable to start encoding job for {encoding_input.name}")
                continue

            self.state_machine.add_job(Job(
                job_id, encoding_input.name, status=self.encoder.initial_status,
                input_format=encoding_input.input_format, input_size=encoding_input.size,
                output_prefix=prefix, outputs=outputs, started=self._clock()))
            logger.info(f"Encoding job started successfully - job ID {job_id}")
        return bool(self.state_machine.jobs)

    async def wait_for_completion(self) -> bool:
        """Poll until every job reaches a terminal status.

        Returns:
            False if polling was given up and the remaining jobs were failed
        """
        completed = True
        try:
            while not await self.state_machine.poll():
                await self._sleep(self.poll_interval)
        except PollingExhaustedError as e:
            logger.error(f"Failed to get status from encoding service. Test aborting: {e}")
            completed = False

        counts = self.state_machine.counts()
        logger.info(f"Encoding jobs are complete - success: {counts[JobStatus.SUCCESS]}; "
                    f"partial: {counts[JobStatus.PARTIAL]}; fail: {counts[JobStatus.FAIL]}")
        return completed

    async def set_output_sizes(self) -> None:
        """Collect job stats and output sizes, recording every output object for cleanup."""
        if not self.state_machine.jobs:
            return
        logger.info(f"Setting output size - sleeping {self.settle_delay} seconds before starting")
        await self._sleep(self.settle_delay)

        os.makedirs(self.run_dir, exist_ok=True)
        with open(cleanup_file_path(self.run_dir), 'w') as cleanup:
            for job in self.jobs:
                try:
                    job.stats = await self.encoder.job_stats(job.job_id)
                except BenchmarkError as e:
                    logger.error(f"Unable to get job stats for job {job.job_id}: {e}")
                job.output_size = 0
                outputs = await self.storage.get_container_objects(f"{job.output_prefix}/*")
                if not outputs:
                    logger.warning(f"No objects exist for job {job.job_id}")
                    continue

                job.output_files = len(outputs)
                for name in outputs:
                    cleanup.write(name + '\n')
                    size = await self.storage.get_object_size(self.storage.container, name)
                    if size:
                        job.output_size += size
                    else:
                        logger.warning(f"Unable to get output size for {name}")
                logger.info(f"Set total output size {round(job.output_size / MB, ROUND_PRECISION)} MB "
                            f"from {len(outputs)} output objects for job {job.job_id}")

    def stats(self) -> List[str]:
        """Result lines in key=value form, suffixed by job number when several jobs ran."""
        lines = []
        same_region = int(bool(self.encoder.same_region(self.storage)))
        jobs = self.jobs
        for number, job in enumerate(jobs, start=1):
            suffix = str(number) if len(jobs) > 1 else ''

            def add(key, value):
                lines.append(f"{key}{suffix}={value}")

            add('input', job.input)
            if job.input_format:
                add('input_format', job.input_format)
            if job.input_size:
                add('input_size', job.input_size)
                add('input_size_mb', round(job.input_size / MB, ROUND_PRECISION))
            add('job_id', job.job_id)
            add('job_status', job.status)
            for stat, value in sorted((job.stats or {}).items()):
                if stat not in VALID_JOB_STATS:
                    continue
                if stat == 'duration':
                    value = round(value, ROUND_PRECISION)
                prefix = '' if stat == 'error' or stat.startswith(('job_', 'output_')) else 'input_'
                add(f"{prefix}{stat}", value)
            if job.output_files:
                output_mb = round(job.output_size / MB, ROUND_PRECISION)
                add('output_files', job.output_files)
                add('output_size', job.output_size)
                add('output_size_mb', output_mb)
                if job.input_size:
                    add('size_ratio', round(job.output_size / job.input_size * 100, ROUND_PRECISION))
                durations = str((job.stats or {}).get('output_durations', ''))
                output_minutes = sum(float(d) / 60 for d in durations.split(',') if d and float(d))
                if output_minutes:
                    add('output_mb_minute', round(output_mb / output_minutes, ROUND_PRECISION))
                    add('output_minutes', round(output_minutes, ROUND_PRECISION))
            add('same_region', same_region)
            add('start', int(job.start))
            if job.stop is not None:
                add('stop', int(job.stop))
                add('time', round(job.stop - job.start, ROUND_PRECISION))
            for state, seconds in sorted(job.times.items()):
                add(f"time_{state}", round(seconds, ROUND_PRECISION))
        return lines

    async def run(self) -> bool:
        """Run one test iteration and print the results.

        Results are printed even when polling the service was given up.

        Returns:
            True if jobs were started, polled to completion and results printed
        """
        if not await self.start():
            logger.error("Unable to perform encoding test")
            return False

        logger.info("Encoding jobs started successfully - polling for completion")
        completed = await self.wait_for_completion()
        logger.info("Encoding jobs are complete - getting output sizes")
        await self.set_output_sizes()

        print("\n\n[results]", file=self.out)
        for line in self.stats():
            print(line, file=self.out)
        return completed
