"""
Tests for the encoding test iteration and output cleanup.
"""

import sys
import os
import io
import tempfile
import unittest
from unittest.mock import AsyncMock, Mock

# Add the parent directory to Python path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from algorithms.job_state_machine import JobStatus
from cli.cleanup import Cleaner
from cli.run import MB, EncodingInput, EncodingRunner, cleanup_file_path
from common.errors import RateLimitExhaustedError, SigningError
from configuration import EncodingParameters


class Clock:
    """Manual clock advanced by the fake sleep."""

    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.now += seconds


def mock_storage(inputs):
    storage = Mock()
    storage.container = 'bucket'
    storage.init = AsyncMock(return_value=True)

    async def get_container_objects(filter=None):
        if filter.endswith('/*'):
            return [f"{filter[:-2]}/out_1.mp4"]
        return list(inputs)

    storage.get_container_objects = AsyncMock(side_effect=get_container_objects)
    storage.get_size = AsyncMock(return_value=2 * MB)
    storage.get_object_size = AsyncMock(return_value=3 * MB)
    return storage


def mock_encoder():
    encoder = Mock()
    encoder.name = 'zencoder'
    encoder.key = 'key'
    encoder.region = 'us'
    encoder.initial_status = JobStatus.DOWNLOAD
    encoder.init = AsyncMock(return_value=True)
    encoder.authenticate = AsyncMock(return_value=True)
    encoder.validate_region = Mock(return_value=True)
    encoder.same_region = Mock(return_value=True)
    encoder.encode = AsyncMock(return_value='job1')
    encoder.job_stats = AsyncMock(return_value=None)
    return encoder


class TestEncodingInput(unittest.TestCase):

    def test_video_input(self):
        encoding_input = EncodingInput('media/clip.MOV', 'webm', 100)
        self.assertEqual(encoding_input.input_format, 'mov')
        self.assertFalse(encoding_input.audio_only)
        self.assertEqual((encoding_input.audio_codec, encoding_input.video_codec), ('vorbis', 'vp8'))

    def test_audio_input_has_no_video_codec(self):
        encoding_input = EncodingInput('song.mp3', 'mp4', 100)
        self.assertTrue(encoding_input.audio_only)
        self.assertEqual(encoding_input.audio_codec, 'aac')
        self.assertIsNone(encoding_input.video_codec)


class TestEncodingRunner(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.clock = Clock()
        self.out = io.StringIO()
        self.encoder = mock_encoder()
        self.storage = mock_storage(['media/a.mp4'])

    def tearDown(self):
        self.tmp.cleanup()

    def runner(self, **params):
        params.setdefault('input_filter', 'media/*.mp4')
        return EncodingRunner(self.encoder, self.storage, EncodingParameters(**params), run_dir=self.tmp.name,
                              poll_interval=5, settle_delay=0, sleep=self.clock.sleep, clock=self.clock,
                              out=self.out)

    def test_default_output_format(self):
        runner = self.runner()
        self.assertEqual(runner.output_format('song.MP3'), 'aac')
        self.assertEqual(runner.output_format('clip.mov'), 'mp4')
        self.assertEqual(self.runner(format='webm').output_format('song.mp3'), 'webm')

    def test_job_outputs_naming(self):
        runner = self.runner(audio_bitrate=128, video_bitrate=1000, width=1280)
        video, = runner.job_outputs(EncodingInput('media/clip.MP4', 'mp4', 1), 'ch7')
        audio, = runner.job_outputs(EncodingInput('media/song.mp3', 'aac', 1), 'ch7')

        self.assertEqual(video['output'], 'ch7/clip_a128_v1000_1.mp4')
        self.assertEqual(video['keyframe'], 250)
        self.assertEqual(video['width'], 1280)
        self.assertFalse(video['audio_only'])
        self.assertEqual(audio['output'], 'ch7/song_a128_1.aac')
        self.assertTrue(audio['audio_only'])
        self.assertNotIn('video_bitrate', audio)
        self.assertNotIn('keyframe', audio)

    def test_default_bitrates_in_output_name(self):
        output, = self.runner().job_outputs(EncodingInput('clip.mp4', 'mp4', 1), 'ch1')
        self.assertEqual(output['output'], 'ch1/clip_a-def_v-def_1.mp4')

    def test_hls_variant_outputs(self):
        runner = self.runner(hls=1 | 2 | 64, hls_segment=6)
        video = runner.job_outputs(EncodingInput('media/clip.mp4', 'mp4', 1), 'ch7')
        audio = runner.job_outputs(EncodingInput('media/song.mp3', 'aac', 1), 'ch7')

        self.assertEqual([o['output'] for o in video],
                         ['ch7/clip_a64_1.m3u8', 'ch7/clip_a64_v200_2.m3u8', 'ch7/clip_a96_v3500_3.m3u8'])
        self.assertEqual([o['audio_only'] for o in video], [True, False, False])
        self.assertEqual(video[2]['width'], 1280)
        self.assertEqual([o['output'] for o in audio], ['ch7/song_a64_1.m3u8'])

        settings = runner.job_settings(EncodingInput('media/clip.mp4', 'mp4', 1))
        self.assertTrue(settings['hls'])
        self.assertEqual(settings['hls_segment'], 6)

    async def test_hls_job_without_outputs_not_started(self):
        self.storage = mock_storage(['song.mp3', 'clip.mp4'])
        runner = self.runner(hls=2 | 4, two_pass=True)
        await runner.resolve_inputs()

        self.assertTrue(await runner.start())

        self.encoder.encode.assert_awaited_once()
        self.assertEqual(runner.jobs[0].input, 'clip.mp4')
        self.assertFalse(self.encoder.encode.await_args.args[5]['two_pass'])

    async def test_prepare(self):
        runner = self.runner()
        self.assertTrue(await runner.prepare())

        self.assertEqual([i.name for i in runner.inputs], ['media/a.mp4'])
        self.storage.get_container_objects.assert_awaited_with('media/*.mp4')
        self.encoder.init.assert_awaited_once_with(self.storage)
        self.encoder.authenticate.assert_awaited_once()

    async def test_prepare_without_inputs(self):
        self.storage = mock_storage([])
        self.assertFalse(await self.runner().prepare())

    async def test_prepare_input_without_size(self):
        self.storage.get_size.return_value = None
        self.assertFalse(await self.runner().prepare())
        self.encoder.init.assert_not_awaited()

    async def test_prepare_service_init_error(self):
        self.encoder.init.side_effect = SigningError('no secret')
        self.assertFalse(await self.runner().prepare())
        self.encoder.authenticate.assert_not_awaited()

    async def test_validate_reports_invalid_parameters(self):
        runner = self.runner(profile='ultra', bframes=20, format='avi')
        await runner.resolve_inputs()
        self.assertFalse(await runner.validate())

    async def test_validate_rejects_hls_settings(self):
        for params in ({'hls': 2, 'hls_segment': 2000}, {'hls': 1024}):
            runner = self.runner(**params)
            await runner.resolve_inputs()
            self.assertFalse(await runner.validate(), params)

    async def test_validate_rejects_failed_authentication(self):
        self.encoder.authenticate.return_value = False
        runner = self.runner()
        await runner.resolve_inputs()
        self.assertFalse(await runner.validate())

    async def test_start_skips_failed_jobs(self):
        self.storage = mock_storage(['a.mp4', 'b.mp4', 'c.mp4'])
        self.encoder.encode.side_effect = ['job1', None, RateLimitExhaustedError('throttled')]
        runner = self.runner()
        await runner.resolve_inputs()

        self.assertTrue(await runner.start())

        self.assertEqual([job.job_id for job in runner.jobs], ['job1'])
        job = runner.jobs[0]
        self.assertEqual(job.status, JobStatus.DOWNLOAD)
        self.assertTrue(job.output_prefix.startswith('ch'))
        self.assertEqual(job.outputs[0]['output'], f"{job.output_prefix}/a_a-def_v-def_1.mp4")

    async def test_start_without_jobs(self):
        self.encoder.encode.return_value = None
        runner = self.runner()
        await runner.resolve_inputs()
        self.assertFalse(await runner.run())
        self.assertEqual(self.out.getvalue(), '')

    async def test_run_prints_results(self):
        self.encoder.get_job_status = AsyncMock(side_effect=[{'job1': JobStatus.ENCODE},
                                                             {'job1': JobStatus.SUCCESS}])
        self.encoder.job_stats.return_value = {'duration': 61.5, 'output_durations': '60',
                                               'video_codec': 'h264', 'unreported': 1}
        runner = self.runner()
        self.assertTrue(await runner.prepare())

        self.assertTrue(await runner.run())

        output = self.out.getvalue()
        self.assertTrue(output.startswith('\n\n[results]\n'))
        lines = output.split('\n')[3:-1]
        prefix = runner.jobs[0].output_prefix
        self.assertEqual(lines, [
            'input=media/a.mp4',
            'input_format=mp4',
            'input_size=2097152',
            'input_size_mb=2.0',
            'job_id=job1',
            'job_status=success',
            'input_duration=61.5',
            'output_durations=60',
            'input_video_codec=h264',
            'output_files=1',
            'output_size=3145728',
            'output_size_mb=3.0',
            'size_ratio=150.0',
            'output_mb_minute=3.0',
            'output_minutes=1.0',
            'same_region=1',
            'start=1000',
            'stop=1005',
            'time=5.0',
            'time_download=0.0',
            'time_encode=5.0',
        ])
        with open(cleanup_file_path(self.tmp.name)) as f:
            self.assertEqual(f.read(), f"{prefix}/out_1.mp4\n")

    async def test_stats_numbered_for_several_jobs(self):
        self.storage = mock_storage(['a.mp4', 'b.mp4'])
        self.encoder.encode.side_effect = ['job1', 'job2']
        self.encoder.same_region.return_value = False
        runner = self.runner()
        await runner.resolve_inputs()
        await runner.start()

        lines = runner.stats()

        self.assertIn('job_id1=job1', lines)
        self.assertIn('job_id2=job2', lines)
        self.assertIn('same_region2=0', lines)
        self.assertIn('job_status1=download', lines)

    async def test_polling_failure_fails_jobs(self):
        self.encoder.get_job_status = AsyncMock(return_value=None)
        runner = self.runner()
        await runner.resolve_inputs()
        await runner.start()

        self.assertFalse(await runner.wait_for_completion())

        self.assertEqual(runner.jobs[0].status, JobStatus.FAIL)

    async def test_run_fails_after_polling_failure_but_prints_results(self):
        self.encoder.get_job_status = AsyncMock(return_value=None)
        runner = self.runner()
        self.assertTrue(await runner.prepare())

        self.assertFalse(await runner.run())

        output = self.out.getvalue()
        self.assertTrue(output.startswith('\n\n[results]\n'))
        self.assertIn('job_id=job1', output)
        self.assertIn('job_status=fail', output)


class TestCleaner(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.encoder = Mock()
        self.encoder.cleanup_service = AsyncMock(return_value=True)
        self.storage = Mock()
        self.storage.container = 'bucket'
        self.storage.init = AsyncMock(return_value=True)
        self.storage.delete_object = AsyncMock(return_value=True)
        self.sleep = AsyncMock()

    def tearDown(self):
        self.tmp.cleanup()

    def cleaner(self, enabled=True):
        return Cleaner(self.encoder, self.storage, enabled=enabled, run_dir=self.tmp.name, sleep=self.sleep)

    def write_cleanup_file(self, *names):
        with open(cleanup_file_path(self.tmp.name), 'w') as f:
            f.write(''.join(name + '\n' for name in names) + '\n')

    async def test_deletes_recorded_objects(self):
        self.write_cleanup_file('ch1/a.mp4', 'ch1/b.mp4')
        self.assertTrue(await self.cleaner().cleanup())

        self.sleep.assert_awaited_once_with(5)
        self.assertEqual([c.args for c in self.storage.delete_object.await_args_list],
                         [('bucket', 'ch1/a.mp4'), ('bucket', 'ch1/b.mp4')])
        self.encoder.cleanup_service.assert_awaited_once()

    async def test_failed_delete(self):
        self.write_cleanup_file('ch1/a.mp4', 'ch1/b.mp4')
        self.storage.delete_object.side_effect = [True, False]
        self.assertFalse(await self.cleaner().cleanup())

    async def test_missing_cleanup_file(self):
        self.assertFalse(await self.cleaner().cleanup())
        self.storage.delete_object.assert_not_awaited()
        self.encoder.cleanup_service.assert_awaited_once()

    async def test_disabled(self):
        self.write_cleanup_file('ch1/a.mp4')
        self.assertTrue(await self.cleaner(enabled=False).cleanup())
        self.storage.delete_object.assert_not_awaited()

    async def test_service_cleanup_failure(self):
        self.encoder.cleanup_service.return_value = False
        self.assertFalse(await self.cleaner(enabled=False).cleanup())


if __name__ == '__main__':
    unittest.main()
