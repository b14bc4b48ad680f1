"""
Configuration constants for the transcoding benchmark.

This module contains all configuration parameters including:
- Run settings (debug flag, concurrency, API rate ceiling, run directory)
- Encoding and storage service selection and credentials
- Encoding parameters applied to every test job
- Polling, retry and rate limit parameters
- Validation limits and supported values
"""

import os
import re
from typing import Dict, List, Optional, Tuple

# =============================================================================
# RUN SETTINGS
# =============================================================================

# Verbose request logging
DEBUG: bool = os.getenv("BM_DEBUG", "0") == "1"

# Requests launched together in one wave of a batch
DEFAULT_CONCURRENT_REQUESTS: int = 8
MAX_CONCURRENT_REQUESTS: int = 32

# Working directory for transient request artifacts and the cleanup file
RUN_DIR: str = os.getenv("BM_RUN_DIR", "run")

# Per request timeout
REQUEST_TIMEOUT_SECONDS: int = 300

# =============================================================================
# ENCODING SERVICE
# =============================================================================

SERVICE: str = os.getenv("BM_SERVICE", "")
SERVICE_KEY: str = os.getenv("BM_SERVICE_KEY", "")
SERVICE_SECRET: str = os.getenv("BM_SERVICE_SECRET", "")
SERVICE_REGION: str = os.getenv("BM_SERVICE_REGION", "")

# Provider specific parameters, documented in each encoding system module
SERVICE_PARAM1: str = os.getenv("BM_SERVICE_PARAM1", "")
SERVICE_PARAM2: str = os.getenv("BM_SERVICE_PARAM2", "")
SERVICE_PARAM3: str = os.getenv("BM_SERVICE_PARAM3", "")

# =============================================================================
# STORAGE SERVICE
# =============================================================================

STORAGE_SERVICE: str = os.getenv("BM_STORAGE_SERVICE", "")
STORAGE_KEY: str = os.getenv("BM_STORAGE_KEY", "")
STORAGE_SECRET: str = os.getenv("BM_STORAGE_SECRET", "")
STORAGE_REGION: str = os.getenv("BM_STORAGE_REGION", "")
STORAGE_CONTAINER: str = os.getenv("BM_STORAGE_CONTAINER", "")

# =============================================================================
# ENCODING PARAMETERS
# =============================================================================

DEFAULT_AUDIO_AAC_PROFILE: str = "auto"
DEFAULT_AUDIO_SAMPLE_RATE: str = "auto"
DEFAULT_BFRAMES: int = 2
DEFAULT_FORMAT: str = "_default_"
DEFAULT_FORMAT_AUDIO: str = "aac"
DEFAULT_FORMAT_VIDEO: str = "mp4"
DEFAULT_KEYFRAME: int = 250
DEFAULT_REFERENCE_FRAMES: int = 3

# Output format -> (audio codec, video codec)
FORMAT_CODECS: Dict[str, Tuple[str, Optional[str]]] = {
    "aac": ("aac", None),
    "mp3": ("mp3", None),
    "mp4": ("aac", "h264"),
    "ogg": ("vorbis", "theora"),
    "webm": ("vorbis", "vp8"),
}

# Input extensions treated as audio only
AUDIO_EXTENSIONS: Tuple[str, ...] = ("mp3", "aac", "wav", "m4a")

# =============================================================================
# HLS
# =============================================================================

# BM_HLS is a bitmask selecting variants from HLS_VARIANTS; 0 disables HLS
DEFAULT_HLS_SEGMENT: int = 10
MAX_HLS_SEGMENT: int = 1000

# Variant bit -> output settings. Variants without video_bitrate are audio only
HLS_VARIANTS: Dict[int, Dict[str, object]] = {
    1: {"audio_bitrate": 64},
    2: {"audio_bitrate": 64, "video_bitrate": 200, "width": 416, "h264_profile": "baseline", "keyframe": 90},
    4: {"audio_bitrate": 64, "video_bitrate": 400, "width": 480, "h264_profile": "baseline", "keyframe": 90},
    8: {"audio_bitrate": 64, "video_bitrate": 600, "width": 640, "h264_profile": "baseline", "keyframe": 90},
    16: {"audio_bitrate": 64, "video_bitrate": 1200, "width": 640, "h264_profile": "main", "keyframe": 90},
    32: {"audio_bitrate": 96, "video_bitrate": 1800, "width": 960, "h264_profile": "main", "keyframe": 90},
    64: {"audio_bitrate": 96, "video_bitrate": 3500, "width": 1280, "h264_profile": "main", "keyframe": 90},
    128: {"audio_bitrate": 128, "video_bitrate": 5000, "width": 1280, "h264_profile": "high", "keyframe": 90},
    256: {"audio_bitrate": 128, "video_bitrate": 6500, "width": 1920, "h264_profile": "high", "keyframe": 90},
}

# =============================================================================
# POLLING AND RETRY
# =============================================================================

# Poll retries when the encoding service returns no status at all
MAX_POLL_RETRIES: int = 3

# Seconds between polls of the encoding service
POLL_INTERVAL_SECONDS: int = 1

# Bounded retry of rate limited (HTTP 429) API calls
RATE_LIMIT_MAX_RETRIES: int = 5
RATE_LIMIT_RETRY_DELAY: int = 1

# Wait before listing outputs so storage listings settle
SLEEP_BEFORE_SET_SIZE: int = 10

# =============================================================================
# REPORTING
# =============================================================================

ROUND_PRECISION: int = 4

# Object names written by test jobs (relative to RUN_DIR)
CLEANUP_FILE: str = ".output_objects"

# Canonical job status vocabulary
STATUS_CODES: List[str] = ["download", "queue", "encode", "upload", "success", "fail", "partial"]

# Job stats printed when reported by an encoding service
VALID_JOB_STATS: List[str] = [
    "audio_aac_profile", "audio_bit_rate", "audio_channels", "audio_codec",
    "audio_sample_rate", "duration", "error", "job_start", "job_stop", "job_time",
    "output_audio_aac_profile", "output_audio_bit_rate", "output_audio_channels",
    "output_audio_codecs", "output_audio_sample_rates", "output_durations",
    "output_failed", "output_formats", "output_success", "output_total_bit_rates",
    "output_video_bit_rates", "output_video_codecs", "output_video_frame_rates",
    "output_video_resolutions", "total_bit_rate", "video_bit_rate", "video_codec",
    "video_frame_rate", "video_resolution",
]

# =============================================================================
# VALIDATION LIMITS
# =============================================================================

MAX_AUDIO_BITRATE: int = 1024
MAX_BFRAMES: int = 16
MAX_KEYFRAME: int = 1000
MAX_REFERENCE_FRAMES: int = 16
MAX_VIDEO_BITRATE: int = 1048576

SUPPORTED_AUDIO_AAC_PROFILES: List[str] = ["auto", "aac-lc", "he-aac", "he-aacv2"]
SUPPORTED_AUDIO_SAMPLE_RATES: List[str] = ["auto", "22050", "32000", "44100", "48000", "96000"]
SUPPORTED_FORMATS: List[str] = ["aac", "mp3", "mp4", "ogg", "webm", DEFAULT_FORMAT]
SUPPORTED_PROFILES: List[str] = ["baseline", "main", "high"]


def _int_or_none(value: Optional[str]) -> Optional[int]:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


class RunSettings:
    """Snapshot of the settings the batch executor consumes.

    Attributes:
        debug: Log every request and its outcome
        concurrency: Requests per wave, clamped to 1..MAX_CONCURRENT_REQUESTS
        max_api_requests_sec: Requests per second ceiling, None when unlimited
        run_dir: Directory for transient request artifacts
    """

    def __init__(self, debug: bool = False, concurrency: int = DEFAULT_CONCURRENT_REQUESTS,
                 max_api_requests_sec: Optional[int] = None, run_dir: str = "run"):
        self.debug = debug
        self.concurrency = self.clamp_concurrency(concurrency)
        self.max_api_requests_sec = max_api_requests_sec
        self.run_dir = run_dir

    @staticmethod
    def clamp_concurrency(value) -> int:
        try:
            value = int(value)
        except (TypeError, ValueError):
            return DEFAULT_CONCURRENT_REQUESTS
        if value == 0:
            return DEFAULT_CONCURRENT_REQUESTS
        return max(1, min(value, MAX_CONCURRENT_REQUESTS))

    @classmethod
    def from_env(cls, environ=None) -> "RunSettings":
        """Build settings from BM_* environment variables.

        Args:
            environ: Mapping to read from (default: os.environ)

        Returns:
            RunSettings instance
        """
        environ = os.environ if environ is None else environ
        return cls(
            debug=environ.get("BM_DEBUG", "0") == "1",
            concurrency=environ.get("BM_CONCURRENT_REQUESTS", "0") or 0,
            max_api_requests_sec=_int_or_none(environ.get("BM_MAX_API_REQUESTS_SEC")),
            run_dir=environ.get("BM_RUN_DIR", "run"),
        )


class EncodingParameters:
    """Encoding parameters applied to every job of a run."""

    def __init__(self, input_filter: str = "", format: str = DEFAULT_FORMAT,
                 audio_aac_profile: str = DEFAULT_AUDIO_AAC_PROFILE,
                 audio_bitrate: Optional[int] = None,
                 audio_sample_rate: str = DEFAULT_AUDIO_SAMPLE_RATE,
                 bframes: int = DEFAULT_BFRAMES,
                 reference_frames: int = DEFAULT_REFERENCE_FRAMES,
                 frame_rate: Optional[int] = None, keyframe: int = DEFAULT_KEYFRAME,
                 profile: str = "", width: Optional[int] = None,
                 video_bitrate: Optional[int] = None, two_pass: bool = False,
                 hls: int = 0, hls_segment: int = DEFAULT_HLS_SEGMENT,
                 input_downloaders: int = 1, input_min_segment: Optional[int] = None,
                 cleanup: bool = True):
        self.input_filter = input_filter
        self.format = format
        self.audio_aac_profile = audio_aac_profile
        self.audio_bitrate = audio_bitrate
        self.audio_sample_rate = audio_sample_rate
        self.bframes = bframes
        self.reference_frames = reference_frames
        self.frame_rate = frame_rate
        self.keyframe = keyframe
        self.profile = profile
        self.width = width
        self.video_bitrate = video_bitrate
        self.hls = hls
        self.hls_segment = hls_segment
        # Two pass encoding does not apply to segmented outputs
        self.two_pass = two_pass and not hls
        self.input_downloaders = input_downloaders
        self.input_min_segment = input_min_segment
        self.cleanup = cleanup

    @classmethod
    def from_env(cls, environ=None) -> "EncodingParameters":
        """Build encoding parameters from BM_* environment variables."""
        environ = os.environ if environ is None else environ

        def _int(name: str, default: int) -> int:
            try:
                return int(environ.get(name) or default)
            except ValueError:
                return default

        min_segment = environ.get("BM_INPUT_MIN_SEGMENT")
        return cls(
            input_filter=environ.get("BM_INPUT", ""),
            format=environ.get("BM_FORMAT", "").strip().lower() or DEFAULT_FORMAT,
            audio_aac_profile=environ.get("BM_AUDIO_AAC_PROFILE", "").strip().lower() or DEFAULT_AUDIO_AAC_PROFILE,
            audio_bitrate=_int_or_none(environ.get("BM_AUDIO_BITRATE")),
            audio_sample_rate=environ.get("BM_AUDIO_SAMPLE_RATE", "").strip().lower() or DEFAULT_AUDIO_SAMPLE_RATE,
            bframes=_int("BM_BFRAMES", DEFAULT_BFRAMES),
            reference_frames=_int("BM_REFERENCE_FRAMES", DEFAULT_REFERENCE_FRAMES),
            frame_rate=_int_or_none(environ.get("BM_FRAME_RATE")),
            keyframe=_int("BM_KEYFRAME", DEFAULT_KEYFRAME),
            profile=environ.get("BM_PROFILE", "").strip().lower(),
            width=_int_or_none(environ.get("BM_WIDTH")),
            video_bitrate=_int_or_none(environ.get("BM_VIDEO_BITRATE")),
            two_pass=environ.get("BM_TWO_PASS", "0") == "1",
            hls=_int("BM_HLS", 0),
            hls_segment=_int("BM_HLS_SEGMENT", DEFAULT_HLS_SEGMENT),
            input_downloaders=_int("BM_INPUT_DOWNLOADERS", 1),
            input_min_segment=size_to_bytes(min_segment) if min_segment else None,
            cleanup=environ.get("BM_CLEANUP", "1") == "1",
        )


def size_to_bytes(size) -> Optional[int]:
    """Convert a size label like 5MB or 1000KB to bytes.

    Args:
        size: Number of bytes or a label with a b/kb/mb/gb suffix

    Returns:
        Size in bytes, or None if the label is not valid
    """
    if isinstance(size, (int, float)):
        return int(size)
    label = str(size).strip().lower()
    if label.isdigit():
        return int(label)
    match = re.match(r"^([0-9]+)\s*([gmk]?b)$", label)
    if not match:
        return None
    factors = {"b": 1, "kb": 1024, "mb": 1024 * 1024, "gb": 1024 * 1024 * 1024}
    return int(match.group(1)) * factors[match.group(2)]
