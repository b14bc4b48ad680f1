"""
Exception hierarchy for the transcoding benchmark.
"""


class BenchmarkError(Exception):
    """Base exception for all benchmark errors."""


class ConfigurationError(BenchmarkError):
    """Raised for missing or invalid runtime parameters."""


class DispatchError(BenchmarkError):
    """Raised when a batch of requests produced no HTTP status at all."""


class RateLimitExhaustedError(BenchmarkError):
    """Raised when an API call is still rate limited after the retry budget."""


class PollingExhaustedError(BenchmarkError):
    """Raised when job status polling failed on every retry."""

    def __init__(self, message: str, failed_jobs=None):
        super().__init__(message)
        self.failed_jobs = list(failed_jobs or [])


class SigningError(BenchmarkError):
    """Raised when a request cannot be signed."""
