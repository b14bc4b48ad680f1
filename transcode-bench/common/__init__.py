"""
Common utilities for the transcoding benchmark.
"""

from .batch_executor import BatchExecutor, BatchResult, RequestDescriptor, RequestOutcome
from .rate_limiter import RateLimiter

__all__ = ['BatchExecutor', 'BatchResult', 'RequestDescriptor', 'RequestOutcome', 'RateLimiter']
