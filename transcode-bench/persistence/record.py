"""
Per-request records for the transcoding benchmark.
"""

import time


class RequestRecord:
    """One executed HTTP request of a batch."""

    def __init__(self, method, url, http_status, bytes_transferred, speed,
                 elapsed_s, wave, concurrency, error: str = "",
                 start_ts: float = None, end_ts: float = None):
        self.method = method
        self.url = url
        self.http_status = http_status
        self.bytes = bytes_transferred
        self.speed = speed
        self.elapsed_s = elapsed_s
        self.wave = wave
        self.concurrency = concurrency
        self.error = error
        self.start_ts = start_ts or time.time()
        self.end_ts = end_ts or time.time()
