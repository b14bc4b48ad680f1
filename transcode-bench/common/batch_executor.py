"""
Bounded-concurrency, rate-limited batch HTTP dispatch.

A batch is an ordered list of request descriptors. The executor launches them
in waves of at most ``concurrency`` requests, waits for each wave to finish
before launching the next, and returns one outcome per request in input order.
"""

import asyncio
import contextlib
import logging
import os
import tempfile
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, Dict, Iterable, List, Mapping, Optional, Union

import aiohttp
from multidict import CIMultiDict, CIMultiDictProxy

from common.errors import DispatchError
from common.rate_limiter import RateLimiter, default_rate_limiter
from common.transcript import parse_transcript, render_transcript
from configuration import DEFAULT_CONCURRENT_REQUESTS, REQUEST_TIMEOUT_SECONDS, RunSettings
from persistence.record import RequestRecord

logger = logging.getLogger(__name__)

BodySource = Union[bytes, str, Iterable[bytes], AsyncIterable[bytes]]

_CHUNK_SIZE = 64 * 1024

# Marker for "use the executor's configured ceiling"
_CONFIGURED = object()


@dataclass(frozen=True)
class RequestDescriptor:
    """One HTTP request of a batch.

    Headers are stored case-insensitively and read-only once the descriptor
    is built.

    Attributes:
        url: Absolute request URL
        method: HTTP method (upper-cased)
        headers: Request headers
        body: Literal bytes/str, or a sync/async iterable of byte chunks piped as the body
        body_file: Path of a local file sent as the body
        range: Byte range 'start-end', sent as 'Range: bytes=start-end'
        form: Form fields sent as multipart/form-data
    """

    url: str
    method: str = 'GET'
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Optional[BodySource] = None
    body_file: Optional[str] = None
    range: Optional[str] = None
    form: Optional[Mapping[str, str]] = None

    def __post_init__(self):
        object.__setattr__(self, 'method', self.method.upper())
        object.__setattr__(self, 'headers', CIMultiDictProxy(CIMultiDict(self.headers or {})))
        if self.form is not None:
            object.__setattr__(self, 'form', dict(self.form))


class RequestOutcome:
    """Parsed result of one request.

    ``status`` is 0 when the request never produced an HTTP response, in
    which case ``error`` describes the transport failure.
    """

    def __init__(self, index: int, status: int = 0, headers: Optional[Dict[str, str]] = None,
                 metrics: Optional[Dict[str, Any]] = None, body: Optional[bytes] = None,
                 error: Optional[str] = None, transcript: Optional[List[str]] = None,
                 wave: int = 0, start_ts: float = None, end_ts: float = None):
        self.index = index
        self.status = status
        self.headers = headers or {}
        self.metrics = metrics or {}
        self.body = body
        self.error = error
        self.transcript = transcript or []
        self.wave = wave
        self.start_ts = start_ts
        self.end_ts = end_ts

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def text(self, encoding: str = 'utf-8') -> str:
        return self.body.decode(encoding, errors='replace') if self.body else ''

    def __repr__(self):
        return f"RequestOutcome(index={self.index}, status={self.status}, error={self.error!r})"


class BatchResult:
    """Outcomes of a batch, index-aligned with the submitted requests."""

    def __init__(self, outcomes: List[RequestOutcome], waves: int = 0):
        self.outcomes = outcomes
        self.waves = waves

    def __len__(self):
        return len(self.outcomes)

    def __iter__(self):
        return iter(self.outcomes)

    def __getitem__(self, index) -> RequestOutcome:
        return self.outcomes[index]

    @property
    def statuses(self) -> List[int]:
        return [outcome.status for outcome in self.outcomes]

    @property
    def lowest_status(self) -> int:
        executed = [status for status in self.statuses if status]
        return min(executed) if executed else 0

    @property
    def highest_status(self) -> int:
        return max(self.statuses, default=0)


async def _iterate(chunks: Iterable[bytes]):
    for chunk in chunks:
        yield chunk


def _coerce_metrics(raw: Dict[str, str]) -> Dict[str, Any]:
    metrics: Dict[str, Any] = dict(raw)
    for key, cast in (('speed', float), ('time', float), ('transfer', int)):
        if key in metrics:
            try:
                metrics[key] = cast(metrics[key])
            except ValueError:
                pass
    return metrics


class BatchExecutor:
    """Executes batches of HTTP requests in bounded, rate-limited waves."""

    def __init__(self, concurrency: int = DEFAULT_CONCURRENT_REQUESTS,
                 max_per_second: Optional[int] = None, work_dir: str = 'run',
                 rate_limiter: Optional[RateLimiter] = None, recorder=None,
                 timeout: float = REQUEST_TIMEOUT_SECONDS, debug: bool = False,
                 sleep=asyncio.sleep):
        """Initialize the executor.

        Args:
            concurrency: Requests per wave, clamped to 1..32
            max_per_second: Requests per second ceiling (None = unlimited)
            work_dir: Parent directory for per-batch scratch directories
            rate_limiter: Throttle shared across batches (default: process-wide instance)
            recorder: Optional sink with a store_record(RequestRecord) method
            timeout: Total timeout per request in seconds
            debug: Log every request outcome
            sleep: Coroutine used for the forced pause between rate windows
        """
        self.concurrency = RunSettings.clamp_concurrency(concurrency)
        self.max_per_second = max_per_second or None
        self.work_dir = work_dir
        self.rate_limiter = rate_limiter or default_rate_limiter
        self.recorder = recorder
        self.timeout = timeout
        self.debug = debug
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: RunSettings, **kwargs) -> "BatchExecutor":
        return cls(concurrency=settings.concurrency,
                   max_per_second=settings.max_api_requests_sec,
                   work_dir=settings.run_dir, debug=settings.debug, **kwargs)

    async def execute(self, requests: Iterable[RequestDescriptor], capture_body: bool = False,
                      max_per_second=_CONFIGURED) -> BatchResult:
        """Execute a batch and return its outcomes in input order.

        Args:
            requests: Request descriptors
            capture_body: Keep each response body on its outcome
            max_per_second: Ceiling for this batch (default: the executor's ceiling)

        Returns:
            BatchResult, possibly containing failed requests

        Raises:
            DispatchError: If no request in a non-empty batch produced a status
        """
        requests = list(requests)
        if not requests:
            return BatchResult([], waves=0)

        ceiling = self.max_per_second if max_per_second is _CONFIGURED else (max_per_second or None)
        outcomes: List[Optional[RequestOutcome]] = [None] * len(requests)
        waves = 0
        launched = 0

        os.makedirs(self.work_dir, exist_ok=True)
        logger.debug(f"Executing {len(requests)} requests with concurrency {self.concurrency}"
                     f"{f' and max {ceiling} requests/s' if ceiling else ''}")

        with tempfile.TemporaryDirectory(prefix='batch_', dir=self.work_dir) as scratch:
            connector = aiohttp.TCPConnector(limit=self.concurrency)
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with aiohttp.ClientSession(connector=connector, timeout=timeout) as session:
                for start in range(0, len(requests), self.concurrency):
                    waves += 1
                    tasks = []
                    try:
                        for index in range(start, min(start + self.concurrency, len(requests))):
                            if ceiling and launched and launched % ceiling == 0:
                                logger.debug(f"Launched {launched} requests - pausing 1 second for max {ceiling} requests/s")
                                await self._sleep(1)
                                self.rate_limiter.reset()
                            await self.rate_limiter.throttle(ceiling)
                            launched += 1
                            tasks.append(asyncio.create_task(
                                self._execute_one(session, index, requests[index], capture_body, scratch, waves)))

                        for outcome in await asyncio.gather(*tasks):
                            outcomes[outcome.index] = outcome
                            self._record(requests[outcome.index], outcome)
                    finally:
                        await self._cancel_pending(tasks)

        result = BatchResult(outcomes, waves=waves)
        logger.debug(f"Batch complete in {waves} waves - lowest status {result.lowest_status}; "
                     f"highest status {result.highest_status}")
        if not result.highest_status:
            errors = '; '.join(sorted({o.error for o in outcomes if o.error}))
            raise DispatchError(f"None of {len(requests)} requests produced an HTTP status: {errors}")

        if self.debug:
            for descriptor, outcome in zip(requests, outcomes):
                logger.debug(f"  {descriptor.method} {descriptor.url} => {outcome.status}")
        return result

    @staticmethod
    async def _cancel_pending(tasks: List[asyncio.Task]) -> None:
        """Cancel requests of a wave that did not finish and wait for them to unwind."""
        for task in tasks:
            if not task.done():
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _execute_one(self, session: aiohttp.ClientSession, index: int,
                           descriptor: RequestDescriptor, capture_body: bool,
                           scratch: str, wave: int) -> RequestOutcome:
        headers = CIMultiDict(descriptor.headers)
        if descriptor.range:
            headers['Range'] = f"bytes={descriptor.range}"
        skip_auto_headers = () if descriptor.form else ('Content-Type',)

        loop = asyncio.get_running_loop()
        start_ts = time.time()
        started = loop.time()
        body = None
        try:
            with contextlib.ExitStack() as files:
                data = self._request_data(descriptor, files)
                async with session.request(descriptor.method, descriptor.url, headers=headers,
                                           data=data, allow_redirects=False,
                                           skip_auto_headers=skip_auto_headers) as response:
                    artifact = os.path.join(scratch, f"body_{index}") if capture_body else None
                    transferred = await self._drain(response, artifact)
                    elapsed = loop.time() - started
                    if artifact:
                        with open(artifact, 'rb') as fh:
                            body = fh.read()
                        os.remove(artifact)
                    metrics = {
                        'speed': round(transferred / elapsed, 3) if elapsed > 0 else 0.0,
                        'time': round(elapsed, 6),
                        'transfer': transferred,
                        'url': str(response.url),
                    }
                    version = f"{response.version.major}.{response.version.minor}" if response.version else '1.1'
                    transcript = render_transcript(response.status, response.reason, version,
                                                   response.headers.items(), metrics)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            logger.warning(f"{descriptor.method} {descriptor.url} failed: {type(e).__name__}: {e}")
            return RequestOutcome(index, error=f"{type(e).__name__}: {e}", wave=wave,
                                  start_ts=start_ts, end_ts=time.time())

        parsed = parse_transcript(transcript)
        return RequestOutcome(index, status=parsed.status, headers=parsed.headers,
                              metrics=_coerce_metrics(parsed.metrics), body=body,
                              transcript=transcript, wave=wave,
                              start_ts=start_ts, end_ts=time.time())

    @staticmethod
    def _request_data(descriptor: RequestDescriptor, files: contextlib.ExitStack):
        if descriptor.form:
            form = aiohttp.MultipartWriter('form-data')
            for name, value in descriptor.form.items():
                part = form.append(str(value))
                part.set_content_disposition('form-data', name=name)
            return form
        if descriptor.body_file:
            return files.enter_context(open(descriptor.body_file, 'rb'))
        body = descriptor.body
        if body is None or isinstance(body, bytes):
            return body
        if isinstance(body, str):
            return body.encode('utf-8')
        if hasattr(body, '__aiter__'):
            return body
        return _iterate(body)

    @staticmethod
    async def _drain(response: aiohttp.ClientResponse, artifact: Optional[str]) -> int:
        transferred = 0
        if artifact:
            with open(artifact, 'wb') as fh:
                async for chunk in response.content.iter_chunked(_CHUNK_SIZE):
                    fh.write(chunk)
                    transferred += len(chunk)
        else:
            async for chunk in response.content.iter_chunked(_CHUNK_SIZE):
                transferred += len(chunk)
        return transferred

    def _record(self, descriptor: RequestDescriptor, outcome: RequestOutcome) -> None:
        if self.recorder is None:
            return
        self.recorder.store_record(RequestRecord(
            method=descriptor.method,
            url=descriptor.url,
            http_status=outcome.status,
            bytes_transferred=outcome.metrics.get('transfer', 0),
            speed=outcome.metrics.get('speed', 0.0),
            elapsed_s=outcome.metrics.get('time', 0.0),
            wave=outcome.wave,
            concurrency=self.concurrency,
            error=outcome.error or "",
            start_ts=outcome.start_ts,
            end_ts=outcome.end_ts,
        ))
