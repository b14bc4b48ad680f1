"""
Base classes for encoding services and object storage systems.

Adapters build signed requests, run them through a BatchExecutor and map
provider responses onto the canonical job vocabulary.
"""

import asyncio
import json
import logging
import re
from typing import Any, Callable, Dict, List, Optional

from common.batch_executor import BatchExecutor, RequestDescriptor
from common.errors import RateLimitExhaustedError
from configuration import RATE_LIMIT_MAX_RETRIES, RATE_LIMIT_RETRY_DELAY

logger = logging.getLogger(__name__)


class StorageSystem:
    """Object storage holding encoding inputs and outputs."""

    api = None

    def __init__(self, executor: BatchExecutor, key: str, secret: str,
                 region: str = None, container: str = None):
        self.executor = executor
        self.key = key
        self.secret = secret
        self.region = region
        self.container = container
        self._size_cache: Dict[str, Optional[int]] = {}
        self._validated: Optional[bool] = None

    async def init(self) -> bool:
        """Pre-usage initialization. Returns False on failure."""
        return True

    async def validate(self) -> bool:
        """Authenticate once and cache the outcome."""
        if self._validated is None:
            self._validated = bool(await self.authenticate())
            if not self._validated:
                logger.error(f"Authentication failed for {self.api} storage")
        return self._validated

    async def get_container_objects(self, filter: str = None) -> Optional[List[str]]:
        """List objects in the container matching a wildcard filter.

        Args:
            filter: Object name pattern where '*' matches anything (case-insensitive)

        Returns:
            Matching object names without directory entries, or None on error
        """
        prefix = None
        if filter and '/' in filter:
            prefix = filter.rsplit('/', 1)[0]

        objects = await self.list_container(self.container, prefix)
        if objects is None:
            return None

        if filter:
            pattern = re.compile(re.escape(filter).replace(r'\*', '.*'), re.IGNORECASE)
            objects = [name for name in objects if pattern.fullmatch(name)]
        objects = [name for name in objects if not name.endswith('/')]
        logger.debug(f"Found {len(objects)} objects in {self.container} matching {filter}")
        return objects

    async def get_size(self, name: str) -> Optional[int]:
        """Size of an object in the container, cached per name."""
        if name not in self._size_cache:
            self._size_cache[name] = await self.get_object_size(self.container, name)
        return self._size_cache[name]

    async def authenticate(self) -> bool:
        raise NotImplementedError

    async def container_exists(self, container: str) -> Optional[bool]:
        raise NotImplementedError

    async def delete_object(self, container: str, object_key: str) -> Optional[bool]:
        raise NotImplementedError

    async def get_object_size(self, container: str, object_key: str) -> Optional[int]:
        raise NotImplementedError

    async def list_container(self, container: str, prefix: str = None) -> Optional[List[str]]:
        raise NotImplementedError

    async def object_exists(self, container: str, object_key: str) -> Optional[bool]:
        raise NotImplementedError

    def get_object_url(self, object_key: str, auth: bool = False) -> str:
        raise NotImplementedError


class EncodingSystem:
    """Cloud encoding service under test."""

    name = None
    # Jobs start in 'download' when the service first fetches the input itself
    initial_status_download = False
    # Response codes signalling API rate throttling
    rate_limited_statuses = (429,)

    def __init__(self, executor: BatchExecutor, key: str, secret: str = None,
                 region: str = None, params: Dict[str, str] = None,
                 input_downloaders: int = 1, input_min_segment: int = None,
                 sleep=asyncio.sleep):
        self.executor = executor
        self.key = key
        self.secret = secret
        self.region = region
        self.params = params or {}
        self.input_downloaders = input_downloaders
        self.input_min_segment = input_min_segment
        self._sleep = sleep

    @property
    def initial_status(self) -> str:
        return 'download' if self.initial_status_download else 'queue'

    async def init(self, storage: StorageSystem = None) -> bool:
        """Pre-usage initialization against the run's storage. Returns False on failure."""
        return True

    async def authenticate(self) -> bool:
        raise NotImplementedError

    async def encode(self, storage: StorageSystem, input: str, input_format: str,
                     input_size: int, format: str, settings: Dict[str, Any],
                     outputs: List[Dict[str, Any]]) -> Optional[str]:
        """Submit one job.

        Args:
            storage: Storage holding the input and receiving the outputs
            input: Input object name
            input_format: Input file extension
            input_size: Input size in bytes
            format: Output format
            settings: Job wide settings (codecs, aac profile, sample rate, bframes, ...)
            outputs: One dict per output with 'output' (object name) and bitrate settings

        Returns:
            Provider job id, or None if the job could not be created
        """
        raise NotImplementedError

    async def get_job_status(self, job_ids: List[str]) -> Optional[Dict[str, str]]:
        """Canonical status per job id, or None if no status could be read."""
        raise NotImplementedError

    async def job_stats(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Optional reporting fields for a completed job."""
        return None

    def same_region(self, storage: StorageSystem) -> bool:
        raise NotImplementedError

    def validate_region(self, region: Optional[str]) -> bool:
        return True

    async def cleanup_service(self) -> bool:
        """Provider specific cleanup after the run."""
        return True

    def number_of_downloaders(self, size: int) -> int:
        """Parallel input downloaders for an input of ``size`` bytes."""
        downloaders = 1
        if self.input_downloaders and self.input_downloaders > 1:
            downloaders = self.input_downloaders
            if self.input_min_segment and size / downloaders < self.input_min_segment:
                downloaders = max(int(size // self.input_min_segment), 1)
        return downloaders

    async def invoke_api(self, build_request: Callable[[], RequestDescriptor], description: str):
        """Run one API request, retrying rate limited responses.

        ``build_request`` is called for every attempt so each retry is signed
        afresh.

        Returns:
            Decoded JSON body, True for a 2xx response without a JSON body,
            or False for any other status

        Raises:
            RateLimitExhaustedError: If every attempt was rate limited
            DispatchError: If the request could not be executed
        """
        for attempt in range(RATE_LIMIT_MAX_RETRIES + 1):
            result = await self.executor.execute([build_request()], capture_body=True)
            outcome = result[0]
            if outcome.status in self.rate_limited_statuses:
                if attempt < RATE_LIMIT_MAX_RETRIES:
                    logger.warning(f"{description} rate limited - sleeping {RATE_LIMIT_RETRY_DELAY}s and "
                                   f"retrying ({attempt + 1} of {RATE_LIMIT_MAX_RETRIES})")
                    await self._sleep(RATE_LIMIT_RETRY_DELAY)
                    continue
                raise RateLimitExhaustedError(
                    f"{description} still rate limited after {RATE_LIMIT_MAX_RETRIES} retries")

            if outcome.ok:
                logger.debug(f"{description} completed successfully with status code {outcome.status}")
                try:
                    response = json.loads(outcome.body) if outcome.body else None
                except ValueError:
                    response = None
                return response or True

            logger.error(f"{description} resulted in status code {outcome.status}, body: {outcome.text()}")
            return False
