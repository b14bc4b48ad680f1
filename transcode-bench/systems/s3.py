"""
Amazon S3 object storage system implementation.
"""

import datetime
import html
import logging
import re
from typing import Dict, List, Optional
from urllib.parse import quote

from common.batch_executor import RequestDescriptor, RequestOutcome
from common.errors import DispatchError
from signing import SigningContext, get_signer
from systems.base import StorageSystem

logger = logging.getLogger(__name__)

DEFAULT_S3_ENDPOINT = 's3.amazonaws.com'
DEFAULT_S3_REGION = 'us-east-1'

_KEY = re.compile(r'<Key>([^<]+)</Key>', re.IGNORECASE)
_TRUNCATED = re.compile(r'<IsTruncated>\s*true\s*</IsTruncated>', re.IGNORECASE)
_NEXT_MARKER = re.compile(r'<NextMarker>([^<]+)</NextMarker>', re.IGNORECASE)


class S3StorageSystem(StorageSystem):
    """S3 storage accessed with header-signed REST requests."""

    api = 's3'
    default_region = DEFAULT_S3_REGION

    def __init__(self, executor, key: str, secret: str, region: str = None,
                 container: str = None, clock=None):
        super().__init__(executor, key, secret, region, container)
        self.signer = get_signer(self.api)
        self.endpoint = None
        self._clock = clock or (lambda: datetime.datetime.now(datetime.timezone.utc))

    async def init(self) -> bool:
        self.region = self.region or self.default_region
        self.endpoint = self.endpoint_for_region(self.region)
        logger.info(f"Initialized {self.api} storage for container {self.container} using endpoint {self.endpoint}")
        return True

    @staticmethod
    def endpoint_for_region(region: str) -> str:
        if not region or region == DEFAULT_S3_REGION:
            return DEFAULT_S3_ENDPOINT
        return f"s3.{region}.amazonaws.com"

    def _url(self, container: str = None, object_key: str = None,
             params: Dict[str, str] = None) -> str:
        host = self.endpoint or self.endpoint_for_region(self.region)
        if not container:
            return f"https://{host}"
        url = f"https://{container}.{host}"
        if object_key:
            url += '/' + quote(object_key, safe='/')
        if params:
            url += '?' + '&'.join(f"{key}={quote(str(value), safe='')}" if value else key
                                  for key, value in params.items())
        return url

    def _request(self, method: str, container: str = None, object_key: str = None,
                 params: Dict[str, str] = None) -> RequestDescriptor:
        headers = {'date': self._clock().strftime(self.signer.date_format)}
        context = SigningContext(
            access_key=self.key,
            secret=self.secret,
            method=method,
            uri=self.signer.canonical_resource(method, container, object_key),
            query=params,
            headers=headers,
        )
        headers['Authorization'] = self.signer.authorization(context)
        return RequestDescriptor(self._url(container, object_key, params), method, headers)

    async def _send(self, request: RequestDescriptor, capture_body: bool = False) -> Optional[RequestOutcome]:
        try:
            result = await self.executor.execute([request], capture_body=capture_body)
        except DispatchError as e:
            logger.error(f"{request.method} {request.url} could not be executed: {e}")
            return None
        return result[0]

    async def authenticate(self) -> bool:
        outcome = await self._send(self._request('GET'))
        return outcome is not None and outcome.status in (200, 404)

    async def container_exists(self, container: str) -> Optional[bool]:
        outcome = await self._send(self._request('HEAD', container))
        return None if outcome is None else outcome.status == 200

    async def delete_object(self, container: str, object_key: str) -> Optional[bool]:
        outcome = await self._send(self._request('DELETE', container, object_key))
        if outcome is None:
            return None
        if outcome.status != 204:
            logger.warning(f"Delete of {container}/{object_key} returned status {outcome.status}")
        return outcome.status == 204

    async def get_object_size(self, container: str, object_key: str) -> Optional[int]:
        outcome = await self._send(self._request('HEAD', container, object_key))
        if outcome is None or outcome.status != 200 or 'content-length' not in outcome.headers:
            return None
        return int(outcome.headers['content-length'])

    async def object_exists(self, container: str, object_key: str) -> Optional[bool]:
        outcome = await self._send(self._request('HEAD', container, object_key))
        return None if outcome is None else outcome.status == 200

    async def list_container(self, container: str, prefix: str = None) -> Optional[List[str]]:
        """List object names, following truncated listings with a marker."""
        objects: List[str] = []
        marker = None
        while True:
            params = {}
            if prefix:
                params['prefix'] = prefix
            if marker:
                params['marker'] = marker
            outcome = await self._send(self._request('GET', container, params=params or None), capture_body=True)
            if outcome is None or outcome.status != 200:
                status = outcome.status if outcome else 0
                if marker is None:
                    logger.error(f"Unable to list container {container} - status code {status}")
                    return None
                logger.warning(f"Listing of {container} after marker {marker} failed - status code {status}")
                return objects

            body = outcome.text()
            keys = [html.unescape(key) for key in _KEY.findall(body)]
            objects.extend(key for key in keys if key != marker)
            if not keys or not _TRUNCATED.search(body):
                return objects
            match = _NEXT_MARKER.search(body)
            marker = html.unescape(match.group(1)) if match else keys[-1]

    def get_object_url(self, object_key: str, auth: bool = False) -> str:
        url = self._url(self.container, object_key)
        if auth:
            url = url.replace('://', f"://{quote(self.key, safe='')}:{quote(self.secret, safe='')}@", 1)
        return url
