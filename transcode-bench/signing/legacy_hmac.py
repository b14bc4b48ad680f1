"""
Header-based HMAC-SHA1 signing used by S3 (AWS) and GCS (GOOG1).

The string to sign is::

    METHOD\\n
    Content-MD5\\n
    Content-Type\\n
    Date\\n
    CanonicalizedProtocolHeaders
    /CanonicalizedResource[?subresources]
"""

import base64
import hashlib
import hmac
from typing import Optional
from urllib.parse import quote

from signing.base import RequestSigner, SigningContext


class LegacyHmacSigner(RequestSigner):
    """Shared implementation of the S3 and GCS HMAC-SHA1 schemes."""

    prefix = None
    header_prefix = None
    subresources = frozenset()

    @staticmethod
    def canonical_resource(method: str, container: Optional[str] = None,
                           object_key: Optional[str] = None) -> str:
        """Resource part of the string to sign, without the leading slash.

        Args:
            method: HTTP method
            container: Bucket name
            object_key: Object key within the bucket

        Returns:
            'container/key' for objects, 'container' for a PUT of the container
            itself, 'container/' for other container requests, '' otherwise
        """
        if object_key:
            return f"{container}/{quote(object_key, safe='/')}"
        if container and method.upper() == 'PUT':
            return container
        if container:
            return f"{container}/"
        return ''

    def protocol_headers(self, context: SigningContext) -> str:
        headers = {}
        for name, value in context.headers.items():
            name = name.lower()
            if name.startswith(self.header_prefix):
                headers[name] = str(value).strip()
        return ''.join(f"{name}:{headers[name]}\n" for name in sorted(headers))

    def subresource_string(self, context: SigningContext) -> str:
        params = sorted((key, value) for key, value in context.query_items() if key in self.subresources)
        return ''.join(f"{'&' if i else '?'}{key}{'=' + str(value) if value else ''}"
                       for i, (key, value) in enumerate(params))

    @staticmethod
    def _header(context: SigningContext, name: str) -> str:
        for key, value in context.headers.items():
            if key.lower() == name:
                return str(value)
        return ''

    def string_to_sign(self, context: SigningContext) -> str:
        resource = context.uri.lstrip('/') if context.uri else ''
        return (f"{context.method.upper()}\n"
                f"{self._header(context, 'content-md5')}\n"
                f"{self._header(context, 'content-type')}\n"
                f"{self._header(context, 'date')}\n"
                f"{self.protocol_headers(context)}"
                f"/{resource}{self.subresource_string(context)}")

    def signature(self, context: SigningContext) -> str:
        digest = hmac.new(context.secret_bytes(), self.string_to_sign(context).encode('utf-8'),
                          hashlib.sha1).digest()
        return base64.b64encode(digest).decode('ascii')

    def authorization(self, context: SigningContext) -> str:
        return f"{self.prefix} {context.access_key}:{self.signature(context)}"


class S3LegacySigner(LegacyHmacSigner):
    """S3 signature version 2."""

    name = 's3'
    prefix = 'AWS'
    header_prefix = 'x-amz-'
    date_format = '%a, %d %b %Y %H:%M:%S GMT'
    subresources = frozenset([
        'acl', 'lifecycle', 'location', 'logging', 'notification', 'partNumber',
        'policy', 'requestPayment', 'torrent', 'uploadId', 'uploads', 'versionId',
        'versioning', 'versions', 'website',
    ])


class GCSLegacySigner(LegacyHmacSigner):
    """GCS interoperable HMAC signing."""

    name = 'gcs'
    prefix = 'GOOG1'
    header_prefix = 'x-goog-'
    date_format = '%a, %d %b %Y %H:%M:%S +0000'
