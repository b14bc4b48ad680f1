"""
AWS Signature Version 4.
"""

import hashlib
import hmac
import logging
from typing import Dict, List, Tuple
from urllib.parse import quote

from signing.base import RequestSigner, SigningContext

logger = logging.getLogger(__name__)

ALGORITHM = 'AWS4-HMAC-SHA256'
REQUEST_TYPE = 'aws4_request'
DATE_HEADER = 'x-amz-date'
CONTENT_SHA256_HEADER = 'x-amz-content-sha256'
TIMESTAMP_FORMAT = '%Y%m%dT%H%M%SZ'


def _hmac(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode('utf-8'), hashlib.sha256).digest()


def _uri_encode(value: str) -> str:
    return quote(str(value), safe='-_.~')


class SigV4Signer(RequestSigner):
    """Signs requests with AWS Signature Version 4."""

    name = 'aws'

    @staticmethod
    def amz_date(context: SigningContext) -> str:
        """Request timestamp in SigV4 basic format (e.g. 20150830T123600Z)."""
        for name, value in context.headers.items():
            if name.lower() == DATE_HEADER:
                return value.strip()
        return context.signing_time().strftime(TIMESTAMP_FORMAT)

    def credential_scope(self, context: SigningContext) -> str:
        return f"{self.amz_date(context)[:8]}/{context.region}/{context.service}/{REQUEST_TYPE}"

    @staticmethod
    def canonical_uri(uri: str) -> str:
        if not uri:
            return '/'
        if not uri.startswith('/'):
            uri = '/' + uri
        return quote(uri, safe='/~')

    @staticmethod
    def canonical_query_string(context: SigningContext) -> str:
        pairs = sorted((_uri_encode(key), _uri_encode(value)) for key, value in context.query_items())
        return '&'.join(f"{key}={value}" for key, value in pairs)

    @staticmethod
    def canonical_headers(context: SigningContext) -> Tuple[str, str]:
        """Return the canonical header block and the signed header list."""
        merged: Dict[str, List[str]] = {}
        for name, value in context.headers.items():
            name = name.lower().strip()
            if name == 'authorization':
                continue
            merged.setdefault(name, []).append(' '.join(str(value).split()))
        names = sorted(merged)
        block = ''.join(f"{name}:{','.join(merged[name])}\n" for name in names)
        return block, ';'.join(names)

    @staticmethod
    def payload_hash(context: SigningContext) -> str:
        for name, value in context.headers.items():
            if name.lower() == CONTENT_SHA256_HEADER:
                return value
        return hashlib.sha256(context.payload_bytes()).hexdigest()

    def canonical_request(self, context: SigningContext) -> str:
        headers, signed_headers = self.canonical_headers(context)
        return '\n'.join([
            context.method.upper(),
            self.canonical_uri(context.uri),
            self.canonical_query_string(context),
            headers,
            signed_headers,
            self.payload_hash(context),
        ])

    def string_to_sign(self, context: SigningContext, canonical_request: str = None) -> str:
        if canonical_request is None:
            canonical_request = self.canonical_request(context)
        return '\n'.join([
            ALGORITHM,
            self.amz_date(context),
            self.credential_scope(context),
            hashlib.sha256(canonical_request.encode('utf-8')).hexdigest(),
        ])

    @staticmethod
    def signing_key(secret: bytes, date: str, region: str, service: str) -> bytes:
        k_date = _hmac(b'AWS4' + secret, date)
        k_region = _hmac(k_date, region)
        k_service = _hmac(k_region, service)
        return _hmac(k_service, REQUEST_TYPE)

    def signature(self, context: SigningContext) -> str:
        canonical_request = self.canonical_request(context)
        logger.debug(f"Canonical request: {canonical_request!r}")
        string_to_sign = self.string_to_sign(context, canonical_request)
        key = self.signing_key(context.secret_bytes(), self.amz_date(context)[:8], context.region, context.service)
        return hmac.new(key, string_to_sign.encode('utf-8'), hashlib.sha256).hexdigest()

    def authorization(self, context: SigningContext) -> str:
        _, signed_headers = self.canonical_headers(context)
        return (f"{ALGORITHM} Credential={context.access_key}/{self.credential_scope(context)}, "
                f"SignedHeaders={signed_headers}, Signature={self.signature(context)}")
