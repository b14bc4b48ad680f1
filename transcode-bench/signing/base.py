"""
Signing inputs and the signer base class.
"""

import datetime
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Sequence, Tuple, Union

from common.errors import SigningError


@dataclass(frozen=True)
class SigningContext:
    """Everything needed to sign one request.

    Secrets only ever live in memory; signing never writes them anywhere.

    Attributes:
        access_key: Access key id placed in the Authorization header
        secret: Secret key used for the HMAC
        method: HTTP method
        uri: Canonical URI (SigV4) or canonical resource (legacy schemes)
        region: Region for the SigV4 credential scope
        service: Service for the SigV4 credential scope
        query: Query parameters as a mapping or a sequence of pairs
        headers: Request headers covered by the signature
        payload: Request body
        timestamp: Signing time (default: now, UTC)
    """

    access_key: str
    secret: str
    method: str = 'GET'
    uri: str = '/'
    region: str = ''
    service: str = ''
    query: Union[Mapping[str, str], Sequence[Tuple[str, str]], None] = None
    headers: Mapping[str, str] = field(default_factory=dict)
    payload: Union[bytes, str, None] = None
    timestamp: Optional[datetime.datetime] = None

    def __repr__(self):
        return (f"SigningContext(access_key={self.access_key!r}, method={self.method!r}, "
                f"uri={self.uri!r}, region={self.region!r}, service={self.service!r})")

    def query_items(self):
        if not self.query:
            return []
        if isinstance(self.query, Mapping):
            return list(self.query.items())
        return list(self.query)

    def payload_bytes(self) -> bytes:
        if self.payload is None:
            return b''
        if isinstance(self.payload, str):
            return self.payload.encode('utf-8')
        return self.payload

    def signing_time(self) -> datetime.datetime:
        return self.timestamp or datetime.datetime.now(datetime.timezone.utc)

    def secret_bytes(self) -> bytes:
        if not self.access_key or not self.secret:
            raise SigningError("Unable to sign request - access key and secret are required")
        return self.secret.encode('utf-8')


class RequestSigner:
    """Base class for request signers."""

    name = None

    def authorization(self, context: SigningContext) -> str:
        """Return the Authorization header value for ``context``."""
        raise NotImplementedError

    def sign(self, context: SigningContext) -> Dict[str, str]:
        """Return ``context.headers`` with the Authorization header added."""
        headers = dict(context.headers)
        headers['Authorization'] = self.authorization(context)
        return headers
