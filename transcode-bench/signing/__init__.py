"""
Request signing for cloud provider APIs.

Signers are selected by destination service name:

- ``aws``: AWS Signature Version 4 (HMAC-SHA256)
- ``s3``: S3 header-based HMAC-SHA1 signing
- ``gcs``: GCS header-based HMAC-SHA1 signing (GOOG1)
"""

from signing.base import RequestSigner, SigningContext
from signing.sigv4 import SigV4Signer
from signing.legacy_hmac import GCSLegacySigner, S3LegacySigner

SIGNERS = {
    'aws': SigV4Signer,
    's3': S3LegacySigner,
    'gcs': GCSLegacySigner,
}


def get_signer(service: str) -> RequestSigner:
    """Create the signer for a destination service.

    Args:
        service: 'aws', 's3' or 'gcs'

    Returns:
        RequestSigner instance

    Raises:
        ValueError: If the service has no signer
    """
    service = (service or '').lower()
    if service not in SIGNERS:
        raise ValueError(f"Unsupported signing service: {service}. Must be one of {', '.join(sorted(SIGNERS))}.")
    return SIGNERS[service]()


__all__ = ['SigningContext', 'RequestSigner', 'SigV4Signer', 'S3LegacySigner',
           'GCSLegacySigner', 'SIGNERS', 'get_signer']
