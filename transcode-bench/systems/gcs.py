"""
Google Cloud Storage object storage system implementation.
"""

import logging

from systems.s3 import S3StorageSystem

logger = logging.getLogger(__name__)

DEFAULT_GCS_ENDPOINT = 'storage.googleapis.com'
DEFAULT_GCS_REGION = 'US'

# Multi-regional and regional bucket locations
MULTI_REGIONAL_LOCATIONS = ['US', 'EU']
REGIONAL_LOCATIONS = ['US-EAST1', 'US-EAST2', 'US-EAST3', 'US-CENTRAL1', 'US-CENTRAL2', 'US-WEST1']


class GCSStorageSystem(S3StorageSystem):
    """GCS storage accessed through its S3 compatible XML API."""

    api = 'gcs'
    default_region = DEFAULT_GCS_REGION

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.regional = False

    async def init(self) -> bool:
        self.region = self.region or self.default_region
        location = self.region.strip().upper()
        self.regional = location in REGIONAL_LOCATIONS
        if not self.regional and location not in MULTI_REGIONAL_LOCATIONS:
            logger.warning(f"Unknown GCS location {self.region}")
        self.endpoint = DEFAULT_GCS_ENDPOINT
        logger.info(f"Initialized gcs storage for container {self.container} in "
                    f"{'regional' if self.regional else 'multi-regional'} location {self.region}")
        return True

    @staticmethod
    def endpoint_for_region(region: str) -> str:
        return DEFAULT_GCS_ENDPOINT
