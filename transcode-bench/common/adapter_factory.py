"""
Factory module for creating encoding service and storage system adapters.
"""

import logging
from typing import Dict

from systems.base import EncodingSystem, StorageSystem
from systems.elastic_transcoder import ElasticTranscoderSystem
from systems.encoding_com import EncodingComSystem
from systems.gcs import GCSStorageSystem
from systems.s3 import S3StorageSystem
from systems.zencoder import ZencoderSystem

logger = logging.getLogger(__name__)

ENCODING_SYSTEMS: Dict[str, type] = {
    'aws': ElasticTranscoderSystem,
    'encoding.com': EncodingComSystem,
    'zencoder': ZencoderSystem,
}

STORAGE_SYSTEMS: Dict[str, type] = {
    's3': S3StorageSystem,
    'gcs': GCSStorageSystem,
}


def create_storage_system(storage_type: str, executor, key: str, secret: str,
                          region: str = None, container: str = None) -> StorageSystem:
    """Create and return the storage adapter for ``storage_type``.

    Args:
        storage_type: Storage type ('s3' or 'gcs')
        executor: BatchExecutor used for every storage request
        key: Storage access key
        secret: Storage secret
        region: Storage region (adapter default if not set)
        container: Bucket holding inputs and outputs

    Returns:
        Storage system instance

    Raises:
        ValueError: If storage_type is not supported
    """
    storage_type = (storage_type or '').lower()
    if storage_type not in STORAGE_SYSTEMS:
        raise ValueError(f"Unsupported storage type: {storage_type}. Must be one of {', '.join(STORAGE_SYSTEMS)}.")

    logger.debug(f"Creating {storage_type} storage for container {container}")
    return STORAGE_SYSTEMS[storage_type](executor, key, secret, region=region, container=container)


def create_encoding_system(service: str, executor, key: str, secret: str = None,
                           region: str = None, params: Dict[str, str] = None,
                           **kwargs) -> EncodingSystem:
    """Create and return the encoding adapter for ``service``.

    Additional keyword arguments (input_downloaders, input_min_segment) are
    passed to the adapter.

    Raises:
        ValueError: If service is not supported
    """
    service = (service or '').lower()
    if service not in ENCODING_SYSTEMS:
        raise ValueError(f"Unsupported encoding service: {service}. Must be one of {', '.join(ENCODING_SYSTEMS)}.")

    logger.debug(f"Creating {service} encoding service in region {region}")
    return ENCODING_SYSTEMS[service](executor, key, secret, region=region, params=params, **kwargs)
