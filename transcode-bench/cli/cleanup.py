"""
Deletes the output objects created by the last test iteration.
"""

import asyncio
import logging
import os

from cli.run import cleanup_file_path
from configuration import RUN_DIR
from systems.base import EncodingSystem, StorageSystem

logger = logging.getLogger(__name__)

# Pause before deleting so output writes have settled
CLEANUP_DELAY_SECONDS = 5


class Cleaner:
    """Removes objects listed in the cleanup file and runs service cleanup."""

    def __init__(self, encoder: EncodingSystem, storage: StorageSystem, enabled: bool = True,
                 run_dir: str = RUN_DIR, delay: float = CLEANUP_DELAY_SECONDS, sleep=asyncio.sleep):
        self.encoder = encoder
        self.storage = storage
        self.enabled = enabled
        self.run_dir = run_dir
        self.delay = delay
        self._sleep = sleep

    async def cleanup(self) -> bool:
        """Delete every recorded output object.

        Returns:
            True if every object was deleted and service cleanup succeeded
        """
        if self.delay:
            await self._sleep(self.delay)

        success = True
        path = cleanup_file_path(self.run_dir)
        if not self.enabled:
            logger.info("Skipping cleanup because cleanup parameter was set to 0")
        elif not os.path.exists(path):
            logger.error(f"Unable to initiate cleanup because object tracker file {path} does not exist")
            success = False
        else:
            await self.storage.init()
            logger.info(f"Starting cleanup using cleanup file {path}")
            deleted = 0
            with open(path) as f:
                names = [line.strip() for line in f if line.strip()]
            for name in names:
                if await self.storage.delete_object(self.storage.container, name):
                    logger.debug(f"Deleted object {self.storage.container}/{name} successfully")
                    deleted += 1
                else:
                    logger.error(f"Unable to delete object {self.storage.container}/{name}")
                    success = False
            if deleted:
                logger.info(f"Cleanup complete - {deleted} objects deleted")

        if not await self.encoder.cleanup_service():
            logger.error("Service cleanup failed")
            success = False
        return success
