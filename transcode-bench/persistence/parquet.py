"""
Parquet persistence for per-request benchmark records.
"""

import os
import logging
from typing import List, Optional
from datetime import datetime

import pandas as pd

from persistence.record import RequestRecord

logger = logging.getLogger(__name__)


class ParquetPersistence:
    """Parquet file persistence for request records.

    Records are kept in memory while batches run and written once at the
    end of the run.

    Attributes:
        output_dir: Directory where Parquet files will be saved
        records: Request records accumulated during the run
    """

    def __init__(self, output_dir: str = "results"):
        """Initialize Parquet persistence.

        Args:
            output_dir: Directory for saving Parquet files (default: 'results')
        """
        self.output_dir: str = output_dir
        self.records: List[RequestRecord] = []

        os.makedirs(output_dir, exist_ok=True)

    def store_record(self, record: RequestRecord) -> None:
        """Store a request record in memory.

        Args:
            record: Request record to store
        """
        self.records.append(record)

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame([{
            'method': record.method,
            'url': record.url,
            'http_status': record.http_status,
            'bytes': record.bytes,
            'speed': record.speed,
            'elapsed_s': record.elapsed_s,
            'wave': record.wave,
            'concurrency': record.concurrency,
            'error': record.error,
            'start_ts': record.start_ts,
            'end_ts': record.end_ts,
        } for record in self.records])

    def save_to_file(self, filename_prefix: str = "requests") -> Optional[str]:
        """Save all records to a Parquet file.

        Args:
            filename_prefix: Prefix for the generated filename (default: 'requests')

        Returns:
            Path to the saved file, or None if no records to save
        """
        if not self.records:
            return None

        logger.info(f"Saving {len(self.records)} request records to file")
        df = self.to_dataframe()

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        filename = f"{filename_prefix}_{timestamp}.parquet"
        filepath = os.path.join(self.output_dir, filename)

        df.to_parquet(filepath, index=False)

        return filepath
