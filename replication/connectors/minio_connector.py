"""
MinIO Landing-Zone Connector
============================

Writes replicated rows to MinIO object storage (S3-compatible) as CSV or
Parquet files. MinIOSink plugs into the sync pipeline as a custom sink, for
tables that land in the lake before reaching the analytical store.
"""

import io
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List

import pandas as pd
from minio import Minio

logger = logging.getLogger(__name__)


class MinIOConnector:
    """
    MinIO object storage connector for landing-zone writes.
    """

    def __init__(self, config: Dict, client: Minio = None):
        """
        Initialize MinIO connector.

        Args:
            config: Connection configuration dict with endpoint, access_key, secret_key, bucket
            client: Pre-built Minio client (skips connect())
        """
        self.config = config
        self.client = client
        self.bucket = config.get("bucket", "raw-data")

    def connect(self):
        """Establish connection to MinIO."""
        self.client = Minio(
            endpoint=self.config["endpoint"],
            access_key=self.config["access_key"],
            secret_key=self.config["secret_key"],
            secure=self.config.get("secure", False)
        )

        # Ensure bucket exists
        if not self.client.bucket_exists(self.bucket):
            self.client.make_bucket(self.bucket)
            logger.info(f"Created bucket: {self.bucket}")

        logger.info(f"Connected to MinIO: {self.config['endpoint']}, bucket: {self.bucket}")

    def list_objects(self, prefix: str = "", recursive: bool = True) -> list:
        """
        List object names in bucket.

        Args:
            prefix: Object prefix filter
            recursive: Include nested objects
        """
        objects = self.client.list_objects(self.bucket, prefix=prefix, recursive=recursive)
        return [obj.object_name for obj in objects]

    def write_dataframe(
        self,
        df: pd.DataFrame,
        path: str,
        file_format: str = "csv",
        part: int = 0,
        compression: str = "snappy"
    ) -> str:
        """
        Write DataFrame to MinIO.

        Args:
            df: Pandas DataFrame to write
            path: Target path in bucket (without file name)
            file_format: Output format ('parquet' or 'csv')
            part: Part number, keeps file names unique within one write
            compression: Compression type for parquet

        Returns:
            Full object path
        """
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        buffer = io.BytesIO()

        if file_format == "parquet":
            df.to_parquet(buffer, index=False, compression=compression)
            object_name = f"{path}/data_{timestamp}_{part:05d}.parquet"
            content_type = "application/octet-stream"

        elif file_format == "csv":
            buffer.write(df.to_csv(index=False).encode('utf-8'))
            object_name = f"{path}/data_{timestamp}_{part:05d}.csv"
            content_type = "text/csv"

        else:
            raise ValueError(f"Unsupported file format: {file_format}")

        buffer.seek(0)
        self.client.put_object(
            bucket_name=self.bucket,
            object_name=object_name,
            data=buffer,
            length=buffer.getbuffer().nbytes,
            content_type=content_type
        )

        logger.info(f"Written {len(df)} rows to s3://{self.bucket}/{object_name}")
        return f"s3://{self.bucket}/{object_name}"


class MinIOSink:
    """
    Custom sink writing a row stream to MinIO in fixed-size file chunks.

    Usage:
        sink = CustomSink(MinIOSink(connector, "propwise/raw_leads/sync"), name="raw_leads")
    """

    def __init__(self, connector: MinIOConnector, path: str, file_format: str = "csv", chunk_size: int = 10000):
        self.connector = connector
        self.path = path
        self.file_format = file_format
        self.chunk_size = chunk_size

    def __call__(self, rows: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
        objects: List[str] = []
        chunk: List[Dict[str, Any]] = []
        written = 0

        for row in rows:
            chunk.append(row)
            if len(chunk) >= self.chunk_size:
                objects.append(self._flush(chunk, len(objects)))
                written += len(chunk)
                chunk = []

        if chunk:
            objects.append(self._flush(chunk, len(objects)))
            written += len(chunk)

        return {"path": self.path, "rows_written": written, "objects": objects}

    def _flush(self, chunk: List[Dict[str, Any]], part: int) -> str:
        df = pd.DataFrame.from_records(chunk)
        return self.connector.write_dataframe(df=df, path=self.path, file_format=self.file_format, part=part)
