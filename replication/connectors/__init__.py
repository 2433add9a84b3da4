"""
Replication Connectors
======================

Source and target connectors for the replication engine.
"""

from .source_connector import SourceConnector
from .trino_connector import TrinoStore
from .minio_connector import MinIOConnector, MinIOSink

__all__ = ["SourceConnector", "TrinoStore", "MinIOConnector", "MinIOSink"]
