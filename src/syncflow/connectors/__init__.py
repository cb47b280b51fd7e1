"""Connectors package for SyncFlow."""

from .base import (
    Record,
    QueryDescriptor,
    ExtractResult,
    WriteResult,
    SourceConnector,
    DestinationConnector,
    ConnectorError,
    ExtractionError,
    DestinationWriteError,
    ConnectivityError
)
from .sql import SqlSource
from .http import HttpDestination
from .factory import ConnectorFactory

__all__ = [
    "Record",
    "QueryDescriptor",
    "ExtractResult",
    "WriteResult",
    "SourceConnector",
    "DestinationConnector",
    "ConnectorError",
    "ExtractionError",
    "DestinationWriteError",
    "ConnectivityError",
    "SqlSource",
    "HttpDestination",
    "ConnectorFactory"
]
