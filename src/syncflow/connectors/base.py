"""Source and destination connector contracts."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

from ..database.models import QueryType
from ..exceptions import SyncFlowError
from ..utils.logging import get_logger


class Record(dict):
    """One extracted row: an ordered mapping of field name to scalar."""

    def get_field(self, name: str, default: Any = None) -> Any:
        """Return the value of ``name``, or ``default`` when the field is absent."""
        return self.get(name, default)

    @property
    def field_names(self) -> List[str]:
        return list(self.keys())


@dataclass
class QueryDescriptor:
    """What a source should extract for one run."""

    query: str
    query_type: QueryType = QueryType.RAW_SQL
    primary_key: Optional[str] = None
    # Incremental extraction bound; both None for full refresh
    cursor_field: Optional[str] = None
    current_cursor: Optional[str] = None

    @property
    def is_incremental(self) -> bool:
        return self.cursor_field is not None


@dataclass
class ExtractResult:
    """Lazy record stream plus the row count the source reported up front."""

    records: AsyncIterator[Record]
    total_row_count: int


@dataclass
class WriteResult:
    """Outcome of one destination write call."""

    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    response: Optional[Dict[str, Any]] = field(default=None, repr=False)


class ConnectorError(SyncFlowError):
    """Base class for connector failures."""
    pass


class ExtractionError(ConnectorError):
    """Raised when a source cannot produce records."""
    pass


class DestinationWriteError(ConnectorError):
    """Raised when a destination rejects or cannot receive a write."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ConnectivityError(ConnectorError):
    """Raised when a connector fails its connectivity check."""
    pass


class SourceConnector(ABC):
    """Abstract base class for all sources."""

    def __init__(self, configuration: Dict[str, Any], **kwargs):
        """Initialize the source.

        Args:
            configuration: Connection configuration of the source connector
            **kwargs: Additional configuration parameters
        """
        self.configuration = configuration
        self.logger = get_logger(self.__class__.__name__)

    @abstractmethod
    async def query(self, descriptor: QueryDescriptor) -> ExtractResult:
        """Start extracting the rows described by ``descriptor``.

        Args:
            descriptor: Model query and incremental bounds

        Returns:
            ExtractResult whose ``records`` are produced lazily

        Raises:
            ExtractionError: If the query cannot be executed
        """
        pass

    async def check(self) -> bool:
        """Check whether the source is reachable."""
        return True

    async def close(self):
        """Release any resources held by the source."""
        pass


class DestinationConnector(ABC):
    """Abstract base class for all destinations."""

    def __init__(self, configuration: Dict[str, Any], **kwargs):
        """Initialize the destination.

        Args:
            configuration: Connection configuration of the destination connector
            **kwargs: Additional configuration parameters
        """
        self.configuration = configuration
        self.logger = get_logger(self.__class__.__name__)

    @property
    def url(self) -> Optional[str]:
        return self.configuration.get("destination_url")

    @abstractmethod
    async def write(self, url: str, method: str, payload: Dict[str, Any]) -> WriteResult:
        """Send one payload to the destination.

        Args:
            url: Target URL
            method: HTTP method or equivalent verb from the destination stream
            payload: ``{"records": [{"fields": record}, ...]}``

        Returns:
            WriteResult; ``success`` is False for rejected writes

        Raises:
            DestinationWriteError: If the write could not be delivered
        """
        pass

    @abstractmethod
    async def check(self, url: Optional[str] = None) -> bool:
        """Check whether the destination is reachable.

        Returns:
            True if the destination answered successfully, False otherwise
        """
        pass

    async def close(self):
        """Release any resources held by the destination."""
        pass
