"""Connector factory for creating source and destination instances."""

from typing import Any, Dict, List, Type

from ..config.settings import get_settings
from .base import DestinationConnector, SourceConnector
from .http import HttpDestination
from .sql import SqlSource


class ConnectorFactory:
    """Factory keyed by a connector's ``connector_name``."""

    _source_classes: Dict[str, Type[SourceConnector]] = {
        "sql": SqlSource,
    }

    _destination_classes: Dict[str, Type[DestinationConnector]] = {
        "http": HttpDestination,
    }

    @classmethod
    def create_source(cls, connector_name: str, configuration: Dict[str, Any], **kwargs) -> SourceConnector:
        """Create a source instance.

        Raises:
            ValueError: If the connector name is not registered
        """
        if connector_name not in cls._source_classes:
            raise ValueError(f"Unsupported source connector: {connector_name}")
        return cls._source_classes[connector_name](configuration=configuration, **kwargs)

    @classmethod
    def create_destination(
        cls,
        connector_name: str,
        configuration: Dict[str, Any],
        **kwargs
    ) -> DestinationConnector:
        """Create a destination instance.

        Raises:
            ValueError: If the connector name is not registered
        """
        if connector_name not in cls._destination_classes:
            raise ValueError(f"Unsupported destination connector: {connector_name}")

        kwargs.setdefault("timeout_seconds", get_settings().executor.write_timeout_seconds)
        return cls._destination_classes[connector_name](configuration=configuration, **kwargs)

    @classmethod
    def get_supported_sources(cls) -> List[str]:
        return list(cls._source_classes.keys())

    @classmethod
    def get_supported_destinations(cls) -> List[str]:
        return list(cls._destination_classes.keys())

    @classmethod
    def register_source(cls, connector_name: str, source_class: Type[SourceConnector]):
        """Register a new source type."""
        cls._source_classes[connector_name] = source_class

    @classmethod
    def register_destination(cls, connector_name: str, destination_class: Type[DestinationConnector]):
        """Register a new destination type."""
        cls._destination_classes[connector_name] = destination_class
