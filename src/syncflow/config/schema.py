"""Workspace file schema: connectors, models and syncs referenced by name."""

from typing import Dict, Any, List, Literal, Optional
from pydantic import BaseModel, Field, field_validator, model_validator


ConnectorRole = Literal["source", "destination"]


class ConnectorConfig(BaseModel):
    """A source or destination connector definition."""

    name: str = Field(..., description="Unique connector name within the workspace")
    connector_type: ConnectorRole = Field(..., description="source or destination")
    connector_name: str = Field(..., description="Connector implementation key, e.g. sql or http")
    configuration: Dict[str, Any] = Field(default_factory=dict, description="Connection configuration")
    catalog: Optional[Dict[str, Any]] = Field(None, description="Destination streams")

    @field_validator("catalog")
    @classmethod
    def validate_catalog(cls, v):
        if v is None:
            return v
        streams = v.get("streams")
        if not isinstance(streams, list) or not all(isinstance(s, dict) and s.get("name") for s in streams):
            raise ValueError("catalog.streams must be a list of objects with a name")
        return v


class ModelConfig(BaseModel):
    """A query over a source connector."""

    name: str = Field(..., description="Unique model name within the workspace")
    connector: str = Field(..., description="Name of the source connector")
    query: str = Field(..., description="SQL query or table name")
    query_type: Literal["raw_sql", "table_selector"] = Field(default="raw_sql")
    primary_key: Optional[str] = Field(None, description="Field identifying a record")


class SyncConfig(BaseModel):
    """A sync between a model's source and a destination stream."""

    source: str = Field(..., description="Name of the source connector")
    destination: str = Field(..., description="Name of the destination connector")
    model: str = Field(..., description="Name of the model")
    stream_name: str
    schedule_type: str = Field(default="manual")
    sync_interval: Optional[int] = None
    sync_interval_unit: Optional[str] = None
    cron_expression: Optional[str] = None
    sync_mode: Literal["full_refresh", "incremental"] = Field(default="full_refresh")
    cursor_field: Optional[str] = None
    configuration: Dict[str, Any] = Field(default_factory=dict)

    @property
    def key(self) -> tuple:
        """Identity of a sync inside a workspace file."""
        return (self.source, self.destination, self.model, self.stream_name)


class WorkspaceConfig(BaseModel):
    """Top-level workspace file."""

    workspace_id: int = Field(default=1)
    environment: str = Field(default="development")
    connectors: List[ConnectorConfig] = Field(default_factory=list)
    models: List[ModelConfig] = Field(default_factory=list)
    syncs: List[SyncConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_references(self):
        connector_types = {c.name: c.connector_type for c in self.connectors}
        if len(connector_types) != len(self.connectors):
            raise ValueError("Duplicate connector names")

        model_names = {m.name for m in self.models}
        if len(model_names) != len(self.models):
            raise ValueError("Duplicate model names")

        for model in self.models:
            if connector_types.get(model.connector) != "source":
                raise ValueError(f"Model '{model.name}' references unknown source connector '{model.connector}'")

        for sync in self.syncs:
            if connector_types.get(sync.source) != "source":
                raise ValueError(f"Sync references unknown source connector '{sync.source}'")
            if connector_types.get(sync.destination) != "destination":
                raise ValueError(f"Sync references unknown destination connector '{sync.destination}'")
            if sync.model not in model_names:
                raise ValueError(f"Sync references unknown model '{sync.model}'")

        return self

    def get_connector(self, name: str) -> Optional[ConnectorConfig]:
        return next((c for c in self.connectors if c.name == name), None)

    def get_scheduled_syncs(self) -> List[SyncConfig]:
        return [s for s in self.syncs if s.schedule_type != "manual"]


WORKSPACE_EXAMPLE = {
    "workspace_id": 1,
    "connectors": [
        {
            "name": "warehouse",
            "connector_type": "source",
            "connector_name": "sql",
            "configuration": {"url": "${WAREHOUSE_URL}"}
        },
        {
            "name": "crm",
            "connector_type": "destination",
            "connector_name": "http",
            "configuration": {"destination_url": "https://crm.example.com/api/records"},
            "catalog": {"streams": [{"name": "contacts", "request_method": "POST"}]}
        }
    ],
    "models": [
        {"name": "users", "connector": "warehouse", "query": "SELECT * FROM users", "primary_key": "id"}
    ],
    "syncs": [
        {
            "source": "warehouse",
            "destination": "crm",
            "model": "users",
            "stream_name": "contacts",
            "schedule_type": "interval",
            "sync_interval": 1,
            "sync_interval_unit": "hours"
        }
    ]
}
