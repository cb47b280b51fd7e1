"""Workspace file loader for JSON/YAML files."""

import os
import json
import re
import yaml
from pathlib import Path
from typing import Dict, Any, List, Optional, Union

from pydantic import ValidationError

from .schema import WorkspaceConfig
from .settings import get_settings
from ..exceptions import ConfigurationError
from ..utils.logging import get_logger


_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigLoader:
    """Loads and validates workspace files."""

    def __init__(self):
        self.logger = get_logger(self.__class__.__name__)

    def load_from_file(self, file_path: Union[str, Path]) -> WorkspaceConfig:
        """Load a workspace from a JSON or YAML file.

        Args:
            file_path: Path to the workspace file

        Returns:
            Validated WorkspaceConfig object

        Raises:
            ConfigurationError: If the file cannot be read, parsed or validated
        """
        file_path = Path(file_path)

        if not file_path.exists():
            raise ConfigurationError(f"Configuration file not found: {file_path}")

        self.logger.info("Loading workspace from file", file_path=str(file_path))

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                if file_path.suffix.lower() in ['.yaml', '.yml']:
                    data = yaml.safe_load(f)
                elif file_path.suffix.lower() == '.json':
                    data = json.load(f)
                else:
                    raise ConfigurationError(f"Unsupported file format: {file_path.suffix}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML format: {e}")
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON format: {e}")
        except OSError as e:
            raise ConfigurationError(f"Failed to read configuration: {e}")

        return self.load_from_dict(data or {})

    def load_from_dict(self, data: Dict[str, Any]) -> WorkspaceConfig:
        """Validate a workspace given as a dictionary.

        ``${VAR}`` placeholders in string values are replaced from the
        environment.
        """
        try:
            config = WorkspaceConfig(**self._expand_env(data))
        except ValidationError as e:
            raise ConfigurationError(f"Invalid workspace configuration: {e}")

        self.logger.info(
            "Workspace loaded",
            connectors=len(config.connectors),
            models=len(config.models),
            syncs=len(config.syncs)
        )
        return config

    def _expand_env(self, value: Any) -> Any:
        if isinstance(value, dict):
            return {key: self._expand_env(item) for key, item in value.items()}
        if isinstance(value, list):
            return [self._expand_env(item) for item in value]
        if isinstance(value, str):
            return _ENV_PATTERN.sub(self._env_value, value)
        return value

    def _env_value(self, match: re.Match) -> str:
        name = match.group(1)
        value = os.getenv(name)
        if value is None:
            raise ConfigurationError(f"Environment variable '{name}' is not set")
        return value

    def save_to_file(self, config: WorkspaceConfig, file_path: Union[str, Path], format: str = 'yaml'):
        """Write a workspace to disk as YAML or JSON."""
        file_path = Path(file_path)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        data = config.model_dump(mode="json")

        with open(file_path, 'w', encoding='utf-8') as f:
            if format == 'json':
                json.dump(data, f, indent=2)
            else:
                yaml.safe_dump(data, f, sort_keys=False)

        self.logger.info("Workspace saved", file_path=str(file_path), format=format)

    def validate_config(self, config: WorkspaceConfig) -> List[str]:
        """Return warnings for a workspace that is valid but suspicious."""
        warnings = []

        used_connectors = {s.source for s in config.syncs} | {s.destination for s in config.syncs}
        used_connectors |= {m.connector for m in config.models}
        for connector in config.connectors:
            if connector.name not in used_connectors:
                warnings.append(f"Connector '{connector.name}' is not used by any model or sync")

        for sync in config.syncs:
            destination = config.get_connector(sync.destination)
            stream_names = {s.get("name") for s in (destination.catalog or {}).get("streams", [])}
            if sync.stream_name not in stream_names:
                warnings.append(f"Stream '{sync.stream_name}' is not in the catalog of '{sync.destination}'")

        if config.environment == 'production' and not config.get_scheduled_syncs():
            warnings.append("No scheduled syncs in production")

        if warnings:
            self.logger.warning("Workspace validation warnings", warnings=warnings)
        return warnings


def find_workspace_file() -> Optional[Path]:
    """Locate the workspace file.

    Looks in this order:
    1. ``SYNCFLOW_WORKSPACE_FILE`` (via settings)
    2. ./config/workspace.yaml
    3. ./config/workspace.json
    4. ./workspace.yaml
    """
    configured = get_settings().workspace_file
    if configured:
        return Path(configured)

    for candidate in ("config/workspace.yaml", "config/workspace.json", "workspace.yaml"):
        path = Path(candidate)
        if path.exists():
            return path
    return None
