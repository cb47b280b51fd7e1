"""Tests for settings, workspace loading and applying workspaces."""

import copy

import pytest
import yaml

from syncflow.config import AppSettings, WORKSPACE_EXAMPLE, WorkspaceConfig, get_settings, reset_settings
from syncflow.config.loader import ConfigLoader
from syncflow.config.manager import ConfigManager
from syncflow.database import ScheduleType
from syncflow.exceptions import ConfigurationError


@pytest.fixture
def workspace_data(monkeypatch):
    monkeypatch.setenv("WAREHOUSE_URL", "sqlite:///warehouse.db")
    return copy.deepcopy(WORKSPACE_EXAMPLE)


class TestSettings:
    """Test environment-driven settings."""

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("SYNCFLOW_EXECUTOR_CHUNK_SIZE", "50")
        monkeypatch.setenv("SYNCFLOW_SCHEDULE_RUN_TIMEOUT_MINUTES", "90")
        try:
            settings = reset_settings()
            assert settings.executor.chunk_size == 50
            assert settings.scheduling.run_timeout_minutes == 90
            assert get_settings() is settings
        finally:
            reset_settings()

    def test_defaults(self):
        settings = AppSettings()
        assert settings.executor.chunk_size >= 1
        assert settings.executor.skip_unchanged_records is False
        assert settings.notifications.enabled is True


class TestConfigLoader:
    """Test workspace parsing and validation."""

    def setup_method(self):
        self.loader = ConfigLoader()

    def test_env_placeholders_are_expanded(self, workspace_data):
        config = self.loader.load_from_dict(workspace_data)

        assert config.get_connector("warehouse").configuration["url"] == "sqlite:///warehouse.db"
        assert [sync.stream_name for sync in config.get_scheduled_syncs()] == ["contacts"]

    def test_missing_env_variable(self, monkeypatch):
        monkeypatch.delenv("WAREHOUSE_URL", raising=False)

        with pytest.raises(ConfigurationError, match="WAREHOUSE_URL"):
            self.loader.load_from_dict(copy.deepcopy(WORKSPACE_EXAMPLE))

    def test_unknown_model_reference(self, workspace_data):
        workspace_data["syncs"][0]["model"] = "orders"

        with pytest.raises(ConfigurationError, match="unknown model"):
            self.loader.load_from_dict(workspace_data)

    def test_duplicate_connector_names(self, workspace_data):
        workspace_data["connectors"].append(copy.deepcopy(workspace_data["connectors"][0]))

        with pytest.raises(ConfigurationError, match="Duplicate connector"):
            self.loader.load_from_dict(workspace_data)

    def test_catalog_requires_named_streams(self, workspace_data):
        workspace_data["connectors"][1]["catalog"] = {"streams": [{"request_method": "POST"}]}

        with pytest.raises(ConfigurationError):
            self.loader.load_from_dict(workspace_data)

    def test_yaml_file_round_trip(self, tmp_path, workspace_data):
        config = self.loader.load_from_dict(workspace_data)
        path = tmp_path / "workspace.yaml"

        self.loader.save_to_file(config, path)
        reloaded = self.loader.load_from_file(path)

        assert reloaded == config

    def test_json_file(self, tmp_path, workspace_data):
        path = tmp_path / "workspace.json"
        self.loader.save_to_file(self.loader.load_from_dict(workspace_data), path, format="json")

        assert isinstance(self.loader.load_from_file(path), WorkspaceConfig)

    def test_unsupported_and_missing_files(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            self.loader.load_from_file(tmp_path / "absent.yaml")

        path = tmp_path / "workspace.toml"
        path.write_text("x = 1")
        with pytest.raises(ConfigurationError, match="Unsupported"):
            self.loader.load_from_file(path)

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("connectors: [unterminated")

        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            self.loader.load_from_file(path)

    def test_validation_warnings(self, workspace_data):
        workspace_data["connectors"].append({
            "name": "unused",
            "connector_type": "destination",
            "connector_name": "http",
            "catalog": {"streams": [{"name": "leads"}]}
        })
        workspace_data["syncs"][0]["stream_name"] = "leads"
        workspace_data["syncs"][0]["destination"] = "unused"

        warnings = self.loader.validate_config(self.loader.load_from_dict(workspace_data))

        assert any("'crm' is not used" in warning for warning in warnings)


class TestConfigManager:
    """Test applying a workspace to the database."""

    def write_workspace(self, tmp_path, data):
        path = tmp_path / "workspace.yaml"
        path.write_text(yaml.safe_dump(data))
        return str(path)

    def test_apply_creates_definitions(self, tmp_path, db_service, orchestrator, workspace_data):
        manager = ConfigManager(db_service, orchestrator, self.write_workspace(tmp_path, workspace_data))

        stats = manager.apply()

        assert stats["connectors_added"] == 2
        assert stats["models_added"] == 1
        assert stats["syncs_added"] == 1
        syncs = db_service.list_syncs()
        assert len(syncs) == 1
        assert syncs[0].schedule_type == ScheduleType.INTERVAL
        assert syncs[0].sync_interval_unit.value == "hours"
        assert db_service.find_model(1, "users").primary_key == "id"

    def test_apply_is_idempotent(self, tmp_path, db_service, orchestrator, workspace_data):
        path = self.write_workspace(tmp_path, workspace_data)
        ConfigManager(db_service, orchestrator, path).apply()

        stats = ConfigManager(db_service, orchestrator, path).apply()

        assert stats == {
            "connectors_added": 0,
            "models_added": 0,
            "syncs_added": 0,
            "syncs_updated": 0,
            "syncs_skipped": 1
        }

    def test_changed_schedule_updates_sync(self, tmp_path, db_service, orchestrator, workspace_data):
        ConfigManager(db_service, orchestrator, self.write_workspace(tmp_path, workspace_data)).apply()

        workspace_data["syncs"][0].update({
            "schedule_type": "cron_expression",
            "cron_expression": "0 2 * * *",
            "sync_interval": None,
            "sync_interval_unit": None
        })
        stats = ConfigManager(db_service, orchestrator, self.write_workspace(tmp_path, workspace_data)).apply()

        assert stats["syncs_updated"] == 1
        sync = db_service.list_syncs()[0]
        assert sync.schedule_type == ScheduleType.CRON_EXPRESSION
        assert sync.sync_interval is None

    def test_invalid_sync_raises_configuration_error(self, tmp_path, db_service, orchestrator, workspace_data):
        workspace_data["syncs"][0]["schedule_type"] = "fortnightly"
        manager = ConfigManager(db_service, orchestrator, self.write_workspace(tmp_path, workspace_data))

        with pytest.raises(ConfigurationError):
            manager.apply()

    def test_load_config_is_cached(self, tmp_path, db_service, orchestrator, workspace_data):
        manager = ConfigManager(db_service, orchestrator, self.write_workspace(tmp_path, workspace_data))

        assert manager.load_config() is manager.load_config()
        assert manager.load_config(force_reload=True) is not None
