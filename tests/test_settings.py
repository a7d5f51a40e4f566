"""
Tests for wsa_arm.config.settings module.

This test suite covers:
- Settings loading and saving
- Error handling for corrupted settings files
- PipelineConfig construction from settings and CLI overrides
"""

import json
from datetime import datetime

import pytest

from wsa_arm.config import settings
from wsa_arm.config.settings import PipelineConfig
from wsa_arm.domain.models import ShrinkPolicy, TranslationLayer


@pytest.fixture
def settings_file(tmp_path, monkeypatch):
    path = tmp_path / "config" / "settings.json"
    monkeypatch.setattr("wsa_arm.config.settings.SETTINGS_PATH", path)
    yield path
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)


class TestLoadSettings:
    def test_load_defaults_when_no_file(self, settings_file):
        settings.settings_store.values = {}
        settings.load_settings()

        assert settings.settings_store.values == settings.DEFAULT_SETTINGS

    def test_load_merges_with_defaults(self, settings_file):
        settings_file.parent.mkdir(parents=True)
        settings_file.write_text(json.dumps({"houdini_budget_mib": 512}))

        settings.load_settings()

        assert settings.get_setting("houdini_budget_mib") == 512
        assert settings.get_setting("ndk_budget_mib") == 600

    def test_corrupted_file_falls_back_to_defaults(self, settings_file):
        settings_file.parent.mkdir(parents=True)
        settings_file.write_text("{not json")

        settings.load_settings()

        assert settings.settings_store.values == settings.DEFAULT_SETTINGS

    def test_non_dict_json_is_ignored(self, settings_file):
        settings_file.parent.mkdir(parents=True)
        settings_file.write_text("[1, 2]")

        settings.load_settings()

        assert settings.settings_store.values == settings.DEFAULT_SETTINGS


class TestSaveSettings:
    def test_set_setting_persists(self, settings_file):
        settings.load_settings()
        settings.set_setting("vendor_shrink_policy", "planned")

        saved = json.loads(settings_file.read_text())
        assert saved["vendor_shrink_policy"] == "planned"


class TestPipelineConfig:
    def test_defaults(self):
        config = PipelineConfig()

        assert config.system_growth_factor == 3
        assert config.vendor_shrink_policy is ShrinkPolicy.BUFFER
        assert config.timestamp_epoch == datetime(2009, 1, 1)
        assert config.payload_budget_mib(TranslationLayer.HOUDINI) == 400
        assert config.payload_budget_mib(TranslationLayer.NDK) == 600

    def test_from_settings_reads_store(self, settings_file):
        settings.load_settings()
        settings.settings_store.values["vendor_buffer_mib"] = 250
        settings.settings_store.values["timestamp_epoch"] = "2010-06-01T12:00:00"

        config = PipelineConfig.from_settings()

        assert config.vendor_buffer_mib == 250
        assert config.timestamp_epoch == datetime(2010, 6, 1, 12)

    def test_overrides_win_and_none_is_ignored(self, settings_file):
        settings.load_settings()
        settings.settings_store.values["vendor_shrink_policy"] = "planned"

        assert PipelineConfig.from_settings(vendor_shrink_policy=None).vendor_shrink_policy is (
            ShrinkPolicy.PLANNED
        )
        assert PipelineConfig.from_settings(vendor_shrink_policy="minimize").vendor_shrink_policy is (
            ShrinkPolicy.MINIMIZE
        )

    def test_invalid_policy_raises(self, settings_file):
        settings.load_settings()

        with pytest.raises(ValueError):
            PipelineConfig.from_settings(vendor_shrink_policy="tiny")

    def test_config_is_immutable(self):
        config = PipelineConfig()

        with pytest.raises(AttributeError):
            config.system_growth_factor = 4
