"""
Tests for YAML configuration loading and the sync-config bridge.
"""

import yaml

import pytest

from eqvault.config import (
    EQVaultConfig,
    build_sync_config,
    create_default_config,
    ensure_device_id,
    get_config_path,
    get_example_config,
    load_config,
    save_config,
)
from eqvault.models import CoachingStyle, PatternType, PrivacyLevel


class TestLoadConfig:

    def test_missing_file_gives_strict_defaults(self):
        config = load_config()

        assert config.allow_local_processing is True
        assert config.allow_selective_sync is False
        assert config.allow_anonymous_aggregation is False
        assert config.allow_research_participation is False
        assert config.privacy_level is PrivacyLevel.DEVICE_ONLY
        assert all(not pref.sync_enabled for pref in config.sync_preferences())
        assert all(pref.anonymization_level == 10 for pref in config.sync_preferences())

    def test_partial_file_merges_with_defaults(self, eqvault_home):
        get_config_path().write_text(
            "allow_selective_sync: true\n"
            "coaching_style: direct-mentor\n"
            "sync_patterns:\n"
            "  empathy-spike:\n"
            "    enabled: true\n"
            "    anonymization_level: 7\n"
        )

        config = load_config()

        assert config.allow_selective_sync is True
        assert config.style is CoachingStyle.DIRECT_MENTOR
        assert config.retention_period_days == 90
        prefs = {p.pattern_type: p for p in config.sync_preferences()}
        assert prefs[PatternType.EMPATHY_SPIKE].sync_enabled is True
        assert prefs[PatternType.EMPATHY_SPIKE].anonymization_level == 7
        assert prefs[PatternType.SOCIAL_HARMONY].sync_enabled is False

    @pytest.mark.parametrize("content", [
        "allow_selective_sync: [unclosed",
        "coaching_style: shouty-coach\n",
        "default_privacy_level: everyone\n",
        "sync_patterns:\n  empathy-spike:\n    anonymization_level: 42\n",
        "aggregation_threshold: 0\n",
        "retry_backoff_seconds: -2.5\n",
        "unknown_key_only_list:\n- 1\n",
        "- just\n- a list\n",
    ])
    def test_malformed_file_falls_back_to_defaults(self, eqvault_home, content):
        get_config_path().write_text(content)

        config = load_config()

        assert config == EQVaultConfig()

    def test_save_and_reload(self, tmp_path):
        path = tmp_path / "config.yaml"
        config = EQVaultConfig(device_id="device_1", allow_anonymous_aggregation=True, kdf_iterations=200_000)

        save_config(config, path)

        assert load_config(path) == config
        assert "sync_endpoint" not in yaml.safe_load(path.read_text())

    def test_example_config_is_valid_yaml_with_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(get_example_config())

        assert load_config(path) == EQVaultConfig()

    def test_create_default_config_once(self):
        assert create_default_config() is True
        assert create_default_config() is False
        assert get_config_path().exists()


class TestDeviceId:

    def test_generated_once_and_persisted(self):
        config = load_config()

        device_id = ensure_device_id(config)

        assert device_id.startswith("device_")
        assert load_config().device_id == device_id
        assert ensure_device_id(load_config()) == device_id


class TestBuildSyncConfig:

    def test_consent_and_opt_in_both_required(self):
        opted_in = EQVaultConfig(allow_selective_sync=True)
        opted_out = EQVaultConfig(allow_selective_sync=False)

        assert build_sync_config(opted_in, "fp", consent=True).require_explicit_consent is True
        assert build_sync_config(opted_in, "fp", consent=False).require_explicit_consent is False
        assert build_sync_config(opted_in, "fp", consent="yes").require_explicit_consent is False
        assert build_sync_config(opted_out, "fp", consent=True).require_explicit_consent is False

    def test_carries_conditions(self):
        config = EQVaultConfig(
            allow_selective_sync=True,
            sync_only_on_wifi=False,
            max_sync_frequency=60,
            allow_anonymous_aggregation=True,
        )

        sync_config = build_sync_config(config, "fp", consent=True)

        assert sync_config.device_key_fingerprint == "fp"
        assert sync_config.sync_only_on_wifi is False
        assert sync_config.max_sync_frequency == 60
        assert sync_config.allow_anonymous_aggregation is True
        assert len(sync_config.sync_patterns) == len(PatternType)
