"""
Engine settings: defaults, dict parsing, YAML loading and the audit log
emitted for every load.
"""

import pytest
import yaml

from fulfillment_config import get_active_settings
from fulfillment_config.loader import compute_checksum, load_yaml_file, parse_settings
from fulfillment_config.settings import (
    AllocationSettings,
    EngineSettings,
    FulfillmentSettings,
    LockingSettings,
    ReviewSettings,
)
from fulfillment_engines.lot_selector import AllocationStrategy


class TestDefaults:

    def test_defaults(self):
        settings = EngineSettings()

        assert settings.allocation.strategy is AllocationStrategy.FEFO
        assert settings.allocation.allow_partial is False
        assert settings.allocation.exclude_expired is True
        assert settings.locking.lock_timeout_ms == 5000
        assert settings.review.proposed_ttl_minutes == 1440
        assert settings.fulfillment.shipment_number_prefix == "SHP"

    def test_with_defaults_is_logged(self, captured_logs):
        assert EngineSettings.with_defaults() == EngineSettings()
        assert any(r["message"] == "engine_settings_created_with_defaults" for r in captured_logs())

    def test_shipped_default_file_matches_defaults(self):
        assert get_active_settings() == EngineSettings()


class TestSectionValidation:

    def test_unknown_strategy(self):
        with pytest.raises(ValueError, match="default_strategy"):
            AllocationSettings(default_strategy="lifo")

    @pytest.mark.parametrize("value", [0, -10])
    def test_lock_timeout_positive(self, value):
        with pytest.raises(ValueError):
            LockingSettings(lock_timeout_ms=value)

    def test_ttl_positive(self):
        with pytest.raises(ValueError):
            ReviewSettings(proposed_ttl_minutes=0)

    @pytest.mark.parametrize("prefix", ["", "   ", "X" * 21])
    def test_bad_shipment_prefix(self, prefix):
        with pytest.raises(ValueError):
            FulfillmentSettings(shipment_number_prefix=prefix)


class TestFromDict:

    def test_partial_document_keeps_other_defaults(self):
        settings = EngineSettings.from_dict({"allocation": {"default_strategy": "fifo"}})

        assert settings.allocation.strategy is AllocationStrategy.FIFO
        assert settings.locking == LockingSettings()

    def test_empty_section_is_default(self):
        assert EngineSettings.from_dict({"review": None}) == EngineSettings()

    def test_unknown_section(self):
        with pytest.raises(ValueError, match="Unknown settings sections: pricing"):
            EngineSettings.from_dict({"pricing": {}})

    def test_unknown_key(self):
        with pytest.raises(ValueError, match="'locking'"):
            EngineSettings.from_dict({"locking": {"nowait": True}})

    def test_section_must_be_mapping(self):
        with pytest.raises(ValueError, match="must be a mapping"):
            EngineSettings.from_dict({"review": [1, 2]})

    def test_to_dict_round_trip(self):
        settings = EngineSettings.from_dict({"fulfillment": {"shipment_number_prefix": "OUT"}})
        assert EngineSettings.from_dict(settings.to_dict()) == settings


class TestLoader:

    def _write(self, tmp_path, document):
        path = tmp_path / "settings.yaml"
        path.write_text(yaml.safe_dump(document))
        return path

    def test_load_custom_file(self, tmp_path):
        path = self._write(tmp_path, {
            "config_id": "eu-west",
            "version": 3,
            "settings": {"allocation": {"allow_partial": True}, "locking": {"lock_timeout_ms": 750}},
        })

        settings = get_active_settings(path)

        assert settings.allocation.allow_partial is True
        assert settings.locking.lock_timeout_ms == 750

    def test_bare_sections_accepted(self, tmp_path):
        path = self._write(tmp_path, {"review": {"proposed_ttl_minutes": 30}})
        assert parse_settings(load_yaml_file(path)).review.proposed_ttl_minutes == 30

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_settings(tmp_path / "absent.yaml")

    def test_non_mapping_document(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValueError, match="must contain a mapping"):
            load_yaml_file(path)

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("settings: [unclosed\n")
        with pytest.raises(yaml.YAMLError):
            load_yaml_file(path)

    def test_load_is_logged_with_checksum(self, tmp_path, captured_logs):
        path = self._write(tmp_path, {"config_id": "eu-west", "version": 3, "settings": {}})

        settings = get_active_settings(path)

        loaded = [r for r in captured_logs() if r["message"] == "fulfillment_config_loaded"]
        assert loaded[0]["config_id"] == "eu-west"
        assert loaded[0]["config_version"] == 3
        assert loaded[0]["checksum"] == compute_checksum(settings.to_dict())


class TestChecksum:

    def test_key_order_irrelevant(self):
        assert compute_checksum({"a": 1, "b": 2}) == compute_checksum({"b": 2, "a": 1})

    def test_value_change_detected(self):
        base = EngineSettings().to_dict()
        changed = EngineSettings.from_dict({"locking": {"lock_timeout_ms": 1}}).to_dict()
        assert compute_checksum(base) != compute_checksum(changed)
