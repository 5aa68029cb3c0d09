"""Tests for senselink.config -- loading, secrets and validation."""

import os

import pytest

from senselink.config import (
    agent_info,
    load_config,
    log_validation_result,
    namespace,
    resolve_secret,
    storage_path,
    validate_config,
)

VALID = {"gateway_id": "gw-1", "agent": {"id": "@kathy:example.org", "display_name": "Kathy"}}


class TestLoadConfig:
    def test_missing_file_is_empty(self, tmp_path):
        assert load_config(str(tmp_path / "nope.yaml")) == {}

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "senselink.yaml"
        path.write_text("gateway_id: gw-1\nagent:\n  id: '@kathy:example.org'\n")
        config = load_config(str(path))
        assert config["agent"]["id"] == "@kathy:example.org"

    def test_empty_file(self, tmp_path):
        path = tmp_path / "senselink.yaml"
        path.write_text("")
        assert load_config(str(path)) == {}

    def test_scalar_top_level_rejected(self, tmp_path):
        path = tmp_path / "senselink.yaml"
        path.write_text("just a string\n")
        with pytest.raises(ValueError):
            load_config(str(path))


class TestSecrets:
    def test_env_wins(self, monkeypatch):
        monkeypatch.setenv("SENSELINK_ACCESS_TOKEN", "from-env")
        assert resolve_secret("access_token", {"access_token": "from-file"}) == "from-env"

    def test_falls_back_to_section(self, monkeypatch):
        monkeypatch.delenv("SENSELINK_GATEWAY_SECRET", raising=False)
        assert resolve_secret("gateway_secret", {"gateway_secret": "s"}) == "s"

    def test_absent(self, monkeypatch):
        monkeypatch.delenv("SENSELINK_GATEWAY_SECRET", raising=False)
        assert resolve_secret("gateway_secret") is None


class TestAccessors:
    def test_storage_path_expands(self, tmp_path):
        assert storage_path({"storage_path": str(tmp_path / "s")}) == str(tmp_path / "s")
        assert storage_path({}) == os.path.abspath(os.path.expanduser("~/.senselink"))

    def test_namespace(self):
        assert namespace({}) == "ai.krill."
        assert namespace({"namespace": "org.example"}) == "org.example."

    def test_agent_info_defaults(self):
        info = agent_info({"agent": {"id": "@kathy:example.org"}})
        assert info == {"agent_id": "@kathy:example.org", "display_name": "@kathy:example.org",
                        "capabilities": ["chat"]}


class TestValidation:
    def test_valid(self):
        assert validate_config(VALID) == (True, [])
        assert log_validation_result(VALID)

    def test_missing_keys(self):
        ok, errors = validate_config({})
        assert not ok
        assert any("gateway_id" in e for e in errors)
        assert any("agent" in e for e in errors)

    def test_agent_must_be_mapping(self):
        ok, errors = validate_config({"gateway_id": "gw", "agent": "kathy"})
        assert not ok and any("mapping" in e for e in errors)

    def test_config_patch_checks(self):
        config = {**VALID, "config_patch": {"allowed_senders": "@admin:x", "health_timeout_s": 0}}
        ok, errors = validate_config(config)
        assert not ok
        assert len(errors) == 2

    def test_negative_threshold(self):
        config = {**VALID, "senses": {"location": {"movement_threshold_m": -1}}}
        assert not validate_config(config)[0]

    def test_not_a_dict(self):
        assert validate_config(["x"])[0] is False
        assert not log_validation_result(["x"])
