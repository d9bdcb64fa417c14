"""
tests/test_config.py — YAML Configuration Loader
=================================================
"""

from __future__ import annotations

from zoneinfo import ZoneInfo

import pytest

from questledger.config import load_config, parse_config


class TestLoadConfig:
    def test_full_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "app_name: Blazo Academy\n"
            "reference_timezone: Europe/Berlin\n"
            "storage_timeout_seconds: 2.5\n"
            "transfer:\n"
            "  gateway_url: http://gateway:8080\n"
            "  timeout_seconds: 4\n"
            "retry:\n"
            "  max_attempts: 5\n"
            "  retry_window_seconds: 60\n",
            encoding="utf-8",
        )

        cfg = load_config(path)

        assert cfg.app_name == "Blazo Academy"
        assert cfg.tz == ZoneInfo("Europe/Berlin")
        assert cfg.storage_timeout_seconds == 2.5
        assert cfg.transfer.gateway_url == "http://gateway:8080"
        assert cfg.transfer.timeout_seconds == 4.0
        assert cfg.transfer.network == "testnet"
        assert cfg.retry.max_attempts == 5
        assert cfg.retry.base_delay_seconds == 1.0
        assert cfg.retry.retry_window_seconds == 60.0

    def test_defaults(self):
        cfg = parse_config({"app_name": "X"})
        assert cfg.reference_timezone == "UTC"
        assert cfg.streak_grace_hours == 48
        assert cfg.retry.max_attempts == 3
        assert cfg.reconciliation_interval_seconds == 300

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")

    def test_missing_app_name(self):
        with pytest.raises(KeyError):
            parse_config({})

    def test_unknown_timezone(self):
        with pytest.raises(ValueError, match="reference_timezone"):
            parse_config({"app_name": "X", "reference_timezone": "Nowhere/Special"})

    def test_config_is_frozen(self):
        cfg = parse_config({"app_name": "X"})
        with pytest.raises(AttributeError):
            cfg.app_name = "Y"
