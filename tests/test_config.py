"""Tests for lease_automation.config -- defaults and YAML overlay."""

import pytest

from lease_automation.config import MIN_CHECK_INTERVAL_MS, LeaseAutomationConfig, get_config


class TestDefaults:

    def test_scheduler_defaults(self):
        cfg = LeaseAutomationConfig()
        assert cfg.scheduler.check_interval_ms == 60_000
        assert cfg.scheduler.trigger_hour == 9

    def test_queue_defaults(self):
        cfg = LeaseAutomationConfig()
        assert cfg.queue.max_attempts == 3
        assert cfg.queue.retry_interval_seconds == 0
        assert cfg.queue.transport == "simulated"

    def test_template_defaults(self):
        cfg = LeaseAutomationConfig()
        assert cfg.templates.cache_ttl_seconds == 300
        assert cfg.templates.missing_key_policy == "keep"

    def test_relay_disabled_without_url(self, monkeypatch):
        monkeypatch.delenv("LEASE_RELAY_URL", raising=False)
        assert LeaseAutomationConfig().relay.enabled is False

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("LEASE_RELAY_URL", "https://relay.example.com")
        monkeypatch.setenv("LEASE_OWNER_ID", "owner-7")
        monkeypatch.setenv("LEASE_VAULT_KEY", "master")
        cfg = LeaseAutomationConfig()
        assert cfg.relay.enabled is True
        assert cfg.scheduler.owner_id == "owner-7"
        assert cfg.vault.master_key == "master"

    def test_relative_storage_paths_resolve_under_project(self):
        storage = LeaseAutomationConfig().storage
        assert storage.resolve("data/x.db").is_absolute()
        assert storage.resolve("/tmp/x.db").as_posix() == "/tmp/x.db"


class TestYamlOverlay:

    def test_missing_file_gives_defaults(self, tmp_path):
        cfg = get_config(tmp_path / "absent.yaml")
        assert cfg.queue.max_attempts == 3

    def test_overlay(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "scheduler:\n"
            "  trigger_hour: 7\n"
            "queue:\n"
            "  max_attempts: 5\n"
            "  transport: smtp\n"
            "engine:\n"
            "  landlord_name: Northside Lettings\n"
            "unknown_section:\n"
            "  x: 1\n",
            encoding="utf-8",
        )
        cfg = get_config(path)
        assert cfg.scheduler.trigger_hour == 7
        assert cfg.queue.max_attempts == 5
        assert cfg.queue.transport == "smtp"
        assert cfg.engine.landlord_name == "Northside Lettings"
        assert cfg.templates.cache_ttl_seconds == 300

    def test_unknown_keys_ignored(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("queue:\n  not_a_setting: 1\n", encoding="utf-8")
        assert not hasattr(get_config(path).queue, "not_a_setting")

    @pytest.mark.parametrize("requested,expected", [
        (1_000, MIN_CHECK_INTERVAL_MS),
        (10_000, 10_000),
        (120_000, 120_000),
    ])
    def test_interval_floor(self, tmp_path, requested, expected):
        path = tmp_path / "config.yaml"
        path.write_text(f"scheduler:\n  check_interval_ms: {requested}\n", encoding="utf-8")
        assert get_config(path).scheduler.check_interval_ms == expected

    def test_empty_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("", encoding="utf-8")
        assert get_config(path).scheduler.trigger_hour == 9
