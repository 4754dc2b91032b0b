"""Tests for config loading and saving."""

import stat
from pathlib import Path

import pytest

from twitter_bookmark_sync.config import (
    AppConfig,
    AuthConfig,
    FetchConfig,
    SyncConfig,
    config_exists,
    load_config,
    save_config,
)


@pytest.fixture(autouse=True)
def no_env_query_id(monkeypatch):
    monkeypatch.delenv("TWITTER_BOOKMARKS_QUERY_ID", raising=False)


@pytest.fixture
def config_path(tmp_path):
    return tmp_path / "nested" / "config.toml"


class TestConfig:
    def test_round_trip(self, config_path):
        config = AppConfig(
            auth=AuthConfig(auth_token="tok", ct0="csrf", twid="u%3D1"),
            state_dir=Path("/tmp/state"),
            fetch=FetchConfig(base_delay=2.0, jitter=0.5, read_pause_chance=0.0),
            sync=SyncConfig(soft_page_size=10, reconcile_throttle_hours=1),
            query_id="abc",
        )
        save_config(config, config_path)

        loaded = load_config(config_path)
        assert loaded.auth == config.auth
        assert loaded.state_dir == Path("/tmp/state")
        assert loaded.fetch.base_delay == 2.0
        assert loaded.sync.soft_page_size == 10
        assert loaded.query_id == "abc"

    def test_file_is_private(self, config_path):
        save_config(AppConfig(auth=AuthConfig(auth_token="tok", ct0="csrf")), config_path)
        assert stat.S_IMODE(config_path.stat().st_mode) == 0o600
        assert config_exists(config_path)

    def test_defaults(self, config_path):
        config_path.parent.mkdir(parents=True)
        config_path.write_text('[auth]\nauth_token = "tok"\nct0 = "csrf"\n')

        loaded = load_config(config_path)
        assert loaded.auth.twid is None
        assert loaded.state_dir == Path(".state")
        assert loaded.query_id is None
        assert loaded.fetch.pacing().base_delay == 1.2
        settings = loaded.sync.settings()
        assert settings.soft_page_size == 20
        assert settings.reconcile_throttle == 4 * 3600
        assert settings.soft_sync_throttle == 30 * 60

    def test_missing_auth(self, config_path):
        config_path.parent.mkdir(parents=True)
        config_path.write_text('[auth]\nauth_token = "tok"\n')
        with pytest.raises(ValueError, match="auth.ct0"):
            load_config(config_path)

    def test_missing_file(self, config_path):
        assert not config_exists(config_path)
        with pytest.raises(FileNotFoundError):
            load_config(config_path)

    def test_env_query_id_overrides(self, config_path, monkeypatch):
        save_config(
            AppConfig(auth=AuthConfig(auth_token="tok", ct0="csrf"), query_id="fromFile"),
            config_path,
        )
        monkeypatch.setenv("TWITTER_BOOKMARKS_QUERY_ID", "fromEnv")
        assert load_config(config_path).query_id == "fromEnv"
