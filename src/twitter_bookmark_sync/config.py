"""Configuration loading and saving.

Config file location: ~/.config/twitter-bookmark-sync/config.toml

Schema:
    [auth]
    auth_token = "..."
    ct0 = "..."
    twid = "u%3D123"  # optional, identifies the signed-in user

    [state]
    state_dir = ".state"

    [fetch]
    base_delay = 1.2
    jitter = 1.3
    read_pause_chance = 0.15

    [sync]
    soft_page_size = 20
    reconcile_throttle_hours = 4
    soft_sync_throttle_minutes = 30

    [api]
    query_id = "..."  # GraphQL query ID for Bookmarks endpoint
"""

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

import tomli_w

from .fetch_queue import FETCH_BASE_DELAY, FETCH_JITTER, FETCH_READ_PAUSE_CHANCE, PacingConfig
from .sync import SyncSettings

CONFIG_DIR = Path.home() / ".config" / "twitter-bookmark-sync"
CONFIG_FILE = CONFIG_DIR / "config.toml"


@dataclass
class AuthConfig:
    auth_token: str
    ct0: str
    twid: str | None = None


@dataclass
class FetchConfig:
    base_delay: float = FETCH_BASE_DELAY
    jitter: float = FETCH_JITTER
    read_pause_chance: float = FETCH_READ_PAUSE_CHANCE

    def pacing(self) -> PacingConfig:
        return PacingConfig(
            base_delay=self.base_delay,
            jitter=self.jitter,
            read_pause_chance=self.read_pause_chance,
        )


@dataclass
class SyncConfig:
    soft_page_size: int = 20
    reconcile_throttle_hours: float = 4.0
    soft_sync_throttle_minutes: float = 30.0

    def settings(self) -> SyncSettings:
        return SyncSettings(
            soft_page_size=self.soft_page_size,
            reconcile_throttle=self.reconcile_throttle_hours * 60 * 60,
            soft_sync_throttle=self.soft_sync_throttle_minutes * 60,
        )


@dataclass
class AppConfig:
    auth: AuthConfig
    state_dir: Path = Path(".state")
    fetch: FetchConfig = field(default_factory=FetchConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    query_id: str | None = None


def load_config(config_path: Path = CONFIG_FILE) -> AppConfig:
    """Load and validate config from TOML file."""
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    auth_data = data.get("auth", {})
    auth_token = auth_data.get("auth_token", "")
    ct0 = auth_data.get("ct0", "")

    if not auth_token or not ct0:
        raise ValueError("Config missing required auth.auth_token and auth.ct0")

    state_data = data.get("state", {})
    fetch_data = data.get("fetch", {})
    sync_data = data.get("sync", {})
    api_data = data.get("api", {})

    return AppConfig(
        auth=AuthConfig(auth_token=auth_token, ct0=ct0, twid=auth_data.get("twid")),
        state_dir=Path(state_data.get("state_dir", ".state")),
        fetch=FetchConfig(
            base_delay=float(fetch_data.get("base_delay", FETCH_BASE_DELAY)),
            jitter=float(fetch_data.get("jitter", FETCH_JITTER)),
            read_pause_chance=float(
                fetch_data.get("read_pause_chance", FETCH_READ_PAUSE_CHANCE)
            ),
        ),
        sync=SyncConfig(
            soft_page_size=int(sync_data.get("soft_page_size", 20)),
            reconcile_throttle_hours=float(sync_data.get("reconcile_throttle_hours", 4.0)),
            soft_sync_throttle_minutes=float(
                sync_data.get("soft_sync_throttle_minutes", 30.0)
            ),
        ),
        query_id=os.environ.get("TWITTER_BOOKMARKS_QUERY_ID") or api_data.get("query_id"),
    )


def save_config(config: AppConfig, config_path: Path = CONFIG_FILE) -> None:
    """Write config to TOML file with restricted permissions."""
    config_path.parent.mkdir(parents=True, exist_ok=True)

    auth = {"auth_token": config.auth.auth_token, "ct0": config.auth.ct0}
    if config.auth.twid:
        auth["twid"] = config.auth.twid

    data = {
        "auth": auth,
        "state": {
            "state_dir": str(config.state_dir),
        },
        "fetch": {
            "base_delay": config.fetch.base_delay,
            "jitter": config.fetch.jitter,
            "read_pause_chance": config.fetch.read_pause_chance,
        },
        "sync": {
            "soft_page_size": config.sync.soft_page_size,
            "reconcile_throttle_hours": config.sync.reconcile_throttle_hours,
            "soft_sync_throttle_minutes": config.sync.soft_sync_throttle_minutes,
        },
    }

    if config.query_id:
        data["api"] = {"query_id": config.query_id}

    with open(config_path, "wb") as f:
        tomli_w.dump(data, f)

    # Contains auth secrets
    os.chmod(config_path, 0o600)


def config_exists(config_path: Path = CONFIG_FILE) -> bool:
    """Check if config file exists."""
    return config_path.exists()
