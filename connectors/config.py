"""Per-connector configuration

Loaded from a JSON file when one exists (see settings.CONNECTORS_CONFIG_PATH),
otherwise assembled from environment settings. Tokens are kept as SecretStr
so they never show up in logs or reprs.
"""
from pydantic import BaseModel, SecretStr
from typing import Optional, Dict, Any, List
from pathlib import Path
from config import settings
import json
import logging

logger = logging.getLogger(__name__)


class RateLimitConfig(BaseModel):
    requests_per_minute: int = 60
    burst: int = 10
    backoff_multiplier: float = 2.0
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 300.0


class SyncConfig(BaseModel):
    batch_size: int = 100
    sync_interval_seconds: int = 300
    max_lookback_days: int = 30
    thread_depth: int = 10


class ConnectorConfig(BaseModel):
    id: str  # Connector id, also used as the job connector_id
    platform: str  # Key into connectors.registry.CONNECTORS
    enabled: bool = True
    token: Optional[SecretStr] = None
    options: Dict[str, Any] = {}  # repositories, channels, base_url ...
    rate_limit: RateLimitConfig = RateLimitConfig()
    sync: SyncConfig = SyncConfig()

    def option_list(self, key: str) -> List[str]:
        """Read a list option, accepting comma separated strings"""
        value = self.options.get(key) or []
        if isinstance(value, str):
            value = value.split(",")
        return [v.strip() for v in value if v and v.strip()]


# Platform defaults (GitHub allows 5000 req/h, chat platforms are stricter)
DEFAULT_CONFIGS = {
    "github": {
        "rate_limit": {"requests_per_minute": 80, "burst": 10},
        "sync": {"sync_interval_seconds": 300, "max_lookback_days": 30, "batch_size": 100},
    },
    "slack": {
        "rate_limit": {"requests_per_minute": 50, "burst": 5},
        "sync": {"sync_interval_seconds": 120, "max_lookback_days": 7, "batch_size": 100, "thread_depth": 10},
    },
    "discord": {
        "rate_limit": {"requests_per_minute": 50, "burst": 5},
        "sync": {"sync_interval_seconds": 120, "max_lookback_days": 7, "batch_size": 100},
    },
}


def default_config(platform: str, **overrides) -> ConnectorConfig:
    """Build a config with platform defaults, overrides win"""
    data: Dict[str, Any] = {"id": platform, "platform": platform}
    defaults = DEFAULT_CONFIGS.get(platform, {})
    data["rate_limit"] = {**defaults.get("rate_limit", {}), **overrides.pop("rate_limit", {})}
    data["sync"] = {**defaults.get("sync", {}), **overrides.pop("sync", {})}
    data.update(overrides)
    return ConnectorConfig(**data)


def validate_connector_config(config: ConnectorConfig) -> List[str]:
    """Return a list of validation problems, empty when valid"""
    errors = []

    if config.enabled and not (config.token and config.token.get_secret_value()):
        errors.append(f"{config.id}: token is required for an enabled connector")

    if config.platform == "slack" and config.token:
        if not config.token.get_secret_value().startswith("xoxb-"):
            errors.append(f"{config.id}: Slack bot token must start with 'xoxb-'")

    if config.platform == "github" and config.enabled:
        repos = config.option_list("repositories")
        if not repos:
            errors.append(f"{config.id}: at least one repository (owner/name) is required")
        for repo in repos:
            if repo.count("/") != 1:
                errors.append(f"{config.id}: invalid repository '{repo}', expected owner/name")

    if config.rate_limit.backoff_multiplier <= 1:
        errors.append(f"{config.id}: backoff_multiplier must be greater than 1")
    if not 0 <= config.rate_limit.max_retries <= 10:
        errors.append(f"{config.id}: max_retries must be between 0 and 10")
    if config.rate_limit.requests_per_minute <= 0:
        errors.append(f"{config.id}: requests_per_minute must be positive")
    if not 1 <= config.sync.batch_size <= 1000:
        errors.append(f"{config.id}: batch_size must be between 1 and 1000")
    if config.sync.sync_interval_seconds <= 0:
        errors.append(f"{config.id}: sync_interval_seconds must be positive")

    return errors


def load_connector_configs(path: Optional[str] = None) -> Dict[str, ConnectorConfig]:
    """Load connector configs from JSON if present, else from the environment

    Invalid enabled connectors are logged and disabled rather than failing
    the whole service.
    """
    config_path = Path(path or settings.CONNECTORS_CONFIG_PATH)

    if config_path.exists():
        logger.info(f"Loading connector configuration from {config_path}")
        with open(config_path, "r") as f:
            raw = json.load(f)
        entries = raw.get("connectors", raw) if isinstance(raw, dict) else raw
        configs = [
            default_config(entry["platform"], **{k: v for k, v in entry.items() if k != "platform"})
            for entry in entries
        ]
    else:
        logger.info("No connector config file, building connectors from environment")
        configs = _configs_from_env()

    result = {}
    for config in configs:
        problems = validate_connector_config(config)
        if problems and config.enabled:
            for problem in problems:
                logger.warning(f"Connector config invalid: {problem}")
            config = config.model_copy(update={"enabled": False})
        result[config.id] = config

    return result


def _configs_from_env() -> List[ConnectorConfig]:
    configs = []

    if settings.GITHUB_TOKEN:
        configs.append(default_config(
            "github",
            token=settings.GITHUB_TOKEN,
            options={"repositories": settings.GITHUB_REPOSITORIES},
        ))

    if settings.SLACK_BOT_TOKEN:
        configs.append(default_config(
            "slack",
            token=settings.SLACK_BOT_TOKEN,
            options={"channels": settings.SLACK_CHANNELS},
        ))

    if settings.DISCORD_BOT_TOKEN:
        configs.append(default_config(
            "discord",
            token=settings.DISCORD_BOT_TOKEN,
            options={"channels": settings.DISCORD_CHANNEL_IDS},
        ))

    return configs
