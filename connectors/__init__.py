# Connectors module - one adapter per external platform
from connectors.base import BaseConnector, Credential, PlatformInfo
from connectors.config import ConnectorConfig, RateLimitConfig, SyncConfig, load_connector_configs
from connectors.registry import CONNECTORS, create_connector, build_connectors

__all__ = [
    "BaseConnector",
    "Credential",
    "PlatformInfo",
    "ConnectorConfig",
    "RateLimitConfig",
    "SyncConfig",
    "load_connector_configs",
    "CONNECTORS",
    "create_connector",
    "build_connectors",
]
