"""Static registry of connector implementations

Adding a platform means adding one entry here; the scheduler and the
processor only ever see BaseConnector.
"""
from typing import Dict, Type, Optional, Iterable
from connectors.base import BaseConnector
from connectors.config import ConnectorConfig
from connectors.github import GitHubConnector
from connectors.slack import SlackConnector
from connectors.discord import DiscordConnector
import requests
import logging

logger = logging.getLogger(__name__)

CONNECTORS: Dict[str, Type[BaseConnector]] = {
    "github": GitHubConnector,
    "slack": SlackConnector,
    "discord": DiscordConnector,
}


def supported_platforms():
    return sorted(CONNECTORS.keys())


def create_connector(config: ConnectorConfig, session: Optional[requests.Session] = None) -> BaseConnector:
    """Instantiate the connector for config.platform

    Raises:
        ValueError: unknown platform or disabled connector
    """
    connector_cls = CONNECTORS.get(config.platform)
    if connector_cls is None:
        raise ValueError(f"Unsupported platform '{config.platform}' (supported: {', '.join(supported_platforms())})")
    if not config.enabled:
        raise ValueError(f"Connector '{config.id}' is disabled")
    return connector_cls(config, session=session)


def build_connectors(configs: Iterable[ConnectorConfig]) -> Dict[str, BaseConnector]:
    """Create every enabled connector, keyed by connector id"""
    connectors = {}
    for config in configs:
        if not config.enabled:
            logger.info(f"Skipping disabled connector '{config.id}'")
            continue
        try:
            connectors[config.id] = create_connector(config)
        except ValueError as e:
            logger.error(f"Cannot create connector '{config.id}': {e}")
    logger.info(f"Built {len(connectors)} connector(s): {', '.join(connectors) or 'none'}")
    return connectors
