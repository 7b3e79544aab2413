from typing import List, Dict, Optional
from datetime import datetime
from connectors.base import BaseConnector, Credential, PlatformInfo, EventNormalizer, mask_token
from connectors.config import ConnectorConfig
from models.platform_event import PlatformEvent, NormalizedEvent
from errors import AuthError
from utils.keywords import extract_file_paths
from utils.timestamps import parse_timestamp, ensure_utc
import requests
import logging

logger = logging.getLogger(__name__)

# Discord epoch for snowflake ids (2015-01-01T00:00:00Z, in ms)
DISCORD_EPOCH_MS = 1420070400000
PAGE_SIZE = 100


def snowflake_for(moment: datetime) -> int:
    """Smallest snowflake id created at or after moment"""
    return (int(ensure_utc(moment).timestamp() * 1000) - DISCORD_EPOCH_MS) << 22


class DiscordConnector(BaseConnector):
    """Channel and thread messages via the Discord REST API

    Options:
        channels: list of channel ids
    """

    platform = "discord"
    base_url = "https://discord.com/api/v10"

    def __init__(self, config: ConnectorConfig, session: Optional[requests.Session] = None):
        super().__init__(config, session)
        self.base_url = config.options.get("base_url", self.base_url)
        self.normalizer = EventNormalizer(self.platform)

    def _auth_headers(self, token: str) -> Dict[str, str]:
        return {"Authorization": f"Bot {token}"}

    def _retry_after(self, response: requests.Response) -> Optional[float]:
        retry_after = super()._retry_after(response)
        if retry_after is not None:
            return retry_after
        try:
            return float((response.json() or {}).get("retry_after"))
        except (ValueError, TypeError, AttributeError):
            return None

    def authenticate(self, config: Optional[ConnectorConfig] = None) -> Credential:
        token = self._token(config)
        logger.info(f"[{self.connector_id}] Authenticating with Discord (token {mask_token(token)})")

        me = self._request("GET", "/users/@me", token)
        if not isinstance(me, dict) or not me.get("id"):
            raise AuthError(self.platform, "token is not bound to a bot user")

        return Credential(platform=self.platform, token=token, identity=me.get("username", me["id"]), scopes=["bot"])

    def fetch_events(self, credential: Credential, since: datetime, limit: int) -> List[PlatformEvent]:
        token = credential.auth_value()
        since = ensure_utc(since)

        events: List[PlatformEvent] = []
        horizon: Optional[datetime] = None
        for channel in self.config.option_list("channels"):
            messages = self._messages_after(token, channel, since, limit)
            cutoff = parse_timestamp(messages[-1].get("timestamp")) if messages and len(messages) >= limit else None
            if cutoff is not None:
                # Thread replies past the last channel message wait for the next page
                horizon = cutoff if horizon is None else min(horizon, cutoff)

            for message in messages:
                event = self._message_to_event(channel, message)
                if event:
                    events.append(event)

                thread = message.get("thread")
                if thread and thread.get("id"):
                    for reply in self._messages_after(token, thread["id"], since, self.config.sync.thread_depth):
                        reply_event = self._message_to_event(channel, reply, thread_id=thread["id"])
                        if reply_event:
                            events.append(reply_event)

            logger.info(f"[{self.connector_id}] channel {channel}: {len(messages)} messages since {since.isoformat()}")

        if horizon is not None:
            events = [e for e in events if ensure_utc(e.timestamp) <= horizon]
        return self._window(events, since, limit)

    def _messages_after(self, token: str, channel_id: str, since: datetime, limit: int) -> List[Dict]:
        """Messages after since, oldest first"""
        after = snowflake_for(since)
        collected: List[Dict] = []
        while len(collected) < limit:
            batch = self._request(
                "GET",
                f"/channels/{channel_id}/messages",
                token,
                params={"after": str(after), "limit": min(PAGE_SIZE, limit)},
            )
            if not isinstance(batch, list) or not batch:
                break
            # The API returns newest first even with `after`
            batch = sorted(batch, key=lambda m: int(m["id"]))
            collected.extend(m for m in batch if (parse_timestamp(m.get("timestamp")) or since) > since)
            after = int(batch[-1]["id"])
            if len(batch) < min(PAGE_SIZE, limit):
                break
        return collected[:limit]

    def _message_to_event(self, channel: str, message: Dict, thread_id: Optional[str] = None) -> Optional[PlatformEvent]:
        if not message.get("id") or not message.get("timestamp"):
            return None

        content = message.get("content") or ""
        reference = (message.get("message_reference") or {}).get("message_id")
        attachments = [a.get("filename") for a in message.get("attachments") or [] if a.get("filename")]
        has_thread = bool((message.get("thread") or {}).get("id"))

        if thread_id is None and has_thread:
            thread_id = message["thread"]["id"]

        return PlatformEvent(
            id=f"discord-msg-{message['id']}",
            type="thread" if has_thread else "message",
            timestamp=parse_timestamp(message["timestamp"]),
            author=(message.get("author") or {}).get("username", ""),
            content=content,
            platform=self.platform,
            metadata={
                "channel": channel,
                "thread_id": thread_id,
                "parent_id": f"discord-msg-{reference}" if reference else None,
                "edited_timestamp": message.get("edited_timestamp"),
            },
            references=attachments + extract_file_paths(content),
        )

    def normalize_event(self, event: PlatformEvent) -> NormalizedEvent:
        return self.normalizer.normalize(event)

    def describe(self) -> PlatformInfo:
        return PlatformInfo(
            name="discord",
            display_name="Discord",
            description="Discord channel and thread connector",
            supported_event_types=["message", "thread"],
            requests_per_minute=50,
            burst_limit=5,
            retry_after_header="Retry-After",
            auth_type="bot_token",
            required_scopes=["bot"],
            min_sync_interval_seconds=60,
        )
