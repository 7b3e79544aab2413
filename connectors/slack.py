from typing import List, Dict, Any, Optional
from datetime import datetime
from connectors.base import BaseConnector, Credential, PlatformInfo, EventNormalizer, mask_token
from connectors.config import ConnectorConfig
from models.platform_event import PlatformEvent, NormalizedEvent
from errors import AuthError, FetchError, RateLimitExceeded, TransientFetchError
from utils.keywords import extract_file_paths
from utils.timestamps import parse_timestamp, ensure_utc
import requests
import logging

logger = logging.getLogger(__name__)

AUTH_ERRORS = {"invalid_auth", "token_revoked", "not_authed", "account_inactive", "token_expired"}
PERMISSION_ERRORS = {"missing_scope", "not_in_channel", "channel_not_found"}
HISTORY_PAGE_SIZE = 200


class SlackConnector(BaseConnector):
    """Channel history and thread replies via the Slack Web API

    Options:
        channels: list of channel ids
    """

    platform = "slack"
    base_url = "https://slack.com/api"

    def __init__(self, config: ConnectorConfig, session: Optional[requests.Session] = None):
        super().__init__(config, session)
        self.base_url = config.options.get("base_url", self.base_url)
        self.normalizer = EventNormalizer(self.platform)

    def _api(self, method: str, token: str, params: Optional[Dict[str, Any]] = None) -> Dict:
        """Call a Web API method; Slack reports most failures in the body"""
        body = self._request("GET", f"/{method}", token, params=params)
        if body.get("ok"):
            return body

        error = body.get("error", "unknown_error")
        if error == "ratelimited":
            raise RateLimitExceeded(self.platform, f"{method} rate limited", retry_after=60.0)
        if error in AUTH_ERRORS:
            raise AuthError(self.platform, f"{method} failed: {error}")
        if error in PERMISSION_ERRORS:
            raise FetchError(self.platform, f"{method} failed: {error}", code="permission_denied")
        if error in ("internal_error", "fatal_error", "service_unavailable", "request_timeout"):
            raise TransientFetchError(self.platform, f"{method} failed: {error}")
        raise FetchError(self.platform, f"{method} failed: {error}")

    def authenticate(self, config: Optional[ConnectorConfig] = None) -> Credential:
        token = self._token(config)
        if not token.startswith("xoxb-"):
            raise AuthError(self.platform, "expected a bot token (xoxb-)", code="invalid_token_type")
        logger.info(f"[{self.connector_id}] Authenticating with Slack (token {mask_token(token)})")

        body = self._api("auth.test", token)
        return Credential(
            platform=self.platform,
            token=token,
            identity=body.get("user_id") or body.get("user", ""),
            scopes=["channels:history", "channels:read"],
        )

    def fetch_events(self, credential: Credential, since: datetime, limit: int) -> List[PlatformEvent]:
        token = credential.auth_value()
        since = ensure_utc(since)
        thread_depth = self.config.sync.thread_depth

        events: List[PlatformEvent] = []
        horizon: Optional[datetime] = None
        for channel in self.config.option_list("channels"):
            history = self._history(token, channel, since)
            messages = sorted(history, key=lambda m: float(m.get("ts") or 0))[:limit]
            cutoff = parse_timestamp(messages[-1].get("ts")) if len(history) > limit else None
            if cutoff is not None:
                # Newer top-level messages are left for the next page
                horizon = cutoff if horizon is None else min(horizon, cutoff)

            for message in messages:
                event = self._message_to_event(channel, message)
                if event:
                    events.append(event)

                # Pull replies of threads started in this window
                if message.get("reply_count") and message.get("ts") == message.get("thread_ts"):
                    for reply in self._replies(token, channel, message["ts"], thread_depth):
                        reply_event = self._message_to_event(channel, reply)
                        if reply_event:
                            events.append(reply_event)

            logger.info(f"[{self.connector_id}] #{channel}: {len(history)} messages since {since.isoformat()}")

        if horizon is not None:
            events = [e for e in events if ensure_utc(e.timestamp) <= horizon]
        return self._window(events, since, limit)

    def _history(self, token: str, channel: str, since: datetime) -> List[Dict]:
        """Every top-level message after since

        History is served newest first, so the cursor is followed to the end
        before the oldest messages are known.
        """
        messages: List[Dict] = []
        cursor = None
        while True:
            params = {"channel": channel, "oldest": f"{since.timestamp():.6f}", "limit": HISTORY_PAGE_SIZE}
            if cursor:
                params["cursor"] = cursor
            body = self._api("conversations.history", token, params)
            messages.extend(body.get("messages") or [])
            cursor = (body.get("response_metadata") or {}).get("next_cursor")
            if not body.get("has_more") or not cursor:
                break
        return messages

    def _replies(self, token: str, channel: str, thread_ts: str, depth: int) -> List[Dict]:
        body = self._api("conversations.replies", token, {"channel": channel, "ts": thread_ts, "limit": depth + 1})
        # First message is the parent
        return [m for m in body.get("messages") or [] if m.get("ts") != thread_ts][:depth]

    def _message_to_event(self, channel: str, message: Dict) -> Optional[PlatformEvent]:
        ts = message.get("ts")
        if not ts:
            return None
        if message.get("subtype") in ("channel_join", "channel_leave", "bot_add"):
            return None

        text = message.get("text") or ""
        thread_ts = message.get("thread_ts")
        is_reply = bool(thread_ts) and thread_ts != ts
        files = [f.get("name") for f in message.get("files") or [] if f.get("name")]

        return PlatformEvent(
            id=f"msg-{channel}-{ts}",
            type="thread" if message.get("reply_count") else "message",
            timestamp=parse_timestamp(ts),
            author=message.get("user") or message.get("username") or "",
            content=text,
            platform=self.platform,
            metadata={
                "channel": channel,
                "ts": ts,
                "thread_id": f"{channel}-{thread_ts}" if thread_ts else None,
                "parent_id": f"msg-{channel}-{thread_ts}" if is_reply else None,
                "reply_count": message.get("reply_count", 0),
                "reactions": [r.get("name") for r in message.get("reactions") or []],
            },
            references=files + extract_file_paths(text),
        )

    def normalize_event(self, event: PlatformEvent) -> NormalizedEvent:
        return self.normalizer.normalize(event)

    def describe(self) -> PlatformInfo:
        return PlatformInfo(
            name="slack",
            display_name="Slack",
            description="Slack channel and thread connector",
            supported_event_types=["message", "thread", "reaction"],
            requests_per_minute=50,
            burst_limit=5,
            retry_after_header="Retry-After",
            auth_type="oauth2",
            required_scopes=["channels:history", "channels:read"],
            min_sync_interval_seconds=60,
        )
