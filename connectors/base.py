from abc import ABC, abstractmethod
from pydantic import BaseModel, SecretStr
from typing import List, Dict, Any, Optional
from datetime import datetime, timedelta
from connectors.config import ConnectorConfig
from models.platform_event import PlatformEvent, NormalizedEvent
from errors import (
    AuthError,
    FetchError,
    RateLimitExceeded,
    TransientFetchError,
    NormalizationError,
)
from utils.keywords import extract_file_paths
from utils.timestamps import utc_now, ensure_utc
import requests
import logging

logger = logging.getLogger(__name__)

# Labels that name a feature area, e.g. "feature:search" or "area/billing"
FEATURE_LABEL_PREFIXES = ("feature:", "feature/", "area:", "area/")


def mask_token(token: Optional[str]) -> str:
    """Loggable form of a secret"""
    if not token:
        return "<none>"
    if len(token) <= 8:
        return "****"
    return f"{token[:4]}...{token[-2:]}"


class Credential(BaseModel):
    platform: str
    token: SecretStr
    identity: str = ""  # Login / bot user the token belongs to
    scopes: List[str] = []
    expires_at: Optional[datetime] = None

    def auth_value(self) -> str:
        return self.token.get_secret_value()


class PlatformInfo(BaseModel):
    name: str
    display_name: str
    description: str = ""
    supported_event_types: List[str] = []
    requests_per_hour: Optional[int] = None
    requests_per_minute: Optional[int] = None
    burst_limit: int = 1
    retry_after_header: Optional[str] = None
    auth_type: str = "token"
    required_scopes: List[str] = []
    min_sync_interval_seconds: int = 60


class BaseConnector(ABC):
    """Capability set shared by every platform connector

    Subclasses implement authenticate, fetch_events, normalize_event and
    describe. Connectors hold only their own config and HTTP session, so one
    connector never affects another.
    """

    platform: str = ""
    base_url: str = ""
    request_timeout: float = 30.0

    def __init__(self, config: ConnectorConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or requests.Session()

    @property
    def connector_id(self) -> str:
        return self.config.id

    # Capability set

    @abstractmethod
    def authenticate(self, config: Optional[ConnectorConfig] = None) -> Credential:
        """Validate the configured token against the platform"""

    @abstractmethod
    def fetch_events(self, credential: Credential, since: datetime, limit: int) -> List[PlatformEvent]:
        """Events strictly newer than `since`, oldest first, at most `limit`"""

    @abstractmethod
    def normalize_event(self, event: PlatformEvent) -> NormalizedEvent:
        """Normalize a single event, raising NormalizationError if malformed"""

    @abstractmethod
    def describe(self) -> PlatformInfo:
        """Static platform metadata"""

    def normalize_data(self, events: List[PlatformEvent]) -> List[NormalizedEvent]:
        """Normalize a batch; malformed events are logged and dropped"""
        normalized = []
        for event in events:
            try:
                normalized.append(self.normalize_event(event))
            except NormalizationError as e:
                logger.warning(f"[{self.connector_id}] Dropping event: {e}")
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"[{self.connector_id}] Dropping malformed event {event.id}: {e}")
        return normalized

    def schedule_sync(self, last_sync: Optional[datetime], rate_limited: bool = False) -> timedelta:
        """Next poll interval

        Args:
            last_sync: When the previous sync finished (None if never)
            rate_limited: Whether the previous sync hit a rate limit

        Returns:
            Interval until the next sync, doubled after a rate limit
        """
        interval = max(self.config.sync.sync_interval_seconds, self.describe().min_sync_interval_seconds)
        if rate_limited:
            interval = min(interval * 2, 3600)
        if last_sync is None:
            return timedelta(seconds=interval)

        # Catch up sooner if the last sync is long overdue
        overdue = (utc_now() - ensure_utc(last_sync)).total_seconds()
        if overdue > interval * 2 and not rate_limited:
            return timedelta(seconds=self.describe().min_sync_interval_seconds)
        return timedelta(seconds=interval)

    # Helpers for subclasses

    def _token(self, config: Optional[ConnectorConfig] = None) -> str:
        cfg = config or self.config
        if not cfg.token or not cfg.token.get_secret_value():
            raise AuthError(self.platform, "no token configured", code="missing_token")
        return cfg.token.get_secret_value()

    def _auth_headers(self, token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    def _retry_after(self, response: requests.Response) -> Optional[float]:
        """Seconds to wait, from Retry-After or a reset timestamp header"""
        header = response.headers.get("Retry-After")
        if header:
            try:
                return float(header)
            except ValueError:
                return None
        return None

    def _is_rate_limited(self, response: requests.Response) -> bool:
        return response.status_code == 429

    def _request(
        self,
        method: str,
        path: str,
        token: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Perform a request and map failures onto the error taxonomy"""
        url = path if path.startswith("http") else f"{self.base_url}{path}"

        try:
            response = self.session.request(
                method,
                url,
                headers=self._auth_headers(token),
                params=params,
                timeout=self.request_timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientFetchError(self.platform, f"network error: {e}")
        except requests.RequestException as e:
            raise FetchError(self.platform, f"request failed: {e}")

        status = response.status_code
        if self._is_rate_limited(response):
            raise RateLimitExceeded(
                self.platform,
                f"rate limit exceeded ({status})",
                retry_after=self._retry_after(response),
            )
        if status == 401:
            raise AuthError(self.platform, "authentication failed (401)")
        if status == 403:
            raise AuthError(self.platform, "access forbidden (403)", code="permission_denied")
        if status >= 500:
            raise TransientFetchError(self.platform, f"server error ({status})", retry_after=self._retry_after(response))
        if status >= 400:
            raise FetchError(self.platform, f"request to {path} failed ({status})", code=f"http_{status}")

        try:
            return response.json()
        except ValueError:
            raise TransientFetchError(self.platform, f"invalid JSON from {path}")

    @staticmethod
    def _window(events: List[PlatformEvent], since: datetime, limit: int) -> List[PlatformEvent]:
        """Keep events strictly newer than since, oldest first, at most limit

        When the limit cuts the candidates, the page ends before the first
        excluded timestamp and before any thread that would be split, so a
        caller resuming from the newest returned timestamp misses nothing.
        A page that would become empty is cut at the limit instead.
        """
        since = ensure_utc(since)
        seen = set()
        ordered = []
        for event in sorted(events, key=lambda e: ensure_utc(e.timestamp)):
            if ensure_utc(event.timestamp) <= since or event.id in seen:
                continue
            seen.add(event.id)
            ordered.append(event)
        if len(ordered) <= limit:
            return ordered

        page, rest = ordered[:limit], ordered[limit:]
        boundary = ensure_utc(rest[0].timestamp)
        later_threads = {e.metadata.get("thread_id") for e in rest if e.metadata.get("thread_id")}
        for event in page:
            if event.metadata.get("thread_id") in later_threads:
                boundary = min(boundary, ensure_utc(event.timestamp))
                break

        trimmed = [e for e in page if ensure_utc(e.timestamp) < boundary]
        return trimmed or page


class EventNormalizer:
    """Shared PlatformEvent -> NormalizedEvent mapping"""

    def __init__(self, platform: str):
        self.platform = platform

    def normalize(self, event: PlatformEvent) -> NormalizedEvent:
        if not event.id:
            raise NormalizationError("<missing>", "event has no id")
        if event.timestamp is None:
            raise NormalizationError(event.id, "event has no timestamp")

        metadata = dict(event.metadata or {})
        labels = [str(label) for label in (metadata.get("labels") or []) if label]

        return NormalizedEvent(
            platform=event.platform or self.platform,
            platform_id=event.id,
            event_type=event.type,
            timestamp=ensure_utc(event.timestamp),
            author=event.author or "",
            content=event.content or "",
            title=event.title or "",
            thread_id=self._optional_str(metadata.get("thread_id")),
            parent_id=self._optional_str(metadata.get("parent_id")),
            file_refs=self.file_refs(event),
            feature_refs=self.feature_refs(metadata, labels),
            labels=labels,
            state=self._optional_str(metadata.get("state")),
            metadata=metadata,
        )

    @staticmethod
    def _optional_str(value) -> Optional[str]:
        if value is None or value == "":
            return None
        return str(value)

    @staticmethod
    def file_refs(event: PlatformEvent) -> List[str]:
        refs = []
        candidates = list(event.references or []) + list(event.metadata.get("files_changed") or [])
        for ref in candidates:
            if isinstance(ref, str) and "." in ref.rsplit("/", 1)[-1] and ref not in refs:
                refs.append(ref)

        # Chat messages mention files inline
        if event.type in ("message", "thread", "discussion"):
            for path in extract_file_paths(event.content or ""):
                if path not in refs:
                    refs.append(path)
        return refs

    @staticmethod
    def feature_refs(metadata: Dict[str, Any], labels: List[str]) -> List[str]:
        refs = []
        for feature in metadata.get("features") or []:
            if isinstance(feature, str) and feature and feature not in refs:
                refs.append(feature)
        for label in labels:
            lowered = label.lower()
            for prefix in FEATURE_LABEL_PREFIXES:
                if lowered.startswith(prefix):
                    name = label[len(prefix):].strip()
                    if name and name not in refs:
                        refs.append(name)
        return refs
