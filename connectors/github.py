from typing import List, Dict, Any, Optional, Tuple
from datetime import datetime
from connectors.base import BaseConnector, Credential, PlatformInfo, EventNormalizer, mask_token
from connectors.config import ConnectorConfig
from models.platform_event import PlatformEvent, NormalizedEvent
from errors import AuthError
from utils.timestamps import parse_timestamp, utc_now, to_db_time, ensure_utc
import requests
import logging

logger = logging.getLogger(__name__)

MAX_PAGES = 10
PER_PAGE = 100


class GitHubConnector(BaseConnector):
    """Pull requests, issues and commits for the configured repositories

    Options:
        repositories: list of "owner/name"
        fetch_files: also fetch changed files per PR/commit (default True)
    """

    platform = "github"
    base_url = "https://api.github.com"

    def __init__(self, config: ConnectorConfig, session: Optional[requests.Session] = None):
        super().__init__(config, session)
        self.base_url = config.options.get("base_url", self.base_url)
        self.normalizer = EventNormalizer(self.platform)

    def _auth_headers(self, token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    def _is_rate_limited(self, response: requests.Response) -> bool:
        if response.status_code == 429:
            return True
        # Primary rate limit is reported as 403 with no remaining quota
        return response.status_code == 403 and response.headers.get("X-RateLimit-Remaining") == "0"

    def _retry_after(self, response: requests.Response) -> Optional[float]:
        retry_after = super()._retry_after(response)
        if retry_after is not None:
            return retry_after
        reset = response.headers.get("X-RateLimit-Reset")
        if reset:
            try:
                return max(0.0, float(reset) - utc_now().timestamp())
            except ValueError:
                return None
        if self._is_rate_limited(response):
            return 3600.0  # Default GitHub rate limit window
        return None

    def authenticate(self, config: Optional[ConnectorConfig] = None) -> Credential:
        token = self._token(config)
        logger.info(f"[{self.connector_id}] Authenticating with GitHub (token {mask_token(token)})")

        user = self._request("GET", "/user", token)
        login = user.get("login") if isinstance(user, dict) else None
        if not login:
            raise AuthError(self.platform, "token is not bound to a user")

        return Credential(platform=self.platform, token=token, identity=login, scopes=["repo", "read:user"])

    def fetch_events(self, credential: Credential, since: datetime, limit: int) -> List[PlatformEvent]:
        """Oldest `limit` PRs, issues and commits newer than since, across all repositories

        The page is contiguous: every event with a timestamp inside the returned
        range is included, so the caller can resume from the newest timestamp.
        """
        token = credential.auth_value()
        since = ensure_utc(since)
        fetch_files = self.config.options.get("fetch_files", True)

        candidates: List[PlatformEvent] = []
        sources: Dict[str, Tuple[str, Dict]] = {}  # event id -> (repo, raw item)
        horizon: Optional[datetime] = None
        for repo in self.config.option_list("repositories"):
            tracker, complete = self._fetch_issues_and_pulls(token, repo, since, limit)
            if not complete and tracker:
                # Later issue updates were not listed, nothing newer may be returned
                newest = max(ensure_utc(e.timestamp) for e, _ in tracker)
                horizon = newest if horizon is None else min(horizon, newest)
            commits = self._fetch_commits(token, repo, since)

            for event, item in tracker + commits:
                candidates.append(event)
                sources[event.id] = (repo, item)
            logger.info(
                f"[{self.connector_id}] {repo}: {len(tracker)} PRs/issues, {len(commits)} commits since {to_db_time(since)}"
            )

        if horizon is not None:
            candidates = [e for e in candidates if ensure_utc(e.timestamp) <= horizon]
        window = self._window(candidates, since, limit)
        if not fetch_files:
            return window
        return [self._with_files(token, event, *sources[event.id]) for event in window]

    def _paginate(self, token: str, path: str, params: Dict[str, Any], max_items: Optional[int] = None) -> Tuple[List[Dict], bool]:
        """Items from successive pages, and whether the listing was exhausted"""
        items: List[Dict] = []
        for page in range(1, MAX_PAGES + 1):
            batch = self._request("GET", path, token, params={**params, "per_page": PER_PAGE, "page": page})
            if not isinstance(batch, list):
                return items, True
            items.extend(batch)
            if len(batch) < PER_PAGE:
                return items, True
            if max_items is not None and len(items) >= max_items:
                return items, False
        return items, False

    def _fetch_issues_and_pulls(self, token: str, repo: str, since: datetime, limit: int) -> Tuple[List[Tuple[PlatformEvent, Dict]], bool]:
        # The issues endpoint returns PRs too, oldest update first
        raw, complete = self._paginate(
            token,
            f"/repos/{repo}/issues",
            {"state": "all", "sort": "updated", "direction": "asc", "since": to_db_time(since)},
            max_items=limit,
        )

        events = []
        for item in raw:
            updated = parse_timestamp(item.get("updated_at") or item.get("created_at"))
            if updated is None or updated <= since:
                continue
            event = self._pull_to_event(repo, item, []) if "pull_request" in item else self._issue_to_event(repo, item)
            events.append((event, item))
        return events, complete

    def _fetch_commits(self, token: str, repo: str, since: datetime) -> List[Tuple[PlatformEvent, Dict]]:
        """Every commit newer than since

        Commits are listed newest first, so the oldest ones are only reached by
        walking back with `until` once the page cap is hit.
        """
        path = f"/repos/{repo}/commits"
        params = {"since": to_db_time(since)}
        dated: Dict[str, Tuple[datetime, Dict]] = {}
        while True:
            raw, exhausted = self._paginate(token, path, params)
            oldest = None
            for item in raw:
                date = self._commit_date(item)
                if date is None or date <= since:
                    continue
                dated.setdefault(item["sha"], (date, item))
                oldest = date if oldest is None else min(oldest, date)
            if exhausted or oldest is None or to_db_time(oldest) == params.get("until"):
                break
            params = {"since": to_db_time(since), "until": to_db_time(oldest)}

        ordered = sorted(dated.values(), key=lambda pair: pair[0])
        return [(self._commit_to_event(repo, item, date, []), item) for date, item in ordered]

    @staticmethod
    def _commit_date(item: Dict) -> Optional[datetime]:
        commit = item.get("commit") or {}
        return parse_timestamp((commit.get("committer") or {}).get("date") or (commit.get("author") or {}).get("date"))

    def _with_files(self, token: str, event: PlatformEvent, repo: str, item: Dict) -> PlatformEvent:
        if event.type == "pull_request":
            return self._pull_to_event(repo, item, self._pull_files(token, repo, item["number"]))
        if event.type == "commit":
            return self._commit_to_event(repo, item, event.timestamp, self._commit_files(token, repo, item["sha"]))
        return event

    def _pull_files(self, token: str, repo: str, number: int) -> List[str]:
        files = self._request("GET", f"/repos/{repo}/pulls/{number}/files", token, params={"per_page": PER_PAGE})
        return [f["filename"] for f in files or [] if f.get("filename")]

    def _commit_files(self, token: str, repo: str, sha: str) -> List[str]:
        detail = self._request("GET", f"/repos/{repo}/commits/{sha}", token)
        return [f["filename"] for f in (detail or {}).get("files") or [] if f.get("filename")]

    @staticmethod
    def _labels(item: Dict) -> List[str]:
        return [label.get("name") if isinstance(label, dict) else str(label) for label in item.get("labels") or []]

    def _pull_to_event(self, repo: str, item: Dict, files: List[str]) -> PlatformEvent:
        merged_at = (item.get("pull_request") or {}).get("merged_at")
        return PlatformEvent(
            id=f"pr-{repo}#{item['number']}",
            type="pull_request",
            timestamp=parse_timestamp(item.get("updated_at") or item["created_at"]),
            author=(item.get("user") or {}).get("login", ""),
            content=item.get("body") or "",
            title=item.get("title") or "",
            platform=self.platform,
            metadata={
                "repository": repo,
                "number": item["number"],
                "state": "merged" if merged_at else item.get("state"),
                "merged_at": merged_at,
                "created_at": item.get("created_at"),
                "labels": self._labels(item),
                "files_changed": files,
                "thread_id": f"{repo}#{item['number']}",
                "url": item.get("html_url"),
            },
            references=files,
        )

    def _issue_to_event(self, repo: str, item: Dict) -> PlatformEvent:
        return PlatformEvent(
            id=f"issue-{repo}#{item['number']}",
            type="issue",
            timestamp=parse_timestamp(item.get("updated_at") or item["created_at"]),
            author=(item.get("user") or {}).get("login", ""),
            content=item.get("body") or "",
            title=item.get("title") or "",
            platform=self.platform,
            metadata={
                "repository": repo,
                "number": item["number"],
                "state": item.get("state"),
                "closed_at": item.get("closed_at"),
                "created_at": item.get("created_at"),
                "labels": self._labels(item),
                "thread_id": f"{repo}#{item['number']}",
                "url": item.get("html_url"),
            },
        )

    def _commit_to_event(self, repo: str, item: Dict, date: datetime, files: List[str]) -> PlatformEvent:
        commit = item.get("commit") or {}
        message = commit.get("message") or ""
        author = (item.get("author") or {}).get("login") or (commit.get("author") or {}).get("name", "")
        return PlatformEvent(
            id=f"commit-{item['sha']}",
            type="commit",
            timestamp=date,
            author=author or "",
            content=message,
            title=message.split("\n", 1)[0],
            platform=self.platform,
            metadata={
                "repository": repo,
                "sha": item["sha"],
                "files_changed": files,
                "url": item.get("html_url"),
            },
            references=files,
        )

    def normalize_event(self, event: PlatformEvent) -> NormalizedEvent:
        return self.normalizer.normalize(event)

    def describe(self) -> PlatformInfo:
        return PlatformInfo(
            name="github",
            display_name="GitHub",
            description="GitHub repository connector for PRs, Issues, and Commits",
            supported_event_types=["pull_request", "issue", "commit"],
            requests_per_hour=5000,
            requests_per_minute=100,
            burst_limit=10,
            retry_after_header="X-RateLimit-Reset",
            auth_type="oauth2",
            required_scopes=["repo", "read:user"],
            min_sync_interval_seconds=60,
        )
