from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    DATABASE_PATH: str = "devcontext.db"
    ANTHROPIC_API_KEY: Optional[str] = None
    EXTRACTION_MODEL: str = "claude-sonnet-4-5"
    USE_LLM_EXTRACTION: bool = False
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Scheduler Settings
    ENABLE_SCHEDULER: bool = True
    WORKER_COUNT: int = 3
    WORKER_POLL_SECONDS: int = 5
    LEASE_TIMEOUT_SECONDS: int = 900  # 15 minutes
    REAPER_INTERVAL_SECONDS: int = 60

    # Retry Settings
    RETRY_BASE_DELAY: float = 1.0
    RETRY_MAX_DELAY: float = 300.0  # 5 minutes
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_MULTIPLIER: float = 2.0

    # Ingestion Settings
    FETCH_PAGE_SIZE: Optional[int] = None  # Overrides every connector's sync.batch_size
    MAX_PAGES_PER_JOB: int = 20
    INITIAL_LOOKBACK_HOURS: Optional[int] = None  # Overrides every connector's sync.max_lookback_days
    EXTRACTION_TIMEOUT_SECONDS: float = 30.0

    # Embeddings: "module:callable" taking a list of texts and returning one vector per text
    EMBEDDING_FUNCTION: Optional[str] = None
    EMBEDDING_MODEL: str = "none"
    EMBEDDING_DIMENSIONS: Optional[int] = None

    # Context query cap (per category, commits get 2x)
    CONTEXT_QUERY_LIMIT: int = 10

    # Connector Settings
    CONNECTORS_CONFIG_PATH: str = "connectors.json"
    GITHUB_TOKEN: Optional[str] = None
    GITHUB_REPOSITORIES: str = ""  # comma separated owner/name
    SLACK_BOT_TOKEN: Optional[str] = None
    SLACK_CHANNELS: str = ""
    DISCORD_BOT_TOKEN: Optional[str] = None
    DISCORD_CHANNEL_IDS: str = ""

    class Config:
        env_file = ".env"


settings = Settings()
