from typing import Optional

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str
    database_pool_size: int = 5
    database_max_overflow: int = 10
    database_echo: bool = False

    # Tokens are issued by the web front-end and verified here
    jwt_secret: SecretStr
    jwt_algo: str = "HS256"
    jwt_issuer: str = "content-inventory-web"
    jwt_audience: str = "content-inventory-api"

    # Import sessions
    import_session_ttl_seconds: int = 15 * 60
    import_session_purge_interval_seconds: float = 60.0
    max_import_rows: int = 5000

    # Title enrichment
    title_fetch_timeout_seconds: float = 5.0
    title_fetch_user_agent: str = "ContentInventory-MetadataBot/1.0"
    enrichment_concurrency: int = 1

    # YouTube Data API; video rows fall back to a page fetch when unset
    youtube_api_key: Optional[SecretStr] = None
    youtube_api_timeout_seconds: float = 10.0

    # Progress stream
    progress_interval: int = 10
    sse_keepalive_seconds: float = 30.0

    # Indexing queue
    enable_indexing: bool = True
    index_job_retry_limit: int = 3
    index_job_retry_delay_seconds: int = 300
    index_job_retry_backoff: bool = True

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore"
    )

settings = Settings()
