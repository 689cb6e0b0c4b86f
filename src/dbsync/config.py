from typing import Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


def _default_nodes() -> Dict[str, str]:
    return {
        "n1": "sqlite:///./data/n1.db",
        "n2": "sqlite:///./data/n2.db",
        "n3": "sqlite:///./data/n3.db",
    }


class Settings(BaseSettings):
    # Replica nodes: NODES='{"n1": "mysql+pymysql://...", "n2": "..."}'
    nodes: Dict[str, str] = Field(default_factory=_default_nodes)
    default_primary: str = "n1"
    connect_timeout_seconds: int = 10

    # Primary designation (durable state file)
    primary_state_file: str = "./data/primary.json"
    primary_history_limit: int = 10
    primary_cache_ttl_seconds: int = 300

    # Sync worker
    sync_enabled: bool = True
    sync_interval_seconds: int = 60
    sync_batch_size: int = 100
    sync_max_retries: int = 3
    sync_soft_deadline_seconds: int = 50
    sync_retry_backoff_seconds: int = 0  # 0 disables per-entry backoff
    log_retention_days: int = 30

    # Conflict notifications
    telegram_bot_token: str = ""
    telegram_chat_id: Optional[int] = None

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
