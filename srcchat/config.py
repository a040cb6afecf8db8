from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):

    mongo_url: str = "mongodb://localhost:27017"
    mongo_db: str = "src_portal"
    redis_url: Optional[str] = None

    log_level: str = "info"

    # realtime
    realtime_subscribe_timeout: float = 10.0

    # client reconciliation
    api_base_url: str = "http://localhost:8000"
    message_page_size: int = 50
    poll_interval: float = 3.0
    retry_delay: float = 2.0
    reconnect_interval: float = 5.0
    subscribe_delay: float = 0.1
    mismatch_threshold: int = 2

    # messages embedded per conversation in the conversation list
    conversation_preview_limit: int = 100

    model_config = {
        "env_file": ".env",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    return Settings()
