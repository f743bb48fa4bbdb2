"""
orderflow: configuration

All settings come from environment variables so the API process and the
worker process can be configured independently.
"""

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite+aiosqlite:///./orderflow.db"
    redis_url: str = "redis://localhost:6379"
    log_level: str = "INFO"
    handler_timeout: float = 30.0
    max_deliveries: int = 10
    relay_interval: float = 1.0
    relay_batch_size: int = 100
    consumer_name: str = "worker-1"


def load_settings() -> Settings:
    return Settings(
        database_url=os.environ.get("DATABASE_URL", Settings.database_url),
        redis_url=os.environ.get("REDIS_URL", Settings.redis_url),
        log_level=os.environ.get("LOG_LEVEL", Settings.log_level).upper(),
        handler_timeout=float(os.environ.get("HANDLER_TIMEOUT", Settings.handler_timeout)),
        max_deliveries=int(os.environ.get("MAX_DELIVERIES", Settings.max_deliveries)),
        relay_interval=float(os.environ.get("RELAY_INTERVAL", Settings.relay_interval)),
        relay_batch_size=int(os.environ.get("RELAY_BATCH_SIZE", Settings.relay_batch_size)),
        consumer_name=os.environ.get("CONSUMER_NAME", Settings.consumer_name),
    )


LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
