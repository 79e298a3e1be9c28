from pydantic_settings import BaseSettings
from typing import Optional

class Settings(BaseSettings):
    PROJECT_NAME: str = "TeleConsult"
    API_V1_STR: str = "/api/v1"
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = "password"
    POSTGRES_DB: str = "teleconsult"
    DATABASE_URL: Optional[str] = None
    SQL_ECHO: bool = False

    SECRET_KEY: str = "change-me"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24

    REDIS_URL: str = "redis://localhost:6379/0"
    # memory | redis
    CHANNEL_BACKEND: str = "memory"
    CHANNEL_KEY_PREFIX: str = "teleconsult"
    CHANNEL_RECONNECT_ATTEMPTS: int = 5
    CHANNEL_RECONNECT_BACKOFF_SECONDS: float = 1.0
    # Redis write lock per consultation, used with the redis backend
    SESSION_LOCK_TIMEOUT_SECONDS: float = 10.0
    SESSION_LOCK_WAIT_SECONDS: float = 5.0

    JOIN_WINDOW_MINUTES: int = 15
    VIDEO_BRIDGE_DOMAIN: str = "meet.jit.si"
    VIDEO_ROOM_PREFIX: str = "healthcare"

    LOG_LEVEL: str = "INFO"

    class Config:
        case_sensitive = True
        env_file = ".env"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        if not self.DATABASE_URL:
            self.DATABASE_URL = f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_SERVER}/{self.POSTGRES_DB}"

settings = Settings()
