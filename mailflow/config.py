from pydantic_settings import BaseSettings
from dotenv import load_dotenv

load_dotenv()

class Settings(BaseSettings):
    database_url: str

    # SMTP transport
    EMAIL_HOST: str | None = None
    EMAIL_PORT: int = 587
    EMAIL_USER: str | None = None
    EMAIL_PASS: str | None = None
    EMAIL_FROM: str | None = None
    EMAIL_FROM_NAME: str | None = None
    EMAIL_USE_TLS: bool = True
    EMAIL_TIMEOUT: float = 30.0

    # Outbox dispatcher
    DISPATCHER_ENABLED: bool = True
    OUTBOX_WORKERS: int = 2
    OUTBOX_POLL_INTERVAL: float = 2.0
    OUTBOX_LEASE_SECONDS: float = 120.0
    OUTBOX_MAX_ATTEMPTS: int = 5
    OUTBOX_BASE_DELAY_SECONDS: float = 30.0
    OUTBOX_MAX_DELAY_SECONDS: float = 3600.0
    OUTBOX_JITTER_SECONDS: float = 5.0
    OUTBOX_CLAIM_TIMEOUT: float = 10.0
    OUTBOX_COMMIT_TIMEOUT: float = 10.0
    OUTBOX_RETENTION_DAYS: int = 30

    # Security
    SECRET_KEY: str = "something"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"

settings = Settings()
