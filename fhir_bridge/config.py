import os
from dotenv import load_dotenv

load_dotenv()


class Settings:
    QUEUE_DATABASE_URL: str = os.getenv("QUEUE_DATABASE_URL", "sqlite:///./offline_queue.db")
    # Client Registry lookup is disabled unless a token is provided
    AFYALINK_TOKEN: str | None = os.getenv("AFYALINK_TOKEN") or None
    AFYALINK_BASE_URL: str = os.getenv("AFYALINK_BASE_URL", "https://uat.dha.go.ke")
    CR_LOOKUP_TIMEOUT_SECONDS: float = float(os.getenv("CR_LOOKUP_TIMEOUT_SECONDS", "5"))
    QUEUE_MAX_RETRIES: int = int(os.getenv("QUEUE_MAX_RETRIES", "10"))
    QUEUE_WINDOW_DAYS: int = int(os.getenv("QUEUE_WINDOW_DAYS", "7"))
    PHI_ENCRYPTION_KEY: str = os.getenv("PHI_ENCRYPTION_KEY", "")
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
