from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Chat core settings loaded from environment.
    - Keep defaults light for dev.
    - Override via .env or real env vars.
    """

    APP_NAME: str = "consult_chat"
    APP_ENV: str = "dev"
    APP_DEBUG: bool = True
    LOG_DIR: str = "logs"

    # Realtime server (socket.io)
    SOCKET_URL: str = "http://localhost:4000"
    # REST backend; the doctor authenticates with the wallet address as bearer token
    API_BASE_URL: str = "http://localhost:4000"
    WALLET_ADDRESS: str | None = None
    HTTP_TIMEOUT_SECONDS: float = 10.0

    # Fallback before a conversation is shown without canonical history
    HISTORY_TIMEOUT_SECONDS: float = 3.0
    APPOINTMENT_REFRESH_SECONDS: float = 30.0
    # Upper bound of message ids remembered for dedup across conversations
    PROCESSED_IDS_CAPACITY: int = 5000
    # Minimum gap between two alerts from the same sender
    NOTIFY_THROTTLE_SECONDS: float = 1.0

    # Local history cache, one JSON file per conversation
    CACHE_DIR: str = ".chat_cache"

    # Public base of uploaded attachments, e.g. https://bucket.s3.amazonaws.com
    S3_PUBLIC_BASE: str | None = None

    # Cloudflare R2 storage config (only when issuing upload slots locally)
    R2_ACCOUNT_ID: str | None = None
    R2_ACCESS_KEY_ID: str | None = None
    R2_SECRET_ACCESS_KEY: str | None = None
    R2_BUCKET_NAME: str | None = None
    UPLOAD_URL_EXPIRES_SECONDS: int = 600

    # Firebase Admin SDK service account
    FIREBASE_CREDENTIALS_FILE: str | None = None

    class Config:
        env_file = ".env"
        case_sensitive = False

    @property
    def r2_configured(self) -> bool:
        """True when every R2 credential needed for presigning is present."""
        return bool(
            self.R2_ACCOUNT_ID
            and self.R2_ACCESS_KEY_ID
            and self.R2_SECRET_ACCESS_KEY
            and self.R2_BUCKET_NAME
        )


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()
