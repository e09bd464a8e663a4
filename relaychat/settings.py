from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    DATABASE_URL: str
    REDIS_URL: str
    SESSION_SECRET_KEY: str
    ACCESS_TOKEN_MAX_AGE: int = 7 * 24 * 60 * 60

    CORS_ORIGINS: List[str] = [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    UPLOAD_DIR: str = "uploaded_files"
    INLINE_ATTACHMENT_LIMIT: int = 5 * 1024 * 1024
    MAX_ATTACHMENT_SIZE: int = 50 * 1024 * 1024
    # Above this, stored files go to UPLOAD_DIR instead of a database blob
    DB_BLOB_LIMIT: int = 15 * 1024 * 1024

    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None

    model_config = SettingsConfigDict(env_file=".env")

settings = Settings()
