import os
from pathlib import Path
from typing import Dict
from pydantic_settings import BaseSettings
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

class Settings(BaseSettings):
    PROJECT_NAME: str = "Backup Ingestion API"
    API_PREFIX: str = "/api"
    LOG_LEVEL: str = "INFO"

    # JWT Settings
    SECRET_KEY: str = os.getenv("SECRET_KEY", "supersecretkey")
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24))

    # Client credentials: client id -> secret for /auth/token, api key -> client id for X-API-Key
    CLIENT_CREDENTIALS: Dict[str, str] = {}
    CLIENT_API_KEYS: Dict[str, str] = {}

    # Storage settings
    STORAGE_DIR: Path = Path("backups")
    TEMP_DIR: Path = Path("backups/.chunks")
    DATABASE_URL: str = "sqlite:///./backups.db"
    CHECKSUM_READ_SIZE: int = 1024 * 1024  # 1MB blocks when re-reading files

    # Cleanup settings
    CLEANUP_INTERVAL_SECONDS: int = 3600  # Run the expiry sweep every hour
    SESSION_IDLE_TIMEOUT_SECONDS: int = 86400  # 24 hours without a chunk
    MAX_BACKUPS_PER_ENTRY: int = 20

    def ensure_directories(self) -> None:
        """
        Create storage directories if they don't exist.
        """
        self.STORAGE_DIR.mkdir(exist_ok=True, parents=True)
        self.TEMP_DIR.mkdir(exist_ok=True, parents=True)

# Global settings instance
settings = Settings()
