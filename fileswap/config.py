"""Application Configuration"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from typing import List, Optional


class Settings(BaseSettings):
    """File swap service settings"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    APP_NAME: str = "File Swap API"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # Server
    PY_HOST: str = "127.0.0.1"
    PY_PORT: int = 17890

    # API
    API_V1_PREFIX: str = "/api/v1"

    # CORS
    CORS_ORIGINS: str = "*"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    # Temporary storage
    TEMP_DIR: str = Field(
        default="",
        description="Directory for encrypted temporary files (empty = platform temp dir)",
    )
    ENCRYPTION_CHUNK_SIZE: int = Field(
        default=64 * 1024,
        description="Plaintext bytes sealed per encrypted chunk",
    )

    # Download tokens
    DOWNLOAD_TOKEN_ALGORITHM: str = "HS256"
    DOWNLOAD_TOKEN_EXPIRE_MINUTES: int = 5

    @field_validator("CORS_ORIGINS")
    @classmethod
    def parse_cors_origins(cls, v: str) -> List[str]:
        """Parse CORS origins from comma-separated string"""
        return [origin.strip() for origin in v.split(",") if origin.strip()]

    @field_validator("ENCRYPTION_CHUNK_SIZE")
    @classmethod
    def validate_chunk_size(cls, v: int) -> int:
        """Chunks must fit the frame length limit"""
        if v < 1 or v > 1024 * 1024:
            raise ValueError("ENCRYPTION_CHUNK_SIZE must be between 1 and 1048576")
        return v

    @property
    def temp_dir(self) -> Optional[str]:
        """Temp directory for tempfile, None meaning the platform default"""
        return self.TEMP_DIR or None


settings = Settings()
