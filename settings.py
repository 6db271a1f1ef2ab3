"""Application configuration using Pydantic Settings."""

from functools import lru_cache
from pathlib import Path
from typing import List, Union

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
    )

    # Application
    PROJECT_NAME: str = "School Administration API"
    DEBUG: bool = False

    # CORS
    CORS_ORIGINS: List[str] = ["*"]

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> List[str]:
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    # Database
    DATABASE_URL: str = ""
    DATABASE_NAME: str = "school_admin"

    # Auth
    JWT_SECRET: str = "dev-secret-key-change-me"
    STUDENT_JWT_SECRET: str = "dev-student-secret-change-me"
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 7

    # Attachments
    STORAGE_ROOT: str = "."
    UPLOAD_DIR_NAME: str = "uploads"
    STAGING_DIR_NAME: str = "temp"
    MAX_FILE_SIZE: int = 5 * 1024 * 1024
    MAX_AVATAR_SIZE: int = 2 * 1024 * 1024
    MAX_DOCUMENTS_PER_REQUEST: int = 10
    MAX_FILES_PER_REQUEST: int = 20

    @property
    def storage_root_path(self) -> Path:
        return Path(self.STORAGE_ROOT).resolve()

    @property
    def upload_dir_path(self) -> Path:
        return self.storage_root_path / self.UPLOAD_DIR_NAME


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
