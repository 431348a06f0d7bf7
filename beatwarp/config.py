from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    STORAGE_DIR: str = "storage"          # local object storage root
    WORKSPACE_DIR: Optional[str] = None   # parent of per-invocation temp dirs (None: system temp)

    FFMPEG_EXE: Optional[str] = None      # falls back to PATH lookup
    RUBBERBAND_EXE: Optional[str] = None  # falls back to PATH lookup

    ANALYSIS_RATE_HZ: int = 100           # transient envelope resolution
    COMMIT_WORKERS: int = 2
    COMMIT_ATTEMPTS: int = 3
    JOB_RETENTION: int = 1000             # finished jobs kept for status lookups
    OUTPUT_SUBTYPE: str = "PCM_24"

    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None


settings = Settings()
