"""
Configuration management for Food Quality Management
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "Food Quality Management"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # Database
    DATABASE_URL: str = "sqlite:///./food_quality.db"

    # Evidence storage (local disk + signed retrieval links)
    EVIDENCE_DIR: str = "uploads/evidence"
    EVIDENCE_URL_SECRET: str = "dev-evidence-secret-change-in-production"
    EVIDENCE_URL_TTL_SECONDS: int = 60 * 60  # 1 hour
    MAX_EVIDENCE_FILE_SIZE: int = 20 * 1024 * 1024  # 20 MB

    # Audit execution
    AUTOSAVE_QUIET_SECONDS: float = 1.2

    # Health scores
    HEALTH_BATCH_STALE_HOURS: float = 6.0
    SUPPLIER_SUSPENSION_THRESHOLD: float = 60.0

    # CAPA due dates, days after submission by finding severity
    CAPA_DUE_DAYS: dict[str, int] = {
        "critical": 3,
        "high": 7,
        "medium": 14,
        "low": 30,
    }

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    return Settings()
