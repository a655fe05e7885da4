from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    # API
    API_V1_PREFIX: str = "/api/v1"
    PROJECT_NAME: str = "Record Export"
    VERSION: str = "0.1.0"

    # CORS
    BACKEND_CORS_ORIGINS: List[str] = ["http://localhost:5173"]

    @field_validator("BACKEND_CORS_ORIGINS", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: str | List[str]) -> List[str]:
        if isinstance(v, str):
            return [i.strip() for i in v.split(",")]
        return v

    # Database
    DATABASE_URL: str = "sqlite:///./storage/export.db"

    # Environment
    ENVIRONMENT: str = "development"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "./logs"

    # Schema descriptors
    SCHEMA_REGISTRY_FILE: str = "registry/schemas.yaml"

    # Background execution
    RUNNER: str = "inline"  # inline or thread
    RUNNER_MAX_WORKERS: int = 4

    # Export engine
    ARTIFACT_ROOT: str = "./out"
    EXPORT_BATCH_SIZE: int = 5000
    EXPORT_LOCATION_BATCH_SIZE: int = 1000
    EXPORT_DEFAULT_LANGUAGE: str = "english_us"
    EXPORT_ANONYMIZE_VALUE: str = "***"
    EXPORT_SAVE_FILTER: bool = False

    # Spreadsheet ceilings
    EXPORT_XLSX_MAX_COLUMNS: int = 16000
    EXPORT_XLSX_MAX_ROWS: int = 1000000
    EXPORT_XLS_MAX_COLUMNS: int = 250
    EXPORT_XLS_MAX_ROWS: int = 12000

    @field_validator("EXPORT_BATCH_SIZE", "EXPORT_LOCATION_BATCH_SIZE")
    @classmethod
    def positive_batch_size(cls, v: int) -> int:
        if v < 1:
            raise ValueError("batch sizes must be positive")
        return v


settings = Settings()
