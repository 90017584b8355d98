"""
Configuration settings for CallGuard application.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Literal, Union
import os
from pathlib import Path


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Application Configuration
    app_name: str = "CallGuard"
    project_name: str = "CallGuard Compliance Monitor"
    debug: bool = True

    # Server Configuration
    host: str = "0.0.0.0"
    port: int = 8001

    # Logging
    log_level: str = "INFO"
    log_file: str = "logs/callguard.log"

    # CORS Configuration (dashboard frontend)
    backend_cors_origins: List[str] = ["http://localhost:3000"]

    # Azure Blob Storage
    azure_storage_connection_string: str = ""
    azure_storage_container_raw: str = "call-logs-raw"
    azure_storage_container_processed: str = "call-logs-processed"
    azure_storage_container_backups: str = "call-logs-backups"
    initialize_containers_on_startup: bool = True

    # LLM Configuration
    openai_api_key: str = ""
    openai_base_url: str = ""
    openai_model: str = "gpt-4o-mini"
    analysis_max_tokens: int = 2048
    analysis_max_retries: int = 3
    evaluation_temperature: float = 0.3

    # File Upload Configuration
    max_file_size_mb: Union[int, str] = 10  # plain numbers are megabytes
    strict_call_log_validation: bool = False

    # Analysis pipeline
    auto_process_uploads: bool = True
    analysis_trigger_mode: Literal["background", "await"] = "background"
    processing_stale_after_seconds: int = 15 * 60

    # Admin endpoints
    allow_storage_clear: bool = False

    @property
    def max_file_size_bytes(self) -> int:
        """Convert max_file_size_mb to bytes, accepting strings like "512KB" or "10MB"."""
        if isinstance(self.max_file_size_mb, str):
            size_str = self.max_file_size_mb.strip().upper()
            if size_str.endswith('MB'):
                return int(size_str[:-2]) * 1024 * 1024
            elif size_str.endswith('KB'):
                return int(size_str[:-2]) * 1024
            elif size_str.endswith('GB'):
                return int(size_str[:-2]) * 1024 * 1024 * 1024
            else:
                return int(size_str) * 1024 * 1024
        return self.max_file_size_mb * 1024 * 1024

    @property
    def container_names(self) -> dict:
        return {
            "raw": self.azure_storage_container_raw,
            "processed": self.azure_storage_container_processed,
            "backups": self.azure_storage_container_backups,
        }


# Create settings instance
settings = Settings()


def get_data_dir() -> Path:
    """Resolve the directory used for logs and debug dumps.

    Controlled by CALLGUARD_DATA_DIR. Defaults to the current working directory.
    """
    data_dir = os.getenv("CALLGUARD_DATA_DIR")
    if data_dir:
        return Path(data_dir)
    return Path.cwd()


def is_storage_configured(config: Settings = settings) -> bool:
    """Return True if a blob storage connection string is available."""
    return bool(config.azure_storage_connection_string.strip())


def is_llm_configured(config: Settings = settings) -> bool:
    """Return True if an LLM API key is available."""
    return bool(config.openai_api_key.strip())
