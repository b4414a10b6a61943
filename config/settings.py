"""
Configuration management using Pydantic Settings.

Environment variables:
- VISION_API_KEY: API key for the diagram detection endpoint
- VISION_SERVER_URL: Base URL for the OpenAI-compatible vision server
- VISION_MODEL: Model name used for diagram detection
- DATABASE_URL: SQLAlchemy database URL
- PIPELINE_BATCH_SIZE / PIPELINE_MAX_RETRIES / PIPELINE_RETRY_DELAY: orchestration knobs
- PIPELINE_RETRY_BACKOFF: 'fixed' or 'exponential'
- LOG_LEVEL: Root log level
"""
from typing import List, Optional
from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Vision detection API
    vision_api_key: str = Field(default="123", env="VISION_API_KEY")
    vision_server_url: str = Field(
        default="http://localhost:8000/v1",
        env="VISION_SERVER_URL"
    )
    vision_model: str = Field(default="gpt-4o-mini", env="VISION_MODEL")
    vision_max_tokens: int = Field(default=4096, env="VISION_MAX_TOKENS")
    vision_temperature: float = Field(default=0.0, env="VISION_TEMPERATURE")
    vision_timeout: float = Field(default=120.0, env="VISION_TIMEOUT")

    # Database Configuration
    database_url: str = Field(
        default="sqlite:///diagram_store.db",
        env="DATABASE_URL"
    )

    # Page rendering
    page_target_dpi: int = Field(default=150, env="PAGE_TARGET_DPI")
    page_max_image_size: int = Field(default=2048, env="PAGE_MAX_IMAGE_SIZE")

    # Pipeline orchestration
    pipeline_batch_size: int = Field(default=3, env="PIPELINE_BATCH_SIZE")
    pipeline_max_concurrency: int = Field(default=3, env="PIPELINE_MAX_CONCURRENCY")
    pipeline_max_retries: int = Field(default=3, env="PIPELINE_MAX_RETRIES")
    pipeline_retry_delay: float = Field(default=2.0, env="PIPELINE_RETRY_DELAY")
    pipeline_retry_backoff: str = Field(default="fixed", env="PIPELINE_RETRY_BACKOFF")
    pipeline_max_retry_delay: float = Field(default=30.0, env="PIPELINE_MAX_RETRY_DELAY")
    pipeline_max_file_size_mb: int = Field(default=50, env="PIPELINE_MAX_FILE_SIZE_MB")
    pipeline_supported_formats: List[str] = Field(
        default=["application/pdf"],
        env="PIPELINE_SUPPORTED_FORMATS"
    )
    enable_diagram_detection: bool = Field(default=True, env="ENABLE_DIAGRAM_DETECTION")
    enable_database_storage: bool = Field(default=True, env="ENABLE_DATABASE_STORAGE")
    session_max_age_hours: float = Field(default=24.0, env="SESSION_MAX_AGE_HOURS")

    # Renderer
    render_cache_size: int = Field(default=100, env="RENDER_CACHE_SIZE")

    # Memory management
    memory_warning_threshold: float = Field(default=0.8, env="MEMORY_WARNING_THRESHOLD")
    memory_critical_threshold: float = Field(default=0.9, env="MEMORY_CRITICAL_THRESHOLD")
    memory_max_tracked_mb: int = Field(default=1024, env="MEMORY_MAX_TRACKED_MB")

    # Error handling
    error_history_size: int = Field(default=100, env="ERROR_HISTORY_SIZE")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", env="API_HOST")
    api_port: int = Field(default=8002, env="API_PORT")

    # Logging
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    log_file: Optional[str] = Field(default=None, env="LOG_FILE")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False

    def get_pipeline_config(self) -> dict:
        """Get orchestrator configuration as dictionary."""
        return {
            'batch_size': self.pipeline_batch_size,
            'max_concurrency': self.pipeline_max_concurrency,
            'max_retries': self.pipeline_max_retries,
            'retry_delay': self.pipeline_retry_delay,
            'retry_backoff': self.pipeline_retry_backoff,
            'max_retry_delay': self.pipeline_max_retry_delay,
            'max_file_size_mb': self.pipeline_max_file_size_mb,
            'supported_formats': list(self.pipeline_supported_formats),
            'enable_diagram_detection': self.enable_diagram_detection,
            'enable_database_storage': self.enable_database_storage,
        }

    def get_memory_config(self) -> dict:
        """Get memory manager configuration as dictionary."""
        return {
            'warning_threshold': self.memory_warning_threshold,
            'critical_threshold': self.memory_critical_threshold,
            'max_tracked_bytes': self.memory_max_tracked_mb * 1024 * 1024,
        }

    def get_vision_config(self) -> dict:
        """Get detection API configuration as dictionary."""
        return {
            'model': self.vision_model,
            'max_tokens': self.vision_max_tokens,
            'temperature': self.vision_temperature,
            'timeout': self.vision_timeout,
        }


# Global settings instance
settings = Settings()
