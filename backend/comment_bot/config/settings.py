"""
Configuration Settings.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings."""

    # App info
    app_name: str = "CommentBot"
    app_version: str = "1.0.0"
    debug: bool = False

    # Storage
    storage_backend: str = "auto"  # auto, sql, flat_file
    database_url: str = "sqlite:///./data/bot.db"
    flat_file_path: str = "./data/chats"
    training_export_path: str = "learning/training-data.json"

    # Chat policy
    max_chats_per_user: int = 10
    max_chat_name_length: int = 50
    chat_retention_days: int = 30
    default_chat_name: str = "Main chat"

    # Feedback
    feedback_retention_days: int = 90

    # Background sweeps
    sweep_interval_hours: float = 24.0

    # Generation API
    generation_api_url: str = "http://localhost:3264"
    generation_api_key: Optional[str] = None
    default_model: str = "qwen-max-latest"
    generation_timeout: float = 60.0
    generation_max_retries: int = 3
    generation_retry_base_delay: float = 2.0  # seconds, multiplied by attempt number

    # Telegram bot settings
    telegram_bot_token: Optional[str] = None
    telegram_webhook_secret: Optional[str] = None

    # Logging configuration
    log_level: str = "INFO"  # DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_file_path: str = "./logs/commentbot.log"
    log_file_enabled: bool = True
    log_console_enabled: bool = True
    log_json_format: bool = True  # JSON format for files, human-readable for console

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
