"""Application settings.

Environment Variables:
- INVOICEML_LOG_LEVEL: Logging level (default: INFO)
- INVOICEML_JSON_LOGS: Emit JSON log lines (default: false)
- INVOICEML_DEV_MODE: Colored console output (default: true)
"""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process-wide settings for invoiceml.

    Example:
        >>> settings = get_settings()
        >>> settings.log_level
        'INFO'
    """

    model_config = SettingsConfigDict(
        env_prefix="INVOICEML_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    log_level: str = Field(default="INFO", description="Logging level")
    json_logs: bool = Field(default=False, description="Output JSON logs")
    dev_mode: bool = Field(default=True, description="Development-friendly console output")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level name."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of {allowed}, got {v}")
        return v.upper()


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create the settings singleton."""
    global _settings

    if _settings is None:
        _settings = Settings()

    return _settings


def reload_settings() -> Settings:
    """Re-read settings from the environment."""
    global _settings

    _settings = Settings()
    return _settings
