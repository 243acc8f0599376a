"""
Configuration Module

Settings come from AMLR_* environment variables (or a .env file) through
pydantic-settings; get_config() returns the process-wide instance.
"""

from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings


class ReturnsConfig(BaseSettings):
    """AML returns service settings"""

    # SQLite file; ":memory:" for throwaway runs
    database_path: str = "aml_returns.db"

    # HTTP API
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    api_title: str = "AML/CFT Statistical Returns API"
    default_page_size: int = 20
    max_page_size: int = 200

    # Bearer tokens are issued by the identity provider and only verified here
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"         # json or text
    log_file: Optional[str] = None   # stderr when unset

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        value = value.upper()
        if value not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {value}")
        return value

    @field_validator("log_format")
    @classmethod
    def _known_format(cls, value: str) -> str:
        value = value.lower()
        if value not in ("json", "text"):
            raise ValueError("log_format must be json or text")
        return value

    class Config:
        env_prefix = "AMLR_"
        env_file = ".env"
        case_sensitive = False


config = ReturnsConfig()


def get_config() -> ReturnsConfig:
    return config


def reload_config() -> ReturnsConfig:
    """Re-read the environment, e.g. after tests change AMLR_* variables"""
    global config
    config = ReturnsConfig()
    return config
