from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve .env relative to the cw-agent component root (two levels up from this file)
_ENV_FILE = Path(__file__).resolve().parent.parent / ".env"


class Settings(BaseSettings):
    """
    Process-level settings.
    The agent's monitoring configuration lives in the YAML file (see agent_config.py);
    these values only control the runtime around it.
    """
    ENVIRONMENT: Literal["development", "production"] = "development"
    LOG_LEVEL: str = "INFO"

    # Override the api.key / api.endpoint from the YAML config (useful for CI secrets)
    CW_API_KEY: Optional[str] = None
    CW_API_ENDPOINT: Optional[str] = None

    model_config = SettingsConfigDict(env_file=str(_ENV_FILE), env_file_encoding="utf-8", extra="ignore")


settings = Settings()
