"""
Agent configuration file (certwatch.yaml).

    api:
      endpoint: https://api.certwatch.app
      key: cw_xxxxxxxx
      timeout: 30s
    agent:
      name: production-monitor
      sync_interval: 5m
      scan_interval: 1m
      concurrency: 10
    certificates:
      - hostname: example.com
        port: 443
        tags: [production]

CW_API_KEY / CW_API_ENDPOINT in the environment override the api section.
"""
import logging
import re
from datetime import timedelta
from pathlib import Path
from typing import Any, List, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .config import settings
from .ui import DEFAULT_API_ENDPOINT

DEFAULT_CONFIG_PATH = "./certwatch.yaml"
MIN_INTERVAL = timedelta(seconds=30)

logger = logging.getLogger("cw-agent.config")

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


class ConfigError(Exception):
    """The configuration file is missing, unreadable or invalid."""


def parse_duration(value: Any) -> timedelta:
    """Accept Go-style duration strings ("90s", "5m", "1h30m") or plain seconds."""
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ValueError(f"invalid duration {value!r}")
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    if not isinstance(value, str):
        raise ValueError(f"invalid duration {value!r}")

    text = value.strip()
    if not text:
        raise ValueError("empty duration")
    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            raise ValueError(f"invalid duration {value!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ValueError(f"invalid duration {value!r}")
    return timedelta(seconds=total)


def format_duration(value: timedelta) -> str:
    """Render a timedelta the way it is usually written in the config ("1h30m", "5m", "45s")."""
    seconds = int(value.total_seconds())
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    out = ""
    if hours:
        out += f"{hours}h"
    if minutes:
        out += f"{minutes}m"
    if secs or not out:
        out += f"{secs}s"
    return out


class APIConfig(BaseModel):
    endpoint: str = DEFAULT_API_ENDPOINT
    key: str = ""
    timeout: timedelta = timedelta(seconds=30)

    @field_validator("timeout", mode="before")
    @classmethod
    def parse_timeout(cls, value: Any) -> timedelta:
        return parse_duration(value)

    @field_validator("endpoint")
    @classmethod
    def check_endpoint(cls, value: str) -> str:
        value = value.rstrip("/")
        if not value.startswith(("http://", "https://")):
            raise ValueError("must start with http:// or https://")
        return value


class AgentSettings(BaseModel):
    name: str
    sync_interval: timedelta = timedelta(minutes=5)
    scan_interval: timedelta = timedelta(minutes=1)
    concurrency: int = Field(default=10, ge=1, le=100)

    @field_validator("sync_interval", "scan_interval", mode="before")
    @classmethod
    def parse_intervals(cls, value: Any) -> timedelta:
        return parse_duration(value)

    @field_validator("name")
    @classmethod
    def check_name(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be empty")
        return value

    @field_validator("sync_interval", "scan_interval")
    @classmethod
    def check_interval(cls, value: timedelta) -> timedelta:
        if value < MIN_INTERVAL:
            raise ValueError(f"must be at least {format_duration(MIN_INTERVAL)}")
        return value


class CertificateTarget(BaseModel):
    hostname: str
    port: int = Field(default=443, ge=1, le=65535)
    tags: List[str] = Field(default_factory=list)
    notes: str = ""

    @field_validator("hostname")
    @classmethod
    def check_hostname(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        if "://" in value or "/" in value:
            raise ValueError("must be a bare hostname (no scheme or path)")
        return value

    @property
    def address(self) -> str:
        return f"{self.hostname}:{self.port}"


class AgentConfig(BaseModel):
    api: APIConfig = Field(default_factory=APIConfig)
    agent: AgentSettings
    certificates: List[CertificateTarget] = Field(min_length=1)

    @model_validator(mode="after")
    def check_certificates(self) -> "AgentConfig":
        seen = set()
        for target in self.certificates:
            if target.address in seen:
                raise ValueError(f"duplicate certificate entry {target.address}")
            seen.add(target.address)
        return self

    def validate_ready(self) -> None:
        """Checks that depend on the environment as well as the file."""
        if not self.api.key:
            raise ConfigError("api.key is required (set it in the config file or CW_API_KEY)")


def _format_validation_error(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        location = ".".join(str(p) for p in err["loc"]) or "config"
        parts.append(f"{location}: {err['msg']}")
    return "; ".join(parts)


def load_agent_config(path: Union[str, Path]) -> AgentConfig:
    """Read and validate the YAML configuration. Raises ConfigError."""
    config_path = Path(path)
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"config file not found: {config_path}") from e
    except OSError as e:
        raise ConfigError(f"cannot read config file {config_path}: {e.strerror or e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {config_path}: {e}") from e

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{config_path} must contain a mapping at the top level")

    api = raw.get("api") or {}
    if not isinstance(api, dict):
        raise ConfigError(f"api: must be a mapping, got {type(api).__name__}")
    api = dict(api)
    if settings.CW_API_KEY:
        api["key"] = settings.CW_API_KEY
    if settings.CW_API_ENDPOINT:
        api["endpoint"] = settings.CW_API_ENDPOINT
    raw["api"] = api

    try:
        config = AgentConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(_format_validation_error(e)) from e

    logger.debug(f"Loaded configuration from {config_path} ({len(config.certificates)} certificates)")
    return config
