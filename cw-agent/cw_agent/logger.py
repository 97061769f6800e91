import logging
import sys
from datetime import datetime, timezone

from pythonjsonlogger import jsonlogger

from .config import settings

# ANSI escape codes
_RESET    = "\033[0m"
_BOLD     = "\033[1m"
_DIM      = "\033[2m"

# Level → color
_LEVEL_COLORS = {
    "DEBUG":    "\033[36m",    # Cyan
    "INFO":     "\033[32m",    # Green
    "WARNING":  "\033[33m",    # Yellow
    "ERROR":    "\033[31m",    # Red
    "CRITICAL": "\033[35;1m",  # Bright Magenta
}

# Component badge: sky blue for the certificate agent
_COMPONENT_COLOR = "\033[94m"
_COMPONENT_TAG   = "AGENT"


class AgentContextFilter(logging.Filter):
    """
    Stamps every record with the configured agent name (record.agent).
    Several agents often log to the same journal; the name tells their lines apart.
    """

    def __init__(self):
        super().__init__()
        self.agent_name = ""

    def filter(self, record: logging.LogRecord) -> bool:
        record.agent = self.agent_name
        return True


_agent_context = AgentContextFilter()


def bind_agent(name: str) -> None:
    """Attach the agent name to every log line from here on."""
    _agent_context.agent_name = name


class CertWatchFormatter(logging.Formatter):
    """
    Human-readable colored formatter for the CertWatch agent.

    Example output:
      [2026-02-21 14:05:33.421]  [AGENT prod-1]  [INFO    ]  cw-agent.sync     » Registered agent 3f1c2a9e-...
      [2026-02-21 14:05:33.512]  [AGENT prod-1]  [WARNING ]  cw-agent.state    » State file is corrupted
      [2026-02-21 14:05:33.600]  [AGENT]         [ERROR   ]  cw-agent.cli      » Invalid configuration
    """

    def _badge(self, record: logging.LogRecord) -> str:
        agent = getattr(record, "agent", "")
        label = f"{_COMPONENT_TAG} {agent}" if agent else _COMPONENT_TAG
        return f"{_COMPONENT_COLOR}{_BOLD}[{label}]{_RESET}"

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(
            sep=" ", timespec="milliseconds"
        )[:23]
        color = _LEVEL_COLORS.get(record.levelname, "")

        message = record.getMessage()
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)

        return "  ".join([
            f"{_DIM}[{stamp}]{_RESET}",
            self._badge(record),
            f"{color}{_BOLD}[{record.levelname:<8}]{_RESET}",
            f"{_DIM}{record.name}{_RESET}",
            f"» {message}",
        ])


def setup_logging(level: str | None = None) -> logging.Logger:
    """
    Configure logging for the agent.

    Development  → colored, human-readable lines to stderr
    Production   → JSON lines to stderr (no color codes)

    stdout is left to the CLI's rendered output.
    """
    root = logging.getLogger()

    # Remove handlers added by imported libraries before us
    for h in root.handlers[:]:
        root.removeHandler(h)

    handler = logging.StreamHandler(sys.stderr)
    handler.addFilter(_agent_context)

    if settings.ENVIRONMENT == "production":
        handler.setFormatter(jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(agent)s %(message)s",
            json_ensure_ascii=False,
        ))
    else:
        handler.setFormatter(CertWatchFormatter())

    root.addHandler(handler)
    root.setLevel((level or settings.LOG_LEVEL).upper())

    # Suppress chatty third-party loggers
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)

    return root
