"""
Error taxonomy for the agent identity state.

Low-level file errors (OSError, JSON decode errors, validation errors) never leave
the persistence layer raw; they are classified into one of these and chained.
"""
from pathlib import Path
from typing import Optional


class StateError(Exception):
    """Base class for all identity state errors."""


class StateCorruptedError(StateError):
    """
    The state file exists but could not be read or parsed.
    Recoverable: the in-memory record is reset and the agent starts as on a first run.
    """

    def __init__(self, path: Path, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"State file {path} is corrupted ({reason}); starting with empty agent state")


class StatePersistenceError(StateError):
    """Writing the state file failed."""

    def __init__(self, path: Path, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to save state file {path}: {reason}")


class StatePurgeError(StateError):
    """Removing the state file failed. The in-memory record is already cleared."""

    def __init__(self, path: Path, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to remove state file {path}: {reason}")


class IdentityDriftError(StateError):
    """
    The configured agent name differs from the name stored by a previous run.
    Not a crash: the CLI renders it and exits non-zero without starting monitoring.
    """

    def __init__(self, previous_name: str, previous_agent_id: Optional[str], configured_name: str):
        self.previous_name = previous_name
        self.previous_agent_id = previous_agent_id or ""
        self.configured_name = configured_name
        super().__init__("agent name changed - use --reset-agent to continue with new name")
