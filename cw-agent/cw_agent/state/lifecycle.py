"""
Startup identity checks.

Before any monitoring starts, the configured agent name is compared with the name
stored by the previous run:

    UNNAMED       no stored name               → start normally (an agent_id may still exist)
    STABLE        stored name == configured    → start normally
    DRIFTED       stored name != configured    → refuse, unless a reset was requested

A reset keeps the old agent_id as previous_agent_id so the next sync can ask the API
to move matching certificates to the new agent; certificates that do not match are
orphaned on the old agent. The reset is saved before startup continues.
"""
import logging
from enum import Enum
from typing import TYPE_CHECKING, Optional

from pydantic import BaseModel

from .errors import IdentityDriftError, StatePersistenceError
from .record import IdentityRecord

if TYPE_CHECKING:
    from .manager import StateManager

logger = logging.getLogger("cw-agent.state.lifecycle")


class IdentityStatus(str, Enum):
    UNNAMED = "unnamed"
    STABLE = "stable"
    DRIFTED = "drifted"


class StartupDecision(BaseModel):
    status: IdentityStatus
    reset_required: bool = False
    previous_name: str = ""
    previous_agent_id: str = ""
    configured_name: str


def has_name_changed(stored_name: str, configured_name: str) -> bool:
    """Exact comparison; an empty stored name never counts as a change."""
    if not stored_name:
        return False
    return stored_name != configured_name


def classify(record: IdentityRecord, configured_name: str) -> IdentityStatus:
    if not record.agent_name:
        return IdentityStatus.UNNAMED
    if has_name_changed(record.agent_name, configured_name):
        return IdentityStatus.DRIFTED
    return IdentityStatus.STABLE


def plan_reset(record: IdentityRecord, configured_name: Optional[str] = None) -> IdentityRecord:
    """
    Compute the record after an identity reset: the current agent_id becomes the
    migration marker and agent_id is cleared. Nothing to migrate leaves any existing
    marker untouched. When given, configured_name is adopted so the next startup
    does not report the same drift again before re-registration.
    """
    update = {"agent_id": ""}
    if record.agent_id:
        update["previous_agent_id"] = record.agent_id
    if configured_name:
        update["agent_name"] = configured_name
    return record.model_copy(update=update)


class IdentityLifecycle:
    """Applies the startup identity rules to a StateManager."""

    def __init__(self, state_manager: "StateManager"):
        self._state = state_manager

    def evaluate(self, configured_name: str, reset_requested: bool = False) -> StartupDecision:
        """
        Classify the stored identity against the configured name.
        Raises IdentityDriftError when the name changed and no reset was requested.
        A reset request always bypasses the drift refusal.
        """
        record = self._state.snapshot()
        status = classify(record, configured_name)
        decision = StartupDecision(
            status=status,
            reset_required=reset_requested and record.has_identity(),
            previous_name=record.agent_name,
            previous_agent_id=record.agent_id,
            configured_name=configured_name,
        )

        if status is IdentityStatus.DRIFTED and not reset_requested:
            logger.warning(
                f"Agent name changed from {record.agent_name!r} to {configured_name!r}; refusing to start"
            )
            raise IdentityDriftError(record.agent_name, record.agent_id, configured_name)

        if reset_requested and not decision.reset_required:
            logger.info("Reset requested but no previous agent state exists; nothing to migrate")

        return decision

    def apply_reset(self, configured_name: Optional[str] = None) -> IdentityRecord:
        """
        Move agent_id into previous_agent_id, clear agent_id and save immediately.
        StatePersistenceError propagates: the caller must not start monitoring.
        """
        before = self._state.snapshot()
        after = plan_reset(before, configured_name)
        self._state.replace(after)
        try:
            self._state.save()
        except StatePersistenceError:
            # Keep memory in line with what is still on disk
            self._state.replace(before)
            raise
        if before.agent_id:
            logger.info(f"Agent identity reset; {before.agent_id} kept for certificate migration")
        else:
            logger.info("Agent identity reset; no previous agent id to migrate")
        return self._state.snapshot()
