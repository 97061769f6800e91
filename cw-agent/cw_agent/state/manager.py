"""
In-memory agent identity, shared by every worker in the process.

One StateManager is created at startup and handed to the scanner, the sync loop and
the CLI. All access goes through a single lock. Mutators only change memory; callers
persist explicitly with save(), which lets the sync loop batch related changes
(agent_id + agent_name) into one write.
"""
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from .errors import StateCorruptedError
from .lifecycle import has_name_changed
from .persistence import StateFile
from .record import IdentityRecord, utcnow

logger = logging.getLogger("cw-agent.state")


class StateManager:
    """
    Thread-safe owner of the agent's IdentityRecord.
    Usage:
        manager = StateManager("/etc/certwatch/certwatch.yaml")
        manager.load()
        manager.set_agent_id(assigned_id)
        manager.save()
    """

    def __init__(self, config_path: Union[str, Path], state_file: Optional[StateFile] = None):
        self._file = state_file or StateFile.for_config(config_path)
        self._lock = threading.Lock()
        self._record = IdentityRecord()

    @property
    def file_path(self) -> Path:
        return self._file.path

    # --- Persistence ---

    def load(self) -> None:
        """
        Load the record from disk.
        A missing file leaves an empty record (first run). A corrupted file also leaves
        an empty record, and StateCorruptedError is raised for the caller to report.
        """
        with self._lock:
            try:
                record = self._file.read()
            except StateCorruptedError as e:
                self._record = IdentityRecord()
                logger.warning(str(e))
                raise

            if record is None:
                self._record = IdentityRecord()
                logger.info(f"No agent state at {self._file.path}; treating as first run")
                return

            self._record = record
            logger.info(
                f"Loaded agent state from {self._file.path} "
                f"(name={record.agent_name!r}, registered={bool(record.agent_id)})"
            )

    def save(self) -> None:
        """
        Persist the current record. last_updated is stamped on every save and never
        moves backwards within a process. Raises StatePersistenceError on failure,
        in which case memory is left as it was.
        """
        with self._lock:
            now = utcnow()
            previous = self._record.last_updated
            stamped = self._record.model_copy(
                update={"last_updated": max(now, previous) if previous else now}
            )
            self._file.write(stamped)
            self._record = stamped
            logger.debug(f"Saved agent state to {self._file.path}")

    def reset(self) -> None:
        """
        Forget the identity completely: clear memory and remove the state file.
        Memory is cleared even if removing the file fails; StatePurgeError propagates.
        """
        with self._lock:
            self._record = IdentityRecord()
            self._file.purge()
        logger.info("Agent state reset")

    # --- Whole-record access ---

    def snapshot(self) -> IdentityRecord:
        with self._lock:
            return self._record.model_copy()

    def replace(self, record: IdentityRecord) -> None:
        """Swap in a whole record at once (used for identity-changing decisions)."""
        if record.previous_agent_id and record.previous_agent_id == record.agent_id:
            raise ValueError("previous_agent_id must differ from agent_id")
        with self._lock:
            self._record = record.model_copy()

    def has_state(self) -> bool:
        with self._lock:
            return self._record.has_identity()

    def has_name_changed(self, configured_name: str) -> bool:
        with self._lock:
            return has_name_changed(self._record.agent_name, configured_name)

    # --- Field accessors ---

    def get_agent_id(self) -> str:
        with self._lock:
            return self._record.agent_id

    def set_agent_id(self, agent_id: str) -> None:
        with self._lock:
            if agent_id and agent_id == self._record.previous_agent_id:
                raise ValueError("agent_id must differ from previous_agent_id")
            self._record.agent_id = agent_id

    def get_agent_name(self) -> str:
        with self._lock:
            return self._record.agent_name

    def set_agent_name(self, agent_name: str) -> None:
        with self._lock:
            self._record.agent_name = agent_name

    def get_previous_agent_id(self) -> str:
        with self._lock:
            return self._record.previous_agent_id

    def set_previous_agent_id(self, previous_agent_id: str) -> None:
        with self._lock:
            if previous_agent_id and previous_agent_id == self._record.agent_id:
                raise ValueError("previous_agent_id must differ from agent_id")
            self._record.previous_agent_id = previous_agent_id

    def clear_previous_agent_id(self) -> None:
        with self._lock:
            self._record.previous_agent_id = ""

    def get_last_sync_at(self) -> Optional[datetime]:
        with self._lock:
            return self._record.last_sync_at

    def set_last_sync_at(self, when: datetime) -> None:
        """Record a completed sync. A wall clock that stepped back never moves the value backwards."""
        # Route through validation so naive datetimes are normalized to UTC
        when = IdentityRecord(last_sync_at=when).last_sync_at
        with self._lock:
            previous = self._record.last_sync_at
            if previous and previous > when:
                logger.debug(f"Clock went back ({when.isoformat()} < {previous.isoformat()}); keeping last_sync_at")
                when = previous
            self._record = self._record.model_copy(update={"last_sync_at": when})

    def get_last_updated(self) -> Optional[datetime]:
        with self._lock:
            return self._record.last_updated
