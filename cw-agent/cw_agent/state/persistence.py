"""
State file persistence for the CertWatch agent.

Each configuration file owns exactly one identity file, stored next to it:

    /etc/certwatch/certwatch.yaml  →  /etc/certwatch/.certwatch-state.json

Writes go to a temporary file in the same directory which is then moved over the
target with os.replace, so a reader never sees a half-written document. The file is
created 0600 (owner read/write only).
"""
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional, Union

from pydantic import ValidationError

from .errors import StateCorruptedError, StatePersistenceError, StatePurgeError
from .record import IdentityRecord

STATE_FILE_NAME = ".certwatch-state.json"
STATE_FILE_MODE = 0o600

logger = logging.getLogger("cw-agent.state.file")


def state_file_path(config_path: Union[str, Path]) -> Path:
    """Derive the state file location from the configuration file path."""
    return Path(config_path).parent / STATE_FILE_NAME


class StateFile:
    """Durable storage for a single IdentityRecord."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    @classmethod
    def for_config(cls, config_path: Union[str, Path]) -> "StateFile":
        return cls(state_file_path(config_path))

    def exists(self) -> bool:
        return self.path.is_file()

    def read(self) -> Optional[IdentityRecord]:
        """
        Read the stored record.
        Returns None when no file exists (first run).
        Raises StateCorruptedError when the file exists but cannot be used.
        """
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            logger.debug(f"No state file at {self.path}")
            return None
        except OSError as e:
            raise StateCorruptedError(self.path, f"unreadable: {e.strerror or e}") from e

        try:
            record = IdentityRecord.model_validate_json(raw)
        except ValidationError as e:
            first = e.errors()[0]
            reason = first.get("msg", "invalid document")
            raise StateCorruptedError(self.path, reason) from e

        logger.debug(f"Read state file {self.path}")
        return record

    def write(self, record: IdentityRecord) -> None:
        """Atomically replace the state file with the given record."""
        data = record.to_json().encode("utf-8")
        temp_name = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            # mkstemp creates the file 0600; same directory keeps os.replace on one device
            fd, temp_name = tempfile.mkstemp(
                dir=self.path.parent, prefix=f"{STATE_FILE_NAME}.", suffix=".tmp"
            )
            with os.fdopen(fd, "wb") as tf:
                tf.write(data)
                tf.flush()
                os.fsync(tf.fileno())
            os.chmod(temp_name, STATE_FILE_MODE)
            os.replace(temp_name, self.path)
            temp_name = None
        except OSError as e:
            raise StatePersistenceError(self.path, e.strerror or str(e)) from e
        finally:
            if temp_name is not None and os.path.exists(temp_name):
                os.unlink(temp_name)

        logger.debug(f"Wrote state file {self.path}")

    def purge(self) -> None:
        """Remove the state file. A file that is already gone counts as success."""
        try:
            self.path.unlink()
        except FileNotFoundError:
            return
        except OSError as e:
            raise StatePurgeError(self.path, e.strerror or str(e)) from e
        logger.info(f"Removed state file {self.path}")
