import json
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IdentityRecord(BaseModel):
    """
    The agent's durable identity, as stored in .certwatch-state.json.

    agent_id is assigned by the CertWatch API on registration and is empty until then.
    previous_agent_id is only set between an identity reset and the completed migration.
    """
    model_config = ConfigDict(extra="ignore")

    agent_id: str = ""
    agent_name: str = ""
    previous_agent_id: str = ""
    last_sync_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None

    @field_validator("agent_id", "agent_name", "previous_agent_id", mode="before")
    @classmethod
    def null_as_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("last_sync_at", "last_updated")
    @classmethod
    def as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @model_validator(mode="after")
    def check_previous_agent_id(self) -> "IdentityRecord":
        if self.previous_agent_id and self.previous_agent_id == self.agent_id:
            raise ValueError("previous_agent_id must differ from agent_id")
        return self

    def has_identity(self) -> bool:
        return bool(self.agent_id or self.agent_name)

    def to_json(self) -> str:
        """Serialize for disk. Empty previous_agent_id and unset last_sync_at are omitted."""
        data = self.model_dump(mode="json", exclude_none=True)
        if not self.previous_agent_id:
            data.pop("previous_agent_id", None)
        return json.dumps(data, indent=2) + "\n"
