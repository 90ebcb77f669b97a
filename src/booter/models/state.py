"""Persistent Bootstrap state record."""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field, field_validator

from booter.models.status import PhaseEnum


class BootstrapState(BaseModel):
    """Durable record at <state_dir>/state.json.

    Lives on the Bootstrap root; after a forward pivot it is reached through
    the old-root back-reference so the return path can read and reset it.
    """

    phase: PhaseEnum = Field(PhaseEnum.BOOTSTRAP, description="Currently live root")
    target_pid: Optional[int] = Field(
        None, gt=0, description="Process that exec'd the target init"
    )
    last_image_url: Optional[str] = Field(None, description="Last image loaded")
    boot_time: datetime = Field(
        default_factory=datetime.now, description="Bootstrap start timestamp"
    )
    last_return_at: Optional[datetime] = Field(
        None, description="Timestamp of the last successful return"
    )
    oldroot: Optional[str] = Field(
        None, description="Back-reference path to the Bootstrap root (target view)"
    )

    @field_validator("boot_time", "last_return_at", mode="before")
    @classmethod
    def parse_iso8601(cls, v):
        """Parse ISO 8601 timestamp strings."""
        if v is None:
            return None
        if isinstance(v, str):
            return datetime.fromisoformat(v.replace("Z", "+00:00"))
        return v

    def in_target(self) -> bool:
        return self.phase == PhaseEnum.TARGET and self.target_pid is not None

    def to_status_text(self) -> str:
        """Render the status payload, one key=value per line.

        ``target_pid`` is only present while a target is running.
        """
        lines = [
            f"phase={self.phase.value}",
            f"boot_time={self.boot_time.isoformat()}",
            f"last_image_url={self.last_image_url or 'none'}",
        ]
        if self.target_pid is not None:
            lines.append(f"target_pid={self.target_pid}")
        return "\n".join(lines)
