"""Pydantic models for board notifications."""

from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, Field


class BoardEvent(BaseModel):
    """Push notification telling listeners to re-fetch a board.

    Carries no diff; consumers treat it as "this board may have changed".
    """

    type: Literal["board-updated", "sync-complete"] = Field(description="Event type")
    board_id: Optional[str] = Field(default=None, alias="boardId", description="Affected board")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Event timestamp (ISO8601 UTC)",
    )

    model_config = {"frozen": True, "populate_by_name": True}

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
