from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


HeartbeatAction = Literal["ticket_created", "already_has_ticket", "skipped", "error"]


class HeartbeatStationResult(BaseModel):
    station_id: str
    action: HeartbeatAction
    error: str | None = None


class HeartbeatCheckResponse(BaseModel):
    checked: int
    results: list[HeartbeatStationResult] = Field(default_factory=list)
