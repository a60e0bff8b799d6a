from __future__ import annotations

from pydantic import BaseModel, ConfigDict, StrictFloat, StrictInt, StrictStr


class StationControlRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    station_id: StrictStr | None = None
    command: StrictStr | None = None
    duration_minutes: StrictInt | StrictFloat | None = None


class StationControlResponse(BaseModel):
    success: bool
    topic: str
    payload: str
