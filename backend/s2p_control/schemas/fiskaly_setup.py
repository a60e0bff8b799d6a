from __future__ import annotations

from pydantic import BaseModel, ConfigDict, StrictBool, StrictStr


class FiskalySetupRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    partner_id: StrictStr | None = None
    force: StrictBool = False
    entity_id: StrictStr | None = None
    system_id: StrictStr | None = None


class FiskalySetupResponse(BaseModel):
    success: bool
    system_id: str | None = None
    entity_id: str | None = None
    unit_id: str | None = None
    already_configured: bool | None = None
    message: str
