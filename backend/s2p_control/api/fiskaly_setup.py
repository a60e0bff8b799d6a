from fastapi import APIRouter, Depends

from s2p_control.dependencies import get_fiskaly_setup_service, require_admin
from s2p_control.schemas.fiskaly_setup import FiskalySetupRequest, FiskalySetupResponse
from s2p_control.services.fiskaly_setup import FiskalySetupService


router = APIRouter(prefix="/functions/v1", tags=["fiskaly-setup"])


@router.post(
    "/fiskaly-setup",
    response_model=FiskalySetupResponse,
    response_model_exclude_none=True,
    dependencies=[Depends(require_admin)],
)
def post_fiskaly_setup(
    payload: FiskalySetupRequest,
    service: FiskalySetupService = Depends(get_fiskaly_setup_service),
) -> FiskalySetupResponse:
    result = service.setup(
        partner_id=payload.partner_id,
        force=payload.force,
        entity_id=payload.entity_id,
        system_id=payload.system_id,
    )
    return FiskalySetupResponse.model_validate(result)
