from fastapi import APIRouter, Depends

from s2p_control.core.security import CallerIdentity
from s2p_control.dependencies import get_current_caller, get_station_control_service
from s2p_control.schemas.station_control import StationControlRequest, StationControlResponse
from s2p_control.services.station_control import StationControlService


router = APIRouter(prefix="/functions/v1", tags=["station-control"])


@router.post("/station-control", response_model=StationControlResponse)
def post_station_control(
    payload: StationControlRequest,
    caller: CallerIdentity = Depends(get_current_caller),
    service: StationControlService = Depends(get_station_control_service),
) -> StationControlResponse:
    result = service.dispatch(
        caller=caller,
        station_id=payload.station_id,
        command=payload.command,
        duration_minutes=payload.duration_minutes,
    )
    return StationControlResponse.model_validate(result)
