import hmac

from fastapi import APIRouter, Depends, Header

from s2p_control.core.config import Settings
from s2p_control.core.errors import AuthenticationError
from s2p_control.core.security import extract_bearer_token
from s2p_control.dependencies import get_heartbeat_watchdog_service, get_settings_from_app
from s2p_control.schemas.heartbeat import HeartbeatCheckResponse
from s2p_control.services.heartbeat_watchdog import HeartbeatWatchdogService


router = APIRouter(prefix="/functions/v1", tags=["check-heartbeat"])


def require_trigger_token(
    authorization: str | None = Header(default=None),
    settings: Settings = Depends(get_settings_from_app),
) -> None:
    expected = settings.heartbeat_trigger_token
    if not expected:
        return
    token = extract_bearer_token(authorization)
    if not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        raise AuthenticationError("Unauthorized")


@router.post(
    "/check-heartbeat",
    response_model=HeartbeatCheckResponse,
    response_model_exclude_none=True,
    dependencies=[Depends(require_trigger_token)],
)
def post_check_heartbeat(
    service: HeartbeatWatchdogService = Depends(get_heartbeat_watchdog_service),
) -> HeartbeatCheckResponse:
    return HeartbeatCheckResponse.model_validate(service.run_once())


@router.get("/check-heartbeat/status")
def get_check_heartbeat_status(
    service: HeartbeatWatchdogService = Depends(get_heartbeat_watchdog_service),
) -> dict:
    return service.get_status_snapshot()
