from typing import TYPE_CHECKING

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from s2p_control.core.config import Settings
from s2p_control.core.errors import ForbiddenError, ServiceUnavailableError
from s2p_control.core.security import KNOWN_ROLES, ROLE_ADMIN, CallerIdentity, resolve_user_id
from s2p_control.db.session import get_db
from s2p_control.repositories.profiles import get_profile_role

if TYPE_CHECKING:
    from s2p_control.services.fiskaly_setup import FiskalySetupService
    from s2p_control.services.heartbeat_watchdog import HeartbeatWatchdogService
    from s2p_control.services.station_control import StationControlService


def get_settings_from_app(request: Request) -> Settings:
    settings = getattr(request.app.state, "settings", None)
    if settings is None:
        raise ServiceUnavailableError("Application settings are not initialized")
    return settings


def get_station_control_service(request: Request) -> "StationControlService":
    service = getattr(request.app.state, "station_control_service", None)
    if service is None:
        raise ServiceUnavailableError("Station control service is not initialized")
    return service


def get_heartbeat_watchdog_service(request: Request) -> "HeartbeatWatchdogService":
    service = getattr(request.app.state, "heartbeat_watchdog_service", None)
    if service is None:
        raise ServiceUnavailableError("Heartbeat watchdog service is not initialized")
    return service


def get_fiskaly_setup_service(request: Request) -> "FiskalySetupService":
    service = getattr(request.app.state, "fiskaly_setup_service", None)
    if service is None:
        raise ServiceUnavailableError("Fiscal setup service is not initialized")
    return service


def get_current_caller(
    authorization: str | None = Header(default=None),
    settings: Settings = Depends(get_settings_from_app),
    db: Session = Depends(get_db),
) -> CallerIdentity:
    user_id = resolve_user_id(authorization, settings=settings)
    role = get_profile_role(db, user_id)
    if role is None or role not in KNOWN_ROLES:
        raise ForbiddenError("Profile not found")
    return CallerIdentity(user_id=user_id, role=role)


def require_admin(caller: CallerIdentity = Depends(get_current_caller)) -> CallerIdentity:
    if caller.role != ROLE_ADMIN:
        raise ForbiddenError("Forbidden: admin only")
    return caller
