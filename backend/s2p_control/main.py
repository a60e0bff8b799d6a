from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from s2p_control.api.fiskaly_setup import router as fiskaly_setup_router
from s2p_control.api.heartbeat import router as heartbeat_router
from s2p_control.api.station_control import router as station_control_router
from s2p_control.core.config import Settings, get_settings
from s2p_control.core.errors import register_exception_handlers
from s2p_control.core.logging import configure_logging
from s2p_control.db.session import SessionLocal, check_db_connection, get_db
from s2p_control.services.fiskaly_setup import FiskalySetupService
from s2p_control.services.heartbeat_watchdog import HeartbeatWatchdogService
from s2p_control.services.station_control import StationControlService


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    station_control_service = StationControlService(settings=settings, session_factory=SessionLocal)
    heartbeat_watchdog_service = HeartbeatWatchdogService(settings=settings, session_factory=SessionLocal)
    fiskaly_setup_service = FiskalySetupService(settings=settings, session_factory=SessionLocal)

    app.state.settings = settings
    app.state.station_control_service = station_control_service
    app.state.heartbeat_watchdog_service = heartbeat_watchdog_service
    app.state.fiskaly_setup_service = fiskaly_setup_service

    heartbeat_watchdog_service.start()
    try:
        yield
    finally:
        heartbeat_watchdog_service.stop()


def configure_cors(app: FastAPI, settings: Settings) -> None:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=settings.cors_allow_headers,
    )


app = FastAPI(title="Shower2Pet Control Backend", lifespan=lifespan)
configure_cors(app, get_settings())
register_exception_handlers(app)
app.include_router(station_control_router)
app.include_router(heartbeat_router)
app.include_router(fiskaly_setup_router)


@app.get("/health")
def health():
    return {"status": "ok", "service": "s2p-control"}


@app.get("/status")
def status(request: Request, db: Session = Depends(get_db)):
    db_ok, db_error = check_db_connection(db)
    db_status: dict[str, object] = {"ok": db_ok}
    if db_error:
        db_status["error"] = db_error

    watchdog: HeartbeatWatchdogService | None = getattr(request.app.state, "heartbeat_watchdog_service", None)
    if watchdog is None:
        watchdog_status: dict[str, object] = {"running": False, "last_error": "Heartbeat watchdog not initialized"}
    else:
        watchdog_status = watchdog.get_status_snapshot()

    settings = getattr(request.app.state, "settings", None)
    return {
        "status": "ok" if db_ok else "degraded",
        "db": db_status,
        "heartbeat_watchdog": watchdog_status,
        "mqtt": {
            "configured": bool(settings and settings.mqtt_host),
            "transport": settings.mqtt_transport if settings else None,
        },
        "fiskaly": {
            "configured": bool(settings and settings.fiskaly_api_key and settings.fiskaly_api_secret),
            "env": settings.fiskaly_env if settings else None,
        },
    }
