from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from threading import Event, Lock, Thread
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from s2p_control.core.config import Settings
from s2p_control.core.errors import WatchdogQueryError
from s2p_control.db.models import TICKET_SEVERITY_HIGH
from s2p_control.repositories.maintenance_logs import (
    create_maintenance_log,
    find_open_ticket_matching,
)
from s2p_control.repositories.stations import list_stale_stations, mark_station_offline

NO_SIGNAL_REASON = "Stazione scollegata / Nessun segnale"
NO_SIGNAL_PATTERN = "%Nessun segnale%"

ACTION_TICKET_CREATED = "ticket_created"
ACTION_ALREADY_HAS_TICKET = "already_has_ticket"
ACTION_SKIPPED = "skipped"
ACTION_ERROR = "error"


@dataclass(frozen=True)
class StationCheckResult:
    station_id: str
    action: str
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        if payload["error"] is None:
            payload.pop("error")
        return payload


class HeartbeatWatchdogService:
    def __init__(
        self,
        *,
        settings: Settings,
        session_factory: sessionmaker,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._logger = logging.getLogger("s2p_control.heartbeat_watchdog")
        self._stop_event = Event()
        self._thread: Thread | None = None

        self._lock = Lock()
        self._running = False
        self._next_due_ts: datetime | None = None
        self._last_run_ts: datetime | None = None
        self._last_status: str | None = None
        self._last_error: str | None = None
        self._last_summary: dict[str, Any] | None = None

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            self._next_due_ts = datetime.now(timezone.utc)
        self._stop_event.clear()
        self._thread = Thread(target=self._loop, name="heartbeat-watchdog", daemon=True)
        self._thread.start()
        self._logger.info(
            "started heartbeat watchdog enabled=%s interval_seconds=%s stale_seconds=%s",
            self._settings.heartbeat_watchdog_enabled,
            self._settings.heartbeat_watchdog_interval_seconds,
            self._settings.heartbeat_stale_seconds,
        )

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5.0)
        with self._lock:
            self._running = False

    def get_status_snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "enabled": self._settings.heartbeat_watchdog_enabled,
                "running": self._running and not self._stop_event.is_set(),
                "interval_seconds": self._settings.heartbeat_watchdog_interval_seconds,
                "stale_seconds": self._settings.heartbeat_stale_seconds,
                "next_due_ts": _to_iso(self._next_due_ts),
                "last_run_ts": _to_iso(self._last_run_ts),
                "last_status": self._last_status,
                "last_error": self._last_error,
                "last_summary": self._last_summary,
            }

    def run_once(self, *, now: datetime | None = None) -> dict[str, Any]:
        run_ts = now or datetime.now(timezone.utc)
        threshold = run_ts - timedelta(seconds=self._settings.heartbeat_stale_seconds)

        try:
            with self._session_factory() as db:
                stale = list_stale_stations(db, heartbeat_before=threshold)
        except SQLAlchemyError as exc:
            self._record_run(run_ts, status="error", error=str(exc), summary=None)
            self._logger.error("heartbeat watchdog query failed threshold=%s error=%s", threshold, exc)
            raise WatchdogQueryError("Stale station query failed", details=str(exc)) from exc

        results = [self._check_station(station.id, threshold) for station in stale]
        summary = {
            "checked": len(stale),
            "results": [result.to_dict() for result in results],
        }
        failed = sum(1 for result in results if result.action == ACTION_ERROR)
        self._record_run(
            run_ts,
            status="partial" if failed else "ok",
            error=f"{failed} station(s) failed" if failed else None,
            summary=summary,
        )
        self._logger.info(
            "heartbeat watchdog run checked=%s created=%s existing=%s skipped=%s failed=%s",
            len(stale),
            sum(1 for result in results if result.action == ACTION_TICKET_CREATED),
            sum(1 for result in results if result.action == ACTION_ALREADY_HAS_TICKET),
            sum(1 for result in results if result.action == ACTION_SKIPPED),
            failed,
        )
        return summary

    def _check_station(self, station_id: str, threshold: datetime) -> StationCheckResult:
        with self._session_factory() as db:
            try:
                if not mark_station_offline(db, station_id=station_id, heartbeat_before=threshold):
                    db.commit()
                    self._logger.info("station status or heartbeat changed concurrently station=%s", station_id)
                    return StationCheckResult(station_id=station_id, action=ACTION_SKIPPED)

                existing = find_open_ticket_matching(
                    db,
                    station_id=station_id,
                    severity=TICKET_SEVERITY_HIGH,
                    reason_pattern=NO_SIGNAL_PATTERN,
                )
                if existing is not None:
                    db.commit()
                    self._logger.info(
                        "station offline, ticket already open station=%s ticket_id=%s",
                        station_id,
                        existing.id,
                    )
                    return StationCheckResult(station_id=station_id, action=ACTION_ALREADY_HAS_TICKET)

                ticket = create_maintenance_log(
                    db,
                    station_id=station_id,
                    severity=TICKET_SEVERITY_HIGH,
                    reason=NO_SIGNAL_REASON,
                )
                db.commit()
                self._logger.warning(
                    "station offline, ticket created station=%s ticket_id=%s",
                    station_id,
                    ticket.id,
                )
                return StationCheckResult(station_id=station_id, action=ACTION_TICKET_CREATED)
            except Exception as exc:
                db.rollback()
                self._logger.exception("heartbeat watchdog station check failed station=%s", station_id)
                return StationCheckResult(station_id=station_id, action=ACTION_ERROR, error=str(exc))

    def _record_run(
        self,
        run_ts: datetime,
        *,
        status: str,
        error: str | None,
        summary: dict[str, Any] | None,
    ) -> None:
        with self._lock:
            self._last_run_ts = run_ts
            self._last_status = status
            self._last_error = error
            if summary is not None:
                self._last_summary = summary

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            if not self._settings.heartbeat_watchdog_enabled:
                self._stop_event.wait(1.0)
                continue

            now = datetime.now(timezone.utc)
            with self._lock:
                next_due = self._next_due_ts
            if next_due is None or now >= next_due:
                try:
                    self.run_once(now=now)
                except Exception:
                    self._logger.exception("periodic heartbeat watchdog run failed")
                with self._lock:
                    self._next_due_ts = datetime.now(timezone.utc) + timedelta(
                        seconds=self._settings.heartbeat_watchdog_interval_seconds
                    )

            self._stop_event.wait(1.0)


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat()
