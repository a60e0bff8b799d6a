from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from s2p_control.db.models import (
    STATION_STATUS_MAINTENANCE,
    STATION_STATUS_OFFLINE,
    Station,
)

WATCHDOG_EXCLUDED_STATUSES: tuple[str, str] = (STATION_STATUS_OFFLINE, STATION_STATUS_MAINTENANCE)


@dataclass(frozen=True)
class StaleStationSnapshot:
    id: str
    structure_id: str | None
    status: str
    last_heartbeat_at: datetime | None


def list_stale_stations(db: Session, *, heartbeat_before: datetime) -> list[StaleStationSnapshot]:
    rows = db.execute(
        select(
            Station.id,
            Station.structure_id,
            Station.status,
            Station.last_heartbeat_at,
        )
        .where(
            Station.last_heartbeat_at < heartbeat_before,
            Station.status.not_in(WATCHDOG_EXCLUDED_STATUSES),
        )
        .order_by(Station.last_heartbeat_at.asc(), Station.id.asc())
    ).all()
    return [
        StaleStationSnapshot(
            id=row.id,
            structure_id=row.structure_id,
            status=row.status,
            last_heartbeat_at=row.last_heartbeat_at,
        )
        for row in rows
    ]


def mark_station_offline(db: Session, *, station_id: str, heartbeat_before: datetime) -> bool:
    """Flip a station to OFFLINE unless it already is OFFLINE or in MAINTENANCE.

    The row must still carry a heartbeat older than ``heartbeat_before``.
    Returns ``True`` only when this call changed the row.
    """
    result = db.execute(
        update(Station)
        .where(
            Station.id == station_id,
            Station.last_heartbeat_at < heartbeat_before,
            Station.status.not_in(WATCHDOG_EXCLUDED_STATUSES),
        )
        .values(status=STATION_STATUS_OFFLINE)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) > 0
