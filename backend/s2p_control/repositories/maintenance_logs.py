from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from s2p_control.db.models import TICKET_STATUS_OPEN, TICKET_STATUS_RESOLVED, MaintenanceLog


def find_open_ticket_matching(
    db: Session,
    *,
    station_id: str,
    severity: str,
    reason_pattern: str,
) -> MaintenanceLog | None:
    return db.scalars(
        select(MaintenanceLog)
        .where(
            MaintenanceLog.station_id == station_id,
            MaintenanceLog.severity == severity,
            MaintenanceLog.status != TICKET_STATUS_RESOLVED,
            MaintenanceLog.reason.ilike(reason_pattern),
        )
        .order_by(MaintenanceLog.created_at.desc())
        .limit(1)
    ).first()


def create_maintenance_log(
    db: Session,
    *,
    station_id: str,
    severity: str,
    reason: str,
    status: str = TICKET_STATUS_OPEN,
) -> MaintenanceLog:
    log = MaintenanceLog(
        station_id=station_id,
        severity=severity,
        status=status,
        reason=reason,
    )
    db.add(log)
    db.flush()
    return log
