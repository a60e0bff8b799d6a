from __future__ import annotations

from sqlalchemy.orm import Session

from s2p_control.db.models import GATE_COMMAND_STATUS_SENT, GateCommand


def create_gate_command(
    db: Session,
    *,
    station_id: str,
    command: str,
    user_id: str,
    status: str = GATE_COMMAND_STATUS_SENT,
) -> GateCommand:
    row = GateCommand(
        station_id=station_id,
        command=command,
        user_id=user_id,
        status=status,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row
