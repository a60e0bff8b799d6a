from __future__ import annotations

from typing import Literal

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from s2p_control.db.models import Profile

FiskalyIdColumn = Literal["fiskaly_unit_id", "fiskaly_entity_id", "fiskaly_system_id"]

_FISKALY_COLUMNS = {
    "fiskaly_unit_id": Profile.fiskaly_unit_id,
    "fiskaly_entity_id": Profile.fiskaly_entity_id,
    "fiskaly_system_id": Profile.fiskaly_system_id,
}


def get_profile(db: Session, profile_id: str) -> Profile | None:
    return db.get(Profile, profile_id)


def get_profile_role(db: Session, profile_id: str) -> str | None:
    return db.scalar(select(Profile.role).where(Profile.id == profile_id))


def update_profile_fiskaly_id(
    db: Session,
    *,
    profile_id: str,
    column: FiskalyIdColumn,
    value: str,
    expected: str | None,
) -> bool:
    """Compare-and-swap one fiscal ID column.

    The write only lands when the column still holds ``expected``; a ``False``
    return means another writer changed it since it was read.
    """
    target = _FISKALY_COLUMNS[column]
    result = db.execute(
        update(Profile)
        .where(
            Profile.id == profile_id,
            target.is_not_distinct_from(expected),
        )
        .values({column: value})
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return (result.rowcount or 0) > 0
