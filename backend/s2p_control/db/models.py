from datetime import datetime

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Identity,
    Index,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from s2p_control.db.base import Base

STATION_STATUS_AVAILABLE = "AVAILABLE"
STATION_STATUS_BUSY = "BUSY"
STATION_STATUS_OFFLINE = "OFFLINE"
STATION_STATUS_MAINTENANCE = "MAINTENANCE"

TICKET_SEVERITY_LOW = "low"
TICKET_SEVERITY_MEDIUM = "medium"
TICKET_SEVERITY_HIGH = "high"

TICKET_STATUS_OPEN = "open"
TICKET_STATUS_IN_PROGRESS = "in_progress"
TICKET_STATUS_RESOLVED = "risolto"

GATE_COMMAND_STATUS_SENT = "sent"


class Profile(Base):
    __tablename__ = "profiles"
    __table_args__ = (
        CheckConstraint(
            "role IN ('admin','partner','manager','user')",
            name="ck_profiles_role",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="user", server_default="user")
    legal_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    vat_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    fiscal_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    address_street: Mapped[str | None] = mapped_column(String(255), nullable=True)
    address_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    zip_code: Mapped[str | None] = mapped_column(String(16), nullable=True)
    city: Mapped[str | None] = mapped_column(String(128), nullable=True)
    province: Mapped[str | None] = mapped_column(String(8), nullable=True)
    fiskaly_unit_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    fiskaly_entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    fiskaly_system_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    stations: Mapped[list["Station"]] = relationship(back_populates="owner")


class Station(Base):
    __tablename__ = "stations"
    __table_args__ = (
        CheckConstraint(
            "status IN ('AVAILABLE','BUSY','OFFLINE','MAINTENANCE')",
            name="ck_stations_status",
        ),
        Index("ix_stations_last_heartbeat_at", "last_heartbeat_at"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=STATION_STATUS_OFFLINE,
        server_default=STATION_STATUS_OFFLINE,
    )
    owner_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("profiles.id", ondelete="SET NULL"),
        nullable=True,
    )
    structure_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    last_heartbeat_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    owner: Mapped["Profile | None"] = relationship(back_populates="stations")
    maintenance_logs: Mapped[list["MaintenanceLog"]] = relationship(
        back_populates="station",
        cascade="all, delete-orphan",
    )


class MaintenanceLog(Base):
    __tablename__ = "maintenance_logs"
    __table_args__ = (
        CheckConstraint(
            "severity IN ('low','medium','high')",
            name="ck_maintenance_logs_severity",
        ),
        CheckConstraint(
            "status IN ('open','in_progress','risolto')",
            name="ck_maintenance_logs_status",
        ),
        Index("ix_maintenance_logs_station_severity_status", "station_id", "severity", "status"),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=False), primary_key=True)
    station_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("stations.id", ondelete="CASCADE"),
        nullable=False,
    )
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=TICKET_STATUS_OPEN,
        server_default=TICKET_STATUS_OPEN,
    )
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    station: Mapped["Station"] = relationship(back_populates="maintenance_logs")


class GateCommand(Base):
    __tablename__ = "gate_commands"
    __table_args__ = (
        Index("ix_gate_commands_station_created_desc", "station_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=False), primary_key=True)
    station_id: Mapped[str] = mapped_column(String(64), nullable=False)
    command: Mapped[str] = mapped_column(String(16), nullable=False)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
