"""initial station control and fiscal provisioning tables

Revision ID: 20261016_0001
Revises:
Create Date: 2026-10-16 09:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "20261016_0001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "profiles",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("role", sa.String(length=16), server_default="user", nullable=False),
        sa.Column("legal_name", sa.String(length=255), nullable=True),
        sa.Column("vat_number", sa.String(length=32), nullable=True),
        sa.Column("fiscal_code", sa.String(length=32), nullable=True),
        sa.Column("address_street", sa.String(length=255), nullable=True),
        sa.Column("address_number", sa.String(length=32), nullable=True),
        sa.Column("zip_code", sa.String(length=16), nullable=True),
        sa.Column("city", sa.String(length=128), nullable=True),
        sa.Column("province", sa.String(length=8), nullable=True),
        sa.Column("fiskaly_unit_id", sa.String(length=64), nullable=True),
        sa.Column("fiskaly_entity_id", sa.String(length=64), nullable=True),
        sa.Column("fiskaly_system_id", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("role IN ('admin','partner','manager','user')", name="ck_profiles_role"),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "stations",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=16), server_default="OFFLINE", nullable=False),
        sa.Column("owner_id", sa.String(length=36), nullable=True),
        sa.Column("structure_id", sa.String(length=36), nullable=True),
        sa.Column("last_heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            "status IN ('AVAILABLE','BUSY','OFFLINE','MAINTENANCE')",
            name="ck_stations_status",
        ),
        sa.ForeignKeyConstraint(["owner_id"], ["profiles.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_stations_last_heartbeat_at", "stations", ["last_heartbeat_at"])

    op.create_table(
        "maintenance_logs",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("station_id", sa.String(length=64), nullable=False),
        sa.Column("severity", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), server_default="open", nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("severity IN ('low','medium','high')", name="ck_maintenance_logs_severity"),
        sa.CheckConstraint(
            "status IN ('open','in_progress','risolto')",
            name="ck_maintenance_logs_status",
        ),
        sa.ForeignKeyConstraint(["station_id"], ["stations.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_maintenance_logs_station_severity_status",
        "maintenance_logs",
        ["station_id", "severity", "status"],
    )

    op.create_table(
        "gate_commands",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("station_id", sa.String(length=64), nullable=False),
        sa.Column("command", sa.String(length=16), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.execute(
        "CREATE INDEX ix_gate_commands_station_created_desc ON gate_commands (station_id, created_at DESC)"
    )


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS ix_gate_commands_station_created_desc")
    op.drop_table("gate_commands")
    op.drop_index("ix_maintenance_logs_station_severity_status", table_name="maintenance_logs")
    op.drop_table("maintenance_logs")
    op.drop_index("ix_stations_last_heartbeat_at", table_name="stations")
    op.drop_table("stations")
    op.drop_table("profiles")
