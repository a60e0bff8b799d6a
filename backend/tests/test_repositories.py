from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any
from unittest import TestCase

from sqlalchemy import BigInteger, create_engine, select, update
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from s2p_control.core.config import Settings
from s2p_control.core.errors import ProvisioningError
from s2p_control.db.base import Base
from s2p_control.db.models import MaintenanceLog, Profile, Station
from s2p_control.repositories.gate_commands import create_gate_command
from s2p_control.repositories.maintenance_logs import create_maintenance_log, find_open_ticket_matching
from s2p_control.repositories.profiles import get_profile, get_profile_role, update_profile_fiskaly_id
from s2p_control.repositories.stations import list_stale_stations, mark_station_offline
from s2p_control.services.fiskaly_client import FiskalyApiError
from s2p_control.services.fiskaly_setup import FiskalySetupService
from s2p_control.services.heartbeat_watchdog import NO_SIGNAL_PATTERN, NO_SIGNAL_REASON, HeartbeatWatchdogService

NOW = datetime(2026, 10, 16, 12, 0, tzinfo=timezone.utc)
THRESHOLD = NOW - timedelta(minutes=2)


# SQLite only autoincrements INTEGER primary keys.
@compiles(BigInteger, "sqlite")
def _compile_big_integer_sqlite(type_, compiler, **kw):
    return "INTEGER"


class _DatabaseTestCase(TestCase):
    def setUp(self) -> None:
        self.engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(bind=self.engine)
        self.SessionLocal = sessionmaker(
            bind=self.engine,
            autoflush=False,
            autocommit=False,
            expire_on_commit=False,
        )
        self.db = self.SessionLocal()
        self.addCleanup(self.engine.dispose)
        self.addCleanup(self.db.close)

    def add_station(self, station_id: str, *, status: str = "AVAILABLE", age: timedelta | None) -> None:
        self.db.add(
            Station(
                id=station_id,
                status=status,
                last_heartbeat_at=None if age is None else NOW - age,
            )
        )
        self.db.commit()

    def add_ticket(
        self,
        station_id: str,
        *,
        severity: str = "high",
        status: str = "open",
        reason: str = NO_SIGNAL_REASON,
    ) -> None:
        self.db.add(MaintenanceLog(station_id=station_id, severity=severity, status=status, reason=reason))
        self.db.commit()

    def station_status(self, station_id: str) -> str:
        with self.SessionLocal() as db:
            return db.scalar(select(Station.status).where(Station.id == station_id))


class StationRepositoryTests(_DatabaseTestCase):
    def test_stale_listing_applies_threshold_and_status_filter(self) -> None:
        self.add_station("fresh", age=timedelta(minutes=1))
        self.add_station("edge", age=timedelta(minutes=2))
        self.add_station("stale", age=timedelta(minutes=3))
        self.add_station("busy", status="BUSY", age=timedelta(minutes=10))
        self.add_station("offline", status="OFFLINE", age=timedelta(hours=1))
        self.add_station("maintenance", status="MAINTENANCE", age=timedelta(hours=1))
        self.add_station("never", age=None)

        stale = list_stale_stations(self.db, heartbeat_before=THRESHOLD)

        self.assertEqual([station.id for station in stale], ["busy", "stale"])
        self.assertEqual([station.status for station in stale], ["BUSY", "AVAILABLE"])

    def test_offline_flip_is_conditional(self) -> None:
        self.add_station("stale", age=timedelta(minutes=3))
        self.add_station("maintenance", status="MAINTENANCE", age=timedelta(minutes=3))

        self.assertTrue(mark_station_offline(self.db, station_id="stale", heartbeat_before=THRESHOLD))
        self.db.commit()
        self.assertFalse(mark_station_offline(self.db, station_id="stale", heartbeat_before=THRESHOLD))
        self.assertFalse(mark_station_offline(self.db, station_id="maintenance", heartbeat_before=THRESHOLD))
        self.assertFalse(mark_station_offline(self.db, station_id="missing", heartbeat_before=THRESHOLD))
        self.db.commit()

        self.assertEqual(self.station_status("stale"), "OFFLINE")
        self.assertEqual(self.station_status("maintenance"), "MAINTENANCE")

    def test_fresh_heartbeat_blocks_offline_flip(self) -> None:
        self.add_station("revived", age=timedelta(seconds=5))

        self.assertFalse(mark_station_offline(self.db, station_id="revived", heartbeat_before=THRESHOLD))
        self.db.commit()
        self.assertEqual(self.station_status("revived"), "AVAILABLE")


class MaintenanceLogRepositoryTests(_DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.add_station("ST-1", age=timedelta(minutes=5))
        self.add_station("ST-2", age=timedelta(minutes=5))

    def _find(self, station_id: str = "ST-1") -> MaintenanceLog | None:
        return find_open_ticket_matching(
            self.db,
            station_id=station_id,
            severity="high",
            reason_pattern=NO_SIGNAL_PATTERN,
        )

    def test_unresolved_no_signal_ticket_matches(self) -> None:
        self.add_ticket("ST-1", status="in_progress", reason="STAZIONE SCOLLEGATA / NESSUN SEGNALE")
        found = self._find()
        self.assertIsNotNone(found)
        self.assertEqual(found.status, "in_progress")

    def test_resolved_or_unrelated_tickets_do_not_match(self) -> None:
        self.add_ticket("ST-1", status="risolto")
        self.add_ticket("ST-1", severity="medium")
        self.add_ticket("ST-1", reason="Pompa guasta")
        self.add_ticket("ST-2")

        self.assertIsNone(self._find())
        self.assertIsNotNone(self._find("ST-2"))

    def test_created_ticket_gets_an_id_and_defaults(self) -> None:
        ticket = create_maintenance_log(self.db, station_id="ST-1", severity="high", reason=NO_SIGNAL_REASON)
        self.db.commit()

        self.assertIsNotNone(ticket.id)
        self.assertEqual(ticket.status, "open")
        self.assertEqual(self._find().id, ticket.id)


class GateCommandRepositoryTests(_DatabaseTestCase):
    def test_audit_row_is_committed(self) -> None:
        row = create_gate_command(self.db, station_id="ST-1", command="PULSE", user_id="user-1")

        self.assertIsNotNone(row.id)
        self.assertEqual(row.status, "sent")
        self.assertIsNotNone(row.created_at)


class ProfileRepositoryTests(_DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.db.add(Profile(id="partner-1", role="partner", legal_name="Bau Wash S.r.l."))
        self.db.commit()

    def test_role_lookup(self) -> None:
        self.assertEqual(get_profile_role(self.db, "partner-1"), "partner")
        self.assertIsNone(get_profile_role(self.db, "ghost"))
        self.assertIsNone(get_profile(self.db, "ghost"))

    def test_compare_and_swap_only_lands_on_expected_value(self) -> None:
        self.assertTrue(
            update_profile_fiskaly_id(
                self.db, profile_id="partner-1", column="fiskaly_unit_id", value="unit-1", expected=None
            )
        )
        self.assertFalse(
            update_profile_fiskaly_id(
                self.db, profile_id="partner-1", column="fiskaly_unit_id", value="unit-2", expected=None
            )
        )
        self.assertTrue(
            update_profile_fiskaly_id(
                self.db, profile_id="partner-1", column="fiskaly_unit_id", value="unit-3", expected="unit-1"
            )
        )

        with self.SessionLocal() as db:
            self.assertEqual(db.scalar(select(Profile.fiskaly_unit_id)), "unit-3")

    def test_concurrent_writer_makes_stale_swap_fail(self) -> None:
        with self.SessionLocal() as other:
            update_profile_fiskaly_id(
                other, profile_id="partner-1", column="fiskaly_system_id", value="theirs", expected=None
            )

        self.assertFalse(
            update_profile_fiskaly_id(
                self.db, profile_id="partner-1", column="fiskaly_system_id", value="ours", expected=None
            )
        )
        with self.SessionLocal() as db:
            self.assertEqual(db.scalar(select(Profile.fiskaly_system_id)), "theirs")


class HeartbeatWatchdogDatabaseTests(_DatabaseTestCase):
    def test_runs_against_real_tables(self) -> None:
        self.add_station("fresh", age=timedelta(minutes=1))
        self.add_station("stale", age=timedelta(minutes=3))
        self.add_station("maintenance", status="MAINTENANCE", age=timedelta(minutes=30))
        service = HeartbeatWatchdogService(
            settings=Settings(heartbeat_stale_seconds=120),
            session_factory=self.SessionLocal,
        )

        first = service.run_once(now=NOW)
        second = service.run_once(now=NOW)

        self.assertEqual(first, {"checked": 1, "results": [{"station_id": "stale", "action": "ticket_created"}]})
        self.assertEqual(second, {"checked": 0, "results": []})
        self.assertEqual(self.station_status("stale"), "OFFLINE")
        self.assertEqual(self.station_status("fresh"), "AVAILABLE")

        with self.SessionLocal() as db:
            db.execute(update(Station).where(Station.id == "stale").values(status="AVAILABLE"))
            db.commit()
        third = service.run_once(now=NOW)

        self.assertEqual(third["results"], [{"station_id": "stale", "action": "already_has_ticket"}])
        with self.SessionLocal() as db:
            tickets = db.scalars(select(MaintenanceLog)).all()
        self.assertEqual(
            [(ticket.station_id, ticket.severity, ticket.status, ticket.reason) for ticket in tickets],
            [("stale", "high", "open", NO_SIGNAL_REASON)],
        )


class _FlakyFiskalyClient:
    def __init__(self) -> None:
        self.calls: list[str] = []
        self.system_error: FiskalyApiError | None = FiskalyApiError(status_code=500, detail="upstream down")

    def create_token(self, *, key: str, secret: str, scope_id: str | None = None) -> str:
        self.calls.append("create_token")
        return "tenant-bearer"

    def create_asset(self, bearer: str, *, name: str, asset_type: str = "UNIT", metadata: Any = None) -> dict:
        self.calls.append("create_asset")
        return {"content": {"id": "unit-1"}}

    def create_subject(self, bearer: str, *, name: str, scope_id: str) -> dict:
        self.calls.append("create_subject")
        raise FiskalyApiError(status_code=404, detail="Not Found")

    def create_entity(self, bearer: str, *, payload: dict, scope_id: str | None = None) -> dict:
        self.calls.append("create_entity")
        return {"content": {"id": "entity-1"}}

    def update_entity_state(self, bearer: str, *, entity_id: str, state: str, scope_id: str | None = None) -> dict:
        self.calls.append("update_entity_state")
        return {}

    def create_system(self, bearer: str, *, payload: dict) -> dict:
        self.calls.append("create_system")
        if self.system_error is not None:
            raise self.system_error
        return {"content": {"id": "system-1"}}


class FiskalySetupDatabaseTests(_DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.db.add(
            Profile(
                id="partner-1",
                role="partner",
                legal_name="Bau Wash S.r.l.",
                vat_number="IT01234567890",
                address_street="Via Roma",
                address_number="12",
                zip_code="20121",
                city="Milano",
                province="MI",
            )
        )
        self.db.commit()

    def _stored_ids(self) -> tuple[str | None, str | None, str | None]:
        with self.SessionLocal() as db:
            profile = db.get(Profile, "partner-1")
            return profile.fiskaly_unit_id, profile.fiskaly_entity_id, profile.fiskaly_system_id

    def test_failed_run_resumes_from_persisted_ids(self) -> None:
        client = _FlakyFiskalyClient()
        service = FiskalySetupService(
            settings=Settings(fiskaly_api_key="master-key", fiskaly_api_secret="master-secret"),
            session_factory=self.SessionLocal,
            client_factory=lambda _settings: client,  # type: ignore[arg-type,return-value]
        )

        with self.assertRaises(ProvisioningError) as ctx:
            service.setup(partner_id="partner-1")
        self.assertEqual(ctx.exception.status_code, 502)
        self.assertEqual(self._stored_ids(), ("unit-1", "entity-1", None))

        client.calls.clear()
        client.system_error = None
        result = service.setup(partner_id="partner-1")

        self.assertEqual(result["system_id"], "system-1")
        self.assertNotIn("create_asset", client.calls)
        self.assertNotIn("create_entity", client.calls)
        self.assertEqual(self._stored_ids(), ("unit-1", "entity-1", "system-1"))

        again = service.setup(partner_id="partner-1")
        self.assertTrue(again["already_configured"])
