from __future__ import annotations

from contextlib import contextmanager
from typing import Any
from unittest import TestCase
from unittest.mock import patch

from s2p_control.core.config import Settings
from s2p_control.core.errors import (
    BrokerPublishError,
    BrokerTimeoutError,
    CommandForbiddenError,
    CommandValidationError,
)
from s2p_control.core.security import CallerIdentity
from s2p_control.services.station_control import (
    StationCommand,
    StationControlService,
    build_command_publication,
    ensure_command_allowed,
    parse_command,
    validate_station_id,
)


class _RecordingPublisher:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.published: list[tuple[str, str]] = []

    def publish(self, topic: str, payload: str) -> None:
        if self.error is not None:
            raise self.error
        self.published.append((topic, payload))


@contextmanager
def _session_context():
    yield object()


class _SessionFactory:
    def __call__(self):
        return _session_context()


def _build_service(publisher: _RecordingPublisher) -> StationControlService:
    return StationControlService(
        settings=Settings(mqtt_host="broker.example.com"),
        session_factory=_SessionFactory(),  # type: ignore[arg-type]
        publisher_factory=lambda _settings: publisher,
    )


class CommandPublicationTests(TestCase):
    def test_pulse_maps_minutes_to_milliseconds(self) -> None:
        publication = build_command_publication("shower2pet", "ST-001", StationCommand.PULSE, 1)
        self.assertEqual(publication.topic, "shower2pet/ST-001/relay1/pulse")
        self.assertEqual(publication.payload, "60000")

    def test_pulse_rounds_half_up(self) -> None:
        self.assertEqual(build_command_publication("ns", "a", StationCommand.PULSE, 1.5).payload, "90000")
        self.assertEqual(build_command_publication("ns", "a", StationCommand.PULSE, 0.0125).payload, "750")
        self.assertEqual(build_command_publication("ns", "a", StationCommand.PULSE, 120).payload, "7200000")

    def test_on_and_off_use_command_topic(self) -> None:
        on = build_command_publication("shower2pet", "ST_2", StationCommand.ON)
        off = build_command_publication("shower2pet", "ST_2", StationCommand.OFF)
        self.assertEqual(on.topic, "shower2pet/ST_2/relay1/command")
        self.assertEqual(on.payload, "1")
        self.assertEqual(off.topic, "shower2pet/ST_2/relay1/command")
        self.assertEqual(off.payload, "0")

    def test_pulse_rejects_missing_or_out_of_range_duration(self) -> None:
        for duration in (None, 0, -1, 120.5, float("nan"), float("inf"), True, "5"):
            with self.subTest(duration=duration):
                with self.assertRaises(CommandValidationError) as ctx:
                    build_command_publication("ns", "a", StationCommand.PULSE, duration)
                self.assertEqual(ctx.exception.status_code, 400)

    def test_on_ignores_duration(self) -> None:
        publication = build_command_publication("ns", "a", StationCommand.ON, 999)
        self.assertEqual(publication.payload, "1")


class InputValidationTests(TestCase):
    def test_station_id_pattern(self) -> None:
        self.assertEqual(validate_station_id("Station_01-a"), "Station_01-a")
        self.assertEqual(validate_station_id("x" * 64), "x" * 64)
        for bad in ("", "x" * 65, "bad id", "st/01", "st#1", None, 12):
            with self.subTest(station_id=bad):
                with self.assertRaises(CommandValidationError) as ctx:
                    validate_station_id(bad)
                self.assertEqual(ctx.exception.error, "Invalid or missing station_id")

    def test_parse_command_is_case_sensitive(self) -> None:
        self.assertIs(parse_command("PULSE"), StationCommand.PULSE)
        for bad in ("pulse", "RESET", None, 1):
            with self.subTest(command=bad):
                with self.assertRaises(CommandValidationError) as ctx:
                    parse_command(bad)
                self.assertEqual(ctx.exception.error, "Invalid command. Must be one of: PULSE, ON, OFF")


class RoleGatingTests(TestCase):
    def test_user_may_only_pulse(self) -> None:
        ensure_command_allowed("user", StationCommand.PULSE)
        for command in (StationCommand.ON, StationCommand.OFF):
            with self.subTest(command=command):
                with self.assertRaises(CommandForbiddenError) as ctx:
                    ensure_command_allowed("user", command)
                self.assertEqual(ctx.exception.status_code, 403)
                self.assertEqual(ctx.exception.error, "Forbidden: users can only use PULSE command")

    def test_elevated_roles_may_issue_any_command(self) -> None:
        for role in ("admin", "partner", "manager"):
            for command in StationCommand:
                ensure_command_allowed(role, command)

    def test_unknown_role_is_rejected(self) -> None:
        with self.assertRaises(CommandForbiddenError):
            ensure_command_allowed("guest", StationCommand.PULSE)


class StationControlServiceTests(TestCase):
    def test_dispatch_publishes_and_records_gate_command(self) -> None:
        publisher = _RecordingPublisher()
        service = _build_service(publisher)
        recorded: list[dict[str, Any]] = []

        with patch(
            "s2p_control.services.station_control.create_gate_command",
            side_effect=lambda _db, **kwargs: recorded.append(kwargs),
        ):
            result = service.dispatch(
                caller=CallerIdentity(user_id="user-1", role="user"),
                station_id="ST-001",
                command="PULSE",
                duration_minutes=5,
            )

        self.assertEqual(
            result,
            {"success": True, "topic": "shower2pet/ST-001/relay1/pulse", "payload": "300000"},
        )
        self.assertEqual(publisher.published, [("shower2pet/ST-001/relay1/pulse", "300000")])
        self.assertEqual(recorded, [{"station_id": "ST-001", "command": "PULSE", "user_id": "user-1"}])

    def test_forbidden_command_never_reaches_broker(self) -> None:
        publisher = _RecordingPublisher()
        service = _build_service(publisher)

        with patch("s2p_control.services.station_control.create_gate_command") as create_mock:
            with self.assertRaises(CommandForbiddenError):
                service.dispatch(
                    caller=CallerIdentity(user_id="user-1", role="user"),
                    station_id="ST-001",
                    command="OFF",
                )

        self.assertEqual(publisher.published, [])
        create_mock.assert_not_called()

    def test_publish_failure_writes_no_audit_row(self) -> None:
        for error in (
            BrokerTimeoutError("MQTT publish timed out"),
            BrokerPublishError("MQTT publish failed", details="connection refused"),
        ):
            with self.subTest(error=type(error).__name__):
                service = _build_service(_RecordingPublisher(error=error))
                with patch("s2p_control.services.station_control.create_gate_command") as create_mock:
                    with self.assertRaises(BrokerPublishError) as ctx:
                        service.dispatch(
                            caller=CallerIdentity(user_id="admin-1", role="admin"),
                            station_id="ST-001",
                            command="ON",
                        )
                create_mock.assert_not_called()
                self.assertIs(ctx.exception, error)

    def test_timeout_maps_to_504(self) -> None:
        self.assertEqual(BrokerTimeoutError("MQTT publish timed out").status_code, 504)
        self.assertEqual(BrokerPublishError("MQTT publish failed").status_code, 500)
