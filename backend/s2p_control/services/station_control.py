from __future__ import annotations

import logging
import math
import re
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from sqlalchemy.orm import sessionmaker

from s2p_control.core.config import Settings
from s2p_control.core.errors import CommandForbiddenError, CommandValidationError
from s2p_control.core.security import (
    ROLE_ADMIN,
    ROLE_MANAGER,
    ROLE_PARTNER,
    ROLE_USER,
    CallerIdentity,
)
from s2p_control.repositories.gate_commands import create_gate_command
from s2p_control.services.mqtt_publisher import CommandPublisher, build_command_publisher

STATION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
MAX_PULSE_MINUTES = 120


class StationCommand(str, Enum):
    PULSE = "PULSE"
    ON = "ON"
    OFF = "OFF"


ELEVATED_ROLES: frozenset[str] = frozenset({ROLE_ADMIN, ROLE_PARTNER, ROLE_MANAGER})
ALLOWED_COMMANDS_BY_ROLE: dict[str, frozenset[StationCommand]] = {
    ROLE_USER: frozenset({StationCommand.PULSE}),
    **{role: frozenset(StationCommand) for role in ELEVATED_ROLES},
}


@dataclass(frozen=True)
class CommandPublication:
    topic: str
    payload: str


def validate_station_id(station_id: Any) -> str:
    if not isinstance(station_id, str) or not STATION_ID_PATTERN.fullmatch(station_id):
        raise CommandValidationError("Invalid or missing station_id")
    return station_id


def parse_command(command: Any) -> StationCommand:
    valid = ", ".join(item.value for item in StationCommand)
    if not isinstance(command, str):
        raise CommandValidationError(f"Invalid command. Must be one of: {valid}")
    try:
        return StationCommand(command)
    except ValueError as exc:
        raise CommandValidationError(f"Invalid command. Must be one of: {valid}") from exc


def validate_duration_minutes(duration_minutes: Any) -> float:
    if (
        isinstance(duration_minutes, bool)
        or not isinstance(duration_minutes, (int, float))
        or not math.isfinite(duration_minutes)
        or duration_minutes <= 0
        or duration_minutes > MAX_PULSE_MINUTES
    ):
        raise CommandValidationError(
            f"duration_minutes is required for PULSE (0-{MAX_PULSE_MINUTES}]"
        )
    return float(duration_minutes)


def ensure_command_allowed(role: str, command: StationCommand) -> None:
    allowed = ALLOWED_COMMANDS_BY_ROLE.get(role)
    if allowed is None:
        raise CommandForbiddenError(f"Forbidden: role '{role}' cannot control stations")
    if command not in allowed:
        raise CommandForbiddenError("Forbidden: users can only use PULSE command")


def build_command_publication(
    namespace: str,
    station_id: str,
    command: StationCommand,
    duration_minutes: float | None = None,
) -> CommandPublication:
    base = f"{namespace}/{station_id}/relay1"
    if command is StationCommand.PULSE:
        minutes = validate_duration_minutes(duration_minutes)
        # half-up rounding: 0.0125 min -> "750"
        duration_ms = int(math.floor(minutes * 60_000 + 0.5))
        return CommandPublication(topic=f"{base}/pulse", payload=str(duration_ms))
    if command is StationCommand.ON:
        return CommandPublication(topic=f"{base}/command", payload="1")
    return CommandPublication(topic=f"{base}/command", payload="0")


class StationControlService:
    def __init__(
        self,
        *,
        settings: Settings,
        session_factory: sessionmaker,
        publisher_factory: Callable[[Settings], CommandPublisher] = build_command_publisher,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._publisher_factory = publisher_factory
        self._logger = logging.getLogger("s2p_control.station_control")

    def dispatch(
        self,
        *,
        caller: CallerIdentity,
        station_id: Any,
        command: Any,
        duration_minutes: Any = None,
    ) -> dict[str, Any]:
        clean_station_id = validate_station_id(station_id)
        parsed_command = parse_command(command)
        ensure_command_allowed(caller.role, parsed_command)
        publication = build_command_publication(
            self._settings.mqtt_topic_namespace,
            clean_station_id,
            parsed_command,
            duration_minutes,
        )

        self._logger.info(
            "dispatching station command station=%s command=%s topic=%s payload=%s user=%s",
            clean_station_id,
            parsed_command.value,
            publication.topic,
            publication.payload,
            caller.user_id,
        )
        publisher = self._publisher_factory(self._settings)
        publisher.publish(publication.topic, publication.payload)

        with self._session_factory() as db:
            create_gate_command(
                db,
                station_id=clean_station_id,
                command=parsed_command.value,
                user_id=caller.user_id,
            )

        return {
            "success": True,
            "topic": publication.topic,
            "payload": publication.payload,
        }
