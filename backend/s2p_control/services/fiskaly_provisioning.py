"""Resumable state machine for fiscal tenant provisioning.

Progress is persisted as three nullable IDs on the partner profile (unit,
entity, system). This module turns those IDs into an explicit state, decides
which step runs next and folds each step's output back into the state. The state
functions do no I/O; the bearer elevation strategies at the bottom wrap the
API calls used to act on behalf of a unit.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Union

from s2p_control.services.fiskaly_client import FiskalyApiError, FiskalyClient

logger = logging.getLogger("s2p_control.fiskaly_provisioning")


class ProvisioningStep(str, Enum):
    CREATE_UNIT = "create_unit"
    CREATE_ENTITY = "create_entity"
    COMMISSION_ENTITY = "commission_entity"
    CREATE_SYSTEM = "create_system"
    DONE = "done"


@dataclass(frozen=True)
class Unprovisioned:
    pass


@dataclass(frozen=True)
class UnitCreated:
    unit_id: str | None


@dataclass(frozen=True)
class EntityCreated:
    unit_id: str | None
    entity_id: str


@dataclass(frozen=True)
class Commissioned:
    unit_id: str | None
    entity_id: str


@dataclass(frozen=True)
class Provisioned:
    unit_id: str | None
    entity_id: str | None
    system_id: str


ProvisioningState = Union[Unprovisioned, UnitCreated, EntityCreated, Commissioned, Provisioned]


@dataclass(frozen=True)
class FiskalyIds:
    unit_id: str | None = None
    entity_id: str | None = None
    system_id: str | None = None


class ProvisioningStateError(ValueError):
    pass


def derive_state(
    ids: FiskalyIds,
    *,
    force: bool = False,
    entity_id_override: str | None = None,
) -> ProvisioningState:
    if ids.system_id and not force and not entity_id_override:
        return Provisioned(unit_id=ids.unit_id, entity_id=ids.entity_id, system_id=ids.system_id)
    if entity_id_override:
        return Commissioned(unit_id=ids.unit_id, entity_id=entity_id_override)
    if force:
        # reconfiguration keeps the unit but rebuilds entity and system
        return UnitCreated(unit_id=ids.unit_id) if ids.unit_id else Unprovisioned()
    if ids.entity_id:
        return EntityCreated(unit_id=ids.unit_id, entity_id=ids.entity_id)
    if ids.unit_id:
        return UnitCreated(unit_id=ids.unit_id)
    return Unprovisioned()


def next_step(state: ProvisioningState) -> ProvisioningStep:
    if isinstance(state, Unprovisioned):
        return ProvisioningStep.CREATE_UNIT
    if isinstance(state, UnitCreated):
        return ProvisioningStep.CREATE_ENTITY
    if isinstance(state, EntityCreated):
        return ProvisioningStep.COMMISSION_ENTITY
    if isinstance(state, Commissioned):
        return ProvisioningStep.CREATE_SYSTEM
    if isinstance(state, Provisioned):
        return ProvisioningStep.DONE
    raise ProvisioningStateError(f"unknown provisioning state: {state!r}")


def advance(state: ProvisioningState, produced_id: str | None = None) -> ProvisioningState:
    """Apply the output of ``next_step(state)`` and return the following state.

    Unit creation may legitimately produce nothing (unsupported environment);
    entity and system creation must produce an ID.
    """
    if isinstance(state, Unprovisioned):
        return UnitCreated(unit_id=produced_id)
    if isinstance(state, UnitCreated):
        if not produced_id:
            raise ProvisioningStateError("entity creation did not produce an entity_id")
        return EntityCreated(unit_id=state.unit_id, entity_id=produced_id)
    if isinstance(state, EntityCreated):
        return Commissioned(unit_id=state.unit_id, entity_id=state.entity_id)
    if isinstance(state, Commissioned):
        if not produced_id:
            raise ProvisioningStateError("system creation did not produce a system_id")
        return Provisioned(unit_id=state.unit_id, entity_id=state.entity_id, system_id=produced_id)
    raise ProvisioningStateError(f"cannot advance from terminal state {state!r}")


def state_ids(state: ProvisioningState) -> FiskalyIds:
    return FiskalyIds(
        unit_id=getattr(state, "unit_id", None),
        entity_id=getattr(state, "entity_id", None),
        system_id=getattr(state, "system_id", None),
    )


@dataclass(frozen=True)
class BearerGranted:
    bearer: str
    source: str


@dataclass(frozen=True)
class StrategySkipped:
    reason: str


@dataclass(frozen=True)
class StrategyFailed:
    reason: str


ElevationResult = Union[BearerGranted, StrategySkipped, StrategyFailed]
ElevationStrategy = Callable[[], ElevationResult]


@dataclass(frozen=True)
class ElevationOutcome:
    bearer: str
    source: str
    attempts: tuple[tuple[str, ElevationResult], ...]

    @property
    def elevated(self) -> bool:
        return self.source != "tenant"


def subject_token_strategy(
    client: FiskalyClient,
    *,
    tenant_bearer: str,
    unit_id: str,
    subject_name: str,
) -> ElevationStrategy:
    def _run() -> ElevationResult:
        try:
            subject = client.create_subject(tenant_bearer, name=subject_name, scope_id=unit_id)
        except FiskalyApiError as exc:
            if exc.is_conflict or exc.is_unsupported:
                return StrategySkipped(reason=f"subject creation {exc.status_code}: {exc.detail}")
            return StrategyFailed(reason=f"subject creation {exc.status_code}: {exc.detail}")

        key, secret = _subject_credentials(subject)
        if not key or not secret:
            return StrategyFailed(reason="subject response did not contain API credentials")
        try:
            bearer = client.create_token(key=key, secret=secret)
        except FiskalyApiError as exc:
            return StrategyFailed(reason=f"subject token exchange {exc.status_code}: {exc.detail}")
        return BearerGranted(bearer=bearer, source="subject")

    return _run


def direct_scoped_token_strategy(
    client: FiskalyClient,
    *,
    api_key: str,
    api_secret: str,
    unit_id: str,
) -> ElevationStrategy:
    def _run() -> ElevationResult:
        try:
            bearer = client.create_token(key=api_key, secret=api_secret, scope_id=unit_id)
        except FiskalyApiError as exc:
            if exc.is_unsupported:
                return StrategySkipped(reason=f"scoped token {exc.status_code}: {exc.detail}")
            return StrategyFailed(reason=f"scoped token {exc.status_code}: {exc.detail}")
        return BearerGranted(bearer=bearer, source="scoped_token")

    return _run


def elevate_bearer(strategies: Sequence[ElevationStrategy], *, fallback_bearer: str) -> ElevationOutcome:
    attempts: list[tuple[str, ElevationResult]] = []
    for strategy in strategies:
        name = getattr(strategy, "__qualname__", repr(strategy)).split(".")[0]
        result = strategy()
        attempts.append((name, result))
        if isinstance(result, BearerGranted):
            logger.info("unit-scoped bearer obtained source=%s", result.source)
            return ElevationOutcome(bearer=result.bearer, source=result.source, attempts=tuple(attempts))
        logger.info("bearer elevation strategy did not grant strategy=%s result=%s", name, result)

    logger.warning("falling back to tenant bearer after %s elevation attempt(s)", len(attempts))
    return ElevationOutcome(bearer=fallback_bearer, source="tenant", attempts=tuple(attempts))


def _subject_credentials(subject: dict) -> tuple[str | None, str | None]:
    content = subject.get("content") if isinstance(subject.get("content"), dict) else subject
    credentials = content.get("credentials") if isinstance(content.get("credentials"), dict) else content
    key = credentials.get("key") or credentials.get("api_key")
    secret = credentials.get("secret") or credentials.get("api_secret")
    if not isinstance(key, str) or not isinstance(secret, str):
        return None, None
    return key, secret
