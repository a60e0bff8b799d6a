from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from fastapi import status
from sqlalchemy.orm import Session, sessionmaker

from s2p_control.core.config import Settings
from s2p_control.core.errors import ProvisioningError
from s2p_control.db.models import Profile
from s2p_control.repositories.profiles import (
    FiskalyIdColumn,
    get_profile,
    update_profile_fiskaly_id,
)
from s2p_control.services.fiskaly_client import (
    FiskalyApiError,
    FiskalyClient,
    extract_conflict_id,
    extract_metadata,
    extract_resource_id,
)
from s2p_control.services.fiskaly_provisioning import (
    Commissioned,
    ElevationOutcome,
    EntityCreated,
    FiskalyIds,
    ProvisioningState,
    ProvisioningStep,
    UnitCreated,
    advance,
    derive_state,
    direct_scoped_token_strategy,
    elevate_bearer,
    next_step,
    state_ids,
    subject_token_strategy,
)

REQUIRED_FISCAL_FIELDS: tuple[tuple[str, str], ...] = (
    ("legal_name", "Ragione Sociale"),
    ("vat_number", "Partita IVA"),
    ("address_street", "Via/Indirizzo"),
    ("zip_code", "CAP"),
    ("city", "Città"),
    ("province", "Provincia"),
)

ENTITY_STATE_COMMISSIONED = "COMMISSIONED"
_IDEMPOTENT_TRANSITION_MARKERS: tuple[str, ...] = ("ALREADY", "INVALID_TRANSITION", "STATE_TRANSITION")


@dataclass(frozen=True)
class PartnerFiscalProfile:
    id: str
    legal_name: str | None
    vat_number: str | None
    fiscal_code: str | None
    address_street: str | None
    address_number: str | None
    zip_code: str | None
    city: str | None
    province: str | None
    ids: FiskalyIds

    @classmethod
    def from_profile(cls, profile: Profile) -> "PartnerFiscalProfile":
        return cls(
            id=str(profile.id),
            legal_name=profile.legal_name,
            vat_number=profile.vat_number,
            fiscal_code=profile.fiscal_code,
            address_street=profile.address_street,
            address_number=profile.address_number,
            zip_code=profile.zip_code,
            city=profile.city,
            province=profile.province,
            ids=FiskalyIds(
                unit_id=profile.fiskaly_unit_id,
                entity_id=profile.fiskaly_entity_id,
                system_id=profile.fiskaly_system_id,
            ),
        )


def missing_fiscal_fields(partner: PartnerFiscalProfile) -> list[str]:
    missing: list[str] = []
    for attribute, label in REQUIRED_FISCAL_FIELDS:
        value = getattr(partner, attribute)
        if not isinstance(value, str) or value.strip() == "":
            missing.append(label)
    return missing


def build_entity_payload(partner: PartnerFiscalProfile) -> dict[str, Any]:
    legal_name = _clean(partner.legal_name)
    vat_number = _clean(partner.vat_number)
    address: dict[str, Any] = {
        "street": _clean(partner.address_street),
        "postal_code": _clean(partner.zip_code),
        "city": _clean(partner.city),
        "province": _clean(partner.province).upper(),
        "country_code": "IT",
    }
    number = _clean(partner.address_number)
    if number:
        address["number"] = number
    return {
        "content": {
            "type": "COMPANY",
            "name": legal_name,
            "trade_name": legal_name,
            "address": address,
            "tax_id": {
                "vat_number": vat_number,
                "fiscal_code": _clean(partner.fiscal_code) or vat_number,
            },
        },
        "metadata": {"partner_id": partner.id},
    }


def build_system_payload(partner: PartnerFiscalProfile, *, entity_id: str, settings: Settings) -> dict[str, Any]:
    return {
        "content": {
            "type": "FISCAL_DEVICE",
            "entity": {"id": entity_id},
            "software": {
                "name": settings.fiskaly_software_name,
                "version": settings.fiskaly_software_version,
            },
            "producer": {"number": settings.fiskaly_producer_number},
        },
        "metadata": {
            "partner_id": partner.id,
            "software": f"{settings.fiskaly_software_name} {settings.fiskaly_software_version}",
        },
    }


def default_client_factory(settings: Settings) -> FiskalyClient:
    return FiskalyClient(
        base_url=settings.fiskaly_base_url,
        api_version=settings.fiskaly_api_version,
        timeout_seconds=settings.fiskaly_http_timeout_seconds,
    )


@dataclass
class _ProvisioningRun:
    db: Session
    client: FiskalyClient | None
    partner: PartnerFiscalProfile
    stored: dict[str, str | None]
    tenant_bearer: str | None = None
    elevation: ElevationOutcome | None = None
    elevation_unit_id: str | None = None
    steps: list[str] = field(default_factory=list)


class FiskalySetupService:
    def __init__(
        self,
        *,
        settings: Settings,
        session_factory: sessionmaker,
        client_factory: Callable[[Settings], FiskalyClient] = default_client_factory,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._client_factory = client_factory
        self._logger = logging.getLogger("s2p_control.fiskaly_setup")

    def setup(
        self,
        *,
        partner_id: str | None,
        force: bool = False,
        entity_id: str | None = None,
        system_id: str | None = None,
    ) -> dict[str, Any]:
        clean_partner_id = _clean(partner_id)
        if clean_partner_id == "":
            raise ProvisioningError("partner_id is required", status_code=status.HTTP_400_BAD_REQUEST)

        with self._session_factory() as db:
            profile = get_profile(db, clean_partner_id)
            if profile is None:
                raise ProvisioningError("Partner not found", status_code=status.HTTP_404_NOT_FOUND)
            partner = PartnerFiscalProfile.from_profile(profile)
            # no transaction stays open across fiscal API calls
            db.rollback()
            run = _ProvisioningRun(
                db=db,
                client=None,
                partner=partner,
                stored={
                    "fiskaly_unit_id": partner.ids.unit_id,
                    "fiskaly_entity_id": partner.ids.entity_id,
                    "fiskaly_system_id": partner.ids.system_id,
                },
            )

            manual_system_id = _clean(system_id)
            if manual_system_id:
                self._persist(run, "fiskaly_system_id", manual_system_id)
                self._logger.info(
                    "fiskaly system id set manually partner=%s system_id=%s",
                    partner.id,
                    manual_system_id,
                )
                return {
                    "success": True,
                    "system_id": manual_system_id,
                    "message": "Fiscal system ID saved manually",
                }

            manual_entity_id = _clean(entity_id) or None
            if partner.ids.system_id and not force and manual_entity_id is None:
                return {
                    "success": True,
                    "already_configured": True,
                    "system_id": partner.ids.system_id,
                    "message": "Fiscal system already configured. Use force=true to reconfigure.",
                }

            missing = missing_fiscal_fields(partner)
            if missing:
                raise ProvisioningError(
                    f"Missing required fiscal data on partner profile: {', '.join(missing)}",
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    missing_fields=missing,
                )

            if not self._settings.fiskaly_api_key or not self._settings.fiskaly_api_secret:
                raise ProvisioningError(
                    "Fiscal API credentials not configured",
                    status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                )

            run.client = self._client_factory(self._settings)
            state = derive_state(partner.ids, force=force, entity_id_override=manual_entity_id)
            if manual_entity_id is not None:
                self._persist(run, "fiskaly_entity_id", manual_entity_id, state=state)

            self._logger.info(
                "fiskaly setup starting partner=%s force=%s state=%s",
                partner.id,
                force,
                type(state).__name__,
            )
            state = self._drive(run, state)

        ids = state_ids(state)
        self._logger.info(
            "fiskaly setup completed partner=%s unit_id=%s entity_id=%s system_id=%s steps=%s",
            partner.id,
            ids.unit_id,
            ids.entity_id,
            ids.system_id,
            ",".join(run.steps) or "-",
        )
        return {
            "success": True,
            "system_id": ids.system_id,
            "entity_id": ids.entity_id,
            "unit_id": ids.unit_id,
            "message": "Fiscal configuration completed successfully",
        }

    def _drive(self, run: _ProvisioningRun, state: ProvisioningState) -> ProvisioningState:
        handlers: dict[ProvisioningStep, Callable[[_ProvisioningRun, Any], str | None]] = {
            ProvisioningStep.CREATE_UNIT: self._create_unit,
            ProvisioningStep.CREATE_ENTITY: self._create_entity,
            ProvisioningStep.COMMISSION_ENTITY: self._commission_entity,
            ProvisioningStep.CREATE_SYSTEM: self._create_system,
        }
        columns: dict[ProvisioningStep, FiskalyIdColumn] = {
            ProvisioningStep.CREATE_UNIT: "fiskaly_unit_id",
            ProvisioningStep.CREATE_ENTITY: "fiskaly_entity_id",
            ProvisioningStep.CREATE_SYSTEM: "fiskaly_system_id",
        }

        step = next_step(state)
        while step is not ProvisioningStep.DONE:
            produced = handlers[step](run, state)
            state = advance(state, produced)
            run.steps.append(step.value)
            column = columns.get(step)
            if column is not None and produced:
                self._persist(run, column, produced, state=state)
            step = next_step(state)
        return state

    def _tenant_bearer(self, run: _ProvisioningRun) -> str:
        if run.tenant_bearer is None:
            try:
                run.tenant_bearer = run.client.create_token(
                    key=self._settings.fiskaly_api_key or "",
                    secret=self._settings.fiskaly_api_secret or "",
                )
            except FiskalyApiError as exc:
                raise _upstream_error("Fiscal API authentication failed", step="authenticate", exc=exc) from exc
            self._logger.info("fiskaly tenant bearer obtained partner=%s", run.partner.id)
        return run.tenant_bearer

    def _unit_bearer(self, run: _ProvisioningRun, unit_id: str | None) -> ElevationOutcome:
        tenant_bearer = self._tenant_bearer(run)
        if unit_id is None:
            return ElevationOutcome(bearer=tenant_bearer, source="tenant", attempts=())
        if run.elevation is None or run.elevation_unit_id != unit_id:
            run.elevation = elevate_bearer(
                [
                    subject_token_strategy(
                        run.client,
                        tenant_bearer=tenant_bearer,
                        unit_id=unit_id,
                        subject_name=f"s2p-unit-{run.partner.id}",
                    ),
                    direct_scoped_token_strategy(
                        run.client,
                        api_key=self._settings.fiskaly_api_key or "",
                        api_secret=self._settings.fiskaly_api_secret or "",
                        unit_id=unit_id,
                    ),
                ],
                fallback_bearer=tenant_bearer,
            )
            run.elevation_unit_id = unit_id
        return run.elevation

    def _create_unit(self, run: _ProvisioningRun, _state: ProvisioningState) -> str | None:
        bearer = self._tenant_bearer(run)
        try:
            asset = run.client.create_asset(
                bearer,
                name=_clean(run.partner.legal_name),
                asset_type="UNIT",
                metadata={"partner_id": run.partner.id},
            )
        except FiskalyApiError as exc:
            if exc.is_conflict:
                unit_id = extract_conflict_id(exc)
                self._logger.info(
                    "fiskaly unit already exists partner=%s unit_id=%s",
                    run.partner.id,
                    unit_id or "-",
                )
                return unit_id
            if exc.is_unsupported:
                self._logger.warning(
                    "fiskaly unit creation unsupported partner=%s status=%s, continuing without unit",
                    run.partner.id,
                    exc.status_code,
                )
                return None
            raise _upstream_error("Fiscal unit creation failed", step="create_unit", exc=exc) from exc

        unit_id = extract_resource_id(asset)
        if unit_id is None:
            raise ProvisioningError(
                "Fiscal unit creation returned no ID",
                step="create_unit",
                details=asset,
            )
        self._logger.info("fiskaly unit created partner=%s unit_id=%s", run.partner.id, unit_id)
        return unit_id

    def _create_entity(self, run: _ProvisioningRun, state: UnitCreated) -> str:
        elevation = self._unit_bearer(run, state.unit_id)
        scope_id = state.unit_id if not elevation.elevated else None
        try:
            entity = run.client.create_entity(
                elevation.bearer,
                payload=build_entity_payload(run.partner),
                scope_id=scope_id,
            )
        except FiskalyApiError as exc:
            if not exc.is_conflict:
                raise _upstream_error(
                    "Fiscal entity creation failed",
                    step="create_entity",
                    exc=exc,
                    unit_id=state.unit_id,
                    bearer_source=elevation.source,
                ) from exc
            entity_id = extract_conflict_id(exc) or self._find_existing_entity(run, elevation.bearer, scope_id)
            if entity_id is None:
                raise ProvisioningError(
                    "Fiscal entity already exists but its ID could not be resolved. "
                    "Retry passing the existing entity_id.",
                    status_code=status.HTTP_409_CONFLICT,
                    step="create_entity",
                    upstream_status=exc.status_code,
                    details=exc.payload(),
                    unit_id=state.unit_id,
                ) from exc
            self._logger.info("fiskaly entity already exists partner=%s entity_id=%s", run.partner.id, entity_id)
            return entity_id

        entity_id = extract_resource_id(entity)
        if entity_id is None:
            raise ProvisioningError(
                "Fiscal entity creation returned no ID",
                step="create_entity",
                details=entity,
                unit_id=state.unit_id,
            )
        self._logger.info("fiskaly entity created partner=%s entity_id=%s", run.partner.id, entity_id)
        return entity_id

    def _find_existing_entity(self, run: _ProvisioningRun, bearer: str, scope_id: str | None) -> str | None:
        try:
            entities = run.client.list_entities(bearer, scope_id=scope_id)
        except FiskalyApiError as exc:
            self._logger.warning(
                "fiskaly entity listing failed partner=%s status=%s detail=%s",
                run.partner.id,
                exc.status_code,
                exc.detail,
            )
            return None
        for item in entities:
            if extract_metadata(item).get("partner_id") == run.partner.id:
                return extract_resource_id(item)
        if entities:
            return extract_resource_id(entities[0])
        return None

    def _commission_entity(self, run: _ProvisioningRun, state: EntityCreated) -> None:
        elevation = self._unit_bearer(run, state.unit_id)
        try:
            run.client.update_entity_state(
                elevation.bearer,
                entity_id=state.entity_id,
                state=ENTITY_STATE_COMMISSIONED,
                scope_id=state.unit_id if not elevation.elevated else None,
            )
        except FiskalyApiError as exc:
            if _is_idempotent_transition(exc):
                self._logger.info(
                    "fiskaly entity already commissioned partner=%s entity_id=%s status=%s",
                    run.partner.id,
                    state.entity_id,
                    exc.status_code,
                )
                return None
            raise _upstream_error(
                "Fiscal entity commissioning failed",
                step="commission_entity",
                exc=exc,
                entity_id=state.entity_id,
                unit_id=state.unit_id,
                bearer_source=elevation.source,
            ) from exc
        self._logger.info("fiskaly entity commissioned partner=%s entity_id=%s", run.partner.id, state.entity_id)
        return None

    def _create_system(self, run: _ProvisioningRun, state: Commissioned) -> str:
        bearer = self._tenant_bearer(run)
        try:
            system = run.client.create_system(
                bearer,
                payload=build_system_payload(run.partner, entity_id=state.entity_id, settings=self._settings),
            )
        except FiskalyApiError as exc:
            if not exc.is_conflict:
                raise _upstream_error(
                    "Fiscal system creation failed",
                    step="create_system",
                    exc=exc,
                    entity_id=state.entity_id,
                    unit_id=state.unit_id,
                ) from exc
            system_id = extract_conflict_id(exc) or self._find_existing_system(run, bearer)
            if system_id is None:
                raise ProvisioningError(
                    "Fiscal system already exists but its ID could not be resolved. "
                    "Save the existing system_id manually.",
                    status_code=status.HTTP_409_CONFLICT,
                    step="create_system",
                    upstream_status=exc.status_code,
                    details=exc.payload(),
                    entity_id=state.entity_id,
                    unit_id=state.unit_id,
                ) from exc
            self._logger.info("fiskaly system already exists partner=%s system_id=%s", run.partner.id, system_id)
            return system_id

        system_id = extract_resource_id(system)
        if system_id is None:
            raise ProvisioningError(
                "Fiscal system creation returned no ID",
                step="create_system",
                details=system,
                entity_id=state.entity_id,
                unit_id=state.unit_id,
            )
        self._logger.info("fiskaly system created partner=%s system_id=%s", run.partner.id, system_id)
        return system_id

    def _find_existing_system(self, run: _ProvisioningRun, bearer: str) -> str | None:
        try:
            systems = run.client.list_systems(bearer)
        except FiskalyApiError as exc:
            self._logger.warning(
                "fiskaly system listing failed partner=%s status=%s detail=%s",
                run.partner.id,
                exc.status_code,
                exc.detail,
            )
            return None
        for item in systems:
            if extract_metadata(item).get("partner_id") == run.partner.id:
                return extract_resource_id(item)
        return None

    def _persist(
        self,
        run: _ProvisioningRun,
        column: FiskalyIdColumn,
        value: str,
        *,
        state: ProvisioningState | None = None,
    ) -> None:
        expected = run.stored.get(column)
        if expected == value:
            return
        updated = update_profile_fiskaly_id(
            run.db,
            profile_id=run.partner.id,
            column=column,
            value=value,
            expected=expected,
        )
        if not updated:
            ids = state_ids(state) if state is not None else run.partner.ids
            raise ProvisioningError(
                "Concurrent provisioning detected",
                status_code=status.HTTP_409_CONFLICT,
                step=column,
                unit_id=ids.unit_id,
                entity_id=ids.entity_id,
            )
        run.stored[column] = value
        self._logger.info("fiskaly progress persisted partner=%s %s=%s", run.partner.id, column, value)


def _is_idempotent_transition(exc: FiskalyApiError) -> bool:
    if exc.status_code == 409:
        return True
    if exc.status_code not in (400, 422):
        return False
    haystack = f"{exc.error_code or ''} {exc.detail or ''}".upper().replace(" ", "_")
    return any(marker in haystack for marker in _IDEMPOTENT_TRANSITION_MARKERS)


def _upstream_error(message: str, *, step: str, exc: FiskalyApiError, **extra: Any) -> ProvisioningError:
    return ProvisioningError(
        f"{message} ({exc.status_code})",
        status_code=status.HTTP_502_BAD_GATEWAY,
        step=step,
        upstream_status=exc.status_code,
        details=exc.payload(),
        **extra,
    )


def _clean(value: str | None) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip()
