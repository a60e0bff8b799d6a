from __future__ import annotations

import json
import re
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode, urljoin
from urllib.request import Request, urlopen
from uuid import uuid4

_UUID_RE = re.compile(r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}")


class FiskalyApiError(RuntimeError):
    def __init__(self, *, status_code: int, detail: str, body: Any = None):
        self.status_code = status_code
        self.detail = detail
        self.body = body
        super().__init__(f"Fiskaly API error {status_code}: {detail}")

    @property
    def is_conflict(self) -> bool:
        return self.status_code == 409

    @property
    def is_unsupported(self) -> bool:
        if self.status_code in (404, 405, 501):
            return True
        code = _error_code(self.body)
        return code is not None and ("NOT_SUPPORTED" in code or "UNSUPPORTED" in code)

    @property
    def error_code(self) -> str | None:
        return _error_code(self.body)

    def payload(self) -> Any:
        return self.body if self.body is not None else self.detail


class FiskalyClient:
    """Thin JSON client for the fiscal signing API.

    Every request sends ``X-Api-Version``. Mutating requests carry a fresh
    ``X-Idempotency-Key`` so a transport-level retry cannot create a second
    resource. ``scope_id`` is forwarded as ``X-Scope-Identifier`` to act on
    behalf of a unit asset.
    """

    def __init__(self, *, base_url: str, api_version: str, timeout_seconds: float = 20.0):
        self._base_url = base_url.rstrip("/") + "/"
        self._api_version = api_version
        self._timeout_seconds = timeout_seconds

    def create_token(self, *, key: str, secret: str, scope_id: str | None = None) -> str:
        payload = self._request_json(
            "POST",
            "tokens",
            payload={"content": {"type": "API_KEY", "key": key, "secret": secret}},
            scope_id=scope_id,
        )
        bearer = _dig(payload, "content", "authentication", "bearer") or _dig(payload, "access_token")
        if not isinstance(bearer, str) or bearer == "":
            raise FiskalyApiError(status_code=502, detail="No bearer token received", body=payload)
        return bearer

    def create_asset(
        self,
        bearer: str,
        *,
        name: str,
        asset_type: str = "UNIT",
        metadata: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"content": {"type": asset_type, "name": name}}
        if metadata:
            body["metadata"] = metadata
        return self._request_object("POST", "assets", bearer=bearer, payload=body)

    def create_subject(self, bearer: str, *, name: str, scope_id: str) -> dict[str, Any]:
        return self._request_object(
            "POST",
            "subjects",
            bearer=bearer,
            payload={"content": {"type": "API_KEY", "name": name}},
            scope_id=scope_id,
        )

    def create_entity(self, bearer: str, *, payload: dict[str, Any], scope_id: str | None = None) -> dict[str, Any]:
        return self._request_object("POST", "entities", bearer=bearer, payload=payload, scope_id=scope_id)

    def list_entities(self, bearer: str, *, scope_id: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        payload = self._request_json(
            "GET",
            "entities",
            bearer=bearer,
            query={"limit": limit},
            scope_id=scope_id,
        )
        return extract_results(payload)

    def update_entity_state(
        self,
        bearer: str,
        *,
        entity_id: str,
        state: str,
        scope_id: str | None = None,
    ) -> dict[str, Any]:
        return self._request_object(
            "PATCH",
            f"entities/{entity_id}",
            bearer=bearer,
            payload={"content": {"state": state}},
            scope_id=scope_id,
        )

    def create_system(self, bearer: str, *, payload: dict[str, Any]) -> dict[str, Any]:
        return self._request_object("POST", "systems", bearer=bearer, payload=payload)

    def list_systems(self, bearer: str, *, limit: int = 100) -> list[dict[str, Any]]:
        payload = self._request_json("GET", "systems", bearer=bearer, query={"limit": limit})
        return extract_results(payload)

    def _request_object(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        result = self._request_json(method, path, **kwargs)
        if isinstance(result, dict):
            return result
        raise FiskalyApiError(status_code=502, detail=f"Fiskaly {method} {path} returned non-object payload", body=result)

    def _request_json(
        self,
        method: str,
        path: str,
        *,
        bearer: str | None = None,
        query: dict[str, Any] | None = None,
        payload: Any | None = None,
        scope_id: str | None = None,
    ) -> Any:
        url = urljoin(self._base_url, path.lstrip("/"))
        if query:
            filtered = {k: v for k, v in query.items() if v is not None}
            if filtered:
                url = f"{url}?{urlencode(filtered, doseq=True)}"

        headers: dict[str, str] = {
            "Accept": "application/json",
            "X-Api-Version": self._api_version,
        }
        data_bytes: bytes | None = None
        if payload is not None:
            data_bytes = json.dumps(payload).encode("utf-8")
            headers["Content-Type"] = "application/json"
        if method.upper() in ("POST", "PUT", "PATCH"):
            headers["X-Idempotency-Key"] = str(uuid4())
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        if scope_id:
            headers["X-Scope-Identifier"] = scope_id

        request = Request(url=url, method=method.upper(), data=data_bytes, headers=headers)
        try:
            with urlopen(request, timeout=self._timeout_seconds) as response:
                body = response.read().decode("utf-8", errors="replace")
                return _parse_body(body)
        except HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            parsed = _parse_body(detail)
            raise FiskalyApiError(
                status_code=exc.code,
                detail=_error_message(parsed) or detail or exc.reason or "Unexpected Fiskaly response",
                body=parsed if isinstance(parsed, (dict, list)) else None,
            )
        except TimeoutError as exc:
            raise FiskalyApiError(status_code=504, detail=str(exc) or "Fiskaly request timed out")
        except URLError as exc:
            if isinstance(exc.reason, TimeoutError):
                raise FiskalyApiError(status_code=504, detail="Fiskaly request timed out")
            raise FiskalyApiError(status_code=503, detail=str(exc.reason))


def extract_resource_id(payload: Any) -> str | None:
    for path in (("content", "id"), ("id",), ("data", "id"), ("data", "content", "id")):
        value = _dig(payload, *path)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def extract_results(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, list):
        return [item for item in payload if isinstance(item, dict)]
    if isinstance(payload, dict):
        for key in ("results", "data", "items"):
            value = payload.get(key)
            if isinstance(value, list):
                return [item for item in value if isinstance(item, dict)]
    return []


def extract_conflict_id(error: FiskalyApiError) -> str | None:
    """Best-effort lookup of the already-existing resource ID in a 409 body."""
    found = extract_resource_id(error.body)
    if found:
        return found
    for path in (("error", "id"), ("details", "id"), ("existing_id",), ("content", "existing", "id")):
        value = _dig(error.body, *path)
        if isinstance(value, str) and value.strip():
            return value.strip()
    match = _UUID_RE.search(error.detail or "")
    return match.group(0) if match else None


def extract_metadata(item: dict[str, Any]) -> dict[str, Any]:
    metadata = item.get("metadata")
    if isinstance(metadata, dict):
        return metadata
    content = item.get("content")
    if isinstance(content, dict) and isinstance(content.get("metadata"), dict):
        return content["metadata"]
    return {}


def _dig(payload: Any, *path: str) -> Any:
    current = payload
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def _parse_body(body: str) -> Any:
    if body.strip() == "":
        return {}
    try:
        return json.loads(body)
    except json.JSONDecodeError:
        return body


def _error_message(payload: Any) -> str | None:
    for path in (("message",), ("error", "message"), ("error",), ("detail",)):
        value = _dig(payload, *path)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _error_code(payload: Any) -> str | None:
    for path in (("code",), ("error", "code"), ("error_code",)):
        value = _dig(payload, *path)
        if isinstance(value, str) and value.strip():
            return value.strip().upper()
    return None
