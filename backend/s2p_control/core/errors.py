from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger("s2p_control.errors")


class ApiError(RuntimeError):
    """Error that maps onto a structured JSON response.

    Every response body carries an ``error`` message; extras such as
    ``details``, ``missing_fields`` or partially resolved IDs are rendered
    next to it when they are not ``None``.
    """

    default_status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, error: str, *, status_code: int | None = None, **extra: Any):
        self.status_code = status_code or self.default_status_code
        self.error = error
        self.extra = extra
        super().__init__(f"{self.status_code}: {error}")

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.error}
        for key, value in self.extra.items():
            if value is not None:
                payload[key] = value
        return payload


class AuthenticationError(ApiError):
    default_status_code = status.HTTP_401_UNAUTHORIZED


class ForbiddenError(ApiError):
    default_status_code = status.HTTP_403_FORBIDDEN


class CommandValidationError(ApiError):
    default_status_code = status.HTTP_400_BAD_REQUEST


class CommandForbiddenError(ForbiddenError):
    pass


class BrokerPublishError(ApiError):
    default_status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class BrokerTimeoutError(BrokerPublishError):
    default_status_code = status.HTTP_504_GATEWAY_TIMEOUT


class ServiceUnavailableError(ApiError):
    default_status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class WatchdogQueryError(ApiError):
    default_status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class ProvisioningError(ApiError):
    default_status_code = status.HTTP_502_BAD_GATEWAY


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ApiError)
    async def _api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.warning(
                "request failed path=%s status=%s error=%s",
                request.url.path,
                exc.status_code,
                exc.error,
            )
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_payload()))

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=jsonable_encoder({"error": "Invalid request body", "details": exc.errors()}),
        )

    @app.exception_handler(Exception)
    async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("unhandled error path=%s", request.url.path, exc_info=exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal server error"},
        )
