from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from fastapi import Request
from fastapi.responses import JSONResponse


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    type: str
    request_id: str
    details: Any = None

    def as_dict(self) -> dict[str, Any]:
        error: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "type": self.type,
            "request_id": self.request_id,
        }
        if self.details is not None:
            error["details"] = self.details
        return {"error": error}


class AppError(Exception):
    def __init__(self, status_code: int, code: str, error_type: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.error_type = error_type
        self.message = message


class AuthenticationError(AppError):
    def __init__(self, message: str = "Unauthorized", code: str = "auth_invalid"):
        super().__init__(401, code, "auth", message)


class AuthorizationError(AppError):
    def __init__(self, message: str = "Forbidden", code: str = "forbidden"):
        super().__init__(403, code, "auth", message)


class NotFoundError(AppError):
    def __init__(self, message: str, code: str = "not_found"):
        super().__init__(404, code, "not_found", message)


class ValidationError(AppError):
    def __init__(self, message: str, code: str = "request_validation_failed"):
        super().__init__(400, code, "validation", message)


class FeatureDisabledError(AppError):
    def __init__(
        self,
        message: str = "AI feature is disabled for this company",
        code: str = "feature_disabled",
    ):
        super().__init__(403, code, "policy", message)


class IntegrationError(AppError):
    """Provider integration is disabled or its credential is missing."""

    def __init__(self, message: str, code: str):
        super().__init__(403, code, "policy", message)


class BudgetExceededError(AppError):
    def __init__(self, window: str, used: int, budget: int, requested: int):
        super().__init__(
            429,
            f"{window}_token_budget_exceeded",
            "rate_limit",
            f"{window.capitalize()} AI token budget exceeded",
        )
        self.window = window
        self.used = used
        self.budget = budget
        self.requested = requested

    def ledger_metadata(self) -> dict[str, int]:
        used_key = "used_today" if self.window == "daily" else "used_month"
        return {
            used_key: self.used,
            f"{self.window}_budget": self.budget,
            "requested_tokens": self.requested,
        }


class UpstreamError(AppError):
    def __init__(
        self,
        message: str,
        code: str = "upstream_error",
        upstream_status: int | None = None,
        payload: Any = None,
    ):
        super().__init__(502, code, "provider", message)
        self.upstream_status = upstream_status
        self.payload = payload


class InternalError(AppError):
    def __init__(self, message: str = "Internal server error", code: str = "internal_error"):
        super().__init__(500, code, "internal", message)


def request_id_from_request(request: Request) -> str:
    state_id = getattr(request.state, "request_id", None)
    return state_id or str(uuid4())


def app_error_response(
    status_code: int,
    code: str,
    error_type: str,
    message: str,
    request_id: str,
    details: Any = None,
) -> JSONResponse:
    envelope = ErrorEnvelope(
        code=code, message=message, type=error_type, request_id=request_id, details=details
    )
    response = JSONResponse(status_code=status_code, content=envelope.as_dict())
    response.headers["x-request-id"] = request_id
    return response
