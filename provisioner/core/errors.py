"""Error normalization and handlers.

Every provisioning failure is a recoverable, per-request AppError carrying a
stable `code`, an HTTP status, a user-facing message and the context needed
to render it (plan name, quota numbers, location id).
"""

import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from starlette.exceptions import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from provisioner.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id
        self.details = details or {}


class ProvisioningError(AppError):
    """Base class for errors raised while deciding on a server request."""
    code = "provisioning_error"
    status_code = 400


class InvalidInputError(ProvisioningError, ValueError):
    code = "invalid_input"
    status_code = 422


class PlanNotFoundError(ProvisioningError):
    code = "plan_not_found"
    status_code = 404

    def __init__(self, plan_name: str):
        super().__init__("Plan not found in database.", details={"plan_name": plan_name})
        self.plan_name = plan_name


class EggNotFoundError(ProvisioningError):
    code = "egg_not_found"
    status_code = 404

    def __init__(self, egg_id: int):
        super().__init__("Invalid egg configuration", details={"egg_id": egg_id})
        self.egg_id = egg_id


class PlanNotOwnedError(ProvisioningError):
    code = "plan_not_owned"
    status_code = 403

    def __init__(self, plan_name: str):
        super().__init__(
            f"You don't own the {plan_name} plan! Please purchase it first. "
            "If you believe this is a mistake please contact a staff member.",
            details={"plan_name": plan_name},
        )
        self.plan_name = plan_name


class QuotaExceededError(ProvisioningError):
    code = "quota_exceeded"
    status_code = 403

    def __init__(self, plan_name: str, purchased: int):
        super().__init__(
            f"You have reached the maximum activations for {plan_name} plan ({purchased} allowed)",
            details={"plan_name": plan_name, "purchased": purchased},
        )
        self.plan_name = plan_name
        self.purchased = purchased


class LocationIneligibleError(ProvisioningError):
    code = "location_ineligible"
    status_code = 403

    def __init__(self, location_id: int, plan_name: str, reason: str):
        super().__init__(
            "The selected plan doesn't meet the location requirements",
            details={"location_id": location_id, "plan_name": plan_name, "reason": reason},
        )
        self.location_id = location_id
        self.plan_name = plan_name
        self.reason = reason


class LocationAtCapacityError(ProvisioningError):
    code = "location_at_capacity"
    status_code = 409

    def __init__(self, location_id: int, max_servers: int):
        super().__init__(
            "This location has reached its maximum server capacity",
            details={"location_id": location_id, "max_servers": max_servers},
        )
        self.location_id = location_id
        self.max_servers = max_servers


class NoEligibleNodeError(ProvisioningError):
    code = "no_eligible_node"
    status_code = 503

    def __init__(self, location_id: int):
        super().__init__(
            "No public node is available in the selected location",
            details={"location_id": location_id},
        )
        self.location_id = location_id


class NoFreeAllocationError(ProvisioningError):
    code = "no_free_allocation"
    status_code = 503

    def __init__(self, node_id: int, attempts: int = 0):
        super().__init__(
            "No available allocations found",
            details={"node_id": node_id, "attempts": attempts},
        )
        self.node_id = node_id
        self.attempts = attempts


class NoDockerImageError(ProvisioningError):
    code = "no_docker_image"
    status_code = 500

    def __init__(self, egg_id: int):
        super().__init__("No valid docker image found for this egg", details={"egg_id": egg_id})
        self.egg_id = egg_id


class CreationServiceFailureError(ProvisioningError):
    code = "creation_service_failure"
    status_code = 502

    def __init__(self, reason: str):
        super().__init__(f"Server creation failed: {reason}", details={"reason": reason})
        self.reason = reason


class ProvisioningIncompleteError(ProvisioningError):
    """The creation service accepted the server but recording it failed.

    Claims are kept, so the live server still counts against quota and
    capacity; an operator has to reconcile the records.
    """
    code = "provisioning_incomplete"
    status_code = 500

    def __init__(self, instance_id: str, reason: str):
        super().__init__(
            "Your server was created but could not be fully recorded. Please contact a staff member.",
            details={"instance_id": instance_id, "reason": reason},
        )
        self.instance_id = instance_id
        self.reason = reason


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str, details: Optional[Dict[str, Any]] = None) -> dict:
    return {
        "error": {"code": code, "message": message, "request_id": request_id, "details": details or {}},
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid, exc.details)
    logger = logging.getLogger("provisioner")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("provisioner")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def request_validation_handler(request: Request, exc: RequestValidationError):
    rid = _extract_request_id(request)
    payload = _error_payload(
        InvalidInputError.code,
        "Invalid request",
        rid,
        {"errors": [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in exc.errors()]},
    )
    logging.getLogger("provisioner").warning(
        "app.error", extra={"request_id": rid, "error_code": InvalidInputError.code, "status": 422}
    )
    response = JSONResponse(status_code=422, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("provisioner")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
