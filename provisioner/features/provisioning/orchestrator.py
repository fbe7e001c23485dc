"""
provisioner/features/provisioning/orchestrator.py

Provisioning orchestrator.

Sequences one server request through validation, entitlement reservation,
location/node/allocation selection, spec building and the creation service:

    VALIDATING -> RESERVING_ENTITLEMENT -> SELECTING_LOCATION -> SELECTING_NODE
    -> CLAIMING_ALLOCATION -> BUILDING_SPEC -> DELEGATING_CREATION -> COMMITTED

Claims are taken before the (slow, network-bound) creation call and every
claim has a compensating release, so any failure after the reservation goes
through ROLLING_BACK -> FAILED and leaves entitlement and allocation state as
it was before the request. Once the creation service has accepted, the
server exists and its claims are kept: a failure to record it ends in FAILED
with ProvisioningIncompleteError instead of a rollback. Claims are row
states, not locks: nothing is held while the creation call is awaited.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from random import Random
from typing import Any, Callable, List, Mapping, Optional, Union

from pydantic import ValidationError

from provisioner.core.config import settings
from provisioner.core.errors import (
    AppError,
    CreationServiceFailureError,
    EggNotFoundError,
    InvalidInputError,
    PlanNotFoundError,
    ProvisioningIncompleteError,
)
from provisioner.core.logging import log_event
from provisioner.core.metrics import (
    provisioning_attempts_total,
    provisioning_in_flight,
    provisioning_rollbacks_total,
)
from provisioner.core.tracing import start_span
from provisioner.features.allocations import service as allocations
from provisioner.features.catalog.service import get_egg, get_plan_by_name
from provisioner.features.entitlements import ledger
from provisioner.features.locations import service as locations
from provisioner.features.provisioning import spec_builder
from provisioner.features.provisioning.creation import CreationService
from provisioner.models.entitlement import ReservationToken
from provisioner.models.location import AllocationClaim
from provisioner.models.provisioning import (
    InstanceHandle,
    ProvisionedServerHandle,
    ProvisionedSpec,
    ProvisioningRequest,
)


logger = logging.getLogger(__name__)


class ProvisioningState(str, Enum):
    VALIDATING = "VALIDATING"
    RESERVING_ENTITLEMENT = "RESERVING_ENTITLEMENT"
    SELECTING_LOCATION = "SELECTING_LOCATION"
    SELECTING_NODE = "SELECTING_NODE"
    CLAIMING_ALLOCATION = "CLAIMING_ALLOCATION"
    BUILDING_SPEC = "BUILDING_SPEC"
    DELEGATING_CREATION = "DELEGATING_CREATION"
    COMMITTED = "COMMITTED"
    ROLLING_BACK = "ROLLING_BACK"
    FAILED = "FAILED"


@dataclass
class ProvisioningAttempt:
    """Everything one request acquired, in the order it acquired it."""
    states: List[ProvisioningState] = field(default_factory=list)
    request: Optional[ProvisioningRequest] = None
    reservation: Optional[ReservationToken] = None
    claim: Optional[AllocationClaim] = None
    spec: Optional[ProvisionedSpec] = None
    # Set once the creation service accepts; the server exists from here on
    instance: Optional[InstanceHandle] = None
    handle: Optional[ProvisionedServerHandle] = None
    error: Optional[AppError] = None

    @property
    def state(self) -> Optional[ProvisioningState]:
        return self.states[-1] if self.states else None

    @property
    def handed_off(self) -> bool:
        return self.instance is not None

    @property
    def succeeded(self) -> bool:
        return self.state == ProvisioningState.COMMITTED

    def transition(self, state: ProvisioningState) -> None:
        self.states.append(state)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProvisioningOrchestrator:
    def __init__(
        self,
        creation_service: CreationService,
        *,
        rng: Optional[Random] = None,
        timeout_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Args:
            creation_service: External collaborator that creates the server
            rng: Random source for node, allocation and image choice
            timeout_seconds: Creation call budget (defaults to
                CREATION_SERVICE_TIMEOUT_SECONDS)
            clock: Source of the activation timestamp
        """
        self.creation_service = creation_service
        self.rng = rng or Random()
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else settings.CREATION_SERVICE_TIMEOUT_SECONDS
        )
        self.clock = clock

    async def provision(
        self, request: Union[ProvisioningRequest, Mapping[str, Any]]
    ) -> ProvisionedServerHandle:
        """Run one request; return its handle or raise its ProvisioningError."""
        attempt = await self.run(request)
        if attempt.error is not None:
            raise attempt.error
        return attempt.handle

    async def run(self, request: Union[ProvisioningRequest, Mapping[str, Any]]) -> ProvisioningAttempt:
        """Run one request and return the attempt record.

        Engine errors are captured on `attempt.error` after rollback.
        Cancellation and unexpected exceptions also roll back, then propagate.
        """
        attempt = ProvisioningAttempt()
        provisioning_in_flight.inc()
        try:
            with start_span("provisioning.run"):
                try:
                    await self._execute(attempt, request)
                except AppError as e:
                    attempt.error = e
                    self._fail(attempt, e.code)
                except asyncio.CancelledError:
                    self._fail(attempt, "cancelled")
                    raise
                except Exception:
                    logger.exception("[provisioning] unexpected error", extra={"stage": _stage(attempt)})
                    self._fail(attempt, "internal_error")
                    raise
        finally:
            provisioning_in_flight.dec()
        return attempt

    async def _execute(self, attempt: ProvisioningAttempt, raw: Union[ProvisioningRequest, Mapping[str, Any]]) -> None:
        attempt.transition(ProvisioningState.VALIDATING)
        request = _coerce_request(raw)
        attempt.request = request

        plan = get_plan_by_name(request.plan_name)
        if plan is None:
            raise PlanNotFoundError(request.plan_name)
        egg = get_egg(request.egg_id)
        if egg is None:
            raise EggNotFoundError(request.egg_id)
        if locations.get_location(request.location_id) is None:
            raise InvalidInputError(
                "The selected location does not exist",
                details={"location_id": request.location_id},
            )

        attempt.transition(ProvisioningState.RESERVING_ENTITLEMENT)
        attempt.reservation = ledger.reserve(request.user_id, request.plan_name)

        attempt.transition(ProvisioningState.SELECTING_LOCATION)
        location = locations.validate_location(request.location_id, request.plan_name)

        attempt.transition(ProvisioningState.SELECTING_NODE)
        node = locations.select_random_public_node(location, self.rng)

        attempt.transition(ProvisioningState.CLAIMING_ALLOCATION)
        # Capacity is checked again inside the claim; a concurrent request
        # may have taken the last slot since validate_location.
        attempt.claim = allocations.claim_free_allocation(node, self.rng, location)

        attempt.transition(ProvisioningState.BUILDING_SPEC)
        activated_on = self.clock()
        attempt.spec = spec_builder.build(
            plan,
            egg,
            node,
            attempt.claim.allocation,
            request.name,
            request.user_id,
            activated_on,
            self.rng,
        )

        attempt.transition(ProvisioningState.DELEGATING_CREATION)
        instance = await self._delegate(attempt.spec)
        attempt.instance = instance

        self._record(attempt, plan.id, activated_on)
        attempt.handle = ProvisionedServerHandle(instance_id=instance.instance_id, name=request.name)
        attempt.transition(ProvisioningState.COMMITTED)

        provisioning_attempts_total.inc({"outcome": "committed"})
        log_event(
            "info",
            "[provisioning] COMMITTED",
            user_id=request.user_id,
            plan_name=request.plan_name,
            event_type="server.provisioned",
            extra={
                "instance_id": instance.instance_id,
                "node_id": node.id,
                "allocation_id": attempt.claim.allocation.id,
                "location_id": location.id,
            },
        )

    async def _delegate(self, spec: ProvisionedSpec):
        try:
            return await asyncio.wait_for(self.creation_service.create(spec), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise CreationServiceFailureError(
                f"creation service timed out after {self.timeout_seconds}s"
            ) from e
        except CreationServiceFailureError:
            raise
        except Exception as e:
            raise CreationServiceFailureError(str(e) or type(e).__name__) from e

    def _record(self, attempt: ProvisioningAttempt, plan_id: int, activated_on: datetime) -> None:
        """Bind the allocation and commit the reservation for a created server."""
        instance_id = attempt.instance.instance_id
        try:
            bound = allocations.bind_instance(attempt.claim, instance_id)
            committed = ledger.commit(attempt.reservation, plan_id=plan_id, activated_on=activated_on)
        except Exception as e:
            raise ProvisioningIncompleteError(instance_id, f"recording failed: {e}") from e
        if not bound:
            raise ProvisioningIncompleteError(instance_id, "allocation claim was lost")
        if not committed:
            raise ProvisioningIncompleteError(instance_id, "reservation was no longer held")

    def _fail(self, attempt: ProvisioningAttempt, reason: str) -> None:
        stage = _stage(attempt)
        if attempt.handed_off:
            # A created server keeps its quota slot and allocation
            attempt.transition(ProvisioningState.FAILED)
            provisioning_attempts_total.inc({"outcome": reason})
            log_event(
                "error",
                "[provisioning] INCOMPLETE",
                user_id=attempt.request.user_id,
                plan_name=attempt.request.plan_name,
                error_code=reason,
                extra={
                    "stage": stage,
                    "instance_id": attempt.instance.instance_id,
                    "allocation_id": attempt.claim.allocation.id,
                    "reservation_id": attempt.reservation.reservation_id,
                },
            )
            return
        if attempt.reservation is not None or attempt.claim is not None:
            attempt.transition(ProvisioningState.ROLLING_BACK)
            self._rollback(attempt, stage)
        attempt.transition(ProvisioningState.FAILED)

        provisioning_attempts_total.inc({"outcome": reason})
        log_event(
            "warning",
            "[provisioning] FAILED",
            user_id=attempt.request.user_id if attempt.request else None,
            plan_name=attempt.request.plan_name if attempt.request else None,
            error_code=reason,
            extra={"stage": stage},
        )

    def _rollback(self, attempt: ProvisioningAttempt, stage: str) -> None:
        """Release every claim the attempt holds, newest first.

        No await point here, so a cancelled task still runs all of it.
        """
        provisioning_rollbacks_total.inc({"stage": stage})
        if attempt.claim is not None:
            try:
                allocations.release_allocation(attempt.claim)
            except Exception:
                logger.exception(
                    "[provisioning] allocation release failed",
                    extra={"allocation_id": attempt.claim.allocation.id, "claim_id": attempt.claim.claim_id},
                )
        if attempt.reservation is not None:
            try:
                ledger.release(attempt.reservation)
            except Exception:
                logger.exception(
                    "[provisioning] reservation release failed",
                    extra={"reservation_id": attempt.reservation.reservation_id},
                )
        logger.info(
            "[provisioning] ROLLBACK",
            extra={
                "stage": stage,
                "released_allocation": attempt.claim.allocation.id if attempt.claim else None,
                "released_reservation": attempt.reservation.reservation_id if attempt.reservation else None,
            },
        )


def _stage(attempt: ProvisioningAttempt) -> str:
    for state in reversed(attempt.states):
        if state not in (ProvisioningState.ROLLING_BACK, ProvisioningState.FAILED):
            return state.value.lower()
    return "unknown"


def _coerce_request(raw: Union[ProvisioningRequest, Mapping[str, Any]]) -> ProvisioningRequest:
    if isinstance(raw, ProvisioningRequest):
        return raw
    try:
        return ProvisioningRequest.model_validate(dict(raw))
    except ValidationError as e:
        raise InvalidInputError(
            "Invalid server request",
            details={
                "errors": [
                    {"field": ".".join(str(p) for p in err["loc"]), "msg": err["msg"]}
                    for err in e.errors()
                ]
            },
        ) from e
    except (TypeError, ValueError) as e:
        raise InvalidInputError("Invalid server request", details={"error": str(e)}) from e
