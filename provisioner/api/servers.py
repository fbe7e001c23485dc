"""
Server provisioning API.

POST creates a server for one of the caller's purchased plans; GET returns the
options a deploy form needs. The caller's identity arrives in X-User-Id,
set by the authenticating gateway in front of this service.
"""

from typing import Annotated, Any, Dict

from fastapi import APIRouter, Depends, Header, Query

from provisioner.core.tracing import start_span
from provisioner.features.catalog.service import get_deploy_options
from provisioner.features.provisioning.creation import HttpCreationService
from provisioner.features.provisioning.orchestrator import ProvisioningOrchestrator
from provisioner.models.provisioning import ProvisionedServerHandle, ServerCreateBody

router = APIRouter(prefix="/v1/servers", tags=["servers"])


# Dependency injection
def get_orchestrator() -> ProvisioningOrchestrator:
    """Get an orchestrator bound to the configured creation service."""
    return ProvisioningOrchestrator(HttpCreationService())


@router.post("", status_code=201, response_model=ProvisionedServerHandle)
async def create_server(
    body: ServerCreateBody,
    user_id: Annotated[str, Header(alias="X-User-Id")],
    orchestrator: Annotated[ProvisioningOrchestrator, Depends(get_orchestrator)],
) -> ProvisionedServerHandle:
    """
    Create a server.

    **Errors:** invalid_input, plan_not_found, egg_not_found, plan_not_owned,
    quota_exceeded, location_ineligible, location_at_capacity,
    no_eligible_node, no_free_allocation, no_docker_image,
    creation_service_failure, provisioning_incomplete.
    """
    with start_span("create_server", attributes={"user_id": user_id, "plan_name": body.plan_name}):
        return await orchestrator.provision({**body.model_dump(), "user_id": user_id})


@router.get("/deploy-options")
def deploy_options(
    user_id: Annotated[str, Header(alias="X-User-Id")],
    plan_name: str = Query(..., min_length=1),
) -> Dict[str, Any]:
    """Plan limits, eligible locations and deployable eggs for a plan the caller owns."""
    with start_span("deploy_options", attributes={"user_id": user_id, "plan_name": plan_name}):
        return get_deploy_options(user_id, plan_name)
