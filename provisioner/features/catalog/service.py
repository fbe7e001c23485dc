"""
provisioner/features/catalog/service.py

Plan and egg repositories plus the deploy-options query.

Handles:
- Plan lookup by name
- Egg lookup with images and variable defaults
- Deployable egg listing (eggs marked server_ready)
- Deploy options for a user's plan (limits, eligible locations, eggs)
"""

from typing import Any, Dict, List, Optional

from sqlalchemy import select, func

from provisioner.core.database import get_db_session, plans, eggs, egg_variables
from provisioner.core.errors import PlanNotFoundError, PlanNotOwnedError
from provisioner.features.entitlements.ledger import get_entitlement
from provisioner.features.locations.service import list_eligible_locations
from provisioner.models.egg import Egg, EggVariable
from provisioner.models.plan import Plan


# Eggs opt into self-service deployment through their description
SERVER_READY_MARKER = "server_ready"


def _to_plan(row) -> Plan:
    return Plan(
        id=row.id,
        name=row.name,
        cpu=row.cpu,
        memory=row.memory,
        disk=row.disk,
        servers=row.servers,
        allocations=row.allocations,
        databases=row.databases,
        backups=row.backups,
        is_trial=bool(row.is_trial),
    )


def get_plan_by_name(name: str) -> Optional[Plan]:
    with get_db_session() as session:
        row = session.execute(select(plans).where(plans.c.name == name)).first()
        return _to_plan(row) if row else None


def get_egg(egg_id: int) -> Optional[Egg]:
    """Get an egg with its candidate images and variable defaults."""
    with get_db_session() as session:
        row = session.execute(select(eggs).where(eggs.c.id == egg_id)).first()
        if not row:
            return None
        var_rows = session.execute(
            select(egg_variables)
            .where(egg_variables.c.egg_id == egg_id)
            .order_by(egg_variables.c.id)
        ).all()

    return Egg(
        id=row.id,
        name=row.name,
        description=row.description,
        startup=row.startup,
        docker_images=dict(row.docker_images or {}),
        variables=[
            EggVariable(env_variable=v.env_variable, default_value=v.default_value)
            for v in var_rows
        ],
        image_url=row.image_url,
    )


def list_deployable_eggs() -> List[Dict[str, Any]]:
    with get_db_session() as session:
        rows = session.execute(
            select(eggs.c.id, eggs.c.name, eggs.c.description, eggs.c.image_url)
            .where(func.lower(eggs.c.description).contains(SERVER_READY_MARKER))
            .order_by(eggs.c.id)
        ).all()
    return [
        {"id": r.id, "name": r.name, "description": r.description, "image_url": r.image_url}
        for r in rows
    ]


def get_deploy_options(user_id: str, plan_name: str) -> Dict[str, Any]:
    """Everything a deploy form needs for one of the user's plans.

    Raises:
        PlanNotOwnedError: the user holds no entitlement for the plan
        PlanNotFoundError: the plan is not in the catalog
    """
    entitlement = get_entitlement(user_id, plan_name)
    if entitlement is None:
        raise PlanNotOwnedError(plan_name)

    plan = get_plan_by_name(plan_name)
    if plan is None:
        raise PlanNotFoundError(plan_name)

    return {
        "plan": plan.model_dump(),
        "entitlement": {
            "purchased": entitlement.purchased_count,
            "activated": entitlement.activated_count,
            "remaining": entitlement.remaining,
        },
        "limits": {
            "cpu": plan.cpu,
            "memory": plan.memory,
            "disk": plan.disk,
            "servers": plan.servers,
            "allocations": plan.allocations,
            "databases": plan.databases,
            "backups": plan.backups,
        },
        "locations": [
            {
                "id": loc.id,
                "short": loc.short,
                "long": loc.long,
                "nodes": [{"id": n.id, "name": n.name} for n in loc.public_nodes],
            }
            for loc in list_eligible_locations(plan_name)
        ],
        "eggs": list_deployable_eggs(),
    }
