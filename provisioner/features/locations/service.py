"""
provisioner/features/locations/service.py

Location capacity index.

Handles:
- Listing locations a plan may deploy to (read-only, for deploy pages)
- Re-validating one requested location (public node, plan rule, capacity)
- Uniform random choice of a public node inside a location
"""

from random import Random
from typing import Dict, List, Optional
import logging

from sqlalchemy import select, func

from provisioner.core.database import get_db_session, locations, nodes, allocations
from provisioner.core.errors import (
    InvalidInputError,
    LocationAtCapacityError,
    LocationIneligibleError,
    NoEligibleNodeError,
)
from provisioner.models.location import Location, Node


logger = logging.getLogger(__name__)


def _to_location(row, node_rows) -> Location:
    return Location(
        id=row.id,
        short=row.short,
        long=row.long,
        required_plans=list(row.required_plans or []),
        max_servers=row.max_servers,
        nodes=[
            Node(id=n.id, location_id=n.location_id, name=n.name, public=bool(n.public))
            for n in node_rows
        ],
    )


def get_location(location_id: int) -> Optional[Location]:
    with get_db_session() as session:
        row = session.execute(select(locations).where(locations.c.id == location_id)).first()
        if not row:
            return None
        node_rows = session.execute(
            select(nodes).where(nodes.c.location_id == location_id).order_by(nodes.c.id)
        ).all()
        return _to_location(row, node_rows)


def list_locations() -> List[Location]:
    with get_db_session() as session:
        rows = session.execute(select(locations).order_by(locations.c.id)).all()
        node_rows = session.execute(select(nodes).order_by(nodes.c.id)).all()

    by_location: Dict[int, list] = {}
    for n in node_rows:
        by_location.setdefault(n.location_id, []).append(n)
    return [_to_location(row, by_location.get(row.id, [])) for row in rows]


def bound_instances_query(location_id: int):
    return (
        select(func.count(func.distinct(allocations.c.instance_id)))
        .select_from(allocations.join(nodes, allocations.c.node_id == nodes.c.id))
        .where(nodes.c.location_id == location_id)
        .where(allocations.c.instance_id.is_not(None))
    )


def count_bound_instances(location_id: int) -> int:
    """Distinct instances (committed or pending) bound to the location's nodes."""
    with get_db_session() as session:
        return session.execute(bound_instances_query(location_id)).scalar_one()


def has_reached_maximum_servers(location: Location) -> bool:
    return count_bound_instances(location.id) >= location.max_servers


def list_eligible_locations(plan_name: str) -> List[Location]:
    """Locations with a public node, a matching plan rule and spare capacity.

    Read-only; results can go stale the moment they are returned, which is
    why a chosen location is validated again at provisioning time.
    """
    eligible = [
        location
        for location in list_locations()
        if location.public_nodes
        and location.allows_plan(plan_name)
        and not has_reached_maximum_servers(location)
    ]
    logger.debug(
        "[locations] eligible",
        extra={"plan_name": plan_name, "location_ids": [loc.id for loc in eligible]},
    )
    return eligible


def validate_location(location_id: int, plan_name: str) -> Location:
    """Check one requested location against all three eligibility rules.

    Raises:
        InvalidInputError: location does not exist
        LocationIneligibleError: no public node, or the plan is not allowed
        LocationAtCapacityError: bound instances already at max_servers
    """
    location = get_location(location_id)
    if location is None:
        raise InvalidInputError(
            "The selected location does not exist",
            details={"location_id": location_id},
        )

    if not location.public_nodes:
        logger.warning(
            "[locations] INELIGIBLE",
            extra={"location_id": location_id, "plan_name": plan_name, "reason": "no_public_node"},
        )
        raise LocationIneligibleError(location_id, plan_name, "no_public_node")

    if not location.allows_plan(plan_name):
        logger.warning(
            "[locations] INELIGIBLE",
            extra={
                "location_id": location_id,
                "plan_name": plan_name,
                "required_plans": location.required_plans,
                "reason": "plan_not_allowed",
            },
        )
        raise LocationIneligibleError(location_id, plan_name, "plan_not_allowed")

    bound = count_bound_instances(location_id)
    if bound >= location.max_servers:
        logger.warning(
            "[locations] AT_CAPACITY",
            extra={"location_id": location_id, "bound": bound, "max_servers": location.max_servers},
        )
        raise LocationAtCapacityError(location_id, location.max_servers)

    return location


def select_random_public_node(location: Location, rng: Optional[Random] = None) -> Node:
    """Pick any public node of the location, uniformly at random."""
    candidates = location.public_nodes
    if not candidates:
        raise NoEligibleNodeError(location.id)
    return (rng or Random()).choice(candidates)
