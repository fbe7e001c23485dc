"""
provisioner/features/allocations/service.py

Node allocation picker.

A free allocation is claimed with a compare-and-swap UPDATE
(`... WHERE instance_id IS NULL`), so at most one claimant can bind it no
matter how many requests race for the same node.

When a location is passed, the claim is also capacity-guarded: the location
row is written first, so claims for one location take turns inside their
transactions, and the bound count is read after that write. A claim that
would take the location past `max_servers` fails with LocationAtCapacity;
one that fits always succeeds, even when another claim for the last slot
is in flight.
"""

from random import Random
from typing import List, Optional
from uuid import uuid4
import logging

from sqlalchemy import func, select, update

from provisioner.core.database import get_db_session, allocations, locations
from provisioner.core.errors import LocationAtCapacityError, NoFreeAllocationError
from provisioner.features.locations.service import bound_instances_query
from provisioner.models.location import Allocation, AllocationClaim, Location, Node, pending_placeholder


logger = logging.getLogger(__name__)


def _to_allocation(row) -> Allocation:
    return Allocation(
        id=row.id,
        node_id=row.node_id,
        ip=row.ip,
        port=row.port,
        instance_id=row.instance_id,
    )


def get_allocation(allocation_id: int) -> Optional[Allocation]:
    with get_db_session() as session:
        row = session.execute(select(allocations).where(allocations.c.id == allocation_id)).first()
        return _to_allocation(row) if row else None


def list_free_allocations(node_id: int) -> List[Allocation]:
    with get_db_session() as session:
        rows = session.execute(
            select(allocations)
            .where(allocations.c.node_id == node_id)
            .where(allocations.c.instance_id.is_(None))
            .order_by(allocations.c.id)
        ).all()
    return [_to_allocation(row) for row in rows]


def _try_bind(allocation_id: int, placeholder: str, location: Optional[Location] = None) -> bool:
    with get_db_session() as session:
        if location is not None:
            session.execute(
                update(locations)
                .where(locations.c.id == location.id)
                .values(updated_at=func.now())
            )
            bound = session.execute(bound_instances_query(location.id)).scalar_one()
            if bound >= location.max_servers:
                logger.warning(
                    "[allocations] AT_CAPACITY",
                    extra={"location_id": location.id, "bound": bound, "max_servers": location.max_servers},
                )
                raise LocationAtCapacityError(location.id, location.max_servers)
        result = session.execute(
            update(allocations)
            .where(allocations.c.id == allocation_id)
            .where(allocations.c.instance_id.is_(None))
            .values(instance_id=placeholder)
        )
        return result.rowcount == 1


def claim_free_allocation(
    node: Node,
    rng: Optional[Random] = None,
    location: Optional[Location] = None,
) -> AllocationClaim:
    """Bind one free allocation on `node` to a provisional placeholder.

    Candidates are tried in random order; a lost race moves on to the next
    one. Gives up after every candidate read at the start has been tried.

    Raises:
        LocationAtCapacityError: `location` given and already full
        NoFreeAllocationError: no candidate could be bound
    """
    candidates = list_free_allocations(node.id)
    (rng or Random()).shuffle(candidates)

    claim_id = str(uuid4())
    placeholder = pending_placeholder(claim_id)
    for attempt, candidate in enumerate(candidates, start=1):
        if _try_bind(candidate.id, placeholder, location):
            logger.info(
                "[allocations] CLAIMED",
                extra={
                    "node_id": node.id,
                    "allocation_id": candidate.id,
                    "claim_id": claim_id,
                    "attempt": attempt,
                },
            )
            return AllocationClaim(
                claim_id=claim_id,
                allocation=candidate.model_copy(update={"instance_id": placeholder}),
            )
        logger.debug(
            "[allocations] CONFLICT",
            extra={"node_id": node.id, "allocation_id": candidate.id, "attempt": attempt},
        )

    logger.warning(
        "[allocations] NO_FREE_ALLOCATION",
        extra={"node_id": node.id, "candidates": len(candidates)},
    )
    raise NoFreeAllocationError(node.id, attempts=len(candidates))


def release_allocation(claim: AllocationClaim) -> bool:
    """Unbind a provisional claim. No-op if it was already released or bound."""
    with get_db_session() as session:
        result = session.execute(
            update(allocations)
            .where(allocations.c.id == claim.allocation.id)
            .where(allocations.c.instance_id == claim.placeholder)
            .values(instance_id=None)
        )
        released = result.rowcount == 1

    if released:
        logger.info(
            "[allocations] RELEASED",
            extra={"allocation_id": claim.allocation.id, "claim_id": claim.claim_id},
        )
    return released


def bind_instance(claim: AllocationClaim, instance_id: str) -> bool:
    """Swap the claim's placeholder for the real instance id."""
    with get_db_session() as session:
        result = session.execute(
            update(allocations)
            .where(allocations.c.id == claim.allocation.id)
            .where(allocations.c.instance_id == claim.placeholder)
            .values(instance_id=instance_id)
        )
        bound = result.rowcount == 1

    if not bound:
        logger.error(
            "[allocations] BIND_LOST",
            extra={"allocation_id": claim.allocation.id, "claim_id": claim.claim_id, "instance_id": instance_id},
        )
    return bound
