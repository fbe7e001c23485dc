"""
provisioner/models/location.py

Topology models: locations own nodes, nodes own allocations.
"""

from typing import List, Optional
from pydantic import BaseModel, ConfigDict


class Node(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    location_id: int
    name: str
    public: bool = True


class Location(BaseModel):
    """
    Location groups nodes under shared eligibility rules.

    Constraint: an empty `required_plans` list means any plan may deploy here.
    """
    model_config = ConfigDict(frozen=True)

    id: int
    short: str
    long: Optional[str] = None
    required_plans: List[str] = []
    max_servers: int
    nodes: List[Node] = []

    @property
    def public_nodes(self) -> List[Node]:
        return [node for node in self.nodes if node.public]

    def allows_plan(self, plan_name: str) -> bool:
        return not self.required_plans or plan_name in self.required_plans


class Allocation(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    node_id: int
    ip: str
    port: int
    instance_id: Optional[str] = None

    @property
    def is_free(self) -> bool:
        return self.instance_id is None


class AllocationClaim(BaseModel):
    """A provisional binding of one allocation, compensable until bound."""
    model_config = ConfigDict(frozen=True)

    claim_id: str
    allocation: Allocation

    @property
    def placeholder(self) -> str:
        return pending_placeholder(self.claim_id)


def pending_placeholder(claim_id: str) -> str:
    return f"pending:{claim_id}"
