"""
provisioner/models/plan.py

Plan model.

Plans are priced tiers defining resource quotas and entitlement limits.
"""

from pydantic import BaseModel, ConfigDict


class Plan(BaseModel):
    """
    Plan represents a catalog tier.

    Created by an administrator outside the engine and read-only here.
    `cpu` is a percentage of one core, `memory` and `disk` are in MiB.
    """
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    cpu: int
    memory: int
    disk: int
    servers: int = 1
    allocations: int = 1
    databases: int = 0
    backups: int = 0
    is_trial: bool = False
