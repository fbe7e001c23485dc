"""
provisioner/features/provisioning/spec_builder.py

Resolves a plan + egg + placement into a ProvisionedSpec. Pure: no I/O, the
only nondeterminism is the image choice, drawn from the injected Random.
"""

from datetime import datetime, timedelta
from random import Random
from typing import Dict, Optional

from provisioner.core.errors import NoDockerImageError
from provisioner.models.egg import Egg
from provisioner.models.location import Allocation, Node
from provisioner.models.plan import Plan
from provisioner.models.provisioning import ProvisionedSpec

# Fixed runtime policy for self-service servers
DEFAULT_SWAP = 0
DEFAULT_IO_WEIGHT = 500
OOM_DISABLED = True
SKIP_SCRIPTS = False

TRIAL_EXPIRY_DAYS = 7
STANDARD_EXPIRY_DAYS = 30


def expiry_for(plan: Plan, activated_on: datetime) -> datetime:
    """Advisory expiry; sweeping expired servers happens elsewhere."""
    days = TRIAL_EXPIRY_DAYS if plan.is_trial else STANDARD_EXPIRY_DAYS
    return activated_on + timedelta(days=days)


def choose_image(egg: Egg, rng: Optional[Random] = None) -> str:
    images = [image for image in egg.docker_images.values() if image]
    if not images:
        raise NoDockerImageError(egg.id)
    return (rng or Random()).choice(images)


def build_environment(egg: Egg) -> Dict[str, str]:
    return {var.env_variable: var.default_value or "" for var in egg.variables}


def build(
    plan: Plan,
    egg: Egg,
    node: Node,
    allocation: Allocation,
    name: str,
    owner_id: str,
    activated_on: datetime,
    rng: Optional[Random] = None,
) -> ProvisionedSpec:
    return ProvisionedSpec(
        name=name,
        owner_id=owner_id,
        egg_id=egg.id,
        node_id=node.id,
        allocation_id=allocation.id,
        cpu=plan.cpu,
        memory=plan.memory,
        disk=plan.disk,
        swap=DEFAULT_SWAP,
        io=DEFAULT_IO_WEIGHT,
        database_limit=plan.databases,
        allocation_limit=plan.allocations,
        backup_limit=plan.backups,
        image=choose_image(egg, rng),
        startup=egg.startup,
        environment=build_environment(egg),
        skip_scripts=SKIP_SCRIPTS,
        oom_disabled=OOM_DISABLED,
        plan_name=plan.name,
        activated_on=activated_on,
        expires_at=expiry_for(plan, activated_on),
    )
