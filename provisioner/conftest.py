# provisioner/conftest.py
import asyncio
import itertools
import pytest
from random import Random
from typing import Dict, List, Optional

from sqlalchemy import insert

from provisioner.core.database import (
    init_engine,
    get_engine,
    create_all_tables,
    get_db_session,
    plans,
    locations,
    nodes,
    allocations,
    eggs,
    egg_variables,
)
from provisioner.core.errors import CreationServiceFailureError
from provisioner.core.metrics import METRICS
from provisioner.features.catalog.service import get_plan_by_name, get_egg
from provisioner.features.entitlements.ledger import record_purchase
from provisioner.features.locations.service import get_location
from provisioner.models.provisioning import InstanceHandle


@pytest.fixture(scope="function", autouse=True)
def database(tmp_path):
    """
    Fresh file-backed SQLite database per test.

    File-backed (not :memory:) so threads in concurrency tests each get
    their own connection to the same data.
    """
    engine = init_engine(f"sqlite:///{tmp_path / 'provisioner.db'}")
    create_all_tables()
    yield engine
    get_engine().dispose()


@pytest.fixture(scope="function", autouse=True)
def reset_metrics():
    METRICS.reset()
    yield


class Seeder:
    """Writes catalog and topology rows the way an administrator would."""

    def __init__(self):
        self._ports = itertools.count(25565)

    def plan(self, name: str = "Free Tier", *, is_trial: bool = False, **limits):
        values = {
            "name": name,
            "cpu": 100,
            "memory": 1024,
            "disk": 5120,
            "servers": 1,
            "allocations": 1,
            "databases": 0,
            "backups": 0,
            "is_trial": is_trial,
        }
        values.update(limits)
        with get_db_session() as session:
            session.execute(insert(plans).values(**values))
        return get_plan_by_name(name)

    def location(self, short: str = "eu", *, max_servers: int = 5, required_plans: Optional[List[str]] = None):
        with get_db_session() as session:
            result = session.execute(
                insert(locations).values(short=short, required_plans=required_plans or [], max_servers=max_servers)
            )
            location_id = result.inserted_primary_key[0]
        return get_location(location_id)

    def node(self, location_id: int, *, name: Optional[str] = None, public: bool = True) -> int:
        with get_db_session() as session:
            result = session.execute(
                insert(nodes).values(location_id=location_id, name=name or f"node-{location_id}", public=public)
            )
            return result.inserted_primary_key[0]

    def allocations(self, node_id: int, count: int) -> List[int]:
        ids = []
        with get_db_session() as session:
            for _ in range(count):
                result = session.execute(
                    insert(allocations).values(node_id=node_id, ip="10.0.0.1", port=next(self._ports))
                )
                ids.append(result.inserted_primary_key[0])
        return ids

    def egg(
        self,
        name: str = "Paper",
        *,
        images: Optional[Dict[str, str]] = None,
        variables: Optional[Dict[str, Optional[str]]] = None,
        description: str = "Minecraft server [server_ready]",
        startup: str = "java -Xms128M -Xmx{{SERVER_MEMORY}}M -jar {{SERVER_JARFILE}}",
    ):
        if images is None:
            images = {"Java 17": "ghcr.io/pterodactyl/yolks:java_17", "Java 21": "ghcr.io/pterodactyl/yolks:java_21"}
        with get_db_session() as session:
            result = session.execute(
                insert(eggs).values(name=name, description=description, startup=startup, docker_images=images)
            )
            egg_id = result.inserted_primary_key[0]
            for env_variable, default in (variables or {}).items():
                session.execute(
                    insert(egg_variables).values(egg_id=egg_id, env_variable=env_variable, default_value=default)
                )
        return get_egg(egg_id)

    def purchase(self, user_id: str, plan_name: str, count: int = 1):
        return record_purchase(user_id, plan_name, count)


@pytest.fixture
def seed() -> Seeder:
    return Seeder()


@pytest.fixture
def world(seed):
    """One user owning one Free Tier slot, one open location with 2 free allocations."""
    plan = seed.plan("Free Tier", is_trial=True)
    location = seed.location("eu", max_servers=5)
    node_id = seed.node(location.id)
    allocation_ids = seed.allocations(node_id, 2)
    egg = seed.egg(variables={"SERVER_JARFILE": "server.jar", "BUILD_NUMBER": None})
    seed.purchase("user-1", "Free Tier", 1)
    return {
        "plan": plan,
        "location": get_location(location.id),
        "node_id": node_id,
        "allocation_ids": allocation_ids,
        "egg": egg,
        "user_id": "user-1",
    }


class RecordingCreationService:
    """Accepts every spec and remembers it."""

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.specs = []
        self._ids = itertools.count(1)

    async def create(self, spec):
        if self.delay:
            await asyncio.sleep(self.delay)
        self.specs.append(spec)
        return InstanceHandle(instance_id=f"srv-{next(self._ids)}")


class FailingCreationService:
    def __init__(self, exc: Optional[Exception] = None):
        self.exc = exc or CreationServiceFailureError("rejected by panel")
        self.calls = 0

    async def create(self, spec):
        self.calls += 1
        raise self.exc


class HangingCreationService:
    """Never answers; used for timeout and cancellation paths."""

    def __init__(self):
        self.started = asyncio.Event()

    async def create(self, spec):
        self.started.set()
        await asyncio.sleep(3600)


@pytest.fixture
def creation_service():
    return RecordingCreationService()


@pytest.fixture
def rng():
    return Random(1234)


@pytest.fixture
def slow_creation_service():
    return RecordingCreationService(delay=0.01)


@pytest.fixture
def failing_creation_service():
    return FailingCreationService()


@pytest.fixture
def hanging_creation_service():
    return HangingCreationService()
