"""
Tests for the node allocation picker: compare-and-swap claims, idempotent
release, and exclusivity under concurrent claimants.
"""
import threading
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from random import Random

import pytest

from provisioner.core.errors import LocationAtCapacityError, NoFreeAllocationError
from provisioner.features.allocations import service as allocations
from provisioner.features.locations.service import count_bound_instances, get_location
from provisioner.models.location import Node


@pytest.fixture
def node(seed):
    loc = seed.location("eu")
    node_id = seed.node(loc.id)
    return Node(id=node_id, location_id=loc.id, name="node")


def test_claim_binds_placeholder(seed, node):
    seed.allocations(node.id, 1)

    claim = allocations.claim_free_allocation(node, Random(1))

    stored = allocations.get_allocation(claim.allocation.id)
    assert stored.instance_id == claim.placeholder
    assert claim.placeholder.startswith("pending:")
    assert allocations.list_free_allocations(node.id) == []


def test_claim_only_considers_the_given_node(seed, node):
    other_loc = seed.location("us")
    other_node = seed.node(other_loc.id)
    seed.allocations(other_node, 3)

    with pytest.raises(NoFreeAllocationError) as exc:
        allocations.claim_free_allocation(node)
    assert exc.value.node_id == node.id
    assert exc.value.attempts == 0


def test_claim_skips_bound_allocations(seed, node):
    ids = seed.allocations(node.id, 3)
    first = allocations.claim_free_allocation(node, Random(3))
    second = allocations.claim_free_allocation(node, Random(3))
    third = allocations.claim_free_allocation(node, Random(3))

    assert {first.allocation.id, second.allocation.id, third.allocation.id} == set(ids)
    with pytest.raises(NoFreeAllocationError):
        allocations.claim_free_allocation(node, Random(3))


def test_claim_retries_next_candidate_when_race_is_lost(seed, node, monkeypatch):
    seed.allocations(node.id, 3)
    real_try_bind = allocations._try_bind
    lost = []

    def losing_first_attempt(allocation_id, placeholder, location=None):
        if not lost:
            # Another claimant binds this allocation between our read and our update
            lost.append(allocation_id)
            assert real_try_bind(allocation_id, "pending:someone-else")
            return real_try_bind(allocation_id, placeholder, location)
        return real_try_bind(allocation_id, placeholder, location)

    monkeypatch.setattr(allocations, "_try_bind", losing_first_attempt)

    claim = allocations.claim_free_allocation(node, Random(5))

    assert claim.allocation.id != lost[0]
    assert allocations.get_allocation(lost[0]).instance_id == "pending:someone-else"


def test_claim_fails_after_every_candidate_conflicts(seed, node, monkeypatch):
    seed.allocations(node.id, 2)
    monkeypatch.setattr(allocations, "_try_bind", lambda allocation_id, placeholder, location=None: False)

    with pytest.raises(NoFreeAllocationError) as exc:
        allocations.claim_free_allocation(node)
    assert exc.value.attempts == 2


def test_release_allocation_is_idempotent(seed, node):
    seed.allocations(node.id, 1)
    claim = allocations.claim_free_allocation(node)

    assert allocations.release_allocation(claim) is True
    assert allocations.release_allocation(claim) is False
    assert allocations.get_allocation(claim.allocation.id).is_free


def test_release_does_not_unbind_someone_elses_claim(seed, node):
    seed.allocations(node.id, 1)
    claim = allocations.claim_free_allocation(node)
    allocations.release_allocation(claim)
    newer = allocations.claim_free_allocation(node)

    assert allocations.release_allocation(claim) is False
    assert allocations.get_allocation(newer.allocation.id).instance_id == newer.placeholder


def test_bind_instance_replaces_placeholder(seed, node):
    seed.allocations(node.id, 1)
    claim = allocations.claim_free_allocation(node)

    assert allocations.bind_instance(claim, "srv-1") is True

    assert allocations.get_allocation(claim.allocation.id).instance_id == "srv-1"
    # A bound allocation is no longer a releasable claim
    assert allocations.release_allocation(claim) is False


def test_random_selection_covers_all_free_allocations(seed, node):
    ids = seed.allocations(node.id, 4)
    rng = Random(11)
    picked = Counter()

    for _ in range(200):
        claim = allocations.claim_free_allocation(node, rng)
        picked[claim.allocation.id] += 1
        allocations.release_allocation(claim)

    assert set(picked) == set(ids)


def test_concurrent_claims_bind_each_allocation_once(seed, node):
    """N claimants, K free allocations (K < N): exactly K win."""
    free = 3
    claimants = 10
    ids = seed.allocations(node.id, free)
    barrier = threading.Barrier(claimants)

    def attempt(i):
        barrier.wait()
        try:
            return allocations.claim_free_allocation(node, Random(i))
        except NoFreeAllocationError:
            return None

    with ThreadPoolExecutor(max_workers=claimants) as pool:
        results = list(pool.map(attempt, range(claimants)))

    winners = [r for r in results if r is not None]
    assert len(winners) == free
    assert len(results) - len(winners) == claimants - free
    assert sorted(w.allocation.id for w in winners) == sorted(ids)
    for winner in winners:
        assert allocations.get_allocation(winner.allocation.id).instance_id == winner.placeholder


def test_capacity_guarded_claim_refuses_full_location(seed):
    loc = seed.location("eu", max_servers=1)
    node_id = seed.node(loc.id)
    seed.allocations(node_id, 2)
    location = get_location(loc.id)
    node = location.nodes[0]
    allocations.claim_free_allocation(node, Random(1), location)

    with pytest.raises(LocationAtCapacityError) as exc:
        allocations.claim_free_allocation(node, Random(2), location)

    assert exc.value.max_servers == 1
    assert count_bound_instances(loc.id) == 1
    assert len(allocations.list_free_allocations(node_id)) == 1


def test_concurrent_guarded_claims_fill_last_slot_exactly_once(seed):
    """Several claimants racing for the one slot a location has left."""
    loc = seed.location("eu", max_servers=3)
    node_id = seed.node(loc.id)
    seed.allocations(node_id, 8)
    location = get_location(loc.id)
    node = location.nodes[0]
    for i in range(2):
        allocations.claim_free_allocation(node, Random(i), location)

    claimants = 6
    barrier = threading.Barrier(claimants)

    def attempt(i):
        barrier.wait()
        try:
            return allocations.claim_free_allocation(node, Random(100 + i), location)
        except LocationAtCapacityError:
            return None

    with ThreadPoolExecutor(max_workers=claimants) as pool:
        results = list(pool.map(attempt, range(claimants)))

    assert len([r for r in results if r is not None]) == 1
    assert count_bound_instances(loc.id) == 3
