"""
Tests for the entitlement ledger: reserve / release / commit and the quota
invariant under concurrent callers.
"""
import random
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import pytest

from provisioner.core.errors import InvalidInputError, PlanNotOwnedError, QuotaExceededError
from provisioner.features.entitlements import ledger
from provisioner.models.entitlement import ReservationStatus


def test_reserve_increments_activated_count(seed):
    seed.purchase("user-1", "Free Tier", 2)

    token = ledger.reserve("user-1", "Free Tier")

    assert token.user_id == "user-1"
    assert token.plan_name == "Free Tier"
    assert ledger.get_entitlement("user-1", "Free Tier").activated_count == 1
    assert ledger.get_reservation_status(token.reservation_id) == ReservationStatus.HELD


def test_reserve_without_entitlement_is_plan_not_owned():
    with pytest.raises(PlanNotOwnedError) as exc:
        ledger.reserve("user-1", "Pro")

    assert exc.value.plan_name == "Pro"
    assert exc.value.code == "plan_not_owned"
    assert ledger.get_entitlement("user-1", "Pro") is None


def test_reserve_at_quota_is_quota_exceeded(seed):
    seed.purchase("user-1", "Free Tier", 1)
    ledger.reserve("user-1", "Free Tier")

    with pytest.raises(QuotaExceededError) as exc:
        ledger.reserve("user-1", "Free Tier")

    assert exc.value.purchased == 1
    assert "(1 allowed)" in exc.value.message
    assert ledger.get_entitlement("user-1", "Free Tier").activated_count == 1


def test_zero_purchases_is_quota_exceeded_not_unowned(seed):
    seed.purchase("user-1", "Free Tier", 0)

    with pytest.raises(QuotaExceededError):
        ledger.reserve("user-1", "Free Tier")


def test_entitlements_are_scoped_per_user_and_plan(seed):
    seed.purchase("user-1", "Free Tier", 1)
    seed.purchase("user-2", "Free Tier", 1)
    seed.purchase("user-1", "Pro", 1)

    ledger.reserve("user-1", "Free Tier")
    ledger.reserve("user-2", "Free Tier")
    ledger.reserve("user-1", "Pro")

    for user_id, plan_name in [("user-1", "Free Tier"), ("user-2", "Free Tier"), ("user-1", "Pro")]:
        assert ledger.get_entitlement(user_id, plan_name).activated_count == 1


def test_release_returns_slot(seed):
    seed.purchase("user-1", "Free Tier", 1)
    token = ledger.reserve("user-1", "Free Tier")

    assert ledger.release(token) is True

    assert ledger.get_entitlement("user-1", "Free Tier").activated_count == 0
    assert ledger.get_reservation_status(token.reservation_id) == ReservationStatus.RELEASED
    # Slot can be taken again
    ledger.reserve("user-1", "Free Tier")


def test_release_is_idempotent(seed):
    seed.purchase("user-1", "Free Tier", 2)
    first = ledger.reserve("user-1", "Free Tier")
    ledger.reserve("user-1", "Free Tier")

    assert ledger.release(first) is True
    assert ledger.release(first) is False
    assert ledger.release(first) is False

    assert ledger.get_entitlement("user-1", "Free Tier").activated_count == 1


def test_commit_records_activation_metadata(seed):
    plan = seed.plan("Free Tier")
    seed.purchase("user-1", "Free Tier", 1)
    token = ledger.reserve("user-1", "Free Tier")
    activated_on = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)

    assert ledger.commit(token, plan_id=plan.id, activated_on=activated_on) is True

    entitlement = ledger.get_entitlement("user-1", "Free Tier")
    assert entitlement.activated_count == 1
    assert entitlement.plan_id == plan.id
    assert entitlement.activated_on.replace(tzinfo=timezone.utc) == activated_on
    assert ledger.get_reservation_status(token.reservation_id) == ReservationStatus.COMMITTED


def test_release_after_commit_is_noop(seed):
    plan = seed.plan("Free Tier")
    seed.purchase("user-1", "Free Tier", 1)
    token = ledger.reserve("user-1", "Free Tier")
    ledger.commit(token, plan_id=plan.id)

    assert ledger.release(token) is False
    assert ledger.get_entitlement("user-1", "Free Tier").activated_count == 1


def test_commit_after_release_is_noop(seed):
    plan = seed.plan("Free Tier")
    seed.purchase("user-1", "Free Tier", 1)
    token = ledger.reserve("user-1", "Free Tier")
    ledger.release(token)

    assert ledger.commit(token, plan_id=plan.id) is False
    assert ledger.get_entitlement("user-1", "Free Tier").activated_count == 0


def test_record_purchase_is_lazy_and_updates_in_place(seed):
    assert ledger.get_entitlement("user-1", "Pro") is None

    seed.purchase("user-1", "Pro", 1)
    entitlement = seed.purchase("user-1", "Pro", 3)

    assert entitlement.purchased_count == 3
    assert entitlement.activated_count == 0


def test_record_purchase_cannot_drop_below_activated(seed):
    seed.purchase("user-1", "Pro", 2)
    ledger.reserve("user-1", "Pro")
    ledger.reserve("user-1", "Pro")

    with pytest.raises(InvalidInputError):
        ledger.record_purchase("user-1", "Pro", 1)

    assert ledger.get_entitlement("user-1", "Pro").purchased_count == 2


def test_concurrent_reserves_against_quota_of_one(seed):
    """Two (or more) racing reservations for one slot: exactly one wins."""
    seed.purchase("user-1", "Free Tier", 1)
    barrier = threading.Barrier(8)

    def attempt():
        barrier.wait()
        try:
            return ledger.reserve("user-1", "Free Tier")
        except QuotaExceededError:
            return None

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: attempt(), range(8)))

    assert len([r for r in results if r is not None]) == 1
    assert ledger.get_entitlement("user-1", "Free Tier").activated_count == 1


def test_quota_invariant_under_mixed_reserve_release(seed):
    """activated_count stays within [0, purchased] for any interleaving."""
    purchased = 3
    seed.purchase("user-1", "Free Tier", purchased)

    def worker(worker_seed: int):
        rng = random.Random(worker_seed)
        held = []
        for _ in range(15):
            if held and rng.random() < 0.5:
                ledger.release(held.pop())
                # Releasing twice must never double-count
                if rng.random() < 0.3 and held:
                    token = held.pop()
                    ledger.release(token)
                    ledger.release(token)
            else:
                try:
                    held.append(ledger.reserve("user-1", "Free Tier"))
                except QuotaExceededError:
                    pass
            count = ledger.get_entitlement("user-1", "Free Tier").activated_count
            assert 0 <= count <= purchased
        return held

    with ThreadPoolExecutor(max_workers=6) as pool:
        leftovers = [token for held in pool.map(worker, range(6)) for token in held]

    assert ledger.get_entitlement("user-1", "Free Tier").activated_count == len(leftovers)

    for token in leftovers:
        ledger.release(token)
    assert ledger.get_entitlement("user-1", "Free Tier").activated_count == 0
