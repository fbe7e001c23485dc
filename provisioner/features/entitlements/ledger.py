"""
provisioner/features/entitlements/ledger.py

Entitlement ledger.

Handles:
- Reserving an activation slot against a user's purchased count
- Compensating release of a held reservation (idempotent)
- Committing a reservation once the server exists
- Recording purchases on behalf of the external purchase process

Every mutation is a single conditional UPDATE scoped to one entitlement row,
so concurrent reservations for the same (user, plan) are linearized by the
database and the quota invariant holds without any process-level lock.
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4
import logging

from sqlalchemy import select, insert, update

from provisioner.core.database import get_db_session, entitlements, entitlement_reservations
from provisioner.core.errors import PlanNotOwnedError, QuotaExceededError, InvalidInputError
from provisioner.models.entitlement import Entitlement, ReservationStatus, ReservationToken


logger = logging.getLogger(__name__)


def _normalize_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def _key(user_id: str, plan_name: str):
    return (entitlements.c.user_id == user_id) & (entitlements.c.plan_name == plan_name)


def get_entitlement(user_id: str, plan_name: str) -> Optional[Entitlement]:
    """Read the entitlement row for (user_id, plan_name), if any."""
    with get_db_session() as session:
        row = session.execute(select(entitlements).where(_key(user_id, plan_name))).first()
        if not row:
            return None
        return Entitlement(
            user_id=row.user_id,
            plan_name=row.plan_name,
            purchased_count=row.purchased_count,
            activated_count=row.activated_count,
            plan_id=row.plan_id,
            activated_on=row.activated_on,
        )


def record_purchase(user_id: str, plan_name: str, purchased_count: int) -> Optional[Entitlement]:
    """Set the purchased count for (user_id, plan_name), creating the row lazily.

    Owned by the purchase process. The count can never drop below what is
    already activated.
    """
    if purchased_count < 0:
        raise InvalidInputError("purchased_count must be >= 0", details={"purchased_count": purchased_count})

    with get_db_session() as session:
        result = session.execute(
            update(entitlements)
            .where(_key(user_id, plan_name))
            .where(entitlements.c.activated_count <= purchased_count)
            .values(purchased_count=purchased_count)
        )
        if result.rowcount == 0:
            row = session.execute(
                select(entitlements.c.activated_count).where(_key(user_id, plan_name))
            ).first()
            if row is not None:
                raise InvalidInputError(
                    f"Cannot lower {plan_name} purchases below {row.activated_count} active servers",
                    details={"plan_name": plan_name, "activated": row.activated_count},
                )
            session.execute(
                insert(entitlements).values(
                    user_id=user_id,
                    plan_name=plan_name,
                    purchased_count=purchased_count,
                    activated_count=0,
                )
            )

    logger.info(
        "[ledger] PURCHASE_RECORDED",
        extra={"user_id": user_id, "plan_name": plan_name, "purchased_count": purchased_count},
    )
    return get_entitlement(user_id, plan_name)


def reserve(user_id: str, plan_name: str) -> ReservationToken:
    """Take one activation slot for (user_id, plan_name).

    Raises:
        PlanNotOwnedError: no entitlement row exists for the pair
        QuotaExceededError: every purchased slot is already activated
    """
    reservation_id = str(uuid4())
    row = None
    with get_db_session() as session:
        result = session.execute(
            update(entitlements)
            .where(_key(user_id, plan_name))
            .where(entitlements.c.activated_count < entitlements.c.purchased_count)
            .values(activated_count=entitlements.c.activated_count + 1)
        )
        reserved = result.rowcount == 1
        if reserved:
            session.execute(
                insert(entitlement_reservations).values(
                    id=reservation_id,
                    user_id=user_id,
                    plan_name=plan_name,
                    status=ReservationStatus.HELD.value,
                )
            )
        else:
            row = session.execute(
                select(entitlements.c.purchased_count, entitlements.c.activated_count)
                .where(_key(user_id, plan_name))
            ).first()

    if not reserved:
        if row is None:
            logger.warning(
                "[ledger] PLAN_NOT_OWNED",
                extra={"user_id": user_id, "plan_name": plan_name},
            )
            raise PlanNotOwnedError(plan_name)
        logger.warning(
            "[ledger] QUOTA_EXCEEDED",
            extra={
                "user_id": user_id,
                "plan_name": plan_name,
                "purchased_count": row.purchased_count,
                "activated_count": row.activated_count,
            },
        )
        raise QuotaExceededError(plan_name, row.purchased_count)

    logger.info(
        "[ledger] RESERVED",
        extra={"user_id": user_id, "plan_name": plan_name, "reservation_id": reservation_id},
    )
    return ReservationToken(reservation_id=reservation_id, user_id=user_id, plan_name=plan_name)


def release(token: ReservationToken) -> bool:
    """Give a held slot back. Returns True if this call released it.

    Releasing twice, or releasing a committed reservation, is a no-op.
    """
    with get_db_session() as session:
        flipped = session.execute(
            update(entitlement_reservations)
            .where(entitlement_reservations.c.id == token.reservation_id)
            .where(entitlement_reservations.c.status == ReservationStatus.HELD.value)
            .values(status=ReservationStatus.RELEASED.value)
        )
        if flipped.rowcount == 0:
            logger.debug("[ledger] RELEASE_NOOP", extra={"reservation_id": token.reservation_id})
            return False

        session.execute(
            update(entitlements)
            .where(_key(token.user_id, token.plan_name))
            .where(entitlements.c.activated_count > 0)
            .values(activated_count=entitlements.c.activated_count - 1)
        )

    logger.info(
        "[ledger] RELEASED",
        extra={
            "user_id": token.user_id,
            "plan_name": token.plan_name,
            "reservation_id": token.reservation_id,
        },
    )
    return True


def commit(token: ReservationToken, *, plan_id: int, activated_on: Optional[datetime] = None) -> bool:
    """Finalize a held reservation and record activation metadata.

    Returns False if the reservation was no longer held.
    """
    activated_on = _normalize_now(activated_on)
    with get_db_session() as session:
        flipped = session.execute(
            update(entitlement_reservations)
            .where(entitlement_reservations.c.id == token.reservation_id)
            .where(entitlement_reservations.c.status == ReservationStatus.HELD.value)
            .values(status=ReservationStatus.COMMITTED.value)
        )
        if flipped.rowcount == 0:
            logger.warning("[ledger] COMMIT_NOOP", extra={"reservation_id": token.reservation_id})
            return False

        session.execute(
            update(entitlements)
            .where(_key(token.user_id, token.plan_name))
            .values(plan_id=plan_id, activated_on=activated_on)
        )

    logger.info(
        "[ledger] COMMITTED",
        extra={
            "user_id": token.user_id,
            "plan_name": token.plan_name,
            "reservation_id": token.reservation_id,
            "plan_id": plan_id,
        },
    )
    return True


def get_reservation_status(reservation_id: str) -> Optional[ReservationStatus]:
    with get_db_session() as session:
        row = session.execute(
            select(entitlement_reservations.c.status)
            .where(entitlement_reservations.c.id == reservation_id)
        ).first()
    return ReservationStatus(row.status) if row else None
