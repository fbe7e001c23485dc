"""
provisioner/models/entitlement.py

Entitlement and reservation models.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class Entitlement(BaseModel):
    """
    Entitlement is a user's purchased vs. activated instance count for one plan.

    Invariant: 0 <= activated_count <= purchased_count.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    plan_name: str
    purchased_count: int
    activated_count: int
    plan_id: Optional[int] = None
    activated_on: Optional[datetime] = None

    @property
    def remaining(self) -> int:
        return max(0, self.purchased_count - self.activated_count)


class ReservationStatus(str, Enum):
    HELD = "held"
    RELEASED = "released"
    COMMITTED = "committed"


class ReservationToken(BaseModel):
    """Identifies one held activation slot."""
    model_config = ConfigDict(frozen=True)

    reservation_id: str
    user_id: str
    plan_name: str
