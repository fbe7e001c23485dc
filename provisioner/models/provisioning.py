"""
provisioner/models/provisioning.py

Request, resolved spec and result models for server provisioning.
"""

from datetime import datetime
from typing import Dict
from pydantic import BaseModel, ConfigDict, Field, field_validator


class ProvisioningRequest(BaseModel):
    """The sole input to the engine. Short-lived, never persisted."""
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    name: str = Field(min_length=3, max_length=191)
    egg_id: int = Field(gt=0)
    location_id: int = Field(gt=0)
    plan_name: str = Field(min_length=1, max_length=100)
    user_id: str = Field(min_length=1, max_length=100)


class ServerCreateBody(BaseModel):
    """HTTP body for POST /v1/servers; the user id comes from the caller."""
    name: str
    egg_id: int
    location_id: int
    plan_name: str

    @field_validator("name", "plan_name")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()


class ProvisionedSpec(BaseModel):
    """Fully resolved creation payload handed to the creation service."""
    model_config = ConfigDict(frozen=True)

    name: str
    owner_id: str
    egg_id: int
    node_id: int
    allocation_id: int
    cpu: int
    memory: int
    disk: int
    swap: int
    io: int
    database_limit: int
    allocation_limit: int
    backup_limit: int
    image: str
    startup: str
    environment: Dict[str, str]
    skip_scripts: bool
    oom_disabled: bool
    plan_name: str
    activated_on: datetime
    expires_at: datetime


class InstanceHandle(BaseModel):
    """What the creation service returns when it accepts a spec."""
    model_config = ConfigDict(frozen=True)

    instance_id: str
    status: str = "installing"


class ProvisionedServerHandle(BaseModel):
    model_config = ConfigDict(frozen=True)

    instance_id: str
    name: str
