"""
Actor Schema

The authenticated identity performing an operation. Authentication itself
happens outside the core; by the time an Actor reaches a service its
address and role have already been vouched for.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class ActorRole(str, Enum):
    """Roles recognised by the governance workflow."""
    ADMIN = "admin"   # Can claim and execute revoke/reactivate requests
    STAFF = "staff"   # Can issue certificates and file requests


class Actor(BaseModel):
    """An authenticated caller."""

    model_config = ConfigDict(frozen=True)

    address: str = Field(
        ...,
        min_length=1,
        description="Stable identity (wallet address) recorded on the ledger",
    )
    name: str = Field(default="", description="Display name")
    role: ActorRole = ActorRole.STAFF

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN
