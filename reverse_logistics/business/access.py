# ==== ACTORS AND RECORD ACCESS ==== #

"""
Actors performing workflow operations and record-level access checks.

Company (tenant) scoping and customer ownership are enforced here; KYC and
access-tier authorization stay with the calling layer.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from reverse_logistics.business.errors import ForbiddenError


class ActorRole(str, Enum):
    CUSTOMER = "customer"
    SELLER = "seller"
    WAREHOUSE = "warehouse"
    ADMIN = "admin"
    SYSTEM = "system"


@dataclass(frozen=True)
class Actor:
    """Who performs an operation.

    ``company_id`` scopes sellers and warehouse staff to their company;
    ``customer_id`` scopes customers to their own returns. Admin and system
    actors see every company.
    """

    id: str
    role: ActorRole
    company_id: Optional[str] = None
    customer_id: Optional[str] = None

    @classmethod
    def system(cls, name: str = "deadline-monitor") -> "Actor":
        return cls(id=name, role=ActorRole.SYSTEM)

    @property
    def is_privileged(self) -> bool:
        return self.role in (ActorRole.ADMIN, ActorRole.SYSTEM)

    def as_audit(self) -> Dict[str, Any]:
        """Compact form stored in timelines and action logs."""
        return {"id": self.id, "role": self.role.value}


def ensure_company_access(actor: Actor, company_id: str, entity: str) -> None:
    """Reject access to another company's record.

    Customers never pass; records they own go through ``ensure_record_access``.

    Raises:
        ForbiddenError: Actor is scoped to a different company
    """
    if actor.is_privileged:
        return
    if actor.role == ActorRole.CUSTOMER:
        raise ForbiddenError(f"Customers cannot access this {entity}")
    if actor.company_id != company_id:
        raise ForbiddenError(f"Access to this {entity} is not allowed for company '{actor.company_id}'")


def ensure_record_access(actor: Actor, company_id: str, customer_id: Optional[str], entity: str) -> None:
    """Company check plus customer ownership for customer actors.

    Raises:
        ForbiddenError: Cross-company or cross-customer access
    """
    if actor.role == ActorRole.CUSTOMER:
        if customer_id is None or actor.customer_id != customer_id:
            raise ForbiddenError(f"Access to this {entity} is not allowed for this customer")
        return
    ensure_company_access(actor, company_id, entity)


def ensure_role(actor: Actor, *roles: ActorRole) -> None:
    """Require one of ``roles``; admin and system always pass."""
    if actor.is_privileged or actor.role in roles:
        return
    allowed = ", ".join(role.value for role in roles)
    raise ForbiddenError(f"Role '{actor.role.value}' cannot perform this operation (allowed: {allowed})")
