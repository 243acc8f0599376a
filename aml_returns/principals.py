"""
Authenticated caller and access rules.

Every operation receives the caller as an explicit Principal value; nothing
reads identity from ambient request state.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .errors import ForbiddenError


class UserRole(Enum):
    """User roles"""
    ADMIN = "admin"            # Supervisory authority staff
    ORG_ADMIN = "org_admin"    # Manages a reporting organization
    ORG_USER = "org_user"      # Prepares returns for an organization


@dataclass(frozen=True)
class Principal:
    """Verified identity of the caller"""
    user_id: str
    email: str
    role: UserRole
    organization_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    def belongs_to(self, organization_id: str) -> bool:
        """Check if the caller is a member of the organization"""
        return self.organization_id is not None and self.organization_id == organization_id

    def can_access(self, organization_id: str) -> bool:
        """Admins see every organization; members see their own"""
        return self.is_admin or self.belongs_to(organization_id)


def require_admin(principal: Principal, action: str) -> None:
    """Raise ForbiddenError unless the caller is an administrator"""
    if not principal.is_admin:
        raise ForbiddenError(f"Admin access required to {action}")


def require_access(principal: Principal, organization_id: str, action: str) -> None:
    """Raise ForbiddenError unless the caller is an admin or a member of the organization"""
    if not principal.can_access(organization_id):
        raise ForbiddenError(f"Access denied: cannot {action} for another organization")


def require_member(principal: Principal, organization_id: str, action: str) -> None:
    """Raise ForbiddenError unless the caller belongs to the organization"""
    if not principal.belongs_to(organization_id):
        raise ForbiddenError(f"You can only {action} for your own organization")
