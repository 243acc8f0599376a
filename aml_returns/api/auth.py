"""
Authentication and system wiring dependencies
"""

from typing import Optional

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..audit import AuditTrail
from ..config import get_config
from ..logging_config import get_logger
from ..organizations import OrganizationManager
from ..principals import Principal
from ..reporting import ComplianceAggregator
from ..storage import InMemoryStorage, SQLiteStorage, StorageInterface
from ..submissions import SubmissionManager
from ..users import UserManager


logger = get_logger("aml_returns.api")

# JWT Security
security = HTTPBearer(auto_error=False)


class ReturnsSystem:
    """Returns service with all components initialized"""

    def __init__(self, storage: Optional[StorageInterface] = None, use_sqlite: bool = True):
        config = get_config()

        # Initialize storage
        if storage is not None:
            self.storage = storage
        elif use_sqlite:
            self.storage = SQLiteStorage(config.database_path)
        else:
            self.storage = InMemoryStorage()

        self.audit_trail = AuditTrail(self.storage)
        self.organization_manager = OrganizationManager(self.storage, self.audit_trail)
        self.user_manager = UserManager(self.storage, self.audit_trail, self.organization_manager)
        self.submission_manager = SubmissionManager(
            self.storage, self.audit_trail, self.organization_manager,
            max_page_size=config.max_page_size
        )
        self.aggregator = ComplianceAggregator(self.storage, self.organization_manager, self.audit_trail)


_system: Optional[ReturnsSystem] = None


# Dependency to get the returns system
def get_system() -> ReturnsSystem:
    global _system
    if _system is None:
        _system = ReturnsSystem(use_sqlite=True)
    return _system


def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    system: ReturnsSystem = Depends(get_system)
) -> Principal:
    """
    Validate the bearer token and resolve the caller

    Tokens are issued elsewhere and carry ``id``, ``email``, ``role`` and
    ``organizationId`` claims. The stored user is authoritative for role
    and organization; it must exist and be active, as must its organization.
    """
    if not credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")

    config = get_config()
    try:
        payload = jwt.decode(credentials.credentials, config.jwt_secret, algorithms=[config.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("id")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")

    user = system.user_manager.find(user_id)
    if not user or not user.is_active:
        logger.warning(f"Rejected token for unknown or inactive user {user_id}")
        raise HTTPException(status_code=401, detail="User not found or inactive")

    if user.organization_id:
        organization = system.organization_manager.find(user.organization_id)
        if not organization or not organization.is_active:
            raise HTTPException(status_code=403, detail="Organization is inactive")

    return system.user_manager.to_principal(user)
