"""
User Registry Module

Identity records for the people who prepare and review returns. Admins
belong to the supervisory authority and carry no organization; every other
user is owned by exactly one reporting organization.
"""

import hashlib
import hmac
import re
import secrets
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .audit import AuditTrail, AuditEventType
from .errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from .logging_config import get_logger, log_action
from .organizations import EMAIL_PATTERN, OrganizationManager
from .principals import Principal, UserRole, require_access, require_admin
from .storage import DuplicateKeyError, StorageInterface, StorageRecord, parse_optional_datetime


logger = get_logger("aml_returns.users")

MIN_PASSWORD_LENGTH = 8


@dataclass(frozen=True)
class User(StorageRecord):
    """Registered user"""
    email: str
    name: str
    role: UserRole
    organization_id: Optional[str] = None
    is_active: bool = True
    last_login: Optional[datetime] = None
    password_hash: Optional[str] = None
    password_salt: Optional[str] = None
    created_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['role'] = self.role.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'User':
        if isinstance(data.get('role'), str):
            data['role'] = UserRole(data['role'])
        data['last_login'] = parse_optional_datetime(data.get('last_login'))
        return super().from_dict(data)

    def public_dict(self) -> Dict[str, Any]:
        """Dictionary without credential material"""
        result = self.to_dict()
        result.pop('password_hash', None)
        result.pop('password_salt', None)
        return result


def _coerce_role(role: Any) -> UserRole:
    if isinstance(role, UserRole):
        return role
    try:
        return UserRole(str(role).lower())
    except ValueError:
        raise ValidationError(f"Unknown role: {role}")


class UserManager:
    """Maintains users and turns them into authenticated principals"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 organizations: OrganizationManager):
        self.storage = storage
        self.audit_trail = audit_trail
        self.organizations = organizations
        self.table_name = "users"

    # User Management

    def create_user(
        self,
        principal: Principal,
        email: str,
        name: str,
        password: str,
        role: Any,
        organization_id: Optional[str] = None
    ) -> User:
        """
        Create a new user

        Admins carry no organization; organization users must reference an
        existing organization. Email addresses are unique (case insensitive).
        """
        require_admin(principal, "create users")

        email = (email or "").strip().lower()
        name = (name or "").strip()
        role = _coerce_role(role)

        if not re.match(EMAIL_PATTERN, email):
            raise ValidationError("Invalid email format")
        if not name:
            raise ValidationError("Name is required")
        self._validate_password(password)

        if role == UserRole.ADMIN:
            organization_id = None
        elif not organization_id:
            raise ValidationError("Organization users must belong to an organization")

        now = datetime.now(timezone.utc)
        salt = self._generate_salt()
        user = User(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            email=email,
            name=name,
            role=role,
            organization_id=organization_id,
            password_hash=self._hash_password(password, salt),
            password_salt=salt,
            created_by=principal.user_id
        )

        try:
            with self.storage.atomic():
                if organization_id and not self.organizations.find(organization_id):
                    raise NotFoundError("Organization not found")
                self.storage.insert(self.table_name, user.id, user.to_dict(), unique_key=f"email:{email}")
                self.audit_trail.log_event(
                    AuditEventType.USER_CREATED,
                    "user",
                    user.id,
                    {"email": email, "role": role.value, "organization_id": organization_id},
                    principal.user_id
                )
        except DuplicateKeyError:
            raise ConflictError("User with this email already exists")

        log_action(
            logger, "info", f"User created: {email}",
            user_id=principal.user_id, action="create_user", resource=user.id
        )
        return user

    def find(self, user_id: str) -> Optional[User]:
        """Load a user without access checks"""
        data = self.storage.load(self.table_name, user_id)
        if not data:
            return None
        return User.from_dict(data)

    def get_user(self, principal: Principal, user_id: str) -> User:
        """Get a user; visible to admins, to the user and to members of its organization"""
        user = self.find(user_id)
        if not user:
            raise NotFoundError("User not found")
        if user.id != principal.user_id:
            if user.organization_id is None:
                require_admin(principal, "view administrators")
            else:
                require_access(principal, user.organization_id, "view users")
        return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        """Case-insensitive lookup by email"""
        users = self.storage.find(self.table_name, {'email': email.strip().lower()})
        if not users:
            return None
        return User.from_dict(users[0])

    def list_users(
        self,
        principal: Principal,
        organization_id: Optional[str] = None,
        role: Any = None,
        is_active: Optional[bool] = None
    ) -> List[User]:
        """List users; non-admins only see their own organization"""
        if not principal.is_admin:
            organization_id = organization_id or principal.organization_id
            require_access(principal, organization_id, "list users")

        wanted_role = _coerce_role(role) if role else None
        users = []
        for data in self.storage.load_all(self.table_name):
            user = User.from_dict(data)
            if organization_id and user.organization_id != organization_id:
                continue
            if wanted_role and user.role != wanted_role:
                continue
            if is_active is not None and user.is_active != is_active:
                continue
            users.append(user)

        return sorted(users, key=lambda u: u.email)

    def count_for_organization(self, organization_id: str) -> int:
        return len(self.storage.find(self.table_name, {'organization_id': organization_id}))

    def update_user(
        self,
        principal: Principal,
        user_id: str,
        name: Optional[str] = None,
        role: Any = None,
        organization_id: Optional[str] = None,
        password: Optional[str] = None
    ) -> User:
        """Update user properties; email is immutable"""
        require_admin(principal, "update users")

        changes: Dict[str, Any] = {}
        changed = []
        if name is not None:
            name = name.strip()
            if not name:
                raise ValidationError("Name is required")
            changes['name'] = name
            changed.append('name')
        if role is not None:
            changes['role'] = _coerce_role(role)
            changed.append('role')
        if organization_id is not None:
            changes['organization_id'] = organization_id
            changed.append('organization_id')
        if password is not None:
            self._validate_password(password)
            salt = self._generate_salt()
            changes['password_salt'] = salt
            changes['password_hash'] = self._hash_password(password, salt)
            changed.append('password')

        with self.storage.atomic():
            user = self.find(user_id)
            if not user:
                raise NotFoundError("User not found")
            if organization_id is not None and not self.organizations.find(organization_id):
                raise NotFoundError("Organization not found")

            new_role = changes.get('role', user.role)
            if new_role == UserRole.ADMIN:
                changes['organization_id'] = None
            elif not changes.get('organization_id', user.organization_id):
                raise ValidationError("Organization users must belong to an organization")

            updated = replace(user, updated_at=datetime.now(timezone.utc), **changes)
            self.storage.save(self.table_name, updated.id, updated.to_dict())
            self.audit_trail.log_event(
                AuditEventType.USER_UPDATED, "user", updated.id, {"changed": changed}, principal.user_id
            )

        log_action(
            logger, "info", f"User updated: {updated.email}",
            user_id=principal.user_id, action="update_user", resource=updated.id
        )
        return updated

    def set_active(self, principal: Principal, user_id: str, is_active: bool) -> User:
        """Activate or deactivate a user"""
        require_admin(principal, "change user status")
        if not is_active and user_id == principal.user_id:
            raise InvalidStateError("You cannot deactivate your own account")
        event_type = AuditEventType.USER_ACTIVATED if is_active else AuditEventType.USER_DEACTIVATED

        with self.storage.atomic():
            user = self.find(user_id)
            if not user:
                raise NotFoundError("User not found")
            updated = replace(user, is_active=is_active, updated_at=datetime.now(timezone.utc))
            self.storage.save(self.table_name, updated.id, updated.to_dict())
            self.audit_trail.log_event(event_type, "user", updated.id, {}, principal.user_id)

        log_action(
            logger, "info", f"User {'activated' if is_active else 'deactivated'}: {updated.email}",
            user_id=principal.user_id, action=event_type.value, resource=updated.id
        )
        return updated

    # Credentials and principals

    def verify_password(self, user: User, password: str) -> bool:
        """Verify password against the stored scrypt hash"""
        if not user.password_hash or not user.password_salt:
            return False
        expected = self._hash_password(password, user.password_salt)
        return hmac.compare_digest(user.password_hash, expected)

    def to_principal(self, user: User) -> Principal:
        return Principal(
            user_id=user.id,
            email=user.email,
            role=user.role,
            organization_id=user.organization_id
        )

    # Private helper methods

    def _validate_password(self, password: Optional[str]) -> None:
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

    def _generate_salt(self) -> str:
        """Generate random salt for password hashing"""
        return secrets.token_hex(16)

    def _hash_password(self, password: str, salt: str) -> str:
        """Hash password with salt using scrypt"""
        return hashlib.scrypt(
            password.encode(),
            salt=salt.encode(),
            n=16384, r=8, p=1
        ).hex()
