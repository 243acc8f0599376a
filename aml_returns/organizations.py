"""
Organization Registry Module

Reporting organizations (regulators, law enforcement agencies, ministries,
professional bodies) that file monthly returns. Organizations are created
and maintained by administrators, soft-deactivated rather than deleted, and
hard-deleted only while nothing references them.
"""

import re
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .audit import AuditTrail, AuditEventType
from .errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from .logging_config import get_logger, log_action
from .principals import Principal, require_access, require_admin
from .storage import DuplicateKeyError, StorageInterface, StorageRecord


logger = get_logger("aml_returns.organizations")

EMAIL_PATTERN = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'


class OrganizationType(Enum):
    """Kinds of reporting organizations"""
    FIA = "fia"
    REGULATOR = "regulator"
    MINISTRY = "ministry"
    PROFESSIONAL = "professional"
    LAW_ENFORCEMENT = "law_enforcement"
    PROSECUTION = "prosecution"
    INTERNATIONAL = "international"
    COMMERCIAL_BANK = "commercial_bank"
    MFI = "mfi"
    INSURANCE = "insurance"
    FOREX_BUREAU = "forex_bureau"
    OTHER = "other"


@dataclass(frozen=True)
class Organization(StorageRecord):
    """Reporting organization"""
    code: str  # Unique short code, e.g. "BOU"
    name: str
    org_type: OrganizationType
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    contact_person: Optional[str] = None
    address: Optional[str] = None
    sector: Optional[str] = None
    registration_no: Optional[str] = None
    is_active: bool = True
    created_by: Optional[str] = None
    updated_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['org_type'] = self.org_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Organization':
        if isinstance(data.get('org_type'), str):
            data['org_type'] = OrganizationType(data['org_type'])
        return super().from_dict(data)


# Fields an administrator may change after creation
UPDATABLE_FIELDS = (
    'name', 'org_type', 'contact_email', 'contact_phone', 'contact_person',
    'address', 'sector', 'registration_no', 'is_active'
)


def _validate_email(email: Optional[str]) -> None:
    if email and not re.match(EMAIL_PATTERN, email):
        raise ValidationError("Invalid email format")


def _coerce_type(org_type: Any) -> OrganizationType:
    if isinstance(org_type, OrganizationType):
        return org_type
    try:
        return OrganizationType(str(org_type).lower())
    except ValueError:
        raise ValidationError(f"Unknown organization type: {org_type}")


class OrganizationManager:
    """Creates, maintains and looks up reporting organizations"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "organizations"

    def create_organization(
        self,
        principal: Principal,
        code: str,
        name: str,
        org_type: Any,
        contact_email: Optional[str] = None,
        contact_phone: Optional[str] = None,
        contact_person: Optional[str] = None,
        address: Optional[str] = None,
        sector: Optional[str] = None,
        registration_no: Optional[str] = None
    ) -> Organization:
        """
        Register a new organization

        Raises:
            ForbiddenError: caller is not an admin
            ValidationError: missing code/name, bad type or email
            ConflictError: code already registered
        """
        require_admin(principal, "create organizations")

        code = (code or "").strip()
        name = (name or "").strip()
        if not code:
            raise ValidationError("Organization code is required")
        if not name:
            raise ValidationError("Organization name is required")
        _validate_email(contact_email)

        now = datetime.now(timezone.utc)
        organization = Organization(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            code=code,
            name=name,
            org_type=_coerce_type(org_type),
            contact_email=contact_email,
            contact_phone=contact_phone,
            contact_person=contact_person,
            address=address,
            sector=sector,
            registration_no=registration_no,
            created_by=principal.user_id
        )

        try:
            with self.storage.atomic():
                self.storage.insert(
                    self.table_name, organization.id, organization.to_dict(),
                    unique_key=f"code:{code.upper()}"
                )
                self.audit_trail.log_event(
                    AuditEventType.ORGANIZATION_CREATED,
                    "organization",
                    organization.id,
                    {"code": code, "name": name, "type": organization.org_type.value},
                    principal.user_id
                )
        except DuplicateKeyError:
            raise ConflictError("Organization with this code already exists")

        log_action(
            logger, "info", f"Organization created: {code}",
            user_id=principal.user_id, action="create_organization", resource=organization.id
        )
        return organization

    def find(self, organization_id: str) -> Optional[Organization]:
        """Load an organization without access checks"""
        data = self.storage.load(self.table_name, organization_id)
        if not data:
            return None
        return Organization.from_dict(data)

    def find_by_code(self, code: str) -> Optional[Organization]:
        """Case-insensitive lookup by organization code"""
        wanted = code.strip().upper()
        for data in self.storage.load_all(self.table_name):
            if data['code'].upper() == wanted:
                return Organization.from_dict(data)
        return None

    def require(self, organization_id: str) -> Organization:
        """Load an organization or raise NotFoundError"""
        organization = self.find(organization_id)
        if not organization:
            raise NotFoundError("Organization not found")
        return organization

    def get_organization(self, principal: Principal, organization_id: str) -> Organization:
        """Get an organization visible to the caller"""
        organization = self.require(organization_id)
        require_access(principal, organization_id, "view organization details")
        return organization

    def get_organization_by_code(self, principal: Principal, code: str) -> Organization:
        organization = self.find_by_code(code)
        if not organization:
            raise NotFoundError("Organization not found")
        require_access(principal, organization.id, "view organization details")
        return organization

    def all_organizations(self, active_only: bool = False) -> List[Organization]:
        """Every organization, sorted by name"""
        organizations = [Organization.from_dict(data) for data in self.storage.load_all(self.table_name)]
        if active_only:
            organizations = [o for o in organizations if o.is_active]
        return sorted(organizations, key=lambda o: o.name.lower())

    def list_organizations(
        self,
        principal: Principal,
        org_type: Any = None,
        is_active: Optional[bool] = None,
        search: Optional[str] = None
    ) -> List[Organization]:
        """List organizations with optional type, status and name/code search filters"""
        require_admin(principal, "list organizations")

        wanted_type = _coerce_type(org_type) if org_type else None
        needle = search.strip().lower() if search else None

        results = []
        for organization in self.all_organizations():
            if wanted_type and organization.org_type != wanted_type:
                continue
            if is_active is not None and organization.is_active != is_active:
                continue
            if needle and needle not in organization.name.lower() and needle not in organization.code.lower():
                continue
            results.append(organization)
        return results

    def update_organization(self, principal: Principal, organization_id: str, **changes) -> Organization:
        """Update organization details; the code is immutable"""
        require_admin(principal, "update organizations")

        unknown = set(changes) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        changes = {k: v for k, v in changes.items() if v is not None}
        if 'org_type' in changes:
            changes['org_type'] = _coerce_type(changes['org_type'])
        if 'name' in changes:
            changes['name'] = changes['name'].strip()
            if not changes['name']:
                raise ValidationError("Organization name is required")
        _validate_email(changes.get('contact_email'))

        with self.storage.atomic():
            updated = replace(
                self.require(organization_id),
                updated_at=datetime.now(timezone.utc),
                updated_by=principal.user_id,
                **changes
            )
            self.storage.save(self.table_name, updated.id, updated.to_dict())
            self.audit_trail.log_event(
                AuditEventType.ORGANIZATION_UPDATED,
                "organization",
                updated.id,
                {"changed": sorted(changes)},
                principal.user_id
            )

        log_action(
            logger, "info", f"Organization updated: {updated.code}",
            user_id=principal.user_id, action="update_organization", resource=updated.id
        )
        return updated

    def set_active(self, principal: Principal, organization_id: str, is_active: bool) -> Organization:
        """Activate or deactivate an organization"""
        require_admin(principal, "change organization status")
        event_type = (
            AuditEventType.ORGANIZATION_ACTIVATED if is_active
            else AuditEventType.ORGANIZATION_DEACTIVATED
        )

        with self.storage.atomic():
            updated = replace(
                self.require(organization_id),
                is_active=is_active,
                updated_at=datetime.now(timezone.utc),
                updated_by=principal.user_id
            )
            self.storage.save(self.table_name, updated.id, updated.to_dict())
            self.audit_trail.log_event(event_type, "organization", updated.id, {}, principal.user_id)

        log_action(
            logger, "info",
            f"Organization {'activated' if is_active else 'deactivated'}: {updated.code}",
            user_id=principal.user_id, action=event_type.value, resource=updated.id
        )
        return updated

    def delete_organization(self, principal: Principal, organization_id: str) -> None:
        """
        Permanently delete an organization

        Only allowed while no submissions and no users reference it;
        otherwise deactivate instead.
        """
        require_admin(principal, "delete organizations")

        with self.storage.atomic():
            organization = self.require(organization_id)
            if self.storage.find("submissions", {"organization_id": organization_id}):
                raise InvalidStateError(
                    "Cannot delete organization with existing submissions. Deactivate instead."
                )
            if self.storage.find("users", {"organization_id": organization_id}):
                raise InvalidStateError(
                    "Cannot delete organization with existing users. Deactivate instead."
                )

            self.storage.delete(self.table_name, organization_id)
            self.audit_trail.log_event(
                AuditEventType.ORGANIZATION_DELETED,
                "organization",
                organization_id,
                {"code": organization.code},
                principal.user_id
            )

        log_action(
            logger, "info", f"Organization deleted: {organization.code}",
            user_id=principal.user_id, action="delete_organization", resource=organization_id
        )
