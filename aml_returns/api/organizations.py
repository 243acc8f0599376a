"""
Organization management endpoints
"""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, status

from .auth import ReturnsSystem, get_current_principal, get_system
from .schemas import (
    CreateOrganizationRequest,
    StatusRequest,
    UpdateOrganizationRequest,
    organization_response,
)
from ..principals import Principal


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_organization(
    request: CreateOrganizationRequest,
    principal: Principal = Depends(get_current_principal),
    system: ReturnsSystem = Depends(get_system)
):
    """Register a new reporting organization (admin only)"""
    organization = system.organization_manager.create_organization(
        principal,
        code=request.code,
        name=request.name,
        org_type=request.type,
        contact_email=request.contact_email,
        contact_phone=request.contact_phone,
        contact_person=request.contact_person,
        address=request.address,
        sector=request.sector,
        registration_no=request.registration_no
    )
    return {"organization": organization_response(organization), "message": "Organization created successfully"}


@router.get("")
async def list_organizations(
    type: Optional[str] = None,
    is_active: Optional[bool] = None,
    search: Optional[str] = None,
    principal: Principal = Depends(get_current_principal),
    system: ReturnsSystem = Depends(get_system)
):
    """List organizations with optional filters (admin only)"""
    organizations = system.organization_manager.list_organizations(
        principal, org_type=type, is_active=is_active, search=search
    )

    result = []
    for organization in organizations:
        item = organization_response(organization)
        item["user_count"] = system.user_manager.count_for_organization(organization.id)
        result.append(item)
    return {"organizations": result}


@router.get("/code/{code}")
async def get_organization_by_code(
    code: str,
    principal: Principal = Depends(get_current_principal),
    system: ReturnsSystem = Depends(get_system)
):
    organization = system.organization_manager.get_organization_by_code(principal, code)
    return {"organization": organization_response(organization)}


@router.get("/{organization_id}")
async def get_organization(
    organization_id: str,
    principal: Principal = Depends(get_current_principal),
    system: ReturnsSystem = Depends(get_system)
):
    organization = system.organization_manager.get_organization(principal, organization_id)
    return {"organization": organization_response(organization)}


@router.get("/{organization_id}/statistics")
async def get_organization_statistics(
    organization_id: str,
    year: Optional[int] = None,
    principal: Principal = Depends(get_current_principal),
    system: ReturnsSystem = Depends(get_system)
):
    """Compliance statistics of one organization for a year"""
    year = year or datetime.now(timezone.utc).year
    statistics = system.aggregator.organization_statistics(principal, organization_id, year)
    return {"statistics": statistics}


@router.put("/{organization_id}")
async def update_organization(
    organization_id: str,
    request: UpdateOrganizationRequest,
    principal: Principal = Depends(get_current_principal),
    system: ReturnsSystem = Depends(get_system)
):
    changes = request.model_dump(exclude_none=True)
    if "type" in changes:
        changes["org_type"] = changes.pop("type")

    organization = system.organization_manager.update_organization(principal, organization_id, **changes)
    return {"organization": organization_response(organization), "message": "Organization updated successfully"}


@router.patch("/{organization_id}/status")
async def set_organization_status(
    organization_id: str,
    request: StatusRequest,
    principal: Principal = Depends(get_current_principal),
    system: ReturnsSystem = Depends(get_system)
):
    """Activate or deactivate an organization"""
    organization = system.organization_manager.set_active(principal, organization_id, request.is_active)
    state = "activated" if organization.is_active else "deactivated"
    return {"organization": organization_response(organization), "message": f"Organization {state} successfully"}


@router.delete("/{organization_id}")
async def delete_organization(
    organization_id: str,
    principal: Principal = Depends(get_current_principal),
    system: ReturnsSystem = Depends(get_system)
):
    system.organization_manager.delete_organization(principal, organization_id)
    return {"message": "Organization deleted successfully"}
