"""
User management endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, status

from .auth import ReturnsSystem, get_current_principal, get_system
from .schemas import CreateUserRequest, StatusRequest, UpdateUserRequest, user_response
from ..principals import Principal


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_user(
    request: CreateUserRequest,
    principal: Principal = Depends(get_current_principal),
    system: ReturnsSystem = Depends(get_system)
):
    user = system.user_manager.create_user(
        principal,
        email=request.email,
        name=request.name,
        password=request.password,
        role=request.role,
        organization_id=request.organization_id
    )
    return {"user": user_response(user), "message": "User created successfully"}


@router.get("")
async def list_users(
    organization_id: Optional[str] = None,
    role: Optional[str] = None,
    is_active: Optional[bool] = None,
    principal: Principal = Depends(get_current_principal),
    system: ReturnsSystem = Depends(get_system)
):
    users = system.user_manager.list_users(
        principal, organization_id=organization_id, role=role, is_active=is_active
    )
    return {"users": [user_response(u) for u in users]}


@router.get("/me")
async def get_me(
    principal: Principal = Depends(get_current_principal),
    system: ReturnsSystem = Depends(get_system)
):
    """Profile of the authenticated caller"""
    user = system.user_manager.get_user(principal, principal.user_id)
    return {"user": user_response(user)}


@router.get("/{user_id}")
async def get_user(
    user_id: str,
    principal: Principal = Depends(get_current_principal),
    system: ReturnsSystem = Depends(get_system)
):
    user = system.user_manager.get_user(principal, user_id)
    return {"user": user_response(user)}


@router.put("/{user_id}")
async def update_user(
    user_id: str,
    request: UpdateUserRequest,
    principal: Principal = Depends(get_current_principal),
    system: ReturnsSystem = Depends(get_system)
):
    user = system.user_manager.update_user(
        principal,
        user_id,
        name=request.name,
        role=request.role,
        organization_id=request.organization_id,
        password=request.password
    )
    return {"user": user_response(user), "message": "User updated successfully"}


@router.patch("/{user_id}/status")
async def set_user_status(
    user_id: str,
    request: StatusRequest,
    principal: Principal = Depends(get_current_principal),
    system: ReturnsSystem = Depends(get_system)
):
    user = system.user_manager.set_active(principal, user_id, request.is_active)
    return {"user": user_response(user)}
