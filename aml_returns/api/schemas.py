"""
Pydantic schemas for API requests and responses
"""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from ..organizations import Organization
from ..submissions import Submission
from ..users import User


class IndicatorModel(BaseModel):
    code: str = Field(..., description="Indicator code, e.g. 1.1")
    label: str = ""
    value: Optional[Union[int, float, str]] = Field(None, description="Raw value; blank or null when not filled")


# Submission schemas
class CreateSubmissionRequest(BaseModel):
    organization_id: Optional[str] = Field(None, description="Defaults to the caller's organization")
    month: int = Field(..., description="Reporting month (1-12)")
    year: int = Field(..., description="Reporting year (2020-2100)")
    indicators: List[IndicatorModel]


class UpdateSubmissionRequest(BaseModel):
    indicators: List[IndicatorModel]


class ApproveSubmissionRequest(BaseModel):
    comments: Optional[str] = None


class RejectSubmissionRequest(BaseModel):
    reason: Optional[str] = Field(None, description="Mandatory rejection reason")


# Organization schemas
class CreateOrganizationRequest(BaseModel):
    code: str
    name: str
    type: str = Field(..., description="Organization type (regulator, commercial_bank, mfi, ...)")
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    contact_person: Optional[str] = None
    address: Optional[str] = None
    sector: Optional[str] = None
    registration_no: Optional[str] = None


class UpdateOrganizationRequest(BaseModel):
    name: Optional[str] = None
    type: Optional[str] = None
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    contact_person: Optional[str] = None
    address: Optional[str] = None
    sector: Optional[str] = None
    registration_no: Optional[str] = None
    is_active: Optional[bool] = None


class StatusRequest(BaseModel):
    is_active: bool


# User schemas
class CreateUserRequest(BaseModel):
    email: str
    name: str
    password: str
    role: str = Field(..., description="admin, org_admin or org_user")
    organization_id: Optional[str] = None


class UpdateUserRequest(BaseModel):
    name: Optional[str] = None
    role: Optional[str] = None
    organization_id: Optional[str] = None
    password: Optional[str] = None


def indicators_payload(indicators: List[IndicatorModel]) -> List[Dict[str, Any]]:
    return [indicator.model_dump() for indicator in indicators]


def submission_response(submission: Submission) -> Dict[str, Any]:
    return submission.to_dict()


def organization_response(organization: Organization) -> Dict[str, Any]:
    result = organization.to_dict()
    result['type'] = result.pop('org_type')
    return result


def user_response(user: User) -> Dict[str, Any]:
    return user.public_dict()
