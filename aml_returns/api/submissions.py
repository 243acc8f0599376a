"""
Monthly return endpoints
"""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status

from .auth import ReturnsSystem, get_current_principal, get_system
from .schemas import (
    ApproveSubmissionRequest,
    CreateSubmissionRequest,
    RejectSubmissionRequest,
    UpdateSubmissionRequest,
    indicators_payload,
    submission_response,
)
from ..config import get_config
from ..indicators import blank_return
from ..principals import Principal
from ..submissions import SUBMISSION_THRESHOLD


router = APIRouter()


@router.get("/template")
async def get_template(principal: Principal = Depends(get_current_principal)):
    """Blank indicator form for a new monthly return"""
    indicators = [entry.to_dict() for entry in blank_return()]
    return {"indicators": indicators, "threshold": SUBMISSION_THRESHOLD}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_submission(
    request: CreateSubmissionRequest,
    principal: Principal = Depends(get_current_principal),
    system: ReturnsSystem = Depends(get_system)
):
    """Create a draft return for the caller's organization"""
    organization_id = request.organization_id or principal.organization_id
    if not organization_id:
        raise HTTPException(status_code=400, detail="organization_id is required")

    submission = system.submission_manager.create_submission(
        principal,
        organization_id=organization_id,
        month=request.month,
        year=request.year,
        indicators=indicators_payload(request.indicators)
    )
    return {"submission": submission_response(submission), "message": "Submission created successfully"}


@router.get("")
async def list_submissions(
    status: Optional[str] = None,
    month: Optional[int] = None,
    year: Optional[int] = None,
    organization_id: Optional[str] = None,
    page: int = 1,
    limit: Optional[int] = None,
    principal: Principal = Depends(get_current_principal),
    system: ReturnsSystem = Depends(get_system)
):
    """List all submissions, newest first (admin only)"""
    result = system.submission_manager.list_submissions(
        principal,
        status=status,
        month=month,
        year=year,
        organization_id=organization_id,
        page=page,
        limit=limit or get_config().default_page_size
    )
    return {
        "submissions": [submission_response(s) for s in result["submissions"]],
        "pagination": result["pagination"]
    }


@router.get("/statistics")
async def get_statistics(
    year: Optional[int] = None,
    organization_id: Optional[str] = None,
    principal: Principal = Depends(get_current_principal),
    system: ReturnsSystem = Depends(get_system)
):
    """Counts by status and month"""
    year = year or datetime.now(timezone.utc).year
    statistics = system.aggregator.submission_statistics(principal, year, organization_id)
    return {"statistics": statistics}


@router.get("/organization/{organization_id}")
async def list_organization_submissions(
    organization_id: str,
    status: Optional[str] = None,
    month: Optional[int] = None,
    year: Optional[int] = None,
    principal: Principal = Depends(get_current_principal),
    system: ReturnsSystem = Depends(get_system)
):
    """Submissions of one organization, most recent period first"""
    submissions = system.submission_manager.list_organization_submissions(
        principal, organization_id, status=status, month=month, year=year
    )
    return {"submissions": [submission_response(s) for s in submissions]}


@router.get("/{submission_id}")
async def get_submission(
    submission_id: str,
    principal: Principal = Depends(get_current_principal),
    system: ReturnsSystem = Depends(get_system)
):
    submission = system.submission_manager.get_submission(principal, submission_id)
    return {"submission": submission_response(submission)}


@router.put("/{submission_id}")
async def update_submission(
    submission_id: str,
    request: UpdateSubmissionRequest,
    principal: Principal = Depends(get_current_principal),
    system: ReturnsSystem = Depends(get_system)
):
    """Replace the indicators of a draft or rejected return"""
    submission = system.submission_manager.update_indicators(
        principal, submission_id, indicators_payload(request.indicators)
    )
    return {"submission": submission_response(submission), "message": "Submission updated successfully"}


@router.post("/{submission_id}/submit")
async def submit_submission(
    submission_id: str,
    principal: Principal = Depends(get_current_principal),
    system: ReturnsSystem = Depends(get_system)
):
    submission = system.submission_manager.submit_for_review(principal, submission_id)
    return {"submission": submission_response(submission), "message": "Submission sent for review"}


@router.post("/{submission_id}/approve")
async def approve_submission(
    submission_id: str,
    request: Optional[ApproveSubmissionRequest] = None,
    principal: Principal = Depends(get_current_principal),
    system: ReturnsSystem = Depends(get_system)
):
    comments = request.comments if request else None
    submission = system.submission_manager.approve(principal, submission_id, comments)
    return {"submission": submission_response(submission), "message": "Submission approved"}


@router.post("/{submission_id}/reject")
async def reject_submission(
    submission_id: str,
    request: RejectSubmissionRequest,
    principal: Principal = Depends(get_current_principal),
    system: ReturnsSystem = Depends(get_system)
):
    submission = system.submission_manager.reject(principal, submission_id, request.reason)
    return {"submission": submission_response(submission), "message": "Submission rejected"}


@router.delete("/{submission_id}")
async def delete_submission(
    submission_id: str,
    principal: Principal = Depends(get_current_principal),
    system: ReturnsSystem = Depends(get_system)
):
    system.submission_manager.delete_submission(principal, submission_id)
    return {"message": "Submission deleted successfully"}
