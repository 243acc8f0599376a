"""
Submission Lifecycle Module

State machine for monthly AML/CFT returns:

    draft ──submit──> submitted ──approve──> approved
      ^                   │
      │                 reject
      └──update── rejected <┘

Submissions are immutable values. Every transition builds a new value,
persists it through the repository and records an audit event in a single
atomic unit of work.
"""

import math
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .audit import AuditTrail, AuditEventType
from .errors import (
    BelowThresholdError, DuplicatePeriodError, ForbiddenError, InvalidStateError,
    NotFoundError, ValidationError
)
from .indicators import IndicatorEntry, completion_counts, parse_indicators
from .logging_config import get_logger, log_action
from .organizations import OrganizationManager
from .principals import Principal, require_access, require_admin, require_member
from .storage import DuplicateKeyError, StorageInterface, StorageRecord, parse_optional_datetime


logger = get_logger("aml_returns.submissions")

# Minimum completion rate (percent) required to send a return for review
SUBMISSION_THRESHOLD = 80

MIN_YEAR = 2020
MAX_YEAR = 2100


class SubmissionStatus(Enum):
    """Submission lifecycle states"""
    DRAFT = "draft"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"


EDITABLE_STATES = (SubmissionStatus.DRAFT, SubmissionStatus.REJECTED)


@dataclass(frozen=True)
class Submission(StorageRecord):
    """Monthly return of one organization"""
    organization_id: str
    month: int
    year: int
    status: SubmissionStatus
    indicators: Tuple[IndicatorEntry, ...]
    filled_indicators: int
    total_indicators: int
    completion_rate: int
    created_by: str
    submitted_by: Optional[str] = None
    submitted_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    comments: Optional[str] = None

    @property
    def period_key(self) -> str:
        return period_key(self.organization_id, self.month, self.year)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['status'] = self.status.value
        result['indicators'] = [entry.to_dict() for entry in self.indicators]
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Submission':
        data['status'] = SubmissionStatus(data['status'])
        data['indicators'] = tuple(IndicatorEntry.from_dict(item) for item in data.get('indicators', []))
        for key in ('submitted_at', 'approved_at', 'reviewed_at'):
            data[key] = parse_optional_datetime(data.get(key))
        return super().from_dict(data)


def period_key(organization_id: str, month: int, year: int) -> str:
    """Unique key of a reporting period for one organization"""
    return f"period:{organization_id}:{year}:{month:02d}"


def validate_period(month: Any, year: Any) -> None:
    """Reject months outside 1-12 and years outside 2020-2100"""
    if not isinstance(month, int) or isinstance(month, bool) or not 1 <= month <= 12:
        raise ValidationError("Month must be an integer between 1 and 12")
    if not isinstance(year, int) or isinstance(year, bool) or not MIN_YEAR <= year <= MAX_YEAR:
        raise ValidationError(f"Year must be an integer between {MIN_YEAR} and {MAX_YEAR}")


class SubmissionRepository:
    """Loads and persists submission values"""

    def __init__(self, storage: StorageInterface, table_name: str = "submissions"):
        self.storage = storage
        self.table_name = table_name

    def load(self, submission_id: str) -> Optional[Submission]:
        data = self.storage.load(self.table_name, submission_id)
        if not data:
            return None
        return Submission.from_dict(data)

    def insert(self, submission: Submission) -> None:
        """Persist a new submission; the period key is unique per table"""
        self.storage.insert(
            self.table_name, submission.id, submission.to_dict(), unique_key=submission.period_key
        )

    def save(self, submission: Submission) -> None:
        self.storage.save(self.table_name, submission.id, submission.to_dict())

    def delete(self, submission_id: str) -> bool:
        return self.storage.delete(self.table_name, submission_id)

    def find(self, **filters) -> List[Submission]:
        """Submissions whose stored fields equal the given values"""
        filters = {k: (v.value if isinstance(v, Enum) else v) for k, v in filters.items() if v is not None}
        return [Submission.from_dict(data) for data in self.storage.find(self.table_name, filters)]

    def find_for_period(self, organization_id: str, month: int, year: int) -> Optional[Submission]:
        matches = self.find(organization_id=organization_id, month=month, year=year)
        return matches[0] if matches else None


class SubmissionManager:
    """
    Drives submissions through their lifecycle

    Organization members prepare, edit and submit their own returns;
    administrators approve or reject submitted ones.
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 organizations: OrganizationManager, max_page_size: int = 200):
        self.storage = storage
        self.audit_trail = audit_trail
        self.organizations = organizations
        self.repository = SubmissionRepository(storage)
        self.max_page_size = max_page_size

    # Lifecycle

    def create_submission(
        self,
        principal: Principal,
        organization_id: str,
        month: int,
        year: int,
        indicators: Sequence[Any]
    ) -> Submission:
        """
        Create a draft return for a period

        Raises:
            ValidationError: bad period or indicator payload
            ForbiddenError: caller is not a member of the organization, or it is inactive
            NotFoundError: organization does not exist
            DuplicatePeriodError: the organization already has a return for the period
        """
        validate_period(month, year)
        require_member(principal, organization_id, "create submissions")

        entries = parse_indicators(indicators)
        filled, total, rate = completion_counts(entries)

        now = datetime.now(timezone.utc)
        submission = Submission(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            organization_id=organization_id,
            month=month,
            year=year,
            status=SubmissionStatus.DRAFT,
            indicators=entries,
            filled_indicators=filled,
            total_indicators=total,
            completion_rate=rate,
            created_by=principal.user_id
        )

        try:
            with self.storage.atomic():
                organization = self.organizations.require(organization_id)
                if not organization.is_active:
                    raise ForbiddenError("Organization is inactive")
                self.repository.insert(submission)
                self.audit_trail.log_event(
                    AuditEventType.SUBMISSION_CREATED,
                    "submission",
                    submission.id,
                    {
                        "organization_id": organization_id,
                        "month": month,
                        "year": year,
                        "completion_rate": rate
                    },
                    principal.user_id
                )
        except DuplicateKeyError:
            raise DuplicatePeriodError("Submission already exists for this period")

        log_action(
            logger, "info", f"Submission created for {organization.code} {month:02d}/{year}",
            user_id=principal.user_id, action="create_submission", resource=submission.id,
            extra={"completion_rate": rate}
        )
        return submission

    def update_indicators(self, principal: Principal, submission_id: str, indicators: Sequence[Any]) -> Submission:
        """Replace the indicator list of a draft or rejected return; it becomes a draft again"""
        entries = parse_indicators(indicators)
        filled, total, rate = completion_counts(entries)

        with self.storage.atomic():
            submission = self._require(submission_id)
            require_member(principal, submission.organization_id, "edit submissions")
            if submission.status not in EDITABLE_STATES:
                raise InvalidStateError("Can only update draft or rejected submissions")

            updated = replace(
                submission,
                indicators=entries,
                filled_indicators=filled,
                total_indicators=total,
                completion_rate=rate,
                status=SubmissionStatus.DRAFT,
                rejection_reason=None,
                updated_at=datetime.now(timezone.utc)
            )
            self._persist(updated, AuditEventType.SUBMISSION_UPDATED, principal,
                          {"previous_status": submission.status.value, "completion_rate": rate})

        log_action(
            logger, "info", f"Submission updated: {submission_id}",
            user_id=principal.user_id, action="update_submission", resource=submission_id,
            extra={"completion_rate": rate}
        )
        return updated

    def submit_for_review(self, principal: Principal, submission_id: str) -> Submission:
        """Send a sufficiently complete draft or rejected return for review"""
        with self.storage.atomic():
            submission = self._require(submission_id)
            require_member(principal, submission.organization_id, "submit returns")
            if submission.status not in EDITABLE_STATES:
                raise InvalidStateError("Can only submit draft or rejected submissions")
            if submission.completion_rate < SUBMISSION_THRESHOLD:
                raise BelowThresholdError(
                    f"Submission must be at least {SUBMISSION_THRESHOLD}% complete "
                    f"(currently {submission.completion_rate}%)"
                )

            now = datetime.now(timezone.utc)
            updated = replace(
                submission,
                status=SubmissionStatus.SUBMITTED,
                submitted_at=now,
                submitted_by=principal.user_id,
                updated_at=now
            )
            self._persist(updated, AuditEventType.SUBMISSION_SUBMITTED, principal,
                          {"completion_rate": submission.completion_rate})

        log_action(
            logger, "info", f"Submission sent for review: {submission_id}",
            user_id=principal.user_id, action="submit_submission", resource=submission_id
        )
        return updated

    def approve(self, principal: Principal, submission_id: str, comments: Optional[str] = None) -> Submission:
        """Approve a submitted return"""
        require_admin(principal, "approve submissions")

        with self.storage.atomic():
            submission = self._require(submission_id)
            if submission.status != SubmissionStatus.SUBMITTED:
                raise InvalidStateError("Can only approve submitted submissions")

            now = datetime.now(timezone.utc)
            updated = replace(
                submission,
                status=SubmissionStatus.APPROVED,
                approved_at=now,
                approved_by=principal.user_id,
                reviewed_at=now,
                reviewed_by=principal.user_id,
                comments=comments,
                updated_at=now
            )
            self._persist(updated, AuditEventType.SUBMISSION_APPROVED, principal, {"comments": comments})

        log_action(
            logger, "info", f"Submission approved: {submission_id}",
            user_id=principal.user_id, action="approve_submission", resource=submission_id
        )
        return updated

    def reject(self, principal: Principal, submission_id: str, reason: Optional[str]) -> Submission:
        """Reject a submitted return with a mandatory reason"""
        require_admin(principal, "reject submissions")
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("Rejection reason is required", reason="missing_reason")

        with self.storage.atomic():
            submission = self._require(submission_id)
            if submission.status != SubmissionStatus.SUBMITTED:
                raise InvalidStateError("Can only reject submitted submissions")

            now = datetime.now(timezone.utc)
            updated = replace(
                submission,
                status=SubmissionStatus.REJECTED,
                rejection_reason=reason,
                reviewed_at=now,
                reviewed_by=principal.user_id,
                updated_at=now
            )
            self._persist(updated, AuditEventType.SUBMISSION_REJECTED, principal, {"reason": reason})

        log_action(
            logger, "info", f"Submission rejected: {submission_id}",
            user_id=principal.user_id, action="reject_submission", resource=submission_id
        )
        return updated

    def delete_submission(self, principal: Principal, submission_id: str) -> None:
        """Delete a draft return"""
        with self.storage.atomic():
            submission = self._require(submission_id)
            require_access(principal, submission.organization_id, "delete submissions")
            if submission.status != SubmissionStatus.DRAFT:
                raise InvalidStateError("Can only delete draft submissions")

            self.repository.delete(submission_id)
            self.audit_trail.log_event(
                AuditEventType.SUBMISSION_DELETED,
                "submission",
                submission_id,
                {
                    "organization_id": submission.organization_id,
                    "month": submission.month,
                    "year": submission.year
                },
                principal.user_id
            )

        log_action(
            logger, "info", f"Submission deleted: {submission_id}",
            user_id=principal.user_id, action="delete_submission", resource=submission_id
        )

    # Queries

    def get_submission(self, principal: Principal, submission_id: str) -> Submission:
        submission = self._require(submission_id)
        require_access(principal, submission.organization_id, "view submissions")
        return submission

    def list_submissions(
        self,
        principal: Principal,
        status: Any = None,
        month: Optional[int] = None,
        year: Optional[int] = None,
        organization_id: Optional[str] = None,
        page: int = 1,
        limit: int = 20
    ) -> Dict[str, Any]:
        """Paginated list of every submission, newest first"""
        require_admin(principal, "list all submissions")
        if page < 1:
            raise ValidationError("Page must be at least 1")
        if not 1 <= limit <= self.max_page_size:
            raise ValidationError(f"Limit must be between 1 and {self.max_page_size}")

        submissions = self.repository.find(
            status=self._coerce_status(status), month=month, year=year, organization_id=organization_id
        )
        submissions.sort(key=lambda s: s.created_at, reverse=True)

        total = len(submissions)
        start = (page - 1) * limit
        return {
            'submissions': submissions[start:start + limit],
            'pagination': {
                'total': total,
                'page': page,
                'limit': limit,
                'pages': math.ceil(total / limit)
            }
        }

    def list_organization_submissions(
        self,
        principal: Principal,
        organization_id: str,
        status: Any = None,
        month: Optional[int] = None,
        year: Optional[int] = None
    ) -> List[Submission]:
        """Submissions of one organization, most recent period first"""
        require_access(principal, organization_id, "view submissions")
        submissions = self.repository.find(
            organization_id=organization_id, status=self._coerce_status(status), month=month, year=year
        )
        submissions.sort(key=lambda s: (s.year, s.month), reverse=True)
        return submissions

    # Private helper methods

    def _require(self, submission_id: str) -> Submission:
        submission = self.repository.load(submission_id)
        if not submission:
            raise NotFoundError("Submission not found")
        return submission

    def _persist(self, submission: Submission, event_type: AuditEventType,
                 principal: Principal, metadata: Dict[str, Any]) -> None:
        self.repository.save(submission)
        metadata = dict(metadata, status=submission.status.value)
        self.audit_trail.log_event(event_type, "submission", submission.id, metadata, principal.user_id)

    def _coerce_status(self, status: Any) -> Optional[SubmissionStatus]:
        if status is None or isinstance(status, SubmissionStatus):
            return status
        try:
            return SubmissionStatus(str(status).lower())
        except ValueError:
            raise ValidationError(f"Unknown submission status: {status}")
