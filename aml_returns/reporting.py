"""
Compliance Reporting Module

Read-side aggregation over monthly returns: per-organization compliance
scores and monthly matrices, system-wide overviews for the supervisory
authority, financial indicator roll-ups over approved returns, and data
exports in dict, JSON and CSV form.
"""

import csv
import io
import json
from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from .audit import AuditTrail, AuditEventType
from .errors import ForbiddenError, ValidationError
from .indicators import FINANCIAL_INDICATORS, indicator_amounts, percentage
from .logging_config import get_logger, log_action
from .organizations import Organization, OrganizationManager
from .principals import Principal, require_access, require_admin
from .storage import StorageInterface
from .submissions import Submission, SubmissionRepository, SubmissionStatus


logger = get_logger("aml_returns.reporting")

MONTH_NAMES = (
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December"
)

# Months a fully compliant organization reports per year
EXPECTED_RETURNS_PER_YEAR = 12


class ExportType(Enum):
    """Datasets available for export"""
    SUBMISSIONS = "submissions"
    ORGANIZATIONS = "organizations"
    COMPLIANCE = "compliance"


class ExportFormat(Enum):
    """Output formats for exports"""
    DICT = "dict"
    JSON = "json"
    CSV = "csv"


# Pure helpers

def compliance_score(submissions: Sequence[Submission]) -> int:
    """Share of approved returns, as a whole percent; 0 without returns"""
    approved = sum(1 for s in submissions if s.status == SubmissionStatus.APPROVED)
    return percentage(approved, len(submissions))


def average_rate(values: Sequence[Union[int, float, Decimal]]) -> float:
    """Unweighted mean rounded half up to one decimal; 0.0 for no values"""
    if not values:
        return 0.0
    mean = sum(Decimal(str(v)) for v in values) / len(values)
    return float(mean.quantize(Decimal('0.1'), rounding=ROUND_HALF_UP))


def _round_mean(values: Sequence[int]) -> int:
    return percentage(sum(values), 100 * len(values)) if values else 0


def status_counts(submissions: Iterable[Submission]) -> Dict[str, int]:
    counts = {status.value: 0 for status in SubmissionStatus}
    for submission in submissions:
        counts[submission.status.value] += 1
    return counts


def monthly_compliance(submissions: Sequence[Submission]) -> List[Dict[str, Any]]:
    """
    One entry per calendar month for a single organization and year.

    Months without a return are reported with ``submitted`` False and a
    0 completion rate.
    """
    by_month: Dict[int, Submission] = {}
    for submission in submissions:
        by_month.setdefault(submission.month, submission)

    matrix = []
    for month in range(1, 13):
        submission = by_month.get(month)
        matrix.append({
            'month': month,
            'submitted': submission is not None,
            'status': submission.status.value if submission else None,
            'completion_rate': submission.completion_rate if submission else 0,
            'submitted_at': submission.submitted_at if submission else None,
        })
    return matrix


def sum_financial_indicators(submissions: Iterable[Submission]) -> Dict[str, Decimal]:
    """Total of each financial indicator; unparseable values count as 0"""
    totals = {metric: Decimal('0') for metric in FINANCIAL_INDICATORS.values()}
    for submission in submissions:
        for code, amount in indicator_amounts(submission.indicators).items():
            totals[FINANCIAL_INDICATORS[code]] += amount
    return totals


class ComplianceAggregator:
    """
    Compliance and financial statistics for the supervisory authority
    """

    def __init__(
        self,
        storage: StorageInterface,
        organizations: OrganizationManager,
        audit_trail: Optional[AuditTrail] = None
    ):
        self.storage = storage
        self.organizations = organizations
        self.submissions = SubmissionRepository(storage)
        self.audit_trail = audit_trail

    def financial_metrics(
        self,
        principal: Principal,
        year: int,
        organization_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Roll up the financial indicators of approved returns for a year

        Returns yearly totals per metric plus a twelve-entry monthly breakdown.
        """
        if organization_id:
            require_access(principal, organization_id, "view financial metrics")
        else:
            require_admin(principal, "view system financial metrics")

        approved = self.submissions.find(
            year=year, status=SubmissionStatus.APPROVED, organization_id=organization_id
        )

        result: Dict[str, Any] = {'year': year, 'organization_id': organization_id}
        result.update(sum_financial_indicators(approved))
        result['approved_submissions'] = len(approved)
        result['monthly_metrics'] = [
            dict(month=month, **sum_financial_indicators(s for s in approved if s.month == month))
            for month in range(1, 13)
        ]
        return result

    def organization_statistics(self, principal: Principal, organization_id: str, year: int) -> Dict[str, Any]:
        """Status totals, average completion, compliance score and monthly matrix for one organization"""
        organization = self.organizations.require(organization_id)
        require_access(principal, organization_id, "view organization statistics")

        submissions = self.submissions.find(organization_id=organization_id, year=year)
        counts = status_counts(submissions)

        return {
            'organization': {'id': organization.id, 'code': organization.code, 'name': organization.name},
            'year': year,
            'total_submissions': len(submissions),
            'completed_submissions': counts['approved'],
            'pending_submissions': counts['submitted'],
            'rejected_submissions': counts['rejected'],
            'draft_submissions': counts['draft'],
            'average_completion_rate': _round_mean([s.completion_rate for s in submissions]),
            'compliance_score': compliance_score(submissions),
            'monthly_compliance': monthly_compliance(submissions),
        }

    def system_overview(self, principal: Principal, year: int) -> Dict[str, Any]:
        """Compliance of every active organization for a year"""
        require_admin(principal, "view the system overview")

        by_org = self._group_by_organization(self.submissions.find(year=year))
        overview = []
        for organization in self.organizations.all_organizations(active_only=True):
            submissions = by_org.get(organization.id, [])
            counts = status_counts(submissions)
            overview.append({
                'organization_id': organization.id,
                'code': organization.code,
                'name': organization.name,
                'type': organization.org_type.value,
                'total_submissions': len(submissions),
                'completed_submissions': counts['approved'],
                'pending_submissions': counts['submitted'],
                'rejected_submissions': counts['rejected'],
                'compliance_score': compliance_score(submissions),
                'monthly_compliance': monthly_compliance(submissions),
            })

        return {
            'year': year,
            'organizations': overview,
            'average_compliance_rate': average_rate([o['compliance_score'] for o in overview]),
        }

    def compliance_report(self, principal: Principal, year: int) -> Dict[str, Any]:
        """Annual compliance of every organization against twelve expected returns"""
        require_admin(principal, "view compliance reports")

        by_org = self._group_by_organization(self.submissions.find(year=year))
        rows = []
        for organization in self.organizations.all_organizations():
            submissions = by_org.get(organization.id, [])
            approved = sum(1 for s in submissions if s.status == SubmissionStatus.APPROVED)
            rows.append({
                'organization_id': organization.id,
                'organization_code': organization.code,
                'organization_name': organization.name,
                'is_active': organization.is_active,
                'total_expected': EXPECTED_RETURNS_PER_YEAR,
                'total_submitted': len(submissions),
                'total_approved': approved,
                'annual_compliance_rate': percentage(approved, EXPECTED_RETURNS_PER_YEAR),
                'monthly_compliance': monthly_compliance(submissions),
            })

        return {'year': year, 'compliance_data': rows}

    def dashboard_stats(self, principal: Principal, today: Optional[date] = None) -> Dict[str, Any]:
        """Headline figures for the administrator dashboard"""
        require_admin(principal, "view the dashboard")
        today = today or datetime.now(timezone.utc).date()

        organizations = self.organizations.all_organizations()
        active = [o for o in organizations if o.is_active]
        all_submissions = self.submissions.find()
        by_org = self._group_by_organization(all_submissions)
        counts = status_counts(all_submissions)

        current = [s for s in all_submissions if s.year == today.year and s.month == today.month]
        reported = {s.organization_id for s in current}
        filed = {
            s.organization_id for s in current
            if s.status in (SubmissionStatus.SUBMITTED, SubmissionStatus.APPROVED)
        }

        org_rates = []
        for organization in active:
            submissions = by_org.get(organization.id, [])
            approved = sum(1 for s in submissions if s.status == SubmissionStatus.APPROVED)
            org_rates.append(Decimal(approved) * 100 / len(submissions) if submissions else Decimal('0'))

        return {
            'total_organizations': len(organizations),
            'active_organizations': len(active),
            'total_submissions': len(all_submissions),
            'completed_submissions': counts['approved'],
            'pending_submissions': counts['submitted'],
            'overdue_submissions': sum(1 for o in active if o.id not in filed),
            'average_compliance_rate': average_rate(org_rates),
            'current_month': f"{MONTH_NAMES[today.month - 1]} {today.year}",
            'current_month_submissions': len(current),
            'current_month_pending': sum(1 for o in active if o.id not in reported),
        }

    def submission_statistics(
        self,
        principal: Principal,
        year: int,
        organization_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Counts by status and by month with average completion rates"""
        if organization_id:
            require_access(principal, organization_id, "view submission statistics")
        elif not principal.is_admin:
            if not principal.organization_id:
                raise ForbiddenError("Access denied: no organization")
            organization_id = principal.organization_id

        submissions = self.submissions.find(year=year, organization_id=organization_id)

        by_month = []
        for month in range(1, 13):
            rates = [s.completion_rate for s in submissions if s.month == month]
            by_month.append({
                'month': month,
                'count': len(rates),
                'average_completion_rate': _round_mean(rates),
            })

        return {
            'year': year,
            'organization_id': organization_id,
            'total': len(submissions),
            'by_status': status_counts(submissions),
            'by_month': by_month,
            'average_completion_rate': _round_mean([s.completion_rate for s in submissions]),
        }

    def system_statistics(self, principal: Principal, recent: int = 10) -> Dict[str, Any]:
        """User, organization and submission totals with the latest returns"""
        require_admin(principal, "view system statistics")

        users = self.storage.load_all("users")
        organizations = self.organizations.all_organizations()
        names = {o.id: o for o in organizations}
        submissions = sorted(self.submissions.find(), key=lambda s: s.created_at, reverse=True)

        recent_activity = []
        for submission in submissions[:recent]:
            organization = names.get(submission.organization_id)
            recent_activity.append({
                'submission_id': submission.id,
                'organization_code': organization.code if organization else None,
                'organization_name': organization.name if organization else None,
                'month': submission.month,
                'year': submission.year,
                'status': submission.status.value,
                'created_by': submission.created_by,
                'created_at': submission.created_at,
            })

        return {
            'users': {'total': len(users), 'active': sum(1 for u in users if u.get('is_active'))},
            'organizations': {
                'total': len(organizations),
                'active': sum(1 for o in organizations if o.is_active),
            },
            'submissions': {'total': len(submissions)},
            'recent_activity': recent_activity,
        }

    def export(
        self,
        principal: Principal,
        export_type: Union[str, ExportType],
        year: Optional[int] = None,
        format: Union[str, ExportFormat] = ExportFormat.JSON
    ) -> Union[Dict[str, Any], str]:
        """
        Export a dataset

        Args:
            export_type: submissions, organizations or compliance
            year: restrict submissions and compliance to one year
            format: dict, json or csv

        Returns:
            A dictionary for DICT, otherwise the serialized text
        """
        require_admin(principal, "export data")
        try:
            export_type = ExportType(export_type)
        except ValueError:
            raise ValidationError("Invalid export type. Use: submissions, organizations, or compliance")
        try:
            format = ExportFormat(format)
        except ValueError:
            raise ValidationError("Invalid export format. Use: dict, json, or csv")

        if export_type == ExportType.SUBMISSIONS:
            rows = self._submission_rows(year)
        elif export_type == ExportType.ORGANIZATIONS:
            rows = self._organization_rows()
        else:
            rows = self._compliance_rows(year)

        if self.audit_trail:
            self.audit_trail.log_event(
                AuditEventType.DATA_EXPORTED,
                "export",
                export_type.value,
                {"year": year, "format": format.value, "count": len(rows)},
                principal.user_id
            )
        log_action(
            logger, "info", f"Exported {len(rows)} {export_type.value} rows as {format.value}",
            user_id=principal.user_id, action="export_data", resource=export_type.value
        )

        if format == ExportFormat.CSV:
            output = io.StringIO()
            if rows:
                writer = csv.DictWriter(output, fieldnames=list(rows[0].keys()))
                writer.writeheader()
                for row in rows:
                    writer.writerow(row)
            csv_content = output.getvalue()
            output.close()
            return csv_content

        export_dict = {
            'type': export_type.value,
            'year': year,
            'format': format.value,
            'generated_at': datetime.now(timezone.utc).isoformat(),
            'count': len(rows),
            'data': rows,
        }
        if format == ExportFormat.JSON:
            return json.dumps(export_dict, indent=2, default=str)
        return export_dict

    # Private helper methods

    def _group_by_organization(self, submissions: Iterable[Submission]) -> Dict[str, List[Submission]]:
        grouped: Dict[str, List[Submission]] = {}
        for submission in submissions:
            grouped.setdefault(submission.organization_id, []).append(submission)
        return grouped

    def _submission_rows(self, year: Optional[int]) -> List[Dict[str, Any]]:
        organizations = {o.id: o for o in self.organizations.all_organizations()}
        submissions = sorted(
            self.submissions.find(year=year),
            key=lambda s: (s.year, s.month, s.organization_id)
        )

        rows = []
        for submission in submissions:
            organization: Optional[Organization] = organizations.get(submission.organization_id)
            rows.append({
                'id': submission.id,
                'organization_code': organization.code if organization else '',
                'organization_name': organization.name if organization else '',
                'month': submission.month,
                'year': submission.year,
                'status': submission.status.value,
                'completion_rate': submission.completion_rate,
                'filled_indicators': submission.filled_indicators,
                'total_indicators': submission.total_indicators,
                'submitted_at': submission.submitted_at.isoformat() if submission.submitted_at else '',
                'approved_at': submission.approved_at.isoformat() if submission.approved_at else '',
                'rejection_reason': submission.rejection_reason or '',
            })
        return rows

    def _organization_rows(self) -> List[Dict[str, Any]]:
        return [
            {
                'id': o.id,
                'code': o.code,
                'name': o.name,
                'type': o.org_type.value,
                'sector': o.sector or '',
                'contact_email': o.contact_email or '',
                'is_active': o.is_active,
                'created_at': o.created_at.isoformat(),
            }
            for o in self.organizations.all_organizations()
        ]

    def _compliance_rows(self, year: Optional[int]) -> List[Dict[str, Any]]:
        by_org = self._group_by_organization(self.submissions.find(year=year))
        rows = []
        for organization in self.organizations.all_organizations():
            submissions = by_org.get(organization.id, [])
            rows.append({
                'organization_code': organization.code,
                'organization_name': organization.name,
                'total_submissions': len(submissions),
                'approved_submissions': sum(1 for s in submissions if s.status == SubmissionStatus.APPROVED),
                'compliance_rate': compliance_score(submissions),
            })
        return rows
