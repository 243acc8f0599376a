"""
Supervisory authority endpoints (dashboards, reports, exports, audit)
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse, Response

from .auth import ReturnsSystem, get_current_principal, get_system
from ..audit import AuditEventType
from ..principals import Principal, require_admin


router = APIRouter()


def _current_year() -> int:
    return datetime.now(timezone.utc).year


@router.get("/dashboard")
async def get_dashboard_stats(
    principal: Principal = Depends(get_current_principal),
    system: ReturnsSystem = Depends(get_system)
) -> Dict[str, Any]:
    """Headline figures for the admin dashboard"""
    return {"stats": system.aggregator.dashboard_stats(principal)}


@router.get("/overview")
async def get_system_overview(
    year: Optional[int] = None,
    principal: Principal = Depends(get_current_principal),
    system: ReturnsSystem = Depends(get_system)
) -> Dict[str, Any]:
    """Compliance of every active organization"""
    return {"overview": system.aggregator.system_overview(principal, year or _current_year())}


@router.get("/compliance-report")
async def get_compliance_report(
    year: Optional[int] = None,
    principal: Principal = Depends(get_current_principal),
    system: ReturnsSystem = Depends(get_system)
) -> Dict[str, Any]:
    return system.aggregator.compliance_report(principal, year or _current_year())


@router.get("/financial-metrics")
async def get_financial_metrics(
    year: Optional[int] = None,
    organization_id: Optional[str] = None,
    principal: Principal = Depends(get_current_principal),
    system: ReturnsSystem = Depends(get_system)
) -> Dict[str, Any]:
    """Financial indicator totals over approved returns"""
    metrics = system.aggregator.financial_metrics(principal, year or _current_year(), organization_id)
    return {"metrics": metrics}


@router.get("/statistics")
async def get_system_statistics(
    principal: Principal = Depends(get_current_principal),
    system: ReturnsSystem = Depends(get_system)
) -> Dict[str, Any]:
    return system.aggregator.system_statistics(principal)


@router.get("/export/{export_type}")
async def export_data(
    export_type: str,
    year: Optional[int] = None,
    format: str = "json",
    principal: Principal = Depends(get_current_principal),
    system: ReturnsSystem = Depends(get_system)
):
    """Export submissions, organizations or compliance rows as JSON or CSV"""
    result = system.aggregator.export(principal, export_type, year=year, format=format)
    if format == "csv":
        filename = f"{export_type}-{year or 'all'}.csv"
        return PlainTextResponse(
            result,
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'}
        )
    if format == "json":
        return Response(result, media_type="application/json")
    return result


@router.get("/audit/verify")
async def verify_audit_trail(
    principal: Principal = Depends(get_current_principal),
    system: ReturnsSystem = Depends(get_system)
) -> Dict[str, Any]:
    """Verify the hash chain of the audit trail"""
    require_admin(principal, "verify the audit trail")
    result = system.audit_trail.verify_integrity()
    system.audit_trail.log_event(
        AuditEventType.AUDIT_INTEGRITY_CHECK,
        "audit_trail",
        "all",
        {"valid": result["valid"], "total_events": result["total_events"]},
        principal.user_id
    )
    return result


@router.get("/audit/{entity_type}/{entity_id}")
async def get_entity_audit_events(
    entity_type: str,
    entity_id: str,
    limit: Optional[int] = None,
    principal: Principal = Depends(get_current_principal),
    system: ReturnsSystem = Depends(get_system)
) -> Dict[str, Any]:
    """Audit history of one organization, user or submission"""
    require_admin(principal, "view audit events")
    events = system.audit_trail.get_events_for_entity(entity_type, entity_id, limit)
    return {"events": [event.to_dict() for event in events]}
