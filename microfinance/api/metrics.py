"""
Metrics endpoints: manual events, recalculation, summaries and profit
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from .auth import MicrofinanceSystem, get_identity, get_system
from .errors import DOMAIN_ERRORS, to_http_error
from .schemas import MetricRequest, payload
from ..errors import ValidationError
from ..identity import UserIdentity
from ..loans import parse_date
from ..metrics import MetricName
from ..storage import to_storable


router = APIRouter()


def _metric_names(names: Optional[List[str]]) -> Optional[List[MetricName]]:
    if not names:
        return None
    try:
        return [MetricName(name) for name in names]
    except ValueError as e:
        raise ValidationError(str(e))


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_metric_events(
    request: MetricRequest,
    system: MicrofinanceSystem = Depends(get_system)
):
    """Record a manual metric event, or a batch via entries"""
    try:
        body = payload(request)
        entries = body.pop("entries", None) or [body]
        events = system.metrics.create_manual_events(entries)
        return {"events": [event.to_dict() for event in events], "total": len(events)}
    except DOMAIN_ERRORS as e:
        raise to_http_error(e)


@router.post("/recalculate")
async def recalculate_metrics(
    system: MicrofinanceSystem = Depends(get_system),
    identity: Optional[UserIdentity] = Depends(get_identity)
):
    """Rebuild every loan-derived metric from loans and distributions"""
    try:
        stats = system.recalculation.recalculate_all_metrics(user_id=identity.email if identity else None)
        return {"message": "Metrics recalculated", **stats}
    except DOMAIN_ERRORS as e:
        raise to_http_error(e)


@router.get("/summary")
async def get_metrics_summary(
    metric: Optional[List[str]] = Query(None),
    group_by: str = "day",
    date_from: Optional[str] = Query(None, alias="from"),
    date_to: Optional[str] = Query(None, alias="to"),
    branch_name: Optional[str] = None,
    branch_code: Optional[str] = None,
    loan_officer_name: Optional[str] = None,
    currency: Optional[str] = None,
    system: MicrofinanceSystem = Depends(get_system)
):
    """Metric totals bucketed by day, week, month or year"""
    try:
        buckets = system.metrics.summary(
            metrics=_metric_names(metric),
            group_by=group_by,
            date_from=parse_date(date_from, "from"),
            date_to=parse_date(date_to, "to"),
            branch_name=branch_name,
            branch_code=branch_code,
            loan_officer_name=loan_officer_name,
            currency=currency
        )
        return {"group_by": group_by, "buckets": to_storable(buckets)}
    except DOMAIN_ERRORS as e:
        raise to_http_error(e)


@router.get("/totals")
async def get_metric_totals(
    metric: Optional[List[str]] = Query(None),
    date_from: Optional[str] = Query(None, alias="from"),
    date_to: Optional[str] = Query(None, alias="to"),
    branch_code: Optional[str] = None,
    loan_id: Optional[str] = None,
    currency: Optional[str] = None,
    system: MicrofinanceSystem = Depends(get_system)
):
    """Balance per metric over the matching events"""
    try:
        totals = system.metrics.totals(
            metrics=_metric_names(metric),
            date_from=parse_date(date_from, "from"),
            date_to=parse_date(date_to, "to"),
            branch_code=branch_code,
            loan_id=loan_id,
            currency=currency
        )
        return {"totals": to_storable(totals)}
    except DOMAIN_ERRORS as e:
        raise to_http_error(e)


@router.get("/profit")
async def get_profit(
    date_from: Optional[str] = Query(None, alias="from"),
    date_to: Optional[str] = Query(None, alias="to"),
    branch_code: Optional[str] = None,
    currency: Optional[str] = None,
    system: MicrofinanceSystem = Depends(get_system)
):
    """Interest and fee income minus expenses, per currency"""
    try:
        profit = system.metrics.profit(
            date_from=parse_date(date_from, "from"),
            date_to=parse_date(date_to, "to"),
            branch_code=branch_code,
            currency=currency
        )
        return {"profit": to_storable(profit)}
    except DOMAIN_ERRORS as e:
        raise to_http_error(e)
