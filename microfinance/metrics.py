"""
Metrics Event Store

Append-only signed-value ledger of financial events. The balance of a metric
for any dimension set is the sum of its events; reversals are negative events.

Event builders in this module are shared by the live mutation paths and the
recalculation engine so both derive identical events from the same loan state.
They work on any object exposing the loan attributes they read.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Union
import uuid

from .currency import ZERO, round2, to_decimal
from .errors import ValidationError
from .logging_config import get_logger, metric_context
from .storage import StorageInterface, StorageRecord


logger = get_logger("microfinance.metrics")


class MetricName(Enum):
    """Closed set of metric names"""
    LOAN_AMOUNT_DISTRIBUTED = "loanAmountDistributed"
    WAITING_TO_BE_COLLECTED = "waitingToBeCollected"
    OVERDUE = "overdue"
    INTEREST_COLLECTED = "interestCollected"
    TOTAL_COLLECTIONS_COLLECTED = "totalCollectionsCollected"
    TOTAL_COLLATERAL = "totalCollateral"
    COLLATERAL_CASH_REQUIRED = "collateralCashRequired"
    TOTAL_FORM_FEES = "totalFormFees"
    TOTAL_INSPECTION_FEES = "totalInspectionFees"
    TOTAL_PROCESSING_FEES = "totalProcessingFees"
    COLLATERAL_CASH_DEPOSITED = "collateralCashDeposited"
    EXPENSES = "expenses"


# Metrics rebuilt from loan and distribution state; anything else is manual
LOAN_DERIVED_METRICS = frozenset([
    MetricName.LOAN_AMOUNT_DISTRIBUTED,
    MetricName.WAITING_TO_BE_COLLECTED,
    MetricName.OVERDUE,
    MetricName.INTEREST_COLLECTED,
    MetricName.TOTAL_COLLECTIONS_COLLECTED,
    MetricName.TOTAL_COLLATERAL,
    MetricName.COLLATERAL_CASH_REQUIRED,
    MetricName.TOTAL_FORM_FEES,
    MetricName.TOTAL_INSPECTION_FEES,
    MetricName.TOTAL_PROCESSING_FEES,
    MetricName.COLLATERAL_CASH_DEPOSITED,
])

INCOME_METRICS = (
    MetricName.INTEREST_COLLECTED,
    MetricName.TOTAL_PROCESSING_FEES,
    MetricName.TOTAL_FORM_FEES,
    MetricName.TOTAL_INSPECTION_FEES,
)

GROUP_BY_PERIODS = ("day", "week", "month", "year")


@dataclass
class MetricEvent(StorageRecord):
    """Immutable signed-value financial event"""
    metric: MetricName
    value: Decimal
    date: date
    branch_name: Optional[str] = None
    branch_code: Optional[str] = None
    loan_officer_name: Optional[str] = None
    currency: Optional[str] = None
    loan_id: Optional[str] = None
    group_id: Optional[str] = None
    client_id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


def _event_date(value: Union[date, datetime, str, None]) -> date:
    if value is None:
        return datetime.now(timezone.utc).date()
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def new_event(metric: MetricName, value, event_date=None, extra: Optional[Dict[str, Any]] = None,
              **dimensions) -> MetricEvent:
    """Build an unsaved metric event"""
    now = datetime.now(timezone.utc)
    return MetricEvent(
        id=str(uuid.uuid4()),
        created_at=now,
        updated_at=now,
        metric=metric,
        value=round2(value),
        date=_event_date(event_date),
        extra=dict(extra or {}),
        **dimensions
    )


# Loan-derived event builders

def loan_dimensions(loan) -> Dict[str, Any]:
    """Dimension tags carried by every event about a loan"""
    currency = loan.currency
    return {
        "branch_name": loan.branch_name,
        "branch_code": loan.branch_code,
        "loan_officer_name": loan.loan_officer_name,
        "currency": currency.value if isinstance(currency, Enum) else currency,
        "loan_id": loan.id,
        "group_id": loan.group_id,
        "client_id": loan.client_id,
    }


def _category_value(loan) -> str:
    category = loan.category
    return category.value if isinstance(category, Enum) else str(category)


def interest_for_loan(loan) -> Decimal:
    """Planned interest: total repayable minus principal, else principal times rate"""
    principal = to_decimal(loan.loan_amount)
    if loan.total_amount_to_be_paid is not None:
        return round2(to_decimal(loan.total_amount_to_be_paid) - principal)
    return round2(principal * to_decimal(loan.interest_rate) / Decimal('100'))


def collateral_value_for_loan(loan) -> Decimal:
    """Declared collateral value from the loan's pass-through document metadata"""
    documents = loan.documents or {}
    details = documents.get("collateral_details") or {}
    if details.get("property_value") not in (None, ""):
        return round2(details["property_value"])
    item = documents.get("collateral_item") or {}
    if item.get("estimated_value") not in (None, ""):
        return round2(item["estimated_value"])
    return ZERO


def creation_date_for_loan(loan) -> date:
    return _event_date(loan.disbursement_date or loan.created_at)


def activation_date_for_loan(loan) -> date:
    return _event_date(loan.disbursement_date or loan.activated_at or loan.updated_at)


def creation_events(loan, extra: Optional[Dict[str, Any]] = None) -> List[MetricEvent]:
    """Fee and collateral events recorded when a loan is created"""
    dims = loan_dimensions(loan)
    when = creation_date_for_loan(loan)
    extra = {"loan_type": _category_value(loan), "type": "creation", **(extra or {})}
    candidates = [
        (MetricName.TOTAL_COLLATERAL, collateral_value_for_loan(loan)),
        (MetricName.COLLATERAL_CASH_REQUIRED, to_decimal(loan.collateral_cash_amount)),
        (MetricName.TOTAL_FORM_FEES, to_decimal(loan.form_fee_amount)),
        (MetricName.TOTAL_INSPECTION_FEES, to_decimal(loan.inspection_fee_amount)),
        (MetricName.TOTAL_PROCESSING_FEES, to_decimal(loan.processing_fee_amount)),
    ]
    return [new_event(metric, value, when, extra, **dims) for metric, value in candidates if value != 0]


def activation_events(loan, extra: Optional[Dict[str, Any]] = None) -> List[MetricEvent]:
    """Interest and (for non-group loans) disbursement events recorded on activation"""
    dims = loan_dimensions(loan)
    when = activation_date_for_loan(loan)
    extra = {"status_change": "active", "type": "activation", **(extra or {})}
    events = []

    interest = interest_for_loan(loan)
    if interest != 0:
        events.append(new_event(MetricName.INTEREST_COLLECTED, interest, when, extra, **dims))

    if _category_value(loan) != "group":
        distributed = to_decimal(loan.net_disbursed_amount) or to_decimal(loan.loan_amount)
        events.append(new_event(MetricName.LOAN_AMOUNT_DISTRIBUTED, distributed, when, extra, **dims))
        events.append(new_event(MetricName.WAITING_TO_BE_COLLECTED, loan.loan_amount, when, extra, **dims))
    return events


def collateral_deposit_event(loan, extra: Optional[Dict[str, Any]] = None) -> Optional[MetricEvent]:
    """collateralCashDeposited event for single-client loans with collateral cash"""
    amount = to_decimal(loan.collateral_cash_amount)
    if amount <= 0 or not loan.client_id:
        return None
    return new_event(MetricName.COLLATERAL_CASH_DEPOSITED, amount, activation_date_for_loan(loan),
                     {"type": "activation", **(extra or {})}, **loan_dimensions(loan))


def collection_events(loan, entry, extra: Optional[Dict[str, Any]] = None) -> List[MetricEvent]:
    """
    Event triple for one collection entry: collected, waiting reduction and overdue.
    """
    dims = loan_dimensions(loan)
    dims["currency"] = entry.currency.value if isinstance(entry.currency, Enum) else entry.currency
    when = entry.collection_date
    extra = {"type": "collection", **(extra or {})}
    collected = to_decimal(entry.collected_amount)

    events = []
    if collected != 0:
        events.append(new_event(MetricName.TOTAL_COLLECTIONS_COLLECTED, collected, when, extra, **dims))
        events.append(new_event(MetricName.WAITING_TO_BE_COLLECTED, -collected, when, extra, **dims))
    overdue = entry.overdue
    if overdue > 0:
        events.append(new_event(MetricName.OVERDUE, overdue, when, extra, **dims))
    return events


def waiting_value_for_distribution(loan, amount) -> Decimal:
    """Waiting balance added by a tranche; group loans add their interest share"""
    amount = to_decimal(amount)
    if _category_value(loan) == "group":
        return round2(amount + amount * to_decimal(loan.interest_rate) / Decimal('100'))
    return round2(amount)


def distribution_events(loan, amount, event_date, distribution_id: str,
                        member_id: Optional[str] = None,
                        extra: Optional[Dict[str, Any]] = None) -> List[MetricEvent]:
    """
    Disbursed and waiting events for a signed tranche amount.

    A negative amount produces the compensating pair for a reduction or delete.
    """
    amount = to_decimal(amount)
    if amount == 0:
        return []
    dims = loan_dimensions(loan)
    if member_id and not dims["client_id"]:
        dims["client_id"] = member_id
    extra = {"type": "distribution", "distribution_id": distribution_id, **(extra or {})}
    return [
        new_event(MetricName.LOAN_AMOUNT_DISTRIBUTED, amount, event_date, extra, **dims),
        new_event(MetricName.WAITING_TO_BE_COLLECTED,
                  waiting_value_for_distribution(loan, amount), event_date, extra, **dims),
    ]


def _period_key(day: date, group_by: str) -> str:
    if group_by == "day":
        return day.isoformat()
    if group_by == "week":
        iso_year, iso_week, _ = day.isocalendar()
        return f"{iso_year}-W{iso_week:02d}"
    if group_by == "month":
        return f"{day.year}-{day.month:02d}"
    return str(day.year)


class MetricsStore:
    """Stores, purges and aggregates metric events"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "metric_events"

    def record_many(self, events: Iterable[Optional[MetricEvent]]) -> int:
        """
        Append events; failures are logged and never propagated.

        Returns:
            Number of events written
        """
        written = 0
        for event in events:
            if event is None:
                continue
            try:
                self.storage.save(self.table_name, event.id, event.to_dict())
                written += 1
            except Exception:
                logger.exception("Failed to record metric event",
                                 extra={"action": "record_metric", "resource": event.id, **metric_context(event)})
        return written

    def record(self, event: Optional[MetricEvent]) -> int:
        return self.record_many([event])

    def list_events(
        self,
        metrics: Optional[Iterable[MetricName]] = None,
        loan_id: Optional[str] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        branch_name: Optional[str] = None,
        branch_code: Optional[str] = None,
        loan_officer_name: Optional[str] = None,
        currency: Optional[str] = None
    ) -> List[MetricEvent]:
        names = {m.value for m in metrics} if metrics else None

        def matches(data: Dict[str, Any]) -> bool:
            if names is not None and data.get('metric') not in names:
                return False
            if loan_id and data.get('loan_id') != loan_id:
                return False
            if branch_name and data.get('branch_name') != branch_name:
                return False
            if branch_code and data.get('branch_code') != branch_code:
                return False
            if loan_officer_name and data.get('loan_officer_name') != loan_officer_name:
                return False
            if currency and data.get('currency') != currency:
                return False
            event_day = data.get('date')
            if date_from and event_day < date_from.isoformat():
                return False
            if date_to and event_day > date_to.isoformat():
                return False
            return True

        return [self._event_from_dict(data) for data in self.storage.find_where(self.table_name, matches)]

    def totals(self, metrics: Optional[Iterable[MetricName]] = None, **filters) -> Dict[str, Decimal]:
        """Balance per metric name over the matching events"""
        result: Dict[str, Decimal] = defaultdict(lambda: ZERO)
        for event in self.list_events(metrics=metrics, **filters):
            result[event.metric.value] += event.value
        return dict(result)

    def delete_for_loan(self, loan_id: str) -> int:
        """Bulk purge of a deleted loan's events"""
        deleted = self.storage.delete_where(self.table_name, lambda data: data.get('loan_id') == loan_id)
        logger.info("Purged metric events for deleted loan",
                    extra={"action": "purge_metrics", "resource": loan_id, "extra": {"deleted": deleted}})
        return deleted

    def clear_metrics(self, metrics: Iterable[MetricName]) -> int:
        names = {m.value for m in metrics}
        return self.storage.delete_where(self.table_name, lambda data: data.get('metric') in names)

    def create_manual_events(self, entries: List[Dict[str, Any]]) -> List[MetricEvent]:
        """
        Record externally supplied events (single entries or a batch)

        Raises:
            ValidationError: If an entry names an unknown metric or lacks a numeric value
        """
        events = []
        errors = []
        for index, entry in enumerate(entries):
            try:
                metric = MetricName(entry.get('metric'))
            except ValueError:
                errors.append(f"entries[{index}]: unknown metric '{entry.get('metric')}'")
                continue
            if entry.get('value') in (None, ""):
                errors.append(f"entries[{index}]: value is required")
                continue
            try:
                value = to_decimal(entry.get('value'))
            except ValueError as e:
                errors.append(f"entries[{index}]: {e}")
                continue
            events.append(new_event(
                metric, value, entry.get('date'), entry.get('extra'),
                branch_name=entry.get('branch_name'),
                branch_code=entry.get('branch_code'),
                loan_officer_name=entry.get('loan_officer_name'),
                currency=entry.get('currency'),
                loan_id=entry.get('loan_id'),
                group_id=entry.get('group_id'),
                client_id=entry.get('client_id')
            ))
        if errors:
            raise ValidationError(errors)

        for event in events:
            self.storage.save(self.table_name, event.id, event.to_dict())
        return events

    def summary(
        self,
        metrics: Optional[Iterable[MetricName]] = None,
        group_by: str = "day",
        **filters
    ) -> List[Dict[str, Any]]:
        """
        Aggregate events into (period, metric, currency) buckets.

        Args:
            metrics: Metric names to include (all when omitted)
            group_by: day, week, month or year
            filters: date_from, date_to, branch_name, branch_code, loan_officer_name, currency
        """
        if group_by not in GROUP_BY_PERIODS:
            raise ValidationError(f"group_by must be one of {', '.join(GROUP_BY_PERIODS)}")

        buckets: Dict[tuple, Dict[str, Any]] = {}
        for event in self.list_events(metrics=metrics, **filters):
            key = (_period_key(event.date, group_by), event.metric.value, event.currency)
            bucket = buckets.setdefault(key, {
                "period": key[0], "metric": key[1], "currency": key[2], "total": ZERO, "count": 0
            })
            bucket["total"] += event.value
            bucket["count"] += 1
        return [buckets[key] for key in sorted(buckets, key=lambda k: (k[0], k[1], k[2] or ""))]

    def profit(self, **filters) -> Dict[str, Dict[str, Decimal]]:
        """Income (interest and fees) minus expenses, per currency"""
        per_currency: Dict[str, Dict[str, Decimal]] = {}
        wanted = list(INCOME_METRICS) + [MetricName.EXPENSES]
        for event in self.list_events(metrics=wanted, **filters):
            row = per_currency.setdefault(event.currency or "", {
                "income": ZERO, "expenses": ZERO, "profit": ZERO,
                **{m.value: ZERO for m in INCOME_METRICS}
            })
            if event.metric == MetricName.EXPENSES:
                row["expenses"] += event.value
            else:
                row[event.metric.value] += event.value
                row["income"] += event.value
            row["profit"] = row["income"] - row["expenses"]
        return per_currency

    def _event_from_dict(self, data: Dict[str, Any]) -> MetricEvent:
        return MetricEvent(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            metric=MetricName(data['metric']),
            value=Decimal(data['value']),
            date=date.fromisoformat(data['date']),
            branch_name=data.get('branch_name'),
            branch_code=data.get('branch_code'),
            loan_officer_name=data.get('loan_officer_name'),
            currency=data.get('currency'),
            loan_id=data.get('loan_id'),
            group_id=data.get('group_id'),
            client_id=data.get('client_id'),
            extra=data.get('extra') or {}
        )
