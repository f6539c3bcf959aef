"""
Distribution Ledger Module

Disbursement tranches paid out against active loans. Every create, update and
delete emits the metric events (or compensating events) for its amount change,
and a create may push a new schedule start or duration back onto the loan.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
import uuid

from .currency import Currency, round2, to_decimal
from .errors import NotFoundError, ValidationError
from .fees import DurationUnit
from .identity import UserIdentity
from .loans import Loan, LoanManager, LoanStatus, parse_date, parse_enum
from .logging_config import get_logger, loan_context, log_action
from .metrics import MetricsStore, distribution_events
from .storage import StorageInterface, StorageRecord


logger = get_logger("microfinance.distributions")

SCHEDULE_FIELDS = ("collection_start_date", "collection_start_rule", "start_anchor_date",
                   "duration_number", "duration_unit")


class StartDateRule(Enum):
    """Named rules for deriving a collection start date from an anchor date"""
    ONE_WEEK_AFTER = "one_week_after"  # anchor + 7 days
    NEXT_WEEK = "next_week"            # first Monday strictly after the anchor


def apply_start_rule(rule: StartDateRule, anchor: date) -> date:
    if rule == StartDateRule.ONE_WEEK_AFTER:
        return anchor + timedelta(days=7)
    if rule == StartDateRule.NEXT_WEEK:
        return anchor + timedelta(days=7 - anchor.weekday())
    raise ValueError(f"Unsupported start rule: {rule}")


@dataclass
class Distribution(StorageRecord):
    """A disbursement tranche"""
    loan_id: str
    amount: Decimal
    currency: Currency
    date: date
    member_id: Optional[str] = None
    group_id: Optional[str] = None
    branch_name: Optional[str] = None
    branch_code: Optional[str] = None
    notes: Optional[str] = None
    created_by_email: Optional[str] = None


class DistributionLedger:
    """Creates, edits and removes distributions with compensating metric events"""

    def __init__(self, storage: StorageInterface, loan_manager: LoanManager, metrics: MetricsStore):
        self.storage = storage
        self.loan_manager = loan_manager
        self.metrics = metrics
        self.table_name = "distributions"

    def create(self, loan_id: str, payload: Dict[str, Any],
               identity: Optional[UserIdentity] = None) -> List[Distribution]:
        """
        Create one distribution, or a batch when the payload carries `entries`

        Schedule adjustment fields (collection_start_date or collection_start_rule
        with an optional start_anchor_date, duration_number, duration_unit) are
        taken from the top level of the payload and applied once.

        Raises:
            ValidationError: If the loan is not active, a currency differs or an amount is not positive
            NotFoundError: If the loan does not exist
            AccessDeniedError: If a restricted caller does not own the loan
        """
        loan = self.loan_manager.require_loan(loan_id, identity)
        if loan.status != LoanStatus.ACTIVE:
            raise ValidationError(f"Distributions require an active loan; loan is {loan.status.value}")

        entries = payload.get("entries")
        if entries is not None and not isinstance(entries, list):
            raise ValidationError("entries must be a list")
        raw_entries = entries if entries else [payload]

        distributions = [self._build(loan, entry, identity) for entry in raw_entries]

        schedule_changes = {k: payload[k] for k in SCHEDULE_FIELDS if payload.get(k) not in (None, "")}
        adjust = None
        if schedule_changes:
            adjust = self._schedule_adjuster(schedule_changes, distributions[0].date)
            # Dry run on the unsaved copy so a bad adjustment rejects before any write
            adjust(loan)

        with self.storage.atomic():
            for distribution in distributions:
                self.storage.insert(self.table_name, distribution.id, distribution.to_dict())

        if adjust is not None:
            loan, _ = self.loan_manager.mutate_loan(loan.id, adjust)

        events = []
        for distribution in distributions:
            events.extend(distribution_events(loan, distribution.amount, distribution.date,
                                              distribution.id, distribution.member_id))
        self.metrics.record_many(events)

        log_action(logger, "info", "Distributions created",
                   user_id=identity.email if identity else None, action="create_distribution",
                   resource=loan.id, context=loan_context(loan), extra={"count": len(distributions)})
        return distributions

    def create_distribution(self, loan_id: str, payload: Dict[str, Any],
                            identity: Optional[UserIdentity] = None) -> Distribution:
        """Create a single distribution"""
        single = {k: v for k, v in payload.items() if k != "entries"}
        return self.create(loan_id, single, identity)[0]

    def get_distribution(self, distribution_id: str) -> Optional[Distribution]:
        data = self.storage.load(self.table_name, distribution_id)
        return self._distribution_from_dict(data) if data else None

    def require_distribution(self, distribution_id: str) -> Distribution:
        distribution = self.get_distribution(distribution_id)
        if distribution is None:
            raise NotFoundError(f"Distribution {distribution_id} not found")
        return distribution

    def list_for_loan(self, loan_id: str, identity: Optional[UserIdentity] = None) -> List[Distribution]:
        """Distributions of a loan, newest first"""
        self.loan_manager.require_loan(loan_id, identity)
        found = [self._distribution_from_dict(d) for d in self.storage.find(self.table_name, {"loan_id": loan_id})]
        found.sort(key=lambda d: d.created_at, reverse=True)
        return found

    def list_distributions(self, branch_name: Optional[str] = None,
                           branch_code: Optional[str] = None) -> List[Distribution]:
        filters = {}
        if branch_name:
            filters["branch_name"] = branch_name
        if branch_code:
            filters["branch_code"] = branch_code
        found = [self._distribution_from_dict(d) for d in self.storage.find(self.table_name, filters)]
        found.sort(key=lambda d: d.created_at, reverse=True)
        return found

    def list_all(self) -> List[Distribution]:
        """Every distribution in tranche date order"""
        found = [self._distribution_from_dict(d) for d in self.storage.load_all(self.table_name)]
        found.sort(key=lambda d: d.date)
        return found

    def update_distribution(self, distribution_id: str, payload: Dict[str, Any],
                            identity: Optional[UserIdentity] = None) -> Distribution:
        """
        Edit a distribution; an amount change emits delta events

        Raises:
            ValidationError: If the new amount is not positive or the currency differs
            NotFoundError: If the distribution or its loan does not exist
        """
        distribution = self.require_distribution(distribution_id)
        loan = self.loan_manager.require_loan(distribution.loan_id, identity)

        unknown = sorted(set(payload) - {"amount", "date", "notes", "member_id", "currency"})
        if unknown:
            raise ValidationError([f"{name} cannot be updated" for name in unknown])

        old_amount = distribution.amount
        if "amount" in payload:
            distribution.amount = self._positive_amount(payload["amount"])
        if payload.get("currency"):
            self._check_currency(loan, payload["currency"])
        if payload.get("date"):
            distribution.date = parse_date(payload["date"], "date")
        if "notes" in payload:
            distribution.notes = payload["notes"]
        if "member_id" in payload:
            distribution.member_id = self._resolve_member(loan, payload["member_id"])
        distribution.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, distribution.id, distribution.to_dict())

        delta = round2(distribution.amount - old_amount)
        if delta != 0:
            self.metrics.record_many(distribution_events(
                loan, delta, distribution.date, distribution.id, distribution.member_id,
                {"update": True, "previous_amount": str(old_amount)}
            ))
        log_action(logger, "info", "Distribution updated",
                   user_id=identity.email if identity else None, action="update_distribution",
                   resource=distribution.id, context=loan_context(loan), extra={"delta": str(delta)})
        return distribution

    def delete_distribution(self, distribution_id: str, identity: Optional[UserIdentity] = None) -> bool:
        """
        Remove a distribution and emit the negation of its events

        Raises:
            NotFoundError: If the distribution does not exist
        """
        distribution = self.require_distribution(distribution_id)
        loan = self.loan_manager.require_loan(distribution.loan_id, identity)
        self.storage.delete(self.table_name, distribution_id)
        self.metrics.record_many(distribution_events(
            loan, -distribution.amount, distribution.date, distribution.id, distribution.member_id,
            {"delete": True}
        ))
        log_action(logger, "info", "Distribution deleted",
                   user_id=identity.email if identity else None, action="delete_distribution",
                   resource=distribution_id, context=loan_context(loan))
        return True

    def purge_for_loan(self, loan_id: str) -> int:
        """Remove every distribution of a deleted loan (no compensating events)"""
        return self.storage.delete_where(self.table_name, lambda d: d.get("loan_id") == loan_id)

    def _build(self, loan: Loan, entry: Dict[str, Any], identity: Optional[UserIdentity]) -> Distribution:
        self._check_currency(loan, entry.get("currency") or loan.currency.value)
        now = datetime.now(timezone.utc)
        return Distribution(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            amount=self._positive_amount(entry.get("amount")),
            currency=loan.currency,
            date=parse_date(entry.get("date"), "date") or now.date(),
            member_id=self._resolve_member(loan, entry.get("member_id")),
            group_id=loan.group_id,
            branch_name=loan.branch_name,
            branch_code=loan.branch_code,
            notes=entry.get("notes"),
            created_by_email=identity.email if identity else None
        )

    def _positive_amount(self, value) -> Decimal:
        try:
            amount = round2(to_decimal(value))
        except ValueError:
            raise ValidationError(f"Invalid distribution amount '{value}'")
        if amount <= 0:
            raise ValidationError("Distribution amount must be positive")
        return amount

    def _check_currency(self, loan: Loan, code) -> None:
        try:
            currency = Currency.from_code(code)
        except ValueError as e:
            raise ValidationError(str(e))
        if currency != loan.currency:
            raise ValidationError(
                f"Distribution currency {currency.code} does not match loan currency {loan.currency.code}"
            )

    def _resolve_member(self, loan: Loan, member_id: Optional[str]) -> Optional[str]:
        # Single-client loans always pay out to that client
        if loan.client_id:
            return loan.client_id
        if member_id and loan.client_ids and member_id not in loan.client_ids:
            raise ValidationError(f"Member {member_id} is not a client of this loan")
        return member_id or None

    def _schedule_adjuster(self, changes: Dict[str, Any],
                           default_anchor: date) -> Callable[[Loan], None]:
        """
        Parse a new collection start date and/or duration into a loan mutator

        Every field is parsed here, so the returned mutator only fails on
        loan-level rules checked by validate_loan.

        Raises:
            ValidationError: If a date, rule, duration number or unit is malformed
        """
        start = parse_date(changes.get("collection_start_date"), "collection_start_date")
        rule = parse_enum(StartDateRule, changes.get("collection_start_rule"), "collection_start_rule")
        anchor = parse_date(changes.get("start_anchor_date"), "start_anchor_date") or default_anchor
        if start is None and rule is not None:
            start = apply_start_rule(rule, anchor)

        duration_number = None
        if changes.get("duration_number") is not None:
            try:
                duration_number = int(to_decimal(changes["duration_number"]))
            except ValueError:
                raise ValidationError(f"Invalid duration_number '{changes['duration_number']}'")
            if duration_number < 0:
                raise ValidationError("duration_number cannot be negative")
        duration_unit = parse_enum(DurationUnit, changes.get("duration_unit"), "duration_unit")

        def adjust(loan: Loan) -> None:
            if start is not None:
                loan.collection_start_date = start
            if duration_number is not None or duration_unit is not None:
                if duration_number is not None:
                    loan.duration_number = duration_number
                if duration_unit is not None:
                    loan.duration_unit = duration_unit
                # Cached ending date no longer matches the duration
                loan.ending_date = None
                self.loan_manager.validate_loan(loan)

        return adjust

    def _distribution_from_dict(self, data: Dict) -> Distribution:
        return Distribution(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            amount=Decimal(data['amount']),
            currency=Currency.from_code(data['currency']),
            date=date.fromisoformat(data['date']),
            member_id=data.get('member_id'),
            group_id=data.get('group_id'),
            branch_name=data.get('branch_name'),
            branch_code=data.get('branch_code'),
            notes=data.get('notes'),
            created_by_email=data.get('created_by_email')
        )
