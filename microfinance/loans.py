"""
Loan Module

The loan aggregate and its manager: payload sanitation, per-category relation
rules, fee/schedule derivation on every save, ownership scoping for restricted
roles, versioned writes, the due-collections report and administrative delete.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar
import uuid

from .config import get_config
from .currency import Currency, ZERO, optional_decimal, round2, to_decimal
from .errors import (
    ConcurrentModificationError, NotFoundError, ValidationError, AccessDeniedError
)
from .fees import (
    DurationUnit, FeeInputs, PaymentPlan, add_duration, derive_fees, due_dates,
    installment_amount, installment_amounts, schedule_period_count, step_date
)
from .identity import UserIdentity, ensure_owner
from .loan_config import LoanCategory, LoanConfigManager
from .logging_config import get_logger, loan_context, log_action
from .members import MemberDirectory
from .metrics import MetricsStore, creation_events
from .storage import StorageInterface, StorageRecord


logger = get_logger("microfinance.loans")

T = TypeVar("T")


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"      # Submitted, awaiting approval
    ACTIVE = "active"        # Approved and disbursed
    PAID = "paid"            # Fully repaid (terminal)
    DEFAULTED = "defaulted"  # Written off as in default (terminal)


@dataclass
class CollectionEntry:
    """One repayment observation; immutable once appended"""
    member_name: str
    scheduled_amount: Decimal
    collected_amount: Decimal
    advance_payment: Decimal
    field_balance: Decimal
    currency: Currency
    collection_date: date
    recorded_by: Optional[str] = None

    @property
    def overdue(self) -> Decimal:
        return max(round2(self.scheduled_amount - self.collected_amount), ZERO)


@dataclass
class Loan(StorageRecord):
    """Loan aggregate with embedded collection ledger"""
    category: LoanCategory
    loan_amount: Decimal
    interest_rate: Decimal = ZERO
    currency: Currency = Currency.LRD
    status: LoanStatus = LoanStatus.PENDING

    branch_name: Optional[str] = None
    branch_code: Optional[str] = None
    loan_officer_name: Optional[str] = None
    created_by_email: Optional[str] = None

    # Relations
    group_id: Optional[str] = None
    client_id: Optional[str] = None
    client_ids: List[str] = field(default_factory=list)

    # Schedule terms
    payment_plan: Optional[PaymentPlan] = None
    duration_number: int = 0
    duration_unit: DurationUnit = DurationUnit.WEEKS
    disbursement_date: Optional[date] = None
    collection_start_date: Optional[date] = None
    ending_date: Optional[date] = None
    is_returning_client: bool = False

    # Fee terms (percentages are stored resolved after the first save)
    processing_fee_percent: Optional[Decimal] = None
    collateral_cash_percent: Optional[Decimal] = None
    form_fee_amount: Optional[Decimal] = None
    inspection_fee_amount: Optional[Decimal] = None

    # Derived amounts
    processing_fee_amount: Decimal = ZERO
    collateral_cash_amount: Decimal = ZERO
    net_disbursed_amount: Decimal = ZERO
    total_amount_to_be_paid: Optional[Decimal] = None
    cash_amount_credited: Optional[Decimal] = None
    weekly_installment: Optional[Decimal] = None

    # Collection ledger
    collections: List[CollectionEntry] = field(default_factory=list)
    total_realization: Decimal = ZERO

    # Pass-through document metadata (signatories, creditor profile, collateral details, ...)
    guarantors: List[Dict[str, Any]] = field(default_factory=list)
    documents: Dict[str, Any] = field(default_factory=dict)

    activated_at: Optional[datetime] = None
    version: int = 0

    @property
    def plan(self) -> PaymentPlan:
        """Effective payment plan; loans without one repay weekly"""
        return self.payment_plan or PaymentPlan.WEEKLY

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE

    def period_count(self, limit: Optional[int] = None) -> int:
        return schedule_period_count(
            self.payment_plan, self.duration_number, self.duration_unit,
            self.collection_start_date, self.ending_date,
            limit or get_config().max_schedule_steps
        )

    def expected_installment(self) -> Decimal:
        """Scheduled amount per period: the committed installment, else total / periods"""
        if self.weekly_installment:
            return self.weekly_installment
        total = self.total_amount_to_be_paid
        if total is None:
            total = round2(self.loan_amount * (Decimal('1') + self.interest_rate / Decimal('100')))
        return installment_amount(total, self.period_count())

    def schedule_window(self) -> Optional[Tuple[date, date]]:
        """First and last due date bounds, when the loan has a disbursement or start date"""
        start = self.collection_start_date
        if start is None and self.disbursement_date:
            start = step_date(self.disbursement_date, self.plan)
        if start is None:
            return None
        end = self.ending_date
        if end is None:
            end = add_duration(self.disbursement_date or start, self.duration_number, self.duration_unit)
        return start, end


# Fields a caller may supply; everything else in a payload is document metadata
INPUT_FIELDS = {
    "category", "loan_amount", "interest_rate", "currency", "branch_name", "branch_code",
    "loan_officer_name", "group_id", "client_id", "client_ids", "payment_plan",
    "duration_number", "duration_unit", "disbursement_date", "collection_start_date",
    "ending_date", "is_returning_client", "processing_fee_percent", "collateral_cash_percent",
    "form_fee_amount", "inspection_fee_amount", "total_amount_to_be_paid",
    "cash_amount_credited", "guarantors", "documents",
}

# Fields only the engine may write
DERIVED_FIELDS = {
    "id", "created_at", "updated_at", "status", "processing_fee_amount",
    "collateral_cash_amount", "net_disbursed_amount", "weekly_installment",
    "collections", "total_realization", "activated_at", "version", "created_by_email",
}


def parse_date(value: Any, field_name: str = "date") -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationError(f"{field_name} must be an ISO date, got '{value}'")


def parse_enum(enum_cls, value: Any, field_name: str):
    if value is None or value == "":
        return None
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"{field_name} must be one of {allowed}, got '{value}'")


def sanitize_loan_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Normalise an incoming loan payload.

    Empty relation references are dropped, contradictory relations are pruned
    per category, engine-owned fields are rejected and unknown keys are folded
    into the document metadata.
    """
    clean = dict(payload)

    owned = sorted(k for k in clean if k in DERIVED_FIELDS)
    if owned:
        raise ValidationError([f"{name} cannot be set directly" for name in owned])

    for key in ("group_id", "client_id"):
        if key in clean and not clean[key]:
            del clean[key]
    if "client_ids" in clean:
        client_ids = [c for c in (clean["client_ids"] or []) if c]
        if client_ids:
            clean["client_ids"] = client_ids
        else:
            del clean["client_ids"]

    category = clean.get("category")
    category = category.value if isinstance(category, Enum) else (str(category).lower() if category else None)
    if category == LoanCategory.GROUP.value:
        clean.pop("client_id", None)
    elif category == LoanCategory.EXPRESS.value:
        clean.pop("group_id", None)
        clean.pop("client_ids", None)
    elif category == LoanCategory.INDIVIDUAL.value:
        clean.pop("client_ids", None)

    extra = {k: clean.pop(k) for k in list(clean) if k not in INPUT_FIELDS}
    if extra:
        documents = dict(clean.get("documents") or {})
        documents.update(extra)
        clean["documents"] = documents
    return clean


def _validate_express(loan: Loan) -> List[str]:
    loan.duration_number = 1
    loan.duration_unit = DurationUnit.MONTHS
    loan.group_id = None
    loan.client_ids = []
    return []


def _validate_individual(loan: Loan) -> List[str]:
    errors = []
    if not loan.client_id:
        errors.append("client_id is required for individual loans")
    # Member loans (linked to a group) may omit guarantors
    if not loan.group_id and len(loan.guarantors) < 1:
        errors.append("At least one guarantor is required for individual loans")
    if not loan.payment_plan:
        errors.append("payment_plan is required for group and individual loans")
    return errors


def _validate_group(loan: Loan) -> List[str]:
    errors = []
    if not loan.group_id:
        errors.append("group_id is required for group loans")
    if not loan.client_ids:
        errors.append("At least one client is required for group loans")
    if loan.client_id:
        errors.append("group loans cannot carry a single client_id")
    if not loan.payment_plan:
        errors.append("payment_plan is required for group and individual loans")
    return errors


CATEGORY_RULES: Dict[LoanCategory, Callable[[Loan], List[str]]] = {
    LoanCategory.EXPRESS: _validate_express,
    LoanCategory.INDIVIDUAL: _validate_individual,
    LoanCategory.GROUP: _validate_group,
}


class LoanManager:
    """
    Manages loan records from submission to administrative delete
    """

    def __init__(
        self,
        storage: StorageInterface,
        config_manager: LoanConfigManager,
        members: MemberDirectory,
        metrics: MetricsStore
    ):
        self.storage = storage
        self.config_manager = config_manager
        self.members = members
        self.metrics = metrics
        self.table_name = "loans"
        self._delete_hooks: List[Callable[[str], Any]] = []

    def register_delete_hook(self, hook: Callable[[str], Any]) -> None:
        """Register a purge callback run with the loan id after an administrative delete"""
        self._delete_hooks.append(hook)

    def create_loan(self, payload: Dict[str, Any], identity: Optional[UserIdentity] = None) -> Loan:
        """
        Submit a new loan in pending status

        Args:
            payload: Loan terms, relations and document metadata
            identity: Caller; restricted roles are pinned to their own branch and name

        Returns:
            Created Loan with derived fee fields

        Raises:
            ValidationError: If the payload violates category or term rules
            NotFoundError: If a referenced group or client does not exist
        """
        clean = sanitize_loan_payload(payload)
        if identity is not None:
            clean["created_by_email"] = identity.email
            if identity.is_restricted:
                clean["branch_name"] = identity.branch_name
                clean["branch_code"] = identity.branch_code
                clean["loan_officer_name"] = identity.username

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            category=LoanCategory.INDIVIDUAL,
            loan_amount=ZERO
        )
        self._apply_fields(loan, clean)
        self.validate_loan(loan)
        self._save_loan(loan, expected_version=None)

        log_action(logger, "info", "Loan created", user_id=loan.created_by_email,
                   action="create_loan", resource=loan.id, context=loan_context(loan),
                   extra={"category": loan.category.value, "loan_amount": str(loan.loan_amount)})

        self._refresh_group_total(loan)
        self.metrics.record_many(creation_events(loan))
        return loan

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID"""
        data = self.storage.load(self.table_name, loan_id)
        return self._loan_from_dict(data) if data else None

    def require_loan(self, loan_id: str, identity: Optional[UserIdentity] = None) -> Loan:
        """
        Load a loan the caller may access

        Raises:
            NotFoundError: If the loan does not exist
            AccessDeniedError: If a restricted caller does not own it
        """
        loan = self.get_loan(loan_id)
        if loan is None:
            raise NotFoundError(f"Loan {loan_id} not found")
        self.check_access(loan, identity)
        return loan

    def check_access(self, loan: Loan, identity: Optional[UserIdentity]) -> None:
        ensure_owner(identity, loan.created_by_email, loan.loan_officer_name, resource="loan")

    def list_loans(
        self,
        identity: Optional[UserIdentity] = None,
        branch_name: Optional[str] = None,
        branch_code: Optional[str] = None,
        category: Optional[str] = None,
        status: Optional[str] = None,
        group_id: Optional[str] = None
    ) -> List[Loan]:
        """List loans newest first; restricted callers see only their own, in their branch"""
        filters: Dict[str, Any] = {}
        if branch_name:
            filters["branch_name"] = branch_name
        if branch_code:
            filters["branch_code"] = branch_code
        if category:
            filters["category"] = parse_enum(LoanCategory, category, "category").value
        if status:
            filters["status"] = parse_enum(LoanStatus, status, "status").value
        if group_id:
            filters["group_id"] = group_id
        if identity is not None and identity.is_restricted and not branch_code:
            filters["branch_code"] = identity.branch_code

        loans = [self._loan_from_dict(data) for data in self.storage.find(self.table_name, filters)]
        if identity is not None and identity.is_restricted:
            loans = [loan for loan in loans if identity.owns(loan.created_by_email, loan.loan_officer_name)]
        loans.sort(key=lambda loan: loan.created_at, reverse=True)
        return loans

    def list_loans_by_group(
        self,
        group_id: str,
        identity: Optional[UserIdentity] = None,
        category: Optional[str] = None,
        status: Optional[str] = None
    ) -> List[Loan]:
        """
        Loans linked to a group (mostly member loans)

        Raises:
            NotFoundError: If the group does not exist
            AccessDeniedError: If a restricted caller did not create the group
        """
        group = self.members.require_group(group_id)
        if identity is not None and identity.is_restricted:
            if not group.created_by_email or group.created_by_email.lower() != identity.email.lower():
                raise AccessDeniedError("Access denied: group belongs to another officer")

        filters: Dict[str, Any] = {"group_id": group_id}
        if category:
            filters["category"] = parse_enum(LoanCategory, category, "category").value
        if status:
            filters["status"] = parse_enum(LoanStatus, status, "status").value
        loans = [self._loan_from_dict(data) for data in self.storage.find(self.table_name, filters)]
        loans.sort(key=lambda loan: loan.created_at, reverse=True)
        return loans

    def update_loan(self, loan_id: str, payload: Dict[str, Any],
                    identity: Optional[UserIdentity] = None) -> Loan:
        """
        Edit loan terms; every derived field is recomputed.

        Changing principal or interest re-derives the total repayable and the
        cash credited unless the payload supplies them; changing the
        disbursement date or duration re-derives the ending date likewise.

        Raises:
            ValidationError: If the payload is invalid or touches engine-owned fields
            NotFoundError: If the loan does not exist
            AccessDeniedError: If a restricted caller does not own the loan
        """
        clean = sanitize_loan_payload(payload)
        if identity is not None:
            if identity.is_restricted:
                clean["branch_name"] = identity.branch_name
                clean["branch_code"] = identity.branch_code
                clean["loan_officer_name"] = identity.username

        previous_group: Dict[str, Optional[str]] = {}

        def apply(loan: Loan) -> None:
            self.check_access(loan, identity)
            previous_group["id"] = loan.group_id if loan.category == LoanCategory.INDIVIDUAL else None
            if identity is not None and not loan.created_by_email:
                loan.created_by_email = identity.email

            if ({"loan_amount", "interest_rate"} & set(clean)):
                if "total_amount_to_be_paid" not in clean:
                    loan.total_amount_to_be_paid = None
                if "cash_amount_credited" not in clean:
                    loan.cash_amount_credited = None
            if ({"loan_amount", "processing_fee_percent", "form_fee_amount", "inspection_fee_amount"} & set(clean)):
                if "cash_amount_credited" not in clean:
                    loan.cash_amount_credited = None
            if ({"disbursement_date", "duration_number", "duration_unit", "category"} & set(clean)):
                if "ending_date" not in clean:
                    loan.ending_date = None

            self._apply_fields(loan, clean)
            self.validate_loan(loan)

        loan, _ = self.mutate_loan(loan_id, apply)

        log_action(logger, "info", "Loan updated", user_id=identity.email if identity else None,
                   action="update_loan", resource=loan.id, context=loan_context(loan),
                   extra={"fields": sorted(clean)})

        groups = {previous_group.get("id")}
        if loan.category == LoanCategory.INDIVIDUAL:
            groups.add(loan.group_id)
        for group_id in groups:
            if group_id:
                self.refresh_group_total(group_id)
        return loan

    def delete_loan(self, loan_id: str, identity: Optional[UserIdentity] = None) -> bool:
        """
        Administrative delete; purges the loan's metric events and dependents

        Raises:
            NotFoundError: If the loan does not exist
            AccessDeniedError: If a restricted caller does not own the loan
        """
        loan = self.require_loan(loan_id, identity)
        deleted = self.storage.delete(self.table_name, loan_id)
        if not deleted:
            raise NotFoundError(f"Loan {loan_id} not found")

        self.metrics.delete_for_loan(loan_id)
        for hook in self._delete_hooks:
            hook(loan_id)

        log_action(logger, "info", "Loan deleted", user_id=identity.email if identity else None,
                   action="delete_loan", resource=loan_id, context=loan_context(loan))
        self._refresh_group_total(loan)
        return True

    def validate_loan(self, loan: Loan) -> Loan:
        """
        Enforce loan invariants and recompute every derived field in place

        Raises:
            ValidationError: With every violated rule
            NotFoundError: If a referenced group or client does not exist
        """
        errors = []
        if not loan.branch_name or not loan.branch_code:
            errors.append("branch_name and branch_code are required")
        if loan.loan_amount <= 0:
            errors.append("loan_amount must be positive")
        if loan.interest_rate < 0:
            errors.append("interest_rate cannot be negative")
        if loan.duration_number < 0:
            errors.append("duration_number cannot be negative")
        errors.extend(CATEGORY_RULES[loan.category](loan))
        if errors:
            raise ValidationError(errors)

        if loan.group_id:
            self.members.require_group(loan.group_id)
        for client_id in ([loan.client_id] if loan.client_id else []) + loan.client_ids:
            self.members.require_client(client_id)

        if loan.ending_date is None and loan.disbursement_date and loan.duration_number:
            loan.ending_date = add_duration(loan.disbursement_date, loan.duration_number, loan.duration_unit)

        fees = derive_fees(
            FeeInputs(
                category=loan.category,
                principal=loan.loan_amount,
                interest_rate=loan.interest_rate,
                currency=loan.currency,
                in_group=bool(loan.group_id),
                is_returning_client=loan.is_returning_client,
                processing_fee_percent=loan.processing_fee_percent,
                collateral_cash_percent=loan.collateral_cash_percent,
                form_fee_amount=loan.form_fee_amount,
                inspection_fee_amount=loan.inspection_fee_amount,
                total_amount_to_be_paid=loan.total_amount_to_be_paid,
                cash_amount_credited=loan.cash_amount_credited
            ),
            self.config_manager.get_effective_config(loan.branch_code)
        )
        loan.processing_fee_percent = fees.processing_fee_percent
        loan.collateral_cash_percent = fees.collateral_cash_percent
        loan.processing_fee_amount = fees.processing_fee_amount
        loan.collateral_cash_amount = fees.collateral_cash_amount
        loan.form_fee_amount = fees.form_fee_amount
        loan.inspection_fee_amount = fees.inspection_fee_amount
        loan.net_disbursed_amount = fees.net_disbursed_amount
        loan.total_amount_to_be_paid = fees.total_amount_to_be_paid
        loan.cash_amount_credited = fees.cash_amount_credited
        return loan

    def mutate_loan(self, loan_id: str, mutator: Callable[[Loan], T]) -> Tuple[Loan, T]:
        """
        Read-modify-write a loan under optimistic versioning.

        The mutator is re-applied to a fresh copy when another writer got in
        first, up to the configured number of attempts.

        Raises:
            NotFoundError: If the loan does not exist
            ConcurrentModificationError: If every attempt lost the race
        """
        attempts = max(get_config().ledger_retry_attempts, 1)
        for attempt in range(1, attempts + 1):
            loan = self.get_loan(loan_id)
            if loan is None:
                raise NotFoundError(f"Loan {loan_id} not found")
            result = mutator(loan)
            loan.updated_at = datetime.now(timezone.utc)
            try:
                self._save_loan(loan, expected_version=loan.version)
                return loan, result
            except ConcurrentModificationError:
                logger.warning("Loan write conflict, retrying",
                               extra={"resource": loan_id, "extra": {"attempt": attempt}})
        raise ConcurrentModificationError(f"Loan {loan_id} was modified concurrently; giving up after {attempts} attempts")

    def due_collections(
        self,
        date_from: date,
        date_to: date,
        identity: Optional[UserIdentity] = None,
        branch_code: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """
        Scheduled repayments falling in [date_from, date_to] across active loans

        Each row carries the period number and scheduled amount plus loan-level
        expected-to-date, realised and overdue-to-date figures as of date_to.
        """
        if date_from > date_to:
            raise ValidationError("date_from must not be after date_to")

        limit = get_config().max_schedule_steps
        rows = []
        for loan in self.list_loans(identity=identity, branch_code=branch_code, status=LoanStatus.ACTIVE.value):
            window = loan.schedule_window()
            if window is None:
                continue
            dates = due_dates(window[0], window[1], loan.plan, limit)
            if not dates:
                continue
            total = loan.total_amount_to_be_paid or ZERO
            amounts = scheduled_amounts(loan, total, len(dates))
            due_to_date = sum((a for d, a in zip(dates, amounts) if d <= date_to), ZERO)
            expected_to_date = min(round2(due_to_date), total)
            overdue_to_date = max(round2(expected_to_date - loan.total_realization), ZERO)

            for number, (due_date, amount) in enumerate(zip(dates, amounts), start=1):
                if due_date < date_from or due_date > date_to:
                    continue
                rows.append({
                    "loan_id": loan.id,
                    "category": loan.category.value,
                    "branch_name": loan.branch_name,
                    "branch_code": loan.branch_code,
                    "loan_officer_name": loan.loan_officer_name,
                    "group_id": loan.group_id,
                    "client_id": loan.client_id,
                    "currency": loan.currency.value,
                    "due_date": due_date,
                    "period_number": number,
                    "period_count": len(dates),
                    "scheduled_amount": amount,
                    "expected_to_date": expected_to_date,
                    "realized": loan.total_realization,
                    "overdue_to_date": overdue_to_date,
                })
        rows.sort(key=lambda row: (row["due_date"], row["loan_id"]))
        return rows

    def sum_group_member_principal(self, group_id: str) -> Decimal:
        """Sum of principal over individual loans linked to the group"""
        return self.storage.sum_field(self.table_name, "loan_amount",
                                      {"group_id": group_id, "category": LoanCategory.INDIVIDUAL.value})

    def _refresh_group_total(self, loan: Loan) -> None:
        if loan.category == LoanCategory.INDIVIDUAL and loan.group_id:
            self.refresh_group_total(loan.group_id)

    def refresh_group_total(self, group_id: str) -> None:
        # Denormalised cache; failures must not fail the loan write
        try:
            self.members.set_group_loan_total(group_id, self.sum_group_member_principal(group_id))
        except Exception:
            logger.exception("Failed to refresh group loan total", extra={"resource": group_id})

    def _apply_fields(self, loan: Loan, clean: Dict[str, Any]) -> None:
        """Copy sanitised payload values onto the loan with type coercion"""
        errors = []
        for key, value in clean.items():
            try:
                if key == "category":
                    parsed = parse_enum(LoanCategory, value, "category")
                    if parsed is None:
                        raise ValidationError("category is required")
                    loan.category = parsed
                elif key == "currency":
                    try:
                        loan.currency = Currency.from_code(value or get_config().local_currency)
                    except ValueError as e:
                        raise ValidationError(str(e))
                elif key == "payment_plan":
                    loan.payment_plan = parse_enum(PaymentPlan, value, "payment_plan")
                elif key == "duration_unit":
                    loan.duration_unit = parse_enum(DurationUnit, value, "duration_unit") or DurationUnit.WEEKS
                elif key == "duration_number":
                    loan.duration_number = int(to_decimal(value))
                elif key in ("loan_amount", "interest_rate"):
                    setattr(loan, key, to_decimal(value))
                elif key in ("processing_fee_percent", "collateral_cash_percent", "form_fee_amount",
                             "inspection_fee_amount", "total_amount_to_be_paid", "cash_amount_credited"):
                    setattr(loan, key, optional_decimal(value))
                elif key in ("disbursement_date", "collection_start_date", "ending_date"):
                    setattr(loan, key, parse_date(value, key))
                elif key == "is_returning_client":
                    loan.is_returning_client = bool(value)
                elif key == "client_ids":
                    loan.client_ids = [str(c) for c in (value or [])]
                elif key == "guarantors":
                    loan.guarantors = list(value or [])
                elif key == "documents":
                    loan.documents = dict(value or {})
                else:
                    setattr(loan, key, value)
            except ValidationError as e:
                errors.extend(e.reasons)
            except (ValueError, TypeError):
                errors.append(f"Invalid value for {key}: '{value}'")
        if errors:
            raise ValidationError(errors)

    def _save_loan(self, loan: Loan, expected_version: Optional[int]) -> None:
        """Versioned write; bumps loan.version on success"""
        stored = self.storage.compare_and_swap(
            self.table_name, loan.id, self._loan_to_dict(loan), expected_version
        )
        loan.version = stored["version"]

    def _loan_to_dict(self, loan: Loan) -> Dict:
        """Convert loan to dictionary"""
        return loan.to_dict()

    def _loan_from_dict(self, data: Dict) -> Loan:
        """Convert dictionary to loan"""
        def get_decimal(key: str, default=ZERO):
            value = data.get(key)
            return Decimal(value) if value not in (None, "") else default

        def get_date(key: str) -> Optional[date]:
            if data.get(key):
                return date.fromisoformat(data[key])
            return None

        collections = [
            CollectionEntry(
                member_name=entry.get('member_name') or "",
                scheduled_amount=Decimal(entry['scheduled_amount']),
                collected_amount=Decimal(entry['collected_amount']),
                advance_payment=Decimal(entry['advance_payment']),
                field_balance=Decimal(entry['field_balance']),
                currency=Currency.from_code(entry['currency']),
                collection_date=date.fromisoformat(entry['collection_date']),
                recorded_by=entry.get('recorded_by')
            )
            for entry in data.get('collections', [])
        ]

        return Loan(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            category=LoanCategory(data['category']),
            loan_amount=Decimal(data['loan_amount']),
            interest_rate=get_decimal('interest_rate'),
            currency=Currency.from_code(data['currency']),
            status=LoanStatus(data['status']),
            branch_name=data.get('branch_name'),
            branch_code=data.get('branch_code'),
            loan_officer_name=data.get('loan_officer_name'),
            created_by_email=data.get('created_by_email'),
            group_id=data.get('group_id'),
            client_id=data.get('client_id'),
            client_ids=list(data.get('client_ids') or []),
            payment_plan=PaymentPlan(data['payment_plan']) if data.get('payment_plan') else None,
            duration_number=int(data.get('duration_number') or 0),
            duration_unit=DurationUnit(data.get('duration_unit') or DurationUnit.WEEKS.value),
            disbursement_date=get_date('disbursement_date'),
            collection_start_date=get_date('collection_start_date'),
            ending_date=get_date('ending_date'),
            is_returning_client=bool(data.get('is_returning_client')),
            processing_fee_percent=get_decimal('processing_fee_percent', None),
            collateral_cash_percent=get_decimal('collateral_cash_percent', None),
            form_fee_amount=get_decimal('form_fee_amount', None),
            inspection_fee_amount=get_decimal('inspection_fee_amount', None),
            processing_fee_amount=get_decimal('processing_fee_amount'),
            collateral_cash_amount=get_decimal('collateral_cash_amount'),
            net_disbursed_amount=get_decimal('net_disbursed_amount'),
            total_amount_to_be_paid=get_decimal('total_amount_to_be_paid', None),
            cash_amount_credited=get_decimal('cash_amount_credited', None),
            weekly_installment=get_decimal('weekly_installment', None),
            collections=collections,
            total_realization=get_decimal('total_realization'),
            guarantors=list(data.get('guarantors') or []),
            documents=dict(data.get('documents') or {}),
            activated_at=datetime.fromisoformat(data['activated_at']) if data.get('activated_at') else None,
            version=int(data.get('version') or 0)
        )


def scheduled_amounts(loan: Loan, total: Decimal, periods: int) -> List[Decimal]:
    """Scheduled amount per due date; the last period absorbs the remainder"""
    if periods <= 0:
        return []
    if loan.weekly_installment:
        regular = loan.weekly_installment
        amounts = [regular] * (periods - 1)
        amounts.append(max(round2(total - regular * (periods - 1)), ZERO))
        return amounts
    return installment_amounts(total, periods)
