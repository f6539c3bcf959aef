"""
Expense Module

Branch operating expenses. Each expense feeds the `expenses` metric with its
amount, later amount changes as deltas and a negation on delete; the profit
report subtracts that metric from interest and fee income.
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from .config import get_config
from .currency import Currency, round2, to_decimal
from .errors import AccessDeniedError, NotFoundError, ValidationError
from .identity import UserIdentity
from .loans import parse_date, parse_enum
from .logging_config import get_logger, log_action
from .metrics import MetricName, MetricsStore, new_event
from .storage import StorageInterface, StorageRecord


logger = get_logger("microfinance.expenses")

EXPENSE_UPDATE_FIELDS = {"description", "amount", "category", "currency", "expense_date",
                         "branch_name", "branch_code", "notes"}


class ExpenseStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"


@dataclass
class Expense(StorageRecord):
    description: str
    amount: Decimal
    currency: Currency
    expense_date: date
    category: Optional[str] = None
    branch_name: Optional[str] = None
    branch_code: Optional[str] = None
    notes: Optional[str] = None
    status: ExpenseStatus = ExpenseStatus.PENDING
    recorded_by_email: Optional[str] = None
    approved_by_email: Optional[str] = None


def ensure_expense_access(identity: Optional[UserIdentity]) -> UserIdentity:
    """
    Raises:
        AccessDeniedError: If the caller is unidentified or holds a forbidden role
    """
    if identity is None:
        raise AccessDeniedError("Authentication required via x-user-email header")
    if identity.normalized_role in get_config().expense_forbidden_roles:
        raise AccessDeniedError(f"Role '{identity.role}' cannot manage expenses")
    return identity


class ExpenseManager:
    """Records expenses and keeps the expenses metric in step"""

    def __init__(self, storage: StorageInterface, metrics: MetricsStore):
        self.storage = storage
        self.metrics = metrics
        self.table_name = "expenses"

    def create_expense(self, payload: Dict[str, Any], identity: Optional[UserIdentity]) -> Expense:
        """
        Record a new expense in pending status

        Raises:
            AccessDeniedError: If the caller may not manage expenses
            ValidationError: If the description or amount is missing or invalid
        """
        identity = ensure_expense_access(identity)
        errors = []
        if not (payload.get("description") or "").strip():
            errors.append("description is required")
        amount = self._amount(payload.get("amount"), errors)
        currency = self._currency(payload.get("currency") or get_config().local_currency, errors)
        if errors:
            raise ValidationError(errors)

        now = datetime.now(timezone.utc)
        expense = Expense(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            description=payload["description"].strip(),
            amount=amount,
            currency=currency,
            expense_date=parse_date(payload.get("expense_date"), "expense_date") or now.date(),
            category=payload.get("category"),
            branch_name=payload.get("branch_name") or identity.branch_name,
            branch_code=payload.get("branch_code") or identity.branch_code,
            notes=payload.get("notes"),
            recorded_by_email=identity.email
        )
        self.storage.save(self.table_name, expense.id, expense.to_dict())

        self._record_delta(expense, amount, identity, "expense")
        log_action(logger, "info", "Expense recorded", user_id=identity.email,
                   action="create_expense", resource=expense.id, extra={"amount": str(amount)})
        return expense

    def get_expense(self, expense_id: str) -> Optional[Expense]:
        data = self.storage.load(self.table_name, expense_id)
        return self._expense_from_dict(data) if data else None

    def require_expense(self, expense_id: str) -> Expense:
        expense = self.get_expense(expense_id)
        if expense is None:
            raise NotFoundError(f"Expense {expense_id} not found")
        return expense

    def list_expenses(
        self,
        branch_code: Optional[str] = None,
        category: Optional[str] = None,
        status: Optional[str] = None,
        currency: Optional[str] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None
    ) -> List[Expense]:
        """Expenses matching the filters, latest expense date first"""
        filters: Dict[str, Any] = {}
        if branch_code:
            filters["branch_code"] = branch_code
        if category:
            filters["category"] = category
        if status:
            filters["status"] = parse_enum(ExpenseStatus, status, "status").value
        if currency:
            filters["currency"] = currency.upper()

        expenses = [self._expense_from_dict(d) for d in self.storage.find(self.table_name, filters)]
        if date_from:
            expenses = [e for e in expenses if e.expense_date >= date_from]
        if date_to:
            expenses = [e for e in expenses if e.expense_date <= date_to]
        expenses.sort(key=lambda e: e.expense_date, reverse=True)
        return expenses

    def update_expense(self, expense_id: str, payload: Dict[str, Any],
                       identity: Optional[UserIdentity]) -> Expense:
        """
        Edit an expense; an amount change is recorded as a delta event

        Raises:
            AccessDeniedError: If the caller may not manage expenses
            NotFoundError: If the expense does not exist
            ValidationError: If a field is unknown or invalid
        """
        identity = ensure_expense_access(identity)
        expense = self.require_expense(expense_id)

        errors = [f"{name} cannot be updated" for name in sorted(set(payload) - EXPENSE_UPDATE_FIELDS)]
        old_amount = expense.amount
        if "amount" in payload:
            expense.amount = self._amount(payload["amount"], errors)
        if payload.get("currency"):
            expense.currency = self._currency(payload["currency"], errors)
        if "description" in payload:
            if not (payload["description"] or "").strip():
                errors.append("description is required")
            else:
                expense.description = payload["description"].strip()
        if errors:
            raise ValidationError(errors)

        if payload.get("expense_date"):
            expense.expense_date = parse_date(payload["expense_date"], "expense_date")
        for name in ("category", "branch_name", "branch_code", "notes"):
            if name in payload:
                setattr(expense, name, payload[name])
        expense.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, expense.id, expense.to_dict())

        delta = round2(expense.amount - old_amount)
        if delta != 0:
            self._record_delta(expense, delta, identity, "expenseUpdate")
        log_action(logger, "info", "Expense updated", user_id=identity.email,
                   action="update_expense", resource=expense.id, extra={"delta": str(delta)})
        return expense

    def delete_expense(self, expense_id: str, identity: Optional[UserIdentity]) -> bool:
        identity = ensure_expense_access(identity)
        expense = self.require_expense(expense_id)
        self.storage.delete(self.table_name, expense_id)
        self._record_delta(expense, -expense.amount, identity, "expenseDelete")
        log_action(logger, "info", "Expense deleted", user_id=identity.email,
                   action="delete_expense", resource=expense_id)
        return True

    def set_status(self, expense_id: str, status, identity: Optional[UserIdentity]) -> Expense:
        """
        Move an expense to pending, approved, rejected or paid

        The approver is recorded when the status becomes approved.
        """
        identity = ensure_expense_access(identity)
        target = parse_enum(ExpenseStatus, status, "status")
        if target is None:
            raise ValidationError("status is required")
        expense = self.require_expense(expense_id)
        expense.status = target
        if target == ExpenseStatus.APPROVED:
            expense.approved_by_email = identity.email
        expense.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, expense.id, expense.to_dict())
        log_action(logger, "info", f"Expense status set to {target.value}", user_id=identity.email,
                   action="set_expense_status", resource=expense.id)
        return expense

    def _record_delta(self, expense: Expense, value: Decimal, identity: UserIdentity, source: str) -> None:
        if value == 0:
            return
        self.metrics.record(new_event(
            MetricName.EXPENSES, value, expense.expense_date,
            {"update_source": source, "expense_id": expense.id,
             "description": expense.description, "category": expense.category},
            branch_name=expense.branch_name,
            branch_code=expense.branch_code,
            loan_officer_name=identity.username,
            currency=expense.currency.value
        ))

    def _amount(self, value, errors: List[str]) -> Decimal:
        try:
            amount = round2(to_decimal(value))
        except ValueError:
            errors.append(f"Invalid amount '{value}'")
            return round2(0)
        if amount <= 0:
            errors.append("amount must be positive")
        return amount

    def _currency(self, code, errors: List[str]) -> Currency:
        try:
            return Currency.from_code(code)
        except ValueError as e:
            errors.append(str(e))
            return Currency.LRD

    def _expense_from_dict(self, data: Dict[str, Any]) -> Expense:
        return Expense(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            description=data['description'],
            amount=Decimal(data['amount']),
            currency=Currency.from_code(data['currency']),
            expense_date=date.fromisoformat(data['expense_date']),
            category=data.get('category'),
            branch_name=data.get('branch_name'),
            branch_code=data.get('branch_code'),
            notes=data.get('notes'),
            status=ExpenseStatus(data.get('status') or ExpenseStatus.PENDING.value),
            recorded_by_email=data.get('recorded_by_email'),
            approved_by_email=data.get('approved_by_email')
        )
