"""
Collection Ledger Module

Appends repayment observations to a loan's embedded collection list and keeps
the running realised total in step, under the loan's versioned write.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .config import get_config
from .currency import Currency, ZERO, round2
from .errors import ValidationError
from .fees import due_dates
from .identity import UserIdentity
from .loans import CollectionEntry, Loan, LoanManager, LoanStatus, parse_date, scheduled_amounts
from .logging_config import get_logger, loan_context, log_action
from .members import MemberDirectory
from .metrics import MetricsStore, collection_events


logger = get_logger("microfinance.collections")


class CollectionLedger:
    """
    Records collections against loans and reports repayment progress
    """

    def __init__(self, loan_manager: LoanManager, members: MemberDirectory, metrics: MetricsStore):
        self.loan_manager = loan_manager
        self.members = members
        self.metrics = metrics

    def add_collection(self, loan_id: str, payload: Dict[str, Any],
                       identity: Optional[UserIdentity] = None) -> Loan:
        """
        Append one collection entry to a loan

        Args:
            loan_id: Loan being repaid
            payload: member_name, scheduled_amount, collected_amount, advance_payment,
                field_balance, currency, collection_date (all optional)
            identity: Caller; restricted roles may only collect on their own loans

        Returns:
            Updated loan

        Raises:
            ValidationError: If the currency differs from the loan's or the loan is pending
            NotFoundError: If the loan does not exist
            AccessDeniedError: If a restricted caller does not own the loan
        """
        return self._append(loan_id, [payload], identity, batch=False)

    def add_collections_batch(self, loan_id: str, entries: List[Dict[str, Any]],
                              identity: Optional[UserIdentity] = None) -> Loan:
        """
        Append several entries as one ledger write and one realised-total increment.

        Either every entry is appended or none is.
        """
        if not entries:
            raise ValidationError("entries array is required")
        return self._append(loan_id, entries, identity, batch=True)

    def _append(self, loan_id: str, payloads: List[Dict[str, Any]],
                identity: Optional[UserIdentity], batch: bool) -> Loan:
        self.loan_manager.require_loan(loan_id, identity)
        recorded_by = identity.email if identity else None

        def append(loan: Loan) -> List[CollectionEntry]:
            if loan.status == LoanStatus.PENDING:
                raise ValidationError("Collections cannot be recorded against a pending loan")
            default_member = self._default_member_name(loan)
            expected = loan.expected_installment()
            entries = [self._build_entry(loan, payload, expected, default_member, recorded_by)
                       for payload in payloads]
            loan.collections.extend(entries)
            loan.total_realization = round2(
                loan.total_realization + sum((e.collected_amount for e in entries), ZERO)
            )
            return entries

        loan, entries = self.loan_manager.mutate_loan(loan_id, append)

        start_index = len(loan.collections) - len(entries)
        events = []
        for offset, entry in enumerate(entries):
            extra = {"collection_index": start_index + offset}
            if batch:
                extra.update(batch=True, entry_index=offset)
            events.extend(collection_events(loan, entry, extra))
        self.metrics.record_many(events)

        log_action(logger, "info", "Collections recorded", user_id=recorded_by,
                   action="add_collections" if batch else "add_collection", resource=loan.id,
                   context=loan_context(loan),
                   extra={"entries": len(entries),
                          "collected": str(sum((e.collected_amount for e in entries), ZERO))})
        return loan

    def _build_entry(self, loan: Loan, payload: Dict[str, Any], expected: Decimal,
                     default_member: str, recorded_by: Optional[str]) -> CollectionEntry:
        currency_code = payload.get("currency") or loan.currency.value
        try:
            currency = Currency.from_code(currency_code)
        except ValueError as e:
            raise ValidationError(str(e))
        if currency != loan.currency:
            raise ValidationError(
                f"Collection currency {currency.code} does not match loan currency {loan.currency.code}"
            )

        scheduled = round2(expected if payload.get("scheduled_amount") is None else payload["scheduled_amount"])
        collected = round2(payload.get("collected_amount"))
        advance = round2(payload.get("advance_payment"))
        if collected < 0 or advance < 0 or scheduled < 0:
            raise ValidationError("Collection amounts cannot be negative")
        if payload.get("field_balance") is None:
            field_balance = max(round2(scheduled - collected - advance), ZERO)
        else:
            field_balance = round2(payload["field_balance"])

        return CollectionEntry(
            member_name=payload.get("member_name") or default_member,
            scheduled_amount=scheduled,
            collected_amount=collected,
            advance_payment=advance,
            field_balance=field_balance,
            currency=currency,
            collection_date=parse_date(payload.get("collection_date"), "collection_date")
            or datetime.now(timezone.utc).date(),
            recorded_by=recorded_by
        )

    def _default_member_name(self, loan: Loan) -> str:
        if not loan.client_id:
            return ""
        try:
            client = self.members.get_client(loan.client_id)
        except Exception:
            logger.exception("Client lookup failed for collection member name",
                             extra={"resource": loan.client_id})
            return ""
        return client.member_name if client else ""

    def summarize(self, loan: Loan, as_of: Optional[date] = None) -> Dict[str, Any]:
        """Repayment progress of a loan as of a date (today by default)"""
        as_of = as_of or datetime.now(timezone.utc).date()
        total = loan.total_amount_to_be_paid or ZERO
        realized = loan.total_realization
        expected_to_date = ZERO
        periods_due = 0

        window = loan.schedule_window() if loan.status != LoanStatus.PENDING else None
        if window is not None:
            dates = due_dates(window[0], window[1], loan.plan, get_config().max_schedule_steps)
            amounts = scheduled_amounts(loan, total, len(dates))
            due = [amount for due_date, amount in zip(dates, amounts) if due_date <= as_of]
            periods_due = len(due)
            expected_to_date = min(round2(sum(due, ZERO)), total)

        return {
            "loan_id": loan.id,
            "status": loan.status.value,
            "currency": loan.currency.value,
            "total_amount_to_be_paid": total,
            "total_realization": realized,
            "outstanding": max(round2(total - realized), ZERO),
            "expected_to_date": expected_to_date,
            "overdue_to_date": max(round2(expected_to_date - realized), ZERO),
            "periods_due": periods_due,
            "period_count": loan.period_count(),
            "collection_count": len(loan.collections),
            "overdue_recorded": round2(sum((e.overdue for e in loan.collections), ZERO)),
            "as_of": as_of,
        }
