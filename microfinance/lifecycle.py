"""
Loan Lifecycle Module

Status transitions pending -> active -> paid | defaulted. The first entry into
active commits the repayment schedule and triggers best-effort side effects:
metric events, agreement generation and the collateral savings deposit.

Side effects run after the status write and are at-least-once: a failure is
logged and leaves the transition in place, and recalculation repairs metrics.
"""

from datetime import datetime, timezone
from typing import Dict, FrozenSet, Optional

from .fees import installment_amount
from .errors import InvalidTransitionError, ValidationError
from .identity import UserIdentity, ensure_approver
from .loan_config import LoanCategory
from .loans import Loan, LoanManager, LoanStatus, parse_enum
from .logging_config import get_logger, loan_context, log_action
from .metrics import MetricsStore, activation_events, collateral_deposit_event
from .savings import SavingsManager
from .agreements import AgreementManager


logger = get_logger("microfinance.lifecycle")

ALLOWED_TRANSITIONS: Dict[LoanStatus, FrozenSet[LoanStatus]] = {
    LoanStatus.PENDING: frozenset([LoanStatus.ACTIVE]),
    LoanStatus.ACTIVE: frozenset([LoanStatus.PAID, LoanStatus.DEFAULTED]),
    LoanStatus.PAID: frozenset(),
    LoanStatus.DEFAULTED: frozenset(),
}


def check_transition(current: LoanStatus, target: LoanStatus) -> bool:
    """
    True if the transition changes state, False for a no-op re-entry

    Raises:
        InvalidTransitionError: If the lifecycle does not allow the move
    """
    if current == target:
        return False
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(f"Cannot move loan from {current.value} to {target.value}")
    return True


class LoanLifecycle:
    """Applies status transitions and their side effects"""

    def __init__(
        self,
        loan_manager: LoanManager,
        metrics: MetricsStore,
        agreements: AgreementManager,
        savings: SavingsManager
    ):
        self.loan_manager = loan_manager
        self.metrics = metrics
        self.agreements = agreements
        self.savings = savings

    def set_status(self, loan_id: str, status, identity: Optional[UserIdentity] = None) -> Loan:
        """
        Move a loan to a new status

        Args:
            loan_id: Loan to transition
            status: Target LoanStatus or its string value
            identity: Caller; activation requires an approver role

        Returns:
            The loan after the transition

        Raises:
            ValidationError: If the status value is unknown
            InvalidTransitionError: If the lifecycle forbids the move
            AccessDeniedError: If the caller may not touch the loan or approve it
            NotFoundError: If the loan does not exist
        """
        target = parse_enum(LoanStatus, status, "status")
        if target is None:
            raise ValidationError("status is required")

        # Authorisation happens before any write
        self.loan_manager.require_loan(loan_id, identity)
        if target == LoanStatus.ACTIVE:
            ensure_approver(identity, "approve loans")

        def transition(loan: Loan) -> bool:
            changed = check_transition(loan.status, target)
            if not changed:
                return False
            first_activation = target == LoanStatus.ACTIVE and loan.activated_at is None
            loan.status = target
            if first_activation:
                self._commit_schedule(loan)
            return first_activation

        loan, first_activation = self.loan_manager.mutate_loan(loan_id, transition)

        log_action(logger, "info", f"Loan status set to {target.value}",
                   user_id=identity.email if identity else None,
                   action="set_loan_status", resource=loan.id, context=loan_context(loan))

        if first_activation:
            self._run_activation_side_effects(loan)
        if loan.category == LoanCategory.INDIVIDUAL and loan.group_id:
            self.loan_manager.refresh_group_total(loan.group_id)
        return loan

    def _commit_schedule(self, loan: Loan) -> None:
        """Fix the disbursement date and installment at first activation"""
        now = datetime.now(timezone.utc)
        if loan.disbursement_date is None:
            loan.disbursement_date = now.date()
        loan.activated_at = now
        # Re-derive the ending date and fees now that the disbursement date is known
        self.loan_manager.validate_loan(loan)
        periods = loan.period_count()
        if periods > 0:
            loan.weekly_installment = installment_amount(loan.total_amount_to_be_paid, periods)

    def _run_activation_side_effects(self, loan: Loan) -> None:
        self.metrics.record_many(activation_events(loan))

        try:
            self.agreements.ensure_for_loan(loan)
        except Exception:
            logger.exception("Agreement generation failed after activation",
                             extra={"action": "generate_agreement", "resource": loan.id})

        if loan.client_id and loan.collateral_cash_amount > 0:
            try:
                account = self.savings.ensure_individual_account(
                    client_id=loan.client_id,
                    branch_name=loan.branch_name,
                    branch_code=loan.branch_code,
                    currency=loan.currency,
                    group_id=loan.group_id
                )
                self.savings.add_transaction(
                    account.id,
                    saving_amount=loan.collateral_cash_amount,
                    currency=loan.currency,
                    transaction_date=loan.disbursement_date,
                    reference=f"collateral:{loan.id}"
                )
                self.metrics.record(collateral_deposit_event(loan, {"savings_account_id": account.id}))
            except Exception:
                logger.exception("Collateral deposit failed after activation",
                                 extra={"action": "deposit_collateral", "resource": loan.id})
