"""
Test suite for the loan lifecycle

Allowed transitions, approver-only activation, schedule commitment at first
activation and the best-effort activation side effects.
"""

import pytest
from decimal import Decimal
from datetime import date, datetime, timezone

from microfinance.errors import AccessDeniedError, InvalidTransitionError, ValidationError
from microfinance.lifecycle import check_transition
from microfinance.loans import LoanStatus
from microfinance.metrics import MetricName

from support import (
    ADMIN, OFFICER, activate, build_system, group_payload, individual_payload, seed_client, seed_group
)


class TestTransitions:
    """Test the transition table"""

    def test_allowed(self):
        assert check_transition(LoanStatus.PENDING, LoanStatus.ACTIVE) is True
        assert check_transition(LoanStatus.ACTIVE, LoanStatus.PAID) is True
        assert check_transition(LoanStatus.ACTIVE, LoanStatus.DEFAULTED) is True

    def test_same_status_is_noop(self):
        assert check_transition(LoanStatus.ACTIVE, LoanStatus.ACTIVE) is False

    @pytest.mark.parametrize("current,target", [
        (LoanStatus.PENDING, LoanStatus.PAID),
        (LoanStatus.PAID, LoanStatus.ACTIVE),
        (LoanStatus.DEFAULTED, LoanStatus.PAID),
        (LoanStatus.ACTIVE, LoanStatus.PENDING),
    ])
    def test_rejected(self, current, target):
        with pytest.raises(InvalidTransitionError):
            check_transition(current, target)


class TestActivation:
    """Test first activation and its side effects"""

    def setup_method(self):
        self.system = build_system()
        self.client = seed_client(self.system)

    def create(self, **overrides):
        return self.system.loan_manager.create_loan(individual_payload(self.client.id, **overrides))

    def test_weekly_installment_committed(self):
        """4 weeks, principal 2000, interest 10% -> 550.00 per week"""
        loan = self.create(loan_amount="2000", interest_rate="10", duration_number=4, duration_unit="weeks")
        loan = activate(self.system, loan.id)

        assert loan.status == LoanStatus.ACTIVE
        assert loan.weekly_installment == Decimal('550.00')
        assert loan.activated_at is not None

    def test_disbursement_date_defaults_to_today(self):
        loan = activate(self.system, self.create().id)
        today = datetime.now(timezone.utc).date()
        assert loan.disbursement_date == today
        assert loan.ending_date is not None

    def test_existing_disbursement_date_kept(self):
        loan = activate(self.system, self.create().id, disbursed_on=date(2024, 2, 5))
        assert loan.disbursement_date == date(2024, 2, 5)
        assert loan.ending_date == date(2024, 3, 4)

    def test_activation_metrics(self):
        loan = activate(self.system, self.create().id)
        totals = self.system.metrics.totals(loan_id=loan.id)

        assert totals[MetricName.INTEREST_COLLECTED.value] == Decimal('1000.00')
        assert totals[MetricName.LOAN_AMOUNT_DISTRIBUTED.value] == Decimal('9100.00')
        assert totals[MetricName.WAITING_TO_BE_COLLECTED.value] == Decimal('10000.00')
        assert totals[MetricName.COLLATERAL_CASH_DEPOSITED.value] == Decimal('1000.00')

    def test_agreement_generated(self):
        loan = activate(self.system, self.create().id)
        agreement = self.system.agreements.get_for_loan(loan.id)
        assert agreement["loan_id"] == loan.id

    def test_collateral_deposited_to_savings(self):
        loan = activate(self.system, self.create().id)
        account = self.system.savings.find_for_client(self.client.id)
        assert account is not None
        assert account.current_balance == Decimal('1000.00')
        assert account.currency.value == loan.currency.value

    def test_reactivation_is_noop(self):
        loan = activate(self.system, self.create().id)
        again = self.system.lifecycle.set_status(loan.id, "active", ADMIN)
        assert again.status == LoanStatus.ACTIVE
        events = self.system.metrics.list_events(metrics=[MetricName.INTEREST_COLLECTED], loan_id=loan.id)
        assert len(events) == 1

    def test_activation_requires_approver(self):
        loan = self.create()
        with pytest.raises(AccessDeniedError):
            self.system.lifecycle.set_status(loan.id, "active", OFFICER)
        with pytest.raises(AccessDeniedError):
            self.system.lifecycle.set_status(loan.id, "active", None)
        assert self.system.loan_manager.get_loan(loan.id).status == LoanStatus.PENDING

    def test_pay_off(self):
        loan = activate(self.system, self.create().id)
        loan = self.system.lifecycle.set_status(loan.id, "paid", None)
        assert loan.status == LoanStatus.PAID
        with pytest.raises(InvalidTransitionError):
            self.system.lifecycle.set_status(loan.id, "defaulted", None)

    def test_unknown_status(self):
        with pytest.raises(ValidationError):
            self.system.lifecycle.set_status(self.create().id, "closed", ADMIN)

    def test_agreement_failure_does_not_block_activation(self, monkeypatch):
        def broken(loan):
            raise RuntimeError("agreement store offline")

        monkeypatch.setattr(self.system.agreements, "ensure_for_loan", broken)
        loan = activate(self.system, self.create().id)
        assert loan.status == LoanStatus.ACTIVE


class TestGroupActivation:
    """Group loans disburse through distributions, not at activation"""

    def setup_method(self):
        self.system = build_system()
        self.group, self.members = seed_group(self.system)

    def test_group_activation_records_interest_only(self):
        loan = self.system.loan_manager.create_loan(group_payload(self.group.id, [m.id for m in self.members]))
        loan = activate(self.system, loan.id)
        totals = self.system.metrics.totals(loan_id=loan.id)

        assert totals[MetricName.INTEREST_COLLECTED.value] == Decimal('600.00')
        assert MetricName.LOAN_AMOUNT_DISTRIBUTED.value not in totals
        assert MetricName.COLLATERAL_CASH_DEPOSITED.value not in totals
        # 20600 over 8 weekly periods
        assert loan.weekly_installment == Decimal('2575.00')
