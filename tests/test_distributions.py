"""
Test suite for the distribution ledger

Tranche events with the group interest share, compensating events on edit and
delete, member resolution and schedule adjustment.
"""

import pytest
from decimal import Decimal
from datetime import date

from microfinance.distributions import StartDateRule, apply_start_rule
from microfinance.errors import NotFoundError, ValidationError
from microfinance.metrics import MetricName

from support import (
    activate, build_system, group_payload, individual_payload, seed_client, seed_group
)


WAITING = MetricName.WAITING_TO_BE_COLLECTED.value
DISTRIBUTED = MetricName.LOAN_AMOUNT_DISTRIBUTED.value


class TestStartRules:
    """Test named collection start rules"""

    def test_one_week_after(self):
        assert apply_start_rule(StartDateRule.ONE_WEEK_AFTER, date(2024, 1, 3)) == date(2024, 1, 10)

    def test_next_week_from_midweek(self):
        # Wednesday -> following Monday
        assert apply_start_rule(StartDateRule.NEXT_WEEK, date(2024, 1, 3)) == date(2024, 1, 8)

    def test_next_week_from_monday_is_strictly_after(self):
        assert apply_start_rule(StartDateRule.NEXT_WEEK, date(2024, 1, 8)) == date(2024, 1, 15)

    def test_next_week_from_sunday(self):
        assert apply_start_rule(StartDateRule.NEXT_WEEK, date(2024, 1, 7)) == date(2024, 1, 8)


class TestGroupDistributions:
    """Test tranches against a group loan at 3% interest"""

    def setup_method(self):
        self.system = build_system()
        self.group, self.members = seed_group(self.system)
        loan = self.system.loan_manager.create_loan(group_payload(self.group.id, [m.id for m in self.members]))
        self.loan = activate(self.system, loan.id, disbursed_on=date(2024, 1, 1))

    def distribution_totals(self):
        return self.system.metrics.totals(metrics=[MetricName.WAITING_TO_BE_COLLECTED,
                                                   MetricName.LOAN_AMOUNT_DISTRIBUTED],
                                          loan_id=self.loan.id)

    def test_waiting_includes_interest_share(self):
        distribution = self.system.distributions.create_distribution(self.loan.id, {
            "amount": "5000", "member_id": self.members[0].id, "date": "2024-01-02"
        })
        totals = self.distribution_totals()

        assert distribution.amount == Decimal('5000.00')
        assert distribution.group_id == self.group.id
        assert totals[DISTRIBUTED] == Decimal('5000.00')
        assert totals[WAITING] == Decimal('5150.00')

    def test_delete_emits_compensating_events(self):
        distribution = self.system.distributions.create_distribution(self.loan.id, {"amount": "5000"})
        self.system.distributions.delete_distribution(distribution.id)

        deletes = [e for e in self.system.metrics.list_events(loan_id=self.loan.id)
                   if e.extra.get("delete")]
        assert sorted(e.value for e in deletes) == [Decimal('-5150.00'), Decimal('-5000.00')]
        totals = self.distribution_totals()
        assert totals[DISTRIBUTED] == Decimal('0.00')
        assert totals[WAITING] == Decimal('0.00')
        assert self.system.distributions.get_distribution(distribution.id) is None

    def test_update_emits_delta(self):
        distribution = self.system.distributions.create_distribution(self.loan.id, {"amount": "5000"})
        updated = self.system.distributions.update_distribution(distribution.id, {"amount": "6000"})

        assert updated.amount == Decimal('6000.00')
        totals = self.distribution_totals()
        assert totals[DISTRIBUTED] == Decimal('6000.00')
        assert totals[WAITING] == Decimal('6180.00')

    def test_update_without_amount_change_emits_nothing(self):
        distribution = self.system.distributions.create_distribution(self.loan.id, {"amount": "5000"})
        before = len(self.system.metrics.list_events(loan_id=self.loan.id))
        self.system.distributions.update_distribution(distribution.id, {"notes": "Paid at market"})
        assert len(self.system.metrics.list_events(loan_id=self.loan.id)) == before

    def test_update_rejects_unknown_fields(self):
        distribution = self.system.distributions.create_distribution(self.loan.id, {"amount": "5000"})
        with pytest.raises(ValidationError):
            self.system.distributions.update_distribution(distribution.id, {"loan_id": "other"})

    def test_batch_entries(self):
        created = self.system.distributions.create(self.loan.id, {"entries": [
            {"amount": "2000", "member_id": self.members[0].id},
            {"amount": "3000", "member_id": self.members[1].id},
        ]})
        assert len(created) == 2
        assert self.distribution_totals()[DISTRIBUTED] == Decimal('5000.00')
        assert len(self.system.distributions.list_for_loan(self.loan.id)) == 2

    def test_batch_rejected_as_a_whole(self):
        with pytest.raises(ValidationError):
            self.system.distributions.create(self.loan.id, {"entries": [
                {"amount": "2000"},
                {"amount": "0"},
            ]})
        assert self.system.distributions.list_for_loan(self.loan.id) == []

    def test_member_must_belong_to_loan(self):
        outsider = seed_client(self.system, passbook="PB-9999", name="Outsider")
        with pytest.raises(ValidationError):
            self.system.distributions.create_distribution(self.loan.id, {
                "amount": "1000", "member_id": outsider.id
            })

    def test_currency_mismatch_rejected(self):
        with pytest.raises(ValidationError):
            self.system.distributions.create_distribution(self.loan.id, {"amount": "100", "currency": "USD"})

    def test_missing_distribution(self):
        with pytest.raises(NotFoundError):
            self.system.distributions.delete_distribution("missing")


class TestDistributionGuards:
    """Test loan status and single-client member resolution"""

    def setup_method(self):
        self.system = build_system()
        self.client = seed_client(self.system)

    def test_pending_loan_rejected(self):
        loan = self.system.loan_manager.create_loan(individual_payload(self.client.id))
        with pytest.raises(ValidationError):
            self.system.distributions.create_distribution(loan.id, {"amount": "1000"})

    def test_paid_loan_rejected(self):
        loan = self.system.loan_manager.create_loan(individual_payload(self.client.id))
        activate(self.system, loan.id)
        self.system.lifecycle.set_status(loan.id, "paid", None)
        with pytest.raises(ValidationError):
            self.system.distributions.create_distribution(loan.id, {"amount": "1000"})

    def test_single_client_loan_forces_member(self):
        other = seed_client(self.system, passbook="PB-2002", name="Other Client")
        loan = self.system.loan_manager.create_loan(individual_payload(self.client.id))
        activate(self.system, loan.id)
        distribution = self.system.distributions.create_distribution(loan.id, {
            "amount": "1000", "member_id": other.id
        })
        assert distribution.member_id == self.client.id

    def test_individual_waiting_has_no_interest_share(self):
        loan = self.system.loan_manager.create_loan(individual_payload(self.client.id))
        activate(self.system, loan.id)
        self.system.distributions.create_distribution(loan.id, {"amount": "1000"})
        waiting = self.system.metrics.list_events(metrics=[MetricName.WAITING_TO_BE_COLLECTED], loan_id=loan.id)
        assert [e.value for e in waiting if e.extra.get("type") == "distribution"] == [Decimal('1000.00')]


class TestScheduleAdjustment:
    """Test schedule fields pushed onto the loan by a distribution"""

    def setup_method(self):
        self.system = build_system()
        self.group, self.members = seed_group(self.system)
        loan = self.system.loan_manager.create_loan(group_payload(self.group.id, [m.id for m in self.members]))
        self.loan = activate(self.system, loan.id, disbursed_on=date(2024, 1, 1))

    def test_explicit_start_date(self):
        self.system.distributions.create_distribution(self.loan.id, {
            "amount": "1000", "collection_start_date": "2024-01-15"
        })
        assert self.system.loan_manager.get_loan(self.loan.id).collection_start_date == date(2024, 1, 15)

    def test_rule_with_anchor(self):
        self.system.distributions.create_distribution(self.loan.id, {
            "amount": "1000", "collection_start_rule": "next_week", "start_anchor_date": "2024-01-03"
        })
        assert self.system.loan_manager.get_loan(self.loan.id).collection_start_date == date(2024, 1, 8)

    def test_rule_anchored_on_distribution_date(self):
        self.system.distributions.create_distribution(self.loan.id, {
            "amount": "1000", "date": "2024-01-03", "collection_start_rule": "one_week_after"
        })
        assert self.system.loan_manager.get_loan(self.loan.id).collection_start_date == date(2024, 1, 10)

    def test_duration_change_rederives_ending_date(self):
        assert self.loan.ending_date == date(2024, 2, 26)
        self.system.distributions.create_distribution(self.loan.id, {
            "amount": "1000", "duration_number": 10
        })
        loan = self.system.loan_manager.get_loan(self.loan.id)
        assert loan.duration_number == 10
        assert loan.ending_date == date(2024, 3, 11)

    def test_unknown_rule_rejected(self):
        with pytest.raises(ValidationError):
            self.system.distributions.create_distribution(self.loan.id, {
                "amount": "1000", "collection_start_rule": "fortnight"
            })
        assert self.system.distributions.list_for_loan(self.loan.id) == []

    def test_negative_duration_rejected_before_write(self):
        version = self.system.loan_manager.get_loan(self.loan.id).version
        with pytest.raises(ValidationError):
            self.system.distributions.create_distribution(self.loan.id, {
                "amount": "1000", "duration_number": -3
            })
        assert self.system.distributions.list_for_loan(self.loan.id) == []
        assert self.system.loan_manager.get_loan(self.loan.id).version == version

    def test_bad_dates_and_units_rejected_before_write(self):
        for changes in ({"collection_start_date": "next tuesday"},
                        {"collection_start_rule": "next_week", "start_anchor_date": "soon"},
                        {"duration_unit": "fortnights"},
                        {"duration_number": "ten"}):
            with pytest.raises(ValidationError):
                self.system.distributions.create(self.loan.id, dict(changes, amount="1000"))
        assert self.system.distributions.list_for_loan(self.loan.id) == []
        assert self.system.metrics.list_events(metrics=[MetricName.LOAN_AMOUNT_DISTRIBUTED],
                                               loan_id=self.loan.id) == []
