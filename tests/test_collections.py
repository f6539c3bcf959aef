"""
Test suite for the collection ledger

Entry defaults, currency and status checks, realised-total bookkeeping,
collection metric events and repayment summaries.
"""

import pytest
from decimal import Decimal
from datetime import date

from microfinance.errors import AccessDeniedError, ValidationError
from microfinance.metrics import MetricName

from support import (
    OFFICER, OTHER_OFFICER, activate, build_system, individual_payload, seed_client
)


class TestCollectionEntries:
    """Test single and batch appends"""

    def setup_method(self):
        self.system = build_system()
        self.client = seed_client(self.system)
        loan = self.system.loan_manager.create_loan(individual_payload(
            self.client.id, loan_amount="2000", interest_rate="10"
        ))
        self.loan = activate(self.system, loan.id, disbursed_on=date(2024, 1, 1))

    def test_partial_collection_events(self):
        """Scheduled 550, collected 300 -> overdue 250 and waiting -300"""
        self.system.collections.add_collection(self.loan.id, {
            "scheduled_amount": "550", "collected_amount": "300", "collection_date": "2024-01-08"
        })
        events = self.system.metrics.list_events(loan_id=self.loan.id, date_from=date(2024, 1, 8),
                                                 date_to=date(2024, 1, 8))
        by_metric = {e.metric: e.value for e in events}

        assert by_metric[MetricName.TOTAL_COLLECTIONS_COLLECTED] == Decimal('300.00')
        assert by_metric[MetricName.WAITING_TO_BE_COLLECTED] == Decimal('-300.00')
        assert by_metric[MetricName.OVERDUE] == Decimal('250.00')

    def test_defaults_from_loan(self):
        loan = self.system.collections.add_collection(self.loan.id, {"collected_amount": "550"})
        entry = loan.collections[-1]

        assert entry.scheduled_amount == Decimal('550.00')
        assert entry.member_name == self.client.member_name
        assert entry.field_balance == Decimal('0.00')
        assert entry.currency == self.loan.currency
        assert loan.total_realization == Decimal('550.00')

    def test_explicit_zero_scheduled_kept(self):
        loan = self.system.collections.add_collection(self.loan.id, {
            "scheduled_amount": Decimal('0'), "collected_amount": Decimal('0'), "collection_date": "2024-01-08"
        })
        entry = loan.collections[-1]

        assert entry.scheduled_amount == Decimal('0.00')
        assert entry.field_balance == Decimal('0.00')
        overdue = self.system.metrics.list_events(metrics=[MetricName.OVERDUE], loan_id=self.loan.id)
        assert overdue == []

    def test_field_balance_default(self):
        loan = self.system.collections.add_collection(self.loan.id, {
            "scheduled_amount": "550", "collected_amount": "200", "advance_payment": "50"
        })
        assert loan.collections[-1].field_balance == Decimal('300.00')

    def test_full_collection_has_no_overdue_event(self):
        self.system.collections.add_collection(self.loan.id, {
            "scheduled_amount": "550", "collected_amount": "550", "collection_date": "2024-01-08"
        })
        overdue = self.system.metrics.list_events(metrics=[MetricName.OVERDUE], loan_id=self.loan.id)
        assert overdue == []

    def test_batch_is_one_write(self):
        before = self.system.loan_manager.get_loan(self.loan.id).version
        loan = self.system.collections.add_collections_batch(self.loan.id, [
            {"collected_amount": "550", "collection_date": "2024-01-08"},
            {"collected_amount": "400", "collection_date": "2024-01-15"},
        ])
        assert len(loan.collections) == 2
        assert loan.total_realization == Decimal('950.00')
        assert loan.version == before + 1

        collected = self.system.metrics.list_events(
            metrics=[MetricName.TOTAL_COLLECTIONS_COLLECTED], loan_id=self.loan.id)
        assert sorted(e.extra["entry_index"] for e in collected) == [0, 1]

    def test_batch_is_all_or_nothing(self):
        with pytest.raises(ValidationError):
            self.system.collections.add_collections_batch(self.loan.id, [
                {"collected_amount": "550"},
                {"collected_amount": "100", "currency": "USD"},
            ])
        loan = self.system.loan_manager.get_loan(self.loan.id)
        assert loan.collections == []
        assert loan.total_realization == Decimal('0')

    def test_empty_batch_rejected(self):
        with pytest.raises(ValidationError):
            self.system.collections.add_collections_batch(self.loan.id, [])

    def test_currency_mismatch_rejected(self):
        with pytest.raises(ValidationError):
            self.system.collections.add_collection(self.loan.id, {"collected_amount": "10", "currency": "USD"})

    def test_negative_amount_rejected(self):
        with pytest.raises(ValidationError):
            self.system.collections.add_collection(self.loan.id, {"collected_amount": "-10"})

    def test_realization_matches_entries(self):
        for amount in ("100", "250.50", "80"):
            self.system.collections.add_collection(self.loan.id, {"collected_amount": amount})
        loan = self.system.loan_manager.get_loan(self.loan.id)
        assert loan.total_realization == sum(e.collected_amount for e in loan.collections)


class TestCollectionGuards:
    """Test status and ownership checks"""

    def setup_method(self):
        self.system = build_system()
        self.client = seed_client(self.system)

    def test_pending_loan_rejected(self):
        loan = self.system.loan_manager.create_loan(individual_payload(self.client.id))
        with pytest.raises(ValidationError):
            self.system.collections.add_collection(loan.id, {"collected_amount": "100"})

    def test_other_officer_denied(self):
        loan = self.system.loan_manager.create_loan(individual_payload(self.client.id), OFFICER)
        activate(self.system, loan.id)
        with pytest.raises(AccessDeniedError):
            self.system.collections.add_collection(loan.id, {"collected_amount": "100"}, OTHER_OFFICER)
        loan = self.system.collections.add_collection(loan.id, {"collected_amount": "100"}, OFFICER)
        assert loan.collections[-1].recorded_by == OFFICER.email


class TestSummaryAndDueReport:
    """Test repayment progress and the due-collections report"""

    def setup_method(self):
        self.system = build_system()
        self.client = seed_client(self.system)
        loan = self.system.loan_manager.create_loan(individual_payload(
            self.client.id, loan_amount="2000", interest_rate="10"
        ))
        # Disbursed Monday 1 Jan 2024; due 8, 15, 22 and 29 Jan
        self.loan = activate(self.system, loan.id, disbursed_on=date(2024, 1, 1))

    def test_summary_as_of(self):
        self.system.collections.add_collection(self.loan.id, {"collected_amount": "550"})
        summary = self.system.collections.summarize(
            self.system.loan_manager.get_loan(self.loan.id), as_of=date(2024, 1, 16)
        )
        assert summary["periods_due"] == 2
        assert summary["expected_to_date"] == Decimal('1100.00')
        assert summary["total_realization"] == Decimal('550.00')
        assert summary["overdue_to_date"] == Decimal('550.00')
        assert summary["outstanding"] == Decimal('1650.00')

    def test_due_collections_window(self):
        rows = self.system.loan_manager.due_collections(date(2024, 1, 10), date(2024, 1, 23))
        assert [row["due_date"] for row in rows] == [date(2024, 1, 15), date(2024, 1, 22)]
        assert [row["period_number"] for row in rows] == [2, 3]
        assert all(row["scheduled_amount"] == Decimal('550.00') for row in rows)
        assert rows[0]["expected_to_date"] == Decimal('1650.00')

    def test_due_collections_invalid_window(self):
        with pytest.raises(ValidationError):
            self.system.loan_manager.due_collections(date(2024, 2, 1), date(2024, 1, 1))
