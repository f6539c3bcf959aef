"""
Integration tests for the Microfinance Back-Office API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from decimal import Decimal
from fastapi.testclient import TestClient

from microfinance.api import app
from microfinance.api.auth import get_system

from support import (
    ACCOUNTANT, ADMIN, BRANCH_CODE, OFFICER, OTHER_OFFICER, build_system, group_payload,
    individual_payload, seed_client, seed_group
)


def headers(identity):
    return {"x-user-email": identity.email}


@pytest.fixture
def system():
    """In-memory system with the test users registered"""
    test_system = build_system()
    for identity in (ADMIN, OFFICER, OTHER_OFFICER, ACCOUNTANT):
        test_system.users.register_user(identity.email, identity.username, identity.role,
                                        branch_name=identity.branch_name, branch_code=identity.branch_code)
    return test_system


@pytest.fixture
def client(system):
    """Test client bound to the in-memory system"""
    app.dependency_overrides[get_system] = lambda: system
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestHealthEndpoints:
    """Test basic health and root endpoints"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"

    def test_root(self, client):
        r = client.get("/")
        assert r.status_code == 200
        assert "loans" in r.json()["endpoints"]


class TestLoanFlow:
    """Submit, activate, collect and summarise an individual loan"""

    def test_full_individual_flow(self, client, system):
        member = seed_client(system)

        r = client.post("/loans", json=individual_payload(member.id, loan_amount="2000",
                                                          disbursement_date="2024-01-01"),
                        headers=headers(OFFICER))
        assert r.status_code == 201
        loan = r.json()
        assert loan["status"] == "pending"
        assert loan["net_disbursed_amount"] == "1420.00"
        assert loan["loan_officer_name"] == OFFICER.username

        r = client.patch(f"/loans/{loan['id']}/status", json={"status": "active"}, headers=headers(OFFICER))
        assert r.status_code == 403

        r = client.patch(f"/loans/{loan['id']}/status", json={"status": "active"}, headers=headers(ADMIN))
        assert r.status_code == 200
        assert r.json()["weekly_installment"] == "550.00"

        r = client.post(f"/loans/{loan['id']}/collections", json={
            "scheduled_amount": "550", "collected_amount": "300", "collection_date": "2024-01-08"
        }, headers=headers(OFFICER))
        assert r.status_code == 201
        assert r.json()["total_realization"] == "300.00"

        r = client.get(f"/loans/{loan['id']}/summary", params={"as_of": "2024-01-16"})
        summary = r.json()
        assert summary["expected_to_date"] == "1100.00"
        assert summary["overdue_to_date"] == "800.00"

        r = client.get("/metrics/totals", params={"loan_id": loan["id"], "metric": "overdue"})
        assert r.json()["totals"] == {"overdue": "250.00"}

        r = client.get(f"/loans/{loan['id']}/agreement")
        assert r.status_code == 200
        assert r.json()["loan_id"] == loan["id"]

    def test_due_collections(self, client, system):
        member = seed_client(system)
        loan = client.post("/loans", json=individual_payload(
            member.id, loan_amount="2000", disbursement_date="2024-01-01")).json()
        client.patch(f"/loans/{loan['id']}/status", json={"status": "active"}, headers=headers(ADMIN))

        r = client.get("/loans/due-collections", params={"from": "2024-01-10", "to": "2024-01-23"})
        assert r.status_code == 200
        body = r.json()
        assert body["total"] == 2
        assert [row["due_date"] for row in body["rows"]] == ["2024-01-15", "2024-01-22"]

    def test_validation_error_lists_reasons(self, client):
        r = client.post("/loans", json={"category": "individual", "loan_amount": "100",
                                        "branch_name": "Monrovia Central", "branch_code": BRANCH_CODE,
                                        "payment_plan": "weekly"})
        assert r.status_code == 400
        assert "client_id is required for individual loans" in r.json()["detail"]["errors"]

    def test_invalid_transition(self, client, system):
        member = seed_client(system)
        loan = client.post("/loans", json=individual_payload(member.id)).json()
        r = client.patch(f"/loans/{loan['id']}/status", json={"status": "paid"})
        assert r.status_code == 400

    def test_missing_loan(self, client):
        assert client.get("/loans/nope").status_code == 404


class TestOwnership:
    """Restricted roles only see their own loans"""

    def test_other_officer_denied(self, client, system):
        member = seed_client(system)
        loan = client.post("/loans", json=individual_payload(member.id), headers=headers(OFFICER)).json()

        assert client.get(f"/loans/{loan['id']}", headers=headers(OTHER_OFFICER)).status_code == 403
        assert client.get(f"/loans/{loan['id']}", headers=headers(OFFICER)).status_code == 200
        assert client.get("/loans", headers=headers(OTHER_OFFICER)).json()["total"] == 0
        assert client.get("/loans", headers=headers(ADMIN)).json()["total"] == 1


class TestGroupDistributionFlow:
    """Distributions against a group loan"""

    def test_distribution_lifecycle(self, client, system):
        group, members = seed_group(system)
        loan = client.post("/loans", json=group_payload(group.id, [m.id for m in members])).json()
        client.patch(f"/loans/{loan['id']}/status", json={"status": "active"}, headers=headers(ADMIN))

        r = client.post(f"/loans/{loan['id']}/distributions", json={
            "amount": "5000", "member_id": members[0].id, "collection_start_rule": "next_week",
            "start_anchor_date": "2024-01-03"
        })
        assert r.status_code == 201
        distribution = r.json()
        assert distribution["amount"] == "5000.00"

        totals = client.get("/metrics/totals", params={
            "loan_id": loan["id"], "metric": ["waitingToBeCollected", "loanAmountDistributed"]
        }).json()["totals"]
        assert totals == {"loanAmountDistributed": "5000.00", "waitingToBeCollected": "5150.00"}
        assert client.get(f"/loans/{loan['id']}").json()["collection_start_date"] == "2024-01-08"

        r = client.put(f"/distributions/{distribution['id']}", json={"amount": "4000"})
        assert r.status_code == 200

        r = client.delete(f"/distributions/{distribution['id']}")
        assert r.status_code == 200
        totals = client.get("/metrics/totals", params={"loan_id": loan["id"],
                                                       "metric": "loanAmountDistributed"}).json()["totals"]
        assert totals == {"loanAmountDistributed": "0.00"}

    def test_batch_distribution(self, client, system):
        group, members = seed_group(system)
        loan = client.post("/loans", json=group_payload(group.id, [m.id for m in members])).json()
        client.patch(f"/loans/{loan['id']}/status", json={"status": "active"}, headers=headers(ADMIN))

        r = client.post(f"/loans/{loan['id']}/distributions", json={"entries": [
            {"amount": "1000", "member_id": members[0].id},
            {"amount": "2000", "member_id": members[1].id},
        ]})
        assert r.status_code == 201
        assert len(r.json()["distributions"]) == 2
        assert client.get(f"/loans/{loan['id']}/distributions").json()["total"] == 2

    def test_pending_loan_rejected(self, client, system):
        group, members = seed_group(system)
        loan = client.post("/loans", json=group_payload(group.id, [m.id for m in members])).json()
        r = client.post(f"/loans/{loan['id']}/distributions", json={"amount": "1000"})
        assert r.status_code == 400


class TestMetricsEndpoints:
    """Manual events, recalculation, summary and profit"""

    def test_manual_events_and_profit(self, client):
        r = client.post("/metrics", json={"entries": [
            {"metric": "interestCollected", "value": "900", "date": "2024-01-05", "currency": "LRD"},
            {"metric": "expenses", "value": "400", "date": "2024-01-06", "currency": "LRD"},
        ]})
        assert r.status_code == 201
        assert r.json()["total"] == 2

        profit = client.get("/metrics/profit").json()["profit"]
        assert profit["LRD"]["profit"] == "500.00"

        buckets = client.get("/metrics/summary", params={"group_by": "month"}).json()["buckets"]
        assert {b["metric"] for b in buckets} == {"interestCollected", "expenses"}

    def test_unknown_metric_rejected(self, client):
        r = client.post("/metrics", json={"metric": "bonus", "value": "1"})
        assert r.status_code == 400

    def test_recalculate(self, client, system):
        member = seed_client(system)
        loan = client.post("/loans", json=individual_payload(member.id)).json()
        client.patch(f"/loans/{loan['id']}/status", json={"status": "active"}, headers=headers(ADMIN))
        before = client.get("/metrics/totals").json()["totals"]

        r = client.post("/metrics/recalculate", headers=headers(ADMIN))
        assert r.status_code == 200
        assert r.json()["loans"] == 1
        assert client.get("/metrics/totals").json()["totals"] == before


class TestConfigAndExpenses:
    """Loan configuration and expense endpoints"""

    def test_loan_config(self, client):
        assert client.get("/loan-config").status_code == 404

        r = client.put("/loan-config", json={"global_default": True,
                                             "individual": {"processing_fee_percent": "5"}},
                       headers=headers(OFFICER))
        assert r.status_code == 403

        r = client.put("/loan-config", json={"global_default": True,
                                             "individual": {"processing_fee_percent": "5"}},
                       headers=headers(ADMIN))
        assert r.status_code == 200
        r = client.get("/loan-config", headers=headers(ADMIN))
        assert r.status_code == 200
        assert Decimal(r.json()["individual"]["processing_fee_percent"]) == Decimal("5")

    def test_expense_flow(self, client):
        r = client.post("/expenses", json={"description": "Fuel", "amount": "120"}, headers=headers(OFFICER))
        assert r.status_code == 403
        assert client.post("/expenses", json={"description": "Fuel", "amount": "120"}).status_code == 403

        r = client.post("/expenses", json={"description": "Fuel", "amount": "120", "expense_date": "2024-02-01"},
                        headers=headers(ACCOUNTANT))
        assert r.status_code == 201
        expense = r.json()

        r = client.patch(f"/expenses/{expense['id']}/status", json={"status": "approved"},
                         headers=headers(ADMIN))
        assert r.json()["approved_by_email"] == ADMIN.email

        listing = client.get("/expenses", params={"limit": 5}).json()
        assert listing["total"] == 1
        assert listing["total_pages"] == 1

        assert client.delete(f"/expenses/{expense['id']}", headers=headers(ACCOUNTANT)).status_code == 200
        assert client.get(f"/expenses/{expense['id']}").status_code == 404
