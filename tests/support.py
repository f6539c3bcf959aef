"""
Shared builders for the test suite: an in-memory system, seeded members and
loan payloads that pass category validation.
"""

from datetime import date

from microfinance.api.auth import MicrofinanceSystem
from microfinance.identity import UserIdentity
from microfinance.storage import InMemoryStorage


BRANCH_NAME = "Monrovia Central"
BRANCH_CODE = "MC01"

ADMIN = UserIdentity(email="admin@mfi.test", username="admin", role="admin",
                     branch_name=BRANCH_NAME, branch_code=BRANCH_CODE)
OFFICER = UserIdentity(email="officer@mfi.test", username="jkollie", role="loan officer",
                       branch_name=BRANCH_NAME, branch_code=BRANCH_CODE)
OTHER_OFFICER = UserIdentity(email="other@mfi.test", username="mdoe", role="loan officer",
                             branch_name=BRANCH_NAME, branch_code=BRANCH_CODE)
ACCOUNTANT = UserIdentity(email="accounts@mfi.test", username="accounts", role="accountant",
                          branch_name=BRANCH_NAME, branch_code=BRANCH_CODE)


def build_system() -> MicrofinanceSystem:
    return MicrofinanceSystem(storage=InMemoryStorage())


def seed_group(system: MicrofinanceSystem, code: str = "GRP-001", members: int = 3):
    """A group with `members` clients; returns (group, clients)"""
    group = system.members.create_group("Women Traders", code, BRANCH_NAME, BRANCH_CODE)
    clients = [
        system.members.create_client(f"Member {i}", f"{code}-PB{i}", BRANCH_NAME, BRANCH_CODE,
                                     group_id=group.id)
        for i in range(1, members + 1)
    ]
    return system.members.require_group(group.id), clients


def seed_client(system: MicrofinanceSystem, passbook: str = "PB-1001", name: str = "Musu Kamara"):
    return system.members.create_client(name, passbook, BRANCH_NAME, BRANCH_CODE)


def individual_payload(client_id: str, **overrides) -> dict:
    payload = {
        "category": "individual",
        "loan_amount": "10000",
        "interest_rate": "10",
        "currency": "LRD",
        "branch_name": BRANCH_NAME,
        "branch_code": BRANCH_CODE,
        "client_id": client_id,
        "payment_plan": "weekly",
        "duration_number": 4,
        "duration_unit": "weeks",
        "guarantors": [{"name": "Sando Johnson", "phone": "0777000111"}],
    }
    payload.update(overrides)
    return payload


def group_payload(group_id: str, client_ids, **overrides) -> dict:
    payload = {
        "category": "group",
        "loan_amount": "20000",
        "interest_rate": "3",
        "currency": "LRD",
        "branch_name": BRANCH_NAME,
        "branch_code": BRANCH_CODE,
        "group_id": group_id,
        "client_ids": list(client_ids),
        "payment_plan": "weekly",
        "duration_number": 8,
        "duration_unit": "weeks",
    }
    payload.update(overrides)
    return payload


def express_payload(client_id: str, **overrides) -> dict:
    payload = {
        "category": "express",
        "loan_amount": "3000",
        "interest_rate": "15",
        "currency": "LRD",
        "branch_name": BRANCH_NAME,
        "branch_code": BRANCH_CODE,
        "client_id": client_id,
    }
    payload.update(overrides)
    return payload


def activate(system: MicrofinanceSystem, loan_id: str, disbursed_on: date = None):
    if disbursed_on is not None:
        system.loan_manager.update_loan(loan_id, {"disbursement_date": disbursed_on.isoformat()})
    return system.lifecycle.set_status(loan_id, "active", ADMIN)
