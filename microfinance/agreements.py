"""
Loan Agreement Module

Denormalised agreement document generated from a loan snapshot. One agreement
per loan, keyed on the loan id so creation is idempotent at the storage level.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .currency import round2
from .errors import NotFoundError, ValidationError
from .logging_config import get_logger, loan_context, log_action
from .members import MemberDirectory
from .storage import StorageInterface, to_storable


logger = get_logger("microfinance.agreements")

# Fields an agreement update may touch
AGREEMENT_UPDATE_FIELDS = (
    "form_number", "date_of_credit", "cash_amount_credited", "amount_in_words",
    "purpose_of_loan", "interest_deducted_or_added", "interest_adjustment_type",
    "total_amount_to_be_paid", "creditor_info", "related_contacts",
    "collateral_items_text", "collateral_items_location", "bondsperson1",
    "bondsperson2", "signature_section", "witnesses", "attested_by", "approved_by",
)


def agreement_record_id(loan_id: str) -> str:
    return f"agreement:{loan_id}"


def _bondsperson(guarantor: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "name": guarantor.get("name"),
        "sex": guarantor.get("sex"),
        "address": guarantor.get("address"),
        "occupation": guarantor.get("occupation"),
    }


def map_agreement_from_loan(loan) -> Dict[str, Any]:
    """Agreement fields derived from the loan's terms and document metadata"""
    documents = loan.documents or {}
    creditor = documents.get("creditor_info") or {}
    related = documents.get("related_contacts") or {}
    signatures = documents.get("signature_section") or {}
    collateral = documents.get("collateral_details") or {}
    guarantors = loan.guarantors or []
    bond1 = guarantors[0] if len(guarantors) > 0 else {}
    bond2 = guarantors[1] if len(guarantors) > 1 else {}

    if loan.total_amount_to_be_paid is not None:
        interest = round2(loan.total_amount_to_be_paid - loan.loan_amount)
    else:
        interest = round2(loan.loan_amount * loan.interest_rate / 100)

    def signature(key: str, fallback_contacts=None) -> Dict[str, Any]:
        section = signatures.get(key) or {}
        return {
            "name": section.get("name"),
            "signature": section.get("signature"),
            "signature_date": section.get("signature_date"),
            "contacts": section.get("contacts") or fallback_contacts,
        }

    return {
        "loan_id": loan.id,
        "branch_name": loan.branch_name,
        "branch_code": loan.branch_code,
        "loan_officer_name": loan.loan_officer_name,
        "currency": loan.currency,
        "form_number": documents.get("form_number"),
        "date_of_credit": documents.get("date_of_credit") or loan.disbursement_date,
        "cash_amount_credited": loan.cash_amount_credited,
        "amount_in_words": documents.get("loan_amount_in_words"),
        "purpose_of_loan": documents.get("purpose_of_loan"),
        "interest_deducted_or_added": documents.get("interest_deducted_or_added", interest),
        "interest_adjustment_type": "added",
        "total_amount_to_be_paid": loan.total_amount_to_be_paid,
        "creditor_info": {
            "name_of_creditor": creditor.get("name_of_creditor"),
            "sex": creditor.get("sex"),
            "contacts": creditor.get("contacts"),
            "type_of_business_or_job": creditor.get("type_of_business_or_job") or documents.get("business_type"),
            "present_address": creditor.get("home_address") or creditor.get("present_address") or "",
            "business_address": creditor.get("business_address"),
        },
        "related_contacts": {
            "husband_wife_name": related.get("husband_wife_name"),
            "father_mother_name": related.get("father_mother_name"),
            "partner_name": related.get("partner_name"),
            "family_partner_contacts": related.get("family_partner_contacts"),
        },
        "collateral_items_text": documents.get("collateral_items_text") or collateral.get("property_given"),
        "collateral_items_location": collateral.get("property_location"),
        "bondsperson1": _bondsperson(bond1),
        "bondsperson2": _bondsperson(bond2),
        "signature_section": {
            "creditor": signature("creditor"),
            "bondsperson1": signature("bondsperson1", bond1.get("cellphone_number")),
            "bondsperson2": signature("bondsperson2", bond2.get("cellphone_number")),
        },
        "witnesses": [
            {"name": w.get("name"), "contacts": w.get("contacts")}
            for w in (documents.get("witnesses") or [])
        ],
        "attested_by": documents.get("attested_by"),
        "approved_by": documents.get("approved_by"),
    }


class AgreementManager:
    """Generates and edits loan agreements"""

    def __init__(self, storage: StorageInterface, members: MemberDirectory):
        self.storage = storage
        self.members = members
        self.table_name = "loan_agreements"

    def ensure_for_loan(self, loan) -> Dict[str, Any]:
        """Return the loan's agreement, generating it from the loan snapshot if absent"""
        def build() -> Dict[str, Any]:
            payload = map_agreement_from_loan(loan)
            if not payload["creditor_info"]["name_of_creditor"] and loan.client_id:
                client = self.members.get_client(loan.client_id)
                if client is not None:
                    payload["creditor_info"]["name_of_creditor"] = client.member_name
            now = datetime.now(timezone.utc).isoformat()
            payload.update(id=agreement_record_id(loan.id), created_at=now, updated_at=now)
            return to_storable(payload)

        agreement, created = self.storage.find_or_create(
            self.table_name, {"id": agreement_record_id(loan.id)}, build
        )
        if created:
            log_action(logger, "info", "Loan agreement generated",
                       action="generate_agreement", resource=loan.id, context=loan_context(loan))
        return agreement

    def get_for_loan(self, loan_id: str) -> Dict[str, Any]:
        """
        Raises:
            NotFoundError: If the loan has no agreement
        """
        agreement = self.storage.load(self.table_name, agreement_record_id(loan_id))
        if agreement is None:
            raise NotFoundError(f"Loan agreement for loan {loan_id} not found")
        return agreement

    def update_for_loan(self, loan, changes: Dict[str, Any]) -> Dict[str, Any]:
        """
        Upsert allowed agreement fields; unknown fields are rejected

        Raises:
            ValidationError: If changes contain fields outside the agreement form
        """
        unknown = sorted(set(changes) - set(AGREEMENT_UPDATE_FIELDS))
        if unknown:
            raise ValidationError([f"{name} is not an editable agreement field" for name in unknown])

        with self.storage.atomic():
            agreement = self.ensure_for_loan(loan)
            agreement.update(to_storable(changes))
            agreement["updated_at"] = datetime.now(timezone.utc).isoformat()
            self.storage.save(self.table_name, agreement["id"], agreement)
        return agreement

    def delete_for_loan(self, loan_id: str) -> bool:
        return self.storage.delete(self.table_name, agreement_record_id(loan_id))
