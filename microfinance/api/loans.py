"""
Loan endpoints: CRUD, status transitions, collections, distributions and agreements
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from .auth import MicrofinanceSystem, get_identity, get_system
from .errors import DOMAIN_ERRORS, to_http_error
from .schemas import (
    AgreementUpdateRequest, CollectionBatchRequest, CollectionRequest, DistributionRequest,
    LoanRequest, LoanStatusRequest, payload
)
from ..errors import ValidationError
from ..identity import UserIdentity
from ..loans import parse_date
from ..storage import to_storable


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_loan(
    request: LoanRequest,
    system: MicrofinanceSystem = Depends(get_system),
    identity: Optional[UserIdentity] = Depends(get_identity)
):
    """Submit a new loan (pending)"""
    try:
        loan = system.loan_manager.create_loan(payload(request), identity)
        return loan.to_dict()
    except DOMAIN_ERRORS as e:
        raise to_http_error(e)


@router.get("")
async def list_loans(
    branch_name: Optional[str] = None,
    branch_code: Optional[str] = None,
    category: Optional[str] = None,
    status: Optional[str] = None,
    group_id: Optional[str] = None,
    system: MicrofinanceSystem = Depends(get_system),
    identity: Optional[UserIdentity] = Depends(get_identity)
):
    """List loans visible to the caller"""
    try:
        loans = system.loan_manager.list_loans(
            identity=identity, branch_name=branch_name, branch_code=branch_code,
            category=category, status=status, group_id=group_id
        )
        return {"loans": [loan.to_dict() for loan in loans], "total": len(loans)}
    except DOMAIN_ERRORS as e:
        raise to_http_error(e)


@router.get("/due-collections")
async def get_due_collections(
    date_from: str = Query(..., alias="from"),
    date_to: str = Query(..., alias="to"),
    branch_code: Optional[str] = None,
    system: MicrofinanceSystem = Depends(get_system),
    identity: Optional[UserIdentity] = Depends(get_identity)
):
    """Scheduled repayments due in a date window"""
    try:
        start = parse_date(date_from, "from")
        end = parse_date(date_to, "to")
        if start is None or end is None:
            raise ValidationError("from and to are required")
        rows = system.loan_manager.due_collections(start, end, identity=identity, branch_code=branch_code)
        return {"from": start.isoformat(), "to": end.isoformat(), "rows": to_storable(rows), "total": len(rows)}
    except DOMAIN_ERRORS as e:
        raise to_http_error(e)


@router.get("/by-group/{group_id}")
async def list_loans_by_group(
    group_id: str,
    category: Optional[str] = None,
    status: Optional[str] = None,
    system: MicrofinanceSystem = Depends(get_system),
    identity: Optional[UserIdentity] = Depends(get_identity)
):
    """Loans linked to a group"""
    try:
        loans = system.loan_manager.list_loans_by_group(group_id, identity, category=category, status=status)
        return {"loans": [loan.to_dict() for loan in loans], "total": len(loans)}
    except DOMAIN_ERRORS as e:
        raise to_http_error(e)


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    system: MicrofinanceSystem = Depends(get_system),
    identity: Optional[UserIdentity] = Depends(get_identity)
):
    """Get loan details"""
    try:
        return system.loan_manager.require_loan(loan_id, identity).to_dict()
    except DOMAIN_ERRORS as e:
        raise to_http_error(e)


@router.put("/{loan_id}")
async def update_loan(
    loan_id: str,
    request: LoanRequest,
    system: MicrofinanceSystem = Depends(get_system),
    identity: Optional[UserIdentity] = Depends(get_identity)
):
    """Edit loan terms; derived fields are recomputed"""
    try:
        return system.loan_manager.update_loan(loan_id, payload(request), identity).to_dict()
    except DOMAIN_ERRORS as e:
        raise to_http_error(e)


@router.delete("/{loan_id}")
async def delete_loan(
    loan_id: str,
    system: MicrofinanceSystem = Depends(get_system),
    identity: Optional[UserIdentity] = Depends(get_identity)
):
    """Administrative delete with metric and dependent purge"""
    try:
        system.loan_manager.delete_loan(loan_id, identity)
        return {"message": "Loan deleted successfully", "loan_id": loan_id}
    except DOMAIN_ERRORS as e:
        raise to_http_error(e)


@router.patch("/{loan_id}/status")
async def set_loan_status(
    loan_id: str,
    request: LoanStatusRequest,
    system: MicrofinanceSystem = Depends(get_system),
    identity: Optional[UserIdentity] = Depends(get_identity)
):
    """Move a loan through pending -> active -> paid | defaulted"""
    try:
        return system.lifecycle.set_status(loan_id, request.status, identity).to_dict()
    except DOMAIN_ERRORS as e:
        raise to_http_error(e)


@router.get("/{loan_id}/summary")
async def get_loan_summary(
    loan_id: str,
    as_of: Optional[str] = None,
    system: MicrofinanceSystem = Depends(get_system),
    identity: Optional[UserIdentity] = Depends(get_identity)
):
    """Repayment progress as of a date (today by default)"""
    try:
        loan = system.loan_manager.require_loan(loan_id, identity)
        return to_storable(system.collections.summarize(loan, parse_date(as_of, "as_of")))
    except DOMAIN_ERRORS as e:
        raise to_http_error(e)


@router.post("/{loan_id}/collections", status_code=status.HTTP_201_CREATED)
async def add_collection(
    loan_id: str,
    request: CollectionRequest,
    system: MicrofinanceSystem = Depends(get_system),
    identity: Optional[UserIdentity] = Depends(get_identity)
):
    """Append one collection entry"""
    try:
        return system.collections.add_collection(loan_id, payload(request), identity).to_dict()
    except DOMAIN_ERRORS as e:
        raise to_http_error(e)


@router.post("/{loan_id}/collections/batch", status_code=status.HTTP_201_CREATED)
async def add_collections_batch(
    loan_id: str,
    request: CollectionBatchRequest,
    system: MicrofinanceSystem = Depends(get_system),
    identity: Optional[UserIdentity] = Depends(get_identity)
):
    """Append several collection entries in one write"""
    try:
        entries = [payload(entry) for entry in request.entries]
        return system.collections.add_collections_batch(loan_id, entries, identity).to_dict()
    except DOMAIN_ERRORS as e:
        raise to_http_error(e)


@router.post("/{loan_id}/distributions", status_code=status.HTTP_201_CREATED)
async def create_distributions(
    loan_id: str,
    request: DistributionRequest,
    system: MicrofinanceSystem = Depends(get_system),
    identity: Optional[UserIdentity] = Depends(get_identity)
):
    """Record one distribution, or a batch via entries"""
    try:
        body = payload(request)
        distributions = system.distributions.create(loan_id, body, identity)
        if body.get("entries"):
            return {"distributions": [d.to_dict() for d in distributions]}
        return distributions[0].to_dict()
    except DOMAIN_ERRORS as e:
        raise to_http_error(e)


@router.get("/{loan_id}/distributions")
async def list_loan_distributions(
    loan_id: str,
    system: MicrofinanceSystem = Depends(get_system),
    identity: Optional[UserIdentity] = Depends(get_identity)
):
    """Distributions of a loan, newest first"""
    try:
        distributions = system.distributions.list_for_loan(loan_id, identity)
        return {"distributions": [d.to_dict() for d in distributions], "total": len(distributions)}
    except DOMAIN_ERRORS as e:
        raise to_http_error(e)


@router.get("/{loan_id}/agreement")
async def get_agreement(
    loan_id: str,
    system: MicrofinanceSystem = Depends(get_system),
    identity: Optional[UserIdentity] = Depends(get_identity)
):
    """Get the loan's agreement"""
    try:
        system.loan_manager.require_loan(loan_id, identity)
        return system.agreements.get_for_loan(loan_id)
    except DOMAIN_ERRORS as e:
        raise to_http_error(e)


@router.post("/{loan_id}/agreement")
async def init_agreement(
    loan_id: str,
    system: MicrofinanceSystem = Depends(get_system),
    identity: Optional[UserIdentity] = Depends(get_identity)
):
    """Generate the agreement from the loan if it does not exist yet"""
    try:
        loan = system.loan_manager.require_loan(loan_id, identity)
        return system.agreements.ensure_for_loan(loan)
    except DOMAIN_ERRORS as e:
        raise to_http_error(e)


@router.put("/{loan_id}/agreement")
async def update_agreement(
    loan_id: str,
    request: AgreementUpdateRequest,
    system: MicrofinanceSystem = Depends(get_system),
    identity: Optional[UserIdentity] = Depends(get_identity)
):
    """Edit agreement form fields"""
    try:
        loan = system.loan_manager.require_loan(loan_id, identity)
        return system.agreements.update_for_loan(loan, payload(request))
    except DOMAIN_ERRORS as e:
        raise to_http_error(e)
