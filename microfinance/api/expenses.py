"""
Expense endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from .auth import MicrofinanceSystem, get_identity, get_system
from .errors import DOMAIN_ERRORS, to_http_error
from .schemas import ExpenseRequest, ExpenseStatusRequest, payload
from ..identity import UserIdentity
from ..loans import parse_date


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_expense(
    request: ExpenseRequest,
    system: MicrofinanceSystem = Depends(get_system),
    identity: Optional[UserIdentity] = Depends(get_identity)
):
    """Record an expense"""
    try:
        return system.expenses.create_expense(payload(request), identity).to_dict()
    except DOMAIN_ERRORS as e:
        raise to_http_error(e)


@router.get("")
async def list_expenses(
    branch_code: Optional[str] = None,
    category: Optional[str] = None,
    status: Optional[str] = None,
    currency: Optional[str] = None,
    date_from: Optional[str] = Query(None, alias="from"),
    date_to: Optional[str] = Query(None, alias="to"),
    page: int = 1,
    limit: int = 10,
    system: MicrofinanceSystem = Depends(get_system)
):
    """List expenses, latest first, paginated"""
    try:
        expenses = system.expenses.list_expenses(
            branch_code=branch_code, category=category, status=status, currency=currency,
            date_from=parse_date(date_from, "from"), date_to=parse_date(date_to, "to")
        )
        page = max(page, 1)
        limit = max(limit, 1)
        window = expenses[(page - 1) * limit:page * limit]
        return {
            "expenses": [e.to_dict() for e in window],
            "total": len(expenses),
            "current_page": page,
            "total_pages": (len(expenses) + limit - 1) // limit,
        }
    except DOMAIN_ERRORS as e:
        raise to_http_error(e)


@router.get("/{expense_id}")
async def get_expense(
    expense_id: str,
    system: MicrofinanceSystem = Depends(get_system)
):
    """Get expense details"""
    try:
        return system.expenses.require_expense(expense_id).to_dict()
    except DOMAIN_ERRORS as e:
        raise to_http_error(e)


@router.put("/{expense_id}")
async def update_expense(
    expense_id: str,
    request: ExpenseRequest,
    system: MicrofinanceSystem = Depends(get_system),
    identity: Optional[UserIdentity] = Depends(get_identity)
):
    """Edit an expense"""
    try:
        return system.expenses.update_expense(expense_id, payload(request), identity).to_dict()
    except DOMAIN_ERRORS as e:
        raise to_http_error(e)


@router.delete("/{expense_id}")
async def delete_expense(
    expense_id: str,
    system: MicrofinanceSystem = Depends(get_system),
    identity: Optional[UserIdentity] = Depends(get_identity)
):
    """Delete an expense"""
    try:
        system.expenses.delete_expense(expense_id, identity)
        return {"message": "Expense deleted successfully", "expense_id": expense_id}
    except DOMAIN_ERRORS as e:
        raise to_http_error(e)


@router.patch("/{expense_id}/status")
async def set_expense_status(
    expense_id: str,
    request: ExpenseStatusRequest,
    system: MicrofinanceSystem = Depends(get_system),
    identity: Optional[UserIdentity] = Depends(get_identity)
):
    """Move an expense to pending, approved, rejected or paid"""
    try:
        return system.expenses.set_status(expense_id, request.status, identity).to_dict()
    except DOMAIN_ERRORS as e:
        raise to_http_error(e)
