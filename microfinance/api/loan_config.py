"""
Loan fee configuration endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends

from .auth import MicrofinanceSystem, get_identity, get_system
from .errors import DOMAIN_ERRORS, to_http_error
from .schemas import LoanConfigRequest
from ..errors import NotFoundError
from ..identity import UserIdentity


router = APIRouter()


@router.get("")
async def get_loan_config(
    branch_code: Optional[str] = None,
    system: MicrofinanceSystem = Depends(get_system),
    identity: Optional[UserIdentity] = Depends(get_identity)
):
    """Effective configuration for a branch (the caller's by default), falling back to global"""
    try:
        code = branch_code or (identity.branch_code if identity else None)
        loan_config = system.loan_configs.get_effective_config(code)
        if loan_config is None:
            raise NotFoundError("No loan configuration found")
        return loan_config.to_dict()
    except DOMAIN_ERRORS as e:
        raise to_http_error(e)


@router.put("")
async def upsert_loan_config(
    request: LoanConfigRequest,
    system: MicrofinanceSystem = Depends(get_system),
    identity: Optional[UserIdentity] = Depends(get_identity)
):
    """Create or replace a branch (or the global) configuration; approvers only"""
    try:
        loan_config = system.loan_configs.upsert_config(
            identity,
            branch_code=request.branch_code,
            global_default=request.global_default,
            express=request.express,
            individual=request.individual,
            group=request.group
        )
        return loan_config.to_dict()
    except DOMAIN_ERRORS as e:
        raise to_http_error(e)
