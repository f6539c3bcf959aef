"""
Distribution endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends

from .auth import MicrofinanceSystem, get_identity, get_system
from .errors import DOMAIN_ERRORS, to_http_error
from .schemas import UpdateDistributionRequest, payload
from ..identity import UserIdentity


router = APIRouter()


@router.get("")
async def list_distributions(
    branch_name: Optional[str] = None,
    branch_code: Optional[str] = None,
    system: MicrofinanceSystem = Depends(get_system)
):
    """List distributions, optionally by branch"""
    distributions = system.distributions.list_distributions(branch_name=branch_name, branch_code=branch_code)
    return {"distributions": [d.to_dict() for d in distributions], "total": len(distributions)}


@router.get("/{distribution_id}")
async def get_distribution(
    distribution_id: str,
    system: MicrofinanceSystem = Depends(get_system)
):
    """Get distribution details"""
    try:
        return system.distributions.require_distribution(distribution_id).to_dict()
    except DOMAIN_ERRORS as e:
        raise to_http_error(e)


@router.put("/{distribution_id}")
async def update_distribution(
    distribution_id: str,
    request: UpdateDistributionRequest,
    system: MicrofinanceSystem = Depends(get_system),
    identity: Optional[UserIdentity] = Depends(get_identity)
):
    """Edit a distribution; amount changes emit delta events"""
    try:
        return system.distributions.update_distribution(distribution_id, payload(request), identity).to_dict()
    except DOMAIN_ERRORS as e:
        raise to_http_error(e)


@router.delete("/{distribution_id}")
async def delete_distribution(
    distribution_id: str,
    system: MicrofinanceSystem = Depends(get_system),
    identity: Optional[UserIdentity] = Depends(get_identity)
):
    """Remove a distribution and reverse its events"""
    try:
        system.distributions.delete_distribution(distribution_id, identity)
        return {"message": "Distribution deleted successfully", "distribution_id": distribution_id}
    except DOMAIN_ERRORS as e:
        raise to_http_error(e)
