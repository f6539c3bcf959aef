"""
Domain error to HTTP status mapping
"""

from fastapi import HTTPException, status

from ..errors import (
    AccessDeniedError, ConcurrentModificationError, DuplicateKeyError, NotFoundError, ValidationError
)


# Errors a domain call may raise for a bad request; anything else is a server fault
DOMAIN_ERRORS = (ValueError, PermissionError, ConcurrentModificationError)


def to_http_error(error: Exception) -> HTTPException:
    """Translate a domain exception into the HTTPException returned to the caller"""
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, (AccessDeniedError, PermissionError)):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(error))
    if isinstance(error, (DuplicateKeyError, ConcurrentModificationError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))
    if isinstance(error, ValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST,
                             detail={"message": str(error), "errors": error.reasons})
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))
