"""
Error taxonomy shared by the domain managers and the HTTP layer.

Validation and not-found errors stay ValueError subclasses so callers that
only catch ValueError keep working.
"""

from typing import Iterable, List, Union


class ValidationError(ValueError):
    """Malformed input or a rule violation; the mutation is rejected"""

    def __init__(self, reasons: Union[str, Iterable[str]]):
        if isinstance(reasons, str):
            reasons = [reasons]
        self.reasons: List[str] = list(reasons)
        super().__init__("; ".join(self.reasons))


class InvalidTransitionError(ValidationError):
    """Loan status change not permitted by the lifecycle"""


class NotFoundError(ValueError):
    """Referenced record does not exist"""


class AccessDeniedError(PermissionError):
    """Caller's role or ownership does not permit the operation"""


class DuplicateKeyError(ValueError):
    """Unique key already taken"""


class ConcurrentModificationError(RuntimeError):
    """Record version changed between read and write"""
