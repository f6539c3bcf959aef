"""
Identity Module

Header-driven user lookup. A request carrying a known email resolves to a
UserIdentity; an unknown or missing email resolves to None, which the domain
treats as "no restriction".
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional
import uuid

from .config import get_config
from .errors import AccessDeniedError, ValidationError
from .logging_config import get_logger
from .storage import StorageInterface, StorageRecord


logger = get_logger("microfinance.identity")


@dataclass
class User(StorageRecord):
    """Back-office staff member"""
    email: str
    username: str
    role: str
    branch_name: Optional[str] = None
    branch_code: Optional[str] = None
    full_name: Optional[str] = None


@dataclass(frozen=True)
class UserIdentity:
    """Resolved caller, as seen by the domain managers"""
    email: str
    username: str
    role: str
    branch_name: Optional[str] = None
    branch_code: Optional[str] = None

    @property
    def normalized_role(self) -> str:
        return (self.role or "").strip().lower()

    @property
    def is_restricted(self) -> bool:
        """Loan officers and field agents only see their own records"""
        return self.normalized_role in get_config().restricted_roles

    @property
    def is_approver(self) -> bool:
        return self.normalized_role in get_config().approver_roles

    def owns(self, created_by_email: Optional[str], loan_officer_name: Optional[str]) -> bool:
        """True if the record was created by this user or is assigned to them"""
        if created_by_email and created_by_email.lower() == self.email.lower():
            return True
        if loan_officer_name and loan_officer_name.strip().lower() == (self.username or "").strip().lower():
            return True
        return False


def ensure_owner(identity: Optional[UserIdentity], created_by_email: Optional[str],
                 loan_officer_name: Optional[str], resource: str = "record") -> None:
    """
    Reject restricted callers touching records they neither created nor are assigned to

    Raises:
        AccessDeniedError: If the caller is restricted and not the owner
    """
    if identity is None or not identity.is_restricted:
        return
    if not identity.owns(created_by_email, loan_officer_name):
        raise AccessDeniedError(f"Access denied: {resource} belongs to another officer")


def ensure_approver(identity: Optional[UserIdentity], action: str) -> None:
    """
    Raises:
        AccessDeniedError: If the caller is missing or does not hold an approver role
    """
    if identity is None or not identity.is_approver:
        roles = ", ".join(get_config().approver_roles)
        raise AccessDeniedError(f"Only {roles} can {action}")


class UserDirectory:
    """Registers staff users and resolves request identities"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "users"

    def register_user(
        self,
        email: str,
        username: str,
        role: str,
        branch_name: Optional[str] = None,
        branch_code: Optional[str] = None,
        full_name: Optional[str] = None
    ) -> User:
        """
        Register a staff user; email and username must be unique.

        Raises:
            ValidationError: If email, username or role are missing
            DuplicateKeyError: If the email or username is taken
        """
        errors = []
        if not email or not email.strip():
            errors.append("email is required")
        if not username or not username.strip():
            errors.append("username is required")
        if not role or not role.strip():
            errors.append("role is required")
        if errors:
            raise ValidationError(errors)

        now = datetime.now(timezone.utc)
        user = User(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            email=email.strip().lower(),
            username=username.strip(),
            role=role.strip().lower(),
            branch_name=branch_name,
            branch_code=branch_code,
            full_name=full_name
        )
        self.storage.insert(self.table_name, user.id, user.to_dict(),
                            unique_fields=("email", "username"))
        logger.info("Registered user", extra={"user_id": user.email, "action": "register_user"})
        return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        data = self.storage.find_one(self.table_name, {"email": email.strip().lower()})
        return self._user_from_dict(data) if data else None

    def list_users(self) -> List[User]:
        return [self._user_from_dict(data) for data in self.storage.load_all(self.table_name)]

    def resolve(self, email: Optional[str]) -> Optional[UserIdentity]:
        """Resolve an identity from a request email; lookup failures yield None"""
        if not email or not email.strip():
            return None
        try:
            user = self.get_user_by_email(email)
        except Exception:
            logger.exception("Identity lookup failed", extra={"user_id": email})
            return None
        if user is None:
            return None
        return UserIdentity(
            email=user.email,
            username=user.username,
            role=user.role,
            branch_name=user.branch_name,
            branch_code=user.branch_code
        )

    def _user_from_dict(self, data: Dict) -> User:
        return User(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            email=data['email'],
            username=data['username'],
            role=data['role'],
            branch_name=data.get('branch_name'),
            branch_code=data.get('branch_code'),
            full_name=data.get('full_name')
        )
