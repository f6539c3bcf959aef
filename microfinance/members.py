"""
Members Module

Clients and groups as the loan engine sees them: identity, branch, group
membership and the denormalised group loan total.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional
import uuid

from .currency import ZERO, round2
from .errors import NotFoundError, ValidationError
from .identity import UserIdentity
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


logger = get_logger("microfinance.members")


@dataclass
class Client(StorageRecord):
    """Borrower, identified by a unique passbook number"""
    member_name: str
    passbook_number: str
    branch_name: str
    branch_code: str
    group_id: Optional[str] = None
    phone: Optional[str] = None
    created_by_email: Optional[str] = None


@dataclass
class Group(StorageRecord):
    """Solidarity group of clients"""
    group_name: str
    group_code: str
    branch_name: str
    branch_code: str
    client_ids: List[str] = field(default_factory=list)
    loan_officer_name: Optional[str] = None
    created_by_email: Optional[str] = None
    group_loan_total: Decimal = ZERO  # Cache of member individual loan principal


class MemberDirectory:
    """Creates and looks up clients and groups"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.clients_table = "clients"
        self.groups_table = "groups"

    def create_group(
        self,
        group_name: str,
        group_code: str,
        branch_name: str,
        branch_code: str,
        identity: Optional[UserIdentity] = None,
        loan_officer_name: Optional[str] = None
    ) -> Group:
        """
        Create a group; group_code must be unique

        Raises:
            ValidationError: If a required field is missing
            DuplicateKeyError: If the group code is taken
        """
        self._require_fields(group_name=group_name, group_code=group_code,
                             branch_name=branch_name, branch_code=branch_code)
        now = datetime.now(timezone.utc)
        group = Group(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            group_name=group_name.strip(),
            group_code=group_code.strip(),
            branch_name=branch_name,
            branch_code=branch_code,
            loan_officer_name=loan_officer_name or (identity.username if identity else None),
            created_by_email=identity.email if identity else None
        )
        self.storage.insert(self.groups_table, group.id, group.to_dict(), unique_fields=("group_code",))
        log_action(logger, "info", "Group created", user_id=group.created_by_email,
                   action="create_group", resource=group.id)
        return group

    def create_client(
        self,
        member_name: str,
        passbook_number: str,
        branch_name: str,
        branch_code: str,
        identity: Optional[UserIdentity] = None,
        group_id: Optional[str] = None,
        phone: Optional[str] = None
    ) -> Client:
        """
        Create a client, optionally as a member of a group

        Raises:
            ValidationError: If a required field is missing
            NotFoundError: If the group does not exist
            DuplicateKeyError: If the passbook number is taken
        """
        self._require_fields(member_name=member_name, passbook_number=passbook_number,
                             branch_name=branch_name, branch_code=branch_code)
        if group_id:
            self.require_group(group_id)

        now = datetime.now(timezone.utc)
        client = Client(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            member_name=member_name.strip(),
            passbook_number=passbook_number.strip(),
            branch_name=branch_name,
            branch_code=branch_code,
            group_id=group_id,
            phone=phone,
            created_by_email=identity.email if identity else None
        )
        with self.storage.atomic():
            self.storage.insert(self.clients_table, client.id, client.to_dict(),
                                unique_fields=("passbook_number",))
            if group_id:
                group_data = self.storage.load(self.groups_table, group_id)
                group_data['client_ids'] = group_data.get('client_ids', []) + [client.id]
                group_data['updated_at'] = now.isoformat()
                self.storage.save(self.groups_table, group_id, group_data)
        return client

    def get_client(self, client_id: str) -> Optional[Client]:
        data = self.storage.load(self.clients_table, client_id)
        return self._client_from_dict(data) if data else None

    def require_client(self, client_id: str) -> Client:
        client = self.get_client(client_id)
        if client is None:
            raise NotFoundError(f"Client {client_id} not found")
        return client

    def get_group(self, group_id: str) -> Optional[Group]:
        data = self.storage.load(self.groups_table, group_id)
        return self._group_from_dict(data) if data else None

    def require_group(self, group_id: str) -> Group:
        group = self.get_group(group_id)
        if group is None:
            raise NotFoundError(f"Group {group_id} not found")
        return group

    def set_group_loan_total(self, group_id: str, total: Decimal) -> None:
        """Overwrite the cached group loan total"""
        with self.storage.atomic():
            data = self.storage.load(self.groups_table, group_id)
            if data is None:
                raise NotFoundError(f"Group {group_id} not found")
            data['group_loan_total'] = str(round2(total))
            data['updated_at'] = datetime.now(timezone.utc).isoformat()
            self.storage.save(self.groups_table, group_id, data)

    def _require_fields(self, **values) -> None:
        missing = [f"{name} is required" for name, value in values.items() if not value or not str(value).strip()]
        if missing:
            raise ValidationError(missing)

    def _client_from_dict(self, data: Dict) -> Client:
        return Client(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            member_name=data['member_name'],
            passbook_number=data['passbook_number'],
            branch_name=data['branch_name'],
            branch_code=data['branch_code'],
            group_id=data.get('group_id'),
            phone=data.get('phone'),
            created_by_email=data.get('created_by_email')
        )

    def _group_from_dict(self, data: Dict) -> Group:
        return Group(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            group_name=data['group_name'],
            group_code=data['group_code'],
            branch_name=data['branch_name'],
            branch_code=data['branch_code'],
            client_ids=list(data.get('client_ids') or []),
            loan_officer_name=data.get('loan_officer_name'),
            created_by_email=data.get('created_by_email'),
            group_loan_total=Decimal(data.get('group_loan_total') or '0')
        )
