"""
Savings Module

Individual savings accounts used to hold collateral cash. One account per
client; transactions are appended under optimistic versioning.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional
import uuid

from .config import get_config
from .currency import Currency, ZERO, round2, to_decimal
from .errors import ConcurrentModificationError, NotFoundError, ValidationError
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


logger = get_logger("microfinance.savings")


@dataclass
class SavingsTransaction:
    """Single deposit or withdrawal with the resulting running balance"""
    date: date
    saving_amount: Decimal
    withdrawal_amount: Decimal
    balance: Decimal
    currency: Currency
    branch_name: Optional[str] = None
    branch_code: Optional[str] = None
    reference: Optional[str] = None


@dataclass
class SavingsAccount(StorageRecord):
    """Individual savings account"""
    client_id: str
    branch_name: str
    branch_code: str
    currency: Currency = Currency.LRD
    group_id: Optional[str] = None
    account_type: str = "individual"
    loan_cycle: int = 1
    current_balance: Decimal = ZERO
    transactions: List[SavingsTransaction] = field(default_factory=list)
    version: int = 0


class SavingsManager:
    """Finds or opens savings accounts and appends transactions"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "savings_accounts"

    def ensure_individual_account(
        self,
        client_id: str,
        branch_name: str,
        branch_code: str,
        currency: Currency = Currency.LRD,
        group_id: Optional[str] = None
    ) -> SavingsAccount:
        """Return the client's individual account, opening one if needed (atomic)"""
        def build() -> Dict:
            now = datetime.now(timezone.utc)
            account = SavingsAccount(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                client_id=client_id,
                branch_name=branch_name,
                branch_code=branch_code,
                currency=currency,
                group_id=group_id,
                version=1
            )
            return account.to_dict()

        data, created = self.storage.find_or_create(
            self.table_name, {"account_type": "individual", "client_id": client_id}, build
        )
        if created:
            log_action(logger, "info", "Savings account opened", action="open_savings",
                       resource=data['id'], extra={"client_id": client_id})
        return self._account_from_dict(data)

    def get_account(self, account_id: str) -> Optional[SavingsAccount]:
        data = self.storage.load(self.table_name, account_id)
        return self._account_from_dict(data) if data else None

    def find_for_client(self, client_id: str) -> Optional[SavingsAccount]:
        data = self.storage.find_one(self.table_name, {"account_type": "individual", "client_id": client_id})
        return self._account_from_dict(data) if data else None

    def add_transaction(
        self,
        account_id: str,
        saving_amount=ZERO,
        withdrawal_amount=ZERO,
        currency: Optional[Currency] = None,
        transaction_date: Optional[date] = None,
        reference: Optional[str] = None
    ) -> SavingsAccount:
        """
        Append a deposit and/or withdrawal and update the running balance

        Raises:
            NotFoundError: If the account does not exist
            ValidationError: If amounts are negative, the currency differs or funds are insufficient
            ConcurrentModificationError: If every write attempt lost a race
        """
        saving = round2(saving_amount)
        withdrawal = round2(withdrawal_amount)
        if saving < 0 or withdrawal < 0:
            raise ValidationError("Transaction amounts cannot be negative")
        if saving == 0 and withdrawal == 0:
            raise ValidationError("Transaction must deposit or withdraw a positive amount")

        attempts = max(get_config().ledger_retry_attempts, 1)
        for _ in range(attempts):
            account = self.get_account(account_id)
            if account is None:
                raise NotFoundError(f"Savings account {account_id} not found")
            if currency is not None and currency != account.currency:
                raise ValidationError(
                    f"Transaction currency {currency.code} does not match account currency {account.currency.code}"
                )
            balance = round2(account.current_balance + saving - withdrawal)
            if balance < 0:
                raise ValidationError("Insufficient savings balance")

            account.transactions.append(SavingsTransaction(
                date=transaction_date or datetime.now(timezone.utc).date(),
                saving_amount=saving,
                withdrawal_amount=withdrawal,
                balance=balance,
                currency=account.currency,
                branch_name=account.branch_name,
                branch_code=account.branch_code,
                reference=reference
            ))
            account.current_balance = balance
            account.updated_at = datetime.now(timezone.utc)
            try:
                stored = self.storage.compare_and_swap(
                    self.table_name, account.id, account.to_dict(), account.version
                )
                account.version = stored["version"]
                return account
            except ConcurrentModificationError:
                logger.warning("Savings write conflict, retrying", extra={"resource": account_id})
        raise ConcurrentModificationError(f"Savings account {account_id} was modified concurrently")

    def _account_from_dict(self, data: Dict) -> SavingsAccount:
        return SavingsAccount(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            client_id=data['client_id'],
            branch_name=data['branch_name'],
            branch_code=data['branch_code'],
            currency=Currency.from_code(data['currency']),
            group_id=data.get('group_id'),
            account_type=data.get('account_type', 'individual'),
            loan_cycle=int(data.get('loan_cycle') or 1),
            current_balance=to_decimal(data.get('current_balance')),
            transactions=[
                SavingsTransaction(
                    date=date.fromisoformat(t['date']),
                    saving_amount=Decimal(t['saving_amount']),
                    withdrawal_amount=Decimal(t['withdrawal_amount']),
                    balance=Decimal(t['balance']),
                    currency=Currency.from_code(t['currency']),
                    branch_name=t.get('branch_name'),
                    branch_code=t.get('branch_code'),
                    reference=t.get('reference')
                )
                for t in data.get('transactions', [])
            ],
            version=int(data.get('version') or 0)
        )
