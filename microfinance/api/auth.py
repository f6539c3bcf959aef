"""
System wiring and request identity dependencies
"""

from typing import Optional

from fastapi import Depends, Header

from ..agreements import AgreementManager
from ..collections import CollectionLedger
from ..config import get_config
from ..distributions import DistributionLedger
from ..expenses import ExpenseManager
from ..identity import UserDirectory, UserIdentity
from ..lifecycle import LoanLifecycle
from ..loan_config import LoanConfigManager
from ..loans import LoanManager
from ..logging_config import setup_logging
from ..members import MemberDirectory
from ..metrics import MetricsStore
from ..recalculation import RecalculationEngine
from ..savings import SavingsManager
from ..storage import StorageInterface, create_storage


class MicrofinanceSystem:
    """Microfinance back-office with all components initialized"""

    def __init__(self, storage: Optional[StorageInterface] = None):
        config = get_config()
        if storage is None:
            storage = create_storage(config.storage_backend, config.database_path)
        self.storage = storage

        self.users = UserDirectory(self.storage)
        self.members = MemberDirectory(self.storage)
        self.metrics = MetricsStore(self.storage)
        self.loan_configs = LoanConfigManager(self.storage)
        self.savings = SavingsManager(self.storage)
        self.agreements = AgreementManager(self.storage, self.members)
        self.loan_manager = LoanManager(self.storage, self.loan_configs, self.members, self.metrics)
        self.lifecycle = LoanLifecycle(self.loan_manager, self.metrics, self.agreements, self.savings)
        self.collections = CollectionLedger(self.loan_manager, self.members, self.metrics)
        self.distributions = DistributionLedger(self.storage, self.loan_manager, self.metrics)
        self.recalculation = RecalculationEngine(self.loan_manager, self.distributions, self.metrics)
        self.expenses = ExpenseManager(self.storage, self.metrics)

        # Administrative loan delete also removes the loan's dependents
        self.loan_manager.register_delete_hook(self.distributions.purge_for_loan)
        self.loan_manager.register_delete_hook(self.agreements.delete_for_loan)


_system: Optional[MicrofinanceSystem] = None


def get_system() -> MicrofinanceSystem:
    """Dependency returning the process-wide system, built on first use"""
    global _system
    if _system is None:
        config = get_config()
        setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
        _system = MicrofinanceSystem()
    return _system


def get_identity(
    x_user_email: Optional[str] = Header(None),
    system: MicrofinanceSystem = Depends(get_system)
) -> Optional[UserIdentity]:
    """Resolve the caller from the x-user-email header; unknown callers are unrestricted"""
    return system.users.resolve(x_user_email)
