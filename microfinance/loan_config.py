"""
Loan Configuration Module

Per-branch fee defaults for each loan category, with a single global document
as fallback. Records are keyed so that storage-level id uniqueness enforces
"one global, at most one per branch".
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from .currency import optional_decimal
from .errors import ValidationError
from .identity import UserIdentity, ensure_approver
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


logger = get_logger("microfinance.loan_config")

GLOBAL_CONFIG_ID = "global"


class LoanCategory(Enum):
    """Loan categories, each with its own relation rules and fee defaults"""
    EXPRESS = "express"
    INDIVIDUAL = "individual"
    GROUP = "group"


@dataclass
class FeeSettings:
    """Fee defaults for a single loan category; None means "not configured" """
    processing_fee_percent: Optional[Decimal] = None
    collateral_cash_percent: Optional[Decimal] = None
    form_fee_amount_lrd: Optional[Decimal] = None            # Group loans and group-member loans
    form_fee_amount_lrd_new: Optional[Decimal] = None        # Standalone individual, new client
    form_fee_amount_lrd_returning: Optional[Decimal] = None  # Standalone individual, returning client
    inspection_fee_default: Optional[Decimal] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'FeeSettings':
        data = data or {}
        unknown = set(data) - {f for f in cls.__dataclass_fields__}
        if unknown:
            raise ValidationError([f"Unknown fee setting '{name}'" for name in sorted(unknown)])
        values = {}
        for name in cls.__dataclass_fields__:
            value = optional_decimal(data.get(name))
            if value is not None and value < 0:
                raise ValidationError(f"{name} cannot be negative")
            values[name] = value
        return cls(**values)


@dataclass
class LoanConfig(StorageRecord):
    """Fee configuration document for one branch, or the global default"""
    branch_code: Optional[str] = None
    express: FeeSettings = field(default_factory=FeeSettings)
    individual: FeeSettings = field(default_factory=FeeSettings)
    group: FeeSettings = field(default_factory=FeeSettings)
    updated_by: Optional[str] = None

    @property
    def is_global(self) -> bool:
        return self.branch_code is None

    def settings_for(self, category: LoanCategory) -> FeeSettings:
        return getattr(self, category.value)


def config_record_id(branch_code: Optional[str]) -> str:
    """Storage key of the config document for a branch (None is the global default)"""
    if branch_code:
        return f"branch:{branch_code}"
    return GLOBAL_CONFIG_ID


class LoanConfigManager:
    """Resolves and maintains loan fee configuration"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "loan_configs"

    def get_config(self, branch_code: Optional[str]) -> Optional[LoanConfig]:
        """Exact lookup: the branch document, or the global one when branch_code is None"""
        data = self.storage.load(self.table_name, config_record_id(branch_code))
        return self._config_from_dict(data) if data else None

    def get_effective_config(self, branch_code: Optional[str]) -> Optional[LoanConfig]:
        """
        Branch-specific config if present, else the global default, else None.

        Lookup failures never propagate; callers fall back to built-in constants.
        """
        try:
            if branch_code:
                specific = self.get_config(branch_code)
                if specific is not None:
                    return specific
            return self.get_config(None)
        except Exception:
            logger.exception("Loan config lookup failed, using built-in fallbacks",
                             extra={"resource": config_record_id(branch_code)})
            return None

    def resolve_settings(self, branch_code: Optional[str], category: LoanCategory) -> FeeSettings:
        """Fee settings for one category; empty settings when nothing is configured"""
        effective = self.get_effective_config(branch_code)
        if effective is None:
            return FeeSettings()
        return effective.settings_for(category)

    def upsert_config(
        self,
        identity: Optional[UserIdentity],
        branch_code: Optional[str] = None,
        global_default: bool = False,
        express: Optional[Dict[str, Any]] = None,
        individual: Optional[Dict[str, Any]] = None,
        group: Optional[Dict[str, Any]] = None
    ) -> LoanConfig:
        """
        Create or replace the config for a branch (defaults to the caller's branch)

        Raises:
            AccessDeniedError: If the caller is not an approver
            ValidationError: If a fee setting is unknown or negative
        """
        ensure_approver(identity, "update loan configuration")

        if global_default:
            branch_code = None
        elif not branch_code:
            branch_code = identity.branch_code or None

        record_id = config_record_id(branch_code)
        now = datetime.now(timezone.utc)
        existing = self.storage.load(self.table_name, record_id)
        created_at = datetime.fromisoformat(existing['created_at']) if existing else now

        loan_config = LoanConfig(
            id=record_id,
            created_at=created_at,
            updated_at=now,
            branch_code=branch_code,
            express=FeeSettings.from_dict(express),
            individual=FeeSettings.from_dict(individual),
            group=FeeSettings.from_dict(group),
            updated_by=identity.email or identity.username or "system"
        )
        self.storage.save(self.table_name, record_id, loan_config.to_dict())

        log_action(logger, "info", "Loan configuration updated",
                   user_id=loan_config.updated_by, action="upsert_loan_config",
                   resource=record_id)
        return loan_config

    def _config_from_dict(self, data: Dict[str, Any]) -> LoanConfig:
        return LoanConfig(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            branch_code=data.get('branch_code'),
            express=FeeSettings.from_dict(data.get('express')),
            individual=FeeSettings.from_dict(data.get('individual')),
            group=FeeSettings.from_dict(data.get('group')),
            updated_by=data.get('updated_by')
        )
