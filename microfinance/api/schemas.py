"""
Pydantic schemas for API requests

Loan and agreement payloads allow extra keys: anything outside the loan terms
is kept as pass-through document metadata.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def payload(model: BaseModel) -> Dict[str, Any]:
    """Fields the caller actually sent, extras included"""
    return model.model_dump(exclude_unset=True)


# Loan schemas
class LoanRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    category: Optional[str] = Field(None, description="express, individual or group")
    loan_amount: Optional[Decimal] = None
    interest_rate: Optional[Decimal] = None
    currency: Optional[str] = Field(None, description="Currency code (USD or LRD)")
    branch_name: Optional[str] = None
    branch_code: Optional[str] = None
    loan_officer_name: Optional[str] = None
    group_id: Optional[str] = None
    client_id: Optional[str] = None
    client_ids: Optional[List[str]] = None
    payment_plan: Optional[str] = Field(None, description="weekly, bi-weekly or monthly")
    duration_number: Optional[int] = None
    duration_unit: Optional[str] = Field(None, description="days, weeks, months or years")
    disbursement_date: Optional[str] = None  # ISO date string
    collection_start_date: Optional[str] = None  # ISO date string
    ending_date: Optional[str] = None  # ISO date string
    is_returning_client: Optional[bool] = None
    processing_fee_percent: Optional[Decimal] = None
    collateral_cash_percent: Optional[Decimal] = None
    form_fee_amount: Optional[Decimal] = None
    inspection_fee_amount: Optional[Decimal] = None
    total_amount_to_be_paid: Optional[Decimal] = None
    cash_amount_credited: Optional[Decimal] = None
    guarantors: Optional[List[Dict[str, Any]]] = None
    documents: Optional[Dict[str, Any]] = None


class LoanStatusRequest(BaseModel):
    status: str = Field(..., description="pending, active, paid or defaulted")


# Collection schemas
class CollectionRequest(BaseModel):
    member_name: Optional[str] = None
    scheduled_amount: Optional[Decimal] = None
    collected_amount: Optional[Decimal] = None
    advance_payment: Optional[Decimal] = None
    field_balance: Optional[Decimal] = None
    currency: Optional[str] = None
    collection_date: Optional[str] = None  # ISO date string


class CollectionBatchRequest(BaseModel):
    entries: List[CollectionRequest]


# Distribution schemas
class DistributionEntry(BaseModel):
    amount: Decimal
    currency: Optional[str] = None
    member_id: Optional[str] = None
    date: Optional[str] = None  # ISO date string
    notes: Optional[str] = None


class DistributionRequest(BaseModel):
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    member_id: Optional[str] = None
    date: Optional[str] = None  # ISO date string
    notes: Optional[str] = None
    entries: Optional[List[DistributionEntry]] = None
    collection_start_date: Optional[str] = None  # ISO date string
    collection_start_rule: Optional[str] = Field(None, description="one_week_after or next_week")
    start_anchor_date: Optional[str] = None  # ISO date string
    duration_number: Optional[int] = None
    duration_unit: Optional[str] = None


class UpdateDistributionRequest(BaseModel):
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    member_id: Optional[str] = None
    date: Optional[str] = None  # ISO date string
    notes: Optional[str] = None


# Agreement schema
class AgreementUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="allow")


# Metric schemas
class MetricEntry(BaseModel):
    metric: str
    value: Decimal
    date: Optional[str] = None  # ISO date string
    branch_name: Optional[str] = None
    branch_code: Optional[str] = None
    loan_officer_name: Optional[str] = None
    currency: Optional[str] = None
    loan_id: Optional[str] = None
    group_id: Optional[str] = None
    client_id: Optional[str] = None
    extra: Optional[Dict[str, Any]] = None


class MetricRequest(BaseModel):
    metric: Optional[str] = None
    value: Optional[Decimal] = None
    date: Optional[str] = None  # ISO date string
    branch_name: Optional[str] = None
    branch_code: Optional[str] = None
    loan_officer_name: Optional[str] = None
    currency: Optional[str] = None
    loan_id: Optional[str] = None
    group_id: Optional[str] = None
    client_id: Optional[str] = None
    extra: Optional[Dict[str, Any]] = None
    entries: Optional[List[MetricEntry]] = None


# Loan configuration schema
class LoanConfigRequest(BaseModel):
    branch_code: Optional[str] = None
    global_default: bool = False
    express: Optional[Dict[str, Any]] = None
    individual: Optional[Dict[str, Any]] = None
    group: Optional[Dict[str, Any]] = None


# Expense schemas
class ExpenseRequest(BaseModel):
    description: Optional[str] = None
    amount: Optional[Decimal] = None
    category: Optional[str] = None
    currency: Optional[str] = None
    expense_date: Optional[str] = None  # ISO date string
    branch_name: Optional[str] = None
    branch_code: Optional[str] = None
    notes: Optional[str] = None


class ExpenseStatusRequest(BaseModel):
    status: str = Field(..., description="pending, approved, rejected or paid")
