"""
Fee & Schedule Calculator

Pure functions deriving fee amounts, totals and repayment schedules from loan
terms. Every derived monetary value is rounded to 2 places at its own boundary.
"""

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal, ROUND_CEILING
from enum import Enum
from typing import List, Optional
import calendar

from .currency import Currency, ZERO, round2, to_decimal
from .loan_config import FeeSettings, LoanCategory, LoanConfig


class PaymentPlan(Enum):
    """Repayment frequency"""
    WEEKLY = "weekly"
    BI_WEEKLY = "bi-weekly"
    MONTHLY = "monthly"


class DurationUnit(Enum):
    """Unit of a loan duration"""
    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"
    YEARS = "years"


# Built-in defaults used when neither the loan nor any configuration supplies a value
FALLBACK_PROCESSING_FEE_PERCENT = {
    LoanCategory.GROUP: Decimal('3'),
    LoanCategory.INDIVIDUAL: Decimal('4'),
    LoanCategory.EXPRESS: Decimal('0'),
}
FALLBACK_GROUP_MEMBER_PROCESSING_FEE_PERCENT = Decimal('3')
FALLBACK_COLLATERAL_CASH_PERCENT = {
    LoanCategory.GROUP: Decimal('8'),
    LoanCategory.INDIVIDUAL: Decimal('10'),
}
FALLBACK_GROUP_FORM_FEE_LRD = Decimal('200')
FALLBACK_NEW_CLIENT_FORM_FEE_LRD = Decimal('500')
FALLBACK_RETURNING_CLIENT_FORM_FEE_LRD = Decimal('400')

DEFAULT_MAX_SCHEDULE_STEPS = 500


@dataclass
class FeeInputs:
    """Loan terms feeding the fee derivation; None means "not supplied" """
    category: LoanCategory
    principal: Decimal
    interest_rate: Decimal
    currency: Currency
    in_group: bool = False
    is_returning_client: bool = False
    processing_fee_percent: Optional[Decimal] = None
    collateral_cash_percent: Optional[Decimal] = None
    form_fee_amount: Optional[Decimal] = None
    inspection_fee_amount: Optional[Decimal] = None
    total_amount_to_be_paid: Optional[Decimal] = None
    cash_amount_credited: Optional[Decimal] = None


@dataclass
class FeeBreakdown:
    """Result of a fee derivation; percentages are the resolved ones"""
    processing_fee_percent: Decimal
    collateral_cash_percent: Optional[Decimal]
    processing_fee_amount: Decimal
    collateral_cash_amount: Decimal
    form_fee_amount: Decimal
    inspection_fee_amount: Decimal
    net_disbursed_amount: Decimal
    total_amount_to_be_paid: Decimal
    cash_amount_credited: Decimal


def _first_set(*values):
    for value in values:
        if value is not None:
            return value
    return None


def resolve_processing_fee_percent(inputs: FeeInputs, settings: FeeSettings) -> Decimal:
    if inputs.processing_fee_percent is not None:
        return to_decimal(inputs.processing_fee_percent)
    if inputs.category == LoanCategory.INDIVIDUAL and inputs.in_group:
        fallback = FALLBACK_GROUP_MEMBER_PROCESSING_FEE_PERCENT
    else:
        fallback = FALLBACK_PROCESSING_FEE_PERCENT[inputs.category]
    return to_decimal(_first_set(settings.processing_fee_percent, fallback))


def resolve_collateral_cash_percent(inputs: FeeInputs, settings: FeeSettings) -> Optional[Decimal]:
    if inputs.collateral_cash_percent is not None:
        return to_decimal(inputs.collateral_cash_percent)
    if inputs.category == LoanCategory.EXPRESS:
        return None
    return to_decimal(_first_set(settings.collateral_cash_percent,
                                 FALLBACK_COLLATERAL_CASH_PERCENT[inputs.category]))


def resolve_form_fee(inputs: FeeInputs, config: Optional[LoanConfig]) -> Decimal:
    """Form fee: foreign currency pays none; group and group-member loans use the group flat fee"""
    if inputs.currency != Currency.LRD:
        return ZERO
    if inputs.form_fee_amount is not None:
        return to_decimal(inputs.form_fee_amount)
    if inputs.category == LoanCategory.EXPRESS:
        return ZERO

    group_settings = config.group if config else FeeSettings()
    individual_settings = config.individual if config else FeeSettings()
    if inputs.category == LoanCategory.GROUP or inputs.in_group:
        return to_decimal(_first_set(group_settings.form_fee_amount_lrd, FALLBACK_GROUP_FORM_FEE_LRD))
    if inputs.is_returning_client:
        return to_decimal(_first_set(individual_settings.form_fee_amount_lrd_returning,
                                     FALLBACK_RETURNING_CLIENT_FORM_FEE_LRD))
    return to_decimal(_first_set(individual_settings.form_fee_amount_lrd_new,
                                 FALLBACK_NEW_CLIENT_FORM_FEE_LRD))


def derive_fees(inputs: FeeInputs, config: Optional[LoanConfig] = None) -> FeeBreakdown:
    """
    Derive every fee field of a loan from its terms and the effective configuration.

    Explicit inputs win over configuration, configuration wins over built-in
    fallbacks. Derived amounts are never taken from input.
    """
    settings = config.settings_for(inputs.category) if config else FeeSettings()
    principal = to_decimal(inputs.principal)

    processing_percent = resolve_processing_fee_percent(inputs, settings)
    collateral_percent = resolve_collateral_cash_percent(inputs, settings)
    form_fee = round2(resolve_form_fee(inputs, config))
    inspection_fee = round2(_first_set(inputs.inspection_fee_amount, settings.inspection_fee_default, ZERO))

    processing_amount = round2(principal * processing_percent / Decimal('100'))
    collateral_amount = round2(principal * to_decimal(collateral_percent) / Decimal('100'))
    net_disbursed = round2(principal - processing_amount - form_fee - inspection_fee)

    if inputs.total_amount_to_be_paid is not None:
        total = round2(inputs.total_amount_to_be_paid)
    else:
        total = round2(principal * (Decimal('1') + to_decimal(inputs.interest_rate) / Decimal('100')))

    if inputs.cash_amount_credited is not None:
        credited = round2(inputs.cash_amount_credited)
    else:
        credited = net_disbursed

    return FeeBreakdown(
        processing_fee_percent=processing_percent,
        collateral_cash_percent=collateral_percent,
        processing_fee_amount=processing_amount,
        collateral_cash_amount=collateral_amount,
        form_fee_amount=form_fee,
        inspection_fee_amount=inspection_fee,
        net_disbursed_amount=net_disbursed,
        total_amount_to_be_paid=total,
        cash_amount_credited=credited
    )


def _ceil_div(numerator: int, denominator: int) -> int:
    return int((Decimal(numerator) / Decimal(denominator)).to_integral_value(rounding=ROUND_CEILING))


def _whole(number) -> int:
    value = to_decimal(number)
    return int(value.to_integral_value(rounding=ROUND_CEILING)) if value > 0 else 0


def duration_in_weeks(number, unit: DurationUnit) -> int:
    """Weeks-equivalent of a duration: days round up to whole weeks, a month is 4 weeks"""
    n = _whole(number)
    if unit == DurationUnit.DAYS:
        return max(_ceil_div(n, 7), 0)
    if unit == DurationUnit.WEEKS:
        return max(n, 0)
    if unit == DurationUnit.MONTHS:
        return max(n * 4, 0)
    if unit == DurationUnit.YEARS:
        return max(n * 52, 0)
    raise ValueError(f"Unsupported duration unit: {unit}")


def duration_in_months(number, unit: DurationUnit) -> int:
    """Months-equivalent of a duration, rounding partial months up"""
    n = _whole(number)
    if unit == DurationUnit.DAYS:
        return max(_ceil_div(n, 30), 0)
    if unit == DurationUnit.WEEKS:
        return max(_ceil_div(n, 4), 0)
    if unit == DurationUnit.MONTHS:
        return max(n, 0)
    if unit == DurationUnit.YEARS:
        return max(n * 12, 0)
    raise ValueError(f"Unsupported duration unit: {unit}")


def period_count(plan: PaymentPlan, number, unit: DurationUnit) -> int:
    """Number of repayment periods implied by the duration and payment plan"""
    if plan == PaymentPlan.MONTHLY:
        return duration_in_months(number, unit)
    weeks = duration_in_weeks(number, unit)
    if plan == PaymentPlan.BI_WEEKLY:
        return _ceil_div(weeks, 2)
    return weeks


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def add_duration(start_date: date, number, unit: DurationUnit) -> date:
    """Calendar end of a duration starting at start_date"""
    n = _whole(number)
    if not n:
        return start_date
    if unit == DurationUnit.DAYS:
        return start_date + timedelta(days=n)
    if unit == DurationUnit.WEEKS:
        return start_date + timedelta(weeks=n)
    if unit == DurationUnit.MONTHS:
        return add_months(start_date, n)
    if unit == DurationUnit.YEARS:
        return add_months(start_date, n * 12)
    raise ValueError(f"Unsupported duration unit: {unit}")


def step_date(current: date, plan: PaymentPlan) -> date:
    """Next due date after current for the payment plan"""
    if plan == PaymentPlan.WEEKLY:
        return current + timedelta(days=7)
    if plan == PaymentPlan.BI_WEEKLY:
        return current + timedelta(days=14)
    if plan == PaymentPlan.MONTHLY:
        return add_months(current, 1)
    raise ValueError(f"Unsupported payment plan: {plan}")


def due_dates(start: date, end: date, plan: PaymentPlan,
              limit: int = DEFAULT_MAX_SCHEDULE_STEPS) -> List[date]:
    """
    Due dates from start to end (inclusive) by literal date stepping.

    Monthly steps are taken from start (not chained) so a 31st start keeps
    landing on month ends. At most `limit` dates are produced.
    """
    dates = []
    current = start
    step = 0
    while current <= end and step < limit:
        dates.append(current)
        step += 1
        if plan == PaymentPlan.MONTHLY:
            current = add_months(start, step)
        else:
            current = step_date(current, plan)
    return dates


def schedule_period_count(
    plan: Optional[PaymentPlan],
    duration_number,
    duration_unit: DurationUnit,
    collection_start_date: Optional[date] = None,
    ending_date: Optional[date] = None,
    limit: int = DEFAULT_MAX_SCHEDULE_STEPS
) -> int:
    """
    Authoritative period count: literal date stepping when both schedule dates
    are known, otherwise the duration formula. Loans without a plan repay weekly.
    """
    plan = plan or PaymentPlan.WEEKLY
    if collection_start_date and ending_date:
        stepped = len(due_dates(collection_start_date, ending_date, plan, limit))
        if stepped > 0:
            return stepped
    return period_count(plan, duration_number, duration_unit)


def installment_amounts(total, periods: int) -> List[Decimal]:
    """
    Per-period scheduled amounts; the final period absorbs the rounding remainder.
    """
    if periods <= 0:
        return []
    total = round2(total)
    per_period = round2(total / Decimal(periods))
    amounts = [per_period] * (periods - 1)
    amounts.append(max(round2(total - per_period * (periods - 1)), ZERO))
    return amounts


def installment_amount(total, periods: int) -> Decimal:
    """Regular per-period amount (the weekly installment)"""
    if periods <= 0:
        return ZERO
    return round2(to_decimal(total) / Decimal(periods))
