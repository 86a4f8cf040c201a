"""
Late Fee Module

Computes accrued late fees per installment as of a calendar date under the
daily, monthly and compound policies, honoring grace periods, per-installment
caps and fees already collected or waived.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from .amounts import ZERO, Currency, rate_fraction, quantize, total
from .dates import days_between
from .logging_config import get_logger, log_action
from .models import Loan, Installment, LateFeePolicy, LateFeeCalculationType

logger = get_logger("loan_engine.late_fees")

DAYS_PER_MONTH_BLOCK = 30


@dataclass
class InstallmentLateFee:
    """Late-fee position of one installment"""
    installment_number: int
    due_date: Optional[date]
    days_overdue: int
    effective_days: int
    basis: Decimal
    accrued: Decimal       # policy fee after the cap
    collected: Decimal     # already paid or waived
    outstanding: Decimal   # accrued - collected, never negative
    is_satisfied: bool

    def to_dict(self, currency: Currency = Currency.DOP) -> Dict[str, Any]:
        return {
            'installment_number': self.installment_number,
            'due_date': self.due_date.isoformat() if self.due_date else None,
            'days_overdue': self.days_overdue,
            'effective_days': self.effective_days,
            'basis': str(quantize(self.basis, currency)),
            'accrued': str(quantize(self.accrued, currency)),
            'collected': str(quantize(self.collected, currency)),
            'late_fee': str(quantize(self.outstanding, currency)),
            'is_paid': self.is_satisfied
        }


@dataclass
class LateFeeResult:
    """Aggregate late fee plus the per-installment breakdown"""
    total: Decimal
    days_overdue: int
    as_of: date
    per_installment: List[InstallmentLateFee] = field(default_factory=list)

    def for_installment(self, installment_number: int) -> Optional[InstallmentLateFee]:
        for entry in self.per_installment:
            if entry.installment_number == installment_number:
                return entry
        return None

    def to_dict(self, currency: Currency = Currency.DOP) -> Dict[str, Any]:
        return {
            'total': str(quantize(self.total, currency)),
            'days_overdue': self.days_overdue,
            'as_of': self.as_of.isoformat(),
            'per_installment': [entry.to_dict(currency) for entry in self.per_installment]
        }


def fee_basis(installment: Installment) -> Decimal:
    """
    Fee basis is the installment principal. Interest-only installments
    (indefinite loans) have no principal, so their interest is used instead.
    """
    if installment.principal_amount > ZERO:
        return installment.principal_amount
    return installment.interest_amount


def accrued_fee(policy: LateFeePolicy, basis: Decimal, effective_days: int) -> Decimal:
    """Policy fee for `effective_days` past grace, capped per installment"""
    if effective_days <= 0 or basis <= ZERO:
        return ZERO

    rate = rate_fraction(policy.rate)
    if policy.calculation_type == LateFeeCalculationType.DAILY:
        fee = basis * rate * effective_days
    elif policy.calculation_type == LateFeeCalculationType.MONTHLY:
        months = -(-effective_days // DAYS_PER_MONTH_BLOCK)
        fee = basis * rate * months
    else:
        fee = basis * ((Decimal('1') + rate) ** effective_days - Decimal('1'))

    if policy.max_late_fee > ZERO:
        fee = min(fee, policy.max_late_fee)
    return fee


def late_fee_breakdown(
    policy: LateFeePolicy,
    installments: Iterable[Installment],
    as_of: date
) -> LateFeeResult:
    """
    Late fee over a set of installments, regardless of loan status.

    Paid or settled installments and installments not yet strictly past due
    contribute nothing. Installments without a usable due date are skipped
    with a warning.
    """
    policy.validate()
    entries: List[InstallmentLateFee] = []
    max_days = 0

    for inst in installments:
        if inst.due_date is None:
            log_action(
                logger, "warning", "Installment skipped from late-fee accrual: missing due date",
                action="compute_late_fee", resource=f"installment:{inst.id}",
                extra={"installment_number": inst.installment_number}
            )
            continue

        collected = inst.late_fee_paid + inst.late_fee_waived
        days_overdue = 0
        effective_days = 0
        accrued = ZERO

        if not inst.is_satisfied and inst.due_date < as_of:
            days_overdue = days_between(inst.due_date, as_of)
            effective_days = max(0, days_overdue - int(policy.grace_period_days))
            max_days = max(max_days, days_overdue)
            if policy.accrues:
                accrued = accrued_fee(policy, fee_basis(inst), effective_days)

        outstanding = max(ZERO, accrued - collected) if not inst.is_satisfied else ZERO
        entries.append(InstallmentLateFee(
            installment_number=inst.installment_number,
            due_date=inst.due_date,
            days_overdue=days_overdue,
            effective_days=effective_days,
            basis=fee_basis(inst),
            accrued=accrued,
            collected=collected,
            outstanding=outstanding,
            is_satisfied=inst.is_satisfied
        ))

    return LateFeeResult(
        total=total(e.outstanding for e in entries),
        days_overdue=max_days,
        as_of=as_of,
        per_installment=entries
    )


def compute_late_fee(loan: Loan, installments: Iterable[Installment], as_of: date) -> LateFeeResult:
    """
    Current late fee of a loan as of a date

    Args:
        loan: Loan carrying the late-fee policy
        installments: Current installment snapshots
        as_of: Calculation date (local calendar)

    Returns:
        LateFeeResult with the aggregate and per-installment breakdown

    Raises:
        LateFeePolicyError: If the loan's policy is invalid
    """
    policy = loan.late_fee_policy
    if loan.is_paid:
        # Settlement or payoff extinguishes accrual
        return LateFeeResult(total=ZERO, days_overdue=0, as_of=as_of)
    return late_fee_breakdown(policy, installments, as_of)
