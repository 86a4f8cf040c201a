"""
Schedule Generation Module

Derives the theoretical installment list of a loan from its origination
terms. Fixed loans split the principal evenly and charge flat interest on
the original principal every period. Indefinite loans are interest-only and
materialize one installment per period elapsed, as a pure function of
(first due date, frequency, as_of).
"""

from datetime import date
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from .amounts import ZERO, quantize, rate_fraction, total
from .dates import add_periods, add_months, days_between
from .exceptions import ScheduleError
from .models import Loan, Installment, PaymentFrequency


def validate_terms(loan: Loan) -> None:
    """Reject terms that cannot produce a schedule"""
    if loan.amount <= ZERO:
        raise ScheduleError(f"Loan amount must be positive, got {loan.amount}")
    if loan.interest_rate < ZERO:
        raise ScheduleError(f"Interest rate cannot be negative, got {loan.interest_rate}")
    if not loan.is_indefinite and (not loan.term_months or loan.term_months < 1):
        raise ScheduleError("Fixed loans need a term of at least one installment")


def first_due_date(loan: Loan) -> date:
    """
    First installment due date.

    An explicit first_payment_date wins unless it falls on (or before) the
    start date; due dates never coincide with the loan start, so the
    fallback is one period after start_date.
    """
    if loan.first_payment_date and loan.first_payment_date > loan.start_date:
        return loan.first_payment_date
    return add_periods(loan.start_date, loan.payment_frequency, 1)


def installment_amounts(loan: Loan) -> Tuple[Decimal, Decimal]:
    """(principal, interest) per installment at full precision"""
    interest = loan.amount * rate_fraction(loan.interest_rate)
    if loan.is_indefinite:
        return ZERO, interest
    return loan.amount / Decimal(loan.term_months), interest


def principal_slices(loan: Loan, count: int) -> List[Decimal]:
    """
    Per-installment principal rounded to the currency precision; the last
    slice absorbs the rounding remainder so the slices add up to `amount`.
    """
    if loan.is_indefinite:
        return [ZERO] * count
    principal, _ = installment_amounts(loan)
    slices = [quantize(principal, loan.currency)] * (count - 1)
    slices.append(loan.amount - total(slices))
    return slices


def periodic_payment(loan: Loan) -> Decimal:
    """Fixed periodic obligation (principal slice + flat interest)"""
    principal, interest = installment_amounts(loan)
    return principal + interest


def materialized_count(first_due: date, frequency: PaymentFrequency, as_of: date) -> int:
    """
    Number of installments with a due date on or before `as_of`; at least
    one so the upcoming period always exists.
    """
    if as_of < first_due:
        return 1

    elapsed_days = days_between(first_due, as_of)
    if frequency == PaymentFrequency.DAILY:
        return elapsed_days + 1
    elif frequency == PaymentFrequency.WEEKLY:
        return elapsed_days // 7 + 1
    elif frequency == PaymentFrequency.BIWEEKLY:
        return elapsed_days // 14 + 1

    months = (as_of.year - first_due.year) * 12 + (as_of.month - first_due.month)
    if add_months(first_due, months) > as_of:
        months -= 1
    return months + 1


def overlay(generated: Iterable[Installment], persisted: Iterable[Installment]) -> List[Installment]:
    """
    Replace generated installments with the stored rows of the same number so
    real paid/settled history is kept; stored rows outside the generated
    range are kept as well.
    """
    by_number = {inst.installment_number: inst for inst in generated}
    for row in persisted:
        by_number[row.installment_number] = row
    return [by_number[n] for n in sorted(by_number)]


def generate_schedule(
    loan: Loan,
    as_of: Optional[date] = None,
    persisted: Optional[Iterable[Installment]] = None
) -> List[Installment]:
    """
    Generate the installment schedule for a loan

    Args:
        loan: Loan with origination terms
        as_of: Calendar date that bounds indefinite materialization
            (required for indefinite loans, ignored for fixed ones)
        persisted: Stored installment rows to overlay on the derivation

    Returns:
        Installments ordered by installment_number
    """
    validate_terms(loan)

    first_due = first_due_date(loan)
    _, interest = installment_amounts(loan)

    if loan.is_indefinite:
        if as_of is None:
            raise ScheduleError("Indefinite schedules need an as_of date")
        count = materialized_count(first_due, loan.payment_frequency, as_of)
    else:
        count = loan.term_months
    principals = principal_slices(loan, count)

    schedule = [
        Installment(
            loan_id=loan.id,
            installment_number=number,
            due_date=add_periods(first_due, loan.payment_frequency, number - 1),
            principal_amount=principals[number - 1],
            interest_amount=interest
        )
        for number in range(1, count + 1)
    ]

    if persisted:
        schedule = overlay(schedule, persisted)

    return schedule
