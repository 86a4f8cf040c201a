"""
Payment Allocation Module

Splits a tendered amount into late-fee, interest and principal components in
fixed precedence and applies it to a loan's outstanding obligations in due
date order. The same pool application is used when replaying stored
payments, so a live allocation and a replay of the same payment always land
on identical installment states.
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Tuple, Union
import uuid

from .amounts import ZERO, CENT, quantize, to_decimal
from .exceptions import AllocationError, OverpaymentError
from .late_fees import LateFeeResult
from .logging_config import get_logger, log_action
from .models import Loan, Installment, LoanCharge, Payment, PaymentStatus
from .schedule import first_due_date, materialized_count

logger = get_logger("loan_engine.allocation")

Obligation = Union[Installment, LoanCharge]

DEFAULT_TOLERANCE_RATIO = Decimal('0.01')


@dataclass
class AllocationResult:
    """Outcome of allocating one payment"""
    payment: Payment
    installments: List[Installment]
    charges: List[LoanCharge] = field(default_factory=list)
    advanced: List[int] = field(default_factory=list)
    capital_reduction: Decimal = ZERO


@dataclass
class PoolOutcome:
    """What applying an interest/principal pool did to the obligations"""
    advanced: List[int] = field(default_factory=list)
    charges_touched: List[str] = field(default_factory=list)
    first_due: Optional[date] = None
    interest_left: Decimal = ZERO
    principal_left: Decimal = ZERO


def visible_installments(
    loan: Loan,
    installments: Iterable[Installment],
    as_of: date
) -> List[Installment]:
    """
    Installments a payment made on `as_of` can reach. Indefinite loans only
    expose the periods materialized by that date; fixed loans expose all.
    """
    installments = sorted(installments, key=lambda i: i.installment_number)
    if not loan.is_indefinite:
        return installments
    limit = materialized_count(first_due_date(loan), loan.payment_frequency, as_of)
    return [inst for inst in installments if inst.installment_number <= limit]


def visible_charges(charges: Optional[Iterable[LoanCharge]], as_of: date) -> List[LoanCharge]:
    """Charges already in effect on `as_of`"""
    return [c for c in (charges or []) if c.charge_date <= as_of]


def _sort_key(obligation: Obligation) -> Tuple:
    if isinstance(obligation, LoanCharge):
        return (obligation.due_date, 1, 0, obligation.created_at.isoformat())
    return (obligation.due_date, 0, obligation.installment_number, "")


def ordered_obligations(
    installments: Iterable[Installment],
    charges: Optional[Iterable[LoanCharge]] = None
) -> List[Obligation]:
    """
    Obligations in payment order: by due date, installments ahead of charges
    falling due the same day, then by installment number.
    """
    usable: List[Obligation] = []
    for inst in installments:
        if inst.due_date is None:
            log_action(
                logger, "warning", "Installment skipped from allocation: missing due date",
                action="allocate_payment", resource=f"installment:{inst.id}"
            )
            continue
        usable.append(inst)
    usable.extend(charges or [])
    return sorted(usable, key=_sort_key)


def anchored(obligations: Sequence[Obligation], due_date: Optional[date]) -> List[Obligation]:
    """
    Obligations from a payment's associated due date onward; a replayed
    payment starts where it was originally applied.
    """
    if due_date is None:
        return list(obligations)
    return [o for o in obligations if o.due_date >= due_date]


def credit_late_fee(
    installments: Sequence[Installment],
    breakdown: LateFeeResult,
    amount: Decimal,
    attribute: str = 'late_fee_paid'
) -> List[int]:
    """
    Credit a collected (or waived) late fee to installments oldest first, up
    to each installment's outstanding fee. Anything left over lands on the
    first unsatisfied installment.

    Returns:
        Installment numbers credited
    """
    remaining = to_decimal(amount)
    credited: List[int] = []
    if remaining <= ZERO or not installments:
        return credited

    by_number = {inst.installment_number: inst for inst in installments}
    for entry in breakdown.per_installment:
        if remaining <= ZERO:
            break
        inst = by_number.get(entry.installment_number)
        if inst is None or entry.outstanding <= ZERO:
            continue
        portion = min(entry.outstanding, remaining)
        setattr(inst, attribute, getattr(inst, attribute) + portion)
        remaining -= portion
        credited.append(inst.installment_number)

    if remaining > ZERO:
        target = next((i for i in installments if not i.is_satisfied), installments[-1])
        setattr(target, attribute, getattr(target, attribute) + remaining)
        if target.installment_number not in credited:
            credited.append(target.installment_number)

    return credited


def apply_pools(
    obligations: Sequence[Obligation],
    interest: Decimal,
    principal: Decimal,
    payment_date: date,
    tolerance_ratio: Decimal = DEFAULT_TOLERANCE_RATIO
) -> PoolOutcome:
    """
    Walk unsatisfied obligations in order, drawing interest from the interest
    pool and principal from the principal pool. An obligation becomes paid
    once both components cover their scheduled amounts.
    """
    outcome = PoolOutcome()
    interest = to_decimal(interest)
    principal = to_decimal(principal)

    for obligation in obligations:
        if interest <= ZERO and principal <= ZERO:
            break
        if obligation.is_satisfied:
            continue

        interest_part = min(interest, obligation.remaining_interest)
        principal_part = min(principal, obligation.remaining_principal)
        if interest_part <= ZERO and principal_part <= ZERO:
            continue

        if interest_part > ZERO:
            obligation.interest_paid += interest_part
            interest -= interest_part
        if principal_part > ZERO:
            obligation.principal_paid += principal_part
            principal -= principal_part

        if outcome.first_due is None:
            outcome.first_due = obligation.due_date
        if isinstance(obligation, LoanCharge):
            outcome.charges_touched.append(obligation.id)
        else:
            outcome.advanced.append(obligation.installment_number)

        if obligation.covers_schedule(tolerance_ratio):
            obligation.is_paid = True
            obligation.paid_date = payment_date

    outcome.interest_left = interest
    outcome.principal_left = principal
    return outcome


def _split(obligations: Sequence[Obligation], amount: Decimal) -> Tuple[Decimal, Decimal, Decimal]:
    """Sequential interest-then-principal walk without mutating anything"""
    interest = ZERO
    principal = ZERO
    remaining = amount
    for obligation in obligations:
        if remaining <= ZERO:
            break
        if obligation.is_satisfied:
            continue
        interest_part = min(remaining, obligation.remaining_interest)
        remaining -= interest_part
        principal_part = min(remaining, obligation.remaining_principal)
        remaining -= principal_part
        interest += interest_part
        principal += principal_part
    return interest, principal, remaining


def allocate_payment(
    loan: Loan,
    installments: Iterable[Installment],
    late_fee: LateFeeResult,
    tendered_amount,
    payment_date: date,
    charges: Optional[Iterable[LoanCharge]] = None,
    payment_method: str = "cash",
    reference_number: Optional[str] = None,
    notes: Optional[str] = None,
    tolerance_ratio: Decimal = DEFAULT_TOLERANCE_RATIO
) -> AllocationResult:
    """
    Allocate a tendered amount to a loan

    Args:
        loan: Target loan
        installments: Current installment snapshots (not mutated)
        late_fee: Late-fee breakdown as of the payment date
        tendered_amount: Amount received
        payment_date: Local calendar date of the payment
        charges: Outstanding added charges (not mutated)
        payment_method: Cash, transfer, ...
        reference_number: External reference
        notes: Free text
        tolerance_ratio: Relative shortfall accepted as fully paid

    Returns:
        AllocationResult with the new Payment and updated copies of the
        installments and charges

    Raises:
        AllocationError: If the amount is not positive
        OverpaymentError: If the amount exceeds what the loan owes
    """
    tendered = to_decimal(tendered_amount)
    if tendered <= ZERO:
        raise AllocationError(f"Payment amount must be positive, got {tendered}")

    updated = [replace(inst) for inst in installments]
    updated_charges = [replace(charge) for charge in (charges or [])]

    reachable = visible_installments(loan, updated, payment_date)
    obligations = ordered_obligations(reachable, visible_charges(updated_charges, payment_date))

    late_fee_part = quantize(min(tendered, max(ZERO, late_fee.total)), loan.currency)
    remaining = tendered - late_fee_part

    interest_exact, _, leftover = _split(obligations, remaining)
    if leftover > CENT and not loan.is_indefinite:
        raise OverpaymentError(tendered, tendered - leftover)

    interest_part = quantize(interest_exact, loan.currency)
    principal_part = remaining - interest_part

    # Principal collected never exceeds the outstanding balance
    excess = principal_part - loan.remaining_balance
    if excess > CENT:
        raise OverpaymentError(tendered, tendered - excess)

    credit_late_fee(reachable, late_fee, late_fee_part)
    outcome = apply_pools(obligations, interest_part, principal_part, payment_date, tolerance_ratio)

    capital_reduction = outcome.principal_left if loan.is_indefinite else ZERO
    if capital_reduction > ZERO:
        log_action(
            logger, "info", "Principal beyond scheduled obligations applied to capital",
            action="allocate_payment", resource=f"loan:{loan.id}",
            extra={"capital_reduction": str(quantize(capital_reduction, loan.currency))}
        )

    due_date = outcome.first_due
    if due_date is None:
        pending = next((o for o in obligations if not o.is_satisfied), None)
        due_date = pending.due_date if pending else None

    now = datetime.now(timezone.utc)
    payment = Payment(
        id=str(uuid.uuid4()),
        created_at=now,
        updated_at=now,
        loan_id=loan.id,
        amount=tendered,
        principal_amount=principal_part,
        interest_amount=interest_part,
        late_fee=late_fee_part,
        payment_date=payment_date,
        due_date=due_date,
        payment_method=payment_method,
        reference_number=reference_number,
        notes=notes,
        status=PaymentStatus.COMPLETED,
        installment_numbers=list(outcome.advanced)
    )

    return AllocationResult(
        payment=payment,
        installments=updated,
        charges=updated_charges,
        advanced=list(outcome.advanced),
        capital_reduction=capital_reduction
    )
