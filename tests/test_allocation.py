"""
Test suite for payment allocation

Tests the late fee -> interest -> principal precedence, due date ordering,
tolerance, overpayment and indefinite-loan capital reduction.
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone, date

from loan_engine.allocation import allocate_payment, credit_late_fee, ordered_obligations, anchored
from loan_engine.exceptions import AllocationError, OverpaymentError
from loan_engine.late_fees import compute_late_fee
from loan_engine.models import (
    Loan, LoanCharge, InstallmentState, PaymentFrequency, AmortizationType, PaymentStatus
)
from loan_engine.schedule import generate_schedule


def make_loan(**overrides) -> Loan:
    now = datetime.now(timezone.utc)
    fields = dict(
        id="LOAN001",
        created_at=now,
        updated_at=now,
        client_id="CLIENT001",
        amount=Decimal('10000'),
        interest_rate=Decimal('5'),
        payment_frequency=PaymentFrequency.MONTHLY,
        amortization_type=AmortizationType.FIXED,
        start_date=date(2024, 1, 15),
        term_months=4
    )
    fields.update(overrides)
    return Loan(**fields)


def make_charge(amount, charge_date, charge_id="CHG001") -> LoanCharge:
    now = datetime.now(timezone.utc)
    return LoanCharge(
        id=charge_id,
        created_at=now,
        updated_at=now,
        loan_id="LOAN001",
        amount=Decimal(amount),
        charge_date=charge_date,
        description="Legal fees"
    )


def allocate(loan, installments, amount, payment_date, charges=None):
    late_fee = compute_late_fee(loan, installments, payment_date)
    return allocate_payment(loan, installments, late_fee, Decimal(amount), payment_date, charges=charges)


class TestFixedLoanAllocation:
    """Test allocation against fixed schedules"""

    def setup_method(self):
        self.loan = make_loan()
        self.schedule = generate_schedule(self.loan)

    def test_exact_installment_payment(self):
        """3,000 on the first due date pays installment 1 in full"""
        result = allocate(self.loan, self.schedule, '3000', date(2024, 2, 15))

        payment = result.payment
        assert payment.late_fee == Decimal('0')
        assert payment.interest_amount == Decimal('500')
        assert payment.principal_amount == Decimal('2500')
        assert payment.amount == Decimal('3000')
        assert payment.is_consistent()
        assert payment.status == PaymentStatus.COMPLETED
        assert payment.due_date == date(2024, 2, 15)

        assert result.advanced == [1]
        first = result.installments[0]
        assert first.is_paid
        assert first.paid_date == date(2024, 2, 15)
        assert not result.installments[1].is_paid

    def test_partial_payment(self):
        """Interest is covered before principal"""
        result = allocate(self.loan, self.schedule, '800', date(2024, 2, 15))

        assert result.payment.interest_amount == Decimal('500')
        assert result.payment.principal_amount == Decimal('300')
        first = result.installments[0]
        assert not first.is_paid
        assert first.state == InstallmentState.PARTIAL
        assert first.principal_paid == Decimal('300')

    def test_interest_only_partial(self):
        """A payment smaller than the interest goes entirely to interest"""
        result = allocate(self.loan, self.schedule, '200', date(2024, 2, 15))

        assert result.payment.interest_amount == Decimal('200')
        assert result.payment.principal_amount == Decimal('0')

    def test_payment_spills_into_next_installment(self):
        """4,500 pays installment 1 and partially pays installment 2"""
        result = allocate(self.loan, self.schedule, '4500', date(2024, 2, 15))

        assert result.payment.interest_amount == Decimal('1000')
        assert result.payment.principal_amount == Decimal('3500')
        assert result.advanced == [1, 2]
        assert result.installments[0].is_paid
        second = result.installments[1]
        assert not second.is_paid
        assert second.interest_paid == Decimal('500')
        assert second.principal_paid == Decimal('1000')

    def test_earlier_partial_installment_is_not_skipped(self):
        """An unpaid earlier installment absorbs the next payment first"""
        first = allocate(self.loan, self.schedule, '800', date(2024, 2, 15))
        second = allocate(self.loan, first.installments, '3000', date(2024, 3, 15))

        assert second.installments[0].is_paid
        assert second.installments[0].principal_paid == Decimal('2500')
        assert second.advanced == [1, 2]
        assert second.payment.interest_amount == Decimal('500')
        assert second.payment.principal_amount == Decimal('2500')
        assert second.payment.due_date == date(2024, 2, 15)

    def test_paid_within_tolerance(self):
        """A shortfall of up to 1% still marks the installment paid"""
        result = allocate(self.loan, self.schedule, '2980', date(2024, 2, 15))
        assert result.installments[0].is_paid

    def test_not_paid_beyond_tolerance(self):
        result = allocate(self.loan, self.schedule, '2970', date(2024, 2, 15))
        assert not result.installments[0].is_paid

    def test_overpayment_is_rejected(self):
        """More than the total outstanding on a fixed loan is an error"""
        with pytest.raises(OverpaymentError) as exc_info:
            allocate(self.loan, self.schedule, '12001', date(2024, 2, 15))

        assert exc_info.value.tendered == Decimal('12001')
        assert exc_info.value.outstanding == Decimal('12000')

    def test_full_payoff_is_accepted(self):
        result = allocate(self.loan, self.schedule, '12000', date(2024, 2, 15))

        assert result.advanced == [1, 2, 3, 4]
        assert all(i.is_paid for i in result.installments)

    def test_principal_bounded_by_balance_after_capital_paydown(self):
        """A 4,000 capital paydown leaves only 6,000 of principal to collect"""
        loan = make_loan(remaining_balance=Decimal('6000'))

        with pytest.raises(OverpaymentError) as exc_info:
            allocate(loan, self.schedule, '9000', date(2024, 2, 15))
        assert exc_info.value.outstanding == Decimal('7500')

        result = allocate(loan, self.schedule, '7500', date(2024, 2, 15))
        assert result.payment.interest_amount == Decimal('1500')
        assert result.payment.principal_amount == Decimal('6000')

    def test_non_positive_amount(self):
        with pytest.raises(AllocationError):
            allocate(self.loan, self.schedule, '0', date(2024, 2, 15))
        with pytest.raises(AllocationError):
            allocate(self.loan, self.schedule, '-5', date(2024, 2, 15))

    def test_inputs_are_not_mutated(self):
        """Allocation works on copies of the snapshots"""
        allocate(self.loan, self.schedule, '4500', date(2024, 2, 15))

        assert all(not i.is_paid for i in self.schedule)
        assert all(i.principal_paid == Decimal('0') for i in self.schedule)

    def test_payment_metadata(self):
        late_fee = compute_late_fee(self.loan, self.schedule, date(2024, 2, 15))
        result = allocate_payment(
            self.loan, self.schedule, late_fee, Decimal('3000'), date(2024, 2, 15),
            payment_method="transfer", reference_number="TRX-1", notes="February"
        )

        assert result.payment.loan_id == "LOAN001"
        assert result.payment.payment_method == "transfer"
        assert result.payment.reference_number == "TRX-1"
        assert result.payment.installment_numbers == [1]


class TestLateFeePrecedence:
    """Test that late fees are collected first"""

    def setup_method(self):
        self.loan = make_loan(
            late_fee_enabled=True,
            late_fee_rate=Decimal('2'),
            grace_period_days=5
        )
        self.schedule = generate_schedule(self.loan)

    def test_late_fee_collected_first(self):
        """10 days late with 5 grace days: 250 fee, then 3,000 pays the installment"""
        result = allocate(self.loan, self.schedule, '3250', date(2024, 2, 25))

        assert result.payment.late_fee == Decimal('250')
        assert result.payment.interest_amount == Decimal('500')
        assert result.payment.principal_amount == Decimal('2500')
        assert result.installments[0].late_fee_paid == Decimal('250')
        assert result.installments[0].is_paid

    def test_payment_smaller_than_late_fee(self):
        """A payment below the fee is entirely late fee"""
        result = allocate(self.loan, self.schedule, '100', date(2024, 2, 25))

        assert result.payment.late_fee == Decimal('100')
        assert result.payment.interest_amount == Decimal('0')
        assert result.payment.principal_amount == Decimal('0')
        assert result.advanced == []
        assert result.payment.due_date == date(2024, 2, 15)
        assert result.installments[0].late_fee_paid == Decimal('100')
        assert result.installments[0].state == InstallmentState.PENDING

    def test_fee_credited_oldest_first(self):
        """Collected fees are credited to the oldest overdue installments first"""
        loan = make_loan(late_fee_enabled=True, late_fee_rate=Decimal('1'), grace_period_days=0)
        schedule = generate_schedule(loan)
        payment_date = date(2024, 3, 25)

        late_fee = compute_late_fee(loan, schedule, payment_date)
        # 39 and 10 days late
        assert late_fee.total == Decimal('1225')

        result = allocate_payment(loan, schedule, late_fee, Decimal('1000'), payment_date)

        assert result.payment.late_fee == Decimal('1000')
        assert result.installments[0].late_fee_paid == Decimal('975')
        assert result.installments[1].late_fee_paid == Decimal('25')

    def test_credit_late_fee_remainder(self):
        """Amounts beyond the itemized fees land on the first open installment"""
        late_fee = compute_late_fee(self.loan, self.schedule, date(2024, 2, 25))
        credited = credit_late_fee(self.schedule, late_fee, Decimal('300'))

        assert credited == [1]
        assert self.schedule[0].late_fee_paid == Decimal('300')


class TestIndefiniteAllocation:
    """Test allocation against interest-only schedules"""

    def setup_method(self):
        self.loan = make_loan(
            amount=Decimal('50000'),
            interest_rate=Decimal('3'),
            amortization_type=AmortizationType.INDEFINITE,
            start_date=date(2023, 12, 1),
            first_payment_date=date(2024, 1, 1),
            term_months=None
        )

    def test_excess_reduces_capital(self):
        """2,000 against a 1,500 interest period: 500 goes to capital"""
        schedule = generate_schedule(self.loan, as_of=date(2024, 1, 5))
        result = allocate(self.loan, schedule, '2000', date(2024, 1, 5))

        assert result.payment.interest_amount == Decimal('1500')
        assert result.payment.principal_amount == Decimal('500')
        assert result.capital_reduction == Decimal('500')
        assert result.installments[0].is_paid

    def test_future_periods_not_reachable(self):
        """Periods not yet materialized on the payment date are not paid ahead"""
        schedule = generate_schedule(self.loan, as_of=date(2024, 3, 20))
        result = allocate(self.loan, schedule, '4500', date(2024, 1, 5))

        assert result.advanced == [1]
        assert result.capital_reduction == Decimal('3000')
        assert not result.installments[1].is_paid
        assert not result.installments[2].is_paid

    def test_whole_balance_can_be_repaid(self):
        """Interest due plus the full capital is accepted"""
        schedule = generate_schedule(self.loan, as_of=date(2024, 1, 5))
        result = allocate(self.loan, schedule, '51500', date(2024, 1, 5))

        assert result.capital_reduction == Decimal('50000')
        assert result.payment.principal_amount == Decimal('50000')

    def test_payment_beyond_balance_rejected(self):
        schedule = generate_schedule(self.loan, as_of=date(2024, 1, 5))

        with pytest.raises(OverpaymentError) as excinfo:
            allocate(self.loan, schedule, '60000', date(2024, 1, 5))
        assert excinfo.value.outstanding == Decimal('51500')

    def test_reduced_balance_bounds_capital(self):
        loan = make_loan(
            amount=Decimal('50000'),
            remaining_balance=Decimal('1000'),
            interest_rate=Decimal('3'),
            amortization_type=AmortizationType.INDEFINITE,
            start_date=date(2023, 12, 1),
            first_payment_date=date(2024, 1, 1),
            term_months=None
        )
        schedule = generate_schedule(loan, as_of=date(2024, 1, 5))

        with pytest.raises(OverpaymentError):
            allocate(loan, schedule, '3000', date(2024, 1, 5))
        assert allocate(loan, schedule, '2500', date(2024, 1, 5)).capital_reduction == Decimal('1000')


class TestChargeAllocation:
    """Test added charges as obligations"""

    def setup_method(self):
        self.loan = make_loan()
        self.schedule = generate_schedule(self.loan)

    def test_earlier_charge_paid_first(self):
        """A charge dated before the installment is settled first"""
        charge = make_charge('200', date(2024, 2, 1))
        result = allocate(self.loan, self.schedule, '3200', date(2024, 2, 15), charges=[charge])

        assert result.charges[0].is_paid
        assert result.charges[0].principal_paid == Decimal('200')
        assert result.installments[0].is_paid
        assert result.payment.principal_amount == Decimal('2700')
        assert result.payment.due_date == date(2024, 2, 1)
        assert not charge.is_paid

    def test_future_charge_not_visible(self):
        """Charges dated after the payment are not reachable"""
        charge = make_charge('200', date(2024, 3, 1))
        result = allocate(self.loan, self.schedule, '3000', date(2024, 2, 15), charges=[charge])

        assert not result.charges[0].is_paid
        assert result.installments[0].is_paid

    def test_installment_ahead_of_same_day_charge(self):
        charge = make_charge('200', date(2024, 2, 15))
        obligations = ordered_obligations(self.schedule, [charge])

        assert obligations[0] is self.schedule[0]
        assert obligations[1] is charge

    def test_anchored_obligations(self):
        """Anchoring drops obligations due before the payment's due date"""
        obligations = ordered_obligations(self.schedule)
        kept = anchored(obligations, date(2024, 3, 15))

        assert [o.installment_number for o in kept] == [2, 3, 4]
        assert anchored(obligations, None) == obligations
