"""
Loan Domain Models

Loans, installments, payments and the manual balance-affecting records
(charges, capital-only paydowns, late-fee waivers) exchanged with the store.
Amounts are held at full precision and rounded only in to_dict().
"""

from decimal import Decimal
from datetime import datetime, date
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum

from .amounts import Currency, ZERO, to_decimal, quantize, within_tolerance
from .dates import parse_date, parse_optional_date
from .exceptions import LateFeePolicyError, DataError
from .storage import StorageRecord


class PaymentFrequency(Enum):
    """Payment frequency options"""
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"


class AmortizationType(Enum):
    """How the principal is repaid"""
    FIXED = "fixed"            # Equal principal slices, flat interest
    INDEFINITE = "indefinite"  # Interest-only periods, no fixed term


class LateFeeCalculationType(Enum):
    """Late-fee accrual policies"""
    DAILY = "daily"        # basis * rate * days
    MONTHLY = "monthly"    # basis * rate * started 30-day blocks
    COMPOUND = "compound"  # basis * ((1 + rate)^days - 1)


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVE = "active"
    PAID = "paid"


class InstallmentState(Enum):
    """Installment display states"""
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    SETTLED = "settled"


class PaymentStatus(Enum):
    """Payment record status"""
    COMPLETED = "completed"
    PENDING = "pending"


def _enum(enum_cls, value, error_cls=DataError):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise error_cls(f"Unknown {enum_cls.__name__} value: {value!r}")


@dataclass(frozen=True)
class LateFeePolicy:
    """Late-fee configuration of a loan"""
    enabled: bool
    rate: Decimal                    # percent per day/month
    grace_period_days: int = 0
    max_late_fee: Decimal = ZERO     # per installment, 0 = uncapped
    calculation_type: LateFeeCalculationType = LateFeeCalculationType.DAILY

    def __post_init__(self):
        object.__setattr__(self, 'rate', to_decimal(self.rate))
        object.__setattr__(self, 'max_late_fee', to_decimal(self.max_late_fee))
        object.__setattr__(
            self, 'calculation_type',
            _enum(LateFeeCalculationType, self.calculation_type, LateFeePolicyError)
        )
        self.validate()

    def validate(self) -> None:
        """Fail fast on a policy that cannot be computed"""
        if self.rate < ZERO:
            raise LateFeePolicyError(f"Late fee rate cannot be negative: {self.rate}")
        if self.grace_period_days is None or int(self.grace_period_days) < 0:
            raise LateFeePolicyError(
                f"Grace period cannot be negative: {self.grace_period_days}"
            )
        if self.max_late_fee < ZERO:
            raise LateFeePolicyError(f"Maximum late fee cannot be negative: {self.max_late_fee}")

    @property
    def accrues(self) -> bool:
        return self.enabled and self.rate > ZERO


@dataclass
class Loan(StorageRecord):
    """Loan with origination terms and engine-maintained aggregates"""
    client_id: str
    amount: Decimal
    interest_rate: Decimal                      # percent per period
    payment_frequency: PaymentFrequency
    amortization_type: AmortizationType
    start_date: date
    term_months: Optional[int] = None           # installment count; unused when indefinite
    first_payment_date: Optional[date] = None
    monthly_payment: Decimal = ZERO

    # Aggregates written by the reconciliation engine
    remaining_balance: Optional[Decimal] = None
    next_payment_date: Optional[date] = None
    current_late_fee: Decimal = ZERO
    status: LoanStatus = LoanStatus.ACTIVE
    last_late_fee_calculation: Optional[date] = None

    # Late-fee policy
    late_fee_enabled: bool = False
    late_fee_rate: Decimal = ZERO
    grace_period_days: int = 0
    max_late_fee: Decimal = ZERO
    late_fee_calculation_type: LateFeeCalculationType = LateFeeCalculationType.DAILY

    currency: Currency = Currency.DOP
    last_installment_number: int = 0            # never decreases, numbers are not reused
    settled_date: Optional[date] = None

    def __post_init__(self):
        self.amount = to_decimal(self.amount)
        self.interest_rate = to_decimal(self.interest_rate)
        self.monthly_payment = to_decimal(self.monthly_payment)
        self.current_late_fee = to_decimal(self.current_late_fee)
        self.late_fee_rate = to_decimal(self.late_fee_rate)
        self.max_late_fee = to_decimal(self.max_late_fee)
        if self.remaining_balance is None:
            self.remaining_balance = self.amount
        else:
            self.remaining_balance = to_decimal(self.remaining_balance)
        self.payment_frequency = _enum(PaymentFrequency, self.payment_frequency)
        self.amortization_type = _enum(AmortizationType, self.amortization_type)
        self.status = _enum(LoanStatus, self.status)
        self.late_fee_calculation_type = _enum(
            LateFeeCalculationType, self.late_fee_calculation_type, LateFeePolicyError
        )

    @property
    def is_indefinite(self) -> bool:
        return self.amortization_type == AmortizationType.INDEFINITE

    @property
    def is_paid(self) -> bool:
        return self.status == LoanStatus.PAID

    @property
    def late_fee_policy(self) -> LateFeePolicy:
        """Validated late-fee policy (raises LateFeePolicyError)"""
        return LateFeePolicy(
            enabled=self.late_fee_enabled,
            rate=self.late_fee_rate,
            grace_period_days=self.grace_period_days,
            max_late_fee=self.max_late_fee,
            calculation_type=self.late_fee_calculation_type
        )

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['currency'] = self.currency.code
        for name in ('amount', 'monthly_payment', 'remaining_balance',
                     'current_late_fee', 'max_late_fee'):
            result[name] = str(quantize(getattr(self, name), self.currency))
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['currency'] = Currency[data.get('currency') or 'DOP']
        data['start_date'] = parse_date(data['start_date'])
        for name in ('first_payment_date', 'next_payment_date',
                     'last_late_fee_calculation', 'settled_date'):
            data[name] = parse_optional_date(data.get(name))
        return cls(**data)


@dataclass
class Installment:
    """One scheduled obligation within a loan's amortization schedule"""
    loan_id: str
    installment_number: int
    due_date: Optional[date]
    principal_amount: Decimal
    interest_amount: Decimal
    principal_paid: Decimal = ZERO
    interest_paid: Decimal = ZERO
    late_fee_paid: Decimal = ZERO
    late_fee_waived: Decimal = ZERO
    is_paid: bool = False
    is_settled: bool = False
    paid_date: Optional[date] = None
    persisted: bool = field(default=False, compare=False)

    def __post_init__(self):
        for name in ('principal_amount', 'interest_amount', 'principal_paid',
                     'interest_paid', 'late_fee_paid', 'late_fee_waived'):
            setattr(self, name, to_decimal(getattr(self, name)))

    @property
    def id(self) -> str:
        return f"{self.loan_id}_{self.installment_number}"

    @property
    def total_amount(self) -> Decimal:
        return self.principal_amount + self.interest_amount

    @property
    def remaining_interest(self) -> Decimal:
        return max(ZERO, self.interest_amount - self.interest_paid)

    @property
    def remaining_principal(self) -> Decimal:
        return max(ZERO, self.principal_amount - self.principal_paid)

    @property
    def is_satisfied(self) -> bool:
        """Paid or settled: no further obligation for balance math"""
        return self.is_paid or self.is_settled

    @property
    def has_activity(self) -> bool:
        return (self.is_paid or self.is_settled or self.principal_paid > ZERO
                or self.interest_paid > ZERO or self.late_fee_paid > ZERO
                or self.late_fee_waived > ZERO)

    @property
    def state(self) -> InstallmentState:
        if self.is_settled:
            return InstallmentState.SETTLED
        if self.is_paid:
            return InstallmentState.PAID
        if self.principal_paid > ZERO or self.interest_paid > ZERO:
            return InstallmentState.PARTIAL
        return InstallmentState.PENDING

    def covers_schedule(self, tolerance_ratio: Decimal) -> bool:
        """Both components reached their scheduled amounts"""
        return (within_tolerance(self.interest_paid, self.interest_amount, tolerance_ratio)
                and within_tolerance(self.principal_paid, self.principal_amount, tolerance_ratio))

    def reset_payments(self) -> None:
        """Forget everything learned from payments; settlement is kept"""
        self.principal_paid = ZERO
        self.interest_paid = ZERO
        self.late_fee_paid = ZERO
        self.late_fee_waived = ZERO
        self.is_paid = False
        self.paid_date = None

    def to_dict(self, currency: Currency = Currency.DOP) -> Dict[str, Any]:
        return {
            'id': self.id,
            'loan_id': self.loan_id,
            'installment_number': self.installment_number,
            'due_date': self.due_date.isoformat() if self.due_date else None,
            'principal_amount': str(quantize(self.principal_amount, currency)),
            'interest_amount': str(quantize(self.interest_amount, currency)),
            'total_amount': str(quantize(self.total_amount, currency)),
            'principal_paid': str(quantize(self.principal_paid, currency)),
            'interest_paid': str(quantize(self.interest_paid, currency)),
            'late_fee_paid': str(quantize(self.late_fee_paid, currency)),
            'late_fee_waived': str(quantize(self.late_fee_waived, currency)),
            'is_paid': self.is_paid,
            'is_settled': self.is_settled,
            'paid_date': self.paid_date.isoformat() if self.paid_date else None,
            'state': self.state.value
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Installment':
        """Rebuild a stored installment (raises DataError on a bad due date)"""
        return cls(
            loan_id=data['loan_id'],
            installment_number=int(data['installment_number']),
            due_date=parse_date(data.get('due_date')),
            principal_amount=to_decimal(data.get('principal_amount')),
            interest_amount=to_decimal(data.get('interest_amount')),
            principal_paid=to_decimal(data.get('principal_paid')),
            interest_paid=to_decimal(data.get('interest_paid')),
            late_fee_paid=to_decimal(data.get('late_fee_paid')),
            late_fee_waived=to_decimal(data.get('late_fee_waived')),
            is_paid=bool(data.get('is_paid', False)),
            is_settled=bool(data.get('is_settled', False)),
            paid_date=parse_optional_date(data.get('paid_date')),
            persisted=True
        )


@dataclass
class Payment(StorageRecord):
    """Immutable record of how a tendered amount was split"""
    loan_id: str
    amount: Decimal
    principal_amount: Decimal
    interest_amount: Decimal
    late_fee: Decimal
    payment_date: date
    due_date: Optional[date] = None
    payment_method: str = "cash"
    reference_number: Optional[str] = None
    notes: Optional[str] = None
    status: PaymentStatus = PaymentStatus.COMPLETED
    installment_numbers: List[int] = field(default_factory=list)

    def __post_init__(self):
        for name in ('amount', 'principal_amount', 'interest_amount', 'late_fee'):
            setattr(self, name, to_decimal(getattr(self, name)))
        self.status = _enum(PaymentStatus, self.status)

    @property
    def components_total(self) -> Decimal:
        return self.principal_amount + self.interest_amount + self.late_fee

    def is_consistent(self, tolerance: Decimal = Decimal('0.01')) -> bool:
        """amount == principal + interest + late fee (within tolerance)"""
        return abs(self.amount - self.components_total) <= tolerance

    def to_dict(self, currency: Currency = Currency.DOP) -> Dict[str, Any]:
        result = super().to_dict()
        for name in ('amount', 'principal_amount', 'interest_amount', 'late_fee'):
            result[name] = str(quantize(getattr(self, name), currency))
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['payment_date'] = parse_date(data['payment_date'])
        data['due_date'] = parse_optional_date(data.get('due_date'))
        data['installment_numbers'] = list(data.get('installment_numbers') or [])
        return cls(**data)


@dataclass
class LoanCharge(StorageRecord):
    """Ad-hoc fee added to a loan; an interest-free obligation due on charge_date"""
    loan_id: str
    amount: Decimal
    charge_date: date
    description: str = ""
    principal_paid: Decimal = ZERO
    is_paid: bool = False
    paid_date: Optional[date] = None

    def __post_init__(self):
        self.amount = to_decimal(self.amount)
        self.principal_paid = to_decimal(self.principal_paid)

    # Obligation interface shared with Installment
    @property
    def due_date(self) -> date:
        return self.charge_date

    @property
    def principal_amount(self) -> Decimal:
        return self.amount

    @property
    def interest_amount(self) -> Decimal:
        return ZERO

    @property
    def interest_paid(self) -> Decimal:
        return ZERO

    @property
    def remaining_interest(self) -> Decimal:
        return ZERO

    @property
    def remaining_principal(self) -> Decimal:
        return max(ZERO, self.amount - self.principal_paid)

    @property
    def is_satisfied(self) -> bool:
        return self.is_paid

    def covers_schedule(self, tolerance_ratio: Decimal) -> bool:
        return within_tolerance(self.principal_paid, self.amount, tolerance_ratio)

    def reset_payments(self) -> None:
        self.principal_paid = ZERO
        self.is_paid = False
        self.paid_date = None

    def to_dict(self, currency: Currency = Currency.DOP) -> Dict[str, Any]:
        result = super().to_dict()
        result['amount'] = str(quantize(self.amount, currency))
        result['principal_paid'] = str(quantize(self.principal_paid, currency))
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanCharge':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['charge_date'] = parse_date(data['charge_date'])
        data['paid_date'] = parse_optional_date(data.get('paid_date'))
        return cls(**data)


@dataclass
class CapitalPayment(StorageRecord):
    """Capital-only paydown; reduces the balance without touching installments"""
    loan_id: str
    amount: Decimal
    payment_date: date
    notes: Optional[str] = None

    def __post_init__(self):
        self.amount = to_decimal(self.amount)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CapitalPayment':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['payment_date'] = parse_date(data['payment_date'])
        return cls(**data)


@dataclass
class LateFeeWaiver(StorageRecord):
    """Accrued late fee forgiven by staff"""
    loan_id: str
    amount: Decimal
    waived_date: date
    reason: Optional[str] = None

    def __post_init__(self):
        self.amount = to_decimal(self.amount)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LateFeeWaiver':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['waived_date'] = parse_date(data['waived_date'])
        return cls(**data)
