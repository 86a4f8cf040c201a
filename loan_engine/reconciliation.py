"""
Reconciliation Engine Module

Sole writer of the derived loan aggregates (remaining balance, next payment
date, current late fee) and of installment paid/partial/settled state.
Insertions are applied incrementally; deletions and manual balance events
replay the surviving payment history from a reset schedule. Every operation
runs under a per-loan lock; storage transactions never wait on the system of
record.
"""

import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .aggregates import AggregateReader, LoanAggregates
from .allocation import (
    allocate_payment, anchored, apply_pools, credit_late_fee, ordered_obligations,
    visible_charges, visible_installments
)
from .amounts import ZERO, CENT, Currency, quantize, to_decimal, total
from .config import LoanEngineConfig, get_config
from .dates import add_periods, today_local
from .exceptions import (
    LoanEngineError, AllocationError, OverpaymentError, ConsistencyError,
    PaymentNotFoundError, ChargeNotFoundError
)
from .history import LoanHistory, LoanHistoryEntry, LoanHistoryEventType
from .late_fees import LateFeeResult, compute_late_fee, late_fee_breakdown
from .logging_config import get_logger, log_action
from .models import (
    Loan, Installment, Payment, LoanCharge, CapitalPayment, LateFeeWaiver,
    LoanStatus, AmortizationType, PaymentFrequency
)
from .repository import LoanRepository
from .schedule import generate_schedule, validate_terms, periodic_payment, first_due_date
from .storage import StorageInterface, StorageRecord


class LoanLockRegistry:
    """
    Per-loan re-entrant locks; different loans never block each other.
    An entry lives only while some thread holds or waits for it.
    """

    def __init__(self):
        self._locks: Dict[str, List[Any]] = {}     # loan_id -> [lock, holders]
        self._guard = threading.Lock()

    def active(self) -> int:
        """Loans currently held or waited on"""
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, loan_id: str):
        """Critical section for one loan"""
        with self._guard:
            entry = self._locks.setdefault(loan_id, [threading.RLock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[loan_id]


class ChangeKind(Enum):
    """Kinds of payment change the engine reconciles"""
    INSERTED = "inserted"
    DELETED = "deleted"


@dataclass
class PaymentChange:
    """A payment insertion (tender details) or deletion (payment id)"""
    kind: ChangeKind
    payment_id: Optional[str] = None
    amount: Optional[Decimal] = None
    payment_date: Optional[date] = None
    payment_method: str = "cash"
    reference_number: Optional[str] = None
    notes: Optional[str] = None

    @classmethod
    def inserted(cls, amount, payment_date: Optional[date] = None, **details) -> 'PaymentChange':
        return cls(kind=ChangeKind.INSERTED, amount=to_decimal(amount),
                   payment_date=payment_date, **details)

    @classmethod
    def deleted(cls, payment_id: str) -> 'PaymentChange':
        return cls(kind=ChangeKind.DELETED, payment_id=payment_id)


@dataclass
class ReconciliationResult:
    """Loan and installment state written by one engine operation"""
    loan: Loan
    installments: List[Installment]
    late_fee: LateFeeResult
    charges: List[LoanCharge] = field(default_factory=list)
    record: Optional[StorageRecord] = None   # payment, charge, waiver or capital payment involved
    authoritative: bool = False              # aggregates taken from the system of record
    skipped_payments: List[str] = field(default_factory=list)

    @property
    def payment(self) -> Optional[Payment]:
        return self.record if isinstance(self.record, Payment) else None


@dataclass
class _Recomputed:
    installments: List[Installment]
    charges: List[LoanCharge]
    applied: List[Payment]
    skipped: List[str]
    balance: Decimal


class ReconciliationEngine:
    """
    Orchestrates payment insertion/deletion and the manual balance events
    (charges, late-fee waivers, capital paydowns, settlement)
    """

    def __init__(
        self,
        storage: StorageInterface,
        config: Optional[LoanEngineConfig] = None,
        history: Optional[LoanHistory] = None,
        aggregate_reader: Optional[AggregateReader] = None,
        today_provider: Optional[Callable[[], date]] = None,
        sleep: Callable[[float], None] = time.sleep,
        locks: Optional[LoanLockRegistry] = None
    ):
        self.storage = storage
        self.config = config or get_config()
        self.repository = LoanRepository(storage)
        self.history = history
        if self.history is None and self.config.enable_history:
            self.history = LoanHistory(storage)
        self.aggregate_reader = aggregate_reader
        self.locks = locks or LoanLockRegistry()
        self._today_provider = today_provider
        self._sleep = sleep

        self.tolerance_ratio = to_decimal(self.config.paid_tolerance_ratio)
        self.sum_tolerance = to_decimal(self.config.payment_sum_tolerance)
        self.logger = get_logger("loan_engine.reconciliation")

    def today(self) -> date:
        """Current date in the local calendar"""
        if self._today_provider is not None:
            return self._today_provider()
        return today_local(self.config.local_utc_offset_hours)

    # Origination

    def originate_loan(
        self,
        client_id: str,
        amount,
        interest_rate,
        payment_frequency=PaymentFrequency.MONTHLY,
        amortization_type=AmortizationType.FIXED,
        start_date: Optional[date] = None,
        term_months: Optional[int] = None,
        first_payment_date: Optional[date] = None,
        late_fee_enabled: Optional[bool] = None,
        late_fee_rate=None,
        grace_period_days: Optional[int] = None,
        max_late_fee=None,
        late_fee_calculation_type=None,
        currency: Optional[Currency] = None,
        user_id: Optional[str] = None
    ) -> Loan:
        """
        Create a loan and its initial schedule

        Late-fee fields left as None take the configured global default.

        Raises:
            ScheduleError: If the terms cannot produce a schedule
            LateFeePolicyError: If the late-fee policy is invalid
        """
        now = datetime.now(timezone.utc)
        cfg = self.config

        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            client_id=client_id,
            amount=amount,
            interest_rate=interest_rate,
            payment_frequency=payment_frequency,
            amortization_type=amortization_type,
            start_date=start_date or self.today(),
            term_months=term_months,
            first_payment_date=first_payment_date,
            late_fee_enabled=cfg.default_late_fee_enabled if late_fee_enabled is None else late_fee_enabled,
            late_fee_rate=cfg.default_late_fee_rate if late_fee_rate is None else late_fee_rate,
            grace_period_days=cfg.default_grace_period_days if grace_period_days is None else grace_period_days,
            max_late_fee=cfg.default_max_late_fee if max_late_fee is None else max_late_fee,
            late_fee_calculation_type=(cfg.default_late_fee_calculation_type
                                       if late_fee_calculation_type is None
                                       else late_fee_calculation_type),
            currency=currency or Currency[cfg.currency]
        )

        # Fail fast before anything is written
        validate_terms(loan)
        loan.late_fee_policy.validate()

        loan.monthly_payment = periodic_payment(loan)
        if loan.is_indefinite:
            schedule = generate_schedule(loan, as_of=loan.start_date)
        else:
            schedule = generate_schedule(loan)
        loan.next_payment_date = schedule[0].due_date

        with self.locks.hold(loan.id):
            with self.storage.atomic():
                self._persist_installments(loan, schedule)
                self.repository.save_loan(loan)
                self._record_history(
                    loan.id, LoanHistoryEventType.LOAN_ORIGINATED, {}, self._snapshot(loan),
                    f"Loan originated for {quantize(loan.amount, loan.currency)}", user_id
                )

        log_action(
            self.logger, "info", "Loan originated",
            user_id=user_id, action="originate_loan", resource=f"loan:{loan.id}",
            extra={
                "client_id": client_id,
                "amount": str(quantize(loan.amount, loan.currency)),
                "amortization_type": loan.amortization_type.value,
                "installments": len(schedule)
            }
        )
        return loan

    # Payment changes

    def reconcile_after_payment_change(self, loan_id: str, change: PaymentChange) -> ReconciliationResult:
        """
        Apply a payment insertion or deletion and rewrite the loan aggregates

        Args:
            loan_id: Loan the payment belongs to
            change: The insertion (tender) or deletion (payment id)

        Returns:
            ReconciliationResult with the updated loan and installments
        """
        if change.kind == ChangeKind.INSERTED:
            if change.amount is None:
                raise AllocationError("A payment insertion needs an amount")
            return self.record_payment(
                loan_id, change.amount, change.payment_date,
                payment_method=change.payment_method,
                reference_number=change.reference_number,
                notes=change.notes
            )
        if not change.payment_id:
            raise PaymentNotFoundError("")
        return self.delete_payment(loan_id, change.payment_id)

    def record_payment(
        self,
        loan_id: str,
        amount,
        payment_date: Optional[date] = None,
        payment_method: str = "cash",
        reference_number: Optional[str] = None,
        notes: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> ReconciliationResult:
        """
        Allocate and record an incoming payment

        Raises:
            LoanNotFoundError: If the loan does not exist
            AllocationError: If the loan is paid or the amount is not positive
            OverpaymentError: If the amount exceeds what the loan owes
        """
        with self.locks.hold(loan_id):
            with self.storage.atomic():
                loan = self.repository.require_loan(loan_id)
                if loan.is_paid:
                    raise AllocationError(f"Loan {loan_id} is already paid")

                today = self.today()
                payment_date = payment_date or today
                installments = self._working_schedule(loan, max(today, payment_date))
                charges = self.repository.get_charges(loan_id)

                reachable = visible_installments(loan, installments, payment_date)
                breakdown = late_fee_breakdown(loan.late_fee_policy, reachable, payment_date)

                result = allocate_payment(
                    loan, installments, breakdown, amount, payment_date,
                    charges=charges,
                    payment_method=payment_method,
                    reference_number=reference_number,
                    notes=notes,
                    tolerance_ratio=self.tolerance_ratio
                )
                payment = result.payment
                before = self._snapshot(loan)

                self.repository.insert_payment(payment, loan.currency)
                self._persist_installments(loan, result.installments)
                for charge in result.charges:
                    self.repository.save_charge(charge, loan.currency)

                balance = loan.remaining_balance - payment.principal_amount
                next_date = self._next_payment_date(loan, result.installments, result.charges)
                late_fee = self._write_aggregates(
                    loan, result.installments, self._clamp_balance(loan, balance), next_date, today
                )

                self._record_history(
                    loan_id, LoanHistoryEventType.PAYMENT_RECORDED, before, self._snapshot(loan),
                    f"Payment of {quantize(payment.amount, loan.currency)} recorded", user_id
                )

        log_action(
            self.logger, "info", "Payment recorded",
            user_id=user_id, action="record_payment", resource=f"loan:{loan_id}",
            extra={
                "payment_id": payment.id,
                "amount": str(quantize(payment.amount, loan.currency)),
                "late_fee": str(quantize(payment.late_fee, loan.currency)),
                "interest": str(quantize(payment.interest_amount, loan.currency)),
                "principal": str(quantize(payment.principal_amount, loan.currency)),
                "installments": payment.installment_numbers
            }
        )
        return ReconciliationResult(
            loan=loan,
            installments=result.installments,
            late_fee=late_fee,
            charges=result.charges,
            record=payment
        )

    def delete_payment(self, loan_id: str, payment_id: str, user_id: Optional[str] = None) -> ReconciliationResult:
        """
        Delete a payment and rebuild the loan state from the surviving ones

        The deletion and replay commit first so the system of record can see
        them; the authoritative read then happens outside any storage
        transaction and its values are written in a second one.

        Raises:
            LoanNotFoundError: If the loan does not exist
            PaymentNotFoundError: If the payment does not belong to the loan
            ConsistencyError: If authoritative aggregates are required but unavailable
        """
        with self.locks.hold(loan_id):
            with self.storage.atomic():
                loan = self.repository.require_loan(loan_id)
                payment = self.repository.get_payment(payment_id)
                if payment is None or payment.loan_id != loan_id:
                    raise PaymentNotFoundError(payment_id)

                before = self._snapshot(loan)
                rows = self.repository.snapshot_rows(loan_id, payment_id)
                self.repository.delete_payment(payment_id)

                state = self._recompute(loan)
                next_date = self._next_payment_date(loan, state.installments, state.charges)
                self._persist_state(loan, state)
                late_fee = self._write_aggregates(loan, state.installments, state.balance, next_date, self.today())

            aggregates = None
            if self.aggregate_reader is not None:
                try:
                    aggregates = self._read_authoritative(loan_id)
                except Exception:
                    with self.storage.atomic():
                        self.repository.restore_rows(loan_id, rows)
                    log_action(
                        self.logger, "warning", "Payment deletion rolled back",
                        user_id=user_id, action="delete_payment", resource=f"loan:{loan_id}",
                        extra={"payment_id": payment_id}
                    )
                    raise

            with self.storage.atomic():
                if aggregates is not None:
                    balance, authoritative_next, fee_installments = self._prefer_authoritative(
                        loan, aggregates, state.balance, next_date, state.installments
                    )
                    late_fee = self._write_aggregates(
                        loan, fee_installments, balance, authoritative_next, self.today()
                    )
                self._record_history(
                    loan_id, LoanHistoryEventType.PAYMENT_DELETED, before, self._snapshot(loan),
                    f"Payment of {quantize(payment.amount, loan.currency)} deleted", user_id
                )

        log_action(
            self.logger, "info", "Payment deleted and loan replayed",
            user_id=user_id, action="delete_payment", resource=f"loan:{loan_id}",
            extra={
                "payment_id": payment_id,
                "surviving_payments": len(state.applied),
                "skipped_payments": state.skipped,
                "authoritative": aggregates is not None,
                "remaining_balance": str(quantize(loan.remaining_balance, loan.currency))
            }
        )
        return ReconciliationResult(
            loan=loan,
            installments=state.installments,
            late_fee=late_fee,
            charges=state.charges,
            record=payment,
            authoritative=aggregates is not None,
            skipped_payments=state.skipped
        )

    def refresh_loan(self, loan_id: str, user_id: Optional[str] = None) -> ReconciliationResult:
        """Replay the loan's history and refresh every aggregate (e.g. daily late-fee refresh)"""
        with self.locks.hold(loan_id):
            with self.storage.atomic():
                loan = self.repository.require_loan(loan_id)
                before = self._snapshot(loan)
                state = self._recompute(loan)
                late_fee = self._apply_recomputed(loan, state)
                after = self._snapshot(loan)
                if after != before:
                    self._record_history(
                        loan_id, LoanHistoryEventType.LOAN_RECONCILED, before, after,
                        "Loan aggregates refreshed", user_id
                    )

        return ReconciliationResult(
            loan=loan,
            installments=state.installments,
            late_fee=late_fee,
            charges=state.charges,
            skipped_payments=state.skipped
        )

    # Manual balance events

    def add_charge(
        self,
        loan_id: str,
        amount,
        charge_date: Optional[date] = None,
        description: str = "",
        user_id: Optional[str] = None
    ) -> ReconciliationResult:
        """Attach an ad-hoc charge; it raises the balance and becomes an obligation"""
        amount = to_decimal(amount)
        if amount <= ZERO:
            raise LoanEngineError(f"Charge amount must be positive, got {amount}")

        with self.locks.hold(loan_id):
            with self.storage.atomic():
                loan = self.repository.require_loan(loan_id)
                if loan.settled_date is not None:
                    raise LoanEngineError(f"Loan {loan_id} is settled; charges cannot be added")

                now = datetime.now(timezone.utc)
                charge = LoanCharge(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    loan_id=loan_id,
                    amount=quantize(amount, loan.currency),
                    charge_date=charge_date or self.today(),
                    description=description
                )
                # Running balance already includes every prior charge
                balance_before = loan.remaining_balance
                before = self._snapshot(loan)

                self.repository.save_charge(charge, loan.currency)
                state = self._recompute(loan)
                late_fee = self._apply_recomputed(loan, state)

                after = self._snapshot(loan)
                before['remaining_balance'] = str(quantize(balance_before, loan.currency))
                after['remaining_balance'] = str(quantize(balance_before + charge.amount, loan.currency))
                after['charge_amount'] = str(charge.amount)
                self._record_history(
                    loan_id, LoanHistoryEventType.CHARGE_ADDED, before, after,
                    description or f"Charge of {charge.amount} added", user_id
                )

        log_action(
            self.logger, "info", "Charge added",
            user_id=user_id, action="add_charge", resource=f"loan:{loan_id}",
            extra={"charge_id": charge.id, "amount": str(charge.amount)}
        )
        return ReconciliationResult(
            loan=loan, installments=state.installments, late_fee=late_fee,
            charges=state.charges, record=charge, skipped_payments=state.skipped
        )

    def remove_charge(self, loan_id: str, charge_id: str, user_id: Optional[str] = None) -> ReconciliationResult:
        """Remove a charge and replay payments without it"""
        with self.locks.hold(loan_id):
            with self.storage.atomic():
                loan = self.repository.require_loan(loan_id)
                charge = self.repository.get_charge(charge_id)
                if charge is None or charge.loan_id != loan_id:
                    raise ChargeNotFoundError(charge_id)

                balance_before = loan.remaining_balance
                before = self._snapshot(loan)
                self.repository.delete_charge(charge_id)
                state = self._recompute(loan)
                late_fee = self._apply_recomputed(loan, state)

                after = self._snapshot(loan)
                before['remaining_balance'] = str(quantize(balance_before, loan.currency))
                after['charge_amount'] = str(charge.amount)
                self._record_history(
                    loan_id, LoanHistoryEventType.CHARGE_REMOVED, before, after,
                    f"Charge of {charge.amount} removed", user_id
                )

        log_action(
            self.logger, "info", "Charge removed",
            user_id=user_id, action="remove_charge", resource=f"loan:{loan_id}",
            extra={"charge_id": charge_id, "amount": str(charge.amount)}
        )
        return ReconciliationResult(
            loan=loan, installments=state.installments, late_fee=late_fee,
            charges=state.charges, record=charge, skipped_payments=state.skipped
        )

    def waive_late_fee(
        self,
        loan_id: str,
        amount=None,
        reason: Optional[str] = None,
        waived_date: Optional[date] = None,
        user_id: Optional[str] = None
    ) -> ReconciliationResult:
        """
        Forgive accrued late fee, oldest installment first

        Args:
            loan_id: Loan to waive on
            amount: Amount to waive; None waives everything outstanding
            reason: Why the fee was waived
            waived_date: Date of the waiver (defaults to today)
            user_id: Staff member granting the waiver

        Raises:
            AllocationError: If there is nothing to waive or the amount exceeds the fee
        """
        with self.locks.hold(loan_id):
            with self.storage.atomic():
                loan = self.repository.require_loan(loan_id)
                waived_date = waived_date or self.today()

                current = self._recompute(loan)
                reachable = visible_installments(loan, current.installments, waived_date)
                outstanding = late_fee_breakdown(loan.late_fee_policy, reachable, waived_date).total

                amount = outstanding if amount is None else to_decimal(amount)
                if amount <= ZERO:
                    raise AllocationError(f"Loan {loan_id} has no late fee to waive")
                if amount > outstanding + CENT:
                    raise OverpaymentError(amount, quantize(outstanding, loan.currency))

                now = datetime.now(timezone.utc)
                waiver = LateFeeWaiver(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    loan_id=loan_id,
                    amount=quantize(amount, loan.currency),
                    waived_date=waived_date,
                    reason=reason
                )
                before = self._snapshot(loan)
                self.repository.insert_waiver(waiver)

                state = self._recompute(loan)
                late_fee = self._apply_recomputed(loan, state)

                after = self._snapshot(loan)
                after['waived_amount'] = str(waiver.amount)
                self._record_history(
                    loan_id, LoanHistoryEventType.LATE_FEE_WAIVED, before, after,
                    reason or f"Late fee of {waiver.amount} waived", user_id
                )

        log_action(
            self.logger, "info", "Late fee waived",
            user_id=user_id, action="waive_late_fee", resource=f"loan:{loan_id}",
            extra={"waiver_id": waiver.id, "amount": str(waiver.amount)}
        )
        return ReconciliationResult(
            loan=loan, installments=state.installments, late_fee=late_fee,
            charges=state.charges, record=waiver, skipped_payments=state.skipped
        )

    def record_capital_payment(
        self,
        loan_id: str,
        amount,
        payment_date: Optional[date] = None,
        notes: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> ReconciliationResult:
        """Capital-only paydown: lowers the balance without touching installments"""
        amount = to_decimal(amount)
        if amount <= ZERO:
            raise AllocationError(f"Capital payment must be positive, got {amount}")

        with self.locks.hold(loan_id):
            with self.storage.atomic():
                loan = self.repository.require_loan(loan_id)
                if loan.is_paid:
                    raise AllocationError(f"Loan {loan_id} is already paid")
                if amount > loan.remaining_balance + CENT:
                    raise OverpaymentError(amount, loan.remaining_balance)

                now = datetime.now(timezone.utc)
                capital_payment = CapitalPayment(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    loan_id=loan_id,
                    amount=quantize(amount, loan.currency),
                    payment_date=payment_date or self.today(),
                    notes=notes
                )
                before = self._snapshot(loan)
                self.repository.insert_capital_payment(capital_payment)

                state = self._recompute(loan)
                late_fee = self._apply_recomputed(loan, state)

                after = self._snapshot(loan)
                after['capital_amount'] = str(capital_payment.amount)
                self._record_history(
                    loan_id, LoanHistoryEventType.CAPITAL_PAYMENT_RECORDED, before, after,
                    notes or f"Capital payment of {capital_payment.amount}", user_id
                )

        log_action(
            self.logger, "info", "Capital payment recorded",
            user_id=user_id, action="record_capital_payment", resource=f"loan:{loan_id}",
            extra={"capital_payment_id": capital_payment.id, "amount": str(capital_payment.amount)}
        )
        return ReconciliationResult(
            loan=loan, installments=state.installments, late_fee=late_fee,
            charges=state.charges, record=capital_payment, skipped_payments=state.skipped
        )

    def settle_loan(
        self,
        loan_id: str,
        settled_date: Optional[date] = None,
        notes: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> ReconciliationResult:
        """
        Settle a loan: every outstanding installment becomes settled, the
        balance drops to zero and late-fee accrual stops
        """
        with self.locks.hold(loan_id):
            with self.storage.atomic():
                loan = self.repository.require_loan(loan_id)
                if loan.settled_date is not None:
                    raise LoanEngineError(f"Loan {loan_id} was already settled on {loan.settled_date}")

                before = self._snapshot(loan)
                loan.settled_date = settled_date or self.today()
                state = self._recompute(loan)
                late_fee = self._apply_recomputed(loan, state)

                self._record_history(
                    loan_id, LoanHistoryEventType.LOAN_SETTLED, before, self._snapshot(loan),
                    notes or "Loan settled", user_id
                )

        log_action(
            self.logger, "info", "Loan settled",
            user_id=user_id, action="settle_loan", resource=f"loan:{loan_id}",
            extra={"settled_date": loan.settled_date.isoformat()}
        )
        return ReconciliationResult(
            loan=loan, installments=state.installments, late_fee=late_fee,
            charges=state.charges, skipped_payments=state.skipped
        )

    # Reads

    def get_loan(self, loan_id: str) -> Loan:
        return self.repository.require_loan(loan_id)

    def list_loans(self, client_id: Optional[str] = None) -> List[Loan]:
        return self.repository.list_loans(client_id)

    def get_schedule(self, loan_id: str, as_of: Optional[date] = None) -> List[Installment]:
        """Installments as stored, with indefinite periods derived up to `as_of`"""
        loan = self.repository.require_loan(loan_id)
        return self._working_schedule(loan, as_of or self.today())

    def get_late_fee(self, loan_id: str, as_of: Optional[date] = None) -> LateFeeResult:
        """Late fee as of a date, computed from stored installment state without writing"""
        loan = self.repository.require_loan(loan_id)
        as_of = as_of or self.today()
        return compute_late_fee(loan, self._working_schedule(loan, as_of), as_of)

    def get_payments(self, loan_id: str) -> List[Payment]:
        self.repository.require_loan(loan_id)
        return self.repository.get_payments(loan_id)

    def get_charges(self, loan_id: str) -> List[LoanCharge]:
        self.repository.require_loan(loan_id)
        return self.repository.get_charges(loan_id)

    def get_history(self, loan_id: str) -> List[LoanHistoryEntry]:
        self.repository.require_loan(loan_id)
        if self.history is None:
            return []
        return self.history.get_entries(loan_id)

    # Internals

    def _horizon(self, loan: Loan, dates: List[date]) -> date:
        """Last date indefinite installments must be derived for"""
        if loan.settled_date is not None:
            return max([loan.settled_date] + dates)
        return max([self.today()] + dates)

    def _working_schedule(self, loan: Loan, as_of: date) -> List[Installment]:
        persisted = self.repository.get_installments(loan.id)
        if loan.is_indefinite:
            return generate_schedule(loan, as_of=as_of, persisted=persisted)
        return generate_schedule(loan, persisted=persisted)

    def _replay(
        self,
        loan: Loan,
        installments: List[Installment],
        charges: List[LoanCharge],
        payments: List[Payment],
        waivers: List[LateFeeWaiver]
    ) -> Tuple[List[Payment], List[str]]:
        """
        Reset every obligation and re-apply payments and waivers in
        chronological order. Returns (applied payments, skipped payment ids).
        """
        for inst in installments:
            inst.reset_payments()
        for charge in charges:
            charge.reset_payments()

        policy = loan.late_fee_policy
        events = [(p.payment_date, p.created_at, p) for p in payments]
        events += [(w.waived_date, w.created_at, w) for w in waivers]
        events.sort(key=lambda e: (e[0], e[1]))

        applied: List[Payment] = []
        skipped: List[str] = []
        for event_date, _, record in events:
            reachable = visible_installments(loan, installments, event_date)

            if isinstance(record, LateFeeWaiver):
                breakdown = late_fee_breakdown(policy, reachable, event_date)
                credit_late_fee(reachable, breakdown, record.amount, 'late_fee_waived')
                continue

            if not record.is_consistent(self.sum_tolerance):
                log_action(
                    self.logger, "warning",
                    "Payment skipped from replay: components do not add up to the amount",
                    action="replay_payments", resource=f"loan:{loan.id}",
                    extra={
                        "payment_id": record.id,
                        "amount": str(record.amount),
                        "components_total": str(record.components_total)
                    }
                )
                skipped.append(record.id)
                continue

            if record.late_fee > ZERO:
                breakdown = late_fee_breakdown(policy, reachable, event_date)
                credit_late_fee(reachable, breakdown, record.late_fee)
            obligations = anchored(
                ordered_obligations(reachable, visible_charges(charges, event_date)),
                record.due_date
            )
            apply_pools(obligations, record.interest_amount, record.principal_amount,
                        event_date, self.tolerance_ratio)
            applied.append(record)

        if loan.settled_date is not None:
            for inst in installments:
                if not inst.is_satisfied:
                    inst.is_settled = True

        return applied, skipped

    def _recompute(self, loan: Loan) -> _Recomputed:
        """Rebuild installment/charge state and the balance from the stored ledger"""
        payments = self.repository.get_payments(loan.id)
        waivers = self.repository.get_waivers(loan.id)
        horizon = self._horizon(
            loan, [p.payment_date for p in payments] + [w.waived_date for w in waivers]
        )

        installments = self._working_schedule(loan, horizon)
        charges = self.repository.get_charges(loan.id)
        applied, skipped = self._replay(loan, installments, charges, payments, waivers)

        capital = self.repository.get_capital_payments(loan.id)
        balance = (loan.amount
                   + total(c.amount for c in charges)
                   - total(p.principal_amount for p in applied)
                   - total(c.amount for c in capital))

        return _Recomputed(
            installments=installments,
            charges=charges,
            applied=applied,
            skipped=skipped,
            balance=self._clamp_balance(loan, balance)
        )

    def _apply_recomputed(self, loan: Loan, state: _Recomputed) -> LateFeeResult:
        self._persist_state(loan, state)
        next_date = self._next_payment_date(loan, state.installments, state.charges)
        return self._write_aggregates(loan, state.installments, state.balance, next_date, self.today())

    def _clamp_balance(self, loan: Loan, balance: Decimal) -> Decimal:
        if balance < ZERO:
            log_action(
                self.logger, "warning", "Computed balance below zero, clamped to zero",
                action="reconcile", resource=f"loan:{loan.id}",
                extra={"computed_balance": str(balance)}
            )
            return ZERO
        return balance

    def _next_payment_date(
        self,
        loan: Loan,
        installments: List[Installment],
        charges: List[LoanCharge]
    ) -> Optional[date]:
        """Due date of the first unsatisfied installment (or charge)"""
        pending = next(
            (o for o in ordered_obligations(installments) if not o.is_satisfied), None
        )
        if pending is not None:
            return pending.due_date

        pending_charge = next((c for c in ordered_obligations([], charges) if not c.is_satisfied), None)
        if pending_charge is not None:
            return pending_charge.due_date

        if loan.is_indefinite and installments:
            last_number = max(i.installment_number for i in installments)
            return add_periods(first_due_date(loan), loan.payment_frequency, last_number)
        return None

    def _read_authoritative(self, loan_id: str) -> Optional[LoanAggregates]:
        """
        Read the system of record after the settling delay, with bounded
        retries. None means the client estimate has to be used.
        """
        if self.aggregate_reader is None:
            return None

        if self.config.aggregate_settle_delay_seconds > 0:
            self._sleep(self.config.aggregate_settle_delay_seconds)

        attempts = max(1, self.config.aggregate_read_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return self.aggregate_reader.read(loan_id)
            except ValueError as e:
                log_action(
                    self.logger, "warning", f"Authoritative aggregate read failed: {e}",
                    action="read_aggregates", resource=f"loan:{loan_id}",
                    extra={"attempt": attempt, "attempts": attempts}
                )
                if attempt < attempts:
                    self._sleep(self.config.aggregate_read_backoff_seconds * attempt)

        if self.config.require_authoritative_aggregates:
            raise ConsistencyError(
                f"Authoritative aggregates for loan {loan_id} unavailable after {attempts} attempts"
            )

        log_action(
            self.logger, "warning",
            "Using client-computed aggregates; they may diverge from the system of record",
            action="read_aggregates", resource=f"loan:{loan_id}",
            extra={"attempts": attempts}
        )
        return None

    def _prefer_authoritative(
        self,
        loan: Loan,
        aggregates: LoanAggregates,
        balance: Decimal,
        next_date: Optional[date],
        installments: List[Installment]
    ) -> Tuple[Decimal, Optional[date], List[Installment]]:
        """Authoritative values win over the replay estimate wherever present"""
        fee_installments = installments
        discrepancies: Dict[str, Any] = {}

        if aggregates.remaining_balance is not None:
            if quantize(aggregates.remaining_balance, loan.currency) != quantize(balance, loan.currency):
                discrepancies['remaining_balance'] = {
                    'estimated': str(quantize(balance, loan.currency)),
                    'authoritative': str(quantize(aggregates.remaining_balance, loan.currency))
                }
            balance = self._clamp_balance(loan, aggregates.remaining_balance)

        if aggregates.next_payment_date is not None:
            authoritative_next = aggregates.next_payment_date
            if authoritative_next != next_date:
                discrepancies['next_payment_date'] = {
                    'estimated': next_date.isoformat() if next_date else None,
                    'authoritative': authoritative_next.isoformat()
                }
            if next_date is not None and authoritative_next > next_date:
                # Periods before the authoritative next date count as covered
                fee_installments = [
                    i for i in installments
                    if i.due_date is None or i.due_date >= authoritative_next
                ]
            next_date = authoritative_next

        if discrepancies:
            log_action(
                self.logger, "info", "Authoritative aggregates differ from replay estimate",
                action="read_aggregates", resource=f"loan:{loan.id}",
                extra=discrepancies
            )
        return balance, next_date, fee_installments

    def _persist_state(self, loan: Loan, state: _Recomputed) -> None:
        self._persist_installments(loan, state.installments)
        for charge in state.charges:
            self.repository.save_charge(charge, loan.currency)

    def _persist_installments(self, loan: Loan, installments: List[Installment]) -> None:
        """
        Fixed loans store every installment. Indefinite loans store the first
        one plus any with payment activity or settlement; other stored rows
        are dropped so they are derived again.
        """
        for inst in installments:
            keep = (not loan.is_indefinite
                    or inst.installment_number == 1
                    or inst.has_activity)
            if keep:
                self.repository.save_installment(inst, loan.currency)
            elif inst.persisted:
                self.repository.delete_installment(inst)

        if installments:
            loan.last_installment_number = max(
                loan.last_installment_number,
                max(i.installment_number for i in installments)
            )

    def _write_aggregates(
        self,
        loan: Loan,
        fee_installments: List[Installment],
        balance: Decimal,
        next_date: Optional[date],
        today: date
    ) -> LateFeeResult:
        """Write balance, status and next date; the late fee goes last"""
        if loan.settled_date is not None:
            balance = ZERO

        loan.remaining_balance = balance
        if quantize(balance, loan.currency) == ZERO:
            loan.status = LoanStatus.PAID
        else:
            loan.status = LoanStatus.ACTIVE
        loan.next_payment_date = None if loan.is_paid else next_date

        late_fee = compute_late_fee(loan, fee_installments, today)
        loan.current_late_fee = late_fee.total
        loan.last_late_fee_calculation = today
        loan.updated_at = datetime.now(timezone.utc)
        self.repository.save_loan(loan)
        return late_fee

    def _snapshot(self, loan: Loan) -> Dict[str, Any]:
        return {
            'remaining_balance': str(quantize(loan.remaining_balance, loan.currency)),
            'next_payment_date': loan.next_payment_date.isoformat() if loan.next_payment_date else None,
            'current_late_fee': str(quantize(loan.current_late_fee, loan.currency)),
            'status': loan.status.value
        }

    def _record_history(
        self,
        loan_id: str,
        event_type: LoanHistoryEventType,
        old_values: Dict[str, Any],
        new_values: Dict[str, Any],
        description: str,
        user_id: Optional[str]
    ) -> None:
        if self.history is not None:
            self.history.record(loan_id, event_type, old_values, new_values, description, user_id)
