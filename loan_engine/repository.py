"""
Loan Repository Module

Maps loan entities to and from rows of the table-scoped store. Corrupt rows
are skipped with a warning so one bad record cannot block the whole loan.
"""

from typing import Any, Dict, List, Optional

from .amounts import Currency
from .exceptions import DataError, LoanNotFoundError
from .logging_config import get_logger, log_action
from .models import Loan, Installment, Payment, LoanCharge, CapitalPayment, LateFeeWaiver
from .storage import StorageInterface

logger = get_logger("loan_engine.repository")


class LoanRepository:
    """Reads and writes loan engine records through a StorageInterface"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage

        self.loans_table = "loans"
        self.installments_table = "installments"
        self.payments_table = "payments"
        self.charges_table = "loan_charges"
        self.capital_payments_table = "capital_payments"
        self.waivers_table = "late_fee_waivers"

    # Loans

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.loans_table, loan_id)
        if data is None:
            return None
        return Loan.from_dict(data)

    def require_loan(self, loan_id: str) -> Loan:
        """Load a loan or raise LoanNotFoundError"""
        loan = self.get_loan(loan_id)
        if loan is None:
            raise LoanNotFoundError(loan_id)
        return loan

    def save_loan(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, loan.to_dict())

    def list_loans(self, client_id: Optional[str] = None) -> List[Loan]:
        filters = {'client_id': client_id} if client_id else None
        rows = self.storage.select(self.loans_table, filters, order_by=['created_at'])
        return [Loan.from_dict(row) for row in rows]

    # Installments

    def get_installments(self, loan_id: str) -> List[Installment]:
        """Stored installment rows ordered by number; unreadable rows are skipped"""
        installments = []
        rows = self.storage.select(
            self.installments_table, {'loan_id': loan_id}, order_by=['installment_number']
        )
        for row in rows:
            try:
                installments.append(Installment.from_dict(row))
            except (DataError, KeyError, ValueError) as e:
                log_action(
                    logger, "warning", f"Skipping unreadable installment row: {e}",
                    action="load_installments", resource=f"loan:{loan_id}",
                    extra={"row_id": row.get('id')}
                )
        return installments

    def save_installment(self, installment: Installment, currency: Currency = Currency.DOP) -> None:
        self.storage.save(self.installments_table, installment.id, installment.to_dict(currency))
        installment.persisted = True

    def delete_installment(self, installment: Installment) -> bool:
        deleted = self.storage.delete(self.installments_table, installment.id)
        installment.persisted = False
        return deleted

    # Payments

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        data = self.storage.load(self.payments_table, payment_id)
        if data is None:
            return None
        return Payment.from_dict(data)

    def get_payments(self, loan_id: str) -> List[Payment]:
        """Payments in chronological order (payment_date, then creation time)"""
        payments = []
        rows = self.storage.select(
            self.payments_table, {'loan_id': loan_id}, order_by=['payment_date', 'created_at']
        )
        for row in rows:
            try:
                payments.append(Payment.from_dict(row))
            except (DataError, KeyError, ValueError, TypeError) as e:
                log_action(
                    logger, "warning", f"Skipping unreadable payment row: {e}",
                    action="load_payments", resource=f"loan:{loan_id}",
                    extra={"row_id": row.get('id')}
                )
        return payments

    def insert_payment(self, payment: Payment, currency: Currency = Currency.DOP) -> None:
        self.storage.insert(self.payments_table, payment.id, payment.to_dict(currency))

    def delete_payment(self, payment_id: str) -> bool:
        return self.storage.delete(self.payments_table, payment_id)

    # Charges

    def get_charge(self, charge_id: str) -> Optional[LoanCharge]:
        data = self.storage.load(self.charges_table, charge_id)
        if data is None:
            return None
        return LoanCharge.from_dict(data)

    def get_charges(self, loan_id: str) -> List[LoanCharge]:
        rows = self.storage.select(
            self.charges_table, {'loan_id': loan_id}, order_by=['charge_date', 'created_at']
        )
        return [LoanCharge.from_dict(row) for row in rows]

    def save_charge(self, charge: LoanCharge, currency: Currency = Currency.DOP) -> None:
        self.storage.save(self.charges_table, charge.id, charge.to_dict(currency))

    def delete_charge(self, charge_id: str) -> bool:
        return self.storage.delete(self.charges_table, charge_id)

    # Capital payments and waivers

    def get_capital_payments(self, loan_id: str) -> List[CapitalPayment]:
        rows = self.storage.select(
            self.capital_payments_table, {'loan_id': loan_id}, order_by=['payment_date', 'created_at']
        )
        return [CapitalPayment.from_dict(row) for row in rows]

    def insert_capital_payment(self, capital_payment: CapitalPayment) -> None:
        self.storage.insert(self.capital_payments_table, capital_payment.id, capital_payment.to_dict())

    def get_waivers(self, loan_id: str) -> List[LateFeeWaiver]:
        rows = self.storage.select(
            self.waivers_table, {'loan_id': loan_id}, order_by=['waived_date', 'created_at']
        )
        return [LateFeeWaiver.from_dict(row) for row in rows]

    def insert_waiver(self, waiver: LateFeeWaiver) -> None:
        self.storage.insert(self.waivers_table, waiver.id, waiver.to_dict())

    # Row snapshots

    def snapshot_rows(self, loan_id: str, payment_id: Optional[str] = None) -> Dict[str, List[Dict[str, Any]]]:
        """Raw loan, installment and charge rows of a loan (plus one payment row)"""
        rows: Dict[str, List[Dict[str, Any]]] = {
            self.loans_table: [],
            self.installments_table: self.storage.select(self.installments_table, {'loan_id': loan_id}),
            self.charges_table: self.storage.select(self.charges_table, {'loan_id': loan_id}),
            self.payments_table: []
        }
        loan_row = self.storage.load(self.loans_table, loan_id)
        if loan_row is not None:
            rows[self.loans_table].append(loan_row)
        if payment_id:
            payment_row = self.storage.load(self.payments_table, payment_id)
            if payment_row is not None:
                rows[self.payments_table].append(payment_row)
        return rows

    def restore_rows(self, loan_id: str, rows: Dict[str, List[Dict[str, Any]]]) -> None:
        """Put back rows taken by snapshot_rows, dropping installment and charge rows written since"""
        self.storage.delete_where(self.installments_table, {'loan_id': loan_id})
        self.storage.delete_where(self.charges_table, {'loan_id': loan_id})
        for table, table_rows in rows.items():
            for row in table_rows:
                self.storage.save(table, row['id'], row)
