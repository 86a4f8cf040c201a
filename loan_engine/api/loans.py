"""
Loan endpoints
"""

from typing import Optional
from fastapi import APIRouter, HTTPException, Depends, status

from .dependencies import LendingSystem, get_lending_system
from .schemas import (
    CreateLoanRequest, RecordPaymentRequest, AddChargeRequest,
    WaiveLateFeeRequest, CapitalPaymentRequest, SettleLoanRequest
)
from ..amounts import Currency
from ..dates import parse_optional_date
from ..exceptions import (
    LoanEngineError, LoanNotFoundError, PaymentNotFoundError, ChargeNotFoundError
)
from ..models import Payment, LoanCharge
from ..reconciliation import ReconciliationResult


router = APIRouter()

NOT_FOUND_ERRORS = (LoanNotFoundError, PaymentNotFoundError, ChargeNotFoundError)


def _error(e: LoanEngineError) -> HTTPException:
    if isinstance(e, NOT_FOUND_ERRORS):
        return HTTPException(status_code=404, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


def _result_response(result: ReconciliationResult, message: str) -> dict:
    currency = result.loan.currency
    response = {
        "loan": result.loan.to_dict(),
        "installments": [inst.to_dict(currency) for inst in result.installments],
        "charges": [charge.to_dict(currency) for charge in result.charges],
        "late_fee": result.late_fee.to_dict(currency),
        "authoritative": result.authoritative,
        "skipped_payments": result.skipped_payments,
        "message": message
    }
    record = result.record
    if isinstance(record, (Payment, LoanCharge)):
        response["record"] = record.to_dict(currency)
    elif record is not None:
        response["record"] = record.to_dict()
    return response


@router.post("", status_code=status.HTTP_201_CREATED)
def create_loan(
    request: CreateLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Originate a new loan"""
    currency = None
    if request.currency:
        if request.currency not in Currency.__members__:
            raise HTTPException(status_code=400, detail=f"Unsupported currency: {request.currency}")
        currency = Currency[request.currency]

    try:
        loan = system.engine.originate_loan(
            client_id=request.client_id,
            amount=request.amount,
            interest_rate=request.interest_rate,
            payment_frequency=request.payment_frequency,
            amortization_type=request.amortization_type,
            start_date=parse_optional_date(request.start_date),
            term_months=request.term_months,
            first_payment_date=parse_optional_date(request.first_payment_date),
            late_fee_enabled=request.late_fee_enabled,
            late_fee_rate=request.late_fee_rate,
            grace_period_days=request.grace_period_days,
            max_late_fee=request.max_late_fee,
            late_fee_calculation_type=request.late_fee_calculation_type,
            currency=currency
        )
        return {
            "loan_id": loan.id,
            "loan": loan.to_dict(),
            "message": "Loan originated successfully"
        }
    except LoanEngineError as e:
        raise _error(e)


@router.get("")
def list_loans(
    client_id: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """List loans, optionally for one client"""
    loans = system.engine.list_loans(client_id)
    return {"loans": [loan.to_dict() for loan in loans], "count": len(loans)}


@router.get("/{loan_id}")
def get_loan(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Get loan details"""
    try:
        return system.engine.get_loan(loan_id).to_dict()
    except LoanEngineError as e:
        raise _error(e)


@router.get("/{loan_id}/schedule")
def get_schedule(
    loan_id: str,
    as_of: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """Get the installment schedule"""
    try:
        loan = system.engine.get_loan(loan_id)
        installments = system.engine.get_schedule(loan_id, parse_optional_date(as_of))
        return {
            "loan_id": loan_id,
            "monthly_payment": loan.to_dict()["monthly_payment"],
            "installments": [inst.to_dict(loan.currency) for inst in installments]
        }
    except LoanEngineError as e:
        raise _error(e)


@router.get("/{loan_id}/late-fee")
def get_late_fee(
    loan_id: str,
    as_of: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """Compute the late fee as of a date without writing anything"""
    try:
        loan = system.engine.get_loan(loan_id)
        result = system.engine.get_late_fee(loan_id, parse_optional_date(as_of))
        return result.to_dict(loan.currency)
    except LoanEngineError as e:
        raise _error(e)


@router.get("/{loan_id}/payments")
def get_payments(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """List payments in chronological order"""
    try:
        loan = system.engine.get_loan(loan_id)
        payments = system.engine.get_payments(loan_id)
        return {
            "loan_id": loan_id,
            "payments": [p.to_dict(loan.currency) for p in payments],
            "count": len(payments)
        }
    except LoanEngineError as e:
        raise _error(e)


@router.post("/{loan_id}/payments", status_code=status.HTTP_201_CREATED)
def record_payment(
    loan_id: str,
    request: RecordPaymentRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Allocate and record a payment"""
    try:
        result = system.engine.record_payment(
            loan_id,
            request.amount,
            payment_date=parse_optional_date(request.payment_date),
            payment_method=request.payment_method,
            reference_number=request.reference_number,
            notes=request.notes
        )
        return _result_response(result, "Payment recorded successfully")
    except LoanEngineError as e:
        raise _error(e)


@router.delete("/{loan_id}/payments/{payment_id}")
def delete_payment(
    loan_id: str,
    payment_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Delete a payment and reconcile the loan"""
    try:
        result = system.engine.delete_payment(loan_id, payment_id)
        return _result_response(result, "Payment deleted successfully")
    except LoanEngineError as e:
        raise _error(e)


@router.get("/{loan_id}/charges")
def get_charges(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """List added charges"""
    try:
        loan = system.engine.get_loan(loan_id)
        charges = system.engine.get_charges(loan_id)
        return {"loan_id": loan_id, "charges": [c.to_dict(loan.currency) for c in charges]}
    except LoanEngineError as e:
        raise _error(e)


@router.post("/{loan_id}/charges", status_code=status.HTTP_201_CREATED)
def add_charge(
    loan_id: str,
    request: AddChargeRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Add an ad-hoc charge to the loan"""
    try:
        result = system.engine.add_charge(
            loan_id,
            request.amount,
            charge_date=parse_optional_date(request.charge_date),
            description=request.description
        )
        return _result_response(result, "Charge added successfully")
    except LoanEngineError as e:
        raise _error(e)


@router.delete("/{loan_id}/charges/{charge_id}")
def remove_charge(
    loan_id: str,
    charge_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Remove a charge and reconcile the loan"""
    try:
        result = system.engine.remove_charge(loan_id, charge_id)
        return _result_response(result, "Charge removed successfully")
    except LoanEngineError as e:
        raise _error(e)


@router.post("/{loan_id}/late-fee/waive")
def waive_late_fee(
    loan_id: str,
    request: WaiveLateFeeRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Waive all or part of the accrued late fee"""
    try:
        result = system.engine.waive_late_fee(
            loan_id,
            amount=request.amount,
            reason=request.reason,
            waived_date=parse_optional_date(request.waived_date)
        )
        return _result_response(result, "Late fee waived successfully")
    except LoanEngineError as e:
        raise _error(e)


@router.post("/{loan_id}/capital-payments", status_code=status.HTTP_201_CREATED)
def record_capital_payment(
    loan_id: str,
    request: CapitalPaymentRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Record a capital-only paydown"""
    try:
        result = system.engine.record_capital_payment(
            loan_id,
            request.amount,
            payment_date=parse_optional_date(request.payment_date),
            notes=request.notes
        )
        return _result_response(result, "Capital payment recorded successfully")
    except LoanEngineError as e:
        raise _error(e)


@router.post("/{loan_id}/settle")
def settle_loan(
    loan_id: str,
    request: SettleLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Settle the loan"""
    try:
        result = system.engine.settle_loan(
            loan_id,
            settled_date=parse_optional_date(request.settled_date),
            notes=request.notes
        )
        return _result_response(result, "Loan settled successfully")
    except LoanEngineError as e:
        raise _error(e)


@router.post("/{loan_id}/reconcile")
def reconcile_loan(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Replay the loan history and refresh its aggregates"""
    try:
        result = system.engine.refresh_loan(loan_id)
        return _result_response(result, "Loan reconciled successfully")
    except LoanEngineError as e:
        raise _error(e)


@router.get("/{loan_id}/history")
def get_history(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Get the loan history trail with its integrity check"""
    try:
        entries = system.engine.get_history(loan_id)
        integrity = None
        if system.engine.history is not None:
            integrity = system.engine.history.verify_integrity(loan_id)
        return {
            "loan_id": loan_id,
            "entries": [entry.to_dict() for entry in entries],
            "integrity": integrity
        }
    except LoanEngineError as e:
        raise _error(e)
