"""
Engine Exceptions

Typed failures raised by the loan engine so callers can present an
actionable message instead of a generic error.
"""


class LoanEngineError(ValueError):
    """Base class for all loan engine failures"""
    pass


class LateFeePolicyError(LoanEngineError):
    """Invalid late-fee policy (negative rate, unknown calculation type, ...)"""
    pass


class ScheduleError(LoanEngineError):
    """Origination parameters cannot produce a schedule"""
    pass


class AllocationError(LoanEngineError):
    """A tendered amount cannot be allocated against the loan"""
    pass


class OverpaymentError(AllocationError):
    """Tendered amount exceeds everything the loan currently owes"""
    
    def __init__(self, tendered, outstanding):
        self.tendered = tendered
        self.outstanding = outstanding
        super().__init__(
            f"Payment of {tendered} exceeds outstanding obligations of {outstanding}"
        )


class DataError(LoanEngineError):
    """A stored record is malformed (bad date, components that don't add up)"""
    pass


class ConsistencyError(LoanEngineError):
    """Authoritative aggregate fields could not be read after retries"""
    pass


class LoanNotFoundError(LoanEngineError):
    """Loan does not exist"""
    
    def __init__(self, loan_id: str):
        self.loan_id = loan_id
        super().__init__(f"Loan {loan_id} not found")


class PaymentNotFoundError(LoanEngineError):
    """Payment does not exist for the loan"""
    
    def __init__(self, payment_id: str):
        self.payment_id = payment_id
        super().__init__(f"Payment {payment_id} not found")


class ChargeNotFoundError(LoanEngineError):
    """Charge does not exist for the loan"""
    
    def __init__(self, charge_id: str):
        self.charge_id = charge_id
        super().__init__(f"Charge {charge_id} not found")
