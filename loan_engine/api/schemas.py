"""
Pydantic schemas for API requests
"""

from typing import Optional
from pydantic import BaseModel, Field


class CreateLoanRequest(BaseModel):
    client_id: str
    amount: str = Field(..., description="Decimal amount as string")
    interest_rate: str = Field(..., description="Percent per period as string")
    payment_frequency: str = "monthly"
    amortization_type: str = "fixed"
    start_date: Optional[str] = None  # ISO date string, defaults to today
    term_months: Optional[int] = None
    first_payment_date: Optional[str] = None
    late_fee_enabled: Optional[bool] = None  # None = configured default
    late_fee_rate: Optional[str] = None
    grace_period_days: Optional[int] = None
    max_late_fee: Optional[str] = None
    late_fee_calculation_type: Optional[str] = None
    currency: Optional[str] = None


class RecordPaymentRequest(BaseModel):
    amount: str = Field(..., description="Tendered amount as string")
    payment_date: Optional[str] = None
    payment_method: str = "cash"
    reference_number: Optional[str] = None
    notes: Optional[str] = None


class AddChargeRequest(BaseModel):
    amount: str
    charge_date: Optional[str] = None
    description: str = ""


class WaiveLateFeeRequest(BaseModel):
    amount: Optional[str] = None  # None waives the full outstanding fee
    reason: Optional[str] = None
    waived_date: Optional[str] = None


class CapitalPaymentRequest(BaseModel):
    amount: str
    payment_date: Optional[str] = None
    notes: Optional[str] = None


class SettleLoanRequest(BaseModel):
    settled_date: Optional[str] = None
    notes: Optional[str] = None
