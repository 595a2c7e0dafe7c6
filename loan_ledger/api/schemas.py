"""
Pydantic schemas for API requests
"""

from datetime import date, datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field

from ..loans import LoanDraft


class CreateLoanRequest(BaseModel):
    company: str
    worker: str
    principal_amount: str = Field(..., description="Decimal amount as string")
    interest_rate: str = Field("0", description="Flat interest in percent, as string")
    category: str = Field("advance", description="loan or advance")
    currency: Optional[str] = None
    has_installments: bool = False
    installment_type: str = Field("fixed_amount", description="fixed_amount or fixed_count")
    installment_amount: Optional[str] = None  # Decimal as string
    installment_count: Optional[int] = None
    start_date: Optional[date] = None
    loan_date: Optional[date] = None
    loan_id: Optional[str] = None
    description: Optional[str] = None
    notes: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None

    def to_draft(self) -> LoanDraft:
        return LoanDraft(**self.model_dump())


class PatchLoanRequest(BaseModel):
    """Only the fields sent are changed; the ledger rejects fields it does not allow"""
    model_config = ConfigDict(extra="allow")

    principal_amount: Optional[str] = None
    interest_rate: Optional[str] = None
    currency: Optional[str] = None
    has_installments: Optional[bool] = None
    installment_type: Optional[str] = None
    installment_amount: Optional[str] = None
    installment_count: Optional[int] = None
    start_date: Optional[date] = None
    status: Optional[str] = None
    description: Optional[str] = None
    notes: Optional[str] = None
    loan_date: Optional[date] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None


class RecordPaymentRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    installment_number: Optional[int] = None
    payroll_record_id: Optional[str] = None
    idempotency_key: Optional[str] = None
