"""
Loan endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, Header, Query, status

from .schemas import CreateLoanRequest, PatchLoanRequest, RecordPaymentRequest
from .system import get_ledger
from ..loans import LoanLedger


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_loan(
    request: CreateLoanRequest,
    x_actor_id: Optional[str] = Header(None),
    ledger: LoanLedger = Depends(get_ledger)
):
    """Issue a new loan or advance"""
    loan = ledger.create(request.to_draft(), actor_id=x_actor_id)
    return loan.to_dict()


@router.get("")
async def find_loans(
    company: Optional[str] = None,
    worker: Optional[str] = None,
    loan_status: Optional[str] = Query(None, alias="status"),
    category: Optional[str] = None,
    ledger: LoanLedger = Depends(get_ledger)
):
    """List loans, newest first"""
    filters = {
        key: value for key, value in
        {"company": company, "worker": worker, "status": loan_status, "category": category}.items()
        if value is not None
    }
    loans = ledger.find(filters)
    return {"loans": [loan.to_dict() for loan in loans], "count": len(loans)}


@router.get("/{loan_record_id}")
async def get_loan(
    loan_record_id: str,
    ledger: LoanLedger = Depends(get_ledger)
):
    """Get loan details with its installment schedule"""
    return ledger.get(loan_record_id).to_dict()


@router.patch("/{loan_record_id}")
async def patch_loan(
    loan_record_id: str,
    request: PatchLoanRequest,
    x_actor_id: Optional[str] = Header(None),
    ledger: LoanLedger = Depends(get_ledger)
):
    """Change terms, repayment configuration, status or notes"""
    changes = request.model_dump(exclude_unset=True)
    loan = ledger.patch(loan_record_id, changes, actor_id=x_actor_id)
    return loan.to_dict()


@router.post("/{loan_record_id}/payments")
async def record_payment(
    loan_record_id: str,
    request: RecordPaymentRequest,
    x_actor_id: Optional[str] = Header(None),
    ledger: LoanLedger = Depends(get_ledger)
):
    """Apply a repayment to a loan"""
    loan = ledger.record_payment(
        loan_record_id,
        request.amount,
        installment_number=request.installment_number,
        payroll_record_id=request.payroll_record_id,
        idempotency_key=request.idempotency_key,
        actor_id=x_actor_id
    )
    return loan.to_dict()
