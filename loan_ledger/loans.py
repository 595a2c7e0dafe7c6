"""
Loan Module

Handles loan and salary-advance issuance, installment schedule generation,
terms changes, and payment application against the installment schedule and
the loan balance. Derived fields are recomputed on every write, never
incremented on their own.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union
from enum import Enum
from contextlib import contextmanager
import uuid

from .amortization import (
    Installment, InstallmentStatus, InstallmentType,
    compute_total_amount, generate_schedule, validate_schedule
)
from .audit import AuditTrail, AuditEventType
from .config import LedgerConfig, get_config
from .currency import Number, format_amount, quantize, to_decimal
from .exceptions import (
    ConcurrencyConflict, DuplicateLoanId, InstallmentNotFound, InvalidPayment,
    InvalidStatusTransition, InvalidTerms, LedgerError, LedgerInvariantError,
    NotFound, StorageError
)
from .locking import KeyedLock
from .logging_config import get_logger, log_action
from .storage import DuplicateKeyError, StorageInterface, StorageRecord, VersionConflictError
from .workers import WorkerDirectory


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVE = "active"          # Being repaid
    COMPLETED = "completed"    # Fully repaid
    CANCELLED = "cancelled"    # Withdrawn by an administrator
    DEFAULTED = "defaulted"    # Written off by an administrator

    @property
    def is_terminal(self) -> bool:
        return self != LoanStatus.ACTIVE


class LoanCategory(Enum):
    """Loans and advances differ only in their id prefix"""
    LOAN = "loan"
    ADVANCE = "advance"

    @property
    def prefix(self) -> str:
        return "LOAN" if self == LoanCategory.LOAN else "ADV"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_enum(enum_type, value, field_name: str):
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_type)
        raise InvalidTerms(f"Invalid {field_name} '{value}'; expected one of: {allowed}")


def _parse_date(value, field_name: str) -> Optional[date]:
    if value is None or isinstance(value, date) and not isinstance(value, datetime):
        return value
    if isinstance(value, datetime):
        return value.date()
    text = str(value).strip()
    try:
        if len(text) > 10:
            return datetime.fromisoformat(text).date()
        return date.fromisoformat(text)
    except ValueError:
        raise InvalidTerms(f"{field_name} must be an ISO date, got {value!r}")


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _parse_amount(value: Number, field_name: str, error=InvalidTerms) -> Decimal:
    try:
        return to_decimal(value, field_name)
    except ValueError as e:
        raise error(str(e)) from e


@dataclass
class LoanScope:
    """Company/worker scope an authorized caller is allowed to see"""
    company: Optional[str] = None
    worker: Optional[str] = None

    def filters(self) -> Dict[str, str]:
        result = {}
        if self.company is not None:
            result['company'] = self.company
        if self.worker is not None:
            result['worker'] = self.worker
        return result

    def allows(self, loan: 'Loan') -> bool:
        return all(getattr(loan, key) == value for key, value in self.filters().items())


@dataclass
class LoanDraft:
    """Caller-supplied fields for a new loan; derived fields are not accepted"""
    company: str
    worker: str
    principal_amount: Number
    interest_rate: Number = 0
    category: Union[LoanCategory, str] = LoanCategory.ADVANCE
    currency: Optional[str] = None
    has_installments: bool = False
    installment_type: Union[InstallmentType, str] = InstallmentType.FIXED_AMOUNT
    installment_amount: Optional[Number] = None
    installment_count: Optional[int] = None
    start_date: Optional[date] = None
    loan_date: Optional[date] = None
    loan_id: Optional[str] = None
    description: Optional[str] = None
    notes: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None


@dataclass
class LoanPayment:
    """One applied repayment, kept inside the loan for traceability and dedup"""
    amount: Decimal
    paid_at: datetime
    installment_number: Optional[int] = None
    payroll_record_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    recorded_by: Optional[str] = None

    @property
    def dedup_key(self) -> Optional[str]:
        return payment_dedup_key(self.installment_number, self.payroll_record_id, self.idempotency_key)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'amount': str(self.amount),
            'paid_at': self.paid_at.isoformat(),
            'installment_number': self.installment_number,
            'payroll_record_id': self.payroll_record_id,
            'idempotency_key': self.idempotency_key,
            'recorded_by': self.recorded_by
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanPayment':
        return cls(
            amount=Decimal(data['amount']),
            paid_at=datetime.fromisoformat(data['paid_at']),
            installment_number=data.get('installment_number'),
            payroll_record_id=data.get('payroll_record_id'),
            idempotency_key=data.get('idempotency_key'),
            recorded_by=data.get('recorded_by')
        )


def payment_dedup_key(installment_number: Optional[int], payroll_record_id: Optional[str],
                      idempotency_key: Optional[str]) -> Optional[str]:
    """
    Key under which a payment may be applied at most once.

    An explicit idempotency key wins; otherwise a payroll disbursement is
    unique per installment it pays. Payments with neither are not deduplicated.
    """
    if idempotency_key:
        return f"key:{idempotency_key}"
    if payroll_record_id:
        return f"payroll:{payroll_record_id}:{installment_number if installment_number is not None else '-'}"
    return None


@dataclass
class Loan(StorageRecord):
    """Loan or advance with its repayment schedule and ledger state"""
    loan_id: str
    company: str
    worker: str
    category: LoanCategory
    principal_amount: Decimal
    interest_rate: Decimal
    total_amount: Decimal
    currency: str
    loan_date: date
    created_by: Optional[str] = None
    status: LoanStatus = LoanStatus.ACTIVE

    # Repayment configuration
    has_installments: bool = False
    installment_type: InstallmentType = InstallmentType.FIXED_AMOUNT
    installment_amount: Optional[Decimal] = None
    installment_count: Optional[int] = None
    start_date: Optional[date] = None
    installments: List[Installment] = field(default_factory=list)

    # Ledger state
    total_paid_amount: Decimal = Decimal('0')
    remaining_amount: Optional[Decimal] = None
    payments: List[LoanPayment] = field(default_factory=list)

    # Dates and audit
    expected_end_date: Optional[date] = None
    completed_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    description: Optional[str] = None
    notes: Optional[str] = None
    version: int = 0

    def __post_init__(self):
        if self.remaining_amount is None:
            self.remaining_amount = self.total_amount - self.total_paid_amount

    @property
    def outstanding_balance(self) -> Decimal:
        """Amount still owed; never negative"""
        return max(self.total_amount - self.total_paid_amount, Decimal('0'))

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE

    def get_installment(self, installment_number: int) -> Optional[Installment]:
        for installment in self.installments:
            if installment.installment_number == installment_number:
                return installment
        return None

    def has_applied(self, dedup_key: Optional[str]) -> bool:
        """Whether a payment with this dedup key was already applied"""
        if dedup_key is None:
            return False
        return any(payment.dedup_key == dedup_key for payment in self.payments)

    def invariant_violations(self, precision_overrides: Optional[Dict[str, int]] = None) -> List[str]:
        """Ledger invariants this loan breaks (empty when consistent)"""
        problems = []
        expected_total = compute_total_amount(
            self.principal_amount, self.interest_rate, self.currency, precision_overrides
        )
        if self.total_amount != expected_total:
            problems.append(f"total_amount {self.total_amount} != {expected_total}")
        if self.remaining_amount != self.total_amount - self.total_paid_amount:
            problems.append(
                f"remaining_amount {self.remaining_amount} != "
                f"{self.total_amount} - {self.total_paid_amount}"
            )
        if self.total_paid_amount < 0:
            problems.append("total_paid_amount is negative")
        if self.has_installments and not validate_schedule(self.installments, self.total_amount):
            problems.append("installment schedule does not sum to total_amount")
        if not self.has_installments and self.installments:
            problems.append("installments present on a loan without installments")
        if self.status == LoanStatus.COMPLETED and self.completed_at is None:
            problems.append("completed loan has no completed_at")
        if self.status == LoanStatus.ACTIVE and self.remaining_amount <= 0:
            problems.append("active loan has nothing left to pay")
        return problems

    def to_dict(self) -> Dict[str, Any]:
        """Convert loan to a JSON-ready dictionary"""
        result = super().to_dict()
        result['category'] = self.category.value
        result['status'] = self.status.value
        result['installment_type'] = self.installment_type.value
        result['installments'] = [installment.to_dict() for installment in self.installments]
        result['payments'] = [payment.to_dict() for payment in self.payments]

        for name in ['loan_date', 'start_date', 'expected_end_date', 'completed_at', 'approved_at']:
            value = getattr(self, name)
            result[name] = value.isoformat() if value else None

        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        """Convert dictionary to loan"""
        def get_decimal(name: str) -> Optional[Decimal]:
            value = data.get(name)
            return Decimal(value) if value is not None else None

        def get_date(name: str) -> Optional[date]:
            value = data.get(name)
            return date.fromisoformat(value) if value else None

        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            company=data['company'],
            worker=data['worker'],
            category=LoanCategory(data['category']),
            principal_amount=get_decimal('principal_amount'),
            interest_rate=get_decimal('interest_rate'),
            total_amount=get_decimal('total_amount'),
            currency=data['currency'],
            loan_date=get_date('loan_date'),
            created_by=data.get('created_by'),
            status=LoanStatus(data['status']),
            has_installments=data.get('has_installments', False),
            installment_type=InstallmentType(data.get('installment_type', 'fixed_amount')),
            installment_amount=get_decimal('installment_amount'),
            installment_count=data.get('installment_count'),
            start_date=get_date('start_date'),
            installments=[Installment.from_dict(item) for item in data.get('installments', [])],
            total_paid_amount=get_decimal('total_paid_amount'),
            remaining_amount=get_decimal('remaining_amount'),
            payments=[LoanPayment.from_dict(item) for item in data.get('payments', [])],
            expected_end_date=get_date('expected_end_date'),
            completed_at=_parse_datetime(data.get('completed_at')),
            approved_by=data.get('approved_by'),
            approved_at=_parse_datetime(data.get('approved_at')),
            description=data.get('description'),
            notes=data.get('notes'),
            version=data.get('version', 0)
        )


# Fields patch() understands, grouped by what they trigger
TERMS_FIELDS = {'principal_amount', 'interest_rate', 'currency'}
SCHEDULE_FIELDS = {'has_installments', 'installment_type', 'installment_amount',
                   'installment_count', 'start_date'}
PASSTHROUGH_FIELDS = {'description', 'notes', 'loan_date', 'approved_by', 'approved_at'}
IMMUTABLE_FIELDS = {'id', 'loan_id', 'company', 'worker', 'category', 'created_by',
                    'created_at', 'updated_at', 'total_amount', 'remaining_amount',
                    'total_paid_amount', 'installments', 'payments', 'completed_at',
                    'expected_end_date', 'version'}
PATCHABLE_FIELDS = TERMS_FIELDS | SCHEDULE_FIELDS | PASSTHROUGH_FIELDS | {'status'}


class LoanLedger:
    """
    Issues loans and applies payments, keeping ledger invariants on every write
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None,
        worker_directory: Optional[WorkerDirectory] = None,
        config: Optional[LedgerConfig] = None
    ):
        self.storage = storage
        self.config = config or get_config()
        if audit_trail is None and self.config.enable_audit_logging:
            audit_trail = AuditTrail(storage)
        self.audit_trail = audit_trail
        self.worker_directory = worker_directory
        self.logger = get_logger("loan_ledger.loans")

        self.loans_table = "loans"
        self.loan_ids_table = "loan_ids"
        self._locks = KeyedLock()

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(self, draft: LoanDraft, actor_id: Optional[str]) -> Loan:
        """
        Issue a new loan or advance

        Args:
            draft: Caller-supplied loan fields
            actor_id: User issuing the loan

        Returns:
            Created Loan, active, with its schedule when installments are configured

        Raises:
            InvalidTerms: Principal, interest or installment configuration is invalid
            NotFound: The worker directory does not know the worker
            DuplicateLoanId: The supplied loan id is already taken in the company
            StorageError: The loan could not be persisted
        """
        if not draft.company:
            raise InvalidTerms("Company is required")
        if not draft.worker:
            raise InvalidTerms("Worker is required")
        self._check_worker(draft.worker, draft.company)

        category = _parse_enum(LoanCategory, draft.category, "category")
        installment_type = _parse_enum(InstallmentType, draft.installment_type, "installment_type")
        currency = draft.currency or self.config.default_currency
        overrides = self.config.currency_precision

        principal = quantize(_parse_amount(draft.principal_amount, "principal_amount"), currency, overrides)
        interest_rate = _parse_amount(draft.interest_rate, "interest_rate")
        total_amount = compute_total_amount(principal, interest_rate, currency, overrides)

        start_date = _parse_date(draft.start_date, "start_date")
        installment_amount = None
        if draft.installment_amount is not None:
            installment_amount = quantize(
                _parse_amount(draft.installment_amount, "installment_amount"), currency, overrides
            )

        installments = []
        if draft.has_installments:
            installments = generate_schedule(
                total_amount, start_date, installment_type,
                installment_amount=installment_amount,
                installment_count=draft.installment_count,
                currency=currency,
                precision_overrides=overrides
            )

        now = _utcnow()
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=draft.loan_id or "",
            company=draft.company,
            worker=draft.worker,
            category=category,
            principal_amount=principal,
            interest_rate=interest_rate,
            total_amount=total_amount,
            currency=currency,
            loan_date=_parse_date(draft.loan_date, "loan_date") or now.date(),
            created_by=actor_id,
            has_installments=bool(draft.has_installments),
            installment_type=installment_type,
            installment_amount=installment_amount,
            installment_count=draft.installment_count,
            start_date=start_date,
            installments=installments,
            expected_end_date=installments[-1].due_date if installments else None,
            approved_by=draft.approved_by,
            approved_at=draft.approved_at or (now if draft.approved_by else None),
            description=draft.description,
            notes=draft.notes
        )
        if loan.remaining_amount <= 0:
            # Nothing to repay (zero principal)
            self._complete(loan, now)
        self._assert_invariants(loan)

        with self._storage_errors("create", loan.id):
            with self.storage.atomic():
                loan.loan_id = self._claim_loan_id(loan.company, category, draft.loan_id, loan.id)
                self.storage.insert(self.loans_table, loan.id, loan.to_dict())
                self._audit(AuditEventType.LOAN_CREATED, loan, actor_id, {
                    "loan_id": loan.loan_id,
                    "company": loan.company,
                    "worker": loan.worker,
                    "category": category.value,
                    "principal_amount": principal,
                    "interest_rate": interest_rate,
                    "total_amount": total_amount,
                    "installments": len(installments)
                })

        log_action(
            self.logger, "info",
            f"Loan created: {loan.loan_id} for {format_amount(total_amount, currency, overrides)}",
            user_id=actor_id, action="create_loan", resource=f"loan:{loan.id}",
            extra={
                "loan_id": loan.loan_id,
                "company": loan.company,
                "worker": loan.worker,
                "total_amount": str(total_amount),
                "currency": currency,
                "installments": len(installments)
            }
        )
        return loan

    def _check_worker(self, worker_id: str, company: str) -> None:
        if self.worker_directory is None:
            return
        worker = self.worker_directory.get_worker(worker_id)
        if not worker:
            raise NotFound(f"Worker {worker_id} not found")
        if worker.get('company') != company:
            raise InvalidTerms(f"Worker {worker_id} does not belong to company {company}")

    def _claim_loan_id(self, company: str, category: LoanCategory,
                       requested: Optional[str], record_id: str) -> str:
        """Reserve a loan id in the per-company unique index"""
        if requested:
            try:
                self.storage.insert(self.loan_ids_table, f"{company}:{requested}", {"id": record_id})
            except DuplicateKeyError:
                raise DuplicateLoanId(f"Loan id {requested} already exists in company {company}")
            return requested

        sequence_name = f"loan_id:{company}:{category.value}"
        for _ in range(self.config.loan_id_max_retries):
            candidate = f"{category.prefix}{self.storage.next_sequence(sequence_name):04d}"
            try:
                self.storage.insert(self.loan_ids_table, f"{company}:{candidate}", {"id": record_id})
                return candidate
            except DuplicateKeyError:
                # Taken by a caller-supplied id; draw the next number
                self.logger.warning(f"Loan id {candidate} already taken in company {company}, retrying")

        raise DuplicateLoanId(
            f"Could not assign a free {category.prefix} id in company {company} "
            f"after {self.config.loan_id_max_retries} attempts"
        )

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get(self, record_id: str, scope: Optional[LoanScope] = None) -> Loan:
        """
        Get loan by record id

        Raises:
            NotFound: No such loan, or it lies outside the given scope
        """
        loan = self._load(record_id)
        if scope is not None and not scope.allows(loan):
            raise NotFound(f"Loan {record_id} not found")
        return loan

    def get_by_loan_id(self, company: str, loan_id: str) -> Loan:
        """Get a loan by its human-readable id within a company"""
        found = self.storage.find(self.loans_table, {"company": company, "loan_id": loan_id})
        if not found:
            raise NotFound(f"Loan {loan_id} not found in company {company}")
        return Loan.from_dict(found[0])

    def find(self, filters: Optional[Dict[str, Any]] = None,
             scope: Optional[LoanScope] = None) -> List[Loan]:
        """
        Find loans matching stored field values, newest first

        Args:
            filters: Field/value pairs, e.g. {"status": "active"}
            scope: Optional company/worker scope that narrows the result

        Returns:
            List of Loan objects
        """
        query = {}
        for key, value in (filters or {}).items():
            query[key] = value.value if isinstance(value, Enum) else value

        if scope is not None:
            for key, value in scope.filters().items():
                if key in query and query[key] != value:
                    return []
                query[key] = value

        loans = [Loan.from_dict(data) for data in self.storage.find(self.loans_table, query)]
        loans.sort(key=lambda loan: loan.created_at, reverse=True)
        return loans

    def _load(self, record_id: str) -> Loan:
        data = self.storage.load(self.loans_table, record_id)
        if not data:
            raise NotFound(f"Loan {record_id} not found")
        return Loan.from_dict(data)

    # ------------------------------------------------------------------
    # Patch
    # ------------------------------------------------------------------

    def patch(self, record_id: str, changes: Dict[str, Any], actor_id: Optional[str]) -> Loan:
        """
        Change a loan's terms, repayment configuration, status or notes

        Terms changes recompute total and remaining amounts; repayment
        configuration changes (and terms changes on installment loans)
        regenerate the whole schedule.

        Args:
            record_id: Loan record id
            changes: Field/value pairs to change
            actor_id: User making the change

        Returns:
            Updated Loan

        Raises:
            NotFound: No such loan
            InvalidTerms: The change is not allowed or yields invalid terms
            ConcurrencyConflict: Another process changed the loan meanwhile
            StorageError: The change could not be persisted
        """
        changes = dict(changes)
        immutable = set(changes) & IMMUTABLE_FIELDS
        if immutable:
            raise InvalidTerms(f"Fields cannot be changed: {', '.join(sorted(immutable))}")
        unknown = set(changes) - PATCHABLE_FIELDS
        if unknown:
            raise InvalidTerms(f"Unknown fields: {', '.join(sorted(unknown))}")

        with self._locks.hold(record_id):
            loan = self._load(record_id)
            previous_status = loan.status
            previous_version = loan.version
            now = _utcnow()

            terms_changed = bool(set(changes) & TERMS_FIELDS)
            schedule_changed = bool(set(changes) & SCHEDULE_FIELDS)
            if (terms_changed or schedule_changed) and loan.status.is_terminal:
                raise InvalidTerms(f"Loan {loan.loan_id} is {loan.status.value}; its terms cannot change")

            new_status = None
            if 'status' in changes:
                new_status = _parse_enum(LoanStatus, changes['status'], "status")
                self._check_status_override(loan, new_status)

            if terms_changed:
                self._apply_terms(loan, changes)
            if schedule_changed:
                self._apply_schedule_config(loan, changes)

            if not loan.has_installments:
                loan.installments = []
                loan.expected_end_date = None
            elif terms_changed or schedule_changed:
                loan.installments = generate_schedule(
                    loan.total_amount, loan.start_date, loan.installment_type,
                    installment_amount=loan.installment_amount,
                    installment_count=loan.installment_count,
                    currency=loan.currency,
                    precision_overrides=self.config.currency_precision
                )
                loan.expected_end_date = loan.installments[-1].due_date if loan.installments else None

            loan.remaining_amount = loan.total_amount - loan.total_paid_amount

            for name in PASSTHROUGH_FIELDS & set(changes):
                value = changes[name]
                if name == 'loan_date':
                    value = _parse_date(value, name)
                    if value is None:
                        raise InvalidTerms("loan_date cannot be cleared")
                elif name == 'approved_at' and isinstance(value, str):
                    value = datetime.fromisoformat(value)
                setattr(loan, name, value)
            if loan.approved_by and loan.approved_at is None:
                loan.approved_at = now

            if new_status is not None:
                loan.status = new_status
            if loan.is_active and loan.remaining_amount <= 0:
                self._complete(loan, now)

            self._assert_invariants(loan)
            loan.updated_at = now
            loan.version = previous_version + 1

            with self._storage_errors("patch", record_id):
                with self.storage.atomic():
                    self.storage.compare_and_swap(self.loans_table, loan.id, loan.to_dict(), previous_version)
                    self._audit(AuditEventType.LOAN_UPDATED, loan, actor_id, {
                        "fields": sorted(changes),
                        "total_amount": loan.total_amount,
                        "remaining_amount": loan.remaining_amount,
                        "installments": len(loan.installments)
                    })
                    if loan.status != previous_status:
                        self._audit(AuditEventType.LOAN_STATUS_CHANGED, loan, actor_id, {
                            "from": previous_status.value,
                            "to": loan.status.value
                        })
                        if loan.status == LoanStatus.COMPLETED:
                            self._audit(AuditEventType.LOAN_COMPLETED, loan, actor_id, {
                                "total_paid_amount": loan.total_paid_amount
                            })

        log_action(
            self.logger, "info", f"Loan updated: {loan.loan_id}",
            user_id=actor_id, action="patch_loan", resource=f"loan:{loan.id}",
            extra={
                "fields": sorted(changes),
                "status": loan.status.value,
                "total_amount": str(loan.total_amount),
                "remaining_amount": str(loan.remaining_amount)
            }
        )
        return loan

    def _check_status_override(self, loan: Loan, new_status: LoanStatus) -> None:
        if new_status == loan.status:
            return
        if loan.status == LoanStatus.ACTIVE and new_status in (LoanStatus.CANCELLED, LoanStatus.DEFAULTED):
            return
        raise InvalidStatusTransition(
            f"Loan {loan.loan_id} cannot move from {loan.status.value} to {new_status.value}"
        )

    def _apply_terms(self, loan: Loan, changes: Dict[str, Any]) -> None:
        """Recompute total_amount from the effective principal, rate and currency"""
        overrides = self.config.currency_precision
        if 'currency' in changes:
            if loan.payments:
                raise InvalidTerms("Currency cannot change once payments were recorded")
            if not changes['currency']:
                raise InvalidTerms("Currency cannot be empty")
            loan.currency = changes['currency']

        principal = changes.get('principal_amount', loan.principal_amount)
        rate = changes.get('interest_rate', loan.interest_rate)
        if principal is None or rate is None:
            raise InvalidTerms("Principal amount and interest rate cannot be cleared")

        loan.principal_amount = quantize(_parse_amount(principal, "principal_amount"), loan.currency, overrides)
        loan.interest_rate = _parse_amount(rate, "interest_rate")
        loan.total_amount = compute_total_amount(loan.principal_amount, loan.interest_rate, loan.currency, overrides)

    def _apply_schedule_config(self, loan: Loan, changes: Dict[str, Any]) -> None:
        """Merge repayment configuration changes into the loan"""
        if 'has_installments' in changes:
            loan.has_installments = bool(changes['has_installments'])
        if 'installment_type' in changes:
            loan.installment_type = _parse_enum(InstallmentType, changes['installment_type'], "installment_type")
        if 'installment_amount' in changes:
            amount = changes['installment_amount']
            loan.installment_amount = None if amount is None else quantize(
                _parse_amount(amount, "installment_amount"), loan.currency, self.config.currency_precision
            )
        if 'installment_count' in changes:
            loan.installment_count = changes['installment_count']
        if 'start_date' in changes:
            loan.start_date = _parse_date(changes['start_date'], "start_date")

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def record_payment(
        self,
        record_id: str,
        amount: Number,
        installment_number: Optional[int] = None,
        payroll_record_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> Loan:
        """
        Apply a repayment to a loan

        A payment whose idempotency key (or payroll record id for the same
        installment) was already applied is not applied again; the current
        loan is returned unchanged.

        Args:
            record_id: Loan record id
            amount: Amount repaid, > 0
            installment_number: Installment the payment is for, if any
            payroll_record_id: Payroll record that produced the deduction
            idempotency_key: Caller token identifying this payment
            actor_id: User or process recording the payment

        Returns:
            Updated Loan

        Raises:
            InvalidPayment: Non-positive amount, loan not active, or rejected over-payment
            NotFound: No such loan or installment
            ConcurrencyConflict: Another process changed the loan meanwhile
            StorageError: The payment could not be persisted
        """
        amount = _parse_amount(amount, "amount", error=InvalidPayment)
        if amount <= 0:
            raise InvalidPayment("Payment amount must be greater than 0")

        dedup_key = payment_dedup_key(installment_number, payroll_record_id, idempotency_key)

        with self._locks.hold(record_id):
            loan = self._load(record_id)

            if loan.has_applied(dedup_key):
                log_action(
                    self.logger, "warning", f"Duplicate payment ignored for loan {loan.loan_id}",
                    user_id=actor_id, action="record_payment", resource=f"loan:{loan.id}",
                    extra={"dedup_key": dedup_key, "amount": str(amount)}
                )
                return loan

            try:
                amount, installment = self._check_payment(loan, amount, installment_number)
            except InvalidPayment as e:
                log_action(
                    self.logger, "warning", f"Payment rejected for loan {loan.loan_id}: {e}",
                    user_id=actor_id, action="record_payment", resource=f"loan:{loan.id}",
                    extra={"amount": str(amount), "installment_number": installment_number}
                )
                raise

            previous_version = loan.version
            now = _utcnow()

            loan.total_paid_amount += amount
            loan.remaining_amount = loan.total_amount - loan.total_paid_amount

            if installment is not None:
                installment.paid_amount += amount
                installment.paid_at = now
                if payroll_record_id:
                    installment.payroll_record_id = payroll_record_id
                if installment.paid_amount >= installment.amount:
                    installment.status = InstallmentStatus.PAID

            loan.payments.append(LoanPayment(
                amount=amount,
                paid_at=now,
                installment_number=installment_number,
                payroll_record_id=payroll_record_id,
                idempotency_key=idempotency_key,
                recorded_by=actor_id
            ))

            if loan.remaining_amount <= 0:
                self._complete(loan, now)

            self._assert_invariants(loan)
            loan.updated_at = now
            loan.version = previous_version + 1

            with self._storage_errors("record payment on", record_id):
                with self.storage.atomic():
                    self.storage.compare_and_swap(self.loans_table, loan.id, loan.to_dict(), previous_version)
                    self._audit(AuditEventType.LOAN_PAYMENT_RECORDED, loan, actor_id, {
                        "amount": amount,
                        "installment_number": installment_number,
                        "payroll_record_id": payroll_record_id,
                        "total_paid_amount": loan.total_paid_amount,
                        "remaining_amount": loan.remaining_amount
                    })
                    if loan.status == LoanStatus.COMPLETED:
                        self._audit(AuditEventType.LOAN_COMPLETED, loan, actor_id, {
                            "total_paid_amount": loan.total_paid_amount
                        })

        shown = format_amount(amount, loan.currency, self.config.currency_precision)
        log_action(
            self.logger, "info", f"Payment of {shown} recorded on loan {loan.loan_id}",
            user_id=actor_id, action="record_payment", resource=f"loan:{loan.id}",
            extra={
                "amount": str(amount),
                "installment_number": installment_number,
                "payroll_record_id": payroll_record_id,
                "remaining_amount": str(loan.remaining_amount),
                "status": loan.status.value
            }
        )
        return loan

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_payment(self, loan: Loan, amount: Decimal,
                       installment_number: Optional[int]) -> Tuple[Decimal, Optional[Installment]]:
        """Quantized amount and target installment, or InvalidPayment"""
        if not loan.is_active:
            raise InvalidPayment(f"Loan {loan.loan_id} is {loan.status.value}; payments are not accepted")

        amount = quantize(amount, loan.currency, self.config.currency_precision)
        if amount <= 0:
            raise InvalidPayment("Payment amount is below the currency's minor unit")

        if installment_number is None:
            return amount, None
        if not loan.has_installments:
            raise InvalidPayment(f"Loan {loan.loan_id} has no installment schedule")

        installment = loan.get_installment(installment_number)
        if installment is None:
            raise InstallmentNotFound(f"Installment {installment_number} not found on loan {loan.loan_id}")
        if self.config.installment_overpayment == "reject" and amount > installment.remaining_due:
            raise InvalidPayment(
                f"Payment {amount} exceeds the {installment.remaining_due} still due "
                f"on installment {installment_number}"
            )
        return amount, installment

    def _complete(self, loan: Loan, now: datetime) -> None:
        loan.status = LoanStatus.COMPLETED
        if loan.completed_at is None:
            loan.completed_at = now

    def _assert_invariants(self, loan: Loan) -> None:
        problems = loan.invariant_violations(self.config.currency_precision)
        if problems:
            raise LedgerInvariantError(f"Loan {loan.id} is inconsistent: {'; '.join(problems)}")

    def _audit(self, event_type: AuditEventType, loan: Loan, actor_id: Optional[str],
               metadata: Dict[str, Any]) -> None:
        if self.audit_trail is None:
            return
        self.audit_trail.log_event(
            event_type=event_type,
            entity_type="loan",
            entity_id=loan.id,
            metadata=metadata,
            user_id=actor_id
        )

    @contextmanager
    def _storage_errors(self, action: str, record_id: str) -> Iterator[None]:
        """Translate storage failures into ledger errors"""
        try:
            yield
        except LedgerError:
            raise
        except VersionConflictError as e:
            raise ConcurrencyConflict(f"Loan {record_id} was modified concurrently") from e
        except KeyError as e:
            raise NotFound(f"Loan {record_id} not found") from e
        except Exception as e:
            self.logger.error(f"Failed to {action} loan {record_id}: {e}", exc_info=True)
            raise StorageError(f"Failed to {action} loan {record_id}: {e}") from e
