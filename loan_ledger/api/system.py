"""
Ledger wiring for the API
"""

from typing import Optional

from fastapi import Request

from ..audit import AuditTrail
from ..config import LedgerConfig, get_config
from ..loans import LoanLedger
from ..storage import create_storage
from ..workers import WorkerDirectory


class LedgerSystem:
    """Loan ledger with its storage and audit trail initialized from configuration"""

    def __init__(self, config: Optional[LedgerConfig] = None,
                 worker_directory: Optional[WorkerDirectory] = None):
        self.config = config or get_config()
        self.storage = create_storage(self.config)
        self.audit_trail = AuditTrail(self.storage) if self.config.enable_audit_logging else None
        self.ledger = LoanLedger(
            self.storage,
            audit_trail=self.audit_trail,
            worker_directory=worker_directory,
            config=self.config
        )

    def close(self) -> None:
        self.storage.close()


def get_ledger(request: Request) -> LoanLedger:
    """Dependency returning the ledger bound to the running app"""
    return request.app.state.ledger
