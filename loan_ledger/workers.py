"""
Worker lookup

The ledger does not own worker records. It only asks a directory which
company a worker belongs to before issuing a loan.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional


class WorkerDirectory(ABC):
    """Read-only view of worker master records"""

    @abstractmethod
    def get_worker(self, worker_id: str) -> Optional[Dict[str, Any]]:
        """Return the worker record (at least {'company': ...}) or None"""
        pass


class InMemoryWorkerDirectory(WorkerDirectory):
    """Dictionary-backed directory for tests and local runs"""

    def __init__(self, workers: Optional[Dict[str, Dict[str, Any]]] = None):
        self._workers: Dict[str, Dict[str, Any]] = dict(workers or {})

    def add_worker(self, worker_id: str, company: str, **fields) -> None:
        self._workers[worker_id] = {'id': worker_id, 'company': company, **fields}

    def get_worker(self, worker_id: str) -> Optional[Dict[str, Any]]:
        worker = self._workers.get(worker_id)
        return dict(worker) if worker else None
