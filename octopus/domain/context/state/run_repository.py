from abc import ABC, abstractmethod
from typing import Dict, List, Optional
import asyncio
import threading

from octopus.domain.errors import RunNotFound
from octopus.domain.models.run_state import Run


class RunRepository(ABC):
    """Storage for live run records, keyed by run id"""

    @abstractmethod
    def find(self, run_id: str) -> Optional[Run]:
        """Return the live run or None"""

    @abstractmethod
    def put(self, run: Run) -> None:
        """Insert or replace a run"""

    @abstractmethod
    def list_for_owner(self, owner_id: str) -> List[Run]:
        """Runs owned by a user, newest first"""

    @abstractmethod
    def lock(self, run_id: str) -> asyncio.Lock:
        """Per-run lock serializing executions of one run"""

    def get(self, run_id: str) -> Run:
        run = self.find(run_id)
        if run is None:
            raise RunNotFound(run_id)
        return run


class InMemoryRunRepository(RunRepository):
    """Process-local run table with one lock per run"""

    def __init__(self):
        self.runs: Dict[str, Run] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        # guards the tables, never held across an await
        self._table_lock = threading.Lock()

    def find(self, run_id: str) -> Optional[Run]:
        with self._table_lock:
            return self.runs.get(run_id)

    def put(self, run: Run) -> None:
        with self._table_lock:
            self.runs[run.id] = run
            self._locks.setdefault(run.id, asyncio.Lock())

    def list_for_owner(self, owner_id: str) -> List[Run]:
        with self._table_lock:
            owned = [r for r in self.runs.values() if r.owner_id == owner_id]
        return sorted(owned, key=lambda r: r.created_at, reverse=True)

    def lock(self, run_id: str) -> asyncio.Lock:
        with self._table_lock:
            if run_id not in self.runs:
                raise RunNotFound(run_id)
            return self._locks.setdefault(run_id, asyncio.Lock())

