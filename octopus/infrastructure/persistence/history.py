from typing import Dict, Any, List, Optional
from datetime import datetime, timezone
import asyncio

from octopus.domain.models.run_state import Run, Step


class InMemoryHistory:
    """Run history kept as documents: run meta, steps by id, append-only log"""

    def __init__(self):
        self.runs: Dict[str, Dict[str, Any]] = {}
        self.steps: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.logs: Dict[str, List[Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    async def save_run_meta(self, run: Run) -> None:
        async with self._lock:
            doc = self.runs.setdefault(run.id, {})
            doc.update({
                "id": run.id,
                "owner_id": run.owner_id,
                "instruction": run.instruction,
                "created_at": run.created_at,
                "completed_at": run.completed_at,
                "status": run.status.value,
                "file_url": run.source_file_url,
                # lightweight steps view for list pages
                "steps": [{"id": s.id, "tool": s.tool, "status": s.status.value} for s in run.steps],
            })

    async def save_step(self, run_id: str, step: Step) -> None:
        async with self._lock:
            self.steps.setdefault(run_id, {})[step.id] = {
                "id": step.id,
                "tool": step.tool,
                "status": step.status.value,
                "link": step.link,
                "error": step.error,
                "payload": step.payload,
                "created_at": step.created_at,
                "updated_at": datetime.now(timezone.utc),
            }

    async def append_log(self, run_id: str, entry: Dict[str, Any]) -> None:
        async with self._lock:
            self.logs.setdefault(run_id, []).append({"ts": datetime.now(timezone.utc), **entry})

    async def finalize_run(self, run: Run) -> None:
        async with self._lock:
            doc = self.runs.setdefault(run.id, {"id": run.id})
            doc["status"] = run.status.value
            doc["completed_at"] = run.completed_at or datetime.now(timezone.utc)

    async def list_runs_for_owner(self, owner_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Newest first"""

        async with self._lock:
            rows = [dict(doc) for doc in self.runs.values() if doc.get("owner_id") == owner_id]
        rows.sort(key=lambda d: d.get("created_at") or datetime.min.replace(tzinfo=timezone.utc), reverse=True)
        return rows[:limit]

    async def get_run_full(self, run_id: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            if run_id not in self.runs:
                return None
            steps = sorted(self.steps.get(run_id, {}).values(), key=lambda s: s["created_at"])
            return {
                **self.runs[run_id],
                "steps": [dict(s) for s in steps],
                "log": [dict(e) for e in self.logs.get(run_id, [])],
            }
