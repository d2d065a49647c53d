from typing import Dict, Any, Optional
import structlog

from octopus.domain.context.state.run_repository import RunRepository

logger = structlog.get_logger(__name__)


class RunMemory:
    """Run-scoped key/value context handed forward between steps"""

    def __init__(self, repository: RunRepository):
        self.repository = repository

    def get(self, run_id: str) -> Dict[str, Any]:
        """Get a copy of the run's memory"""

        return dict(self.repository.get(run_id).memory)

    def patch(self, run_id: str, patch: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Merge a patch into memory; last write wins per key, nothing is removed"""

        run = self.repository.get(run_id)
        if patch:
            run.memory.update(patch)
            logger.debug("Memory patched", run_id=run_id, keys=sorted(patch.keys()))
        return dict(run.memory)
