"""Workflow definition storage."""

import threading
from typing import Dict, List, Optional

from ..core.logging import get_logger
from ..models.core import WorkflowDefinition

logger = get_logger(__name__)


class WorkflowDefinitionStore:
    """Abstract store of compiled workflow definitions keyed by ID.

    Durable implementations live outside this package; they only need to
    honour these methods.
    """

    def store(self, definition: WorkflowDefinition) -> None:
        raise NotImplementedError

    def get_by_id(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        raise NotImplementedError

    def exists(self, workflow_id: str) -> bool:
        raise NotImplementedError

    def delete(self, workflow_id: str) -> bool:
        raise NotImplementedError

    def list_ids(self) -> List[str]:
        raise NotImplementedError


class InMemoryWorkflowDefinitionStore(WorkflowDefinitionStore):
    """Process-local definition store."""

    def __init__(self):
        self._lock = threading.RLock()
        self._definitions: Dict[str, WorkflowDefinition] = {}

    def store(self, definition: WorkflowDefinition) -> None:
        """Insert or replace a definition.

        Raises:
            ValueError: If definition is None
        """
        if definition is None:
            raise ValueError("Definition cannot be None")
        with self._lock:
            self._definitions[definition.id] = definition
        logger.debug(f"Stored workflow definition '{definition.id}'")

    def get_by_id(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        if not workflow_id or not workflow_id.strip():
            return None
        with self._lock:
            return self._definitions.get(workflow_id)

    def exists(self, workflow_id: str) -> bool:
        if not workflow_id or not workflow_id.strip():
            return False
        with self._lock:
            return workflow_id in self._definitions

    def delete(self, workflow_id: str) -> bool:
        with self._lock:
            return self._definitions.pop(workflow_id, None) is not None

    def list_ids(self) -> List[str]:
        with self._lock:
            return list(self._definitions.keys())
