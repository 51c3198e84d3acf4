"""In-memory tracking of workflow instances: current node and variables."""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Mapping, Optional

from .exceptions import InstanceStateError
from .logging import get_logger

logger = get_logger(__name__)


class _InstanceRecord:
    """Mutable state of one instance, guarded by its own lock."""

    def __init__(self):
        self.lock = threading.RLock()
        self.current_node_id: Optional[str] = None
        self.definition_id: Optional[str] = None
        # Variables are keyed by casefolded name; the original spelling is kept for reads
        self.variables: Dict[str, str] = {}
        self.variable_names: Dict[str, str] = {}


class InMemoryWorkflowInstanceManager:
    """Keyed store of per-instance runtime state.

    Each instance has its own re-entrant lock, so work on one instance never
    blocks another. The manager-wide lock is only held while looking up or
    creating an instance record.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._instances: Dict[str, _InstanceRecord] = {}

    def _get_record(self, instance_id: Optional[str], create: bool = False) -> Optional[_InstanceRecord]:
        if not instance_id or not instance_id.strip():
            return None
        with self._lock:
            record = self._instances.get(instance_id)
            if record is None and create:
                record = _InstanceRecord()
                self._instances[instance_id] = record
            return record

    def _require_record(self, instance_id: Optional[str], operation: str) -> _InstanceRecord:
        record = self._get_record(instance_id, create=True)
        if record is None:
            raise InstanceStateError("Instance ID cannot be empty", operation=operation)
        return record

    @contextmanager
    def instance_lock(self, instance_id: str) -> Iterator[None]:
        """Hold the instance's lock across a compound read-modify-write.

        Raises:
            InstanceStateError: If the instance ID is empty
        """
        record = self._require_record(instance_id, "instance_lock")
        with record.lock:
            yield

    def get_current_node_id(self, instance_id: Optional[str]) -> Optional[str]:
        record = self._get_record(instance_id)
        if record is None:
            return None
        with record.lock:
            return record.current_node_id

    def set_current_node_id(self, instance_id: str, node_id: Optional[str]) -> None:
        """Point the instance at ``node_id``; last writer wins."""
        record = self._require_record(instance_id, "set_current_node_id")
        with record.lock:
            record.current_node_id = node_id
        logger.debug(f"Instance '{instance_id}' moved to node '{node_id}'")

    def clear_current_node_id(self, instance_id: Optional[str]) -> None:
        record = self._get_record(instance_id)
        if record is None:
            return
        with record.lock:
            record.current_node_id = None

    def bind_definition(self, instance_id: str, definition_id: str) -> None:
        """Record which workflow definition the instance runs."""
        record = self._require_record(instance_id, "bind_definition")
        with record.lock:
            record.definition_id = definition_id

    def get_definition_id(self, instance_id: Optional[str]) -> Optional[str]:
        record = self._get_record(instance_id)
        if record is None:
            return None
        with record.lock:
            return record.definition_id

    def get_variable(self, instance_id: Optional[str], name: str) -> Optional[str]:
        """Read a variable; names are case-insensitive."""
        record = self._get_record(instance_id)
        if record is None or not name:
            return None
        with record.lock:
            return record.variables.get(name.casefold())

    def set_variable(self, instance_id: str, name: str, value: Optional[str]) -> None:
        """Write a variable; blank names are ignored.

        Raises:
            InstanceStateError: If the instance ID is empty
        """
        record = self._require_record(instance_id, "set_variable")
        if not name or not name.strip():
            return
        with record.lock:
            self._store_variable(record, name, value)

    def apply_updates(self, instance_id: str, updates: Optional[Mapping[str, Optional[str]]]) -> None:
        """Apply a batch of variable updates as one atomic step.

        Raises:
            InstanceStateError: If the instance ID is empty
        """
        record = self._require_record(instance_id, "apply_updates")
        if not updates:
            return
        with record.lock:
            for name, value in updates.items():
                if name and str(name).strip():
                    self._store_variable(record, str(name), value)
        logger.debug(f"Applied {len(updates)} variable updates to instance '{instance_id}'")

    @staticmethod
    def _store_variable(record: _InstanceRecord, name: str, value: Optional[str]) -> None:
        key = name.casefold()
        record.variables[key] = "" if value is None else str(value)
        record.variable_names[key] = name

    def get_variables(self, instance_id: Optional[str]) -> Dict[str, str]:
        """Snapshot of the instance's variables keyed by their original names."""
        record = self._get_record(instance_id)
        if record is None:
            return {}
        with record.lock:
            return {record.variable_names[key]: value for key, value in record.variables.items()}

    def list_instances(self) -> List[str]:
        with self._lock:
            return list(self._instances.keys())

    def remove_instance(self, instance_id: Optional[str]) -> bool:
        """Forget an instance entirely.

        Returns:
            True if the instance existed
        """
        if not instance_id:
            return False
        with self._lock:
            return self._instances.pop(instance_id, None) is not None
