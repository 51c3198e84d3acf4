"""Workflow service orchestrating import, start, advance and restart of instances."""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional, Union

from ..models.core import (
    DispatchResult,
    DispatchStatus,
    Transition,
    WorkflowDefinition,
    WorkflowNode,
    WorkflowStatePayload,
)
from ..storage.definition_store import WorkflowDefinitionStore
from .action_dispatcher import ActionDispatcher
from .exceptions import DiagramParseError, InstanceStateError, WorkflowNotFoundError
from .instance_manager import InMemoryWorkflowInstanceManager
from .logging import get_logger
from .parser import DEFAULT_WORKFLOW_NAME, ActivityDiagramParser
from .state_calculator import calculate_current_payload, calculate_start_node

logger = get_logger(__name__)

Choice = Optional[Union[int, str]]


def resolve_choice(outgoing: List[Transition], definition: WorkflowDefinition, choice: Choice) -> Optional[str]:
    """Map a user's choice onto the target node of one outgoing transition.

    A string matches a target node ID first, then a target label, then a
    numeric index; an int is an index; None follows a lone transition.

    Returns:
        The chosen target node ID, or None if nothing matches
    """
    if isinstance(choice, str):
        for transition in outgoing:
            if transition.to_node_id == choice:
                return transition.to_node_id
        for transition in outgoing:
            target = definition.get_node(transition.to_node_id)
            if target is not None and target.label == choice:
                return transition.to_node_id

    if isinstance(choice, int) and not isinstance(choice, bool):
        if 0 <= choice < len(outgoing):
            return outgoing[choice].to_node_id

    if isinstance(choice, str):
        try:
            index = int(choice.strip())
        except ValueError:
            index = None
        if index is not None and 0 <= index < len(outgoing):
            return outgoing[index].to_node_id

    if choice is None and len(outgoing) == 1:
        return outgoing[0].to_node_id

    return None


class WorkflowService:
    """Coordinates the parser, definition store, instance manager and dispatcher.

    Instances default to the workflow's own ID, so a single imported diagram
    can be driven without naming an instance. Operations on one instance are
    serialized; distinct instances proceed independently.
    """

    def __init__(
        self,
        definition_store: WorkflowDefinitionStore,
        instance_manager: InMemoryWorkflowInstanceManager,
        dispatcher: ActionDispatcher,
        auto_execute_actions: bool = True,
        default_workflow_name: str = DEFAULT_WORKFLOW_NAME
    ):
        self._definition_store = definition_store
        self._instance_manager = instance_manager
        self._dispatcher = dispatcher
        self._auto_execute_actions = auto_execute_actions
        self._default_workflow_name = default_workflow_name
        self._instance_locks: Dict[str, asyncio.Lock] = {}
        self._last_dispatch: Dict[str, DispatchResult] = {}
        self.last_import_warnings: List[str] = []

    @property
    def instance_manager(self) -> InMemoryWorkflowInstanceManager:
        return self._instance_manager

    @asynccontextmanager
    async def _instance_guard(self, workflow_id: str, instance_id: str) -> AsyncIterator[None]:
        """Hold an instance's lock and check it runs ``workflow_id``.

        A lock dropped by :meth:`remove_instance` while a caller waited on it is
        no longer registered, so the caller retries with the current one.
        """
        while True:
            lock = self._instance_locks.setdefault(instance_id, asyncio.Lock())
            async with lock:
                if self._instance_locks.get(instance_id) is not lock:
                    continue
                self._check_binding(workflow_id, instance_id)
                yield
                return

    def _require_definition(self, workflow_id: str) -> WorkflowDefinition:
        if not workflow_id or not workflow_id.strip():
            raise WorkflowNotFoundError("Workflow ID cannot be empty")
        definition = self._definition_store.get_by_id(workflow_id)
        if definition is None:
            raise WorkflowNotFoundError(f"Unknown workflow id: {workflow_id}", workflow_id=workflow_id)
        return definition

    def _check_binding(self, workflow_id: str, instance_id: str) -> None:
        bound = self._instance_manager.get_definition_id(instance_id)
        if bound is not None and bound != workflow_id:
            raise InstanceStateError(
                f"Instance '{instance_id}' runs workflow '{bound}', not '{workflow_id}'",
                instance_id=instance_id,
                operation="resolve_instance"
            )

    async def import_workflow(
        self,
        text: str,
        workflow_id: Optional[str] = None,
        name: Optional[str] = None
    ) -> WorkflowDefinition:
        """Compile and store a diagram, then start its default instance.

        An already stored definition with the same ID is reused as is.

        Raises:
            DiagramParseError: If the text is empty or yields no nodes
        """
        if not text or not text.strip():
            raise DiagramParseError("Diagram text is empty")

        if workflow_id and self._definition_store.exists(workflow_id):
            logger.info(f"Workflow '{workflow_id}' already imported, reusing stored definition")
            self.last_import_warnings = []
            await self.start_instance(workflow_id)
            return self._require_definition(workflow_id)

        parser = ActivityDiagramParser(text)
        definition = parser.parse(workflow_id, name or self._default_workflow_name)
        self.last_import_warnings = parser.warnings
        for warning in self.last_import_warnings:
            logger.warning(f"Workflow '{definition.id}' import: {warning}")

        self._definition_store.store(definition)
        await self.start_instance(definition.id)

        logger.info(
            f"Imported workflow '{definition.name}' ({definition.id}) with "
            f"{len(definition.nodes)} nodes and {len(definition.transitions)} transitions"
        )
        return definition

    async def start_instance(self, workflow_id: str, instance_id: Optional[str] = None) -> Optional[str]:
        """Place an instance at the start node unless it is already running.

        Returns:
            The instance's current node ID after starting

        Raises:
            WorkflowNotFoundError: If the workflow is not stored
        """
        definition = self._require_definition(workflow_id)
        instance_id = instance_id or workflow_id
        async with self._instance_guard(workflow_id, instance_id):
            return await self._start(definition, instance_id)

    async def _start(self, definition: WorkflowDefinition, instance_id: str) -> Optional[str]:
        self._instance_manager.bind_definition(instance_id, definition.id)

        current = self._instance_manager.get_current_node_id(instance_id)
        if current is not None:
            logger.debug(f"Instance '{instance_id}' already at node '{current}'")
            return current

        start_node_id = calculate_start_node(definition)
        self._instance_manager.set_current_node_id(instance_id, start_node_id)
        logger.info(f"Started workflow '{definition.id}' instance '{instance_id}' at node '{start_node_id}'")

        # An action on a skipped "start" node still runs, without moving the instance
        declared = definition.start_points[0].node_id if definition.start_points else (
            definition.nodes[0].id if definition.nodes else None
        )
        if declared and declared != start_node_id:
            declared_node = definition.get_node(declared)
            if declared_node is not None and self._dispatcher.extract_action(declared_node) is not None:
                await self._run_node_action(definition, instance_id, declared_node, advance=False)

        start_node = definition.get_node(start_node_id)
        if start_node is not None:
            await self._run_node_action(definition, instance_id, start_node)

        return self._instance_manager.get_current_node_id(instance_id)

    async def restart_instance(self, workflow_id: str, instance_id: Optional[str] = None) -> Optional[str]:
        """Reset an instance to the start node and rerun its start action.

        Variables are kept; only the position is reset.

        Returns:
            The instance's current node ID after restarting
        """
        definition = self._require_definition(workflow_id)
        instance_id = instance_id or workflow_id
        async with self._instance_guard(workflow_id, instance_id):
            logger.debug(f"Restarting workflow '{workflow_id}' instance '{instance_id}'")
            self._instance_manager.clear_current_node_id(instance_id)
            return await self._start(definition, instance_id)

    async def get_current_state_payload(
        self,
        workflow_id: str,
        instance_id: Optional[str] = None
    ) -> WorkflowStatePayload:
        """Calculate the payload for the node the instance is at."""
        definition = self._require_definition(workflow_id)
        instance_id = instance_id or workflow_id
        self._check_binding(workflow_id, instance_id)
        current = self._instance_manager.get_current_node_id(instance_id)
        return calculate_current_payload(definition, current)

    async def advance_by_choice(
        self,
        workflow_id: str,
        choice: Choice = None,
        instance_id: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> bool:
        """Move an instance along the transition selected by ``choice``.

        Args:
            workflow_id: Workflow to advance
            choice: Target node ID, target label, index or numeric string;
                None follows the only outgoing transition
            instance_id: Instance to advance, defaults to the workflow ID
            cancel_event: Cancellation signal forwarded to the entered node's action

        Returns:
            True if the instance moved, False if the choice matched nothing
        """
        definition = self._require_definition(workflow_id)
        instance_id = instance_id or workflow_id
        async with self._instance_guard(workflow_id, instance_id):
            current = self._instance_manager.get_current_node_id(instance_id)
            if current is None:
                current = await self._start(definition, instance_id)

            outgoing = definition.outgoing_transitions(current)
            if not outgoing:
                logger.debug(f"Instance '{instance_id}' at '{current}' has no outgoing transitions")
                return False

            target = resolve_choice(outgoing, definition, choice)
            if target is None:
                logger.info(f"Choice {choice!r} does not match any transition from '{current}'")
                return False

            self._instance_manager.set_current_node_id(instance_id, target)
            logger.info(f"Advanced workflow '{workflow_id}' instance '{instance_id}' to node '{target}'")

            node = definition.get_node(target)
            if node is not None:
                await self._run_node_action(definition, instance_id, node, cancel_event=cancel_event)
            return True

    async def _run_node_action(
        self,
        definition: WorkflowDefinition,
        instance_id: str,
        node: WorkflowNode,
        advance: bool = True,
        cancel_event: Optional[asyncio.Event] = None
    ) -> Optional[DispatchResult]:
        """Dispatch a node's action; a completed action on a linear node moves one hop on."""
        if not self._auto_execute_actions:
            return None

        result = await self._dispatcher.dispatch(instance_id, node, definition, cancel_event=cancel_event)
        if result.status == DispatchStatus.NO_ACTION:
            return result

        self._last_dispatch[instance_id] = result
        if advance and result.success:
            outgoing = definition.outgoing_transitions(node.id)
            if len(outgoing) == 1:
                self._instance_manager.set_current_node_id(instance_id, outgoing[0].to_node_id)
                logger.debug(f"Action on '{node.id}' completed, advanced to '{outgoing[0].to_node_id}'")
        return result

    async def remove_instance(self, workflow_id: str, instance_id: Optional[str] = None) -> bool:
        """Forget an instance along with its lock and last dispatch outcome.

        Returns:
            True if the instance existed

        Raises:
            WorkflowNotFoundError: If the workflow is not stored
            InstanceStateError: If the instance runs another workflow
        """
        self._require_definition(workflow_id)
        instance_id = instance_id or workflow_id
        async with self._instance_guard(workflow_id, instance_id):
            removed = self._instance_manager.remove_instance(instance_id)
            self._last_dispatch.pop(instance_id, None)
            self._instance_locks.pop(instance_id, None)
        if removed:
            logger.info(f"Removed workflow '{workflow_id}' instance '{instance_id}'")
        return removed

    def get_last_dispatch(self, instance_id: str) -> Optional[DispatchResult]:
        """Most recent non-trivial dispatch outcome for an instance."""
        return self._last_dispatch.get(instance_id)

    def get_current_node_id(self, workflow_id: str, instance_id: Optional[str] = None) -> Optional[str]:
        if not workflow_id or not workflow_id.strip():
            return None
        return self._instance_manager.get_current_node_id(instance_id or workflow_id)

    def workflow_exists(self, workflow_id: str) -> bool:
        if not workflow_id or not workflow_id.strip():
            return False
        return self._definition_store.exists(workflow_id)

    def list_workflow_ids(self) -> List[str]:
        return self._definition_store.list_ids()

    def get_definition(self, workflow_id: str) -> WorkflowDefinition:
        """Fetch a stored definition.

        Raises:
            WorkflowNotFoundError: If the workflow is not stored
        """
        return self._require_definition(workflow_id)
