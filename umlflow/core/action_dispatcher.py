"""Action dispatch: resolve node metadata, run the handler, apply its updates."""

import asyncio
import functools
import logging
import re
import time
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Optional

from ..models.core import (
    ActionDescriptor,
    DispatchResult,
    DispatchStatus,
    WorkflowDefinition,
    WorkflowNode,
)
from .action_registry import ActionHandlerContext, ActionHandlerRegistry, WorkflowActionHandler
from .instance_manager import InMemoryWorkflowInstanceManager
from .exceptions import ActionDispatchError
from .logging import get_logger, log_with_context
from .metadata import extract_action_descriptor

logger = get_logger(__name__)

TEMPLATE_PATTERN = re.compile(r"\{\{\s*(?P<key>[a-zA-Z0-9_.]+)\s*\}\}")


def resolve_templates(params: Mapping, variables: Optional[Mapping]) -> Dict[str, str]:
    """Replace ``{{ name }}`` markers with instance variables.

    Variable names match case-insensitively; unknown names become empty strings.
    """
    lookup = {str(key).casefold(): value for key, value in (variables or {}).items()}

    def substitute(match):
        value = lookup.get(match.group("key").casefold())
        return "" if value is None else str(value)

    return {key: TEMPLATE_PATTERN.sub(substitute, value or "") for key, value in params.items()}


class ActionDispatcher:
    """Runs the action embedded in a node against one workflow instance.

    Exactly one handler invocation happens per dispatch. Synchronous handlers
    run on a thread pool so they never block the event loop. Handler failures,
    timeouts and cancellation are reported through the returned
    :class:`DispatchResult` and never leave partial updates behind.
    """

    def __init__(
        self,
        registry: ActionHandlerRegistry,
        instance_manager: InMemoryWorkflowInstanceManager,
        handler_timeout: Optional[float] = None,
        max_workers: int = 4
    ):
        """Initialize the dispatcher.

        Args:
            registry: Registry used to look up handlers by action name
            instance_manager: Source of template variables and target of updates
            handler_timeout: Seconds a handler may run, None for no limit
            max_workers: Thread pool size for synchronous handlers
        """
        self._registry = registry
        self._instance_manager = instance_manager
        self._handler_timeout = handler_timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="umlflow-action")
        self._closed = False

    @property
    def registry(self) -> ActionHandlerRegistry:
        return self._registry

    @staticmethod
    def extract_action(node: Optional[WorkflowNode]) -> Optional[ActionDescriptor]:
        """Action descriptor of a node, from json_metadata or a JSON note."""
        return extract_action_descriptor(node)

    async def dispatch(
        self,
        instance_id: str,
        node: WorkflowNode,
        definition: WorkflowDefinition,
        cancel_event: Optional[asyncio.Event] = None
    ) -> DispatchResult:
        """Dispatch the action attached to ``node``.

        Args:
            instance_id: Instance whose variables feed the templates and receive updates
            node: Node carrying the action metadata
            definition: Definition the node belongs to
            cancel_event: Optional signal; once set the handler is abandoned

        Returns:
            The dispatch outcome; only a completed dispatch carries updates

        Raises:
            ActionDispatchError: If the dispatcher has been shut down
        """
        if self._closed:
            raise ActionDispatchError("Action dispatcher has been shut down", instance_id=instance_id)

        descriptor = self.extract_action(node)
        if descriptor is None:
            return DispatchResult(status=DispatchStatus.NO_ACTION)

        variables = self._instance_manager.get_variables(instance_id)
        params = resolve_templates(descriptor.params, variables)
        action_name = descriptor.action

        handler = self._registry.get_handler(action_name)
        if handler is None:
            log_with_context(
                logger, logging.WARNING,
                f"No handler registered for action '{action_name}'",
                instance_id=instance_id, node_id=node.id, action=action_name
            )
            return DispatchResult(
                status=DispatchStatus.UNKNOWN_ACTION,
                action_name=action_name,
                parameters=params,
                error=f"No handler registered for action '{action_name}'"
            )

        if cancel_event is not None and cancel_event.is_set():
            return self._cancelled(instance_id, action_name, params)

        context = ActionHandlerContext(
            instance_id=instance_id,
            node=node,
            definition=definition,
            instance_manager=self._instance_manager,
        )

        start_time = time.time()
        try:
            raw_updates = await self._invoke(handler, context, params, cancel_event)
        except asyncio.TimeoutError:
            log_with_context(
                logger, logging.WARNING,
                f"Action '{action_name}' timed out after {self._handler_timeout}s",
                instance_id=instance_id, node_id=node.id, action=action_name
            )
            return DispatchResult(
                status=DispatchStatus.TIMED_OUT,
                action_name=action_name,
                parameters=params,
                error=f"Handler timed out after {self._handler_timeout}s"
            )
        except asyncio.CancelledError:
            return self._cancelled(instance_id, action_name, params)
        except Exception as e:
            log_with_context(
                logger, logging.ERROR,
                f"Action handler for '{action_name}' raised: {e}",
                exc_info=True,
                instance_id=instance_id, node_id=node.id, action=action_name
            )
            return DispatchResult(
                status=DispatchStatus.FAILED,
                action_name=action_name,
                parameters=params,
                error=str(e) or type(e).__name__
            )

        if raw_updates is not None and not isinstance(raw_updates, Mapping):
            logger.error(f"Action '{action_name}' returned {type(raw_updates).__name__} instead of a mapping")
            return DispatchResult(
                status=DispatchStatus.FAILED,
                action_name=action_name,
                parameters=params,
                error="Handler result must be a mapping of variable updates"
            )

        updates = {
            str(key): "" if value is None else str(value)
            for key, value in (raw_updates or {}).items()
        }
        self._instance_manager.apply_updates(instance_id, updates)

        duration_ms = (time.time() - start_time) * 1000
        log_with_context(
            logger, logging.INFO,
            f"Action '{action_name}' handled in {duration_ms:.1f}ms with {len(updates)} updates",
            instance_id=instance_id, node_id=node.id, action=action_name, duration_ms=duration_ms
        )
        return DispatchResult(
            status=DispatchStatus.COMPLETED,
            action_name=action_name,
            parameters=params,
            updates=updates
        )

    async def _invoke(
        self,
        handler: WorkflowActionHandler,
        context: ActionHandlerContext,
        params: Dict[str, str],
        cancel_event: Optional[asyncio.Event]
    ):
        if handler.is_async:
            call = handler.handle(context, dict(params))
        else:
            loop = asyncio.get_running_loop()
            call = loop.run_in_executor(self._executor, functools.partial(handler.handle, context, dict(params)))

        task = asyncio.ensure_future(call)
        if cancel_event is None:
            return await asyncio.wait_for(task, timeout=self._handler_timeout)

        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter},
                timeout=self._handler_timeout,
                return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        if waiter in done:
            raise asyncio.CancelledError()
        raise asyncio.TimeoutError()

    def _cancelled(self, instance_id: str, action_name: str, params: Dict[str, str]) -> DispatchResult:
        log_with_context(
            logger, logging.INFO,
            f"Action '{action_name}' execution cancelled",
            instance_id=instance_id, action=action_name
        )
        return DispatchResult(
            status=DispatchStatus.CANCELLED,
            action_name=action_name,
            parameters=params,
            error="Dispatch cancelled"
        )

    def shutdown(self, wait: bool = True) -> None:
        """Release the handler thread pool."""
        self._closed = True
        self._executor.shutdown(wait=wait)
        logger.info("Action dispatcher shutdown completed")
