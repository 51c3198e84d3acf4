"""Action handler registry for dispatching node actions by name."""

import inspect
import threading
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Union

from ..models.core import WorkflowDefinition, WorkflowNode
from .exceptions import ActionRegistryError
from .logging import get_logger

logger = get_logger(__name__)

HandlerResult = Optional[Mapping[str, Any]]


@dataclass(frozen=True)
class ActionHandlerContext:
    """What a handler knows about the dispatch it serves."""
    instance_id: str
    node: WorkflowNode
    definition: WorkflowDefinition
    instance_manager: Any


class WorkflowActionHandler:
    """Base class for named action handlers.

    ``handle`` may be a plain method or a coroutine function. It returns a
    mapping of variable updates, or None for no updates.
    """

    name: str = ""
    description: str = ""

    def handle(self, context: ActionHandlerContext, params: Dict[str, str]) -> Union[HandlerResult, Awaitable[HandlerResult]]:
        raise NotImplementedError

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self.handle)


class FunctionActionHandler(WorkflowActionHandler):
    """Adapter turning a plain callable into a handler.

    The callable receives ``(context, params)``, or just ``params`` when it
    declares a single parameter.
    """

    def __init__(self, name: str, function: Callable, description: str = ""):
        self.name = name
        self.description = description or (inspect.getdoc(function) or "").split("\n")[0]
        self._function = function
        try:
            positional = [
                p for p in inspect.signature(function).parameters.values()
                if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD)
            ]
        except (ValueError, TypeError) as e:
            raise ActionRegistryError(
                f"Cannot inspect function signature for action '{name}': {e}",
                action_name=name
            )
        self._params_only = len(positional) == 1

    def handle(self, context: ActionHandlerContext, params: Dict[str, str]):
        if self._params_only:
            return self._function(params)
        return self._function(context, params)

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self._function)


class ActionHandlerRegistry:
    """Thread-safe name to handler map; names are case-insensitive."""

    def __init__(self):
        self._lock = threading.RLock()
        self._handlers: Dict[str, WorkflowActionHandler] = {}

    def register_handler(
        self,
        name: str,
        handler: Union[WorkflowActionHandler, Callable],
        description: str = "",
        replace: bool = False
    ) -> WorkflowActionHandler:
        """Register a handler under an action name.

        Args:
            name: Action name referenced by node metadata
            handler: A WorkflowActionHandler, or a callable to wrap
            description: Optional description of the action
            replace: Overwrite an existing registration instead of failing

        Returns:
            The registered handler

        Raises:
            ActionRegistryError: If the name is empty, the handler is not callable,
                or the name is taken and ``replace`` is False
        """
        if not name or not name.strip():
            raise ActionRegistryError("Action name cannot be empty", operation="register")

        name = name.strip()

        if not isinstance(handler, WorkflowActionHandler):
            if not callable(handler):
                raise ActionRegistryError(
                    f"Handler for action '{name}' must be callable",
                    action_name=name,
                    operation="register"
                )
            handler = FunctionActionHandler(name, handler, description)
        else:
            if not handler.name:
                handler.name = name
            if description:
                handler.description = description

        key = name.casefold()
        with self._lock:
            if key in self._handlers and not replace:
                raise ActionRegistryError(
                    f"Action '{name}' is already registered",
                    action_name=name,
                    operation="register"
                )
            self._handlers[key] = handler

        logger.info(f"Registered action handler '{name}'")
        return handler

    def get_handler(self, name: Optional[str]) -> Optional[WorkflowActionHandler]:
        """Look up a handler; returns None for unknown or blank names."""
        if not name or not name.strip():
            return None
        with self._lock:
            return self._handlers.get(name.strip().casefold())

    def handler_exists(self, name: Optional[str]) -> bool:
        return self.get_handler(name) is not None

    def unregister_handler(self, name: str) -> bool:
        """Remove a handler.

        Returns:
            True if the handler was removed, False if it was not registered

        Raises:
            ActionRegistryError: If the name is empty
        """
        if not name or not name.strip():
            raise ActionRegistryError("Action name cannot be empty", operation="unregister")
        with self._lock:
            removed = self._handlers.pop(name.strip().casefold(), None)
        if removed is not None:
            logger.info(f"Unregistered action handler '{name}'")
        return removed is not None

    def list_handlers(self) -> Dict[str, str]:
        """Map registered handler names to their descriptions."""
        with self._lock:
            return {handler.name: handler.description for handler in self._handlers.values()}
