"""Built-in action handlers available to every workflow."""

from typing import Dict, Optional

from ..core.action_registry import ActionHandlerContext
from ..core.logging import get_logger

logger = get_logger(__name__)


def set_variables(context: ActionHandlerContext, params: Dict[str, str]) -> Dict[str, str]:
    """
    Copy every parameter into the instance's variables.

    Args:
        context: Dispatch context
        params: Resolved action parameters

    Returns:
        The parameters, applied as variable updates
    """
    logger.debug(f"Setting {len(params)} variables on instance '{context.instance_id}'")
    return dict(params)


def log_message(context: ActionHandlerContext, params: Dict[str, str]) -> Optional[Dict[str, str]]:
    """
    Log the ``message`` parameter at the requested ``level``.

    Returns:
        ``last_message`` update carrying the logged text
    """
    message = params.get("message", "")
    level = params.get("level", "info").lower()
    if level not in ("debug", "info", "warning", "error"):
        level = "info"
    log = getattr(logger, level)
    log(f"[{context.instance_id}:{context.node.id}] {message}")
    return {"last_message": message}


DEFAULT_HANDLERS = [
    ("set_variables", set_variables, "Store the action parameters as instance variables"),
    ("log_message", log_message, "Log a message from the workflow"),
]
