"""Action handlers shipped with the workflow engine."""

from .builtin_handlers import (
    set_variables,
    log_message,
    DEFAULT_HANDLERS
)

__all__ = [
    "set_variables",
    "log_message",
    "DEFAULT_HANDLERS"
]
