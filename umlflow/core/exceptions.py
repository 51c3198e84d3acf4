"""Custom exceptions for the workflow engine with detailed error information."""

from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for categorizing exceptions."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categories of errors for better classification."""
    VALIDATION = "validation"
    EXECUTION = "execution"
    STORAGE = "storage"
    CONFIGURATION = "configuration"


class WorkflowEngineError(Exception):
    """Base exception for all workflow engine errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.EXECUTION,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.severity = severity
        self.category = category
        self.details = details or {}
        self.recoverable = recoverable
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging and API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "exception_type": self.__class__.__name__
        }

    def add_context(self, **kwargs):
        """Add additional context to the exception."""
        self.context.update(kwargs)
        return self

    def add_details(self, **kwargs):
        """Add additional details to the exception."""
        self.details.update(kwargs)
        return self


class DiagramParseError(WorkflowEngineError):
    """Raised when a diagram document cannot be compiled into a workflow."""

    def __init__(
        self,
        message: str,
        line_number: Optional[int] = None,
        warnings: Optional[List[str]] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        self.warnings = warnings or []
        if line_number is not None:
            self.add_context(line_number=line_number)
        if warnings:
            self.add_details(warnings=warnings)


class WorkflowNotFoundError(WorkflowEngineError):
    """Raised when a workflow definition is not present in the store."""

    def __init__(self, message: str, workflow_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.STORAGE,
            **kwargs
        )
        if workflow_id:
            self.add_context(workflow_id=workflow_id)


class InstanceStateError(WorkflowEngineError):
    """Raised when instance state operations fail."""

    def __init__(
        self,
        message: str,
        instance_id: Optional[str] = None,
        operation: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.STORAGE,
            **kwargs
        )
        if instance_id:
            self.add_context(instance_id=instance_id)
        if operation:
            self.add_context(operation=operation)


class ActionRegistryError(WorkflowEngineError):
    """Raised when action handler registry operations fail."""

    def __init__(
        self,
        message: str,
        action_name: Optional[str] = None,
        operation: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if action_name:
            self.add_context(action_name=action_name)
        if operation:
            self.add_context(operation=operation)


class ActionDispatchError(WorkflowEngineError):
    """Raised when the dispatcher itself cannot run, as opposed to a failing handler."""

    def __init__(
        self,
        message: str,
        action_name: Optional[str] = None,
        instance_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        if action_name:
            self.add_context(action_name=action_name)
        if instance_id:
            self.add_context(instance_id=instance_id)


class ConfigurationError(WorkflowEngineError):
    """Raised when configuration is invalid or missing."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if config_key:
            self.add_context(config_key=config_key)


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """Create a standardized error response from a WorkflowEngineError."""
    return {
        "error": error.error_code,
        "message": error.message,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "timestamp": error.timestamp.isoformat()
        },
        "context": error.context
    }
