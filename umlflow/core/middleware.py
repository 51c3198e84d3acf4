"""Middleware for request tracing and error handling."""

import time
import uuid
from datetime import datetime, timezone
from typing import Callable
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .exceptions import (
    DiagramParseError,
    InstanceStateError,
    WorkflowEngineError,
    WorkflowNotFoundError,
    create_error_response,
)
from .logging import get_logger, set_logging_context, clear_logging_context


logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def get_status_code_for_error(error: WorkflowEngineError) -> int:
    """Map a workflow engine error onto an HTTP status code."""
    if isinstance(error, DiagramParseError):
        return 400
    if isinstance(error, WorkflowNotFoundError):
        return 404
    if isinstance(error, InstanceStateError):
        return 409
    return 500


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Tags each request with an ID and turns engine errors into JSON responses."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Process request with error handling."""
        # Reuse a caller-supplied ID so traces span services
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        start_time = time.time()

        set_logging_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path
        )

        try:
            response = await call_next(request)
            duration = time.time() - start_time
            logger.info(
                f"Request completed: {request.method} {request.url.path} - "
                f"Status: {response.status_code} - Duration: {duration:.3f}s"
            )
            response.headers[REQUEST_ID_HEADER] = request_id
            return response

        except WorkflowEngineError as e:
            duration = time.time() - start_time
            logger.warning(
                f"Workflow engine error: {request.method} {request.url.path} - "
                f"Error: {e.error_code} - Duration: {duration:.3f}s"
            )
            return JSONResponse(
                status_code=get_status_code_for_error(e),
                content=create_error_response(e),
                headers={REQUEST_ID_HEADER: request_id}
            )

        except Exception as e:
            duration = time.time() - start_time
            logger.error(
                f"Unexpected error: {request.method} {request.url.path} - "
                f"Error: {str(e)} - Duration: {duration:.3f}s",
                exc_info=True
            )
            return JSONResponse(
                status_code=500,
                content={
                    "error": "InternalServerError",
                    "message": "An unexpected error occurred",
                    "details": {
                        "error_type": type(e).__name__,
                        "timestamp": datetime.now(timezone.utc).isoformat()
                    },
                    "request_id": request_id
                },
                headers={REQUEST_ID_HEADER: request_id}
            )

        finally:
            clear_logging_context()
