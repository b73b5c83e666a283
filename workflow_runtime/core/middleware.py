"""HTTP middleware: request IDs, engine error translation and request timing."""

import time
import uuid
from typing import Callable, Tuple, Type

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from ..models.core import utcnow
from .exceptions import (
    ExecutionContextError,
    ExecutionNotFoundError,
    ExpressionError,
    JobQueueError,
    NodeTypeNotRegisteredError,
    StorageError,
    TransientError,
    WorkflowConfigurationError,
    WorkflowEngineError,
    WorkflowNotFoundError,
    WorkflowValidationError,
    create_error_response,
)
from .logging import clear_logging_context, get_logger, set_logging_context


logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

# First match wins; anything else is a server-side fault
_ERROR_STATUS: Tuple[Tuple[Tuple[Type[WorkflowEngineError], ...], int], ...] = (
    ((WorkflowNotFoundError, ExecutionNotFoundError), 404),
    ((WorkflowValidationError, WorkflowConfigurationError, ExecutionContextError,
      ExpressionError, NodeTypeNotRegisteredError), 400),
    ((JobQueueError, StorageError, TransientError), 503),
)


def get_status_code_for_error(error: WorkflowEngineError) -> int:
    """Map a workflow engine error to an HTTP status code."""
    for error_types, status_code in _ERROR_STATUS:
        if isinstance(error, error_types):
            return status_code
    return 500


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Tags each request with an ID and turns uncaught errors into JSON responses."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        set_logging_context(request_id=request_id)
        label = f"{request.method} {request.url.path}"

        try:
            response = await call_next(request)
            logger.debug(f"{label} -> {response.status_code}")
        except WorkflowEngineError as e:
            logger.warning(f"{label} failed with {e.error_code}: {e.message}")
            response = JSONResponse(status_code=get_status_code_for_error(e), content=create_error_response(e))
        except Exception as e:
            logger.error(f"{label} raised an unexpected error: {str(e)}", exc_info=True)
            response = JSONResponse(
                status_code=500,
                content={
                    "error": "InternalServerError",
                    "message": "An unexpected error occurred",
                    "details": {"error_type": type(e).__name__, "timestamp": utcnow().isoformat()},
                    "request_id": request_id
                }
            )
        finally:
            clear_logging_context()

        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class PerformanceMonitoringMiddleware(BaseHTTPMiddleware):
    """Adds an X-Response-Time header and warns about slow requests."""

    def __init__(self, app, slow_request_threshold: float = 5.0):
        super().__init__(app)
        self.slow_request_threshold = slow_request_threshold

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - started

        if duration > self.slow_request_threshold:
            logger.warning(
                f"Slow request: {request.method} {request.url.path} took {duration:.3f}s "
                f"(threshold {self.slow_request_threshold}s)"
            )
        response.headers["X-Response-Time"] = f"{duration:.3f}s"
        return response
