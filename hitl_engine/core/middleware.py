"""Request middleware: request ids, access logging and engine error responses."""

import time
import uuid
from datetime import datetime
from typing import Callable, Dict, Type

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .exceptions import (
    DefinitionError,
    PersistenceError,
    ResumeError,
    WorkflowEngineError,
    create_error_response,
)
from .logging import clear_logging_context, get_logger, set_logging_context


logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

# Checked in order; the first matching class wins
_STATUS_BY_ERROR: Dict[Type[WorkflowEngineError], int] = {
    DefinitionError: 422,
    PersistenceError: 503,
}


def status_code_for_error(error: WorkflowEngineError) -> int:
    """HTTP status for an engine error: 404/409 for resumes, 422, 503, else 500."""
    if isinstance(error, ResumeError):
        return 404 if error.not_found else 409
    for error_type, status_code in _STATUS_BY_ERROR.items():
        if isinstance(error, error_type):
            return status_code
    return 500


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Gives each request an id and converts errors that escape a route into JSON."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        route = f"{request.method} {request.url.path}"
        started = time.perf_counter()
        set_logging_context(request_id=request_id)

        try:
            response = await call_next(request)
        except WorkflowEngineError as e:
            logger.warning(f"{route} raised {e.error_code}: {e.message}")
            response = JSONResponse(status_code=status_code_for_error(e), content=create_error_response(e))
        except Exception as e:
            logger.error(f"{route} raised {type(e).__name__}: {str(e)}", exc_info=True)
            response = JSONResponse(
                status_code=500,
                content={
                    "error": "InternalServerError",
                    "message": "An unexpected error occurred",
                    "details": {"error_type": type(e).__name__},
                    "timestamp": datetime.utcnow().isoformat(),
                    "request_id": request_id,
                }
            )
        finally:
            clear_logging_context()

        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info(f"{route} -> {response.status_code} in {elapsed_ms:.1f}ms")
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
