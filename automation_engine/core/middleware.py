"""Middleware for error handling and request logging."""

import re
import time
import uuid
from datetime import datetime
from typing import Callable
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .exceptions import WorkflowEngineError, create_error_response
from .logging import get_logger, set_logging_context, clear_logging_context


logger = get_logger(__name__)

TRIGGER_PATH = re.compile(r"/triggers/(?P<kind>[\w-]+)/(?P<workflow_id>[^/]+)$")


def trigger_context(path: str) -> dict:
    """Trigger kind and workflow id for trigger routes, empty for anything else."""
    match = TRIGGER_PATH.search(path)
    if not match:
        return {}
    return {"trigger_kind": match.group("kind"), "workflow_id": match.group("workflow_id")}


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Assigns a request id and maps escaped engine errors to HTTP responses."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.time()

        set_logging_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            client_ip=request.client.host if request.client else "unknown",
            **trigger_context(request.url.path)
        )

        try:
            logger.info(f"Request started: {request.method} {request.url.path}")

            response = await call_next(request)

            duration = time.time() - start_time
            logger.info(
                f"Request completed: {request.method} {request.url.path} - "
                f"Status: {response.status_code} - Duration: {duration:.3f}s"
            )

            response.headers["X-Request-ID"] = request_id
            return response

        except WorkflowEngineError as e:
            duration = time.time() - start_time
            logger.warning(
                f"Workflow engine error: {request.method} {request.url.path} - "
                f"Error: {e.error_code} - Duration: {duration:.3f}s",
                extra={"extra_fields": {"error_details": e.to_dict()}}
            )

            headers = {"X-Request-ID": request_id}
            if e.http_status == 503 and e.retry_after:
                headers["Retry-After"] = str(e.retry_after)

            return JSONResponse(
                status_code=e.http_status,
                content=create_error_response(e),
                headers=headers
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
                        "timestamp": datetime.utcnow().isoformat()
                    },
                    "request_id": request_id
                },
                headers={"X-Request-ID": request_id}
            )

        finally:
            clear_logging_context()


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Debug-level request/response logging with credential headers masked."""

    MASKED_HEADERS = {
        "authorization", "x-upload-token", "x-webhook-key", "x-webhook-signature",
        "x-mailgun-signature", "x-postmark-signature", "x-sendgrid-signature", "x-hub-signature-256",
    }
    MASKED_QUERY_PARAMS = {"token"}

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()

        headers = {
            key: ("***" if key.lower() in self.MASKED_HEADERS else value)
            for key, value in request.headers.items()
        }
        query = {
            key: ("***" if key.lower() in self.MASKED_QUERY_PARAMS else value)
            for key, value in request.query_params.items()
        }
        logger.debug(f"Request details: {request.method} {request.url.path} - Query: {query} - Headers: {headers}")

        response = await call_next(request)

        duration = time.time() - start_time
        logger.debug(f"Response details: Status {response.status_code} - Duration: {duration:.3f}s")

        return response


class PerformanceMonitoringMiddleware(BaseHTTPMiddleware):
    """Flags slow requests and reports response time."""

    def __init__(self, app, slow_request_threshold: float = 5.0):
        super().__init__(app)
        self.slow_request_threshold = slow_request_threshold

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()

        response = await call_next(request)

        duration = time.time() - start_time
        if duration > self.slow_request_threshold:
            logger.warning(
                f"Slow request detected: {request.method} {request.url.path} - "
                f"Duration: {duration:.3f}s (threshold: {self.slow_request_threshold}s)"
            )

        response.headers["X-Response-Time"] = f"{duration:.3f}s"
        return response
