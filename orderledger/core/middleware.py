"""
Request/Response logging middleware for API observability.

The raw body is read once and cached on `request.state.body` so the settlement
webhook signature check can verify exactly the bytes that were received.
Sensitive keys, headers and query parameters are redacted before logging.
"""

import time
import logging
import json
from typing import Any, Callable, Set
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from orderledger.core.monitoring import error_monitor


SENSITIVE_KEYS: Set[str] = {
    "password", "passwd", "pass",
    "token", "access_token", "refresh_token", "auth_token", "bearer",
    "secret", "secret_key", "client_secret",
    "key", "api_key", "apikey", "private_key",
    "authorization", "auth",
    "session_id", "session", "cookie",
    "hmac", "signature", "x_signature",
    "bankreceivenumber", "bank_receive_number",
}

SENSITIVE_HEADERS: Set[str] = {
    "authorization", "cookie", "set-cookie",
    "x-signature", "x-api-key", "x-internal-secret", "x-monitoring-key",
}


def _sanitize_value(data: Any, depth: int = 0) -> Any:
    """Recursively redact sensitive data from dicts and lists."""
    if depth > 10:
        return "[DEPTH_LIMIT]"

    if isinstance(data, dict):
        sanitized = {}
        for key, value in data.items():
            if key.lower() in SENSITIVE_KEYS:
                sanitized[key] = "[REDACTED]"
            else:
                sanitized[key] = _sanitize_value(value, depth + 1)
        return sanitized

    elif isinstance(data, list):
        return [_sanitize_value(item, depth + 1) for item in data]

    return data


def _sanitize_headers(headers: dict) -> dict:
    return {
        k: ("[REDACTED]" if k.lower() in SENSITIVE_HEADERS else v)
        for k, v in headers.items()
    }


def _sanitize_query_params(params: dict) -> dict:
    return {
        k: ("[REDACTED]" if k.lower() in SENSITIVE_KEYS else v)
        for k, v in params.items()
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for logging HTTP requests and responses with safe sanitization."""

    def __init__(self, app, logger_name: str = "orderledger.requests", log_bodies: bool = True):
        super().__init__(app)
        self.logger = logging.getLogger(logger_name)
        self.log_bodies = log_bodies

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()

        request_id = f"req_{int(start_time * 1000)}"
        request.state.request_id = request_id

        if request.method in ("POST", "PUT", "PATCH"):
            request.state.body = await request.body()
        else:
            request.state.body = b""

        self._log_request(request, request_id)

        try:
            response = await call_next(request)
        except Exception as e:
            error_monitor.log_error(e, {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "process_time": time.time() - start_time,
                "context": "middleware_error",
            })
            raise

        process_time = time.time() - start_time
        self._log_response(request, response, request_id, process_time)
        response.headers["X-Request-ID"] = request_id
        return response

    def _log_request(self, request: Request, request_id: str):
        client_ip = request.client.host if request.client else "unknown"

        self.logger.info(
            f"[{request_id}] {request.method} {request.url.path} - Request started",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "query_params": _sanitize_query_params(dict(request.query_params)),
                "client_ip": client_ip,
            },
        )

        body = request.state.body
        if body and self.log_bodies and self._should_log_body(request):
            try:
                sanitized = _sanitize_value(json.loads(body.decode()))
                self.logger.debug(f"[{request_id}] Request body: {json.dumps(sanitized)}")
            except (json.JSONDecodeError, UnicodeDecodeError):
                pass

    def _log_response(self, request: Request, response: Response, request_id: str, process_time: float):
        status_code = response.status_code
        level = logging.INFO if status_code < 400 else logging.WARNING if status_code < 500 else logging.ERROR

        self.logger.log(
            level,
            f"[{request_id}] {request.method} {request.url.path} - {status_code} - {process_time:.3f}s",
            extra={
                "request_id": request_id,
                "status_code": status_code,
                "process_time": process_time,
                "response_headers": _sanitize_headers(dict(response.headers)),
            },
        )

    def _should_log_body(self, request: Request) -> bool:
        # Settlement webhooks carry portal secrets
        if request.url.path.startswith("/webhook"):
            return False

        content_length = request.headers.get("content-length", "0")
        try:
            if int(content_length) > 10000:
                return False
        except (ValueError, TypeError):
            pass

        return True
