"""
Error logging and monitoring utilities for the order ledger service.

Errors and performance metrics are logged as JSON lines to stdout so that log
collectors can pick them up; counts are kept in memory for the lifetime of the
process and exposed on the monitoring endpoint.
"""

import asyncio
import logging
import time
import json
import traceback
from typing import Dict, Any
from functools import wraps
from datetime import datetime, timezone
from orderledger.core.exceptions import BaseAppError


class ErrorMonitor:
    """Centralized error monitoring and logging utility"""

    def __init__(self):
        self.logger = logging.getLogger("orderledger.monitor")
        self.error_counts_memory: Dict[str, int] = {}

    def log_error(self, error: Exception, context: Dict[str, Any] = None):
        """
        Log error with context and tracking.

        Args:
            error: The exception that occurred
            context: Additional context information
        """
        error_type = type(error).__name__
        error_id = f"{error_type}_{int(time.time())}"

        self.error_counts_memory[error_type] = self.error_counts_memory.get(error_type, 0) + 1
        count = self.error_counts_memory[error_type]

        log_data = {
            "event": "error",
            "error_id": error_id,
            "error_type": error_type,
            "error_message": str(error),
            "context": context or {},
            "count": count,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

        # Stack traces only for unexpected errors and 5xx application errors
        if not isinstance(error, BaseAppError) or error.http_status_code >= 500:
            log_data["stack_trace"] = "".join(
                traceback.format_exception(type(error), error, error.__traceback__)
            )

        self.logger.error(json.dumps(log_data, default=str))

    def log_performance(self, operation: str, duration: float, context: Dict[str, Any] = None):
        """
        Log performance metrics as structured JSON.

        Args:
            operation: Name of the operation
            duration: Duration in seconds
            context: Additional context information
        """
        log_data = {
            "event": "performance",
            "operation": operation,
            "duration": duration,
            "context": context or {},
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

        if duration > 5.0:
            self.logger.warning(json.dumps(log_data, default=str))
        else:
            self.logger.info(json.dumps(log_data, default=str))

    def get_error_summary(self) -> Dict[str, Any]:
        """Get summary of in-memory error statistics."""
        return {
            "error_counts": dict(self.error_counts_memory),
            "total_errors": sum(self.error_counts_memory.values()),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "mode": "ephemeral",
        }


# Global error monitor instance
error_monitor = ErrorMonitor()


def monitor_errors(operation_name: str = None):
    """
    Decorator for monitoring coroutine errors and performance.

    Business errors (4xx) are re-raised without being counted as failures of
    the operation; everything else is logged through the error monitor.
    """
    def decorator(func):
        if not asyncio.iscoroutinefunction(func):
            raise TypeError("monitor_errors only wraps coroutine functions")

        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            op_name = operation_name or f"{func.__module__}.{func.__name__}"
            start_time = time.time()

            try:
                result = await func(*args, **kwargs)
                error_monitor.log_performance(op_name, time.time() - start_time)
                return result

            except BaseAppError as e:
                if e.http_status_code >= 500:
                    error_monitor.log_error(e, {"operation": op_name, "duration": time.time() - start_time})
                raise

            except Exception as e:
                error_monitor.log_error(e, {"operation": op_name, "duration": time.time() - start_time})
                raise

        return async_wrapper

    return decorator


def setup_monitoring(level: str = "INFO"):
    """
    Setup structured logging configuration.
    Only StreamHandler (stdout) is used.
    """
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        handlers=[
            logging.StreamHandler(),
        ],
    )

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        if not isinstance(handler, logging.StreamHandler):
            root_logger.removeHandler(handler)

    logging.info(json.dumps({
        "event": "system_startup",
        "message": "Monitoring initialized (STDOUT only)",
        "timestamp": datetime.now(timezone.utc).isoformat()
    }))
