"""
Exception hierarchy for the order ledger engine.

Each exception maps to an HTTP status code and a category so callers can tell a
financial-state problem (a caller or ordering bug, never worth retrying) apart
from an infrastructure problem (the store was unavailable, retry later).

Design:
    - Each exception carries an `http_status_code` for automatic handler mapping.
    - `category` is either "business" or "infrastructure"; `retryable` tells a UI
      whether offering a retry makes sense.
    - `to_dict()` returns full internal details (for logging).
    - `to_safe_dict()` returns a sanitized response (for client-facing APIs).
"""

from typing import Optional, Dict, Any


class BaseAppError(Exception):
    """Base exception for all application-specific errors"""

    http_status_code: int = 500
    category: str = "infrastructure"
    retryable: bool = False

    def __init__(self, message: str, details: str = None, context: Dict[str, Any] = None):
        self.message = message
        self.details = details
        self.context = context or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Full details for internal logging, never sent to the client."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
            "context": self.context,
            "category": self.category,
        }

    def to_safe_dict(self) -> Dict[str, Any]:
        """Sanitized response safe for end-users, no internal details."""
        return {
            "success": False,
            "error": self.__class__.__name__,
            "message": self.message,
            "category": self.category,
            "retryable": self.retryable,
        }


class PaymentValidationError(BaseAppError):
    """Raised when payment or order data fails business validation"""

    http_status_code: int = 400
    category: str = "business"

    def __init__(self, message: str, field: str = None, value: Any = None):
        self.field = field
        self.value = value
        context = {}

        if field:
            context["field"] = field
            if value is not None:
                context["invalid_value"] = str(value)

        details = f"Validation failed for field: {field}" if field else None
        super().__init__(message, details, context)

    def to_safe_dict(self) -> Dict[str, Any]:
        result = super().to_safe_dict()
        if self.field:
            result["field"] = self.field
        return result


class DuplicateOrderError(BaseAppError):
    """Raised when an order id is already present in the ledger"""

    http_status_code: int = 409
    category: str = "business"

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(
            f"Order {order_id} already exists",
            f"Duplicate odrId: {order_id}",
            {"order_id": order_id},
        )

    def to_safe_dict(self) -> Dict[str, Any]:
        result = super().to_safe_dict()
        result["order_id"] = self.order_id
        return result


class NotFoundError(BaseAppError):
    """Raised when a record is still absent after the access layer gave up retrying"""

    http_status_code: int = 404
    category: str = "business"

    def __init__(self, resource: str, identifier: str):
        self.resource = resource
        self.identifier = identifier
        super().__init__(
            f"{resource} not found",
            f"{resource} with id '{identifier}' does not exist",
            {"resource": resource, "identifier": identifier},
        )


class TerminalStateConflict(BaseAppError):
    """Raised when a payment is applied to a failed or canceled order"""

    http_status_code: int = 409
    category: str = "business"

    def __init__(self, order_id: str, status: str):
        self.order_id = order_id
        self.status = status
        super().__init__(
            f"Cannot process payment for {status} transaction",
            f"Order {order_id} is in terminal state {status}",
            {"order_id": order_id, "status": status},
        )


class InvalidTransition(BaseAppError):
    """Raised for a status move the state machine does not allow"""

    http_status_code: int = 409
    category: str = "business"

    def __init__(self, record_id: str, current: str, target: str):
        self.record_id = record_id
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot move transaction from {current} to {target}",
            f"Illegal transition for record {record_id}",
            {"record_id": record_id, "current": current, "target": target},
        )


class NoOpTransition(BaseAppError):
    """
    Raised when a record is already in the requested status.

    Not a failure: callers treat it as success. The current record is attached
    so the caller can return it without another read.
    """

    http_status_code: int = 200
    category: str = "business"

    def __init__(self, record_id: str, status: str, record: Any = None):
        self.record_id = record_id
        self.status = status
        self.record = record
        super().__init__(
            f"Transaction already in {status} status",
            None,
            {"record_id": record_id, "status": status},
        )

    def to_safe_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "message": self.message,
            "status": self.status,
        }


class VersionConflictError(BaseAppError):
    """Raised when a version-checked write lost the race against another writer"""

    http_status_code: int = 409
    retryable: bool = True

    def __init__(self, kind: str, record_id: str, expected_version: int):
        self.kind = kind
        self.record_id = record_id
        self.expected_version = expected_version
        super().__init__(
            "The record was modified concurrently",
            f"{kind} {record_id} no longer at version {expected_version}",
            {"kind": kind, "record_id": record_id, "expected_version": expected_version},
        )


class StoreError(BaseAppError):
    """Raised for store failures that persisted through every retry attempt"""

    http_status_code: int = 503
    retryable: bool = True

    def __init__(self, message: str, operation: str = None, database_error: str = None):
        self.operation = operation
        self.database_error = database_error
        context = {}
        if operation:
            context["operation"] = operation
        if database_error:
            context["database_error"] = database_error

        details = f"Failed store operation: {operation}" if operation else None
        super().__init__(message, details, context)

    def to_safe_dict(self) -> Dict[str, Any]:
        """Never expose operation names or raw store errors to clients."""
        result = super().to_safe_dict()
        result["message"] = "The ledger store is temporarily unavailable. Please try again later."
        return result


class ResourceExhaustedError(BaseAppError):
    """Raised when a large export crosses the configured memory ceiling"""

    http_status_code: int = 507

    def __init__(self, message: str, used_bytes: int = None, limit_bytes: int = None):
        self.used_bytes = used_bytes
        self.limit_bytes = limit_bytes
        context = {}
        if used_bytes is not None:
            context["used_bytes"] = used_bytes
        if limit_bytes is not None:
            context["limit_bytes"] = limit_bytes
        super().__init__(message, "Export aborted on memory ceiling", context)


class LedgerInvariantError(BaseAppError):
    """Raised before a write that would leave a ledger row inconsistent"""

    http_status_code: int = 500

    def __init__(self, message: str, order_id: Optional[str] = None):
        self.order_id = order_id
        super().__init__(message, None, {"order_id": order_id} if order_id else {})

    def to_safe_dict(self) -> Dict[str, Any]:
        result = super().to_safe_dict()
        result["message"] = "The ledger rejected an inconsistent update."
        return result


class SecurityError(BaseAppError):
    """Raised for authentication failures (invalid HMAC signatures, bad secrets)"""

    http_status_code: int = 401
    category: str = "business"

    def __init__(self, message: str, security_context: str = None):
        self.security_context = security_context
        context = {}
        if security_context:
            context["security_context"] = security_context

        details = f"Security failure in: {security_context}" if security_context else None
        super().__init__(message, details, context)

    def to_safe_dict(self) -> Dict[str, Any]:
        """Never expose security_context to clients."""
        return {
            "success": False,
            "error": "SecurityError",
            "message": self.message,
            "category": self.category,
            "retryable": False,
        }


class ConfigurationError(BaseAppError):
    """Raised for configuration-related issues (missing env vars, invalid settings)"""

    http_status_code: int = 500

    def __init__(self, message: str, config_key: str = None, expected_value: str = None):
        self.config_key = config_key
        self.expected_value = expected_value
        context = {}
        if config_key:
            context["config_key"] = config_key
        if expected_value:
            context["expected_value"] = expected_value

        details = f"Configuration error for: {config_key}" if config_key else None
        super().__init__(message, details, context)

    def to_safe_dict(self) -> Dict[str, Any]:
        """Never expose config internals to clients."""
        result = super().to_safe_dict()
        result["message"] = "A server configuration error occurred."
        return result
