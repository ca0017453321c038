"""
Custom Exception Classes

Defines application-specific exceptions for better error handling and logging.
"""

from typing import Any, Dict, Optional


class CallbackException(Exception):
    """Base exception for all callback receiver errors"""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        error_code: str = "CALLBACK_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/API responses"""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class ValidationException(CallbackException):
    """Malformed or missing callback parameters"""

    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code="VALIDATION_ERROR", details=details)


class SignatureException(CallbackException):
    """Callback signature or timestamp could not be trusted"""

    status_code = 401

    def __init__(
        self,
        message: str = "Invalid callback signature",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message,
            error_code="SIGNATURE_ERROR",
            details={**(details or {}), "verification": "failed"},
        )


class TransientStorageException(CallbackException):
    """Idempotency ledger unreachable or timed out"""

    status_code = 503

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code="LEDGER_UNAVAILABLE", details=details)


class QueueException(CallbackException):
    """SQS queue operation errors"""

    status_code = 503

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code="QUEUE_ERROR", details=details)


class PaymentRecordingException(CallbackException):
    """The one-time payment recording failed after the ledger accepted the key"""

    status_code = 503

    def __init__(
        self,
        message: str,
        idempotency_key: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        if idempotency_key:
            details["idempotency_key"] = idempotency_key
        super().__init__(message, error_code="PAYMENT_RECORDING_ERROR", details=details)


class ConfigurationException(CallbackException):
    """Configuration or environment errors"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code="CONFIG_ERROR", details=details)
