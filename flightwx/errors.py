"""
Engine exceptions.

  NotFound             booking / conflict / option set missing → caller aborts
  ValidationError      bad option index, malformed provider response
  ExternalServiceError weather or reasoning API failure or timeout
  InvariantViolation   e.g. finalizing an option set twice
"""
from typing import Optional, Dict, Any


class RescheduleError(Exception):
    """Base exception for engine errors."""

    def __init__(
        self,
        message: str,
        code: str = "RESCHEDULE_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


class NotFound(RescheduleError):
    def __init__(self, entity: str, entity_id: Any = None, message: str = None):
        super().__init__(
            message=message or f"{entity} not found: {entity_id}",
            code="NOT_FOUND",
            details={"entity": entity, "id": entity_id},
        )


class ValidationError(RescheduleError):
    def __init__(self, message: str, field: str = None, details: Optional[Dict[str, Any]] = None):
        error_details = dict(details or {})
        if field:
            error_details["field"] = field
        super().__init__(message=message, code="VALIDATION_ERROR", details=error_details)


class ExternalServiceError(RescheduleError):
    def __init__(self, service: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=f"{service}: {message}",
            code="EXTERNAL_SERVICE_ERROR",
            details={"service": service, **(details or {})},
        )
        self.service = service


class InvariantViolation(RescheduleError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, code="INVARIANT_VIOLATION", details=details)
