#!/usr/bin/env python3
"""
Typed errors for the memory engine
Validation problems carry a user-facing hint; persistence problems are
caught by the components and only ever logged
"""

from typing import Dict, Any, Optional
from datetime import datetime

from utils.redis_logger import redact_user_id


class MemoryEngineError(Exception):
    """Base class for engine errors"""

    code = "ENGINE_ERROR"
    default_user_message = "Something went wrong. Please try again in a moment."

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.user_message = user_message or self.default_user_message
        self.timestamp = datetime.now().isoformat()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "user_message": self.user_message,
            "timestamp": self.timestamp
        }


class ValidationError(MemoryEngineError, ValueError):
    """Malformed input, rejected before any state is touched"""

    code = "VALIDATION_ERROR"
    default_user_message = "The information provided is invalid. Check it and try again."

    def __init__(self, message: str, field: Optional[str] = None, hint: Optional[str] = None):
        super().__init__(message, user_message=hint)
        self.field = field
        self.hint = hint or self.default_user_message

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["field"] = self.field
        data["hint"] = self.hint
        return data


class PersistenceError(MemoryEngineError):
    """Store I/O failure"""

    code = "PERSISTENCE_ERROR"

    def __init__(self, operation: str, key: str, original: Optional[BaseException] = None):
        super().__init__(f"Store {operation} failed for key {redact_key(key)}: {original}")
        self.operation = operation
        self.key = key
        self.original = original


def require_text(value: Any, field: str, hint: str) -> str:
    """Return the stripped string or raise ValidationError"""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} must be a non-empty string", field=field, hint=hint)
    return value.strip()


def require_user_id(user_id: Any) -> str:
    return require_text(user_id, "user_id", "A user identifier (e.g. phone number) is required.")


def redact_key(key: str) -> str:
    """Mask the user id part of a `prefix:user_id` store key"""
    prefix, sep, user_id = str(key).partition(":")
    if not sep or user_id == "*":
        return key
    return f"{prefix}:{redact_user_id(user_id)}"
