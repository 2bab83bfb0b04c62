"""
Domain Risk Engine - Exceptions.

============================================================
RESPONSIBILITY
============================================================
Error taxonomy for the scoring engine.

- Provides clear exception hierarchy
- Carries context for structured logging
- Marks which failures are recovered locally

============================================================
EXCEPTION HIERARCHY
============================================================
DomainRiskError (base)
├── ConfigurationError
├── InvalidInput
├── InsufficientHistory
├── ExternalLookupFailure
├── StorageFailure
└── ConfigurationDisabled

Everything except ConfigurationError is recovered inside the
engine: calculators turn it into a neutral MetricResult and the
engine keeps going with the best snapshot it has.

============================================================
"""

from enum import Enum
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class Severity(Enum):
    """Exception severity levels for logging."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# ============================================================
# BASE EXCEPTION
# ============================================================


class DomainRiskError(Exception):
    """
    Base exception for all domain risk engine errors.

    All exceptions carry:
    - severity: for log level selection
    - context: for debugging
    - recoverable: whether the engine recovers locally
    - timestamp: when the error occurred
    """

    default_severity: Severity = Severity.MEDIUM
    default_recoverable: bool = True

    def __init__(
        self,
        message: str,
        severity: Optional[Severity] = None,
        context: Optional[Dict[str, Any]] = None,
        recoverable: Optional[bool] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)

        self.message = message
        self.severity = severity or self.default_severity
        self.context = context or {}
        self.recoverable = recoverable if recoverable is not None else self.default_recoverable
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

        if cause is not None:
            self.context["cause_type"] = type(cause).__name__
            self.context["cause_message"] = str(cause)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging/storage."""
        return {
            "type": type(self).__name__,
            "message": self.message,
            "severity": self.severity.value,
            "recoverable": self.recoverable,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }

    def to_log_format(self) -> str:
        """Format exception for structured logging."""
        ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
        line = f"[{self.severity.value.upper()}] {type(self).__name__}: {self.message}"
        if ctx_str:
            line += f" | {ctx_str}"
        return line


# ============================================================
# CONFIGURATION ERRORS
# ============================================================


class ConfigurationError(DomainRiskError):
    """Invalid configuration value or unreadable configuration file."""

    default_severity = Severity.HIGH
    default_recoverable = False

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        actual_value: Optional[Any] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        if config_key:
            context["config_key"] = config_key
        if actual_value is not None:
            context["actual_value"] = str(actual_value)[:100]
        super().__init__(message, context=context, **kwargs)


class ConfigurationDisabled(DomainRiskError):
    """A metric group is switched off in the configuration."""

    default_severity = Severity.LOW

    def __init__(self, group: str, **kwargs):
        context = kwargs.pop("context", {})
        context["group"] = group
        super().__init__(f"{group} calculation disabled", context=context, **kwargs)
        self.group = group


# ============================================================
# INPUT / HISTORY
# ============================================================


class InvalidInput(DomainRiskError):
    """Empty or unparseable domain / URL."""

    default_severity = Severity.LOW

    def __init__(self, message: str, value: Optional[str] = None, **kwargs):
        context = kwargs.pop("context", {})
        if value is not None:
            context["value"] = value[:253]
        super().__init__(message, context=context, **kwargs)


class InsufficientHistory(DomainRiskError):
    """Not enough observations to judge behavior."""

    default_severity = Severity.LOW

    def __init__(self, request_count: int, required: int, **kwargs):
        context = kwargs.pop("context", {})
        context.update({"request_count": request_count, "required": required})
        super().__init__("insufficient history", context=context, **kwargs)
        self.request_count = request_count
        self.required = required


# ============================================================
# EXTERNAL / STORAGE
# ============================================================


class ExternalLookupFailure(DomainRiskError):
    """A reputation source timed out, errored or returned garbage."""

    def __init__(
        self,
        message: str,
        source: str,
        domain: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        context["source"] = source
        if domain:
            context["domain"] = domain
        if status_code is not None:
            context["status_code"] = status_code
        super().__init__(message, context=context, **kwargs)
        self.source = source
        self.domain = domain
        self.status_code = status_code


class StorageFailure(DomainRiskError):
    """Profile or cache read/write against the key-value store failed."""

    default_severity = Severity.HIGH

    def __init__(
        self,
        message: str,
        key: Optional[str] = None,
        operation: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        if key:
            context["key"] = key
        if operation:
            context["operation"] = operation
        super().__init__(message, context=context, **kwargs)
        self.key = key
        self.operation = operation


__all__ = [
    "Severity",
    "DomainRiskError",
    "ConfigurationError",
    "ConfigurationDisabled",
    "InvalidInput",
    "InsufficientHistory",
    "ExternalLookupFailure",
    "StorageFailure",
]
