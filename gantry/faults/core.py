"""
Gantry Faults - Core types.

Defines:
- Severity levels
- FaultDomain (functional area of a fault)
- Code (stable business codes rendered in the response envelope)
- Fault base class (structured fault objects)
"""

from __future__ import annotations

from enum import Enum, IntEnum
from typing import Any, Optional


# ============================================================================
# Severity & Domain
# ============================================================================

class Severity(str, Enum):
    """
    Fault severity levels.

    Determines the logging level used when the fault is rendered.
    """
    INFO = "info"       # Informational, expected (cache miss, not found)
    WARN = "warn"       # Client error, should be reviewed
    ERROR = "error"     # Server error, immediate attention
    FATAL = "fatal"     # Unrecoverable, abort startup


class FaultDomain:
    """
    Fault domains (taxonomy).

    Identifies the subsystem where a fault occurred. Subsystems may register
    their own domain as a class attribute (see ``gantry.cache.faults``).
    """

    def __init__(self, name: str, description: str = ""):
        self.name = name
        self.value = name
        self.description = description

    def __str__(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return f"FaultDomain(name='{self.name}')"

    def __eq__(self, other: Any) -> bool:
        if isinstance(other, FaultDomain):
            return self.name == other.name
        return str(self) == str(other)

    def __hash__(self) -> int:
        return hash(self.name)


# Standard Domains
FaultDomain.CONFIG = FaultDomain("config", "Configuration errors")
FaultDomain.ROUTING = FaultDomain("routing", "Route matching errors")
FaultDomain.REQUEST = FaultDomain("request", "Request decoding and validation")
FaultDomain.MODEL = FaultDomain("model", "Model declaration and registry errors")
FaultDomain.DATABASE = FaultDomain("database", "Database operations")
FaultDomain.SERVICE = FaultDomain("service", "Service and model hook failures")
FaultDomain.SYSTEM = FaultDomain("system", "System level faults")


DOMAIN_DEFAULTS = {
    FaultDomain.CONFIG: {"severity": Severity.FATAL, "retryable": False},
    FaultDomain.ROUTING: {"severity": Severity.WARN, "retryable": False},
    FaultDomain.REQUEST: {"severity": Severity.WARN, "retryable": False},
    FaultDomain.MODEL: {"severity": Severity.FATAL, "retryable": False},
    FaultDomain.DATABASE: {"severity": Severity.ERROR, "retryable": False},
    FaultDomain.SERVICE: {"severity": Severity.ERROR, "retryable": False},
    FaultDomain.SYSTEM: {"severity": Severity.FATAL, "retryable": False},
}


# ============================================================================
# Business codes
# ============================================================================

class Code(IntEnum):
    """Stable codes carried by the ``code`` field of every response."""

    SUCCESS = 0
    FAILURE = -1

    INVALID_PARAM = 1000
    BAD_REQUEST = 1001
    NETWORK_TIMEOUT = 1005
    CONTEXT_TIMEOUT = 1006
    TOO_MANY_REQUESTS = 1007
    NOT_FOUND = 1008
    ALREADY_EXIST = 1010
    UNAVAILABLE = 1012
    INTERNAL = 1013
    METHOD_NOT_ALLOWED = 1014

    @property
    def msg(self) -> str:
        return CODE_MESSAGES.get(self, CODE_MESSAGES[Code.FAILURE])

    @property
    def status(self) -> int:
        return CODE_STATUS.get(self, 400)


CODE_MESSAGES = {
    Code.SUCCESS: "success",
    Code.FAILURE: "failure",
    Code.INVALID_PARAM: "Invalid parameters provided in the request.",
    Code.BAD_REQUEST: "Malformed or illegal request.",
    Code.NETWORK_TIMEOUT: "Network operation timed out.",
    Code.CONTEXT_TIMEOUT: "Request context timed out.",
    Code.TOO_MANY_REQUESTS: "too many requests, please try again later.",
    Code.NOT_FOUND: "Requested resource not found.",
    Code.ALREADY_EXIST: "Resource already exists.",
    Code.UNAVAILABLE: "Backend temporarily unavailable.",
    Code.INTERNAL: "Internal server error.",
    Code.METHOD_NOT_ALLOWED: "Method not allowed.",
}

CODE_STATUS = {
    Code.SUCCESS: 200,
    Code.FAILURE: 400,
    Code.INVALID_PARAM: 400,
    Code.BAD_REQUEST: 400,
    Code.NETWORK_TIMEOUT: 504,
    Code.CONTEXT_TIMEOUT: 499,
    Code.TOO_MANY_REQUESTS: 429,
    Code.NOT_FOUND: 404,
    Code.ALREADY_EXIST: 409,
    Code.UNAVAILABLE: 503,
    Code.INTERNAL: 500,
    Code.METHOD_NOT_ALLOWED: 405,
}


# ============================================================================
# Fault - Base Class
# ============================================================================

class Fault(Exception):
    """
    Base fault class - structured, typed fault object.

    A fault carries:
    - Stable machine-readable ``code`` (e.g. "RECORD_NOT_FOUND")
    - Human-readable message
    - Severity and domain classification
    - Retry semantics
    - Public exposure control (whether the message may reach clients)
    - ``status`` and ``biz_code`` used when rendered as an HTTP envelope

    Example:
        ```python
        raise Fault(
            code="TENANT_MISSING",
            message="tenant header is required",
            domain=FaultDomain.REQUEST,
            public=True,
        )
        ```
    """

    status: int = 500
    biz_code: Code = Code.INTERNAL

    def __init__(
        self,
        code: str | None = None,
        message: str | None = None,
        *,
        domain: FaultDomain | None = None,
        severity: Optional[Severity] = None,
        retryable: Optional[bool] = None,
        public: bool = False,
        metadata: Optional[dict[str, Any]] = None,
    ):
        self.code = code if code is not None else getattr(self, "code", None)
        self.message = message if message is not None else getattr(self, "message", None)
        self.domain = domain if domain is not None else getattr(self, "domain", None)

        if self.code is None or self.message is None or self.domain is None:
            raise TypeError(f"{self.__class__.__name__} missing required code, message, or domain")

        super().__init__(self.message)

        defaults = DOMAIN_DEFAULTS.get(domain, {"severity": Severity.ERROR, "retryable": False})
        self.severity = severity or defaults["severity"]
        self.retryable = retryable if retryable is not None else defaults["retryable"]
        self.public = public
        self.metadata = metadata or {}

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(code={self.code!r}, domain={self.domain.value}, "
            f"severity={self.severity.value}, status={self.status})"
        )

    @property
    def public_message(self) -> str:
        """Message safe to return to clients."""
        return self.message if self.public else self.biz_code.msg

    def to_dict(self) -> dict[str, Any]:
        """
        Serialize fault to dictionary.

        Returns:
            Dictionary representation suitable for logging/serialization
        """
        return {
            "code": self.code,
            "message": self.message,
            "domain": self.domain.value,
            "severity": self.severity.value,
            "retryable": self.retryable,
            "public": self.public,
            "status": self.status,
            "biz_code": int(self.biz_code),
            "metadata": {k: v for k, v in self.metadata.items() if not k.startswith("_")},
        }
