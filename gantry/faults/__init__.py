"""
Gantry Faults - structured error taxonomy.

Faults are typed exceptions that know their HTTP status and the business code
rendered in the response envelope.
"""

from .core import (
    CODE_MESSAGES,
    CODE_STATUS,
    DOMAIN_DEFAULTS,
    Code,
    Fault,
    FaultDomain,
    Severity,
)
from .domains import (
    AfterHookFault,
    BadRequestFault,
    CancelledFault,
    ConflictFault,
    InternalFault,
    InvalidJSONFault,
    InvalidParamFault,
    NotFoundFault,
    TransientFault,
    before_hook_fault,
    fault_from_exception,
)

__all__ = [
    # Core
    "Fault",
    "FaultDomain",
    "Severity",
    "Code",
    "CODE_MESSAGES",
    "CODE_STATUS",
    "DOMAIN_DEFAULTS",
    # Taxonomy
    "BadRequestFault",
    "InvalidParamFault",
    "InvalidJSONFault",
    "NotFoundFault",
    "ConflictFault",
    "TransientFault",
    "CancelledFault",
    "InternalFault",
    "AfterHookFault",
    # Mapping
    "fault_from_exception",
    "before_hook_fault",
]
