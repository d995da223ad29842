"""
Gantry Models - Fault domain integration.
"""

from __future__ import annotations

from typing import Any

from gantry.faults.core import Fault, FaultDomain, Severity

__all__ = ["ModelRegistrationFault"]


class ModelRegistrationFault(Fault):
    """A model cannot be registered (startup error)."""

    def __init__(self, model: Any, reason: str):
        name = getattr(model, "__name__", str(model))
        super().__init__(
            code="MODEL_REGISTRATION_FAILED",
            message=f"cannot register model '{name}': {reason}",
            domain=FaultDomain.MODEL,
            severity=Severity.FATAL,
            retryable=False,
            metadata={"model": name, "reason": reason},
        )
