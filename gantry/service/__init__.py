"""
Gantry Service - per-model hook objects.
"""

from .base import Service
from .registry import register_service, registered_services, reset_services, service_for

__all__ = [
    "Service",
    "register_service",
    "service_for",
    "registered_services",
    "reset_services",
]
