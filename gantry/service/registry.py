"""
Gantry Service Registry - one service per model.

Registration happens at init time; lookups afterwards are plain dict reads.
Models without a registered service get a no-op ``Service``.
"""

from __future__ import annotations

import logging
from typing import Dict, Type, Union

from gantry.models import Model

from .base import Service

logger = logging.getLogger("gantry.service.registry")

__all__ = ["register_service", "service_for", "registered_services", "reset_services"]

_services: Dict[Type[Model], Service] = {}
_defaults: Dict[Type[Model], Service] = {}


def register_service(model: Type[Model], service: Union[Service, Type[Service]]) -> Service:
    """Bind ``service`` (instance or class) to ``model``; the last registration wins."""
    if isinstance(service, type):
        service = service(model)
    if not isinstance(service, Service):
        raise TypeError(f"register_service expects a Service, got {type(service).__name__}")
    service.model = model
    if model in _services:
        logger.warning(f"Replacing service for {model.__name__}: {_services[model]!r} -> {service!r}")
    _services[model] = service
    logger.debug(f"Registered {service!r}")
    return service


def service_for(model: Type[Model]) -> Service:
    service = _services.get(model)
    if service is not None:
        return service
    service = _defaults.get(model)
    if service is None:
        service = _defaults.setdefault(model, Service(model))
    return service


def registered_services() -> Dict[Type[Model], Service]:
    return dict(_services)


def reset_services() -> None:
    """Forget registered services (tests)."""
    _services.clear()
    _defaults.clear()
