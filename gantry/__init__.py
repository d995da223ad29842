"""
Gantry - generic CRUD services over declarative models.

Integration of:
- Models: declarative resources with hooks, seeds and relations
- Database: chainable async persistence with soft delete and upsert
- Cache: typed cache over memory, sharded, byte-store and Redis backends
- Service: per-model hooks around every HTTP operation
- Controller: the CRUD HTTP surface, served by an ASGI 3 app

Usage:
    from gantry import Gantry
    from gantry.models import Model, CharField, register

    class User(Model):
        name = CharField(max_length=64, unique=True)

    register(User)
    app = Gantry()
    app.register(User, "/user")
"""

__version__ = "0.1.0"

from .config import GantryConfig, ConfigLoader, get_config, load_config, set_config, configure_logging
from .context import Context, Phase
from .faults import Code, Fault
from .request import Request
from .response import Response
from .router import Router
from .asgi import Gantry

__all__ = [
    "__version__",
    "Gantry",
    "Router",
    "Request",
    "Response",
    "Context",
    "Phase",
    "Fault",
    "Code",
    "GantryConfig",
    "ConfigLoader",
    "get_config",
    "set_config",
    "load_config",
    "configure_logging",
]
