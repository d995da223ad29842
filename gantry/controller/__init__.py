"""
Gantry Controller - HTTP surface of a model.

    from gantry.controller import register

    register(app, User, "/user", verbs=["most", "batch_create"])
"""

from .handlers import VERB_ALL, VERB_MOST, VERBS, Controller, expand_verbs, register
from .response import envelope, failure, success

__all__ = [
    "Controller",
    "register",
    "expand_verbs",
    "VERBS",
    "VERB_MOST",
    "VERB_ALL",
    "envelope",
    "success",
    "failure",
]
