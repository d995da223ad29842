"""
ASGI application - bridges ASGI 3 to the controller pipeline.

    from gantry import Gantry

    app = Gantry()
    app.register(User, "/user")

    # uvicorn module:app

Per request:
- route match (404/405 rendered as envelopes)
- request id echoed from the client or generated
- root span ``http.request``; its trace id is returned in the trace header
- Fault -> envelope with the fault's status; anything else -> 500 envelope
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Sequence, Type

from .cache import shutdown_caches
from .config import get_config
from .context import Context
from .controller import Controller, failure, register, success
from .db import all_engines, close_engines, get_engine
from .faults import Fault, fault_from_exception
from .models import Model, ModelRegistry
from .models.ids import new_id
from .request import ClientDisconnect, Request
from .response import Response
from .router import Router
from .trace import start_span

__all__ = ["Gantry"]


class Gantry:
    """
    ASGI application over a ``Router`` of controller handlers.

    ``bootstrap`` controls whether lifespan startup creates tables and saves
    seeds for every registered model.
    """

    __slots__ = ("router", "bootstrap", "health_path", "controllers", "logger")

    def __init__(self, *, bootstrap: bool = True, health_path: Optional[str] = "/healthz"):
        self.router = Router()
        self.bootstrap = bootstrap
        self.health_path = health_path
        self.controllers: list[Controller] = []
        self.logger = logging.getLogger("gantry.asgi")
        if health_path:
            self.router.get(health_path, self._health, name="health")

    def register(
        self,
        model: Type[Model],
        path: Optional[str] = None,
        verbs: Optional[Sequence[str]] = None,
        **options: Any,
    ) -> Controller:
        """Mount the CRUD surface of ``model``; see ``gantry.controller.register``."""
        controller = register(self.router, model, path, verbs, **options)
        self.controllers.append(controller)
        return controller

    def route(self, method: str, path: str, *, name: str = "") -> Callable:
        """Decorator for a custom ``async def handler(request, ctx)``."""
        def decorator(handler: Callable) -> Callable:
            self.router.add(method, path, handler, name=name or handler.__name__)
            return handler
        return decorator

    async def _health(self, request: Request, ctx: Context) -> Response:
        engines = {alias: await engine.ping() for alias, engine in all_engines().items()}
        status = 200 if all(engines.values()) else 503
        return success({"engines": engines}, status=status, request_id=ctx.request_id)

    # ------------------------------------------------------------------
    # ASGI entry point
    # ------------------------------------------------------------------

    async def __call__(self, scope: dict, receive: Callable, send: Callable):
        scope_type = scope["type"]
        if scope_type == "http":
            await self.handle_http(scope, receive, send)
        elif scope_type == "lifespan":
            await self.handle_lifespan(scope, receive, send)
        else:
            self.logger.warning(f"Unsupported ASGI scope type {scope_type!r}")

    async def handle_http(self, scope: dict, receive: Callable, send: Callable):
        server = get_config().server
        request = Request(scope, receive)
        request_id = request.header(server.request_id_header) or new_id()
        incoming_trace = request.header(server.trace_header) or None

        with start_span(
            "http.request",
            trace_id=incoming_trace,
            method=request.method,
            path=request.path,
            request_id=request_id,
        ) as span:
            ctx = Context(
                request=request,
                request_id=request_id,
                username=request.header(server.user_header) or "",
                span=span,
            )
            try:
                route, params = self.router.match(request.method, request.path)
                request.path_params = params
                ctx.route = route.name or route.path
                ctx.params = params
                span.set("route", ctx.route)
                response = await route.handler(request, ctx)
            except ClientDisconnect:
                self.logger.info(f"Client disconnected: {request.method} {request.path} request_id={request_id}")
                span.set("disconnected", True)
                return
            except Fault as fault:
                response = failure(fault, request_id=request_id)
            except Exception as exc:
                self.logger.error(f"Unhandled error in {request.method} {request.path}: {exc}", exc_info=True)
                response = failure(fault_from_exception(exc), request_id=request_id)
            span.set("status", response.status)
            response.set_header(server.trace_header, span.trace_id)
            response.set_header(server.request_id_header, request_id)

        await response.send_asgi(send)

    async def handle_lifespan(self, scope: dict, receive: Callable, send: Callable):
        """Handle ASGI lifespan events."""
        while True:
            message = await receive()

            if message["type"] == "lifespan.startup":
                try:
                    await self.startup()
                    await send({"type": "lifespan.startup.complete"})
                except Exception as e:
                    self.logger.error(f"Startup error: {e}", exc_info=True)
                    await send({"type": "lifespan.startup.failed", "message": str(e)})
                    raise

            elif message["type"] == "lifespan.shutdown":
                try:
                    await self.shutdown()
                    await send({"type": "lifespan.shutdown.complete"})
                except Exception as e:
                    self.logger.error(f"Shutdown error: {e}", exc_info=True)
                    await send({"type": "lifespan.shutdown.failed", "message": str(e)})
                break

    async def startup(self) -> None:
        """Connect every engine, then create tables and seeds."""
        get_engine()
        for engine in all_engines().values():
            await engine.connect()
        if self.bootstrap:
            tables = await ModelRegistry.bootstrap()
            self.logger.info(f"Bootstrapped {len(tables)} table(s): {', '.join(tables)}")
        self.logger.info(f"Startup complete, {len(self.router)} route(s)")

    async def shutdown(self) -> None:
        await shutdown_caches()
        await close_engines()
        self.logger.info("Shutdown complete")
