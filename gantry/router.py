"""
Router - method + path dispatch for resource handlers.

Two tiers, checked in order:
1. Static map per method: O(1) lookup for paths without parameters
2. Compiled-regex list per method for ``{param}`` segments

Static paths win over dynamic ones, so ``GET /user/export`` never reaches
``GET /user/{id}``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Pattern, Tuple

from .faults import Code, Fault, FaultDomain, Severity

logger = logging.getLogger("gantry.router")

__all__ = ["Route", "Router", "RouteNotFoundFault", "MethodNotAllowedFault"]

Handler = Callable[..., Awaitable[Any]]

_PARAM_RE = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")

METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")


# ============================================================================
# Faults
# ============================================================================

class RouteNotFoundFault(Fault):
    status = 404
    biz_code = Code.NOT_FOUND

    def __init__(self, method: str, path: str):
        super().__init__(
            code="ROUTE_NOT_FOUND",
            message=f"no route for {method} {path}",
            domain=FaultDomain.ROUTING,
            severity=Severity.INFO,
            public=True,
            metadata={"method": method, "path": path},
        )


class MethodNotAllowedFault(Fault):
    status = 405
    biz_code = Code.METHOD_NOT_ALLOWED

    def __init__(self, method: str, path: str, allowed: List[str]):
        self.allowed = allowed
        super().__init__(
            code="METHOD_NOT_ALLOWED",
            message=f"{method} not allowed on {path}",
            domain=FaultDomain.ROUTING,
            public=True,
            metadata={"method": method, "path": path, "allowed": allowed},
        )


# ============================================================================
# Routes
# ============================================================================

@dataclass
class Route:
    method: str
    path: str
    handler: Handler
    name: str = ""
    params: List[str] = field(default_factory=list)
    pattern: Optional[Pattern[str]] = None

    @property
    def is_static(self) -> bool:
        return self.pattern is None


def _normalize(path: str) -> str:
    return path.rstrip("/") or "/"


def compile_path(path: str) -> Tuple[Optional[Pattern[str]], List[str]]:
    """Regex for a ``{param}`` template, or ``None`` for a static path."""
    names = _PARAM_RE.findall(path)
    if not names:
        return None, []
    parts = []
    last = 0
    for m in _PARAM_RE.finditer(path):
        parts.append(re.escape(path[last:m.start()]))
        parts.append(f"(?P<{m.group(1)}>[^/]+)")
        last = m.end()
    parts.append(re.escape(path[last:]))
    return re.compile("^" + "".join(parts) + "/?$"), names


class Router:
    """Route table; routes are added at init time and only read afterwards."""

    def __init__(self):
        self._routes: List[Route] = []
        self._static: Dict[str, Dict[str, Route]] = {}
        self._dynamic: Dict[str, List[Route]] = {}

    def __len__(self) -> int:
        return len(self._routes)

    def add(self, method: str, path: str, handler: Handler, *, name: str = "") -> Route:
        method = method.upper()
        if method not in METHODS:
            raise ValueError(f"unsupported method {method!r}")
        path = _normalize(path)
        pattern, params = compile_path(path)
        route = Route(method=method, path=path, handler=handler, name=name, params=params, pattern=pattern)

        if pattern is None:
            table = self._static.setdefault(method, {})
            if path in table:
                logger.warning(f"Replacing route {method} {path}")
            table[path] = route
        else:
            self._dynamic.setdefault(method, []).append(route)
        self._routes.append(route)
        logger.debug(f"Route {method} {path} -> {name or getattr(handler, '__name__', handler)}")
        return route

    def get(self, path: str, handler: Handler, **kw) -> Route:
        return self.add("GET", path, handler, **kw)

    def post(self, path: str, handler: Handler, **kw) -> Route:
        return self.add("POST", path, handler, **kw)

    def put(self, path: str, handler: Handler, **kw) -> Route:
        return self.add("PUT", path, handler, **kw)

    def patch(self, path: str, handler: Handler, **kw) -> Route:
        return self.add("PATCH", path, handler, **kw)

    def delete(self, path: str, handler: Handler, **kw) -> Route:
        return self.add("DELETE", path, handler, **kw)

    # ── Matching ─────────────────────────────────────────────────────

    def _find(self, method: str, path: str) -> Optional[Tuple[Route, Dict[str, str]]]:
        hit = self._static.get(method, {}).get(path)
        if hit is not None:
            return hit, {}
        for route in self._dynamic.get(method, ()):
            m = route.pattern.match(path)
            if m is not None:
                return route, m.groupdict()
        return None

    def match(self, method: str, path: str) -> Tuple[Route, Dict[str, str]]:
        """
        Route and path parameters for a request.

        Raises:
            RouteNotFoundFault: no route has this path
            MethodNotAllowedFault: the path exists under other methods
        """
        method = method.upper()
        norm = _normalize(path)
        found = self._find(method, norm)
        if found is not None:
            return found
        allowed = [m for m in METHODS if m != method and self._find(m, norm) is not None]
        if allowed:
            raise MethodNotAllowedFault(method, path, allowed)
        raise RouteNotFoundFault(method, path)

    def routes(self) -> List[Route]:
        return list(self._routes)
