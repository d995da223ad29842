"""
Request - thin wrapper over an ASGI HTTP scope.

Provides:
- Lazy query-string parsing into a MultiDict
- Case-insensitive headers
- Idempotent body reading with a size limit
- JSON decoding through orjson, surfacing ``InvalidJSONFault``
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import orjson

from ._datastructures import Headers, MultiDict
from .faults import BadRequestFault, InvalidJSONFault

logger = logging.getLogger("gantry.request")

__all__ = ["Request", "ClientDisconnect"]


class ClientDisconnect(Exception):
    """Client went away while the body was being read."""


class Request:
    """
    HTTP request bound to one ASGI ``(scope, receive)`` pair.

    Route parameters are filled in by the router as ``path_params``.
    """

    __slots__ = (
        "scope",
        "_receive",
        "max_body_size",
        "path_params",
        "state",
        "_body",
        "_json",
        "_query",
        "_headers",
    )

    def __init__(
        self,
        scope: Mapping[str, Any],
        receive: Callable[..., Awaitable[dict]],
        *,
        max_body_size: int = 10_485_760,  # 10 MiB
    ):
        self.scope = scope
        self._receive = receive
        self.max_body_size = max_body_size
        self.path_params: Dict[str, str] = {}
        self.state: Dict[str, Any] = {}
        self._body: Optional[bytes] = None
        self._json: Any = None
        self._query: Optional[MultiDict] = None
        self._headers: Optional[Headers] = None

    def __repr__(self) -> str:
        return f"<Request {self.method} {self.path}>"

    # ========================================================================
    # Basic Properties
    # ========================================================================

    @property
    def method(self) -> str:
        return self.scope.get("method", "GET").upper()

    @property
    def path(self) -> str:
        return self.scope.get("path", "/")

    @property
    def query_string(self) -> str:
        return self.scope.get("query_string", b"").decode("latin-1")

    @property
    def client(self) -> Optional[tuple]:
        return self.scope.get("client")

    @property
    def query(self) -> MultiDict:
        """Parsed query parameters; repeated keys keep every value."""
        if self._query is None:
            self._query = MultiDict.from_query_string(self.query_string)
        return self._query

    @property
    def headers(self) -> Headers:
        if self._headers is None:
            self._headers = Headers(raw=list(self.scope.get("headers", [])))
        return self._headers

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.headers.get(name, default)

    # ========================================================================
    # Body
    # ========================================================================

    async def body(self) -> bytes:
        """
        Read the full request body (idempotent).

        Raises:
            ClientDisconnect: client disconnected mid-body
            BadRequestFault: body exceeds ``max_body_size``
        """
        if self._body is not None:
            return self._body

        chunks = []
        total = 0
        while True:
            message = await self._receive()
            if message["type"] == "http.disconnect":
                raise ClientDisconnect("Client disconnected")
            if message["type"] != "http.request":
                continue
            chunk = message.get("body", b"")
            if chunk:
                total += len(chunk)
                if total > self.max_body_size:
                    raise BadRequestFault(
                        f"request body exceeds {self.max_body_size} bytes",
                        code="PAYLOAD_TOO_LARGE",
                        metadata={"max_allowed": self.max_body_size},
                    )
                chunks.append(chunk)
            if not message.get("more_body", False):
                break

        self._body = b"".join(chunks)
        return self._body

    async def json(self) -> Any:
        """
        Parse the body as JSON. An empty body decodes to ``None``.

        Raises:
            InvalidJSONFault: malformed JSON
        """
        if self._json is not None:
            return self._json
        raw = await self.body()
        if not raw.strip():
            return None
        try:
            self._json = orjson.loads(raw)
        except orjson.JSONDecodeError as exc:
            raise InvalidJSONFault(str(exc))
        return self._json
