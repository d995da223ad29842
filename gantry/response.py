"""
Response - ASGI 3 response builder.

Bodies are bytes; ``Response.json`` encodes with orjson. Datetimes are
rendered in the storage layout (``YYYY-MM-DD HH:MM:SS``) so envelopes match
``Model.to_dict``.
"""

from __future__ import annotations

import datetime
import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

import orjson

from .models.fields import DATETIME_LAYOUT

logger = logging.getLogger("gantry.response")

__all__ = ["Response"]

JSON_MEDIA_TYPE = "application/json; charset=utf-8"


def _json_default(o: Any) -> Any:
    """Fallback for types orjson does not know."""
    if isinstance(o, datetime.datetime):
        return o.strftime(DATETIME_LAYOUT)
    if isinstance(o, (set, frozenset, tuple)):
        return list(o)
    if hasattr(o, "to_dict"):
        return o.to_dict()
    return str(o)


class Response:
    """HTTP response with a bytes body."""

    __slots__ = ("status", "body", "_headers")

    def __init__(
        self,
        content: Any = b"",
        status: int = 200,
        headers: Optional[Mapping[str, str]] = None,
        media_type: Optional[str] = None,
    ):
        self.status = status
        if isinstance(content, str):
            content = content.encode("utf-8")
        self.body: bytes = content or b""
        self._headers: Dict[str, str] = {}
        if headers:
            for key, value in headers.items():
                self._headers[key.lower()] = value
        if media_type:
            self._headers["content-type"] = media_type
        self._headers.setdefault("content-type", "application/octet-stream")

    def __repr__(self) -> str:
        return f"<Response {self.status} {len(self.body)}B>"

    @property
    def headers(self) -> Dict[str, str]:
        return self._headers

    # ========================================================================
    # Factory Methods
    # ========================================================================

    @classmethod
    def json(cls, obj: Any, status: int = 200, *, headers: Optional[Mapping[str, str]] = None) -> "Response":
        content = orjson.dumps(
            obj,
            default=_json_default,
            option=orjson.OPT_NON_STR_KEYS | orjson.OPT_PASSTHROUGH_DATETIME,
        )
        return cls(content=content, status=status, headers=headers, media_type=JSON_MEDIA_TYPE)

    @classmethod
    def text(cls, content: str, status: int = 200, **kwargs) -> "Response":
        return cls(content=content, status=status, media_type="text/plain; charset=utf-8", **kwargs)

    def decode(self) -> Any:
        """Body parsed as JSON (tests)."""
        return orjson.loads(self.body)

    # ========================================================================
    # Headers
    # ========================================================================

    def set_header(self, name: str, value: str) -> None:
        if "\r" in value or "\n" in value:
            raise ValueError(f"header {name!r} contains a line break")
        self._headers[name.lower()] = value

    def _prepare_headers(self) -> List[Tuple[bytes, bytes]]:
        self._headers["content-length"] = str(len(self.body))
        return [(k.encode("latin-1"), v.encode("latin-1")) for k, v in self._headers.items()]

    # ========================================================================
    # ASGI
    # ========================================================================

    async def send_asgi(self, send: Callable[[dict], Awaitable[None]]) -> None:
        await send({
            "type": "http.response.start",
            "status": self.status,
            "headers": self._prepare_headers(),
        })
        await send({"type": "http.response.body", "body": self.body, "more_body": False})
