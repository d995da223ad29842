"""
Response envelope shared by every handler.

    {"code": 0, "msg": "success", "data": ..., "request_id": "..."}

``code`` is ``0`` on success and a ``Code`` value otherwise; transport
status follows the fault (``400/404/409/499/503/500``).
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from gantry.faults import Code, Fault, Severity
from gantry.response import Response

logger = logging.getLogger("gantry.controller.response")

__all__ = ["envelope", "success", "failure"]


def envelope(data: Any = None, *, code: Code = Code.SUCCESS, msg: Optional[str] = None, request_id: str = "") -> Dict[str, Any]:
    return {
        "code": int(code),
        "msg": msg if msg is not None else code.msg,
        "data": data,
        "request_id": request_id,
    }


def success(data: Any = None, *, status: int = 200, request_id: str = "", headers: Optional[Dict[str, str]] = None) -> Response:
    return Response.json(envelope(data, request_id=request_id), status=status, headers=headers)


def failure(fault: Fault, *, request_id: str = "") -> Response:
    """Render ``fault`` with its status and business code."""
    if fault.severity in (Severity.ERROR, Severity.FATAL):
        logger.error(f"{fault!r}: {fault.message}")
    else:
        logger.info(f"{fault!r}: {fault.message}")

    data = None
    if fault.public and fault.metadata:
        data = {"error": fault.code, **{k: v for k, v in fault.metadata.items() if not k.startswith("_")}}
    elif fault.public:
        data = {"error": fault.code}

    headers = None
    allowed = getattr(fault, "allowed", None)
    if allowed:
        headers = {"allow": ", ".join(allowed)}
    return Response.json(
        envelope(data, code=fault.biz_code, msg=fault.public_message, request_id=request_id),
        status=fault.status,
        headers=headers,
    )
