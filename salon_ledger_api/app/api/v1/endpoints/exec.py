"""
Single action-dispatching endpoint.

Browsers reach the ledger through one URL and name the operation in
the ``action`` field rather than through the path or HTTP method.  The
same handler therefore serves:

* ``GET`` with query parameters (direct reads and callback-injection
  reads, which can only use ``GET``);
* ``POST`` with a form-encoded, plain-text or JSON body (direct writes
  and fire-and-forget writes, whose browser transport only allows
  "simple" content types).

Responses are JSON objects that always carry ``success``; failures add
``error`` (a stable code) and ``code`` (the HTTP status).  When a valid
``callback`` name is supplied the JSON is wrapped as
``callback(<json>)`` and served with HTTP 200, since a script tag
cannot observe status codes.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple
from urllib.parse import parse_qsl

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError

from salon_ledger_api.app.core.security import (
    GateError,
    Identity,
    TokenVerifier,
    authenticate,
    get_token_verifier,
)
from salon_ledger_api.app.core.timeutil import format_timestamp
from salon_ledger_api.app.schemas.order import OrderCreate
from salon_ledger_api.app.services.order_service import DeleteOutcome, OrderService

logger = logging.getLogger(__name__)

router = APIRouter()

CALLBACK_RE = re.compile(r"^[A-Za-z_$][\w$]*(?:\.[A-Za-z_$][\w$]*)*$")
CALLBACK_MAX_LENGTH = 128


class RequestError(Exception):
    """Malformed request; rendered as HTTP 400."""

    def __init__(self, error: str, message: str = "") -> None:
        super().__init__(message or error)
        self.error = error
        self.message = message


Handler = Callable[[Dict[str, Any], Identity], Awaitable[Dict[str, Any]]]


def _parse_text_body(raw: bytes) -> Dict[str, Any]:
    """Parse a JSON or query-string body.  Raises ``RequestError`` if malformed."""
    text = raw.decode("utf-8", errors="replace").strip()
    if not text:
        return {}
    if text.startswith(("{", "[")):
        try:
            body = json.loads(text)
        except ValueError:
            raise RequestError("invalid_request", "body is not valid JSON")
        if not isinstance(body, dict):
            raise RequestError("invalid_request", "JSON body must be an object")
        return body
    return dict(parse_qsl(text, keep_blank_values=True))


async def _request_fields(request: Request) -> Tuple[Dict[str, Any], bool]:
    """Merge query parameters and body fields into one mapping.

    Body fields win over query parameters.  A ``data`` field holding a
    JSON object is unpacked for clients that send their payload as
    ``data=<json>``; it never overrides top-level fields.  The second
    item of the result tells whether the request carried a body.
    """
    fields: Dict[str, Any] = dict(request.query_params)
    has_body = False
    if request.method == "POST":
        content_type = request.headers.get("content-type", "")
        if content_type.startswith(("application/x-www-form-urlencoded", "multipart/form-data")):
            form = await request.form()
            has_body = len(form) > 0
            fields.update({key: value for key, value in form.items() if isinstance(value, str)})
        else:
            body = _parse_text_body(await request.body())
            has_body = bool(body)
            fields.update(body)

    nested = fields.get("data")
    if isinstance(nested, str) and nested.startswith("{"):
        try:
            nested = json.loads(nested)
        except ValueError:
            nested = None
    if isinstance(nested, dict):
        for key, value in nested.items():
            fields.setdefault(key, value)
    return fields, has_body


def _first(fields: Dict[str, Any], *names: str) -> Any:
    for name in names:
        value = fields.get(name)
        if value is not None and value != "":
            return value
    return None


def _parse_limit(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        raise RequestError("invalid_request", "limit must be an integer")


async def _orders(fields: Dict[str, Any], identity: Identity) -> Dict[str, Any]:
    employee = _first(fields, "employee", "owner")
    if employee is not None:
        scope = str(employee).strip().lower()
        if scope not in {identity.email, identity.name.strip().lower()}:
            return {"success": False, "error": "not_owner", "code": status.HTTP_403_FORBIDDEN}
    try:
        orders = await OrderService.list_orders(
            identity.email,
            day=_first(fields, "date"),
            limit=_parse_limit(_first(fields, "limit")),
            service=_first(fields, "service", "category"),
        )
    except ValueError as exc:
        raise RequestError("invalid_request", str(exc))
    return {
        "success": True,
        "orders": [order.model_dump(by_alias=True) for order in orders],
        "total": len(orders),
    }


async def _stats(fields: Dict[str, Any], identity: Identity) -> Dict[str, Any]:
    stats = await OrderService.stats(identity.email)
    return {"success": True, **stats.model_dump(by_alias=True)}


async def _create(fields: Dict[str, Any], identity: Identity) -> Dict[str, Any]:
    try:
        data = OrderCreate(
            category=_first(fields, "service", "category"),
            amount=_first(fields, "price", "amount"),
            note=_first(fields, "notes", "note"),
        )
    except ValidationError as exc:
        errors = exc.errors()
        message = "; ".join(f"{'.'.join(map(str, e['loc']))}: {e['msg']}" for e in errors)
        raise RequestError("invalid_request", message)
    order = await OrderService.create_order(data, identity.email)
    return {"success": True, "order": order.model_dump(by_alias=True)}


async def _delete(fields: Dict[str, Any], identity: Identity) -> Dict[str, Any]:
    order_id = _first(fields, "id")
    if order_id is None:
        raise RequestError("invalid_request", "id is required")
    outcome = await OrderService.delete_order(str(order_id).strip(), identity.email)
    if outcome is DeleteOutcome.NOT_FOUND:
        return {"success": False, "error": "not_found", "code": status.HTTP_404_NOT_FOUND}
    if outcome is DeleteOutcome.FORBIDDEN:
        return {"success": False, "error": "not_owner", "code": status.HTTP_403_FORBIDDEN}
    return {"success": True, "id": str(order_id).strip()}


async def _whoami(fields: Dict[str, Any], identity: Identity) -> Dict[str, Any]:
    return {"success": True, "email": identity.email, "name": identity.name}


HANDLERS: Dict[str, Handler] = {
    "orders": _orders,
    "stats": _stats,
    "create": _create,
    "delete": _delete,
    "whoami": _whoami,
}


def _render(payload: Dict[str, Any], callback: Optional[str]) -> Response:
    status_code = int(payload.get("code", status.HTTP_200_OK))
    if callback:
        # U+2028/U+2029 are line terminators in older JavaScript engines.
        text = json.dumps(payload, ensure_ascii=False)
        text = text.replace("\u2028", "\\u2028").replace("\u2029", "\\u2029")
        body = f"{callback}({text})"
        return Response(content=body, media_type="application/javascript")
    return JSONResponse(payload, status_code=status_code)


def _failure(status_code: int, error: str, message: str = "") -> Dict[str, Any]:
    payload: Dict[str, Any] = {"success": False, "error": error, "code": status_code}
    if message:
        payload["message"] = message
    return payload


@router.api_route("/exec", methods=["GET", "POST"])
async def execute(
    request: Request,
    verifier: TokenVerifier = Depends(get_token_verifier),
) -> Response:
    """Dispatch one ledger action.

    A missing ``action`` is treated as ``health`` so that opening the
    URL in a browser shows whether the service is alive.  A ``POST``
    whose body is malformed, or has fields but no ``action``, is
    rejected instead: it was meant to do something else.
    """
    try:
        fields, has_body = await _request_fields(request)
    except RequestError as exc:
        logger.warning("Rejected malformed %s body: %s", request.method, exc.message)
        return _render(_failure(status.HTTP_400_BAD_REQUEST, exc.error, exc.message), None)
    callback = fields.get("callback") or None
    if callback is not None:
        callback = str(callback)
        if len(callback) > CALLBACK_MAX_LENGTH or not CALLBACK_RE.match(callback):
            return _render(_failure(status.HTTP_400_BAD_REQUEST, "invalid_callback"), None)

    if not fields.get("action") and has_body:
        return _render(
            _failure(status.HTTP_400_BAD_REQUEST, "invalid_request", "action is required"),
            callback,
        )
    action = str(fields.get("action") or "health").strip().lower()
    if action == "health":
        return _render(
            {"success": True, "status": "ok", "timestamp": format_timestamp(datetime.now())},
            callback,
        )

    handler = HANDLERS.get(action)
    if handler is None:
        return _render(_failure(status.HTTP_400_BAD_REQUEST, "unknown_action"), callback)

    try:
        identity = await authenticate(_first(fields, "idToken", "id_token"), verifier)
        logger.debug("Action %s by %s", action, identity.email)
        payload = await handler(fields, identity)
    except GateError as exc:
        payload = _failure(exc.status_code, exc.error)
    except RequestError as exc:
        payload = _failure(status.HTTP_400_BAD_REQUEST, exc.error, exc.message)
    return _render(payload, callback)
