"""Salon ledger API client.

This module is the client side of the ledger: it gets one request to
the ``/exec`` endpoint and one answer back, even when the endpoint sits
behind infrastructure that refuses cross-origin reads, hides response
bodies or is simply slow.  It uses the ``requests`` library
internally.

Three transport strategies are tried, in a fixed order:

* :class:`DirectTransport` – an ordinary request whose JSON answer is
  read and returned.  Reads are sent as ``GET`` with query parameters,
  writes as form-encoded ``POST``.  When the client is configured with
  an ``origin`` it behaves like a browser and refuses to read a
  response that lacks a matching ``Access-Control-Allow-Origin``
  header.
* :class:`FireAndForgetTransport` – for writes whose direct attempt was
  blocked cross-origin.  The request is sent but its answer is never
  read; if nothing fails at the network level the write is reported as
  an *unconfirmed* success (``TransportResult.confirmed is False``).
* :class:`CallbackInjectionTransport` – for reads only.  The endpoint
  is asked to wrap its JSON in a uniquely named callback, the way a
  browser script tag receives it.

Failures are typed.  An ``unauthenticated`` or ``forbidden`` answer
from the gate is never retried: the stored token is dropped, the
``on_session_invalid`` hook is called once and :class:`Unauthenticated`
or :class:`Forbidden` is raised.  Network errors, timeouts and 5xx
answers are retried with linear backoff and finally surface as
:class:`TransportFailure`.

High-level methods:

* :meth:`SalonLedgerClient.health`
* :meth:`SalonLedgerClient.list_orders`
* :meth:`SalonLedgerClient.get_stats`
* :meth:`SalonLedgerClient.create_order`
* :meth:`SalonLedgerClient.delete_order`
* :meth:`SalonLedgerClient.whoami`

Concurrent calls are independent; the client neither queues nor
de-duplicates them.
"""

from __future__ import annotations

import enum
import json
import logging
import os
import re
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import requests


logger = logging.getLogger(__name__)

READ_ACTIONS = frozenset({"health", "orders", "stats", "whoami"})
WRITE_ACTIONS = frozenset({"create", "delete"})
PUBLIC_ACTIONS = frozenset({"health"})

AUTH_ERRORS = frozenset({"unauthenticated", "forbidden"})
STATS_KEYS = ("todayCount", "todayRevenue", "weekCount", "weekRevenue", "monthRevenue", "totalOrders")


# ----------------------------------------------------------------------
# Errors
# ----------------------------------------------------------------------
class ApiError(Exception):
    """Base class for every failure surfaced by the client."""

    def __init__(self, message: str, payload: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.payload = payload or {}


class AuthRejected(ApiError):
    """The gate refused the caller; retrying with the same token is pointless."""


class Unauthenticated(AuthRejected):
    """Missing, invalid or unverifiable token: sign in again."""


class Forbidden(AuthRejected):
    """Valid identity that is not allowed to use the ledger."""


class NotOwner(ApiError):
    """The order exists but belongs to someone else."""


class RequestRejected(ApiError):
    """The server refused the request as malformed (HTTP 400)."""


class TransportFailure(ApiError):
    """Every transport and retry failed."""

    def __init__(self, message: str, last_error: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.last_error = last_error


class AttemptFailed(Exception):
    """One transport attempt failed; the dispatcher decides what happens next."""


class CrossOriginBlocked(AttemptFailed):
    """The request may have reached the server but its answer cannot be read."""


class TransientFailure(AttemptFailed):
    """Timeout, connection error or server error; worth retrying."""


# ----------------------------------------------------------------------
# Results
# ----------------------------------------------------------------------
@dataclass
class TransportResult:
    """Answer of one dispatched request.

    Attributes:
        data: The decoded JSON body, or a synthesised body for
            fire-and-forget writes.
        transport: Name of the strategy that produced ``data``.
        confirmed: ``False`` when the server's answer was never seen.
        attempts: Number of direct attempts made.
    """

    data: Dict[str, Any]
    transport: str
    confirmed: bool = True
    attempts: int = 1


class DeleteResult(str, enum.Enum):
    DELETED = "deleted"
    ALREADY_GONE = "already_gone"
    UNCONFIRMED = "unconfirmed"


# ----------------------------------------------------------------------
# Transport strategies
# ----------------------------------------------------------------------
class TransportStrategy:
    """One way of getting a request to the endpoint."""

    name = "base"

    def send(
        self,
        session: requests.Session,
        url: str,
        params: Dict[str, Any],
        *,
        write: bool,
        timeout: float,
        origin: Optional[str] = None,
    ) -> Dict[str, Any]:
        raise NotImplementedError


def _decode_json(response: requests.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        raise CrossOriginBlocked(
            f"Unreadable {response.headers.get('content-type') or 'untyped'} response"
        )
    if not isinstance(data, dict):
        raise CrossOriginBlocked("Response is not a JSON object")
    return data


class DirectTransport(TransportStrategy):
    """Plain request whose JSON answer is read."""

    name = "direct"

    def send(self, session, url, params, *, write, timeout, origin=None):
        headers: Dict[str, str] = {}
        if origin:
            headers["Origin"] = origin
        try:
            if write:
                response = session.post(url, data=params, headers=headers, timeout=timeout)
            else:
                response = session.get(url, params=params, headers=headers, timeout=timeout)
        except requests.Timeout as exc:
            raise TransientFailure(f"Timed out after {timeout}s") from exc
        except requests.RequestException as exc:
            raise TransientFailure(str(exc)) from exc

        if origin:
            allowed = response.headers.get("Access-Control-Allow-Origin")
            if allowed not in ("*", origin):
                raise CrossOriginBlocked(f"Origin {origin} not allowed (got {allowed!r})")
        if response.status_code >= 500:
            raise TransientFailure(f"HTTP {response.status_code}")
        return _decode_json(response)


class FireAndForgetTransport(TransportStrategy):
    """Send a write without reading the answer."""

    name = "fire_and_forget"

    def send(self, session, url, params, *, write, timeout, origin=None):
        try:
            response = session.post(url, data=params, timeout=timeout, stream=True)
        except requests.RequestException as exc:
            raise TransientFailure(str(exc)) from exc
        response.close()
        return {"success": True, "confirmed": False, "message": "Request sent (unconfirmed)"}


class CallbackInjectionTransport(TransportStrategy):
    """Read through a uniquely named callback wrapper.

    Every in-flight callback name is recorded in :attr:`pending` and is
    removed again when the attempt ends, whether it succeeded, failed
    or timed out.
    """

    name = "callback"
    prefix = "__jsonp_cb_"

    def __init__(self) -> None:
        self.pending: Dict[str, str] = {}

    def new_callback_name(self) -> str:
        return self.prefix + secrets.token_hex(8)

    def send(self, session, url, params, *, write, timeout, origin=None):
        if write:
            raise ValueError("Callback injection cannot carry writes")
        callback = self.new_callback_name()
        self.pending[callback] = str(params.get("action", ""))
        try:
            try:
                response = session.get(
                    url, params={**params, "callback": callback}, timeout=timeout
                )
            except requests.Timeout as exc:
                raise TransientFailure(f"Callback timed out after {timeout}s") from exc
            except requests.RequestException as exc:
                raise TransientFailure(str(exc)) from exc
            match = re.match(
                r"^\s*" + re.escape(callback) + r"\((.*)\)\s*;?\s*$", response.text, re.DOTALL
            )
            if match is None:
                raise TransientFailure("Callback was not invoked")
            try:
                data = json.loads(match.group(1))
            except ValueError as exc:
                raise TransientFailure("Callback payload is not JSON") from exc
            if not isinstance(data, dict):
                raise TransientFailure("Callback payload is not a JSON object")
            return data
        finally:
            self.pending.pop(callback, None)


def select_fallback(write: bool, failure: AttemptFailed) -> Optional[str]:
    """Name the fallback strategy for a failed direct attempt, if any.

    Writes blocked cross-origin go fire-and-forget; reads that cannot
    be read directly go through callback injection.  Writes never use
    callback injection, and transient write failures are only retried.
    """
    if write:
        if isinstance(failure, CrossOriginBlocked):
            return FireAndForgetTransport.name
        return None
    return CallbackInjectionTransport.name


# ----------------------------------------------------------------------
# Client
# ----------------------------------------------------------------------
class SalonLedgerClient:
    """Client for the ledger's action endpoint."""

    def __init__(
        self,
        *,
        base_url: str,
        token: Optional[str] = None,
        token_provider: Optional[Callable[[], Optional[str]]] = None,
        on_session_invalid: Optional[Callable[[str], None]] = None,
        origin: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
        callback_timeout: float = 10.0,
        attempts: int = 3,
        backoff: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialise the client.

        Args:
            base_url: Full URL of the ``/exec`` endpoint.
            token: Bearer ID token, sent as the ``idToken`` field.
            token_provider: Called before each request when no token is
                stored, e.g. to read a refreshed token from a login
                component.
            on_session_invalid: Called with ``"unauthenticated"`` or
                ``"forbidden"`` when the gate rejects the token.
            origin: Page origin to present.  Enables browser-style
                cross-origin checks on direct responses.
            session: Optional requests session.
            timeout: Seconds allowed for each direct or fire-and-forget
                attempt.
            callback_timeout: Seconds allowed for a callback read.
            attempts: Total direct attempts per request.
            backoff: Base delay; attempt ``n`` is followed by a sleep of
                ``backoff * n`` seconds.
            sleep: Sleep function, replaceable in tests.
        """
        self.base_url = base_url
        self._token = token
        self.token_provider = token_provider
        self.on_session_invalid = on_session_invalid
        self.origin = origin
        self.session = session or requests.Session()
        self.timeout = timeout
        self.callback_timeout = callback_timeout
        self.attempts = max(1, attempts)
        self.backoff = backoff
        self.sleep = sleep
        self.direct = DirectTransport()
        self.fire_and_forget = FireAndForgetTransport()
        self.callback = CallbackInjectionTransport()

    @classmethod
    def from_env(cls, **kwargs: Any) -> "SalonLedgerClient":
        """Build a client from ``SALON_LEDGER_URL`` and ``SALON_LEDGER_TOKEN``."""
        base_url = os.getenv("SALON_LEDGER_URL")
        if not base_url:
            raise RuntimeError("Missing SALON_LEDGER_URL environment variable")
        kwargs.setdefault("token", os.getenv("SALON_LEDGER_TOKEN") or None)
        kwargs.setdefault("origin", os.getenv("SALON_LEDGER_ORIGIN") or None)
        return cls(base_url=base_url, **kwargs)

    # ------------------------------------------------------------------
    # Session handling
    # ------------------------------------------------------------------
    @property
    def token(self) -> Optional[str]:
        if not self._token and self.token_provider is not None:
            self._token = self.token_provider()
        return self._token

    def set_token(self, token: Optional[str]) -> None:
        self._token = token

    def _invalidate_session(self, reason: str) -> None:
        logger.warning("Session rejected by server (%s); dropping token", reason)
        self._token = None
        if self.on_session_invalid is not None:
            self.on_session_invalid(reason)

    def _raise_if_auth_rejected(self, data: Dict[str, Any]) -> None:
        error = data.get("error")
        if data.get("success") is False and error in AUTH_ERRORS:
            self._invalidate_session(error)
            if error == "forbidden":
                raise Forbidden("Account is not allowed to use the ledger", data)
            raise Unauthenticated("Session expired, sign in again", data)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    def _build_params(self, action: str, params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        built: Dict[str, Any] = {"action": action}
        if self.origin:
            built["origin"] = self.origin
        for key, value in (params or {}).items():
            if value is not None:
                built[key] = value
        if action not in PUBLIC_ACTIONS:
            token = self.token
            if not token:
                raise Unauthenticated("Not signed in")
            built["idToken"] = token
        return built

    def request(self, action: str, params: Optional[Dict[str, Any]] = None) -> TransportResult:
        """Dispatch ``action`` through the transport chain.

        Raises:
            Unauthenticated, Forbidden: the gate rejected the token.
            TransportFailure: every attempt failed.
        """
        write = action in WRITE_ACTIONS
        payload = self._build_params(action, params)
        fire_and_forget_tried = False
        last_error: Optional[AttemptFailed] = None

        attempt = 0
        while attempt < self.attempts:
            attempt += 1
            try:
                logger.debug("Direct %s attempt %d", action, attempt)
                data = self.direct.send(
                    self.session, self.base_url, payload,
                    write=write, timeout=self.timeout, origin=self.origin,
                )
            except AttemptFailed as exc:
                last_error = exc
                logger.warning("%s attempt %d failed: %s", action, attempt, exc)
                fallback = select_fallback(write, exc)
                if fallback == FireAndForgetTransport.name and not fire_and_forget_tried:
                    fire_and_forget_tried = True
                    try:
                        data = self.fire_and_forget.send(
                            self.session, self.base_url, payload,
                            write=True, timeout=self.timeout,
                        )
                    except AttemptFailed as ff_exc:
                        last_error = ff_exc
                        logger.warning("Fire-and-forget %s failed: %s", action, ff_exc)
                    else:
                        logger.info("%s sent without confirmation", action)
                        return TransportResult(
                            data, FireAndForgetTransport.name, confirmed=False, attempts=attempt
                        )
                elif fallback == CallbackInjectionTransport.name and isinstance(
                    exc, CrossOriginBlocked
                ):
                    # Retrying a blocked read directly cannot help.
                    break
                if attempt < self.attempts:
                    delay = self.backoff * attempt
                    logger.info("Retrying %s in %.1fs", action, delay)
                    self.sleep(delay)
                continue
            self._raise_if_auth_rejected(data)
            return TransportResult(data, DirectTransport.name, attempts=attempt)

        if not write:
            try:
                data = self.callback.send(
                    self.session, self.base_url, payload,
                    write=False, timeout=self.callback_timeout,
                )
            except AttemptFailed as exc:
                last_error = exc
                logger.warning("Callback read of %s failed: %s", action, exc)
            else:
                self._raise_if_auth_rejected(data)
                return TransportResult(data, CallbackInjectionTransport.name, attempts=attempt)

        raise TransportFailure(f"{action} failed after {attempt} attempt(s): {last_error}", last_error)

    @staticmethod
    def _raise_for_failure(action: str, data: Dict[str, Any]) -> None:
        if data.get("success") is not False:
            return
        error = data.get("error") or "unknown_error"
        message = data.get("message") or error
        if error == "not_owner":
            raise NotOwner("Order belongs to another account", data)
        if data.get("code") == 400 or error in {"invalid_request", "unknown_action", "invalid_callback"}:
            raise RequestRejected(f"{action}: {message}", data)
        raise ApiError(f"{action}: {message}", data)

    # ------------------------------------------------------------------
    # Ledger operations
    # ------------------------------------------------------------------
    def health(self) -> Dict[str, Any]:
        """Return the liveness marker; needs no token."""
        return self.request("health").data

    def list_orders(
        self,
        date: Optional[str] = None,
        limit: Optional[int] = None,
        service: Optional[str] = None,
        employee: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Return the caller's orders, newest first.

        Args:
            date: Optional ``YYYY-MM-DD`` local day.
            limit: Optional maximum; the server caps it at 100.
            service: Optional category to filter on.
            employee: Optional scope; the server only accepts the
                caller's own e-mail or display name and answers
                ``not_owner`` otherwise.
        """
        params = {"date": date, "limit": limit, "service": service, "employee": employee}
        data = self.request("orders", params).data
        self._raise_for_failure("orders", data)
        orders = data.get("orders")
        return orders if isinstance(orders, list) else []

    def get_stats(self) -> Dict[str, Any]:
        """Return counts and revenue for today, this week and this month.

        ``services`` lists this month's ``{name, count, revenue}`` per
        category, highest revenue first.
        """
        data = self.request("stats").data
        self._raise_for_failure("stats", data)
        stats: Dict[str, Any] = {key: data.get(key, 0) for key in STATS_KEYS}
        services = data.get("services")
        stats["services"] = services if isinstance(services, list) else []
        return stats

    def create_order(self, category: str, amount: int, note: str = "") -> TransportResult:
        """Record an order.

        ``result.data["order"]`` holds the stored order when
        ``result.confirmed``; an unconfirmed result means the write was
        sent but its outcome is unknown.
        """
        result = self.request("create", {"service": category, "price": amount, "notes": note})
        self._raise_for_failure("create", result.data)
        return result

    def delete_order(self, order_id: str) -> DeleteResult:
        """Delete an order.  A missing order is reported as already gone."""
        result = self.request("delete", {"id": order_id})
        if not result.confirmed:
            return DeleteResult.UNCONFIRMED
        if result.data.get("success") is False and result.data.get("error") == "not_found":
            return DeleteResult.ALREADY_GONE
        self._raise_for_failure("delete", result.data)
        return DeleteResult.DELETED

    def whoami(self) -> Dict[str, Any]:
        """Return the e-mail and display name the server sees for the token."""
        data = self.request("whoami").data
        self._raise_for_failure("whoami", data)
        return {"email": data.get("email", ""), "name": data.get("name", "")}
