"""
Authentication gate for the ledger endpoint.

Every protected action passes through :func:`authenticate`, which runs
the same sequence for each request:

1. a bearer ID token must be present in the ``idToken`` field;
2. the token is verified by the identity provider's introspection
   endpoint (Google ``tokeninfo``);
3. its ``aud`` claim must equal this deployment's OAuth client ID;
4. the issuer must have verified the e-mail address;
5. the e-mail must have an enabled row in the identity directory.

Failures of steps 1–4 all produce the same ``unauthenticated`` answer;
the actual reason is logged but never sent back, so a caller cannot
probe which check failed.  Step 5 produces ``forbidden`` so that the
client can tell "sign in again" apart from "sign in as someone else".

The token travels as a request field rather than an ``Authorization``
header because the callback-injection transport used by browsers
cannot set headers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
from fastapi import status

from .config import settings
from salon_ledger_api.app.services.staff_service import StaffService, normalize_email

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    """The verified caller of a request."""

    email: str
    name: str = ""


class GateError(Exception):
    """Request rejected by the gate or by an ownership check.

    ``error`` is the stable machine-readable code put in the response
    body; ``status_code`` is the matching HTTP status.
    """

    def __init__(self, status_code: int, error: str) -> None:
        super().__init__(error)
        self.status_code = status_code
        self.error = error


def unauthenticated() -> GateError:
    return GateError(status.HTTP_401_UNAUTHORIZED, "unauthenticated")


def forbidden() -> GateError:
    return GateError(status.HTTP_403_FORBIDDEN, "forbidden")


def _is_true(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


class TokenVerifier:
    """Verifies ID tokens against the provider's introspection endpoint."""

    def __init__(
        self,
        client_id: str,
        token_info_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.token_info_url = token_info_url
        self.timeout = timeout
        self.transport = transport

    async def fetch_claims(self, token: str) -> Optional[Dict[str, Any]]:
        """Return the token's claims, or ``None`` if the provider rejects it."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.get(self.token_info_url, params={"id_token": token})
        except httpx.HTTPError as exc:
            logger.warning("Token introspection failed: %s", exc)
            return None
        if response.status_code != 200:
            logger.info("Token introspection rejected token (HTTP %s)", response.status_code)
            return None
        try:
            claims = response.json()
        except ValueError:
            logger.warning("Token introspection returned non-JSON body")
            return None
        return claims if isinstance(claims, dict) else None

    async def verify(self, token: str) -> Optional[str]:
        """Return the verified e-mail for ``token`` or ``None``."""
        claims = await self.fetch_claims(token)
        if claims is None:
            return None
        if not self.client_id or claims.get("aud") != self.client_id:
            logger.info("Token audience mismatch: %r", claims.get("aud"))
            return None
        if not _is_true(claims.get("email_verified")):
            logger.info("Token e-mail not verified for %r", claims.get("email"))
            return None
        email = normalize_email(claims.get("email"))
        return email or None


_default_verifier: Optional[TokenVerifier] = None


def get_token_verifier() -> TokenVerifier:
    """FastAPI dependency returning the process-wide verifier.

    Tests replace it through ``app.dependency_overrides``.
    """
    global _default_verifier
    if _default_verifier is None:
        _default_verifier = TokenVerifier(
            client_id=settings.google_client_id,
            token_info_url=settings.token_info_url,
            timeout=settings.token_info_timeout,
        )
    return _default_verifier


async def authenticate(token: Optional[str], verifier: TokenVerifier) -> Identity:
    """Run the gate for ``token`` and return the caller's identity.

    Raises
    ------
    GateError
        ``unauthenticated`` (401) or ``forbidden`` (403).
    """
    if not token:
        raise unauthenticated()
    email = await verifier.verify(token)
    if not email:
        raise unauthenticated()
    # The directory is consulted on every call so edits apply immediately.
    if not await StaffService.is_enabled(email):
        logger.warning("Verified identity %s is not in the staff directory", email)
        raise forbidden()
    return Identity(email=email, name=await StaffService.display_name(email))
