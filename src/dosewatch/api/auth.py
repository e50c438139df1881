"""Bearer-token admin check for every admin endpoint.

``Authorization: Bearer <token>`` is compared in constant time against the
configured admin token.  A missing or malformed header is 401; a wrong token,
or an API started without a token, is 403.
"""

from __future__ import annotations

import hmac
import logging

from fastapi import Depends, Request

logger = logging.getLogger(__name__)


class AuthenticationError(Exception):
    """Credentials are missing or malformed (HTTP 401)."""


class AuthorizationError(Exception):
    """Credentials were presented but are not accepted (HTTP 403)."""


class AdminAuthenticator:
    """Validates admin bearer tokens.

    Parameters
    ----------
    token:
        The expected admin token.  When ``None`` or empty every request is
        rejected, so the API cannot be exposed unauthenticated by accident.
    """

    def __init__(self, token: str | None) -> None:
        self._token = token or None

    @property
    def enabled(self) -> bool:
        return self._token is not None

    def verify(self, authorization: str | None) -> None:
        """Raise unless *authorization* carries the admin token.

        Raises
        ------
        AuthenticationError
            Header missing, not a bearer credential, or empty.
        AuthorizationError
            Wrong token, or no admin token is configured.
        """
        if not authorization:
            raise AuthenticationError("Missing Authorization header")
        scheme, _, credentials = authorization.partition(" ")
        credentials = credentials.strip()
        if scheme.lower() != "bearer" or not credentials:
            raise AuthenticationError("Authorization header must be 'Bearer <token>'")
        if self._token is None:
            raise AuthorizationError("Admin API disabled: no admin token configured")
        if not hmac.compare_digest(credentials.encode(), self._token.encode()):
            logger.warning("Rejected admin request with invalid token")
            raise AuthorizationError("Invalid admin token")


def _get_authenticator() -> AdminAuthenticator:
    """Dependency stub, overridden at app startup or in tests."""
    raise RuntimeError("AdminAuthenticator not initialized")


async def require_admin(
    request: Request,
    authenticator: AdminAuthenticator = Depends(_get_authenticator),
) -> None:
    authenticator.verify(request.headers.get("Authorization"))
