"""Bearer-token authentication for the admin API.

Token issuing lives elsewhere; this module only turns a presented token into a
``Principal`` and checks that its role may operate queues.
"""
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Mapping, Optional

from litestar.connection import ASGIConnection
from litestar.handlers.base import BaseRouteHandler

from queuedeck.common.exceptions import Forbidden, Unauthorized

OPERATOR_ROLES = frozenset({"admin", "owner"})


@dataclass(frozen=True)
class Principal:
    subject: str
    role: str


class TokenVerifier(ABC):
    @abstractmethod
    def verify(self, token: str) -> Optional[Principal]:
        """Return the principal for a valid token, None otherwise."""
        raise NotImplementedError


class StaticTokenVerifier(TokenVerifier):
    """Accepts a fixed set of ``token -> role`` pairs, e.g. from QUEUEDECK_API_TOKENS."""

    def __init__(self, tokens: Mapping[str, str]):
        self._tokens = list(tokens.items())

    def verify(self, token: str) -> Optional[Principal]:
        presented = token.encode("utf-8")
        match = None
        # Compare against every entry so timing does not reveal which one matched
        for index, (candidate, role) in enumerate(self._tokens):
            if secrets.compare_digest(candidate.encode("utf-8"), presented) and match is None:
                match = Principal(subject=f"static-token-{index}", role=role)
        return match


def extract_token(connection: ASGIConnection) -> Optional[str]:
    """Bearer header first, then the ``token`` query parameter (EventSource cannot set headers)."""
    scheme, _, value = connection.headers.get("authorization", "").partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    token = connection.query_params.get("token")
    return token or None


def operator_guard(connection: ASGIConnection, _: BaseRouteHandler) -> None:
    token = extract_token(connection)
    if token is None:
        raise Unauthorized("Missing bearer token")
    verifier: TokenVerifier = connection.app.state.verifier
    principal = verifier.verify(token)
    if principal is None:
        raise Unauthorized("Invalid or expired token")
    if principal.role not in OPERATOR_ROLES:
        raise Forbidden(f"Role '{principal.role}' may not operate queues")
    connection.state.principal = principal
