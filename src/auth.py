"""
Bearer tokens: issuance, scope grants and introspection.

This module plays the external authorization collaborator. The requirement
machinery only needs two things from it:

- "grant scope set S to bearer B": re-issue B's token with S added
- "introspect token": recover {subject, scopes, client_id, claims, expires_at}

The demo peer (src/server.py) uses validate_token() to authenticate the
Authorization header of each tools/call, exactly like a resource server would.

Token structure (JWT payload):
    {
        "sub": "user-or-agent-id",        # Who is making the request
        "scope": ["user:read"],            # What they're allowed to access
        "client_id": "demo-client",        # Which OAuth client holds the token
        "role": "owner",                   # Identity claims (optional, any name)
        "iat": 1738790000,
        "exp": 1738800000                  # When this token expires (Unix timestamp)
    }

Tokens are signed with HS256 (HMAC-SHA256), a symmetric algorithm where the
same secret key is used to sign and verify.
"""

import datetime
import logging
from dataclasses import dataclass, field
from typing import Iterable, Mapping

import jwt

from src.config import settings

logger = logging.getLogger("mcp-auth")

# Payload keys that are not identity claims.
REGISTERED_CLAIMS = frozenset({"sub", "scope", "client_id", "exp", "iat", "nbf", "iss", "aud", "jti"})


class AuthError(Exception):
    """
    Raised when token validation fails for any reason.

    A single exception type for all auth failures (missing token, invalid
    signature, expired, malformed claims).

    Attributes:
        message: Human-readable error description
        status_code: HTTP status code to return (401 for auth failures)
    """

    def __init__(self, message: str, status_code: int = 401):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


@dataclass(frozen=True)
class TokenInfo:
    """
    Validated token information extracted from a JWT.

    Attributes:
        subject: The "sub" claim - identifies who/what made the request
        scopes: List of authorized scopes (e.g., ["user:read"])
        client_id: OAuth client the token was issued to, if recorded
        claims: String-valued identity claims (e.g., {"role": "owner"})
        expires_at: Expiration as a Unix timestamp
    """

    subject: str
    scopes: list[str]
    client_id: str | None = None
    claims: dict[str, str] = field(default_factory=dict)
    expires_at: int | None = None


def _decode(token: str, secret: str, algorithm: str) -> TokenInfo:
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[algorithm],
            # Reject tokens without an expiration or a subject.
            options={"require": ["exp", "sub"]},
        )
    except jwt.ExpiredSignatureError:
        raise AuthError("Token has expired")
    except jwt.InvalidTokenError as e:
        raise AuthError(f"Invalid token: {e}")

    subject = payload.get("sub", "")

    # The "scope" claim should be a list of strings like ["user:read"].
    scopes_claim = payload.get("scope", [])

    if not isinstance(scopes_claim, list):
        raise AuthError("Invalid scope claim: must be a list")

    if not all(isinstance(s, str) for s in scopes_claim):
        raise AuthError("Invalid scope claim: all entries must be strings")

    claims = {
        name: value
        for name, value in payload.items()
        if name not in REGISTERED_CLAIMS and isinstance(value, str)
    }

    return TokenInfo(
        subject=subject,
        scopes=scopes_claim,
        client_id=payload.get("client_id"),
        claims=claims,
        expires_at=payload.get("exp"),
    )


def validate_token(authorization_header: str | None) -> TokenInfo:
    """
    Validate a Bearer token from an Authorization header value.

    Steps:
    1. Check that a header is present
    2. Extract the token from "Bearer <token>" format
    3. Decode and verify the JWT (signature + expiration)
    4. Extract and validate the claims (sub, scope, identity claims)

    Args:
        authorization_header: The raw header value, expected "Bearer <jwt-token>"

    Returns:
        TokenInfo with the validated subject, scopes and claims

    Raises:
        AuthError: If any validation step fails
    """
    if not authorization_header:
        raise AuthError("Missing Authorization header")

    # "Bearer" scheme per RFC 6750, matched case-insensitively.
    parts = authorization_header.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AuthError("Invalid Authorization header format, expected 'Bearer <token>'")

    return _decode(parts[1], settings.jwt_secret_key, settings.jwt_algorithm)


class ScopeGrantService:
    """
    Minimal in-process authorization server.

    Issues signed tokens, re-issues them with additional scopes (renegotiation)
    and introspects them. Any peer configured with the same secret accepts the
    tokens it issues.
    """

    def __init__(
        self,
        secret: str | None = None,
        algorithm: str | None = None,
        ttl_hours: float | None = None,
    ):
        self.secret = secret or settings.jwt_secret_key
        self.algorithm = algorithm or settings.jwt_algorithm
        self.ttl_hours = settings.token_ttl_hours if ttl_hours is None else ttl_hours

    def issue(
        self,
        subject: str,
        scopes: Iterable[str],
        *,
        client_id: str | None = None,
        claims: Mapping[str, str] | None = None,
    ) -> str:
        """Mint a signed token for `subject` carrying `scopes` and identity claims."""
        now = datetime.datetime.now(datetime.timezone.utc)
        payload: dict = {**(claims or {})}
        payload.update(
            {
                "sub": subject,
                "scope": sorted(set(scopes)),
                "iat": now,
                "exp": now + datetime.timedelta(hours=self.ttl_hours),
            }
        )
        if client_id is not None:
            payload["client_id"] = client_id
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def introspect(self, token: str) -> TokenInfo:
        """Decode and verify a token. Raises AuthError if it is not valid."""
        return _decode(token, self.secret, self.algorithm)

    def grant(self, bearer: str, scopes: Iterable[str]) -> str:
        """
        Grant additional scopes to the holder of `bearer`.

        The returned token keeps the subject, client and identity claims of
        the original and carries the union of old and new scopes.
        """
        info = self.introspect(bearer)
        requested = set(scopes)
        token = self.issue(
            info.subject,
            set(info.scopes) | requested,
            client_id=info.client_id,
            claims=info.claims,
        )
        logger.info(
            "Scopes granted",
            extra={
                "log_data": {
                    "subject": info.subject,
                    "client_id": info.client_id,
                    "granted": sorted(requested - set(info.scopes)),
                }
            },
        )
        return token
