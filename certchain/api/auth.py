"""
Actor authentication for the HTTP layer.

Login itself (wallet signature challenge, sessions) happens elsewhere and
hands the client a signed actor token. This module only:
- Issues tokens (for the login component and the operator CLI)
- Verifies tokens from the Authorization header (itsdangerous)
- Extracts the client IP for rate limiting

For production:
- Set CERTCHAIN_TOKEN_SECRET to a 32+ character random string
- Set CERTCHAIN_PRODUCTION=1 so a missing secret is fatal
"""

import os
import warnings
from typing import Optional

from fastapi import HTTPException, Request, status
from itsdangerous import BadSignature, URLSafeSerializer

from ..observability import is_production
from ..schemas import Actor, ActorRole

TOKEN_SALT = "certchain-actor-v1"
_DEV_SECRET = "dev-insecure-secret-do-not-use-in-production-12345678"


# ============================================================
# TOKENS
# ============================================================

def _serializer() -> URLSafeSerializer:
    secret = os.environ.get("CERTCHAIN_TOKEN_SECRET", "")
    if not secret or len(secret) < 16:
        if is_production():
            raise RuntimeError(
                "CERTCHAIN_TOKEN_SECRET must be set in production. "
                "Generate with: python -c \"import secrets; print(secrets.token_urlsafe(32))\""
            )
        warnings.warn(
            "CERTCHAIN_TOKEN_SECRET not set. Using insecure default.",
            stacklevel=2,
        )
        secret = _DEV_SECRET
    return URLSafeSerializer(secret_key=secret, salt=TOKEN_SALT)


def create_actor_token(actor: Actor) -> str:
    return _serializer().dumps({"a": actor.address, "n": actor.name, "r": actor.role.value})


def read_actor_token(token: str) -> Optional[Actor]:
    if not token:
        return None
    try:
        data = _serializer().loads(token)
        return Actor(
            address=str(data["a"]),
            name=str(data.get("n", "")),
            role=ActorRole(data.get("r", ActorRole.STAFF.value)),
        )
    except (BadSignature, KeyError, TypeError, ValueError):
        return None


def actor_from_request(request: Request) -> Optional[Actor]:
    """The actor named by a valid Bearer token, or None."""
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return read_actor_token(token.strip())


# ============================================================
# DEPENDENCIES
# ============================================================

def require_actor(request: Request) -> Actor:
    actor = actor_from_request(request)
    if actor is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return actor


def require_admin(request: Request) -> Actor:
    actor = require_actor(request)
    if not actor.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
    return actor


# ============================================================
# UTILITY FUNCTIONS
# ============================================================

def get_client_ip(request: Request) -> str:
    """Extract client IP from request (handles proxies)."""
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        # First entry is the originating client
        return forwarded.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP", "")
    if real_ip:
        return real_ip

    if request.client:
        return request.client.host

    return "unknown"
