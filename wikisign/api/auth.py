"""
Session helpers for the request layer.

The host wiki authenticates users; this service only needs to know which
host user a request comes from. The host (or its login bridge) issues a
signed session cookie carrying the user id, and every request is mapped
back to an Actor through the IdentityDirectory.

Sessions are signed with itsdangerous. In production set
WIKISIGN_SESSION_SECRET to a 32+ character random string shared with the host.

Cookie-authenticated writes also need the double-submit CSRF token: the host
sets a random ``ws_csrf`` cookie next to the session, and the client echoes
it in the ``X-CSRF-Token`` header.
"""

import secrets
from typing import Optional

from fastapi import HTTPException, Request
from itsdangerous import BadSignature, URLSafeSerializer

from ..core import Actor, NotLoggedIn

SESSION_COOKIE = "ws_session"
SESSION_SALT = "wikisign-session"
CSRF_COOKIE = "ws_csrf"
CSRF_HEADER = "X-CSRF-Token"


def _serializer(secret: str) -> URLSafeSerializer:
    return URLSafeSerializer(secret, salt=SESSION_SALT)


def create_session_cookie(actor_id: int, secret: str) -> str:
    """Sign a session value for the given host user id."""
    return _serializer(secret).dumps({"uid": actor_id})


def read_session_cookie(value: Optional[str], secret: str) -> Optional[int]:
    """Return the user id from a session cookie, or None if absent or tampered."""
    if not value:
        return None
    try:
        data = _serializer(secret).loads(value)
    except BadSignature:
        return None
    uid = data.get("uid") if isinstance(data, dict) else None
    return uid if isinstance(uid, int) else None


def current_actor(request: Request) -> Optional[Actor]:
    """Resolve the request's actor, or None for anonymous requests."""
    services = request.app.state.services
    actor_id = read_session_cookie(
        request.cookies.get(SESSION_COOKIE),
        services.config.session_secret,
    )
    if actor_id is None:
        return None
    return Actor.from_directory(actor_id, services.directory)


def require_actor(request: Request) -> Actor:
    """Resolve the request's actor or fail with ``notloggedin``."""
    actor = current_actor(request)
    if actor is None:
        raise NotLoggedIn("You must be logged in to sign pages.")
    return actor


# ============================================================
# CSRF PROTECTION
# ============================================================

def generate_csrf_token() -> str:
    """Generate a cryptographically secure CSRF token."""
    return secrets.token_urlsafe(32)


def validate_csrf_token(cookie_token: Optional[str], header_token: Optional[str]) -> bool:
    """
    Validate CSRF token (double-submit cookie pattern).

    The token in the cookie must match the token in the header.
    """
    if not cookie_token or not header_token:
        return False
    return secrets.compare_digest(cookie_token, header_token)


def require_csrf(request: Request) -> None:
    if not validate_csrf_token(
        request.cookies.get(CSRF_COOKIE),
        request.headers.get(CSRF_HEADER),
    ):
        raise HTTPException(status_code=403, detail="Invalid CSRF token")
