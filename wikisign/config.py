"""
Signing Configuration

Environment Variables:
    WIKISIGN_DEFAULT_ROLE: Group that may sign when a page names no
        explicit group or user (default sysop)
    WIKISIGN_SESSION_SECRET: Secret for signed session cookies
    WIKISIGN_HOOK_TOKEN: Shared token the save pipeline must send to the
        content-changed hook (unset: hook is open, development only)
    WIKISIGN_PRODUCTION: Enable production mode (requires a session secret
        and a hook token)
"""

import os
import secrets
import warnings
from dataclasses import dataclass

DEFAULT_ROLE = "sysop"


def _is_production() -> bool:
    return os.environ.get("WIKISIGN_PRODUCTION", "").lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class SigningConfig:
    """Runtime settings for the signing service."""
    default_role: str = DEFAULT_ROLE
    session_secret: str = ""
    hook_token: str = ""
    production: bool = False

    @classmethod
    def from_env(cls) -> "SigningConfig":
        production = _is_production()
        secret = os.environ.get("WIKISIGN_SESSION_SECRET", "")
        hook_token = os.environ.get("WIKISIGN_HOOK_TOKEN", "")

        if not secret:
            if production:
                raise RuntimeError(
                    "WIKISIGN_SESSION_SECRET must be set in production. Generate with:\n"
                    "python -c \"import secrets; print(secrets.token_urlsafe(32))\""
                )
            warnings.warn(
                "Session secret not configured. Generating ephemeral secret for development. "
                "Sessions will not survive a restart.",
                stacklevel=2,
            )
            secret = secrets.token_urlsafe(32)

        if not hook_token:
            if production:
                raise RuntimeError(
                    "WIKISIGN_HOOK_TOKEN must be set in production: without it anyone "
                    "can invalidate signatures through the content-changed hook."
                )
            warnings.warn(
                "Hook token not configured. The content-changed hook accepts "
                "unauthenticated requests.",
                stacklevel=2,
            )

        return cls(
            default_role=os.environ.get("WIKISIGN_DEFAULT_ROLE", "").strip() or DEFAULT_ROLE,
            session_secret=secret,
            hook_token=hook_token,
            production=production,
        )
