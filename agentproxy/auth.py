"""Authentication for the agent proxy.

Supports two bearer tokens, chosen by URL path prefix:

- /api/*    — service key: Bearer <AGENTPROXY_SERVICE_KEY>
- /admin/*  — admin key:   Bearer <AGENTPROXY_ADMIN_KEY>

/api/health is public. When neither AGENTPROXY_SERVICE_KEY nor
AGENTPROXY_ADMIN_KEY is set, authentication is disabled (dev mode).
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import os

logger = logging.getLogger("agentproxy.auth")

PUBLIC_PATHS = ("/api/health",)


def key_fingerprint(token: str) -> str:
    """Short, non-reversible identifier for a bearer token."""
    return hashlib.sha256(token.encode()).hexdigest()[:12]


def determine_path_prefix(path: str) -> str:
    """Determine the auth path prefix from a request path.

    Returns one of: "/public", "/admin", "/api", or "" for unknown.
    """
    if path in PUBLIC_PATHS:
        return "/public"
    if path.startswith("/admin"):
        return "/admin"
    if path.startswith("/api"):
        return "/api"
    return ""


class AuthManager:
    """Validates bearer tokens for the pipeline and admin endpoints.

    Dev mode: when no keys are configured, all requests pass.
    """

    def __init__(self):
        self._service_key = os.environ.get("AGENTPROXY_SERVICE_KEY", "")
        self._admin_key = os.environ.get("AGENTPROXY_ADMIN_KEY", "")

    @property
    def auth_enabled(self) -> bool:
        """Whether any authentication is active."""
        return bool(self._service_key or self._admin_key)

    def validate_request(self, authorization: str, path_prefix: str = "/api") -> dict:
        """Validate an incoming request's Authorization header.

        Args:
            authorization: Full Authorization header value, e.g. "Bearer <token>"
            path_prefix: "/api", "/admin" or "/public" (see determine_path_prefix)

        Returns:
            Dict with "valid": True/False and "source". On success includes
            "key_id", the token fingerprint ("" in dev mode).
        """
        if not self.auth_enabled:
            return {"valid": True, "source": "no-auth", "key_id": ""}

        if path_prefix == "/public":
            return {"valid": True, "source": "public", "key_id": ""}

        if not authorization:
            return {"valid": False, "error": "Missing Authorization header"}

        parts = authorization.split(None, 1)
        if len(parts) != 2 or parts[0].lower() != "bearer":
            return {"valid": False, "error": "Invalid Authorization format"}

        token = parts[1].strip()

        if path_prefix == "/admin":
            return self._check_token(token, self._admin_key, "admin")
        return self._check_token(token, self._service_key, "service")

    def _check_token(self, token: str, expected: str, source: str) -> dict:
        if not expected:
            return {"valid": False, "error": f"{source.capitalize()} key not configured"}

        if not hmac.compare_digest(token.encode(), expected.encode()):
            logger.warning("auth_failed reason=invalid_%s_key", source)
            return {"valid": False, "error": f"Invalid {source} key"}

        return {"valid": True, "source": source, "key_id": key_fingerprint(token)}
